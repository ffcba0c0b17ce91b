# app/schemas/order.py
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from datetime import datetime
from decimal import Decimal


class OrderItemCreate(BaseModel):
    menu_item_id: int
    quantity: int
    special_instructions: Optional[str] = None
    selected_modifiers: Optional[List[Any]] = None


class OrderCreate(BaseModel):
    restaurant_id: int
    items: List[OrderItemCreate]
    delivery_address: str
    payment_method: str
    delivery_instructions: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: str
    expected_version: Optional[int] = None


class OrderCancel(BaseModel):
    reason: Optional[str] = None
    expected_version: Optional[int] = None


class CourierAssign(BaseModel):
    courier_id: int


class OrderItemResponse(BaseModel):
    id: int
    menu_item_id: int
    item_name: Optional[str] = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    special_instructions: Optional[str] = None
    selected_modifiers: Optional[List[Any]] = None

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    id: int
    user_id: int
    restaurant_id: int
    courier_id: Optional[int] = None
    status: str
    subtotal: Decimal
    delivery_fee: Decimal
    total: Decimal
    delivery_address: str
    delivery_instructions: Optional[str] = None
    estimated_delivery_time: Optional[datetime] = None
    payment_method: str
    payment_status: str
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemResponse] = []

    class Config:
        from_attributes = True


class RestaurantMetrics(BaseModel):
    restaurant_id: int
    total_orders: int
    orders_by_status: Dict[str, int]
    revenue: Decimal
    average_order_value: Decimal
