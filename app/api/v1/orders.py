"""
Endpoints de pedidos para Quiklii
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.dependencies import get_current_actor
from app.core.database import get_db
from app.schemas.order import (
    CourierAssign,
    OrderCancel,
    OrderCreate,
    OrderResponse,
    OrderStatusUpdate,
    RestaurantMetrics,
)
from app.services.order_service import Actor, OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderResponse, status_code=201)
async def create_order(
    data: OrderCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Crear pedido en estado pending"""
    service = OrderService(db)
    return await service.create_order(
        actor,
        restaurant_id=data.restaurant_id,
        line_items=[item.model_dump() for item in data.items],
        delivery_address=data.delivery_address,
        payment_method=data.payment_method,
        delivery_instructions=data.delivery_instructions
    )


@router.get("", response_model=List[OrderResponse])
async def list_my_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    return OrderService(db).list_user_orders(actor.user_id, skip=skip, limit=limit)


# Las rutas de restaurante van antes de /{order_id}
@router.get("/restaurant/{restaurant_id}", response_model=List[OrderResponse])
async def list_restaurant_orders(
    restaurant_id: int,
    status: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    return OrderService(db).list_restaurant_orders(
        restaurant_id, actor, status=status, skip=skip, limit=limit
    )


@router.get("/restaurant/{restaurant_id}/pending", response_model=List[OrderResponse])
async def list_pending_orders(
    restaurant_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Cola de cocina: pending, confirmed y preparing"""
    return OrderService(db).list_pending_orders(restaurant_id, actor)


@router.get("/restaurant/{restaurant_id}/metrics", response_model=RestaurantMetrics)
async def restaurant_metrics(
    restaurant_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    return OrderService(db).restaurant_metrics(restaurant_id, actor)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    return OrderService(db).get_order(order_id, actor)


@router.put("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: int,
    data: OrderStatusUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """
    Cambiar estado del pedido. Con expected_version el cambio solo se
    aplica si nadie más lo modificó desde esa versión (409 si no).
    """
    return await OrderService(db).transition(
        order_id, data.status, actor, expected_version=data.expected_version
    )


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: int,
    data: Optional[OrderCancel] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    data = data or OrderCancel()
    return await OrderService(db).cancel(
        order_id, actor, reason=data.reason, expected_version=data.expected_version
    )


@router.put("/{order_id}/courier", response_model=OrderResponse)
async def assign_courier(
    order_id: int,
    data: CourierAssign,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    return await OrderService(db).assign_courier(order_id, data.courier_id, actor)
