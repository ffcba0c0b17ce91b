# app/schemas/payment.py
from pydantic import BaseModel
from typing import Any, Dict, Optional
from datetime import datetime
from decimal import Decimal


class PaymentCreate(BaseModel):
    order_id: int
    method: Optional[str] = None
    provider: Optional[str] = None


class PaymentResponse(BaseModel):
    id: int
    order_id: int
    user_id: int
    amount: Decimal
    currency: str
    method: str
    provider: str
    status: str
    reference: str
    transaction_id: Optional[str] = None
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refunded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WebhookPaymentResponse(PaymentResponse):
    provider_payload: Optional[Dict[str, Any]] = None


class PaymentInitResponse(BaseModel):
    payment: PaymentResponse
    checkout: Dict[str, Any]


class WebhookAck(BaseModel):
    success: bool = True
    changed: bool
    reference: str
    status: str


class RefundRunSummary(BaseModel):
    processed: int
    completed: int
    failed: int
    pending: int
