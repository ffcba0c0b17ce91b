"""
Endpoints de pagos para Quiklii

Los webhooks no llevan token: se autentican con la firma del proveedor.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.api.dependencies import get_current_actor, require_admin
from app.core.database import get_db
from app.models.user import User
from app.schemas.payment import (
    PaymentCreate,
    PaymentInitResponse,
    PaymentResponse,
    RefundRunSummary,
    WebhookAck,
    WebhookPaymentResponse,
)
from app.services.order_service import Actor
from app.services.payment_service import PaymentService
from app.services.refund_service import RefundService

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("", response_model=PaymentInitResponse, status_code=201)
async def initiate_payment(
    data: PaymentCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Crea el pago pending y devuelve la referencia y los datos de checkout"""
    return await PaymentService(db).initiate_payment(
        data.order_id, actor, method=data.method, provider=data.provider
    )


@router.get("", response_model=List[PaymentResponse])
async def list_my_payments(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    return PaymentService(db).list_user_payments(actor.user_id, skip=skip, limit=limit)


@router.post("/webhook/{provider}", response_model=WebhookAck)
async def provider_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db)
):
    raw_body = await request.body()
    result = await PaymentService(db).handle_provider_callback(raw_body, request.headers, provider)
    payment = result["payment"]
    return WebhookAck(
        changed=result["changed"],
        reference=payment.reference,
        status=payment.status
    )


@router.get("/webhooks/history", response_model=List[WebhookPaymentResponse])
async def webhook_history(
    provider: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin)
):
    return PaymentService(db).webhook_history(
        Actor.from_user(admin), provider=provider, skip=skip, limit=limit
    )


@router.post("/refunds/process", response_model=RefundRunSummary)
async def process_due_refunds(
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin)
):
    """Reintenta las devoluciones vencidas"""
    return await RefundService(db).process_due_refunds()


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    return PaymentService(db).get_payment(payment_id, actor)


@router.post("/{payment_id}/cash/confirm", response_model=PaymentResponse)
async def confirm_cash_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Registrar efectivo recibido (restaurante o repartidor asignado)"""
    result = await PaymentService(db).confirm_cash_payment(payment_id, actor)
    return result["payment"]
