# app/services/refund_service.py
"""
Devoluciones de pagos capturados - Quiklii

Cuando se cancela un pedido ya pagado queda una RefundRequest. Se intenta
una vez al momento y, si el proveedor falla, se reintenta con backoff
(REFUND_RETRY_DELAYS_SECONDS) hasta REFUND_MAX_ATTEMPTS. Después queda
como failed para gestión manual. La cancelación nunca se revierte.
"""
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional

import httpx
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import commit_or_rollback
from app.models.order import Order, OrderPaymentStatus
from app.models.payment import Payment, PaymentStatus, RefundRequest, RefundStatus
from app.services.payment_providers import PaymentProviderError, get_gateway
from app.services.realtime_service import notifier as default_notifier
from app.utils.dates import utcnow

logger = logging.getLogger(__name__)


class RefundService:
    def __init__(
        self,
        db: Session,
        notifier=None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.db = db
        self.notifier = notifier or default_notifier
        self.transport = transport

    def request_refund(
        self,
        order: Order,
        payment: Payment,
        reason: Optional[str] = None,
        commit: bool = True
    ) -> RefundRequest:
        """
        Registra la devolución del pago. Si ya existe una abierta o completada
        para ese pago, se devuelve la misma.
        """
        existing = self.db.query(RefundRequest).filter(
            RefundRequest.payment_id == payment.id,
            RefundRequest.status.in_([RefundStatus.PENDING.value, RefundStatus.COMPLETED.value])
        ).first()
        if existing:
            return existing

        refund = RefundRequest(
            order_id=order.id,
            payment_id=payment.id,
            amount=Decimal(str(payment.amount)),
            reason=reason,
            status=RefundStatus.PENDING.value,
            attempts=0,
            next_attempt_at=utcnow()
        )
        self.db.add(refund)
        # commit=False: el llamador confirma junto con su propio cambio
        if commit:
            commit_or_rollback(self.db)
            self.db.refresh(refund)

        logger.info(f"[Refunds] 💸 Devolución registrada pedido={order.id} pago={payment.reference}")
        return refund

    def _next_delay(self, attempts: int) -> int:
        delays = settings.REFUND_RETRY_DELAYS_SECONDS or [0]
        return delays[min(attempts - 1, len(delays) - 1)]

    async def attempt(self, refund: RefundRequest) -> RefundRequest:
        """Un intento contra el proveedor. Los fallos se registran, no se propagan."""
        if refund.status != RefundStatus.PENDING.value:
            return refund

        payment = refund.payment
        gateway = get_gateway(payment.provider, transport=self.transport)
        refund.attempts = (refund.attempts or 0) + 1

        try:
            result = await gateway.refund(payment, refund.amount)
        except PaymentProviderError as e:
            refund.last_error = e.message
            if refund.attempts >= settings.REFUND_MAX_ATTEMPTS:
                refund.status = RefundStatus.FAILED.value
                refund.next_attempt_at = None
                logger.error(
                    f"[Refunds] ❌ Devolución #{refund.id} agotó {refund.attempts} intentos "
                    f"(pago {payment.reference}): {e.message}. Requiere gestión manual"
                )
            else:
                delay = self._next_delay(refund.attempts)
                refund.next_attempt_at = utcnow() + timedelta(seconds=delay)
                logger.warning(
                    f"[Refunds] ⚠️ Intento {refund.attempts} de devolución #{refund.id} falló: "
                    f"{e.message}. Reintento en {delay}s"
                )
            commit_or_rollback(self.db)
            return refund

        now = utcnow()
        previous_status = payment.status
        payment.status = PaymentStatus.REFUNDED.value
        payment.refund_amount = refund.amount
        payment.refund_reason = refund.reason
        payment.refunded_at = now
        payment.provider_payload = result

        refund.order.payment_status = OrderPaymentStatus.REFUNDED.value
        refund.status = RefundStatus.COMPLETED.value
        refund.completed_at = now
        refund.next_attempt_at = None
        refund.last_error = None
        commit_or_rollback(self.db)

        logger.info(f"[Refunds] ✅ Devolución #{refund.id} completada ({payment.provider})")
        await self.notifier.payment_status_changed(payment, previous_status)
        return refund

    def due_refunds(self, now=None) -> List[RefundRequest]:
        now = now or utcnow()
        return self.db.query(RefundRequest).filter(
            RefundRequest.status == RefundStatus.PENDING.value,
            or_(RefundRequest.next_attempt_at.is_(None), RefundRequest.next_attempt_at <= now)
        ).order_by(RefundRequest.id).all()

    async def process_due_refunds(self, now=None) -> Dict[str, int]:
        summary = {"processed": 0, "completed": 0, "failed": 0, "pending": 0}
        for refund in self.due_refunds(now):
            await self.attempt(refund)
            summary["processed"] += 1
            summary[refund.status] += 1

        if summary["processed"]:
            logger.info(f"[Refunds] Procesadas {summary['processed']} devoluciones: {summary}")
        return summary
