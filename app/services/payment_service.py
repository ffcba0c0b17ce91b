# app/services/payment_service.py
"""
Conciliación de pagos - Quiklii

Flujo:
1. El cliente inicia el pago -> Payment pending con una referencia propia.
2. El proveedor (Wompi / Stripe) avisa por webhook firmado.
3. Se verifica la firma, se busca el pago por referencia y se aplica el
   estado traducido. Un pago terminal ignora avisos repetidos.
4. Pago completado con pedido pending -> el sistema confirma el pedido.
   Pago completado con pedido ya cancelado -> se abre una devolución.
"""
import json
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import commit_or_rollback
from app.core.exceptions import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.models.order import Order, OrderPaymentStatus, OrderStatus, PaymentMethod
from app.models.payment import (
    OPEN_PAYMENT_STATUSES,
    Payment,
    PaymentProvider,
    PaymentStatus,
)
from app.models.user import UserRole
from app.services.order_service import Actor, OrderService
from app.services.payment_providers import (
    PaymentProviderError,
    ProviderEvent,
    get_gateway,
    to_cents,
)
from app.services.realtime_service import notifier as default_notifier
from app.services.refund_service import RefundService
from app.utils.dates import utcnow

logger = logging.getLogger(__name__)


def new_reference() -> str:
    return f"QK-{uuid.uuid4().hex.upper()}"


class PaymentService:
    def __init__(
        self,
        db: Session,
        notifier=None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.db = db
        self.notifier = notifier or default_notifier
        self.transport = transport
        self.refunds = RefundService(db, notifier=self.notifier, transport=transport)
        self.orders = OrderService(db, notifier=self.notifier, refund_service=self.refunds)

    # ============================================
    # INICIO DEL PAGO
    # ============================================

    def _resolve_provider(self, method: str, provider: Optional[str]) -> str:
        if method == PaymentMethod.CASH.value:
            if provider and provider != PaymentProvider.INTERNAL.value:
                raise ValidationError("El pago en efectivo no usa proveedor externo")
            return PaymentProvider.INTERNAL.value
        if not provider:
            return PaymentProvider.WOMPI.value
        if provider == PaymentProvider.INTERNAL.value:
            raise ValidationError("El proveedor interno solo acepta efectivo")
        if provider not in [p.value for p in PaymentProvider]:
            raise ValidationError(f"Proveedor de pago no soportado: {provider}")
        return provider

    async def initiate_payment(
        self,
        order_id: int,
        actor: Actor,
        method: Optional[str] = None,
        provider: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Crea un Payment pending por el total del pedido y prepara el checkout
        del proveedor. No espera la confirmación: esa llega por webhook.
        """
        order = self.db.get(Order, order_id)
        if not order:
            raise NotFoundError("Pedido no encontrado")
        if not actor.is_privileged and order.user_id != actor.user_id:
            raise PermissionDeniedError("El pedido no es tuyo")
        if order.is_terminal:
            raise ConflictError(f"El pedido ya está {order.status}")
        if order.payment_status == OrderPaymentStatus.COMPLETED.value:
            raise ConflictError("El pedido ya fue pagado")

        open_payment = self.db.query(Payment).filter(
            Payment.order_id == order.id,
            Payment.status.in_(OPEN_PAYMENT_STATUSES)
        ).first()
        if open_payment:
            raise ConflictError(
                "Ya hay un pago en curso para este pedido",
                details={"reference": open_payment.reference}
            )

        method = method or order.payment_method
        if method not in [m.value for m in PaymentMethod]:
            raise ValidationError(f"Método de pago no soportado: {method}")
        provider = self._resolve_provider(method, provider)

        currency = settings.DEFAULT_CURRENCY
        if currency not in settings.SUPPORTED_CURRENCIES:
            raise ValidationError(f"Moneda no soportada: {currency}")

        payment = Payment(
            order_id=order.id,
            user_id=order.user_id,
            amount=order.total,
            currency=currency,
            method=method,
            provider=provider,
            status=PaymentStatus.PENDING.value,
            reference=new_reference()
        )
        self.db.add(payment)
        try:
            self.db.flush()
        except IntegrityError:
            # Otra petición abrió un pago para el mismo pedido al mismo tiempo
            self.db.rollback()
            raise ConflictError("Ya hay un pago en curso para este pedido")
        commit_or_rollback(self.db)
        self.db.refresh(payment)

        gateway = get_gateway(provider, transport=self.transport)
        try:
            checkout = await gateway.create_checkout(payment)
        except PaymentProviderError as e:
            payment.status = PaymentStatus.FAILED.value
            payment.error_message = e.message
            payment.processed_at = utcnow()
            commit_or_rollback(self.db)
            logger.error(f"[Payments] ❌ No se pudo iniciar {payment.reference} con {provider}: {e.message}")
            raise

        if checkout.get("transaction_id"):
            payment.transaction_id = checkout["transaction_id"]
        payment.provider_payload = checkout
        commit_or_rollback(self.db)

        logger.info(
            f"[Payments] 💳 Pago {payment.reference} iniciado pedido=#{order.id} "
            f"{payment.amount} {payment.currency} vía {provider}"
        )
        return {"payment": payment, "checkout": checkout}

    # ============================================
    # WEBHOOKS
    # ============================================

    async def handle_provider_callback(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        provider: str
    ) -> Dict[str, Any]:
        gateway = get_gateway(provider, transport=self.transport)
        if not gateway.supports_webhooks:
            raise ValidationError(f"El proveedor {provider} no recibe webhooks")

        if not gateway.verify_signature(raw_body, headers):
            logger.warning(f"[Webhook] 🚫 Firma inválida de {provider}, evento descartado")
            raise AuthenticationError("Firma de webhook inválida")

        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Cuerpo del webhook no es JSON")

        event = gateway.parse_event(payload)
        if not event.reference:
            raise ValidationError("El evento no trae referencia de pago")

        payment = self.db.query(Payment).filter(Payment.reference == event.reference).first()
        if not payment:
            logger.warning(f"[Webhook] Referencia desconocida {event.reference} ({provider})")
            raise NotFoundError("Pago no encontrado", details={"reference": event.reference})
        if payment.provider != provider:
            logger.warning(
                f"[Webhook] 🚫 Evento de {provider} para {payment.reference}, "
                f"que se cobra con {payment.provider}"
            )
            raise ValidationError(
                "El evento no corresponde al proveedor del pago",
                details={"reference": payment.reference, "provider": payment.provider}
            )

        new_status = gateway.map_status(event.provider_status)
        logger.info(
            f"[Webhook] 📩 {provider} {event.event_type or ''} ref={event.reference} "
            f"{event.provider_status} -> {new_status}"
        )

        mismatch = self._amount_mismatch(payment, event)
        if mismatch:
            # Lo cobrado no es lo que se pidió: el pago no confirma el pedido
            logger.error(f"[Webhook] ❌ {payment.reference}: {mismatch}")
            return await self.apply_status(
                payment,
                PaymentStatus.FAILED.value,
                transaction_id=event.transaction_id,
                provider_payload=event.raw,
                error_message=mismatch
            )

        return await self.apply_status(
            payment,
            new_status,
            transaction_id=event.transaction_id,
            provider_payload=event.raw
        )

    def _amount_mismatch(self, payment: Payment, event: ProviderEvent) -> Optional[str]:
        if event.amount is not None and to_cents(event.amount) != to_cents(payment.amount):
            return f"Monto reportado {event.amount} distinto de {payment.amount}"
        if event.currency and event.currency.upper() != payment.currency.upper():
            return f"Moneda reportada {event.currency} distinta de {payment.currency}"
        return None

    async def apply_status(
        self,
        payment: Payment,
        new_status: str,
        transaction_id: Optional[str] = None,
        provider_payload: Optional[dict] = None,
        error_message: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Aplica un estado al pago y sus efectos sobre el pedido. Es idempotente:
        un pago terminal o un estado repetido no cambian nada.
        """
        previous_status = payment.status
        result = {"payment": payment, "changed": False, "previous_status": previous_status}

        if payment.is_terminal:
            logger.info(f"[Webhook] Pago {payment.reference} ya está {payment.status}, aviso ignorado")
            return result
        if new_status == previous_status:
            return result
        if new_status == PaymentStatus.PENDING.value and previous_status == PaymentStatus.PROCESSING.value:
            logger.info(f"[Webhook] Aviso pending tardío para {payment.reference}, ignorado")
            return result

        payment.status = new_status
        if transaction_id:
            payment.transaction_id = transaction_id
        if provider_payload is not None:
            payment.provider_payload = provider_payload
        payment.processed_at = utcnow()
        if new_status == PaymentStatus.FAILED.value:
            payment.error_message = (
                error_message
                or (provider_payload or {}).get("status_message")
                or "Pago rechazado por el proveedor"
            )

        order = payment.order
        confirm_order = False
        refund_needed = False
        if new_status == PaymentStatus.COMPLETED.value:
            order.payment_status = OrderPaymentStatus.COMPLETED.value
            if order.status == OrderStatus.PENDING.value:
                confirm_order = True
            elif order.status == OrderStatus.CANCELLED.value:
                refund_needed = True
        elif new_status == PaymentStatus.FAILED.value:
            order.payment_status = OrderPaymentStatus.FAILED.value

        commit_or_rollback(self.db)
        result["changed"] = True
        logger.info(f"[Payments] Pago {payment.reference}: {previous_status} -> {new_status}")
        await self.notifier.payment_status_changed(payment, previous_status)

        if confirm_order:
            try:
                await self.orders.transition(order.id, OrderStatus.CONFIRMED.value, Actor.system())
            except ConflictError as e:
                # El pedido cambió en paralelo (p.ej. lo cancelaron)
                logger.warning(f"[Payments] ⚠️ No se confirmó el pedido #{order.id}: {e.message}")
                self.db.refresh(order)
                refund_needed = order.status == OrderStatus.CANCELLED.value

        if refund_needed:
            refund = self.refunds.request_refund(order, payment, reason="Pedido cancelado antes de confirmar el pago")
            await self.refunds.attempt(refund)

        return result

    async def confirm_cash_payment(self, payment_id: int, actor: Actor) -> Dict[str, Any]:
        """El restaurante o el repartidor registran el efectivo recibido"""
        payment = self.db.get(Payment, payment_id)
        if not payment:
            raise NotFoundError("Pago no encontrado")
        if payment.provider != PaymentProvider.INTERNAL.value:
            raise ValidationError("Solo los pagos en efectivo se confirman manualmente")

        order = payment.order
        allowed = (
            actor.is_privileged
            or (actor.role == UserRole.RESTAURANT_OWNER.value and order.restaurant.owner_id == actor.user_id)
            or (actor.role == UserRole.DELIVERY_PERSON.value and order.courier_id == actor.user_id)
        )
        if not allowed:
            raise PermissionDeniedError("No puedes confirmar este pago")
        if payment.is_terminal:
            raise ConflictError(f"El pago ya está {payment.status}")

        return await self.apply_status(
            payment,
            PaymentStatus.COMPLETED.value,
            provider_payload={"confirmed_by": actor.user_id, "role": actor.role}
        )

    # ============================================
    # CONSULTAS
    # ============================================

    def get_payment(self, payment_id: int, actor: Actor) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if not payment:
            raise NotFoundError("Pago no encontrado")
        if not self.orders.can_view(payment.order, actor):
            raise PermissionDeniedError("No tienes acceso a este pago")
        return payment

    def list_user_payments(self, user_id: int, skip: int = 0, limit: int = 50) -> List[Payment]:
        return self.db.query(Payment).filter(
            Payment.user_id == user_id
        ).order_by(Payment.id.desc()).offset(skip).limit(limit).all()

    def webhook_history(
        self,
        actor: Actor,
        provider: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[Payment]:
        """Pagos externos con el último documento recibido del proveedor"""
        if not actor.is_privileged:
            raise PermissionDeniedError("Solo administradores")

        query = self.db.query(Payment).filter(
            Payment.provider != PaymentProvider.INTERNAL.value,
            Payment.processed_at.isnot(None)
        )
        if provider:
            query = query.filter(Payment.provider == provider)
        return query.order_by(Payment.processed_at.desc(), Payment.id.desc()).offset(skip).limit(limit).all()
