# app/services/payment_providers.py
"""
Adaptadores de proveedores de pago - Quiklii

Cada proveedor define:
- su tabla fija de estados -> estado interno
- cómo verificar la firma de sus webhooks
- cómo leer el evento (referencia, transacción, estado, monto)
- cómo crear el checkout y cómo devolver un pago

Basado en la integración de facturalo.pro: httpx.AsyncClient con timeout y
errores de transporte convertidos en error de proveedor. Stripe usa su SDK
y sus errores (StripeError) se convierten igual.
"""
import hashlib
import hmac
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

import httpx
import stripe

from app.core.config import settings
from app.core.exceptions import InternalError, ValidationError
from app.models.payment import PaymentProvider, PaymentStatus

logger = logging.getLogger(__name__)


class PaymentProviderError(InternalError):
    """El proveedor rechazó la operación o no respondió"""
    kind = "provider_error"


class ProviderEvent:
    """Datos normalizados de un webhook"""

    def __init__(
        self,
        reference: Optional[str],
        transaction_id: Optional[str],
        provider_status: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        event_type: Optional[str] = None,
        raw: Optional[dict] = None
    ):
        self.reference = reference
        self.transaction_id = transaction_id
        self.provider_status = provider_status
        self.amount = amount
        self.currency = currency
        self.event_type = event_type
        self.raw = raw or {}

    def __repr__(self):
        return f"<ProviderEvent ref={self.reference} status={self.provider_status}>"


def to_cents(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1")))


def from_cents(cents) -> Decimal:
    return (Decimal(str(cents)) / 100).quantize(Decimal("0.01"))


def _normalize_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    return {k.lower(): v for k, v in (headers or {}).items()}


class PaymentGateway:
    name: str = ""
    supports_webhooks: bool = True
    status_map: Dict[str, str] = {}

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        # transport permite inyectar httpx.MockTransport en pruebas
        self.transport = transport

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            transport=self.transport,
            **kwargs
        )

    def map_status(self, provider_status: str) -> str:
        """Traduce el estado del proveedor; lo desconocido queda pending"""
        return self.status_map.get(provider_status, PaymentStatus.PENDING.value)

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        raise NotImplementedError

    def parse_event(self, payload: dict) -> ProviderEvent:
        raise NotImplementedError

    async def create_checkout(self, payment) -> Dict[str, Any]:
        raise NotImplementedError

    async def refund(self, payment, amount: Decimal) -> Dict[str, Any]:
        raise NotImplementedError

    async def _post(self, url: str, **kwargs) -> dict:
        try:
            async with self._client() as client:
                response = await client.post(url, **kwargs)
        except httpx.TimeoutException:
            logger.error(f"[{self.name}] Timeout conectando a {url}")
            raise PaymentProviderError(f"Timeout conectando a {self.name}")
        except httpx.RequestError as e:
            logger.error(f"[{self.name}] Error de conexión: {str(e)}")
            raise PaymentProviderError(f"Error de conexión con {self.name}: {str(e)}")

        try:
            data = response.json()
        except ValueError:
            body_preview = response.text[:500] if response.text else "(vacío)"
            logger.error(f"[{self.name}] Respuesta no-JSON: {body_preview}")
            raise PaymentProviderError(
                f"{self.name} respondió con formato inválido (HTTP {response.status_code})"
            )

        if response.status_code not in (200, 201):
            error = data.get("error") if isinstance(data, dict) else None
            if isinstance(error, dict):
                error = error.get("message") or error.get("reason") or error.get("type")
            logger.error(f"[{self.name}] ❌ Rechazado HTTP {response.status_code}: {error}")
            raise PaymentProviderError(f"{self.name} rechazó la operación: {error or response.status_code}")

        return data


# ============================================
# INTERNO (efectivo / contra entrega)
# ============================================

class InternalGateway(PaymentGateway):
    name = PaymentProvider.INTERNAL.value
    supports_webhooks = False

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        return False

    def parse_event(self, payload: dict) -> ProviderEvent:
        raise ValidationError("El proveedor interno no recibe webhooks")

    async def create_checkout(self, payment) -> Dict[str, Any]:
        return {"instructions": "Pago contra entrega"}

    async def refund(self, payment, amount: Decimal) -> Dict[str, Any]:
        # El efectivo se devuelve en persona; solo queda el registro
        return {"refunded": str(amount), "mode": "manual"}


# ============================================
# WOMPI
# ============================================

class WompiGateway(PaymentGateway):
    name = PaymentProvider.WOMPI.value
    status_map = {
        "PENDING": PaymentStatus.PENDING.value,
        "APPROVED": PaymentStatus.COMPLETED.value,
        "DECLINED": PaymentStatus.FAILED.value,
        "VOIDED": PaymentStatus.CANCELLED.value,
        "ERROR": PaymentStatus.FAILED.value,
        "PROCESSING": PaymentStatus.PROCESSING.value,
    }

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        """
        Wompi firma cada evento con SHA-256 de:
        valores de signature.properties + timestamp + secreto de eventos.
        El checksum viene en el cuerpo y en el header X-Event-Checksum.
        """
        secret = settings.WOMPI_EVENTS_SECRET
        if not secret:
            logger.error("[wompi] WOMPI_EVENTS_SECRET no configurado, se rechaza el evento")
            return False

        try:
            payload = json.loads(raw_body)
            signature = payload.get("signature") or {}
            properties = signature.get("properties") or []
            data = payload.get("data") or {}

            values = []
            for prop in properties:
                value: Any = data
                for key in prop.split("."):
                    value = value[key]
                values.append(str(value))

            to_sign = "".join(values) + str(payload["timestamp"]) + secret
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"[wompi] Evento mal formado al verificar firma: {e}")
            return False

        expected = hashlib.sha256(to_sign.encode("utf-8")).hexdigest()
        received = signature.get("checksum") or _normalize_headers(headers).get("x-event-checksum") or ""
        return hmac.compare_digest(expected.lower(), str(received).lower())

    def parse_event(self, payload: dict) -> ProviderEvent:
        transaction = (payload.get("data") or {}).get("transaction")
        if not transaction:
            raise ValidationError("Evento de Wompi sin transacción")

        amount = transaction.get("amount_in_cents")
        return ProviderEvent(
            reference=transaction.get("reference"),
            transaction_id=str(transaction.get("id")) if transaction.get("id") else None,
            provider_status=transaction.get("status", ""),
            amount=from_cents(amount) if amount is not None else None,
            currency=transaction.get("currency"),
            event_type=payload.get("event"),
            raw=transaction
        )

    async def create_checkout(self, payment) -> Dict[str, Any]:
        """
        Web checkout de Wompi: no hay llamada HTTP, el cliente es redirigido
        con la firma de integridad.
        """
        if not settings.WOMPI_PUBLIC_KEY or not settings.WOMPI_INTEGRITY_SECRET:
            raise PaymentProviderError("Wompi no está configurado")

        amount_in_cents = to_cents(payment.amount)
        integrity = hashlib.sha256(
            f"{payment.reference}{amount_in_cents}{payment.currency}{settings.WOMPI_INTEGRITY_SECRET}".encode("utf-8")
        ).hexdigest()

        params = {
            "public-key": settings.WOMPI_PUBLIC_KEY,
            "currency": payment.currency,
            "amount-in-cents": amount_in_cents,
            "reference": payment.reference,
            "signature:integrity": integrity,
            "redirect-url": f"{settings.FRONTEND_URL}/orders/{payment.order_id}/payment-result",
        }
        return {
            "checkout_url": f"{settings.WOMPI_CHECKOUT_URL}?{urlencode(params)}",
            "amount_in_cents": amount_in_cents,
            "integrity_signature": integrity,
        }

    async def refund(self, payment, amount: Decimal) -> Dict[str, Any]:
        if not payment.transaction_id:
            raise PaymentProviderError("El pago no tiene transacción de Wompi para anular")
        if not settings.WOMPI_PRIVATE_KEY:
            raise PaymentProviderError("Wompi no está configurado")

        url = f"{settings.WOMPI_API_URL}/transactions/{payment.transaction_id}/void"
        logger.info(f"[wompi] Anulando transacción {payment.transaction_id}")
        return await self._post(
            url,
            json={"amount_in_cents": to_cents(amount)},
            headers={"Authorization": f"Bearer {settings.WOMPI_PRIVATE_KEY}"}
        )


# ============================================
# STRIPE
# ============================================

class StripeGateway(PaymentGateway):
    """
    Stripe vía SDK oficial. Cada llamada lleva su api_key, no se toca
    la configuración global del módulo stripe.
    """
    name = PaymentProvider.STRIPE.value
    # Stripe informa por tipo de evento
    status_map = {
        "payment_intent.processing": PaymentStatus.PROCESSING.value,
        "payment_intent.succeeded": PaymentStatus.COMPLETED.value,
        "payment_intent.payment_failed": PaymentStatus.FAILED.value,
        "payment_intent.canceled": PaymentStatus.CANCELLED.value,
        "charge.refunded": PaymentStatus.REFUNDED.value,
    }

    def _api_key(self) -> str:
        if not settings.STRIPE_SECRET_KEY:
            raise PaymentProviderError("Stripe no está configurado")
        return settings.STRIPE_SECRET_KEY

    def _provider_error(self, action: str, e: stripe.StripeError) -> PaymentProviderError:
        message = e.user_message or str(e)
        logger.error(f"[stripe] ❌ Falló {action}: {message}")
        return PaymentProviderError(f"stripe rechazó la operación: {message}")

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        """Header Stripe-Signature validado con stripe.Webhook.construct_event"""
        secret = settings.STRIPE_WEBHOOK_SECRET
        if not secret:
            logger.error("[stripe] STRIPE_WEBHOOK_SECRET no configurado, se rechaza el evento")
            return False

        header = _normalize_headers(headers).get("stripe-signature")
        if not header:
            return False

        try:
            stripe.Webhook.construct_event(
                raw_body, header, secret, tolerance=settings.WEBHOOK_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"[stripe] Firma rechazada: {e.user_message or str(e)}")
            return False
        except ValueError:
            raise ValidationError("Cuerpo del webhook no es JSON")
        return True

    def parse_event(self, payload: dict) -> ProviderEvent:
        event_type = payload.get("type", "")
        obj = (payload.get("data") or {}).get("object")
        if not isinstance(obj, dict) or not obj:
            raise ValidationError("Evento de Stripe sin objeto")

        if obj.get("object") == "charge":
            transaction_id = obj.get("payment_intent")
        else:
            transaction_id = obj.get("id")

        amount = obj.get("amount")
        currency = obj.get("currency")
        return ProviderEvent(
            reference=(obj.get("metadata") or {}).get("reference"),
            transaction_id=transaction_id,
            provider_status=event_type,
            amount=from_cents(amount) if amount is not None else None,
            currency=currency.upper() if currency else None,
            event_type=event_type,
            raw=obj
        )

    async def create_checkout(self, payment) -> Dict[str, Any]:
        api_key = self._api_key()
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_cents(payment.amount),
                currency=payment.currency.lower(),
                api_key=api_key,
                metadata={
                    "reference": payment.reference,
                    "order_id": str(payment.order_id),
                }
            )
        except stripe.StripeError as e:
            raise self._provider_error("crear PaymentIntent", e)

        logger.info(f"[stripe] PaymentIntent {intent.id} para {payment.reference}")
        return {
            "transaction_id": intent.id,
            "client_secret": intent.client_secret,
        }

    async def refund(self, payment, amount: Decimal) -> Dict[str, Any]:
        if not payment.transaction_id:
            raise PaymentProviderError("El pago no tiene PaymentIntent de Stripe")
        api_key = self._api_key()

        try:
            refund = stripe.Refund.create(
                payment_intent=payment.transaction_id,
                amount=to_cents(amount),
                api_key=api_key
            )
        except stripe.StripeError as e:
            raise self._provider_error("crear reembolso", e)

        logger.info(f"[stripe] Reembolso {refund.id} para {payment.transaction_id}")
        return {"id": refund.id, "status": refund.status, "amount": refund.amount}


GATEWAYS = {
    PaymentProvider.INTERNAL.value: InternalGateway,
    PaymentProvider.WOMPI.value: WompiGateway,
    PaymentProvider.STRIPE.value: StripeGateway,
}


def get_gateway(provider: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> PaymentGateway:
    gateway_class = GATEWAYS.get(provider)
    if gateway_class is None:
        raise ValidationError(f"Proveedor de pago no soportado: {provider}")
    return gateway_class(transport=transport)
