import hashlib
import hmac
import json
import time

from app.core.security import create_access_token
from app.services.event_bus import EventBus
from app.services.order_service import Actor, OrderService


class RecordingBus(EventBus):
    """Guarda lo publicado en vez de enviarlo"""

    def __init__(self):
        super().__init__(room_manager=None)
        self.events = []

    async def publish(self, rooms, event, payload):
        self.events.append((list(rooms), event, payload))

    def named(self, event):
        return [e for e in self.events if e[1] == event]


def actor_for(user):
    return Actor.from_user(user)


def token_for(user):
    return create_access_token(user.id, user.role)


def auth_headers(user):
    return {"Authorization": f"Bearer {token_for(user)}"}


def standard_lines(menu):
    # 2 x 15000 + 1 x 9000
    return [
        {"menu_item_id": menu["arepa"].id, "quantity": 2},
        {"menu_item_id": menu["limonada"].id, "quantity": 1},
    ]


def wompi_body(reference, status, transaction_id="1234-1610641025-49201", amount_in_cents=4350000,
               timestamp=1530291411, secret="test_events_secret"):
    transaction = {
        "id": transaction_id,
        "reference": reference,
        "status": status,
        "amount_in_cents": amount_in_cents,
        "currency": "COP",
        "payment_method_type": "CARD",
    }
    to_sign = f"{transaction_id}{status}{amount_in_cents}{timestamp}{secret}"
    payload = {
        "event": "transaction.updated",
        "data": {"transaction": transaction},
        "environment": "test",
        "signature": {
            "properties": ["transaction.id", "transaction.status", "transaction.amount_in_cents"],
            "checksum": hashlib.sha256(to_sign.encode("utf-8")).hexdigest(),
        },
        "timestamp": timestamp,
    }
    return json.dumps(payload).encode("utf-8")


def stripe_body(reference, event_type, intent_id="pi_3Quiklii", amount=4350000, currency="cop",
                secret="whsec_test_quiklii", timestamp=None):
    body = json.dumps({
        "id": "evt_1Quiklii",
        "type": event_type,
        "data": {
            "object": {
                "id": intent_id,
                "object": "payment_intent",
                "amount": amount,
                "currency": currency,
                "metadata": {"reference": reference},
            }
        },
    }).encode("utf-8")
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + body, hashlib.sha256
    ).hexdigest()
    return body, {"Stripe-Signature": f"t={timestamp},v1={signature}"}


async def place_order(db, notifier, customer, menu, payment_method="card"):
    return await OrderService(db, notifier=notifier).create_order(
        actor_for(customer),
        restaurant_id=menu["arepa"].restaurant_id,
        line_items=standard_lines(menu),
        delivery_address="Calle 50 #10-20, Medellín",
        payment_method=payment_method
    )
