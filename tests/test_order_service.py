from datetime import timedelta
from decimal import Decimal

import pytest

from app.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.models import Order, Payment, RefundRequest
from app.services.order_service import Actor, OrderService
from app.utils.dates import utcnow
from tests.helpers import actor_for, place_order, standard_lines


ADDRESS = "Calle 50 #10-20, Medellín"


# ============================================
# CREACIÓN
# ============================================

async def test_create_order_computes_total_and_starts_pending(db, notifier, bus, customer, menu):
    order = await place_order(db, notifier, customer, menu)

    assert order.status == "pending"
    assert order.payment_status == "pending"
    assert order.version == 1
    assert order.subtotal == Decimal("39000")
    assert order.delivery_fee == Decimal("4500")
    assert order.total == Decimal("43500")
    assert order.total == sum(i.quantity * i.unit_price for i in order.items) + order.delivery_fee
    assert [(i.item_name, i.quantity) for i in order.items] == [
        ("Arepa de chócolo", 2),
        ("Limonada de coco", 1),
    ]
    assert order.estimated_delivery_time > utcnow() + timedelta(minutes=25)


async def test_create_order_notifies_restaurant_and_customer(db, notifier, bus, customer, menu, restaurant):
    order = await place_order(db, notifier, customer, menu)

    created = bus.named("order_created")
    assert len(created) == 1
    rooms, _, payload = created[0]
    assert rooms == [f"restaurant_{restaurant.id}", f"user_{customer.id}"]
    assert payload["orderId"] == order.id
    assert payload["total"] == "43500.00"


async def test_unit_price_is_snapshotted(db, notifier, customer, menu):
    order = await place_order(db, notifier, customer, menu)

    menu["arepa"].price = Decimal("20000")
    db.commit()
    db.refresh(order)

    assert order.items[0].unit_price == Decimal("15000")
    assert order.total == Decimal("43500")


async def test_empty_line_items_rejected(db, notifier, customer, restaurant):
    service = OrderService(db, notifier=notifier)
    with pytest.raises(ValidationError):
        await service.create_order(actor_for(customer), restaurant.id, [], ADDRESS, "card")
    assert db.query(Order).count() == 0


async def test_zero_quantity_rejected(db, notifier, customer, menu, restaurant):
    service = OrderService(db, notifier=notifier)
    lines = [{"menu_item_id": menu["arepa"].id, "quantity": 0}]
    with pytest.raises(ValidationError):
        await service.create_order(actor_for(customer), restaurant.id, lines, ADDRESS, "card")


async def test_item_from_other_restaurant_rejected(db, notifier, customer, menu, restaurant):
    service = OrderService(db, notifier=notifier)
    lines = [{"menu_item_id": menu["roll"].id, "quantity": 1}]
    with pytest.raises(ValidationError) as exc:
        await service.create_order(actor_for(customer), restaurant.id, lines, ADDRESS, "card")
    assert exc.value.details == {"menu_item_id": menu["roll"].id}


async def test_unavailable_item_rejected(db, notifier, customer, menu, restaurant):
    service = OrderService(db, notifier=notifier)
    lines = [{"menu_item_id": menu["agotado"].id, "quantity": 1}]
    with pytest.raises(ValidationError):
        await service.create_order(actor_for(customer), restaurant.id, lines, ADDRESS, "card")


async def test_missing_restaurant_and_menu_item(db, notifier, customer, menu, restaurant):
    service = OrderService(db, notifier=notifier)
    with pytest.raises(NotFoundError):
        await service.create_order(actor_for(customer), 999, standard_lines(menu), ADDRESS, "card")
    with pytest.raises(NotFoundError):
        await service.create_order(
            actor_for(customer), restaurant.id, [{"menu_item_id": 999, "quantity": 1}], ADDRESS, "card"
        )


async def test_inactive_restaurant_conflict(db, notifier, customer, menu, restaurant):
    restaurant.is_active = False
    db.commit()
    with pytest.raises(ConflictError):
        await place_order(db, notifier, customer, menu)


async def test_minimum_order_enforced(db, notifier, customer, menu, other_restaurant):
    service = OrderService(db, notifier=notifier)
    lines = [{"menu_item_id": menu["roll"].id, "quantity": 1}]

    order = await service.create_order(actor_for(customer), other_restaurant.id, lines, ADDRESS, "card")
    assert order.total == Decimal("38000")

    other_restaurant.min_order = Decimal("40000")
    db.commit()
    with pytest.raises(ValidationError) as exc:
        await service.create_order(actor_for(customer), other_restaurant.id, lines, ADDRESS, "card")
    assert exc.value.details == {"subtotal": "32000.00", "min_order": "40000.00"}


async def test_blank_address_rejected(db, notifier, customer, menu, restaurant):
    service = OrderService(db, notifier=notifier)
    with pytest.raises(ValidationError):
        await service.create_order(actor_for(customer), restaurant.id, standard_lines(menu), "   ", "card")


async def test_unknown_payment_method_rejected(db, notifier, customer, menu, restaurant):
    service = OrderService(db, notifier=notifier)
    with pytest.raises(ValidationError):
        await service.create_order(actor_for(customer), restaurant.id, standard_lines(menu), ADDRESS, "bitcoin")


# ============================================
# TRANSICIONES
# ============================================

async def test_full_lifecycle(db, notifier, bus, customer, owner, courier, menu):
    order = await place_order(db, notifier, customer, menu)
    service = OrderService(db, notifier=notifier)

    await service.transition(order.id, "confirmed", actor_for(owner))
    await service.transition(order.id, "preparing", actor_for(owner))
    await service.assign_courier(order.id, courier.id, actor_for(owner))
    await service.transition(order.id, "on_the_way", actor_for(courier))
    order = await service.transition(order.id, "delivered", actor_for(courier))

    assert order.status == "delivered"
    assert order.is_terminal
    updates = bus.named("order_status_updated")
    assert [(p["previousStatus"], p["newStatus"]) for _, _, p in updates] == [
        ("pending", "confirmed"),
        ("confirmed", "preparing"),
        ("preparing", "on_the_way"),
        ("on_the_way", "delivered"),
    ]
    # la sala del repartidor recibe los cambios una vez asignado
    assert f"delivery_{courier.id}" in updates[-1][0]
    assert updates[-1][2]["version"] == order.version


async def test_status_update_payload(db, notifier, bus, customer, owner, menu):
    order = await place_order(db, notifier, customer, menu)
    await OrderService(db, notifier=notifier).transition(order.id, "confirmed", actor_for(owner))

    rooms, event, payload = bus.named("order_status_updated")[0]
    assert rooms == [f"order_{order.id}", f"user_{customer.id}", f"restaurant_{order.restaurant_id}"]
    assert payload["orderId"] == order.id
    assert payload["previousStatus"] == "pending"
    assert payload["newStatus"] == "confirmed"
    assert payload["version"] == 2
    assert payload["changedBy"] == "restaurant_owner"
    assert "timestamp" in payload


async def test_skipping_states_is_invalid(db, notifier, customer, menu):
    order = await place_order(db, notifier, customer, menu)
    with pytest.raises(InvalidTransitionError) as exc:
        await OrderService(db, notifier=notifier).transition(order.id, "on_the_way", Actor.system())
    assert exc.value.details == {"current_status": "pending", "target_status": "on_the_way"}

    db.refresh(order)
    assert order.status == "pending"
    assert order.version == 1


async def test_cancel_from_preparing_then_terminal(db, notifier, customer, owner, menu):
    order = await place_order(db, notifier, customer, menu)
    service = OrderService(db, notifier=notifier)
    await service.transition(order.id, "confirmed", actor_for(owner))
    await service.transition(order.id, "preparing", actor_for(owner))

    order = await service.transition(order.id, "cancelled", actor_for(owner))
    assert order.status == "cancelled"
    assert order.cancelled_at is not None

    with pytest.raises(InvalidTransitionError):
        await service.transition(order.id, "confirmed", actor_for(owner))
    with pytest.raises(InvalidTransitionError):
        await service.cancel(order.id, actor_for(owner))


async def test_unknown_status_and_missing_order(db, notifier, customer, menu):
    order = await place_order(db, notifier, customer, menu)
    service = OrderService(db, notifier=notifier)
    with pytest.raises(ValidationError):
        await service.transition(order.id, "lost", Actor.system())
    with pytest.raises(NotFoundError):
        await service.transition(999, "confirmed", Actor.system())


async def test_role_restrictions(db, notifier, customer, other_customer, owner, other_owner, courier, menu):
    order = await place_order(db, notifier, customer, menu)
    service = OrderService(db, notifier=notifier)

    with pytest.raises(PermissionDeniedError):
        await service.transition(order.id, "confirmed", actor_for(customer))
    with pytest.raises(PermissionDeniedError):
        await service.transition(order.id, "confirmed", actor_for(other_owner))
    with pytest.raises(PermissionDeniedError):
        await service.cancel(order.id, actor_for(other_customer))

    await service.transition(order.id, "confirmed", actor_for(owner))
    await service.transition(order.id, "preparing", actor_for(owner))
    # repartidor sin asignar
    with pytest.raises(PermissionDeniedError):
        await service.transition(order.id, "on_the_way", actor_for(courier))


async def test_admin_can_drive_any_permitted_transition(db, notifier, customer, admin, menu):
    order = await place_order(db, notifier, customer, menu)
    order = await OrderService(db, notifier=notifier).transition(order.id, "confirmed", actor_for(admin))
    assert order.status == "confirmed"


async def test_customer_cancels_own_order(db, notifier, bus, customer, menu):
    order = await place_order(db, notifier, customer, menu)
    order = await OrderService(db, notifier=notifier).cancel(order.id, actor_for(customer), reason="Me equivoqué")

    assert order.status == "cancelled"
    assert order.cancellation_reason == "Me equivoqué"
    assert db.query(RefundRequest).count() == 0
    assert bus.named("order_status_updated")[-1][2]["newStatus"] == "cancelled"


# ============================================
# CONCURRENCIA
# ============================================

async def test_expected_version_mismatch_is_conflict(db, notifier, customer, owner, menu):
    order = await place_order(db, notifier, customer, menu)
    service = OrderService(db, notifier=notifier)
    await service.transition(order.id, "confirmed", actor_for(owner), expected_version=1)

    with pytest.raises(ConflictError) as exc:
        await service.transition(order.id, "preparing", actor_for(owner), expected_version=1)
    assert not isinstance(exc.value, InvalidTransitionError)
    db.refresh(order)
    assert order.status == "confirmed"
    assert order.version == 2


async def test_concurrent_writer_loses(db, session_factory, notifier, customer, owner, menu):
    order = await place_order(db, notifier, customer, menu)
    order_id = order.id

    # la primera sesión ya leyó el pedido en versión 1
    db.get(Order, order_id)

    other = session_factory()
    try:
        await OrderService(other, notifier=notifier).transition(order_id, "confirmed", actor_for(owner))
    finally:
        other.close()

    with pytest.raises(ConflictError):
        await OrderService(db, notifier=notifier).transition(order_id, "confirmed", actor_for(owner))

    db.expire_all()
    stored = db.get(Order, order_id)
    assert stored.status == "confirmed"
    assert stored.version == 2


# ============================================
# CANCELACIÓN CON PAGO
# ============================================

async def test_cancel_paid_cash_order_refunds_immediately(db, notifier, bus, customer, owner, menu):
    order = await place_order(db, notifier, customer, menu, payment_method="cash")
    payment = Payment(
        order_id=order.id, user_id=customer.id, amount=order.total, currency="COP",
        method="cash", provider="internal", status="completed", reference="QK-PAID-CASH"
    )
    order.payment_status = "completed"
    db.add(payment)
    db.commit()

    order = await OrderService(db, notifier=notifier).cancel(order.id, actor_for(owner), reason="Sin gas")

    refund = db.query(RefundRequest).one()
    assert refund.status == "completed"
    assert refund.amount == Decimal("43500")
    assert refund.attempts == 1
    db.refresh(payment)
    assert payment.status == "refunded"
    assert order.payment_status == "refunded"
    assert bus.named("payment_status_updated")[0][2]["newStatus"] == "refunded"


# ============================================
# REPARTIDOR Y CONSULTAS
# ============================================

async def test_assign_courier_rules(db, notifier, bus, customer, owner, other_owner, courier, menu):
    order = await place_order(db, notifier, customer, menu)
    service = OrderService(db, notifier=notifier)

    with pytest.raises(PermissionDeniedError):
        await service.assign_courier(order.id, courier.id, actor_for(other_owner))
    with pytest.raises(ValidationError):
        await service.assign_courier(order.id, customer.id, actor_for(owner))
    with pytest.raises(NotFoundError):
        await service.assign_courier(order.id, 999, actor_for(owner))

    order = await service.assign_courier(order.id, courier.id, actor_for(owner))
    assert order.courier_id == courier.id
    rooms, _, payload = bus.named("courier_assigned")[0]
    assert f"delivery_{courier.id}" in rooms
    assert payload["courierId"] == courier.id


async def test_get_order_access(db, notifier, customer, other_customer, owner, menu):
    order = await place_order(db, notifier, customer, menu)
    service = OrderService(db, notifier=notifier)

    assert service.get_order(order.id, actor_for(customer)).id == order.id
    assert service.get_order(order.id, actor_for(owner)).id == order.id
    with pytest.raises(PermissionDeniedError):
        service.get_order(order.id, actor_for(other_customer))


async def test_restaurant_queues_and_metrics(db, notifier, customer, owner, other_owner, menu, restaurant):
    service = OrderService(db, notifier=notifier)
    first = await place_order(db, notifier, customer, menu)
    second = await place_order(db, notifier, customer, menu)
    third = await place_order(db, notifier, customer, menu)
    await service.transition(second.id, "confirmed", actor_for(owner))
    await service.cancel(third.id, actor_for(customer))

    pending = service.list_pending_orders(restaurant.id, actor_for(owner))
    assert [o.id for o in pending] == [first.id, second.id]

    assert len(service.list_restaurant_orders(restaurant.id, actor_for(owner))) == 3
    assert [o.id for o in service.list_restaurant_orders(restaurant.id, actor_for(owner), status="cancelled")] == [third.id]
    assert len(service.list_user_orders(customer.id)) == 3

    metrics = service.restaurant_metrics(restaurant.id, actor_for(owner))
    assert metrics["total_orders"] == 3
    assert metrics["orders_by_status"] == {"pending": 1, "confirmed": 1, "cancelled": 1}
    assert metrics["revenue"] == Decimal("87000.00")
    assert metrics["average_order_value"] == Decimal("43500.00")

    with pytest.raises(PermissionDeniedError):
        service.restaurant_metrics(restaurant.id, actor_for(other_owner))
