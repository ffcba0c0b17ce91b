# app/services/order_service.py
"""
Máquina de estados de pedidos - Quiklii

pending -> confirmed -> preparing -> on_the_way -> delivered
Cualquier estado no terminal puede pasar a cancelled.
delivered y cancelled son terminales.

Cada escritura compara la versión del pedido (version_id_col): si otro
proceso lo cambió entre la lectura y el UPDATE se lanza ConflictError en
vez de pisar el cambio.
"""
import logging
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.database import commit_or_rollback
from app.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.models.order import Order, OrderItem, OrderPaymentStatus, OrderStatus, PaymentMethod
from app.models.payment import Payment, PaymentStatus
from app.models.restaurant import MenuItem, Restaurant
from app.models.user import User, UserRole
from app.services.realtime_service import notifier as default_notifier
from app.services.refund_service import RefundService
from app.utils.dates import utcnow

logger = logging.getLogger(__name__)

SYSTEM_ROLE = "system"

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING.value: {OrderStatus.CONFIRMED.value, OrderStatus.CANCELLED.value},
    OrderStatus.CONFIRMED.value: {OrderStatus.PREPARING.value, OrderStatus.CANCELLED.value},
    OrderStatus.PREPARING.value: {OrderStatus.ON_THE_WAY.value, OrderStatus.CANCELLED.value},
    OrderStatus.ON_THE_WAY.value: {OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value},
    OrderStatus.DELIVERED.value: set(),
    OrderStatus.CANCELLED.value: set(),
}

# Quién puede disparar cada estado destino (además de admin y system)
TRANSITION_ROLES = {
    OrderStatus.CONFIRMED.value: {UserRole.RESTAURANT_OWNER.value},
    OrderStatus.PREPARING.value: {UserRole.RESTAURANT_OWNER.value},
    OrderStatus.ON_THE_WAY.value: {UserRole.RESTAURANT_OWNER.value, UserRole.DELIVERY_PERSON.value},
    OrderStatus.DELIVERED.value: {UserRole.DELIVERY_PERSON.value},
    OrderStatus.CANCELLED.value: {UserRole.CUSTOMER.value, UserRole.RESTAURANT_OWNER.value},
}

ACTIVE_KITCHEN_STATUSES = (
    OrderStatus.PENDING.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.PREPARING.value,
)

CENTS = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class Actor:
    """Quién ejecuta la operación: un usuario autenticado o el sistema"""

    def __init__(self, user_id: Optional[int], role: str):
        self.user_id = user_id
        self.role = role

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, role=SYSTEM_ROLE)

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, role=user.role)

    @property
    def is_privileged(self) -> bool:
        return self.role in (SYSTEM_ROLE, UserRole.ADMIN.value)

    def __repr__(self):
        return f"<Actor {self.role}:{self.user_id}>"


class OrderService:
    def __init__(self, db: Session, notifier=None, refund_service: Optional[RefundService] = None):
        self.db = db
        self.notifier = notifier or default_notifier
        self.refunds = refund_service or RefundService(db, notifier=self.notifier)

    # ============================================
    # CREACIÓN
    # ============================================

    async def create_order(
        self,
        actor: Actor,
        restaurant_id: int,
        line_items: List[Dict],
        delivery_address: str,
        payment_method: str,
        delivery_instructions: Optional[str] = None
    ) -> Order:
        """
        Crea el pedido en estado pending con el precio actual del menú
        congelado en cada línea.
        """
        if not line_items:
            raise ValidationError("El pedido debe tener al menos un producto")
        if not delivery_address or not delivery_address.strip():
            raise ValidationError("La dirección de entrega es obligatoria")
        if payment_method not in [m.value for m in PaymentMethod]:
            raise ValidationError(f"Método de pago no soportado: {payment_method}")

        for line in line_items:
            quantity = line.get("quantity")
            if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
                raise ValidationError(
                    "La cantidad debe ser al menos 1",
                    details={"menu_item_id": line.get("menu_item_id")}
                )

        restaurant = self.db.get(Restaurant, restaurant_id)
        if not restaurant:
            raise NotFoundError("Restaurante no encontrado")
        if not restaurant.is_active:
            raise ConflictError("El restaurante no está recibiendo pedidos")

        menu_ids = {line.get("menu_item_id") for line in line_items}
        menu_items = {
            m.id: m for m in self.db.query(MenuItem).filter(MenuItem.id.in_(menu_ids)).all()
        }

        subtotal = Decimal("0")
        order_items = []
        for line in line_items:
            menu_item = menu_items.get(line.get("menu_item_id"))
            if not menu_item:
                raise NotFoundError(
                    "Producto no encontrado",
                    details={"menu_item_id": line.get("menu_item_id")}
                )
            if menu_item.restaurant_id != restaurant.id:
                raise ValidationError(
                    f"'{menu_item.name}' no pertenece a este restaurante",
                    details={"menu_item_id": menu_item.id}
                )
            if not menu_item.available:
                raise ValidationError(
                    f"'{menu_item.name}' no está disponible",
                    details={"menu_item_id": menu_item.id}
                )

            unit_price = money(menu_item.price)
            line_total = money(unit_price * line["quantity"])
            subtotal += line_total
            order_items.append(OrderItem(
                menu_item_id=menu_item.id,
                item_name=menu_item.name,
                quantity=line["quantity"],
                unit_price=unit_price,
                total_price=line_total,
                special_instructions=line.get("special_instructions"),
                selected_modifiers=line.get("selected_modifiers") or []
            ))

        subtotal = money(subtotal)
        min_order = money(restaurant.min_order or 0)
        if subtotal < min_order:
            raise ValidationError(
                f"El pedido mínimo es {min_order}",
                details={"subtotal": str(subtotal), "min_order": str(min_order)}
            )

        delivery_fee = money(restaurant.delivery_fee or 0)
        order = Order(
            user_id=actor.user_id,
            restaurant_id=restaurant.id,
            status=OrderStatus.PENDING.value,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            total=money(subtotal + delivery_fee),
            delivery_address=delivery_address.strip(),
            delivery_instructions=delivery_instructions,
            estimated_delivery_time=utcnow() + timedelta(minutes=restaurant.delivery_time or 30),
            payment_method=payment_method,
            payment_status=OrderPaymentStatus.PENDING.value,
            items=order_items
        )
        self.db.add(order)
        commit_or_rollback(self.db)
        self.db.refresh(order)

        logger.info(
            f"[Orders] 🧾 Pedido #{order.id} creado restaurante={restaurant.id} "
            f"total={order.total} ({len(order_items)} líneas)"
        )
        await self.notifier.order_created(order)
        return order

    # ============================================
    # TRANSICIONES
    # ============================================

    def _get_order_or_404(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if not order:
            raise NotFoundError("Pedido no encontrado")
        return order

    def _parse_status(self, value: str) -> str:
        if value not in ALLOWED_TRANSITIONS:
            raise ValidationError(f"Estado desconocido: {value}")
        return value

    def _check_edge(self, order: Order, target: str):
        if target not in ALLOWED_TRANSITIONS[order.status]:
            raise InvalidTransitionError(order.status, target)

    def _check_actor(self, order: Order, target: str, actor: Actor):
        if actor.is_privileged:
            return
        if actor.role not in TRANSITION_ROLES.get(target, ()):
            raise PermissionDeniedError(f"El rol {actor.role} no puede pasar un pedido a {target}")

        if actor.role == UserRole.CUSTOMER.value and order.user_id != actor.user_id:
            raise PermissionDeniedError("El pedido no es tuyo")
        if actor.role == UserRole.RESTAURANT_OWNER.value and order.restaurant.owner_id != actor.user_id:
            raise PermissionDeniedError("El pedido no es de tu restaurante")
        if actor.role == UserRole.DELIVERY_PERSON.value and order.courier_id != actor.user_id:
            raise PermissionDeniedError("No eres el repartidor asignado")

    def _check_version(self, order: Order, expected_version: Optional[int]):
        if expected_version is not None and order.version != expected_version:
            raise ConflictError(
                "El pedido cambió desde la última lectura",
                details={"expected_version": expected_version, "current_version": order.version}
            )

    async def transition(
        self,
        order_id: int,
        target_status: str,
        actor: Actor,
        expected_version: Optional[int] = None
    ) -> Order:
        order = self._get_order_or_404(order_id)
        target = self._parse_status(target_status)

        if target == OrderStatus.CANCELLED.value:
            return await self.cancel(order_id, actor, expected_version=expected_version)

        self._check_edge(order, target)
        self._check_actor(order, target, actor)
        self._check_version(order, expected_version)

        previous_status = order.status
        order.status = target
        commit_or_rollback(self.db)

        logger.info(f"[Orders] 🔄 Pedido #{order.id}: {previous_status} -> {target} ({actor.role})")
        await self.notifier.order_status_changed(order, previous_status, actor)
        return order

    async def cancel(
        self,
        order_id: int,
        actor: Actor,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> Order:
        """
        Cancela un pedido no terminal. Si ya estaba pagado se registra la
        devolución en la misma transacción y se intenta una vez; si ese
        intento falla queda programado y la cancelación se mantiene.
        """
        order = self._get_order_or_404(order_id)
        if order.is_terminal:
            raise InvalidTransitionError(order.status, OrderStatus.CANCELLED.value)
        self._check_actor(order, OrderStatus.CANCELLED.value, actor)
        self._check_version(order, expected_version)

        previous_status = order.status
        order.status = OrderStatus.CANCELLED.value
        order.cancellation_reason = reason
        order.cancelled_at = utcnow()

        refund = None
        if order.payment_status == OrderPaymentStatus.COMPLETED.value:
            payment = self._captured_payment(order)
            if payment:
                refund = self.refunds.request_refund(order, payment, reason, commit=False)

        commit_or_rollback(self.db)
        logger.info(f"[Orders] ❌ Pedido #{order.id} cancelado desde {previous_status} ({actor.role})")

        await self.notifier.order_status_changed(order, previous_status, actor)
        if refund is not None:
            await self.refunds.attempt(refund)
        return order

    def _captured_payment(self, order: Order) -> Optional[Payment]:
        for payment in reversed(order.payments):
            if payment.status == PaymentStatus.COMPLETED.value:
                return payment
        return None

    async def assign_courier(self, order_id: int, courier_id: int, actor: Actor) -> Order:
        order = self._get_order_or_404(order_id)
        if not actor.is_privileged:
            if actor.role != UserRole.RESTAURANT_OWNER.value or order.restaurant.owner_id != actor.user_id:
                raise PermissionDeniedError("Solo el restaurante puede asignar repartidor")
        if order.is_terminal:
            raise ConflictError(f"El pedido ya está {order.status}")

        courier = self.db.get(User, courier_id)
        if not courier or not courier.is_active:
            raise NotFoundError("Repartidor no encontrado")
        if courier.role != UserRole.DELIVERY_PERSON.value:
            raise ValidationError("El usuario no es repartidor")

        order.courier_id = courier.id
        commit_or_rollback(self.db)

        logger.info(f"[Orders] 🛵 Repartidor {courier.id} asignado al pedido #{order.id}")
        await self.notifier.courier_assigned(order)
        return order

    # ============================================
    # CONSULTAS
    # ============================================

    def can_view(self, order: Order, actor: Actor) -> bool:
        return (
            actor.is_privileged
            or order.user_id == actor.user_id
            or order.courier_id == actor.user_id
            or order.restaurant.owner_id == actor.user_id
        )

    def get_order(self, order_id: int, actor: Actor) -> Order:
        order = self._get_order_or_404(order_id)
        if not self.can_view(order, actor):
            raise PermissionDeniedError("No tienes acceso a este pedido")
        return order

    def list_user_orders(self, user_id: int, skip: int = 0, limit: int = 50) -> List[Order]:
        return self.db.query(Order).filter(
            Order.user_id == user_id
        ).order_by(Order.created_at.desc(), Order.id.desc()).offset(skip).limit(limit).all()

    def _get_owned_restaurant(self, restaurant_id: int, actor: Actor) -> Restaurant:
        restaurant = self.db.get(Restaurant, restaurant_id)
        if not restaurant:
            raise NotFoundError("Restaurante no encontrado")
        if not actor.is_privileged and restaurant.owner_id != actor.user_id:
            raise PermissionDeniedError("No tienes acceso a este restaurante")
        return restaurant

    def list_restaurant_orders(
        self,
        restaurant_id: int,
        actor: Actor,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[Order]:
        self._get_owned_restaurant(restaurant_id, actor)
        query = self.db.query(Order).filter(Order.restaurant_id == restaurant_id)
        if status:
            query = query.filter(Order.status == self._parse_status(status))
        return query.order_by(Order.created_at.desc(), Order.id.desc()).offset(skip).limit(limit).all()

    def list_pending_orders(self, restaurant_id: int, actor: Actor) -> List[Order]:
        """Pedidos que la cocina todavía tiene que atender, el más antiguo primero"""
        self._get_owned_restaurant(restaurant_id, actor)
        return self.db.query(Order).filter(
            Order.restaurant_id == restaurant_id,
            Order.status.in_(ACTIVE_KITCHEN_STATUSES)
        ).order_by(Order.created_at.asc(), Order.id.asc()).all()

    def restaurant_metrics(self, restaurant_id: int, actor: Actor) -> Dict:
        self._get_owned_restaurant(restaurant_id, actor)

        total_orders = self.db.query(func.count(Order.id)).filter(
            Order.restaurant_id == restaurant_id
        ).scalar() or 0

        rows = self.db.query(Order.status, func.count(Order.id)).filter(
            Order.restaurant_id == restaurant_id
        ).group_by(Order.status).all()
        by_status = {status: count for status, count in rows}

        revenue_orders = total_orders - by_status.get(OrderStatus.CANCELLED.value, 0)
        revenue = self.db.query(func.coalesce(func.sum(Order.total), 0)).filter(
            Order.restaurant_id == restaurant_id,
            Order.status != OrderStatus.CANCELLED.value
        ).scalar()
        revenue = money(revenue or 0)
        average = money(revenue / revenue_orders) if revenue_orders else money(0)

        return {
            "restaurant_id": restaurant_id,
            "total_orders": total_orders,
            "orders_by_status": by_status,
            "revenue": revenue,
            "average_order_value": average,
        }
