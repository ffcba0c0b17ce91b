"""
Servicio de tiempo real - Quiklii

RoomManager guarda las sesiones WebSocket conectadas a este proceso y las
salas a las que pertenecen. RealtimeNotifier arma los eventos de pedidos y
pagos y los publica por el bus.

La entrega es best-effort: solo reciben las sesiones conectadas en ese
momento, no hay cola ni reenvío al reconectar, y un envío fallido no se
reintenta ni bloquea al resto de la sala.
"""
import logging
import uuid
from typing import Dict, Iterable, List, Optional, Set

from app.core.exceptions import AuthenticationError, ValidationError
from app.services.event_bus import EventBus, build_event_bus
from app.utils.dates import iso_now

logger = logging.getLogger(__name__)


# ============================================
# NOMBRES DE SALAS Y EVENTOS
# ============================================

def user_room(user_id) -> str:
    return f"user_{user_id}"


def order_room(order_id) -> str:
    return f"order_{order_id}"


def restaurant_room(restaurant_id) -> str:
    return f"restaurant_{restaurant_id}"


def delivery_room(courier_id) -> str:
    return f"delivery_{courier_id}"


ORDER_CREATED = "order_created"
ORDER_STATUS_UPDATED = "order_status_updated"
PAYMENT_STATUS_UPDATED = "payment_status_updated"
COURIER_ASSIGNED = "courier_assigned"
DELIVERY_LOCATION_UPDATED = "delivery_location_updated"
ROOM_JOINED = "room_joined"
ROOM_LEFT = "room_left"
PONG = "pong"
ERROR = "error"


# ============================================
# SESIONES Y SALAS
# ============================================

class RealtimeSession:
    """Una conexión autenticada. Envuelve el WebSocket de FastAPI."""

    def __init__(self, websocket, user_id: int, role: str, session_id: Optional[str] = None):
        self.id = session_id or uuid.uuid4().hex
        self.websocket = websocket
        self.user_id = user_id
        self.role = role

    async def send(self, event: str, data: dict):
        await self.websocket.send_json({"event": event, "data": data})

    def __repr__(self):
        return f"<RealtimeSession {self.id[:8]} user={self.user_id}>"


class RoomManager:
    def __init__(self):
        self.sessions: Dict[str, RealtimeSession] = {}
        self.rooms: Dict[str, Set[str]] = {}
        self.room_types: Dict[str, Optional[str]] = {}
        self.session_rooms: Dict[str, Set[str]] = {}

    def register(self, session: RealtimeSession):
        if session.user_id is None:
            raise AuthenticationError("Sesión no autenticada")
        self.sessions[session.id] = session
        self.session_rooms.setdefault(session.id, set())
        logger.info(f"[Realtime] 🔗 Sesión {session.id[:8]} conectada (usuario {session.user_id})")

    def join_room(self, session: RealtimeSession, room_name: str, room_type: Optional[str] = None) -> bool:
        """
        Agrega la sesión a la sala. Es idempotente: devuelve False si ya
        estaba dentro.
        """
        if not isinstance(room_name, str) or not room_name:
            raise ValidationError("Nombre de sala requerido")
        if session.id not in self.sessions:
            raise AuthenticationError("Sesión no autenticada")

        members = self.rooms.setdefault(room_name, set())
        if room_type and room_name not in self.room_types:
            self.room_types[room_name] = room_type
        if session.id in members:
            return False

        members.add(session.id)
        self.session_rooms[session.id].add(room_name)
        logger.debug(f"[Realtime] 👤 {session} se unió a {room_name}")
        return True

    def leave_room(self, session: RealtimeSession, room_name: str) -> bool:
        if not isinstance(room_name, str):
            return False
        members = self.rooms.get(room_name)
        if not members or session.id not in members:
            return False

        members.discard(session.id)
        self.session_rooms.get(session.id, set()).discard(room_name)
        if not members:
            del self.rooms[room_name]
            self.room_types.pop(room_name, None)
        logger.debug(f"[Realtime] 👤 {session} salió de {room_name}")
        return True

    def disconnect(self, session: RealtimeSession):
        """Saca la sesión de todas sus salas. No se avisa a nadie."""
        for room_name in list(self.session_rooms.get(session.id, ())):
            self.leave_room(session, room_name)
        self.session_rooms.pop(session.id, None)
        self.sessions.pop(session.id, None)
        logger.info(f"[Realtime] 🔌 Sesión {session.id[:8]} desconectada")

    def members(self, room_name: str) -> List[RealtimeSession]:
        return [
            self.sessions[session_id]
            for session_id in self.rooms.get(room_name, ())
            if session_id in self.sessions
        ]

    def rooms_of(self, session: RealtimeSession) -> Set[str]:
        return set(self.session_rooms.get(session.id, ()))

    async def deliver(self, rooms: Iterable[str], event: str, payload: dict) -> int:
        """
        Envía el evento una vez a cada sesión presente en alguna de las salas.
        Devuelve cuántas sesiones lo recibieron.
        """
        targets: Dict[str, RealtimeSession] = {}
        for room_name in rooms:
            for session in self.members(room_name):
                targets.setdefault(session.id, session)

        delivered = 0
        for session in targets.values():
            try:
                await session.send(event, payload)
                delivered += 1
            except Exception as e:
                logger.warning(f"[Realtime] ⚠️ No se pudo enviar {event} a {session}: {e}")
        return delivered

    def stats(self) -> dict:
        return {
            "sessions": len(self.sessions),
            "rooms": {name: len(members) for name, members in self.rooms.items()},
        }


# ============================================
# NOTIFICADOR
# ============================================

class RealtimeNotifier:
    """Publica eventos de pedidos y pagos en las salas interesadas"""

    def __init__(self, bus: EventBus):
        self.bus = bus

    async def publish(self, room_name: str, event: str, payload: dict):
        await self.publish_many([room_name], event, payload)

    async def publish_many(self, rooms: Iterable[str], event: str, payload: dict):
        rooms = list(dict.fromkeys(rooms))
        try:
            await self.bus.publish(rooms, event, payload)
        except Exception as e:
            # El cambio ya quedó guardado; el evento perdido solo se nota en el cliente
            logger.error(f"[Realtime] ❌ Error publicando {event} en {rooms}: {e}")

    def _order_rooms(self, order) -> List[str]:
        rooms = [order_room(order.id), user_room(order.user_id), restaurant_room(order.restaurant_id)]
        if order.courier_id:
            rooms.append(delivery_room(order.courier_id))
        return rooms

    async def order_created(self, order):
        await self.publish_many(
            [restaurant_room(order.restaurant_id), user_room(order.user_id)],
            ORDER_CREATED,
            {
                "orderId": order.id,
                "restaurantId": order.restaurant_id,
                "userId": order.user_id,
                "status": order.status,
                "total": str(order.total),
                "timestamp": iso_now(),
            }
        )

    async def order_status_changed(self, order, previous_status: str, actor=None):
        payload = {
            "orderId": order.id,
            "previousStatus": previous_status,
            "newStatus": order.status,
            "version": order.version,
            "timestamp": iso_now(),
        }
        if actor is not None:
            payload["changedBy"] = actor.role
        await self.publish_many(self._order_rooms(order), ORDER_STATUS_UPDATED, payload)

    async def payment_status_changed(self, payment, previous_status: str):
        await self.publish_many(
            [order_room(payment.order_id), user_room(payment.user_id)],
            PAYMENT_STATUS_UPDATED,
            {
                "paymentId": payment.id,
                "orderId": payment.order_id,
                "reference": payment.reference,
                "previousStatus": previous_status,
                "newStatus": payment.status,
                "amount": str(payment.amount),
                "currency": payment.currency,
                "timestamp": iso_now(),
            }
        )

    async def courier_assigned(self, order):
        await self.publish_many(
            self._order_rooms(order),
            COURIER_ASSIGNED,
            {
                "orderId": order.id,
                "courierId": order.courier_id,
                "timestamp": iso_now(),
            }
        )


room_manager = RoomManager()
notifier = RealtimeNotifier(build_event_bus(room_manager))
