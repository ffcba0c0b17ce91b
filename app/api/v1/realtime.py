"""
WebSocket de tiempo real para Quiklii

Conexión: /ws?token=<jwt>. El token se valida una sola vez al conectar
(cierre 4401 si falla) y la sesión entra sola a su sala user_{id}.

Mensajes del cliente: {"event": ..., "data": {...}}
- join_room        {"roomName", "roomType"}
- leave_room       {"roomName"}
- ping
- delivery_location_update {"orderId", "lat", "lng"} (solo repartidores)

El socket no retiene conexión a la base: cada consulta abre y cierra su
propia sesión. Un mensaje mal formado recibe un evento error y la
conexión sigue abierta.
"""
import json
import logging
from typing import Any, Optional, Tuple

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import sessionmaker

from app.core.database import get_session_factory
from app.core.exceptions import PermissionDeniedError, QuikliiError, ValidationError
from app.models.order import Order
from app.models.user import UserRole
from app.services.auth_service import AuthService
from app.services.realtime_service import (
    DELIVERY_LOCATION_UPDATED,
    ERROR,
    PONG,
    ROOM_JOINED,
    ROOM_LEFT,
    RealtimeSession,
    notifier,
    order_room,
    room_manager,
    user_room,
)
from app.utils.dates import iso_now

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

AUTH_FAILED_CLOSE_CODE = 4401


async def _send_error(session: RealtimeSession, message: str):
    await session.send(ERROR, {"message": message})


def _room_name(data: dict) -> str:
    room_name = data.get("roomName")
    if not isinstance(room_name, str) or not room_name:
        raise ValidationError("roomName debe ser un texto no vacío")
    return room_name


def _number(data: dict, key: str) -> Any:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{key} debe ser numérico")
    return value


def _authenticate(session_factory: sessionmaker, token: Optional[str]) -> Optional[Tuple[int, str]]:
    if not token:
        return None
    db = session_factory()
    try:
        user = AuthService(db).get_current_user(token)
        return (user.id, user.role) if user else None
    finally:
        db.close()


async def _delivery_location(session: RealtimeSession, data: dict, session_factory: sessionmaker):
    if session.role != UserRole.DELIVERY_PERSON.value:
        raise PermissionDeniedError("Solo los repartidores envían ubicación")

    order_id = data.get("orderId")
    if isinstance(order_id, bool) or not isinstance(order_id, int):
        raise ValidationError("orderId debe ser un entero")
    lat = _number(data, "lat")
    lng = _number(data, "lng")

    db = session_factory()
    try:
        order = db.get(Order, order_id)
        assigned = order is not None and order.courier_id == session.user_id
    finally:
        db.close()
    if not assigned:
        raise PermissionDeniedError("No eres el repartidor de este pedido")

    await notifier.publish(order_room(order_id), DELIVERY_LOCATION_UPDATED, {
        "orderId": order_id,
        "courierId": session.user_id,
        "lat": lat,
        "lng": lng,
        "timestamp": iso_now(),
    })


async def handle_client_message(session: RealtimeSession, message: dict, session_factory: sessionmaker):
    event = message.get("event")
    data = message.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("data debe ser un objeto")

    if event == "join_room":
        room_name = _room_name(data)
        room_type = data.get("roomType")
        if room_type is not None and not isinstance(room_type, str):
            raise ValidationError("roomType debe ser texto")
        joined = room_manager.join_room(session, room_name, room_type)
        await session.send(ROOM_JOINED, {
            "roomName": room_name,
            "roomType": room_type,
            "alreadyMember": not joined,
        })

    elif event == "leave_room":
        room_name = _room_name(data)
        room_manager.leave_room(session, room_name)
        await session.send(ROOM_LEFT, {"roomName": room_name})

    elif event == "ping":
        await session.send(PONG, {"timestamp": iso_now()})

    elif event == "delivery_location_update":
        await _delivery_location(session, data, session_factory)

    else:
        raise ValidationError(f"Evento desconocido: {event}")


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    token: Optional[str] = None,
    session_factory: sessionmaker = Depends(get_session_factory)
):
    identity = _authenticate(session_factory, token)
    if identity is None:
        logger.info("[Realtime] 🚫 Conexión rechazada: token inválido")
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE)
        return

    user_id, role = identity
    await websocket.accept()
    session = RealtimeSession(websocket, user_id, role)
    room_manager.register(session)
    room_manager.join_room(session, user_room(user_id), "user")
    await session.send(ROOM_JOINED, {"roomName": user_room(user_id), "roomType": "user"})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await _send_error(session, "Mensaje no es JSON")
                continue
            if not isinstance(message, dict):
                await _send_error(session, "Mensaje inválido")
                continue
            try:
                await handle_client_message(session, message, session_factory)
            except QuikliiError as e:
                logger.debug(f"[Realtime] Mensaje rechazado de {session}: {e.message}")
                await _send_error(session, e.message)
    except WebSocketDisconnect:
        pass
    finally:
        room_manager.disconnect(session)
