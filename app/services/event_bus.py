"""
Bus de eventos en tiempo real

Cada proceso guarda en memoria qué sesiones están en qué sala. El bus decide
cómo llega un evento a esas salas:

- InMemoryEventBus: entrega directa a las sesiones de este proceso.
- RedisEventBus: publica en un canal de Redis; cada instancia está suscrita
  y entrega a sus propias sesiones, así un cliente recibe el evento sin
  importar a qué proceso esté conectado.
"""
import asyncio
import json
import logging
from typing import Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from app.core.config import settings

logger = logging.getLogger(__name__)


class EventBus:
    """Interfaz común de los buses"""

    def __init__(self, room_manager):
        self.room_manager = room_manager

    async def start(self):
        pass

    async def stop(self):
        pass

    async def publish(self, rooms: Iterable[str], event: str, payload: dict):
        raise NotImplementedError


class InMemoryEventBus(EventBus):
    async def publish(self, rooms: Iterable[str], event: str, payload: dict):
        await self.room_manager.deliver(list(rooms), event, payload)


class RedisEventBus(EventBus):
    def __init__(self, room_manager, redis_url: str, channel: str, reconnect_delay: Optional[float] = None):
        super().__init__(room_manager)
        self.redis_url = redis_url
        self.channel = channel
        self.reconnect_delay = (
            settings.REALTIME_RECONNECT_SECONDS if reconnect_delay is None else reconnect_delay
        )
        self.redis_client: Optional[redis.Redis] = None
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    async def start(self):
        if self.redis_client is not None:
            return
        self.redis_client = redis.from_url(self.redis_url, decode_responses=True)
        await self.redis_client.ping()
        await self._subscribe()
        self._listener = asyncio.create_task(self._listen())
        self._listener.add_done_callback(self._listener_done)
        logger.info(f"[Realtime] ✅ Suscrito a Redis canal={self.channel}")

    async def stop(self):
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
        logger.info("[Realtime] Conexión Redis cerrada")

    async def publish(self, rooms: Iterable[str], event: str, payload: dict):
        if self.redis_client is None:
            raise RuntimeError("RedisEventBus no iniciado")
        message = json.dumps(
            {"rooms": list(rooms), "event": event, "payload": payload},
            default=str
        )
        await self.redis_client.publish(self.channel, message)

    async def _subscribe(self):
        self._pubsub = self.redis_client.pubsub()
        await self._pubsub.subscribe(self.channel)

    async def _drop_subscription(self):
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.debug(f"[Realtime] Cierre de suscripción caída: {e}")

    async def _listen(self):
        """Escucha el canal; si la conexión cae espera y se vuelve a suscribir"""
        while True:
            try:
                if self._pubsub is None:
                    await self._subscribe()
                    logger.info(f"[Realtime] 🔁 Re-suscrito a Redis canal={self.channel}")
                await self._consume()
                logger.warning(f"[Realtime] ⚠️ La suscripción a {self.channel} terminó, reconectando")
            except Exception:
                logger.exception(
                    f"[Realtime] ❌ Error escuchando {self.channel}, reintento en {self.reconnect_delay}s"
                )
            await self._drop_subscription()
            await asyncio.sleep(self.reconnect_delay)

    async def _consume(self):
        async for message in self._pubsub.listen():
            if message.get("type") == "message":
                await self._deliver(message["data"])

    async def _deliver(self, raw: str):
        try:
            data = json.loads(raw)
            rooms, event, payload = data["rooms"], data["event"], data["payload"]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"[Realtime] Mensaje inválido en {self.channel}: {e!r}")
            return
        valid_rooms = isinstance(rooms, list) and all(isinstance(r, str) for r in rooms)
        if not valid_rooms or not isinstance(event, str) or not isinstance(payload, dict):
            logger.warning(f"[Realtime] Mensaje con forma inválida en {self.channel}")
            return
        await self.room_manager.deliver(rooms, event, payload)

    def _listener_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[Realtime] ❌ El listener de Redis se detuvo: {exc!r}")


def build_event_bus(room_manager) -> EventBus:
    """Elige el bus según REALTIME_BACKEND"""
    backend = settings.REALTIME_BACKEND.lower()
    if backend == "redis":
        return RedisEventBus(room_manager, settings.REDIS_URL, settings.REALTIME_CHANNEL)
    if backend != "memory":
        logger.warning(f"[Realtime] REALTIME_BACKEND desconocido '{backend}', usando memoria")
    return InMemoryEventBus(room_manager)
