from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger("app.mobile.push")


class PushSocket(Protocol):
    async def send_json(self, data: Any, mode: str = "text") -> None: ...


@dataclass
class _Channel:
    connection_id: str
    socket: PushSocket
    loop: asyncio.AbstractEventLoop


class MobileChannelRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._channels: dict[str, _Channel] = {}

    def register(self, user_id: uuid.UUID | str, socket: PushSocket, loop: asyncio.AbstractEventLoop) -> str:
        connection_id = uuid.uuid4().hex
        with self._lock:
            self._channels[str(user_id)] = _Channel(connection_id=connection_id, socket=socket, loop=loop)
        logger.info("mobile.push.registered", extra={"user_id": str(user_id)})
        return connection_id

    def unregister(self, user_id: uuid.UUID | str, connection_id: str | None = None) -> None:
        key = str(user_id)
        with self._lock:
            current = self._channels.get(key)
            if current is None:
                return
            # A reconnect may already have replaced this socket.
            if connection_id is not None and current.connection_id != connection_id:
                return
            del self._channels[key]
        logger.info("mobile.push.unregistered", extra={"user_id": key})

    def is_connected(self, user_id: uuid.UUID | str) -> bool:
        with self._lock:
            return str(user_id) in self._channels

    def connected_user_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._channels)

    def send(self, user_id: uuid.UUID | str, event: str, payload: dict[str, Any]) -> bool:
        with self._lock:
            channel = self._channels.get(str(user_id))
        if channel is None:
            logger.info("mobile.push.not_connected", extra={"user_id": str(user_id)})
            return False

        message = {"event": event, "data": payload}
        try:
            future = asyncio.run_coroutine_threadsafe(channel.socket.send_json(message), channel.loop)
        except RuntimeError as exc:
            logger.warning("mobile.push.loop_closed", extra={"user_id": str(user_id), "error": str(exc)})
            self.unregister(user_id, channel.connection_id)
            return False
        future.add_done_callback(lambda done: _log_delivery_failure(str(user_id), done))
        return True


def _log_delivery_failure(user_id: str, future: Any) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("mobile.push.delivery_failed", extra={"user_id": user_id, "error": str(exc)})


registry = MobileChannelRegistry()


def get_push_registry() -> MobileChannelRegistry:
    return registry
