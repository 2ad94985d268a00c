"""
Realtime fan-out of newly created messages to WebSocket observers.

Publishing is best-effort: publish() serializes the message, schedules one
broadcast on the running event loop and returns. A failing observer is logged
and dropped; the others still receive the event. Nothing is retried.
"""

import asyncio
import logging
from typing import Any, Optional, Set

from fastapi import WebSocket

from courier.schemas import MessageResponse, RealtimeEvent

logger = logging.getLogger(__name__)

NEW_MESSAGE_EVENT = "new_message"


class RealtimeNotifier:
    def __init__(self):
        self._connections: Set[WebSocket] = set()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def observer_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        self._connections.add(websocket)
        await websocket.accept()
        logger.info(f"Realtime observer connected ({self.observer_count} total)")

    def disconnect(self, websocket: WebSocket) -> None:
        self._connections.discard(websocket)
        logger.info(f"Realtime observer disconnected ({self.observer_count} total)")

    @staticmethod
    def build_event(message) -> dict[str, Any]:
        data = MessageResponse.model_validate(message)
        return RealtimeEvent(event=NEW_MESSAGE_EVENT, data=data).model_dump(mode="json")

    def publish(self, message) -> Optional[asyncio.Task]:
        """
        Schedule a broadcast of `message` and return without waiting for it.

        The message is serialized immediately, so the caller's database
        session may be closed before the broadcast runs.
        """
        try:
            event = self.build_event(message)
            loop = asyncio.get_running_loop()
        except Exception as e:
            logger.error(f"Realtime publish skipped: {e}")
            return None

        task = loop.create_task(self.broadcast(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def broadcast(self, event: dict[str, Any]) -> int:
        """Send `event` to every observer; returns how many received it."""
        delivered = 0
        for websocket in list(self._connections):
            try:
                await websocket.send_json(event)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping realtime observer after failed send: {e}")
                self._connections.discard(websocket)
        logger.debug(f"Broadcast '{event.get('event')}' to {delivered} observer(s)")
        return delivered
