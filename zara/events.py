"""
WebSocket broadcast hub.

Clients join rooms on connect (`general`, `role:<ROLE>`, plus a few role
groups). `publish` is safe to call from any thread: the ticker thread hands
frames to the server loop, request handlers running in the threadpool do
the same.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

# event names
PRODUCTION_UPDATED = "machine:production:updated"
PRODUCTION_UPDATE = "production:update"
OPERATION_STARTED = "machine:operation-started"
OPERATION_ENDED = "machine:operation-ended"
STATUS_CHANGED = "machine:status:changed"
SPEED_UPDATED = "machine:production-speed-updated"
NOTIFICATION = "notification"
CONNECTION_ESTABLISHED = "connection:established"

LEADERSHIP_ROLES = ("LEADER", "MANAGER", "ADMIN")
MANAGEMENT_ROLES = ("MANAGER", "ADMIN")

Listener = Callable[[str, Dict[str, Any], str], None]


def rooms_for(role: Optional[str], user_id: Optional[str] = None) -> Set[str]:
    rooms = {"general"}
    if role:
        role = role.upper()
        rooms.add(f"role:{role}")
        if role == "OPERATOR":
            rooms.add("operators")
        if role in LEADERSHIP_ROLES:
            rooms.add("leadership")
        if role in MANAGEMENT_ROLES:
            rooms.add("management")
    if user_id:
        rooms.add(f"user:{user_id}")
    return rooms


def make_frame(event: str, data: Any, ts: Optional[datetime] = None) -> Dict[str, Any]:
    return jsonable_encoder({"event": event, "data": data, "ts": ts or datetime.now()})


class EventHub:
    def __init__(self):
        self._lock = threading.Lock()
        self._clients: Dict[Any, Set[str]] = {}  # websocket -> rooms
        self._listeners: List[Listener] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def connect(self, ws, role: Optional[str] = None, user_id: Optional[str] = None) -> Set[str]:
        rooms = rooms_for(role, user_id)
        with self._lock:
            self._clients[ws] = rooms
        logger.info("WebSocket client joined rooms %s", sorted(rooms))
        return rooms

    def disconnect(self, ws) -> None:
        with self._lock:
            self._clients.pop(ws, None)

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def add_listener(self, listener: Listener) -> None:
        """In-process subscriber, called synchronously with (event, data, room)."""
        self._listeners.append(listener)

    def publish(self, event: str, data: Any, room: str = "general") -> None:
        for listener in list(self._listeners):
            try:
                listener(event, data, room)
            except Exception as e:
                logger.warning("Event listener failed for %s: %s", event, e)

        with self._lock:
            targets = [ws for ws, rooms in self._clients.items() if room in rooms]
        if not targets or self._loop is None or self._loop.is_closed():
            return

        frame = make_frame(event, data)
        coro = self._send_all(targets, frame)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            # the loop only keeps weak references to tasks
            task = self._loop.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            asyncio.run_coroutine_threadsafe(coro, self._loop)

    async def _send_all(self, targets: List[Any], frame: Dict[str, Any]) -> None:
        for ws in targets:
            try:
                await ws.send_json(frame)
            except Exception as e:
                logger.warning("Dropping WebSocket client after send failure: %s", e)
                self.disconnect(ws)
