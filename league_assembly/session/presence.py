"""
Presence Room Registry — which delegations are connected to which room.

A room is a set of live connections keyed by connection id. Rooms exist only
while they have connections: the first connect creates one, the last
disconnect discards it. Nothing here is persisted.

Liveness:
    Each connection gets a watch task that wakes every ``heartbeat_interval``
    seconds. A connection whose last heartbeat is older than
    ``heartbeat_timeout`` is closed with code 4000 and cleaned up.

Cleanup is exactly-once: explicit close, socket error and liveness expiry
all funnel into ``disconnect()``, which is guarded by ``cleaned_up``.

Registry mutations are plain synchronous methods. Only socket I/O
(``broadcast``, closing a stale socket) awaits, so on a single event loop no
mutation is ever observed half-done.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from league_assembly.assembly.schema import PresenceUpdate, SessionEvent

logger = logging.getLogger(__name__)

DEFAULT_ROOM_ID = "presence"
HEARTBEAT_INTERVAL_SECONDS = 5.0
HEARTBEAT_TIMEOUT_SECONDS = 15.0
HEARTBEAT_TIMEOUT_CLOSE_CODE = 4000
MOTION_QUORUM_MINIMUM = 3


@dataclass(eq=False)
class PresenceConnection:
    """One live socket. ``socket`` needs async ``send_text`` and ``close``."""

    connection_id: str
    room_id: str
    socket: Any
    last_heartbeat: float
    country_id: str | None = None
    liveness_task: asyncio.Task | None = None
    cleaned_up: bool = False


class PresenceRegistry:
    """
    Process-wide presence rooms.

    Usage:
        registry = PresenceRegistry()
        connection = registry.connect(websocket, "thread-1")
        registry.start_liveness(connection)
        registry.heartbeat(connection, "fr")
        await registry.broadcast_presence(connection.room_id)
    """

    def __init__(
        self,
        default_room: str = DEFAULT_ROOM_ID,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        heartbeat_timeout: float = HEARTBEAT_TIMEOUT_SECONDS,
        quorum_minimum: int = MOTION_QUORUM_MINIMUM,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_room = default_room
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.quorum_minimum = quorum_minimum
        self.clock = clock
        self.rooms: dict[str, dict[str, PresenceConnection]] = {}

    def resolve_room(self, room_id: str | None) -> str:
        if isinstance(room_id, str) and room_id.strip():
            return room_id.strip()
        return self.default_room

    # ── Membership ──────────────────────────────────────────────

    def connect(self, socket: Any, room_id: str | None = None) -> PresenceConnection:
        """Register a socket under a fresh connection id."""
        room = self.resolve_room(room_id)
        connection = PresenceConnection(
            connection_id=str(uuid.uuid4()),
            room_id=room,
            socket=socket,
            last_heartbeat=self.clock(),
        )
        self.rooms.setdefault(room, {})[connection.connection_id] = connection
        logger.debug("Connection %s joined room %s", connection.connection_id, room)
        return connection

    def heartbeat(self, connection: PresenceConnection, country_id: str | None = None) -> bool:
        """
        Touch liveness and, when given, (re)associate the connection's country.

        Returns:
            True if the connection is still registered.
        """
        if isinstance(country_id, str) and country_id.strip():
            connection.country_id = country_id.strip()
        connection.last_heartbeat = self.clock()
        return self.is_registered(connection)

    def disconnect(self, connection: PresenceConnection) -> bool:
        """
        Remove the connection and stop its liveness watch. Idempotent.

        Returns:
            True only for the call that actually removed it.
        """
        if connection.cleaned_up:
            return False
        connection.cleaned_up = True

        task = connection.liveness_task
        connection.liveness_task = None
        if task is not None and task is not _current_task():
            task.cancel()

        room = self.rooms.get(connection.room_id)
        if room is None or connection.connection_id not in room:
            return False
        del room[connection.connection_id]
        if not room:
            del self.rooms[connection.room_id]
        logger.debug("Connection %s left room %s", connection.connection_id, connection.room_id)
        return True

    def is_registered(self, connection: PresenceConnection) -> bool:
        return connection.connection_id in self.rooms.get(connection.room_id, {})

    def connections(self, room_id: str) -> list[PresenceConnection]:
        return list(self.rooms.get(room_id, {}).values())

    # ── Presence ────────────────────────────────────────────────

    def present_countries(self, room_id: str) -> list[str]:
        """Distinct country ids in the room, in first-seen order."""
        seen: dict[str, None] = {}
        for connection in self.rooms.get(room_id, {}).values():
            if connection.country_id:
                seen.setdefault(connection.country_id, None)
        return list(seen)

    def snapshot(self, room_id: str) -> PresenceUpdate:
        countries = self.present_countries(room_id)
        return PresenceUpdate(
            present_countries=countries,
            present_count=len(countries),
            quorum=len(countries),
            motions_suspended=len(countries) < self.quorum_minimum,
        )

    async def broadcast(self, room_id: str, event: SessionEvent) -> int:
        """
        Send ``event`` to every connection in the room.

        A failed send is logged and skipped. Returns the number of
        successful deliveries.
        """
        message = event.model_dump_json()
        delivered = 0
        for connection in self.connections(room_id):
            try:
                await connection.socket.send_text(message)
            except Exception:
                logger.warning(
                    "Failed to deliver %s to connection %s",
                    event.event, connection.connection_id, exc_info=True,
                )
                continue
            delivered += 1
        return delivered

    async def broadcast_presence(self, room_id: str) -> int:
        if room_id not in self.rooms:
            return 0
        update = self.snapshot(room_id)
        return await self.broadcast(
            room_id,
            SessionEvent(event="presence:update", payload=update.model_dump(by_alias=True)),
        )

    # ── Liveness ────────────────────────────────────────────────

    def start_liveness(self, connection: PresenceConnection) -> asyncio.Task:
        """Start the periodic watch. Must be called from the running loop."""
        connection.liveness_task = asyncio.get_running_loop().create_task(
            self._watch(connection)
        )
        return connection.liveness_task

    def is_stale(self, connection: PresenceConnection) -> bool:
        return self.clock() - connection.last_heartbeat > self.heartbeat_timeout

    async def expire_if_stale(self, connection: PresenceConnection) -> bool:
        """
        Close and clean up a connection that missed its heartbeat window.

        Returns:
            True if the connection was expired by this call.
        """
        if connection.cleaned_up or not self.is_stale(connection):
            return False

        logger.info(
            "Connection %s in room %s timed out (country=%s)",
            connection.connection_id, connection.room_id, connection.country_id,
        )
        try:
            await connection.socket.close(
                code=HEARTBEAT_TIMEOUT_CLOSE_CODE, reason="Heartbeat timeout"
            )
        except Exception:
            logger.warning(
                "Failed to close connection %s", connection.connection_id, exc_info=True
            )

        if self.disconnect(connection):
            await self.broadcast_presence(connection.room_id)
        return True

    async def _watch(self, connection: PresenceConnection) -> None:
        while not connection.cleaned_up:
            await asyncio.sleep(self.heartbeat_interval)
            if await self.expire_if_stale(connection):
                return


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
