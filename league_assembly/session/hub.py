"""
Session Hub — the real-time gateway tying presence and speaker queues together.

One hub is built at process start and handed to every request handler; it
owns both registries, so there is no module-level state.

Inbound messages are JSON envelopes ``{"event": ..., "payload": {...}}``:

    presence:heartbeat  {countryId}
    queue:request       {threadId?, countryId?}
    queue:recognize     {threadId?, countryId?}
    queue:skip          {threadId?, countryId?}

For all three queue events ``countryId`` defaults to the connection's own
country. A request with no country at all is dropped. A bare recognize
takes the head of the queue and a bare skip clears the floor.

``threadId`` defaults to the connection's room unless that is the default
presence room. The channel is best-effort: malformed JSON, unknown events
and unusable payloads are logged and dropped without a reply.

Outbound:
    presence:update  to the room whose membership or identities changed
    queue:update     to the room whose id equals the thread id
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError as PayloadError

from league_assembly.assembly.schema import PresenceUpdate, QueueSnapshot, SessionEvent
from league_assembly.errors import AssemblyError
from league_assembly.session.presence import PresenceConnection, PresenceRegistry
from league_assembly.session.speaker_queue import SpeakerQueueRegistry

logger = logging.getLogger(__name__)


def _text(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class SessionHub:
    def __init__(
        self,
        presence: PresenceRegistry | None = None,
        queues: SpeakerQueueRegistry | None = None,
    ) -> None:
        self.presence = presence or PresenceRegistry()
        self.queues = queues or SpeakerQueueRegistry()

    # ════════════════════════════════════════════════════════════
    # Connection lifecycle
    # ════════════════════════════════════════════════════════════

    async def open(self, socket: Any, room_id: str | None = None) -> PresenceConnection:
        """Register an accepted socket, start its liveness watch and announce it."""
        connection = self.presence.connect(socket, room_id)
        self.presence.start_liveness(connection)
        await self.presence.broadcast_presence(connection.room_id)
        return connection

    async def close(self, connection: PresenceConnection) -> None:
        if self.presence.disconnect(connection):
            await self.presence.broadcast_presence(connection.room_id)

    async def heartbeat(self, connection: PresenceConnection, country_id: str | None) -> None:
        if self.presence.heartbeat(connection, country_id):
            await self.presence.broadcast_presence(connection.room_id)

    def presence_snapshot(self, room_id: str | None) -> PresenceUpdate:
        return self.presence.snapshot(self.presence.resolve_room(room_id))

    # ════════════════════════════════════════════════════════════
    # Speaker queue
    # ════════════════════════════════════════════════════════════

    async def queue_request(self, thread_id: str, country_id: str) -> QueueSnapshot:
        return await self._publish(self.queues.request(thread_id, country_id).serialize())

    async def queue_recognize(self, thread_id: str, country_id: str | None = None) -> QueueSnapshot:
        return await self._publish(self.queues.recognize(thread_id, country_id).serialize())

    async def queue_skip(self, thread_id: str, country_id: str | None = None) -> QueueSnapshot:
        return await self._publish(self.queues.skip(thread_id, country_id).serialize())

    def queue_snapshot(self, thread_id: str) -> QueueSnapshot:
        return self.queues.serialize(thread_id)

    async def _publish(self, snapshot: QueueSnapshot) -> QueueSnapshot:
        await self.presence.broadcast(
            snapshot.thread_id,
            SessionEvent(event="queue:update", payload=snapshot.model_dump(by_alias=True)),
        )
        return snapshot

    # ════════════════════════════════════════════════════════════
    # Inbound messages
    # ════════════════════════════════════════════════════════════

    async def handle_message(self, connection: PresenceConnection, raw: str) -> None:
        try:
            message = SessionEvent.model_validate_json(raw)
        except PayloadError:
            logger.debug("Dropped malformed message on %s", connection.connection_id)
            return

        payload = message.payload if isinstance(message.payload, dict) else {}

        if message.event == "presence:heartbeat":
            if not isinstance(message.payload, dict):
                return
            await self.heartbeat(connection, _text(payload, "countryId"))
            return

        if message.event not in ("queue:request", "queue:recognize", "queue:skip"):
            logger.debug("Ignored unknown event %r", message.event)
            return

        thread_id = _text(payload, "threadId") or self._room_thread(connection)
        if thread_id is None:
            logger.debug("Dropped %s without a thread", message.event)
            return
        country_id = _text(payload, "countryId") or connection.country_id

        try:
            if message.event == "queue:request":
                if country_id is None:
                    logger.debug("Dropped queue:request without a country")
                    return
                await self.queue_request(thread_id, country_id)
            elif message.event == "queue:recognize":
                await self.queue_recognize(thread_id, country_id)
            else:
                await self.queue_skip(thread_id, country_id)
        except AssemblyError as exc:
            logger.warning("Failed to process %s: %s", message.event, exc.message)

    def _room_thread(self, connection: PresenceConnection) -> str | None:
        if connection.room_id and connection.room_id != self.presence.default_room:
            return connection.room_id
        return None
