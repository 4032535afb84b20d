"""
Speaker Queue — who is waiting for the floor in a debate thread, and who has it.

State per thread:
    queue       FIFO of (country_id, requested_at)
    recognized  the country currently holding the floor, or None
    updated_at  epoch milliseconds of the last change

Queues are created lazily on first access and live only in process memory.
They are independent of presence: a country may stay queued after its
connection drops.

All operations are synchronous and complete without yielding, so on a single
event loop no two mutations ever interleave.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from league_assembly.assembly.schema import QueueSnapshot
from league_assembly.errors import ValidationError

logger = logging.getLogger(__name__)


def epoch_millis() -> int:
    return int(time.time() * 1000)


def _clean(value: str | None) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass
class QueueEntry:
    country_id: str
    requested_at: int


@dataclass
class SpeakerQueue:
    thread_id: str
    updated_at: int
    entries: list[QueueEntry] = field(default_factory=list)
    recognized: str | None = None

    def __contains__(self, country_id: str) -> bool:
        return any(entry.country_id == country_id for entry in self.entries)

    def remove(self, country_id: str) -> bool:
        before = len(self.entries)
        self.entries = [e for e in self.entries if e.country_id != country_id]
        return len(self.entries) != before

    def serialize(self) -> QueueSnapshot:
        return QueueSnapshot(
            thread_id=self.thread_id,
            queue=[entry.country_id for entry in self.entries],
            recognized=self.recognized,
            updated_at=self.updated_at,
        )


class SpeakerQueueRegistry:
    """
    Per-thread speaker queues.

    Usage:
        queues = SpeakerQueueRegistry()
        queues.request("thread-1", "fr")
        queues.recognize("thread-1")          # fr takes the floor
        queues.skip("thread-1")               # floor cleared
    """

    def __init__(self, clock: Callable[[], int] = epoch_millis) -> None:
        self.clock = clock
        self.queues: dict[str, SpeakerQueue] = {}

    def get(self, thread_id: str) -> SpeakerQueue:
        """Return the thread's queue, creating an empty one on first use."""
        key = _clean(thread_id)
        if key is None:
            raise ValidationError("threadId is required", fields={"threadId": "Required"})
        queue = self.queues.get(key)
        if queue is None:
            queue = SpeakerQueue(thread_id=key, updated_at=self.clock())
            self.queues[key] = queue
        return queue

    def request(self, thread_id: str, country_id: str) -> SpeakerQueue:
        """Append to the tail. No-op if already queued or already recognized."""
        queue = self.get(thread_id)
        country = _clean(country_id)
        if country is None:
            raise ValidationError("countryId is required", fields={"countryId": "Required"})

        if queue.recognized == country or country in queue:
            return queue

        now = self.clock()
        queue.entries.append(QueueEntry(country_id=country, requested_at=now))
        queue.updated_at = now
        logger.debug("Queue %s: %s requested the floor", queue.thread_id, country)
        return queue

    def recognize(self, thread_id: str, country_id: str | None = None) -> SpeakerQueue:
        """
        Give the floor to ``country_id`` (pulled from anywhere in the queue)
        or, without a target, to the head of the queue. With neither a target
        nor anyone waiting, the floor is cleared.
        """
        queue = self.get(thread_id)
        target = _clean(country_id)
        if target is None and queue.entries:
            target = queue.entries[0].country_id

        if target == queue.recognized:
            return queue

        if target is not None:
            queue.remove(target)
        queue.recognized = target
        queue.updated_at = self.clock()
        logger.debug("Queue %s: floor to %s", queue.thread_id, target)
        return queue

    def skip(self, thread_id: str, country_id: str | None = None) -> SpeakerQueue:
        """
        With a target: drop it from the queue and from the floor.
        Without: clear the floor if held, otherwise drop the head.
        """
        queue = self.get(thread_id)
        target = _clean(country_id)
        changed = False

        if target is not None:
            changed = queue.remove(target)
            if queue.recognized == target:
                queue.recognized = None
                changed = True
        elif queue.recognized is not None:
            queue.recognized = None
            changed = True
        elif queue.entries:
            queue.entries.pop(0)
            changed = True

        if changed:
            queue.updated_at = self.clock()
        return queue

    def serialize(self, thread_id: str) -> QueueSnapshot:
        return self.get(thread_id).serialize()
