"""
Chair Desk — emergency moderation powers and the chair's audit trail.

The chair (a veto-holding country, or the country whose slug is ``chair``)
may act on a discussion directly, without a motion:

- LOCK_THREAD / UNLOCK_THREAD
- PIN_THREAD / UNPIN_THREAD
- ARCHIVE_THREAD (``archived`` defaults to True; False un-archives)
- RESTORE_POST (undo a soft delete)

Each action writes exactly one ChairActionLog entry in the same transaction
as the change itself. The log is append-only: this module inserts and reads,
nothing in the codebase updates or deletes an entry.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from league_assembly.assembly.schema import (
    ArchiveThread,
    ChairActionType,
    ChairActionView,
    EmergencyAction,
    LockThread,
    PinThread,
    PostView,
    RestorePost,
    ThreadView,
    UnlockThread,
    UnpinThread,
    utcnow,
)
from league_assembly.errors import NotFoundError
from league_assembly.governance.access import AccessGuard
from league_assembly.store.database import Database
from league_assembly.store.models import ChairActionLogDB, DiscussionPostDB, DiscussionThreadDB

logger = logging.getLogger(__name__)

DEFAULT_LOG_LIMIT = 50


class ChairDesk:
    """Executes chair emergency actions and reads back the audit trail."""

    def __init__(
        self,
        database: Database,
        guard: AccessGuard,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database = database
        self.guard = guard
        self.clock = clock

    def emergency(self, country_id: str | None, action: EmergencyAction) -> ThreadView | PostView:
        """
        Apply one emergency action.

        Returns:
            The updated thread, or the restored post for RESTORE_POST.

        Raises:
            ForbiddenError: Acting country is not the chair.
            NotFoundError: Target thread or post does not exist.
        """
        with self.database.SessionLocal() as session:
            country = self.guard.acting_country(session, country_id)
            self.guard.quorum(session)
            self.guard.require_chair(country)
            now = self.clock()

            if isinstance(action, RestorePost):
                post = session.get(DiscussionPostDB, action.post_id)
                if post is None:
                    raise NotFoundError("Post not found")
                post.is_deleted = False
                post.deleted_at = None
                self._record(
                    session, ChairActionType.RESTORE_POST, country.id, now, action.note,
                    {"action": action.action},
                    thread_id=post.thread_id, post_id=post.id,
                )
                session.commit()
                logger.info("Chair %s restored post %s", country.slug, post.id)
                return PostView.model_validate(post)

            thread = session.get(DiscussionThreadDB, action.thread_id)
            if thread is None:
                raise NotFoundError("Thread not found")

            extra: dict[str, Any] = {}
            if isinstance(action, LockThread):
                thread.is_locked = True
            elif isinstance(action, UnlockThread):
                thread.is_locked = False
            elif isinstance(action, PinThread):
                thread.is_pinned = True
            elif isinstance(action, UnpinThread):
                thread.is_pinned = False
            elif isinstance(action, ArchiveThread):
                thread.is_archived = action.archived
                extra["archived"] = action.archived

            self._record(
                session, ChairActionType(action.action), country.id, now, action.note,
                {"action": action.action, **extra, "timestamp": now.isoformat()},
                thread_id=thread.id,
            )
            session.commit()

            logger.info("Chair %s applied %s to thread %s", country.slug, action.action, thread.id)
            return ThreadView.model_validate(thread)

    def list_actions(self, limit: int = DEFAULT_LOG_LIMIT) -> list[ChairActionView]:
        """Most recent audit entries first."""
        with self.database.SessionLocal() as session:
            rows = session.execute(
                select(ChairActionLogDB)
                .order_by(ChairActionLogDB.created_at.desc())
                .limit(max(limit, 0))
            ).scalars().all()
            return [ChairActionView.model_validate(row) for row in rows]

    @staticmethod
    def _record(
        session: Session,
        action_type: ChairActionType,
        actor_country_id: str,
        now: datetime,
        note: str | None,
        details: dict[str, Any],
        thread_id: str | None = None,
        post_id: str | None = None,
    ) -> None:
        session.add(ChairActionLogDB(
            type=action_type.value,
            actor_country_id=actor_country_id,
            thread_id=thread_id,
            post_id=post_id,
            note=note,
            details=details,
            created_at=now,
        ))
