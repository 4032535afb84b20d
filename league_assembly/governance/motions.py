"""
Motion Lifecycle Manager — procedural motions and their quorum-driven votes.

Lifecycle:
    PROPOSED ──second──► VOTING ──quorum reached──► PASSED | FAILED
    PROPOSED | VOTING ──withdraw (proposer)──► WITHDRAWN
    any non-final ──chair ruling──► PASSED | FAILED | EXECUTED

Every operation first resolves the acting country (active, unsanctioned) and
computes the motion quorum from the live active-country count:

    required = max(3, ceil(active * 0.5))

When fewer countries are active than the quorum requires, no motion could
ever resolve, so the operation is refused with QuorumUnmet.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from league_assembly.assembly.schema import (
    FINAL_MOTION_STATUSES,
    ChairActionType,
    ChairRuling,
    ModVoteCast,
    MotionContext,
    MotionCreate,
    MotionStatus,
    MotionTally,
    MotionView,
    MotionVoteOutcome,
    utcnow,
)
from league_assembly.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from league_assembly.governance.access import AccessGuard
from league_assembly.governance.tally import tally_motion_votes
from league_assembly.store.database import Database, upsert
from league_assembly.store.models import (
    ChairActionLogDB,
    CountryDB,
    DiscussionPostDB,
    DiscussionThreadDB,
    ModVoteDB,
    MotionDB,
)

logger = logging.getLogger(__name__)


def resolve_motion(tally: MotionTally) -> tuple[MotionStatus, str]:
    """Outcome of a motion vote that reached quorum: strict majority of approvals."""
    if tally.approve > tally.reject:
        return MotionStatus.PASSED, f"Motion passed {tally.summary()}"
    return MotionStatus.FAILED, f"Motion failed {tally.summary()}"


class MotionManager:
    """
    Motion Lifecycle Manager.

    Usage:
        manager = MotionManager(database, guard)
        motion = manager.create(country_id, MotionCreate(type="LOCK_THREAD", ...))
        manager.second(motion.id, other_country_id)
        outcome = manager.vote(motion.id, country_id, ModVoteCast(choice="APPROVE"))
    """

    def __init__(
        self,
        database: Database,
        guard: AccessGuard,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database = database
        self.guard = guard
        self.clock = clock

    def create(self, country_id: str | None, request: MotionCreate) -> MotionView:
        """
        Submit a motion in PROPOSED state.

        Raises:
            NotFoundError: A referenced thread, post or country does not exist.
            ValidationError: The target post is not in the target thread.
        """
        with self.database.SessionLocal() as session:
            country = self.guard.acting_country(session, country_id)
            self.guard.quorum(session)

            if request.target_thread_id and session.get(
                DiscussionThreadDB, request.target_thread_id
            ) is None:
                raise NotFoundError("Target thread not found")

            if request.target_post_id:
                post = session.get(DiscussionPostDB, request.target_post_id)
                if post is None:
                    raise NotFoundError("Target post not found")
                if request.target_thread_id and post.thread_id != request.target_thread_id:
                    raise ValidationError(
                        "Target post must belong to the specified thread",
                        fields={"target_post_id": "Post is not in the target thread"},
                    )

            if request.target_country_id and session.get(
                CountryDB, request.target_country_id
            ) is None:
                raise NotFoundError("Target country not found")

            motion = MotionDB(
                type=request.type.value,
                status=MotionStatus.PROPOSED.value,
                title=request.title,
                description=request.description,
                rationale=request.rationale,
                context=MotionContext.load(request.context).model_dump(),
                target_thread_id=request.target_thread_id,
                target_post_id=request.target_post_id,
                target_country_id=request.target_country_id,
                created_by_country_id=country.id,
                submitted_at=self.clock(),
            )
            session.add(motion)
            session.commit()

            logger.info("Motion %s proposed by %s: %s", motion.id, country.slug, motion.type)
            return MotionView.model_validate(motion)

    def second(self, motion_id: str, country_id: str | None) -> MotionView:
        """
        Second a motion. The first second opens voting.

        Raises:
            ConflictError: Motion not PROPOSED/VOTING, or already seconded
                by this country.
        """
        with self.database.SessionLocal() as session:
            country = self.guard.acting_country(session, country_id)
            self.guard.quorum(session)
            motion = self._load(session, motion_id)

            if motion.status not in (MotionStatus.PROPOSED.value, MotionStatus.VOTING.value):
                raise ConflictError("Motion cannot be seconded in its current state")

            context = MotionContext.load(motion.context)
            if country.id in context.seconds:
                raise ConflictError("Country has already seconded this motion")
            context.seconds.append(country.id)

            if motion.status == MotionStatus.PROPOSED.value:
                motion.status = MotionStatus.VOTING.value
                motion.opened_at = self.clock()
            motion.context = context.model_dump()
            session.commit()

            logger.info(
                "Motion %s seconded by %s (%d seconds, status=%s)",
                motion.id, country.slug, len(context.seconds), motion.status,
            )
            return MotionView.model_validate(motion)

    def vote(self, motion_id: str, country_id: str | None, ballot: ModVoteCast) -> MotionVoteOutcome:
        """
        Record a vote and auto-resolve once total votes reach the quorum.

        Raises:
            ConflictError: Motion is not VOTING.
        """
        with self.database.SessionLocal() as session:
            country = self.guard.acting_country(session, country_id)
            quorum = self.guard.quorum(session)
            motion = self._load(session, motion_id)

            if motion.status != MotionStatus.VOTING.value:
                raise ConflictError("Motion is not open for voting")

            upsert(
                session, ModVoteDB,
                {"motion_id": motion.id, "country_id": country.id},
                {"choice": ballot.choice.value, "comment": ballot.comment},
            )

            choices = session.execute(
                select(ModVoteDB.choice).where(ModVoteDB.motion_id == motion.id)
            ).scalars().all()
            tally = tally_motion_votes(choices)

            if tally.total >= quorum.required:
                status, note = resolve_motion(tally)
                now = self.clock()
                motion.status = status.value
                motion.closed_at = now
                motion.resolved_at = now
                motion.resolution_note = note
                logger.info("Motion %s resolved: %s", motion.id, note)

            session.commit()
            return MotionVoteOutcome(
                motion=MotionView.model_validate(motion),
                tally=tally,
                total_votes=tally.total,
                quorum=quorum.required,
            )

    def withdraw(self, motion_id: str, country_id: str | None, note: str | None = None) -> MotionView:
        """
        Raises:
            ForbiddenError: Acting country is not the proposer.
            ConflictError: Motion already in a final state.
        """
        with self.database.SessionLocal() as session:
            country = self.guard.acting_country(session, country_id)
            self.guard.quorum(session)
            motion = self._load(session, motion_id)

            if motion.created_by_country_id != country.id:
                raise ForbiddenError("Only the proposing country may withdraw the motion")
            if MotionStatus(motion.status) in FINAL_MOTION_STATUSES:
                raise ConflictError("Motion is already resolved")

            now = self.clock()
            motion.status = MotionStatus.WITHDRAWN.value
            motion.closed_at = now
            motion.resolved_at = now
            motion.resolution_note = note
            session.commit()

            logger.info("Motion %s withdrawn by %s", motion.id, country.slug)
            return MotionView.model_validate(motion)

    def chair_rule(self, country_id: str | None, ruling: ChairRuling) -> MotionView:
        """
        Force a motion to a final outcome and record the ruling in the
        chair's audit trail within the same transaction.

        Raises:
            ForbiddenError: Acting country lacks chair privileges.
            NotFoundError: Unknown motion.
            ConflictError: Motion already in a final state.
        """
        with self.database.SessionLocal() as session:
            country = self.guard.acting_country(session, country_id)
            self.guard.quorum(session)
            self.guard.require_chair(country)
            motion = self._load(session, ruling.motion_id)

            if MotionStatus(motion.status) in FINAL_MOTION_STATUSES:
                raise ConflictError("Motion is already resolved")

            now = self.clock()
            motion.status = ruling.outcome.value
            motion.closed_at = now
            motion.resolved_at = now
            motion.resolution_note = ruling.note

            session.add(ChairActionLogDB(
                type=ChairActionType.LOG_NOTE.value,
                actor_country_id=country.id,
                motion_id=motion.id,
                note=ruling.note or f"{ruling.outcome.value} ruling issued",
                details={"outcome": ruling.outcome.value},
                created_at=now,
            ))
            session.commit()

            logger.info(
                "Chair %s ruled motion %s: %s", country.slug, motion.id, ruling.outcome.value
            )
            return MotionView.model_validate(motion)

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _load(session: Session, motion_id: str) -> MotionDB:
        motion = session.execute(
            select(MotionDB).where(MotionDB.id == motion_id).with_for_update()
        ).scalar_one_or_none()
        if motion is None:
            raise NotFoundError("Motion not found")
        return motion
