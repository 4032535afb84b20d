"""
Amendment Lifecycle Manager — create, vote on and apply treaty amendments.

Lifecycle:
    OPEN ──(window expires / manual close)──► CLOSED (PASSED | FAILED)

An amendment is voted on while OPEN and inside its window. Closing is the
Resolution Engine's job; this manager only refuses votes once the window is
over, even before the sweep has noticed. A PASSED amendment may then be
applied to the treaty text exactly once.

Operations:
- create:      snapshot eligible_count, open a 24h window
- cast_vote:   upsert one vote per (amendment, country); ABSENT deletes it
- close:       finalize ahead of the window
- apply:       ADD / EDIT / REMOVE an article, keeping orders contiguous
- get_amendment: read model with the live tally
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from league_assembly.assembly.schema import (
    AmendmentCreate,
    AmendmentOp,
    AmendmentResult,
    AmendmentStatus,
    AmendmentView,
    BallotChoice,
    FinalizedAmendment,
    Tally,
    VoteCast,
    VoteOutcome,
    VoteView,
    utcnow,
)
from league_assembly.errors import ConflictError, NotFoundError, ValidationError
from league_assembly.governance.access import AccessGuard
from league_assembly.governance.resolution import DEFAULT_THRESHOLD, ResolutionEngine
from league_assembly.governance.tally import tally_votes
from league_assembly.store.database import Database, upsert
from league_assembly.store.models import AmendmentDB, ArticleDB, TreatyDB, VoteDB

logger = logging.getLogger(__name__)

DEFAULT_VOTING_HOURS = 24
DEFAULT_TREATY_SLUG = "league-treaty-1900"

_SLUG_NUMBER = re.compile(r"^amendment-(\d+)$")


class AmendmentManager:
    """
    Amendment Lifecycle Manager.

    Usage:
        manager = AmendmentManager(database, guard, engine)
        view = manager.create(country_id, AmendmentCreate(...))
        manager.cast_vote(view.slug, other_country_id, VoteCast(choice="AYE"))
    """

    def __init__(
        self,
        database: Database,
        guard: AccessGuard,
        resolution_engine: ResolutionEngine,
        voting_hours: int = DEFAULT_VOTING_HOURS,
        threshold: Fraction | float = DEFAULT_THRESHOLD,
        quorum: int = 0,
        default_treaty_slug: str = DEFAULT_TREATY_SLUG,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database = database
        self.guard = guard
        self.resolution_engine = resolution_engine
        self.voting_hours = voting_hours
        self.threshold = threshold
        self.quorum = quorum
        self.default_treaty_slug = default_treaty_slug
        self.clock = clock

    # ════════════════════════════════════════════════════════════
    # Create
    # ════════════════════════════════════════════════════════════

    def create(self, country_id: str | None, request: AmendmentCreate) -> AmendmentView:
        """
        Open a new amendment for voting.

        Raises:
            ForbiddenError: Acting country missing, inactive or sanctioned.
            ValidationError: Title blank or op-specific fields missing.
            NotFoundError: Treaty or target article does not exist.
        """
        with self.database.SessionLocal() as session:
            country = self.guard.acting_country(session, country_id)

            missing = request.missing_fields()
            if missing:
                raise ValidationError("Invalid amendment", fields=missing)

            treaty_slug = request.treaty_slug or self.default_treaty_slug
            treaty = session.execute(
                select(TreatyDB).where(TreatyDB.slug == treaty_slug)
            ).scalar_one_or_none()
            if treaty is None:
                raise NotFoundError("Treaty not found")

            if request.target_article_id:
                article = session.get(ArticleDB, request.target_article_id)
                if article is None or article.treaty_id != treaty.id:
                    raise NotFoundError("Target article not found")

            now = self.clock()
            amendment = AmendmentDB(
                slug=self._next_slug(session),
                title=request.title.strip(),
                rationale=request.rationale,
                op=request.op.value,
                treaty_id=treaty.id,
                target_article_id=request.target_article_id,
                new_heading=request.new_heading,
                new_body=request.new_body,
                new_order=request.new_order,
                status=AmendmentStatus.OPEN.value,
                eligible_count=Database.count_active_countries(session),
                threshold=float(self.threshold),
                quorum=self.quorum,
                opens_at=now,
                closes_at=now + timedelta(hours=self.voting_hours),
                proposer_country_id=country.id,
                created_at=now,
            )
            session.add(amendment)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("Amendment slug already taken; retry") from exc

            logger.info(
                "Amendment %s opened by %s: op=%s eligible=%d closes_at=%s",
                amendment.slug, country.slug, amendment.op,
                amendment.eligible_count, amendment.closes_at.isoformat(),
            )
            return self._view(session, amendment)

    # ════════════════════════════════════════════════════════════
    # Vote
    # ════════════════════════════════════════════════════════════

    def cast_vote(self, slug: str, country_id: str | None, ballot: VoteCast) -> VoteOutcome:
        """
        Record, change or withdraw (ABSENT) a country's vote.

        Sanctioned countries keep their vote; only proposing and moderating
        are barred by a sanction.

        Raises:
            ForbiddenError: No usable acting country.
            NotFoundError: Unknown amendment.
            ConflictError: Amendment closed or outside its voting window.
        """
        with self.database.SessionLocal() as session:
            country = self.guard.acting_country(session, country_id, allow_sanctioned=True)
            amendment = self._by_slug(session, slug)

            if amendment.status != AmendmentStatus.OPEN.value:
                raise ConflictError("Voting is closed")
            now = self.clock()
            if amendment.opens_at is not None and now < amendment.opens_at:
                raise ConflictError("Voting not open yet")
            if amendment.closes_at is not None and now > amendment.closes_at:
                raise ConflictError("Voting period ended")

            keys = {"amendment_id": amendment.id, "country_id": country.id}
            if ballot.choice == BallotChoice.ABSENT:
                session.execute(delete(VoteDB).filter_by(**keys))
            else:
                upsert(
                    session, VoteDB, keys,
                    {"choice": ballot.choice.value, "comment": ballot.comment, "updated_at": now},
                )
            session.commit()

            vote = session.execute(select(VoteDB).filter_by(**keys)).scalar_one_or_none()
            logger.info(
                "Vote on %s by %s: %s", amendment.slug, country.slug, ballot.choice.value
            )
            return VoteOutcome(
                vote=VoteView.model_validate(vote) if vote is not None else None,
                tally=self._tally(session, amendment),
            )

    # ════════════════════════════════════════════════════════════
    # Close and apply
    # ════════════════════════════════════════════════════════════

    def close(self, slug: str, country_id: str | None) -> FinalizedAmendment:
        """
        Close an amendment ahead of its window on behalf of a country.

        Raises:
            ForbiddenError: No usable acting country.
            NotFoundError: Unknown slug.
            ConflictError: Already closed.
        """
        with self.database.SessionLocal() as session:
            country = self.guard.acting_country(session, country_id, allow_sanctioned=True)
            acting = country.slug

        record = self.resolution_engine.close_amendment(slug)
        logger.info("Amendment %s closed early by %s", slug, acting)
        return record

    def apply(self, slug: str, country_id: str | None) -> AmendmentView:
        """
        Write a PASSED amendment into the treaty text.

        The expiry sweep runs for this slug first, so an amendment whose
        window has just lapsed is finalized before the check.

        Raises:
            ForbiddenError: No usable acting country.
            NotFoundError: Unknown amendment or missing target article.
            ValidationError: ADD without heading or body.
            ConflictError: Not CLOSED and PASSED, or already applied.
        """
        with self.database.SessionLocal() as session:
            self.guard.acting_country(session, country_id, allow_sanctioned=True)

        self.resolution_engine.close_expired_amendments(slug)

        with self.database.SessionLocal() as session:
            amendment = self._by_slug(session, slug)
            if (
                amendment.status != AmendmentStatus.CLOSED.value
                or amendment.result != AmendmentResult.PASSED.value
            ):
                raise ConflictError("Amendment not passed")
            if amendment.applied_at is not None:
                raise ConflictError("Amendment already applied")

            op = AmendmentOp(amendment.op)
            if op is AmendmentOp.ADD:
                self._insert_article(session, amendment)
            elif op is AmendmentOp.EDIT:
                self._edit_article(session, amendment)
            else:
                self._remove_article(session, amendment)

            now = self.clock()
            marked = session.execute(
                update(AmendmentDB)
                .where(AmendmentDB.id == amendment.id, AmendmentDB.applied_at.is_(None))
                .values(applied_at=now)
                .execution_options(synchronize_session=False)
            )
            if marked.rowcount == 0:
                session.rollback()
                raise ConflictError("Amendment already applied")
            session.commit()
            amendment.applied_at = now

            logger.info("Amendment %s applied: op=%s", amendment.slug, op.value)
            return self._view(session, amendment)

    # ════════════════════════════════════════════════════════════
    # Read
    # ════════════════════════════════════════════════════════════

    def get_amendment(self, slug: str) -> AmendmentView:
        with self.database.SessionLocal() as session:
            return self._view(session, self._by_slug(session, slug))

    # ── Internal ────────────────────────────────────────────────

    def _by_slug(self, session: Session, slug: str) -> AmendmentDB:
        amendment = session.execute(
            select(AmendmentDB).where(AmendmentDB.slug == slug)
        ).scalar_one_or_none()
        if amendment is None:
            raise NotFoundError("Amendment not found")
        return amendment

    def _next_slug(self, session: Session) -> str:
        highest = 0
        for slug in session.execute(select(AmendmentDB.slug)).scalars():
            match = _SLUG_NUMBER.match(slug)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"amendment-{highest + 1}"

    def _tally(self, session: Session, amendment: AmendmentDB) -> Tally:
        choices = session.execute(
            select(VoteDB.choice).where(VoteDB.amendment_id == amendment.id)
        ).scalars().all()
        eligible = amendment.eligible_count
        if eligible is None:
            eligible = Database.count_active_countries(session)
        return tally_votes(choices, eligible=eligible)

    def _view(self, session: Session, amendment: AmendmentDB) -> AmendmentView:
        view = AmendmentView.model_validate(amendment)
        view.tally = self._tally(session, amendment)
        return view

    def _target_article(self, session: Session, amendment: AmendmentDB) -> ArticleDB:
        article = (
            session.get(ArticleDB, amendment.target_article_id)
            if amendment.target_article_id else None
        )
        if article is None or article.treaty_id != amendment.treaty_id:
            raise NotFoundError("Target article not found")
        return article

    def _insert_article(self, session: Session, amendment: AmendmentDB) -> None:
        missing: dict[str, str] = {}
        if not amendment.new_heading:
            missing["new_heading"] = "new_heading is required for ADD"
        if not amendment.new_body:
            missing["new_body"] = "new_body is required for ADD"
        if missing:
            raise ValidationError("Missing content", fields=missing)

        count = session.execute(
            select(func.count()).select_from(ArticleDB)
            .where(ArticleDB.treaty_id == amendment.treaty_id)
        ).scalar() or 0

        order = count + 1
        if amendment.new_order is not None:
            order = min(max(amendment.new_order, 1), count + 1)
            session.execute(
                update(ArticleDB)
                .where(ArticleDB.treaty_id == amendment.treaty_id, ArticleDB.order >= order)
                .values(order=ArticleDB.order + 1)
                .execution_options(synchronize_session=False)
            )

        session.add(ArticleDB(
            treaty_id=amendment.treaty_id,
            order=order,
            heading=amendment.new_heading,
            body=amendment.new_body,
        ))

    def _edit_article(self, session: Session, amendment: AmendmentDB) -> None:
        article = self._target_article(session, amendment)
        if amendment.new_heading:
            article.heading = amendment.new_heading
        if amendment.new_body:
            article.body = amendment.new_body

    def _remove_article(self, session: Session, amendment: AmendmentDB) -> None:
        article = self._target_article(session, amendment)
        removed_order = article.order
        session.delete(article)
        session.flush()
        session.execute(
            update(ArticleDB)
            .where(
                ArticleDB.treaty_id == amendment.treaty_id,
                ArticleDB.order > removed_order,
            )
            .values(order=ArticleDB.order - 1)
            .execution_options(synchronize_session=False)
        )
