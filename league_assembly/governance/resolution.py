"""
Resolution Engine — decides PASSED / FAILED and closes amendments.

Decision order (first matching rule wins):
1. Veto    — any veto-holding country voted NAY
2. Quorum  — fewer votes cast than the amendment's quorum
3. Threshold met — AYE >= ceil(eligible * threshold) → PASSED
4. Threshold not met → FAILED

The OPEN → CLOSED transition is a single conditional UPDATE that only
matches while the row is still OPEN. Two sweepers (or a sweep overlapping a
manual close) may both evaluate the same amendment, but only one of them
writes; the other sees zero affected rows and reports that the amendment was
already finalized.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from fractions import Fraction
from typing import Callable, Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from league_assembly.assembly.schema import (
    AmendmentStatus,
    Decision,
    FinalizedAmendment,
    Tally,
    VoteChoice,
    utcnow,
)
from league_assembly.errors import ConflictError, NotFoundError
from league_assembly.governance.tally import tally_votes
from league_assembly.store.database import Database
from league_assembly.store.models import AmendmentDB, CountryDB, VoteDB

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = Fraction(2, 3)


def votes_needed(eligible: int, threshold: float | Fraction | None) -> int:
    """
    ``ceil(eligible * threshold)`` computed exactly.

    Thresholds are stored as floats, so 2/3 arrives as 0.666…; recovering the
    fraction keeps 9 × 2/3 at exactly 6 instead of 6.000…1.
    """
    if threshold is None:
        threshold = DEFAULT_THRESHOLD
    exact = Fraction(threshold).limit_denominator(1000)
    return math.ceil(eligible * exact)


def evaluate(
    tally: Tally,
    eligible: int,
    threshold: float | Fraction | None = None,
    quorum: int | None = None,
    veto_names: Iterable[str] = (),
) -> Decision:
    """
    Pure decision over a tally. Deterministic for any vote set, including an
    empty one (AYE = 0 fails the threshold unless nothing is needed).
    """
    needed = votes_needed(eligible, threshold)
    vetoes = sorted(set(veto_names))

    if vetoes:
        return Decision(
            passed=False, reason=f"Veto by {', '.join(vetoes)}",
            needed=needed, eligible=eligible,
        )

    required = quorum or 0
    if tally.cast < required:
        return Decision(
            passed=False, reason=f"Quorum not met: {tally.cast} of {required} required",
            needed=needed, eligible=eligible,
        )

    if tally.aye >= needed:
        return Decision(passed=True, needed=needed, eligible=eligible)

    return Decision(
        passed=False, reason=f"Threshold not met: {tally.aye} of {needed} required",
        needed=needed, eligible=eligible,
    )


class ResolutionEngine:
    """Finalizes amendments and sweeps the ones whose window has expired."""

    def __init__(
        self,
        database: Database,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database = database
        self.clock = clock

    def finalize(self, amendment_id: str) -> FinalizedAmendment | None:
        """
        Evaluate the amendment's votes and close it.

        Returns:
            The finalized record, or None when the amendment does not exist
            or was already closed by another caller.
        """
        with self.database.SessionLocal() as session:
            amendment = session.get(AmendmentDB, amendment_id)
            if amendment is None:
                logger.warning("Finalize skipped: amendment %s not found", amendment_id)
                return None

            tally, decision = self._decide(session, amendment)
            now = self.clock()

            outcome = session.execute(
                update(AmendmentDB)
                .where(
                    AmendmentDB.id == amendment_id,
                    AmendmentDB.status == AmendmentStatus.OPEN.value,
                )
                .values(
                    status=AmendmentStatus.CLOSED.value,
                    result=decision.result.value,
                    failure_reason=decision.reason,
                    closes_at=now,
                )
                .execution_options(synchronize_session=False)
            )

            if outcome.rowcount == 0:
                session.rollback()
                logger.info(
                    "Amendment %s already finalized elsewhere; no-op", amendment.slug
                )
                return None

            session.commit()

            logger.info(
                "Amendment %s closed: result=%s aye=%d nay=%d abstain=%d needed=%d reason=%s",
                amendment.slug, decision.result.value, tally.aye, tally.nay,
                tally.abstain, decision.needed, decision.reason,
            )

            return FinalizedAmendment(
                id=amendment.id,
                slug=amendment.slug,
                result=decision.result,
                failure_reason=decision.reason,
                tally=tally,
                needed=decision.needed,
                eligible=decision.eligible,
                closed_at=now,
            )

    def close_expired_amendments(self, slug: str | None = None) -> list[FinalizedAmendment]:
        """
        Finalize every OPEN amendment whose ``closes_at`` has passed.

        Each amendment is finalized independently: a failure on one is logged
        and the sweep carries on with the rest. Safe to call concurrently and
        repeatedly.

        Args:
            slug: Restrict the sweep to a single amendment.
        """
        now = self.clock()
        with self.database.SessionLocal() as session:
            stmt = select(AmendmentDB.id).where(
                AmendmentDB.status == AmendmentStatus.OPEN.value,
                AmendmentDB.closes_at <= now,
            )
            if slug:
                stmt = stmt.where(AmendmentDB.slug == slug)
            due = list(session.execute(stmt).scalars().all())

        finalized: list[FinalizedAmendment] = []
        for amendment_id in due:
            try:
                record = self.finalize(amendment_id)
            except Exception:
                logger.exception("Failed to finalize amendment %s; continuing sweep", amendment_id)
                continue
            if record is not None:
                finalized.append(record)

        if due:
            logger.info("Expiry sweep: %d due, %d finalized", len(due), len(finalized))
        return finalized

    def close_amendment(self, slug: str) -> FinalizedAmendment:
        """
        Close an amendment immediately, regardless of its window.

        Raises:
            NotFoundError: Unknown slug.
            ConflictError: Already closed (including losing a race to a sweep).
        """
        with self.database.SessionLocal() as session:
            amendment = session.execute(
                select(AmendmentDB).where(AmendmentDB.slug == slug)
            ).scalar_one_or_none()
            if amendment is None:
                raise NotFoundError("Amendment not found")
            if amendment.status != AmendmentStatus.OPEN.value:
                raise ConflictError("Amendment is already closed")
            amendment_id = amendment.id

        record = self.finalize(amendment_id)
        if record is None:
            raise ConflictError("Amendment is already closed")
        return record

    # ── Internal ────────────────────────────────────────────────

    def _decide(self, session: Session, amendment: AmendmentDB) -> tuple[Tally, Decision]:
        rows = session.execute(
            select(VoteDB.choice, CountryDB.name, CountryDB.has_veto)
            .join(CountryDB, CountryDB.id == VoteDB.country_id)
            .where(VoteDB.amendment_id == amendment.id)
        ).all()

        eligible = amendment.eligible_count
        if eligible is None:
            eligible = Database.count_active_countries(session)

        tally = tally_votes((row.choice for row in rows), eligible=eligible)
        veto_names = [
            row.name for row in rows
            if row.has_veto and row.choice == VoteChoice.NAY.value
        ]
        decision = evaluate(
            tally,
            eligible=eligible,
            threshold=amendment.threshold,
            quorum=amendment.quorum,
            veto_names=veto_names,
        )
        return tally, decision
