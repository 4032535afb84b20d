"""
Access Guard — resolves the acting country and enforces capability checks.

Authentication itself is an external collaborator: it hands us an opaque
country id. Everything after that happens here, inside the caller's unit of
work, so that a rejection leaves no partial writes behind:

- ASSIGNED:   a country id was supplied and names an existing country
- ACTIVE:     the country is eligible to vote
- UNSANCTIONED: no sanction is currently in force against it
- CHAIR:      holds a veto, or is the designated chair country
- QUORUM:     enough active countries exist for motion business
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Callable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from league_assembly.assembly.schema import QuorumInfo, utcnow
from league_assembly.errors import ForbiddenError, QuorumUnmetError
from league_assembly.store.database import Database
from league_assembly.store.models import CountryDB, SanctionDB

logger = logging.getLogger(__name__)

MINIMUM_COUNTRIES_FOR_QUORUM = 3
QUORUM_FRACTION = 0.5


class AccessGuard:
    """
    Capability checks shared by every governance manager.

    Each check raises a structured error (Forbidden or QuorumUnmet) rather
    than returning a flag, so callers can chain them at the top of an
    operation.
    """

    def __init__(
        self,
        minimum_quorum: int = MINIMUM_COUNTRIES_FOR_QUORUM,
        quorum_fraction: float = QUORUM_FRACTION,
        chair_slug: str = "chair",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.minimum_quorum = minimum_quorum
        self.quorum_fraction = quorum_fraction
        self.chair_slug = chair_slug
        self.clock = clock

    def acting_country(
        self,
        session: Session,
        country_id: str | None,
        *,
        allow_sanctioned: bool = False,
    ) -> CountryDB:
        """
        Resolve the acting country.

        Raises:
            ForbiddenError: No country assigned, unknown, inactive, or
                sanctioned (unless ``allow_sanctioned``).
        """
        if not country_id:
            raise ForbiddenError("No country assigned")

        country = session.get(CountryDB, country_id)
        if country is None:
            raise ForbiddenError("Assigned country not found")
        if not country.is_active:
            raise ForbiddenError("Country is inactive")

        if not allow_sanctioned:
            self.ensure_not_sanctioned(session, country)
        return country

    def ensure_not_sanctioned(self, session: Session, country: CountryDB) -> None:
        now = self.clock()
        sanction = session.execute(
            select(SanctionDB)
            .where(
                SanctionDB.target_country_id == country.id,
                SanctionDB.is_active.is_(True),
                SanctionDB.rescinded_at.is_(None),
                or_(SanctionDB.effective_at.is_(None), SanctionDB.effective_at <= now),
                or_(SanctionDB.expires_at.is_(None), SanctionDB.expires_at > now),
            )
            .limit(1)
        ).scalar_one_or_none()

        if sanction is not None:
            logger.info("Rejected sanctioned country %s (%s)", country.slug, sanction.title)
            raise ForbiddenError(f"Country under active sanction: {sanction.title}")

    def quorum(self, session: Session) -> QuorumInfo:
        """
        Motion quorum: ``max(minimum, ceil(active * fraction))``.

        Raises:
            QuorumUnmetError: Fewer active countries exist than the quorum
                requires, so no motion could ever resolve.
        """
        total = Database.count_active_countries(session)
        required = max(self.minimum_quorum, math.ceil(total * self.quorum_fraction))
        if total < required:
            raise QuorumUnmetError(
                f"Quorum not met: {total} of {required} active countries available"
            )
        return QuorumInfo(total_active_countries=total, required=required)

    def is_chair(self, country: CountryDB) -> bool:
        return bool(country.has_veto) or country.slug == self.chair_slug

    def require_chair(self, country: CountryDB) -> None:
        if not self.is_chair(country):
            raise ForbiddenError("Chair privileges required")
