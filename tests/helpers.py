"""
Shared builders for the test suite: an in-memory store, a controllable
clock, and seed rows for countries, treaties and discussion threads.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from league_assembly.governance.access import AccessGuard
from league_assembly.governance.amendments import AmendmentManager
from league_assembly.governance.chair import ChairDesk
from league_assembly.governance.discussions import DiscussionBoard
from league_assembly.governance.motions import MotionManager
from league_assembly.governance.resolution import ResolutionEngine
from league_assembly.store.database import Database
from league_assembly.store.models import (
    ArticleDB,
    CountryDB,
    DiscussionPostDB,
    DiscussionThreadDB,
    SanctionDB,
    TreatyDB,
)

TREATY_SLUG = "league-treaty-1900"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_database() -> Database:
    database = Database("sqlite://")
    database.initialize()
    return database


def add_country(
    database: Database,
    slug: str,
    name: str | None = None,
    has_veto: bool = False,
    is_active: bool = True,
) -> str:
    with database.SessionLocal() as session:
        country = CountryDB(
            name=name or slug.title(),
            slug=slug,
            code=slug[:3].upper(),
            has_veto=has_veto,
            is_active=is_active,
        )
        session.add(country)
        session.commit()
        return country.id


def add_sanction(database: Database, country_id: str, title: str = "Arms embargo", **kwargs) -> str:
    with database.SessionLocal() as session:
        sanction = SanctionDB(target_country_id=country_id, title=title, **kwargs)
        session.add(sanction)
        session.commit()
        return sanction.id


def add_treaty(
    database: Database,
    slug: str = TREATY_SLUG,
    headings: tuple[str, ...] = ("Membership", "Council", "Disarmament"),
) -> tuple[str, list[str]]:
    """Create a treaty whose articles are ordered 1..n. Returns (treaty_id, article_ids)."""
    with database.SessionLocal() as session:
        treaty = TreatyDB(slug=slug, title="Covenant of the League")
        session.add(treaty)
        session.flush()
        articles = [
            ArticleDB(treaty_id=treaty.id, order=i, heading=h, body=f"Text of {h}.")
            for i, h in enumerate(headings, start=1)
        ]
        session.add_all(articles)
        session.commit()
        return treaty.id, [a.id for a in articles]


def list_articles(database: Database, treaty_id: str) -> list[tuple[int, str]]:
    """(order, heading) pairs in order."""
    with database.SessionLocal() as session:
        rows = (
            session.query(ArticleDB)
            .filter(ArticleDB.treaty_id == treaty_id)
            .order_by(ArticleDB.order)
            .all()
        )
        return [(a.order, a.heading) for a in rows]


def add_thread(
    database: Database,
    title: str = "General debate",
    is_locked: bool = False,
    is_archived: bool = False,
) -> str:
    with database.SessionLocal() as session:
        thread = DiscussionThreadDB(title=title, is_locked=is_locked, is_archived=is_archived)
        session.add(thread)
        session.commit()
        return thread.id


def add_post(database: Database, thread_id: str, author_id: str, body: str = "Hear, hear.") -> str:
    with database.SessionLocal() as session:
        post = DiscussionPostDB(thread_id=thread_id, author_country_id=author_id, body=body)
        session.add(post)
        session.commit()
        return post.id


class Assembly:
    """Every governance service wired to one in-memory store and one clock."""

    def __init__(self, amendment_quorum: int = 0) -> None:
        self.clock = FakeClock()
        self.database = make_database()
        self.guard = AccessGuard(clock=self.clock)
        self.engine = ResolutionEngine(self.database, clock=self.clock)
        self.amendments = AmendmentManager(
            self.database, self.guard, self.engine,
            quorum=amendment_quorum, clock=self.clock,
        )
        self.motions = MotionManager(self.database, self.guard, clock=self.clock)
        self.chair = ChairDesk(self.database, self.guard, clock=self.clock)
        self.discussions = DiscussionBoard(self.database, self.guard, clock=self.clock)

    def seat(self, *slugs: str, veto: tuple[str, ...] = ()) -> dict[str, str]:
        """Add countries; returns slug -> id."""
        return {
            slug: add_country(self.database, slug, has_veto=slug in veto) for slug in slugs
        }
