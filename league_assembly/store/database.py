"""
Database — engine and unit-of-work factory for the durable store.

Every governance manager opens its own short-lived session per operation:

    with database.SessionLocal() as session:
        ...
        session.commit()

A rejected operation raises before ``commit()``, so leaving the ``with``
block rolls the whole unit back and prior state is untouched.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from league_assembly.store.models import Base, CountryDB

logger = logging.getLogger(__name__)

_IN_MEMORY_URLS = {"sqlite://", "sqlite:///:memory:"}


class Database:
    """
    Owns the SQLAlchemy engine and session factory.

    Usage:
        database = Database("postgresql+psycopg2://...")
        database.initialize()  # Create tables

        with database.SessionLocal() as session:
            ...
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        """
        Initialize the engine.

        Args:
            database_url: SQLAlchemy connection string (sync driver).
            echo: Log emitted SQL.

        In-memory SQLite URLs share a single connection across threads and
        are meant for tests only; the API runs no background sweep on them.
        """
        kwargs: dict = {"echo": echo}
        if database_url.startswith("sqlite"):
            # The API serves requests from a worker thread pool.
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in _IN_MEMORY_URLS:
                kwargs["poolclass"] = StaticPool
        self.url = database_url
        self.engine = create_engine(database_url, **kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    @property
    def is_in_memory(self) -> bool:
        return self.url in _IN_MEMORY_URLS

    def initialize(self) -> None:
        """Create the schema if it does not exist yet."""
        Base.metadata.create_all(self.engine)
        logger.info("Database schema ready: %s", self.engine.url.render_as_string())

    def dispose(self) -> None:
        self.engine.dispose()

    @staticmethod
    def count_active_countries(session: Session) -> int:
        """Live count of countries eligible to vote."""
        return session.execute(
            select(func.count()).select_from(CountryDB).where(CountryDB.is_active.is_(True))
        ).scalar() or 0


def upsert(
    session: Session,
    model: type[Base],
    keys: dict[str, Any],
    values: dict[str, Any],
) -> None:
    """
    Insert a row or overwrite ``values`` on the row matching ``keys``.

    PostgreSQL and SQLite get a single ``INSERT ... ON CONFLICT DO UPDATE``
    against the unique constraint over ``keys``, so concurrent writers for
    the same key resolve as last-write-wins without a duplicate-key error.
    Other dialects fall back to read-then-write inside the caller's
    transaction.
    """
    dialect = session.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert

        stmt = insert(model).values(**keys, **values)
        stmt = stmt.on_conflict_do_update(index_elements=list(keys), set_=values)
        session.execute(stmt)
        return

    existing = session.execute(select(model).filter_by(**keys)).scalar_one_or_none()
    if existing is None:
        session.add(model(**keys, **values))
    else:
        for name, value in values.items():
            setattr(existing, name, value)
    session.flush()
