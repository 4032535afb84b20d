"""
Durable store — SQLAlchemy models for the assembly's canonical state.

Portable column types (String ids, generic JSON) are used throughout so the
same schema runs on PostgreSQL in deployment and on SQLite in tests. All
datetimes are naive UTC (see ``league_assembly.assembly.schema.utcnow``).

Two invariants live in the schema itself:

1. One vote per country per amendment / motion — unique constraints back the
   atomic upserts.
2. A CLOSED amendment always carries a result — a CHECK constraint rejects
   any write that would store the invalid (CLOSED, NULL) pair.
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase

from league_assembly.assembly.schema import utcnow


def _uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all assembly models."""
    pass


class CountryDB(Base):
    """A voting member of the assembly."""

    __tablename__ = "countries"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(200), nullable=False)
    slug = Column(String(100), nullable=False, unique=True)
    code = Column(String(10), nullable=True)
    is_active = Column(
        Boolean, nullable=False, default=True,
        comment="Eligible to vote; counted in eligible_count snapshots",
    )
    has_veto = Column(
        Boolean, nullable=False, default=False,
        comment="Founding-member veto power, evaluated against NAY votes only",
    )

    __table_args__ = (
        Index("ix_country_active", "is_active"),
    )


class SanctionDB(Base):
    """A sanction barring a country from proposing and moderating."""

    __tablename__ = "sanctions"

    id = Column(String(36), primary_key=True, default=_uuid)
    target_country_id = Column(String(36), ForeignKey("countries.id"), nullable=False)
    title = Column(String(200), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    effective_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    rescinded_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_sanction_target", "target_country_id"),
    )


class TreatyDB(Base):
    __tablename__ = "treaties"

    id = Column(String(36), primary_key=True, default=_uuid)
    slug = Column(String(100), nullable=False, unique=True)
    title = Column(String(300), nullable=False)


class ArticleDB(Base):
    """A numbered article of a treaty. Orders are contiguous from 1."""

    __tablename__ = "articles"

    id = Column(String(36), primary_key=True, default=_uuid)
    treaty_id = Column(String(36), ForeignKey("treaties.id"), nullable=False)
    order = Column(Integer, nullable=False)
    heading = Column(String(300), nullable=False)
    body = Column(Text, nullable=False)

    __table_args__ = (
        Index("ix_article_treaty_order", "treaty_id", "order"),
    )


class AmendmentDB(Base):
    """
    A proposed change to treaty text, open for a timed vote.

    ``eligible_count`` is snapshotted at creation and never written again, so
    membership changes cannot retroactively alter an in-flight vote.
    """

    __tablename__ = "amendments"

    id = Column(String(36), primary_key=True, default=_uuid)
    slug = Column(String(100), nullable=False, unique=True)
    title = Column(String(300), nullable=False)
    rationale = Column(Text, nullable=True)
    op = Column(String(10), nullable=False, comment="ADD, EDIT or REMOVE")
    treaty_id = Column(String(36), ForeignKey("treaties.id"), nullable=False)
    target_article_id = Column(String(36), nullable=True)
    new_heading = Column(String(300), nullable=True)
    new_body = Column(Text, nullable=True)
    new_order = Column(Integer, nullable=True)

    status = Column(String(10), nullable=False, default="OPEN", comment="OPEN or CLOSED")
    result = Column(String(10), nullable=True, comment="PASSED, FAILED, or NULL while open")
    failure_reason = Column(Text, nullable=True)

    eligible_count = Column(Integer, nullable=True)
    threshold = Column(Float, nullable=True)
    quorum = Column(Integer, nullable=True, comment="Minimum total votes cast")

    opens_at = Column(DateTime, nullable=True)
    closes_at = Column(DateTime, nullable=True)
    applied_at = Column(DateTime, nullable=True)

    proposer_country_id = Column(String(36), ForeignKey("countries.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status = 'OPEN' OR result IS NOT NULL",
            name="ck_amendment_closed_has_result",
        ),
        Index("ix_amendment_status_closes", "status", "closes_at"),
    )


class VoteDB(Base):
    """One country's vote on one amendment. ABSENT is the absence of a row."""

    __tablename__ = "votes"

    id = Column(String(36), primary_key=True, default=_uuid)
    amendment_id = Column(String(36), ForeignKey("amendments.id"), nullable=False)
    country_id = Column(String(36), ForeignKey("countries.id"), nullable=False)
    choice = Column(String(10), nullable=False, comment="AYE, NAY or ABSTAIN")
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("amendment_id", "country_id", name="uq_vote_amendment_country"),
    )


class MotionDB(Base):
    """A procedural (moderation) motion with its own quorum-driven vote."""

    __tablename__ = "motions"

    id = Column(String(36), primary_key=True, default=_uuid)
    type = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default="PROPOSED")
    title = Column(String(300), nullable=False)
    description = Column(Text, nullable=True)
    rationale = Column(Text, nullable=True)
    context = Column(
        JSON, nullable=False, default=dict,
        comment="Seconding countries plus type-specific metadata",
    )
    target_thread_id = Column(String(36), nullable=True)
    target_post_id = Column(String(36), nullable=True)
    target_country_id = Column(String(36), nullable=True)
    created_by_country_id = Column(String(36), ForeignKey("countries.id"), nullable=False)
    resolution_note = Column(Text, nullable=True)

    submitted_at = Column(DateTime, nullable=False, default=utcnow)
    opened_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_motion_status", "status"),
    )


class ModVoteDB(Base):
    __tablename__ = "mod_votes"

    id = Column(String(36), primary_key=True, default=_uuid)
    motion_id = Column(String(36), ForeignKey("motions.id"), nullable=False)
    country_id = Column(String(36), ForeignKey("countries.id"), nullable=False)
    choice = Column(String(10), nullable=False, comment="APPROVE, REJECT or ABSTAIN")
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("motion_id", "country_id", name="uq_mod_vote_motion_country"),
    )


class DiscussionThreadDB(Base):
    __tablename__ = "discussion_threads"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(300), nullable=False)
    amendment_id = Column(String(36), ForeignKey("amendments.id"), nullable=True)
    is_locked = Column(Boolean, nullable=False, default=False)
    is_pinned = Column(Boolean, nullable=False, default=False)
    is_archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class DiscussionPostDB(Base):
    __tablename__ = "discussion_posts"

    id = Column(String(36), primary_key=True, default=_uuid)
    thread_id = Column(String(36), ForeignKey("discussion_threads.id"), nullable=False)
    parent_post_id = Column(String(36), nullable=True)
    author_country_id = Column(String(36), ForeignKey("countries.id"), nullable=False)
    body = Column(Text, nullable=False)
    is_edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(DateTime, nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_post_thread_created", "thread_id", "created_at"),
    )


class ChairActionLogDB(Base):
    """
    The chair's audit trail. APPEND-ONLY: no code path updates or deletes a
    row; every privileged moderation action writes exactly one entry.
    """

    __tablename__ = "chair_action_log"

    id = Column(String(36), primary_key=True, default=_uuid)
    type = Column(String(30), nullable=False)
    actor_country_id = Column(String(36), ForeignKey("countries.id"), nullable=False)
    thread_id = Column(String(36), nullable=True)
    post_id = Column(String(36), nullable=True)
    motion_id = Column(String(36), nullable=True)
    note = Column(Text, nullable=True)
    details = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_chair_log_created", "created_at"),
    )
