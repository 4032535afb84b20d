"""
Assembly Schema — Pydantic models for every League Assembly entity.

These models are the canonical shapes exchanged between the governance
managers, the live session layer and the HTTP / WebSocket boundary. ORM rows
(see ``league_assembly.store.models``) are converted into these views inside
the unit of work that loaded them, so callers never touch a detached row.

Wire names on the real-time channel are camelCase (``presentCountries``,
``threadId``); HTTP request and response bodies use snake_case.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every datetime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def percent(numerator: int, denominator: int) -> int:
    """Integer percentage clamped to [0, 100]; 0 when the denominator is 0."""
    if not denominator:
        return 0
    return max(0, min(100, round(numerator / denominator * 100)))


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class VoteChoice(str, enum.Enum):
    """A stored amendment vote. ABSENT is the absence of a row, never a value."""

    AYE = "AYE"
    NAY = "NAY"
    ABSTAIN = "ABSTAIN"


class BallotChoice(str, enum.Enum):
    """What a delegation may submit. ABSENT withdraws any stored vote."""

    AYE = "AYE"
    NAY = "NAY"
    ABSTAIN = "ABSTAIN"
    ABSENT = "ABSENT"


class AmendmentOp(str, enum.Enum):
    """How a passed amendment mutates the treaty's articles."""

    ADD = "ADD"
    EDIT = "EDIT"
    REMOVE = "REMOVE"


class AmendmentStatus(str, enum.Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class AmendmentResult(str, enum.Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"


class MotionType(str, enum.Enum):
    """Procedural (moderation) actions a motion may propose."""

    LOCK_THREAD = "LOCK_THREAD"
    UNLOCK_THREAD = "UNLOCK_THREAD"
    PIN_THREAD = "PIN_THREAD"
    UNPIN_THREAD = "UNPIN_THREAD"
    ARCHIVE_THREAD = "ARCHIVE_THREAD"
    REMOVE_POST = "REMOVE_POST"
    RESTORE_POST = "RESTORE_POST"
    ISSUE_SANCTION = "ISSUE_SANCTION"
    LIFT_SANCTION = "LIFT_SANCTION"


class MotionStatus(str, enum.Enum):
    PROPOSED = "PROPOSED"
    VOTING = "VOTING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    WITHDRAWN = "WITHDRAWN"
    EXECUTED = "EXECUTED"


FINAL_MOTION_STATUSES = frozenset({
    MotionStatus.PASSED,
    MotionStatus.FAILED,
    MotionStatus.WITHDRAWN,
    MotionStatus.EXECUTED,
})


class ModVoteChoice(str, enum.Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    ABSTAIN = "ABSTAIN"


class ChairRulingOutcome(str, enum.Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"
    EXECUTED = "EXECUTED"


class ChairActionType(str, enum.Enum):
    """Entry types of the chair's audit trail."""

    LOCK_THREAD = "LOCK_THREAD"
    UNLOCK_THREAD = "UNLOCK_THREAD"
    PIN_THREAD = "PIN_THREAD"
    UNPIN_THREAD = "UNPIN_THREAD"
    ARCHIVE_THREAD = "ARCHIVE_THREAD"
    RESTORE_POST = "RESTORE_POST"
    LOG_NOTE = "LOG_NOTE"


# ════════════════════════════════════════════════════════════════
# Tallies and Decisions
# ════════════════════════════════════════════════════════════════


class Tally(BaseModel):
    """Counts of each amendment choice. ``absent`` is relative to eligible."""

    aye: int = 0
    nay: int = 0
    abstain: int = 0
    absent: int = 0
    eligible: int | None = None

    @computed_field
    @property
    def cast(self) -> int:
        return self.aye + self.nay + self.abstain

    @computed_field
    @property
    def aye_percent(self) -> int:
        return percent(self.aye, self.eligible or self.cast)

    @computed_field
    @property
    def nay_percent(self) -> int:
        return percent(self.nay, self.eligible or self.cast)


class MotionTally(BaseModel):
    approve: int = 0
    reject: int = 0
    abstain: int = 0

    @computed_field
    @property
    def total(self) -> int:
        return self.approve + self.reject + self.abstain

    def summary(self) -> str:
        return f"{self.approve}-{self.reject}-{self.abstain}"


class Decision(BaseModel):
    """Outcome of evaluating a tally against an amendment's rules."""

    passed: bool
    reason: str | None = None
    needed: int
    eligible: int

    @property
    def result(self) -> AmendmentResult:
        return AmendmentResult.PASSED if self.passed else AmendmentResult.FAILED


class OpenResolution(BaseModel):
    state: Literal["open"] = "open"


class ClosedResolution(BaseModel):
    state: Literal["closed"] = "closed"
    result: AmendmentResult
    reason: str | None = None


Resolution = Annotated[
    Union[OpenResolution, ClosedResolution], Field(discriminator="state")
]


def resolution_of(
    status: str, result: str | None, reason: str | None
) -> OpenResolution | ClosedResolution:
    """Collapse the stored (status, result) pair into a single tagged state."""
    if status == AmendmentStatus.OPEN.value:
        return OpenResolution()
    if result is None:
        raise ValueError("A closed amendment must carry a result")
    return ClosedResolution(result=AmendmentResult(result), reason=reason)


# ════════════════════════════════════════════════════════════════
# Views (read models)
# ════════════════════════════════════════════════════════════════


class CountryView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    slug: str
    code: str | None = None
    is_active: bool
    has_veto: bool


class ArticleView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    treaty_id: str
    order: int
    heading: str
    body: str


class VoteView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    amendment_id: str
    country_id: str
    choice: VoteChoice
    comment: str | None = None
    updated_at: datetime


class AmendmentView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    slug: str
    title: str
    rationale: str | None = None
    op: AmendmentOp
    treaty_id: str
    target_article_id: str | None = None
    new_heading: str | None = None
    new_body: str | None = None
    new_order: int | None = None
    status: AmendmentStatus
    result: AmendmentResult | None = None
    failure_reason: str | None = None
    eligible_count: int | None = None
    threshold: float | None = None
    quorum: int | None = None
    opens_at: datetime | None = None
    closes_at: datetime | None = None
    applied_at: datetime | None = None
    proposer_country_id: str
    created_at: datetime
    tally: Tally | None = None

    @computed_field
    @property
    def resolution(self) -> OpenResolution | ClosedResolution:
        return resolution_of(
            self.status.value,
            self.result.value if self.result else None,
            self.failure_reason,
        )


class VoteOutcome(BaseModel):
    """Response to a vote cast: the stored vote (None after ABSENT) and tally."""

    vote: VoteView | None = None
    tally: Tally


class FinalizedAmendment(BaseModel):
    """Record of a single finalize transition that actually took effect."""

    id: str
    slug: str
    result: AmendmentResult
    failure_reason: str | None = None
    tally: Tally
    needed: int
    eligible: int
    closed_at: datetime


class MotionContext(BaseModel):
    """
    Per-motion metadata. ``seconds`` is the explicit list of seconding
    countries; anything type-specific rides along as extra keys.
    """

    model_config = ConfigDict(extra="allow")

    seconds: list[str] = Field(default_factory=list)

    @classmethod
    def load(cls, raw: Any) -> "MotionContext":
        if not isinstance(raw, dict):
            return cls()
        data = dict(raw)
        seconds = data.get("seconds")
        data["seconds"] = (
            [s for s in seconds if isinstance(s, str)] if isinstance(seconds, list) else []
        )
        return cls.model_validate(data)


class MotionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: MotionType
    status: MotionStatus
    title: str
    description: str | None = None
    rationale: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    target_thread_id: str | None = None
    target_post_id: str | None = None
    target_country_id: str | None = None
    created_by_country_id: str
    resolution_note: str | None = None
    submitted_at: datetime
    opened_at: datetime | None = None
    closed_at: datetime | None = None
    resolved_at: datetime | None = None


class MotionVoteOutcome(BaseModel):
    motion: MotionView
    tally: MotionTally
    total_votes: int
    quorum: int


class QuorumInfo(BaseModel):
    total_active_countries: int
    required: int


class ChairActionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: ChairActionType
    actor_country_id: str
    thread_id: str | None = None
    post_id: str | None = None
    motion_id: str | None = None
    note: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class ThreadView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    amendment_id: str | None = None
    is_locked: bool
    is_pinned: bool
    is_archived: bool


class PostView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    thread_id: str
    parent_post_id: str | None = None
    author_country_id: str
    body: str
    is_edited: bool
    is_deleted: bool
    edited_at: datetime | None = None
    deleted_at: datetime | None = None
    created_at: datetime


# ════════════════════════════════════════════════════════════════
# Requests
# ════════════════════════════════════════════════════════════════


class AmendmentCreate(BaseModel):
    title: str
    rationale: str | None = None
    op: AmendmentOp
    treaty_slug: str | None = None
    target_article_id: str | None = None
    new_heading: str | None = None
    new_body: str | None = None
    new_order: int | None = None

    def missing_fields(self) -> dict[str, str]:
        """Per-operation requirements that a plain field schema cannot express."""
        missing: dict[str, str] = {}
        if not self.title.strip():
            missing["title"] = "Missing title"
        if self.op in (AmendmentOp.EDIT, AmendmentOp.REMOVE) and not self.target_article_id:
            missing["target_article_id"] = "target_article_id is required for EDIT/REMOVE"
        if self.op in (AmendmentOp.ADD, AmendmentOp.EDIT) and not self.new_body:
            missing["new_body"] = "new_body is required for ADD/EDIT"
        return missing


class VoteCast(BaseModel):
    choice: BallotChoice
    comment: str | None = None


class MotionCreate(BaseModel):
    type: MotionType
    title: str = Field(min_length=1)
    description: str | None = None
    rationale: str | None = None
    context: dict[str, Any] | None = None
    target_thread_id: str | None = None
    target_post_id: str | None = None
    target_country_id: str | None = None


class MotionNote(BaseModel):
    note: str | None = None


class ModVoteCast(BaseModel):
    choice: ModVoteChoice
    comment: str | None = None


class ChairRuling(BaseModel):
    motion_id: str
    outcome: ChairRulingOutcome
    note: str | None = None


class _ThreadEmergency(BaseModel):
    thread_id: str
    note: str | None = None


class LockThread(_ThreadEmergency):
    action: Literal["LOCK_THREAD"]


class UnlockThread(_ThreadEmergency):
    action: Literal["UNLOCK_THREAD"]


class PinThread(_ThreadEmergency):
    action: Literal["PIN_THREAD"]


class UnpinThread(_ThreadEmergency):
    action: Literal["UNPIN_THREAD"]


class ArchiveThread(_ThreadEmergency):
    action: Literal["ARCHIVE_THREAD"]
    archived: bool = True


class RestorePost(BaseModel):
    action: Literal["RESTORE_POST"]
    post_id: str
    note: str | None = None


EmergencyAction = Annotated[
    Union[LockThread, UnlockThread, PinThread, UnpinThread, ArchiveThread, RestorePost],
    Field(discriminator="action"),
]


class PostCreate(BaseModel):
    body: str = Field(min_length=1)
    parent_post_id: str | None = None


class PostUpdate(BaseModel):
    body: str = Field(min_length=1)


class QueueRequest(BaseModel):
    thread_id: str = ""
    country_id: str = ""


class QueueTarget(BaseModel):
    thread_id: str = ""
    country_id: str | None = None


# ════════════════════════════════════════════════════════════════
# Real-time payloads
# ════════════════════════════════════════════════════════════════


class QueueSnapshot(BaseModel):
    """Serialized speaker queue as pushed in ``queue:update``."""

    model_config = ConfigDict(populate_by_name=True)

    thread_id: str = Field(alias="threadId")
    queue: list[str] = Field(default_factory=list)
    recognized: str | None = None
    updated_at: int = Field(alias="updatedAt", description="Epoch milliseconds")


class PresenceUpdate(BaseModel):
    """Presence of one room as pushed in ``presence:update``."""

    model_config = ConfigDict(populate_by_name=True)

    present_countries: list[str] = Field(default_factory=list, alias="presentCountries")
    present_count: int = Field(alias="presentCount")
    quorum: int
    motions_suspended: bool = Field(alias="motionsSuspended")


class SessionEvent(BaseModel):
    """Envelope for every message on the real-time channel."""

    event: str
    payload: Any = None
