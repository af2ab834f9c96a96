# Keystone Domain Model — entities, statuses, roles, money
#
# Job lifecycle:        open → assigned → in_progress → completed
#                       open/assigned → cancelled
# Milestone lifecycle:  pending → funded → in_progress → submitted → approved → completed
#                       submitted → rejected → submitted (bounded revisions)
#                       submitted/approved → disputed → disputed_resolved → completed
#
# Entities are plain dataclasses. They are only ever changed by the transition
# functions in state_machine.py and persisted through store.EntityStore.

import json
import uuid
from dataclasses import asdict, dataclass, field, fields
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Statuses ──────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"     # Terminal
    CANCELLED = "cancelled"     # Terminal


# freelancer_id is set exactly while the job is in one of these
STAFFED_JOB_STATES = frozenset({
    JobStatus.ASSIGNED.value, JobStatus.IN_PROGRESS.value, JobStatus.COMPLETED.value,
})


class BidStatus(str, Enum):
    PENDING = "pending"
    SHORTLISTED = "shortlisted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


OPEN_BID_STATES = frozenset({BidStatus.PENDING.value, BidStatus.SHORTLISTED.value})


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    FUNDED = "funded"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISPUTED = "disputed"
    DISPUTED_RESOLVED = "disputed_resolved"
    COMPLETED = "completed"     # Terminal: funds released
    CANCELLED = "cancelled"     # Terminal: job cancelled before funding


class PackageStatus(str, Enum):
    DELIVERED = "delivered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class DisputeStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


OPEN_DISPUTE_STATES = frozenset({DisputeStatus.PENDING.value, DisputeStatus.UNDER_REVIEW.value})


class Resolution(str, Enum):
    RELEASE = "release"     # Full amount to freelancer
    REFUND = "refund"       # Full amount back to client
    SPLIT = "split"         # Explicit freelancer/client amounts


class IntentKind(str, Enum):
    FUND = "fund"
    RELEASE = "release"
    REFUND = "refund"
    SPLIT = "split"


class IntentStatus(str, Enum):
    PENDING = "pending"         # Durably recorded, not yet handed over
    DISPATCHED = "dispatched"   # Handed over, awaiting acknowledgment
    CONFIRMED = "confirmed"     # Terminal
    FAILED = "failed"           # Terminal: permanent rejection
    STALLED = "stalled"         # Retry budget exhausted, needs an operator
    SUPERSEDED = "superseded"   # Replaced before settlement (dispute raised)


class SessionStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    DISCONNECTED = "disconnected"


class Role(str, Enum):
    CLIENT = "client"
    FREELANCER = "freelancer"
    ADMIN = "admin"
    SYSTEM = "system"


ESCROW_PARTY = "escrow"


# ── Actor ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Actor:
    """Who is asking. Authentication happens upstream.

    is_system is only ever set in-process (sweeps, settlement callbacks); a
    user id alone never confers it.
    """
    user_id: str
    is_admin: bool = False
    is_system: bool = False


SYSTEM_USER_ID = "system"
SYSTEM_ACTOR = Actor(user_id=SYSTEM_USER_ID, is_system=True)


def role_for(job, actor: Actor) -> Optional[Role]:
    """Resolve the actor's role with respect to a job."""
    if actor.is_system:
        return Role.SYSTEM
    if actor.user_id == job.client_id:
        return Role.CLIENT
    if job.freelancer_id and actor.user_id == job.freelancer_id:
        return Role.FREELANCER
    if actor.is_admin:
        return Role.ADMIN
    return None


# ── Money ─────────────────────────────────────────────────────────────

CENT = Decimal("0.01")


def parse_money(value, allow_zero: bool = False) -> Decimal:
    """Parse a monetary amount into an exact Decimal with cent precision.

    Floats are refused. Raises ValueError on anything that is not a finite,
    non-negative amount with at most two decimal places.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"amount must be a decimal string or integer, got {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"invalid amount: {value!r}")
    if amount != amount.quantize(CENT):
        raise ValueError(f"amount has more than two decimal places: {value!r}")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValueError(f"amount must be positive: {value!r}")
    return amount.quantize(CENT)


def money_str(amount: Optional[Decimal]) -> Optional[str]:
    return None if amount is None else str(amount.quantize(CENT))


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ── Row mapping ───────────────────────────────────────────────────────

class Record:
    """Mixin: map a dataclass to and from a flat table row.

    MONEY columns are stored as decimal TEXT, FLAGS as 0/1 integers and
    JSON_FIELDS as serialized JSON.
    """
    TABLE: ClassVar[str] = ""
    KEY: ClassVar[str] = ""
    MONEY: ClassVar[frozenset] = frozenset()
    FLAGS: ClassVar[frozenset] = frozenset()
    JSON_FIELDS: ClassVar[frozenset] = frozenset()

    def to_row(self) -> dict:
        row = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in self.MONEY:
                value = money_str(value)
            elif f.name in self.FLAGS:
                value = 1 if value else 0
            elif f.name in self.JSON_FIELDS:
                value = json.dumps(value, sort_keys=True)
            elif isinstance(value, Enum):
                value = value.value
            row[f.name] = value
        return row

    @classmethod
    def from_row(cls, row):
        kwargs = {}
        keys = row.keys()
        for f in fields(cls):
            if f.name not in keys:
                continue
            value = row[f.name]
            if f.name in cls.MONEY:
                value = Decimal(value) if value is not None else None
            elif f.name in cls.FLAGS:
                value = bool(value)
            elif f.name in cls.JSON_FIELDS:
                value = json.loads(value) if value else []
            kwargs[f.name] = value
        return cls(**kwargs)

    def to_dict(self) -> dict:
        out = asdict(self)
        for name in self.MONEY:
            out[name] = money_str(out[name])
        for key, value in out.items():
            if isinstance(value, Enum):
                out[key] = value.value
        return out


# ── Entities ──────────────────────────────────────────────────────────

@dataclass
class Job(Record):
    TABLE: ClassVar[str] = "jobs"
    KEY: ClassVar[str] = "job_id"
    MONEY: ClassVar[frozenset] = frozenset({"budget_min", "budget_max", "agreed_amount"})

    job_id: str = field(default_factory=lambda: new_id("job"))
    client_id: str = ""
    title: str = ""
    description: str = ""
    category: str = ""
    budget_min: Decimal = Decimal("0.00")
    budget_max: Decimal = Decimal("0.00")
    status: str = JobStatus.OPEN.value
    freelancer_id: Optional[str] = None
    accepted_bid_id: Optional[str] = None
    agreed_amount: Optional[Decimal] = None
    fund_deadline: Optional[float] = None
    expires_at: Optional[float] = None
    created_at: float = 0.0
    assigned_at: Optional[float] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    cancelled_at: Optional[float] = None
    cancel_reason: str = ""
    version: int = 1

    @property
    def total_budget(self) -> Decimal:
        """Agreed amount once assigned, otherwise the upper budget bound."""
        return self.agreed_amount if self.agreed_amount is not None else self.budget_max


@dataclass
class Bid(Record):
    TABLE: ClassVar[str] = "bids"
    KEY: ClassVar[str] = "bid_id"
    MONEY: ClassVar[frozenset] = frozenset({"amount"})

    bid_id: str = field(default_factory=lambda: new_id("bid"))
    job_id: str = ""
    freelancer_id: str = ""
    amount: Decimal = Decimal("0.00")
    delivery_days: int = 0
    cover_letter: str = ""
    status: str = BidStatus.PENDING.value
    created_at: float = 0.0
    updated_at: float = 0.0
    version: int = 1


@dataclass
class Milestone(Record):
    TABLE: ClassVar[str] = "milestones"
    KEY: ClassVar[str] = "milestone_id"
    MONEY: ClassVar[frozenset] = frozenset({"amount"})
    FLAGS: ClassVar[frozenset] = frozenset({
        "auto_release", "funding_confirmed", "settlement_stalled",
    })

    milestone_id: str = field(default_factory=lambda: new_id("ms"))
    job_id: str = ""
    title: str = ""
    amount: Decimal = Decimal("0.00")
    position: int = 0
    status: str = MilestoneStatus.PENDING.value
    due_at: Optional[float] = None
    auto_release: bool = True
    submission_ref: str = ""
    submission_note: str = ""
    approval_note: str = ""
    rejection_note: str = ""
    revision_count: int = 0
    pre_dispute_status: Optional[str] = None
    funding_confirmed: bool = False
    settlement_stalled: bool = False
    overdue_notified_at: Optional[float] = None
    created_at: float = 0.0
    funded_at: Optional[float] = None
    started_at: Optional[float] = None
    submitted_at: Optional[float] = None
    approved_at: Optional[float] = None
    rejected_at: Optional[float] = None
    disputed_at: Optional[float] = None
    resolved_at: Optional[float] = None
    completed_at: Optional[float] = None
    cancelled_at: Optional[float] = None
    version: int = 1


@dataclass
class DeliveryPackage(Record):
    TABLE: ClassVar[str] = "delivery_packages"
    KEY: ClassVar[str] = "package_id"
    JSON_FIELDS: ClassVar[frozenset] = frozenset({"manifest"})

    package_id: str = field(default_factory=lambda: new_id("pkg"))
    job_id: str = ""
    milestone_id: Optional[str] = None
    freelancer_id: str = ""
    manifest: list = field(default_factory=list)
    note: str = ""
    status: str = PackageStatus.DELIVERED.value
    review_note: str = ""
    signature: str = ""
    signed_by: Optional[str] = None
    delivered_at: float = 0.0
    reviewed_at: Optional[float] = None
    version: int = 1


@dataclass
class Dispute(Record):
    TABLE: ClassVar[str] = "disputes"
    KEY: ClassVar[str] = "dispute_id"
    MONEY: ClassVar[frozenset] = frozenset({"freelancer_amount", "client_amount"})

    dispute_id: str = field(default_factory=lambda: new_id("dsp"))
    milestone_id: str = ""
    job_id: str = ""
    raised_by: str = ""
    reason: str = ""
    status: str = DisputeStatus.PENDING.value
    resolution: Optional[str] = None
    freelancer_amount: Optional[Decimal] = None
    client_amount: Optional[Decimal] = None
    arbiter_id: Optional[str] = None
    resolution_note: str = ""
    created_at: float = 0.0
    claimed_at: Optional[float] = None
    resolved_at: Optional[float] = None
    version: int = 1


@dataclass
class SettlementIntent(Record):
    """A request to move funds, handed to the external settlement service."""
    TABLE: ClassVar[str] = "settlement_intents"
    KEY: ClassVar[str] = "intent_id"
    MONEY: ClassVar[frozenset] = frozenset({"amount", "fee"})

    intent_id: str = field(default_factory=lambda: new_id("int"))
    kind: str = IntentKind.FUND.value
    amount: Decimal = Decimal("0.00")
    fee: Decimal = Decimal("0.00")
    from_party: str = ""
    to_party: str = ""
    milestone_id: str = ""
    job_id: str = ""
    group_id: str = ""
    status: str = IntentStatus.PENDING.value
    pre_intent_status: str = ""
    attempts: int = 0
    settlement_reference: str = ""
    last_error: str = ""
    created_at: float = 0.0
    updated_at: float = 0.0
    version: int = 1

    def wire(self) -> dict:
        """Payload sent to the settlement service."""
        return {
            "intent_id": self.intent_id,
            "kind": self.kind,
            "amount": money_str(self.amount),
            "fee": money_str(self.fee),
            "from_party": self.from_party,
            "to_party": self.to_party,
            "milestone_id": self.milestone_id,
        }


@dataclass
class Review(Record):
    TABLE: ClassVar[str] = "reviews"
    KEY: ClassVar[str] = "review_id"

    review_id: str = field(default_factory=lambda: new_id("rev"))
    job_id: str = ""
    reviewer_id: str = ""
    subject_id: str = ""
    subject_role: str = Role.FREELANCER.value
    rating: int = 0
    comment: str = ""
    created_at: float = 0.0


@dataclass
class Invoice(Record):
    TABLE: ClassVar[str] = "invoices"
    KEY: ClassVar[str] = "invoice_id"
    MONEY: ClassVar[frozenset] = frozenset({"amount", "platform_fee", "net_amount", "refunded_amount"})

    invoice_id: str = field(default_factory=lambda: new_id("inv"))
    invoice_number: str = ""
    job_id: str = ""
    milestone_id: str = ""
    client_id: str = ""
    freelancer_id: str = ""
    amount: Decimal = Decimal("0.00")
    platform_fee: Decimal = Decimal("0.00")
    net_amount: Decimal = Decimal("0.00")
    refunded_amount: Decimal = Decimal("0.00")
    status: str = "issued"
    issued_at: float = 0.0


@dataclass
class WorkspaceSession(Record):
    TABLE: ClassVar[str] = "workspace_sessions"
    KEY: ClassVar[str] = "session_id"

    session_id: str = field(default_factory=lambda: new_id("ws"))
    job_id: str = ""
    user_id: str = ""
    role: str = Role.CLIENT.value
    status: str = SessionStatus.ACTIVE.value
    current_tab: str = "overview"
    joined_at: float = 0.0
    last_activity_at: float = 0.0
    left_at: Optional[float] = None


# ── Typed query filters ───────────────────────────────────────────────
# One pydantic model per listing query, validated before any SQL is built.

MAX_PAGE_SIZE = 500


def _check_status(value, enum_cls):
    if value is None:
        return None
    try:
        return enum_cls(value).value
    except ValueError:
        raise ValueError(f"unknown status {value!r}, expected one of "
                         f"{[s.value for s in enum_cls]}")


class _ListFilter(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    limit: int = Field(default=100, ge=1, le=MAX_PAGE_SIZE)


class JobFilter(_ListFilter):
    status: Optional[str] = None
    client_id: Optional[str] = None
    freelancer_id: Optional[str] = None
    category: Optional[str] = None

    @field_validator("status")
    @classmethod
    def known_status(cls, v):
        return _check_status(v, JobStatus)


class BidFilter(_ListFilter):
    job_id: Optional[str] = None
    freelancer_id: Optional[str] = None
    status: Optional[str] = None

    @field_validator("status")
    @classmethod
    def known_status(cls, v):
        return _check_status(v, BidStatus)


class DisputeFilter(_ListFilter):
    status: Optional[str] = None
    job_id: Optional[str] = None
    arbiter_id: Optional[str] = None

    @field_validator("status")
    @classmethod
    def known_status(cls, v):
        return _check_status(v, DisputeStatus)
