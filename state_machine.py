# Keystone State Machine Engine — the authoritative edge list
#
# Pure functions. Given an entity, the requested action and the actor, either
# produce a Transition (new entity state + settlement intent requests + events
# to emit) or a Rejection. Nothing here touches storage or the network.
#
# Checks run in a fixed order:
#   1. unknown action              → invalid_transition
#   2. actor's role not permitted  → forbidden   (before state, so no state leaks)
#   3. current status not a source → invalid_transition
#   4. action-specific guards      → invalid_transition / validation_failed

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Union

import errors
from errors import Rejection
from events import EventType
from models import (
    Actor,
    Bid,
    BidStatus,
    DeliveryPackage,
    Dispute,
    DisputeStatus,
    ESCROW_PARTY,
    IntentKind,
    Job,
    JobStatus,
    Milestone,
    MilestoneStatus,
    OPEN_BID_STATES,
    PackageStatus,
    Role,
    money_str,
    role_for,
)

log = logging.getLogger("keystone")

MAX_REVISIONS = int(os.environ.get("KEYSTONE_MAX_REVISIONS", "3"))
FUND_WINDOW_SEC = float(os.environ.get("KEYSTONE_FUND_WINDOW_HOURS", "72")) * 3600


# ── Transition results ────────────────────────────────────────────────

@dataclass(frozen=True)
class IntentRequest:
    """Funds that should move as a consequence of a transition."""
    kind: str
    amount: Decimal
    from_party: str
    to_party: str


@dataclass(frozen=True)
class Emit:
    """An outbound domain event produced by a transition."""
    event_type: str
    entity_type: str
    entity_id: str
    data: dict = field(default_factory=dict)


@dataclass
class Transition:
    entity: object
    action: str
    previous_status: str
    related: list = field(default_factory=list)
    intents: list = field(default_factory=list)
    events: list = field(default_factory=list)

    @property
    def new_status(self) -> str:
        return self.entity.status


Outcome = Union[Transition, Rejection]


# ── Edge tables ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class Edge:
    roles: frozenset
    sources: frozenset
    target: Optional[str]   # None: status unchanged or computed by the action


def _edge(roles, sources, target):
    return Edge(
        frozenset(r.value for r in roles),
        frozenset(s.value for s in sources),
        target.value if target is not None else None,
    )


C, F, A, S = Role.CLIENT, Role.FREELANCER, Role.ADMIN, Role.SYSTEM
JS, MS, BS, PS, DS = JobStatus, MilestoneStatus, BidStatus, PackageStatus, DisputeStatus

JOB_TRANSITIONS = {
    "assign":   _edge({C},       {JS.OPEN},                  JS.ASSIGNED),
    "start":    _edge({F, S},    {JS.ASSIGNED},              JS.IN_PROGRESS),
    "complete": _edge({C, S},    {JS.IN_PROGRESS},           JS.COMPLETED),
    "cancel":   _edge({C, A, S}, {JS.OPEN, JS.ASSIGNED},     JS.CANCELLED),
}

MILESTONE_TRANSITIONS = {
    "fund":            _edge({C},       {MS.PENDING},                         MS.FUNDED),
    "confirm_funding": _edge({S},       {MS.FUNDED},                          None),
    "start":           _edge({F},       {MS.FUNDED},                          MS.IN_PROGRESS),
    "submit":          _edge({F},       {MS.IN_PROGRESS, MS.REJECTED},        MS.SUBMITTED),
    "approve":         _edge({C, S},    {MS.SUBMITTED},                       MS.APPROVED),
    "reject":          _edge({C},       {MS.SUBMITTED},                       MS.REJECTED),
    "dispute":         _edge({C, F},    {MS.SUBMITTED, MS.APPROVED},          MS.DISPUTED),
    "resolve":         _edge({A},       {MS.DISPUTED},                        MS.DISPUTED_RESOLVED),
    "reopen":          _edge({A},       {MS.DISPUTED},                        None),
    "settle":          _edge({S},       {MS.APPROVED, MS.DISPUTED_RESOLVED},  MS.COMPLETED),
    "revert":          _edge({S},       {MS.FUNDED, MS.APPROVED},             None),
    "flag_stalled":    _edge({S, A},    {MS.FUNDED, MS.APPROVED, MS.DISPUTED,
                                         MS.DISPUTED_RESOLVED},               None),
    "mark_overdue":    _edge({S},       {MS.PENDING, MS.FUNDED, MS.IN_PROGRESS}, None),
    "cancel":          _edge({C, A, S}, {MS.PENDING},                         MS.CANCELLED),
}

# Milestone actions that need the parent job to be staffed and running
_ACTIVE_JOB_ACTIONS = frozenset({"fund", "start", "submit", "approve", "reject", "dispute"})
_ACTIVE_JOB_STATES = frozenset({JS.ASSIGNED.value, JS.IN_PROGRESS.value})

BID_TRANSITIONS = {
    "shortlist": _edge({C}, {BS.PENDING},                  BS.SHORTLISTED),
    "withdraw":  _edge({F}, {BS.PENDING, BS.SHORTLISTED},  BS.WITHDRAWN),
    "reject":    _edge({C}, {BS.PENDING, BS.SHORTLISTED},  BS.REJECTED),
}

PACKAGE_TRANSITIONS = {
    "accept": _edge({C}, {PS.DELIVERED}, PS.ACCEPTED),
    "reject": _edge({C}, {PS.DELIVERED}, PS.REJECTED),
}

DISPUTE_TRANSITIONS = {
    "claim":   _edge({A}, {DS.PENDING},                   DS.UNDER_REVIEW),
    "resolve": _edge({A}, {DS.UNDER_REVIEW},              DS.RESOLVED),
    "dismiss": _edge({A}, {DS.PENDING, DS.UNDER_REVIEW},  DS.DISMISSED),
}


def _check(table: dict, kind: str, entity, action: str, role: Optional[Role]) -> Optional[Rejection]:
    edge = table.get(action)
    if edge is None:
        return errors.invalid_transition(
            "unknown_action", f"Unknown {kind} action '{action}'", action=action,
        )
    if role is None or role.value not in edge.roles:
        return errors.forbidden(
            "role_not_permitted",
            f"Not permitted to {action} this {kind}",
            action=action,
        )
    if entity.status not in edge.sources:
        return errors.invalid_transition(
            "illegal_transition",
            f"Cannot {action} a {kind} in status '{entity.status}'",
            action=action,
            status=entity.status,
            allowed_from=sorted(edge.sources),
        )
    return None


def allowed_actions(table: dict, status: str) -> list[str]:
    return sorted(a for a, e in table.items() if status in e.sources)


# ── Job ───────────────────────────────────────────────────────────────

def transition_job(
    job: Job,
    action: str,
    actor: Actor,
    *,
    now: float,
    bid: Optional[Bid] = None,
    bids: tuple = (),
    milestones: tuple = (),
    reason: str = "",
) -> Outcome:
    """Apply a job-level action.

    assign(bid)  client accepts a bid; sibling open bids are rejected
    start        work begins (freelancer, or system on first milestone start)
    complete     every live milestone has completed
    cancel       nothing funded yet; frees the freelancer and open bids
    """
    role = role_for(job, actor)
    rejection = _check(JOB_TRANSITIONS, "job", job, action, role)
    if rejection:
        return rejection

    edge = JOB_TRANSITIONS[action]
    live = [m for m in milestones if m.status != MS.CANCELLED.value]
    parties = [p for p in (job.client_id, job.freelancer_id) if p]

    if action == "assign":
        if bid is None or bid.job_id != job.job_id:
            return errors.validation_failed("bid_mismatch", "Bid does not belong to this job")
        if bid.status not in OPEN_BID_STATES:
            return errors.invalid_transition(
                "bid_not_open", f"Bid is {bid.status}, only open bids can be accepted",
                bid_status=bid.status,
            )
        if live:
            total = sum((m.amount for m in live), Decimal("0"))
            if total != bid.amount:
                return errors.validation_failed(
                    "milestone_sum_mismatch",
                    f"Milestones total {money_str(total)} but the accepted amount is "
                    f"{money_str(bid.amount)}",
                    milestone_total=money_str(total),
                    agreed_amount=money_str(bid.amount),
                )
        new_job = dataclasses.replace(
            job,
            status=edge.target,
            freelancer_id=bid.freelancer_id,
            accepted_bid_id=bid.bid_id,
            agreed_amount=bid.amount,
            assigned_at=now,
            fund_deadline=now + FUND_WINDOW_SEC,
        )
        related = [dataclasses.replace(bid, status=BS.ACCEPTED.value, updated_at=now)]
        rejected_ids = []
        for other in bids:
            if other.bid_id != bid.bid_id and other.status in OPEN_BID_STATES:
                related.append(dataclasses.replace(other, status=BS.REJECTED.value, updated_at=now))
                rejected_ids.append(other.bid_id)
        return Transition(
            entity=new_job,
            action=action,
            previous_status=job.status,
            related=related,
            events=[Emit(EventType.JOB_ASSIGNED.value, "job", job.job_id, {
                "bid_id": bid.bid_id,
                "freelancer_id": bid.freelancer_id,
                "agreed_amount": money_str(bid.amount),
                "rejected_bid_ids": rejected_ids,
                "notify": [job.client_id, bid.freelancer_id],
            })],
        )

    if action == "start":
        new_job = dataclasses.replace(job, status=edge.target, started_at=now)
        return Transition(new_job, action, job.status, events=[
            Emit(EventType.JOB_STARTED.value, "job", job.job_id, {"notify": parties}),
        ])

    if action == "complete":
        if not live:
            return errors.invalid_transition("no_milestones", "Job has no milestones to complete")
        outstanding = [m.milestone_id for m in live if m.status != MS.COMPLETED.value]
        if outstanding:
            return errors.invalid_transition(
                "milestones_outstanding",
                f"{len(outstanding)} milestone(s) not yet completed",
                milestone_ids=outstanding,
            )
        new_job = dataclasses.replace(job, status=edge.target, completed_at=now)
        paid = sum((m.amount for m in live), Decimal("0"))
        return Transition(new_job, action, job.status, events=[
            Emit(EventType.JOB_COMPLETED.value, "job", job.job_id, {
                "client_id": job.client_id,
                "freelancer_id": job.freelancer_id,
                "total_amount": money_str(paid),
                "notify": parties,
            }),
        ])

    # cancel
    committed = [m.milestone_id for m in live if m.status != MS.PENDING.value]
    if committed:
        return errors.invalid_transition(
            "milestone_committed",
            "Cannot cancel a job once a milestone has been funded",
            milestone_ids=committed,
        )
    new_job = dataclasses.replace(
        job,
        status=edge.target,
        freelancer_id=None,
        cancelled_at=now,
        cancel_reason=reason or "cancelled_by_client",
    )
    related = [
        dataclasses.replace(m, status=MS.CANCELLED.value, cancelled_at=now) for m in live
    ]
    related += [
        dataclasses.replace(b, status=BS.REJECTED.value, updated_at=now)
        for b in bids if b.status in OPEN_BID_STATES
    ]
    return Transition(new_job, action, job.status, related=related, events=[
        Emit(EventType.JOB_CANCELLED.value, "job", job.job_id, {
            "reason": new_job.cancel_reason,
            "notify": parties,
        }),
    ])


# ── Milestone ─────────────────────────────────────────────────────────

def transition_milestone(
    milestone: Milestone,
    job: Job,
    action: str,
    actor: Actor,
    *,
    now: float,
    open_dispute: Optional[Dispute] = None,
    submission_ref: str = "",
    note: str = "",
    revert_to: Optional[str] = None,
    resolution_intents: tuple = (),
    max_revisions: int = MAX_REVISIONS,
) -> Outcome:
    """Apply a milestone-level action. See MILESTONE_TRANSITIONS for the edges."""
    role = role_for(job, actor)
    rejection = _check(MILESTONE_TRANSITIONS, "milestone", milestone, action, role)
    if rejection:
        return rejection
    if action in _ACTIVE_JOB_ACTIONS and job.status not in _ACTIVE_JOB_STATES:
        return errors.invalid_transition(
            "job_not_active", f"Job is {job.status}", job_status=job.status,
        )
    if action in ("approve", "reject") and open_dispute is not None:
        return errors.invalid_transition(
            "dispute_open",
            "Milestone is under dispute; the arbiter decides its next transition",
            dispute_id=open_dispute.dispute_id,
        )

    edge = MILESTONE_TRANSITIONS[action]
    mid = milestone.milestone_id
    replace = dataclasses.replace

    def done(new, intents=(), events=()):
        return Transition(new, action, milestone.status, intents=list(intents), events=list(events))

    if action == "fund":
        new = replace(milestone, status=edge.target, funded_at=now, funding_confirmed=False)
        return done(new, intents=[
            IntentRequest(IntentKind.FUND.value, milestone.amount, job.client_id, ESCROW_PARTY),
        ])

    if action == "confirm_funding":
        new = replace(milestone, funding_confirmed=True, settlement_stalled=False)
        return done(new, events=[Emit(EventType.MILESTONE_FUNDED.value, "milestone", mid, {
            "job_id": job.job_id,
            "amount": money_str(milestone.amount),
            "notify": [job.client_id, job.freelancer_id],
        })])

    if action == "start":
        if not milestone.funding_confirmed:
            return errors.invalid_transition(
                "funding_unconfirmed", "Escrow has not confirmed funding for this milestone",
            )
        new = replace(milestone, status=edge.target, started_at=now)
        return done(new, events=[Emit(EventType.MILESTONE_STARTED.value, "milestone", mid, {
            "job_id": job.job_id, "notify": [job.client_id],
        })])

    if action == "submit":
        if not submission_ref.strip():
            return errors.validation_failed(
                "submission_ref_required", "A submission reference is required",
            )
        new = replace(
            milestone,
            status=edge.target,
            submission_ref=submission_ref.strip(),
            submission_note=note,
            submitted_at=now,
        )
        return done(new, events=[Emit(EventType.MILESTONE_SUBMITTED.value, "milestone", mid, {
            "job_id": job.job_id,
            "submission_ref": new.submission_ref,
            "revision": milestone.revision_count,
            "notify": [job.client_id],
        })])

    if action == "approve":
        new = replace(milestone, status=edge.target, approval_note=note, approved_at=now)
        return done(
            new,
            intents=[IntentRequest(
                IntentKind.RELEASE.value, milestone.amount, ESCROW_PARTY, job.freelancer_id,
            )],
            events=[Emit(EventType.MILESTONE_APPROVED.value, "milestone", mid, {
                "job_id": job.job_id,
                "amount": money_str(milestone.amount),
                "auto": role == Role.SYSTEM,
                "notify": [job.freelancer_id],
            })],
        )

    if action == "reject":
        if milestone.revision_count >= max_revisions:
            return errors.invalid_transition(
                "revision_limit_reached",
                f"Milestone already rejected {milestone.revision_count} time(s); "
                "raise a dispute instead",
                revision_count=milestone.revision_count,
            )
        if not note.strip():
            return errors.validation_failed("feedback_required", "Rejection feedback is required")
        new = replace(
            milestone,
            status=edge.target,
            rejection_note=note.strip(),
            revision_count=milestone.revision_count + 1,
            rejected_at=now,
        )
        return done(new, events=[Emit(EventType.MILESTONE_REJECTED.value, "milestone", mid, {
            "job_id": job.job_id,
            "feedback": new.rejection_note,
            "revision_count": new.revision_count,
            "notify": [job.freelancer_id],
        })])

    if action == "dispute":
        if not note.strip():
            return errors.validation_failed("reason_required", "A dispute reason is required")
        new = replace(
            milestone,
            status=edge.target,
            pre_dispute_status=milestone.status,
            disputed_at=now,
        )
        return done(new, events=[Emit(EventType.MILESTONE_DISPUTED.value, "milestone", mid, {
            "job_id": job.job_id,
            "raised_by": actor.user_id,
            "reason": note.strip(),
            "from_status": milestone.status,
            "notify": [job.client_id, job.freelancer_id],
        })])

    if action == "resolve":
        new = replace(milestone, status=edge.target, resolved_at=now, pre_dispute_status=None)
        return done(new, intents=resolution_intents)

    if action == "reopen":
        back_to = milestone.pre_dispute_status or MS.SUBMITTED.value
        new = replace(milestone, status=back_to, pre_dispute_status=None, resolved_at=now)
        intents = []
        if back_to == MS.APPROVED.value:
            intents.append(IntentRequest(
                IntentKind.RELEASE.value, milestone.amount, ESCROW_PARTY, job.freelancer_id,
            ))
        return done(new, intents=intents)

    if action == "settle":
        new = replace(milestone, status=edge.target, completed_at=now, settlement_stalled=False)
        return done(new, events=[Emit(EventType.MILESTONE_COMPLETED.value, "milestone", mid, {
            "job_id": job.job_id,
            "amount": money_str(milestone.amount),
            "via": milestone.status,
            "notify": [job.client_id, job.freelancer_id],
        })])

    if action == "revert":
        if milestone.status == MS.FUNDED.value:
            new = replace(milestone, status=revert_to or MS.PENDING.value,
                          funded_at=None, funding_confirmed=False, settlement_stalled=False)
        else:
            new = replace(milestone, status=revert_to or MS.SUBMITTED.value,
                          approved_at=None, settlement_stalled=False)
        return done(new)

    if action == "flag_stalled":
        return done(replace(milestone, settlement_stalled=True))

    if action == "mark_overdue":
        if milestone.overdue_notified_at is not None:
            return errors.invalid_transition("already_notified", "Overdue notice already sent")
        new = replace(milestone, overdue_notified_at=now)
        return done(new, events=[Emit(EventType.MILESTONE_OVERDUE.value, "milestone", mid, {
            "job_id": job.job_id,
            "due_at": milestone.due_at,
            "status": milestone.status,
            "notify": [p for p in (job.client_id, job.freelancer_id) if p],
        })])

    # cancel
    return done(replace(milestone, status=edge.target, cancelled_at=now))


# ── Bid ───────────────────────────────────────────────────────────────

def transition_bid(bid: Bid, job: Job, action: str, actor: Actor, *, now: float) -> Outcome:
    if actor.user_id == bid.freelancer_id:
        role = Role.FREELANCER
    elif actor.user_id == job.client_id:
        role = Role.CLIENT
    else:
        role = None
    rejection = _check(BID_TRANSITIONS, "bid", bid, action, role)
    if rejection:
        return rejection
    if job.status != JS.OPEN.value:
        return errors.invalid_transition("job_not_open", f"Job is {job.status}")
    new = dataclasses.replace(bid, status=BID_TRANSITIONS[action].target, updated_at=now)
    event_type = {
        "shortlist": EventType.BID_SHORTLISTED,
        "withdraw": EventType.BID_WITHDRAWN,
        "reject": EventType.BID_REJECTED,
    }[action]
    notify = job.client_id if role == Role.FREELANCER else bid.freelancer_id
    return Transition(new, action, bid.status, events=[
        Emit(event_type.value, "bid", bid.bid_id, {"job_id": job.job_id, "notify": [notify]}),
    ])


# ── Delivery package ──────────────────────────────────────────────────

def transition_package(
    package: DeliveryPackage,
    job: Job,
    action: str,
    actor: Actor,
    *,
    now: float,
    note: str = "",
    signature: str = "",
) -> Outcome:
    role = Role.CLIENT if actor.user_id == job.client_id else None
    rejection = _check(PACKAGE_TRANSITIONS, "delivery package", package, action, role)
    if rejection:
        return rejection
    if action == "reject" and not note.strip():
        return errors.validation_failed("reason_required", "A rejection reason is required")
    new = dataclasses.replace(
        package,
        status=PACKAGE_TRANSITIONS[action].target,
        review_note=note.strip(),
        signature=signature if action == "accept" else "",
        signed_by=actor.user_id if action == "accept" else None,
        reviewed_at=now,
    )
    event_type = EventType.PACKAGE_ACCEPTED if action == "accept" else EventType.PACKAGE_REJECTED
    return Transition(new, action, package.status, events=[
        Emit(event_type.value, "delivery_package", package.package_id, {
            "job_id": job.job_id,
            "milestone_id": package.milestone_id,
            "notify": [package.freelancer_id],
        }),
    ])


# ── Dispute ───────────────────────────────────────────────────────────

def transition_dispute(
    dispute: Dispute,
    action: str,
    actor: Actor,
    *,
    now: float,
    parties: tuple = (),
    resolution: Optional[str] = None,
    freelancer_amount: Optional[Decimal] = None,
    client_amount: Optional[Decimal] = None,
    note: str = "",
) -> Outcome:
    """Arbiter actions. Parties to the job may never arbitrate it."""
    if actor.is_admin and actor.user_id not in parties:
        role = Role.ADMIN
    else:
        role = None
    rejection = _check(DISPUTE_TRANSITIONS, "dispute", dispute, action, role)
    if rejection:
        return rejection
    if dispute.arbiter_id and dispute.arbiter_id != actor.user_id and action != "claim":
        return errors.forbidden(
            "claimed_by_other", "Dispute is under review by another arbiter",
            arbiter_id=dispute.arbiter_id,
        )

    target = DISPUTE_TRANSITIONS[action].target
    notify = list(parties)
    if action == "claim":
        new = dataclasses.replace(dispute, status=target, arbiter_id=actor.user_id, claimed_at=now)
        return Transition(new, action, dispute.status, events=[
            Emit(EventType.DISPUTE_CLAIMED.value, "dispute", dispute.dispute_id, {
                "milestone_id": dispute.milestone_id,
                "job_id": dispute.job_id,
                "arbiter_id": actor.user_id,
                "notify": notify,
            }),
        ])

    new = dataclasses.replace(
        dispute,
        status=target,
        arbiter_id=dispute.arbiter_id or actor.user_id,
        resolution=resolution if action == "resolve" else None,
        freelancer_amount=freelancer_amount if action == "resolve" else None,
        client_amount=client_amount if action == "resolve" else None,
        resolution_note=note,
        resolved_at=now,
    )
    if action == "resolve":
        return Transition(new, action, dispute.status, events=[
            Emit(EventType.DISPUTE_RESOLVED.value, "dispute", dispute.dispute_id, {
                "milestone_id": dispute.milestone_id,
                "job_id": dispute.job_id,
                "resolution": resolution,
                "freelancer_amount": money_str(freelancer_amount),
                "client_amount": money_str(client_amount),
                "notify": notify,
            }),
        ])
    return Transition(new, action, dispute.status, events=[
        Emit(EventType.DISPUTE_DISMISSED.value, "dispute", dispute.dispute_id, {
            "milestone_id": dispute.milestone_id,
            "job_id": dispute.job_id,
            "notify": notify,
        }),
    ])
