# Keystone Marketplace — every inbound action, one transaction each
#
# Flow of a mutating action:
#   1. open a write transaction
#   2. load the entities, check the caller's expected_version
#   3. run the pure transition (state_machine.py)
#   4. CAS-write every changed entity, record settlement intents and append
#      events, all on the same connection
#   5. commit
#   6. after commit: hand new intents to escrow, deliver the event outbox,
#      resync reputation for completed jobs
#
# Step 6 never undoes step 5. A collaborator failing after commit is logged and
# picked up again by the CLI sweeps (dispatch-intents, dispatch-events).
#
# Every action returns the stored entity or a Rejection. Nothing raises for an
# expected refusal.

import logging
import os
import time
from decimal import Decimal
from typing import Callable, Optional

import errors
import state_machine
from billing import BillingEngine
from db import Database, IntegrityConflict, get_database
from disputes import DisputeResolver
from errors import Rejection, RejectedError
from escrow import EscrowCoordinator
from events import Event, EventPublisher, EventStore, EventType, default_publisher
from models import (
    Actor,
    Bid,
    BidFilter,
    BidStatus,
    DeliveryPackage,
    DisputeFilter,
    Job,
    JobFilter,
    JobStatus,
    Milestone,
    MilestoneStatus,
    Review,
    Role,
    SYSTEM_ACTOR,
    money_str,
    parse_money,
)
from reputation import ReputationSyncService
from settlement import SettlementAck, SettlementClient, default_settlement_client
from store import EntityStore, UnitOfWork, expect_version
from workspace import WorkspaceTracker

LOG_FILE = os.environ.get("KEYSTONE_LOG_FILE", "")
AUTO_RELEASE_SEC = float(os.environ.get("KEYSTONE_AUTO_RELEASE_HOURS", "72")) * 3600

log = logging.getLogger("keystone")


# ── Logging ───────────────────────────────────────────────────────────

def setup_logging(log_file=None, level=logging.INFO):
    """Console always, file when configured. Safe to call more than once."""
    log_file = log_file or LOG_FILE
    logger = logging.getLogger("keystone")

    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setLevel(level)
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


# ── Input helpers ─────────────────────────────────────────────────────

def _money(value, name: str, allow_zero: bool = False) -> Decimal:
    try:
        return parse_money(value, allow_zero=allow_zero)
    except (TypeError, ValueError) as e:
        raise RejectedError(errors.validation_failed("invalid_amount", f"{name}: {e}", field=name))


def _required(value: str, name: str) -> str:
    if not value or not str(value).strip():
        raise RejectedError(errors.validation_failed(f"{name}_required", f"{name} is required"))
    return str(value).strip()


MANIFEST_KEYS = ("name", "size", "checksum")


def _check_manifest(manifest) -> list:
    if not isinstance(manifest, list) or not manifest:
        raise RejectedError(errors.validation_failed(
            "manifest_required", "A delivery needs at least one manifest entry",
        ))
    clean = []
    for i, entry in enumerate(manifest):
        if not isinstance(entry, dict) or any(k not in entry for k in MANIFEST_KEYS):
            raise RejectedError(errors.validation_failed(
                "manifest_invalid", f"Manifest entry {i} needs name, size and checksum",
                index=i,
            ))
        if not isinstance(entry["size"], int) or entry["size"] < 0:
            raise RejectedError(errors.validation_failed(
                "manifest_invalid", f"Manifest entry {i} has an invalid size", index=i,
            ))
        clean.append({k: entry[k] for k in MANIFEST_KEYS})
    return clean


# ── Facade ────────────────────────────────────────────────────────────

class Marketplace:
    def __init__(
        self,
        db: Optional[Database] = None,
        settlement: Optional[SettlementClient] = None,
        publisher: Optional[EventPublisher] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        auto_release_sec: float = AUTO_RELEASE_SEC,
    ):
        self.db = db or get_database()
        self.clock = clock
        self.auto_release_sec = auto_release_sec
        self.store = EntityStore()
        self.events = EventStore(self.db)
        self.publisher = publisher or default_publisher()
        self.billing = BillingEngine(self.db, self.store)
        self.reputation = ReputationSyncService(self.db, self.store)
        self.escrow = EscrowCoordinator(
            self.db,
            settlement or default_settlement_client(),
            event_store=self.events,
            store=self.store,
            billing=self.billing,
            sleep=sleep,
            clock=clock,
            on_job_completed=self._on_job_completed,
        )
        self.disputes = DisputeResolver(self.db, self.escrow, self.events, self.store)
        self.workspace = WorkspaceTracker(self.db, self.store)

    # ── Transaction plumbing ──────────────────────────────────────────

    def _run(self, action: str, fn, now: Optional[float] = None):
        now = self.clock() if now is None else now
        try:
            with self.db.transaction() as conn:
                uow = UnitOfWork(conn, now)
                result = fn(uow)
        except RejectedError as e:
            r = e.rejection
            log.info("REJECTED %s %s:%s %s", action, r.kind.value, r.code, r.message)
            return r
        except IntegrityConflict as e:
            log.warning("CONFLICT %s: %s", action, e)
            return errors.conflict(
                "integrity_conflict",
                "A concurrent change collided with this one; reload and retry",
                action=action,
            )
        self._after_commit(uow)
        return self._reload(result)

    def _after_commit(self, uow: UnitOfWork):
        for intent in uow.intents:
            try:
                outcome = self.escrow.submit_intent(intent.intent_id)
                log.info("SETTLEMENT %s intent=%s", outcome.status, intent.intent_id)
            except Exception as e:
                log.error("Settlement dispatch failed for %s: %s", intent.intent_id, e)
        for job in uow.completed_jobs:
            self._on_job_completed(job)
        self.dispatch_events()

    def _reload(self, result):
        """Post-commit work may have moved an entity on; return its current row."""
        key = getattr(result, "KEY", "")
        if not key or not hasattr(result, "version"):
            return result
        with self.db.connection() as conn:
            return self.store.get(conn, type(result), getattr(result, key)) or result

    def _on_job_completed(self, job: Job):
        for user_id in (job.freelancer_id, job.client_id):
            self._sync_reputation(user_id)

    def _sync_reputation(self, user_id: Optional[str]):
        if not user_id:
            return
        try:
            self.reputation.sync_user(user_id)
        except Exception as e:
            log.error("Reputation sync failed for %s: %s", user_id, e)

    def dispatch_events(self, limit: int = 100) -> dict:
        try:
            return self.events.dispatch_pending(self.publisher, limit=limit, now=self.clock())
        except Exception as e:
            log.error("Event dispatch failed: %s", e)
            return {"delivered": 0, "failed_event_id": None, "error": str(e)}

    def _emit(self, uow: UnitOfWork, actor: Actor, event_type: EventType,
              entity_type: str, entity_id: str, **data):
        self.events.append(Event(
            event_type=event_type.value,
            entity_type=entity_type,
            entity_id=entity_id,
            timestamp=uow.now,
            actor=actor.user_id,
            data=data,
        ), uow.conn)

    def _apply(self, uow: UnitOfWork, outcome, actor: Actor):
        t = errors.check(outcome)
        return self.store.apply(uow.conn, t, self.events, actor.user_id, uow.now)

    def _job_context(self, conn, job_id: str) -> tuple:
        job = self.store.load(conn, Job, job_id, "job")
        bids = tuple(self.store.bids_for_job(conn, job_id))
        milestones = tuple(self.store.milestones_for_job(conn, job_id))
        return job, bids, milestones

    # ── Jobs ──────────────────────────────────────────────────────────

    def create_job(self, actor: Actor, title: str, budget_min, budget_max,
                   description: str = "", category: str = "", milestones: Optional[list] = None,
                   expires_at: Optional[float] = None, now: Optional[float] = None):
        """Post a job, optionally with its milestone plan."""
        def op(uow):
            lo = _money(budget_min, "budget_min")
            hi = _money(budget_max, "budget_max")
            if lo > hi:
                raise RejectedError(errors.validation_failed(
                    "budget_range_invalid", "budget_min exceeds budget_max",
                ))
            if expires_at is not None and expires_at <= uow.now:
                raise RejectedError(errors.validation_failed(
                    "expiry_in_past", "expires_at must be in the future",
                ))
            job = Job(
                client_id=actor.user_id,
                title=_required(title, "title"),
                description=description or "",
                category=category or "",
                budget_min=lo,
                budget_max=hi,
                expires_at=expires_at,
                created_at=uow.now,
            )
            self.store.insert(uow.conn, job)
            planned = Decimal("0.00")
            for i, spec in enumerate(milestones or [], start=1):
                ms = self._new_milestone(job, spec, i, uow.now)
                planned += ms.amount
                if planned > hi:
                    raise RejectedError(errors.validation_failed(
                        "milestones_exceed_budget",
                        f"Milestones total more than the budget of {money_str(hi)}",
                    ))
                self.store.insert(uow.conn, ms)
            self._emit(uow, actor, EventType.JOB_CREATED, "job", job.job_id,
                       title=job.title, budget_max=money_str(hi),
                       milestone_count=len(milestones or []), notify=[actor.user_id])
            log.info("JOB CREATED %s client=%s budget=%s-%s", job.job_id, actor.user_id,
                     money_str(lo), money_str(hi))
            return job
        return self._run("create_job", op, now)

    def _new_milestone(self, job: Job, spec: dict, position: int, now: float) -> Milestone:
        return Milestone(
            job_id=job.job_id,
            title=_required(spec.get("title"), "title"),
            amount=_money(spec.get("amount"), "amount"),
            position=position,
            due_at=spec.get("due_at"),
            auto_release=bool(spec.get("auto_release", True)),
            created_at=now,
        )

    def get_job(self, job_id: str):
        with self.db.connection() as conn:
            job = self.store.get_job(conn, job_id)
        return job if job is not None else errors.not_found("job", job_id)

    def job_detail(self, job_id: str):
        """Job with everything hanging off it, plus the actions each status allows."""
        with self.db.connection() as conn:
            job = self.store.get_job(conn, job_id)
            if job is None:
                return errors.not_found("job", job_id)
            milestones = self.store.milestones_for_job(conn, job_id)
            bids = self.store.bids_for_job(conn, job_id)
            packages = self.store.packages_for_job(conn, job_id)
            disputes = self.store.list_disputes(conn, DisputeFilter(job_id=job_id, limit=500))
            invoices = self.store.invoices_for_job(conn, job_id)
        out = job.to_dict()
        out["allowed_actions"] = state_machine.allowed_actions(
            state_machine.JOB_TRANSITIONS, job.status)
        out["milestones"] = []
        for m in milestones:
            row = m.to_dict()
            row["allowed_actions"] = state_machine.allowed_actions(
                state_machine.MILESTONE_TRANSITIONS, m.status)
            out["milestones"].append(row)
        out["bids"] = [b.to_dict() for b in bids]
        out["packages"] = [p.to_dict() for p in packages]
        out["disputes"] = [d.to_dict() for d in disputes]
        out["invoices"] = [i.to_dict() for i in invoices]
        return out

    def list_jobs(self, flt: JobFilter) -> list[Job]:
        with self.db.connection() as conn:
            return self.store.list_jobs(conn, flt)

    def start_job(self, actor: Actor, job_id: str, expected_version: Optional[int] = None,
                  now: Optional[float] = None):
        def op(uow):
            job = self.store.load(uow.conn, Job, job_id, "job")
            expect_version(job, expected_version)
            return self._apply(uow, state_machine.transition_job(
                job, "start", actor, now=uow.now), actor)
        return self._run("start_job", op, now)

    def complete_job(self, actor: Actor, job_id: str, expected_version: Optional[int] = None,
                     now: Optional[float] = None):
        def op(uow):
            job, _, milestones = self._job_context(uow.conn, job_id)
            expect_version(job, expected_version)
            done = self._apply(uow, state_machine.transition_job(
                job, "complete", actor, now=uow.now, milestones=milestones), actor)
            uow.completed_jobs.append(done)
            return done
        return self._run("complete_job", op, now)

    def cancel_job(self, actor: Actor, job_id: str, reason: str = "",
                   expected_version: Optional[int] = None, now: Optional[float] = None):
        def op(uow):
            job, bids, milestones = self._job_context(uow.conn, job_id)
            expect_version(job, expected_version)
            return self._apply(uow, state_machine.transition_job(
                job, "cancel", actor, now=uow.now, bids=bids, milestones=milestones,
                reason=reason), actor)
        return self._run("cancel_job", op, now)

    # ── Bids ──────────────────────────────────────────────────────────

    def place_bid(self, actor: Actor, job_id: str, amount, delivery_days: int,
                  cover_letter: str = "", now: Optional[float] = None):
        def op(uow):
            job = self.store.load(uow.conn, Job, job_id, "job")
            if job.status != JobStatus.OPEN.value:
                raise RejectedError(errors.invalid_transition(
                    "job_not_open", f"Job is {job.status}", job_status=job.status,
                ))
            if actor.user_id == job.client_id:
                raise RejectedError(errors.forbidden("own_job", "Clients cannot bid on their own job"))
            if not isinstance(delivery_days, int) or delivery_days < 1:
                raise RejectedError(errors.validation_failed(
                    "delivery_days_invalid", "delivery_days must be a positive integer",
                ))
            for other in self.store.bids_for_job(uow.conn, job_id):
                if other.freelancer_id == actor.user_id:
                    raise RejectedError(errors.conflict(
                        "duplicate_bid", "You already bid on this job", bid_id=other.bid_id,
                    ))
            bid = Bid(
                job_id=job_id,
                freelancer_id=actor.user_id,
                amount=_money(amount, "amount"),
                delivery_days=delivery_days,
                cover_letter=cover_letter or "",
                created_at=uow.now,
                updated_at=uow.now,
            )
            self.store.insert(uow.conn, bid)
            self._emit(uow, actor, EventType.BID_PLACED, "bid", bid.bid_id,
                       job_id=job_id, amount=money_str(bid.amount), notify=[job.client_id])
            return bid
        return self._run("place_bid", op, now)

    def _bid_action(self, name: str, actor: Actor, bid_id: str,
                    expected_version: Optional[int], now: Optional[float]):
        def op(uow):
            bid = self.store.load(uow.conn, Bid, bid_id, "bid")
            expect_version(bid, expected_version)
            job = self.store.load(uow.conn, Job, bid.job_id, "job")
            return self._apply(uow, state_machine.transition_bid(
                bid, job, name, actor, now=uow.now), actor)
        return self._run(f"{name}_bid", op, now)

    def shortlist_bid(self, actor: Actor, bid_id: str, expected_version: Optional[int] = None,
                      now: Optional[float] = None):
        return self._bid_action("shortlist", actor, bid_id, expected_version, now)

    def withdraw_bid(self, actor: Actor, bid_id: str, expected_version: Optional[int] = None,
                     now: Optional[float] = None):
        return self._bid_action("withdraw", actor, bid_id, expected_version, now)

    def reject_bid(self, actor: Actor, bid_id: str, expected_version: Optional[int] = None,
                   now: Optional[float] = None):
        return self._bid_action("reject", actor, bid_id, expected_version, now)

    def accept_bid(self, actor: Actor, job_id: str, bid_id: str,
                   expected_version: Optional[int] = None, now: Optional[float] = None):
        """Assign the job to the bidder. Sibling open bids are rejected."""
        def op(uow):
            job, bids, milestones = self._job_context(uow.conn, job_id)
            expect_version(job, expected_version)
            bid = self.store.load(uow.conn, Bid, bid_id, "bid")
            return self._apply(uow, state_machine.transition_job(
                job, "assign", actor, now=uow.now, bid=bid, bids=bids,
                milestones=milestones), actor)
        return self._run("accept_bid", op, now)

    def list_bids(self, flt: BidFilter) -> list[Bid]:
        with self.db.connection() as conn:
            return self.store.list_bids(conn, flt)

    # ── Milestones ────────────────────────────────────────────────────

    def add_milestone(self, actor: Actor, job_id: str, title: str, amount,
                      due_at: Optional[float] = None, auto_release: bool = True,
                      now: Optional[float] = None):
        """Append a milestone. The plan may never exceed the budget or agreed amount."""
        def op(uow):
            job, _, milestones = self._job_context(uow.conn, job_id)
            if actor.user_id != job.client_id:
                raise RejectedError(errors.forbidden(
                    "role_not_permitted", "Only the client can add milestones",
                ))
            if job.status not in (JobStatus.OPEN.value, JobStatus.ASSIGNED.value,
                                  JobStatus.IN_PROGRESS.value):
                raise RejectedError(errors.invalid_transition(
                    "job_closed", f"Job is {job.status}", job_status=job.status,
                ))
            ms = self._new_milestone(
                job, {"title": title, "amount": amount, "due_at": due_at,
                      "auto_release": auto_release},
                len(milestones) + 1, uow.now,
            )
            committed = sum((m.amount for m in milestones
                             if m.status != MilestoneStatus.CANCELLED.value), Decimal("0.00"))
            remaining = job.total_budget - committed
            if ms.amount > remaining:
                raise RejectedError(errors.validation_failed(
                    "exceeds_budget",
                    f"Milestone of {money_str(ms.amount)} exceeds the remaining "
                    f"{money_str(remaining)}",
                    remaining=money_str(remaining),
                ))
            self.store.insert(uow.conn, ms)
            self._emit(uow, actor, EventType.MILESTONE_ADDED, "milestone", ms.milestone_id,
                       job_id=job_id, amount=money_str(ms.amount),
                       notify=[p for p in (job.freelancer_id,) if p])
            return ms
        return self._run("add_milestone", op, now)

    def _milestone_context(self, uow: UnitOfWork, milestone_id: str,
                           expected_version: Optional[int]) -> tuple:
        ms = self.store.load(uow.conn, Milestone, milestone_id, "milestone")
        expect_version(ms, expected_version)
        job = self.store.load(uow.conn, Job, ms.job_id, "job")
        return ms, job

    def fund_milestone(self, actor: Actor, milestone_id: str,
                       expected_version: Optional[int] = None, now: Optional[float] = None):
        def op(uow):
            ms, job = self._milestone_context(uow, milestone_id, expected_version)
            t = errors.check(state_machine.transition_milestone(ms, job, "fund", actor, now=uow.now))
            stored = self.store.apply(uow.conn, t, self.events, actor.user_id, uow.now)
            uow.intents.extend(self.escrow.record_intents(uow.conn, t, stored, job, uow.now))
            return stored
        return self._run("fund_milestone", op, now)

    def start_milestone(self, actor: Actor, milestone_id: str,
                        expected_version: Optional[int] = None, now: Optional[float] = None):
        """Begin work. The first started milestone also starts the job."""
        def op(uow):
            ms, job = self._milestone_context(uow, milestone_id, expected_version)
            stored = self._apply(uow, state_machine.transition_milestone(
                ms, job, "start", actor, now=uow.now), actor)
            if job.status == JobStatus.ASSIGNED.value:
                self._apply(uow, state_machine.transition_job(
                    job, "start", SYSTEM_ACTOR, now=uow.now), SYSTEM_ACTOR)
            return stored
        return self._run("start_milestone", op, now)

    def submit_milestone(self, actor: Actor, milestone_id: str, submission_ref: str,
                         note: str = "", expected_version: Optional[int] = None,
                         now: Optional[float] = None):
        def op(uow):
            ms, job = self._milestone_context(uow, milestone_id, expected_version)
            return self._apply(uow, state_machine.transition_milestone(
                ms, job, "submit", actor, now=uow.now, submission_ref=submission_ref,
                note=note), actor)
        return self._run("submit_milestone", op, now)

    def approve_milestone(self, actor: Actor, milestone_id: str, note: str = "",
                          expected_version: Optional[int] = None, now: Optional[float] = None):
        """Approve delivered work and release its escrow to the freelancer."""
        def op(uow):
            ms, job = self._milestone_context(uow, milestone_id, expected_version)
            t = errors.check(state_machine.transition_milestone(
                ms, job, "approve", actor, now=uow.now, note=note,
                open_dispute=self.store.open_dispute_for_milestone(uow.conn, milestone_id),
            ))
            stored = self.store.apply(uow.conn, t, self.events, actor.user_id, uow.now)
            uow.intents.extend(self.escrow.record_intents(uow.conn, t, stored, job, uow.now))
            return stored
        return self._run("approve_milestone", op, now)

    def reject_milestone(self, actor: Actor, milestone_id: str, feedback: str,
                         expected_version: Optional[int] = None, now: Optional[float] = None):
        def op(uow):
            ms, job = self._milestone_context(uow, milestone_id, expected_version)
            return self._apply(uow, state_machine.transition_milestone(
                ms, job, "reject", actor, now=uow.now, note=feedback,
                open_dispute=self.store.open_dispute_for_milestone(uow.conn, milestone_id),
            ), actor)
        return self._run("reject_milestone", op, now)

    def get_milestone(self, milestone_id: str):
        with self.db.connection() as conn:
            ms = self.store.get_milestone(conn, milestone_id)
        return ms if ms is not None else errors.not_found("milestone", milestone_id)

    # ── Disputes ──────────────────────────────────────────────────────

    def raise_dispute(self, actor: Actor, milestone_id: str, reason: str,
                      expected_version: Optional[int] = None, now: Optional[float] = None):
        return self._run("raise_dispute", lambda uow: self.disputes.raise_dispute(
            uow, actor, milestone_id, reason, expected_version), now)

    def claim_dispute(self, actor: Actor, dispute_id: str,
                      expected_version: Optional[int] = None, now: Optional[float] = None):
        return self._run("claim_dispute", lambda uow: self.disputes.claim(
            uow, actor, dispute_id, expected_version), now)

    def resolve_dispute(self, actor: Actor, dispute_id: str, outcome: str,
                        freelancer_amount=None, client_amount=None, note: str = "",
                        expected_version: Optional[int] = None, now: Optional[float] = None):
        def op(uow):
            fa = _money(freelancer_amount, "freelancer_amount") if freelancer_amount is not None else None
            ca = _money(client_amount, "client_amount") if client_amount is not None else None
            return self.disputes.resolve(uow, actor, dispute_id, outcome, fa, ca, note,
                                         expected_version)
        return self._run("resolve_dispute", op, now)

    def dismiss_dispute(self, actor: Actor, dispute_id: str, note: str = "",
                        expected_version: Optional[int] = None, now: Optional[float] = None):
        return self._run("dismiss_dispute", lambda uow: self.disputes.dismiss(
            uow, actor, dispute_id, note, expected_version), now)

    def list_disputes(self, flt: DisputeFilter, now: Optional[float] = None) -> list[dict]:
        return self.disputes.list_disputes(flt, now if now is not None else self.clock())

    # ── Deliveries ────────────────────────────────────────────────────

    def deliver_package(self, actor: Actor, job_id: str, manifest: list, note: str = "",
                        milestone_id: Optional[str] = None, now: Optional[float] = None):
        def op(uow):
            job = self.store.load(uow.conn, Job, job_id, "job")
            if not job.freelancer_id or actor.user_id != job.freelancer_id:
                raise RejectedError(errors.forbidden(
                    "role_not_permitted", "Only the assigned freelancer can deliver",
                ))
            if job.status not in (JobStatus.ASSIGNED.value, JobStatus.IN_PROGRESS.value):
                raise RejectedError(errors.invalid_transition(
                    "job_not_active", f"Job is {job.status}", job_status=job.status,
                ))
            if milestone_id is not None:
                ms = self.store.load(uow.conn, Milestone, milestone_id, "milestone")
                if ms.job_id != job_id:
                    raise RejectedError(errors.validation_failed(
                        "milestone_mismatch", "Milestone does not belong to this job",
                    ))
            package = DeliveryPackage(
                job_id=job_id,
                milestone_id=milestone_id,
                freelancer_id=actor.user_id,
                manifest=_check_manifest(manifest),
                note=note or "",
                delivered_at=uow.now,
            )
            self.store.insert(uow.conn, package)
            self._emit(uow, actor, EventType.PACKAGE_DELIVERED, "delivery_package",
                       package.package_id, job_id=job_id, milestone_id=milestone_id,
                       files=len(package.manifest), notify=[job.client_id])
            return package
        return self._run("deliver_package", op, now)

    def _package_action(self, name: str, actor: Actor, package_id: str, note: str,
                        signature: str, expected_version: Optional[int], now: Optional[float]):
        def op(uow):
            package = self.store.load(uow.conn, DeliveryPackage, package_id, "delivery_package")
            expect_version(package, expected_version)
            job = self.store.load(uow.conn, Job, package.job_id, "job")
            return self._apply(uow, state_machine.transition_package(
                package, job, name, actor, now=uow.now, note=note, signature=signature), actor)
        return self._run(f"{name}_package", op, now)

    def accept_package(self, actor: Actor, package_id: str, signature: str = "",
                       note: str = "", expected_version: Optional[int] = None,
                       now: Optional[float] = None):
        return self._package_action("accept", actor, package_id, note, signature,
                                    expected_version, now)

    def reject_package(self, actor: Actor, package_id: str, reason: str,
                       expected_version: Optional[int] = None, now: Optional[float] = None):
        return self._package_action("reject", actor, package_id, reason, "",
                                    expected_version, now)

    # ── Reviews ───────────────────────────────────────────────────────

    def submit_review(self, actor: Actor, job_id: str, rating: int, comment: str = "",
                      now: Optional[float] = None):
        """Review the other party of a completed job. One review per party per job."""
        def op(uow):
            job = self.store.load(uow.conn, Job, job_id, "job")
            if job.status != JobStatus.COMPLETED.value:
                raise RejectedError(errors.invalid_transition(
                    "job_not_completed", "Only completed jobs can be reviewed",
                ))
            if actor.user_id == job.client_id:
                subject, role = job.freelancer_id, Role.FREELANCER.value
            elif actor.user_id == job.freelancer_id:
                subject, role = job.client_id, Role.CLIENT.value
            else:
                raise RejectedError(errors.forbidden(
                    "not_a_party", "Only the job's client and freelancer can review it",
                ))
            if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
                raise RejectedError(errors.validation_failed(
                    "rating_out_of_range", "Rating must be an integer from 1 to 5",
                ))
            for existing in self.store.reviews_for_job(uow.conn, job_id):
                if existing.reviewer_id == actor.user_id:
                    raise RejectedError(errors.conflict(
                        "duplicate_review", "You already reviewed this job",
                    ))
            review = Review(
                job_id=job_id,
                reviewer_id=actor.user_id,
                subject_id=subject,
                subject_role=role,
                rating=rating,
                comment=comment or "",
                created_at=uow.now,
            )
            self.store.insert(uow.conn, review)
            self._emit(uow, actor, EventType.REVIEW_SUBMITTED, "review", review.review_id,
                       job_id=job_id, rating=rating, notify=[subject])
            return review
        result = self._run("submit_review", op, now)
        if not isinstance(result, Rejection):
            self._sync_reputation(result.subject_id)
        return result

    # ── Workspace ─────────────────────────────────────────────────────

    def join_workspace(self, actor: Actor, job_id: str, tab: str = "overview",
                       now: Optional[float] = None):
        return self._run("join_workspace", lambda uow: self.workspace.join(
            uow, actor, job_id, tab), now)

    def heartbeat_workspace(self, actor: Actor, session_id: str, tab: Optional[str] = None,
                            now: Optional[float] = None):
        return self._run("heartbeat_workspace", lambda uow: self.workspace.heartbeat(
            uow, actor, session_id, tab), now)

    def leave_workspace(self, actor: Actor, session_id: str, now: Optional[float] = None):
        return self._run("leave_workspace", lambda uow: self.workspace.leave(
            uow, actor, session_id), now)

    # ── Settlement ────────────────────────────────────────────────────

    def handle_settlement_ack(self, ack):
        """Callback from the settlement service. Accepts a SettlementAck or its dict form."""
        if isinstance(ack, dict):
            try:
                ack = SettlementAck.from_dict(ack)
            except (KeyError, ValueError) as e:
                return errors.validation_failed("invalid_ack", str(e))
        result = self.escrow.handle_acknowledgment(ack)
        self.dispatch_events()
        return result

    def retry_intent(self, actor: Actor, intent_id: str):
        result = self.escrow.retry_intent(intent_id, actor)
        self.dispatch_events()
        return result

    def dispatch_intents(self, limit: int = 100) -> dict:
        counts = self.escrow.dispatch_pending(limit)
        self.dispatch_events()
        return counts

    # ── Sweeps ────────────────────────────────────────────────────────

    def sweep_expired(self, now: Optional[float] = None) -> dict:
        """Time-driven transitions. Safe to run repeatedly; each item acts once."""
        now = self.clock() if now is None else now
        with self.db.connection() as conn:
            expired_posts = [j for j in self.store.jobs_in_status(conn, JobStatus.OPEN.value)
                             if j.expires_at is not None and j.expires_at <= now]
            unfunded = []
            for j in self.store.jobs_in_status(conn, JobStatus.ASSIGNED.value):
                if j.fund_deadline is None or j.fund_deadline > now:
                    continue
                statuses = {m.status for m in self.store.milestones_for_job(conn, j.job_id)}
                if statuses <= {MilestoneStatus.PENDING.value, MilestoneStatus.CANCELLED.value}:
                    unfunded.append(j)
            auto_release = [
                m for m in self.store.milestones_in_status(conn, MilestoneStatus.SUBMITTED.value)
                if m.auto_release and m.submitted_at is not None
                and m.submitted_at + self.auto_release_sec <= now
            ]
            overdue = [
                m for m in self.store.milestones_in_status(
                    conn, MilestoneStatus.PENDING.value, MilestoneStatus.FUNDED.value,
                    MilestoneStatus.IN_PROGRESS.value)
                if m.due_at is not None and m.due_at <= now and m.overdue_notified_at is None
            ]

        cancelled = 0
        for job, reason in [(j, "posting_expired") for j in expired_posts] + \
                           [(j, "payment_window_expired") for j in unfunded]:
            result = self.cancel_job(SYSTEM_ACTOR, job.job_id, reason=reason,
                                     expected_version=job.version, now=now)
            if not isinstance(result, Rejection):
                cancelled += 1

        released = 0
        for m in auto_release:
            result = self.approve_milestone(SYSTEM_ACTOR, m.milestone_id,
                                            note="auto-released", expected_version=m.version,
                                            now=now)
            if not isinstance(result, Rejection):
                released += 1

        notified = 0
        for m in overdue:
            def op(uow, m=m):
                ms, job = self._milestone_context(uow, m.milestone_id, m.version)
                return self._apply(uow, state_machine.transition_milestone(
                    ms, job, "mark_overdue", SYSTEM_ACTOR, now=uow.now), SYSTEM_ACTOR)
            if not isinstance(self._run("mark_overdue", op, now), Rejection):
                notified += 1

        summary = {"cancelled_count": cancelled, "auto_released_count": released,
                   "overdue_count": notified}
        if cancelled or released or notified:
            log.info("SWEEP %s", summary)
        return summary

    # ── Audit ─────────────────────────────────────────────────────────

    def job_timeline(self, job_id: str):
        with self.db.connection() as conn:
            if self.store.get_job(conn, job_id) is None:
                return errors.not_found("job", job_id)
        return self.events.job_timeline(job_id)


# ── Singleton ─────────────────────────────────────────────────────────

_marketplace: Optional[Marketplace] = None


def get_marketplace() -> Marketplace:
    global _marketplace
    if _marketplace is None:
        setup_logging()
        _marketplace = Marketplace()
    return _marketplace
