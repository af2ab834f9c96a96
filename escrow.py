# Keystone Escrow Coordinator — settlement intents and their acknowledgments
#
# Intent lifecycle:  pending → dispatched → confirmed
#                                        → failed      (permanent; milestone reverted)
#                                        → stalled     (retries exhausted; operator action)
#                    pending             → superseded  (a dispute took over before dispatch)
#
# Rules:
#   - An intent is written as pending in the same transaction as the state
#     change that caused it, before anything is sent anywhere.
#   - A milestone only becomes completed when settlement confirms every intent
#     of its payout group. Local logic alone never completes it.
#   - Intent ids are idempotency keys. Resubmitting is always safe.
#
# This module is also the only place amounts are derived: fees, payouts and
# dispute splits are computed here, in Decimal, rounded once.

import logging
import os
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Callable, Optional, Union

import errors
import state_machine
from billing import BillingEngine
from errors import Rejection, RejectedError
from events import Event, EventStore, EventType
from models import (
    CENT,
    ESCROW_PARTY,
    IntentKind,
    IntentStatus,
    Job,
    Milestone,
    MilestoneStatus,
    Resolution,
    SYSTEM_ACTOR,
    SettlementIntent,
    money_str,
    new_id,
)
from settlement import AckStatus, SettlementAck, SettlementClient, TransientSettlementError
from state_machine import IntentRequest, Transition
from store import EntityStore

log = logging.getLogger("keystone.escrow")

PLATFORM_FEE_PCT = Decimal(os.environ.get("KEYSTONE_PLATFORM_FEE_PCT", "10"))
SETTLEMENT_MAX_ATTEMPTS = int(os.environ.get("KEYSTONE_SETTLEMENT_MAX_ATTEMPTS", "5"))
SETTLEMENT_BACKOFF_SEC = float(os.environ.get("KEYSTONE_SETTLEMENT_BACKOFF_SEC", "0.5"))
SETTLEMENT_BACKOFF_MAX_SEC = float(os.environ.get("KEYSTONE_SETTLEMENT_BACKOFF_MAX_SEC", "30"))


# ── Money ─────────────────────────────────────────────────────────────

def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_EVEN)


def platform_fee(amount: Decimal, pct: Decimal = PLATFORM_FEE_PCT) -> Decimal:
    """Fee withheld from a freelancer payout, rounded half-even to the cent."""
    return quantize(amount * pct / Decimal(100))


def payout_breakdown(amount: Decimal, pct: Decimal = PLATFORM_FEE_PCT) -> dict:
    fee = platform_fee(amount, pct)
    return {"gross": amount, "fee": fee, "net": amount - fee}


def resolution_splits(
    milestone: Milestone,
    job: Job,
    outcome: str,
    freelancer_amount: Optional[Decimal] = None,
    client_amount: Optional[Decimal] = None,
) -> Union[list, Rejection]:
    """Settlement requests for an arbiter's decision on a disputed milestone.

    release  whole amount to the freelancer
    refund   whole amount back to the client
    split    both parts positive, summing exactly to the milestone amount
    """
    try:
        outcome = Resolution(outcome).value
    except ValueError:
        return errors.validation_failed(
            "unknown_resolution", f"Unknown resolution '{outcome}'",
            allowed=[r.value for r in Resolution],
        )
    total = milestone.amount
    if outcome == Resolution.RELEASE.value:
        return [IntentRequest(IntentKind.RELEASE.value, total, ESCROW_PARTY, job.freelancer_id)]
    if outcome == Resolution.REFUND.value:
        return [IntentRequest(IntentKind.REFUND.value, total, ESCROW_PARTY, job.client_id)]

    if freelancer_amount is None or client_amount is None:
        return errors.validation_failed(
            "split_amounts_required", "A split needs both a freelancer and a client amount",
        )
    if freelancer_amount <= 0 or client_amount <= 0:
        return errors.validation_failed(
            "split_not_positive", "Both split amounts must be positive; use release or refund",
        )
    if freelancer_amount + client_amount != total:
        return errors.validation_failed(
            "split_sum_mismatch",
            f"Split {money_str(freelancer_amount)} + {money_str(client_amount)} does not "
            f"equal the disputed amount {money_str(total)}",
            disputed_amount=money_str(total),
        )
    return [
        IntentRequest(IntentKind.SPLIT.value, freelancer_amount, ESCROW_PARTY, job.freelancer_id),
        IntentRequest(IntentKind.SPLIT.value, client_amount, ESCROW_PARTY, job.client_id),
    ]


# ── Results ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SettlementReceipt:
    intent_id: str
    settlement_reference: str
    status: str = IntentStatus.CONFIRMED.value


@dataclass(frozen=True)
class PendingSettlement:
    intent_id: str
    attempts: int
    status: str = IntentStatus.DISPATCHED.value


@dataclass(frozen=True)
class SettlementFailure:
    intent_id: str
    reason: str
    stalled: bool = False

    @property
    def status(self) -> str:
        return IntentStatus.STALLED.value if self.stalled else IntentStatus.FAILED.value

    def rejection(self) -> Rejection:
        return errors.settlement_failed(
            "settlement_stalled" if self.stalled else "settlement_rejected",
            self.reason, intent_id=self.intent_id,
        )


SubmitOutcome = Union[SettlementReceipt, PendingSettlement, SettlementFailure]


@dataclass
class AckResult:
    intent: SettlementIntent
    milestone: Optional[Milestone] = None
    completed_job: Optional[Job] = None
    duplicate: bool = False


# ── Coordinator ───────────────────────────────────────────────────────

# Handed to settlement at least once; funds may have moved
_IN_FLIGHT_STATES = (IntentStatus.DISPATCHED.value, IntentStatus.STALLED.value)


class EscrowCoordinator:
    """Turns transition intents into settlement calls and tracks the answers."""

    def __init__(
        self,
        db,
        client: SettlementClient,
        event_store: Optional[EventStore] = None,
        store: Optional[EntityStore] = None,
        billing: Optional[BillingEngine] = None,
        max_attempts: int = SETTLEMENT_MAX_ATTEMPTS,
        backoff_sec: float = SETTLEMENT_BACKOFF_SEC,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        on_job_completed: Optional[Callable[[Job], None]] = None,
    ):
        self.db = db
        self.client = client
        self.events = event_store or EventStore(db)
        self.store = store or EntityStore()
        self.billing = billing or BillingEngine(db, self.store)
        self.max_attempts = max(1, max_attempts)
        self.backoff_sec = backoff_sec
        self.sleep = sleep
        self.clock = clock
        self.on_job_completed = on_job_completed

    # ── Recording (inside the caller's transaction) ───────────────────

    def record_intents(self, conn, transition: Transition, milestone: Milestone, job: Job,
                       now: float, group_id: Optional[str] = None) -> list[SettlementIntent]:
        """Write a transition's intent requests as pending intents."""
        if not transition.intents:
            return []
        group = group_id or new_id("grp")
        recorded = []
        for req in transition.intents:
            fee = platform_fee(req.amount) if req.to_party == job.freelancer_id else Decimal("0.00")
            intent = SettlementIntent(
                kind=req.kind,
                amount=req.amount,
                fee=fee,
                from_party=req.from_party,
                to_party=req.to_party,
                milestone_id=milestone.milestone_id,
                job_id=job.job_id,
                group_id=group,
                status=IntentStatus.PENDING.value,
                pre_intent_status=transition.previous_status,
                created_at=now,
                updated_at=now,
            )
            self.store.insert(conn, intent)
            recorded.append(intent)
            log.info("INTENT RECORDED %s %s %s → %s | milestone=%s intent=%s",
                     intent.kind, money_str(intent.amount), intent.from_party,
                     intent.to_party, milestone.milestone_id, intent.intent_id)
        return recorded

    def supersede_open(self, conn, milestone_id: str, now: float) -> list[str]:
        """Withdraw release intents that were never handed to settlement.

        A release that was dispatched or stalled may already have moved funds,
        so the milestone cannot enter dispute until settlement answers it.
        """
        intents = [i for i in self.store.intents_for_milestone(conn, milestone_id)
                   if i.kind == IntentKind.RELEASE.value]
        in_flight = [i.intent_id for i in intents if i.status in _IN_FLIGHT_STATES]
        if in_flight:
            raise RejectedError(errors.invalid_transition(
                "release_in_flight",
                "A release for this milestone is with settlement; dispute it once it is answered",
                intent_ids=in_flight,
            ))
        superseded = []
        for intent in intents:
            if intent.status == IntentStatus.PENDING.value:
                intent.status = IntentStatus.SUPERSEDED.value
                intent.updated_at = now
                self.store.update(conn, intent)
                superseded.append(intent.intent_id)
                log.info("INTENT SUPERSEDED intent=%s milestone=%s", intent.intent_id, milestone_id)
        return superseded

    def ensure_unpaid(self, conn, milestone_id: str):
        """Refuse a new payout for a milestone whose release already settled."""
        paid = [i.intent_id for i in self.store.intents_for_milestone(conn, milestone_id)
                if i.kind == IntentKind.RELEASE.value and i.status == IntentStatus.CONFIRMED.value]
        if paid:
            raise RejectedError(errors.conflict(
                "release_already_settled",
                "Funds for this milestone were already released; an operator must reconcile",
                intent_ids=paid,
            ))

    # ── Dispatch ──────────────────────────────────────────────────────

    def _claim_attempt(self, intent_id: str) -> Optional[SettlementIntent]:
        """Mark one more delivery attempt. None if the intent is no longer dispatchable."""
        with self.db.transaction() as conn:
            intent = self.store.get_intent(conn, intent_id)
            if intent is None or intent.status not in (
                IntentStatus.PENDING.value, IntentStatus.DISPATCHED.value,
            ):
                return None
            intent.status = IntentStatus.DISPATCHED.value
            intent.attempts += 1
            intent.updated_at = self.clock()
            return self.store.update(conn, intent)

    def _note_error(self, intent: SettlementIntent, error: str):
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE settlement_intents SET last_error = ?, updated_at = ? WHERE intent_id = ?",
                (error[:500], self.clock(), intent.intent_id),
            )

    def _current(self, intent_id: str) -> SubmitOutcome:
        with self.db.connection() as conn:
            intent = self.store.get_intent(conn, intent_id)
        if intent is None:
            return SettlementFailure(intent_id, "intent not found")
        if intent.status == IntentStatus.CONFIRMED.value:
            return SettlementReceipt(intent_id, intent.settlement_reference)
        if intent.status == IntentStatus.DISPATCHED.value:
            return PendingSettlement(intent_id, intent.attempts)
        return SettlementFailure(
            intent_id, intent.last_error or f"intent is {intent.status}",
            stalled=intent.status == IntentStatus.STALLED.value,
        )

    def submit_intent(self, intent_id: str) -> SubmitOutcome:
        """Hand an intent to settlement, retrying transient failures.

        Returns a receipt when settlement confirmed, PendingSettlement when it
        accepted the intent for asynchronous processing, or SettlementFailure
        when it refused permanently or the retry budget ran out.
        """
        while True:
            intent = self._claim_attempt(intent_id)
            if intent is None:
                return self._current(intent_id)
            try:
                ack = self.client.submit(intent)
            except TransientSettlementError as e:
                self._note_error(intent, str(e))
                if intent.attempts >= self.max_attempts:
                    return self._stall(intent, str(e))
                delay = min(self.backoff_sec * (2 ** (intent.attempts - 1)),
                            SETTLEMENT_BACKOFF_MAX_SEC)
                log.warning("SETTLEMENT RETRY intent=%s attempt=%d/%d in %.2fs: %s",
                            intent_id, intent.attempts, self.max_attempts, delay, e)
                self.sleep(delay)
                continue

            if ack.status == AckStatus.PENDING.value:
                log.info("SETTLEMENT PENDING intent=%s attempt=%d", intent_id, intent.attempts)
                return PendingSettlement(intent_id, intent.attempts)
            result = self.handle_acknowledgment(ack)
            if isinstance(result, Rejection):
                return SettlementFailure(intent_id, result.message)
            return self._current(intent_id)

    def dispatch_pending(self, limit: int = 100) -> dict:
        """Resubmit intents that were recorded but never acknowledged."""
        with self.db.connection() as conn:
            waiting = self.store.intents_in_status(
                conn, IntentStatus.PENDING.value, IntentStatus.DISPATCHED.value, limit=limit,
            )
        counts = {"confirmed": 0, "pending": 0, "failed": 0, "stalled": 0}
        for intent in waiting:
            outcome = self.submit_intent(intent.intent_id)
            if isinstance(outcome, SettlementReceipt):
                counts["confirmed"] += 1
            elif isinstance(outcome, PendingSettlement):
                counts["pending"] += 1
            elif outcome.stalled:
                counts["stalled"] += 1
            else:
                counts["failed"] += 1
        return counts

    def _stall(self, claimed: SettlementIntent, error: str) -> SubmitOutcome:
        """Give up on an intent, unless an ack answered it since our last attempt."""
        intent_id = claimed.intent_id
        now = self.clock()
        with self.db.transaction() as conn:
            intent = self.store.get_intent(conn, intent_id)
            if intent.status != IntentStatus.DISPATCHED.value or \
                    intent.version != claimed.version:
                answered = intent.status
            else:
                answered = None
                intent.status = IntentStatus.STALLED.value
                intent.last_error = error[:500]
                intent.updated_at = now
                self.store.update(conn, intent)
                milestone = self.store.get_milestone(conn, intent.milestone_id)
                job = self.store.get_job(conn, intent.job_id)
                t = state_machine.transition_milestone(
                    milestone, job, "flag_stalled", SYSTEM_ACTOR, now=now,
                )
                if isinstance(t, Transition):
                    self.store.apply(conn, t, self.events, SYSTEM_ACTOR.user_id, now)
                self.events.append(Event(
                    event_type=EventType.SETTLEMENT_STALLED.value,
                    entity_type="milestone",
                    entity_id=intent.milestone_id,
                    timestamp=now,
                    actor=SYSTEM_ACTOR.user_id,
                    data={
                        "intent_id": intent_id,
                        "job_id": intent.job_id,
                        "kind": intent.kind,
                        "attempts": intent.attempts,
                        "error": error[:200],
                        "notify": [job.client_id],
                    },
                ), conn)
        if answered is not None:
            log.info("STALL SKIPPED intent=%s is already %s", intent_id, answered)
            return self._current(intent_id)
        log.error("SETTLEMENT STALLED intent=%s milestone=%s after %d attempts: %s",
                  intent_id, intent.milestone_id, intent.attempts, error)
        return SettlementFailure(intent_id, error, stalled=True)

    # ── Acknowledgments ───────────────────────────────────────────────

    def handle_acknowledgment(self, ack: SettlementAck) -> Union[AckResult, Rejection]:
        """Apply a settlement answer. Duplicate deliveries are no-ops."""
        now = self.clock()
        try:
            with self.db.transaction() as conn:
                result = self._apply_ack(conn, ack, now)
        except RejectedError as e:
            return e.rejection
        if result.completed_job is not None and self.on_job_completed:
            try:
                self.on_job_completed(result.completed_job)
            except Exception as e:
                log.error("Job completion hook failed for %s: %s",
                          result.completed_job.job_id, e)
        return result

    def _apply_ack(self, conn, ack: SettlementAck, now: float) -> AckResult:
        intent = self.store.get_intent(conn, ack.intent_id)
        if intent is None:
            raise RejectedError(errors.not_found("intent", ack.intent_id))
        if intent.status in (IntentStatus.CONFIRMED.value, IntentStatus.FAILED.value):
            log.info("DUPLICATE ACK intent=%s status=%s", intent.intent_id, intent.status)
            return AckResult(intent, duplicate=True)
        if ack.status == AckStatus.PENDING.value:
            return AckResult(intent)

        milestone = self.store.get_milestone(conn, intent.milestone_id)
        job = self.store.get_job(conn, intent.job_id)
        was_superseded = intent.status == IntentStatus.SUPERSEDED.value

        if ack.status == AckStatus.CONFIRMED.value:
            intent.status = IntentStatus.CONFIRMED.value
            intent.settlement_reference = ack.settlement_reference
        else:
            intent.status = IntentStatus.FAILED.value
            intent.last_error = (ack.reason or "settlement refused")[:500]
        intent.updated_at = now
        intent = self.store.update(conn, intent)

        if was_superseded:
            return self._superseded_answer(conn, intent, milestone, job, now)
        if ack.status == AckStatus.CONFIRMED.value:
            return self._confirmed(conn, intent, milestone, job, now)
        return self._failed(conn, intent, milestone, job, now)

    def _emit(self, conn, event_type: EventType, intent: SettlementIntent, now: float, **data):
        self.events.append(Event(
            event_type=event_type.value,
            entity_type="settlement_intent",
            entity_id=intent.intent_id,
            timestamp=now,
            actor=SYSTEM_ACTOR.user_id,
            data={
                "milestone_id": intent.milestone_id,
                "job_id": intent.job_id,
                "kind": intent.kind,
                "amount": money_str(intent.amount),
                **data,
            },
        ), conn)

    def _transition(self, conn, milestone, job, action, now, **kwargs) -> Milestone:
        t = state_machine.transition_milestone(milestone, job, action, SYSTEM_ACTOR, now=now, **kwargs)
        if isinstance(t, Rejection):
            raise RejectedError(t)
        return self.store.apply(conn, t, self.events, SYSTEM_ACTOR.user_id, now)

    def _confirmed(self, conn, intent, milestone, job, now) -> AckResult:
        self._emit(conn, EventType.SETTLEMENT_CONFIRMED, intent, now,
                   settlement_reference=intent.settlement_reference,
                   notify=[intent.to_party] if intent.to_party != ESCROW_PARTY else [])
        log.info("SETTLEMENT CONFIRMED intent=%s ref=%s", intent.intent_id,
                 intent.settlement_reference)

        if intent.kind == IntentKind.FUND.value:
            milestone = self._transition(conn, milestone, job, "confirm_funding", now)
            return AckResult(intent, milestone)

        group = [i for i in self.store.intents_for_group(conn, intent.group_id)
                 if i.status != IntentStatus.SUPERSEDED.value]
        if any(i.status != IntentStatus.CONFIRMED.value for i in group):
            return AckResult(intent, milestone)

        milestone = self._transition(conn, milestone, job, "settle", now)
        invoice = self.billing.issue_invoice(conn, job, milestone, group, now)
        self.events.append(Event(
            event_type=EventType.INVOICE_ISSUED.value,
            entity_type="invoice",
            entity_id=invoice.invoice_id,
            timestamp=now,
            actor=SYSTEM_ACTOR.user_id,
            data={
                "invoice_number": invoice.invoice_number,
                "job_id": job.job_id,
                "milestone_id": milestone.milestone_id,
                "amount": money_str(invoice.amount),
                "notify": [job.client_id, job.freelancer_id],
            },
        ), conn)
        return AckResult(intent, milestone, completed_job=self._maybe_complete_job(conn, job, now))

    def _maybe_complete_job(self, conn, job: Job, now: float) -> Optional[Job]:
        job = self.store.get_job(conn, job.job_id)
        milestones = tuple(self.store.milestones_for_job(conn, job.job_id))
        t = state_machine.transition_job(job, "complete", SYSTEM_ACTOR, now=now, milestones=milestones)
        if isinstance(t, Rejection):
            return None
        return self.store.apply(conn, t, self.events, SYSTEM_ACTOR.user_id, now)

    def _failed(self, conn, intent, milestone, job, now) -> AckResult:
        log.error("SETTLEMENT FAILED intent=%s kind=%s milestone=%s: %s",
                  intent.intent_id, intent.kind, intent.milestone_id, intent.last_error)
        if intent.kind in (IntentKind.FUND.value, IntentKind.RELEASE.value) and \
                milestone.status in (MilestoneStatus.FUNDED.value, MilestoneStatus.APPROVED.value):
            back_to = intent.pre_intent_status
            if back_to not in (MilestoneStatus.PENDING.value, MilestoneStatus.SUBMITTED.value):
                back_to = None
            milestone = self._transition(conn, milestone, job, "revert", now, revert_to=back_to)
        else:
            milestone = self._transition(conn, milestone, job, "flag_stalled", now)
        self._emit(conn, EventType.SETTLEMENT_FAILED, intent, now,
                   reason=intent.last_error,
                   reverted_to=milestone.status,
                   notify=[job.client_id, job.freelancer_id])
        return AckResult(intent, milestone)

    def _superseded_answer(self, conn, intent, milestone, job, now) -> AckResult:
        # Settlement answered an intent we already withdrew. If funds moved the
        # milestone needs an operator; if not there is nothing to undo.
        if intent.status == IntentStatus.CONFIRMED.value:
            log.error("SUPERSEDED INTENT SETTLED intent=%s milestone=%s ref=%s",
                      intent.intent_id, intent.milestone_id, intent.settlement_reference)
            t = state_machine.transition_milestone(milestone, job, "flag_stalled",
                                                   SYSTEM_ACTOR, now=now)
            if isinstance(t, Transition):
                milestone = self.store.apply(conn, t, self.events, SYSTEM_ACTOR.user_id, now)
            self._emit(conn, EventType.SETTLEMENT_STALLED, intent, now,
                       reason="superseded intent was settled",
                       settlement_reference=intent.settlement_reference,
                       notify=[job.client_id])
        return AckResult(intent, milestone)

    # ── Operator remediation ──────────────────────────────────────────

    def retry_intent(self, intent_id: str, actor) -> Union[SubmitOutcome, Rejection]:
        """Give a stalled intent a fresh retry budget, or replace a failed one.

        A failed intent id is final at the settlement side, so a replacement
        with a new id joins the same payout group.
        """
        if not actor.is_admin:
            return errors.forbidden("admin_required", "Only an admin can retry settlement")
        now = self.clock()
        try:
            with self.db.transaction() as conn:
                intent = self.store.get_intent(conn, intent_id)
                if intent is None:
                    raise RejectedError(errors.not_found("intent", intent_id))
                if intent.status == IntentStatus.STALLED.value:
                    # Already seen by settlement, so never pending again
                    intent.status = IntentStatus.DISPATCHED.value
                    intent.attempts = 0
                    intent.updated_at = now
                    self.store.update(conn, intent)
                    target = intent.intent_id
                elif intent.status == IntentStatus.FAILED.value and \
                        intent.kind in (IntentKind.SPLIT.value, IntentKind.REFUND.value,
                                        IntentKind.RELEASE.value):
                    milestone = self.store.get_milestone(conn, intent.milestone_id)
                    if milestone.status != MilestoneStatus.DISPUTED_RESOLVED.value:
                        raise RejectedError(errors.invalid_transition(
                            "not_retryable",
                            f"Milestone is {milestone.status}; the failed intent was reverted",
                        ))
                    intent.status = IntentStatus.SUPERSEDED.value
                    intent.updated_at = now
                    self.store.update(conn, intent)
                    replacement = SettlementIntent(
                        kind=intent.kind, amount=intent.amount, fee=intent.fee,
                        from_party=intent.from_party, to_party=intent.to_party,
                        milestone_id=intent.milestone_id, job_id=intent.job_id,
                        group_id=intent.group_id, pre_intent_status=intent.pre_intent_status,
                        created_at=now, updated_at=now,
                    )
                    self.store.insert(conn, replacement)
                    target = replacement.intent_id
                else:
                    raise RejectedError(errors.invalid_transition(
                        "not_retryable", f"Intent is {intent.status}", status=intent.status,
                    ))
        except RejectedError as e:
            return e.rejection
        log.info("SETTLEMENT RETRY REQUESTED intent=%s by=%s", target, actor.user_id)
        return self.submit_intent(target)

    def intents_for_milestone(self, milestone_id: str) -> list[SettlementIntent]:
        with self.db.connection() as conn:
            return self.store.intents_for_milestone(conn, milestone_id)
