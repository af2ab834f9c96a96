# Keystone Dispute Resolver — arbitration of contested milestones
#
# A client or freelancer raises a dispute on a submitted or approved
# milestone. An admin who is not a party to the job claims it, then either
#
#   resolves  release / refund / split; the milestone moves to
#             disputed_resolved and the payout intents are recorded as one
#             group keyed by the dispute id
#   dismisses the milestone returns to where it was before the dispute, and
#             a withdrawn release is issued again
#
# Only a release that never reached settlement can be withdrawn. A dispute is
# refused while one is in flight, and resolve/dismiss are refused once one
# has settled.
#
# At most one dispute per milestone is open at a time (partial unique index).

import logging
import time
from decimal import Decimal
from typing import Optional

import errors
import state_machine
from escrow import EscrowCoordinator, resolution_splits
from events import EventStore
from models import (
    Actor,
    Dispute,
    DisputeFilter,
    DisputeStatus,
    Job,
    Milestone,
    Resolution,
    money_str,
)
from store import EntityStore, UnitOfWork, expect_version

log = logging.getLogger("keystone")


class DisputeResolver:
    def __init__(self, db, escrow: EscrowCoordinator,
                 event_store: Optional[EventStore] = None,
                 store: Optional[EntityStore] = None):
        self.db = db
        self.escrow = escrow
        self.events = event_store or EventStore(db)
        self.store = store or EntityStore()

    def _context(self, conn, dispute: Dispute) -> tuple[Milestone, Job]:
        milestone = self.store.load(conn, Milestone, dispute.milestone_id, "milestone")
        job = self.store.load(conn, Job, dispute.job_id, "job")
        return milestone, job

    @staticmethod
    def _parties(job: Job) -> tuple:
        return tuple(p for p in (job.client_id, job.freelancer_id) if p)

    # ── Raise ─────────────────────────────────────────────────────────

    def raise_dispute(self, uow: UnitOfWork, actor: Actor, milestone_id: str,
                      reason: str, expected_version: Optional[int] = None) -> Dispute:
        conn, now = uow.conn, uow.now
        milestone = self.store.load(conn, Milestone, milestone_id, "milestone")
        expect_version(milestone, expected_version)
        job = self.store.load(conn, Job, milestone.job_id, "job")

        t = errors.check(state_machine.transition_milestone(
            milestone, job, "dispute", actor, now=now, note=reason,
        ))
        dispute = Dispute(
            milestone_id=milestone_id,
            job_id=job.job_id,
            raised_by=actor.user_id,
            reason=reason.strip(),
            created_at=now,
        )
        for emit in t.events:
            emit.data["dispute_id"] = dispute.dispute_id
        superseded = self.escrow.supersede_open(conn, milestone_id, now)
        self.store.apply(conn, t, self.events, actor.user_id, now)
        self.store.insert(conn, dispute)
        log.info("DISPUTE RAISED %s milestone=%s by=%s from=%s superseded=%d",
                 dispute.dispute_id, milestone_id, actor.user_id,
                 t.previous_status, len(superseded))
        return dispute

    # ── Arbiter actions ───────────────────────────────────────────────

    def claim(self, uow: UnitOfWork, actor: Actor, dispute_id: str,
              expected_version: Optional[int] = None) -> Dispute:
        conn, now = uow.conn, uow.now
        dispute = self.store.load(conn, Dispute, dispute_id, "dispute")
        expect_version(dispute, expected_version)
        _, job = self._context(conn, dispute)
        t = errors.check(state_machine.transition_dispute(
            dispute, "claim", actor, now=now, parties=self._parties(job),
        ))
        return self.store.apply(conn, t, self.events, actor.user_id, now)

    def resolve(self, uow: UnitOfWork, actor: Actor, dispute_id: str, outcome: str,
                freelancer_amount=None, client_amount=None, note: str = "",
                expected_version: Optional[int] = None) -> Dispute:
        """Decide a dispute. A pending dispute is claimed by the resolving admin first."""
        conn, now = uow.conn, uow.now
        dispute = self.store.load(conn, Dispute, dispute_id, "dispute")
        expect_version(dispute, expected_version)
        milestone, job = self._context(conn, dispute)
        parties = self._parties(job)

        if dispute.status == DisputeStatus.PENDING.value:
            t = errors.check(state_machine.transition_dispute(
                dispute, "claim", actor, now=now, parties=parties,
            ))
            dispute = self.store.apply(conn, t, self.events, actor.user_id, now)

        requests = errors.check(resolution_splits(
            milestone, job, outcome, freelancer_amount, client_amount,
        ))
        outcome = Resolution(outcome).value
        paid = sum((r.amount for r in requests if r.to_party == job.freelancer_id),
                   Decimal("0.00"))
        refunded = milestone.amount - paid

        dt = errors.check(state_machine.transition_dispute(
            dispute, "resolve", actor, now=now, parties=parties,
            resolution=outcome, freelancer_amount=paid, client_amount=refunded, note=note,
        ))
        mt = errors.check(state_machine.transition_milestone(
            milestone, job, "resolve", actor, now=now, resolution_intents=tuple(requests),
        ))
        self.escrow.ensure_unpaid(conn, milestone.milestone_id)
        dispute = self.store.apply(conn, dt, self.events, actor.user_id, now)
        milestone = self.store.apply(conn, mt, self.events, actor.user_id, now)
        uow.intents.extend(self.escrow.record_intents(
            conn, mt, milestone, job, now, group_id=dispute.dispute_id,
        ))
        log.info("DISPUTE RESOLVED %s outcome=%s freelancer=%s client=%s arbiter=%s",
                 dispute_id, outcome, money_str(paid), money_str(refunded), actor.user_id)
        return dispute

    def dismiss(self, uow: UnitOfWork, actor: Actor, dispute_id: str, note: str = "",
                expected_version: Optional[int] = None) -> Dispute:
        conn, now = uow.conn, uow.now
        dispute = self.store.load(conn, Dispute, dispute_id, "dispute")
        expect_version(dispute, expected_version)
        milestone, job = self._context(conn, dispute)

        dt = errors.check(state_machine.transition_dispute(
            dispute, "dismiss", actor, now=now, parties=self._parties(job), note=note,
        ))
        mt = errors.check(state_machine.transition_milestone(
            milestone, job, "reopen", actor, now=now,
        ))
        self.escrow.ensure_unpaid(conn, milestone.milestone_id)
        dispute = self.store.apply(conn, dt, self.events, actor.user_id, now)
        milestone = self.store.apply(conn, mt, self.events, actor.user_id, now)
        uow.intents.extend(self.escrow.record_intents(conn, mt, milestone, job, now))
        log.info("DISPUTE DISMISSED %s milestone=%s back to %s", dispute_id,
                 milestone.milestone_id, milestone.status)
        return dispute

    # ── Queries ───────────────────────────────────────────────────────

    def get(self, dispute_id: str) -> Optional[Dispute]:
        with self.db.connection() as conn:
            return self.store.get_dispute(conn, dispute_id)

    def list_disputes(self, flt: DisputeFilter, now: Optional[float] = None) -> list[dict]:
        """Disputes matching the filter, oldest first, with their age surfaced."""
        now = now if now is not None else time.time()
        with self.db.connection() as conn:
            found = self.store.list_disputes(conn, flt)
        out = []
        for d in found:
            row = d.to_dict()
            end = d.resolved_at if d.resolved_at is not None else now
            row["age_seconds"] = max(0.0, end - d.created_at)
            out.append(row)
        return out
