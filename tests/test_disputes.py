"""Tests for Keystone dispute arbitration."""

from decimal import Decimal

from conftest import T0, Scenario
from errors import RejectionKind, is_rejection
from marketplace import Marketplace
from models import (
    Actor,
    DisputeFilter,
    DisputeStatus,
    IntentStatus,
    JobStatus,
    MilestoneStatus,
)
from settlement import LedgerSettlementClient, SettlementAck

SINGLE = (("Whole project", "1000"),)


def _disputed(scenario, milestones=SINGLE):
    job, (ms, *_) = scenario.assign(milestones=milestones)
    scenario.submit(ms)
    dispute = scenario.market.raise_dispute(scenario.client, ms.milestone_id,
                                            "Deliverable does not match the brief")
    assert not is_rejection(dispute), dispute
    return job, ms, dispute


class TestRaise:
    def test_raise_on_submitted(self, scenario):
        _, ms, dispute = _disputed(scenario)
        assert dispute.status == DisputeStatus.PENDING.value
        assert dispute.raised_by == "client-1"
        stored = scenario.milestone(ms.milestone_id)
        assert stored.status == MilestoneStatus.DISPUTED.value
        assert stored.pre_dispute_status == MilestoneStatus.SUBMITTED.value

    def test_raise_on_pending_refused(self, scenario):
        _, (ms, _) = scenario.assign()
        result = scenario.market.raise_dispute(scenario.client, ms.milestone_id, "nope")
        assert result.kind == RejectionKind.INVALID_TRANSITION

    def test_reason_required(self, scenario):
        _, (ms, _) = scenario.assign()
        scenario.submit(ms)
        result = scenario.market.raise_dispute(scenario.freelancer, ms.milestone_id, "  ")
        assert result.code == "reason_required"

    def test_outsider_cannot_raise(self, scenario):
        _, (ms, _) = scenario.assign()
        scenario.submit(ms)
        result = scenario.market.raise_dispute(Actor("stranger"), ms.milestone_id, "hmm")
        assert result.kind == RejectionKind.FORBIDDEN

    def test_one_open_dispute_per_milestone(self, scenario):
        _, ms, _ = _disputed(scenario)
        again = scenario.market.raise_dispute(scenario.freelancer, ms.milestone_id, "also me")
        assert is_rejection(again)

    def test_approve_blocked_while_disputed(self, scenario):
        _, ms, _ = _disputed(scenario)
        result = scenario.market.approve_milestone(scenario.client, ms.milestone_id)
        assert is_rejection(result)


class TestArbitration:
    def test_party_cannot_arbitrate(self, scenario):
        _, _, dispute = _disputed(scenario)
        admin_client = Actor("client-1", is_admin=True)
        result = scenario.market.claim_dispute(admin_client, dispute.dispute_id)
        assert result.kind == RejectionKind.FORBIDDEN

    def test_non_admin_cannot_claim(self, scenario):
        _, _, dispute = _disputed(scenario)
        result = scenario.market.claim_dispute(Actor("outsider"), dispute.dispute_id)
        assert result.kind == RejectionKind.FORBIDDEN

    def test_claimed_by_other_arbiter(self, scenario):
        _, _, dispute = _disputed(scenario)
        scenario.market.claim_dispute(scenario.arbiter, dispute.dispute_id)
        other = Actor("arbiter-2", is_admin=True)
        result = scenario.market.resolve_dispute(other, dispute.dispute_id, "release")
        assert result.code == "claimed_by_other"

    def test_release_pays_freelancer(self, scenario, ledger):
        job, ms, dispute = _disputed(scenario)
        resolved = scenario.market.resolve_dispute(scenario.arbiter, dispute.dispute_id, "release")
        assert resolved.status == DisputeStatus.RESOLVED.value
        assert resolved.arbiter_id == "arbiter-1"
        assert scenario.milestone(ms.milestone_id).status == MilestoneStatus.COMPLETED.value
        assert ledger.balance("freelancer-1") == Decimal("900.00")
        assert scenario.job(job.job_id).status == JobStatus.COMPLETED.value

    def test_split_settles_both_sides(self, scenario, ledger):
        job, ms, dispute = _disputed(scenario)
        resolved = scenario.market.resolve_dispute(
            scenario.arbiter, dispute.dispute_id, "split", "600", "400", note="Half done",
        )
        assert resolved.freelancer_amount == Decimal("600.00")
        assert resolved.client_amount == Decimal("400.00")
        assert ledger.balance("freelancer-1") == Decimal("540.00")
        assert ledger.balance("client-1") == Decimal("-600.00")
        assert ledger.balance("platform") == Decimal("60.00")
        assert ledger.balance("escrow") == Decimal("0.00")

        (invoice,) = scenario.market.billing.invoices_for_job(job.job_id)
        assert invoice.status == "partial"
        assert invoice.net_amount == Decimal("540.00")
        assert invoice.refunded_amount == Decimal("400.00")

    def test_split_intents_share_the_dispute_group(self, scenario):
        _, ms, dispute = _disputed(scenario)
        scenario.market.resolve_dispute(scenario.arbiter, dispute.dispute_id, "split", "250", "750")
        splits = [i for i in scenario.market.escrow.intents_for_milestone(ms.milestone_id)
                  if i.kind == "split"]
        assert len(splits) == 2
        assert {i.group_id for i in splits} == {dispute.dispute_id}
        assert all(i.status == IntentStatus.CONFIRMED.value for i in splits)

    def test_split_mismatch_leaves_dispute_open(self, scenario):
        _, ms, dispute = _disputed(scenario)
        result = scenario.market.resolve_dispute(
            scenario.arbiter, dispute.dispute_id, "split", "600", "300",
        )
        assert result.code == "split_sum_mismatch"
        with scenario.market.db.connection() as conn:
            stored = scenario.market.store.get_dispute(conn, dispute.dispute_id)
        assert stored.status == DisputeStatus.PENDING.value
        assert stored.arbiter_id is None
        assert scenario.milestone(ms.milestone_id).status == MilestoneStatus.DISPUTED.value

    def test_refund_returns_funds_and_costs_trust(self, scenario, ledger):
        job, _, dispute = _disputed(scenario)
        scenario.market.resolve_dispute(scenario.arbiter, dispute.dispute_id, "refund")
        assert ledger.balance("client-1") == Decimal("0.00")
        assert ledger.balance("freelancer-1") == Decimal("0.00")
        (invoice,) = scenario.market.billing.invoices_for_job(job.job_id)
        assert invoice.status == "refunded"

        rep = scenario.market.reputation.get_reputation("freelancer-1", "freelancer")
        # +5 for the completed job, -10 for the refund
        assert rep.trust_score == 45

    def test_dismiss_returns_to_previous_status(self, scenario):
        _, ms, dispute = _disputed(scenario)
        dismissed = scenario.market.dismiss_dispute(scenario.arbiter, dispute.dispute_id,
                                                    note="Work matches the brief")
        assert dismissed.status == DisputeStatus.DISMISSED.value
        assert scenario.milestone(ms.milestone_id).status == MilestoneStatus.SUBMITTED.value
        # The client can decide again
        approved = scenario.market.approve_milestone(scenario.client, ms.milestone_id)
        assert not is_rejection(approved)

    def test_resolved_dispute_is_final(self, scenario):
        _, _, dispute = _disputed(scenario)
        scenario.market.resolve_dispute(scenario.arbiter, dispute.dispute_id, "release")
        result = scenario.market.dismiss_dispute(scenario.arbiter, dispute.dispute_id)
        assert result.kind == RejectionKind.INVALID_TRANSITION


class TestReleaseInFlight:
    """A dispute only withdraws a release that settlement has never seen."""

    def _market(self, db, publisher, **ledger_kwargs):
        ledger = LedgerSettlementClient(**ledger_kwargs)
        market = Marketplace(db=db, settlement=ledger, publisher=publisher,
                             clock=lambda: T0, sleep=lambda _s: None)
        return market, ledger, Scenario(market)

    def _releases(self, market, ms):
        return [i for i in market.escrow.intents_for_milestone(ms.milestone_id)
                if i.kind == "release"]

    def _approve_unsent(self, market, sc, ms, monkeypatch):
        # The process dies between commit and dispatch: the release stays pending
        def crash(_intent_id):
            raise RuntimeError("worker stopped")

        sc.submit(ms)
        monkeypatch.setattr(market.escrow, "submit_intent", crash)
        market.approve_milestone(sc.client, ms.milestone_id)
        monkeypatch.undo()
        (release,) = self._releases(market, ms)
        assert release.status == IntentStatus.PENDING.value
        return release

    def test_unsent_release_is_withdrawn(self, db, publisher, monkeypatch):
        market, ledger, sc = self._market(db, publisher)
        _, (ms,) = sc.assign(milestones=SINGLE)
        old = self._approve_unsent(market, sc, ms, monkeypatch)

        dispute = market.raise_dispute(sc.freelancer, ms.milestone_id, "Client went quiet")
        assert not is_rejection(dispute), dispute
        (withdrawn,) = self._releases(market, ms)
        assert withdrawn.status == IntentStatus.SUPERSEDED.value
        assert market.dispatch_intents()["confirmed"] == 0
        assert ledger.balance("freelancer-1") == Decimal("0.00")

        market.dismiss_dispute(sc.arbiter, dispute.dispute_id)
        assert market.get_milestone(ms.milestone_id).status == MilestoneStatus.COMPLETED.value
        fresh = [i for i in self._releases(market, ms) if i.intent_id != old.intent_id]
        assert [i.status for i in fresh] == [IntentStatus.CONFIRMED.value]
        assert ledger.balance("freelancer-1") == Decimal("900.00")
        assert ledger.balance("escrow") == Decimal("0.00")

    def test_dispatched_release_blocks_dispute(self, db, publisher):
        market, ledger, sc = self._market(db, publisher, deferred=True)
        _, (ms,) = sc.assign(milestones=SINGLE)
        market.fund_milestone(sc.client, ms.milestone_id)
        (fund,) = market.escrow.intents_for_milestone(ms.milestone_id)
        market.handle_settlement_ack(ledger.complete(fund.intent_id))
        market.start_milestone(sc.freelancer, ms.milestone_id)
        market.submit_milestone(sc.freelancer, ms.milestone_id, "git:abc123")
        market.approve_milestone(sc.client, ms.milestone_id)
        (release,) = self._releases(market, ms)
        assert release.status == IntentStatus.DISPATCHED.value

        result = market.raise_dispute(sc.client, ms.milestone_id, "Changed my mind")
        assert result.kind == RejectionKind.INVALID_TRANSITION
        assert result.code == "release_in_flight"
        assert market.get_milestone(ms.milestone_id).status == MilestoneStatus.APPROVED.value
        assert market.list_disputes(DisputeFilter()) == []

        market.handle_settlement_ack(ledger.complete(release.intent_id))
        assert market.get_milestone(ms.milestone_id).status == MilestoneStatus.COMPLETED.value
        assert is_rejection(market.raise_dispute(sc.client, ms.milestone_id, "Too late"))
        assert len(self._releases(market, ms)) == 1
        assert ledger.balance("freelancer-1") == Decimal("900.00")
        assert ledger.balance("escrow") == Decimal("0.00")

    def test_stalled_release_blocks_dispute(self, db, publisher):
        market, ledger, sc = self._market(db, publisher)
        _, (ms,) = sc.assign(milestones=SINGLE)
        sc.submit(ms)
        ledger.transient_failures = 50
        market.approve_milestone(sc.client, ms.milestone_id)
        (release,) = self._releases(market, ms)
        assert release.status == IntentStatus.STALLED.value

        result = market.raise_dispute(sc.freelancer, ms.milestone_id, "Where is my money")
        assert result.code == "release_in_flight"

        ledger.transient_failures = 0
        market.retry_intent(sc.arbiter, release.intent_id)
        assert market.get_milestone(ms.milestone_id).status == MilestoneStatus.COMPLETED.value
        assert ledger.balance("freelancer-1") == Decimal("900.00")

    def test_settled_withdrawn_release_refuses_second_payout(self, db, publisher, monkeypatch):
        market, ledger, sc = self._market(db, publisher)
        _, (ms,) = sc.assign(milestones=SINGLE)
        old = self._approve_unsent(market, sc, ms, monkeypatch)
        dispute = market.raise_dispute(sc.client, ms.milestone_id, "Wrong colours")

        # Settlement reports the withdrawn intent as paid anyway
        market.handle_settlement_ack(SettlementAck(old.intent_id, "confirmed",
                                                   settlement_reference="ext-0001"))
        assert market.get_milestone(ms.milestone_id).settlement_stalled
        assert "settlement.stalled" in publisher.types()

        resolved = market.resolve_dispute(sc.arbiter, dispute.dispute_id, "release")
        assert resolved.kind == RejectionKind.CONFLICT
        assert resolved.code == "release_already_settled"
        dismissed = market.dismiss_dispute(sc.arbiter, dispute.dispute_id)
        assert dismissed.code == "release_already_settled"
        assert len(self._releases(market, ms)) == 1
        assert market.get_milestone(ms.milestone_id).status == MilestoneStatus.DISPUTED.value


class TestQueue:
    def test_age_is_reported(self, scenario):
        _, _, dispute = _disputed(scenario)
        rows = scenario.market.list_disputes(DisputeFilter(), now=T0 + 3600)
        assert [r["dispute_id"] for r in rows] == [dispute.dispute_id]
        assert rows[0]["age_seconds"] == 3600.0

    def test_filter_by_status(self, scenario):
        _, _, dispute = _disputed(scenario)
        scenario.market.claim_dispute(scenario.arbiter, dispute.dispute_id)
        assert scenario.market.list_disputes(DisputeFilter(status="pending")) == []
        rows = scenario.market.list_disputes(DisputeFilter(status="under_review"))
        assert rows[0]["arbiter_id"] == "arbiter-1"
