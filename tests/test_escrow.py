"""Tests for the Keystone escrow coordinator: money, retries and acknowledgments."""

from decimal import Decimal

import pytest

from conftest import T0, Scenario
from errors import RejectionKind, is_rejection
from escrow import (
    PendingSettlement,
    SettlementReceipt,
    payout_breakdown,
    platform_fee,
    resolution_splits,
)
from marketplace import Marketplace
from models import IntentStatus, Job, Milestone, MilestoneStatus
from settlement import LedgerSettlementClient, SettlementAck, TransientSettlementError


def _market(db, publisher, delays=None, **ledger_kwargs):
    ledger = LedgerSettlementClient(**ledger_kwargs)
    sleep = delays.append if delays is not None else (lambda _s: None)
    market = Marketplace(db=db, settlement=ledger, publisher=publisher,
                         clock=lambda: T0, sleep=sleep)
    return market, ledger, Scenario(market)


def _only_intent(market, milestone_id, kind):
    found = [i for i in market.escrow.intents_for_milestone(milestone_id) if i.kind == kind]
    assert len(found) == 1, found
    return found[0]


class CallbackBeforeTimeout(LedgerSettlementClient):
    """Settles and delivers the ack callback, then loses the HTTP reply."""

    market = None

    def submit(self, intent):
        ack = super().submit(intent)
        self.market.handle_settlement_ack(ack)
        raise TransientSettlementError("read timed out")


# ── Money ─────────────────────────────────────────────────────────────


class TestMoney:
    """Fees and splits in exact decimals."""

    def test_fee_is_ten_percent(self):
        assert platform_fee(Decimal("600.00")) == Decimal("60.00")

    def test_fee_rounds_half_even(self):
        assert platform_fee(Decimal("0.05")) == Decimal("0.00")
        assert platform_fee(Decimal("0.15")) == Decimal("0.02")
        assert platform_fee(Decimal("0.25")) == Decimal("0.02")

    def test_breakdown_sums_to_gross(self):
        b = payout_breakdown(Decimal("333.33"))
        assert b["fee"] + b["net"] == b["gross"]

    def test_split_must_sum_exactly(self):
        ms = Milestone(amount=Decimal("1000.00"))
        job = Job(client_id="c", freelancer_id="f")
        result = resolution_splits(ms, job, "split", Decimal("600.00"), Decimal("399.99"))
        assert result.code == "split_sum_mismatch"

    def test_split_parts_positive(self):
        ms = Milestone(amount=Decimal("1000.00"))
        job = Job(client_id="c", freelancer_id="f")
        result = resolution_splits(ms, job, "split", Decimal("1000.00"), Decimal("0.00"))
        assert result.code == "split_not_positive"

    def test_split_produces_two_requests(self):
        ms = Milestone(amount=Decimal("1000.00"))
        job = Job(client_id="c", freelancer_id="f")
        reqs = resolution_splits(ms, job, "split", Decimal("600.00"), Decimal("400.00"))
        assert [(r.to_party, r.amount) for r in reqs] == [
            ("f", Decimal("600.00")), ("c", Decimal("400.00")),
        ]

    def test_unknown_outcome(self):
        result = resolution_splits(Milestone(amount=Decimal("1.00")), Job(), "coinflip")
        assert result.kind == RejectionKind.VALIDATION_FAILED
        assert result.code == "unknown_resolution"


# ── Submission ────────────────────────────────────────────────────────


class TestSubmitIntent:
    def test_intent_recorded_before_dispatch(self, scenario):
        _, (design, _) = scenario.assign()
        scenario.market.fund_milestone(scenario.client, design.milestone_id)
        intent = _only_intent(scenario.market, design.milestone_id, "fund")
        assert intent.status == IntentStatus.CONFIRMED.value
        assert intent.from_party == "client-1"
        assert intent.to_party == "escrow"
        assert intent.fee == Decimal("0.00")
        assert intent.pre_intent_status == MilestoneStatus.PENDING.value

    def test_release_carries_fee(self, scenario):
        _, (design, _) = scenario.assign()
        scenario.release(design)
        release = _only_intent(scenario.market, design.milestone_id, "release")
        assert release.amount == Decimal("600.00")
        assert release.fee == Decimal("60.00")

    def test_transient_failures_retry_with_backoff(self, db, publisher):
        delays = []
        market, ledger, sc = _market(db, publisher, delays, transient_failures=2)
        _, (design, _) = sc.assign()
        funded = market.fund_milestone(sc.client, design.milestone_id)
        assert funded.funding_confirmed
        assert delays == [0.5, 1.0]
        assert ledger.calls == 3
        assert _only_intent(market, design.milestone_id, "fund").attempts == 3

    def test_lost_response_never_double_credits(self, db, publisher):
        market, ledger, sc = _market(db, publisher, lose_response=1)
        _, (design, _) = sc.assign()
        funded = market.fund_milestone(sc.client, design.milestone_id)
        assert funded.funding_confirmed
        assert ledger.calls == 2
        assert ledger.balance("escrow") == Decimal("600.00")
        assert ledger.balance("client-1") == Decimal("-600.00")

    def test_retry_budget_exhausted_stalls(self, db, publisher):
        market, ledger, sc = _market(db, publisher, transient_failures=50)
        _, (design, _) = sc.assign()
        ms = market.fund_milestone(sc.client, design.milestone_id)
        assert ms.status == MilestoneStatus.FUNDED.value
        assert ms.settlement_stalled
        assert not ms.funding_confirmed
        intent = _only_intent(market, design.milestone_id, "fund")
        assert intent.status == IntentStatus.STALLED.value
        assert intent.attempts == market.escrow.max_attempts
        assert "settlement.stalled" in publisher.types()

    def test_admin_retry_revives_stalled_intent(self, db, publisher):
        market, ledger, sc = _market(db, publisher, transient_failures=50)
        _, (design, _) = sc.assign()
        market.fund_milestone(sc.client, design.milestone_id)
        intent = _only_intent(market, design.milestone_id, "fund")

        ledger.transient_failures = 0
        refused = market.retry_intent(sc.client, intent.intent_id)
        assert refused.kind == RejectionKind.FORBIDDEN

        outcome = market.retry_intent(sc.arbiter, intent.intent_id)
        assert isinstance(outcome, SettlementReceipt)
        ms = market.get_milestone(design.milestone_id)
        assert ms.funding_confirmed
        assert not ms.settlement_stalled

    def test_ack_before_lost_reply_is_not_stalled(self, db, publisher):
        ledger = CallbackBeforeTimeout()
        market = Marketplace(db=db, settlement=ledger, publisher=publisher,
                             clock=lambda: T0, sleep=lambda _s: None)
        ledger.market = market
        market.escrow.max_attempts = 1
        sc = Scenario(market)
        _, (design, _) = sc.assign()

        ms = market.fund_milestone(sc.client, design.milestone_id)
        assert ms.funding_confirmed
        assert not ms.settlement_stalled
        intent = _only_intent(market, design.milestone_id, "fund")
        assert intent.status == IntentStatus.CONFIRMED.value
        assert "settlement.stalled" not in publisher.types()
        assert market.escrow.submit_intent(intent.intent_id) == \
            SettlementReceipt(intent.intent_id, intent.settlement_reference)

    def test_retry_of_confirmed_intent_refused(self, scenario):
        _, (design, _) = scenario.assign()
        scenario.market.fund_milestone(scenario.client, design.milestone_id)
        intent = _only_intent(scenario.market, design.milestone_id, "fund")
        result = scenario.market.retry_intent(scenario.arbiter, intent.intent_id)
        assert result.code == "not_retryable"

    def test_dispatch_pending_picks_up_unsent(self, db, publisher):
        market, ledger, sc = _market(db, publisher, transient_failures=50)
        _, (design, _) = sc.assign()
        market.fund_milestone(sc.client, design.milestone_id)
        # Stalled intents wait for an operator
        assert market.dispatch_intents() == {"confirmed": 0, "pending": 0, "failed": 0, "stalled": 0}


# ── Permanent failure ─────────────────────────────────────────────────


class TestPermanentFailure:
    def test_failed_funding_reverts_to_pending(self, db, publisher):
        market, _, sc = _market(db, publisher, refuse_kinds={"fund"})
        _, (design, _) = sc.assign()
        ms = market.fund_milestone(sc.client, design.milestone_id)
        assert ms.status == MilestoneStatus.PENDING.value
        assert ms.funded_at is None
        intent = _only_intent(market, design.milestone_id, "fund")
        assert intent.status == IntentStatus.FAILED.value
        assert "settlement.failed" in publisher.types()

    def test_failed_release_reverts_to_submitted(self, db, publisher):
        market, _, sc = _market(db, publisher, refuse_kinds={"release"})
        _, (design, _) = sc.assign()
        sc.submit(design)
        ms = market.approve_milestone(sc.client, design.milestone_id)
        assert ms.status == MilestoneStatus.SUBMITTED.value
        assert ms.approved_at is None
        failed = [e for e in market.events.get_events(event_type="settlement.failed")]
        assert failed[0].data["reverted_to"] == MilestoneStatus.SUBMITTED.value


# ── Acknowledgments ───────────────────────────────────────────────────


class TestAcknowledgments:
    def test_async_ack_completes_funding(self, db, publisher):
        market, ledger, sc = _market(db, publisher, deferred=True)
        _, (design, _) = sc.assign()
        market.fund_milestone(sc.client, design.milestone_id)
        intent = _only_intent(market, design.milestone_id, "fund")
        assert intent.status == IntentStatus.DISPATCHED.value
        assert isinstance(market.escrow.submit_intent(intent.intent_id), PendingSettlement)

        result = market.handle_settlement_ack(ledger.complete(intent.intent_id))
        assert not result.duplicate
        assert result.intent.status == IntentStatus.CONFIRMED.value
        assert market.get_milestone(design.milestone_id).funding_confirmed

    def test_duplicate_ack_is_noop(self, db, publisher):
        market, ledger, sc = _market(db, publisher, deferred=True)
        _, (design, _) = sc.assign()
        market.fund_milestone(sc.client, design.milestone_id)
        intent = _only_intent(market, design.milestone_id, "fund")
        ack = ledger.complete(intent.intent_id)
        market.handle_settlement_ack(ack)
        events_before = len(market.events.get_events())
        again = market.handle_settlement_ack({
            "intent_id": ack.intent_id, "status": "confirmed",
            "settlement_reference": ack.settlement_reference,
        })
        assert again.duplicate
        assert len(market.events.get_events()) == events_before

    def test_unknown_intent(self, market):
        result = market.handle_settlement_ack(SettlementAck("int-missing", "confirmed"))
        assert result.code == "intent_not_found"

    @pytest.mark.parametrize("payload", [
        {"intent_id": "int-1", "status": "maybe"},
        {"status": "confirmed"},
    ])
    def test_malformed_ack(self, market, payload):
        result = market.handle_settlement_ack(payload)
        assert is_rejection(result)
        assert result.code == "invalid_ack"
