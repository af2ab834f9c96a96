"""Tests for the Keystone marketplace facade over jobs, bids and milestones."""

import threading
from decimal import Decimal

from conftest import T0
from errors import RejectionKind, is_rejection
from models import Actor, BidFilter, JobFilter, JobStatus, MilestoneStatus, SYSTEM_ACTOR

STRANGER = Actor("stranger-9")


# ── Happy path ────────────────────────────────────────────────────────


class TestHappyPath:
    """A 1000 job in two milestones, funded, delivered and released."""

    def test_job_completes_when_every_milestone_settles(self, scenario):
        job, (design, build) = scenario.assign()
        scenario.release(design)
        assert scenario.job(job.job_id).status == JobStatus.IN_PROGRESS.value

        scenario.release(build)
        done = scenario.job(job.job_id)
        assert done.status == JobStatus.COMPLETED.value
        assert done.freelancer_id == "freelancer-1"
        for ms in scenario.milestones(job.job_id):
            assert ms.status == MilestoneStatus.COMPLETED.value

    def test_ledger_moves_exact_amounts_once(self, scenario, ledger):
        _, milestones = scenario.assign()
        for ms in milestones:
            scenario.release(ms)
        assert ledger.balance("client-1") == Decimal("-1000.00")
        assert ledger.balance("escrow") == Decimal("0.00")
        assert ledger.balance("freelancer-1") == Decimal("900.00")
        assert ledger.balance("platform") == Decimal("100.00")

    def test_invoices_numbered_per_client(self, scenario):
        job, milestones = scenario.assign()
        for ms in milestones:
            scenario.release(ms)
        invoices = scenario.market.billing.invoices_for_job(job.job_id)
        assert sorted(i.invoice_number for i in invoices) == [
            "INV-client-1-00001", "INV-client-1-00002",
        ]
        assert all(i.status == "issued" for i in invoices)

    def test_events_published_in_order(self, scenario, publisher):
        _, milestones = scenario.assign()
        for ms in milestones:
            scenario.release(ms)
        types = publisher.types()
        assert types[0] == "job.created"
        assert types.index("job.assigned") < types.index("milestone.funded")
        assert "job.completed" in types
        seqs = [e.seq for e in publisher.delivered]
        assert seqs == sorted(seqs)
        assert scenario.market.events.verify_chain()["valid"]

    def test_completion_syncs_reputation(self, scenario):
        _, milestones = scenario.assign()
        for ms in milestones:
            scenario.release(ms)
        rec = scenario.market.reputation.get_reputation("freelancer-1", "freelancer")
        assert rec is not None
        assert rec.trust_score == 55

    def test_job_detail_lists_allowed_actions(self, scenario):
        job, _ = scenario.assign()
        detail = scenario.market.job_detail(job.job_id)
        assert detail["allowed_actions"] == ["cancel", "start"]
        assert detail["milestones"][0]["allowed_actions"] == ["cancel", "fund", "mark_overdue"]
        assert len(detail["bids"]) == 1


# ── Posting ───────────────────────────────────────────────────────────


class TestJobPosting:
    def test_budget_range_checked(self, market):
        result = market.create_job(Actor("c"), "Logo", "500", "100")
        assert is_rejection(result)
        assert result.code == "budget_range_invalid"

    def test_float_amount_refused(self, market):
        result = market.create_job(Actor("c"), "Logo", 10.5, "100")
        assert result.kind == RejectionKind.VALIDATION_FAILED
        assert result.code == "invalid_amount"

    def test_milestone_plan_cannot_exceed_budget(self, market):
        result = market.create_job(Actor("c"), "Logo", "100", "500",
                                   milestones=[{"title": "All", "amount": "600"}])
        assert result.code == "milestones_exceed_budget"
        assert market.list_jobs(JobFilter()) == []

    def test_expiry_must_be_future(self, market):
        result = market.create_job(Actor("c"), "Logo", "100", "500", expires_at=T0 - 1)
        assert result.code == "expiry_in_past"

    def test_list_jobs_filters_by_status(self, scenario):
        scenario.post()
        scenario.assign()
        open_jobs = scenario.market.list_jobs(JobFilter(status="open"))
        assigned = scenario.market.list_jobs(JobFilter(status="assigned"))
        assert len(open_jobs) == 1
        assert len(assigned) == 1

    def test_missing_job_is_not_found(self, market):
        result = market.get_job("job-missing")
        assert result.kind == RejectionKind.NOT_FOUND
        assert result.code == "job_not_found"


# ── Bidding ───────────────────────────────────────────────────────────


class TestBidding:
    def test_client_cannot_bid_on_own_job(self, scenario):
        job = scenario.post()
        result = scenario.market.place_bid(scenario.client, job.job_id, "1000", 5)
        assert result.kind == RejectionKind.FORBIDDEN
        assert result.code == "own_job"

    def test_one_bid_per_freelancer(self, scenario):
        job = scenario.post()
        scenario.market.place_bid(scenario.freelancer, job.job_id, "1000", 5)
        again = scenario.market.place_bid(scenario.freelancer, job.job_id, "900", 5)
        assert again.kind == RejectionKind.CONFLICT
        assert again.code == "duplicate_bid"

    def test_accept_rejects_sibling_bids(self, scenario):
        job = scenario.post()
        chosen = scenario.market.place_bid(scenario.freelancer, job.job_id, "1000", 5)
        other = scenario.market.place_bid(Actor("freelancer-2"), job.job_id, "1100", 3)
        scenario.market.accept_bid(scenario.client, job.job_id, chosen.bid_id)
        bids = {b.bid_id: b.status for b in scenario.market.list_bids(BidFilter(job_id=job.job_id))}
        assert bids[chosen.bid_id] == "accepted"
        assert bids[other.bid_id] == "rejected"

    def test_shortlisted_bid_can_be_accepted(self, scenario):
        job = scenario.post()
        bid = scenario.market.place_bid(scenario.freelancer, job.job_id, "1000", 5)
        assert scenario.market.shortlist_bid(scenario.client, bid.bid_id).status == "shortlisted"
        assigned = scenario.market.accept_bid(scenario.client, job.job_id, bid.bid_id)
        assert assigned.status == JobStatus.ASSIGNED.value
        assert assigned.agreed_amount == Decimal("1000.00")

    def test_second_accept_is_invalid_transition(self, scenario):
        job = scenario.post()
        first = scenario.market.place_bid(scenario.freelancer, job.job_id, "1000", 5)
        second = scenario.market.place_bid(Actor("freelancer-2"), job.job_id, "1000", 4)
        scenario.market.accept_bid(scenario.client, job.job_id, first.bid_id)
        result = scenario.market.accept_bid(scenario.client, job.job_id, second.bid_id)
        assert result.kind == RejectionKind.INVALID_TRANSITION
        assert scenario.job(job.job_id).freelancer_id == "freelancer-1"

    def test_accept_requires_milestones_to_match_amount(self, scenario):
        job = scenario.post()
        bid = scenario.market.place_bid(scenario.freelancer, job.job_id, "900", 5)
        result = scenario.market.accept_bid(scenario.client, job.job_id, bid.bid_id)
        assert result.code == "milestone_sum_mismatch"
        assert scenario.job(job.job_id).status == JobStatus.OPEN.value

    def test_list_bids_by_freelancer_and_status(self, scenario):
        first = scenario.post()
        second = scenario.post()
        mine = scenario.market.place_bid(scenario.freelancer, first.job_id, "1000", 5)
        scenario.market.place_bid(scenario.freelancer, second.job_id, "950", 6)
        scenario.market.place_bid(Actor("freelancer-2"), first.job_id, "1100", 3)
        scenario.market.shortlist_bid(scenario.client, mine.bid_id)

        own = scenario.market.list_bids(BidFilter(freelancer_id="freelancer-1"))
        assert len(own) == 2
        assert {b.freelancer_id for b in own} == {"freelancer-1"}
        shortlisted = scenario.market.list_bids(BidFilter(job_id=first.job_id, status="shortlisted"))
        assert [b.bid_id for b in shortlisted] == [mine.bid_id]
        assert len(scenario.market.list_bids(BidFilter(job_id=first.job_id, limit=1))) == 1

    def test_freelancer_withdraws_own_bid(self, scenario):
        job = scenario.post()
        bid = scenario.market.place_bid(scenario.freelancer, job.job_id, "1000", 5)
        assert scenario.market.withdraw_bid(scenario.freelancer, bid.bid_id).status == "withdrawn"
        refused = scenario.market.withdraw_bid(STRANGER, bid.bid_id)
        assert refused.kind == RejectionKind.FORBIDDEN


# ── Milestones ────────────────────────────────────────────────────────


class TestMilestones:
    def test_role_is_checked_before_state(self, scenario):
        _, (design, _) = scenario.assign()
        # Pending milestone cannot be approved, but a stranger learns only that they may not
        result = scenario.market.approve_milestone(STRANGER, design.milestone_id)
        assert result.kind == RejectionKind.FORBIDDEN

    def test_freelancer_cannot_approve(self, scenario):
        _, (design, _) = scenario.assign()
        scenario.submit(design)
        result = scenario.market.approve_milestone(scenario.freelancer, design.milestone_id)
        assert result.kind == RejectionKind.FORBIDDEN

    def test_start_needs_confirmed_funding(self, db, publisher):
        from conftest import Scenario
        from marketplace import Marketplace
        from settlement import LedgerSettlementClient

        market = Marketplace(db=db, settlement=LedgerSettlementClient(deferred=True),
                             publisher=publisher, clock=lambda: T0, sleep=lambda _s: None)
        sc = Scenario(market)
        _, (design, _) = sc.assign()
        funded = market.fund_milestone(sc.client, design.milestone_id)
        assert funded.status == MilestoneStatus.FUNDED.value
        assert not funded.funding_confirmed
        result = market.start_milestone(sc.freelancer, design.milestone_id)
        assert result.code == "funding_unconfirmed"

    def test_first_start_starts_the_job(self, scenario):
        job, (design, _) = scenario.assign()
        scenario.market.fund_milestone(scenario.client, design.milestone_id)
        scenario.market.start_milestone(scenario.freelancer, design.milestone_id)
        assert scenario.job(job.job_id).status == JobStatus.IN_PROGRESS.value

    def test_reject_then_resubmit(self, scenario):
        _, (design, _) = scenario.assign()
        scenario.submit(design)
        rejected = scenario.market.reject_milestone(scenario.client, design.milestone_id,
                                                    "Colours are off")
        assert rejected.status == MilestoneStatus.REJECTED.value
        assert rejected.revision_count == 1
        again = scenario.market.submit_milestone(scenario.freelancer, design.milestone_id,
                                                 "git:def456")
        assert again.status == MilestoneStatus.SUBMITTED.value

    def test_revision_limit(self, scenario):
        _, (design, _) = scenario.assign()
        scenario.submit(design)
        for i in range(3):
            scenario.market.reject_milestone(scenario.client, design.milestone_id, f"round {i}")
            scenario.market.submit_milestone(scenario.freelancer, design.milestone_id, f"git:{i}")
        result = scenario.market.reject_milestone(scenario.client, design.milestone_id, "again")
        assert result.code == "revision_limit_reached"

    def test_add_milestone_bounded_by_agreed_amount(self, scenario):
        job, _ = scenario.assign()
        result = scenario.market.add_milestone(scenario.client, job.job_id, "Extra", "1")
        assert result.code == "exceeds_budget"
        assert result.details["remaining"] == "0.00"

    def test_add_milestone_on_open_job(self, scenario):
        job = scenario.post(milestones=(("Design", "600"),))
        ms = scenario.market.add_milestone(scenario.client, job.job_id, "Build", "400")
        assert ms.position == 2
        assert ms.amount == Decimal("400.00")


# ── Concurrency ───────────────────────────────────────────────────────


class TestExpectedVersion:
    def test_stale_version_is_conflict(self, scenario):
        job, (design, _) = scenario.assign()
        result = scenario.market.fund_milestone(scenario.client, design.milestone_id,
                                                expected_version=design.version + 5)
        assert result.kind == RejectionKind.CONFLICT
        assert result.code == "stale_version"
        assert result.retryable
        assert scenario.milestone(design.milestone_id).status == MilestoneStatus.PENDING.value

    def test_current_version_accepted(self, scenario):
        job = scenario.post()
        result = scenario.market.cancel_job(scenario.client, job.job_id,
                                            expected_version=job.version)
        assert result.status == JobStatus.CANCELLED.value
        assert result.version == job.version + 1

    def test_same_version_approved_twice(self, scenario):
        _, (design, _) = scenario.assign()
        submitted = scenario.submit(design)
        first = scenario.market.approve_milestone(scenario.client, design.milestone_id,
                                                  expected_version=submitted.version)
        second = scenario.market.approve_milestone(scenario.client, design.milestone_id,
                                                   expected_version=submitted.version)
        assert not is_rejection(first)
        assert second.code == "stale_version"

    def test_concurrent_approvals_release_once(self, scenario, ledger):
        _, (design, _) = scenario.assign()
        scenario.submit(design)
        gate = threading.Barrier(2)
        results = []

        def approve():
            gate.wait()
            results.append(scenario.market.approve_milestone(scenario.client, design.milestone_id))

        workers = [threading.Thread(target=approve) for _ in range(2)]
        for w in workers:
            w.start()
        for w in workers:
            w.join(timeout=30)

        assert len(results) == 2
        refused = [r for r in results if is_rejection(r)]
        assert len(refused) == 1
        assert refused[0].kind in (RejectionKind.INVALID_TRANSITION, RejectionKind.CONFLICT)
        assert ledger.balance("freelancer-1") == Decimal("540.00")
        assert ledger.balance("escrow") == Decimal("0.00")
        releases = [i for i in scenario.market.escrow.intents_for_milestone(design.milestone_id)
                    if i.kind == "release"]
        assert len(releases) == 1


# ── Cancellation ──────────────────────────────────────────────────────


class TestCancellation:
    def test_cancel_assigned_job_frees_freelancer(self, scenario):
        job, _ = scenario.assign()
        cancelled = scenario.market.cancel_job(scenario.client, job.job_id, reason="changed plans")
        assert cancelled.status == JobStatus.CANCELLED.value
        assert cancelled.freelancer_id is None
        for ms in scenario.milestones(job.job_id):
            assert ms.status == MilestoneStatus.CANCELLED.value

    def test_cannot_cancel_after_funding(self, scenario):
        job, (design, _) = scenario.assign()
        scenario.market.fund_milestone(scenario.client, design.milestone_id)
        result = scenario.market.cancel_job(scenario.client, job.job_id)
        assert result.code == "milestone_committed"


# ── Deliveries & reviews ──────────────────────────────────────────────


class TestDeliveries:
    MANIFEST = [{"name": "site.zip", "size": 2048, "checksum": "sha256:ab12"}]

    def test_deliver_and_accept_package(self, scenario):
        job, (design, _) = scenario.assign()
        pkg = scenario.market.deliver_package(scenario.freelancer, job.job_id, self.MANIFEST,
                                              milestone_id=design.milestone_id)
        assert pkg.status == "delivered"
        accepted = scenario.market.accept_package(scenario.client, pkg.package_id,
                                                  signature="sig-1")
        assert accepted.status == "accepted"
        assert accepted.signed_by == "client-1"

    def test_manifest_entries_validated(self, scenario):
        job, _ = scenario.assign()
        result = scenario.market.deliver_package(scenario.freelancer, job.job_id,
                                                 [{"name": "x"}])
        assert result.code == "manifest_invalid"

    def test_only_assigned_freelancer_delivers(self, scenario):
        job, _ = scenario.assign()
        result = scenario.market.deliver_package(STRANGER, job.job_id, self.MANIFEST)
        assert result.kind == RejectionKind.FORBIDDEN

    def test_review_requires_completed_job(self, scenario):
        job, _ = scenario.assign()
        result = scenario.market.submit_review(scenario.client, job.job_id, 5)
        assert result.code == "job_not_completed"

    def test_one_review_per_party(self, scenario):
        job, milestones = scenario.assign()
        for ms in milestones:
            scenario.release(ms)
        review = scenario.market.submit_review(scenario.client, job.job_id, 5, "Great work")
        assert review.subject_id == "freelancer-1"
        again = scenario.market.submit_review(scenario.client, job.job_id, 4)
        assert again.code == "duplicate_review"
        bad = scenario.market.submit_review(scenario.freelancer, job.job_id, 6)
        assert bad.code == "rating_out_of_range"


# ── Sweeps ────────────────────────────────────────────────────────────


class TestSweep:
    def test_expired_posting_cancelled_once(self, scenario):
        job = scenario.post(expires_at=T0 + 100)
        first = scenario.market.sweep_expired(now=T0 + 200)
        second = scenario.market.sweep_expired(now=T0 + 300)
        assert first["cancelled_count"] == 1
        assert second == {"cancelled_count": 0, "auto_released_count": 0, "overdue_count": 0}
        cancelled = scenario.job(job.job_id)
        assert cancelled.cancel_reason == "posting_expired"
        assert len(scenario.events("job.cancelled")) == 1

    def test_unfunded_assignment_cancelled(self, scenario):
        job, _ = scenario.assign()
        result = scenario.market.sweep_expired(now=job.fund_deadline + 1)
        assert result["cancelled_count"] == 1
        assert scenario.job(job.job_id).cancel_reason == "payment_window_expired"

    def test_submitted_milestone_auto_released(self, scenario, ledger):
        job, (design, _) = scenario.assign()
        scenario.submit(design, now=T0)
        result = scenario.market.sweep_expired(now=T0 + scenario.market.auto_release_sec + 1)
        assert result["auto_released_count"] == 1
        ms = scenario.milestone(design.milestone_id)
        assert ms.status == MilestoneStatus.COMPLETED.value
        approved = scenario.events("milestone.approved")
        assert approved[0].actor == SYSTEM_ACTOR.user_id
        assert approved[0].data["auto"] is True
        assert ledger.balance("freelancer-1") == Decimal("540.00")

    def test_overdue_notice_sent_once(self, scenario):
        job = scenario.market.create_job(
            scenario.client, "Copy", "100", "500",
            milestones=[{"title": "Draft", "amount": "200", "due_at": T0 + 50}],
        )
        assert scenario.market.sweep_expired(now=T0 + 100)["overdue_count"] == 1
        assert scenario.market.sweep_expired(now=T0 + 200)["overdue_count"] == 0
        overdue = scenario.events("milestone.overdue")
        assert len(overdue) == 1
        assert overdue[0].data["job_id"] == job.job_id


# ── Audit ─────────────────────────────────────────────────────────────


class TestTimeline:
    def test_timeline_covers_children(self, scenario):
        job, (design, _) = scenario.assign()
        scenario.release(design)
        types = [e["event_type"] for e in scenario.market.job_timeline(job.job_id)]
        assert "job.created" in types
        assert "milestone.approved" in types
        assert "settlement.confirmed" in types
        assert "invoice.issued" in types

    def test_timeline_for_unknown_job(self, market):
        assert market.job_timeline("job-nope").code == "job_not_found"
