"""Shared pytest configuration for the Keystone test suite.

Puts the project root on sys.path so tests import the flat modules directly,
points every database at a throwaway directory, and provides a marketplace
wired to the in-memory ledger and publisher.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

_tmp_ctx = tempfile.TemporaryDirectory(prefix="keystone_test_")
_tmpdir = _tmp_ctx.name
os.environ["KEYSTONE_ENV"] = "test"
os.environ["KEYSTONE_API_TOKEN"] = ""
os.environ["KEYSTONE_DB_BACKEND"] = "sqlite"
os.environ["KEYSTONE_DB_PATH"] = os.path.join(_tmpdir, "keystone.db")
os.environ["KEYSTONE_RATE_LIMIT_REQUESTS"] = "5000"  # Prevent 429s in tests

from db import Database  # noqa: E402
from errors import is_rejection  # noqa: E402
from events import InMemoryPublisher  # noqa: E402
from marketplace import Marketplace  # noqa: E402
from models import Actor  # noqa: E402
from settlement import LedgerSettlementClient  # noqa: E402

T0 = 1_750_000_000.0


def new_database() -> Database:
    """Isolated SQLite file per call."""
    return Database(path=os.path.join(_tmpdir, f"ks_{os.urandom(4).hex()}.db"), backend="sqlite")


@pytest.fixture
def db():
    return new_database()


@pytest.fixture
def ledger():
    return LedgerSettlementClient()


@pytest.fixture
def publisher():
    return InMemoryPublisher()


@pytest.fixture
def market(db, ledger, publisher):
    return Marketplace(db=db, settlement=ledger, publisher=publisher,
                       clock=lambda: T0, sleep=lambda _s: None)


class Scenario:
    """Drives a job through the common steps so tests can start mid-lifecycle."""

    client = Actor("client-1")
    freelancer = Actor("freelancer-1")
    arbiter = Actor("arbiter-1", is_admin=True)

    def __init__(self, market: Marketplace):
        self.market = market

    def post(self, milestones=(("Design", "600"), ("Build", "400")), budget_max="1200", **kwargs):
        job = self.market.create_job(
            self.client, "Landing page", "500", budget_max,
            milestones=[{"title": t, "amount": a} for t, a in milestones], **kwargs,
        )
        assert not is_rejection(job), job
        return job

    def assign(self, amount="1000", **kwargs):
        job = self.post(**kwargs)
        bid = self.market.place_bid(self.freelancer, job.job_id, amount, 14)
        assert not is_rejection(bid), bid
        job = self.market.accept_bid(self.client, job.job_id, bid.bid_id)
        assert not is_rejection(job), job
        return job, self.milestones(job.job_id)

    def milestones(self, job_id):
        with self.market.db.connection() as conn:
            return self.market.store.milestones_for_job(conn, job_id)

    def milestone(self, milestone_id):
        return self.market.get_milestone(milestone_id)

    def job(self, job_id):
        return self.market.get_job(job_id)

    def submit(self, ms, now=None):
        """Fund, start and submit a milestone with an instant ledger."""
        for step in (
            lambda: self.market.fund_milestone(self.client, ms.milestone_id, now=now),
            lambda: self.market.start_milestone(self.freelancer, ms.milestone_id, now=now),
            lambda: self.market.submit_milestone(self.freelancer, ms.milestone_id,
                                                 "git:abc123", now=now),
        ):
            result = step()
            assert not is_rejection(result), result
        return result

    def release(self, ms, now=None):
        self.submit(ms, now=now)
        result = self.market.approve_milestone(self.client, ms.milestone_id, now=now)
        assert not is_rejection(result), result
        return result

    def events(self, event_type=None):
        return self.market.events.get_events(event_type=event_type)


@pytest.fixture
def scenario(market):
    return Scenario(market)
