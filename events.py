# Keystone Event Log — append-only, hash-chained, with a delivery outbox
#
# Every state transition is recorded as an immutable event in the same
# transaction as the state change itself. Delivery to the notification
# collaborator happens afterwards from the outbox, so a failed email/push never
# undoes a committed transition and a committed transition is never lost.
#
# TAMPER-EVIDENT: each event carries the SHA-256 hash of the previous event,
# forming a chain ordered by seq. verify_chain() replays it.

import hashlib
import json
import logging
import os
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

import requests

log = logging.getLogger("keystone")

WEBHOOK_URL = os.environ.get("KEYSTONE_WEBHOOK_URL", "")
WEBHOOK_TOKEN = os.environ.get("KEYSTONE_WEBHOOK_TOKEN", "")
WEBHOOK_TIMEOUT_SEC = float(os.environ.get("KEYSTONE_WEBHOOK_TIMEOUT_SEC", "10"))

# Postgres advisory lock held from reading the chain head to inserting after it
EVENT_CHAIN_LOCK = 7310421


# ── Event Types ───────────────────────────────────────────────────────

class EventType(str, Enum):
    # Job lifecycle
    JOB_CREATED = "job.created"
    JOB_ASSIGNED = "job.assigned"
    JOB_STARTED = "job.started"
    JOB_COMPLETED = "job.completed"
    JOB_CANCELLED = "job.cancelled"

    # Bidding
    BID_PLACED = "bid.placed"
    BID_SHORTLISTED = "bid.shortlisted"
    BID_WITHDRAWN = "bid.withdrawn"
    BID_REJECTED = "bid.rejected"

    # Milestones
    MILESTONE_ADDED = "milestone.added"
    MILESTONE_FUNDED = "milestone.funded"
    MILESTONE_STARTED = "milestone.started"
    MILESTONE_SUBMITTED = "milestone.submitted"
    MILESTONE_APPROVED = "milestone.approved"
    MILESTONE_REJECTED = "milestone.rejected"
    MILESTONE_DISPUTED = "milestone.disputed"
    MILESTONE_COMPLETED = "milestone.completed"
    MILESTONE_OVERDUE = "milestone.overdue"

    # Disputes
    DISPUTE_CLAIMED = "dispute.claimed"
    DISPUTE_RESOLVED = "dispute.resolved"
    DISPUTE_DISMISSED = "dispute.dismissed"

    # Deliveries & reviews
    PACKAGE_DELIVERED = "package.delivered"
    PACKAGE_ACCEPTED = "package.accepted"
    PACKAGE_REJECTED = "package.rejected"
    REVIEW_SUBMITTED = "review.submitted"

    # Settlement & billing
    SETTLEMENT_CONFIRMED = "settlement.confirmed"
    SETTLEMENT_FAILED = "settlement.failed"
    SETTLEMENT_STALLED = "settlement.stalled"
    INVOICE_ISSUED = "invoice.issued"


@dataclass
class Event:
    """Immutable event record.

    Tamper-evident: each event carries prev_hash (SHA-256 of the preceding
    event's canonical JSON) and event_hash (SHA-256 of this event).
    """
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = ""
    entity_type: str = ""      # "job", "milestone", "bid", "dispute", ...
    entity_id: str = ""
    timestamp: float = field(default_factory=time.time)
    actor: str = ""            # user id, or "system"
    data: dict = field(default_factory=dict)
    seq: int = 0
    prev_hash: str = ""
    event_hash: str = ""
    delivered_at: Optional[float] = None

    def compute_hash(self) -> str:
        """Compute SHA-256 hash of canonical event payload (excludes event_hash)."""
        canonical = json.dumps({
            "event_id": self.event_id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "data": self.data,
            "prev_hash": self.prev_hash,
        }, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @property
    def notify(self) -> list:
        return [p for p in self.data.get("notify", []) if p]

    def to_dict(self) -> dict:
        return asdict(self)


def _row_to_event(r) -> Event:
    return Event(
        event_id=r["event_id"],
        event_type=r["event_type"],
        entity_type=r["entity_type"],
        entity_id=r["entity_id"],
        timestamp=r["timestamp"],
        actor=r["actor"],
        data=json.loads(r["data"]),
        seq=r["seq"],
        prev_hash=r["prev_hash"] or "",
        event_hash=r["event_hash"] or "",
        delivered_at=r["delivered_at"],
    )


# ── Publishers ────────────────────────────────────────────────────────
# The notification collaborator. Injected wherever events are dispatched;
# there is no process-wide bus.

@runtime_checkable
class EventPublisher(Protocol):
    def publish(self, event: Event) -> None:
        """Deliver one event. Raise on failure; the event stays in the outbox."""
        ...


class LogPublisher:
    """Development publisher: writes deliveries to the log."""

    def publish(self, event: Event) -> None:
        log.info("NOTIFY %s %s=%s → %s", event.event_type, event.entity_type,
                 event.entity_id, ",".join(event.notify) or "-")


class InMemoryPublisher:
    """Collects delivered events. Optionally fails the next N deliveries."""

    def __init__(self, fail_times: int = 0):
        self.delivered: list[Event] = []
        self.fail_times = fail_times

    def publish(self, event: Event) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("notification channel unavailable")
        self.delivered.append(event)

    def types(self) -> list[str]:
        return [e.event_type for e in self.delivered]


class WebhookPublisher:
    """POSTs each event as JSON to the notification service."""

    def __init__(self, url: str = WEBHOOK_URL, token: str = WEBHOOK_TOKEN,
                 timeout: float = WEBHOOK_TIMEOUT_SEC):
        self.url = url
        self.token = token
        self.timeout = timeout

    def publish(self, event: Event) -> None:
        headers = {"Content-Type": "application/json", "Idempotency-Key": event.event_id}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        resp = requests.post(
            self.url,
            data=json.dumps(event.to_dict(), default=str),
            headers=headers,
            timeout=self.timeout,
        )
        resp.raise_for_status()


def default_publisher() -> EventPublisher:
    if WEBHOOK_URL:
        return WebhookPublisher()
    return LogPublisher()


# ── Event Store ───────────────────────────────────────────────────────

class EventStore:
    """Append-only event store living beside the entity tables.

    Events are immutable. They are the audit trail for every job, milestone,
    dispute and settlement, and the outbox for notifications.
    """

    def __init__(self, db):
        self.db = db

    def append(self, event: Event, conn=None) -> Event:
        """Append an event with tamper-evident hash chaining.

        Pass the caller's transaction connection so the event commits (or
        rolls back) together with the state change it describes.
        """
        if conn is None:
            with self.db.transaction() as own:
                return self._append(own, event)
        return self._append(conn, event)

    def _append(self, conn, event: Event) -> Event:
        if self.db.backend == "postgres":
            # Released at commit or rollback
            conn.execute("SELECT pg_advisory_xact_lock(?)", (EVENT_CHAIN_LOCK,))
        row = conn.execute(
            "SELECT seq, event_hash FROM events ORDER BY seq DESC LIMIT 1"
        ).fetchone()
        event.seq = (row["seq"] + 1) if row else 1
        event.prev_hash = row["event_hash"] if row else ""
        event.event_hash = event.compute_hash()

        conn.execute(
            """INSERT INTO events
               (event_id, seq, event_type, entity_type, entity_id,
                timestamp, actor, data, prev_hash, event_hash)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                event.event_id, event.seq, event.event_type, event.entity_type,
                event.entity_id, event.timestamp, event.actor,
                json.dumps(event.data, default=str),
                event.prev_hash, event.event_hash,
            ),
        )
        return event

    def verify_chain(self, limit: int = 0) -> dict:
        """Verify the tamper-evident hash chain.

        Returns {"valid": bool, "events_checked": int, "broken_at": event_id or None}.
        """
        with self.db.connection() as conn:
            query = "SELECT * FROM events ORDER BY seq ASC"
            params = ()
            if limit > 0:
                query += " LIMIT ?"
                params = (limit,)
            rows = conn.execute(query, params).fetchall()

        prev_hash = ""
        for i, row in enumerate(rows):
            if (row["prev_hash"] or "") != prev_hash:
                return {
                    "valid": False,
                    "events_checked": i + 1,
                    "broken_at": row["event_id"],
                    "reason": f"prev_hash mismatch at event {row['event_id']}",
                }
            evt = _row_to_event(row)
            if evt.compute_hash() != row["event_hash"]:
                return {
                    "valid": False,
                    "events_checked": i + 1,
                    "broken_at": row["event_id"],
                    "reason": f"event_hash tampered at event {row['event_id']}",
                }
            prev_hash = row["event_hash"]

        return {"valid": True, "events_checked": len(rows), "broken_at": None}

    def get_events(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        event_type: Optional[str] = None,
        since: Optional[float] = None,
        limit: int = 1000,
    ) -> list[Event]:
        """Query events with optional filters."""
        clauses = []
        params = []
        if entity_type:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        if event_type:
            clauses.append("event_type = ?")
            params.append(event_type)
        if since:
            clauses.append("timestamp >= ?")
            params.append(since)

        where = " AND ".join(clauses) if clauses else "1=1"
        params.append(limit)

        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM events WHERE {where} ORDER BY seq ASC LIMIT ?",
                tuple(params),
            ).fetchall()
            return [_row_to_event(r) for r in rows]

    def get_entity_history(self, entity_type: str, entity_id: str) -> list[Event]:
        """Full event history for an entity, oldest first."""
        return self.get_events(entity_type=entity_type, entity_id=entity_id, limit=10000)

    def job_timeline(self, job_id: str) -> list[dict]:
        """Every event about a job or anything hanging off it, in order."""
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE entity_id = ? OR data LIKE ? ORDER BY seq ASC",
                (job_id, f'%"job_id": "{job_id}"%'),
            ).fetchall()
        return [_row_to_event(r).to_dict() for r in rows]

    # ── Outbox ────────────────────────────────────────────────────────

    def pending(self, limit: int = 100) -> list[Event]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE delivered_at IS NULL ORDER BY seq ASC LIMIT ?",
                (limit,),
            ).fetchall()
            return [_row_to_event(r) for r in rows]

    def dispatch_pending(self, publisher: EventPublisher, limit: int = 100,
                         now: Optional[float] = None) -> dict:
        """Deliver undelivered events in order.

        Stops at the first failure so delivery order is preserved; the failed
        event and everything after it stay pending for the next run.
        """
        delivered = 0
        failed = None
        for event in self.pending(limit):
            try:
                publisher.publish(event)
            except Exception as e:
                log.warning("EVENT DELIVERY FAILED %s seq=%d: %s",
                            event.event_type, event.seq, e)
                with self.db.transaction() as conn:
                    conn.execute(
                        "UPDATE events SET delivery_attempts = delivery_attempts + 1, "
                        "last_delivery_error = ? WHERE event_id = ?",
                        (str(e)[:500], event.event_id),
                    )
                failed = event.event_id
                break
            with self.db.transaction() as conn:
                conn.execute(
                    "UPDATE events SET delivered_at = ?, "
                    "delivery_attempts = delivery_attempts + 1 WHERE event_id = ?",
                    (now if now is not None else time.time(), event.event_id),
                )
            delivered += 1
        return {"delivered": delivered, "failed_event_id": failed}
