# Keystone Entity Store — row mapping and compare-and-swap persistence
#
# Every function takes an open connection from db.Database.transaction() or
# db.Database.connection(), so a caller can compose several reads and writes
# into one atomic unit. Updates are conditional on the version the caller read:
#
#   UPDATE <table> SET ..., version = version + 1 WHERE <key> = ? AND version = ?
#
# Zero affected rows means someone else won the race and the caller gets a
# Conflict rejection (raised as RejectedError so the transaction rolls back).

import dataclasses
import logging
from typing import Optional, Type, TypeVar

import errors
from errors import RejectedError
from events import Event
from models import (
    Bid,
    BidFilter,
    DeliveryPackage,
    Dispute,
    DisputeFilter,
    Invoice,
    Job,
    JobFilter,
    Milestone,
    OPEN_DISPUTE_STATES,
    Review,
    SettlementIntent,
)

log = logging.getLogger("keystone")

R = TypeVar("R")


@dataclasses.dataclass
class UnitOfWork:
    """One write transaction plus what must happen after it commits."""
    conn: object
    now: float
    intents: list = dataclasses.field(default_factory=list)
    completed_jobs: list = dataclasses.field(default_factory=list)


def expect_version(record, expected_version: Optional[int]):
    """Reject early when the caller acted on an out-of-date read."""
    if expected_version is not None and record.version != expected_version:
        raise RejectedError(errors.conflict(
            "stale_version",
            f"{record.TABLE[:-1]} {getattr(record, record.KEY)} is at version "
            f"{record.version}, not {expected_version}",
            expected_version=expected_version,
            current_version=record.version,
        ))


class EntityStore:
    """Stateless accessor over the entity tables."""

    # ── Generic ───────────────────────────────────────────────────────

    def insert(self, conn, record):
        row = record.to_row()
        cols = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        conn.execute(
            f"INSERT INTO {record.TABLE} ({cols}) VALUES ({marks})",
            tuple(row.values()),
        )
        return record

    def update(self, conn, record, expected_version: Optional[int] = None):
        """Persist a changed record if nobody else changed it first.

        expected_version defaults to record.version, the version the record
        was read at. Returns a copy carrying the bumped version.
        """
        expected = record.version if expected_version is None else expected_version
        row = record.to_row()
        key = record.KEY
        row.pop(key)
        row.pop("version")
        assignments = ", ".join(f"{col} = ?" for col in row)
        result = conn.execute(
            f"UPDATE {record.TABLE} SET {assignments}, version = ? "
            f"WHERE {key} = ? AND version = ?",
            (*row.values(), expected + 1, getattr(record, key), expected),
        )
        if result.rowcount != 1:
            log.info("CAS MISS %s=%s expected_version=%d",
                     key, getattr(record, key), expected)
            raise RejectedError(errors.conflict(
                "stale_version",
                f"{record.TABLE[:-1]} {getattr(record, key)} changed concurrently; "
                "reload and retry",
                expected_version=expected,
            ))
        return dataclasses.replace(record, version=expected + 1)

    # ── Transitions ───────────────────────────────────────────────────

    def apply(self, conn, transition, event_store, actor_id: str, now: float):
        """Persist a Transition: CAS-write the entity and everything it touched,
        then append its events to the log in the same transaction.

        Returns the stored entity (with its new version).
        """
        entity = self.update(conn, transition.entity)
        for related in transition.related:
            self.update(conn, related)
        for emit in transition.events:
            event_store.append(Event(
                event_type=emit.event_type,
                entity_type=emit.entity_type,
                entity_id=emit.entity_id,
                timestamp=now,
                actor=actor_id,
                data=dict(emit.data),
            ), conn)
        if transition.previous_status != entity.status:
            log.info("STATE %s → %s | %s=%s | actor=%s",
                     transition.previous_status, entity.status,
                     entity.KEY[:-3], getattr(entity, entity.KEY), actor_id)
        return entity

    def get(self, conn, cls: Type[R], key_value) -> Optional[R]:
        row = conn.execute(
            f"SELECT * FROM {cls.TABLE} WHERE {cls.KEY} = ?", (key_value,)
        ).fetchone()
        return cls.from_row(row) if row else None

    def load(self, conn, cls: Type[R], key_value, entity: str) -> R:
        """Like get(), but a missing row aborts the transaction with NotFound."""
        record = self.get(conn, cls, key_value)
        if record is None:
            raise RejectedError(errors.not_found(entity, key_value))
        return record

    def _select(self, conn, cls, where: str = "1=1", params=(), order: str = "", limit: int = 0):
        sql = f"SELECT * FROM {cls.TABLE} WHERE {where}"
        if order:
            sql += f" ORDER BY {order}"
        if limit:
            sql += " LIMIT ?"
            params = (*params, limit)
        return [cls.from_row(r) for r in conn.execute(sql, params).fetchall()]

    # ── Jobs ──────────────────────────────────────────────────────────

    def get_job(self, conn, job_id: str) -> Optional[Job]:
        return self.get(conn, Job, job_id)

    def list_jobs(self, conn, flt: JobFilter) -> list[Job]:
        clauses = []
        params = []
        if flt.status:
            clauses.append("status = ?")
            params.append(flt.status)
        if flt.client_id:
            clauses.append("client_id = ?")
            params.append(flt.client_id)
        if flt.freelancer_id:
            clauses.append("freelancer_id = ?")
            params.append(flt.freelancer_id)
        if flt.category:
            clauses.append("category = ?")
            params.append(flt.category)
        where = " AND ".join(clauses) if clauses else "1=1"
        return self._select(conn, Job, where, tuple(params),
                            order="created_at ASC, job_id ASC", limit=flt.limit)

    def jobs_in_status(self, conn, status: str) -> list[Job]:
        return self._select(conn, Job, "status = ?", (status,), order="created_at ASC")

    # ── Bids ──────────────────────────────────────────────────────────

    def get_bid(self, conn, bid_id: str) -> Optional[Bid]:
        return self.get(conn, Bid, bid_id)

    def bids_for_job(self, conn, job_id: str) -> list[Bid]:
        return self._select(conn, Bid, "job_id = ?", (job_id,), order="created_at ASC, bid_id ASC")

    def list_bids(self, conn, flt: BidFilter) -> list[Bid]:
        clauses = []
        params = []
        if flt.job_id:
            clauses.append("job_id = ?")
            params.append(flt.job_id)
        if flt.freelancer_id:
            clauses.append("freelancer_id = ?")
            params.append(flt.freelancer_id)
        if flt.status:
            clauses.append("status = ?")
            params.append(flt.status)
        where = " AND ".join(clauses) if clauses else "1=1"
        return self._select(conn, Bid, where, tuple(params),
                            order="created_at ASC, bid_id ASC", limit=flt.limit)

    # ── Milestones ────────────────────────────────────────────────────

    def get_milestone(self, conn, milestone_id: str) -> Optional[Milestone]:
        return self.get(conn, Milestone, milestone_id)

    def milestones_for_job(self, conn, job_id: str) -> list[Milestone]:
        return self._select(conn, Milestone, "job_id = ?", (job_id,),
                            order="position ASC, created_at ASC")

    def milestones_in_status(self, conn, *statuses: str) -> list[Milestone]:
        marks = ", ".join("?" for _ in statuses)
        return self._select(conn, Milestone, f"status IN ({marks})", statuses,
                            order="created_at ASC")

    # ── Delivery packages ─────────────────────────────────────────────

    def get_package(self, conn, package_id: str) -> Optional[DeliveryPackage]:
        return self.get(conn, DeliveryPackage, package_id)

    def packages_for_job(self, conn, job_id: str) -> list[DeliveryPackage]:
        return self._select(conn, DeliveryPackage, "job_id = ?", (job_id,),
                            order="delivered_at ASC")

    # ── Disputes ──────────────────────────────────────────────────────

    def get_dispute(self, conn, dispute_id: str) -> Optional[Dispute]:
        return self.get(conn, Dispute, dispute_id)

    def open_dispute_for_milestone(self, conn, milestone_id: str) -> Optional[Dispute]:
        marks = ", ".join("?" for _ in OPEN_DISPUTE_STATES)
        found = self._select(
            conn, Dispute, f"milestone_id = ? AND status IN ({marks})",
            (milestone_id, *sorted(OPEN_DISPUTE_STATES)), limit=1,
        )
        return found[0] if found else None

    def disputes_for_milestone(self, conn, milestone_id: str) -> list[Dispute]:
        return self._select(conn, Dispute, "milestone_id = ?", (milestone_id,),
                            order="created_at ASC")

    def list_disputes(self, conn, flt: DisputeFilter) -> list[Dispute]:
        clauses = []
        params = []
        if flt.status:
            clauses.append("status = ?")
            params.append(flt.status)
        if flt.job_id:
            clauses.append("job_id = ?")
            params.append(flt.job_id)
        if flt.arbiter_id:
            clauses.append("arbiter_id = ?")
            params.append(flt.arbiter_id)
        where = " AND ".join(clauses) if clauses else "1=1"
        return self._select(conn, Dispute, where, tuple(params),
                            order="created_at ASC", limit=flt.limit)

    # ── Settlement intents ────────────────────────────────────────────

    def get_intent(self, conn, intent_id: str) -> Optional[SettlementIntent]:
        return self.get(conn, SettlementIntent, intent_id)

    def intents_for_group(self, conn, group_id: str) -> list[SettlementIntent]:
        return self._select(conn, SettlementIntent, "group_id = ?", (group_id,),
                            order="created_at ASC, intent_id ASC")

    def intents_for_milestone(self, conn, milestone_id: str) -> list[SettlementIntent]:
        return self._select(conn, SettlementIntent, "milestone_id = ?", (milestone_id,),
                            order="created_at ASC, intent_id ASC")

    def intents_in_status(self, conn, *statuses: str, limit: int = 100) -> list[SettlementIntent]:
        marks = ", ".join("?" for _ in statuses)
        return self._select(conn, SettlementIntent, f"status IN ({marks})", statuses,
                            order="created_at ASC", limit=limit)

    # ── Reviews & invoices ────────────────────────────────────────────

    def reviews_for_subject(self, conn, subject_id: str, role: str) -> list[Review]:
        return self._select(conn, Review, "subject_id = ? AND subject_role = ?",
                            (subject_id, role), order="created_at ASC, review_id ASC")

    def reviews_for_job(self, conn, job_id: str) -> list[Review]:
        return self._select(conn, Review, "job_id = ?", (job_id,), order="created_at ASC")

    def invoices_for_job(self, conn, job_id: str) -> list[Invoice]:
        return self._select(conn, Invoice, "job_id = ?", (job_id,), order="issued_at ASC")

    def invoice_for_milestone(self, conn, milestone_id: str) -> Optional[Invoice]:
        found = self._select(conn, Invoice, "milestone_id = ?", (milestone_id,), limit=1)
        return found[0] if found else None
