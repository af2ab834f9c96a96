"""Initial Keystone schema

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Money is decimal text, timestamps are epoch seconds (same as db.SCHEMA)
Money = sa.Text
Epoch = sa.Float


def _version():
    return sa.Column("version", sa.Integer(), nullable=False, server_default="1")


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.Text(), primary_key=True),
        sa.Column("client_id", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("category", sa.Text(), nullable=False, server_default=""),
        sa.Column("budget_min", Money(), nullable=False),
        sa.Column("budget_max", Money(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("freelancer_id", sa.Text(), nullable=True),
        sa.Column("accepted_bid_id", sa.Text(), nullable=True),
        sa.Column("agreed_amount", Money(), nullable=True),
        sa.Column("fund_deadline", Epoch(), nullable=True),
        sa.Column("expires_at", Epoch(), nullable=True),
        sa.Column("created_at", Epoch(), nullable=False),
        sa.Column("assigned_at", Epoch(), nullable=True),
        sa.Column("started_at", Epoch(), nullable=True),
        sa.Column("completed_at", Epoch(), nullable=True),
        sa.Column("cancelled_at", Epoch(), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=False, server_default=""),
        _version(),
    )
    op.create_index("idx_jobs_status", "jobs", ["status", "created_at"])
    op.create_index("idx_jobs_client", "jobs", ["client_id"])
    op.create_index("idx_jobs_freelancer", "jobs", ["freelancer_id"])

    op.create_table(
        "bids",
        sa.Column("bid_id", sa.Text(), primary_key=True),
        sa.Column("job_id", sa.Text(), nullable=False),
        sa.Column("freelancer_id", sa.Text(), nullable=False),
        sa.Column("amount", Money(), nullable=False),
        sa.Column("delivery_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cover_letter", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("created_at", Epoch(), nullable=False),
        sa.Column("updated_at", Epoch(), nullable=False),
        _version(),
        sa.UniqueConstraint("job_id", "freelancer_id"),
    )
    op.execute(
        "CREATE UNIQUE INDEX uq_bids_accepted ON bids(job_id) WHERE status = 'accepted'"
    )

    op.create_table(
        "milestones",
        sa.Column("milestone_id", sa.Text(), primary_key=True),
        sa.Column("job_id", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False, server_default=""),
        sa.Column("amount", Money(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("due_at", Epoch(), nullable=True),
        sa.Column("auto_release", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("submission_ref", sa.Text(), nullable=False, server_default=""),
        sa.Column("submission_note", sa.Text(), nullable=False, server_default=""),
        sa.Column("approval_note", sa.Text(), nullable=False, server_default=""),
        sa.Column("rejection_note", sa.Text(), nullable=False, server_default=""),
        sa.Column("revision_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pre_dispute_status", sa.Text(), nullable=True),
        sa.Column("funding_confirmed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("settlement_stalled", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("overdue_notified_at", Epoch(), nullable=True),
        sa.Column("created_at", Epoch(), nullable=False),
        sa.Column("funded_at", Epoch(), nullable=True),
        sa.Column("started_at", Epoch(), nullable=True),
        sa.Column("submitted_at", Epoch(), nullable=True),
        sa.Column("approved_at", Epoch(), nullable=True),
        sa.Column("rejected_at", Epoch(), nullable=True),
        sa.Column("disputed_at", Epoch(), nullable=True),
        sa.Column("resolved_at", Epoch(), nullable=True),
        sa.Column("completed_at", Epoch(), nullable=True),
        sa.Column("cancelled_at", Epoch(), nullable=True),
        _version(),
    )
    op.create_index("idx_milestones_job", "milestones", ["job_id", "position"])
    op.create_index("idx_milestones_status", "milestones", ["status"])

    op.create_table(
        "delivery_packages",
        sa.Column("package_id", sa.Text(), primary_key=True),
        sa.Column("job_id", sa.Text(), nullable=False),
        sa.Column("milestone_id", sa.Text(), nullable=True),
        sa.Column("freelancer_id", sa.Text(), nullable=False),
        sa.Column("manifest", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("note", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("review_note", sa.Text(), nullable=False, server_default=""),
        sa.Column("signature", sa.Text(), nullable=False, server_default=""),
        sa.Column("signed_by", sa.Text(), nullable=True),
        sa.Column("delivered_at", Epoch(), nullable=False),
        sa.Column("reviewed_at", Epoch(), nullable=True),
        _version(),
    )
    op.create_index("idx_packages_job", "delivery_packages", ["job_id"])

    op.create_table(
        "disputes",
        sa.Column("dispute_id", sa.Text(), primary_key=True),
        sa.Column("milestone_id", sa.Text(), nullable=False),
        sa.Column("job_id", sa.Text(), nullable=False),
        sa.Column("raised_by", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("freelancer_amount", Money(), nullable=True),
        sa.Column("client_amount", Money(), nullable=True),
        sa.Column("arbiter_id", sa.Text(), nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", Epoch(), nullable=False),
        sa.Column("claimed_at", Epoch(), nullable=True),
        sa.Column("resolved_at", Epoch(), nullable=True),
        _version(),
    )
    # One open dispute per milestone
    op.execute(
        "CREATE UNIQUE INDEX uq_disputes_open ON disputes(milestone_id) "
        "WHERE status IN ('pending', 'under_review')"
    )
    op.create_index("idx_disputes_status", "disputes", ["status", "created_at"])

    op.create_table(
        "settlement_intents",
        sa.Column("intent_id", sa.Text(), primary_key=True),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("amount", Money(), nullable=False),
        sa.Column("fee", Money(), nullable=False, server_default="0.00"),
        sa.Column("from_party", sa.Text(), nullable=False),
        sa.Column("to_party", sa.Text(), nullable=False),
        sa.Column("milestone_id", sa.Text(), nullable=False),
        sa.Column("job_id", sa.Text(), nullable=False),
        sa.Column("group_id", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("pre_intent_status", sa.Text(), nullable=False, server_default=""),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("settlement_reference", sa.Text(), nullable=False, server_default=""),
        sa.Column("last_error", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", Epoch(), nullable=False),
        sa.Column("updated_at", Epoch(), nullable=False),
        _version(),
    )
    op.create_index("idx_intents_status", "settlement_intents", ["status", "created_at"])
    op.create_index("idx_intents_milestone", "settlement_intents", ["milestone_id"])
    op.create_index("idx_intents_group", "settlement_intents", ["group_id"])

    op.create_table(
        "reviews",
        sa.Column("review_id", sa.Text(), primary_key=True),
        sa.Column("job_id", sa.Text(), nullable=False),
        sa.Column("reviewer_id", sa.Text(), nullable=False),
        sa.Column("subject_id", sa.Text(), nullable=False),
        sa.Column("subject_role", sa.Text(), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", Epoch(), nullable=False),
        sa.UniqueConstraint("job_id", "reviewer_id"),
    )
    op.create_index("idx_reviews_subject", "reviews", ["subject_id", "subject_role"])

    op.create_table(
        "invoices",
        sa.Column("invoice_id", sa.Text(), primary_key=True),
        sa.Column("invoice_number", sa.Text(), nullable=False, unique=True),
        sa.Column("job_id", sa.Text(), nullable=False),
        sa.Column("milestone_id", sa.Text(), nullable=False, unique=True),
        sa.Column("client_id", sa.Text(), nullable=False),
        sa.Column("freelancer_id", sa.Text(), nullable=False),
        sa.Column("amount", Money(), nullable=False),
        sa.Column("platform_fee", Money(), nullable=False),
        sa.Column("net_amount", Money(), nullable=False),
        sa.Column("refunded_amount", Money(), nullable=False, server_default="0.00"),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("issued_at", Epoch(), nullable=False),
    )
    op.create_table(
        "invoice_counters",
        sa.Column("client_id", sa.Text(), primary_key=True),
        sa.Column("last_number", sa.Integer(), nullable=False),
    )

    op.create_table(
        "workspace_sessions",
        sa.Column("session_id", sa.Text(), primary_key=True),
        sa.Column("job_id", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("role", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("current_tab", sa.Text(), nullable=False, server_default="overview"),
        sa.Column("joined_at", Epoch(), nullable=False),
        sa.Column("last_activity_at", Epoch(), nullable=False),
        sa.Column("left_at", Epoch(), nullable=True),
    )
    op.execute(
        "CREATE UNIQUE INDEX uq_workspace_live ON workspace_sessions(job_id, user_id) "
        "WHERE status <> 'disconnected'"
    )
    op.create_index("idx_workspace_activity", "workspace_sessions",
                    ["status", "last_activity_at"])

    # Append-only event log, doubles as the delivery outbox
    op.create_table(
        "events",
        sa.Column("event_id", sa.Text(), primary_key=True),
        sa.Column("seq", sa.Integer(), nullable=False, unique=True),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("entity_type", sa.Text(), nullable=False),
        sa.Column("entity_id", sa.Text(), nullable=False),
        sa.Column("timestamp", Epoch(), nullable=False),
        sa.Column("actor", sa.Text(), nullable=False, server_default=""),
        sa.Column("data", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("prev_hash", sa.Text(), nullable=False, server_default=""),
        sa.Column("event_hash", sa.Text(), nullable=False, server_default=""),
        sa.Column("delivered_at", Epoch(), nullable=True),
        sa.Column("delivery_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_delivery_error", sa.Text(), nullable=False, server_default=""),
    )
    op.create_index("idx_events_entity", "events", ["entity_type", "entity_id"])
    op.create_index("idx_events_type", "events", ["event_type"])
    op.create_index("idx_events_outbox", "events", ["delivered_at", "seq"])

    op.create_table(
        "reputation_records",
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("role", sa.Text(), nullable=False),
        sa.Column("total_reviews", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("average_rating", sa.Float(), nullable=False, server_default="0"),
        sa.Column("trust_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("level", sa.Text(), nullable=False, server_default="bronze"),
        sa.Column("decay_weeks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("decayed_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_activity_at", Epoch(), nullable=False, server_default="0"),
        sa.Column("achievements", sa.Text(), nullable=False, server_default="[]"),
        sa.PrimaryKeyConstraint("user_id", "role"),
    )
    op.create_table(
        "reputation_badges",
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("level", sa.Text(), nullable=False),
        sa.Column("minted_at", Epoch(), nullable=False),
        sa.PrimaryKeyConstraint("user_id", "level"),
    )


def downgrade() -> None:
    for table in (
        "reputation_badges",
        "reputation_records",
        "events",
        "workspace_sessions",
        "invoice_counters",
        "invoices",
        "reviews",
        "settlement_intents",
        "disputes",
        "delivery_packages",
        "milestones",
        "bids",
        "jobs",
    ):
        op.drop_table(table)
