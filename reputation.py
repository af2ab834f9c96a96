# Keystone Reputation Sync — derived trust scores for clients and freelancers
#
# Reputation is never edited directly. It is recomputed from history (reviews,
# completed jobs, refunded disputes) and written as one row per (user, role).
#
# Score (0–100):
#   volume   min(reviews × 2, 100) × 0.4
#   quality  (average rating / 5 × 100) × 0.4
#   trust    trust score × 0.2
#
# Trust:  freelancers start at 50, +5 per completed job (max +50),
#         −10 per dispute refunded against them. Clients hold a flat 50.
#
# Levels: Diamond ≥ 90, Platinum ≥ 75, Gold ≥ 60, Silver ≥ 40, Bronze below.
# Freelancers reaching Silver or better are minted a badge, once per level.
#
# Decay: after KEYSTONE_REPUTATION_STALE_DAYS without activity a score loses
# 1% per whole week since the last activity, capped at 50%, always measured
# from the undecayed score.
#
# A sync with no new history writes exactly the same row: every stored
# timestamp comes from the history itself, never from the clock.

import json
import logging
import math
import os
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

from models import DisputeStatus, JobStatus, Resolution, Role
from store import EntityStore

log = logging.getLogger("keystone.reputation")

REPUTATION_STALE_DAYS = float(os.environ.get("KEYSTONE_REPUTATION_STALE_DAYS", "30"))

BASE_TRUST = 50
TRUST_PER_COMPLETED_JOB = 5
MAX_COMPLETION_TRUST = 50
TRUST_PENALTY_PER_REFUND = 10

DECAY_PER_WEEK = 0.01
MAX_DECAY = 0.5
WEEK_SEC = 7 * 86400

REVIEW_MILESTONES = (10, 50, 100)
PERFECT_RATING_MIN = 4.9
PERFECT_RATING_MIN_REVIEWS = 10


# ── Levels ────────────────────────────────────────────────────────────

class ReputationLevel(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"


LEVEL_THRESHOLDS = [
    (ReputationLevel.DIAMOND, 90),
    (ReputationLevel.PLATINUM, 75),
    (ReputationLevel.GOLD, 60),
    (ReputationLevel.SILVER, 40),
]

BADGE_MIN_SCORE = 40


def score_to_level(score: int) -> ReputationLevel:
    for level, threshold in LEVEL_THRESHOLDS:
        if score >= threshold:
            return level
    return ReputationLevel.BRONZE


def compute_score(total_reviews: int, average_rating: float, trust_score: int) -> int:
    volume = min(total_reviews * 2, 100) * 0.4
    quality = (average_rating / 5 * 100) * 0.4
    return max(0, min(100, round(volume + quality + trust_score * 0.2)))


def freelancer_trust(completed_jobs: int, refunds_against: int) -> int:
    trust = (BASE_TRUST
             + min(completed_jobs * TRUST_PER_COMPLETED_JOB, MAX_COMPLETION_TRUST)
             - refunds_against * TRUST_PENALTY_PER_REFUND)
    return max(0, min(100, trust))


def decayed(score: int, weeks: int) -> int:
    pct = min(weeks * DECAY_PER_WEEK, MAX_DECAY)
    return max(0, score - math.floor(score * pct))


# ── Record ────────────────────────────────────────────────────────────

@dataclass
class ReputationRecord:
    user_id: str = ""
    role: str = Role.FREELANCER.value
    total_reviews: int = 0
    average_rating: float = 0.0
    trust_score: int = BASE_TRUST
    score: int = 0
    level: str = ReputationLevel.BRONZE.value
    decay_weeks: int = 0
    decayed_score: int = 0
    last_activity_at: float = 0.0
    achievements: list = field(default_factory=list)

    @classmethod
    def from_row(cls, row) -> "ReputationRecord":
        return cls(
            user_id=row["user_id"],
            role=row["role"],
            total_reviews=row["total_reviews"],
            average_rating=float(row["average_rating"]),
            trust_score=row["trust_score"],
            score=row["score"],
            level=row["level"],
            decay_weeks=row["decay_weeks"],
            decayed_score=row["decayed_score"],
            last_activity_at=float(row["last_activity_at"]),
            achievements=json.loads(row["achievements"] or "[]"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


# ── Sync Service ──────────────────────────────────────────────────────

class ReputationSyncService:
    """Recomputes reputation from history and applies inactivity decay."""

    def __init__(self, db, store: Optional[EntityStore] = None,
                 stale_days: float = REPUTATION_STALE_DAYS):
        self.db = db
        self.store = store or EntityStore()
        self.stale_sec = stale_days * 86400

    # ── Reads ─────────────────────────────────────────────────────────

    def get_reputation(self, user_id: str, role: str) -> Optional[ReputationRecord]:
        with self.db.connection() as conn:
            return self._stored(conn, user_id, role)

    def _stored(self, conn, user_id: str, role: str) -> Optional[ReputationRecord]:
        row = conn.execute(
            "SELECT * FROM reputation_records WHERE user_id = ? AND role = ?",
            (user_id, role),
        ).fetchone()
        return ReputationRecord.from_row(row) if row else None

    def badges(self, user_id: str) -> list[str]:
        with self.db.connection() as conn:
            return self._badges(conn, user_id)

    def _badges(self, conn, user_id: str) -> list[str]:
        rows = conn.execute(
            "SELECT level FROM reputation_badges WHERE user_id = ? ORDER BY minted_at ASC, level ASC",
            (user_id,),
        ).fetchall()
        return [r["level"] for r in rows]

    # ── Derivation ────────────────────────────────────────────────────

    def _history(self, conn, user_id: str, role: str) -> Optional[dict]:
        """Everything the score depends on, or None if the user has no history in this role."""
        reviews = self.store.reviews_for_subject(conn, user_id, role)
        job_col = "freelancer_id" if role == Role.FREELANCER.value else "client_id"
        jobs = conn.execute(
            f"SELECT status, completed_at FROM jobs WHERE {job_col} = ?", (user_id,)
        ).fetchall()
        if not reviews and not jobs:
            return None

        completed = [j["completed_at"] for j in jobs
                     if j["status"] == JobStatus.COMPLETED.value and j["completed_at"] is not None]
        refunds = 0
        if role == Role.FREELANCER.value:
            refunds = conn.execute(
                "SELECT COUNT(*) AS n FROM disputes d JOIN jobs j ON j.job_id = d.job_id "
                "WHERE j.freelancer_id = ? AND d.status = ? AND d.resolution = ?",
                (user_id, DisputeStatus.RESOLVED.value, Resolution.REFUND.value),
            ).fetchone()["n"]

        activity = [r.created_at for r in reviews] + completed
        return {
            "ratings": [r.rating for r in reviews],
            "completed_jobs": len(completed),
            "refunds": refunds,
            "last_activity_at": max(activity) if activity else 0.0,
        }

    def _derive(self, user_id: str, role: str, history: dict) -> ReputationRecord:
        ratings = history["ratings"]
        total = len(ratings)
        average = round(sum(ratings) / total, 2) if total else 0.0
        if role == Role.FREELANCER.value:
            trust = freelancer_trust(history["completed_jobs"], history["refunds"])
        else:
            trust = BASE_TRUST
        score = compute_score(total, average, trust)

        achievements = [f"review_milestone_{n}" for n in REVIEW_MILESTONES if total >= n]
        if total >= PERFECT_RATING_MIN_REVIEWS and average >= PERFECT_RATING_MIN:
            achievements.append("perfect_rating")

        return ReputationRecord(
            user_id=user_id,
            role=role,
            total_reviews=total,
            average_rating=average,
            trust_score=trust,
            score=score,
            level=score_to_level(score).value,
            decay_weeks=0,
            decayed_score=score,
            last_activity_at=history["last_activity_at"],
            achievements=achievements,
        )

    def _save(self, conn, rec: ReputationRecord):
        conn.execute(
            """INSERT INTO reputation_records
               (user_id, role, total_reviews, average_rating, trust_score, score, level,
                decay_weeks, decayed_score, last_activity_at, achievements)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(user_id, role) DO UPDATE SET
                 total_reviews = excluded.total_reviews,
                 average_rating = excluded.average_rating,
                 trust_score = excluded.trust_score,
                 score = excluded.score,
                 level = excluded.level,
                 decay_weeks = excluded.decay_weeks,
                 decayed_score = excluded.decayed_score,
                 last_activity_at = excluded.last_activity_at,
                 achievements = excluded.achievements""",
            (rec.user_id, rec.role, rec.total_reviews, rec.average_rating, rec.trust_score,
             rec.score, rec.level, rec.decay_weeks, rec.decayed_score, rec.last_activity_at,
             json.dumps(rec.achievements)),
        )

    def _mint_badge(self, conn, user_id: str, level: str, minted_at: float) -> bool:
        existing = conn.execute(
            "SELECT 1 FROM reputation_badges WHERE user_id = ? AND level = ?", (user_id, level),
        ).fetchone()
        if existing:
            return False
        conn.execute(
            "INSERT INTO reputation_badges (user_id, level, minted_at) VALUES (?, ?, ?)",
            (user_id, level, minted_at),
        )
        log.info("BADGE MINTED user=%s level=%s", user_id, level)
        return True

    # ── Sync ──────────────────────────────────────────────────────────

    def sync_user(self, user_id: str) -> dict:
        """Recompute both role records for a user from their history."""
        result = {"user_id": user_id, "records": {}, "badges_minted": [], "achievements_awarded": []}
        with self.db.transaction() as conn:
            for role in (Role.FREELANCER.value, Role.CLIENT.value):
                history = self._history(conn, user_id, role)
                if history is None:
                    continue
                rec = self._derive(user_id, role, history)
                existing = self._stored(conn, user_id, role)

                # Decay already applied to an unchanged history survives the resync
                if existing and existing.last_activity_at == rec.last_activity_at \
                        and existing.score == rec.score:
                    rec.decay_weeks = existing.decay_weeks
                    rec.decayed_score = existing.decayed_score
                    rec.level = score_to_level(rec.decayed_score).value

                if role == Role.FREELANCER.value and rec.score >= BADGE_MIN_SCORE:
                    level = score_to_level(rec.score).value
                    if self._mint_badge(conn, user_id, level, rec.last_activity_at):
                        result["badges_minted"].append(level)
                if role == Role.FREELANCER.value:
                    rec.achievements += [f"reputation_{b}" for b in self._badges(conn, user_id)]

                before = set(existing.achievements) if existing else set()
                result["achievements_awarded"] += [a for a in rec.achievements if a not in before]
                self._save(conn, rec)
                result["records"][role] = rec.to_dict()
        log.info("REPUTATION SYNC user=%s roles=%s badges=%s",
                 user_id, ",".join(result["records"]) or "-",
                 ",".join(result["badges_minted"]) or "-")
        return result

    def sync_all(self) -> dict:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT client_id AS user_id FROM jobs "
                "UNION SELECT freelancer_id FROM jobs WHERE freelancer_id IS NOT NULL "
                "UNION SELECT subject_id FROM reviews"
            ).fetchall()
        users = sorted({r["user_id"] for r in rows if r["user_id"]})
        badges = 0
        achievements = 0
        for user_id in users:
            res = self.sync_user(user_id)
            badges += len(res["badges_minted"])
            achievements += len(res["achievements_awarded"])
        log.info("REPUTATION SYNC ALL users=%d badges=%d achievements=%d",
                 len(users), badges, achievements)
        return {"users_synced": len(users), "badges_minted": badges,
                "achievements_awarded": achievements}

    # ── Decay ─────────────────────────────────────────────────────────

    def apply_decay(self, now: Optional[float] = None) -> dict:
        """Apply inactivity decay. Running it twice in the same week changes nothing."""
        now = now if now is not None else time.time()
        decayed_users = 0
        total_decay = 0
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM reputation_records WHERE last_activity_at > 0 "
                "AND last_activity_at < ?",
                (now - self.stale_sec,),
            ).fetchall()
            for rec in (ReputationRecord.from_row(r) for r in rows):
                weeks = int((now - rec.last_activity_at) // WEEK_SEC)
                if weeks <= rec.decay_weeks:
                    continue
                new_score = decayed(rec.score, weeks)
                conn.execute(
                    "UPDATE reputation_records SET decay_weeks = ?, decayed_score = ?, level = ? "
                    "WHERE user_id = ? AND role = ?",
                    (weeks, new_score, score_to_level(new_score).value, rec.user_id, rec.role),
                )
                if new_score < rec.decayed_score:
                    decayed_users += 1
                    total_decay += rec.decayed_score - new_score
        log.info("REPUTATION DECAY users=%d points=%d", decayed_users, total_decay)
        return {"users_decayed": decayed_users, "total_decay_applied": total_decay}

    # ── Audit ─────────────────────────────────────────────────────────

    def verify_reputation_integrity(self, user_id: str) -> dict:
        """Compare stored records against a fresh derivation from history."""
        issues = []
        with self.db.connection() as conn:
            badges = set(self._badges(conn, user_id))
            for role in (Role.FREELANCER.value, Role.CLIENT.value):
                history = self._history(conn, user_id, role)
                stored = self._stored(conn, user_id, role)
                if history is None:
                    continue
                if stored is None:
                    issues.append(f"{role}: no reputation record")
                    continue
                fresh = self._derive(user_id, role, history)
                if stored.total_reviews != fresh.total_reviews:
                    issues.append(f"{role}: review count {stored.total_reviews} != "
                                  f"{fresh.total_reviews}")
                if abs(stored.average_rating - fresh.average_rating) > 0.1:
                    issues.append(f"{role}: average rating {stored.average_rating} != "
                                  f"{fresh.average_rating}")
                if stored.score != fresh.score:
                    issues.append(f"{role}: score {stored.score} != {fresh.score}")
                if role == Role.FREELANCER.value and fresh.score >= BADGE_MIN_SCORE:
                    level = score_to_level(fresh.score).value
                    if level not in badges:
                        issues.append(f"{role}: missing {level} badge")
        return {"user_id": user_id, "valid": not issues, "issues": issues}

    def get_reputation_stats(self) -> dict:
        with self.db.connection() as conn:
            rows = conn.execute("SELECT user_id, decayed_score, level FROM reputation_records").fetchall()
        distribution = {level.value: 0 for level in ReputationLevel}
        for r in rows:
            distribution[r["level"]] = distribution.get(r["level"], 0) + 1
        scores = [r["decayed_score"] for r in rows]
        return {
            "total_users": len({r["user_id"] for r in rows}),
            "average_score": round(sum(scores) / len(scores), 1) if scores else 0.0,
            "top_performers": distribution["diamond"] + distribution["platinum"],
            "level_distribution": distribution,
        }
