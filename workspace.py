# Keystone Workspace Session Tracker — who is in a job's workspace right now
#
# Presence only; no document state lives here. A session is
#
#   active        heartbeat seen within KEYSTONE_WORKSPACE_IDLE_SEC
#   idle          quiet for longer than that, still counted as present
#   disconnected  left explicitly, or quiet past KEYSTONE_WORKSPACE_TIMEOUT_SEC
#
# A user has at most one live (non-disconnected) session per job. Rejoining
# revives the live session instead of opening a second one.

import logging
import os
import time
from typing import Optional

import errors
from errors import RejectedError
from models import Actor, Job, Role, SessionStatus, WorkspaceSession
from store import EntityStore, UnitOfWork

log = logging.getLogger("keystone.workspace")

WORKSPACE_IDLE_SEC = float(os.environ.get("KEYSTONE_WORKSPACE_IDLE_SEC", "120"))
WORKSPACE_TIMEOUT_SEC = float(os.environ.get("KEYSTONE_WORKSPACE_TIMEOUT_SEC", "300"))
WORKSPACE_RETENTION_SEC = float(os.environ.get("KEYSTONE_WORKSPACE_RETENTION_SEC", "86400"))

WORKSPACE_TABS = ("overview", "milestones", "files", "messages", "deliveries")


class WorkspaceTracker:
    def __init__(self, db, store: Optional[EntityStore] = None,
                 idle_sec: float = WORKSPACE_IDLE_SEC,
                 timeout_sec: float = WORKSPACE_TIMEOUT_SEC,
                 retention_sec: float = WORKSPACE_RETENTION_SEC):
        self.db = db
        self.store = store or EntityStore()
        self.idle_sec = idle_sec
        self.timeout_sec = timeout_sec
        self.retention_sec = retention_sec

    def _live_session(self, conn, job_id: str, user_id: str) -> Optional[WorkspaceSession]:
        row = conn.execute(
            "SELECT * FROM workspace_sessions WHERE job_id = ? AND user_id = ? AND status <> ?",
            (job_id, user_id, SessionStatus.DISCONNECTED.value),
        ).fetchone()
        return WorkspaceSession.from_row(row) if row else None

    def _owned_session(self, conn, actor: Actor, session_id: str) -> WorkspaceSession:
        session = self.store.load(conn, WorkspaceSession, session_id, "session")
        if session.user_id != actor.user_id:
            raise RejectedError(errors.forbidden(
                "not_session_owner", "Session belongs to another user",
            ))
        return session

    @staticmethod
    def _check_tab(tab: str):
        if tab not in WORKSPACE_TABS:
            raise RejectedError(errors.validation_failed(
                "unknown_tab", f"Unknown workspace tab '{tab}'", allowed=list(WORKSPACE_TABS),
            ))

    def _touch(self, conn, session: WorkspaceSession, now: float, tab: str) -> WorkspaceSession:
        conn.execute(
            "UPDATE workspace_sessions SET status = ?, current_tab = ?, last_activity_at = ? "
            "WHERE session_id = ?",
            (SessionStatus.ACTIVE.value, tab, now, session.session_id),
        )
        session.status = SessionStatus.ACTIVE.value
        session.current_tab = tab
        session.last_activity_at = now
        return session

    # ── Presence ──────────────────────────────────────────────────────

    def join(self, uow: UnitOfWork, actor: Actor, job_id: str,
             tab: str = "overview") -> WorkspaceSession:
        """Enter a job's workspace. Only the job's client and freelancer may."""
        conn, now = uow.conn, uow.now
        self._check_tab(tab)
        job = self.store.load(conn, Job, job_id, "job")
        if actor.user_id == job.client_id:
            role = Role.CLIENT.value
        elif job.freelancer_id and actor.user_id == job.freelancer_id:
            role = Role.FREELANCER.value
        else:
            raise RejectedError(errors.forbidden(
                "not_a_party", "Only the job's client and assigned freelancer can join",
            ))

        live = self._live_session(conn, job_id, actor.user_id)
        if live is not None:
            return self._touch(conn, live, now, tab)

        session = WorkspaceSession(
            job_id=job_id,
            user_id=actor.user_id,
            role=role,
            status=SessionStatus.ACTIVE.value,
            current_tab=tab,
            joined_at=now,
            last_activity_at=now,
        )
        self.store.insert(conn, session)
        log.info("WORKSPACE JOIN job=%s user=%s role=%s session=%s",
                 job_id, actor.user_id, role, session.session_id)
        return session

    def heartbeat(self, uow: UnitOfWork, actor: Actor, session_id: str,
                  tab: Optional[str] = None) -> WorkspaceSession:
        session = self._owned_session(uow.conn, actor, session_id)
        if session.status == SessionStatus.DISCONNECTED.value:
            raise RejectedError(errors.invalid_transition(
                "session_closed", "Session is disconnected; join again",
            ))
        if tab is not None:
            self._check_tab(tab)
        return self._touch(uow.conn, session, uow.now, tab or session.current_tab)

    def leave(self, uow: UnitOfWork, actor: Actor, session_id: str) -> WorkspaceSession:
        session = self._owned_session(uow.conn, actor, session_id)
        if session.status == SessionStatus.DISCONNECTED.value:
            return session
        uow.conn.execute(
            "UPDATE workspace_sessions SET status = ?, left_at = ? WHERE session_id = ?",
            (SessionStatus.DISCONNECTED.value, uow.now, session_id),
        )
        session.status = SessionStatus.DISCONNECTED.value
        session.left_at = uow.now
        log.info("WORKSPACE LEAVE job=%s user=%s session=%s",
                 session.job_id, session.user_id, session_id)
        return session

    def active_sessions(self, job_id: str) -> list[WorkspaceSession]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM workspace_sessions WHERE job_id = ? AND status <> ? "
                "ORDER BY joined_at ASC",
                (job_id, SessionStatus.DISCONNECTED.value),
            ).fetchall()
        return [WorkspaceSession.from_row(r) for r in rows]

    # ── Housekeeping ──────────────────────────────────────────────────

    def reap_stale(self, now: Optional[float] = None) -> dict:
        """Demote quiet sessions: active → idle, then → disconnected."""
        now = now if now is not None else time.time()
        with self.db.transaction() as conn:
            dropped = conn.execute(
                "UPDATE workspace_sessions SET status = ?, left_at = ? "
                "WHERE status <> ? AND last_activity_at <= ?",
                (SessionStatus.DISCONNECTED.value, now, SessionStatus.DISCONNECTED.value,
                 now - self.timeout_sec),
            ).rowcount
            idled = conn.execute(
                "UPDATE workspace_sessions SET status = ? "
                "WHERE status = ? AND last_activity_at <= ?",
                (SessionStatus.IDLE.value, SessionStatus.ACTIVE.value, now - self.idle_sec),
            ).rowcount
        if idled or dropped:
            log.info("WORKSPACE REAP idle=%d disconnected=%d", idled, dropped)
        return {"idle": idled, "disconnected": dropped}

    def purge(self, now: Optional[float] = None) -> int:
        """Delete disconnected sessions older than the retention window."""
        now = now if now is not None else time.time()
        with self.db.transaction() as conn:
            removed = conn.execute(
                "DELETE FROM workspace_sessions WHERE status = ? AND left_at <= ?",
                (SessionStatus.DISCONNECTED.value, now - self.retention_sec),
            ).rowcount
        if removed:
            log.info("WORKSPACE PURGE removed=%d", removed)
        return removed
