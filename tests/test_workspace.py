"""Tests for workspace presence tracking."""

from conftest import T0
from errors import RejectionKind
from models import Actor, SessionStatus


class TestPresence:
    def test_parties_can_join(self, scenario):
        job, _ = scenario.assign()
        mine = scenario.market.join_workspace(scenario.client, job.job_id, now=T0)
        theirs = scenario.market.join_workspace(scenario.freelancer, job.job_id, tab="files", now=T0)
        assert mine.role == "client"
        assert theirs.role == "freelancer"
        assert theirs.current_tab == "files"
        live = scenario.market.workspace.active_sessions(job.job_id)
        assert {s.user_id for s in live} == {"client-1", "freelancer-1"}

    def test_rejoin_revives_live_session(self, scenario):
        job, _ = scenario.assign()
        first = scenario.market.join_workspace(scenario.client, job.job_id, now=T0)
        second = scenario.market.join_workspace(scenario.client, job.job_id,
                                                tab="milestones", now=T0 + 30)
        assert second.session_id == first.session_id
        assert second.last_activity_at == T0 + 30
        assert len(scenario.market.workspace.active_sessions(job.job_id)) == 1

    def test_outsider_refused(self, scenario):
        job, _ = scenario.assign()
        result = scenario.market.join_workspace(Actor("lurker"), job.job_id)
        assert result.kind == RejectionKind.FORBIDDEN
        assert result.code == "not_a_party"

    def test_unassigned_freelancer_refused(self, scenario):
        job = scenario.post()
        result = scenario.market.join_workspace(scenario.freelancer, job.job_id)
        assert result.code == "not_a_party"

    def test_unknown_tab(self, scenario):
        job, _ = scenario.assign()
        result = scenario.market.join_workspace(scenario.client, job.job_id, tab="chat")
        assert result.kind == RejectionKind.VALIDATION_FAILED
        assert result.code == "unknown_tab"

    def test_unknown_job(self, market):
        result = market.join_workspace(Actor("client-1"), "job-missing")
        assert result.kind == RejectionKind.NOT_FOUND


class TestHeartbeat:
    def test_heartbeat_moves_tab(self, scenario):
        job, _ = scenario.assign()
        session = scenario.market.join_workspace(scenario.client, job.job_id, now=T0)
        beat = scenario.market.heartbeat_workspace(scenario.client, session.session_id,
                                                   tab="deliveries", now=T0 + 60)
        assert beat.current_tab == "deliveries"
        assert beat.last_activity_at == T0 + 60

    def test_only_owner_may_heartbeat(self, scenario):
        job, _ = scenario.assign()
        session = scenario.market.join_workspace(scenario.client, job.job_id, now=T0)
        result = scenario.market.heartbeat_workspace(scenario.freelancer, session.session_id)
        assert result.code == "not_session_owner"

    def test_heartbeat_after_leave(self, scenario):
        job, _ = scenario.assign()
        session = scenario.market.join_workspace(scenario.client, job.job_id, now=T0)
        left = scenario.market.leave_workspace(scenario.client, session.session_id, now=T0 + 5)
        assert left.status == SessionStatus.DISCONNECTED.value
        result = scenario.market.heartbeat_workspace(scenario.client, session.session_id)
        assert result.code == "session_closed"

    def test_join_after_leave_opens_new_session(self, scenario):
        job, _ = scenario.assign()
        first = scenario.market.join_workspace(scenario.client, job.job_id, now=T0)
        scenario.market.leave_workspace(scenario.client, first.session_id, now=T0 + 5)
        second = scenario.market.join_workspace(scenario.client, job.job_id, now=T0 + 10)
        assert second.session_id != first.session_id


class TestHousekeeping:
    def test_quiet_sessions_go_idle_then_disconnect(self, scenario):
        job, _ = scenario.assign()
        ws = scenario.market.workspace
        scenario.market.join_workspace(scenario.client, job.job_id, now=T0)

        assert ws.reap_stale(T0 + ws.idle_sec + 1) == {"idle": 1, "disconnected": 0}
        (session,) = ws.active_sessions(job.job_id)
        assert session.status == SessionStatus.IDLE.value

        assert ws.reap_stale(T0 + ws.timeout_sec + 1) == {"idle": 0, "disconnected": 1}
        assert ws.active_sessions(job.job_id) == []

    def test_heartbeat_wakes_idle_session(self, scenario):
        job, _ = scenario.assign()
        ws = scenario.market.workspace
        session = scenario.market.join_workspace(scenario.client, job.job_id, now=T0)
        ws.reap_stale(T0 + ws.idle_sec + 1)
        beat = scenario.market.heartbeat_workspace(scenario.client, session.session_id,
                                                   now=T0 + ws.idle_sec + 2)
        assert beat.status == SessionStatus.ACTIVE.value

    def test_purge_after_retention(self, scenario):
        job, _ = scenario.assign()
        ws = scenario.market.workspace
        session = scenario.market.join_workspace(scenario.client, job.job_id, now=T0)
        scenario.market.leave_workspace(scenario.client, session.session_id, now=T0 + 10)
        assert ws.purge(T0 + 10 + ws.retention_sec - 1) == 0
        assert ws.purge(T0 + 10 + ws.retention_sec) == 1
