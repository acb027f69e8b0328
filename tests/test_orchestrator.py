"""Tests for swarmcore.orchestrator: formation, lifecycle, inbound traffic, stalls."""

from __future__ import annotations

import asyncio

import pytest

from swarmcore.errors import (
    AuthorizationError,
    CommunicationError,
    IllegalTransitionError,
    NoSuitableAgentsError,
    NotFoundError,
    ValidationError,
)
from swarmcore.models import (
    SYSTEM_AGENT_ID,
    AgentMessage,
    ComplexTask,
    ResultHandoffPayload,
    StatusUpdatePayload,
    SwarmResult,
    now_ms,
)

ANALYST_TASK = ComplexTask(
    description="Summarize 3 documents and compare them",
    requirements=["data_analysis"],
)
POOL_TASK = ComplexTask(description="Summarize the report and translate the notes")


def _report(session_id: str, subtask_id: str, sender: str, **payload) -> AgentMessage:
    return AgentMessage.create(
        ResultHandoffPayload(subtask_id=subtask_id, **payload),
        from_agent_id=sender,
        to_agent_id=SYSTEM_AGENT_ID,
        session_id=session_id,
    )


# ---------------------------------------------------------------------------
# Formation
# ---------------------------------------------------------------------------


class TestFormation:
    @pytest.mark.asyncio
    async def test_single_agent_swarm(self, make_orchestrator, analyst, communication, store) -> None:
        orchestrator = make_orchestrator([analyst])
        session = await orchestrator.form_swarm(ANALYST_TASK, "alice")

        assert session.status == "active"
        assert session.coordinator_agent == "analyst"
        assert session.active_agents == ["analyst"]
        channels = communication.get_session_channels(session.session_id)
        assert [c.type for c in channels] == ["broadcast"]

        first, second = session.subtasks
        assert first.status == "in_progress"
        assert first.attempts == 1
        assert first.started_at is not None
        assert second.status == "pending"
        assert second.attempts == 0
        assert await store.get(session.session_id) is not None

    @pytest.mark.asyncio
    async def test_pool_spreads_subtasks(self, make_orchestrator, agent_pool, communication) -> None:
        orchestrator = make_orchestrator(agent_pool)
        session = await orchestrator.form_swarm(POOL_TASK, "alice")

        assert session.coordinator_agent == "summarizer"
        assert session.active_agents == ["summarizer", "translator-1", "translator-2"]
        assert {st.id: st.assigned_agent_id for st in session.subtasks} == {
            "subtask-1": "translator-1",
            "subtask-2": "translator-2",
        }
        assert all(st.status == "in_progress" for st in session.subtasks)
        assert len(communication.get_session_channels(session.session_id)) == 3

    @pytest.mark.asyncio
    async def test_missing_user_rejected(self, make_orchestrator, analyst) -> None:
        with pytest.raises(AuthorizationError):
            await make_orchestrator([analyst]).form_swarm(ANALYST_TASK, "")

    @pytest.mark.asyncio
    async def test_no_suitable_agents_persists_nothing(self, make_orchestrator, analyst, store) -> None:
        orchestrator = make_orchestrator([analyst])
        with pytest.raises(NoSuitableAgentsError):
            await orchestrator.form_swarm(ComplexTask(description="Translate the notes"), "alice")

        assert await store.list_for_user("alice") == []
        assert await orchestrator.list_sessions_for_user("alice") == []

    @pytest.mark.asyncio
    async def test_undeliverable_assignments_abort(
        self, make_orchestrator, analyst, communication, store
    ) -> None:
        def refuse(message: AgentMessage) -> None:
            raise RuntimeError("agent offline")

        communication.register_message_handler("analyst", refuse)
        orchestrator = make_orchestrator([analyst])

        with pytest.raises(CommunicationError):
            await orchestrator.form_swarm(ANALYST_TASK, "alice")

        assert await store.list_for_user("alice") == []
        assert await orchestrator.list_sessions_for_user("alice") == []

    @pytest.mark.asyncio
    async def test_invalid_task_rejected(self, make_orchestrator, analyst) -> None:
        with pytest.raises(ValidationError):
            await make_orchestrator([analyst]).form_swarm(ComplexTask(description="  "), "alice")


# ---------------------------------------------------------------------------
# Running to completion
# ---------------------------------------------------------------------------


class TestExecution:
    @pytest.mark.asyncio
    async def test_workers_drive_session_to_completion(
        self, make_orchestrator, analyst, worker_factory, settled
    ) -> None:
        worker = worker_factory("analyst")
        orchestrator = make_orchestrator([analyst])
        created = await orchestrator.form_swarm(ANALYST_TASK, "alice")

        session = await settled(orchestrator, created.session_id)

        assert session.status == "completed"
        assert session.progress == 100
        assert session.completed_at is not None
        assert [r.result_type for r in session.results] == ["intermediate", "intermediate", "final"]
        assert session.results[-1].content == {
            "subtask-1": "done: Summarize 3 documents",
            "subtask-2": "done: Compare them",
        }
        assert session.performance_metrics.task_completion_rate == 100
        task_requests = [m for m in worker.received if m.message_type == "task_request"]
        assert [m.payload.subtask.id for m in task_requests] == ["subtask-1", "subtask-2"]

    @pytest.mark.asyncio
    async def test_failed_subtask_blocks_dependents(
        self, make_orchestrator, analyst, worker_factory, settled
    ) -> None:
        worker_factory("analyst", fail={"subtask-1"})
        orchestrator = make_orchestrator([analyst])
        created = await orchestrator.form_swarm(ANALYST_TASK, "alice")

        session = await settled(orchestrator, created.session_id)

        first, second = session.subtasks
        assert first.status == "error"
        assert first.error == "worker failure"
        assert second.status == "error"
        assert second.error == "Blocked by failed subtask subtask-1"
        assert session.status == "error"
        assert session.error == "All subtasks failed"

    @pytest.mark.asyncio
    async def test_owner_updates_complete_session(self, make_orchestrator, agent_pool) -> None:
        orchestrator = make_orchestrator(agent_pool)
        sid = (await orchestrator.form_swarm(POOL_TASK, "alice")).session_id

        first = await orchestrator.update_subtask(sid, "subtask-1", "alice", status="completed", result="r1")
        assert first.status == "completed"
        assert first.actual_duration is not None
        assert (await orchestrator.get_session(sid)).progress == 50

        await orchestrator.update_subtask(sid, "subtask-2", "alice", status="completed", result="r2")
        session = await orchestrator.get_session(sid)
        assert session.status == "completed"
        assert session.results[-1].content == {"subtask-1": "r1", "subtask-2": "r2"}

        with pytest.raises(IllegalTransitionError):
            await orchestrator.update_session_status(sid, "forming", "alice")
        with pytest.raises(IllegalTransitionError):
            await orchestrator.update_subtask(sid, "subtask-1", "alice", status="error")

    @pytest.mark.asyncio
    async def test_status_update_message_moves_subtask(self, make_orchestrator, analyst) -> None:
        orchestrator = make_orchestrator([analyst])
        sid = (await orchestrator.form_swarm(ANALYST_TASK, "alice")).session_id
        message = AgentMessage.create(
            StatusUpdatePayload(status="error", subtask_id="subtask-1", details={"error": "gave up"}),
            from_agent_id="analyst",
            to_agent_id=SYSTEM_AGENT_ID,
            session_id=sid,
        )

        assert await orchestrator.handle_agent_message(message) is True
        session = await orchestrator.get_session(sid)
        assert session.subtasks[0].error == "gave up"
        assert session.status == "error"

    @pytest.mark.asyncio
    async def test_late_report_is_ignored(self, make_orchestrator, analyst) -> None:
        orchestrator = make_orchestrator([analyst])
        sid = (await orchestrator.form_swarm(ANALYST_TASK, "alice")).session_id

        assert await orchestrator.handle_agent_message(_report(sid, "subtask-1", "analyst", result="a")) is True
        assert await orchestrator.handle_agent_message(_report(sid, "subtask-1", "analyst", result="b")) is False

        session = await orchestrator.get_session(sid)
        assert session.subtasks[0].result == "a"
        assert session.subtasks[1].status == "in_progress"

    @pytest.mark.asyncio
    async def test_reports_only_from_the_assignee(self, make_orchestrator, agent_pool, communication) -> None:
        orchestrator = make_orchestrator(agent_pool)
        sid = (await orchestrator.form_swarm(POOL_TASK, "alice")).session_id

        forged = await communication.send_message(_report(sid, "subtask-1", "mallory", result="forged"))
        assert forged.delivered_to == [SYSTEM_AGENT_ID]
        await orchestrator.drain_inbound()
        assert await orchestrator.handle_agent_message(
            _report(sid, "subtask-1", "translator-2", result="not mine")
        ) is False

        session = await orchestrator.get_session(sid)
        assert session.subtasks[0].status == "in_progress"
        assert session.subtasks[0].result is None
        assert session.results == []
        assert all(m.from_agent_id != "mallory" for m in session.message_log)

        assert await orchestrator.handle_agent_message(
            _report(sid, "subtask-1", "translator-1", result="ok")
        ) is True
        session = await orchestrator.get_session(sid)
        assert session.results[-1].agent_id == "translator-1"

    @pytest.mark.asyncio
    async def test_previous_assignee_may_still_report(self, make_orchestrator, agent_pool) -> None:
        orchestrator = make_orchestrator(agent_pool)
        sid = (await orchestrator.form_swarm(POOL_TASK, "alice")).session_id
        await orchestrator.reap_stalled_subtasks(sid, now=now_ms() + 60 * 60_000)

        session = await orchestrator.get_session(sid)
        assert session.subtasks[0].assigned_agent_id == "translator-2"
        assert session.subtasks[0].previous_agent_ids == ["translator-1"]

        assert await orchestrator.handle_agent_message(
            _report(sid, "subtask-1", "translator-1", result="late")
        ) is True
        session = await orchestrator.get_session(sid)
        assert session.subtasks[0].result == "late"


# ---------------------------------------------------------------------------
# Subtask state machine
# ---------------------------------------------------------------------------


class TestSubtaskUpdates:
    @pytest.mark.asyncio
    async def test_transitions_only_move_forward(self, make_orchestrator, agent_pool) -> None:
        orchestrator = make_orchestrator(agent_pool)
        sid = (await orchestrator.form_swarm(POOL_TASK, "alice")).session_id
        await orchestrator.update_subtask(sid, "subtask-1", "alice", status="completed")

        with pytest.raises(IllegalTransitionError):
            await orchestrator.update_subtask(sid, "subtask-1", "alice", status="in_progress")
        with pytest.raises(IllegalTransitionError):
            await orchestrator.update_subtask(sid, "subtask-2", "alice", status="pending")

    @pytest.mark.asyncio
    async def test_bad_input(self, make_orchestrator, agent_pool) -> None:
        orchestrator = make_orchestrator(agent_pool)
        sid = (await orchestrator.form_swarm(POOL_TASK, "alice")).session_id

        with pytest.raises(ValidationError, match="Unknown subtask status"):
            await orchestrator.update_subtask(sid, "subtask-1", "alice", status="done")
        with pytest.raises(NotFoundError):
            await orchestrator.update_subtask(sid, "subtask-9", "alice", status="completed")
        with pytest.raises(ValidationError, match="Unknown session status"):
            await orchestrator.update_session_status(sid, "paused", "alice")

    @pytest.mark.asyncio
    async def test_result_without_status_keeps_status(self, make_orchestrator, agent_pool) -> None:
        orchestrator = make_orchestrator(agent_pool)
        sid = (await orchestrator.form_swarm(POOL_TASK, "alice")).session_id

        subtask = await orchestrator.update_subtask(sid, "subtask-1", "alice", result={"draft": 1})
        assert subtask.status == "in_progress"
        assert subtask.result == {"draft": 1}

    @pytest.mark.asyncio
    async def test_owner_can_mark_session_failed(self, make_orchestrator, agent_pool) -> None:
        orchestrator = make_orchestrator(agent_pool)
        sid = (await orchestrator.form_swarm(POOL_TASK, "alice")).session_id

        session = await orchestrator.update_session_status(sid, "error", "alice")
        assert session.status == "error"
        assert session.completed_at is not None
        assert session.error == "Marked as failed by owner"

    @pytest.mark.asyncio
    async def test_cannot_complete_with_open_subtasks(self, make_orchestrator, analyst) -> None:
        orchestrator = make_orchestrator([analyst])
        sid = (await orchestrator.form_swarm(ANALYST_TASK, "alice")).session_id

        with pytest.raises(IllegalTransitionError, match="open subtasks: subtask-1, subtask-2"):
            await orchestrator.update_session_status(sid, "completing", "alice")
        with pytest.raises(IllegalTransitionError, match="open subtasks"):
            await orchestrator.update_session_status(sid, "completed", "alice")

        # The swarm stays active, so workers can still finish.
        subtask = await orchestrator.update_subtask(sid, "subtask-1", "alice", status="completed")
        assert subtask.status == "completed"
        session = await orchestrator.get_session(sid)
        assert session.status == "active"
        assert session.progress == 50


# ---------------------------------------------------------------------------
# Dissolution
# ---------------------------------------------------------------------------


class TestDissolution:
    @pytest.mark.asyncio
    async def test_dissolve_is_idempotent(self, make_orchestrator, analyst, communication) -> None:
        orchestrator = make_orchestrator([analyst])
        sid = (await orchestrator.form_swarm(ANALYST_TASK, "alice")).session_id

        first = await orchestrator.dissolve_swarm(sid, "alice")
        second = await orchestrator.dissolve_swarm(sid, "alice")

        assert first.status == second.status == "dissolved"
        assert first.completed_at == second.completed_at
        assert first.performance_metrics is not None
        assert communication.get_session_channels(sid) == []

    @pytest.mark.asyncio
    async def test_dissolve_notifies_and_purges_assignments(
        self, make_orchestrator, analyst, communication
    ) -> None:
        orchestrator = make_orchestrator([analyst])
        sid = (await orchestrator.form_swarm(ANALYST_TASK, "alice")).session_id
        assert communication.get_message_queue_size("analyst") == 1

        await orchestrator.dissolve_swarm(sid, "alice")

        queued = communication.drain_queued_messages("analyst", sid)
        assert [m.message_type for m in queued] == ["status_update"]
        assert queued[0].payload.status == "swarm_dissolved"

    @pytest.mark.asyncio
    async def test_messages_after_dissolve_are_dropped(self, make_orchestrator, analyst) -> None:
        orchestrator = make_orchestrator([analyst])
        sid = (await orchestrator.form_swarm(ANALYST_TASK, "alice")).session_id
        await orchestrator.dissolve_swarm(sid, "alice")

        assert await orchestrator.handle_agent_message(_report(sid, "subtask-1", "analyst", result="x")) is False
        session = await orchestrator.get_session(sid)
        assert session.subtasks[0].status == "in_progress"

    @pytest.mark.asyncio
    async def test_dissolved_via_status_update(self, make_orchestrator, analyst) -> None:
        orchestrator = make_orchestrator([analyst])
        sid = (await orchestrator.form_swarm(ANALYST_TASK, "alice")).session_id

        session = await orchestrator.update_session_status(sid, "dissolved", "alice")
        assert session.status == "dissolved"
        with pytest.raises(IllegalTransitionError):
            await orchestrator.update_session_status(sid, "active", "alice")


# ---------------------------------------------------------------------------
# Access and reads
# ---------------------------------------------------------------------------


class TestAccess:
    @pytest.mark.asyncio
    async def test_ownership_enforced(self, make_orchestrator, analyst) -> None:
        orchestrator = make_orchestrator([analyst])
        sid = (await orchestrator.form_swarm(ANALYST_TASK, "alice")).session_id

        with pytest.raises(AuthorizationError):
            await orchestrator.get_session(sid, "mallory")
        with pytest.raises(AuthorizationError):
            await orchestrator.dissolve_swarm(sid, "mallory")
        with pytest.raises(AuthorizationError):
            await orchestrator.update_subtask(sid, "subtask-1", "mallory", status="completed")
        with pytest.raises(NotFoundError):
            await orchestrator.get_session("swarm-unknown")

    @pytest.mark.asyncio
    async def test_mutations_require_a_user(self, make_orchestrator, analyst) -> None:
        orchestrator = make_orchestrator([analyst])
        sid = (await orchestrator.form_swarm(ANALYST_TASK, "alice")).session_id

        with pytest.raises(AuthorizationError, match="user id is required"):
            await orchestrator.update_session_status(sid, "error", None)
        with pytest.raises(AuthorizationError):
            await orchestrator.dissolve_swarm(sid, "")
        with pytest.raises(AuthorizationError):
            await orchestrator.update_subtask(sid, "subtask-1", None, status="completed")
        with pytest.raises(AuthorizationError):
            await orchestrator.add_result(sid, SwarmResult(session_id=sid, agent_id="analyst"), None)

        session = await orchestrator.get_session(sid)
        assert session.status == "active"
        assert session.subtasks[0].status == "in_progress"

    @pytest.mark.asyncio
    async def test_get_session_is_detached_and_read_only(self, make_orchestrator, analyst) -> None:
        orchestrator = make_orchestrator([analyst])
        sid = (await orchestrator.form_swarm(ANALYST_TASK, "alice")).session_id

        before = await orchestrator.get_session(sid, "alice")
        before.status = "error"
        before.subtasks[0].status = "completed"
        await asyncio.sleep(0.01)
        after = await orchestrator.get_session(sid, "alice")

        assert after.status == "active"
        assert after.subtasks[0].status == "in_progress"
        assert after.last_activity == before.last_activity

    @pytest.mark.asyncio
    async def test_list_sessions_for_user(self, make_orchestrator, analyst) -> None:
        orchestrator = make_orchestrator([analyst])
        a = await orchestrator.form_swarm(ANALYST_TASK, "alice")
        b = await orchestrator.form_swarm(ANALYST_TASK, "alice")
        await orchestrator.form_swarm(ANALYST_TASK, "bob")

        listed = await orchestrator.list_sessions_for_user("alice")
        assert {s.session_id for s in listed} == {a.session_id, b.session_id}
        assert await orchestrator.list_sessions_for_user("carol") == []


# ---------------------------------------------------------------------------
# Handoffs and results
# ---------------------------------------------------------------------------


class TestHandoffAndResults:
    @pytest.mark.asyncio
    async def test_handoff_between_members(self, make_orchestrator, agent_pool, communication) -> None:
        orchestrator = make_orchestrator(agent_pool)
        sid = (await orchestrator.form_swarm(POOL_TASK, "alice")).session_id
        got: list[AgentMessage] = []
        communication.register_message_handler("translator-2", got.append)

        response = await orchestrator.coordinate_agent_handoff(
            sid, "translator-1", "translator-2", {"subtask_id": "subtask-1", "glossary": ["a"]}, "alice"
        )

        assert response.delivered_to == ["translator-2"]
        assert got[0].payload.context["glossary"] == ["a"]
        session = await orchestrator.get_session(sid)
        assert session.message_log[-1].message_type == "result_handoff"
        # A peer handoff does not complete the subtask.
        assert session.subtasks[0].status == "in_progress"

    @pytest.mark.asyncio
    async def test_handoff_rejects_outsiders_and_inactive(self, make_orchestrator, agent_pool) -> None:
        orchestrator = make_orchestrator(agent_pool)
        sid = (await orchestrator.form_swarm(POOL_TASK, "alice")).session_id

        with pytest.raises(ValidationError):
            await orchestrator.coordinate_agent_handoff(sid, "translator-1", "stranger", {}, "alice")

        await orchestrator.dissolve_swarm(sid, "alice")
        with pytest.raises(IllegalTransitionError):
            await orchestrator.coordinate_agent_handoff(sid, "translator-1", "translator-2", {}, "alice")

    @pytest.mark.asyncio
    async def test_add_result(self, make_orchestrator, analyst) -> None:
        orchestrator = make_orchestrator([analyst])
        sid = (await orchestrator.form_swarm(ANALYST_TASK, "alice")).session_id

        session = await orchestrator.add_result(
            sid, SwarmResult(session_id=sid, agent_id="analyst", result_type="insight", content="trend"), "alice"
        )
        assert session.results[-1].content == "trend"

        with pytest.raises(ValidationError):
            await orchestrator.add_result(sid, SwarmResult(session_id="other", agent_id="analyst"), "alice")

        await orchestrator.dissolve_swarm(sid, "alice")
        with pytest.raises(IllegalTransitionError):
            await orchestrator.add_result(sid, SwarmResult(session_id=sid, agent_id="analyst"), "alice")


# ---------------------------------------------------------------------------
# Stalls and monitoring
# ---------------------------------------------------------------------------


class TestStalls:
    @pytest.mark.asyncio
    async def test_reassign_then_give_up(self, make_orchestrator, agent_pool) -> None:
        orchestrator = make_orchestrator(agent_pool)
        sid = (await orchestrator.form_swarm(POOL_TASK, "alice")).session_id
        hour = 60 * 60_000
        now = now_ms() + hour

        assert await orchestrator.reap_stalled_subtasks(sid, now=now) == ["subtask-1", "subtask-2"]
        session = await orchestrator.get_session(sid)
        assert {st.id: st.assigned_agent_id for st in session.subtasks} == {
            "subtask-1": "translator-2",
            "subtask-2": "translator-1",
        }
        assert [st.attempts for st in session.subtasks] == [2, 2]
        assert all(st.started_at == now and st.status == "in_progress" for st in session.subtasks)

        now += hour
        await orchestrator.reap_stalled_subtasks(sid, now=now)
        session = await orchestrator.get_session(sid)
        assert [st.attempts for st in session.subtasks] == [3, 3]
        assert session.status == "active"

        now += hour
        await orchestrator.reap_stalled_subtasks(sid, now=now)
        session = await orchestrator.get_session(sid)
        assert [st.status for st in session.subtasks] == ["error", "error"]
        assert session.subtasks[0].error == "Stalled after 3 attempts"
        assert session.status == "error"

    @pytest.mark.asyncio
    async def test_fresh_subtasks_are_left_alone(self, make_orchestrator, agent_pool) -> None:
        orchestrator = make_orchestrator(agent_pool)
        sid = (await orchestrator.form_swarm(POOL_TASK, "alice")).session_id
        assert await orchestrator.reap_stalled_subtasks(sid) == []

    @pytest.mark.asyncio
    async def test_health_check_records_history(self, make_orchestrator, analyst) -> None:
        orchestrator = make_orchestrator([analyst])
        sid = (await orchestrator.form_swarm(ANALYST_TASK, "alice")).session_id

        report = await orchestrator.monitor_swarm_health(sid, "alice")
        assert report.session_id == sid
        assert report.progress == 0
        assert orchestrator.get_health_history(sid) == [report]

    @pytest.mark.asyncio
    async def test_background_monitoring(self, make_orchestrator, analyst, config) -> None:
        config.monitoring_enabled = True
        orchestrator = make_orchestrator([analyst])
        sid = (await orchestrator.form_swarm(ANALYST_TASK, "alice")).session_id

        await asyncio.sleep(0.2)
        history = orchestrator.get_health_history(sid)
        await orchestrator.shutdown()

        assert history
        assert history[-1].overall_health == "healthy"
