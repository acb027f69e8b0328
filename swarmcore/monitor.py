"""
Swarm Monitor: health and performance accounting.

Everything here reads a SwarmSession and returns a derived summary; nothing
mutates the session. Callers pass a snapshot (SwarmSession.snapshot()) taken
under the session lock, so the reports are consistent even while subtask
updates keep landing on the live session.

Agent health is worst-case-wins:
  - critical  : at least half of the agent's subtasks ended in error
  - degraded  : any subtask in error, any subtask running past its estimate,
                or open work with no activity for ``unresponsive_after``
  - healthy   : otherwise
and the swarm's overall health is the worst agent health (or critical when a
critical issue was raised).
"""

from __future__ import annotations

from collections import Counter, deque
from typing import Optional

import structlog

from swarmcore.communication import CommunicationStats
from swarmcore.config import SwarmConfig
from swarmcore.models import (
    AgentHealthStatus,
    CommunicationHealth,
    HealthReport,
    HealthStatus,
    PerformanceMetrics,
    SubTask,
    SwarmIssue,
    SwarmSession,
    TaskProgress,
    compute_progress,
    now_ms,
)

logger = structlog.get_logger(__name__)

_HEALTH_RANK: dict[str, int] = {"healthy": 0, "degraded": 1, "critical": 2}
_COLLABORATIVE_TYPES = frozenset({"coordination", "data_share", "result_handoff"})
_OVERLOAD_THRESHOLD = 3
_HIGH_LATENCY_MS = 5000.0
_BOTTLENECK_SHARE = 0.4
_BOTTLENECK_MIN_MESSAGES = 5
_MAX_RECOMMENDATIONS = 5


def _worst(a: HealthStatus, b: HealthStatus) -> HealthStatus:
    return a if _HEALTH_RANK[a] >= _HEALTH_RANK[b] else b


def is_stalled(subtask: SubTask, now: int, factor: float = 1.0) -> bool:
    """True when an in-progress subtask has run past factor × its estimate."""
    if subtask.status != "in_progress" or subtask.started_at is None:
        return False
    return now - subtask.started_at > subtask.estimated_duration * 60_000 * factor


class SwarmMonitor:
    """Derives HealthReports and PerformanceMetrics; keeps a short history."""

    def __init__(self, config: Optional[SwarmConfig] = None) -> None:
        self._unresponsive_ms = int((config.unresponsive_after if config else 300.0) * 1000)
        self._history_limit = config.health_history_limit if config else 100
        self._history: dict[str, deque[HealthReport]] = {}

    # ------------------------------------------------------------------
    # Performance
    # ------------------------------------------------------------------

    def compute_performance_metrics(
        self,
        session: SwarmSession,
        comm_stats: Optional[CommunicationStats] = None,
        now: Optional[int] = None,
    ) -> PerformanceMetrics:
        now = now if now is not None else now_ms()
        subtasks = session.subtasks
        total = len(subtasks)
        completed = [st for st in subtasks if st.status == "completed"]
        terminal = [st for st in subtasks if st.is_terminal]
        duration = max(0, (session.completed_at or now) - session.created_at)

        durations = [st.actual_duration for st in completed if st.actual_duration is not None]
        messages = session.message_log
        volume = len(messages)

        by_sender = Counter(m.from_agent_id for m in messages)
        utilization = {
            agent_id: (by_sender.get(agent_id, 0) / volume) if volume else 0.0
            for agent_id in session.active_agents
        }
        collaborative = sum(1 for m in messages if m.message_type in _COLLABORATIVE_TYPES)

        latency = comm_stats.average_response_time_ms if comm_stats else 0.0
        if not latency:
            latency = self._latency_from_log(session)

        return PerformanceMetrics(
            total_duration_ms=duration,
            task_completion_rate=(len(completed) / total * 100) if total else 0.0,
            success_rate=(len(completed) / len(terminal) * 100) if terminal else 0.0,
            average_subtask_duration_ms=(sum(durations) / len(durations)) if durations else 0.0,
            average_latency_ms=latency,
            throughput_per_minute=(len(completed) / (duration / 60_000)) if duration else 0.0,
            message_volume=volume,
            agent_utilization=utilization,
            communication_efficiency=(
                min(100.0, len({m.message_type for m in messages}) / volume * 100) if volume else 0.0
            ),
            collaboration_score=(min(100.0, collaborative / volume * 100) if volume else 0.0),
        )

    @staticmethod
    def _latency_from_log(session: SwarmSession) -> float:
        sent = {m.id: m.timestamp for m in session.message_log if m.requires_response}
        samples = [
            m.timestamp - sent[m.response_to_message_id]
            for m in session.message_log
            if m.response_to_message_id in sent
        ]
        return (sum(samples) / len(samples)) if samples else 0.0

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def generate_health_report(
        self,
        session: SwarmSession,
        comm_stats: Optional[CommunicationStats] = None,
        now: Optional[int] = None,
    ) -> HealthReport:
        now = now if now is not None else now_ms()
        issues: list[SwarmIssue] = []
        agent_health = {
            agent_id: self._agent_health(session, agent_id, now, issues)
            for agent_id in session.active_agents
        }
        task_progress = self._task_progress(session, now)
        communication = self._communication_health(session, comm_stats)
        issues.extend(self._session_issues(session, task_progress, communication, now))

        overall: HealthStatus = "healthy"
        for status in agent_health.values():
            overall = _worst(overall, status.health)
        if any(issue.severity == "critical" for issue in issues):
            overall = "critical"

        report = HealthReport(
            session_id=session.session_id,
            timestamp=now,
            overall_health=overall,
            agent_health=agent_health,
            issues=issues,
            recommendations=self._recommendations(issues),
            progress=task_progress.progress,
            task_progress=task_progress,
            communication=communication,
        )
        logger.debug(
            "monitor.report",
            session_id=session.session_id,
            overall=overall,
            issues=len(issues),
        )
        return report

    def _agent_health(
        self,
        session: SwarmSession,
        agent_id: str,
        now: int,
        issues: list[SwarmIssue],
    ) -> AgentHealthStatus:
        assigned = [st for st in session.subtasks if st.assigned_agent_id == agent_id]
        open_work = [st for st in assigned if not st.is_terminal]
        errored = [st for st in assigned if st.status == "error"]
        stalled = [st.id for st in assigned if is_stalled(st, now)]

        sent = [m.timestamp for m in session.message_log if m.from_agent_id == agent_id]
        last_activity = max(sent) if sent else session.created_at
        error_rate = (len(errored) / len(assigned)) if assigned else 0.0

        health: HealthStatus = "healthy"
        if errored:
            health = "critical" if error_rate >= 0.5 else "degraded"
            issues.append(SwarmIssue(
                type="performance",
                severity="high",
                description=f"Agent {agent_id} has {len(errored)} failed subtask(s)",
                affected_agents=[agent_id],
                suggested_actions=[
                    "Reassign failed subtasks to another agent",
                    "Inspect the agent's error output",
                ],
                timestamp=now,
            ))
        if stalled:
            health = _worst(health, "degraded")
            issues.append(SwarmIssue(
                type="performance",
                severity="medium",
                description=f"Agent {agent_id} has {len(stalled)} subtask(s) running past their estimate",
                affected_agents=[agent_id],
                suggested_actions=["Check agent connectivity", "Reassign stalled subtasks"],
                timestamp=now,
            ))
        if open_work and now - last_activity > self._unresponsive_ms:
            health = _worst(health, "degraded")
            issues.append(SwarmIssue(
                type="communication",
                severity="high",
                description=f"Agent {agent_id} is unresponsive",
                affected_agents=[agent_id],
                suggested_actions=["Check agent connectivity", "Reassign tasks to available agents"],
                timestamp=now,
            ))
        if len(open_work) > _OVERLOAD_THRESHOLD:
            health = _worst(health, "degraded")
            issues.append(SwarmIssue(
                type="resource",
                severity="medium",
                description=f"Agent {agent_id} is overloaded",
                affected_agents=[agent_id],
                suggested_actions=["Redistribute tasks", "Add more agents to swarm"],
                timestamp=now,
            ))

        return AgentHealthStatus(
            agent_id=agent_id,
            health=health,
            task_load=len(open_work),
            error_rate=error_rate,
            stalled_subtasks=stalled,
            last_activity=last_activity,
        )

    @staticmethod
    def _task_progress(session: SwarmSession, now: int) -> TaskProgress:
        counts = Counter(st.status for st in session.subtasks)
        remaining = 0
        for st in session.subtasks:
            estimate = st.estimated_duration * 60_000
            if st.status == "pending":
                remaining += estimate
            elif st.status == "in_progress":
                elapsed = now - st.started_at if st.started_at else 0
                remaining += max(0, estimate - elapsed)
        return TaskProgress(
            completed=counts.get("completed", 0),
            in_progress=counts.get("in_progress", 0),
            pending=counts.get("pending", 0),
            errored=counts.get("error", 0),
            total=len(session.subtasks),
            progress=compute_progress(session.subtasks),
            blocked_tasks=[st.id for st in session.subtasks if st.status == "error"],
            estimated_time_remaining_ms=remaining,
        )

    @staticmethod
    def _communication_health(
        session: SwarmSession,
        comm_stats: Optional[CommunicationStats],
    ) -> CommunicationHealth:
        messages = session.message_log
        volume = len(messages)
        by_sender = Counter(m.from_agent_id for m in messages)
        bottlenecks = [
            f"Agent {agent_id} is generating high message volume"
            for agent_id, count in by_sender.items()
            if volume >= _BOTTLENECK_MIN_MESSAGES and count > volume * _BOTTLENECK_SHARE
            and agent_id in session.active_agents
        ]
        collaborative = sum(1 for m in messages if m.message_type in _COLLABORATIVE_TYPES)
        return CommunicationHealth(
            message_volume=volume,
            average_response_time_ms=comm_stats.average_response_time_ms if comm_stats else 0.0,
            coordination_efficiency=(collaborative / volume * 100) if volume else 0.0,
            bottlenecks=bottlenecks,
        )

    @staticmethod
    def _session_issues(
        session: SwarmSession,
        progress: TaskProgress,
        communication: CommunicationHealth,
        now: int,
    ) -> list[SwarmIssue]:
        issues: list[SwarmIssue] = []
        if progress.total and progress.errored == progress.total:
            issues.append(SwarmIssue(
                type="logic",
                severity="critical",
                description="All subtasks have failed",
                affected_agents=list(session.active_agents),
                suggested_actions=["Review the task decomposition", "Form a new swarm with other agents"],
                timestamp=now,
            ))
        if not session.is_terminal:
            expected = sum(st.estimated_duration for st in session.subtasks) * 60_000
            if expected and now - session.created_at > expected * 1.5:
                issues.append(SwarmIssue(
                    type="performance",
                    severity="medium",
                    description="Swarm execution is taking longer than expected",
                    affected_agents=list(session.active_agents),
                    suggested_actions=["Review task complexity", "Add more capable agents"],
                    timestamp=now,
                ))
            if session.task.deadline is not None and now > session.task.deadline:
                issues.append(SwarmIssue(
                    type="performance",
                    severity="high",
                    description="Task deadline has passed",
                    affected_agents=list(session.active_agents),
                    suggested_actions=["Escalate to the task owner", "Reduce task scope"],
                    timestamp=now,
                ))
        if communication.average_response_time_ms > _HIGH_LATENCY_MS:
            issues.append(SwarmIssue(
                type="communication",
                severity="medium",
                description="High communication latency detected",
                affected_agents=list(session.active_agents),
                suggested_actions=["Check network connectivity", "Optimize message routing"],
                timestamp=now,
            ))
        for bottleneck in communication.bottlenecks:
            issues.append(SwarmIssue(
                type="coordination",
                severity="low",
                description=bottleneck,
                suggested_actions=["Spread coordination across more agents"],
                timestamp=now,
            ))
        return issues

    @staticmethod
    def _recommendations(issues: list[SwarmIssue]) -> list[str]:
        if not issues:
            return ["Swarm is operating optimally"]
        recommendations: list[str] = []
        for issue in issues:
            if issue.severity in ("high", "critical"):
                recommendations.extend(issue.suggested_actions)
        if any(issue.type == "performance" for issue in issues):
            recommendations.append("Consider optimizing agent workload distribution")
        return list(dict.fromkeys(recommendations))[:_MAX_RECOMMENDATIONS]

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def record(self, report: HealthReport) -> None:
        history = self._history.setdefault(report.session_id, deque(maxlen=self._history_limit))
        history.append(report)

    def get_health_history(self, session_id: str) -> list[HealthReport]:
        return list(self._history.get(session_id, ()))

    def forget(self, session_id: str) -> None:
        self._history.pop(session_id, None)
