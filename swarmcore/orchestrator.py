"""
Swarm Orchestrator: the single writer of SwarmSession state.

Formation pipeline:
  1. Decompose the task into subtasks (TaskDecomposer)
  2. Match a coordinator and worker roster, assign subtasks (CapabilityMatcher)
  3. Create the session in ``forming`` and open its channels
  4. Dispatch task assignments for every subtask whose sequential
     predecessors are done
  5. Move to ``active`` and persist

Any failure before step 5 tears the channels down and propagates the typed
error; nothing is persisted, so no orphaned ``forming`` session survives.

Every mutation of a session happens under that session's asyncio.Lock.
Sessions are independent; there is no cross-session locking. Read paths
(get_session, monitor_swarm_health) take a deep snapshot instead of the lock.

Worker replies arrive as messages addressed to the "system" agent. The
orchestrator's handler for that address never applies them inline: it
schedules handle_agent_message() as a task, which then waits for the
session lock. Worker handlers run while dispatch holds the lock, so they
must reply through the CommunicationManager rather than by awaiting
orchestrator mutations directly.

Stalled subtasks: an ``in_progress`` subtask older than
``stall_factor × estimated_duration`` is re-sent to the least-loaded other
worker (status stays ``in_progress``, ``attempts`` increments, ``started_at``
resets). Once it has been reassigned ``max_subtask_retries`` times the next
stall marks it ``error``.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any, Optional

import structlog

from swarmcore.communication import CommunicationManager
from swarmcore.config import SwarmConfig
from swarmcore.decomposer import TaskDecomposer
from swarmcore.directory import AgentDirectory, InMemoryAgentDirectory
from swarmcore.errors import (
    AuthorizationError,
    CommunicationError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from swarmcore.matcher import CapabilityMatcher
from swarmcore.models import (
    SESSION_TRANSITIONS,
    SUBTASK_TRANSITIONS,
    SYSTEM_AGENT_ID,
    AgentMessage,
    ComplexTask,
    HealthReport,
    MessageResponse,
    ResultHandoffPayload,
    StatusUpdatePayload,
    SubTask,
    SwarmResult,
    SwarmSession,
    now_ms,
)
from swarmcore.monitor import SwarmMonitor, is_stalled
from swarmcore.store import InMemorySessionStore, SessionStore

logger = structlog.get_logger(__name__)


class SwarmOrchestrator:
    """Owns the session state machine and drives subtasks to completion."""

    def __init__(
        self,
        config: Optional[SwarmConfig] = None,
        directory: Optional[AgentDirectory] = None,
        store: Optional[SessionStore] = None,
        communication: Optional[CommunicationManager] = None,
        decomposer: Optional[TaskDecomposer] = None,
        matcher: Optional[CapabilityMatcher] = None,
        monitor: Optional[SwarmMonitor] = None,
    ) -> None:
        self._config = config or SwarmConfig()
        self._directory = directory or InMemoryAgentDirectory()
        self._store = store or InMemorySessionStore()
        self._communication = communication or CommunicationManager(self._config)
        self._decomposer = decomposer or TaskDecomposer(self._config)
        self._matcher = matcher or CapabilityMatcher(self._config)
        self._monitor = monitor or SwarmMonitor(self._config)

        self._sessions: dict[str, SwarmSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._monitors: dict[str, asyncio.Task] = {}
        self._inbound: set[asyncio.Task] = set()

        self._communication.register_message_handler(SYSTEM_AGENT_ID, self._on_system_message)

    @property
    def communication(self) -> CommunicationManager:
        return self._communication

    @property
    def monitor(self) -> SwarmMonitor:
        return self._monitor

    # ------------------------------------------------------------------
    # Formation
    # ------------------------------------------------------------------

    async def form_swarm(self, task: ComplexTask, user_id: str) -> SwarmSession:
        """Decompose, match, open channels, dispatch and activate."""
        if not user_id:
            raise AuthorizationError("A user id is required to form a swarm")

        decomposition = self._decomposer.decompose(task)
        match = await self._matcher.match_for_task(task, decomposition, self._directory, user_id)
        for subtask in decomposition.sub_tasks:
            subtask.assigned_agent_id = match.assignments.get(subtask.id)

        session = SwarmSession(
            user_id=user_id,
            active_agents=match.active_agent_ids,
            coordinator_agent=match.coordinator.agent_id,
            task=task,
            decomposition=decomposition,
        )
        sid = session.session_id
        self._sessions[sid] = session
        lock = self._lock_for(sid)

        async with lock:
            try:
                await self._communication.initialize_swarm_communication(session)
                dispatched, failed = await self._dispatch_ready(session)
                if failed and not dispatched:
                    raise CommunicationError(
                        f"Could not deliver any task assignment for session {sid}"
                    )
                self._transition(session, "active")
                await self._settle(session)
            except Exception:
                self._sessions.pop(sid, None)
                self._locks.pop(sid, None)
                self._communication.cleanup_session_channels(sid)
                logger.error("orchestrator.formation_failed", session_id=sid, task_id=task.id)
                raise

        logger.info(
            "orchestrator.swarm_formed",
            session_id=sid,
            user_id=user_id,
            coordinator=session.coordinator_agent,
            agents=len(session.active_agents),
            subtasks=len(session.subtasks),
        )
        if self._config.monitoring_enabled and not session.is_terminal:
            self.start_monitoring(sid)
        return session.snapshot()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_session(self, session_id: str, user_id: Optional[str] = None) -> SwarmSession:
        """Detached copy of the session. Never touches ``last_activity``."""
        session = await self._load(session_id)
        self._authorize(session, user_id)
        return session.snapshot()

    async def list_sessions_for_user(self, user_id: str) -> list[SwarmSession]:
        by_id = {s.session_id: s for s in await self._store.list_for_user(user_id)}
        for sid, session in self._sessions.items():
            if session.user_id == user_id:
                by_id[sid] = session.snapshot()
        return sorted(by_id.values(), key=lambda s: s.created_at, reverse=True)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def update_session_status(self, session_id: str, status: str, user_id: str) -> SwarmSession:
        if status not in SESSION_TRANSITIONS:
            raise ValidationError(f"Unknown session status: {status!r}")
        if status == "dissolved":
            return await self.dissolve_swarm(session_id, user_id)

        session = await self._load(session_id)
        self._require_owner(session, user_id)
        async with self._lock_for(session_id):
            if status in ("completing", "completed"):
                open_ids = [st.id for st in session.subtasks if not st.is_terminal]
                if open_ids:
                    raise IllegalTransitionError(
                        f"Cannot move session {session_id} to {status} "
                        f"with open subtasks: {', '.join(open_ids)}"
                    )
            self._transition(session, status)
            if status == "completed":
                self._finalize(session)
            elif status == "error":
                session.completed_at = now_ms()
                session.error = session.error or "Marked as failed by owner"
            if session.is_terminal:
                self.stop_monitoring(session_id)
            await self._store.put(session)
            return session.snapshot()

    async def dissolve_swarm(self, session_id: str, user_id: str) -> SwarmSession:
        """Move to ``dissolved``, notify participants and drop all channels.

        Dissolving an already dissolved session returns it unchanged.
        """
        session = await self._load(session_id)
        self._require_owner(session, user_id)
        async with self._lock_for(session_id):
            if session.status == "dissolved":
                logger.debug("orchestrator.already_dissolved", session_id=session_id)
                return session.snapshot()

            self.stop_monitoring(session_id)
            self._transition(session, "dissolved")
            session.completed_at = session.completed_at or now_ms()
            session.performance_metrics = self._monitor.compute_performance_metrics(
                session.snapshot(),
                self._communication.get_session_communication_stats(session_id),
            )
            await self._communication.notify_swarm_dissolution(session)
            await self._store.put(session)

        logger.info(
            "orchestrator.swarm_dissolved",
            session_id=session_id,
            progress=session.progress,
            results=len(session.results),
        )
        return session.snapshot()

    # ------------------------------------------------------------------
    # Subtasks and inbound traffic
    # ------------------------------------------------------------------

    async def update_subtask(
        self,
        session_id: str,
        subtask_id: str,
        user_id: str,
        status: Optional[str] = None,
        result: Any = None,
        error: Optional[str] = None,
    ) -> SubTask:
        if status is not None and status not in SUBTASK_TRANSITIONS:
            raise ValidationError(f"Unknown subtask status: {status!r}")

        session = await self._load(session_id)
        self._require_owner(session, user_id)
        async with self._lock_for(session_id):
            if session.status != "active":
                raise IllegalTransitionError(
                    f"Session {session_id} is {session.status}; subtasks can no longer change"
                )
            subtask = session.decomposition.get_subtask(subtask_id)
            if subtask is None:
                raise NotFoundError(f"Subtask {subtask_id} not found in session {session_id}")

            self._apply_subtask_update(session, subtask, status or subtask.status, result, error)
            await self._settle(session)
            return subtask.model_copy(deep=True)

    async def handle_agent_message(self, message: AgentMessage) -> bool:
        """Apply a worker's result or status report. Returns False if dropped."""
        session = await self._load(message.session_id)
        async with self._lock_for(message.session_id):
            if session.status != "active":
                logger.info(
                    "orchestrator.message_dropped",
                    session_id=session.session_id,
                    status=session.status,
                    message_type=message.message_type,
                )
                return False

            payload = message.payload
            subtask_id = getattr(payload, "subtask_id", None)
            subtask = session.decomposition.get_subtask(subtask_id) if subtask_id else None
            sender = message.from_agent_id
            if sender not in session.active_agents or (
                subtask is not None and not subtask.may_report(sender)
            ):
                logger.warning(
                    "orchestrator.report_rejected",
                    session_id=session.session_id,
                    from_agent=sender,
                    subtask_id=subtask_id,
                    message_type=message.message_type,
                )
                return False

            session.message_log.append(message)
            session.last_activity = now_ms()

            applied = False
            if subtask is not None and not subtask.is_terminal:
                if isinstance(payload, ResultHandoffPayload):
                    status = "error" if payload.error else "completed"
                    self._apply_subtask_update(
                        session, subtask, status, payload.result, payload.error,
                        agent_id=message.from_agent_id,
                    )
                    applied = True
                elif isinstance(payload, StatusUpdatePayload) and payload.status in SUBTASK_TRANSITIONS:
                    if payload.status != subtask.status:
                        self._apply_subtask_update(
                            session, subtask, payload.status, None, payload.details.get("error"),
                            agent_id=message.from_agent_id,
                        )
                    applied = True
            elif subtask is not None:
                logger.debug(
                    "orchestrator.late_report_ignored",
                    session_id=session.session_id,
                    subtask_id=subtask.id,
                    status=subtask.status,
                )

            await self._settle(session)
            return applied

    async def coordinate_agent_handoff(
        self,
        session_id: str,
        from_agent_id: str,
        to_agent_id: str,
        context: dict[str, Any],
        user_id: str,
    ) -> MessageResponse:
        """Pass intermediate context from one swarm member to another."""
        session = await self._load(session_id)
        self._require_owner(session, user_id)
        for agent_id in (from_agent_id, to_agent_id):
            if agent_id not in session.active_agents:
                raise ValidationError(f"Agent {agent_id} is not part of session {session_id}")
        if session.status != "active":
            raise IllegalTransitionError(f"Session {session_id} is {session.status}")

        message = AgentMessage.create(
            ResultHandoffPayload(subtask_id=context.get("subtask_id"), context=context),
            from_agent_id=from_agent_id,
            to_agent_id=to_agent_id,
            session_id=session_id,
            priority="high",
        )
        response = await self._communication.send_message(message)
        async with self._lock_for(session_id):
            session.message_log.append(message)
            session.last_activity = now_ms()
            await self._store.put(session)
        return response

    async def add_result(
        self,
        session_id: str,
        result: SwarmResult,
        user_id: str,
    ) -> SwarmSession:
        if result.session_id != session_id:
            raise ValidationError("Result belongs to a different session")
        session = await self._load(session_id)
        self._require_owner(session, user_id)
        async with self._lock_for(session_id):
            if session.status == "dissolved":
                raise IllegalTransitionError(f"Session {session_id} is dissolved")
            session.results.append(result)
            session.last_activity = now_ms()
            await self._store.put(session)
            return session.snapshot()

    # ------------------------------------------------------------------
    # Health and stall handling
    # ------------------------------------------------------------------

    async def monitor_swarm_health(self, session_id: str, user_id: Optional[str] = None) -> HealthReport:
        session = await self._load(session_id)
        self._authorize(session, user_id)
        report = self._monitor.generate_health_report(
            session.snapshot(),
            self._communication.get_session_communication_stats(session_id),
        )
        self._monitor.record(report)
        return report

    def get_health_history(self, session_id: str) -> list[HealthReport]:
        return self._monitor.get_health_history(session_id)

    async def reap_stalled_subtasks(self, session_id: str, now: Optional[int] = None) -> list[str]:
        """Reassign or fail stalled subtasks. Returns the ids acted upon."""
        session = await self._load(session_id)
        async with self._lock_for(session_id):
            if session.status != "active":
                return []
            now = now if now is not None else now_ms()
            touched: list[str] = []
            for subtask in session.subtasks:
                if not is_stalled(subtask, now, self._config.stall_factor):
                    continue
                touched.append(subtask.id)
                if subtask.attempts > self._config.max_subtask_retries:
                    self._apply_subtask_update(
                        session, subtask, "error", None,
                        f"Stalled after {subtask.attempts} attempts",
                    )
                    logger.warning(
                        "orchestrator.subtask_abandoned",
                        session_id=session_id,
                        subtask_id=subtask.id,
                        attempts=subtask.attempts,
                    )
                    continue
                await self._reassign(session, subtask, now)
            if touched:
                await self._settle(session)
            return touched

    def start_monitoring(self, session_id: str) -> None:
        if session_id in self._monitors:
            return
        self._monitors[session_id] = asyncio.create_task(
            self._monitor_loop(session_id), name=f"swarm-monitor-{session_id}"
        )
        logger.debug("orchestrator.monitor_started", session_id=session_id)

    def stop_monitoring(self, session_id: str) -> None:
        task = self._monitors.pop(session_id, None)
        # The loop exits on its own once the session is terminal.
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def drain_inbound(self) -> None:
        """Wait until every scheduled worker reply has been applied."""
        while self._inbound:
            await asyncio.gather(*list(self._inbound), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._monitors.values()) + list(self._inbound)
        self._monitors.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._communication.unregister_message_handler(SYSTEM_AGENT_ID)
        logger.info("orchestrator.shutdown", cancelled=len(tasks))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def _load(self, session_id: str) -> SwarmSession:
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        stored = await self._store.get(session_id)
        if stored is None:
            raise NotFoundError(f"Swarm session {session_id} not found")
        session = self._sessions.setdefault(session_id, stored)
        if session is stored and not session.is_terminal:
            await self._communication.initialize_swarm_communication(session)
            if self._config.monitoring_enabled:
                self.start_monitoring(session_id)
            logger.info("orchestrator.session_restored", session_id=session_id, status=session.status)
        return session

    @staticmethod
    def _authorize(session: SwarmSession, user_id: Optional[str]) -> None:
        # None is an internal read (monitor loop, CLI simulation).
        if user_id is not None and session.user_id != user_id:
            raise AuthorizationError(f"User {user_id} does not own session {session.session_id}")

    @staticmethod
    def _require_owner(session: SwarmSession, user_id: Optional[str]) -> None:
        if not user_id:
            raise AuthorizationError(f"A user id is required to modify session {session.session_id}")
        SwarmOrchestrator._authorize(session, user_id)

    @staticmethod
    def _transition(session: SwarmSession, status: str) -> None:
        if status not in SESSION_TRANSITIONS[session.status]:
            raise IllegalTransitionError(
                f"Cannot move session {session.session_id} from {session.status} to {status}"
            )
        logger.info(
            "orchestrator.session_transition",
            session_id=session.session_id,
            from_status=session.status,
            to_status=status,
        )
        session.status = status  # type: ignore[assignment]
        session.last_activity = now_ms()

    def _apply_subtask_update(
        self,
        session: SwarmSession,
        subtask: SubTask,
        status: str,
        result: Any,
        error: Optional[str],
        agent_id: Optional[str] = None,
    ) -> None:
        if subtask.is_terminal:
            raise IllegalTransitionError(f"Subtask {subtask.id} is already {subtask.status}")
        if status != subtask.status and status not in SUBTASK_TRANSITIONS[subtask.status]:
            raise IllegalTransitionError(
                f"Cannot move subtask {subtask.id} from {subtask.status} to {status}"
            )

        now = now_ms()
        if status == "in_progress" and subtask.started_at is None:
            subtask.started_at = now
        if status in ("completed", "error"):
            subtask.completed_at = now
            subtask.actual_duration = now - (subtask.started_at or now)
        if result is not None:
            subtask.result = result
        if error:
            subtask.error = error
        subtask.status = status  # type: ignore[assignment]

        if status == "completed":
            session.results.append(SwarmResult(
                session_id=session.session_id,
                agent_id=agent_id or subtask.assigned_agent_id or SYSTEM_AGENT_ID,
                subtask_id=subtask.id,
                result_type="intermediate",
                content=subtask.result,
            ))
        logger.info(
            "orchestrator.subtask_updated",
            session_id=session.session_id,
            subtask_id=subtask.id,
            status=status,
        )

    async def _settle(self, session: SwarmSession) -> None:
        """Propagate a subtask change: block, dispatch, complete, persist."""
        self._block_dependents(session)
        if session.status == "active":
            await self._dispatch_ready(session)
            self._block_dependents(session)
            await self._maybe_complete(session)
        session.last_activity = now_ms()
        await self._store.put(session)

    def _block_dependents(self, session: SwarmSession) -> None:
        changed = True
        while changed:
            changed = False
            for subtask in session.subtasks:
                if subtask.status != "pending":
                    continue
                failed = [
                    pid for pid in session.decomposition.predecessors(subtask.id)
                    if self._subtask_status(session, pid) == "error"
                ]
                if failed:
                    self._apply_subtask_update(
                        session, subtask, "error", None, f"Blocked by failed subtask {failed[0]}"
                    )
                    changed = True

    @staticmethod
    def _subtask_status(session: SwarmSession, subtask_id: str) -> Optional[str]:
        subtask = session.decomposition.get_subtask(subtask_id)
        return subtask.status if subtask else None

    def _is_ready(self, session: SwarmSession, subtask: SubTask) -> bool:
        if subtask.status != "pending":
            return False
        return all(
            self._subtask_status(session, pid) in ("completed", None)
            for pid in session.decomposition.predecessors(subtask.id)
        )

    async def _dispatch_ready(self, session: SwarmSession) -> tuple[list[str], list[str]]:
        ready = [st for st in session.subtasks if self._is_ready(session, st)]
        if not ready:
            return [], []
        outcomes = await asyncio.gather(*(self._assign(session, st) for st in ready))
        dispatched = [st.id for st, ok in zip(ready, outcomes) if ok]
        failed = [st.id for st, ok in zip(ready, outcomes) if not ok]
        logger.debug(
            "orchestrator.dispatched",
            session_id=session.session_id,
            dispatched=dispatched,
            failed=failed,
        )
        return dispatched, failed

    async def _assign(self, session: SwarmSession, subtask: SubTask) -> bool:
        agent_id = subtask.assigned_agent_id or session.coordinator_agent
        subtask.assigned_agent_id = agent_id
        message = self._communication.build_task_assignment(
            session.session_id, agent_id, subtask, attempt=subtask.attempts + 1
        )
        response = await self._communication.send_message(message)
        session.message_log.append(message)
        subtask.attempts += 1

        if agent_id in response.delivered_to:
            self._apply_subtask_update(session, subtask, "in_progress", None, None)
            return True
        self._apply_subtask_update(
            session, subtask, "error", None, f"Task assignment to {agent_id} could not be delivered"
        )
        return False

    async def _reassign(self, session: SwarmSession, subtask: SubTask, now: int) -> None:
        workers = [a for a in session.active_agents if a != session.coordinator_agent]
        workers = workers or [session.coordinator_agent]
        loads = Counter(
            st.assigned_agent_id for st in session.subtasks
            if st.status == "in_progress" and st.id != subtask.id
        )
        others = [a for a in workers if a != subtask.assigned_agent_id] or workers
        target = min(others, key=lambda a: (loads[a], workers.index(a)))

        previous = subtask.assigned_agent_id
        if previous and previous != target and previous not in subtask.previous_agent_ids:
            subtask.previous_agent_ids.append(previous)
        subtask.assigned_agent_id = target
        message = self._communication.build_task_assignment(
            session.session_id, target, subtask, attempt=subtask.attempts + 1
        )
        response = await self._communication.send_message(message)
        session.message_log.append(message)
        subtask.attempts += 1

        if target in response.delivered_to:
            subtask.started_at = now
            logger.warning(
                "orchestrator.subtask_reassigned",
                session_id=session.session_id,
                subtask_id=subtask.id,
                from_agent=previous,
                to_agent=target,
                attempt=subtask.attempts,
            )
        else:
            self._apply_subtask_update(
                session, subtask, "error", None, f"Reassignment to {target} could not be delivered"
            )

    async def _maybe_complete(self, session: SwarmSession) -> None:
        if session.status != "active" or not session.subtasks:
            return
        if not all(st.is_terminal for st in session.subtasks):
            return

        self._transition(session, "completing")
        self.stop_monitoring(session.session_id)
        if all(st.status == "error" for st in session.subtasks):
            session.error = "All subtasks failed"
            self._transition(session, "error")
            session.completed_at = now_ms()
            session.performance_metrics = self._monitor.compute_performance_metrics(
                session.snapshot(),
                self._communication.get_session_communication_stats(session.session_id),
            )
        else:
            self._finalize(session)
            self._transition(session, "completed")

        await self._communication.send_status_update(
            session.session_id,
            SYSTEM_AGENT_ID,
            f"swarm_{session.status}",
            details={"progress": session.progress},
        )

    def _finalize(self, session: SwarmSession) -> None:
        """Aggregate subtask results and freeze metrics."""
        session.completed_at = now_ms()
        session.results.append(SwarmResult(
            session_id=session.session_id,
            agent_id=session.coordinator_agent,
            result_type="final",
            content={
                st.id: st.result for st in session.subtasks if st.status == "completed"
            },
        ))
        session.performance_metrics = self._monitor.compute_performance_metrics(
            session.snapshot(),
            self._communication.get_session_communication_stats(session.session_id),
        )

    def _on_system_message(self, message: AgentMessage) -> None:
        task = asyncio.get_running_loop().create_task(self._apply_inbound(message))
        self._inbound.add(task)
        task.add_done_callback(self._inbound.discard)

    async def _apply_inbound(self, message: AgentMessage) -> None:
        try:
            await self.handle_agent_message(message)
        except (NotFoundError, IllegalTransitionError) as e:
            logger.warning(
                "orchestrator.inbound_rejected",
                session_id=message.session_id,
                message_id=message.id,
                error=str(e),
            )

    async def _monitor_loop(self, session_id: str) -> None:
        interval = self._config.monitor_interval
        while True:
            try:
                await asyncio.sleep(interval)
                session = self._sessions.get(session_id)
                if session is None or session.is_terminal:
                    break
                await self.reap_stalled_subtasks(session_id)
                report = await self.monitor_swarm_health(session_id)
                if report.overall_health != "healthy":
                    logger.warning(
                        "orchestrator.swarm_unhealthy",
                        session_id=session_id,
                        health=report.overall_health,
                        issues=len(report.issues),
                    )
            except asyncio.CancelledError:
                break
            except Exception:
                logger.error("orchestrator.monitor_failed", session_id=session_id, exc_info=True)
        if self._monitors.get(session_id) is asyncio.current_task():
            self._monitors.pop(session_id, None)
