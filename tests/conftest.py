"""
Shared fixtures for the swarmcore test suite.

Provides a minimal config stand-in, agent pools, a replying worker and an
orchestrator wired to in-memory collaborators, so individual test modules
can focus on behavior rather than setup.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import pytest

from swarmcore.communication import CommunicationManager
from swarmcore.directory import InMemoryAgentDirectory
from swarmcore.models import (
    SYSTEM_AGENT_ID,
    AgentMessage,
    AgentMetadata,
    ComplexTask,
    ResultHandoffPayload,
    SubTask,
    SwarmSession,
    TaskDecomposition,
)
from swarmcore.orchestrator import SwarmOrchestrator
from swarmcore.store import InMemorySessionStore


class MockConfig:
    """Minimal SwarmConfig stand-in for tests."""

    max_workers = 5
    default_capabilities = ["general_processing"]
    min_subtask_minutes = 5
    max_subtask_minutes = 30
    delivery_timeout = 0.2
    max_concurrent_deliveries = 8
    offline_queue_limit = 50
    monitoring_enabled = False
    monitor_interval = 0.05
    health_history_limit = 10
    unresponsive_after = 300.0
    stall_factor = 2.0
    max_subtask_retries = 2
    data_dir = Path("swarm_data")
    agents_file = None


class ReplyingWorker:
    """Worker handler that answers task requests with a result_handoff.

    The reply is sent from a separate task, the way a real worker would
    answer after doing its work.
    """

    def __init__(
        self,
        agent_id: str,
        communication: CommunicationManager,
        fail: Optional[set[str]] = None,
    ) -> None:
        self.agent_id = agent_id
        self.communication = communication
        self.fail = fail or set()
        self.received: list[AgentMessage] = []
        self._tasks: set[asyncio.Task] = set()

    def __call__(self, message: AgentMessage) -> None:
        self.received.append(message)
        if message.message_type != "task_request":
            return
        subtask = message.payload.subtask
        failed = subtask.id in self.fail
        reply = AgentMessage.create(
            ResultHandoffPayload(
                subtask_id=subtask.id,
                result=None if failed else f"done: {subtask.description}",
                error="worker failure" if failed else None,
            ),
            from_agent_id=self.agent_id,
            to_agent_id=SYSTEM_AGENT_ID,
            session_id=message.session_id,
            response_to_message_id=message.id,
        )
        task = asyncio.get_running_loop().create_task(self.communication.send_message(reply))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


async def settle(orchestrator: SwarmOrchestrator, session_id: str, rounds: int = 100) -> SwarmSession:
    """Let replies flow until the session is terminal (or rounds run out)."""
    session = await orchestrator.get_session(session_id)
    for _ in range(rounds):
        await asyncio.sleep(0.005)
        await orchestrator.drain_inbound()
        session = await orchestrator.get_session(session_id)
        if session.is_terminal:
            break
    return session


def make_session(
    statuses: list[str],
    agents: tuple[str, ...] = ("coord", "worker-1"),
    estimated: int = 10,
) -> SwarmSession:
    """A session whose subtasks carry *statuses*, all assigned to agents[-1]."""
    subtasks = [
        SubTask(
            id=f"subtask-{i}",
            description=f"step {i}",
            status=status,
            assigned_agent_id=agents[-1],
            estimated_duration=estimated,
        )
        for i, status in enumerate(statuses, start=1)
    ]
    return SwarmSession(
        user_id="alice",
        status="active",
        active_agents=list(agents),
        coordinator_agent=agents[0],
        task=ComplexTask(description="test task"),
        decomposition=TaskDecomposition(sub_tasks=subtasks),
    )


@pytest.fixture
def config():
    return MockConfig()


@pytest.fixture
def analyst() -> AgentMetadata:
    return AgentMetadata(agent_id="analyst", name="Analyst", category="research", tags=["data_analysis"])


@pytest.fixture
def agent_pool() -> list[AgentMetadata]:
    return [
        AgentMetadata(agent_id="summarizer", category="writing", tags=["summarization"]),
        AgentMetadata(agent_id="translator-1", category="language", tags=["translation"]),
        AgentMetadata(agent_id="translator-2", category="language", tags=["translation"]),
    ]


@pytest.fixture
def communication(config) -> CommunicationManager:
    return CommunicationManager(config)


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def make_orchestrator(config, communication, store):
    def factory(agents: list[AgentMetadata]) -> SwarmOrchestrator:
        return SwarmOrchestrator(
            config=config,
            directory=InMemoryAgentDirectory(agents),
            store=store,
            communication=communication,
        )

    return factory


@pytest.fixture
def settled():
    """The settle() helper: ``session = await settled(orchestrator, sid)``."""
    return settle


@pytest.fixture
def session_factory():
    return make_session


@pytest.fixture
def worker_factory(communication):
    """Register a ReplyingWorker for an agent id and return it."""

    def factory(agent_id: str, fail: Optional[set[str]] = None) -> ReplyingWorker:
        worker = ReplyingWorker(agent_id, communication, fail)
        communication.register_message_handler(agent_id, worker)
        return worker

    return factory
