"""
Swarm Data Models: The Shape of a Swarm.

These Pydantic models are the contract between the decomposer, the matcher,
the communication manager, the orchestrator and the monitor. A ComplexTask
goes in; a SwarmSession (the aggregate root) comes out and carries its
decomposition, roster, message log, results and metrics until dissolution.

Timestamps are integer epoch milliseconds throughout. Estimated durations are
whole minutes; actual durations are milliseconds.
"""

from __future__ import annotations

import math
import time
import uuid
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

Priority = Literal["low", "medium", "high", "urgent"]
SessionStatus = Literal["forming", "active", "completing", "completed", "dissolved", "error"]
SubTaskStatus = Literal["pending", "in_progress", "completed", "error"]
MessageType = Literal[
    "task_request",
    "data_share",
    "result_handoff",
    "coordination",
    "status_update",
    "capability_query",
]
ChannelType = Literal["broadcast", "direct", "group"]
Severity = Literal["low", "medium", "high", "critical"]
HealthStatus = Literal["healthy", "degraded", "critical"]
IssueType = Literal["communication", "performance", "coordination", "resource", "logic"]

BROADCAST = "broadcast"
SYSTEM_AGENT_ID = "system"

# Legal session status transitions. Dissolution is reachable from every
# non-dissolved status; dissolved has no exits.
SESSION_TRANSITIONS: dict[str, frozenset[str]] = {
    "forming": frozenset({"active", "error", "dissolved"}),
    "active": frozenset({"completing", "error", "dissolved"}),
    "completing": frozenset({"completed", "error", "dissolved"}),
    "completed": frozenset({"dissolved"}),
    "error": frozenset({"dissolved"}),
    "dissolved": frozenset(),
}

# Subtask statuses only move forward.
SUBTASK_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"in_progress", "completed", "error"}),
    "in_progress": frozenset({"completed", "error"}),
    "completed": frozenset(),
    "error": frozenset(),
}

TERMINAL_SESSION_STATUSES = frozenset({"completed", "dissolved", "error"})
TERMINAL_SUBTASK_STATUSES = frozenset({"completed", "error"})


def now_ms() -> int:
    return int(time.time() * 1000)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class ComplexTask(BaseModel):
    """A free-form task submitted for swarm execution. Immutable."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: _new_id("task"))
    description: str
    type: str = "general"
    priority: Priority = "medium"
    deadline: Optional[int] = None
    requirements: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    expected_output_format: str = "text"
    context: dict[str, Any] = Field(default_factory=dict)


class SubTask(BaseModel):
    """One decomposed unit of work, assignable to a single agent at a time."""

    id: str
    parent_task_id: str = ""
    description: str
    status: SubTaskStatus = "pending"
    assigned_agent_id: Optional[str] = None
    required_capabilities: list[str] = Field(default_factory=list)
    estimated_duration: int = Field(..., gt=0)  # minutes
    actual_duration: Optional[int] = None  # ms
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    result: Any = None
    error: Optional[str] = None
    attempts: int = 0
    previous_agent_ids: list[str] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SUBTASK_STATUSES

    def may_report(self, agent_id: str) -> bool:
        """Whether ``agent_id`` holds, or once held, this assignment."""
        return agent_id == self.assigned_agent_id or agent_id in self.previous_agent_ids


class TaskDependency(BaseModel):
    from_task_id: str
    to_task_id: str
    type: Literal["sequential", "parallel"] = "sequential"


class TaskDecomposition(BaseModel):
    """Subtasks plus the dependency hints between them."""

    sub_tasks: list[SubTask] = Field(default_factory=list)
    dependencies: list[TaskDependency] = Field(default_factory=list)
    estimated_complexity: int = 1
    required_capabilities: list[str] = Field(default_factory=list)

    def get_subtask(self, subtask_id: str) -> Optional[SubTask]:
        for st in self.sub_tasks:
            if st.id == subtask_id:
                return st
        return None

    def predecessors(self, subtask_id: str) -> list[str]:
        """Ids that must complete before *subtask_id* may start."""
        return [
            dep.from_task_id
            for dep in self.dependencies
            if dep.to_task_id == subtask_id and dep.type == "sequential"
        ]


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

class AgentMetadata(BaseModel):
    """A worker agent as listed by the capability directory."""

    model_config = ConfigDict(populate_by_name=True)

    agent_id: str = Field(validation_alias=AliasChoices("agent_id", "agentId"))
    name: str = ""
    category: str = ""
    tags: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("tags", "selected_context_ids", "selectedContextIds"),
    )
    description: str = ""
    owner_id: Optional[str] = Field(None, validation_alias=AliasChoices("owner_id", "ownerId"))
    is_public: bool = Field(False, validation_alias=AliasChoices("is_public", "isPublic"))


# ---------------------------------------------------------------------------
# Results & metrics
# ---------------------------------------------------------------------------

class SwarmResult(BaseModel):
    """A result contributed to a session by one agent."""

    result_id: str = Field(default_factory=lambda: _new_id("result"))
    session_id: str
    agent_id: str
    subtask_id: Optional[str] = None
    result_type: Literal["intermediate", "final", "insight", "recommendation"] = "final"
    content: Any = None
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    created_at: int = Field(default_factory=now_ms)


class PerformanceMetrics(BaseModel):
    total_duration_ms: int = 0
    task_completion_rate: float = 0.0  # % of all subtasks completed
    success_rate: float = 0.0  # % of terminal subtasks that completed
    average_subtask_duration_ms: float = 0.0
    average_latency_ms: float = 0.0
    throughput_per_minute: float = 0.0
    message_volume: int = 0
    agent_utilization: dict[str, float] = Field(default_factory=dict)
    communication_efficiency: float = 0.0
    collaboration_score: float = 0.0


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class TaskRequestPayload(BaseModel):
    message_type: Literal["task_request"] = "task_request"
    subtask: SubTask
    deadline: Optional[int] = None
    attempt: int = 1


class DataSharePayload(BaseModel):
    message_type: Literal["data_share"] = "data_share"
    data_type: str
    data: Any = None
    size: int = 0


class ResultHandoffPayload(BaseModel):
    message_type: Literal["result_handoff"] = "result_handoff"
    subtask_id: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)


class CoordinationPayload(BaseModel):
    message_type: Literal["coordination"] = "coordination"
    instruction: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class StatusUpdatePayload(BaseModel):
    message_type: Literal["status_update"] = "status_update"
    status: str
    subtask_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    final_results: list[SwarmResult] = Field(default_factory=list)
    performance_metrics: Optional[PerformanceMetrics] = None


class CapabilityQueryPayload(BaseModel):
    message_type: Literal["capability_query"] = "capability_query"
    query_type: str = "capability_info"
    requested_info: list[str] = Field(
        default_factory=lambda: ["capabilities", "specializations", "current_load"]
    )


MessagePayload = Annotated[
    Union[
        TaskRequestPayload,
        DataSharePayload,
        ResultHandoffPayload,
        CoordinationPayload,
        StatusUpdatePayload,
        CapabilityQueryPayload,
    ],
    Field(discriminator="message_type"),
]


class AgentMessage(BaseModel):
    """A message routed between agents of one session."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    from_agent_id: str
    to_agent_id: str  # agent id or BROADCAST
    message_type: MessageType
    payload: MessagePayload
    timestamp: int = Field(default_factory=now_ms)
    priority: Priority = "medium"
    session_id: str
    requires_response: bool = False
    response_to_message_id: Optional[str] = None

    @model_validator(mode="after")
    def _payload_matches_type(self) -> "AgentMessage":
        if self.payload.message_type != self.message_type:
            raise ValueError(
                f"payload for {self.payload.message_type!r} sent as {self.message_type!r}"
            )
        return self

    @classmethod
    def create(
        cls,
        payload: BaseModel,
        *,
        from_agent_id: str,
        to_agent_id: str,
        session_id: str,
        priority: Priority = "medium",
        requires_response: bool = False,
        response_to_message_id: Optional[str] = None,
    ) -> "AgentMessage":
        return cls(
            from_agent_id=from_agent_id,
            to_agent_id=to_agent_id,
            message_type=payload.message_type,  # type: ignore[attr-defined]
            payload=payload,
            session_id=session_id,
            priority=priority,
            requires_response=requires_response,
            response_to_message_id=response_to_message_id,
        )

    @property
    def is_broadcast(self) -> bool:
        return self.to_agent_id == BROADCAST


class CommunicationChannel(BaseModel):
    channel_id: str
    session_id: str
    participants: list[str] = Field(default_factory=list)
    type: ChannelType
    topic: str = ""
    created_at: int = Field(default_factory=now_ms)
    last_activity: int = Field(default_factory=now_ms)
    message_count: int = 0


class MessageResponse(BaseModel):
    success: bool
    message_id: str
    delivered_to: list[str] = Field(default_factory=list)
    failed_deliveries: list[str] = Field(default_factory=list)
    queued_for: list[str] = Field(default_factory=list)  # subset of delivered_to
    timestamp: int = Field(default_factory=now_ms)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class AgentHealthStatus(BaseModel):
    agent_id: str
    health: HealthStatus = "healthy"
    task_load: int = 0
    error_rate: float = 0.0  # fraction of assigned subtasks in error
    stalled_subtasks: list[str] = Field(default_factory=list)
    last_activity: int = 0


class SwarmIssue(BaseModel):
    type: IssueType
    severity: Severity
    description: str
    affected_agents: list[str] = Field(default_factory=list)
    suggested_actions: list[str] = Field(default_factory=list)
    timestamp: int = Field(default_factory=now_ms)


class TaskProgress(BaseModel):
    completed: int = 0
    in_progress: int = 0
    pending: int = 0
    errored: int = 0
    total: int = 0
    progress: int = 0
    blocked_tasks: list[str] = Field(default_factory=list)
    estimated_time_remaining_ms: int = 0


class CommunicationHealth(BaseModel):
    message_volume: int = 0
    average_response_time_ms: float = 0.0
    coordination_efficiency: float = 0.0
    bottlenecks: list[str] = Field(default_factory=list)


class HealthReport(BaseModel):
    session_id: str
    timestamp: int = Field(default_factory=now_ms)
    overall_health: HealthStatus = "healthy"
    agent_health: dict[str, AgentHealthStatus] = Field(default_factory=dict)
    issues: list[SwarmIssue] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    progress: int = 0
    task_progress: TaskProgress = Field(default_factory=TaskProgress)
    communication: CommunicationHealth = Field(default_factory=CommunicationHealth)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

def compute_progress(subtasks: list[SubTask]) -> int:
    """Percentage of completed subtasks, rounded half-up. Zero subtasks → 0."""
    total = len(subtasks)
    if total == 0:
        return 0
    completed = sum(1 for st in subtasks if st.status == "completed")
    return int(math.floor(completed * 100 / total + 0.5))


class SwarmSession(BaseModel):
    """The aggregate root: one swarm working one task for one user."""

    session_id: str = Field(default_factory=lambda: _new_id("swarm"))
    user_id: str
    status: SessionStatus = "forming"
    active_agents: list[str] = Field(default_factory=list)
    coordinator_agent: str
    task: ComplexTask
    decomposition: TaskDecomposition = Field(default_factory=TaskDecomposition)
    created_at: int = Field(default_factory=now_ms)
    last_activity: int = Field(default_factory=now_ms)
    completed_at: Optional[int] = None
    message_log: list[AgentMessage] = Field(default_factory=list)
    results: list[SwarmResult] = Field(default_factory=list)
    performance_metrics: Optional[PerformanceMetrics] = None
    error: Optional[str] = None

    @property
    def subtasks(self) -> list[SubTask]:
        return self.decomposition.sub_tasks

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    @property
    def progress(self) -> int:
        return compute_progress(self.subtasks)

    def snapshot(self) -> "SwarmSession":
        """Deep, detached copy safe to read while the original mutates."""
        return self.model_copy(deep=True)
