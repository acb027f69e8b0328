"""
Swarm Service: the control surface over the orchestrator.

Each operation takes the caller's user id and a plain request body, and
returns a ControlResponse carrying an HTTP-style status code and a JSON-ready
body. This is the only layer that turns SwarmErrors into status codes; the
core below it raises and never translates.

Status codes:
  201 created · 200 ok · 400 validation · 401 no user · 403 not owner ·
  404 not found / no suitable agents · 409 illegal transition ·
  503 communication failure
"""

from __future__ import annotations

from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from swarmcore.errors import SwarmError
from swarmcore.models import ComplexTask, Priority, SubTaskStatus, SwarmSession
from swarmcore.orchestrator import SwarmOrchestrator

logger = structlog.get_logger(__name__)


class ControlResponse(BaseModel):
    status_code: int
    body: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class CreateSwarmRequest(BaseModel):
    description: str = Field(..., min_length=1)
    type: str = "general"
    priority: Priority = "medium"
    deadline: Optional[int] = None
    requirements: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    expected_output_format: str = "text"
    context: dict[str, Any] = Field(default_factory=dict)

    @field_validator("description")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("description must not be blank")
        return value.strip()


class UpdateSubtaskRequest(BaseModel):
    status: Optional[SubTaskStatus] = None
    result: Any = None
    error: Optional[str] = None


def session_summary(session: SwarmSession) -> dict[str, Any]:
    return {
        "session_id": session.session_id,
        "status": session.status,
        "task": session.task.description,
        "task_type": session.task.type,
        "priority": session.task.priority,
        "coordinator": session.coordinator_agent,
        "active_agents": list(session.active_agents),
        "subtask_count": len(session.subtasks),
        "progress": session.progress,
        "created_at": session.created_at,
        "completed_at": session.completed_at,
    }


def _pydantic_errors(exc: PydanticValidationError) -> list[str]:
    return [f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in exc.errors()]


class SwarmService:
    """Create, inspect, update and dissolve swarms on behalf of a user."""

    def __init__(self, orchestrator: SwarmOrchestrator) -> None:
        self._orchestrator = orchestrator

    @property
    def orchestrator(self) -> SwarmOrchestrator:
        return self._orchestrator

    async def create_swarm(self, user_id: Optional[str], request: dict[str, Any]) -> ControlResponse:
        if not user_id:
            return self._unauthenticated()
        try:
            body = CreateSwarmRequest.model_validate(request)
        except PydanticValidationError as exc:
            return ControlResponse(
                status_code=400,
                body={"error": "Invalid swarm request", "code": "validation_error",
                      "details": _pydantic_errors(exc)},
            )

        try:
            session = await self._orchestrator.form_swarm(ComplexTask(**body.model_dump()), user_id)
        except SwarmError as exc:
            return self._error("create_swarm", exc)

        summary = session_summary(session)
        summary["subtasks"] = [
            {"id": st.id, "description": st.description, "assigned_agent_id": st.assigned_agent_id,
             "status": st.status}
            for st in session.subtasks
        ]
        return ControlResponse(status_code=201, body={"swarm": summary})

    async def get_swarm_status(self, user_id: Optional[str], session_id: str) -> ControlResponse:
        if not user_id:
            return self._unauthenticated()
        try:
            session = await self._orchestrator.get_session(session_id, user_id)
            report = await self._orchestrator.monitor_swarm_health(session_id, user_id)
        except SwarmError as exc:
            return self._error("get_swarm_status", exc)

        return ControlResponse(status_code=200, body={
            "session": session_summary(session),
            "progress": session.progress,
            "health": {
                "overall": report.overall_health,
                "issues": [
                    issue.model_dump() for issue in report.issues
                    if issue.severity in ("high", "critical")
                ],
                "recommendations": report.recommendations,
            },
            "subtasks": [st.model_dump(mode="json") for st in session.subtasks],
            "metrics": (
                session.performance_metrics.model_dump() if session.performance_metrics else None
            ),
        })

    async def update_subtask(
        self,
        user_id: Optional[str],
        session_id: str,
        subtask_id: str,
        request: dict[str, Any],
    ) -> ControlResponse:
        if not user_id:
            return self._unauthenticated()
        try:
            body = UpdateSubtaskRequest.model_validate(request)
        except PydanticValidationError as exc:
            return ControlResponse(
                status_code=400,
                body={"error": "Invalid subtask update", "code": "validation_error",
                      "details": _pydantic_errors(exc)},
            )

        try:
            subtask = await self._orchestrator.update_subtask(
                session_id, subtask_id, user_id,
                status=body.status, result=body.result, error=body.error,
            )
            session = await self._orchestrator.get_session(session_id, user_id)
        except SwarmError as exc:
            return self._error("update_subtask", exc)

        return ControlResponse(status_code=200, body={
            "subtask": subtask.model_dump(mode="json"),
            "progress": session.progress,
            "session_status": session.status,
        })

    async def dissolve_swarm(self, user_id: Optional[str], session_id: str) -> ControlResponse:
        if not user_id:
            return self._unauthenticated()
        try:
            session = await self._orchestrator.dissolve_swarm(session_id, user_id)
        except SwarmError as exc:
            return self._error("dissolve_swarm", exc)
        return ControlResponse(status_code=200, body={
            "session_id": session.session_id,
            "status": session.status,
            "message": "Swarm dissolved",
        })

    async def list_swarms(self, user_id: Optional[str]) -> ControlResponse:
        if not user_id:
            return self._unauthenticated()
        sessions = await self._orchestrator.list_sessions_for_user(user_id)
        return ControlResponse(
            status_code=200,
            body={"swarms": [session_summary(s) for s in sessions]},
        )

    # ------------------------------------------------------------------

    @staticmethod
    def _unauthenticated() -> ControlResponse:
        return ControlResponse(
            status_code=401,
            body={"error": "Authentication required", "code": "unauthenticated"},
        )

    @staticmethod
    def _error(operation: str, exc: SwarmError) -> ControlResponse:
        logger.info(
            "service.request_failed",
            operation=operation,
            status=exc.http_status,
            code=exc.code,
            error=exc.message,
        )
        return ControlResponse(status_code=exc.http_status, body=exc.to_dict())
