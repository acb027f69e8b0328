"""
Error taxonomy for the swarm coordination engine.

Every error the core raises derives from SwarmError and carries the stable
status code the control surface maps it to. The core never catches these to
translate them itself; only swarmcore.service turns them into responses.
"""

from __future__ import annotations


class SwarmError(Exception):
    """Base class for all swarm coordination errors."""

    http_status: int = 500
    code: str = "swarm_error"

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.message, "code": self.code}
        if self.hint:
            body["hint"] = self.hint
        return body


class ValidationError(SwarmError):
    """Malformed task, subtask or request input. Never retried."""

    http_status = 400
    code = "validation_error"


class IllegalTransitionError(ValidationError):
    """A session or subtask status change not allowed by the state machine."""

    http_status = 409
    code = "illegal_transition"


class AuthorizationError(SwarmError):
    """The caller does not own the session it is trying to touch."""

    http_status = 403
    code = "forbidden"


class NotFoundError(SwarmError):
    """Unknown session, task or subtask id."""

    http_status = 404
    code = "not_found"


class NoSuitableAgentsError(SwarmError):
    """Capability matching found zero eligible agents."""

    http_status = 404
    code = "no_suitable_agents"

    def __init__(self, message: str = "No suitable agents found for this task", *, hint: str | None = None) -> None:
        super().__init__(
            message,
            hint=hint or "Create or add agents whose category or tags cover the task requirements.",
        )


class CommunicationError(SwarmError):
    """Channel setup or message delivery failure."""

    http_status = 503
    code = "communication_error"
