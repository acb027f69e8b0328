"""
Capability Directory: where the matcher finds agents.

The directory is an external collaborator: for a user it lists the worker
agents available to them together with their category and context tags. The
core only ever reads from it, once per swarm formation.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from swarmcore.errors import ValidationError
from swarmcore.models import AgentMetadata

logger = structlog.get_logger(__name__)


class AgentDirectory(ABC):
    """Abstract read-only agent lookup."""

    @abstractmethod
    async def list_agents(self, user_id: str) -> list[AgentMetadata]:
        """Return the agents *user_id* may recruit into a swarm."""


def _visible_to(agent: AgentMetadata, user_id: str) -> bool:
    return agent.is_public or agent.owner_id is None or agent.owner_id == user_id


class InMemoryAgentDirectory(AgentDirectory):
    """Directory backed by a list held in memory (tests, embedding callers)."""

    def __init__(self, agents: Iterable[AgentMetadata] = ()) -> None:
        self._agents: dict[str, AgentMetadata] = {}
        for agent in agents:
            self.add(agent)

    def add(self, agent: AgentMetadata) -> None:
        self._agents[agent.agent_id] = agent

    def remove(self, agent_id: str) -> None:
        self._agents.pop(agent_id, None)

    async def list_agents(self, user_id: str) -> list[AgentMetadata]:
        return [a for a in self._agents.values() if _visible_to(a, user_id)]


class FileAgentDirectory(AgentDirectory):
    """Directory read from a JSON file on every lookup.

    The file holds either a list of agent objects or ``{"agents": [...]}``.
    Both snake_case and the camelCase keys of the upstream product
    (``agentId``, ``selectedContextIds``) are accepted.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    async def list_agents(self, user_id: str) -> list[AgentMetadata]:
        agents = self._load()
        return [a for a in agents if _visible_to(a, user_id)]

    def _load(self) -> list[AgentMetadata]:
        if not self.path.exists():
            logger.warning("directory.file_missing", path=str(self.path))
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Agent directory {self.path} is not valid JSON: {exc}") from exc

        entries: Optional[list] = raw.get("agents") if isinstance(raw, dict) else raw
        if not isinstance(entries, list):
            raise ValidationError(f"Agent directory {self.path} must contain a list of agents")

        agents: list[AgentMetadata] = []
        for entry in entries:
            try:
                agents.append(AgentMetadata.model_validate(entry))
            except PydanticValidationError as exc:
                raise ValidationError(f"Malformed agent entry in {self.path}: {exc}") from exc
        return agents
