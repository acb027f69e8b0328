"""
Capability Matcher: choosing who joins the swarm.

Matching is tag overlap: an agent's category and context tags are compared
with the required capabilities (and the task's category) using a
case-insensitive substring test in either direction. The agent covering the
most requirements coordinates; the rest of the eligible pool becomes the
worker roster, spread one per subtask while agents remain and reused once
the pool runs out.
"""

from __future__ import annotations

from typing import Optional

import structlog
from pydantic import BaseModel, Field

from swarmcore.config import SwarmConfig
from swarmcore.directory import AgentDirectory
from swarmcore.errors import NoSuitableAgentsError
from swarmcore.models import AgentMetadata, ComplexTask, SubTask, TaskDecomposition

logger = structlog.get_logger(__name__)


def terms_overlap(a: str, b: str) -> bool:
    a, b = a.strip().lower(), b.strip().lower()
    if not a or not b:
        return False
    return a in b or b in a


def agent_terms(agent: AgentMetadata) -> list[str]:
    return [t for t in [agent.category, *agent.tags] if t and t.strip()]


def covered_requirements(agent: AgentMetadata, requirements: list[str]) -> list[str]:
    """Requirements at least one of the agent's terms overlaps."""
    terms = agent_terms(agent)
    return [req for req in requirements if any(terms_overlap(req, t) for t in terms)]


class MatchResult(BaseModel):
    """Coordinator, workers and (once assigned) the subtask → agent map."""

    coordinator: AgentMetadata
    workers: list[AgentMetadata] = Field(default_factory=list)
    coverage: dict[str, int] = Field(default_factory=dict)
    assignments: dict[str, str] = Field(default_factory=dict)

    @property
    def active_agent_ids(self) -> list[str]:
        ids = [self.coordinator.agent_id]
        for worker in self.workers:
            if worker.agent_id not in ids:
                ids.append(worker.agent_id)
        return ids


class CapabilityMatcher:
    """Select a coordinator and worker roster for a set of requirements."""

    def __init__(self, config: Optional[SwarmConfig] = None) -> None:
        self._max_workers = config.max_workers if config else 5

    def is_eligible(self, agent: AgentMetadata, requirements: list[str], category: str = "") -> bool:
        terms = agent_terms(agent)
        targets = [r for r in requirements if r and r.strip()]
        if category and category.strip():
            targets.append(category)
        return any(terms_overlap(target, term) for target in targets for term in terms)

    def match_agents(
        self,
        requirements: list[str],
        agents: list[AgentMetadata],
        category: str = "",
        worker_slots: int = 1,
    ) -> MatchResult:
        """Pick coordinator and workers from *agents*. Raises if none is eligible."""
        eligible = [a for a in agents if self.is_eligible(a, requirements, category)]
        if not eligible:
            logger.warning(
                "matcher.no_eligible_agents",
                candidates=len(agents),
                requirements=requirements,
                category=category,
            )
            raise NoSuitableAgentsError()

        coverage = {a.agent_id: len(covered_requirements(a, requirements)) for a in eligible}
        # max() keeps the first of equal scores, so directory order breaks ties.
        coordinator = max(eligible, key=lambda a: coverage[a.agent_id])

        remaining = [a for a in eligible if a.agent_id != coordinator.agent_id]
        remaining.sort(key=lambda a: coverage[a.agent_id], reverse=True)
        slots = max(1, min(self._max_workers, worker_slots))
        workers = remaining[:slots] or [coordinator]

        logger.info(
            "matcher.matched",
            coordinator=coordinator.agent_id,
            workers=[w.agent_id for w in workers],
            eligible=len(eligible),
        )
        return MatchResult(coordinator=coordinator, workers=workers, coverage=coverage)

    def assign_subtasks(self, subtasks: list[SubTask], match: MatchResult) -> dict[str, str]:
        """Give each subtask the least-loaded, then most relevant, worker."""
        loads = {w.agent_id: 0 for w in match.workers}
        assignments: dict[str, str] = {}
        for subtask in subtasks:
            best = min(
                enumerate(match.workers),
                key=lambda item: (
                    loads[item[1].agent_id],
                    -len(covered_requirements(item[1], subtask.required_capabilities)),
                    item[0],
                ),
            )[1]
            assignments[subtask.id] = best.agent_id
            loads[best.agent_id] += 1
        match.assignments = assignments
        return assignments

    async def match_for_task(
        self,
        task: ComplexTask,
        decomposition: TaskDecomposition,
        directory: AgentDirectory,
        user_id: str,
    ) -> MatchResult:
        """List the user's agents, match them and assign every subtask."""
        agents = await directory.list_agents(user_id)
        match = self.match_agents(
            decomposition.required_capabilities,
            agents,
            category=task.type,
            worker_slots=len(decomposition.sub_tasks),
        )
        self.assign_subtasks(decomposition.sub_tasks, match)
        return match
