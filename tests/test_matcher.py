"""Tests for swarmcore.matcher: eligibility, coordinator choice, assignment."""

from __future__ import annotations

import pytest

from swarmcore.directory import InMemoryAgentDirectory
from swarmcore.errors import NoSuitableAgentsError
from swarmcore.matcher import CapabilityMatcher, covered_requirements, terms_overlap
from swarmcore.models import AgentMetadata, ComplexTask, SubTask, TaskDecomposition


def _agent(agent_id: str, *tags: str, category: str = "", **kwargs) -> AgentMetadata:
    return AgentMetadata(agent_id=agent_id, category=category, tags=list(tags), **kwargs)


@pytest.fixture
def matcher(config):
    return CapabilityMatcher(config)


class TestOverlap:
    def test_substring_either_direction(self) -> None:
        assert terms_overlap("Data_Analysis", "data")
        assert terms_overlap("data", "data_analysis")
        assert not terms_overlap("translation", "summarization")

    def test_blank_never_matches(self) -> None:
        assert not terms_overlap("", "data")
        assert not terms_overlap("  ", "  ")

    def test_covered_requirements_uses_category_and_tags(self) -> None:
        agent = _agent("a", "summarization", category="research")
        assert covered_requirements(agent, ["research", "summarization", "comparison"]) == [
            "research",
            "summarization",
        ]


class TestMatchAgents:
    def test_single_agent_coordinates_and_works(self, matcher) -> None:
        analyst = _agent("analyst", "data_analysis", category="research")
        match = matcher.match_agents(["data_analysis", "summarization"], [analyst], worker_slots=2)

        assert match.coordinator.agent_id == "analyst"
        assert [w.agent_id for w in match.workers] == ["analyst"]
        assert match.active_agent_ids == ["analyst"]

    def test_zero_eligible_raises(self, matcher) -> None:
        with pytest.raises(NoSuitableAgentsError) as exc_info:
            matcher.match_agents(["data_analysis"], [_agent("poet", "poetry")])
        assert exc_info.value.http_status == 404
        assert exc_info.value.message == "No suitable agents found for this task"
        assert exc_info.value.hint

    def test_empty_pool_raises(self, matcher) -> None:
        with pytest.raises(NoSuitableAgentsError):
            matcher.match_agents(["data_analysis"], [])

    def test_broadest_coverage_coordinates(self, matcher) -> None:
        narrow = _agent("narrow", "summarization")
        broad = _agent("broad", "summarization", "comparison")
        match = matcher.match_agents(["summarization", "comparison"], [narrow, broad], worker_slots=2)

        assert match.coordinator.agent_id == "broad"
        assert [w.agent_id for w in match.workers] == ["narrow"]
        assert match.coverage == {"narrow": 1, "broad": 2}

    def test_ties_keep_directory_order(self, matcher) -> None:
        first, second = _agent("first", "research"), _agent("second", "research")
        assert matcher.match_agents(["research"], [first, second]).coordinator.agent_id == "first"

    def test_task_category_makes_agent_eligible(self, matcher) -> None:
        generalist = _agent("generalist", category="general")
        match = matcher.match_agents(["translation"], [generalist], category="general")
        assert match.coordinator.agent_id == "generalist"

    def test_worker_roster_is_capped(self, matcher, config) -> None:
        config.max_workers = 2
        pool = [_agent(f"a{i}", "research") for i in range(6)]
        match = CapabilityMatcher(config).match_agents(["research"], pool, worker_slots=10)
        assert len(match.workers) == 2

    def test_worker_slots_limit_roster(self, matcher) -> None:
        pool = [_agent(f"a{i}", "research") for i in range(4)]
        match = matcher.match_agents(["research"], pool, worker_slots=1)
        assert [w.agent_id for w in match.workers] == ["a1"]


class TestAssignSubtasks:
    def _subtasks(self, *caps: str) -> list[SubTask]:
        return [
            SubTask(id=f"subtask-{i}", description=cap, estimated_duration=5, required_capabilities=[cap])
            for i, cap in enumerate(caps, start=1)
        ]

    def test_spread_then_reuse(self, matcher) -> None:
        pool = [_agent("coord", "research"), _agent("w1", "research"), _agent("w2", "research")]
        match = matcher.match_agents(["research"], pool, worker_slots=3)
        assignments = matcher.assign_subtasks(self._subtasks("research", "research", "research"), match)

        assert assignments == {"subtask-1": "w1", "subtask-2": "w2", "subtask-3": "w1"}
        assert match.assignments == assignments

    def test_prefers_relevant_worker_at_equal_load(self, matcher) -> None:
        pool = [
            _agent("coord", "summarization", "translation"),
            _agent("summarizer", "summarization"),
            _agent("translator", "translation"),
        ]
        match = matcher.match_agents(["summarization", "translation"], pool, worker_slots=2)
        assignments = matcher.assign_subtasks(self._subtasks("translation", "summarization"), match)
        assert assignments == {"subtask-1": "translator", "subtask-2": "summarizer"}


@pytest.mark.asyncio
async def test_match_for_task_respects_visibility(matcher) -> None:
    directory = InMemoryAgentDirectory([
        _agent("private", "research", owner_id="bob"),
        _agent("mine", "research", owner_id="alice"),
    ])
    decomposition = TaskDecomposition(
        sub_tasks=[SubTask(id="subtask-1", description="x", estimated_duration=5)],
        required_capabilities=["research"],
    )
    task = ComplexTask(description="Research things")

    match = await matcher.match_for_task(task, decomposition, directory, "alice")
    assert match.active_agent_ids == ["mine"]
    assert match.assignments == {"subtask-1": "mine"}

    with pytest.raises(NoSuitableAgentsError):
        await matcher.match_for_task(task, decomposition, directory, "carol")
