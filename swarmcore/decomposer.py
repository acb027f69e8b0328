"""
Task Decomposer: turning one free-form task into ordered subtasks.

Decomposition is a pure function of the task description and its declared
requirements: no model calls, no I/O. The description is split into clauses
(list items, sentences, "then"-sequences and "and"-joined action clauses),
each clause becomes a subtask with capability tags drawn from keyword
patterns and a whole-minute duration estimate, and clauses that build on
earlier work ("compare them", "then write the report") get sequential
dependency hints on what came before.
"""

from __future__ import annotations

import re
from collections import deque
from typing import Optional

import structlog

from swarmcore.config import SwarmConfig
from swarmcore.errors import ValidationError
from swarmcore.models import ComplexTask, SubTask, TaskDecomposition, TaskDependency

logger = structlog.get_logger(__name__)

MAX_SUBTASKS = 7
GENERAL_CAPABILITY = "general_processing"

CAPABILITY_PATTERNS: dict[str, tuple[str, ...]] = {
    "data_analysis": ("analyze", "analyse", "analysis", "examine", "study", "investigate"),
    "content_generation": ("write", "create", "generate", "compose", "draft"),
    "research": ("research", "find", "search", "lookup", "look up", "investigate"),
    "summarization": ("summarize", "summarise", "summary", "condense", "brief"),
    "comparison": ("compare", "contrast", "evaluate", "assess"),
    "calculation": ("calculate", "compute", "math", "formula", "equation"),
    "visualization": ("chart", "graph", "visualize", "visualise", "plot", "diagram"),
    "translation": ("translate", "convert", "transform"),
    "classification": ("classify", "categorize", "categorise", "organize", "sort"),
    "validation": ("validate", "verify", "check", "confirm"),
}

# Verbs that open a new clause when joined by "and".
_ACTION_VERBS = frozenset(
    kw for keywords in CAPABILITY_PATTERNS.values() for kw in keywords if " " not in kw
) | frozenset({
    "review", "combine", "merge", "synthesize", "synthesise", "report", "collect",
    "gather", "extract", "read", "list", "identify", "prepare", "produce", "build",
    "test", "publish", "send", "rank", "score", "clean", "load", "fetch", "plan",
})

# Clauses that consume the output of earlier clauses.
_DEPENDENT_VERBS = frozenset({
    "compare", "contrast", "combine", "merge", "synthesize", "synthesise",
    "consolidate", "integrate", "review", "rank", "report", "evaluate",
})
_BACK_REFERENCE_RE = re.compile(
    r"\b(them|these|those|it|the results?|the findings|the outputs?|the above)\b",
    re.IGNORECASE,
)

_LIST_ITEM_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s+")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?;])\s+")
_SEQUENCE_SPLIT_RE = re.compile(
    r"\s*,?\s+(?:and\s+)?then\s+|\s*,\s*(?:and\s+)?(?:after that|afterwards|finally)\s*,?\s+",
    re.IGNORECASE,
)
_LEADING_THEN_RE = re.compile(r"\s*(?:and\s+)?(?:then|afterwards|finally)\s*,?\s+", re.IGNORECASE)
_AND_SPLIT_RE = re.compile(r"\s*,?\s+and\s+", re.IGNORECASE)


def extract_capabilities(text: str) -> list[str]:
    """Capability tags whose keywords appear in *text*, in pattern order."""
    lowered = text.lower()
    found = []
    for capability, keywords in CAPABILITY_PATTERNS.items():
        if any(re.search(rf"\b{re.escape(kw)}", lowered) for kw in keywords):
            found.append(capability)
    return found


def _first_word(text: str) -> str:
    match = re.match(r"\s*([A-Za-z]+)", text)
    return match.group(1).lower() if match else ""


def _clean(clause: str) -> str:
    clause = clause.strip().strip(",;:.").strip()
    if clause:
        clause = clause[0].upper() + clause[1:]
    return clause


class TaskDecomposer:
    """Split a ComplexTask into a TaskDecomposition."""

    def __init__(self, config: Optional[SwarmConfig] = None) -> None:
        self._min_minutes = config.min_subtask_minutes if config else 5
        self._max_minutes = config.max_subtask_minutes if config else 30
        self._default_capabilities = (
            list(config.default_capabilities) if config else [GENERAL_CAPABILITY]
        )

    def decompose(self, task: ComplexTask) -> TaskDecomposition:
        self._validate(task)

        clauses = self._split_clauses(task.description)
        if not clauses:
            clauses = [(_clean(task.description), False)]

        subtasks: list[SubTask] = []
        dependencies: list[TaskDependency] = []
        for index, (clause, follows_previous) in enumerate(clauses, start=1):
            capabilities = extract_capabilities(clause) or list(
                task.requirements or self._default_capabilities
            )
            subtask = SubTask(
                id=f"subtask-{index}",
                parent_task_id=task.id,
                description=clause,
                required_capabilities=capabilities,
                estimated_duration=self._estimate_minutes(clause, capabilities),
            )
            if subtasks and (follows_previous or self._builds_on_earlier(clause)):
                predecessors = [subtasks[-1].id] if follows_previous else [s.id for s in subtasks]
                dependencies.extend(
                    TaskDependency(from_task_id=pid, to_task_id=subtask.id, type="sequential")
                    for pid in predecessors
                )
            subtasks.append(subtask)

        decomposition = TaskDecomposition(sub_tasks=subtasks, dependencies=dependencies)
        decomposition.required_capabilities = self.identify_required_capabilities(
            decomposition, task
        )
        decomposition.estimated_complexity = max(
            1,
            min(
                10,
                len(subtasks)
                + len(decomposition.required_capabilities) // 2
                + len(task.constraints),
            ),
        )

        logger.info(
            "decomposer.decomposed",
            task_id=task.id,
            subtasks=len(subtasks),
            dependencies=len(dependencies),
            complexity=decomposition.estimated_complexity,
        )
        return decomposition

    def identify_required_capabilities(
        self,
        decomposition: TaskDecomposition,
        task: Optional[ComplexTask] = None,
    ) -> list[str]:
        """Declared requirements first, then every subtask's extracted tags."""
        ordered: list[str] = []
        seen: set[str] = set()
        sources = list(task.requirements) if task else []
        for st in decomposition.sub_tasks:
            sources.extend(st.required_capabilities)
        for cap in sources:
            key = cap.strip()
            if key and key.lower() not in seen:
                seen.add(key.lower())
                ordered.append(key)
        return ordered or list(self._default_capabilities)

    # ------------------------------------------------------------------
    # Breakdown checks
    # ------------------------------------------------------------------

    def validate_breakdown(self, decomposition: TaskDecomposition) -> tuple[bool, list[str]]:
        """Check dependency references and acyclicity."""
        issues: list[str] = []
        ids = {st.id for st in decomposition.sub_tasks}
        for dep in decomposition.dependencies:
            if dep.from_task_id not in ids:
                issues.append(f"Invalid dependency from task: {dep.from_task_id}")
            if dep.to_task_id not in ids:
                issues.append(f"Invalid dependency to task: {dep.to_task_id}")
        if not issues and len(self.optimize_task_order(decomposition)) < len(ids):
            issues.append("Circular dependencies detected")
        return not issues, issues

    def optimize_task_order(self, decomposition: TaskDecomposition) -> list[str]:
        """Topological order of subtask ids (Kahn); cyclic members are omitted."""
        order_index = {st.id: i for i, st in enumerate(decomposition.sub_tasks)}
        in_degree = {sid: 0 for sid in order_index}
        successors: dict[str, list[str]] = {sid: [] for sid in order_index}
        for dep in decomposition.dependencies:
            if dep.from_task_id in in_degree and dep.to_task_id in in_degree:
                successors[dep.from_task_id].append(dep.to_task_id)
                in_degree[dep.to_task_id] += 1

        queue = deque(sid for sid in order_index if in_degree[sid] == 0)
        result: list[str] = []
        while queue:
            current = queue.popleft()
            result.append(current)
            for nxt in sorted(successors[current], key=order_index.__getitem__):
                in_degree[nxt] -= 1
                if in_degree[nxt] == 0:
                    queue.append(nxt)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(task: ComplexTask) -> None:
        if not isinstance(task.description, str) or not task.description.strip():
            raise ValidationError("Task description must not be empty")
        if not isinstance(task.requirements, list):
            raise ValidationError("Task requirements must be a list of strings")
        for req in task.requirements:
            if not isinstance(req, str) or not req.strip():
                raise ValidationError(f"Malformed task requirement: {req!r}")

    def _split_clauses(self, description: str) -> list[tuple[str, bool]]:
        """Return (clause, follows_previous) pairs, capped at MAX_SUBTASKS."""
        lines = [ln for ln in description.splitlines() if ln.strip()]
        if len(lines) > 1 and any(_LIST_ITEM_RE.match(ln) for ln in lines):
            chunks = [_LIST_ITEM_RE.sub("", ln) for ln in lines]
        else:
            chunks = _SENTENCE_SPLIT_RE.split(" ".join(ln.strip() for ln in lines))

        clauses: list[tuple[str, bool]] = []
        for chunk in chunks:
            leading = _LEADING_THEN_RE.match(chunk)
            if leading:
                chunk = chunk[leading.end():]
            for seq_index, part in enumerate(_SEQUENCE_SPLIT_RE.split(chunk)):
                follows = seq_index > 0 or leading is not None
                for and_index, piece in enumerate(self._split_on_and(part)):
                    cleaned = _clean(piece)
                    if cleaned:
                        clauses.append((cleaned, follows and and_index == 0))

        if len(clauses) > MAX_SUBTASKS:
            head = clauses[: MAX_SUBTASKS - 1]
            tail = "; ".join(c for c, _ in clauses[MAX_SUBTASKS - 1:])
            clauses = head + [(tail, clauses[MAX_SUBTASKS - 1][1])]
        return clauses

    @staticmethod
    def _split_on_and(text: str) -> list[str]:
        parts = _AND_SPLIT_RE.split(text)
        merged: list[str] = []
        for part in parts:
            if merged and _first_word(part) not in _ACTION_VERBS:
                merged[-1] = f"{merged[-1]} and {part}"
            else:
                merged.append(part)
        return merged

    @staticmethod
    def _builds_on_earlier(clause: str) -> bool:
        return _first_word(clause) in _DEPENDENT_VERBS or bool(_BACK_REFERENCE_RE.search(clause))

    def _estimate_minutes(self, clause: str, capabilities: list[str]) -> int:
        words = len(clause.split())
        minutes = self._min_minutes + 2 * words + 3 * max(0, len(capabilities) - 1)
        return max(self._min_minutes, min(self._max_minutes, minutes))
