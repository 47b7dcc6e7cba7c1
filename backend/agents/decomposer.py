"""LLM-backed decomposer.

Asks the model for a JSON plan, repairs unparseable replies with up to two
follow-up prompts at lower temperatures, and normalizes every proposal before
it reaches the task graph. The graph still validates structure; this module
only cleans up what the model tends to get wrong (missing ids, duplicated or
self-referencing dependencies, free-form priorities).
"""

from typing import Any

import structlog

from agents.prompts import (
    DECOMPOSER_REPAIR_PROMPT,
    get_decomposer_request,
    get_decomposer_system_prompt,
)
from agents.utils import LLMClient, extract_json_from_response
from models.schemas import Priority, ResearchIssue, SubTask, SubTaskProposal

logger = structlog.get_logger(__name__)

RETRY_TEMPERATURES = (0.4, 0.2)


class LLMDecomposer:
    """Decomposer that plans sub-tasks with an LLM.

    Usage:
        >>> decomposer = LLMDecomposer(llm_client, model="openai/gpt-4o-mini")
        >>> proposals = await decomposer.propose(issue, [], 0)
    """

    def __init__(
        self,
        llm_client: LLMClient,
        model: str | None = None,
        temperature: float = 0.3,
        min_sub_tasks: int = 3,
        max_sub_tasks: int = 8,
        repair_attempts: int = len(RETRY_TEMPERATURES),
    ) -> None:
        self.llm_client = llm_client
        self.model = model
        self.temperature = temperature
        self.min_sub_tasks = min_sub_tasks
        self.max_sub_tasks = max_sub_tasks
        self.repair_attempts = repair_attempts
        self._issued_ids: list[str] = []

    async def propose(
        self,
        issue: ResearchIssue,
        completed_results: list[SubTask],
        iteration: int,
    ) -> list[SubTaskProposal]:
        """Return normalized proposals for this round.

        On the initial round an unusable reply falls back to one sub-task per
        objective. On later rounds it yields no proposals. LLM transport
        errors propagate to the caller.
        """
        if iteration == 0:
            self._issued_ids = []
        known_ids = list(
            dict.fromkeys([*self._issued_ids, *(task.id for task in completed_results)])
        )

        messages = [
            {
                "role": "system",
                "content": get_decomposer_system_prompt(self.min_sub_tasks, self.max_sub_tasks),
            },
            {
                "role": "user",
                "content": get_decomposer_request(issue, completed_results, known_ids, iteration),
            },
        ]

        response = await self.llm_client.call(
            messages=messages,
            model=self.model,
            temperature=self.temperature,
            source="decomposer",
        )
        parsed, error = _parse_plan(response.content)

        for attempt in range(1, self.repair_attempts + 1):
            if parsed is not None:
                break

            retry_temperature = RETRY_TEMPERATURES[min(attempt, len(RETRY_TEMPERATURES)) - 1]
            logger.warning(
                "decomposer_reply_unusable",
                attempt=attempt,
                error=error,
                response_preview=response.content[:200],
            )
            messages = messages + [
                {"role": "assistant", "content": response.content},
                {"role": "user", "content": DECOMPOSER_REPAIR_PROMPT.format(error=error)},
            ]
            response = await self.llm_client.call(
                messages=messages,
                model=self.model,
                temperature=retry_temperature,
                source="decomposer",
            )
            parsed, error = _parse_plan(response.content)

        if parsed is None:
            if iteration == 0:
                logger.warning("decomposer_using_fallback_plan", error=error)
                proposals = build_fallback_proposals(issue)
            else:
                logger.warning("decomposer_no_proposals", iteration=iteration, error=error)
                proposals = []
        else:
            proposals = normalize_proposals(parsed, reserved_ids=set(known_ids))
            logger.info(
                "decomposer_proposed",
                iteration=iteration,
                proposals=len(proposals),
                reasoning=str(parsed.get("reasoning", ""))[:200],
            )

        self._issued_ids.extend(p.id for p in proposals if p.id)
        return proposals


def _parse_plan(content: str) -> tuple[dict[str, Any] | None, str]:
    parsed = extract_json_from_response(content)
    if parsed is None:
        return None, "reply was not valid JSON"
    raw = parsed.get("subtasks", parsed.get("subTasks"))
    if raw is None:
        return None, "reply has no 'subtasks' array"
    if not isinstance(raw, list):
        return None, "'subtasks' must be an array"
    return parsed, ""


def _next_unique_id(existing_ids: set[str], base_id: str) -> str:
    """Return ``base_id`` or the first ``base_id_<n>`` not in ``existing_ids``."""
    if base_id not in existing_ids:
        return base_id

    suffix = 2
    while f"{base_id}_{suffix}" in existing_ids:
        suffix += 1
    return f"{base_id}_{suffix}"


def normalize_priority(raw: Any) -> Priority:
    value = raw.strip().lower() if isinstance(raw, str) else ""
    try:
        return Priority(value)
    except ValueError:
        return Priority.MEDIUM


def normalize_proposals(
    parsed: dict[str, Any],
    reserved_ids: set[str] | None = None,
) -> list[SubTaskProposal]:
    """Turn a parsed plan into clean proposals.

    Entries without a title or description are dropped. Ids are made unique
    against ``reserved_ids`` and each other, dependencies are stripped and
    deduplicated, and self-references are removed.
    """
    raw_subtasks = parsed.get("subtasks", parsed.get("subTasks")) or []
    taken = set(reserved_ids or ())
    claimed: dict[str, str] = {}
    entries: list[tuple[str, str, str, Any, list[str]]] = []
    proposals: list[SubTaskProposal] = []

    for index, raw in enumerate(raw_subtasks):
        if not isinstance(raw, dict):
            continue

        title = raw.get("title")
        description = raw.get("description")
        title = title.strip() if isinstance(title, str) else ""
        description = description.strip() if isinstance(description, str) else ""
        if not title:
            title = description[:80]
        if not title:
            continue

        raw_id = raw.get("id")
        base_id = (
            raw_id.strip()
            if isinstance(raw_id, str) and raw_id.strip()
            else f"subtask_{len(taken) + 1}"
        )
        task_id = _next_unique_id(taken, base_id)
        taken.add(task_id)
        claimed.setdefault(base_id, task_id)
        if task_id != base_id:
            logger.debug("decomposer_id_renamed", index=index, original=base_id, task_id=task_id)

        raw_deps = raw.get("dependencies") or []
        dep_ids = [
            dep.strip()
            for dep in (raw_deps if isinstance(raw_deps, list) else [])
            if isinstance(dep, str) and dep.strip() and dep.strip() != base_id
        ]
        entries.append((task_id, title, description, raw.get("priority"), dep_ids))

    # Dependencies on a renamed sibling follow it to its new id.
    for task_id, title, description, priority, dep_ids in entries:
        dependencies: list[str] = []
        for dep_id in dep_ids:
            dep_id = claimed.get(dep_id, dep_id)
            if dep_id != task_id and dep_id not in dependencies:
                dependencies.append(dep_id)
        proposals.append(
            SubTaskProposal(
                id=task_id,
                title=title,
                description=description,
                priority=normalize_priority(priority),
                dependencies=dependencies,
            )
        )

    return proposals


def build_fallback_proposals(issue: ResearchIssue) -> list[SubTaskProposal]:
    """Deterministic plan used when the model never produced a usable one."""
    if not issue.objectives:
        return [
            SubTaskProposal(
                id="subtask_1",
                title=issue.title,
                description=(
                    "Fallback plan: investigate the whole question in one pass. "
                    f"{issue.description}"
                ),
                priority=issue.priority,
            )
        ]
    return [
        SubTaskProposal(
            id=f"subtask_{index}",
            title=objective,
            description=f"Investigate this objective of '{issue.title}': {objective}",
            priority=issue.priority,
        )
        for index, objective in enumerate(issue.objectives, start=1)
    ]
