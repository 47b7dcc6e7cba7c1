"""LLM-backed researcher.

Investigates one sub-task. When a search provider is configured, its hits are
embedded in the prompt as context. The model's JSON reply becomes a
``SubTaskResult``; anything that cannot be turned into one raises
``TaskExecutionError`` so the executor records the task as failed.
"""

from typing import Any, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, Field

from agents.decomposer import normalize_priority
from agents.prompts import RESEARCHER_PROMPT, format_search_hits, get_researcher_request
from agents.utils import LLMClient, clamp_unit, extract_json_from_response
from models.schemas import (
    ResearchIssue,
    Source,
    SubTask,
    SubTaskProposal,
    SubTaskResult,
)
from research.errors import TaskExecutionError

logger = structlog.get_logger(__name__)

SOURCE_TYPES = {"web", "document", "database", "interview", "survey"}


class SearchHit(BaseModel):
    """One result returned by a search provider."""

    title: str
    url: str = ""
    content: str = ""
    score: float = Field(default=0.0, ge=0.0, le=1.0)


@runtime_checkable
class SearchProvider(Protocol):
    """Web or document search used to ground a researcher's answer."""

    async def search(self, query: str, max_results: int) -> list[SearchHit]: ...


class LLMResearcher:
    """Researcher that answers a sub-task with an LLM and optional search.

    Safe to call concurrently: it keeps no per-call state.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        model: str | None = None,
        temperature: float = 0.3,
        search_provider: SearchProvider | None = None,
        search_max_results: int = 5,
    ) -> None:
        self.llm_client = llm_client
        self.model = model
        self.temperature = temperature
        self.search_provider = search_provider
        self.search_max_results = search_max_results

    async def execute(
        self,
        sub_task: SubTask,
        issue: ResearchIssue,
        timeout: float,
    ) -> SubTaskResult:
        """Research ``sub_task`` and return its structured result.

        Raises:
            TaskExecutionError: If the reply has no usable JSON or conclusion
        """
        search_context = await self._search_context(sub_task, issue)
        messages = [
            {"role": "system", "content": RESEARCHER_PROMPT},
            {
                "role": "user",
                "content": get_researcher_request(issue, sub_task, search_context),
            },
        ]

        logger.debug("researcher_started", task_id=sub_task.id, timeout=timeout)
        response = await self.llm_client.call(
            messages=messages,
            model=self.model,
            temperature=self.temperature,
            source="researcher",
        )

        parsed = extract_json_from_response(response.content)
        if parsed is None:
            logger.warning(
                "researcher_json_parse_failed",
                task_id=sub_task.id,
                response_preview=response.content[:200],
            )
            raise TaskExecutionError(sub_task.id, "researcher reply was not valid JSON")

        result = parse_research_result(sub_task.id, parsed)
        logger.info(
            "researcher_finished",
            task_id=sub_task.id,
            confidence=result.confidence,
            sources=len(result.sources),
            follow_ups=len(result.additional_tasks),
        )
        return result

    async def _search_context(self, sub_task: SubTask, issue: ResearchIssue) -> str:
        if self.search_provider is None:
            return ""

        query = f"{sub_task.title} {issue.title}".strip()
        try:
            hits = await self.search_provider.search(query, self.search_max_results)
        except Exception as e:
            # Search only enriches the prompt; the model can still answer without it.
            logger.warning(
                "researcher_search_failed",
                task_id=sub_task.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return ""

        logger.debug("researcher_search_hits", task_id=sub_task.id, hits=len(hits))
        return format_search_hits(hits[: self.search_max_results])


def _parse_source(raw: Any) -> Source | None:
    if not isinstance(raw, dict):
        return None
    title = raw.get("title")
    if not isinstance(title, str) or not title.strip():
        return None

    source_type = raw.get("type")
    if source_type not in SOURCE_TYPES:
        source_type = "web"

    def optional_text(key: str) -> str | None:
        value = raw.get(key)
        return value.strip() if isinstance(value, str) and value.strip() else None

    return Source(
        type=source_type,
        title=title.strip(),
        url=optional_text("url"),
        author=optional_text("author"),
        published_date=optional_text("published_date"),
        relevance=clamp_unit(raw.get("relevance")),
        credibility=clamp_unit(raw.get("credibility")),
        excerpt=optional_text("excerpt") or "",
    )


def _parse_follow_up(raw: Any) -> SubTaskProposal | None:
    if not isinstance(raw, dict):
        return None
    title = raw.get("title")
    description = raw.get("description")
    title = title.strip() if isinstance(title, str) else ""
    description = description.strip() if isinstance(description, str) else ""
    if not title:
        return None

    raw_deps = raw.get("dependencies")
    dependencies = (
        [dep.strip() for dep in raw_deps if isinstance(dep, str) and dep.strip()]
        if isinstance(raw_deps, list)
        else []
    )
    return SubTaskProposal(
        title=title,
        description=description,
        priority=normalize_priority(raw.get("priority")),
        dependencies=dependencies,
    )


def parse_research_result(task_id: str, parsed: dict[str, Any]) -> SubTaskResult:
    """Build a ``SubTaskResult`` from a parsed researcher reply.

    Scores are clamped into [0, 1]. Malformed sources and follow-ups are
    dropped rather than failing the whole result.

    Raises:
        TaskExecutionError: If the reply carries no conclusion
    """
    conclusion = parsed.get("conclusion")
    if not isinstance(conclusion, str) or not conclusion.strip():
        raise TaskExecutionError(task_id, "researcher reply has no conclusion")

    raw_evidence = parsed.get("evidence")
    evidence = (
        [str(item).strip() for item in raw_evidence if str(item).strip()]
        if isinstance(raw_evidence, list)
        else []
    )

    sources: list[Source] = []
    raw_sources = parsed.get("sources")
    if isinstance(raw_sources, list):
        for item in raw_sources:
            source = _parse_source(item)
            if source is not None:
                sources.append(source)

    follow_ups: list[SubTaskProposal] = []
    raw_follow_ups = parsed.get("additional_tasks", parsed.get("additionalTasks"))
    if isinstance(raw_follow_ups, list):
        for item in raw_follow_ups:
            proposal = _parse_follow_up(item)
            if proposal is not None:
                follow_ups.append(proposal)

    return SubTaskResult(
        conclusion=conclusion.strip(),
        evidence=evidence,
        sources=sources,
        confidence=clamp_unit(parsed.get("confidence")),
        additional_tasks=follow_ups,
    )
