"""LLM-backed synthesizer.

The model writes the narrative sections of the report in markdown. Key
findings, the results appendix and the engine's limitations are derived from
the sub-task results directly, so they never depend on the model's formatting.
"""

import re

import structlog

from agents.prompts import SYNTHESIZER_PROMPT, format_sub_task_results, get_synthesizer_request
from agents.utils import LLMClient
from models.schemas import (
    Appendix,
    ExecutionMetadata,
    KeyFinding,
    Priority,
    Recommendation,
    Report,
    ResearchIssue,
    SubTask,
)

logger = structlog.get_logger(__name__)

KEY_FINDING_CONFIDENCE = 0.6
HIGH_SIGNIFICANCE_CONFIDENCE = 0.8
HIGH_PRIORITY_RECOMMENDATIONS = 2

DEFAULT_METHODOLOGY = (
    "Desk research across multiple sources. Each sub-task was investigated "
    "independently and its findings were merged into this report."
)
DEFAULT_LIMITATIONS = [
    "Findings rely on secondary sources; no primary data was collected.",
]


def extract_section(content: str, name: str) -> str | None:
    """Return the body under ``## <name>`` up to the next second-level heading."""
    pattern = rf"##\s*{re.escape(name)}[^\n]*\n(.*?)(?=\n##\s|\Z)"
    match = re.search(pattern, content, re.IGNORECASE | re.DOTALL)
    if match is None:
        return None
    body = match.group(1).strip()
    return body or None


def extract_list_section(content: str, name: str) -> list[str] | None:
    """Return the ``-``/``*`` bullet items of a section, or None when it is absent."""
    section = extract_section(content, name)
    if section is None:
        return None
    items = []
    for line in section.splitlines():
        stripped = line.strip()
        if not stripped.startswith(("-", "*")):
            continue
        item = re.sub(r"^[-*]\s*", "", stripped).strip()
        if item:
            items.append(item)
    return items or None


def build_key_findings(completed: list[SubTask], limit: int = 10) -> list[KeyFinding]:
    """Findings from results with confidence above 0.6, in completion order."""
    findings: list[KeyFinding] = []
    for task in completed:
        result = task.result
        if result is None or result.confidence <= KEY_FINDING_CONFIDENCE:
            continue
        high = task.priority == Priority.HIGH or result.confidence > HIGH_SIGNIFICANCE_CONFIDENCE
        findings.append(
            KeyFinding(
                id=f"finding_{len(findings) + 1}",
                title=task.title,
                description=result.conclusion,
                evidence=list(result.evidence),
                sources=list(result.sources),
                confidence=result.confidence,
                significance=Priority.HIGH if high else Priority.MEDIUM,
            )
        )
        if len(findings) >= limit:
            break
    return findings


def build_recommendations(items: list[str], limit: int = 5) -> list[Recommendation]:
    return [
        Recommendation(
            id=f"recommendation_{index}",
            title=f"Recommendation {index}",
            description=item,
            rationale="Derived from the analysis of the sub-task results",
            priority=(
                Priority.HIGH if index <= HIGH_PRIORITY_RECOMMENDATIONS else Priority.MEDIUM
            ),
        )
        for index, item in enumerate(items[:limit], start=1)
    ]


def _merge_limitations(reported: list[str], engine: list[str]) -> list[str]:
    merged = list(reported)
    for item in engine:
        if item not in merged:
            merged.append(item)
    return merged


class LLMSynthesizer:
    """Synthesizer that writes the final report with an LLM.

    Attributes:
        max_key_findings: Cap on deterministic key findings
        max_recommendations: Cap on recommendations taken from the reply
    """

    def __init__(
        self,
        llm_client: LLMClient,
        model: str | None = None,
        temperature: float = 0.3,
        max_key_findings: int = 10,
        max_recommendations: int = 5,
    ) -> None:
        self.llm_client = llm_client
        self.model = model
        self.temperature = temperature
        self.max_key_findings = max_key_findings
        self.max_recommendations = max_recommendations

    async def synthesize(
        self,
        issue: ResearchIssue,
        completed_sub_tasks: list[SubTask],
        metadata: ExecutionMetadata,
    ) -> Report:
        """Build the report for ``issue`` from the completed sub-tasks.

        A failed model call yields a fallback report built from the results
        alone; it is logged, not raised.
        """
        results_markdown = format_sub_task_results(completed_sub_tasks)
        key_findings = build_key_findings(completed_sub_tasks, self.max_key_findings)
        appendices = []
        if results_markdown:
            appendices.append(
                Appendix(
                    id="appendix_1",
                    title="SubTask Results Summary",
                    content=results_markdown,
                    type="data",
                )
            )

        messages = [
            {"role": "system", "content": SYNTHESIZER_PROMPT},
            {
                "role": "user",
                "content": get_synthesizer_request(issue, completed_sub_tasks, metadata),
            },
        ]

        try:
            response = await self.llm_client.call(
                messages=messages,
                model=self.model,
                temperature=self.temperature,
                source="synthesizer",
            )
        except Exception as e:
            logger.error(
                "synthesizer_llm_failed",
                error_type=type(e).__name__,
                error=str(e),
                completed=len(completed_sub_tasks),
            )
            return self._fallback_report(issue, completed_sub_tasks, metadata, key_findings, e)

        content = response.content
        report = Report(
            title=f"{issue.title} - Research Report",
            executive_summary=(
                extract_section(content, "Executive Summary")
                or f"A study of {issue.title} covering "
                f"{len(completed_sub_tasks)} investigated areas."
            ),
            methodology=extract_section(content, "Methodology") or DEFAULT_METHODOLOGY,
            key_findings=key_findings,
            conclusions=(
                extract_list_section(content, "Conclusions")
                or [f"A baseline understanding of {issue.title} was established."]
            ),
            recommendations=build_recommendations(
                extract_list_section(content, "Recommendations") or [],
                self.max_recommendations,
            ),
            limitations=_merge_limitations(
                extract_list_section(content, "Limitations") or DEFAULT_LIMITATIONS,
                metadata.limitations,
            ),
            next_steps=extract_list_section(content, "Next Steps") or [],
            appendices=appendices,
        )
        logger.info(
            "synthesizer_report_built",
            key_findings=len(report.key_findings),
            recommendations=len(report.recommendations),
            limitations=len(report.limitations),
        )
        return report

    def _fallback_report(
        self,
        issue: ResearchIssue,
        completed: list[SubTask],
        metadata: ExecutionMetadata,
        key_findings: list[KeyFinding],
        error: Exception,
    ) -> Report:
        conclusions = [
            task.result.conclusion for task in completed if task.result is not None
        ] or [f"The full report could not be generated: {type(error).__name__}: {error}"]
        return Report(
            title=f"{issue.title} - Report",
            executive_summary=(
                "The report writer was unavailable. This summary lists the "
                f"conclusions of {len(completed)} completed sub-tasks as-is."
            ),
            methodology=DEFAULT_METHODOLOGY,
            key_findings=key_findings,
            conclusions=conclusions,
            limitations=_merge_limitations(
                ["Report generation was limited by a technical error."],
                metadata.limitations,
            ),
        )
