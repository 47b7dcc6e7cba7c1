"""Tests for agents/synthesizer.py -- report assembly."""

from datetime import UTC, datetime

from agents.synthesizer import (
    DEFAULT_LIMITATIONS,
    DEFAULT_METHODOLOGY,
    LLMSynthesizer,
    build_key_findings,
    build_recommendations,
    extract_list_section,
    extract_section,
)
from agents.utils import MockLLMClient
from models.schemas import (
    ExecutionMetadata,
    Priority,
    ResearchIssue,
    SubTask,
    SubTaskStatus,
)
from tests.conftest import make_llm_response, make_result

REPORT_MARKDOWN = """\
## Executive Summary
Trees and cool roofs give the largest reductions.

## Methodology
Literature review of municipal programmes.

## Key Findings
Narrative the engine ignores.

## Conclusions
- Canopy cover matters most
* Reflective roofs are cheapest

## Recommendations
- Plant street trees
- Subsidize cool roofs
- Monitor with sensors

## Limitations
- Few long-term studies

## Next Steps
- Compare climates
"""


def _task(task_id: str, confidence: float, priority: str = "medium") -> SubTask:
    return SubTask(
        id=task_id,
        title=f"Task {task_id}",
        priority=priority,
        status=SubTaskStatus.COMPLETED,
        result=make_result(conclusion=f"{task_id} concluded", confidence=confidence),
    )


def _metadata(limitations: list[str] | None = None) -> ExecutionMetadata:
    now = datetime.now(UTC)
    return ExecutionMetadata(
        started_at=now,
        completed_at=now,
        total_execution_time=1.5,
        total_sub_tasks=2,
        iterations=1,
        limitations=limitations or [],
    )


class TestSectionExtraction:
    def test_extract_section_stops_at_next_heading(self) -> None:
        body = extract_section(REPORT_MARKDOWN, "Methodology")

        assert body == "Literature review of municipal programmes."

    def test_extract_section_is_case_insensitive(self) -> None:
        assert extract_section(REPORT_MARKDOWN, "executive summary").startswith("Trees")

    def test_missing_section(self) -> None:
        assert extract_section(REPORT_MARKDOWN, "Appendix") is None

    def test_last_section_runs_to_end(self) -> None:
        assert extract_list_section(REPORT_MARKDOWN, "Next Steps") == ["Compare climates"]

    def test_list_section_accepts_both_bullets(self) -> None:
        assert extract_list_section(REPORT_MARKDOWN, "Conclusions") == [
            "Canopy cover matters most",
            "Reflective roofs are cheapest",
        ]

    def test_list_section_without_bullets(self) -> None:
        assert extract_list_section(REPORT_MARKDOWN, "Methodology") is None


class TestDerivedSections:
    def test_key_findings_keep_confident_results(self) -> None:
        findings = build_key_findings(
            [_task("a", 0.9), _task("b", 0.6), _task("c", 0.7), _task("d", 0.65, "high")]
        )

        assert [f.title for f in findings] == ["Task a", "Task c", "Task d"]
        assert [f.id for f in findings] == ["finding_1", "finding_2", "finding_3"]
        assert [f.significance for f in findings] == [
            Priority.HIGH,
            Priority.MEDIUM,
            Priority.HIGH,
        ]

    def test_key_findings_limit(self) -> None:
        findings = build_key_findings([_task(str(i), 0.9) for i in range(5)], limit=2)

        assert len(findings) == 2

    def test_recommendations(self) -> None:
        recommendations = build_recommendations(["one", "two", "three"], limit=5)

        assert [r.id for r in recommendations] == [
            "recommendation_1",
            "recommendation_2",
            "recommendation_3",
        ]
        assert [r.priority for r in recommendations] == [
            Priority.HIGH,
            Priority.HIGH,
            Priority.MEDIUM,
        ]
        assert recommendations[2].title == "Recommendation 3"


class TestLLMSynthesizer:
    """Report built from a scripted LLM reply."""

    async def test_report_from_markdown(self, issue: ResearchIssue) -> None:
        client = MockLLMClient(responses=[make_llm_response(REPORT_MARKDOWN)])
        synthesizer = LLMSynthesizer(client, max_recommendations=2)
        completed = [_task("a", 0.9), _task("b", 0.5)]

        report = await synthesizer.synthesize(
            issue, completed, _metadata(["Stopped at the iteration ceiling."])
        )

        assert report.title == "Urban heat islands - Research Report"
        assert report.executive_summary.startswith("Trees and cool roofs")
        assert report.methodology == "Literature review of municipal programmes."
        assert [f.title for f in report.key_findings] == ["Task a"]
        assert len(report.conclusions) == 2
        assert [r.description for r in report.recommendations] == [
            "Plant street trees",
            "Subsidize cool roofs",
        ]
        assert report.limitations == [
            "Few long-term studies",
            "Stopped at the iteration ceiling.",
        ]
        assert report.next_steps == ["Compare climates"]
        [appendix] = report.appendices
        assert appendix.title == "SubTask Results Summary"
        assert "a concluded" in appendix.content
        assert client.call_history[0]["source"] == "synthesizer"

    async def test_defaults_for_missing_sections(self, issue: ResearchIssue) -> None:
        client = MockLLMClient(responses=[make_llm_response("Plain text, no headings.")])

        report = await LLMSynthesizer(client).synthesize(issue, [], _metadata())

        assert "Urban heat islands" in report.executive_summary
        assert report.methodology == DEFAULT_METHODOLOGY
        assert report.limitations == DEFAULT_LIMITATIONS
        assert report.recommendations == []
        assert report.appendices == []

    async def test_llm_failure_yields_fallback_report(self, issue: ResearchIssue) -> None:
        client = MockLLMClient(responses=[RuntimeError("provider down")])
        completed = [_task("a", 0.9)]

        report = await LLMSynthesizer(client).synthesize(
            issue, completed, _metadata(["Research stalled."])
        )

        assert report.title == "Urban heat islands - Report"
        assert report.conclusions == ["a concluded"]
        assert report.limitations[0] == "Report generation was limited by a technical error."
        assert "Research stalled." in report.limitations
        assert len(report.key_findings) == 1

    async def test_fallback_without_results_reports_error(self, issue: ResearchIssue) -> None:
        client = MockLLMClient(responses=[RuntimeError("provider down")])

        report = await LLMSynthesizer(client).synthesize(issue, [], _metadata())

        assert report.conclusions == [
            "The full report could not be generated: RuntimeError: provider down"
        ]
