"""Prompts for the LLM-backed research collaborators.

This module contains the prompt templates used by the three collaborator roles:
- DECOMPOSER_PROMPT: Breaks a research issue into sub-tasks and extends the plan
- RESEARCHER_PROMPT: Investigates one sub-task and reports structured findings
- SYNTHESIZER_PROMPT: Merges completed results into a markdown report
"""

from typing import Any

from models.schemas import ExecutionMetadata, ResearchIssue, SubTask

# Decomposer prompt for the initial plan and for follow-up rounds
DECOMPOSER_PROMPT = """\
You are a research manager. You break a research question into focused \
sub-tasks and decide which gaps remain after each round of research.

## Your Role
You do NOT research anything yourself. You plan work for researchers who each \
take one sub-task at a time.

## Sub-task Design
- Mutually exclusive and collectively exhaustive: no gaps, no overlap
- Specific enough that a researcher knows exactly what to look for
- Small enough to finish in one focused investigation
- State prerequisites explicitly through "dependencies"

## Output Format
Respond with ONLY a JSON object of this exact structure:

{
  "reasoning": "Why these sub-tasks are needed",
  "subtasks": [
    {
      "id": "subtask_1",
      "title": "Short title",
      "description": "What the researcher should investigate",
      "priority": "high",
      "dependencies": []
    }
  ]
}

## Rules
- "priority" is one of "high", "medium", "low"
- "dependencies" lists ids of sub-tasks that must finish first. They may \
reference sub-tasks listed in this reply or sub-tasks that already exist.
- Never reuse an existing sub-task id
- On the first round, propose between {min_sub_tasks} and {max_sub_tasks} sub-tasks
- On later rounds, propose only sub-tasks that close real gaps. An empty \
"subtasks" array is a valid answer when the question is already covered."""


DECOMPOSER_REPAIR_PROMPT = """\
Your previous reply could not be used: {error}

Reply again with ONLY the JSON object described in the instructions. \
No markdown fences, no commentary."""


# Researcher prompt for a single sub-task
RESEARCHER_PROMPT = """\
You are a meticulous researcher. You investigate one sub-task of a larger \
research question and report what the evidence supports.

## Operating Discipline
- Ground every claim in the provided search results or well-established knowledge
- Prefer primary and recent sources; rate each source honestly
- Say what is uncertain instead of guessing
- If the investigation reveals an important gap outside this sub-task, propose \
it under "additional_tasks" rather than researching it yourself

## Output Format
Respond with ONLY a JSON object of this exact structure:

{
  "conclusion": "Direct answer to the sub-task",
  "evidence": ["Key evidence point", "..."],
  "sources": [
    {
      "type": "web",
      "title": "Source title",
      "url": "https://...",
      "author": null,
      "published_date": null,
      "relevance": 0.8,
      "credibility": 0.7,
      "excerpt": "Relevant passage"
    }
  ],
  "additional_tasks": [
    {"title": "Follow-up", "description": "What remains open", "priority": "medium"}
  ],
  "confidence": 0.75
}

"type" is one of "web", "document", "database", "interview", "survey". \
"relevance", "credibility" and "confidence" are numbers between 0 and 1."""


# Synthesizer prompt for the final report
SYNTHESIZER_PROMPT = """\
You are a research reporter. You integrate the results of several completed \
investigations into one clear, actionable markdown report.

## Report Structure
Use exactly these second-level headings, in this order:

## Executive Summary
Restate the question, the 3-5 most important findings and the main conclusion.

## Methodology
How the research was approached and how sources were evaluated.

## Key Findings
The important findings with their evidence and confidence.

## Conclusions
A bulleted list. Each bullet is one conclusion that answers the question.

## Recommendations
A bulleted list of concrete, prioritized actions.

## Limitations
A bulleted list of constraints and gaps in this research.

## Next Steps
A bulleted list of areas that deserve further investigation.

## Quality Bar
- Understandable by non-specialists
- Specific: include figures and examples where the results provide them
- Honest about confidence and contradictions between results"""


def compose_prompt_sections(*sections: str) -> str:
    """Compose prompt sections into a single deterministic prompt."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


def format_issue(issue: ResearchIssue) -> str:
    """Render the research issue as a prompt section."""
    lines = [
        "## Research Question",
        f"Title: {issue.title}",
        f"Description: {issue.description}",
    ]
    if issue.background:
        lines.append(f"Background: {issue.background}")
    if issue.objectives:
        lines.append("Objectives:")
        lines.extend(f"- {objective}" for objective in issue.objectives)
    if issue.scope:
        lines.append(f"Scope: {issue.scope}")
    if issue.constraints:
        lines.append(f"Constraints: {issue.constraints}")
    lines.append(f"Priority: {issue.priority.value}")
    return "\n".join(lines)


def get_decomposer_system_prompt(min_sub_tasks: int, max_sub_tasks: int) -> str:
    """Get the decomposer system prompt with the plan size bounds filled in."""
    return DECOMPOSER_PROMPT.replace("{min_sub_tasks}", str(min_sub_tasks)).replace(
        "{max_sub_tasks}", str(max_sub_tasks)
    )


def get_decomposer_request(
    issue: ResearchIssue,
    completed_results: list[SubTask],
    known_ids: list[str],
    iteration: int,
) -> str:
    """Build the user message for one decomposer round.

    Args:
        issue: The research question
        completed_results: Sub-tasks finished so far, with results
        known_ids: Ids already in use, which new proposals must avoid
        iteration: 0 for the initial plan, otherwise the finished pass count

    Returns:
        The request text
    """
    if iteration == 0:
        round_section = "## Round\nThis is the initial plan. No research has been done yet."
    else:
        findings = []
        for task in completed_results:
            if task.result is None:
                continue
            findings.append(
                f"### {task.id}: {task.title}\n"
                f"Conclusion: {task.result.conclusion}\n"
                f"Confidence: {task.result.confidence:.2f}"
            )
        round_section = (
            f"## Round\nFollow-up after {iteration} research passes.\n\n"
            "## Completed Sub-tasks\n" + ("\n\n".join(findings) or "None completed yet.")
        )

    ids_section = "## Existing Sub-task Ids\n" + (", ".join(known_ids) or "none")
    return compose_prompt_sections(format_issue(issue), round_section, ids_section)


def format_search_hits(hits: list[Any]) -> str:
    """Render search hits as a numbered context block."""
    if not hits:
        return ""
    blocks = []
    for index, hit in enumerate(hits, start=1):
        blocks.append(
            f"[{index}] {hit.title}\nURL: {hit.url}\nScore: {hit.score:.2f}\n{hit.content.strip()}"
        )
    return "## Search Results\n" + "\n\n".join(blocks)


def get_researcher_request(issue: ResearchIssue, sub_task: SubTask, search_context: str) -> str:
    """Build the user message asking a researcher to investigate ``sub_task``."""
    task_section = (
        "## Your Sub-task\n"
        f"Id: {sub_task.id}\n"
        f"Title: {sub_task.title}\n"
        f"Description: {sub_task.description or sub_task.title}\n"
        f"Priority: {sub_task.priority.value}"
    )
    return compose_prompt_sections(format_issue(issue), task_section, search_context)


def format_sub_task_results(completed: list[SubTask]) -> str:
    """Render completed sub-tasks and their results as markdown."""
    sections = []
    for index, task in enumerate(completed, start=1):
        result = task.result
        if result is None:
            continue
        evidence = "\n".join(f"- {item}" for item in result.evidence) or "- No evidence provided"
        sources = (
            "\n".join(
                f"- [{source.title}]({source.url or '#'}) "
                f"(relevance {source.relevance:.2f}, credibility {source.credibility:.2f})"
                for source in result.sources
            )
            or "- No sources"
        )
        sections.append(
            f"### {index}. {task.title}\n"
            f"**Description**: {task.description}\n"
            f"**Priority**: {task.priority.value}\n"
            f"**Conclusion**: {result.conclusion}\n\n"
            f"**Key Evidence**:\n{evidence}\n\n"
            f"**Sources** ({len(result.sources)}):\n{sources}\n\n"
            f"**Confidence**: {result.confidence:.2f}"
        )
    return "\n\n---\n\n".join(sections)


def get_synthesizer_request(
    issue: ResearchIssue,
    completed: list[SubTask],
    metadata: ExecutionMetadata,
) -> str:
    """Build the user message asking for the final report."""
    run_section = (
        "## Execution\n"
        f"Started: {metadata.started_at.isoformat()}\n"
        f"Completed: {metadata.completed_at.isoformat()}\n"
        f"Total execution time: {metadata.total_execution_time:.1f}s\n"
        f"Sub-tasks: {metadata.total_sub_tasks} total, {len(completed)} completed, "
        f"{metadata.failed_tasks} failed, {metadata.blocked_tasks} blocked"
    )
    if metadata.limitations:
        run_section += "\nKnown limitations:\n" + "\n".join(
            f"- {item}" for item in metadata.limitations
        )
    results_section = "## Sub-task Results\n" + (
        format_sub_task_results(completed) or "No sub-task completed."
    )
    return compose_prompt_sections(format_issue(issue), run_section, results_section)
