"""Command-line entry point for running one research issue.

This module loads a research issue from a JSON file or from flags, runs it
through the LLM-backed orchestrator and prints the outcome as JSON.

Usage:
    uv run python main.py --title "Heat pumps in cold climates" \
        --description "How well do air-source heat pumps perform below -15C?" \
        --objective "Efficiency data" --objective "Installed cost"
    uv run python main.py --issue issue.json --output outcome.json
"""

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from config import configure_logging, settings
from models.schemas import ResearchIssue, ResearchOutcome
from research.errors import ConfigurationError
from research.factory import create_research_orchestrator

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Decompose a research question, investigate it and write a report."
    )
    source = parser.add_argument_group("research issue")
    source.add_argument("--issue", type=Path, help="JSON file holding the research issue")
    source.add_argument("--title", help="Short title of the research question")
    source.add_argument("--description", default="", help="What the research should answer")
    source.add_argument("--background", help="Optional context")
    source.add_argument(
        "--objective",
        action="append",
        default=[],
        dest="objectives",
        help="Research objective (repeatable)",
    )
    source.add_argument("--scope", default="", help="Boundaries of the investigation")
    source.add_argument("--priority", choices=["low", "medium", "high"], default="medium")

    run = parser.add_argument_group("run options")
    run.add_argument("--model", help="Model for every collaborator role")
    run.add_argument("--max-sub-tasks", type=int)
    run.add_argument("--min-sub-tasks", type=int)
    run.add_argument(
        "--threshold",
        type=float,
        help="Completion threshold as a fraction (0.8) or a percentage (80)",
    )
    run.add_argument("--concurrency", type=int, help="Sub-tasks executed at the same time")
    run.add_argument("--timeout", type=float, help="Per sub-task timeout in seconds")
    run.add_argument("--min-iterations", type=int)
    run.add_argument("--max-iterations", type=int)

    output = parser.add_argument_group("output")
    output.add_argument("--output", type=Path, help="Write the outcome JSON here")
    output.add_argument("--log-level", default=settings.log_level)
    output.add_argument("--log-format", choices=["json", "text"], default=settings.log_format)
    return parser


def load_issue(args: argparse.Namespace) -> ResearchIssue:
    """Build the issue from ``--issue`` or from the individual flags."""
    if args.issue is not None:
        return ResearchIssue.model_validate_json(args.issue.read_text(encoding="utf-8"))
    if not args.title:
        raise ValueError("either --issue or --title is required")
    return ResearchIssue(
        title=args.title,
        description=args.description or args.title,
        background=args.background,
        objectives=tuple(args.objectives),
        scope=args.scope,
        priority=args.priority,
    )


def config_overrides(args: argparse.Namespace) -> dict[str, Any]:
    threshold = args.threshold
    if threshold is not None and threshold > 1:
        threshold = threshold / 100.0
    return {
        "model": args.model,
        "max_sub_tasks": args.max_sub_tasks,
        "min_sub_tasks": args.min_sub_tasks,
        "completion_threshold": threshold,
        "concurrency_limit": args.concurrency,
        "per_task_timeout": args.timeout,
        "min_iterations": args.min_iterations,
        "max_iterations": args.max_iterations,
    }


def render_outcome(outcome: ResearchOutcome) -> str:
    payload = {
        "run_id": outcome.run_id,
        "progress": outcome.progress,
        "iterations": outcome.iterations,
        "summary": outcome.summary.model_dump(mode="json"),
        "report": outcome.report.model_dump(mode="json"),
        "metadata": outcome.metadata.model_dump(mode="json"),
    }
    return json.dumps(payload, indent=2, ensure_ascii=False)


async def run_research(issue: ResearchIssue, overrides: dict[str, Any]) -> ResearchOutcome:
    """Run ``issue`` and stop dispatching new sub-tasks on SIGINT/SIGTERM."""
    orchestrator = create_research_orchestrator(**overrides)
    cancel_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Windows event loops have no signal handlers; Ctrl+C aborts instead.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, cancel_event.set)

    return await orchestrator.run(issue, cancel_event=cancel_event)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_format)

    try:
        issue = load_issue(args)
    except (OSError, ValueError) as e:
        # pydantic's ValidationError is a ValueError
        logger.error("issue_load_failed", error=str(e))
        return 2

    try:
        outcome = asyncio.run(run_research(issue, config_overrides(args)))
    except (ConfigurationError, ValidationError) as e:
        logger.error("invalid_configuration", error=str(e))
        return 2

    rendered = render_outcome(outcome)
    if args.output is not None:
        args.output.write_text(rendered, encoding="utf-8")
        logger.info("outcome_written", path=str(args.output))
    else:
        print(rendered)
    return 0


if __name__ == "__main__":
    sys.exit(main())
