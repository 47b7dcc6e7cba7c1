"""Wiring of the LLM-backed collaborators into a ResearchOrchestrator.

Kept apart from the engine modules: ``agents`` depends on ``research.errors``,
so the engine package cannot import ``agents`` at load time.
"""

from typing import Any

import structlog
from pydantic import ValidationError

from agents.decomposer import LLMDecomposer
from agents.researcher import LLMResearcher, SearchProvider
from agents.synthesizer import LLMSynthesizer
from agents.utils import LLMClient
from config import Settings
from config import settings as default_settings
from events.bus import EventBus, get_event_bus
from metrics import MetricsCollector
from models.schemas import ResearchConfig
from research.errors import ConfigurationError
from research.orchestrator import ResearchOrchestrator

logger = structlog.get_logger(__name__)


def create_research_orchestrator(
    settings: Settings | None = None,
    event_bus: EventBus | None = None,
    search_provider: SearchProvider | None = None,
    llm_client: LLMClient | None = None,
    metrics: MetricsCollector | None = None,
    **overrides: Any,
) -> ResearchOrchestrator:
    """Build an orchestrator with LLM collaborators configured from settings.

    Args:
        settings: Settings to read models and bounds from (module settings if None)
        event_bus: Event bus shared by the engine and the LLM client
        search_provider: Optional search used by the researcher
        llm_client: Client to use instead of one built from settings
        metrics: Collector shared by the engine and the LLM client
        **overrides: ResearchConfig fields that take precedence over settings

    Returns:
        A ready-to-run ResearchOrchestrator

    Raises:
        ConfigurationError: If the resulting run options are invalid
    """
    settings = settings or default_settings
    event_bus = event_bus or get_event_bus()
    metrics = metrics or MetricsCollector()

    try:
        config = ResearchConfig.from_settings(settings, **overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid research configuration: {e}") from e

    client = llm_client or LLMClient(
        event_bus=event_bus,
        default_model=settings.default_model,
        fallback_model=settings.llm_fallback_model,
        retry_attempts=settings.llm_max_retries,
        retry_delay=settings.llm_retry_delay_seconds,
        metrics_collector=metrics,
    )

    # An explicit model override applies to every role.
    def model_for(role: str) -> str:
        return config.model or settings.model_for(role)

    decomposer = LLMDecomposer(
        client,
        model=model_for("decomposer"),
        temperature=config.temperature,
        min_sub_tasks=config.min_sub_tasks,
        max_sub_tasks=config.max_sub_tasks,
        repair_attempts=settings.llm_retry_attempts,
    )
    researcher = LLMResearcher(
        client,
        model=model_for("researcher"),
        temperature=config.temperature,
        search_provider=search_provider,
        search_max_results=settings.search_max_results,
    )
    synthesizer = LLMSynthesizer(
        client,
        model=model_for("synthesizer"),
        temperature=config.temperature,
        max_key_findings=settings.max_key_findings,
        max_recommendations=settings.max_recommendations,
    )

    logger.info(
        "research_orchestrator_created",
        decomposer_model=decomposer.model,
        researcher_model=researcher.model,
        synthesizer_model=synthesizer.model,
        search_enabled=search_provider is not None,
    )
    return ResearchOrchestrator(
        decomposer,
        researcher,
        synthesizer,
        config=config,
        event_bus=event_bus,
        metrics=metrics,
    )
