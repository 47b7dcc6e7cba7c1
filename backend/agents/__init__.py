"""LLM-backed research collaborators and the client they share.

This module exports the key components needed to run research with a model:
- LLMDecomposer, LLMResearcher, LLMSynthesizer: collaborator implementations
- SearchProvider and SearchHit: optional grounding for the researcher
- Prompts for the three collaborator roles
- LLM client utilities with retry logic and metrics tracking
"""

from agents.decomposer import LLMDecomposer, build_fallback_proposals, normalize_proposals
from agents.prompts import (
    DECOMPOSER_PROMPT,
    RESEARCHER_PROMPT,
    SYNTHESIZER_PROMPT,
    get_decomposer_request,
    get_researcher_request,
    get_synthesizer_request,
)
from agents.researcher import LLMResearcher, SearchHit, SearchProvider, parse_research_result
from agents.synthesizer import LLMSynthesizer, extract_list_section, extract_section
from agents.utils import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    clamp_unit,
    extract_json_from_response,
)

__all__ = [
    # Collaborators
    "LLMDecomposer",
    "LLMResearcher",
    "LLMSynthesizer",
    "SearchHit",
    "SearchProvider",
    "build_fallback_proposals",
    "normalize_proposals",
    "parse_research_result",
    "extract_list_section",
    "extract_section",
    # Prompts
    "DECOMPOSER_PROMPT",
    "RESEARCHER_PROMPT",
    "SYNTHESIZER_PROMPT",
    "get_decomposer_request",
    "get_researcher_request",
    "get_synthesizer_request",
    # Utils
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "clamp_unit",
    "extract_json_from_response",
]
