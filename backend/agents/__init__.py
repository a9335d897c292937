"""Orchestration stages, prompts, LLM integration and the pipeline graph.

This module exports the key components needed to run a request:
- Decomposer: request to validated task plan
- ParallelExecutor: group-by-group execution under per-task timeouts
- Verifier: review plus validate/fix self-healing
- MergeResolver: artifact union and conflict resolution
- Orchestrator: the LangGraph pipeline tying the stages together
- LLM client utilities with retry logic and metrics tracking
"""

from agents.artifacts import clean_artifacts, parse_artifacts
from agents.decomposer import Decomposer, build_single_task_plan, parse_plan, validate_plan
from agents.executor import ParallelExecutor, summarize_results
from agents.generation import GenerationOptions, GenerationService
from agents.merge import MergeResolver
from agents.orchestrator import Orchestrator, OrchestrationState
from agents.utils import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    extract_json_from_response,
    topological_sort,
)
from agents.validation import ArtifactValidator
from agents.verification import Verifier

__all__ = [
    # Stages
    "Decomposer",
    "ParallelExecutor",
    "Verifier",
    "MergeResolver",
    "ArtifactValidator",
    "build_single_task_plan",
    "parse_plan",
    "validate_plan",
    "summarize_results",
    # Artifacts
    "clean_artifacts",
    "parse_artifacts",
    # Generation
    "GenerationOptions",
    "GenerationService",
    # Utils
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "extract_json_from_response",
    "topological_sort",
    # Pipeline
    "Orchestrator",
    "OrchestrationState",
]
