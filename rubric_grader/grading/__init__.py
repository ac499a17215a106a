"""
Grading Module.

Prompt construction, the generation client, JSON repair, score calculation
and the batch orchestrator.
"""

from rubric_grader.grading.engine import (
    GradingContext,
    GradingOrchestrator,
    GradingProgress,
    Submission,
)
from rubric_grader.grading.llm_client import (
    GradingClient,
    LLMError,
    RateLimited,
    UpstreamError,
    UpstreamTimeout,
)
from rubric_grader.grading.prompt_builder import PromptBuilder
from rubric_grader.grading.repair import ResponseRepairer, UnrecoverableTruncationError
from rubric_grader.grading.scorer import (
    MissingCriterionError,
    MissingSectionError,
    ScoreCalculator,
    ScoringError,
    round_to_grade_scale,
)

__all__ = [
    "GradingClient",
    "GradingContext",
    "GradingOrchestrator",
    "GradingProgress",
    "LLMError",
    "MissingCriterionError",
    "MissingSectionError",
    "PromptBuilder",
    "RateLimited",
    "ResponseRepairer",
    "ScoreCalculator",
    "ScoringError",
    "Submission",
    "UnrecoverableTruncationError",
    "UpstreamError",
    "UpstreamTimeout",
    "round_to_grade_scale",
]
