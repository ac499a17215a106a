"""
Configuration management for the rubric grader.

Uses Pydantic Settings for type-safe configuration loading from environment variables.
The retry policy and the token price table are plain models nested in the settings so
they can be swapped per model provider (``BACKOFF__MAX_ATTEMPTS=3``).
"""

from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from rubric_grader.models import TokenUsage


class BackoffPolicy(BaseModel):
    """Exponential backoff applied to rate-limited (HTTP 429) requests."""

    base_seconds: float = Field(default=60.0, gt=0)
    max_seconds: float = Field(default=300.0, gt=0)
    max_attempts: int = Field(default=5, ge=1, le=10)

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (0-indexed) failed attempt."""
        return min(self.base_seconds * (2**attempt), self.max_seconds)


class PriceTable(BaseModel):
    """USD price per one million tokens, per token class."""

    prompt_per_million: float = Field(default=2.50, ge=0)
    completion_per_million: float = Field(default=10.00, ge=0)

    def cost(self, usage: "TokenUsage") -> float:
        """Calculate the cost of a single call."""
        return (
            usage.prompt_tokens / 1_000_000 * self.prompt_per_million
            + usage.completion_tokens / 1_000_000 * self.completion_per_million
        )


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings are validated at startup. Missing required fields
    will raise clear validation errors.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Generation Service
    # ==========================================================================
    openai_api_key: str = Field(
        ...,
        description="API key for the OpenAI-compatible endpoint",
        min_length=10,
    )

    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL for the generation API",
    )

    openai_model: str = Field(
        default="gpt-4o",
        description="Model to use for grading",
    )

    llm_temperature: float = Field(default=0.2, ge=0.0, le=1.0)

    llm_top_p: float = Field(default=0.9, ge=0.0, le=1.0)

    llm_max_tokens: int = Field(
        default=16000,
        ge=256,
        description="Completion token ceiling; rubrics with many criteria need a lot",
    )

    # Client bounds sit below the upstream gateway limit so our own timeout
    # is distinguishable from a gateway 502.
    request_timeout_seconds: float = Field(default=26.0, gt=0, le=600)

    vision_timeout_seconds: float = Field(default=45.0, gt=0, le=600)

    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)

    prices: PriceTable = Field(default_factory=PriceTable)

    # ==========================================================================
    # Batch Grading
    # ==========================================================================
    cooldown_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Pause between successive model calls in a batch",
    )

    append_conciseness_directive: bool = Field(
        default=True,
        description="Append the feedback length cap to every grading system prompt",
    )

    # ==========================================================================
    # Output
    # ==========================================================================
    log_level: str = Field(default="INFO")

    results_path: Path = Field(
        default=Path("./output/results.json"),
        description="JSON file holding graded results between runs",
    )

    @field_validator("openai_base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure base URL doesn't have trailing slash."""
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to ensure settings are only loaded once.
    """
    return Settings()
