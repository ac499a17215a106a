"""
Client for the text-generation service.

Provides a wrapper around the OpenAI SDK with bounded timeouts, exponential
backoff on rate limiting (HTTP 429), and token usage reporting. Gateway
timeouts are not retried: they mean the document is too long or complex.
"""

import logging
import math
import time
from typing import Any, Callable, NamedTuple, Optional, Sequence

from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    OpenAI,
    RateLimitError,
)

from rubric_grader.config import Settings, get_settings
from rubric_grader.models import ModelResponse, TokenUsage

logger = logging.getLogger(__name__)

TIMEOUT_STATUS_CODES = frozenset({502, 504})


class LLMError(Exception):
    """Raised when a generation call fails."""

    def __init__(self, message: str, cause: Exception | None = None, retryable: bool = False):
        self.cause = cause
        self.retryable = retryable
        super().__init__(message)


class RateLimited(LLMError):
    """The service kept answering 429 until the retry ceiling was reached."""

    def __init__(self, message: str, attempts: int, cause: Exception | None = None):
        self.attempts = attempts
        super().__init__(message, cause=cause, retryable=True)


class UpstreamTimeout(LLMError):
    """The request timed out, on our side or at the gateway."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message, cause=cause, retryable=False)


class UpstreamError(LLMError):
    """Any other failure answer from the service."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        body: Any = None,
        cause: Exception | None = None,
    ):
        self.status = status
        self.body = body
        super().__init__(message, cause=cause, retryable=False)


class RetryCountdown(NamedTuple):
    """Progress of a rate-limit wait, reported once per second."""

    attempt: int
    max_attempts: int
    remaining_seconds: int


class GradingClient:
    """
    Client for the text-generation service.

    Uses the OpenAI SDK with its own retries disabled; rate-limit backoff is
    handled here so the wait can be reported to the caller second by second.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the client.

        Args:
            settings: Configuration settings. Uses global settings if not provided.
            sleep: Blocking sleep function, replaced in tests.
        """
        self._settings = settings or get_settings()
        self._sleep = sleep
        self._client = OpenAI(
            api_key=self._settings.openai_api_key,
            base_url=self._settings.openai_base_url,
            timeout=self._settings.request_timeout_seconds,
            max_retries=0,
        )

    def call(
        self,
        system_prompt: str,
        user_prompt: str,
        attachments: Sequence[str] | None = None,
        on_progress: Optional[Callable[[RetryCountdown], None]] = None,
    ) -> ModelResponse:
        """
        Generate a response.

        Args:
            system_prompt: System message defining the model's role.
            user_prompt: User message with the actual request.
            attachments: Images as data URLs or raw base64 PNG.
            on_progress: Receives a RetryCountdown every second of a backoff wait.

        Returns:
            Generated text with token usage (``None`` when not reported).

        Raises:
            RateLimited: If every attempt was rate limited.
            UpstreamTimeout: On a client timeout or a gateway 502/504.
            UpstreamError: On any other error answer or an empty response.
        """
        attachments = list(attachments or [])
        timeout = (
            self._settings.vision_timeout_seconds
            if attachments
            else self._settings.request_timeout_seconds
        )
        messages = self._build_messages(system_prompt, user_prompt, attachments)
        policy = self._settings.backoff

        for attempt in range(policy.max_attempts):
            try:
                response = self._client.chat.completions.create(
                    model=self._settings.openai_model,
                    messages=messages,  # type: ignore[arg-type]
                    temperature=self._settings.llm_temperature,
                    top_p=self._settings.llm_top_p,
                    max_tokens=self._settings.llm_max_tokens,
                    timeout=timeout,
                )

            except RateLimitError as e:
                if attempt + 1 >= policy.max_attempts:
                    raise RateLimited(
                        f"Rate limit exceeded after {policy.max_attempts} attempts",
                        attempts=policy.max_attempts,
                        cause=e,
                    ) from e
                self._wait(policy.delay(attempt), attempt + 1, policy.max_attempts, on_progress)
                continue

            except APITimeoutError as e:
                raise UpstreamTimeout(
                    f"Request timed out after {timeout:.0f}s: the document is too long "
                    "or complex. Try splitting it into smaller parts.",
                    cause=e,
                ) from e

            except APIStatusError as e:
                if e.status_code in TIMEOUT_STATUS_CODES:
                    raise UpstreamTimeout(
                        f"Gateway timeout ({e.status_code}): the document is too long "
                        "or complex. Try splitting it into smaller parts.",
                        cause=e,
                    ) from e
                raise UpstreamError(
                    f"API error {e.status_code}: {e.message}",
                    status=e.status_code,
                    body=e.body if e.body is not None else e.response.text,
                    cause=e,
                ) from e

            except APIConnectionError as e:
                raise UpstreamError(f"Connection failed: {e}", cause=e) from e

            except APIError as e:
                raise UpstreamError(f"API error: {e.message}", body=e.body, cause=e) from e

            return self._to_model_response(response)

        # Only reachable when max_attempts is 0, which the settings forbid
        raise RateLimited("No attempts were made", attempts=0)

    def _wait(
        self,
        delay: float,
        attempt: int,
        max_attempts: int,
        on_progress: Optional[Callable[[RetryCountdown], None]],
    ) -> None:
        """Sleep out a backoff delay one second at a time."""
        seconds = math.ceil(delay)
        logger.warning(
            "Rate limited (attempt %d/%d), waiting %d seconds", attempt, max_attempts, seconds
        )
        for remaining in range(seconds, 0, -1):
            if on_progress:
                on_progress(RetryCountdown(attempt, max_attempts, remaining))
            self._sleep(1)

    @staticmethod
    def _build_messages(
        system_prompt: str, user_prompt: str, attachments: list[str]
    ) -> list[dict[str, Any]]:
        if not attachments:
            user_content: Any = user_prompt
        else:
            user_content = [{"type": "text", "text": user_prompt}]
            for image in attachments:
                url = image if image.startswith("data:") else f"data:image/png;base64,{image}"
                user_content.append({"type": "image_url", "image_url": {"url": url}})

        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ]

    @staticmethod
    def _to_model_response(response: Any) -> ModelResponse:
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise UpstreamError("Empty response from the generation service")

        usage = None
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
            )
        else:
            logger.warning("Response carried no token usage; the call is not included in cost")

        return ModelResponse(text=content, usage=usage)

    def health_check(self) -> bool:
        """
        Check if the API is reachable.

        Returns:
            True if API is healthy, False otherwise.
        """
        try:
            response = self._client.chat.completions.create(
                model=self._settings.openai_model,
                messages=[{"role": "user", "content": "ping"}],
                max_tokens=5,
            )
            return bool(response.choices)
        except APIError as e:
            logger.warning("Health check failed: %s", e)
            return False
