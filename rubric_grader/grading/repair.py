"""
JSON extraction and repair for model responses.

Responses cut off by the output token limit usually end in the middle of a
feedback string. Rather than discard the whole response, the repairer looks
for the longest prefix that ends on a closing brace, closes whatever is
still open, and keeps it if it still carries grading data.
"""

import json
import logging
import re
from typing import Any, Optional

logger = logging.getLogger(__name__)


class UnrecoverableTruncationError(Exception):
    """Raised when no repair strategy yields a usable JSON object."""

    def __init__(self, message: str, raw_response: str | None = None):
        self.raw_response = raw_response
        super().__init__(message)


class ResponseRepairer:
    """
    Extracts a JSON object from model output, repairing truncation.

    Strategies, in order:
    1. Parse the first ``{`` to the last ``}`` as-is
    2. Cut at each ``}`` from the right, drop a dangling string, close
       open objects and arrays; accept the first result whose
       ``required_key`` is a non-empty list
    3. Strip trailing commas before closing brackets and parse once more
    """

    FENCE_OPEN = re.compile(r"^\s*```(?:json)?\s*", re.IGNORECASE)
    FENCE_CLOSE = re.compile(r"\s*```\s*$")
    TRAILING_COMMA = re.compile(r",(\s*[\]}])")

    def __init__(self, required_key: str = "sections"):
        self.required_key = required_key

    def extract_json(self, raw: str) -> dict[str, Any]:
        """
        Extract the JSON object from a model response.

        Args:
            raw: Raw response text, possibly fenced or truncated.

        Returns:
            The parsed (possibly repaired) object.

        Raises:
            UnrecoverableTruncationError: If every strategy fails.
        """
        text = self.FENCE_CLOSE.sub("", self.FENCE_OPEN.sub("", raw.strip()))

        start = text.find("{")
        if start == -1:
            raise UnrecoverableTruncationError("No JSON object found in response", raw)

        end = text.rfind("}")
        span = text[start : end + 1] if end > start else text[start:]

        try:
            return json.loads(span)
        except json.JSONDecodeError as e:
            first_error = e

        recovered = self._recover_prefix(span)
        if recovered is not None:
            logger.warning(
                "Response JSON was truncated; recovered %d %s",
                len(recovered[self.required_key]),
                self.required_key,
            )
            return recovered

        try:
            return json.loads(self.TRAILING_COMMA.sub(r"\1", span))
        except json.JSONDecodeError:
            raise UnrecoverableTruncationError(
                f"Could not parse response JSON ({first_error}). The response was "
                "probably cut off; try a shorter document.",
                raw,
            ) from first_error

    def _recover_prefix(self, span: str) -> Optional[dict[str, Any]]:
        for pos in range(len(span) - 1, -1, -1):
            if span[pos] != "}":
                continue

            candidate = self._close(span[: pos + 1])
            if candidate is None:
                continue

            try:
                parsed = json.loads(candidate)
            except json.JSONDecodeError:
                continue

            if isinstance(parsed, dict) and self._has_required_data(parsed):
                return parsed

        return None

    def _has_required_data(self, parsed: dict[str, Any]) -> bool:
        value = parsed.get(self.required_key)
        return isinstance(value, list) and len(value) > 0

    def _close(self, text: str) -> Optional[str]:
        """Drop a dangling string, then append closers for open structures."""
        stack, in_string, boundary = self._scan(text)

        if in_string:
            if boundary == -1:
                return None
            # Keep an opening bracket, drop a separating comma.
            text = text[: boundary + 1] if text[boundary] in "{[" else text[:boundary]
            stack, in_string, _ = self._scan(text)

        text = re.sub(r",\s*$", "", text.rstrip())
        closers = "".join("}" if opener == "{" else "]" for opener in reversed(stack))
        return text + closers

    @staticmethod
    def _scan(text: str) -> tuple[list[str], bool, int]:
        """
        Walk the text outside string literals.

        Returns:
            Open brackets, whether the text ends inside a string, and the
            position of the last ``,``/``{``/``[`` before that string opened.
        """
        stack: list[str] = []
        in_string = False
        escaped = False
        boundary = -1
        boundary_at_open = -1

        for i, ch in enumerate(text):
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue

            if ch == '"':
                in_string = True
                boundary_at_open = boundary
            elif ch in "{[":
                stack.append(ch)
                boundary = i
            elif ch in "}]":
                if stack:
                    stack.pop()
            elif ch == ",":
                boundary = i

        return stack, in_string, boundary_at_open

