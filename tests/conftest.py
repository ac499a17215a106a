"""
Pytest configuration and fixtures.

Provides common test fixtures for all test modules.
"""

import json
import tempfile
from pathlib import Path
from typing import Any, Generator
from unittest.mock import MagicMock

import pytest

from rubric_grader.config import BackoffPolicy, Settings
from rubric_grader.models import (
    Criterion,
    ModelResponse,
    RubricTree,
    Section,
    TaskSpec,
    TokenUsage,
)


# ==============================================================================
# Directory Fixtures
# ==============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# ==============================================================================
# Sample Rubric Fixtures
# ==============================================================================


@pytest.fixture
def sample_rubric_text() -> str:
    """Rubric with lettered sections and explicit percentages."""
    return """Written exam assessment

Part A: Content (60%)
Genre and layout (30%)
The text follows the conventions of the chosen genre.
Argumentation (30%)
Claims are supported with relevant examples.

Part B: Form (40%)
Language (25%)
Correct spelling and varied sentence structure.
Structure (15%)
Clear paragraphs and transitions.
"""


@pytest.fixture
def numbered_rubric_text() -> str:
    """Rubric with numbered headings and no percentages anywhere."""
    return """1. Genre
The text uses the conventions of the genre.

2. Language
Spelling, grammar and vocabulary.

3. Structure
Paragraphs, transitions and overall coherence.
"""


@pytest.fixture
def sample_tree() -> RubricTree:
    """Normalized two-section rubric."""
    return RubricTree(
        sections=[
            Section(
                name="Part A: Content",
                weight=60.0,
                weight_stated=True,
                criteria=[
                    Criterion(name="Genre and layout", weight=30.0, description="Genre conventions"),
                    Criterion(name="Argumentation", weight=30.0, description="Supported claims"),
                ],
            ),
            Section(
                name="Part B: Form",
                weight=40.0,
                weight_stated=True,
                criteria=[
                    Criterion(name="Language", weight=25.0, description="Spelling and syntax"),
                    Criterion(name="Structure", weight=15.0, description="Paragraphs"),
                ],
            ),
        ]
    )


@pytest.fixture
def conversion_table_text() -> str:
    """Point table extracted onto one line, with one cell lost."""
    return "Grade Points -3 0 0 1 12 2 13 20 4 21 36 7 37 51 10 52 64 12 65 75"


@pytest.fixture
def task_spec(conversion_table_text: str) -> TaskSpec:
    return TaskSpec(
        answer_key="1a) x = 4 (2 points)\n1b) y = 7 (3 points)\n2) 12.5 cm (5 points)",
        conversion_table=conversion_table_text,
    )


# ==============================================================================
# Model Output Fixtures
# ==============================================================================


@pytest.fixture
def rubric_ai_output() -> dict[str, Any]:
    """Model output aligned with sample_tree."""
    return {
        "studentLabel": "anna.docx",
        "sections": [
            {
                "name": "Part A: Content",
                "criteria": [
                    {"name": "Genre and layout", "score": 10, "feedback": "Correct."},
                    {"name": "Argumentation", "score": 7, "feedback": "Missing examples."},
                ],
            },
            {
                "name": "Part B: Form",
                "criteria": [
                    {"name": "Language", "score": 4, "feedback": "Error: spelling."},
                    {"name": "Structure", "score": 12, "feedback": "Correct."},
                ],
            },
        ],
        "overallAssessment": "Solid content, weaker language.",
    }


@pytest.fixture
def task_ai_output() -> dict[str, Any]:
    return {
        "studentLabel": "bo.docx",
        "tasks": [
            {
                "number": "1a",
                "studentAnswer": "x = 4",
                "correctAnswer": "x = 4",
                "awardedPoints": 2,
                "maxPoints": 2,
                "feedback": "Correct",
            },
            {
                "number": "1b",
                "studentAnswer": "y = 5",
                "correctAnswer": "y = 7",
                "awardedPoints": 1,
                "maxPoints": 3,
                "feedback": "Error: sign",
            },
            {
                "number": 2,
                "studentAnswer": "",
                "correctAnswer": "12.5 cm",
                "awardedPoints": 0,
                "maxPoints": 5,
                "feedback": "Missing",
            },
        ],
        "totalPoints": 3,
        "grade": 0,
        "gradeRationale": "Few points.",
        "overallFeedback": "Practise equations.",
    }


def model_response(payload: Any, prompt_tokens: int = 1000, completion_tokens: int = 200) -> ModelResponse:
    """Wrap a payload as the client would return it."""
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return ModelResponse(
        text=text,
        usage=TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def test_settings(temp_dir: Path) -> Settings:
    """Create test settings with mocked values."""
    return Settings(
        openai_api_key="test-api-key-for-testing",
        openai_base_url="https://test.api.local/",
        openai_model="test-model",
        cooldown_seconds=5.0,
        backoff=BackoffPolicy(base_seconds=60, max_seconds=300, max_attempts=3),
        results_path=temp_dir / "results.json",
    )


# ==============================================================================
# Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_client(rubric_ai_output: dict[str, Any]) -> MagicMock:
    """Generation client answering every call with rubric_ai_output."""
    client = MagicMock()
    client.call.return_value = model_response(rubric_ai_output)
    client.health_check.return_value = True
    return client


@pytest.fixture
def sleeps() -> list[float]:
    """Records sleep calls instead of sleeping."""
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]):
    return sleeps.append


# ==============================================================================
# File Fixtures
# ==============================================================================


@pytest.fixture
def sample_txt_file(temp_dir: Path, sample_rubric_text: str) -> Path:
    """Create a sample text file."""
    file_path = temp_dir / "rubric.txt"
    file_path.write_text(sample_rubric_text, encoding="utf-8")
    return file_path


@pytest.fixture
def sample_md_file(temp_dir: Path) -> Path:
    """Create a sample markdown submission."""
    file_path = temp_dir / "anna.md"
    file_path.write_text(
        "# My essay\n\nClimate change is one of the most pressing issues of our time.\n",
        encoding="utf-8",
    )
    return file_path


@pytest.fixture
def empty_file(temp_dir: Path) -> Path:
    """Create an empty file."""
    file_path = temp_dir / "empty.txt"
    file_path.write_text("", encoding="utf-8")
    return file_path


@pytest.fixture
def whitespace_file(temp_dir: Path) -> Path:
    """Create a file with only whitespace."""
    file_path = temp_dir / "whitespace.txt"
    file_path.write_text("   \n\t\n   ", encoding="utf-8")
    return file_path
