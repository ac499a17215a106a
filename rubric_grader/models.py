"""
Pydantic models for the rubric grader.

These models define the schemas for:
- The weighted rubric tree (sections of criteria, no fixed vocabulary)
- Grading results in rubric mode and task (points) mode
- Model responses and token usage
- Extracted documents

Results serialize with camelCase aliases, which is the persisted shape
(``submissionId``, ``totalScore``, ``finalGrade``, ...).
"""

from datetime import datetime, timezone
from enum import Enum
from hashlib import sha256
from pathlib import PurePath
from typing import Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
)
from pydantic.alias_generators import to_camel

# The Danish 7-step scale used for rubric-mode scores and final grades.
GRADE_SCALE: tuple[int, ...] = (-3, 0, 2, 4, 7, 10, 12)

MAX_DESCRIPTION_LENGTH = 500


def submission_id_from_filename(filename: str) -> str:
    """Derive the stable submission identity from a file name (extension dropped)."""
    name = PurePath(filename).name
    stem, dot, _ = name.rpartition(".")
    return stem if dot and stem else name


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _FrozenCamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ==============================================================================
# Rubric Models
# ==============================================================================


class Criterion(_CamelModel):
    """
    A single weighted criterion.

    ``weight`` is a percentage of the whole rubric and stays ``None`` until
    the normalizer fills it in.
    """

    name: str = Field(..., min_length=1)

    weight: Optional[float] = Field(default=None, ge=0, le=100)

    description: str = Field(default="")

    @field_validator("description")
    @classmethod
    def bound_description(cls, v: str) -> str:
        """Descriptions are capped at 500 characters."""
        return v[:MAX_DESCRIPTION_LENGTH].strip()


class Section(_CamelModel):
    """A heading-delimited group of criteria carrying an aggregate weight."""

    name: str = Field(..., min_length=1)

    weight: Optional[float] = Field(default=None, ge=0, le=100)

    weight_stated: bool = Field(
        default=False,
        description="True when the weight came from the document, not the normalizer",
    )

    criteria: list[Criterion] = Field(default_factory=list)


class RubricTree(_CamelModel):
    """
    Ordered sections of a rubric document.

    Sections and criteria keep document order; grading output is aligned
    with them by index.
    """

    sections: list[Section] = Field(default_factory=list)

    @property
    def total_weight(self) -> float:
        """Sum of section weights (unset weights count as zero)."""
        return sum(s.weight or 0.0 for s in self.sections)

    @property
    def criterion_count(self) -> int:
        return sum(len(s.criteria) for s in self.sections)

    @property
    def is_fully_weighted(self) -> bool:
        return all(
            s.weight is not None and all(c.weight is not None for c in s.criteria)
            for s in self.sections
        )


class TaskSpec(_CamelModel):
    """Inputs for point-based grading: the answer key and the point-to-grade table."""

    answer_key: str = Field(..., min_length=1)

    conversion_table: str = Field(..., min_length=1)


# ==============================================================================
# Generation Service Models
# ==============================================================================


class TokenUsage(_FrozenCamelModel):
    prompt_tokens: int = Field(default=0, ge=0)

    completion_tokens: int = Field(default=0, ge=0)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ModelResponse(_FrozenCamelModel):
    """Generated text plus token usage (``None`` when the service omitted it)."""

    text: str

    usage: Optional[TokenUsage] = None


# ==============================================================================
# Grading Result Models
# ==============================================================================


class GradingStage(str, Enum):
    """Stages a submission passes through during a batch run."""

    PENDING = "pending"
    READING = "reading"
    PROMPTING = "prompting"
    AWAITING_MODEL = "awaiting_model"
    REPAIRING = "repairing"
    SCORING = "scoring"
    DONE = "done"
    FAILED = "failed"


class ScoredCriterion(_FrozenCamelModel):
    name: str

    weight: float

    score: int = Field(..., description="One of the grade scale values")

    weighted_score: float

    feedback: str = ""


class ScoredSection(_FrozenCamelModel):
    name: str

    weight: float

    criteria: list[ScoredCriterion] = Field(default_factory=list)

    subtotal: float = 0.0


class TaskScore(_FrozenCamelModel):
    """Points awarded for one task of a point-based exam."""

    number: str

    student_answer: str = ""

    correct_answer: str = ""

    awarded_points: float = Field(default=0.0, ge=0)

    max_points: float = Field(default=0.0, ge=0)

    feedback: str = ""

    @field_validator("number", mode="before")
    @classmethod
    def number_as_text(cls, v: object) -> str:
        """Task numbers come back as ints or labels like '3b'."""
        return str(v)


class GradingResult(_FrozenCamelModel):
    """
    Complete grading result for one submission.

    ``teacher_override`` has the same shape and supersedes this result for
    display and persistence; this result itself is never modified.
    """

    submission_id: str

    student_label: str

    mode: Literal["rubric", "tasks"] = "rubric"

    sections: list[ScoredSection] = Field(default_factory=list)

    tasks: list[TaskScore] = Field(default_factory=list)

    total_score: float = Field(
        ...,
        description="Weighted criteria sum (rubric mode) or point total (task mode), unrounded",
    )

    final_grade: int

    rationale: str = ""

    overall_feedback: str = ""

    cost: float = Field(default=0.0, ge=0)

    teacher_override: Optional["GradingResult"] = None

    graded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def effective(self) -> "GradingResult":
        """The result to display: the teacher's override when present."""
        return self.teacher_override or self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def max_points(self) -> float:
        """Maximum achievable points (task mode only)."""
        return sum(t.max_points for t in self.tasks)


class FailedGrading(_FrozenCamelModel):
    """A submission that could not be graded, with enough context to retry it."""

    submission_id: str

    student_label: str

    stage: GradingStage

    error: str

    failed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ==============================================================================
# Document Extraction Models
# ==============================================================================


class ExtractedDocument(BaseModel):
    """
    Result of extracting text from a document.

    Contains the extracted text and metadata about the source.
    """

    model_config = ConfigDict(frozen=True)

    content: str

    source_path: str

    file_extension: str

    @computed_field  # type: ignore[prop-decorator]
    @property
    def character_count(self) -> int:
        return len(self.content)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def content_hash(self) -> str:
        """SHA-256 of the content, used to detect re-uploaded rubrics."""
        return sha256(self.content.encode("utf-8")).hexdigest()

    @property
    def is_empty(self) -> bool:
        """Check if extracted content is empty or whitespace-only."""
        return len(self.content.strip()) == 0
