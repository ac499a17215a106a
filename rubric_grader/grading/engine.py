"""
Grading orchestrator.

Runs a batch of submissions through the grading pipeline one at a time,
skipping submissions that already have a result, isolating per-submission
failures, pacing model calls, and accumulating the cost of the run.
"""

import logging
import math
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, NamedTuple, Optional, Union

from rubric_grader.config import Settings, get_settings
from rubric_grader.extractors.base import ExtractionError
from rubric_grader.grading.llm_client import GradingClient, LLMError, RetryCountdown
from rubric_grader.grading.prompt_builder import PromptBuilder
from rubric_grader.grading.repair import ResponseRepairer, UnrecoverableTruncationError
from rubric_grader.grading.scorer import ScoreCalculator, ScoringError
from rubric_grader.models import (
    FailedGrading,
    GradingResult,
    GradingStage,
    RubricTree,
    TaskSpec,
    TokenUsage,
    submission_id_from_filename,
)
from rubric_grader.rubric.normalizer import WeightNormalizer
from rubric_grader.rubric.parser import RubricParser
from rubric_grader.rubric.point_table import PointTable
from rubric_grader.rubric.validator import RubricValidator

logger = logging.getLogger(__name__)

GradingOutcome = Union[GradingResult, FailedGrading]

# Errors isolated to one submission; anything else stops the batch.
SUBMISSION_ERRORS = (
    LLMError,
    UnrecoverableTruncationError,
    ScoringError,
    ExtractionError,
    OSError,
)


class Submission(NamedTuple):
    """A submission to grade: its label (usually the file name) and a text loader."""

    label: str
    loader: Callable[[], str]

    @property
    def submission_id(self) -> str:
        return submission_id_from_filename(self.label)

    @classmethod
    def from_text(cls, label: str, text: str) -> "Submission":
        return cls(label, lambda: text)

    @classmethod
    def from_path(cls, path: Path | str, reader: Callable[[Path], str]) -> "Submission":
        """Read the file lazily, when the submission reaches the reading stage."""
        path = Path(path)
        return cls(path.name, lambda: reader(path))


class GradingProgress(NamedTuple):
    """Progress update for one submission within a batch."""

    submission_id: str
    stage: GradingStage
    index: int
    total: int
    message: str = ""


class GradingEvent(NamedTuple):
    submission_id: str
    stage: GradingStage
    message: str
    at: datetime


class GradingContext:
    """
    State owned by one grading run: running cost, call count and a
    structured event log of stage transitions.

    A context belongs to a single orchestrator; do not share one between
    runs that execute at the same time.
    """

    def __init__(self, log: logging.Logger | None = None):
        self.total_cost = 0.0
        self.calls = 0
        self.events: list[GradingEvent] = []
        self.logger = log or logger

    def record(self, submission_id: str, stage: GradingStage, message: str = "") -> None:
        self.events.append(
            GradingEvent(submission_id, stage, message, datetime.now(timezone.utc))
        )
        self.logger.debug("[%s] %s %s", submission_id, stage.value, message)

    def add_call(self, usage: Optional[TokenUsage], settings: Settings) -> float:
        """Count one model call and add its cost; returns the cost of the call."""
        self.calls += 1
        if usage is None:
            return 0.0
        cost = settings.prices.cost(usage)
        self.total_cost += cost
        self.logger.info(
            "Call cost $%.4f (%d prompt + %d completion tokens), run total $%.4f",
            cost,
            usage.prompt_tokens,
            usage.completion_tokens,
            self.total_cost,
        )
        return cost


def graded_submission_ids(existing: Iterable[Any]) -> set[str]:
    """
    Collect the submission ids that already have an entry.

    Accepts result models and persisted mappings. Mappings without a
    ``submissionId`` fall back to ``fileName`` or ``studentLabel`` with the
    extension stripped.
    """
    ids: set[str] = set()

    for entry in existing:
        if isinstance(entry, (GradingResult, FailedGrading)):
            ids.add(entry.submission_id)
            continue

        if not isinstance(entry, Mapping):
            continue

        submission_id = entry.get("submissionId") or entry.get("submission_id")
        if not submission_id:
            name = entry.get("fileName") or entry.get("studentLabel") or entry.get("student_label")
            if name:
                submission_id = submission_id_from_filename(str(name))

        if submission_id:
            ids.add(str(submission_id))

    return ids


class GradingOrchestrator:
    """
    Sequential batch grader.

    Each submission passes through Reading, Prompting, AwaitingModel,
    Repairing and Scoring to Done, or stops at Failed. One model call is in
    flight at a time, with a cooldown between successive calls.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: GradingClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
        context: GradingContext | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            settings: Configuration settings. Uses global settings if not provided.
            client: Generation client; created from settings if not provided.
            sleep: Blocking sleep function used for the cooldown.
            context: Run context; a fresh one if not provided.
        """
        self._settings = settings or get_settings()
        self._sleep = sleep
        self._client = client or GradingClient(self._settings, sleep=sleep)
        self._prompt_builder = PromptBuilder()
        self._calculator = ScoreCalculator()
        self._parser = RubricParser()
        self._normalizer = WeightNormalizer()
        self._validator = RubricValidator()
        self.context = context or GradingContext()
        self.rubric: RubricTree | None = None
        self.point_table: PointTable | None = None
        self._has_called_model = False

    def prepare_rubric(
        self,
        raw_text: str,
        cached: RubricTree | Mapping[str, Any] | None = None,
    ) -> RubricTree:
        """
        Produce the rubric tree for a run.

        A usable cached tree is reused; otherwise the text is parsed and
        normalized again.

        Raises:
            ParseError: If the rubric text yields no criteria.
        """
        if self._validator.is_cache_usable(cached):
            tree = cached if isinstance(cached, RubricTree) else RubricTree.model_validate(cached)
            logger.info("Using cached rubric (%d sections)", len(tree.sections))
        else:
            tree = self._normalizer.normalize(self._parser.parse(raw_text))
            _, issues = self._validator.validate(tree)
            for issue in issues:
                logger.warning("Rubric check: %s", issue)

        self.rubric = tree
        return tree

    def grade_all(
        self,
        rubric_or_tasks: RubricTree | TaskSpec,
        submissions: Iterable[Submission],
        existing_results: Iterable[Any] = (),
        on_progress: Optional[Callable[[GradingProgress], None]] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> list[GradingOutcome]:
        """
        Grade every submission that does not have a result yet.

        Args:
            rubric_or_tasks: Normalized rubric, or answer key and conversion table.
            submissions: Submissions in grading order.
            existing_results: Earlier results; their submissions are skipped.
            on_progress: Receives stage transitions and countdowns.
            should_continue: Checked before each submission; False stops the run.

        Returns:
            Newly produced results and failures, in submission order.
        """
        submissions = list(submissions)
        graded = graded_submission_ids(existing_results)
        total = len(submissions)

        if isinstance(rubric_or_tasks, TaskSpec):
            self.point_table = PointTable.parse(rubric_or_tasks.conversion_table)

        outcomes: list[GradingOutcome] = []

        for index, submission in enumerate(submissions):
            if should_continue is not None and not should_continue():
                logger.info("Grading stopped after %d of %d submissions", index, total)
                break

            submission_id = submission.submission_id
            if submission_id in graded:
                logger.info("Skipping %s, already graded", submission.label)
                continue

            outcomes.append(
                self.grade_submission(rubric_or_tasks, submission, on_progress, index, total)
            )
            graded.add(submission_id)

        failed = sum(1 for o in outcomes if isinstance(o, FailedGrading))
        logger.info(
            "Graded %d submissions (%d failed), total cost $%.4f",
            len(outcomes) - failed,
            failed,
            self.context.total_cost,
        )
        return outcomes

    def grade_submission(
        self,
        rubric_or_tasks: RubricTree | TaskSpec,
        submission: Submission,
        on_progress: Optional[Callable[[GradingProgress], None]] = None,
        index: int = 0,
        total: int = 1,
    ) -> GradingOutcome:
        """
        Run one submission through the grading stages.

        Returns:
            GradingResult on success, FailedGrading carrying the stage reached
            and the error message otherwise.
        """
        submission_id = submission.submission_id
        label = submission.label
        stage = GradingStage.PENDING

        def report(new_stage: GradingStage, message: str = "") -> None:
            self.context.record(submission_id, new_stage, message)
            if on_progress:
                on_progress(GradingProgress(submission_id, new_stage, index, total, message))

        def countdown(tick: RetryCountdown) -> None:
            report(
                GradingStage.AWAITING_MODEL,
                f"Rate limited, retrying in {tick.remaining_seconds}s "
                f"(attempt {tick.attempt}/{tick.max_attempts})",
            )

        try:
            stage = GradingStage.READING
            report(stage, f"Reading {label}")
            text = submission.loader()
            if not text.strip():
                logger.warning("Submission %s has no text", label)

            stage = GradingStage.PROMPTING
            report(stage)
            tree, task_spec, table = self._mode(rubric_or_tasks)
            pair = self._prompt_builder.build(tree, task_spec, text, label)
            system_prompt = pair.system_prompt
            if self._settings.append_conciseness_directive:
                system_prompt = self._prompt_builder.with_conciseness(system_prompt)

            self._cooldown(report)

            stage = GradingStage.AWAITING_MODEL
            report(stage, f"Sending request for {label}")
            self._has_called_model = True
            response = self._client.call(system_prompt, pair.user_prompt, on_progress=countdown)
            cost = self.context.add_call(response.usage, self._settings)

            stage = GradingStage.REPAIRING
            report(stage)
            required_key = "sections" if tree is not None else "tasks"
            data = ResponseRepairer(required_key).extract_json(response.text)

            stage = GradingStage.SCORING
            report(stage)
            if tree is not None:
                result = self._calculator.compute(tree, data, submission_id, label, cost=cost)
            else:
                result = self._calculator.compute_tasks(table, data, submission_id, label, cost=cost)

        except SUBMISSION_ERRORS as e:
            logger.error("Grading %s failed while %s: %s", label, stage.value, e)
            report(GradingStage.FAILED, str(e))
            return FailedGrading(
                submission_id=submission_id,
                student_label=label,
                stage=stage,
                error=str(e),
            )

        report(GradingStage.DONE, f"Grade {result.final_grade}")
        return result

    def _mode(
        self, rubric_or_tasks: RubricTree | TaskSpec
    ) -> tuple[RubricTree | None, TaskSpec | None, PointTable | None]:
        if isinstance(rubric_or_tasks, RubricTree):
            return rubric_or_tasks, None, None

        if self.point_table is None:
            self.point_table = PointTable.parse(rubric_or_tasks.conversion_table)
        return None, rubric_or_tasks, self.point_table

    def _cooldown(self, report: Callable[[GradingStage, str], None]) -> None:
        """Wait between successive model calls, counting down whole seconds."""
        seconds = self._settings.cooldown_seconds
        if not self._has_called_model or seconds <= 0:
            return

        whole = math.floor(seconds)
        fraction = seconds - whole
        if fraction:
            report(GradingStage.PROMPTING, f"Waiting {seconds:g}s before the next request")
            self._sleep(fraction)

        for remaining in range(whole, 0, -1):
            report(GradingStage.PROMPTING, f"Waiting {remaining}s before the next request")
            self._sleep(1)

    def apply_teacher_override(
        self, result: GradingResult, scores: Mapping[tuple[int, int], int]
    ) -> GradingResult:
        """
        Attach a teacher override computed from per-criterion grades.

        The model's result is kept as-is alongside the override.
        """
        override = self._calculator.rescore(result, scores)
        return result.model_copy(update={"teacher_override": override})

    def apply_teacher_points(
        self,
        result: GradingResult,
        points: Mapping[int, float],
        table: PointTable | None = None,
    ) -> GradingResult:
        """Attach a teacher override computed from per-task points."""
        table = table or self.point_table
        if table is None:
            raise ValueError("A point conversion table is required for task overrides")

        override = self._calculator.rescore_tasks(table, result, points)
        return result.model_copy(update={"teacher_override": override})

    def explain(
        self,
        result: GradingResult,
        task_index: int,
        question: str | None = None,
        submission_text: str | None = None,
        image: str | None = None,
    ) -> str:
        """
        Ask the model about one graded task.

        Without a question the model explains what the answer is missing.
        An attached image (base64 or data URL) is sent with the request.

        Raises:
            ValueError: If the task index does not exist.
            LLMError: If the model call fails.
        """
        if not 0 <= task_index < len(result.tasks):
            raise ValueError(f"No task at index {task_index}")

        pair = self._prompt_builder.build_followup(
            result.tasks[task_index],
            question=question,
            submission_text=submission_text,
            has_image=image is not None,
        )
        self._has_called_model = True
        response = self._client.call(
            pair.system_prompt,
            pair.user_prompt,
            attachments=[image] if image else None,
        )
        self.context.add_call(response.usage, self._settings)
        return response.text

    def health_check(self) -> bool:
        """
        Check if the generation service is reachable.

        Returns:
            True if the API answers.
        """
        return self._client.health_check()
