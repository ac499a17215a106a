"""
Score calculation for parsed grading output.

Aligns the model's output with the rubric tree strictly by position,
validates every score against the grade scale, and computes weighted
subtotals, the total and the final grade. Task mode sums awarded points
and converts them with the point table.
"""

import logging
import math
from typing import Any, Mapping, Optional

from rubric_grader.models import (
    GRADE_SCALE,
    GradingResult,
    RubricTree,
    ScoredCriterion,
    ScoredSection,
    TaskScore,
)
from rubric_grader.rubric.point_table import PointTable

logger = logging.getLogger(__name__)


class ScoringError(Exception):
    """Raised when the model output cannot be scored."""

    def __init__(self, message: str, raw_response: str | None = None):
        self.raw_response = raw_response
        super().__init__(message)


class MissingSectionError(ScoringError):
    """The model output has no section at a position the rubric has one."""

    def __init__(self, index: int, name: str, raw_response: str | None = None):
        self.index = index
        self.name = name
        super().__init__(
            f"Model output is missing section {index + 1} ({name!r})", raw_response
        )


class MissingCriterionError(ScoringError):
    """The model output has no criterion at a position the rubric has one."""

    def __init__(
        self,
        section_index: int,
        criterion_index: int,
        name: str,
        raw_response: str | None = None,
    ):
        self.section_index = section_index
        self.criterion_index = criterion_index
        self.name = name
        super().__init__(
            f"Model output is missing criterion {criterion_index + 1} ({name!r}) "
            f"in section {section_index + 1}",
            raw_response,
        )


class InvalidScoreValue(ValueError):
    """A score that is not on the grade scale."""

    def __init__(self, value: Any, criterion: str):
        self.value = value
        self.criterion = criterion
        super().__init__(f"Invalid score {value!r} for criterion {criterion!r}")


def round_to_grade_scale(value: float) -> int:
    """
    Snap a weighted total to the nearest grade on the scale.

    Ties go to the lower grade: 5.5 is as close to 4 as to 7 and gives 4.
    """
    return min(GRADE_SCALE, key=lambda grade: abs(value - grade))


class ScoreCalculator:
    """
    Computes GradingResults from parsed model output.

    Sections and criteria are matched by index, never by name: the model is
    told to return them in the order it was given.
    """

    def compute(
        self,
        tree: RubricTree,
        ai_output: Mapping[str, Any],
        submission_id: str,
        student_label: str,
        cost: float = 0.0,
    ) -> GradingResult:
        """
        Score rubric-mode output.

        Args:
            tree: The normalized rubric the prompt was built from.
            ai_output: Parsed (possibly repaired) model output.
            submission_id: Identity of the submission.
            student_label: The label the model was told to echo.
            cost: Cost of the model call that produced the output.

        Returns:
            GradingResult in rubric mode.

        Raises:
            ScoringError: If the output has no sections list.
            MissingSectionError: If a rubric section has no counterpart.
            MissingCriterionError: If a rubric criterion has no counterpart.
        """
        self._check_label(ai_output, student_label)

        ai_sections = ai_output.get("sections")
        if not isinstance(ai_sections, list):
            raise ScoringError("Model output has no 'sections' list")

        if len(ai_sections) > len(tree.sections):
            logger.warning(
                "Model returned %d sections for a %d-section rubric; extra sections ignored",
                len(ai_sections),
                len(tree.sections),
            )

        scored_sections: list[ScoredSection] = []

        for si, section in enumerate(tree.sections):
            if si >= len(ai_sections) or not isinstance(ai_sections[si], dict):
                raise MissingSectionError(si, section.name)

            ai_criteria = ai_sections[si].get("criteria")
            if not isinstance(ai_criteria, list):
                ai_criteria = []

            scored: list[ScoredCriterion] = []
            for ci, criterion in enumerate(section.criteria):
                if ci >= len(ai_criteria) or not isinstance(ai_criteria[ci], dict):
                    raise MissingCriterionError(si, ci, criterion.name)

                item = ai_criteria[ci]
                echoed = item.get("name")
                if echoed and str(echoed).strip().lower() != criterion.name.lower():
                    logger.debug(
                        "Criterion %d.%d came back as %r, expected %r",
                        si + 1,
                        ci + 1,
                        echoed,
                        criterion.name,
                    )

                try:
                    score = self.validate_score(item.get("score"), criterion.name)
                except InvalidScoreValue as e:
                    logger.warning("%s; using 0", e)
                    score = 0

                scored.append(
                    self._scored_criterion(
                        criterion.name, criterion.weight or 0.0, score, item.get("feedback")
                    )
                )

            scored_sections.append(self._scored_section(section.name, section.weight, scored))

        total = sum(s.subtotal for s in scored_sections)
        rationale = str(ai_output.get("overallAssessment") or "")

        return GradingResult(
            submission_id=submission_id,
            student_label=student_label,
            mode="rubric",
            sections=scored_sections,
            total_score=total,
            final_grade=round_to_grade_scale(total),
            rationale=rationale,
            cost=cost,
        )

    def rescore(
        self, result: GradingResult, scores: Mapping[tuple[int, int], int]
    ) -> GradingResult:
        """
        Compute a teacher override for a rubric-mode result.

        Args:
            result: The model's result; not modified.
            scores: Teacher grades keyed by (section index, criterion index).
                Criteria without an entry keep the model's score.

        Returns:
            A new GradingResult holding the teacher's scores.

        Raises:
            ValueError: If an index does not exist or a score is off the scale.
        """
        for si, ci in scores:
            if not (0 <= si < len(result.sections) and 0 <= ci < len(result.sections[si].criteria)):
                raise ValueError(f"No criterion at section {si + 1}, criterion {ci + 1}")

        sections: list[ScoredSection] = []
        for si, section in enumerate(result.sections):
            scored: list[ScoredCriterion] = []
            for ci, criterion in enumerate(section.criteria):
                score = criterion.score
                if (si, ci) in scores:
                    score = self.validate_score(scores[(si, ci)], criterion.name)
                scored.append(
                    self._scored_criterion(criterion.name, criterion.weight, score, criterion.feedback)
                )
            sections.append(self._scored_section(section.name, section.weight, scored))

        total = sum(s.subtotal for s in sections)

        return GradingResult(
            submission_id=result.submission_id,
            student_label=result.student_label,
            mode="rubric",
            sections=sections,
            total_score=total,
            final_grade=round_to_grade_scale(total),
            rationale=result.rationale,
        )

    def compute_tasks(
        self,
        table: PointTable,
        ai_output: Mapping[str, Any],
        submission_id: str,
        student_label: str,
        cost: float = 0.0,
    ) -> GradingResult:
        """
        Score task-mode output.

        The total is always the sum of awarded points and the grade always
        comes from the conversion table; the model's own total and grade are
        only compared against them.

        Raises:
            ScoringError: If the output has no tasks list.
        """
        self._check_label(ai_output, student_label)

        ai_tasks = ai_output.get("tasks")
        if not isinstance(ai_tasks, list):
            raise ScoringError("Model output has no 'tasks' list")

        tasks: list[TaskScore] = []
        for i, item in enumerate(ai_tasks):
            if not isinstance(item, dict):
                logger.warning("Task %d is not an object, skipping", i + 1)
                continue

            number = item.get("number") if item.get("number") is not None else i + 1
            tasks.append(
                TaskScore(
                    number=number,
                    student_answer=str(item.get("studentAnswer") or ""),
                    correct_answer=str(item.get("correctAnswer") or ""),
                    awarded_points=self._points(item.get("awardedPoints"), f"task {number} awardedPoints"),
                    max_points=self._points(item.get("maxPoints"), f"task {number} maxPoints"),
                    feedback=str(item.get("feedback") or ""),
                )
            )

        total = sum(t.awarded_points for t in tasks)

        reported_total = _as_number(ai_output.get("totalPoints"))
        if reported_total is not None and abs(reported_total - total) > 1e-6:
            logger.warning(
                "Model reported %s total points, tasks sum to %s; using the sum",
                reported_total,
                total,
            )

        final_grade = table.grade_for(total)

        reported_grade = _as_number(ai_output.get("grade"))
        if reported_grade is not None and reported_grade != final_grade:
            logger.info(
                "Model reported grade %s, conversion table gives %d for %s points",
                reported_grade,
                final_grade,
                total,
            )

        return GradingResult(
            submission_id=submission_id,
            student_label=student_label,
            mode="tasks",
            tasks=tasks,
            total_score=total,
            final_grade=final_grade,
            rationale=str(ai_output.get("gradeRationale") or ""),
            overall_feedback=str(ai_output.get("overallFeedback") or ""),
            cost=cost,
        )

    def rescore_tasks(
        self, table: PointTable, result: GradingResult, points: Mapping[int, float]
    ) -> GradingResult:
        """
        Compute a teacher override for a task-mode result.

        Args:
            table: Conversion table for the final grade.
            result: The model's result; not modified.
            points: Teacher points keyed by task index, clamped to
                ``[0, max_points]`` of that task.

        Raises:
            ValueError: If a task index does not exist.
        """
        for index in points:
            if not 0 <= index < len(result.tasks):
                raise ValueError(f"No task at index {index}")

        tasks: list[TaskScore] = []
        for i, task in enumerate(result.tasks):
            if i in points:
                awarded = min(max(float(points[i]), 0.0), task.max_points)
                if awarded != points[i]:
                    logger.warning(
                        "Teacher points %s for task %s clamped to %s", points[i], task.number, awarded
                    )
                task = task.model_copy(update={"awarded_points": awarded})
            tasks.append(task)

        total = sum(t.awarded_points for t in tasks)

        return GradingResult(
            submission_id=result.submission_id,
            student_label=result.student_label,
            mode="tasks",
            tasks=tasks,
            total_score=total,
            final_grade=table.grade_for(total),
            rationale=result.rationale,
            overall_feedback=result.overall_feedback,
        )

    @staticmethod
    def validate_score(value: Any, criterion: str) -> int:
        """
        Read a grade-scale score, accepting "7", "02" or 7.0.

        Raises:
            InvalidScoreValue: If the value is not on the grade scale.
        """
        number = _as_number(value)
        if number is None or not float(number).is_integer() or int(number) not in GRADE_SCALE:
            raise InvalidScoreValue(value, criterion)
        return int(number)

    @staticmethod
    def _points(value: Any, field: str) -> float:
        number = _as_number(value)
        if number is None:
            if value is not None:
                logger.warning("Invalid point value %r for %s; using 0", value, field)
            return 0.0
        if number < 0:
            logger.warning("Negative point value %s for %s; using 0", number, field)
            return 0.0
        return float(number)

    @staticmethod
    def _scored_criterion(
        name: str, weight: float, score: int, feedback: Optional[Any]
    ) -> ScoredCriterion:
        return ScoredCriterion(
            name=name,
            weight=weight,
            score=score,
            weighted_score=score * weight / 100.0,
            feedback=str(feedback or ""),
        )

    @staticmethod
    def _scored_section(
        name: str, weight: Optional[float], criteria: list[ScoredCriterion]
    ) -> ScoredSection:
        return ScoredSection(
            name=name,
            weight=weight if weight is not None else sum(c.weight for c in criteria),
            criteria=criteria,
            subtotal=sum(c.weighted_score for c in criteria),
        )

    @staticmethod
    def _check_label(ai_output: Mapping[str, Any], student_label: str) -> None:
        echoed = ai_output.get("studentLabel")
        if echoed is not None and echoed != student_label:
            logger.warning(
                "Model returned student label %r, correcting to %r", echoed, student_label
            )


def _as_number(value: Any) -> Optional[float]:
    """Parse ints, floats and numeric strings ("7", "02", "7,5"); None otherwise."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip().replace(",", "."))
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None
