"""
Unit tests for the grading orchestrator.

The generation client is a MagicMock and sleeping is recorded, so batch
behaviour (skipping, pacing, failure isolation, cost) is tested without
network access or delays.
"""

from typing import Any
from unittest.mock import MagicMock

import pytest

from rubric_grader.config import Settings
from rubric_grader.extractors import ExtractionError
from rubric_grader.grading import (
    GradingOrchestrator,
    GradingProgress,
    PromptBuilder,
    ScoreCalculator,
    Submission,
)
from rubric_grader.grading.engine import GradingContext, graded_submission_ids
from rubric_grader.grading.llm_client import UpstreamTimeout
from rubric_grader.models import FailedGrading, GradingResult, GradingStage, RubricTree, TaskSpec
from rubric_grader.rubric import ParseError, PointTable

from conftest import model_response


def _submissions(*labels: str) -> list[Submission]:
    return [Submission.from_text(label, f"Essay by {label}") for label in labels]


@pytest.fixture
def orchestrator(test_settings: Settings, mock_client: MagicMock, fake_sleep) -> GradingOrchestrator:
    return GradingOrchestrator(test_settings, client=mock_client, sleep=fake_sleep)


class TestSubmission:
    """Tests for Submission."""

    def test_submission_id_drops_extension(self) -> None:
        assert Submission.from_text("anna.hansen.docx", "").submission_id == "anna.hansen"

    def test_from_path_reads_lazily(self, sample_md_file) -> None:
        """Test the file is only read when the loader runs."""
        reader = MagicMock(return_value="text")

        submission = Submission.from_path(sample_md_file, reader)

        assert submission.label == "anna.md"
        reader.assert_not_called()
        assert submission.loader() == "text"
        reader.assert_called_once_with(sample_md_file)


class TestGradedSubmissionIds:
    """Tests for graded_submission_ids."""

    def test_models_and_mappings(self) -> None:
        """Test ids come from models, camelCase entries and legacy file names."""
        failed = FailedGrading(submission_id="carl", student_label="carl.pdf", stage=GradingStage.READING, error="x")

        ids = graded_submission_ids(
            [
                failed,
                {"submissionId": "anna"},
                {"fileName": "bo.docx"},
                {"studentLabel": "dora.txt"},
                {"unrelated": True},
                "not an entry",
            ]
        )

        assert ids == {"carl", "anna", "bo", "dora"}


class TestGradingContext:
    """Tests for GradingContext."""

    def test_add_call_accumulates_cost(self, test_settings: Settings) -> None:
        context = GradingContext()
        usage = model_response({}).usage

        first = context.add_call(usage, test_settings)
        context.add_call(usage, test_settings)

        assert first == pytest.approx(0.0045)
        assert context.total_cost == pytest.approx(0.009)
        assert context.calls == 2

    def test_missing_usage_costs_nothing(self, test_settings: Settings) -> None:
        context = GradingContext()

        assert context.add_call(None, test_settings) == 0.0
        assert context.calls == 1
        assert context.total_cost == 0.0


class TestGradeAll:
    """Tests for GradingOrchestrator.grade_all."""

    def test_grades_every_submission(
        self, orchestrator: GradingOrchestrator, sample_tree: RubricTree, mock_client: MagicMock
    ) -> None:
        """Test each submission yields a result in order."""
        outcomes = orchestrator.grade_all(sample_tree, _submissions("anna.docx", "bo.docx"))

        assert [o.submission_id for o in outcomes] == ["anna", "bo"]
        assert all(isinstance(o, GradingResult) for o in outcomes)
        assert outcomes[1].student_label == "bo.docx"
        assert mock_client.call.call_count == 2

    def test_skips_existing_results(
        self,
        orchestrator: GradingOrchestrator,
        sample_tree: RubricTree,
        mock_client: MagicMock,
    ) -> None:
        """Test a submission with a stored result is not graded again."""
        outcomes = orchestrator.grade_all(
            sample_tree,
            _submissions("anna.docx", "bo.docx", "carl.docx"),
            existing_results=[{"submissionId": "bo", "finalGrade": 7}],
        )

        assert [o.submission_id for o in outcomes] == ["anna", "carl"]
        assert mock_client.call.call_count == 2

    def test_rerun_is_idempotent(
        self, orchestrator: GradingOrchestrator, sample_tree: RubricTree, mock_client: MagicMock
    ) -> None:
        """Test running a graded batch again makes no calls."""
        batch = _submissions("anna.docx", "bo.docx")
        first = orchestrator.grade_all(sample_tree, batch)

        second = orchestrator.grade_all(sample_tree, batch, existing_results=first)

        assert second == []
        assert mock_client.call.call_count == 2

    def test_duplicate_ids_graded_once(
        self, orchestrator: GradingOrchestrator, sample_tree: RubricTree, mock_client: MagicMock
    ) -> None:
        """Test two files with the same stem in one batch are graded once."""
        outcomes = orchestrator.grade_all(sample_tree, _submissions("anna.docx", "anna.pdf"))

        assert len(outcomes) == 1
        assert mock_client.call.call_count == 1

    def test_cooldown_between_calls(
        self, orchestrator: GradingOrchestrator, sample_tree: RubricTree, sleeps: list[float]
    ) -> None:
        """Test the cooldown runs before every call except the first."""
        orchestrator.grade_all(sample_tree, _submissions("anna.docx", "bo.docx", "carl.docx"))

        assert sleeps == [1] * 10

    def test_no_cooldown_when_disabled(
        self,
        test_settings: Settings,
        mock_client: MagicMock,
        fake_sleep,
        sleeps: list[float],
        sample_tree: RubricTree,
    ) -> None:
        settings = test_settings.model_copy(update={"cooldown_seconds": 0.0})
        orchestrator = GradingOrchestrator(settings, client=mock_client, sleep=fake_sleep)

        orchestrator.grade_all(sample_tree, _submissions("anna.docx", "bo.docx"))

        assert sleeps == []

    def test_fractional_cooldown(
        self,
        test_settings: Settings,
        mock_client: MagicMock,
        fake_sleep,
        sleeps: list[float],
        sample_tree: RubricTree,
    ) -> None:
        """Test the part of a second is slept before the whole seconds."""
        settings = test_settings.model_copy(update={"cooldown_seconds": 2.5})
        orchestrator = GradingOrchestrator(settings, client=mock_client, sleep=fake_sleep)

        orchestrator.grade_all(sample_tree, _submissions("anna.docx", "bo.docx"))

        assert sleeps == [0.5, 1, 1]

    def test_failure_is_isolated(
        self,
        orchestrator: GradingOrchestrator,
        sample_tree: RubricTree,
        mock_client: MagicMock,
        rubric_ai_output: dict[str, Any],
    ) -> None:
        """Test one failing submission does not stop the batch."""
        mock_client.call.side_effect = [
            model_response(rubric_ai_output),
            UpstreamTimeout("Request timed out"),
            model_response(rubric_ai_output),
        ]

        outcomes = orchestrator.grade_all(sample_tree, _submissions("anna.docx", "bo.docx", "carl.docx"))

        assert isinstance(outcomes[0], GradingResult)
        assert isinstance(outcomes[1], FailedGrading)
        assert outcomes[1].stage == GradingStage.AWAITING_MODEL
        assert outcomes[1].error == "Request timed out"
        assert isinstance(outcomes[2], GradingResult)

    def test_reading_failure(
        self, orchestrator: GradingOrchestrator, sample_tree: RubricTree, mock_client: MagicMock
    ) -> None:
        """Test an unreadable submission fails before any model call."""

        def unreadable() -> str:
            raise ExtractionError("File is corrupted", "bo.docx")

        outcomes = orchestrator.grade_all(sample_tree, [Submission("bo.docx", unreadable)])

        assert outcomes[0].stage == GradingStage.READING
        mock_client.call.assert_not_called()

    def test_unparseable_response(
        self, orchestrator: GradingOrchestrator, sample_tree: RubricTree, mock_client: MagicMock
    ) -> None:
        """Test a response without JSON fails at the repairing stage."""
        mock_client.call.return_value = model_response("I am unable to grade this.")

        outcomes = orchestrator.grade_all(sample_tree, _submissions("anna.docx"))

        assert outcomes[0].stage == GradingStage.REPAIRING

    def test_incomplete_response(
        self,
        orchestrator: GradingOrchestrator,
        sample_tree: RubricTree,
        mock_client: MagicMock,
        rubric_ai_output: dict[str, Any],
    ) -> None:
        """Test a response missing a section fails at the scoring stage."""
        del rubric_ai_output["sections"][1]
        mock_client.call.return_value = model_response(rubric_ai_output)

        outcomes = orchestrator.grade_all(sample_tree, _submissions("anna.docx"))

        assert outcomes[0].stage == GradingStage.SCORING
        assert "missing section 2" in outcomes[0].error

    def test_cost_accumulates(
        self, orchestrator: GradingOrchestrator, sample_tree: RubricTree
    ) -> None:
        """Test each result carries its call cost and the context the sum."""
        outcomes = orchestrator.grade_all(sample_tree, _submissions("anna.docx", "bo.docx"))

        assert outcomes[0].cost == pytest.approx(0.0045)
        assert orchestrator.context.total_cost == pytest.approx(0.009)
        assert orchestrator.context.calls == 2

    def test_should_continue_stops_batch(
        self, orchestrator: GradingOrchestrator, sample_tree: RubricTree
    ) -> None:
        """Test a stop request is honoured between submissions."""
        answers = iter([True, False])

        outcomes = orchestrator.grade_all(
            sample_tree,
            _submissions("anna.docx", "bo.docx"),
            should_continue=lambda: next(answers),
        )

        assert len(outcomes) == 1

    def test_progress_stages(
        self, orchestrator: GradingOrchestrator, sample_tree: RubricTree
    ) -> None:
        """Test progress reports every stage in order."""
        updates: list[GradingProgress] = []

        orchestrator.grade_all(sample_tree, _submissions("anna.docx", "bo.docx"), on_progress=updates.append)

        first = [u.stage for u in updates if u.submission_id == "anna"]
        assert first == [
            GradingStage.READING,
            GradingStage.PROMPTING,
            GradingStage.AWAITING_MODEL,
            GradingStage.REPAIRING,
            GradingStage.SCORING,
            GradingStage.DONE,
        ]
        waits = [u.message for u in updates if u.submission_id == "bo" and u.message.startswith("Waiting")]
        assert waits[0] == "Waiting 5s before the next request"
        assert len(waits) == 5
        assert all(u.total == 2 for u in updates)
        assert len(orchestrator.context.events) == len(updates)

    def test_conciseness_directive(
        self,
        test_settings: Settings,
        mock_client: MagicMock,
        fake_sleep,
        sample_tree: RubricTree,
    ) -> None:
        """Test the directive follows the setting."""
        GradingOrchestrator(test_settings, client=mock_client, sleep=fake_sleep).grade_all(
            sample_tree, _submissions("anna.docx")
        )
        assert mock_client.call.call_args.args[0].endswith(PromptBuilder.CONCISENESS_DIRECTIVE)

        settings = test_settings.model_copy(update={"append_conciseness_directive": False})
        GradingOrchestrator(settings, client=mock_client, sleep=fake_sleep).grade_all(
            sample_tree, _submissions("bo.docx")
        )
        assert PromptBuilder.CONCISENESS_DIRECTIVE not in mock_client.call.call_args.args[0]

    def test_task_mode(
        self,
        orchestrator: GradingOrchestrator,
        task_spec: TaskSpec,
        mock_client: MagicMock,
        task_ai_output: dict[str, Any],
    ) -> None:
        """Test task mode grades points with the parsed conversion table."""
        mock_client.call.return_value = model_response(task_ai_output)

        outcomes = orchestrator.grade_all(task_spec, _submissions("bo.docx"))

        result = outcomes[0]
        assert result.mode == "tasks"
        assert result.total_score == 3
        assert result.final_grade == 0
        assert len(orchestrator.point_table) == 7
        assert "ANSWER KEY:" in mock_client.call.call_args.args[1]


class TestPrepareRubric:
    """Tests for GradingOrchestrator.prepare_rubric."""

    def test_parses_and_normalizes(self, orchestrator: GradingOrchestrator, numbered_rubric_text: str) -> None:
        tree = orchestrator.prepare_rubric(numbered_rubric_text)

        assert tree.is_fully_weighted
        assert orchestrator.rubric is tree

    def test_uses_usable_cache(self, orchestrator: GradingOrchestrator, sample_tree: RubricTree) -> None:
        """Test a complete cached tree is used without parsing."""
        cached = sample_tree.model_dump(mode="json", by_alias=True)

        tree = orchestrator.prepare_rubric("Changed text nobody parses", cached=cached)

        assert tree == sample_tree

    def test_incomplete_cache_is_rederived(
        self, orchestrator: GradingOrchestrator, sample_tree: RubricTree, sample_rubric_text: str
    ) -> None:
        """Test a cache with an unset weight is replaced by a fresh parse."""
        sample_tree.sections[0].criteria[0].weight = None

        tree = orchestrator.prepare_rubric(sample_rubric_text, cached=sample_tree)

        assert tree.sections[0].criteria[0].weight == 30.0

    def test_parse_error_propagates(self, orchestrator: GradingOrchestrator) -> None:
        with pytest.raises(ParseError):
            orchestrator.prepare_rubric("")


class TestTeacherOverrides:
    """Tests for teacher overrides."""

    def test_rubric_override(self, orchestrator: GradingOrchestrator, sample_tree: RubricTree) -> None:
        """Test the override is attached and the model's result kept."""
        result = orchestrator.grade_all(sample_tree, _submissions("anna.docx"))[0]

        updated = orchestrator.apply_teacher_override(result, {(1, 0): 12})

        assert updated.final_grade == 7
        assert updated.teacher_override.final_grade == 10
        assert updated.effective is updated.teacher_override
        assert result.teacher_override is None

    def test_task_override_uses_parsed_table(
        self,
        orchestrator: GradingOrchestrator,
        task_spec: TaskSpec,
        mock_client: MagicMock,
        task_ai_output: dict[str, Any],
    ) -> None:
        """Test task overrides reuse the table from the batch."""
        mock_client.call.return_value = model_response(task_ai_output)
        result = orchestrator.grade_all(task_spec, _submissions("bo.docx"))[0]

        updated = orchestrator.apply_teacher_points(result, {2: 5})

        assert updated.teacher_override.total_score == 8
        assert updated.teacher_override.final_grade == 0

    def test_task_override_requires_table(self, orchestrator: GradingOrchestrator) -> None:
        result = GradingResult(submission_id="bo", student_label="bo.docx", mode="tasks", total_score=0, final_grade=-3)

        with pytest.raises(ValueError, match="conversion table"):
            orchestrator.apply_teacher_points(result, {0: 1})


class TestExplain:
    """Tests for GradingOrchestrator.explain."""

    @pytest.fixture
    def task_result(self, task_ai_output: dict[str, Any]) -> GradingResult:
        return ScoreCalculator().compute_tasks(PointTable([]), task_ai_output, "bo", "bo.docx")

    def test_explain(
        self,
        orchestrator: GradingOrchestrator,
        mock_client: MagicMock,
        task_result: GradingResult,
        sleeps: list[float],
    ) -> None:
        """Test the answer text is returned without a cooldown."""
        mock_client.call.return_value = model_response("The sign of y is wrong.")

        answer = orchestrator.explain(task_result, 1)

        assert answer == "The sign of y is wrong."
        assert "Task 1b" in mock_client.call.call_args.args[1]
        assert mock_client.call.call_args.kwargs["attachments"] is None
        assert sleeps == []

    def test_explain_with_image(
        self, orchestrator: GradingOrchestrator, mock_client: MagicMock, task_result: GradingResult
    ) -> None:
        mock_client.call.return_value = model_response("The drawing lacks a scale.")

        orchestrator.explain(task_result, 2, question="Is the drawing right?", image="aGVsbG8=")

        assert mock_client.call.call_args.kwargs["attachments"] == ["aGVsbG8="]

    def test_explain_bad_index(self, orchestrator: GradingOrchestrator, task_result: GradingResult) -> None:
        with pytest.raises(ValueError, match="No task at index 5"):
            orchestrator.explain(task_result, 5)


class TestHealthCheck:
    """Tests for GradingOrchestrator.health_check."""

    def test_delegates_to_client(self, orchestrator: GradingOrchestrator, mock_client: MagicMock) -> None:
        assert orchestrator.health_check()
        mock_client.health_check.return_value = False
        assert not orchestrator.health_check()
