"""
Rubric Grader CLI Application.

Provides a command-line interface for parsing rubrics and grading batches
of submissions with a language model, in rubric mode or task (points) mode.
"""

import base64
import json
import logging
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from rubric_grader.config import Settings, get_settings
from rubric_grader.extractors import ExtractionError, extract_document, read_text
from rubric_grader.grading import (
    GradingOrchestrator,
    GradingProgress,
    LLMError,
    Submission,
)
from rubric_grader.logging_setup import setup_logging
from rubric_grader.models import FailedGrading, GradingResult, GradingStage, RubricTree, TaskSpec
from rubric_grader.output import ResultStore
from rubric_grader.rubric import (
    ParseError,
    PointTable,
    RubricParser,
    RubricValidator,
    WeightNormalizer,
)

# Create Typer app
app = typer.Typer(
    name="rubric-grader",
    help="AI-assisted exam grading against weighted rubrics",
    add_completion=False,
)

console = Console()

logger = logging.getLogger(__name__)

# Set when --log-level is given; otherwise LOG_LEVEL from the settings applies.
_cli_log_level: Optional[str] = None


@app.callback()
def main(
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="DEBUG, INFO, WARNING or ERROR"),
    ] = None,
    log_file: Annotated[
        Optional[Path],
        typer.Option("--log-file", help="Also write full log records to this file"),
    ] = None,
) -> None:
    """Configure logging before any command runs."""
    global _cli_log_level
    _cli_log_level = log_level.upper() if log_level else None
    setup_logging(level=_cli_log_level or "WARNING", log_file=log_file, console=console)


@app.command("parse-rubric")
def parse_rubric(
    rubric_file: Annotated[Path, typer.Argument(help="Path to the rubric document")],
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the rubric tree as JSON"),
    ] = False,
) -> None:
    """
    Parse a rubric and show its weighted sections and criteria.

    No API key is needed; use this to check a rubric before grading.
    """
    try:
        document = extract_document(rubric_file)
        tree = WeightNormalizer().normalize(RubricParser().parse(document.content))
    except ExtractionError as e:
        console.print(f"[red]Extraction Error:[/red] {e}")
        raise typer.Exit(1)
    except ParseError as e:
        console.print(f"[red]Rubric Parse Error:[/red] {e}")
        raise typer.Exit(1)

    if as_json:
        console.print_json(tree.model_dump_json(by_alias=True))
        return

    _display_rubric(tree)

    is_valid, issues = RubricValidator().validate(tree)
    if is_valid:
        console.print("\n[green]✓ Rubric is valid[/green]")
    else:
        console.print("\n[yellow]⚠ Validation issues found:[/yellow]")
        for issue in issues:
            console.print(f"  • {issue}")


@app.command()
def grade(
    rubric_file: Annotated[Path, typer.Argument(help="Path to the rubric document")],
    submissions: Annotated[list[Path], typer.Argument(help="Submission files to grade")],
    results: Annotated[
        Optional[Path],
        typer.Option("--results", "-r", help="Result store (defaults to RESULTS_PATH)"),
    ] = None,
    rubric_cache: Annotated[
        Optional[Path],
        typer.Option("--rubric-cache", help="Reuse the parsed rubric stored in this file"),
    ] = None,
    retry_failed: Annotated[
        bool,
        typer.Option("--retry-failed", help="Grade submissions that failed in an earlier run"),
    ] = False,
) -> None:
    """
    Grade submissions against a weighted rubric.

    Submissions already in the result store are skipped, so re-running over
    a larger set only grades the new ones.
    """
    settings = _load_settings()

    try:
        document = extract_document(rubric_file)
        orchestrator = GradingOrchestrator(settings)
        cached = _read_rubric_cache(rubric_cache, document.content_hash)
        tree = orchestrator.prepare_rubric(document.content, cached=cached)
        _write_rubric_cache(rubric_cache, document.content_hash, tree)
    except ExtractionError as e:
        console.print(f"[red]Extraction Error:[/red] {e}")
        raise typer.Exit(1)
    except ParseError as e:
        console.print(f"[red]Rubric Parse Error:[/red] {e}")
        console.print("Check that the rubric has criteria such as 'Content (30%)' and upload it again.")
        raise typer.Exit(1)

    console.print(
        f"[green]Rubric loaded:[/green] {len(tree.sections)} sections, "
        f"{tree.criterion_count} criteria"
    )
    _run_batch(orchestrator, tree, submissions, results or settings.results_path, retry_failed)


@app.command("grade-tasks")
def grade_tasks(
    answer_key: Annotated[Path, typer.Argument(help="Answer key with points per task")],
    conversion_table: Annotated[Path, typer.Argument(help="Point-to-grade conversion table")],
    submissions: Annotated[list[Path], typer.Argument(help="Submission files to grade")],
    results: Annotated[
        Optional[Path],
        typer.Option("--results", "-r", help="Result store (defaults to RESULTS_PATH)"),
    ] = None,
    retry_failed: Annotated[
        bool,
        typer.Option("--retry-failed", help="Grade submissions that failed in an earlier run"),
    ] = False,
) -> None:
    """
    Grade point-based exams against an answer key.

    The final grade comes from the conversion table applied to the sum of
    awarded points.
    """
    settings = _load_settings()

    try:
        task_spec = TaskSpec(
            answer_key=extract_document(answer_key).content,
            conversion_table=extract_document(conversion_table).content,
        )
    except ExtractionError as e:
        console.print(f"[red]Extraction Error:[/red] {e}")
        raise typer.Exit(1)

    table = PointTable.parse(task_spec.conversion_table)
    if not len(table):
        console.print("[red]Error:[/red] No point ranges found in the conversion table")
        raise typer.Exit(1)

    orchestrator = GradingOrchestrator(settings)
    _run_batch(orchestrator, task_spec, submissions, results or settings.results_path, retry_failed)


@app.command("convert-points")
def convert_points(
    table_file: Annotated[Path, typer.Argument(help="Point-to-grade conversion table")],
    points: Annotated[list[float], typer.Argument(help="Point totals to convert")],
) -> None:
    """Show how a conversion table was read and convert point totals with it."""
    try:
        table = PointTable.parse(extract_document(table_file).content)
    except ExtractionError as e:
        console.print(f"[red]Extraction Error:[/red] {e}")
        raise typer.Exit(1)

    ranges = Table(title="Point Ranges")
    ranges.add_column("Grade", justify="right", style="cyan")
    ranges.add_column("Points", justify="right")
    for row in table:
        ranges.add_row(str(row.grade), f"{row.min_points}-{row.max_points}")
    console.print(ranges)

    for total in points:
        console.print(f"{total:g} points → grade [bold]{table.grade_for(total)}[/bold]")


@app.command()
def override(
    submission_id: Annotated[str, typer.Argument(help="Submission id (file name without extension)")],
    score: Annotated[
        Optional[list[str]],
        typer.Option("--score", "-s", help="Criterion grade as SECTION.CRITERION=GRADE, e.g. 2.1=10"),
    ] = None,
    points: Annotated[
        Optional[list[str]],
        typer.Option("--points", "-p", help="Task points as TASK=POINTS, e.g. 3=2.5"),
    ] = None,
    table_file: Annotated[
        Optional[Path],
        typer.Option("--table", help="Conversion table, required with --points"),
    ] = None,
    results: Annotated[
        Optional[Path],
        typer.Option("--results", "-r", help="Result store (defaults to RESULTS_PATH)"),
    ] = None,
) -> None:
    """
    Record a teacher override next to the model's result.

    Indices are 1-based. The model's result is kept for comparison.
    """
    settings = _load_settings()
    store = ResultStore(results or settings.results_path)
    result = _find_result(store, submission_id)
    orchestrator = GradingOrchestrator(settings)

    try:
        if result.mode == "rubric":
            updated = orchestrator.apply_teacher_override(result, _parse_scores(score or []))
        else:
            if table_file is None:
                console.print("[red]Error:[/red] --table is required for task results")
                raise typer.Exit(1)
            table = PointTable.parse(extract_document(table_file).content)
            updated = orchestrator.apply_teacher_points(result, _parse_points(points or []), table)
    except ValueError as e:
        console.print(f"[red]Override Error:[/red] {e}")
        raise typer.Exit(1)
    except ExtractionError as e:
        console.print(f"[red]Extraction Error:[/red] {e}")
        raise typer.Exit(1)

    store.save([updated])
    _display_result(updated)


@app.command()
def explain(
    submission_id: Annotated[str, typer.Argument(help="Submission id (file name without extension)")],
    task: Annotated[int, typer.Argument(help="Task position, 1-based")],
    question: Annotated[
        Optional[str],
        typer.Option("--question", "-q", help="Ask a specific question instead"),
    ] = None,
    submission: Annotated[
        Optional[Path],
        typer.Option("--submission", help="The submission file, so the whole document is read"),
    ] = None,
    image: Annotated[
        Optional[Path],
        typer.Option("--image", help="Screenshot (PNG) showing what the question is about"),
    ] = None,
    results: Annotated[
        Optional[Path],
        typer.Option("--results", "-r", help="Result store (defaults to RESULTS_PATH)"),
    ] = None,
) -> None:
    """Ask the model why a task received its points."""
    settings = _load_settings()
    result = _find_result(ResultStore(results or settings.results_path), submission_id)

    try:
        submission_text = read_text(submission) if submission else None
        image_data = _encode_image(image) if image else None
        answer = GradingOrchestrator(settings).explain(
            result,
            task - 1,
            question=question,
            submission_text=submission_text,
            image=image_data,
        )
    except (ExtractionError, OSError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    except LLMError as e:
        console.print(f"[red]LLM Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(Panel(answer, title=f"Task {result.tasks[task - 1].number}"))


@app.command()
def health() -> None:
    """
    Check if the grading system is operational.

    Verifies configuration and API connectivity.
    """
    settings = _load_settings()
    console.print("[bold]Rubric Grader Health Check[/bold]\n")

    console.print("[dim]Checking configuration...[/dim]")
    console.print(f"  API Base URL: {settings.openai_base_url}")
    console.print(f"  Model: {settings.openai_model}")
    console.print(f"  Max Attempts on 429: {settings.backoff.max_attempts}")
    console.print(f"  Cooldown: {settings.cooldown_seconds:g}s")

    console.print("\n[dim]Checking API connectivity...[/dim]")
    if GradingOrchestrator(settings).health_check():
        console.print("[green]✓ API is reachable[/green]")
    else:
        console.print("[red]✗ API is not reachable[/red]")
        raise typer.Exit(1)

    console.print("\n[green]All systems operational[/green]")


def _load_settings() -> Settings:
    try:
        settings = get_settings()
    except ValidationError as e:
        console.print(f"[red]Configuration Error:[/red] {e}")
        console.print("Set OPENAI_API_KEY in the environment or in a .env file.")
        raise typer.Exit(1)

    if _cli_log_level is None:
        logging.getLogger().setLevel(settings.log_level)
    return settings


def _run_batch(
    orchestrator: GradingOrchestrator,
    rubric_or_tasks: RubricTree | TaskSpec,
    files: list[Path],
    results_path: Path,
    retry_failed: bool,
) -> None:
    store = ResultStore(results_path)
    existing = store.load()
    if retry_failed:
        existing = [entry for entry in existing if "error" not in entry]

    batch = [Submission.from_path(path, read_text) for path in files]

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Grading...", total=len(batch))

        def on_progress(update: GradingProgress) -> None:
            description = f"{update.submission_id}: {update.message or update.stage.value}"
            progress.update(task, description=description)
            if update.stage in (GradingStage.DONE, GradingStage.FAILED):
                progress.advance(task)

        outcomes = orchestrator.grade_all(
            rubric_or_tasks, batch, existing_results=existing, on_progress=on_progress
        )
        skipped = len(batch) - len(outcomes)
        if skipped:
            progress.advance(task, skipped)

    if outcomes:
        store.save(outcomes)

    _display_outcomes(outcomes)
    console.print(
        f"\nGraded {len(outcomes)} submissions, skipped {skipped} already graded. "
        f"Cost: ${orchestrator.context.total_cost:.4f}"
    )
    console.print(f"[green]Results saved to:[/green] {store.path}")

    if any(isinstance(o, FailedGrading) for o in outcomes):
        raise typer.Exit(1)


def _read_rubric_cache(path: Optional[Path], content_hash: str) -> Optional[dict[str, Any]]:
    if path is None or not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("Rubric cache %s is not valid JSON, ignoring it", path)
        return None
    if not isinstance(data, dict) or data.get("contentHash") != content_hash:
        return None
    return data.get("rubric")


def _write_rubric_cache(path: Optional[Path], content_hash: str, tree: RubricTree) -> None:
    if path is None:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"contentHash": content_hash, "rubric": tree.model_dump(mode="json", by_alias=True)}
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


def _find_result(store: ResultStore, submission_id: str) -> GradingResult:
    outcome = store.find(submission_id)
    if not isinstance(outcome, GradingResult):
        console.print(f"[red]Error:[/red] No graded result for '{submission_id}' in {store.path}")
        raise typer.Exit(1)
    return outcome


def _parse_scores(values: list[str]) -> dict[tuple[int, int], int]:
    """Parse '2.1=10' into {(1, 0): 10}."""
    scores: dict[tuple[int, int], int] = {}
    for value in values:
        try:
            position, grade_text = value.split("=", 1)
            section, criterion = position.split(".", 1)
            scores[(int(section) - 1, int(criterion) - 1)] = int(grade_text)
        except ValueError as e:
            raise ValueError(f"Cannot read score '{value}', expected SECTION.CRITERION=GRADE") from e
    return scores


def _parse_points(values: list[str]) -> dict[int, float]:
    """Parse '3=2.5' into {2: 2.5}."""
    points: dict[int, float] = {}
    for value in values:
        try:
            position, points_text = value.split("=", 1)
            points[int(position) - 1] = float(points_text.replace(",", "."))
        except ValueError as e:
            raise ValueError(f"Cannot read points '{value}', expected TASK=POINTS") from e
    return points


def _encode_image(path: Path) -> str:
    return base64.b64encode(path.read_bytes()).decode("ascii")


def _display_rubric(tree: RubricTree) -> None:
    table = Table(title="Rubric")
    table.add_column("Section / Criterion", style="cyan")
    table.add_column("Weight", justify="right")
    table.add_column("Description")

    for section in tree.sections:
        stated = "" if section.weight_stated else " (derived)"
        table.add_row(f"[bold]{section.name}[/bold]", f"{section.weight or 0:.2f}%{stated}", "")
        for criterion in section.criteria:
            table.add_row(f"  {criterion.name}", f"{criterion.weight or 0:.2f}%", criterion.description[:60])

    console.print(table)
    console.print(f"\n[bold]Total Weight:[/bold] {tree.total_weight:.2f}%")


def _display_outcomes(outcomes: list[GradingResult | FailedGrading]) -> None:
    if not outcomes:
        return

    table = Table(title="Results")
    table.add_column("Submission", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Grade", justify="right")
    table.add_column("Status")

    for outcome in outcomes:
        if isinstance(outcome, FailedGrading):
            table.add_row(
                outcome.student_label, "-", "-", f"[red]failed while {outcome.stage.value}: {outcome.error}[/red]"
            )
            continue
        score = (
            f"{outcome.total_score:g}/{outcome.max_points:g}"
            if outcome.mode == "tasks"
            else f"{outcome.total_score:.2f}"
        )
        table.add_row(outcome.student_label, score, str(outcome.final_grade), "[green]graded[/green]")

    console.print(table)


def _display_result(result: GradingResult) -> None:
    effective = result.effective
    console.print(
        Panel(
            f"Model grade: [bold]{result.final_grade}[/bold]\n"
            f"Teacher grade: [bold]{effective.final_grade}[/bold] "
            f"(score {effective.total_score:.2f})",
            title=result.student_label,
        )
    )


if __name__ == "__main__":
    app()
