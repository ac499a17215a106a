"""
JSON result store.

Results are kept in one JSON array in the persisted camelCase shape
(``submissionId``, ``studentLabel``, ``totalScore``, ``finalGrade``, ...).
Saving merges by submission id, so re-running a batch only adds or
replaces entries.
"""

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Union

from rubric_grader.models import FailedGrading, GradingResult, submission_id_from_filename

logger = logging.getLogger(__name__)

StoredOutcome = Union[GradingResult, FailedGrading]


class ResultStore:
    """Reads and writes grading outcomes in a JSON file."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> list[dict[str, Any]]:
        """
        Load persisted entries, oldest first.

        Returns:
            Raw mappings; an empty list when the file does not exist yet.

        Raises:
            ValueError: If the file does not hold a JSON array.
        """
        if not self.path.exists():
            return []

        data = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise ValueError(f"{self.path} does not contain a list of results")
        return data

    def load_outcomes(self) -> list[StoredOutcome]:
        """Load entries as models; entries carrying an error are failures."""
        return [
            FailedGrading.model_validate(entry)
            if "error" in entry
            else GradingResult.model_validate(entry)
            for entry in self.load()
            if "submissionId" in entry
        ]

    def find(self, submission_id: str) -> StoredOutcome | None:
        for outcome in self.load_outcomes():
            if outcome.submission_id == submission_id:
                return outcome
        return None

    def save(self, outcomes: Iterable[StoredOutcome]) -> Path:
        """
        Merge outcomes into the store, replacing entries with the same id.

        Returns:
            Path of the written file.
        """
        merged: dict[str, dict[str, Any]] = {}
        for i, entry in enumerate(self.load()):
            merged[_entry_key(entry) or f"#{i}"] = entry

        count = 0
        for outcome in outcomes:
            merged[outcome.submission_id] = outcome.model_dump(mode="json", by_alias=True)
            count += 1

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(list(merged.values()), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        logger.info("Saved %d outcomes to %s (%d total)", count, self.path, len(merged))
        return self.path


def _entry_key(entry: dict[str, Any]) -> str | None:
    """Submission id of a persisted entry; older entries only carry a file name."""
    if entry.get("submissionId"):
        return str(entry["submissionId"])
    name = entry.get("fileName") or entry.get("studentLabel")
    return submission_id_from_filename(str(name)) if name else None
