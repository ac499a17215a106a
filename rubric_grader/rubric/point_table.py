"""
Point-to-grade conversion tables for task-mode grading.

Conversion tables arrive as extracted text, often with every cell on one
line after a "Grade ... Points" header:

    Grade Points -3 0 0 0 1 12 2 13 20 4 21 36 7 37 51 10 52 64 12 65 75
"""

import logging
import re
from typing import Iterable, Iterator, NamedTuple

from rubric_grader.models import GRADE_SCALE

logger = logging.getLogger(__name__)


class PointRange(NamedTuple):
    """Inclusive point range awarding one grade."""

    grade: int
    min_points: int
    max_points: int


class PointTable:
    """
    Ordered point ranges parsed from a conversion table.

    Parsing reads every run of three integers as one (grade, min, max) row.
    Because extraction sometimes loses a cell, the three possible row
    alignments are tried and the one producing the most plausible rows wins.
    """

    HEADER = re.compile(r"(?:Grade|Karakter)\b.*?\bPoints?\b", re.IGNORECASE)

    ROW = re.compile(r"^\s*(-?\d+)\s+(\d+)\s+(\d+)")

    def __init__(self, ranges: Iterable[PointRange]):
        self.ranges: list[PointRange] = list(ranges)

    def __iter__(self) -> Iterator[PointRange]:
        return iter(self.ranges)

    def __len__(self) -> int:
        return len(self.ranges)

    @classmethod
    def parse(cls, text: str) -> "PointTable":
        """
        Parse a conversion table from free text.

        Args:
            text: Extracted table text.

        Returns:
            PointTable, possibly empty when nothing usable was found.
        """
        collapsed = re.sub(r"\s+", " ", text).strip()
        body = cls.HEADER.split(collapsed)[-1]
        # "13-20" and "52 - 64" are ranges; "12 -3" is a row end and a negative grade
        body = re.sub(r"(?<=\d)(?:\s*–\s*|-|\s+-\s+)(?=\d)", " ", body)

        numbers = [int(n) for n in re.findall(r"-?\d+", body)]

        if len(numbers) >= 3:
            ranges = cls._ranges_from_numbers(numbers)
        else:
            ranges = cls._ranges_from_lines(text)

        if not ranges:
            logger.warning("No point ranges found in conversion table")
        else:
            logger.debug("Parsed %d point ranges: %s", len(ranges), ranges)

        return cls(ranges)

    @classmethod
    def _ranges_from_numbers(cls, numbers: list[int]) -> list[PointRange]:
        best_offset = 0
        best_ranges: list[PointRange] = []
        best_count = 0

        for offset in range(3):
            if len(numbers) - offset < 3:
                break
            triples = [
                PointRange(*numbers[i : i + 3]) for i in range(offset, len(numbers) - 2, 3)
            ]
            plausible = [t for t in triples if cls._is_plausible(t)]
            if len(plausible) > len(best_ranges):
                best_offset, best_ranges, best_count = offset, plausible, len(triples)

        dropped = best_count - len(best_ranges)
        if dropped:
            logger.warning("Dropped %d implausible rows from conversion table", dropped)

        # Two leading numbers form a single-point row, e.g. "-3 0".
        if best_offset == 2 and numbers[0] in GRADE_SCALE and numbers[1] >= 0:
            best_ranges.insert(0, PointRange(numbers[0], numbers[1], numbers[1]))

        return best_ranges

    @classmethod
    def _ranges_from_lines(cls, text: str) -> list[PointRange]:
        ranges: list[PointRange] = []
        for line in text.splitlines():
            match = cls.ROW.match(line)
            if match:
                ranges.append(PointRange(*(int(g) for g in match.groups())))
        return ranges

    @staticmethod
    def _is_plausible(row: PointRange) -> bool:
        return row.grade in GRADE_SCALE and 0 <= row.min_points <= row.max_points

    def grade_for(self, points: float) -> int:
        """
        Convert a point total to a grade.

        Fractional totals fall in the range whose integer band contains
        them (12.5 counts toward a 1-12 range).

        Returns:
            The matching grade, or the lowest grade on the scale when no
            range matches; that usually means the table was misread.
        """
        for row in self.ranges:
            if row.min_points <= points < row.max_points + 1:
                return row.grade

        logger.warning(
            "No grade range matches %s points; falling back to %d. "
            "The conversion table was probably not parsed correctly.",
            points,
            GRADE_SCALE[0],
        )
        return GRADE_SCALE[0]
