"""
Rubric parser module.

Parses free-form rubric text into a weighted RubricTree.
There is no fixed category vocabulary: sections are found from headings
("Part A: Content (60%)", "1. Genre") and criteria from percentage markers,
falling back to numbered or colon-terminated lines.
"""

import logging
import re
from typing import Callable, Optional, Sequence

from rubric_grader.models import MAX_DESCRIPTION_LENGTH, Criterion, RubricTree, Section

logger = logging.getLogger(__name__)

IMPLICIT_SECTION_NAME = "Overall assessment"


class ParseError(Exception):
    """Raised when no criteria can be extracted from a rubric."""

    def __init__(self, message: str, line_number: int | None = None):
        self.line_number = line_number
        if line_number:
            message = f"Line {line_number}: {message}"
        super().__init__(message)


class RubricParser:
    """
    Parses rubric text into a RubricTree.

    Section strategies, in order:
    1. Lettered headings: "Part A: Content (60%)", "Section B - Form"
    2. Numbered top-level headings: "1. Genre"
    3. No headings: one implicit "Overall assessment" section

    Criterion strategies within a section, in order:
    1. Lines carrying a percentage: "Genre & layout (7,5%)", "Structure: 6%"
    2. Numbered or colon-terminated lines, weight left unset
    """

    LETTERED_HEADING = re.compile(
        r"^\s*(?:Part|Section|Del|Afsnit)\s+[A-Z](?![A-Za-z])"  # "Part A"
        r"(?:\s*[:.)\-–—]|\s|$)",  # separator or end of line
        re.IGNORECASE,
    )

    NUMBERED_HEADING = re.compile(r"^\s*\d+\.\s+\S")

    # "7,5%", "(7.5%)", "6 %"
    PERCENTAGE = re.compile(r"\(?\s*(\d+(?:[.,]\d+)?)\s*%\s*\)?")

    DESCRIPTION_STOP_HEADING = re.compile(r"^\d+\.\s+[A-ZÆØÅ]")

    NUMBERED_LINE = re.compile(r"^\s*\d+[.)]\s+(\S.*)$")

    COLON_LINE = re.compile(r"^\s*([^:]{1,120}):\s*$")

    MAX_DESCRIPTION_LINES = 100

    def parse(self, raw_text: str) -> RubricTree:
        """
        Parse rubric text into a RubricTree.

        Weights that the document does not state are left as ``None``;
        run the result through ``WeightNormalizer`` before grading.

        Args:
            raw_text: Text extracted from the rubric document.

        Returns:
            RubricTree with at least one section holding at least one criterion.

        Raises:
            ParseError: If the text is empty or no section yields a criterion.
        """
        if not raw_text or not raw_text.strip():
            raise ParseError("Rubric content is empty")

        lines = raw_text.replace("\r\n", "\n").replace("\r", "\n").split("\n")

        sections: list[Section] = []
        spans = self._find_section_spans(lines)

        if not spans:
            logger.warning("No section headings found, parsing all criteria as one section")
            criteria = self._extract_criteria(lines)
            if criteria:
                sections.append(Section(name=IMPLICIT_SECTION_NAME, criteria=criteria))
        else:
            for start, end, numbered in spans:
                section = self._parse_section(lines, start, end, numbered)
                if section is None:
                    logger.warning(
                        "Section %r has no criteria, skipping", lines[start].strip()
                    )
                    continue
                sections.append(section)

        if not sections:
            raise ParseError(
                "No criteria found in the rubric. Expected lines such as "
                "'Content 30%' under headings like 'Part A: Content (60%)' or "
                "'1. Genre'. Check the document and upload it again."
            )

        tree = RubricTree(sections=sections)
        logger.info(
            "Parsed rubric: %d sections, %d criteria", len(tree.sections), tree.criterion_count
        )
        return tree

    def _find_section_spans(self, lines: Sequence[str]) -> list[tuple[int, int, bool]]:
        """Return (start, end, numbered) line spans, one per section heading."""
        starts = [i for i, line in enumerate(lines) if self.LETTERED_HEADING.match(line)]
        numbered = False

        if not starts:
            starts = [i for i, line in enumerate(lines) if self.NUMBERED_HEADING.match(line)]
            numbered = True

        ends = starts[1:] + [len(lines)]
        return [(start, end, numbered) for start, end in zip(starts, ends)]

    def _parse_section(
        self, lines: Sequence[str], start: int, end: int, numbered: bool
    ) -> Optional[Section]:
        """Parse one heading span. Returns None when it holds no criteria."""
        name, weight = self._split_heading(lines[start].strip(), start + 1)
        body = lines[start + 1 : end]

        criteria = self._extract_criteria(body)

        # A bare numbered heading ("2. Language") is itself the criterion.
        if not criteria and numbered:
            title = self._clean_name(name)
            if title:
                description = self._collect_description(body, 0, lambda _: False)
                criteria = [
                    Criterion(
                        name=title,
                        description=description or self._default_description(title),
                    )
                ]

        if not criteria:
            return None

        return Section(
            name=name,
            weight=weight,
            weight_stated=weight is not None,
            criteria=criteria,
        )

    def _split_heading(self, heading: str, line_num: int) -> tuple[str, Optional[float]]:
        """Separate a heading into its name and an optional stated weight."""
        match = self.PERCENTAGE.search(heading)
        if not match:
            return heading.rstrip(" :-–—"), None

        name = (heading[: match.start()] + heading[match.end() :]).strip().rstrip(" :-–—")
        weight = self._parse_weight(match.group(1), line_num)
        return name or heading, weight

    def _extract_criteria(self, lines: Sequence[str]) -> list[Criterion]:
        if any(self.PERCENTAGE.search(line) for line in lines):
            return self._percentage_criteria(lines)
        return self._marker_criteria(lines)

    def _percentage_criteria(self, lines: Sequence[str]) -> list[Criterion]:
        """Criteria from lines that carry an explicit percentage."""
        criteria: list[Criterion] = []

        for i, raw_line in enumerate(lines):
            line = raw_line.strip()
            if not line or self.LETTERED_HEADING.match(line):
                continue

            match = self.PERCENTAGE.search(line)
            if not match:
                continue

            name = self._clean_name(line[: match.start()])
            if not name:
                logger.warning(
                    "Found percentage (%s%%) but no criterion name in line: %r",
                    match.group(1),
                    line,
                )
                continue

            weight = self._parse_weight(match.group(1), i + 1)

            # Text after the percentage on the same line opens the description.
            inline = line[match.end() :].strip(" :-–—")
            following = self._collect_description(lines, i + 1, self._ends_percentage_description)
            description = " ".join(part for part in (inline, following) if part)

            criteria.append(
                Criterion(
                    name=name,
                    weight=weight,
                    description=description or self._default_description(name),
                )
            )
            logger.debug("Found criterion %r (%s%%)", name, weight)

        return criteria

    def _marker_criteria(self, lines: Sequence[str]) -> list[Criterion]:
        """Criteria from numbered or colon-terminated lines, without weights."""
        criteria: list[Criterion] = []

        for i, raw_line in enumerate(lines):
            name = self._marker_name(raw_line)
            if not name:
                continue

            description = self._collect_description(
                lines, i + 1, lambda text: self._marker_name(text) is not None
            )
            criteria.append(
                Criterion(name=name, description=description or self._default_description(name))
            )

        return criteria

    def _marker_name(self, line: str) -> Optional[str]:
        numbered = self.NUMBERED_LINE.match(line)
        if numbered:
            return self._clean_name(numbered.group(1)) or None

        colon = self.COLON_LINE.match(line)
        if colon:
            return self._clean_name(colon.group(1)) or None

        return None

    def _ends_percentage_description(self, line: str) -> bool:
        return bool(
            self.PERCENTAGE.search(line)
            or self.LETTERED_HEADING.match(line)
            or self.DESCRIPTION_STOP_HEADING.match(line)
        )

    def _collect_description(
        self, lines: Sequence[str], start: int, is_boundary: Callable[[str], bool]
    ) -> str:
        """
        Join the lines following a criterion into its description.

        Stops at a boundary line, at two consecutive blank lines once some
        text was collected, or after MAX_DESCRIPTION_LINES lines.
        """
        parts: list[str] = []
        j = start

        while j < len(lines) and len(parts) < self.MAX_DESCRIPTION_LINES:
            text = lines[j].strip()

            if text and is_boundary(text):
                break

            if not text and parts and j + 1 < len(lines) and not lines[j + 1].strip():
                break

            if text:
                parts.append(text)
            j += 1

        return " ".join(parts)[:MAX_DESCRIPTION_LENGTH].strip()

    @staticmethod
    def _clean_name(text: str) -> str:
        """Strip bullets, leading ordinals, trailing separators and dangling parentheses."""
        name = text.strip()
        name = re.sub(r"^[-*•]\s*", "", name)
        name = re.sub(r"^\d+[.)]\s*", "", name).strip()
        name = re.sub(r"[:\-–—]\s*$", "", name).strip()
        name = re.sub(r"\([^)]*$", "", name).strip()
        return name

    @staticmethod
    def _default_description(name: str) -> str:
        return f"Assessment criterion for {name}"

    @staticmethod
    def _parse_weight(value: str, line_num: int) -> Optional[float]:
        """Parse '7,5' or '7.5' as a percentage; out-of-range values are ignored."""
        weight = float(value.replace(",", "."))
        if weight > 100:
            logger.warning("Line %d: ignoring weight %s%% above 100%%", line_num, value)
            return None
        return weight
