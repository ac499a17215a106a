"""
Rubric validation module.

Checks that a rubric tree is complete and consistently weighted, and
decides whether a cached tree can be reused or must be derived again.
"""

import logging
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from rubric_grader.models import RubricTree, Section
from rubric_grader.rubric.normalizer import WEIGHT_TOLERANCE

logger = logging.getLogger(__name__)


class RubricValidationError(Exception):
    """Raised when rubric validation fails."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        message = "Rubric validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        super().__init__(message)


class RubricValidator:
    """
    Validates rubric trees for completeness and consistency.

    Checks:
    1. At least one section, and every section has criteria
    2. Every section and criterion carries a weight
    3. Section weights sum to 100% and criteria to their section weight
    4. No duplicate criterion names within a section
    """

    # Criterion names longer than this are paragraphs the parser mistook for titles.
    MAX_CRITERION_NAME_LENGTH = 120

    def validate(self, tree: RubricTree) -> tuple[bool, list[str]]:
        """
        Validate a rubric tree and return any issues found.

        Args:
            tree: The rubric to validate.

        Returns:
            Tuple of (is_valid, list of issues).
        """
        issues: list[str] = []

        if not tree.sections:
            issues.append("Rubric has no sections")
            return False, issues

        for i, section in enumerate(tree.sections, start=1):
            issues.extend(self._validate_section(section, i))

        if tree.is_fully_weighted and abs(tree.total_weight - 100.0) > WEIGHT_TOLERANCE:
            issues.append(f"Section weights sum to {tree.total_weight:.2f}%, not 100%")

        return len(issues) == 0, issues

    def validate_or_raise(self, tree: RubricTree) -> None:
        """
        Validate a rubric tree and raise if invalid.

        Raises:
            RubricValidationError: If validation fails.
        """
        is_valid, issues = self.validate(tree)
        if not is_valid:
            raise RubricValidationError(issues)

    def _validate_section(self, section: Section, index: int) -> list[str]:
        issues: list[str] = []
        prefix = f"Section {index} ({section.name})"

        if not section.criteria:
            issues.append(f"{prefix}: has no criteria")
            return issues

        if section.weight is None:
            issues.append(f"{prefix}: weight is not set")

        seen: set[str] = set()
        for criterion in section.criteria:
            key = criterion.name.lower().strip()
            if key in seen:
                issues.append(f"{prefix}: duplicate criterion '{criterion.name}'")
            seen.add(key)

            if criterion.weight is None:
                issues.append(f"{prefix}: criterion '{criterion.name}' has no weight")

            if len(criterion.name) > self.MAX_CRITERION_NAME_LENGTH:
                issues.append(f"{prefix}: criterion name is implausibly long ({len(criterion.name)} chars)")

        if section.weight is not None and all(c.weight is not None for c in section.criteria):
            criteria_total = sum(c.weight for c in section.criteria)
            if abs(criteria_total - section.weight) > WEIGHT_TOLERANCE:
                issues.append(
                    f"{prefix}: criteria weights sum to {criteria_total:.2f}%, "
                    f"section weight is {section.weight:.2f}%"
                )

        return issues

    def is_cache_usable(
        self, cached: Optional[Union[RubricTree, Mapping[str, Any]]]
    ) -> bool:
        """
        Decide whether a cached rubric tree can be reused as-is.

        A cache entry must be derived again when it is missing or empty, when
        any weight is unset, or when a criterion name is implausibly long.

        Args:
            cached: A RubricTree or its persisted (camelCase) mapping.
        """
        if cached is None:
            return False

        if isinstance(cached, Mapping):
            try:
                tree = RubricTree.model_validate(cached)
            except ValidationError as e:
                logger.info("Cached rubric does not match the rubric schema: %s", e)
                return False
        else:
            tree = cached

        if not tree.sections or any(not s.criteria for s in tree.sections):
            return False

        if not tree.is_fully_weighted:
            logger.info("Cached rubric has unset weights, re-deriving")
            return False

        for section in tree.sections:
            for criterion in section.criteria:
                if len(criterion.name) > self.MAX_CRITERION_NAME_LENGTH:
                    logger.info("Cached rubric has a paragraph-length criterion name, re-deriving")
                    return False

        return True
