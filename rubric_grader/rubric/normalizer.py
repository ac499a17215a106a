"""
Weight normalization for parsed rubrics.

Fills in the weights a rubric document did not state so that every
section and criterion carries a percentage before grading.
"""

import logging

from rubric_grader.models import RubricTree

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 0.1


class WeightNormalizer:
    """
    Completes the weights of a RubricTree in place.

    1. Sections without a weight get an equal share: ``100 / section_count``.
    2. If any criterion of a section lacks a weight, every criterion in that
       section gets ``section.weight / criteria_count``.
    3. Sections whose weight was derived take the sum of their criteria.

    Running it on an already normalized tree changes nothing.
    """

    def normalize(self, tree: RubricTree) -> RubricTree:
        """
        Fill missing weights and check the total.

        Never raises: a total that misses 100% is logged, not corrected.

        Args:
            tree: Parsed rubric, modified in place.

        Returns:
            The same tree, fully weighted.
        """
        if not tree.sections:
            return tree

        equal_share = 100.0 / len(tree.sections)

        for section in tree.sections:
            if section.weight is None:
                section.weight = equal_share
                section.weight_stated = False

            if section.criteria and any(c.weight is None for c in section.criteria):
                share = section.weight / len(section.criteria)
                for criterion in section.criteria:
                    criterion.weight = share
                logger.debug(
                    "Split %.2f%% of section %r equally over %d criteria",
                    section.weight,
                    section.name,
                    len(section.criteria),
                )

            if not section.weight_stated and section.criteria:
                section.weight = sum(c.weight or 0.0 for c in section.criteria)

        total = tree.total_weight
        if abs(total - 100.0) > WEIGHT_TOLERANCE:
            logger.warning("Rubric weights sum to %.2f%%, not 100%%", total)

        return tree
