"""
Rubric Processing Module.

Parses free-form rubric documents into weighted section/criterion trees,
completes missing weights, and reads point-to-grade conversion tables.
"""

from rubric_grader.rubric.normalizer import WeightNormalizer
from rubric_grader.rubric.parser import ParseError, RubricParser
from rubric_grader.rubric.point_table import PointRange, PointTable
from rubric_grader.rubric.validator import RubricValidationError, RubricValidator

__all__ = [
    "ParseError",
    "PointRange",
    "PointTable",
    "RubricParser",
    "RubricValidationError",
    "RubricValidator",
    "WeightNormalizer",
]
