"""
Rubric Grader - AI-assisted exam grading against weighted rubrics.

Parses free-form rubric documents into weighted section/criterion trees,
grades submissions with a language model on the 7-step grade scale (or
against an answer key and a point conversion table), and keeps results
idempotent across re-runs.
"""

__version__ = "1.0.0"
