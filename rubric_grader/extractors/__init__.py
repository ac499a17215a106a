"""
Document Extraction Module.

Turns uploaded documents into plain text:
- PDF (.pdf)
- Word (.docx)
- Excel (.xlsx)
- Plain text (.txt, .md)
"""

from rubric_grader.extractors.base import DocumentExtractor, ExtractionError
from rubric_grader.extractors.factory import (
    create_extractor,
    extract_document,
    get_supported_extensions,
    read_text,
)

__all__ = [
    "DocumentExtractor",
    "ExtractionError",
    "create_extractor",
    "extract_document",
    "get_supported_extensions",
    "read_text",
]
