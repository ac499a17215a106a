"""
Extractor factory module.

Selects an extractor by file extension and offers one-call helpers for
the CLI and for lazily loaded submissions.
"""

from pathlib import Path

from rubric_grader.extractors.base import DocumentExtractor, ExtractionError
from rubric_grader.extractors.docx_extractor import DocxExtractor
from rubric_grader.extractors.excel_extractor import ExcelExtractor
from rubric_grader.extractors.pdf_extractor import PDFExtractor
from rubric_grader.extractors.text_extractor import TextExtractor
from rubric_grader.models import ExtractedDocument

# Registry of all available extractors
_EXTRACTORS: tuple[type[DocumentExtractor], ...] = (
    PDFExtractor,
    DocxExtractor,
    ExcelExtractor,
    TextExtractor,
)


def get_supported_extensions() -> tuple[str, ...]:
    """All extensions handled by some extractor, sorted."""
    extensions: set[str] = set()
    for extractor_cls in _EXTRACTORS:
        extensions.update(extractor_cls.SUPPORTED_EXTENSIONS)
    return tuple(sorted(extensions))


def create_extractor(file_path: Path | str) -> DocumentExtractor:
    """
    Create the appropriate extractor for a given file.

    Raises:
        ExtractionError: If the file format is not supported.
    """
    path = Path(file_path)
    extension = path.suffix.lower()

    for extractor_cls in _EXTRACTORS:
        if extension in extractor_cls.SUPPORTED_EXTENSIONS:
            return extractor_cls()

    raise ExtractionError(
        f"Unsupported file format '{extension}'. Supported formats: {get_supported_extensions()}",
        path,
    )


def extract_document(file_path: Path | str) -> ExtractedDocument:
    """
    Extract text from a document file.

    Args:
        file_path: Path to the document file.

    Returns:
        ExtractedDocument containing the extracted text.

    Raises:
        ExtractionError: If extraction fails.
    """
    path = Path(file_path)
    return create_extractor(path).extract(path)


def read_text(file_path: Path | str) -> str:
    """Extract and return only the text; the reader used for submissions."""
    return extract_document(file_path).content
