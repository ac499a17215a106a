"""
Base classes for document extraction.

Rubrics, answer keys, conversion tables and submissions all arrive as
documents; every extractor turns one into plain text for the parsers and
the prompt builder, which know nothing about file formats.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import ClassVar

from rubric_grader.models import ExtractedDocument


class ExtractionError(Exception):
    """Raised when text cannot be extracted from a document."""

    def __init__(self, message: str, file_path: str | Path, cause: Exception | None = None):
        self.file_path = str(file_path)
        self.cause = cause
        super().__init__(f"Failed to extract '{file_path}': {message}")


class DocumentExtractor(ABC):
    """
    Abstract base class for document extractors.

    Subclasses declare the extensions they handle in ``SUPPORTED_EXTENSIONS``.
    Tabular content is emitted as one line per row with tab-separated cells,
    so "grade min max" rows of a conversion table survive extraction.
    """

    SUPPORTED_EXTENSIONS: ClassVar[tuple[str, ...]] = ()

    @classmethod
    def supports(cls, file_path: Path) -> bool:
        return file_path.suffix.lower() in cls.SUPPORTED_EXTENSIONS

    @abstractmethod
    def extract(self, file_path: Path) -> ExtractedDocument:
        """
        Extract the text of a document.

        Args:
            file_path: Path to the document file.

        Returns:
            ExtractedDocument containing the text and its source.

        Raises:
            ExtractionError: If extraction fails for any reason.
        """
        ...

    def _validate_file(self, file_path: Path) -> None:
        if not file_path.exists():
            raise ExtractionError("File does not exist", file_path)

        if not file_path.is_file():
            raise ExtractionError("Path is not a file", file_path)

        if not self.supports(file_path):
            raise ExtractionError(
                f"Unsupported file format. Expected one of: {self.SUPPORTED_EXTENSIONS}",
                file_path,
            )

    def _create_result(self, content: str, file_path: Path) -> ExtractedDocument:
        # Uniform line endings keep the line-based rubric parser simple.
        content = content.replace("\r\n", "\n").replace("\r", "\n")
        return ExtractedDocument(
            content=content,
            source_path=str(file_path.resolve()),
            file_extension=file_path.suffix.lower(),
        )

    @staticmethod
    def _join_cells(cells: list[str]) -> str:
        return "\t".join(cell.strip() for cell in cells)
