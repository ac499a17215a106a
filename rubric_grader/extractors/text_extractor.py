"""
Plain text and markdown extractor.

Rubrics are often pasted into a .txt file from a word processor, so
legacy Windows encodings are tried after UTF-8.
"""

from pathlib import Path
from typing import ClassVar

from rubric_grader.extractors.base import DocumentExtractor, ExtractionError
from rubric_grader.models import ExtractedDocument


class TextExtractor(DocumentExtractor):
    """Reads .txt and .md files, falling back through ENCODINGS."""

    SUPPORTED_EXTENSIONS: ClassVar[tuple[str, ...]] = (".txt", ".md")

    ENCODINGS: ClassVar[tuple[str, ...]] = ("utf-8-sig", "cp1252", "latin-1")

    def extract(self, file_path: Path) -> ExtractedDocument:
        """
        Extract text from a plain text file.

        Raises:
            ExtractionError: If the file is empty or cannot be decoded.
        """
        self._validate_file(file_path)

        content = self._decode(file_path.read_bytes(), file_path)

        if not content.strip():
            raise ExtractionError("File is empty or contains only whitespace", file_path)

        return self._create_result(content, file_path)

    def _decode(self, raw: bytes, file_path: Path) -> str:
        last_error: UnicodeDecodeError | None = None

        for encoding in self.ENCODINGS:
            try:
                return raw.decode(encoding)
            except UnicodeDecodeError as e:
                last_error = e

        raise ExtractionError(
            f"Could not decode file with any supported encoding: {self.ENCODINGS}",
            file_path,
            cause=last_error,
        )
