"""
PDF document extractor using PyMuPDF.

Pages are joined without page markers: a "Page 2" line would inject a
stray number into conversion-table parsing.
"""

from pathlib import Path
from typing import ClassVar

import fitz  # PyMuPDF

from rubric_grader.extractors.base import DocumentExtractor, ExtractionError
from rubric_grader.models import ExtractedDocument


class PDFExtractor(DocumentExtractor):
    """Extracts text content from PDF files in reading order."""

    SUPPORTED_EXTENSIONS: ClassVar[tuple[str, ...]] = (".pdf",)

    def extract(self, file_path: Path) -> ExtractedDocument:
        """
        Extract text from a PDF file.

        Raises:
            ExtractionError: If the PDF cannot be read or has no text layer.
        """
        self._validate_file(file_path)

        try:
            with fitz.open(file_path) as doc:
                if doc.page_count == 0:
                    raise ExtractionError("PDF has no pages", file_path)

                pages = [
                    page.get_text("text", sort=True, flags=fitz.TEXT_PRESERVE_LIGATURES)
                    for page in doc
                ]
        except fitz.FileDataError as e:
            raise ExtractionError("PDF file is corrupted or invalid", file_path, cause=e) from e
        except fitz.EmptyFileError as e:
            raise ExtractionError("PDF file is empty", file_path, cause=e) from e

        text = "\n".join(page.rstrip() for page in pages if page.strip())
        if not text:
            raise ExtractionError(
                "No text could be extracted. The PDF may be a scan; export it with "
                "a text layer or paste the text into a .txt file.",
                file_path,
            )

        return self._create_result(text, file_path)
