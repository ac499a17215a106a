"""
Word document extractor using python-docx.

Extracts .docx files in body order, so a table placed under a rubric
heading stays under that heading. Legacy .doc files must be converted first.
"""

from pathlib import Path
from typing import ClassVar

from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from docx.table import Table
from docx.text.paragraph import Paragraph

from rubric_grader.extractors.base import DocumentExtractor, ExtractionError
from rubric_grader.models import ExtractedDocument


class DocxExtractor(DocumentExtractor):
    """
    Extracts text content from Word documents (.docx).

    Paragraphs become lines; table rows become lines of tab-separated cells.
    """

    SUPPORTED_EXTENSIONS: ClassVar[tuple[str, ...]] = (".docx",)

    def extract(self, file_path: Path) -> ExtractedDocument:
        """
        Extract text from a Word document.

        Raises:
            ExtractionError: If the document cannot be read or holds no text.
        """
        self._validate_file(file_path)

        try:
            doc = Document(str(file_path))
        except PackageNotFoundError as e:
            raise ExtractionError(
                "File is not a valid .docx document or is corrupted", file_path, cause=e
            ) from e

        lines: list[str] = []
        for block in doc.iter_inner_content():
            if isinstance(block, Paragraph):
                lines.append(block.text)
            else:
                lines.extend(self._table_rows(block))

        if not any(line.strip() for line in lines):
            raise ExtractionError("Document contains no extractable text", file_path)

        return self._create_result("\n".join(lines), file_path)

    def _table_rows(self, table: Table) -> list[str]:
        rows: list[str] = []
        for row in table.rows:
            cells = [cell.text for cell in row.cells]
            if any(cell.strip() for cell in cells):
                rows.append(self._join_cells(cells))
        return rows
