"""
Excel spreadsheet extractor using openpyxl.

Conversion tables are frequently kept in a spreadsheet. Each row becomes
one line of tab-separated cells, every sheet in workbook order.
"""

from pathlib import Path
from typing import Any, ClassVar
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from rubric_grader.extractors.base import DocumentExtractor, ExtractionError
from rubric_grader.models import ExtractedDocument


class ExcelExtractor(DocumentExtractor):
    """Extracts cell values from .xlsx workbooks."""

    SUPPORTED_EXTENSIONS: ClassVar[tuple[str, ...]] = (".xlsx",)

    def extract(self, file_path: Path) -> ExtractedDocument:
        """
        Extract text from an Excel workbook.

        Raises:
            ExtractionError: If the workbook cannot be read or holds no data.
        """
        self._validate_file(file_path)

        try:
            workbook = load_workbook(file_path, read_only=True, data_only=True)
        except (InvalidFileException, BadZipFile) as e:
            raise ExtractionError(
                "File is not a valid Excel document or is corrupted", file_path, cause=e
            ) from e

        rows: list[str] = []
        try:
            for sheet in workbook.worksheets:
                for row in sheet.iter_rows(values_only=True):
                    cells = [self._format_cell(value) for value in row]
                    if any(cells):
                        rows.append(self._join_cells(cells).rstrip("\t"))
        finally:
            workbook.close()

        if not rows:
            raise ExtractionError("Spreadsheet contains no data", file_path)

        return self._create_result("\n".join(rows), file_path)

    @staticmethod
    def _format_cell(value: Any) -> str:
        """Render 12.0 as '12' so point ranges read as integers."""
        if value is None:
            return ""
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value).strip()
