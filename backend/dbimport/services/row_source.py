"""Incremental, restartable readers over uploaded tabular files."""

from __future__ import annotations

import codecs
import csv
import io
import logging
import os
from itertools import islice
from pathlib import Path
from typing import Iterator

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from dbimport.core.errors import RowSourceError

logger = logging.getLogger(__name__)

DELIMITERS = [",", ";", "\t", "|"]
DELIMITED_EXTENSIONS = {"csv", "txt", "tsv"}
SPREADSHEET_EXTENSIONS = {"xlsx"}
SUPPORTED_EXTENSIONS = DELIMITED_EXTENSIONS | SPREADSHEET_EXTENSIONS

UTF8_BOM = "\ufeff"
ENCODING_SAMPLE_SIZE = 64 * 1024
HEADER_STRIP_CHARS = " \t\n\r\0\x0b\"'"


def detect_file_encoding(path: Path) -> str:
    """Pick UTF-8 (with or without BOM), Windows-1252 or ISO-8859-1.

    The whole file is decoded in chunks; a stray byte near the end still
    rules UTF-8 out.
    """
    with path.open("rb") as raw:
        head = raw.read(ENCODING_SAMPLE_SIZE)
        if head.startswith(codecs.BOM_UTF8):
            return "utf-8-sig"
        for encoding in ("utf-8", "cp1252"):
            raw.seek(0)
            decoder = codecs.getincrementaldecoder(encoding)()
            try:
                for chunk in iter(lambda: raw.read(ENCODING_SAMPLE_SIZE), b""):
                    decoder.decode(chunk)
                decoder.decode(b"", final=True)
                return encoding
            except UnicodeDecodeError:
                continue
    return "iso-8859-1"


def detect_delimiter(first_line: str) -> str:
    """Return the delimiter that splits the first line into the most fields."""
    best, best_count = ",", 0
    for delimiter in DELIMITERS:
        fields = next(csv.reader([first_line], delimiter=delimiter), [])
        if len(fields) > best_count:
            best, best_count = delimiter, len(fields)
    return best


def clean_header(header: str) -> str:
    return header.replace(UTF8_BOM, "").strip(HEADER_STRIP_CHARS)


def fit_row(fields: list[str], width: int) -> list[str]:
    """Truncate extra fields and pad missing trailing ones with ''."""
    fields = fields[:width]
    if len(fields) < width:
        fields = fields + [""] * (width - len(fields))
    return fields


def _check_file(path: Path) -> None:
    if not path.exists():
        raise RowSourceError("file_not_found", "File does not exist")
    if not os.access(path, os.R_OK):
        raise RowSourceError("file_not_readable", "File is not readable. Check file permissions.")
    if path.stat().st_size == 0:
        raise RowSourceError("file_empty", "File is empty")


class RowSource:
    """Common contract: ``open()``, ``seek_to_row(n)``, ``next_row()``.

    ``next_row()`` returns ``None`` at end of file. Rows are always exactly
    as wide as the header.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.headers: list[str] = []
        self._rows: Iterator[list[str]] | None = None

    def open(self) -> list[str]:
        raise NotImplementedError

    def seek_to_row(self, n: int) -> bool:
        """Skip exactly ``n`` data rows; False means EOF came first."""
        if self._rows is None:
            raise RuntimeError("Row source is not open")
        if n <= 0:
            return True
        skipped = sum(1 for _ in islice(self._rows, n))
        return skipped == n

    def next_row(self) -> list[str] | None:
        if self._rows is None:
            raise RuntimeError("Row source is not open")
        row = next(self._rows, None)
        if row is None:
            return None
        return fit_row(row, len(self.headers))

    def count_rows(self) -> int:
        """Total data rows, read through a fresh pass over the file."""
        source = self._fresh()
        try:
            source.open()
            return sum(1 for _ in source._rows)
        finally:
            source.close()

    def _fresh(self) -> "RowSource":
        return type(self)(self.path)

    def close(self) -> None:
        self._rows = None

    def __enter__(self) -> "RowSource":
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class CsvRowSource(RowSource):
    """Delimited text with auto-detected delimiter and encoding."""

    def __init__(self, path: str | Path, encoding: str | None = None) -> None:
        super().__init__(path)
        self.encoding = encoding or "utf-8"
        self.delimiter = ","
        self._known_encoding = encoding
        self._handle: io.TextIOWrapper | None = None

    def _fresh(self) -> "CsvRowSource":
        return CsvRowSource(self.path, encoding=self.encoding)

    def open(self) -> list[str]:
        _check_file(self.path)
        try:
            self.encoding = self._known_encoding or detect_file_encoding(self.path)
            self._handle = self.path.open("r", encoding=self.encoding, newline="")
        except PermissionError as e:
            raise RowSourceError("file_not_readable", f"Permission denied reading file: {e}") from e
        except OSError as e:
            raise RowSourceError("file_not_readable", f"Could not open file: {e}") from e

        first_line = self._handle.readline()
        if not first_line.strip():
            self.close()
            raise RowSourceError("no_headers", "No headers found in the uploaded file")
        self.delimiter = detect_delimiter(first_line)
        self._handle.seek(0)

        reader = csv.reader(self._handle, delimiter=self.delimiter)
        try:
            raw_headers = next(reader)
        except csv.Error as e:
            self.close()
            raise RowSourceError("parse_error", f"CSV parsing error: {e}") from e
        self.headers = [clean_header(h) for h in raw_headers]
        if not any(self.headers):
            self.close()
            raise RowSourceError("no_headers", "No headers found in the uploaded file")

        self._rows = self._iter_reader(reader)
        logger.info(
            f"Opened {self.path.name}: {len(self.headers)} columns, "
            f"delimiter {self.delimiter!r}, encoding {self.encoding}"
        )
        return self.headers

    def _iter_reader(self, reader) -> Iterator[list[str]]:
        try:
            for row in reader:
                if not row or all(not field.strip() for field in row):
                    continue
                yield row
        except csv.Error as e:
            raise RowSourceError("parse_error", f"CSV parsing error: {e}") from e
        except UnicodeDecodeError as e:
            raise RowSourceError("parse_error", f"File encoding error: {e}") from e

    def close(self) -> None:
        super().close()
        if self._handle is not None:
            self._handle.close()
            self._handle = None


class SpreadsheetRowSource(RowSource):
    """First worksheet of an .xlsx workbook, read lazily."""

    def __init__(self, path: str | Path) -> None:
        super().__init__(path)
        self._workbook = None

    def open(self) -> list[str]:
        _check_file(self.path)
        try:
            self._workbook = load_workbook(self.path, read_only=True, data_only=True)
        except (InvalidFileException, OSError, KeyError, ValueError) as e:
            raise RowSourceError("parse_error", f"Could not read spreadsheet: {e}") from e

        rows = self._iter_sheet(self._workbook.active)
        header_row = next(rows, None)
        if header_row is None:
            self.close()
            raise RowSourceError("no_headers", "No headers found in the uploaded file")
        self.headers = [clean_header(h) for h in header_row]
        while self.headers and not self.headers[-1]:
            self.headers.pop()
        if not self.headers:
            self.close()
            raise RowSourceError("no_headers", "No headers found in the uploaded file")
        self._rows = rows
        return self.headers

    @staticmethod
    def _iter_sheet(sheet) -> Iterator[list[str]]:
        for values in sheet.iter_rows(values_only=True):
            row = ["" if value is None else str(value) for value in values]
            if all(not field.strip() for field in row):
                continue
            yield row

    def close(self) -> None:
        super().close()
        if self._workbook is not None:
            self._workbook.close()
            self._workbook = None


def open_row_source(
    path: str | Path, extension: str | None = None, encoding: str | None = None
) -> RowSource:
    """Build the reader for ``path``; call ``open()`` (or use ``with``) next.

    ``encoding`` skips detection for delimited files, e.g. the one recorded
    at upload time.
    """
    path = Path(path)
    extension = (extension or path.suffix.lstrip(".")).lower()
    if extension in DELIMITED_EXTENSIONS:
        return CsvRowSource(path, encoding=encoding)
    if extension in SPREADSHEET_EXTENSIONS:
        return SpreadsheetRowSource(path)
    raise RowSourceError("unsupported_format", f"Unsupported file type: {extension}")
