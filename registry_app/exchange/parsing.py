"""
Spreadsheet parsing for client imports.

Turns raw CSV or XLSX bytes into header names plus an ordered list of rows
keyed by header. Row numbers count physical rows in the file, so the first
data row after a single header row is row 2 and skipped blank rows still
consume a number.
"""

from __future__ import annotations

import csv
import io
import zipfile
from dataclasses import dataclass
from datetime import date, datetime, time
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from registry_app.models.exchange import FileFormat

from .errors import ParseError

DEFAULT_ENCODING = "utf-8-sig"
SNIFF_DELIMITERS = ",;\t"
SNIFF_SAMPLE_SIZE = 64 * 1024

_FORMAT_BY_EXTENSION = {
    "csv": FileFormat.CSV,
    "txt": FileFormat.CSV,
    "xlsx": FileFormat.XLSX,
    "xlsm": FileFormat.XLSX,
}


@dataclass(frozen=True)
class ParsedRow:
    """A single data row with values keyed by (trimmed) header name."""

    row_number: int
    fields: dict[str, str]


@dataclass(frozen=True)
class ParsedFile:
    headers: tuple[str, ...]
    rows: tuple[ParsedRow, ...]
    rows_skipped_blank: int = 0
    delimiter: str | None = None

    @property
    def row_count(self) -> int:
        return len(self.rows)


def detect_format(file_name: str | None) -> FileFormat:
    """Infer the file format from an upload's extension."""
    extension = Path(file_name or "").suffix.lstrip(".").lower()
    try:
        return _FORMAT_BY_EXTENSION[extension]
    except KeyError:
        raise ParseError(f"Unsupported file type '{extension or file_name}'. Upload a CSV or XLSX file.") from None


def _sanitize_header(header: object | None) -> str:
    token = "" if header is None else str(header)
    return token.strip().lstrip("\ufeff").strip()


def _row_is_blank(values: Sequence[str]) -> bool:
    return all(value.strip() == "" for value in values)


def _stringify_cell(value: object | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    return str(value)


def _sniff_delimiter(sample: str) -> str:
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=SNIFF_DELIMITERS)
    except csv.Error:
        return ","
    return dialect.delimiter


def _iter_csv_rows(data: bytes, *, encoding: str, delimiter: str | None) -> tuple[Iterator[list[str]], str]:
    try:
        text = data.decode(encoding)
    except LookupError as exc:
        raise ParseError(f"Unknown text encoding '{encoding}'.") from exc
    except UnicodeDecodeError as exc:
        raise ParseError(f"File could not be decoded as {encoding}: {exc.reason} at byte {exc.start}.") from exc

    # A BOM survives decoding with plain utf-8; headers strip it anyway.
    resolved_delimiter = delimiter or _sniff_delimiter(text[:SNIFF_SAMPLE_SIZE])
    reader = csv.reader(io.StringIO(text, newline=""), delimiter=resolved_delimiter)
    return reader, resolved_delimiter


def _iter_xlsx_rows(data: bytes) -> Iterator[list[str]]:
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
        raise ParseError(f"File is not a readable XLSX workbook: {exc}") from exc

    try:
        worksheet = workbook.worksheets[0] if workbook.worksheets else None
        if worksheet is None:
            return
        for row in worksheet.iter_rows(values_only=True):
            yield [_stringify_cell(value) for value in row]
    finally:
        workbook.close()


def _build_parsed_file(
    raw_rows: Iterable[Sequence[str]],
    *,
    header_rows: int,
    delimiter: str | None = None,
) -> ParsedFile:
    iterator = iter(raw_rows)
    header_values: Sequence[str] | None = None
    try:
        for _ in range(header_rows):
            header_values = next(iterator)
    except StopIteration:
        header_values = None
    except csv.Error as exc:
        raise ParseError(f"Malformed CSV content: {exc}") from exc

    if header_values is None:
        raise ParseError("File has no header row.")
    headers = tuple(_sanitize_header(value) for value in header_values)
    if not any(headers):
        raise ParseError("Header row is empty.")

    rows: list[ParsedRow] = []
    skipped = 0
    try:
        for row_number, values in enumerate(iterator, start=header_rows + 1):
            values = [value if isinstance(value, str) else _stringify_cell(value) for value in values]
            if _row_is_blank(values):
                skipped += 1
                continue
            fields: dict[str, str] = {}
            for index, header in enumerate(headers):
                if not header:
                    continue
                # Repeated header names are not deduplicated; the rightmost column wins.
                fields[header] = values[index] if index < len(values) else ""
            rows.append(ParsedRow(row_number=row_number, fields=fields))
    except csv.Error as exc:
        raise ParseError(f"Malformed CSV content: {exc}") from exc

    return ParsedFile(
        headers=tuple(header for header in headers if header),
        rows=tuple(rows),
        rows_skipped_blank=skipped,
        delimiter=delimiter,
    )


def parse_file(
    data: bytes,
    file_format: FileFormat | str,
    *,
    encoding: str | None = None,
    header_rows: int = 1,
    delimiter: str | None = None,
) -> ParsedFile:
    """
    Parse an uploaded spreadsheet.

    Args:
        data: Raw file bytes.
        file_format: ``FileFormat.CSV`` or ``FileFormat.XLSX``.
        encoding: Text encoding for CSV input (defaults to UTF-8 with optional BOM).
        header_rows: Number of leading rows to skip; the last skipped row is the header.
        delimiter: CSV delimiter; sniffed among comma, semicolon and tab when omitted.

    Raises:
        ParseError: The file is empty, has no header, or cannot be read in the
            declared format.
    """
    try:
        resolved_format = FileFormat(file_format)
    except ValueError:
        raise ParseError(f"Unsupported file format '{file_format}'.") from None
    if header_rows < 1:
        raise ParseError("header_rows must be at least 1.")
    if not data or not data.strip():
        raise ParseError("File is empty.")

    if resolved_format is FileFormat.XLSX:
        return _build_parsed_file(_iter_xlsx_rows(data), header_rows=header_rows)

    rows, resolved_delimiter = _iter_csv_rows(
        data,
        encoding=encoding or DEFAULT_ENCODING,
        delimiter=delimiter,
    )
    return _build_parsed_file(rows, header_rows=header_rows, delimiter=resolved_delimiter)
