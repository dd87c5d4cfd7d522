"""Format adapters that stream ImportRecords out of uploaded files.

Delimited text is decoded incrementally and never held in memory. Spreadsheet
formats are the documented exception: openpyxl keeps the shared-string table
and xlrd the whole workbook in memory, so those files are capped in size.
"""
from __future__ import annotations

import codecs
import csv
import logging
import os
import queue
import re
import threading
import zipfile
from abc import ABC, abstractmethod
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Iterator, Mapping

import openpyxl
import xlrd
from openpyxl.utils.exceptions import InvalidFileException

from bulk_ingest.schemas.import_record import KNOWN_FIELDS, REQUIRED_FIELDS, ImportRecord
from bulk_ingest.services.exceptions import FileFormatError

logger = logging.getLogger(__name__)

DELIMITED_EXTENSIONS = {".csv", ".txt", ".tsv"}
XLSX_EXTENSIONS = {".xlsx", ".xlsm"}
XLS_EXTENSIONS = {".xls"}
SUPPORTED_EXTENSIONS = DELIMITED_EXTENSIONS | XLSX_EXTENSIONS | XLS_EXTENSIONS
LINE_END = re.compile(r"\r\n|\r|\n")

# normalised header -> known field
HEADER_ALIASES = {
    "code": "object_code",
    "object_id": "object_code",
    "objectcode": "object_code",
    "item_code": "object_code",
    "title": "name",
    "object_name": "name",
    "tag": "rfid_tag_id",
    "rfid": "rfid_tag_id",
    "rfid_tag": "rfid_tag_id",
    "tag_id": "rfid_tag_id",
    "rfidtagid": "rfid_tag_id",
    "type": "object_type",
    "priority": "priority_level",
    "collected": "date_collected",
    "collection_date": "date_collected",
    "date": "date_collected",
    "assignee": "assigned_to",
    "owner": "assigned_to",
    "notes": "description",
}


def normalise_header(value: Any) -> str:
    """Trim, lowercase and snake-case a raw header cell."""

    text = "" if value is None else str(value).strip().lower()
    for char in (" ", "-", "."):
        text = text.replace(char, "_")
    while "__" in text:
        text = text.replace("__", "_")
    return text.strip("_")


def cell_text(value: Any) -> str:
    """Render a spreadsheet cell the way it would appear in a delimited file."""

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
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


class RecordSource(ABC):
    """Base adapter: maps header cells to fields and yields numbered records.

    Data rows are numbered from 1 in file order. Rows whose cells are all blank
    are skipped and do not take a number.
    """

    def __init__(self, path: str | Path, *, column_mapping: Mapping[str, str] | None = None) -> None:
        self.path = Path(path)
        self._mapping = {normalise_header(k): v for k, v in (column_mapping or {}).items()}
        self.rows_read = 0

    @abstractmethod
    def _raw_rows(self) -> Iterator[list[str]]:
        """Yield every row of the file, header first, as lists of cell text."""

    def _translate_errors(self) -> tuple[type[BaseException], ...]:
        return ()

    def resolve_fields(self, header: list[str]) -> list[str]:
        """Map raw header cells to record field names, checking required columns."""

        fields: list[str] = []
        for raw in header:
            name = normalise_header(raw)
            if name in self._mapping:
                name = self._mapping[name]
            elif name not in KNOWN_FIELDS:
                name = HEADER_ALIASES.get(name, name)
            fields.append(name)

        missing = [name for name in REQUIRED_FIELDS if name not in fields]
        if missing:
            msg = f"Missing required columns: {', '.join(missing)}"
            raise FileFormatError(msg, row_number=0)
        return fields

    def records(self, start_after: int = 0) -> Iterator[ImportRecord]:
        """Yield records lazily, skipping the first ``start_after`` data rows."""

        self.rows_read = 0
        rows = self._guarded(self._raw_rows())
        try:
            header = next(rows, None)
            if header is None:
                raise FileFormatError("File is empty or has no header row", row_number=0)
            fields = self.resolve_fields(header)

            for cells in rows:
                if not any(cells):
                    continue
                self.rows_read += 1
                if self.rows_read <= start_after:
                    continue
                yield ImportRecord.from_mapping(self.rows_read, dict(zip(fields, cells)))
        finally:
            rows.close()

    def count_rows(self) -> int:
        """Count non-blank data rows without retaining them."""

        count = 0
        rows = self._guarded(self._raw_rows())
        try:
            header = next(rows, None)
            if header is None:
                return 0
            for cells in rows:
                if any(cells):
                    count += 1
        finally:
            rows.close()
        return count

    def _guarded(self, rows: Iterator[list[str]]) -> Iterator[list[str]]:
        errors = (UnicodeDecodeError, LookupError, csv.Error, OSError) + self._translate_errors()
        try:
            yield from rows
        except FileFormatError:
            raise
        except errors as exc:
            msg = f"Could not read {self.path.name}: {exc}"
            raise FileFormatError(msg, row_number=self.rows_read + 1) from exc


class DelimitedRecordSource(RecordSource):
    """CSV/TSV adapter reading through an incrementally decoded text stream."""

    def __init__(
        self,
        path: str | Path,
        *,
        column_mapping: Mapping[str, str] | None = None,
        delimiter: str | None = None,
        encoding: str | None = None,
    ) -> None:
        super().__init__(path, column_mapping=column_mapping)
        if delimiter is None:
            delimiter = "\t" if self.path.suffix.lower() == ".tsv" else ","
        self.delimiter = delimiter
        self.encoding = encoding or "utf-8-sig"

    def _raw_rows(self) -> Iterator[list[str]]:
        with open(self.path, "rb") as handle:
            reader = csv.reader(self._decoded_lines(handle), delimiter=self.delimiter, strict=True)
            for row in reader:
                yield [cell.strip() for cell in row]

    def _decoded_lines(self, handle) -> Iterator[str]:
        # line by line, so a decode error surfaces at the row that holds it
        decoder = codecs.getincrementaldecoder(self.encoding)(errors="strict")
        pending = ""
        for chunk in handle:
            pending += decoder.decode(chunk)
            start = 0
            for match in LINE_END.finditer(pending):
                yield pending[start : match.end()]
                start = match.end()
            pending = pending[start:]
        pending += decoder.decode(b"", final=True)
        if pending:
            yield pending


class XlsxRecordSource(RecordSource):
    """Reads the active worksheet of an .xlsx workbook in read-only mode."""

    def _translate_errors(self) -> tuple[type[BaseException], ...]:
        return (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError)

    def _raw_rows(self) -> Iterator[list[str]]:
        wb = openpyxl.load_workbook(self.path, read_only=True, data_only=True)
        try:
            ws = wb.active
            for row in ws.iter_rows(values_only=True):
                yield [cell_text(c) for c in row]
        finally:
            wb.close()


class XlsRecordSource(RecordSource):
    """Reads the first sheet of a legacy .xls workbook."""

    def _translate_errors(self) -> tuple[type[BaseException], ...]:
        return (xlrd.XLRDError, ValueError)

    def _raw_rows(self) -> Iterator[list[str]]:
        book = xlrd.open_workbook(str(self.path), on_demand=True)
        try:
            sheet = book.sheet_by_index(0)
            for row_idx in range(sheet.nrows):
                yield [self._cell(cell, book.datemode) for cell in sheet.row(row_idx)]
        finally:
            book.release_resources()

    @staticmethod
    def _cell(cell: xlrd.sheet.Cell, datemode: int) -> str:
        if cell.ctype == xlrd.XL_CELL_DATE:
            return cell_text(xlrd.xldate_as_datetime(cell.value, datemode))
        if cell.ctype == xlrd.XL_CELL_BOOLEAN:
            return cell_text(bool(cell.value))
        return cell_text(cell.value)


def open_parser(
    file_path: str | Path,
    *,
    column_mapping: Mapping[str, str] | None = None,
    delimiter: str | None = None,
    encoding: str | None = None,
    max_spreadsheet_mb: int = 50,
) -> RecordSource:
    """Pick the adapter for a file by extension.

    Raises:
        FileFormatError: unsupported extension, missing file, or a spreadsheet
            larger than ``max_spreadsheet_mb``
    """
    path = Path(file_path)
    ext = path.suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        msg = f"Unsupported file type {ext or '(none)'}. Use CSV, XLSX or XLS."
        raise FileFormatError(msg)
    if not path.exists():
        msg = f"Source file not found: {path}"
        raise FileFormatError(msg)

    if ext in DELIMITED_EXTENSIONS:
        return DelimitedRecordSource(path, column_mapping=column_mapping, delimiter=delimiter, encoding=encoding)

    size_mb = os.path.getsize(path) / (1024 * 1024)
    if size_mb > max_spreadsheet_mb:
        msg = (
            f"Spreadsheet size ({size_mb:.2f} MB) exceeds the {max_spreadsheet_mb} MB limit; "
            "export it as CSV to import larger files"
        )
        raise FileFormatError(msg)
    if ext in XLSX_EXTENSIONS:
        return XlsxRecordSource(path, column_mapping=column_mapping)
    return XlsRecordSource(path, column_mapping=column_mapping)


class _ProducerFailure:
    def __init__(self, exc: BaseException) -> None:
        self.exc = exc


_END_OF_STREAM = object()


class RecordChannel:
    """Bounded hand-off from a parser thread to the batch assembler.

    The producer blocks while the channel is full, so parsing never runs more
    than ``capacity`` records ahead of the consumer. Parser exceptions are
    re-raised in the consumer when it reaches them.
    """

    def __init__(self, records: Iterator[ImportRecord], *, capacity: int, poll_interval: float = 0.1) -> None:
        self._records = records
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=capacity)
        self._stop = threading.Event()
        self._poll_interval = poll_interval
        self._thread = threading.Thread(target=self._produce, name="record-producer", daemon=True)

    def __enter__(self) -> "RecordChannel":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def start(self) -> None:
        self._thread.start()

    def _put(self, item: Any) -> bool:
        while not self._stop.is_set():
            try:
                self._queue.put(item, timeout=self._poll_interval)
                return True
            except queue.Full:
                continue
        return False

    def _produce(self) -> None:
        try:
            for record in self._records:
                if not self._put(record):
                    return
        except Exception as exc:
            self._put(_ProducerFailure(exc))
            return
        finally:
            close = getattr(self._records, "close", None)
            if close is not None:
                close()
        self._put(_END_OF_STREAM)

    def __iter__(self) -> Iterator[ImportRecord]:
        while True:
            item = self._queue.get()
            if item is _END_OF_STREAM:
                return
            if isinstance(item, _ProducerFailure):
                raise item.exc
            yield item

    def qsize(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Stop the producer and wait for it to release the file."""

        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=max(self._poll_interval * 10, 1.0))
        if self._thread.is_alive():
            logger.warning(f"Record producer for {self._records!r} did not stop in time")
