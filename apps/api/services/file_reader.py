"""Format-agnostic row readers for uploaded CSV and spreadsheet files."""

from __future__ import annotations

from contextlib import closing
from datetime import date, datetime, time
import logging
import math
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

import pandas as pd

from config import settings
from services.errors import FileParseError, UnsupportedFormat
from services.identifiers import normalize_headers

logger = logging.getLogger(__name__)

Row = Dict[str, str]

DELIMITED_EXTENSIONS = {".csv"}
SPREADSHEET_EXTENSIONS = {".xlsx", ".xls"}
SUPPORTED_EXTENSIONS = DELIMITED_EXTENSIONS | SPREADSHEET_EXTENSIONS


def check_extension(filename: str) -> str:
    """Return the lowercased extension or raise ``UnsupportedFormat``."""
    extension = Path(filename or "").suffix.lower()
    if extension not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFormat(
            f"Unsupported file format '{extension or filename}'. Supported formats: .csv, .xlsx, .xls",
            details={"filename": filename, "supported": sorted(SUPPORTED_EXTENSIONS)},
        )
    return extension


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    if value is pd.NaT:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


class RowReader:
    """Forward-only reader over the data rows of one file.

    Rows map normalized column names to raw text. A reader is single-use:
    reopen the file with ``open_reader`` to read it again.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.raw_headers: List[str] = []
        self.columns: List[str] = []
        self._consumed = False

    def _set_headers(self, headers: List[Any]) -> None:
        raw = [_cell_text(header) for header in headers]
        if not raw or not any(raw):
            raise FileParseError(
                "The file has no header row.",
                details={"filename": self.path.name},
            )
        self.raw_headers = raw
        self.columns = normalize_headers(raw)

    def _to_row(self, values: List[Any]) -> Row:
        row: Row = {}
        for index, name in enumerate(self.columns):
            row[name] = _cell_text(values[index]) if index < len(values) else ""
        return row

    def _iter_values(self) -> Iterator[List[Any]]:
        raise NotImplementedError

    def iter_rows(self) -> Iterator[Row]:
        if self._consumed:
            raise RuntimeError("Row reader already consumed; reopen the file to read it again.")
        self._consumed = True
        return self._generate()

    def _generate(self) -> Iterator[Row]:
        with closing(self._iter_values()) as source:
            for values in source:
                yield self._to_row(values)

    def read(
        self,
        on_row: Callable[[Row], None],
        on_complete: Optional[Callable[[int], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> int:
        """Push every row to ``on_row`` and report the total to ``on_complete``.

        The first error aborts the read; ``on_error`` sees it before it propagates.
        """
        total = 0
        try:
            with closing(self.iter_rows()) as rows:
                for row in rows:
                    on_row(row)
                    total += 1
        except Exception as exc:
            if on_error is not None:
                on_error(exc)
            raise
        if on_complete is not None:
            on_complete(total)
        return total


class DelimitedReader(RowReader):
    """Streams CSV rows chunk by chunk."""

    def __init__(self, path: str | Path, chunk_rows: Optional[int] = None):
        super().__init__(path)
        self.chunk_rows = chunk_rows or settings.CSV_CHUNK_ROWS
        try:
            header_frame = pd.read_csv(
                self.path,
                header=None,
                nrows=1,
                dtype=str,
                keep_default_na=False,
                encoding="utf-8-sig",
            )
        except pd.errors.EmptyDataError:
            raise FileParseError("The file is empty.", details={"filename": self.path.name}) from None
        except (pd.errors.ParserError, UnicodeDecodeError) as exc:
            raise FileParseError(f"Could not parse CSV header: {exc}", details={"filename": self.path.name}) from exc
        if header_frame.empty:
            raise FileParseError("The file is empty.", details={"filename": self.path.name})
        self._set_headers(list(header_frame.iloc[0]))

    def _iter_values(self) -> Iterator[List[Any]]:
        try:
            with pd.read_csv(
                self.path,
                header=None,
                skiprows=1,
                names=list(range(len(self.columns))),
                dtype=str,
                keep_default_na=False,
                na_filter=False,
                skip_blank_lines=True,
                index_col=False,
                encoding="utf-8-sig",
                chunksize=self.chunk_rows,
            ) as chunks:
                for chunk in chunks:
                    for values in chunk.itertuples(index=False, name=None):
                        yield list(values)
        except pd.errors.EmptyDataError:
            return
        except (pd.errors.ParserError, UnicodeDecodeError) as exc:
            raise FileParseError(f"Could not parse CSV file: {exc}", details={"filename": self.path.name}) from exc


class SpreadsheetReader(RowReader):
    """Loads one worksheet in full, then iterates its rows."""

    def __init__(self, path: str | Path, sheet: Optional[str] = None):
        super().__init__(path)
        self.sheet = sheet
        try:
            frame = pd.read_excel(self.path, sheet_name=sheet or 0, header=None, dtype=object)
        except ValueError as exc:
            raise FileParseError(
                f"Could not read worksheet {sheet!r}: {exc}" if sheet else f"Could not read spreadsheet: {exc}",
                details={"filename": self.path.name, "sheet": sheet},
            ) from exc
        except Exception as exc:
            raise FileParseError(
                f"Could not read spreadsheet: {exc}",
                details={"filename": self.path.name},
            ) from exc
        if frame.empty:
            raise FileParseError("The worksheet is empty.", details={"filename": self.path.name, "sheet": sheet})
        self._set_headers(list(frame.iloc[0]))
        self._frame = frame.iloc[1:]
        logger.debug("Loaded %s rows from %s", len(self._frame), self.path.name)

    def _iter_values(self) -> Iterator[List[Any]]:
        for values in self._frame.itertuples(index=False, name=None):
            values = list(values)
            if all(_cell_text(value) == "" for value in values):
                continue
            yield values


def open_reader(path: str | Path, sheet: Optional[str] = None, filename: Optional[str] = None) -> RowReader:
    """Pick a reader by extension; unsupported formats fail before any I/O."""
    extension = check_extension(filename or Path(path).name)
    if extension in DELIMITED_EXTENSIONS:
        return DelimitedReader(path)
    return SpreadsheetReader(path, sheet=sheet)
