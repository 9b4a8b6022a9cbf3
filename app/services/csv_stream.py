"""Streaming CSV/NDJSON parser for supplier files.

Bytes are fed in arbitrary chunks; only the trailing partial line is kept
between chunks, so memory stays bounded no matter how large the file is.
"""
import codecs
import csv
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional

from app.services.field_extractor import SupplierRecord, clean_cell, normalize_row

DELIMITER_CANDIDATES = ("\t", ";", ",")
HEADER_KEYWORDS = (
    "ref",
    "sku",
    "ean",
    "gtin",
    "name",
    "nom",
    "designation",
    "libelle",
    "price",
    "prix",
    "stock",
    "qty",
    "brand",
    "marque",
    "category",
    "description",
)

logger = logging.getLogger(__name__)


@dataclass
class ParseOptions:
    """How to read one supplier file."""

    column_mapping: Dict[str, Any]
    delimiter: Optional[str] = None
    skip_rows: int = 0
    has_header_row: Optional[bool] = True  # None = detect
    file_format: str = "csv"  # csv or ndjson
    default_currency: str = "EUR"
    encoding: str = "utf-8"


@dataclass
class ParseStats:
    lines_read: int = 0
    accepted: int = 0
    skipped: int = 0
    delimiter: Optional[str] = None
    headers: List[str] = field(default_factory=list)


def detect_delimiter(line: str) -> str:
    """
    Pick the delimiter occurring most often in `line`.

    Ties go to tab, then semicolon, then comma; a line with none of them
    falls back to comma.
    """
    best, best_count = ",", 0
    for candidate in DELIMITER_CANDIDATES:
        count = line.count(candidate)
        if count > best_count:
            best, best_count = candidate, count
    return best


def split_line(line: str, delimiter: str) -> List[str]:
    """Split one CSV line and clean every cell."""
    try:
        cells = next(csv.reader([line], delimiter=delimiter))
    except (csv.Error, StopIteration):
        cells = line.split(delimiter)
    return [clean_cell(cell) for cell in cells]


def looks_like_header(cells: List[str]) -> bool:
    """A header row has no numeric cells and at least one known column word."""
    non_empty = [cell for cell in cells if cell]
    if not non_empty:
        return False
    numeric = sum(1 for cell in non_empty if cell.replace(",", "").replace(".", "").isdigit())
    if numeric:
        return False
    lowered = " ".join(non_empty).lower()
    return any(keyword in lowered for keyword in HEADER_KEYWORDS)


class SupplierFileParser:
    """
    Incremental parser: call `feed` for each byte chunk, then `finish`.

    Line accounting uses a counter of non-blank lines: the first `skip_rows`
    are ignored, the next one is the header when configured (or detected),
    and every following line is a data row.
    """

    def __init__(self, options: ParseOptions):
        self.options = options
        self.stats = ParseStats(delimiter=options.delimiter)
        self._decoder = codecs.getincrementaldecoder(options.encoding)(errors="replace")
        self._buffer = ""
        self._line_no = 0
        self._started = False
        self._header_pending = options.file_format != "ndjson"

    def feed(self, chunk: bytes) -> Iterator[SupplierRecord]:
        text = self._decoder.decode(chunk)
        if not self._started and text:
            text = text.lstrip("\ufeff")
            self._started = True
        self._buffer += text

        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        for line in lines:
            record = self._process_line(line)
            if record is not None:
                yield record

    def finish(self) -> Iterator[SupplierRecord]:
        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer:
            record = self._process_line(self._buffer)
            self._buffer = ""
            if record is not None:
                yield record

    def iter_records(self, chunks: Iterable[bytes]) -> Iterator[SupplierRecord]:
        """Yield every record from an iterable of byte chunks; `stats` is final afterwards."""
        for chunk in chunks:
            yield from self.feed(chunk)
        yield from self.finish()

    def _process_line(self, line: str) -> Optional[SupplierRecord]:
        line = line.rstrip("\r")
        if not line.strip():
            return None

        self._line_no += 1
        if self._line_no <= self.options.skip_rows:
            return None

        self.stats.lines_read += 1
        if self.options.file_format == "ndjson":
            return self._process_json_line(line)

        if self.stats.delimiter is None:
            self.stats.delimiter = detect_delimiter(line)
            logger.info(f"🔎 Detected delimiter {self.stats.delimiter!r}")
        cells = split_line(line, self.stats.delimiter)

        if self._header_pending:
            self._header_pending = False
            has_header = self.options.has_header_row
            if has_header is None:
                has_header = looks_like_header(cells)
            if has_header:
                self.stats.headers = cells
                self.stats.lines_read -= 1
                return None

        return self._accept(cells)

    def _process_json_line(self, line: str) -> Optional[SupplierRecord]:
        try:
            row = json.loads(line)
        except json.JSONDecodeError:
            self.stats.skipped += 1
            return None
        if not isinstance(row, dict):
            self.stats.skipped += 1
            return None
        return self._accept(row)

    def _accept(self, row) -> Optional[SupplierRecord]:
        record = normalize_row(
            row,
            self.options.column_mapping,
            headers=self.stats.headers or None,
            default_currency=self.options.default_currency,
        )
        if record is None:
            self.stats.skipped += 1
            return None
        self.stats.accepted += 1
        return record

