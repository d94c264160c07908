"""
File analysis for uploaded exports.

Reads CSV (delimiter sniffed), JSON, JSON Lines and Excel exports, yielding
one record per data row. Rows that cannot be parsed are skipped and counted
instead of aborting the whole file. ``analyze_file`` makes a single streaming
pass that profiles every column and guesses the source system from the header.

Readers work on a seekable binary stream. CSV and JSON Lines are read line by
line; a JSON array and an Excel workbook have to be loaded whole.
"""

import codecs
import csv
import io
import json
import logging
import re
from collections import Counter, deque
from typing import Any, BinaryIO, Deque, Dict, Iterator, List, Optional, Tuple, Union

import pandas as pd

from migration_engine.api.schemas.shared import AnalysisResult, ColumnProfile, ValueCount
from migration_engine.core.config import settings
from migration_engine.core.exceptions import EmptyInput, UnsupportedFormat
from migration_engine.domain.imports.source_systems import detect_source_system
from migration_engine.domain.imports.validators import validate_format
from migration_engine.utils.date import looks_like_date

logger = logging.getLogger(__name__)

Source = Union[bytes, BinaryIO]

FALLBACK_ENCODINGS = ("utf-8-sig", "latin-1")
SNIFF_DELIMITERS = ",;\t|"
SNIFF_BYTES = 64 * 1024
READ_CHUNK_BYTES = 1024 * 1024
TYPE_VOTE_RATIO = 0.9

# Raised by a strict csv reader when input ends inside a quoted field
_UNTERMINATED_QUOTE = "unexpected end of data"
_OPEN_QUOTE = object()

_INTEGER_RE = re.compile(r"^[+-]?(0|[1-9]\d*)$")
_DECIMAL_RE = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d{1,3}(,\d{3})+(\.\d+)?)$")
_BOOLEAN_VALUES = {"true", "false", "yes", "no", "y", "n", "t", "f"}


def _looks_like_json_lines(head: bytes) -> bool:
    lines = [line.strip() for line in head.splitlines() if line.strip()]
    return len(lines) >= 2 and all(line.startswith(b"{") for line in lines[:2]) and lines[0].endswith(b"}")


def detect_format(head: bytes, file_name: Optional[str] = None) -> str:
    """Return ``xlsx``, ``json``, ``jsonl`` or ``csv`` from the file name and leading bytes."""
    name = (file_name or "").lower()
    if name.endswith((".xlsx", ".xlsm")) or head[:4] == b"PK\x03\x04":
        return "xlsx"
    if name.endswith((".jsonl", ".ndjson")):
        return "jsonl"
    stripped = head.lstrip(b"\xef\xbb\xbf \t\r\n")
    if name.endswith(".json") or stripped[:1] in (b"[", b"{"):
        return "jsonl" if _looks_like_json_lines(stripped) else "json"
    return "csv"


def detect_encoding(stream: BinaryIO, encoding_hint: Optional[str] = None) -> str:
    """
    Return the first encoding that decodes the whole stream, trying the
    declared one first. The stream is decoded chunk by chunk and rewound.

    Raises:
        UnsupportedFormat: the content looks binary or no candidate decodes it
    """
    candidates = [encoding_hint] if encoding_hint else []
    candidates.extend(enc for enc in FALLBACK_ENCODINGS if enc != encoding_hint)

    for encoding in candidates:
        try:
            decoder = codecs.getincrementaldecoder(encoding)()
        except LookupError as exc:
            logger.debug(f"Unknown encoding {encoding}: {exc}")
            continue
        stream.seek(0)
        try:
            for chunk in iter(lambda: stream.read(READ_CHUNK_BYTES), b""):
                if "\x00" in decoder.decode(chunk):
                    raise UnsupportedFormat(
                        "File contains binary data and is not a delimited text export",
                        suggested_fix="Upload a CSV, JSON or .xlsx export.",
                    )
            decoder.decode(b"", final=True)
        except UnicodeDecodeError as exc:
            logger.debug(f"Decoding with {encoding} failed: {exc}")
            continue
        stream.seek(0)
        return encoding

    raise UnsupportedFormat("Unable to decode file with any supported encoding")


def _clean_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    if isinstance(value, str):
        return value if value.strip() else None
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return value


def _dedupe_header(raw_header: List[Any]) -> List[str]:
    columns: List[str] = []
    seen: Counter = Counter()
    for index, raw in enumerate(raw_header):
        name = str(raw).strip() if raw is not None else ""
        if not name or name.lower().startswith("unnamed:"):
            name = f"column_{index + 1}"
        seen[name] += 1
        if seen[name] > 1:
            name = f"{name}_{seen[name]}"
        columns.append(name)
    return columns


class RecordReader:
    """
    Streams ``(row_number, record)`` pairs out of an uploaded file.

    ``source`` is the raw bytes or a seekable binary stream the caller keeps
    open while iterating. Row numbers are 1-based data-row positions (the
    header is not counted); malformed rows still consume their row number so
    numbering stays stable between analysis, validation and execution.
    """

    def __init__(self, source: Source, encoding_hint: Optional[str] = None, file_name: Optional[str] = None):
        self._stream: BinaryIO = io.BytesIO(source) if isinstance(source, (bytes, bytearray)) else source
        self._stream.seek(0)
        head = self._stream.read(SNIFF_BYTES)
        self._stream.seek(0)
        if not head.strip():
            raise EmptyInput("Uploaded file is empty")

        self.file_format = detect_format(head, file_name)
        self.encoding: Optional[str] = None
        self.delimiter: Optional[str] = None
        self.columns: List[str] = []
        self.parse_error_count = 0
        self.parse_error_rows: List[int] = []

        self._items: Optional[List[Any]] = None
        self._frame: Optional[pd.DataFrame] = None

        if self.file_format == "xlsx":
            self._frame = self._load_excel()
            self.columns = _dedupe_header(list(self._frame.columns))
        else:
            self.encoding = detect_encoding(self._stream, encoding_hint)
            if self.file_format == "json":
                self._items = self._load_json()
                self.columns = self._json_columns(self._items)
            elif self.file_format == "jsonl":
                self.columns = self._json_columns(item for _, item in self._jsonl_items())
            else:
                sample = codecs.getincrementaldecoder(self.encoding)(errors="replace").decode(head)
                self.delimiter = self._sniff_delimiter(sample)
                self.columns = self._csv_header()

        if not self.columns:
            raise EmptyInput("No header row found in file")

    # -- container loaders -------------------------------------------------

    def _load_excel(self) -> pd.DataFrame:
        try:
            frame = pd.read_excel(self._stream, sheet_name=0, dtype=str, engine="openpyxl")
        except Exception as exc:
            raise UnsupportedFormat(f"Unable to read Excel workbook: {exc}") from exc
        return frame

    def _load_json(self) -> List[Any]:
        self._stream.seek(0)
        try:
            payload = json.loads(self._stream.read().decode(self.encoding))
        except json.JSONDecodeError as exc:
            raise UnsupportedFormat(
                f"Invalid JSON at line {exc.lineno} column {exc.colno}: {exc.msg}",
                suggested_fix="Export records as a JSON array of objects.",
            ) from exc
        if isinstance(payload, dict):
            for key in ("records", "data", "items"):
                if isinstance(payload.get(key), list):
                    return payload[key]
            raise UnsupportedFormat("JSON object does not contain a 'records' array")
        if not isinstance(payload, list):
            raise UnsupportedFormat("JSON export must be an array of objects")
        return payload

    @staticmethod
    def _json_columns(items) -> List[str]:
        columns: Dict[str, None] = {}
        for item in items:
            if isinstance(item, dict):
                for key in item:
                    columns.setdefault(str(key), None)
        return list(columns)

    @staticmethod
    def _sniff_delimiter(sample: str) -> str:
        try:
            return csv.Sniffer().sniff(sample, delimiters=SNIFF_DELIMITERS).delimiter
        except csv.Error:
            return ","

    def _text_lines(self) -> Iterator[str]:
        """Physical lines of the decoded stream, line endings kept."""
        self._stream.seek(0)
        text = io.TextIOWrapper(self._stream, encoding=self.encoding, newline="")
        try:
            yield from text
        finally:
            if not self._stream.closed:
                text.detach()

    def _jsonl_items(self) -> Iterator[Tuple[int, Any]]:
        """``(row_number, item)`` per non-blank line; ``item`` is None for invalid JSON."""
        row_number = 0
        for line in self._text_lines():
            if not line.strip():
                continue
            row_number += 1
            try:
                yield row_number, json.loads(line)
            except json.JSONDecodeError as exc:
                logger.warning(f"Invalid JSON on data row {row_number}: {exc.msg}")
                yield row_number, None

    def _parse_csv_lines(self, lines: List[str]):
        """One record from ``lines``: its cells, None if malformed, or ``_OPEN_QUOTE``."""
        try:
            rows = list(csv.reader(lines, delimiter=self.delimiter, strict=True))
        except csv.Error as exc:
            if str(exc) == _UNTERMINATED_QUOTE:
                return _OPEN_QUOTE
            logger.warning(f"CSV parse error: {exc}")
            return None
        if len(rows) > 1:
            return None
        return rows[0] if rows else []

    def _csv_rows(self) -> Iterator[Optional[List[str]]]:
        """
        Yield parsed records, or None for a record the csv module rejected.

        A quoted field may span physical lines. A quote still open at the end
        of input, or after ``csv_max_record_lines`` lines, makes that record a
        parse error and reading resumes on the line after the one that opened it.
        """
        lines = self._text_lines()
        pushed_back: Deque[str] = deque()

        def next_line() -> Optional[str]:
            return pushed_back.popleft() if pushed_back else next(lines, None)

        while True:
            first = next_line()
            if first is None:
                return
            buffered = [first]
            parsed = self._parse_csv_lines(buffered)
            while parsed is _OPEN_QUOTE:
                following = next_line() if len(buffered) < settings.csv_max_record_lines else None
                if following is None:
                    logger.warning(f"Unterminated quote in CSV record starting {first[:60]!r}")
                    pushed_back.extendleft(reversed(buffered[1:]))
                    parsed = None
                    break
                buffered.append(following)
                parsed = self._parse_csv_lines(buffered)
            if parsed is not None and all(not cell.strip() for cell in parsed):
                continue
            yield parsed

    def _csv_header(self) -> List[str]:
        rows = self._csv_rows()
        try:
            for row in rows:
                if row is not None:
                    return _dedupe_header(row)
        finally:
            rows.close()
        return []

    # -- iteration ----------------------------------------------------------

    def _record_parse_error(self, row_number: int) -> None:
        self.parse_error_count += 1
        if len(self.parse_error_rows) < settings.max_reported_parse_errors:
            self.parse_error_rows.append(row_number)

    def __iter__(self) -> Iterator[Tuple[int, Dict[str, Any]]]:
        self.parse_error_count = 0
        self.parse_error_rows = []
        if self.file_format == "xlsx":
            yield from self._iter_excel()
        elif self.file_format == "json":
            yield from self._iter_json(enumerate(self._items or [], start=1))
        elif self.file_format == "jsonl":
            yield from self._iter_json(self._jsonl_items())
        else:
            yield from self._iter_csv()

    def _iter_csv(self) -> Iterator[Tuple[int, Dict[str, Any]]]:
        header_seen = False
        row_number = 0
        width = len(self.columns)
        for row in self._csv_rows():
            if not header_seen:
                if row is None:
                    continue
                header_seen = True
                continue
            row_number += 1
            if row is None or len(row) != width:
                self._record_parse_error(row_number)
                continue
            yield row_number, {col: _clean_value(val) for col, val in zip(self.columns, row)}

    def _iter_json(self, items: Iterator[Tuple[int, Any]]) -> Iterator[Tuple[int, Dict[str, Any]]]:
        for row_number, item in items:
            if not isinstance(item, dict):
                self._record_parse_error(row_number)
                continue
            yield row_number, {col: _clean_value(item.get(col)) for col in self.columns}

    def _iter_excel(self) -> Iterator[Tuple[int, Dict[str, Any]]]:
        row_number = 0
        for values in self._frame.itertuples(index=False, name=None):
            cleaned = [_clean_value(v) for v in values]
            if all(v is None for v in cleaned):
                continue
            row_number += 1
            yield row_number, dict(zip(self.columns, cleaned))


def iter_records(
    source: Source, encoding_hint: Optional[str] = None, file_name: Optional[str] = None
) -> Iterator[Tuple[int, Dict[str, Any]]]:
    """Re-stream the records of an already analyzed file."""
    yield from RecordReader(source, encoding_hint, file_name)


class ColumnProfiler:
    """Accumulates one column's profile without holding its values."""

    def __init__(self, name: str):
        self.name = name
        self.null_count = 0
        self.non_null = 0
        self.samples: List[str] = []
        self.counts: Counter = Counter()
        self.capped = False
        self.votes: Counter = Counter()

    @staticmethod
    def classify(value: Any) -> str:
        if isinstance(value, bool):
            return "boolean"
        if isinstance(value, int):
            return "integer"
        if isinstance(value, float):
            return "decimal"
        text = str(value).strip()
        if text.lower() in _BOOLEAN_VALUES:
            return "boolean"
        if _INTEGER_RE.match(text):
            return "integer"
        if _DECIMAL_RE.match(text):
            return "decimal"
        if looks_like_date(text):
            return "date"
        if validate_format(text, "email")[0]:
            return "email"
        if sum(ch.isdigit() for ch in text) >= 7 and validate_format(text, "phone")[0]:
            return "phone"
        return "string"

    def add(self, value: Any) -> None:
        if value is None:
            self.null_count += 1
            return
        self.non_null += 1
        text = str(value)
        self.votes[self.classify(value)] += 1

        if text in self.counts:
            self.counts[text] += 1
        elif len(self.counts) < settings.profile_distinct_limit:
            self.counts[text] = 1
            if len(self.samples) < settings.profile_sample_size:
                self.samples.append(text)
        else:
            self.capped = True

    def inferred_type(self) -> str:
        if self.non_null == 0:
            return "empty"
        threshold = self.non_null * TYPE_VOTE_RATIO
        for type_name, count in self.votes.most_common():
            if count >= threshold:
                return type_name
        if self.votes["integer"] + self.votes["decimal"] >= threshold:
            return "decimal"
        return "string"

    def build(self) -> ColumnProfile:
        top = self.counts.most_common(settings.profile_top_values)
        return ColumnProfile(
            name=self.name,
            inferred_type=self.inferred_type(),
            null_count=self.null_count,
            distinct_count=len(self.counts),
            distinct_capped=self.capped,
            sample_values=tuple(self.samples),
            top_values=tuple(ValueCount(value=value, count=count) for value, count in top),
        )


def analyze_file(
    source: Source, encoding_hint: Optional[str] = None, file_name: Optional[str] = None
) -> AnalysisResult:
    """
    Profile every column of an export and guess the system that produced it.

    Raises:
        UnsupportedFormat: the container cannot be parsed at all
        EmptyInput: no data rows after the header
    """
    reader = RecordReader(source, encoding_hint, file_name)
    profilers = [ColumnProfiler(name) for name in reader.columns]

    record_count = 0
    for _, record in reader:
        record_count += 1
        for profiler in profilers:
            profiler.add(record.get(profiler.name))

    if record_count == 0:
        raise EmptyInput(
            "No data rows found after the header",
            details={"parse_error_count": reader.parse_error_count},
        )

    source_system, confidence = detect_source_system(reader.columns)
    logger.info(
        f"Analyzed {reader.file_format} file: {record_count} records, {len(reader.columns)} columns, "
        f"{reader.parse_error_count} parse errors, source={source_system}"
    )
    return AnalysisResult(
        columns=[profiler.build() for profiler in profilers],
        record_count=record_count,
        parse_error_count=reader.parse_error_count,
        parse_error_rows=reader.parse_error_rows,
        source_system=source_system,
        source_confidence=confidence,
        file_format=reader.file_format,
        encoding=reader.encoding,
        delimiter=reader.delimiter,
    )
