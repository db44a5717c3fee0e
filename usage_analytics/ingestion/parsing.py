"""
Tolerant field parsing for CSV ingestion.

Every parser returns a ParseResult: the value to load plus the issue that
forced a default, if any. Parsers never raise on bad cell content.
"""

import csv
import io
import math
import threading
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Deque, Dict, Generic, List, Optional, Tuple, TypeVar, Union

from usage_analytics.errors import IngestionError

T = TypeVar("T")

CSVSource = Union[str, Path, bytes, IO[str], IO[bytes]]

TRUE_VALUES = {"true", "1", "yes"}
FALSE_VALUES = {"false", "0", "no", ""}

# Tried in order after ISO 8601
_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
)


@dataclass(frozen=True)
class ParseIssue:
    """Why a cell could not be used as given."""
    field: str
    raw: Any
    message: str


@dataclass(frozen=True)
class ParseResult(Generic[T]):
    value: T
    issue: Optional[ParseIssue] = None

    @property
    def ok(self) -> bool:
        return self.issue is None


class IngestionIssueLog:
    """Thread-safe tally of parse issues seen during an import.

    Keeps a per-field counter and a bounded sample of messages for
    debugging. Not part of the public import result.
    """

    def __init__(self, max_samples: int = 50):
        self._lock = threading.Lock()
        self._counts: Counter = Counter()
        self._samples: Deque[str] = deque(maxlen=max_samples)

    def record(self, line: int, issue: ParseIssue) -> None:
        with self._lock:
            self._counts[issue.field] += 1
            self._samples.append(f"line {line}: {issue.field}: {issue.message}")

    def record_failure(self, error: Exception) -> None:
        with self._lock:
            self._counts[type(error).__name__] += 1
            self._samples.append(str(error))

    @property
    def counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    @property
    def samples(self) -> List[str]:
        with self._lock:
            return list(self._samples)

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self._counts.values())


def parse_text(raw: Any) -> Optional[str]:
    """Trim a cell. Missing cells stay None."""
    if raw is None:
        return None
    return str(raw).strip()


def parse_boolean(raw: Any, field: str = "boolean") -> ParseResult[bool]:
    """true/1/yes (any case, trimmed) is True, anything else is False."""
    if isinstance(raw, bool):
        return ParseResult(raw)
    if raw is None:
        return ParseResult(False)
    text = str(raw).strip().lower()
    if text in TRUE_VALUES:
        return ParseResult(True)
    if text in FALSE_VALUES:
        return ParseResult(False)
    return ParseResult(False, ParseIssue(field, raw, "unrecognized boolean, using false"))


def parse_number(raw: Any, field: str = "number") -> ParseResult[float]:
    """Parse a decimal number, falling back to 0.0."""
    if isinstance(raw, bool):
        return ParseResult(0.0, ParseIssue(field, raw, "boolean is not a number"))
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        text = "" if raw is None else str(raw).strip()
        if not text:
            return ParseResult(0.0, ParseIssue(field, raw, "empty, using 0"))
        try:
            value = float(text)
        except ValueError:
            return ParseResult(0.0, ParseIssue(field, raw, "not a number, using 0"))
    if not math.isfinite(value):
        return ParseResult(0.0, ParseIssue(field, raw, "not finite, using 0"))
    return ParseResult(value)


def parse_integer(raw: Any, field: str = "integer") -> ParseResult[int]:
    """Parse a count. Fractions are truncated and reported."""
    number = parse_number(raw, field)
    value = int(number.value)
    if number.ok and value != number.value:
        return ParseResult(value, ParseIssue(field, raw, "fractional count truncated"))
    return ParseResult(value, number.issue)


def parse_timestamp(
    raw: Any,
    field: str = "timestamp",
    now: Optional[datetime] = None,
) -> ParseResult[datetime]:
    """Parse an instant as UTC, falling back to now.

    Naive values are read as UTC. Offsets are converted to UTC.
    """
    fallback = now or datetime.now(timezone.utc)
    if isinstance(raw, datetime):
        parsed = raw
    else:
        text = "" if raw is None else str(raw).strip()
        if not text:
            return ParseResult(fallback, ParseIssue(field, raw, "empty, using ingestion time"))
        parsed = _parse_datetime_text(text)
        if parsed is None:
            return ParseResult(fallback, ParseIssue(field, raw, "unparsable, using ingestion time"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return ParseResult(parsed.astimezone(timezone.utc))


def _parse_datetime_text(text: str) -> Optional[datetime]:
    iso = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        return datetime.fromisoformat(iso)
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _read_source(source: CSVSource) -> str:
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise IngestionError(f"CSV file not found: {source}")
        data: Union[str, bytes] = path.read_bytes()
    elif isinstance(source, (bytes, bytearray)):
        data = bytes(source)
    else:
        data = source.read()
    if isinstance(data, bytes):
        try:
            return data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise IngestionError(f"CSV content is not valid UTF-8: {e}") from e
    return data.lstrip("\ufeff")


def read_csv_rows(source: CSVSource) -> List[Tuple[int, Dict[str, Optional[str]]]]:
    """Read a CSV with a header row into (line number, row dict) pairs.

    Header names are trimmed. Blank lines are skipped. Cells missing from a
    short row come back as None.

    Raises:
        IngestionError: If the source cannot be read, decoded or parsed
    """
    text = _read_source(source)
    try:
        reader = csv.reader(io.StringIO(text, newline=""))
        header = next(reader, None)
        if header is None:
            return []
        columns = [name.strip() for name in header]
        rows = []
        for row in reader:
            if not any(cell.strip() for cell in row):
                continue
            values: Dict[str, Optional[str]] = {
                name: (row[i] if i < len(row) else None) for i, name in enumerate(columns)
            }
            rows.append((reader.line_num, values))
        return rows
    except csv.Error as e:
        raise IngestionError(f"Malformed CSV content: {e}") from e
