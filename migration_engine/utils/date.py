"""
Date parsing utilities for migration transforms.

Exports from external systems declare dates in a handful of layouts
(``MM/DD/YYYY`` from US hotline vendors, ``DD/MM/YYYY`` from EU ones, ISO).
This module turns those declared layouts into strptime patterns, parses values
against them and emits canonical ISO-8601 strings. ``parse_flexible_date``
covers the ``auto`` case through pandas inference.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import pandas as pd

from migration_engine.core.config import settings

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

_failure_stats: dict = {}

# Declared-layout tokens -> strptime directives. Longest tokens first.
_PATTERN_TOKENS = {
    "YYYY": "%Y",
    "yyyy": "%Y",
    "YY": "%y",
    "yy": "%y",
    "MM": "%m",
    "DD": "%d",
    "dd": "%d",
    "HH": "%H",
    "hh": "%I",
    "mm": "%M",
    "ss": "%S",
}
_TOKEN_RE = re.compile("|".join(sorted(_PATTERN_TOKENS, key=len, reverse=True)))
_TIME_DIRECTIVES = ("%H", "%I", "%M", "%S")

_NUMERIC_DATE_RE = re.compile(r"^(\d{1,2})[/.-](\d{1,2})[/.-](\d{2,4})$")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$")
_COMPACT_OFFSET_RE = re.compile(r"([+-]\d{2})(\d{2})$")


def utcnow() -> datetime:
    """Current time as naive UTC, the representation stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_strptime_pattern(pattern: str) -> str:
    """
    Convert a declared layout such as ``MM/DD/YYYY`` into a strptime pattern.

    Patterns that already contain ``%`` directives are returned unchanged.
    """
    if "%" in pattern:
        return pattern
    return _TOKEN_RE.sub(lambda match: _PATTERN_TOKENS[match.group(0)], pattern)


def pattern_has_time(pattern: str) -> bool:
    strptime_pattern = to_strptime_pattern(pattern)
    return any(directive in strptime_pattern for directive in _TIME_DIRECTIVES)


def parse_with_pattern(value: Any, pattern: str) -> Optional[datetime]:
    """Parse ``value`` strictly against a declared layout; None when it does not fit."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.strptime(text, to_strptime_pattern(pattern))
    except ValueError:
        return None


def to_iso(value: datetime, *, include_time: bool) -> str:
    if include_time:
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    return value.date().isoformat()


def _record_parse_failure(value: Any, context: Optional[str], error: Exception) -> None:
    """
    Collect failure stats and emit limited logs (sampled warnings + periodic summaries).
    """
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.warning("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse warnings after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def parse_flexible_date(value: Any, *, log_context: Optional[str] = None, log_failures: bool = True) -> Optional[datetime]:
    """
    Parse a date in an undeclared layout.

    Numeric ``a/b/yyyy`` values are disambiguated by range (a first part above
    12 must be a day); ambiguous ones follow ``settings.date_default_dayfirst``.
    Everything else goes through pandas inference.

    Returns:
        A naive UTC datetime, or None if the value cannot be read as a date
    """
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    if isinstance(value, datetime):
        return value

    text = str(value).strip()
    if not text:
        return None

    dayfirst = settings.date_default_dayfirst
    match = _NUMERIC_DATE_RE.match(text)
    if match:
        first, second = int(match.group(1)), int(match.group(2))
        if first > 12 and second <= 12:
            dayfirst = True
        elif second > 12 and first <= 12:
            dayfirst = False

    try:
        parsed = pd.to_datetime(text, utc=True, dayfirst=dayfirst, errors="raise")
    except (ValueError, TypeError, OverflowError) as exc:
        if log_failures:
            _record_parse_failure(value, log_context, exc)
        return None

    if pd.isna(parsed):
        return None
    return parsed.tz_convert("UTC").tz_localize(None).to_pydatetime()


def looks_like_date(value: Any) -> bool:
    """Cheap shape check used while profiling columns."""
    if value is None:
        return False
    text = str(value).strip()
    if not text:
        return False
    if _ISO_DATE_RE.match(text):
        return True
    match = _NUMERIC_DATE_RE.match(text)
    if not match:
        return False
    first, second = int(match.group(1)), int(match.group(2))
    return (first <= 12 and second <= 31) or (first <= 31 and second <= 12)


def infer_date_pattern(values: Iterable[Any]) -> str:
    """
    Infer the declared layout of a column of date strings.

    Returns one of ``YYYY-MM-DD``, ``MM/DD/YYYY``, ``DD/MM/YYYY`` or ``auto``
    when samples disagree or use some other layout.
    """
    samples = [str(v).strip() for v in values if v is not None and str(v).strip()]
    if not samples:
        return "auto"

    if all(re.match(r"^\d{4}-\d{2}-\d{2}$", s) for s in samples):
        return "YYYY-MM-DD"

    matches = [re.match(r"^(\d{1,2})/(\d{1,2})/(\d{4})$", s) for s in samples]
    if not all(matches):
        return "auto"

    if any(int(m.group(1)) > 12 for m in matches):
        return "DD/MM/YYYY"
    if any(int(m.group(2)) > 12 for m in matches):
        return "MM/DD/YYYY"
    return "DD/MM/YYYY" if settings.date_default_dayfirst else "MM/DD/YYYY"


def parse_iso(value: Any) -> Optional[datetime]:
    """Read back a value produced by ``to_iso`` (date or timestamp)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if not _ISO_DATE_RE.match(text):
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    elif "T" in text or " " in text:
        # fromisoformat before 3.11 only takes "+HH:MM"
        text = _COMPACT_OFFSET_RE.sub(r"\1:\2", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
