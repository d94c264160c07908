import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict


def make_json_safe(value: Any) -> Any:
    """
    Convert Python objects into JSON-serialisable structures, preserving
    as much fidelity as possible.
    """
    if isinstance(value, dict):
        return {str(key): make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [make_json_safe(item) for item in value]
    if isinstance(value, Decimal):
        # Keep integers as ints, otherwise convert to string to avoid precision loss
        if value == value.to_integral():
            return int(value)
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, float) and value != value:
        return None  # NaN from pandas frames
    if isinstance(value, (int, float, str, bool)) or value is None:
        return value
    return str(value)


def compute_content_hash(values: Dict[str, Any]) -> str:
    """
    SHA-256 of a record's content, independent of key order.

    Stored on every imported record so rollback can detect rows that were
    edited after the import.
    """
    payload = json.dumps(make_json_safe(values), sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
