"""
Value map proposals for enumerated target fields.

Observed source values are matched, in order, against the source system's
known value dictionary, then by normalized equality with the target's enum
values, then by fuzzy similarity. Anything left falls back to the ``OTHER``
enum value when the target declares one.
"""

import logging
from difflib import get_close_matches
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from migration_engine.api.schemas.shared import ValueMap
from migration_engine.db.models import ImportJob, ValueMapRecord
from migration_engine.domain.imports.schema import TargetField
from migration_engine.domain.imports.scoring import normalize_enum_value
from migration_engine.domain.imports.source_systems import value_dictionary_for

logger = logging.getLogger(__name__)

FUZZY_CUTOFF = 0.8
FALLBACK_ENUM_VALUES = ("OTHER", "UNKNOWN")


def _resolve_enum(candidate: Any, enum_by_normalized: Dict[str, str]) -> Optional[str]:
    if candidate is None:
        return None
    return enum_by_normalized.get(normalize_enum_value(candidate))


def propose_value_map(
    target_field: TargetField,
    observed_values: Iterable[str],
    source_system: Optional[str] = None,
) -> ValueMap:
    """
    Propose a source → target table for one enum field.

    Unmatched values are left out of the table; they resolve through
    ``default_value`` at transform time.
    """
    enum_values = [str(v) for v in target_field.enum_values]
    enum_by_normalized = {normalize_enum_value(v): v for v in enum_values}
    dictionary = value_dictionary_for(source_system or "", target_field.name)
    dictionary_lower = {k.strip().lower(): v for k, v in dictionary.items()}

    entries: Dict[str, Any] = {}
    confidence: Dict[str, float] = {}
    unmatched: List[str] = []

    for raw in observed_values:
        if raw is None or not str(raw).strip():
            continue
        value = str(raw).strip()
        if value in entries:
            continue

        known = dictionary.get(value) or dictionary_lower.get(value.lower())
        resolved = _resolve_enum(known, enum_by_normalized) if enum_values else known
        if resolved is not None:
            entries[value], confidence[value] = resolved, 1.0
            continue

        direct = _resolve_enum(value, enum_by_normalized)
        if direct is not None:
            entries[value], confidence[value] = direct, 0.95
            continue

        close = get_close_matches(normalize_enum_value(value), list(enum_by_normalized), n=1, cutoff=FUZZY_CUTOFF)
        if close:
            entries[value], confidence[value] = enum_by_normalized[close[0]], 0.8
            continue
        unmatched.append(value)

    default_value = next((enum_by_normalized[v] for v in FALLBACK_ENUM_VALUES if v in enum_by_normalized), None)
    if unmatched:
        logger.info(
            f"Value map for '{target_field.name}': {len(unmatched)} unmatched value(s) "
            f"{unmatched[:5]} fall back to {default_value!r}"
        )
    return ValueMap(
        target_field=target_field.name,
        entries=entries,
        default_value=default_value,
        confidence=confidence,
    )


def load_value_maps(db: Session, job_id: str) -> Dict[str, ValueMap]:
    records = db.query(ValueMapRecord).filter(ValueMapRecord.job_id == job_id).all()
    return {
        record.target_field: ValueMap(
            target_field=record.target_field,
            entries=record.entries or {},
            default_value=record.default_value,
            case_sensitive=record.case_sensitive,
            confirmed=record.confirmed,
        )
        for record in records
    }


def store_value_map(db: Session, job: ImportJob, value_map: ValueMap) -> ValueMapRecord:
    record = (
        db.query(ValueMapRecord)
        .filter(ValueMapRecord.job_id == job.id, ValueMapRecord.target_field == value_map.target_field)
        .first()
    )
    if record is None:
        record = ValueMapRecord(job_id=job.id, tenant_id=job.tenant_id, target_field=value_map.target_field)
        db.add(record)
    record.entries = dict(value_map.entries)
    record.default_value = value_map.default_value
    record.case_sensitive = value_map.case_sensitive
    record.confirmed = value_map.confirmed
    db.flush()
    return record
