"""
Record transformation: source record -> target record.

Per target field the order is fixed: value map lookup first, then the field's
rule. A rule that cannot convert its value yields ``None`` for that field and a
``TransformationFailed`` issue; the rest of the record still transforms.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from migration_engine.api.schemas.shared import (
    FieldMapping,
    IssueCategory,
    Severity,
    UnmappedAction,
    ValidationIssue,
    ValueMap,
)
from migration_engine.core.exceptions import InvalidMapping, TransformationFailed
from migration_engine.db.models import ImportJob
from migration_engine.domain.imports.mapping import load_mapping
from migration_engine.domain.imports.rules import RuleError, TransformContext, load_rules
from migration_engine.domain.imports.schema import TargetSchema
from migration_engine.domain.imports.value_maps import load_value_maps
from migration_engine.utils.date import utcnow

logger = logging.getLogger(__name__)

CUSTOM_FIELDS_KEY = "custom_fields"
OVERFLOW_KEY = "_overflow"


@dataclass
class TransformResult:
    row_number: int
    source: Dict[str, Any]
    target: Dict[str, Any]
    issues: List[ValidationIssue] = field(default_factory=list)
    applied: List[str] = field(default_factory=list)
    failed_fields: Set[str] = field(default_factory=set)


def issue_from_error(error: TransformationFailed, severity: Severity) -> ValidationIssue:
    return ValidationIssue(
        row_number=error.row_number,
        severity=severity,
        category=IssueCategory.TRANSFORMATION,
        code=error.code,
        field=error.field,
        message=error.message,
        source_value=None if error.value is None else str(error.value),
        suggested_fix=error.suggested_fix,
    )


class TransformationEngine:
    """Transforms records for one job's mapping, value maps and rules."""

    def __init__(
        self,
        schema: TargetSchema,
        mapping: FieldMapping,
        value_maps: Optional[Dict[str, ValueMap]] = None,
        rules: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.schema = schema
        self.mapping = mapping
        self.value_maps = value_maps or {}
        self.rules = rules or {}
        self.clock = clock
        self._mapped_entries = mapping.mapped_entries()
        self._mapped_columns = {entry.source_column for entry in self._mapped_entries}

    def _apply_rule(self, target_field: str, value: Any, raw: Any, result: TransformResult, context: TransformContext):
        rule = self.rules.get(target_field)
        if rule is None:
            return value
        try:
            converted = rule.apply(value, context)
        except RuleError as exc:
            descriptor = self.schema.field(target_field)
            required = bool(descriptor and descriptor.required)
            error = TransformationFailed(
                exc.message,
                row_number=result.row_number,
                field=target_field,
                value=raw,
                suggested_fix=exc.suggested_fix,
            )
            result.issues.append(issue_from_error(error, Severity.ERROR if required else Severity.WARNING))
            result.failed_fields.add(target_field)
            logger.debug(f"Row {result.row_number}: {target_field} transformation failed: {exc.message}")
            return None
        result.applied.append(f"{target_field}: {rule.describe()}")
        return converted

    def transform(self, record: Dict[str, Any], row_number: int) -> TransformResult:
        result = TransformResult(row_number=row_number, source=dict(record), target={})
        context = TransformContext(source_record=record, clock=self.clock, row_number=row_number)

        for entry in self._mapped_entries:
            target_field = entry.target_field
            raw = record.get(entry.source_column)
            value = raw

            value_map = self.value_maps.get(target_field)
            if value_map is not None:
                value, changed = value_map.lookup(value)
                if changed:
                    result.applied.append(f"{target_field}: value_map")

            result.target[target_field] = self._apply_rule(target_field, value, raw, result, context)

        # Rules on fields with no mapped column derive their value from other columns
        for target_field in self.rules:
            if target_field not in result.target and self.schema.field(target_field) is not None:
                result.target[target_field] = self._apply_rule(target_field, None, None, result, context)

        for descriptor in self.schema.fields:
            if result.target.get(descriptor.name) is not None or descriptor.name in result.failed_fields:
                continue
            default = self.mapping.field_defaults.get(descriptor.name, descriptor.default)
            if default is not None:
                result.target[descriptor.name] = default
                result.applied.append(f"{descriptor.name}: default")

        unmapped = {
            column: value
            for column, value in record.items()
            if column not in self._mapped_columns and value is not None
        }
        if unmapped and self.mapping.unmapped_action == UnmappedAction.STORE_AS_CUSTOM:
            result.target[CUSTOM_FIELDS_KEY] = unmapped
        elif unmapped and self.mapping.unmapped_action == UnmappedAction.STORE_IN_OVERFLOW:
            result.target[OVERFLOW_KEY] = unmapped

        return result


def engine_for_job(db: Session, job: ImportJob, schema: TargetSchema, clock: Callable[[], datetime] = utcnow):
    """
    Build the engine from a job's persisted mapping, value maps and rules.

    Raises:
        InvalidMapping: the job has no field mapping yet
    """
    mapping = load_mapping(db, job.id)
    if mapping is None:
        raise InvalidMapping(
            f"Job '{job.id}' has no field mapping",
            suggested_fix="Propose and confirm a mapping first.",
        )
    return TransformationEngine(schema, mapping, load_value_maps(db, job.id), load_rules(db, job.id), clock)
