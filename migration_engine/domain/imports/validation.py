"""
Validation engine.

Checks every transformed record in a fixed category order: required, type,
format, reference, business rule, quality. Once a field is flagged, later
categories skip it for that record (a missing value is never also reported
as an unresolved reference). The engine keeps no state beyond the source ids
seen in the current pass, so a re-run over the same records yields the same
issues.
"""

import logging
from typing import Any, Dict, List, Optional, Set

from migration_engine.api.schemas.shared import IssueCategory, Severity, ValidationIssue
from migration_engine.core.exceptions import RecordConflict
from migration_engine.domain.imports.schema import BusinessRule, FieldType, SchemaProvider, TargetSchema
from migration_engine.domain.imports.transformer import TransformResult
from migration_engine.domain.imports.validators import validate_format
from migration_engine.utils.date import parse_iso

logger = logging.getLogger(__name__)

PLACEHOLDER_VALUES = {"n/a", "na", "unknown", "null", "none", "-", "--", "tbd", "?", "test"}
SHOUTING_MIN_LENGTH = 20
_BOOLEAN_STRINGS = {"true", "false", "yes", "no", "y", "n", "1", "0"}


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def source_record_id(schema: TargetSchema, target: Dict[str, Any], row_number: int) -> str:
    """Idempotency key of a record within its source system."""
    if schema.source_id_field:
        value = target.get(schema.source_id_field)
        if not is_blank(value):
            return str(value).strip()
    return f"row:{row_number}"


def _comparable(value: Any):
    parsed = parse_iso(value) if isinstance(value, str) else None
    if parsed is not None:
        return parsed
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    try:
        return float(str(value).replace(",", ""))
    except (TypeError, ValueError):
        return str(value).strip().lower()


def _compare(operator: str, left: Any, right: Any) -> bool:
    a, b = _comparable(left), _comparable(right)
    if type(a) is not type(b):
        a, b = str(left).strip().lower(), str(right).strip().lower()
    if operator == "eq":
        return a == b
    if operator == "ne":
        return a != b
    if operator == "gte":
        return a >= b
    if operator == "lte":
        return a <= b
    if operator == "gt":
        return a > b
    if operator == "lt":
        return a < b
    return True


class ValidationEngine:
    def __init__(self, schema: TargetSchema, schema_provider: SchemaProvider, incremental: bool = False):
        self.schema = schema
        self.schema_provider = schema_provider
        self.incremental = incremental
        self._seen_ids: Dict[str, int] = {}
        self._reference_cache: Dict[tuple, bool] = {}

    def _issue(self, row_number: int, severity: Severity, category: IssueCategory, field: Optional[str],
               message: str, value: Any = None, code: Optional[str] = None,
               suggested_fix: Optional[str] = None, auto_fixable: bool = False) -> ValidationIssue:
        return ValidationIssue(
            row_number=row_number,
            severity=severity,
            category=category,
            code=code,
            field=field,
            message=message,
            source_value=None if value is None else str(value),
            suggested_fix=suggested_fix,
            auto_fixable=auto_fixable,
        )

    # -- categories -----------------------------------------------------------

    def _check_required(self, row: int, target: Dict[str, Any], flagged: Set[str]) -> List[ValidationIssue]:
        issues = []
        for descriptor in self.schema.required_fields:
            if descriptor.name in flagged or not is_blank(target.get(descriptor.name)):
                continue
            issues.append(self._issue(
                row, Severity.ERROR, IssueCategory.REQUIRED, descriptor.name,
                f"Required field '{descriptor.name}' is empty",
                code="MissingRequiredField",
                suggested_fix="Provide a value in the source file or configure a default for this field.",
            ))
            flagged.add(descriptor.name)
        return issues

    @staticmethod
    def _type_error(field_type: FieldType, value: Any) -> Optional[str]:
        if isinstance(value, (dict, list)):
            return "expected a single value"
        text = str(value).strip()
        if field_type == FieldType.INTEGER:
            if isinstance(value, bool) or not (isinstance(value, int) or text.lstrip("+-").isdigit()):
                return "expected a whole number"
        elif field_type == FieldType.DECIMAL:
            if isinstance(value, bool):
                return "expected a number"
            try:
                float(text)
            except ValueError:
                return "expected a number"
        elif field_type == FieldType.BOOLEAN:
            if not isinstance(value, bool) and text.lower() not in _BOOLEAN_STRINGS:
                return "expected true or false"
        elif field_type in (FieldType.DATE, FieldType.DATETIME):
            if parse_iso(text) is None:
                return "expected an ISO-8601 date"
        elif field_type == FieldType.EMAIL:
            if not validate_format(text, "email")[0]:
                return "expected an email address"
        elif field_type == FieldType.PHONE:
            if not validate_format(text, "phone")[0]:
                return "expected a phone number"
        return None

    def _check_types(self, row: int, target: Dict[str, Any], flagged: Set[str]) -> List[ValidationIssue]:
        issues = []
        for descriptor in self.schema.fields:
            value = target.get(descriptor.name)
            if descriptor.name in flagged or is_blank(value):
                continue
            problem = self._type_error(descriptor.type, value)
            if problem is None:
                continue
            fix = None
            if descriptor.type in (FieldType.DATE, FieldType.DATETIME):
                fix = "Add a date_format rule declaring the source date layout."
            elif descriptor.type in (FieldType.INTEGER, FieldType.DECIMAL, FieldType.BOOLEAN):
                fix = "Add a string_ops rule converting the value."
            issues.append(self._issue(
                row, Severity.ERROR, IssueCategory.TYPE, descriptor.name,
                f"Field '{descriptor.name}' has an invalid {descriptor.type.value} value: {problem}",
                value, code="InvalidType", suggested_fix=fix,
            ))
            flagged.add(descriptor.name)
        return issues

    def _check_formats(self, row: int, target: Dict[str, Any], flagged: Set[str]) -> List[ValidationIssue]:
        issues = []
        for descriptor in self.schema.fields:
            value = target.get(descriptor.name)
            if descriptor.name in flagged or is_blank(value):
                continue
            if descriptor.enum_values and str(value) not in descriptor.enum_values:
                canonical = next((v for v in descriptor.enum_values if v.lower() == str(value).strip().lower()), None)
                issues.append(self._issue(
                    row, Severity.ERROR, IssueCategory.FORMAT, descriptor.name,
                    f"'{value}' is not an allowed value for '{descriptor.name}'",
                    value,
                    code="InvalidEnumValue",
                    suggested_fix=(f"Use '{canonical}'." if canonical
                                   else f"Add a value map entry; allowed values: {', '.join(descriptor.enum_values)}"),
                    auto_fixable=canonical is not None,
                ))
                flagged.add(descriptor.name)
                continue
            if descriptor.format:
                ok, message = validate_format(value, descriptor.format)
                if not ok:
                    issues.append(self._issue(
                        row, Severity.ERROR, IssueCategory.FORMAT, descriptor.name,
                        message or f"Invalid {descriptor.format} value", value, code="InvalidFormat",
                    ))
                    flagged.add(descriptor.name)
        return issues

    def _reference_exists(self, entity_type: str, value: Any) -> bool:
        key = (entity_type, str(value).strip())
        if key not in self._reference_cache:
            self._reference_cache[key] = self.schema_provider.exists(entity_type, value)
        return self._reference_cache[key]

    def _check_references(self, row: int, target: Dict[str, Any], flagged: Set[str]) -> List[ValidationIssue]:
        issues = []
        for descriptor in self.schema.fields:
            value = target.get(descriptor.name)
            if descriptor.type != FieldType.REFERENCE or descriptor.name in flagged or is_blank(value):
                continue
            entity_type = descriptor.reference_entity or descriptor.name
            if self._reference_exists(entity_type, value):
                continue
            issues.append(self._issue(
                row,
                Severity.ERROR if descriptor.required else Severity.WARNING,
                IssueCategory.REFERENCE,
                descriptor.name,
                f"No {entity_type} found with id '{value}'",
                value,
                code="UnresolvedReference",
                suggested_fix=f"Import the referenced {entity_type} first or correct the identifier.",
            ))
            flagged.add(descriptor.name)
        return issues

    def _evaluate_rule(self, row: int, rule: BusinessRule, target: Dict[str, Any]) -> Optional[ValidationIssue]:
        left = target.get(rule.field)
        if rule.operator == "required_if":
            other = target.get(rule.other_field) if rule.other_field else None
            if rule.value is None:
                triggered = not is_blank(other)
            else:
                triggered = not is_blank(other) and str(other).strip().lower() == str(rule.value).strip().lower()
            if not triggered or not is_blank(left):
                return None
        else:
            right = target.get(rule.other_field) if rule.other_field else rule.value
            if is_blank(left) or is_blank(right):
                return None
            if _compare(rule.operator, left, right):
                return None

        compared = rule.other_field or repr(rule.value)
        return self._issue(
            row,
            Severity(rule.severity),
            IssueCategory.BUSINESS_RULE,
            rule.field,
            rule.message or f"Rule '{rule.name}' failed: {rule.field} {rule.operator} {compared}",
            left,
            code=rule.name,
        )

    def _check_business_rules(self, row: int, target: Dict[str, Any], flagged: Set[str]) -> List[ValidationIssue]:
        issues = []
        for rule in self.schema.business_rules:
            if rule.field in flagged or (rule.other_field and rule.other_field in flagged):
                continue
            issue = self._evaluate_rule(row, rule, target)
            if issue is not None:
                issues.append(issue)
                flagged.add(rule.field)
        return issues

    def _check_duplicate(self, row: int, target: Dict[str, Any]) -> Optional[ValidationIssue]:
        record_id = source_record_id(self.schema, target, row)
        first_row = self._seen_ids.get(record_id)
        if first_row is None:
            self._seen_ids[record_id] = row
            return None
        conflict = RecordConflict(
            f"Source record '{record_id}' also appears on row {first_row}",
            row_number=row,
            field=self.schema.source_id_field,
            value=record_id,
            suggested_fix=("Only the first occurrence is imported; later rows are skipped."
                           if self.incremental else "Remove the duplicate row or run an incremental import."),
        )
        return self._issue(
            row,
            Severity.WARNING if self.incremental else Severity.ERROR,
            IssueCategory.BUSINESS_RULE,
            conflict.field,
            conflict.message,
            record_id,
            code=conflict.code,
            suggested_fix=conflict.suggested_fix,
        )

    def _check_quality(self, row: int, target: Dict[str, Any], flagged: Set[str]) -> List[ValidationIssue]:
        issues = []
        for descriptor in self.schema.fields:
            value = target.get(descriptor.name)
            if descriptor.name in flagged or not isinstance(value, str) or is_blank(value):
                continue
            if value.strip().lower() in PLACEHOLDER_VALUES:
                issues.append(self._issue(
                    row, Severity.WARNING, IssueCategory.QUALITY, descriptor.name,
                    f"'{value}' looks like a placeholder value", value, code="PlaceholderValue",
                ))
                continue
            if descriptor.max_length and len(value) > descriptor.max_length:
                issues.append(self._issue(
                    row, Severity.WARNING, IssueCategory.QUALITY, descriptor.name,
                    f"Value is {len(value)} characters, longer than {descriptor.max_length}",
                    value[:100], code="ValueTooLong",
                    suggested_fix=f"Add a string_ops truncate rule ({descriptor.max_length}).",
                ))
            if value != value.strip():
                issues.append(self._issue(
                    row, Severity.INFO, IssueCategory.QUALITY, descriptor.name,
                    "Value has leading or trailing whitespace", value, code="SurroundingWhitespace",
                    suggested_fix="Add a trim rule.", auto_fixable=True,
                ))
            elif len(value) >= SHOUTING_MIN_LENGTH and value.isupper():
                issues.append(self._issue(
                    row, Severity.INFO, IssueCategory.QUALITY, descriptor.name,
                    "Text is entirely upper case", value[:100], code="AllCapsText",
                ))
        return issues

    # -- entry point ------------------------------------------------------------

    def check(self, result: TransformResult) -> List[ValidationIssue]:
        """All issues for one transformed record, transformation failures first."""
        row, target = result.row_number, result.target
        flagged: Set[str] = set(result.failed_fields)

        issues = list(result.issues)
        issues.extend(self._check_required(row, target, flagged))
        issues.extend(self._check_types(row, target, flagged))
        issues.extend(self._check_formats(row, target, flagged))
        issues.extend(self._check_references(row, target, flagged))
        issues.extend(self._check_business_rules(row, target, flagged))
        duplicate = self._check_duplicate(row, target)
        if duplicate is not None:
            issues.append(duplicate)
        issues.extend(self._check_quality(row, target, flagged))
        return issues
