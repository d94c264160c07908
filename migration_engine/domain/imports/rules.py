"""
Transformation rule catalog.

Each rule type is a pydantic model tagged by ``type``; ``parse_rule`` turns a
stored configuration into the matching model. Rules are pure: ``apply`` reads
only its input value and the ``TransformContext`` (source record plus an
injected clock) and signals an unconvertible value by raising ``RuleError``.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator
from sqlalchemy.orm import Session

from migration_engine.core.exceptions import InvalidMapping
from migration_engine.db.models import ImportJob, TransformationRuleRecord
from migration_engine.utils.date import parse_flexible_date, parse_with_pattern, pattern_has_time, to_iso, utcnow

logger = logging.getLogger(__name__)

_EMAIL_SEARCH_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_PHONE_SEARCH_RE = re.compile(r"\+?\d[\d\s\-\.\(\)]{5,18}\d")
_TRUE_VALUES = {"true", "yes", "y", "1", "t", "on"}
_FALSE_VALUES = {"false", "no", "n", "0", "f", "off"}


class RuleError(Exception):
    """A rule could not convert a single value."""

    def __init__(self, message: str, suggested_fix: Optional[str] = None):
        self.message = message
        self.suggested_fix = suggested_fix
        super().__init__(message)


@dataclass
class TransformContext:
    source_record: Dict[str, Any] = field(default_factory=dict)
    clock: Callable[[], datetime] = utcnow
    row_number: Optional[int] = None


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class DateFormatRule(BaseModel):
    type: Literal["date_format"] = "date_format"
    input_format: str = "auto"
    include_time: bool = False
    output_format: Optional[str] = None

    def describe(self) -> str:
        return f"date_format({self.input_format})"

    def apply(self, value: Any, context: TransformContext) -> Any:
        if _is_blank(value):
            return None
        if isinstance(value, datetime):
            parsed = value
        elif self.input_format.lower() == "auto":
            parsed = parse_flexible_date(value, log_context=f"row {context.row_number}")
        else:
            parsed = parse_with_pattern(value, self.input_format)
        if parsed is None:
            raise RuleError(
                f"'{value}' is not a valid date in format {self.input_format}",
                suggested_fix=f"Correct the value to match {self.input_format} or change the date format rule.",
            )
        if self.output_format:
            return parsed.strftime(self.output_format)
        include_time = self.include_time or (
            self.input_format.lower() != "auto" and pattern_has_time(self.input_format)
        )
        return to_iso(parsed, include_time=include_time)


StringOperation = Literal[
    "trim",
    "strip",
    "upper",
    "lower",
    "title",
    "collapse_whitespace",
    "truncate",
    "to_number",
    "to_boolean",
    "extract_email",
    "extract_phone",
]


class StringOpsRule(BaseModel):
    """Chain of string operations applied left to right."""

    type: Literal["string_ops"] = "string_ops"
    operations: List[StringOperation]
    truncate_length: int = Field(default=255, ge=1)

    def describe(self) -> str:
        return f"string_ops({', '.join(self.operations)})"

    @staticmethod
    def _to_number(text: str) -> Union[int, float]:
        cleaned = re.sub(r"[\s,$€£]", "", text)
        try:
            number = float(cleaned)
        except ValueError:
            raise RuleError(f"'{text}' is not a number", suggested_fix="Remove non-numeric characters.")
        return int(number) if number.is_integer() and "." not in cleaned else number

    @staticmethod
    def _to_boolean(text: str) -> bool:
        lowered = text.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise RuleError(f"'{text}' is not a yes/no value", suggested_fix="Use true/false or yes/no.")

    def apply(self, value: Any, context: TransformContext) -> Any:
        if value is None:
            return None
        current: Any = value
        for operation in self.operations:
            if current is None:
                break
            if operation in ("to_number", "to_boolean") and not isinstance(current, str):
                if operation == "to_boolean" and isinstance(current, (int, float)) and not isinstance(current, bool):
                    current = str(current)
                else:
                    continue
            text = current if isinstance(current, str) else str(current)
            if operation in ("trim", "strip"):
                current = text.strip()
            elif operation == "upper":
                current = text.upper()
            elif operation == "lower":
                current = text.lower()
            elif operation == "title":
                current = text.title()
            elif operation == "collapse_whitespace":
                current = re.sub(r"\s+", " ", text).strip()
            elif operation == "truncate":
                current = text[: self.truncate_length]
            elif operation == "to_number":
                current = self._to_number(text) if text.strip() else None
            elif operation == "to_boolean":
                current = self._to_boolean(text) if text.strip() else None
            elif operation == "extract_email":
                match = _EMAIL_SEARCH_RE.search(text)
                if not match:
                    raise RuleError(f"No email address found in '{text}'")
                current = match.group(0).lower()
            elif operation == "extract_phone":
                match = _PHONE_SEARCH_RE.search(text)
                if not match:
                    raise RuleError(f"No phone number found in '{text}'")
                current = match.group(0).strip()
        return current


class RegexReplaceRule(BaseModel):
    type: Literal["regex_replace"] = "regex_replace"
    pattern: str
    replacement: str = ""
    ignore_case: bool = False

    @field_validator("pattern")
    def check_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"Invalid regular expression: {exc}")
        return value

    def describe(self) -> str:
        return f"regex_replace({self.pattern})"

    def apply(self, value: Any, context: TransformContext) -> Any:
        if value is None:
            return None
        flags = re.IGNORECASE if self.ignore_case else 0
        return re.sub(self.pattern, self.replacement, str(value), flags=flags)


class LookupRule(BaseModel):
    type: Literal["lookup"] = "lookup"
    table: Dict[str, Any]
    default: Optional[Any] = None
    pass_through: bool = False
    case_sensitive: bool = False

    def describe(self) -> str:
        return f"lookup({len(self.table)} entries)"

    def apply(self, value: Any, context: TransformContext) -> Any:
        if _is_blank(value):
            return None
        key = str(value).strip()
        if key in self.table:
            return self.table[key]
        if not self.case_sensitive:
            for source_value, target_value in self.table.items():
                if source_value.lower() == key.lower():
                    return target_value
        if self.pass_through:
            return value
        if self.default is not None:
            return self.default
        raise RuleError(
            f"No lookup entry for '{key}'",
            suggested_fix="Add the value to the lookup table or configure a default.",
        )


class Condition(BaseModel):
    """``field`` names a source column; when omitted the field's own value is tested."""

    field: Optional[str] = None
    operator: Literal["eq", "ne", "in", "not_in", "contains", "startswith", "matches", "empty", "not_empty", "gt", "lt"]
    value: Optional[Any] = None
    result: Any

    def matches(self, subject: Any) -> bool:
        if self.operator == "empty":
            return _is_blank(subject)
        if self.operator == "not_empty":
            return not _is_blank(subject)
        if subject is None:
            return False
        text = str(subject).strip()
        if self.operator == "eq":
            return text.lower() == str(self.value).strip().lower()
        if self.operator == "ne":
            return text.lower() != str(self.value).strip().lower()
        if self.operator in ("in", "not_in"):
            options = {str(v).strip().lower() for v in (self.value or [])}
            return (text.lower() in options) == (self.operator == "in")
        if self.operator == "contains":
            return str(self.value).lower() in text.lower()
        if self.operator == "startswith":
            return text.lower().startswith(str(self.value).lower())
        if self.operator == "matches":
            return re.search(str(self.value), text) is not None
        try:
            left, right = float(text), float(self.value)
        except (TypeError, ValueError):
            return False
        return left > right if self.operator == "gt" else left < right


class ConditionalRule(BaseModel):
    """First matching condition wins; otherwise the configured default."""

    type: Literal["conditional"] = "conditional"
    conditions: List[Condition] = Field(min_length=1)
    default: Any = Field(...)

    def describe(self) -> str:
        return f"conditional({len(self.conditions)} conditions)"

    def apply(self, value: Any, context: TransformContext) -> Any:
        for condition in self.conditions:
            subject = context.source_record.get(condition.field) if condition.field else value
            if condition.matches(subject):
                return condition.result
        return self.default


class ConcatRule(BaseModel):
    type: Literal["concat"] = "concat"
    sources: List[str] = Field(min_length=1)
    separator: str = " "
    skip_empty: bool = True

    def describe(self) -> str:
        return f"concat({', '.join(self.sources)})"

    def apply(self, value: Any, context: TransformContext) -> Any:
        parts = []
        for source in self.sources:
            part = context.source_record.get(source)
            if _is_blank(part):
                if self.skip_empty:
                    continue
                part = ""
            parts.append(str(part).strip())
        joined = self.separator.join(parts)
        return joined if joined.strip() else None


class SplitRule(BaseModel):
    type: Literal["split"] = "split"
    delimiter: str = Field(min_length=1)
    index: int = 0
    source: Optional[str] = None

    def describe(self) -> str:
        return f"split({self.delimiter!r}[{self.index}])"

    def apply(self, value: Any, context: TransformContext) -> Any:
        subject = context.source_record.get(self.source) if self.source else value
        if _is_blank(subject):
            return None
        parts = str(subject).split(self.delimiter)
        try:
            part = parts[self.index].strip()
        except IndexError:
            return None
        return part or None


class CurrentTimestampRule(BaseModel):
    """Stamp the field with the injected clock's time."""

    type: Literal["current_timestamp"] = "current_timestamp"
    include_time: bool = True
    only_if_empty: bool = False

    def describe(self) -> str:
        return "current_timestamp"

    def apply(self, value: Any, context: TransformContext) -> Any:
        if self.only_if_empty and not _is_blank(value):
            return value
        return to_iso(context.clock(), include_time=self.include_time)


TransformationRule = Annotated[
    Union[
        DateFormatRule,
        StringOpsRule,
        RegexReplaceRule,
        LookupRule,
        ConditionalRule,
        ConcatRule,
        SplitRule,
        CurrentTimestampRule,
    ],
    Field(discriminator="type"),
]

_RULE_ADAPTER = TypeAdapter(TransformationRule)

RULE_TYPES = (
    "date_format",
    "string_ops",
    "regex_replace",
    "lookup",
    "conditional",
    "concat",
    "split",
    "current_timestamp",
)


def parse_rule(config: Dict[str, Any], target_field: Optional[str] = None):
    """
    Build a rule from its stored configuration.

    Raises:
        InvalidMapping: unknown rule type or invalid configuration
    """
    try:
        return _RULE_ADAPTER.validate_python(config)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" if err["loc"] else err["msg"]
            for err in exc.errors()
        )
        raise InvalidMapping(
            f"Invalid transformation rule{f' for {target_field}' if target_field else ''}: {errors}",
            field=target_field,
            suggested_fix=f"Rule type must be one of: {', '.join(RULE_TYPES)}",
        ) from exc


def dump_rule(rule) -> Dict[str, Any]:
    return rule.model_dump(mode="json")


def load_rules(db: Session, job_id: str) -> Dict[str, Any]:
    """Parsed rules of a job keyed by target field."""
    records = db.query(TransformationRuleRecord).filter(TransformationRuleRecord.job_id == job_id).all()
    return {record.target_field: parse_rule(record.config, record.target_field) for record in records}


def store_rule(db: Session, job: ImportJob, target_field: str, rule) -> TransformationRuleRecord:
    record = (
        db.query(TransformationRuleRecord)
        .filter(TransformationRuleRecord.job_id == job.id, TransformationRuleRecord.target_field == target_field)
        .first()
    )
    if record is None:
        record = TransformationRuleRecord(job_id=job.id, tenant_id=job.tenant_id, target_field=target_field)
        db.add(record)
    record.rule_type = rule.type
    record.config = dump_rule(rule)
    db.flush()
    return record


def delete_rule(db: Session, job_id: str, target_field: str) -> bool:
    deleted = (
        db.query(TransformationRuleRecord)
        .filter(TransformationRuleRecord.job_id == job_id, TransformationRuleRecord.target_field == target_field)
        .delete()
    )
    return bool(deleted)
