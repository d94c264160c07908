from datetime import datetime

import pytest

from migration_engine.api.schemas.shared import (
    FieldMapping,
    IssueCategory,
    MappingEntry,
    MappingStatus,
    Severity,
    UnmappedAction,
    ValueMap,
)
from migration_engine.core.exceptions import InvalidMapping
from migration_engine.domain.imports.rules import (
    ConcatRule,
    ConditionalRule,
    CurrentTimestampRule,
    DateFormatRule,
    LookupRule,
    RuleError,
    SplitRule,
    StringOpsRule,
    TransformContext,
    dump_rule,
    parse_rule,
)
from migration_engine.domain.imports.transformer import CUSTOM_FIELDS_KEY, OVERFLOW_KEY, TransformationEngine
from tests.utils.migration_data import CASE_MAPPING, CASE_SCHEMA


def _mapping(pairs=CASE_MAPPING, **kwargs):
    return FieldMapping(
        entries=[
            MappingEntry(source_column=column, target_field=field, status=MappingStatus.CONFIRMED)
            for column, field in pairs
        ],
        **kwargs,
    )


def _record(**overrides):
    record = {
        "case_number": "C-1001",
        "reported_date": "01/15/2024",
        "incident_type": "Harassment",
        "status": "open",
        "description": "Something happened",
        "reporter_name": "Jane Doe",
        "reporter_email": "jane@example.com",
        "employee_id": "E-1",
    }
    record.update(overrides)
    return record


# ---------------------------------------------------------------------------
# Rule catalog
# ---------------------------------------------------------------------------

def test_date_format_rule_normalizes_to_iso():
    rule = DateFormatRule(input_format="MM/DD/YYYY")

    assert rule.apply("01/15/2024", TransformContext()) == "2024-01-15"
    assert rule.apply("  ", TransformContext()) is None


def test_date_format_rule_rejects_impossible_date():
    rule = DateFormatRule(input_format="MM/DD/YYYY")

    with pytest.raises(RuleError) as exc_info:
        rule.apply("13/40/2024", TransformContext())

    assert "13/40/2024" in exc_info.value.message
    assert exc_info.value.suggested_fix


def test_date_format_rule_with_time_pattern_keeps_time():
    rule = DateFormatRule(input_format="YYYY-MM-DD HH:mm")

    assert rule.apply("2024-03-01 09:30", TransformContext()) == "2024-03-01T09:30:00Z"


def test_string_ops_chain():
    rule = StringOpsRule(operations=["trim", "collapse_whitespace", "upper"])

    assert rule.apply("  in   progress ", TransformContext()) == "IN PROGRESS"


def test_string_ops_conversions():
    assert StringOpsRule(operations=["to_number"]).apply("$1,250", TransformContext()) == 1250
    assert StringOpsRule(operations=["to_number"]).apply("3.50", TransformContext()) == 3.5
    assert StringOpsRule(operations=["to_boolean"]).apply("Yes", TransformContext()) is True
    with pytest.raises(RuleError):
        StringOpsRule(operations=["to_boolean"]).apply("maybe", TransformContext())


def test_lookup_rule_default_and_miss():
    table = {"HR": "Human Resources", "IT": "Information Technology"}

    assert LookupRule(table=table).apply("hr", TransformContext()) == "Human Resources"
    assert LookupRule(table=table, default="Other").apply("Finance", TransformContext()) == "Other"
    with pytest.raises(RuleError):
        LookupRule(table=table).apply("Finance", TransformContext())


def test_conditional_rule_first_match_wins():
    rule = parse_rule({
        "type": "conditional",
        "conditions": [
            {"field": "anonymous", "operator": "eq", "value": "yes", "result": "ANONYMOUS"},
            {"field": "reporter", "operator": "not_empty", "result": "NAMED"},
        ],
        "default": "UNKNOWN",
    })

    context = TransformContext(source_record={"anonymous": "Yes", "reporter": "Jane"})
    assert rule.apply(None, context) == "ANONYMOUS"
    context = TransformContext(source_record={"anonymous": "no", "reporter": "Jane"})
    assert rule.apply(None, context) == "NAMED"
    context = TransformContext(source_record={"anonymous": "no", "reporter": ""})
    assert rule.apply(None, context) == "UNKNOWN"


def test_conditional_rule_requires_default():
    with pytest.raises(InvalidMapping) as exc_info:
        parse_rule({"type": "conditional", "conditions": [{"operator": "empty", "result": "x"}]}, "status")

    assert exc_info.value.field == "status"
    assert "default" in exc_info.value.message


def test_unknown_rule_type_is_invalid_mapping():
    with pytest.raises(InvalidMapping):
        parse_rule({"type": "teleport"})


def test_concat_and_split_read_source_columns():
    context = TransformContext(source_record={"first": "Jane", "middle": None, "last": "Doe", "full": "Doe, Jane"})

    assert ConcatRule(sources=["first", "middle", "last"]).apply(None, context) == "Jane Doe"
    assert SplitRule(delimiter=",", index=1, source="full").apply(None, context) == "Jane"
    assert SplitRule(delimiter=",", index=5, source="full").apply(None, context) is None


def test_current_timestamp_uses_injected_clock():
    context = TransformContext(clock=lambda: datetime(2024, 3, 1, 12, 30, 0))

    assert CurrentTimestampRule().apply(None, context) == "2024-03-01T12:30:00Z"
    assert CurrentTimestampRule(include_time=False).apply(None, context) == "2024-03-01"
    assert CurrentTimestampRule(only_if_empty=True).apply("2023-01-01", context) == "2023-01-01"


def test_dump_rule_round_trips_through_parse():
    rule = SplitRule(delimiter="/", index=0)

    assert parse_rule(dump_rule(rule)) == rule
    assert isinstance(parse_rule({"type": "conditional", "conditions": [{"operator": "empty", "result": 1}],
                                  "default": 0}), ConditionalRule)


# ---------------------------------------------------------------------------
# Transformation engine
# ---------------------------------------------------------------------------

def test_engine_applies_value_map_then_rule():
    value_maps = {
        "category": ValueMap(target_field="category", entries={"Harassment": "harassment"}),
    }
    rules = {
        "category": StringOpsRule(operations=["upper"]),
        "reported_at": DateFormatRule(input_format="MM/DD/YYYY"),
    }
    engine = TransformationEngine(CASE_SCHEMA, _mapping(), value_maps, rules)

    result = engine.transform(_record(), 1)

    assert result.target["category"] == "HARASSMENT"
    assert result.target["reported_at"] == "2024-01-15"
    assert result.issues == []
    assert "category: value_map" in result.applied
    assert result.applied.index("category: value_map") < result.applied.index("category: string_ops(upper)")


def test_failed_rule_on_required_field_is_an_error():
    rules = {"reported_at": DateFormatRule(input_format="MM/DD/YYYY")}
    engine = TransformationEngine(CASE_SCHEMA, _mapping(), rules=rules)

    result = engine.transform(_record(reported_date="13/40/2024"), 7)

    assert result.target["reported_at"] is None
    assert result.target["case_number"] == "C-1001"
    assert result.failed_fields == {"reported_at"}
    [issue] = result.issues
    assert issue.code == "TransformationFailed"
    assert issue.severity == Severity.ERROR
    assert issue.category == IssueCategory.TRANSFORMATION
    assert issue.row_number == 7
    assert issue.field == "reported_at"
    assert issue.source_value == "13/40/2024"


def test_failed_rule_on_optional_field_is_a_warning():
    mapping = _mapping(CASE_MAPPING + [("closed", "closed_at")])
    rules = {"closed_at": DateFormatRule(input_format="MM/DD/YYYY")}
    engine = TransformationEngine(CASE_SCHEMA, mapping, rules=rules)

    result = engine.transform(_record(closed="not a date"), 1)

    assert result.target["closed_at"] is None
    assert result.issues[0].severity == Severity.WARNING


def test_defaults_fill_empty_fields():
    engine = TransformationEngine(CASE_SCHEMA, _mapping(field_defaults={"status": "NEW"}))

    result = engine.transform(_record(status=None), 1)

    assert result.target["status"] == "NEW"
    assert "status: default" in result.applied


def test_rule_without_mapped_column_derives_value():
    rules = {"closed_at": CurrentTimestampRule(include_time=False)}
    engine = TransformationEngine(CASE_SCHEMA, _mapping(), rules=rules, clock=lambda: datetime(2024, 5, 2, 8, 0))

    result = engine.transform(_record(), 1)

    assert result.target["closed_at"] == "2024-05-02"


@pytest.mark.parametrize(
    "action, key",
    [(UnmappedAction.STORE_AS_CUSTOM, CUSTOM_FIELDS_KEY), (UnmappedAction.STORE_IN_OVERFLOW, OVERFLOW_KEY)],
)
def test_unmapped_columns_are_kept_when_configured(action, key):
    engine = TransformationEngine(CASE_SCHEMA, _mapping(unmapped_action=action))

    result = engine.transform(_record(legacy_code="X9", blank_col=None), 1)

    assert result.target[key] == {"legacy_code": "X9"}


def test_unmapped_columns_are_dropped_by_default():
    engine = TransformationEngine(CASE_SCHEMA, _mapping())

    result = engine.transform(_record(legacy_code="X9"), 1)

    assert CUSTOM_FIELDS_KEY not in result.target
    assert OVERFLOW_KEY not in result.target
    assert "legacy_code" not in result.target
