from datetime import datetime

import pytest

from migration_engine.api.schemas.shared import IssueCategory, MappingEntry, Severity
from migration_engine.core.exceptions import MappingIncomplete, ValidationBlocked
from migration_engine.domain.imports.schema import FieldType, StaticSchemaProvider, TargetField, TargetSchema
from migration_engine.domain.imports.transformer import TransformResult
from migration_engine.domain.imports.validation import ValidationEngine, source_record_id
from migration_engine.utils.date import parse_iso
from tests.utils.migration_data import CASE_SCHEMA, SAMPLE_ROWS, TENANT, make_csv, with_row


@pytest.fixture
def engine(schema_provider):
    return ValidationEngine(CASE_SCHEMA, schema_provider)


def _result(row_number=1, **overrides):
    target = {
        "case_number": f"C-{row_number}",
        "reported_at": "2024-01-15",
        "category": "THEFT",
        "status": "OPEN",
        "description": "Badge reader broken at north entrance",
        "reporter_name": "Jane Doe",
        "reporter_email": "jane@example.com",
        "assigned_employee_id": "E-1",
    }
    target.update(overrides)
    return TransformResult(row_number=row_number, source={}, target=target)


def _codes(issues):
    return [issue.code for issue in issues]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def test_clean_record_has_no_issues(engine):
    assert engine.check(_result()) == []


def test_missing_required_field_is_an_error(engine):
    [issue] = engine.check(_result(category=None))

    assert issue.code == "MissingRequiredField"
    assert issue.severity == Severity.ERROR
    assert issue.category == IssueCategory.REQUIRED
    assert issue.field == "category"
    assert issue.row_number == 1


def test_type_errors(engine):
    issues = engine.check(_result(reported_at="yesterday", reporter_email="not-an-email"))

    assert _codes(issues) == ["InvalidType", "InvalidType"]
    assert [i.field for i in issues] == ["reported_at", "reporter_email"]
    assert "date_format" in issues[0].suggested_fix


@pytest.mark.parametrize(
    "value",
    ["2024-01-15T10:30:00+0000", "2024-01-15T05:30:00-0500", "2024-01-15T10:30:00+00:00", "2024-01-15T10:30:00Z"],
)
def test_timestamps_with_any_offset_style_are_valid(engine, value):
    assert parse_iso(value) == datetime(2024, 1, 15, 10, 30)
    assert engine.check(_result(reported_at=value)) == []


def test_enum_value_outside_allowed_set(engine):
    [issue] = engine.check(_result(status="open"))

    assert issue.code == "InvalidEnumValue"
    assert issue.category == IssueCategory.FORMAT
    assert issue.suggested_fix == "Use 'OPEN'."
    assert issue.auto_fixable is True


def test_unresolved_optional_reference_is_a_warning(engine):
    [issue] = engine.check(_result(assigned_employee_id="E-404"))

    assert issue.code == "UnresolvedReference"
    assert issue.severity == Severity.WARNING
    assert issue.source_value == "E-404"


def test_unresolved_required_reference_is_an_error():
    schema = TargetSchema(
        entity_type="assignment",
        fields=[TargetField(name="employee", type=FieldType.REFERENCE, required=True, reference_entity="employee")],
    )
    provider = StaticSchemaProvider([schema], lookups={"employee": lambda entity_id: entity_id.startswith("E-")})
    engine = ValidationEngine(schema, provider)

    [issue] = engine.check(TransformResult(row_number=3, source={}, target={"employee": "X-1"}))

    assert issue.severity == Severity.ERROR
    assert engine.check(TransformResult(row_number=4, source={}, target={"employee": "E-7"})) == []


def test_business_rule_violation(engine):
    [issue] = engine.check(_result(closed_at="2024-01-01"))

    assert issue.code == "closed_after_reported"
    assert issue.category == IssueCategory.BUSINESS_RULE
    assert issue.severity == Severity.ERROR
    assert engine.check(_result(row_number=2, closed_at="2024-02-01")) == []


def test_flagged_field_is_not_reported_twice(engine):
    """A value that failed transformation is not also reported as missing."""
    failed = _result(reported_at=None)
    failed.failed_fields.add("reported_at")

    issues = engine.check(failed)

    assert "MissingRequiredField" not in _codes(issues)


def test_duplicate_source_id_is_an_error(engine):
    assert engine.check(_result(1, case_number="C-1")) == []

    [issue] = engine.check(_result(2, case_number="C-1"))

    assert issue.code == "RecordConflict"
    assert issue.severity == Severity.ERROR
    assert "row 1" in issue.message


def test_duplicate_source_id_is_a_warning_for_incremental_jobs(schema_provider):
    engine = ValidationEngine(CASE_SCHEMA, schema_provider, incremental=True)
    engine.check(_result(1, case_number="C-1"))

    [issue] = engine.check(_result(2, case_number="C-1"))

    assert issue.code == "RecordConflict"
    assert issue.severity == Severity.WARNING


def test_quality_checks(engine):
    issues = engine.check(_result(description="N/A", reporter_name=" Jane Doe "))
    assert {(i.code, i.severity) for i in issues} == {
        ("PlaceholderValue", Severity.WARNING),
        ("SurroundingWhitespace", Severity.INFO),
    }

    issues = engine.check(_result(2, description="THE BADGE READER IS BROKEN AGAIN"))
    assert _codes(issues) == ["AllCapsText"]

    issues = engine.check(_result(3, description="x" * 2001))
    assert _codes(issues) == ["ValueTooLong"]


def test_fresh_engines_produce_identical_issues(schema_provider):
    results = [
        _result(1, category=None),
        _result(2, status="open"),
        _result(3, case_number="C-1", assigned_employee_id="E-404"),
        _result(4, case_number="C-1"),
    ]

    first = [i for r in results for i in ValidationEngine(CASE_SCHEMA, schema_provider).check(r)]
    runner = ValidationEngine(CASE_SCHEMA, schema_provider)
    second = [i for r in results for i in runner.check(r)]
    third_runner = ValidationEngine(CASE_SCHEMA, schema_provider)
    third = [i for r in results for i in third_runner.check(r)]

    assert second == third
    # independent engines per record never see the duplicate
    assert "RecordConflict" not in _codes(first)
    assert "RecordConflict" in _codes(second)


def test_source_record_id():
    assert source_record_id(CASE_SCHEMA, {"case_number": " C-9 "}, 5) == "C-9"
    assert source_record_id(CASE_SCHEMA, {"case_number": ""}, 5) == "row:5"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

def _bulk_rows(count, blank_dates=()):
    rows = []
    for i in range(1, count + 1):
        reported = "" if i in blank_dates else "01/15/2024"
        rows.append([f"C-{i:05d}", reported, "Theft", "Open", f"Case {i}", "Jane Doe", "jane@example.com", "E-1"])
    return rows


def test_blank_dates_block_execution_until_file_is_fixed(service, prepare_job):
    blank_rows = {17, 230, 999, 1500, 2048, 3333, 4096, 5000, 6001, 7777, 8888, 9999}
    job_id = prepare_job(make_csv(_bulk_rows(10000, blank_rows)))

    report = service.validate(TENANT, job_id)

    assert report.records_checked == 10000
    assert report.error_count == 12
    errors = [i for i in report.issues if i.severity == Severity.ERROR]
    assert {i.row_number for i in errors} == blank_rows
    assert {(i.code, i.field) for i in errors} == {("MissingRequiredField", "reported_at")}
    assert service.get_job(TENANT, job_id).status == "VALIDATING"

    with pytest.raises(ValidationBlocked) as exc_info:
        service.execute(TENANT, job_id)
    assert exc_info.value.error_count == 12
    assert service.get_job(TENANT, job_id).status == "VALIDATING"

    service.upload_file(TENANT, job_id, make_csv(_bulk_rows(10000)), file_name="cases.csv")
    report = service.validate(TENANT, job_id)

    assert report.error_count == 0
    assert service.get_job(TENANT, job_id).status == "READY"


def test_resolved_duplicate_unblocks_and_is_skipped(service, prepare_job):
    rows = SAMPLE_ROWS + [with_row(SAMPLE_ROWS, 0, "description", "Re-sent by mistake")[0]]
    job_id = prepare_job(make_csv(rows))

    report = service.validate(TENANT, job_id)
    [conflict] = [i for i in report.issues if i.severity == Severity.ERROR]
    assert conflict.code == "RecordConflict"
    assert conflict.row_number == 4

    report = service.resolve_issue(TENANT, job_id, conflict.id)
    assert report.error_count == 0
    assert service.get_job(TENANT, job_id).status == "READY"

    result = service.execute(TENANT, job_id).result(timeout=30)

    assert result.status == "COMPLETED"
    assert result.progress.created == 3
    assert result.progress.skipped == 1


def test_resolved_flags_survive_revalidation(service, prepare_job):
    rows = SAMPLE_ROWS + [list(SAMPLE_ROWS[1])]
    job_id = prepare_job(make_csv(rows))
    [conflict] = [i for i in service.validate(TENANT, job_id).issues if i.code == "RecordConflict"]
    service.resolve_issue(TENANT, job_id, conflict.id)

    report = service.validate(TENANT, job_id)

    assert report.error_count == 0
    [again] = [i for i in report.issues if i.code == "RecordConflict"]
    assert again.resolved is True


def test_unparseable_rows_become_warnings(service, prepare_job):
    job_id = prepare_job(make_csv(SAMPLE_ROWS) + b"C-9999,broken\n")

    report = service.validate(TENANT, job_id)

    assert report.error_count == 0
    [parse_issue] = [i for i in report.issues if i.code == "ParseError"]
    assert parse_issue.row_number == 4
    assert parse_issue.severity == Severity.WARNING
    assert service.get_job(TENANT, job_id).status == "READY"


def test_validate_requires_complete_mapping(service):
    job = service.create_job(TENANT, "custom", "case")
    service.upload_file(TENANT, job.id, make_csv(SAMPLE_ROWS), file_name="cases.csv")
    service.confirm_mapping(TENANT, job.id, [MappingEntry(source_column="case_number", target_field="case_number")])

    with pytest.raises(MappingIncomplete) as exc_info:
        service.validate(TENANT, job.id)

    assert exc_info.value.missing_fields == ["reported_at", "category"]
    assert service.get_job(TENANT, job.id).status == "MAPPING"


def test_configuration_change_requires_revalidation(service, ready_job):
    job_id = ready_job()
    assert service.get_job(TENANT, job_id).status == "READY"

    service.set_rule(TENANT, job_id, "description", {"type": "string_ops", "operations": ["trim"]})

    assert service.get_job(TENANT, job_id).status == "MAPPING"


def test_preview_transforms_sample_without_side_effects(service, prepare_job):
    job_id = prepare_job()

    previews = service.preview(TENANT, job_id, sample_size=2)

    assert [p.row_number for p in previews] == [1, 2]
    assert previews[0].target["reported_at"] == "2024-01-15"
    assert previews[0].target["category"] == "HARASSMENT"
    assert previews[0].target["status"] == "OPEN"

    [third] = service.preview(TENANT, job_id, row_numbers=[3])
    assert third.source["case_number"] == "C-1003"
    assert service.get_job(TENANT, job_id).status == "MAPPING"
