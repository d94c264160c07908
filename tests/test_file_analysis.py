import io
import json

import pytest
from openpyxl import Workbook

from migration_engine.core.exceptions import EmptyInput, UnsupportedFormat
from migration_engine.domain.imports.analyzer import (
    ColumnProfiler,
    RecordReader,
    analyze_file,
    detect_format,
)
from tests.utils.migration_data import SAMPLE_ROWS, make_csv


def _profile(analysis, name):
    return next(column for column in analysis.columns if column.name == name)


def test_analyze_csv_profiles_columns():
    analysis = analyze_file(make_csv(SAMPLE_ROWS), file_name="cases.csv")

    assert analysis.file_format == "csv"
    assert analysis.delimiter == ","
    assert analysis.record_count == 3
    assert analysis.parse_error_count == 0
    assert [c.name for c in analysis.columns][:3] == ["case_number", "reported_date", "incident_type"]

    reported = _profile(analysis, "reported_date")
    assert reported.inferred_type == "date"
    assert reported.null_count == 0

    incident = _profile(analysis, "incident_type")
    assert incident.inferred_type == "string"
    assert {vc.value for vc in incident.top_values} == {"Harassment", "Theft", "Fraud"}
    assert _profile(analysis, "reporter_email").inferred_type == "email"


def test_semicolon_delimiter_is_sniffed():
    content = b"id;amount;active\n1;10.5;yes\n2;7.25;no\n3;1.00;yes\n"

    analysis = analyze_file(content, file_name="export.csv")

    assert analysis.delimiter == ";"
    assert _profile(analysis, "id").inferred_type == "integer"
    assert _profile(analysis, "amount").inferred_type == "decimal"
    assert _profile(analysis, "active").inferred_type == "boolean"


def test_malformed_rows_are_counted_not_fatal():
    content = b"a,b,c\n1,2,3\n4,5\n6,7,8\n"

    analysis = analyze_file(content)

    assert analysis.record_count == 2
    assert analysis.parse_error_count == 1
    assert analysis.parse_error_rows == [2]


def test_reader_keeps_row_numbers_stable_around_parse_errors():
    reader = RecordReader(b"a,b,c\n1,2,3\n4,5\n6,7,8\n")

    rows = list(reader)

    assert [row_number for row_number, _ in rows] == [1, 3]
    assert rows[1][1] == {"a": "6", "b": "7", "c": "8"}
    assert reader.parse_error_rows == [2]


def test_unterminated_quote_only_costs_its_own_row():
    content = b'id,name,notes\n1,Alice,ok\n2,Bob,"unterminated\n3,Carol,ok\n4,Dan,ok\n5,Eve,ok\n'

    analysis = analyze_file(content, file_name="cases.csv")
    rows = dict(RecordReader(content))

    assert analysis.record_count == 4
    assert analysis.parse_error_count == 1
    assert analysis.parse_error_rows == [2]
    assert rows[3] == {"id": "3", "name": "Carol", "notes": "ok"}
    assert sorted(rows) == [1, 3, 4, 5]


def test_truncated_final_row_is_a_parse_error():
    reader = RecordReader(b'id,name,notes\n1,Alice,ok\n2,Bob,"truncated')

    rows = list(reader)

    assert [row_number for row_number, _ in rows] == [1]
    assert reader.parse_error_rows == [2]


def test_text_after_closing_quote_is_a_parse_error():
    reader = RecordReader(b'id,name\n1,"Alice"x\n2,Bob\n')

    assert [row_number for row_number, _ in reader] == [2]
    assert reader.parse_error_rows == [1]


def test_quoted_field_may_span_lines():
    reader = RecordReader(b'id,notes,status\n1,"line one\nline two",open\n2,plain,closed\n')

    rows = dict(reader)

    assert rows[1] == {"id": "1", "notes": "line one\nline two", "status": "open"}
    assert rows[2]["status"] == "closed"
    assert reader.parse_error_count == 0


def test_reader_streams_from_a_file_handle(tmp_path):
    path = tmp_path / "cases.csv"
    path.write_bytes(make_csv(SAMPLE_ROWS))

    with open(path, "rb") as handle:
        analysis = analyze_file(handle, file_name="cases.csv")
        records = list(RecordReader(handle))
        assert not handle.closed

    assert analysis.record_count == 3
    assert [row_number for row_number, _ in records] == [1, 2, 3]


def test_analyze_json_lines():
    content = b'{"case_id": "A-1", "priority": 3}\n\n{"case_id": "A-2", "owner": "kim"}\nnot json\n'

    analysis = analyze_file(content, file_name="export.jsonl")
    rows = dict(RecordReader(content, file_name="export.jsonl"))

    assert analysis.file_format == "jsonl"
    assert [c.name for c in analysis.columns] == ["case_id", "priority", "owner"]
    assert analysis.record_count == 2
    assert analysis.parse_error_rows == [3]
    assert rows[2] == {"case_id": "A-2", "priority": None, "owner": "kim"}


def test_blank_cells_become_none():
    reader = RecordReader(b"name,email\nJane,\n  ,x@example.com\n")

    rows = dict(reader)

    assert rows[1] == {"name": "Jane", "email": None}
    assert rows[2] == {"name": None, "email": "x@example.com"}


def test_analyze_json_records():
    payload = {"records": [
        {"case_id": "A-1", "priority": 3, "tags": ["x", "y"]},
        {"case_id": "A-2", "priority": 1},
    ]}

    analysis = analyze_file(json.dumps(payload).encode("utf-8"), file_name="export.json")

    assert analysis.file_format == "json"
    assert analysis.record_count == 2
    assert [c.name for c in analysis.columns] == ["case_id", "priority", "tags"]
    assert _profile(analysis, "priority").inferred_type == "integer"
    assert _profile(analysis, "tags").null_count == 1


def test_analyze_excel_workbook():
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["Case Number", "Opened"])
    sheet.append(["X-1", "2024-01-05"])
    sheet.append(["X-2", "2024-02-11"])
    buffer = io.BytesIO()
    workbook.save(buffer)

    analysis = analyze_file(buffer.getvalue(), file_name="cases.xlsx")

    assert analysis.file_format == "xlsx"
    assert analysis.record_count == 2
    assert _profile(analysis, "Opened").inferred_type == "date"


def test_header_only_file_is_empty_input():
    with pytest.raises(EmptyInput):
        analyze_file(b"a,b,c\n")


def test_zero_byte_file_is_empty_input():
    with pytest.raises(EmptyInput):
        RecordReader(b"")


def test_binary_content_is_unsupported():
    with pytest.raises(UnsupportedFormat):
        analyze_file(b"\x00\x01\x02\x03binary", file_name="blob.bin")


def test_invalid_json_reports_position():
    with pytest.raises(UnsupportedFormat) as exc_info:
        analyze_file(b'[{"a": 1},', file_name="broken.json")

    assert "line 1" in exc_info.value.message


def test_latin1_fallback_decoding():
    content = "name,city\nJosé,Málaga\n".encode("latin-1")

    reader = RecordReader(content)

    assert reader.encoding == "latin-1"
    assert dict(reader)[1] == {"name": "José", "city": "Málaga"}


def test_detect_format_from_name_and_bytes():
    assert detect_format(b"[{}]") == "json"
    assert detect_format(b"a,b\n1,2", "data.csv") == "csv"
    assert detect_format(b"PK\x03\x04rest") == "xlsx"


def test_column_profiler_empty_column():
    profiler = ColumnProfiler("notes")
    for _ in range(3):
        profiler.add(None)

    profile = profiler.build()

    assert profile.inferred_type == "empty"
    assert profile.null_count == 3
