"""
Shared sample data for migration engine tests: a case schema with an
embedded reporter, a three-row CSV export and the mapping that fits it.
"""

import csv
import io
from datetime import datetime, timedelta
from typing import List, Optional

from migration_engine.domain.imports.schema import (
    BusinessRule,
    EmbeddedEntity,
    FieldType,
    TargetField,
    TargetSchema,
)

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"

CASE_COLUMNS = [
    "case_number",
    "reported_date",
    "incident_type",
    "status",
    "description",
    "reporter_name",
    "reporter_email",
    "employee_id",
]

SAMPLE_ROWS = [
    ["C-1001", "01/15/2024", "Harassment", "Open", "Manager made inappropriate comments", "Jane Doe",
     "jane@example.com", "E-1"],
    ["C-1002", "02/03/2024", "Theft", "Closed", "Laptop missing from storage room", "John Roe",
     "john@example.com", "E-2"],
    ["C-1003", "02/20/2024", "Fraud", "Open", "Expense report irregularities", "Ann Lee",
     "ann@example.com", "E-1"],
]

CASE_MAPPING = [
    ("case_number", "case_number"),
    ("reported_date", "reported_at"),
    ("incident_type", "category"),
    ("status", "status"),
    ("description", "description"),
    ("reporter_name", "reporter_name"),
    ("reporter_email", "reporter_email"),
    ("employee_id", "assigned_employee_id"),
]

CASE_SCHEMA = TargetSchema(
    entity_type="case",
    source_id_field="case_number",
    fields=[
        TargetField(name="case_number", type=FieldType.STRING, required=True, examples=["C-1001"]),
        TargetField(name="reported_at", type=FieldType.DATE, required=True),
        TargetField(
            name="category",
            type=FieldType.ENUM,
            required=True,
            enum_values=["HARASSMENT", "THEFT", "FRAUD", "DISCRIMINATION", "OTHER"],
        ),
        TargetField(name="status", type=FieldType.ENUM, enum_values=["NEW", "OPEN", "CLOSED"]),
        TargetField(name="description", type=FieldType.TEXT, max_length=2000),
        TargetField(name="closed_at", type=FieldType.DATE),
        TargetField(name="reporter_name", type=FieldType.STRING),
        TargetField(name="reporter_email", type=FieldType.EMAIL),
        TargetField(name="assigned_employee_id", type=FieldType.REFERENCE, reference_entity="employee"),
    ],
    business_rules=[
        BusinessRule(name="closed_after_reported", field="closed_at", operator="gte", other_field="reported_at"),
    ],
    embedded=[
        EmbeddedEntity(
            entity_type="person",
            fields={"name": "reporter_name", "email": "reporter_email"},
            link_field="reporter_id",
        ),
    ],
)

PERSON_SCHEMA = TargetSchema(
    entity_type="person",
    fields=[
        TargetField(name="name", type=FieldType.STRING),
        TargetField(name="email", type=FieldType.EMAIL),
    ],
)


def make_csv(rows: List[list], columns: Optional[List[str]] = None) -> bytes:
    """Render rows as CSV bytes with a header line."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(columns or CASE_COLUMNS)
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


def with_row(rows: List[list], index: int, column: str, value) -> List[list]:
    """Copy of ``rows`` with one cell replaced."""
    copied = [list(row) for row in rows]
    copied[index][CASE_COLUMNS.index(column)] = value
    return copied


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)
