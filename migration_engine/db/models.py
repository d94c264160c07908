"""
ORM models for migration job state.

All tables are tenant-scoped. Timestamps are stored as naive UTC so that the
same comparisons work on Postgres and SQLite.
"""
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from migration_engine.db.session import Base
from migration_engine.utils.date import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class ImportJob(Base):
    """One migration run from a single uploaded export."""
    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(100), nullable=False, index=True)
    source_system = Column(String(100), nullable=False)
    target_entity_type = Column(String(100), nullable=False)
    status = Column(String(40), nullable=False, default="CREATED", index=True)

    # Options
    error_handling = Column(String(40), nullable=False, default="SKIP_AND_CONTINUE")
    batch_size = Column(Integer, nullable=False, default=100)
    dry_run = Column(Boolean, nullable=False, default=False)
    incremental = Column(Boolean, nullable=False, default=False)

    # Uploaded file
    file_key = Column(String(500))
    file_name = Column(String(255))
    file_format = Column(String(20))
    encoding = Column(String(40))
    detected_source_system = Column(String(100))
    source_confidence = Column(Float)
    column_profiles = Column(JSON)

    # Record counts
    source_count = Column(Integer, nullable=False, default=0)
    parse_error_count = Column(Integer, nullable=False, default=0)
    imported_count = Column(Integer, nullable=False, default=0)
    updated_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)

    # Latest validation summary
    error_count = Column(Integer, nullable=False, default=0)
    warning_count = Column(Integer, nullable=False, default=0)
    info_count = Column(Integer, nullable=False, default=0)
    validated_at = Column(DateTime)

    # Resumable cursor: highest batch index below which every batch committed
    cursor_batch_index = Column(Integer, nullable=False, default=-1)
    committed_batches = Column(JSON)

    error_message = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)


class FieldMappingRecord(Base):
    __tablename__ = "field_mappings"

    id = Column(String(36), primary_key=True, default=_new_id)
    job_id = Column(String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False, unique=True)
    tenant_id = Column(String(100), nullable=False)
    entries = Column(JSON, nullable=False, default=list)
    unmapped_action = Column(String(40), nullable=False, default="ignore")
    field_defaults = Column(JSON)
    template_id = Column(String(36))
    template_version = Column(Integer)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class MappingTemplate(Base):
    """
    Reusable mapping, immutable once written.

    Editing a template inserts a new row with the next version; jobs keep
    pointing at the exact version they used.
    """
    __tablename__ = "mapping_templates"
    __table_args__ = (UniqueConstraint("tenant_id", "name", "version", name="uq_mapping_template_version"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(100), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    source_system = Column(String(100), nullable=False)
    target_entity_type = Column(String(100), nullable=False)
    entries = Column(JSON, nullable=False, default=list)
    unmapped_action = Column(String(40), nullable=False, default="ignore")
    field_defaults = Column(JSON)
    value_maps = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ValueMapRecord(Base):
    __tablename__ = "value_maps"
    __table_args__ = (UniqueConstraint("job_id", "target_field", name="uq_value_map_field"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    job_id = Column(String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False)
    tenant_id = Column(String(100), nullable=False)
    target_field = Column(String(255), nullable=False)
    entries = Column(JSON, nullable=False, default=dict)
    default_value = Column(JSON)
    case_sensitive = Column(Boolean, nullable=False, default=False)
    confirmed = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class TransformationRuleRecord(Base):
    __tablename__ = "transformation_rules"
    __table_args__ = (UniqueConstraint("job_id", "target_field", name="uq_rule_field"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    job_id = Column(String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False)
    tenant_id = Column(String(100), nullable=False)
    target_field = Column(String(255), nullable=False)
    rule_type = Column(String(40), nullable=False)
    config = Column(JSON, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class ValidationIssueRecord(Base):
    __tablename__ = "validation_issues"
    __table_args__ = (Index("idx_validation_issues_job_severity", "job_id", "severity"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False)
    tenant_id = Column(String(100), nullable=False)
    row_number = Column(Integer)
    severity = Column(String(10), nullable=False)
    category = Column(String(30), nullable=False)
    code = Column(String(50))
    field = Column(String(255))
    message = Column(Text, nullable=False)
    source_value = Column(Text)
    suggested_fix = Column(Text)
    auto_fixable = Column(Boolean, nullable=False, default=False)
    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ImportErrorRecord(Base):
    """A record that failed to import during Execute."""
    __tablename__ = "import_errors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(String(100), nullable=False)
    batch_index = Column(Integer)
    row_number = Column(Integer)
    source_record_id = Column(String(255))
    error_type = Column(String(50), nullable=False)
    message = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ImportedRecord(Base):
    """
    Link between a source record and the target entity written for it.

    ``action`` is ``created``, ``updated`` or ``skipped``; only the first two
    are reversed by rollback.
    """
    __tablename__ = "imported_records"
    __table_args__ = (
        Index("idx_imported_records_job", "job_id", "rolled_back_at"),
        Index("idx_imported_records_source", "job_id", "target_entity_type", "source_record_id"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    job_id = Column(String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False)
    tenant_id = Column(String(100), nullable=False)
    source_system = Column(String(100), nullable=False)
    source_record_id = Column(String(255), nullable=False)
    target_entity_type = Column(String(100), nullable=False)
    target_entity_id = Column(String(36), nullable=False)
    row_number = Column(Integer)
    batch_index = Column(Integer)
    action = Column(String(10), nullable=False, default="created")
    was_update = Column(Boolean, nullable=False, default=False)
    content_hash = Column(String(64))
    previous_values = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    rolled_back_at = Column(DateTime)


class RestorePoint(Base):
    __tablename__ = "restore_points"

    id = Column(String(36), primary_key=True, default=_new_id)
    job_id = Column(String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(String(100), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    entity_types = Column(JSON, nullable=False, default=list)
    record_count = Column(Integer, nullable=False, default=0)
    status = Column(String(10), nullable=False, default="ACTIVE")
    used_at = Column(DateTime)


class TargetRecord(Base):
    """Default durable record store for imported entities."""
    __tablename__ = "target_records"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "source_system", "source_record_id", "entity_type", name="uq_target_record_source_key"
        ),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(100), nullable=False)
    source_system = Column(String(100), nullable=False)
    source_record_id = Column(String(255), nullable=False)
    data = Column(JSON, nullable=False)
    content_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
