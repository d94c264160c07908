"""
Pytest configuration and fixtures for Migration Engine tests.

Every test gets its own SQLite database file, an in-memory blob store and a
frozen clock, so jobs, restore points and journal rows are fully isolated.
"""

import os
from datetime import datetime

# The FastAPI app must not bootstrap the configured database during tests.
os.environ.setdefault("SKIP_DB_INIT", "1")

import pytest
from sqlalchemy.orm import sessionmaker

from migration_engine.api.schemas.shared import JobOptions, MappingEntry, ValueMap
from migration_engine.core.config import Settings
from migration_engine.db.models import TargetRecord
from migration_engine.db.session import build_engine, init_db
from migration_engine.domain.imports.schema import StaticSchemaProvider
from migration_engine.domain.imports.service import ImportService
from migration_engine.domain.imports.store import SqlRecordStore
from migration_engine.integrations.storage import InMemoryBlobStore
from tests.utils.migration_data import (
    CASE_MAPPING,
    CASE_SCHEMA,
    PERSON_SCHEMA,
    SAMPLE_ROWS,
    TENANT,
    FrozenClock,
    make_csv,
)


@pytest.fixture
def session_factory(tmp_path):
    """Fresh SQLite database with every engine table created."""
    engine = build_engine(f"sqlite:///{tmp_path / 'migration.db'}")
    init_db(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def schema_provider():
    return StaticSchemaProvider([CASE_SCHEMA, PERSON_SCHEMA], lookups={"employee": {"E-1", "E-2"}})


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 3, 1, 12, 0, 0))


@pytest.fixture
def sleep_calls():
    """Backoff delays requested by the executor, recorded instead of slept."""
    return []


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite://",
        execute_max_workers=1,
        default_batch_size=100,
        retry_max_attempts=3,
        retry_backoff_seconds=0.01,
        store_timeout_seconds=10,
        max_concurrent_jobs_per_tenant=2,
        rollback_retention_days=7,
    )


@pytest.fixture
def service_factory(session_factory, schema_provider, blob_store, clock, test_settings, sleep_calls):
    """
    Build ImportService instances wired to the test database.

    Accepts an optional record store (for fault injection) and Settings
    overrides; every service built is shut down after the test.
    """
    services = []

    def build(record_store=None, **overrides):
        config = test_settings.model_copy(update=overrides) if overrides else test_settings
        service = ImportService(
            schema_provider,
            record_store=record_store or SqlRecordStore(session_factory),
            blob_store=blob_store,
            session_factory=session_factory,
            clock=clock,
            config=config,
            sleep=sleep_calls.append,
        )
        services.append(service)
        return service

    yield build
    for service in services:
        service.shutdown(wait=True)


@pytest.fixture
def service(service_factory):
    return service_factory()


@pytest.fixture
def prepare_job(service):
    """
    Create a case import job, upload a file and configure its mapping, rules
    and category value map. Returns the job id; the job is left in MAPPING
    so tests decide when to validate.
    """

    def prepare(content=None, *, options=None, target_service=None, file_name="cases.csv"):
        svc = target_service or service
        job = svc.create_job(TENANT, "custom", "case", options or JobOptions())
        svc.upload_file(TENANT, job.id, content or make_csv(SAMPLE_ROWS), file_name=file_name)
        svc.confirm_mapping(
            TENANT,
            job.id,
            [MappingEntry(source_column=column, target_field=field) for column, field in CASE_MAPPING],
        )
        svc.set_rule(TENANT, job.id, "reported_at", {"type": "date_format", "input_format": "MM/DD/YYYY"})
        svc.set_rule(TENANT, job.id, "status", {"type": "string_ops", "operations": ["trim", "upper"]})
        svc.confirm_value_map(
            TENANT,
            job.id,
            ValueMap(
                target_field="category",
                entries={"Harassment": "HARASSMENT", "Theft": "THEFT", "Fraud": "FRAUD"},
                default_value="OTHER",
            ),
        )
        return job.id

    return prepare


@pytest.fixture
def ready_job(service, prepare_job):
    """Factory for a validated job in READY state."""

    def make(content=None, *, options=None, target_service=None):
        svc = target_service or service
        job_id = prepare_job(content, options=options, target_service=svc)
        report = svc.validate(TENANT, job_id)
        assert report.error_count == 0, report.issues
        return job_id

    return make


@pytest.fixture
def target_snapshot(session_factory):
    """Callable returning ``{id: (entity_type, data, content_hash)}`` for all target records."""

    def snapshot():
        with session_factory() as db:
            return {
                row.id: (row.entity_type, dict(row.data or {}), row.content_hash)
                for row in db.query(TargetRecord).all()
            }

    return snapshot
