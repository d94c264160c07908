import pytest

from migration_engine.core.exceptions import InvalidJobTransition, JobNotFound
from migration_engine.domain.imports.jobs import (
    ALLOWED_TRANSITIONS,
    JobStateMachine,
    JobStatus,
    create_import_job,
    get_import_job,
    list_import_jobs,
)
from tests.utils.migration_data import OTHER_TENANT, TENANT


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def job(db):
    return create_import_job(db, tenant_id=TENANT, source_system="navex", target_entity_type="case", batch_size=50)


def _walk(machine, db, job, *statuses):
    for status in statuses:
        machine.transition(db, job, status)


def test_new_job_starts_created(job):
    assert job.status == "CREATED"
    assert job.batch_size == 50
    assert job.error_handling == "SKIP_AND_CONTINUE"


def test_happy_path_through_import(db, job):
    machine = JobStateMachine()

    _walk(machine, db, job, JobStatus.ANALYZING, JobStatus.MAPPING, JobStatus.VALIDATING, JobStatus.READY,
          JobStatus.IMPORTING)
    assert job.started_at is not None
    assert job.completed_at is None

    event = machine.transition(db, job, JobStatus.COMPLETED)

    assert job.status == "COMPLETED"
    assert job.completed_at is not None
    assert event.from_status == JobStatus.IMPORTING
    assert event.to_status == JobStatus.COMPLETED
    assert event.tenant_id == TENANT


def test_invalid_transition_is_rejected(db, job):
    machine = JobStateMachine()

    with pytest.raises(InvalidJobTransition) as exc_info:
        machine.transition(db, job, JobStatus.IMPORTING)

    assert exc_info.value.current == "CREATED"
    assert exc_info.value.target == "IMPORTING"
    assert job.status == "CREATED"


@pytest.mark.parametrize(
    "current, target, allowed",
    [
        (JobStatus.READY, JobStatus.MAPPING, True),
        (JobStatus.VALIDATING, JobStatus.ANALYZING, True),
        (JobStatus.PAUSED, JobStatus.IMPORTING, True),
        (JobStatus.COMPLETED, JobStatus.ANALYZING, False),
        (JobStatus.CANCELLED, JobStatus.IMPORTING, False),
        (JobStatus.ROLLED_BACK, JobStatus.IMPORTING, True),
        (JobStatus.IMPORTING, JobStatus.READY, False),
    ],
)
def test_transition_table(current, target, allowed):
    assert JobStateMachine().can_transition(current, target) is allowed


def test_every_status_has_an_entry():
    assert set(ALLOWED_TRANSITIONS) == set(JobStatus)


def test_resume_keeps_original_start_time(db, job):
    machine = JobStateMachine()
    _walk(machine, db, job, JobStatus.ANALYZING, JobStatus.MAPPING, JobStatus.VALIDATING, JobStatus.READY,
          JobStatus.IMPORTING)
    started = job.started_at

    _walk(machine, db, job, JobStatus.PAUSED, JobStatus.IMPORTING)

    assert job.started_at == started


def test_failure_records_error_message(db, job):
    machine = JobStateMachine()
    _walk(machine, db, job, JobStatus.ANALYZING)

    machine.transition(db, job, JobStatus.FAILED, error_message="Storage unreachable")

    assert job.error_message == "Storage unreachable"


def test_listeners_are_filtered_by_target_status(db, job):
    machine = JobStateMachine()
    every, cancelled = [], []
    machine.register_transition_listener(every.append)
    machine.register_transition_listener(cancelled.append, to_status=JobStatus.CANCELLED)

    _walk(machine, db, job, JobStatus.ANALYZING, JobStatus.CANCELLED)

    assert [e.to_status for e in every] == [JobStatus.ANALYZING, JobStatus.CANCELLED]
    assert [e.from_status for e in cancelled] == [JobStatus.ANALYZING]


def test_failing_listener_does_not_block_transition(db, job):
    machine = JobStateMachine()
    seen = []

    def broken(event):
        raise RuntimeError("webhook down")

    machine.register_transition_listener(broken)
    machine.register_transition_listener(seen.append)

    machine.transition(db, job, JobStatus.ANALYZING)

    assert job.status == "ANALYZING"
    assert len(seen) == 1


def test_jobs_are_looked_up_per_tenant(db, job):
    db.commit()

    assert get_import_job(db, TENANT, job.id).id == job.id
    with pytest.raises(JobNotFound):
        get_import_job(db, OTHER_TENANT, job.id)

    jobs, total = list_import_jobs(db, TENANT)
    assert total == 1
    assert [j.id for j in jobs] == [job.id]
    assert list_import_jobs(db, OTHER_TENANT) == ([], 0)
