import threading
import time

import pytest

from migration_engine.api.schemas.shared import JobOptions, RollbackScope
from migration_engine.core.exceptions import InvalidJobTransition, RollbackBlocked, StoreTimeout
from migration_engine.db.models import RestorePoint, TargetRecord
from migration_engine.domain.imports.executor import target_entity_id
from migration_engine.domain.imports.store import SqlRecordStore
from migration_engine.utils.serialization import compute_content_hash
from tests.utils.migration_data import SAMPLE_ROWS, TENANT, make_csv, with_row

WAIT = 30


class RevertRecordingStore(SqlRecordStore):
    """Counts revert batches; optionally answers them `delay` seconds late."""

    def __init__(self, session_factory, delay=0.0):
        super().__init__(session_factory)
        self.delay = delay
        self.revert_sizes = []
        self.settled = threading.Event()

    def revert_batch(self, tenant_id, ops, journal=None):
        self.revert_sizes.append(len(ops))
        time.sleep(self.delay)
        try:
            return super().revert_batch(tenant_id, ops, journal)
        finally:
            self.settled.set()


def _case_id(source_id):
    return target_entity_id(TENANT, "custom", "case", source_id)


def _imported_job(service, ready_job, **kwargs):
    job_id = ready_job(**kwargs)
    result = service.execute(TENANT, job_id).result(timeout=WAIT)
    assert result.status == "COMPLETED"
    return job_id


def _edit_case(session_factory, source_id, **changes):
    """Modify an imported case the way a user of the target system would."""
    with session_factory() as db:
        row = db.get(TargetRecord, _case_id(source_id))
        data = dict(row.data)
        data.update(changes)
        row.data = data
        row.content_hash = compute_content_hash(data)
        db.commit()


def test_full_rollback_restores_pre_import_state(service, ready_job, target_snapshot):
    assert target_snapshot() == {}
    job_id = _imported_job(service, ready_job)
    imported = target_snapshot()
    assert len(imported) == 6

    result = service.rollback(TENANT, job_id).result(timeout=WAIT)

    assert result.rolled_back_count == 6
    assert result.deleted_count == 6
    assert result.restored_count == 0
    assert result.conflicts == []
    assert result.remaining_count == 0
    assert result.restore_point_status == "USED"
    assert result.job_status == "ROLLED_BACK"
    assert target_snapshot() == {}

    check = service.can_rollback(TENANT, job_id)
    assert check.can_rollback is False
    assert "already used" in check.reason

    rerun = service.execute(TENANT, job_id).result(timeout=WAIT)
    assert rerun.status == "COMPLETED"
    assert rerun.progress.created == 3
    assert target_snapshot() == imported


def test_rollback_is_refused_after_retention_window(service, ready_job, target_snapshot, clock):
    job_id = _imported_job(service, ready_job)
    before = target_snapshot()
    clock.advance(days=8)

    with pytest.raises(RollbackBlocked) as exc_info:
        service.rollback(TENANT, job_id)

    assert "expired" in exc_info.value.message
    assert target_snapshot() == before
    check = service.can_rollback(TENANT, job_id)
    assert check.can_rollback is False
    assert check.restore_point_status == "EXPIRED"
    assert check.record_count == 6


def test_rollback_within_retention_window_is_allowed(service, ready_job, clock):
    job_id = _imported_job(service, ready_job)
    clock.advance(days=6, hours=23)

    check = service.can_rollback(TENANT, job_id)

    assert check.can_rollback is True
    assert check.reason is None
    assert check.restore_point_status == "ACTIVE"


def test_modified_records_are_reported_as_conflicts(service, ready_job, target_snapshot, session_factory):
    job_id = _imported_job(service, ready_job)
    _edit_case(session_factory, "C-1001", status="CLOSED")

    result = service.rollback(TENANT, job_id).result(timeout=WAIT)

    [conflict] = result.conflicts
    assert conflict.target_entity_id == _case_id("C-1001")
    assert conflict.entity_type == "case"
    assert conflict.row_number == 1
    assert result.rolled_back_count == 5
    assert result.remaining_count == 1
    assert result.restore_point_status == "ACTIVE"
    assert result.job_status == "COMPLETED"
    remaining = target_snapshot()
    assert list(remaining) == [_case_id("C-1001")]
    assert remaining[_case_id("C-1001")][1]["status"] == "CLOSED"

    forced = service.rollback(TENANT, job_id, force=True).result(timeout=WAIT)

    assert len(forced.conflicts) == 1
    assert forced.rolled_back_count == 1
    assert forced.remaining_count == 0
    assert forced.job_status == "ROLLED_BACK"
    assert target_snapshot() == {}


def test_rollback_is_blocked_when_every_record_conflicts(service, ready_job, session_factory):
    job_id = _imported_job(service, ready_job)
    _edit_case(session_factory, "C-1002", description="Edited after import")

    handle = service.rollback(TENANT, job_id, RollbackScope(row_numbers=[2], entity_types=["case"]))

    with pytest.raises(RollbackBlocked) as exc_info:
        handle.result(timeout=WAIT)

    assert exc_info.value.details["conflicts"][0]["row_number"] == 2
    assert service.can_rollback(TENANT, job_id).record_count == 6


def test_partial_rollback_by_row_number(service, ready_job, target_snapshot):
    job_id = _imported_job(service, ready_job)

    result = service.rollback(TENANT, job_id, RollbackScope(row_numbers=[1])).result(timeout=WAIT)

    assert result.rolled_back_count == 2
    assert result.deleted_count == 2
    assert result.remaining_count == 4
    assert result.restore_point_status == "ACTIVE"
    assert result.job_status == "COMPLETED"
    assert _case_id("C-1001") not in target_snapshot()
    assert len(target_snapshot()) == 4


def test_scope_matching_nothing_is_blocked(service, ready_job):
    job_id = _imported_job(service, ready_job)

    with pytest.raises(RollbackBlocked):
        service.rollback(TENANT, job_id, RollbackScope(row_numbers=[99])).result(timeout=WAIT)


def test_rollback_of_incremental_job_restores_previous_values(service, ready_job, target_snapshot):
    _imported_job(service, ready_job)
    original = target_snapshot()

    changed = with_row(SAMPLE_ROWS, 0, "description", "Updated narrative")
    job_id = ready_job(make_csv(changed), options=JobOptions(incremental=True))
    result = service.execute(TENANT, job_id).result(timeout=WAIT)
    assert result.progress.updated == 1
    assert target_snapshot()[_case_id("C-1001")][1]["description"] == "Updated narrative"

    rollback = service.rollback(TENANT, job_id).result(timeout=WAIT)

    assert rollback.restored_count == 1
    assert rollback.deleted_count == 0
    assert rollback.job_status == "ROLLED_BACK"
    assert target_snapshot() == original


def test_unfinished_job_cannot_be_rolled_back(service, ready_job):
    job_id = ready_job()

    check = service.can_rollback(TENANT, job_id)

    assert check.can_rollback is False
    assert "READY" in check.reason
    with pytest.raises(RollbackBlocked):
        service.rollback(TENANT, job_id)


def test_rolled_back_job_cannot_be_paused(service, ready_job):
    job_id = _imported_job(service, ready_job)
    service.rollback(TENANT, job_id).result(timeout=WAIT)

    with pytest.raises(InvalidJobTransition):
        service.pause(TENANT, job_id)


def test_restore_point_tracks_live_record_count(service, ready_job, session_factory):
    job_id = _imported_job(service, ready_job)
    service.rollback(TENANT, job_id, RollbackScope(entity_types=["case"])).result(timeout=WAIT)

    with session_factory() as db:
        point = db.query(RestorePoint).filter(RestorePoint.job_id == job_id).one()
        assert point.status == "ACTIVE"
        assert point.record_count == 3


def test_rollback_batches_follow_the_job_batch_size(service_factory, session_factory, ready_job, target_snapshot):
    store = RevertRecordingStore(session_factory)
    svc = service_factory(record_store=store)
    job_id = _imported_job(svc, ready_job, options=JobOptions(batch_size=2), target_service=svc)

    result = svc.rollback(TENANT, job_id).result(timeout=WAIT)

    assert result.rolled_back_count == 6
    assert store.revert_sizes == [2, 2, 2]
    assert target_snapshot() == {}


def test_rollback_timeout_is_recorded_on_the_job(service_factory, session_factory, ready_job):
    store = RevertRecordingStore(session_factory, delay=1.5)
    svc = service_factory(record_store=store, store_timeout_seconds=1)
    job_id = _imported_job(svc, ready_job, target_service=svc)

    handle = svc.rollback(TENANT, job_id)

    with pytest.raises(StoreTimeout):
        handle.result(timeout=WAIT)
    job = svc.get_job(TENANT, job_id)
    assert job.error_message.startswith("Rollback failed: Record store did not answer within 1")
    assert job.status == "COMPLETED"
    assert store.settled.wait(WAIT)
