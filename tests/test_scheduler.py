import threading

import pytest

from migration_engine.domain.imports.scheduler import TenantJobScheduler

WAIT = 10


@pytest.fixture
def scheduler():
    scheduler = TenantJobScheduler(max_per_tenant=2, max_workers=8)
    yield scheduler
    scheduler.shutdown(wait=True)


def _blocking(gate, started, name):
    def work():
        started.append(name)
        assert gate.wait(WAIT)
        return name

    return work


def test_third_job_for_tenant_waits_in_queue(scheduler):
    gate = threading.Event()
    started = []

    first = scheduler.submit("tenant-a", "job-1", _blocking(gate, started, "job-1"))
    second = scheduler.submit("tenant-a", "job-2", _blocking(gate, started, "job-2"))
    third = scheduler.submit("tenant-a", "job-3", _blocking(gate, started, "job-3"))

    assert scheduler.running_count("tenant-a") == 2
    assert scheduler.queued_count("tenant-a") == 1
    assert not third.done()

    gate.set()

    assert [h.result(timeout=WAIT) for h in (first, second, third)] == ["job-1", "job-2", "job-3"]
    assert scheduler.queued_count("tenant-a") == 0


def test_tenants_do_not_block_each_other(scheduler):
    gate = threading.Event()
    started = []
    blocked = [scheduler.submit("tenant-a", f"job-{i}", _blocking(gate, started, f"job-{i}")) for i in range(3)]

    other = scheduler.submit("tenant-b", "job-b", lambda: "done")

    assert other.result(timeout=WAIT) == "done"
    assert scheduler.queued_count("tenant-a") == 1
    gate.set()
    for handle in blocked:
        handle.result(timeout=WAIT)


def test_queued_job_can_be_cancelled(scheduler):
    gate = threading.Event()
    started = []
    running = [scheduler.submit("tenant-a", f"job-{i}", _blocking(gate, started, f"job-{i}")) for i in range(2)]
    queued = scheduler.submit("tenant-a", "job-late", _blocking(gate, started, "job-late"), kind="rollback")

    assert queued.kind == "rollback"
    assert queued.cancel_if_queued() is True

    gate.set()
    for handle in running:
        handle.result(timeout=WAIT)
    follow_up = scheduler.submit("tenant-a", "job-next", lambda: "ran")

    assert follow_up.result(timeout=WAIT) == "ran"
    assert "job-late" not in started


def test_exceptions_reach_the_caller(scheduler):
    def broken():
        raise ValueError("boom")

    handle = scheduler.submit("tenant-a", "job-1", broken)

    with pytest.raises(ValueError, match="boom"):
        handle.result(timeout=WAIT)
    assert scheduler.submit("tenant-a", "job-2", lambda: 42).result(timeout=WAIT) == 42
