import logging

from migration_engine.core.logging_config import (
    NO_CONTEXT,
    JobContextFilter,
    current_job_context,
    job_log_context,
)
from migration_engine.utils.timeouts import call_with_timeout


def _record():
    return logging.LogRecord("migration_engine.test", logging.INFO, __file__, 1, "message", None, None)


def test_filter_tags_records_with_the_active_job():
    log_filter = JobContextFilter()

    with job_log_context("job-1", "tenant-a"):
        inside = _record()
        assert log_filter.filter(inside)
    outside = _record()
    log_filter.filter(outside)

    assert (inside.tenant_id, inside.job_id) == ("tenant-a", "job-1")
    assert (outside.tenant_id, outside.job_id) == (NO_CONTEXT, NO_CONTEXT)


def test_nested_contexts_restore_the_outer_job():
    with job_log_context("job-1", "tenant-a"):
        with job_log_context("job-2"):
            assert current_job_context() == (NO_CONTEXT, "job-2")
        assert current_job_context() == ("tenant-a", "job-1")


def test_context_follows_calls_onto_their_worker_thread():
    with job_log_context("job-7", "tenant-b"):
        seen = call_with_timeout(5, "Record store", current_job_context)

    assert seen == ("tenant-b", "job-7")
