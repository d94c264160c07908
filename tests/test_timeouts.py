import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from migration_engine.core.exceptions import StoreTimeout
from migration_engine.utils.timeouts import call_with_timeout


def test_result_and_errors_pass_through():
    assert call_with_timeout(5, "Record store", max, 3, 7) == 7
    with pytest.raises(ZeroDivisionError):
        call_with_timeout(5, "Record store", lambda: 1 / 0)


def test_slow_call_times_out():
    with pytest.raises(StoreTimeout) as exc_info:
        call_with_timeout(0.2, "Blob store", time.sleep, 1)

    assert exc_info.value.message == "Blob store did not answer within 0.2s"


def test_many_concurrent_calls_do_not_wait_for_each_other():
    def slow_call(i):
        return call_with_timeout(1, "Record store", lambda: time.sleep(0.6) or i)

    with ThreadPoolExecutor(max_workers=16) as callers:
        results = list(callers.map(slow_call, range(32)))

    assert results == list(range(32))
