"""
Per-tenant bounded job scheduling.

At most ``max_concurrent_jobs_per_tenant`` executions or rollbacks run at the
same time for one tenant; further submissions wait in a FIFO queue and start
as running ones finish.
"""

import logging
import threading
from collections import defaultdict, deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from migration_engine.core.config import settings

logger = logging.getLogger(__name__)

_Task = Tuple[str, Future, Callable[..., Any], tuple, dict]


class ExecutionHandle:
    """Caller-side view of a scheduled execution or rollback."""

    def __init__(self, job_id: str, kind: str, future: Future):
        self.job_id = job_id
        self.kind = kind
        self.future = future

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> Any:
        return self.future.result(timeout=timeout)

    def cancel_if_queued(self) -> bool:
        return self.future.cancel()

    def __repr__(self) -> str:
        state = "done" if self.future.done() else ("running" if self.future.running() else "queued")
        return f"<ExecutionHandle {self.kind} job={self.job_id} {state}>"


class TenantJobScheduler:
    def __init__(self, max_per_tenant: Optional[int] = None, max_workers: int = 16):
        self.max_per_tenant = max_per_tenant or settings.max_concurrent_jobs_per_tenant
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="import-job")
        self._lock = threading.Lock()
        self._running: Dict[str, int] = defaultdict(int)
        self._queues: Dict[str, Deque[_Task]] = defaultdict(deque)

    def submit(self, tenant_id: str, job_id: str, fn: Callable[..., Any], *args, kind: str = "execute", **kwargs) -> ExecutionHandle:
        future: Future = Future()
        task: _Task = (job_id, future, fn, args, kwargs)
        with self._lock:
            if self._running[tenant_id] < self.max_per_tenant:
                self._running[tenant_id] += 1
                start_now = True
            else:
                self._queues[tenant_id].append(task)
                start_now = False
                logger.info(
                    f"Tenant {tenant_id} already runs {self._running[tenant_id]} job(s); "
                    f"queued {kind} for job {job_id} (position {len(self._queues[tenant_id])})"
                )
        if start_now:
            self._pool.submit(self._run, tenant_id, task)
        return ExecutionHandle(job_id, kind, future)

    def _run(self, tenant_id: str, task: _Task) -> None:
        job_id, future, fn, args, kwargs = task
        if future.set_running_or_notify_cancel():
            try:
                future.set_result(fn(*args, **kwargs))
            except BaseException as exc:
                logger.error(f"Scheduled work for job {job_id} raised {type(exc).__name__}: {exc}")
                future.set_exception(exc)

        with self._lock:
            queue = self._queues[tenant_id]
            next_task = queue.popleft() if queue else None
            if next_task is None:
                self._running[tenant_id] -= 1
        if next_task is not None:
            self._pool.submit(self._run, tenant_id, next_task)

    def running_count(self, tenant_id: str) -> int:
        with self._lock:
            return self._running[tenant_id]

    def queued_count(self, tenant_id: str) -> int:
        with self._lock:
            return len(self._queues[tenant_id])

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
