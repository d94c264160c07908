"""
Persistent import jobs and their lifecycle.

Every status change goes through ``JobStateMachine.transition`` which checks
the explicit transition table below and notifies registered listeners.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy.orm import Session

from migration_engine.api.schemas.shared import ErrorHandlingMode, JobSummary
from migration_engine.core.config import settings
from migration_engine.core.exceptions import InvalidJobTransition, JobNotFound
from migration_engine.db.models import ImportJob
from migration_engine.utils.date import utcnow

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    CREATED = "CREATED"
    ANALYZING = "ANALYZING"
    MAPPING = "MAPPING"
    VALIDATING = "VALIDATING"
    READY = "READY"
    IMPORTING = "IMPORTING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    COMPLETED_WITH_ERRORS = "COMPLETED_WITH_ERRORS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    ROLLED_BACK = "ROLLED_BACK"


S = JobStatus

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    S.CREATED: frozenset({S.ANALYZING, S.CANCELLED}),
    S.ANALYZING: frozenset({S.MAPPING, S.CREATED, S.FAILED, S.CANCELLED}),
    S.MAPPING: frozenset({S.MAPPING, S.ANALYZING, S.VALIDATING, S.CANCELLED}),
    S.VALIDATING: frozenset({S.VALIDATING, S.READY, S.MAPPING, S.ANALYZING, S.FAILED, S.CANCELLED}),
    S.READY: frozenset({S.IMPORTING, S.VALIDATING, S.MAPPING, S.ANALYZING, S.CANCELLED}),
    S.IMPORTING: frozenset({S.PAUSED, S.COMPLETED, S.COMPLETED_WITH_ERRORS, S.FAILED, S.CANCELLED}),
    S.PAUSED: frozenset({S.IMPORTING, S.CANCELLED}),
    S.COMPLETED: frozenset({S.IMPORTING, S.ROLLED_BACK}),
    S.COMPLETED_WITH_ERRORS: frozenset({S.IMPORTING, S.ROLLED_BACK}),
    S.FAILED: frozenset({S.IMPORTING, S.ROLLED_BACK}),
    S.CANCELLED: frozenset({S.ROLLED_BACK}),
    S.ROLLED_BACK: frozenset({S.IMPORTING}),
}

PRE_IMPORT_STATES = frozenset({S.CREATED, S.ANALYZING, S.MAPPING, S.VALIDATING, S.READY})
FINISHED_STATES = frozenset({S.COMPLETED, S.COMPLETED_WITH_ERRORS, S.FAILED, S.CANCELLED, S.ROLLED_BACK})
ROLLBACK_ELIGIBLE_STATES = frozenset({S.COMPLETED, S.COMPLETED_WITH_ERRORS, S.FAILED, S.CANCELLED, S.ROLLED_BACK})
EXECUTABLE_STATES = frozenset({S.READY, S.COMPLETED, S.COMPLETED_WITH_ERRORS, S.FAILED, S.ROLLED_BACK})


@dataclass(frozen=True)
class TransitionEvent:
    job_id: str
    tenant_id: str
    from_status: JobStatus
    to_status: JobStatus
    occurred_at: datetime
    error_message: Optional[str] = None


TransitionListener = Callable[[TransitionEvent], None]


class JobStateMachine:
    """
    Validates and applies job status changes.

    Listeners register for one target status (or every transition with
    ``None``) and are called after the new status is flushed.
    """

    def __init__(self):
        self._listeners: List[Tuple[Optional[JobStatus], TransitionListener]] = []
        self._lock = threading.Lock()

    def register_transition_listener(self, listener: TransitionListener, to_status: Optional[JobStatus] = None) -> None:
        with self._lock:
            self._listeners.append((to_status, listener))

    def can_transition(self, current: JobStatus, target: JobStatus) -> bool:
        return target in ALLOWED_TRANSITIONS.get(current, frozenset())

    def transition(
        self,
        db: Session,
        job: ImportJob,
        target: JobStatus,
        *,
        error_message: Optional[str] = None,
    ) -> TransitionEvent:
        """
        Raises:
            InvalidJobTransition: the transition is not in the table
        """
        current = JobStatus(job.status)
        if not self.can_transition(current, target):
            raise InvalidJobTransition(job.id, current.value, target.value)

        now = utcnow()
        job.status = target.value
        job.updated_at = now
        if target == S.IMPORTING and current not in (S.PAUSED,):
            job.started_at = now
            job.completed_at = None
            job.error_message = None
        if target in FINISHED_STATES:
            job.completed_at = now
        if error_message is not None:
            job.error_message = error_message
        db.flush()

        event = TransitionEvent(
            job_id=job.id,
            tenant_id=job.tenant_id,
            from_status=current,
            to_status=target,
            occurred_at=now,
            error_message=error_message,
        )
        if current != target:
            logger.info(f"Job {job.id}: {current.value} -> {target.value}")
        self._notify(event)
        return event

    def _notify(self, event: TransitionEvent) -> None:
        with self._lock:
            listeners = [listener for status, listener in self._listeners if status in (None, event.to_status)]
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Transition listener failed for job {event.job_id} -> {event.to_status.value}")


def create_import_job(
    db: Session,
    *,
    tenant_id: str,
    source_system: str,
    target_entity_type: str,
    error_handling: ErrorHandlingMode = ErrorHandlingMode.SKIP_AND_CONTINUE,
    batch_size: Optional[int] = None,
    dry_run: bool = False,
    incremental: bool = False,
) -> ImportJob:
    job = ImportJob(
        tenant_id=tenant_id,
        source_system=source_system,
        target_entity_type=target_entity_type,
        status=JobStatus.CREATED.value,
        error_handling=ErrorHandlingMode(error_handling).value,
        batch_size=batch_size or settings.default_batch_size,
        dry_run=dry_run,
        incremental=incremental,
        committed_batches=[],
    )
    db.add(job)
    db.flush()
    logger.info(f"Created import job {job.id} ({source_system} -> {target_entity_type}) for tenant {tenant_id}")
    return job


def get_import_job(db: Session, tenant_id: str, job_id: str, *, for_update: bool = False) -> ImportJob:
    """
    Raises:
        JobNotFound: no job with that id exists for the tenant
    """
    query = db.query(ImportJob).filter(ImportJob.id == job_id, ImportJob.tenant_id == tenant_id)
    if for_update:
        query = query.with_for_update()
    job = query.first()
    if job is None:
        raise JobNotFound(job_id)
    return job


def list_import_jobs(
    db: Session,
    tenant_id: str,
    *,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[ImportJob], int]:
    query = db.query(ImportJob).filter(ImportJob.tenant_id == tenant_id)
    if status:
        query = query.filter(ImportJob.status == status)
    total = query.count()
    jobs = query.order_by(ImportJob.created_at.desc()).offset(offset).limit(limit).all()
    return jobs, total


def job_summary(job: ImportJob) -> JobSummary:
    return JobSummary(
        id=job.id,
        tenant_id=job.tenant_id,
        status=job.status,
        source_system=job.source_system,
        target_entity_type=job.target_entity_type,
        error_handling=job.error_handling,
        batch_size=job.batch_size,
        dry_run=job.dry_run,
        incremental=job.incremental,
        file_name=job.file_name,
        source_count=job.source_count or 0,
        imported_count=job.imported_count or 0,
        updated_count=job.updated_count or 0,
        skipped_count=job.skipped_count or 0,
        failed_count=job.failed_count or 0,
        error_message=job.error_message,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )
