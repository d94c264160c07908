"""
Rollback of executed imports.

Rollback reverses a job's live ``ImportedRecord`` rows: created entities are
deleted, updated entities get their previous values back. Records run
children-first (highest dependency rank first) in batches, one transaction
per batch, and each batch marks its journal rows ``rolled_back_at`` inside
the same transaction.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from migration_engine.api.schemas.shared import RollbackCheck, RollbackConflict, RollbackResult, RollbackScope
from migration_engine.core.config import Settings, settings
from migration_engine.core.exceptions import BatchCommitFailed, RollbackBlocked, StoreTimeout
from migration_engine.core.logging_config import job_log_context
from migration_engine.db.models import ImportedRecord, ImportJob, RestorePoint
from migration_engine.db.session import session_scope
from migration_engine.domain.imports.jobs import ROLLBACK_ELIGIBLE_STATES, JobStateMachine, JobStatus, get_import_job
from migration_engine.domain.imports.schema import SchemaProvider
from migration_engine.domain.imports.store import RecordStore, RevertOp
from migration_engine.utils.date import utcnow
from migration_engine.utils.locks import JobLockManager
from migration_engine.utils.timeouts import call_with_timeout

logger = logging.getLogger(__name__)

REVERSIBLE_ACTIONS = ("created", "updated")


@dataclass
class _JournalRow:
    id: str
    entity_type: str
    target_entity_id: str
    row_number: Optional[int]
    action: str
    content_hash: Optional[str]
    previous_values: Optional[Dict[str, Any]]
    created_at: datetime


def _latest_restore_point(db: Session, job_id: str) -> Optional[RestorePoint]:
    return (
        db.query(RestorePoint)
        .filter(RestorePoint.job_id == job_id)
        .order_by(RestorePoint.created_at.desc())
        .first()
    )


def _live_records_query(db: Session, job_id: str):
    return db.query(ImportedRecord).filter(
        ImportedRecord.job_id == job_id,
        ImportedRecord.action.in_(REVERSIBLE_ACTIONS),
        ImportedRecord.rolled_back_at.is_(None),
    )


def count_live_records(db: Session, job_id: str) -> int:
    return (
        db.query(func.count(ImportedRecord.id))
        .filter(
            ImportedRecord.job_id == job_id,
            ImportedRecord.action.in_(REVERSIBLE_ACTIONS),
            ImportedRecord.rolled_back_at.is_(None),
        )
        .scalar()
        or 0
    )


class RollbackManager:
    def __init__(
        self,
        schema_provider: SchemaProvider,
        record_store: RecordStore,
        session_factory=None,
        state_machine: Optional[JobStateMachine] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.schema_provider = schema_provider
        self.record_store = record_store
        self.session_factory = session_factory
        self.state_machine = state_machine or JobStateMachine()
        self.config = config or settings
        self.clock = clock

    def _store(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        return call_with_timeout(self.config.store_timeout_seconds, "Record store", fn, *args, **kwargs)

    def _blocked_reason(self, job: ImportJob, point: Optional[RestorePoint], now: datetime) -> Optional[str]:
        """Why a rollback cannot start; marks an overdue restore point EXPIRED."""
        if JobStatus(job.status) not in ROLLBACK_ELIGIBLE_STATES:
            return f"Job is {job.status}; only finished, failed or cancelled imports can be rolled back"
        if point is None:
            return "No restore point exists for this job"
        if point.status == "USED":
            return "The restore point was already used by a previous rollback"
        if point.status == "EXPIRED":
            return f"The restore point expired on {point.expires_at.isoformat()}"
        if point.expires_at <= now:
            point.status = "EXPIRED"
            logger.info(f"Restore point {point.id} for job {job.id} expired at {point.expires_at}")
            return f"The restore point expired on {point.expires_at.isoformat()}"
        return None

    def check(self, job_id: str, tenant_id: str) -> RollbackCheck:
        now = self.clock()
        with session_scope(self.session_factory) as db:
            job = get_import_job(db, tenant_id, job_id)
            point = _latest_restore_point(db, job.id)
            reason = self._blocked_reason(job, point, now)
            if reason is None and JobLockManager.is_locked(job_id):
                reason = "Another execution or rollback is running for this job"
            return RollbackCheck(
                can_rollback=reason is None,
                reason=reason,
                expires_at=point.expires_at if point is not None else None,
                restore_point_status=point.status if point is not None else None,
                record_count=count_live_records(db, job.id),
            )

    def ensure_can_rollback(self, job_id: str, tenant_id: str) -> None:
        """
        Raises:
            RollbackBlocked: with the reason reported by ``check``
        """
        result = self.check(job_id, tenant_id)
        if not result.can_rollback:
            raise RollbackBlocked(result.reason, suggested_fix="Re-import the affected records manually instead.")

    # -- selection --------------------------------------------------------------

    def _select(self, db: Session, job_id: str, scope: RollbackScope) -> List[_JournalRow]:
        query = _live_records_query(db, job_id)
        if scope.record_ids:
            query = query.filter(ImportedRecord.id.in_(scope.record_ids))
        if scope.row_numbers:
            query = query.filter(ImportedRecord.row_number.in_(scope.row_numbers))
        if scope.entity_types:
            query = query.filter(ImportedRecord.target_entity_type.in_(scope.entity_types))
        return [
            _JournalRow(
                id=row.id,
                entity_type=row.target_entity_type,
                target_entity_id=row.target_entity_id,
                row_number=row.row_number,
                action=row.action,
                content_hash=row.content_hash,
                previous_values=row.previous_values,
                created_at=row.created_at,
            )
            for row in query.all()
        ]

    def _order(self, rows: List[_JournalRow]) -> List[_JournalRow]:
        ranks: Dict[str, int] = {}
        for row in rows:
            if row.entity_type not in ranks:
                ranks[row.entity_type] = self.schema_provider.dependency_rank(row.entity_type)
        return sorted(
            rows,
            key=lambda r: (ranks[r.entity_type], r.row_number or 0, r.created_at),
            reverse=True,
        )

    def _find_conflicts(
        self, tenant_id: str, rows: List[_JournalRow]
    ) -> Tuple[List[RollbackConflict], set, int]:
        """
        Compare each target entity's current content with the hash written by
        its most recent journal row.

        Returns:
            (conflicts, ids of journal rows to exclude, number of targets already gone)
        """
        by_target: "OrderedDict[Tuple[str, str], List[_JournalRow]]" = OrderedDict()
        for row in rows:
            by_target.setdefault((row.entity_type, row.target_entity_id), []).append(row)

        conflicts: List[RollbackConflict] = []
        excluded = set()
        missing = 0
        for (entity_type, target_id), journal in by_target.items():
            latest = max(journal, key=lambda r: r.created_at)
            current = self._store(self.record_store.get, tenant_id, entity_type, target_id)
            if current is None:
                missing += 1
                continue
            if latest.content_hash and current.content_hash != latest.content_hash:
                excluded.update(r.id for r in journal)
                conflicts.append(
                    RollbackConflict(
                        imported_record_id=latest.id,
                        target_entity_id=target_id,
                        entity_type=entity_type,
                        row_number=latest.row_number,
                        message=f"{entity_type} '{target_id}' was modified after the import",
                    )
                )
        return conflicts, excluded, missing

    # -- rollback ---------------------------------------------------------------

    def rollback(
        self,
        job_id: str,
        tenant_id: str,
        scope: Optional[RollbackScope] = None,
        *,
        force: bool = False,
    ) -> RollbackResult:
        """
        Reverse a job's imported records, or the subset selected by ``scope``.

        Records modified after the import are left alone and reported as
        conflicts unless ``force`` is set.

        Raises:
            JobBusy: an execution or rollback holds the job lock
            RollbackBlocked: restore point missing, used or expired, the job is
                not finished, nothing matches the scope, or every selected
                record conflicts
            StoreTimeout: the record store stopped answering; the cause is
                kept in the job's ``error_message``
        """
        scope = scope or RollbackScope()
        with job_log_context(job_id, tenant_id), JobLockManager.acquire(job_id, purpose="rollback"):
            now = self.clock()
            with session_scope(self.session_factory) as db:
                job = get_import_job(db, tenant_id, job_id)
                point = _latest_restore_point(db, job.id)
                reason = self._blocked_reason(job, point, now)
                rows = self._select(db, job.id, scope) if reason is None else []
                point_id = point.id if point is not None else None
                batch_size = job.batch_size or self.config.default_batch_size
            if reason is not None:
                logger.warning(f"Rollback of job {job_id} refused: {reason}")
                raise RollbackBlocked(reason)
            if not rows and scope.is_partial:
                raise RollbackBlocked("No live imported records match the rollback scope")

            try:
                return self._rollback_rows(job_id, tenant_id, point_id, rows, batch_size, force)
            except (StoreTimeout, BatchCommitFailed) as exc:
                self._record_failure(job_id, tenant_id, point_id, exc)
                raise

    def _rollback_rows(
        self,
        job_id: str,
        tenant_id: str,
        point_id: str,
        rows: List[_JournalRow],
        batch_size: int,
        force: bool,
    ) -> RollbackResult:
        conflicts, excluded, missing = self._find_conflicts(tenant_id, rows)
        if conflicts and force:
            logger.warning(f"Rollback of job {job_id}: overriding {len(conflicts)} modified record(s)")
            excluded = set()
        elif conflicts:
            logger.warning(f"Rollback of job {job_id}: {len(conflicts)} record(s) modified after import, excluded")
            if len(excluded) == len(rows):
                raise RollbackBlocked(
                    "Every selected record was modified after the import",
                    conflicts=[c.model_dump() for c in conflicts],
                    suggested_fix="Review the conflicts and retry with force=true to override.",
                )

        ordered = self._order([r for r in rows if r.id not in excluded])
        deleted, restored = self._revert(tenant_id, ordered, batch_size)
        return self._finish(job_id, tenant_id, point_id, ordered, deleted, restored, missing, conflicts)

    def _record_failure(self, job_id: str, tenant_id: str, point_id: Optional[str], exc: Exception) -> None:
        """Keep the cause on the job; batches reverted before the failure stay reverted."""
        message = f"Rollback failed: {getattr(exc, 'message', str(exc))}"
        logger.error(f"Rollback of job {job_id} failed: {message}")
        with session_scope(self.session_factory) as db:
            job = get_import_job(db, tenant_id, job_id)
            job.error_message = message
            point = db.get(RestorePoint, point_id) if point_id else None
            if point is not None:
                point.record_count = count_live_records(db, job.id)

    def _revert(self, tenant_id: str, rows: List[_JournalRow], batch_size: int) -> Tuple[int, int]:
        batch_size = max(1, batch_size)
        deleted = restored = 0
        for start in range(0, len(rows), batch_size):
            batch = rows[start:start + batch_size]
            ops = [
                RevertOp("delete", r.entity_type, r.target_entity_id)
                if r.action == "created"
                else RevertOp("restore", r.entity_type, r.target_entity_id, r.previous_values)
                for r in batch
            ]
            ids = [r.id for r in batch]
            now = self.clock()

            def mark_rolled_back(db: Session, ids=ids, now=now) -> None:
                (
                    db.query(ImportedRecord)
                    .filter(ImportedRecord.id.in_(ids))
                    .update({ImportedRecord.rolled_back_at: now}, synchronize_session=False)
                )

            self._store(self.record_store.revert_batch, tenant_id, ops, mark_rolled_back)
            deleted += sum(1 for op in ops if op.action == "delete")
            restored += sum(1 for op in ops if op.action == "restore")
        return deleted, restored

    def _finish(
        self,
        job_id: str,
        tenant_id: str,
        point_id: str,
        rows: List[_JournalRow],
        deleted: int,
        restored: int,
        missing: int,
        conflicts: List[RollbackConflict],
    ) -> RollbackResult:
        now = self.clock()
        with session_scope(self.session_factory) as db:
            job = get_import_job(db, tenant_id, job_id)
            point = db.get(RestorePoint, point_id)
            remaining = count_live_records(db, job.id)
            if remaining == 0:
                point.status = "USED"
                point.used_at = now
                point.record_count = 0
                if job.status != JobStatus.ROLLED_BACK.value:
                    self.state_machine.transition(db, job, JobStatus.ROLLED_BACK)
            else:
                point.record_count = remaining
            logger.info(
                f"Rolled back {len(rows)} record(s) of job {job_id}: {deleted} deleted, {restored} restored, "
                f"{len(conflicts)} conflict(s), {remaining} remaining"
            )
            return RollbackResult(
                job_id=job_id,
                rolled_back_count=len(rows),
                deleted_count=deleted,
                restored_count=restored,
                already_missing_count=missing,
                conflicts=conflicts,
                remaining_count=remaining,
                restore_point_status=point.status,
                job_status=job.status,
            )
