"""
Import executor.

Streams transformed records into fixed-size batches and commits each batch as
one transaction through the ``RecordStore``. Batches run in parallel up to
``execute_max_workers``; their outcomes (counters, committed batch indexes,
import errors) are persisted from the coordinating thread only, so the job row
has a single writer.

Per record the idempotency key is ``(tenant, source system, source record id,
entity type)``. A record that already exists is skipped, or updated in place
for incremental jobs, and both are journaled as ``ImportedRecord`` rows in the
same transaction as the batch.
"""

import contextvars
import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from migration_engine.api.schemas.shared import (
    ErrorHandlingMode,
    ExecutionProgress,
    ExecutionResult,
    ImportErrorDetail,
    RecordPreview,
    Severity,
    ValidationIssue,
)
from migration_engine.core.config import Settings, settings
from migration_engine.core.exceptions import (
    BatchCommitFailed,
    InvalidJobTransition,
    JobBusy,
    MigrationError,
    RecordWriteError,
    StoreTimeout,
    ValidationBlocked,
)
from migration_engine.core.logging_config import job_log_context
from migration_engine.db.models import ImportedRecord, ImportErrorRecord, ImportJob, RestorePoint, ValidationIssueRecord
from migration_engine.db.session import session_scope
from migration_engine.domain.imports.analyzer import iter_records
from migration_engine.domain.imports.jobs import EXECUTABLE_STATES, JobStateMachine, JobStatus, get_import_job
from migration_engine.domain.imports.schema import SchemaProvider, TargetSchema
from migration_engine.domain.imports.store import RecordStore, StoredRecord, WriteOp
from migration_engine.domain.imports.transformer import TransformationEngine, engine_for_job
from migration_engine.domain.imports.validation import ValidationEngine, source_record_id
from migration_engine.integrations.storage import BlobStore, StorageError
from migration_engine.utils.date import utcnow
from migration_engine.utils.locks import JobLockManager
from migration_engine.utils.timeouts import call_with_timeout

logger = logging.getLogger(__name__)

TARGET_ID_NAMESPACE = uuid.UUID("7d0b5e0c-3f4e-5a53-9a6f-2f1d7c9b6e41")


def target_entity_id(tenant_id: str, source_system: str, entity_type: str, source_id: str) -> str:
    """Deterministic id of the entity created for a source record."""
    return str(uuid.uuid5(TARGET_ID_NAMESPACE, f"{tenant_id}:{source_system}:{entity_type}:{source_id}"))


def embedded_source_id(source_id: str, entity_type: str) -> str:
    return f"{source_id}:{entity_type}"


def count_unresolved_errors(db: Session, job_id: str) -> int:
    return (
        db.query(func.count(ValidationIssueRecord.id))
        .filter(
            ValidationIssueRecord.job_id == job_id,
            ValidationIssueRecord.severity == Severity.ERROR.value,
            ValidationIssueRecord.resolved.is_(False),
        )
        .scalar()
        or 0
    )


def ensure_executable(db: Session, job: ImportJob) -> None:
    """
    Raises:
        ValidationBlocked: error-severity validation issues are outstanding
        InvalidJobTransition: the job is not in a state that can be executed
    """
    errors = count_unresolved_errors(db, job.id)
    if errors:
        raise ValidationBlocked(errors)
    status = JobStatus(job.status)
    if status not in EXECUTABLE_STATES:
        raise InvalidJobTransition(job.id, status.value, JobStatus.IMPORTING.value)


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------

@dataclass
class PreparedRecord:
    row_number: int
    source_record_id: str
    source: Dict[str, Any]
    target: Dict[str, Any]
    applied: List[str] = field(default_factory=list)
    issues: List[ValidationIssue] = field(default_factory=list)
    duplicate_of: Optional[int] = None


@dataclass
class Batch:
    index: int
    records: List[PreparedRecord]


@dataclass
class JournalEntry:
    entity_type: str
    source_record_id: str
    target_entity_id: str
    action: str  # created / updated / skipped
    row_number: int
    content_hash: Optional[str] = None
    previous_values: Optional[Dict[str, Any]] = None


@dataclass
class RecordPlan:
    record: PreparedRecord
    action: str  # create / update / skip
    target_data: Dict[str, Any]
    ops: List[WriteOp] = field(default_factory=list)
    journal: List[JournalEntry] = field(default_factory=list)
    existing: Optional[Dict[str, Any]] = None


@dataclass
class BatchOutcome:
    index: int
    committed: bool = False
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[ImportErrorDetail] = field(default_factory=list)
    previews: List[RecordPreview] = field(default_factory=list)

    def count(self, action: str) -> None:
        if action == "create":
            self.created += 1
        elif action == "update":
            self.updated += 1
        else:
            self.skipped += 1

    def fail(self, record: Optional[PreparedRecord], error: Exception, attempts: int = 1) -> None:
        self.failed += 1 if record is not None else 0
        self.errors.append(
            ImportErrorDetail(
                row_number=record.row_number if record else None,
                source_record_id=record.source_record_id if record else None,
                batch_index=self.index,
                error_type=getattr(error, "code", type(error).__name__),
                message=getattr(error, "message", str(error)),
                attempts=attempts,
            )
        )


class JobControl:
    """Pause/cancel flags checked at batch boundaries."""

    def __init__(self):
        self.pause_requested = threading.Event()
        self.cancel_requested = threading.Event()


class ProgressTracker:
    def __init__(
        self,
        job_id: str,
        total: int,
        *,
        dry_run: bool = False,
        started_at: Optional[datetime] = None,
        created: int = 0,
        updated: int = 0,
        skipped: int = 0,
        failed: int = 0,
        batches_completed: int = 0,
        last_committed_batch: int = -1,
    ):
        self.job_id = job_id
        self.total = total
        self.dry_run = dry_run
        self.started_at = started_at
        self.status = JobStatus.IMPORTING.value
        self.created = created
        self.updated = updated
        self.skipped = skipped
        self.failed = failed
        self.batches_completed = batches_completed
        self.last_committed_batch = last_committed_batch
        self._baseline = created + updated + skipped + failed
        self._monotonic_start = time.monotonic()
        self._lock = threading.Lock()

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.skipped + self.failed

    def record(self, outcome: BatchOutcome, last_committed_batch: Optional[int] = None) -> None:
        with self._lock:
            self.created += outcome.created
            self.updated += outcome.updated
            self.skipped += outcome.skipped
            self.failed += outcome.failed
            if outcome.committed:
                self.batches_completed += 1
            if last_committed_batch is not None:
                self.last_committed_batch = last_committed_batch

    def eta_seconds(self) -> Optional[float]:
        done_this_run = self.processed - self._baseline
        remaining = max(self.total - self.processed, 0)
        if done_this_run <= 0:
            return None
        elapsed = time.monotonic() - self._monotonic_start
        return round(elapsed / done_this_run * remaining, 2)

    def snapshot(self) -> ExecutionProgress:
        with self._lock:
            return ExecutionProgress(
                job_id=self.job_id,
                status=self.status,
                dry_run=self.dry_run,
                total=self.total,
                processed=self.processed,
                succeeded=self.created + self.updated + self.skipped,
                created=self.created,
                updated=self.updated,
                skipped=self.skipped,
                failed=self.failed,
                batches_completed=self.batches_completed,
                last_committed_batch=self.last_committed_batch,
                eta_seconds=self.eta_seconds() if self.status == JobStatus.IMPORTING.value else 0.0,
                started_at=self.started_at,
            )


@dataclass
class RunContext:
    job_id: str
    tenant_id: str
    source_system: str
    entity_type: str
    schema: TargetSchema
    mode: ErrorHandlingMode
    batch_size: int
    incremental: bool
    dry_run: bool
    control: JobControl
    progress: ProgressTracker
    committed: Set[int] = field(default_factory=set)
    stored_errors: int = 0
    restore_point_id: Optional[str] = None
    restore_lock: threading.Lock = field(default_factory=threading.Lock)
    errors: List[ImportErrorDetail] = field(default_factory=list)
    previews: List[RecordPreview] = field(default_factory=list)
    preview_limit: Optional[int] = None
    failure: Optional[str] = None
    stopped_early: bool = False

    def fail(self, message: str) -> None:
        if self.failure is None:
            self.failure = message

    def should_stop(self) -> bool:
        return (
            self.failure is not None
            or self.control.cancel_requested.is_set()
            or self.control.pause_requested.is_set()
        )


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class ImportExecutor:
    """
    Runs the Execute stage of import jobs.

    ``start`` validates and moves a job to IMPORTING synchronously; ``run`` does
    the batch work and is meant to be scheduled in the background. Dry runs go
    through ``run(dry_run=True)`` directly and never change the job.
    """

    def __init__(
        self,
        schema_provider: SchemaProvider,
        record_store: RecordStore,
        blob_store: BlobStore,
        session_factory=None,
        state_machine: Optional[JobStateMachine] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.schema_provider = schema_provider
        self.record_store = record_store
        self.blob_store = blob_store
        self.session_factory = session_factory
        self.state_machine = state_machine or JobStateMachine()
        self.config = config or settings
        self.clock = clock
        self.sleep = sleep
        self._controls: Dict[str, JobControl] = {}
        self._progress: Dict[str, ProgressTracker] = {}
        self._registry_lock = threading.Lock()

    # -- collaborator calls with a timeout ------------------------------------

    def _call_with_timeout(self, what: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        return call_with_timeout(self.config.store_timeout_seconds, what, fn, *args, **kwargs)

    def _store(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        return self._call_with_timeout("Record store", fn, *args, **kwargs)

    # -- control ----------------------------------------------------------------

    def is_running(self, job_id: str) -> bool:
        with self._registry_lock:
            return job_id in self._controls

    def request_pause(self, job_id: str) -> bool:
        with self._registry_lock:
            control = self._controls.get(job_id)
        if control is None:
            return False
        control.pause_requested.set()
        logger.info(f"Pause requested for job {job_id}; stopping after in-flight batches")
        return True

    def request_cancel(self, job_id: str) -> bool:
        with self._registry_lock:
            control = self._controls.get(job_id)
        if control is None:
            return False
        control.cancel_requested.set()
        logger.info(f"Cancel requested for job {job_id}; stopping after in-flight batches")
        return True

    def get_progress(self, job_id: str) -> Optional[ExecutionProgress]:
        with self._registry_lock:
            tracker = self._progress.get(job_id)
        return tracker.snapshot() if tracker is not None else None

    # -- start ------------------------------------------------------------------

    def start(self, job_id: str, tenant_id: str, *, resume: bool = False) -> ExecutionProgress:
        """
        Move a job to IMPORTING and register its control flags.

        A fresh run resets the job's counters and cursor; a resume keeps them
        so already committed batches are skipped.

        Raises:
            JobBusy: an execution or rollback holds the job lock
            InvalidJobTransition: the job cannot be (re)started from its state
            ValidationBlocked: unresolved error-severity issues exist
        """
        if JobLockManager.is_locked(job_id) or self.is_running(job_id):
            raise JobBusy(f"Job '{job_id}' is already executing or rolling back")

        with session_scope(self.session_factory) as db:
            job = get_import_job(db, tenant_id, job_id)
            if resume:
                if job.status != JobStatus.PAUSED.value:
                    raise InvalidJobTransition(job.id, job.status, JobStatus.IMPORTING.value)
            else:
                ensure_executable(db, job)
                job.imported_count = 0
                job.updated_count = 0
                job.skipped_count = 0
                job.failed_count = 0
                job.committed_batches = []
                job.cursor_batch_index = -1
                db.query(ImportErrorRecord).filter(ImportErrorRecord.job_id == job.id).delete()
            self.state_machine.transition(db, job, JobStatus.IMPORTING)
            tracker = ProgressTracker(
                job.id,
                job.source_count or 0,
                started_at=job.started_at,
                created=job.imported_count,
                updated=job.updated_count,
                skipped=job.skipped_count,
                failed=job.failed_count,
                batches_completed=len(job.committed_batches or []),
                last_committed_batch=job.cursor_batch_index,
            )

        with self._registry_lock:
            self._controls[job_id] = JobControl()
            self._progress[job_id] = tracker
        return tracker.snapshot()

    # -- run --------------------------------------------------------------------

    def run(
        self,
        job_id: str,
        tenant_id: str,
        *,
        dry_run: bool = False,
        preview_limit: Optional[int] = None,
    ) -> ExecutionResult:
        """
        Execute (or dry-run) a job's import.

        Returns:
            ExecutionResult with final progress, stored import errors and, for
            dry runs, per-record before/after previews
        """
        with job_log_context(job_id, tenant_id):
            if dry_run:
                return self._dry_run(job_id, tenant_id, preview_limit)

            with self._registry_lock:
                control = self._controls.get(job_id)
            if control is None:
                raise InvalidJobTransition(job_id, "not started", JobStatus.IMPORTING.value)

            try:
                with JobLockManager.acquire(job_id, purpose="execute", timeout=self.config.store_timeout_seconds):
                    return self._execute(job_id, tenant_id, control)
            except JobBusy as exc:
                return self._finish(job_id, tenant_id, None, failure=exc.message)
            finally:
                with self._registry_lock:
                    self._controls.pop(job_id, None)
                    self._progress.pop(job_id, None)

    def _load_context(self, db: Session, job: ImportJob, control: JobControl, tracker: ProgressTracker,
                      dry_run: bool) -> RunContext:
        schema = self.schema_provider.get_schema(job.target_entity_type)
        stored_errors = (
            db.query(func.count(ImportErrorRecord.id)).filter(ImportErrorRecord.job_id == job.id).scalar() or 0
        )
        return RunContext(
            job_id=job.id,
            tenant_id=job.tenant_id,
            source_system=job.source_system,
            entity_type=job.target_entity_type,
            schema=schema,
            mode=ErrorHandlingMode(job.error_handling),
            batch_size=job.batch_size or self.config.default_batch_size,
            incremental=bool(job.incremental),
            dry_run=dry_run,
            control=control,
            progress=tracker,
            committed=set() if dry_run else set(job.committed_batches or []),
            stored_errors=stored_errors,
        )

    def _execute(self, job_id: str, tenant_id: str, control: JobControl) -> ExecutionResult:
        with self._registry_lock:
            tracker = self._progress.get(job_id)
        with session_scope(self.session_factory) as db:
            job = get_import_job(db, tenant_id, job_id)
            if job.status != JobStatus.IMPORTING.value:
                logger.warning(f"Job {job_id} is {job.status}, not IMPORTING; nothing to run")
                return self._result(job, tracker, [], [])
            if tracker is None:
                tracker = ProgressTracker(job_id, job.source_count or 0, started_at=job.started_at)

        ctx: Optional[RunContext] = None
        failure: Optional[str] = None
        try:
            with session_scope(self.session_factory) as db:
                job = get_import_job(db, tenant_id, job_id)
                ctx = self._load_context(db, job, control, tracker, dry_run=False)
                engine = engine_for_job(db, job, ctx.schema, self.clock)
                file_key, encoding, file_name = job.file_key, job.encoding, job.file_name

            logger.info(
                f"Executing job {job_id}: mode={ctx.mode.value} batch_size={ctx.batch_size} "
                f"incremental={ctx.incremental} resume_from={len(ctx.committed)} committed batches"
            )
            with self._call_with_timeout("Blob store", self.blob_store.open, file_key) as handle:
                records = iter_records(handle, encoding, file_name)
                self._run_batches(ctx, self._iter_batches(ctx, engine, records))
        except (MigrationError, StorageError) as exc:
            failure = getattr(exc, "message", str(exc))
        except Exception as exc:
            logger.exception(f"Unexpected failure while executing job {job_id}")
            failure = f"Unexpected error: {exc}"
        return self._finish(job_id, tenant_id, ctx, failure=failure)

    def _dry_run(self, job_id: str, tenant_id: str, preview_limit: Optional[int]) -> ExecutionResult:
        with session_scope(self.session_factory) as db:
            job = get_import_job(db, tenant_id, job_id)
            ensure_executable(db, job)
            tracker = ProgressTracker(job.id, job.source_count or 0, dry_run=True, started_at=self.clock())
            tracker.status = job.status
            ctx = self._load_context(db, job, JobControl(), tracker, dry_run=True)
            ctx.preview_limit = preview_limit
            engine = engine_for_job(db, job, ctx.schema, self.clock)
            file_key, encoding, file_name = job.file_key, job.encoding, job.file_name

        with self._call_with_timeout("Blob store", self.blob_store.open, file_key) as handle:
            records = iter_records(handle, encoding, file_name)
            self._run_batches(ctx, self._iter_batches(ctx, engine, records))
        if ctx.failure:
            logger.warning(f"Dry run for job {job_id} stopped: {ctx.failure}")

        previews = sorted(ctx.previews, key=lambda preview: preview.row_number)
        if preview_limit is not None:
            previews = previews[:preview_limit]
        logger.info(
            f"Dry run for job {job_id}: {tracker.created} to create, {tracker.updated} to update, "
            f"{tracker.skipped} to skip"
        )
        with session_scope(self.session_factory) as db:
            job = get_import_job(db, tenant_id, job_id)
            return self._result(job, tracker, ctx.errors, previews, error_message=ctx.failure)

    # -- streaming ------------------------------------------------------------

    def _iter_batches(
        self, ctx: RunContext, engine: TransformationEngine, records: Iterator[Tuple[int, Dict[str, Any]]]
    ) -> Iterator[Batch]:
        validator = ValidationEngine(ctx.schema, self.schema_provider, ctx.incremental) if ctx.dry_run else None
        first_rows: Dict[str, int] = {}
        current: List[PreparedRecord] = []
        index = 0
        for row_number, record in records:
            result = engine.transform(record, row_number)
            record_id = source_record_id(ctx.schema, result.target, row_number)
            prepared = PreparedRecord(
                row_number=row_number,
                source_record_id=record_id,
                source=result.source,
                target=result.target,
                applied=result.applied,
                issues=validator.check(result) if validator is not None else result.issues,
                duplicate_of=first_rows.get(record_id),
            )
            first_rows.setdefault(record_id, row_number)
            current.append(prepared)
            if len(current) >= ctx.batch_size:
                yield Batch(index, current)
                index += 1
                current = []
        if current:
            yield Batch(index, current)

    def _run_batches(self, ctx: RunContext, batches: Iterator[Batch]) -> None:
        workers = max(1, self.config.execute_max_workers)
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"import-batch-{ctx.job_id[:8]}")
        in_flight = set()
        try:
            for batch in batches:
                if batch.index in ctx.committed:
                    continue
                while len(in_flight) >= workers:
                    done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                    self._collect(ctx, done)
                if ctx.should_stop():
                    ctx.stopped_early = True
                    break
                in_flight.add(pool.submit(contextvars.copy_context().run, self._process_batch, ctx, batch))
        finally:
            done, _ = wait(in_flight)
            self._collect(ctx, done)
            pool.shutdown(wait=True)

    def _collect(self, ctx: RunContext, done) -> None:
        for future in done:
            exc = future.exception()
            if exc is not None:
                logger.error(f"Batch worker for job {ctx.job_id} raised {type(exc).__name__}: {exc}")
                ctx.fail(getattr(exc, "message", str(exc)))
                continue
            outcome: BatchOutcome = future.result()
            if ctx.dry_run:
                ctx.progress.record(outcome)
                ctx.errors.extend(outcome.errors)
                ctx.previews.extend(outcome.previews)
            else:
                self._persist_outcome(ctx, outcome)

    # -- planning -------------------------------------------------------------

    def _decide(
        self,
        ctx: RunContext,
        entity_type: str,
        source_id: str,
        data: Dict[str, Any],
        existing: Optional[StoredRecord],
        row_number: int,
        plan: RecordPlan,
    ) -> Tuple[str, str]:
        if existing is None:
            target_id = target_entity_id(ctx.tenant_id, ctx.source_system, entity_type, source_id)
            op = WriteOp("create", entity_type, ctx.source_system, source_id, target_id, data, row_number)
            plan.ops.append(op)
            plan.journal.append(JournalEntry(entity_type, source_id, target_id, "created", row_number,
                                             self.record_store.content_hash(data)))
            return "create", target_id

        if ctx.incremental and self.record_store.content_hash(data) != existing.content_hash:
            op = WriteOp("update", entity_type, ctx.source_system, source_id, existing.id, data, row_number,
                         previous=existing.data)
            plan.ops.append(op)
            plan.journal.append(JournalEntry(entity_type, source_id, existing.id, "updated", row_number,
                                             self.record_store.content_hash(data), existing.data))
            return "update", existing.id

        plan.journal.append(JournalEntry(entity_type, source_id, existing.id, "skipped", row_number,
                                         existing.content_hash))
        return "skip", existing.id

    def _plan(self, ctx: RunContext, records: List[PreparedRecord]) -> List[RecordPlan]:
        live = [r for r in records if r.duplicate_of is None]
        existing_main = self._store(
            self.record_store.find_by_source_keys,
            ctx.tenant_id, ctx.source_system, ctx.entity_type, [r.source_record_id for r in live],
        )
        existing_embedded: Dict[str, Dict[str, StoredRecord]] = {}
        for embedded in ctx.schema.embedded:
            existing_embedded[embedded.entity_type] = self._store(
                self.record_store.find_by_source_keys,
                ctx.tenant_id, ctx.source_system, embedded.entity_type,
                [embedded_source_id(r.source_record_id, embedded.entity_type) for r in live],
            )

        plans = []
        for record in records:
            if record.duplicate_of is not None:
                plans.append(RecordPlan(record, "skip", dict(record.target)))
                continue

            data = dict(record.target)
            plan = RecordPlan(record, "skip", data)
            for embedded in ctx.schema.embedded:
                values = {name: data.pop(target_field, None) for name, target_field in embedded.fields.items()}
                if all(value is None for value in values.values()):
                    continue
                key = embedded_source_id(record.source_record_id, embedded.entity_type)
                _, parent_id = self._decide(
                    ctx, embedded.entity_type, key, values,
                    existing_embedded[embedded.entity_type].get(key), record.row_number, plan,
                )
                data[embedded.link_field] = parent_id

            existing = existing_main.get(record.source_record_id)
            plan.action, _ = self._decide(
                ctx, ctx.entity_type, record.source_record_id, data, existing, record.row_number, plan,
            )
            plan.existing = existing.data if existing is not None else None
            plans.append(plan)
        return plans

    # -- committing -----------------------------------------------------------

    def _ensure_restore_point(self, ctx: RunContext) -> None:
        with ctx.restore_lock:
            if ctx.restore_point_id is not None:
                return
            now = self.clock()
            with session_scope(self.session_factory) as db:
                point = (
                    db.query(RestorePoint)
                    .filter(RestorePoint.job_id == ctx.job_id, RestorePoint.status == "ACTIVE")
                    .order_by(RestorePoint.created_at.desc())
                    .first()
                )
                if point is not None and point.expires_at <= now:
                    point.status = "EXPIRED"
                    point = None
                if point is None:
                    point = RestorePoint(
                        job_id=ctx.job_id,
                        tenant_id=ctx.tenant_id,
                        created_at=now,
                        expires_at=now + timedelta(days=self.config.rollback_retention_days),
                        entity_types=[ctx.entity_type] + [e.entity_type for e in ctx.schema.embedded],
                        status="ACTIVE",
                    )
                    db.add(point)
                    db.flush()
                    logger.info(f"Created restore point {point.id} for job {ctx.job_id} (expires {point.expires_at})")
                ctx.restore_point_id = point.id

    def _journal(self, ctx: RunContext, batch_index: int, plans: List[RecordPlan]) -> Callable[[Session], None]:
        now = self.clock()

        def write(db: Session) -> None:
            for plan in plans:
                for entry in plan.journal:
                    if entry.action == "skipped":
                        already_linked = (
                            db.query(ImportedRecord.id)
                            .filter(
                                ImportedRecord.job_id == ctx.job_id,
                                ImportedRecord.target_entity_type == entry.entity_type,
                                ImportedRecord.source_record_id == entry.source_record_id,
                                ImportedRecord.rolled_back_at.is_(None),
                            )
                            .first()
                        )
                        if already_linked is not None:
                            continue
                    db.add(
                        ImportedRecord(
                            job_id=ctx.job_id,
                            tenant_id=ctx.tenant_id,
                            source_system=ctx.source_system,
                            source_record_id=entry.source_record_id,
                            target_entity_type=entry.entity_type,
                            target_entity_id=entry.target_entity_id,
                            row_number=entry.row_number,
                            batch_index=batch_index,
                            action=entry.action,
                            was_update=entry.action == "updated",
                            content_hash=entry.content_hash,
                            previous_values=entry.previous_values,
                            created_at=now,
                        )
                    )
            db.flush()

        return write

    def _commit(self, ctx: RunContext, batch_index: int, records: List[PreparedRecord]) -> List[RecordPlan]:
        """
        Write records as one transaction.

        Raises:
            _RecordRejected: one operation failed; nothing was committed
            BatchCommitFailed: the transaction itself failed
            StoreTimeout: the store did not answer in time
        """
        plans = self._plan(ctx, records)
        ops: List[WriteOp] = []
        owners: List[PreparedRecord] = []
        for plan in plans:
            ops.extend(plan.ops)
            owners.extend([plan.record] * len(plan.ops))
        self._ensure_restore_point(ctx)
        try:
            self._store(self.record_store.write_batch, ctx.tenant_id, ops, self._journal(ctx, batch_index, plans))
        except RecordWriteError as exc:
            raise _RecordRejected(owners[exc.index], exc) from exc
        return plans

    def _process_batch(self, ctx: RunContext, batch: Batch) -> BatchOutcome:
        outcome = BatchOutcome(index=batch.index)
        if ctx.dry_run:
            self._preview_batch(ctx, batch, outcome)
            return outcome

        pending = list(batch.records)
        to_retry: List[tuple] = []
        commit_attempt = 0
        try:
            while pending:
                try:
                    for plan in self._commit(ctx, batch.index, pending):
                        outcome.count(plan.action)
                    pending = []
                except _RecordRejected as rejected:
                    pending.remove(rejected.record)
                    logger.warning(
                        f"Job {ctx.job_id} batch {batch.index}: row {rejected.record.row_number} rejected: "
                        f"{rejected.error.message}"
                    )
                    if ctx.mode == ErrorHandlingMode.STOP_ON_ERROR:
                        outcome.fail(rejected.record, rejected.error)
                        ctx.fail(f"Row {rejected.record.row_number}: {rejected.error.message}")
                        return outcome
                    if ctx.mode == ErrorHandlingMode.RETRY_THEN_SKIP:
                        to_retry.append((rejected.record, rejected.error))
                    else:
                        outcome.fail(rejected.record, rejected.error)
                except BatchCommitFailed as exc:
                    exc.batch_index = batch.index
                    commit_attempt += 1
                    logger.warning(f"Job {ctx.job_id} batch {batch.index} commit failed: {exc.message}")
                    if ctx.mode == ErrorHandlingMode.STOP_ON_ERROR:
                        outcome.fail(None, exc)
                        ctx.fail(f"Batch {batch.index}: {exc.message}")
                        return outcome
                    if ctx.mode == ErrorHandlingMode.RETRY_THEN_SKIP and commit_attempt <= self.config.retry_max_attempts:
                        self._backoff(commit_attempt)
                        continue
                    outcome.failed += len(pending)
                    outcome.fail(None, exc, attempts=commit_attempt)
                    pending = []

            for record, error in to_retry:
                self._retry_record(ctx, batch.index, record, error, outcome)
        except StoreTimeout as exc:
            ctx.fail(exc.message)
            return outcome

        outcome.committed = True
        return outcome

    def _backoff(self, attempt: int) -> None:
        self.sleep(self.config.retry_backoff_seconds * (2 ** (attempt - 1)))

    def _retry_record(self, ctx: RunContext, batch_index: int, record: PreparedRecord, error: MigrationError,
                      outcome: BatchOutcome) -> None:
        retries = self.config.retry_max_attempts
        for attempt in range(1, retries + 1):
            self._backoff(attempt)
            try:
                for plan in self._commit(ctx, batch_index, [record]):
                    outcome.count(plan.action)
                logger.info(f"Job {ctx.job_id}: row {record.row_number} imported on retry {attempt}")
                return
            except _RecordRejected as rejected:
                error = rejected.error
            except BatchCommitFailed as exc:
                error = exc
        logger.warning(f"Job {ctx.job_id}: row {record.row_number} skipped after {retries} retries")
        outcome.fail(record, error, attempts=retries + 1)

    def _preview_batch(self, ctx: RunContext, batch: Batch, outcome: BatchOutcome) -> None:
        try:
            plans = self._plan(ctx, batch.records)
        except StoreTimeout as exc:
            ctx.fail(exc.message)
            return
        for plan in plans:
            outcome.count(plan.action)
            limit = ctx.preview_limit
            if limit is not None and len(outcome.previews) >= limit:
                continue
            outcome.previews.append(
                RecordPreview(
                    row_number=plan.record.row_number,
                    source=plan.record.source,
                    target=plan.target_data,
                    transformations_applied=plan.record.applied,
                    issues=plan.record.issues,
                    action=plan.action,
                    existing=plan.existing,
                )
            )

    # -- persistence of outcomes ----------------------------------------------

    def _persist_outcome(self, ctx: RunContext, outcome: BatchOutcome) -> None:
        with session_scope(self.session_factory) as db:
            job = db.get(ImportJob, ctx.job_id)
            job.imported_count = (job.imported_count or 0) + outcome.created
            job.updated_count = (job.updated_count or 0) + outcome.updated
            job.skipped_count = (job.skipped_count or 0) + outcome.skipped
            job.failed_count = (job.failed_count or 0) + outcome.failed
            if outcome.committed:
                ctx.committed.add(outcome.index)
                job.committed_batches = sorted(ctx.committed)
                cursor = -1
                while cursor + 1 in ctx.committed:
                    cursor += 1
                job.cursor_batch_index = cursor

            for error in outcome.errors:
                ctx.errors.append(error)
                if ctx.stored_errors >= self.config.max_stored_import_errors:
                    continue
                db.add(
                    ImportErrorRecord(
                        job_id=ctx.job_id,
                        tenant_id=ctx.tenant_id,
                        batch_index=error.batch_index,
                        row_number=error.row_number,
                        source_record_id=error.source_record_id,
                        error_type=error.error_type,
                        message=error.message,
                        attempts=error.attempts,
                    )
                )
                ctx.stored_errors += 1
            cursor_index = job.cursor_batch_index
        ctx.progress.record(outcome, cursor_index)
        logger.debug(
            f"Job {ctx.job_id} batch {outcome.index}: +{outcome.created} created, +{outcome.updated} updated, "
            f"+{outcome.skipped} skipped, +{outcome.failed} failed"
        )

    # -- finalization -----------------------------------------------------------

    def _finish(self, job_id: str, tenant_id: str, ctx: Optional[RunContext], failure: Optional[str] = None) -> ExecutionResult:
        failure = failure or (ctx.failure if ctx else None)
        with session_scope(self.session_factory) as db:
            job = get_import_job(db, tenant_id, job_id)
            control = ctx.control if ctx else None
            if failure:
                target = JobStatus.FAILED
            elif ctx and ctx.stopped_early and control.cancel_requested.is_set():
                target = JobStatus.CANCELLED
            elif ctx and ctx.stopped_early and control.pause_requested.is_set():
                target = JobStatus.PAUSED
            elif (job.failed_count or 0) > 0:
                target = JobStatus.COMPLETED_WITH_ERRORS
            else:
                target = JobStatus.COMPLETED
            self.state_machine.transition(db, job, target, error_message=failure)

            live_count = (
                db.query(func.count(ImportedRecord.id))
                .filter(
                    ImportedRecord.job_id == job_id,
                    ImportedRecord.action.in_(("created", "updated")),
                    ImportedRecord.rolled_back_at.is_(None),
                )
                .scalar()
                or 0
            )
            point = (
                db.query(RestorePoint)
                .filter(RestorePoint.job_id == job_id, RestorePoint.status == "ACTIVE")
                .order_by(RestorePoint.created_at.desc())
                .first()
            )
            if point is not None:
                point.record_count = live_count

            tracker = ctx.progress if ctx else self._progress.get(job_id)
            if tracker is not None:
                tracker.status = target.value
            if failure:
                logger.error(f"Job {job_id} failed: {failure}")
            else:
                logger.info(
                    f"Job {job_id} finished as {target.value}: {job.imported_count} created, "
                    f"{job.updated_count} updated, {job.skipped_count} skipped, {job.failed_count} failed"
                )
            partial = target in (JobStatus.CANCELLED, JobStatus.FAILED) and live_count > 0
            return self._result(
                job, tracker, ctx.errors if ctx else [], [], partial_rollback_available=partial, error_message=failure
            )

    def _result(
        self,
        job: ImportJob,
        tracker: Optional[ProgressTracker],
        errors: List[ImportErrorDetail],
        previews: List[RecordPreview],
        *,
        partial_rollback_available: bool = False,
        error_message: Optional[str] = None,
    ) -> ExecutionResult:
        progress = tracker.snapshot() if tracker is not None else progress_from_job(job)
        return ExecutionResult(
            job_id=job.id,
            status=job.status,
            dry_run=progress.dry_run,
            progress=progress,
            previews=previews,
            errors=errors[: self.config.max_stored_import_errors],
            partial_rollback_available=partial_rollback_available,
            error_message=error_message or job.error_message,
        )


class _RecordRejected(Exception):
    def __init__(self, record: PreparedRecord, error: RecordWriteError):
        self.record = record
        self.error = error
        super().__init__(error.message)


def progress_from_job(job: ImportJob) -> ExecutionProgress:
    """Progress of a job that is not executing in this process."""
    created, updated = job.imported_count or 0, job.updated_count or 0
    skipped, failed = job.skipped_count or 0, job.failed_count or 0
    return ExecutionProgress(
        job_id=job.id,
        status=job.status,
        total=job.source_count or 0,
        processed=created + updated + skipped + failed,
        succeeded=created + updated + skipped,
        created=created,
        updated=updated,
        skipped=skipped,
        failed=failed,
        batches_completed=len(job.committed_batches or []),
        last_committed_batch=job.cursor_batch_index if job.cursor_batch_index is not None else -1,
        started_at=job.started_at,
    )
