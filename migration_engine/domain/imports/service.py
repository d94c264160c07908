"""
Job-oriented facade over the import pipeline.

``ImportService`` is transport independent: the HTTP routers call it, and so
can a worker or a test. Every method takes the tenant id first and only ever
sees that tenant's jobs. Execute and rollback return an ``ExecutionHandle``
immediately; the work runs on the per-tenant scheduler.
"""

import logging
import time
from collections import defaultdict
from datetime import datetime
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from migration_engine.api.schemas.shared import (
    AnalysisResult,
    ColumnProfile,
    ErrorDigestEntry,
    ErrorHandlingMode,
    ExecutionProgress,
    FieldMapping,
    ImportReport,
    IssueCategory,
    JobOptions,
    JobSummary,
    MappingEntry,
    RecordPreview,
    RollbackCheck,
    RollbackScope,
    Severity,
    TemplateSummary,
    UnmappedAction,
    ValidationIssue,
    ValidationReport,
    ValueMap,
)
from migration_engine.core.config import Settings, settings
from migration_engine.core.exceptions import InvalidJobTransition, InvalidMapping
from migration_engine.db.models import ImportErrorRecord, ImportJob, RestorePoint, ValidationIssueRecord
from migration_engine.db.session import session_scope
from migration_engine.domain.imports import mapping as mapping_engine
from migration_engine.domain.imports.analyzer import RecordReader, analyze_file, iter_records
from migration_engine.domain.imports.executor import (
    ImportExecutor,
    count_unresolved_errors,
    ensure_executable,
    progress_from_job,
)
from migration_engine.domain.imports.jobs import (
    EXECUTABLE_STATES,
    JobStateMachine,
    JobStatus,
    create_import_job,
    get_import_job,
    job_summary,
    list_import_jobs,
)
from migration_engine.domain.imports.rollback import RollbackManager
from migration_engine.domain.imports.rules import delete_rule, dump_rule, load_rules, parse_rule, store_rule
from migration_engine.domain.imports.scheduler import ExecutionHandle, TenantJobScheduler
from migration_engine.domain.imports.schema import SchemaProvider, TargetSchema
from migration_engine.domain.imports.scoring import FieldScorer, HeuristicScorer
from migration_engine.domain.imports.store import RecordStore, SqlRecordStore
from migration_engine.domain.imports.transformer import engine_for_job
from migration_engine.domain.imports.validation import ValidationEngine
from migration_engine.domain.imports.value_maps import load_value_maps, propose_value_map, store_value_map
from migration_engine.integrations.storage import BlobStore, get_blob_store
from migration_engine.utils.date import utcnow
from migration_engine.utils.timeouts import call_with_timeout

logger = logging.getLogger(__name__)

AUTO_DETECT_SOURCE = "auto"
DIGEST_SAMPLE_ROWS = 5


class ImportService:
    def __init__(
        self,
        schema_provider: SchemaProvider,
        record_store: Optional[RecordStore] = None,
        blob_store: Optional[BlobStore] = None,
        session_factory=None,
        scorer: Optional[FieldScorer] = None,
        clock: Callable[[], datetime] = utcnow,
        scheduler: Optional[TenantJobScheduler] = None,
        config: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.schema_provider = schema_provider
        self.session_factory = session_factory
        self.record_store = record_store or SqlRecordStore(session_factory)
        self.blob_store = blob_store or get_blob_store()
        self.scorer = scorer or HeuristicScorer()
        self.clock = clock
        self.config = config or settings
        self.scheduler = scheduler or TenantJobScheduler(self.config.max_concurrent_jobs_per_tenant)
        self.state_machine = JobStateMachine()
        self.executor = ImportExecutor(
            schema_provider,
            self.record_store,
            self.blob_store,
            session_factory=session_factory,
            state_machine=self.state_machine,
            config=self.config,
            clock=clock,
            sleep=sleep,
        )
        self.rollback_manager = RollbackManager(
            schema_provider,
            self.record_store,
            session_factory=session_factory,
            state_machine=self.state_machine,
            config=self.config,
            clock=clock,
        )

    # -- helpers ----------------------------------------------------------------

    def _session(self):
        return session_scope(self.session_factory)

    def _schema(self, entity_type: str) -> TargetSchema:
        try:
            return self.schema_provider.get_schema(entity_type)
        except KeyError:
            raise InvalidMapping(f"Unknown target entity type '{entity_type}'", value=entity_type)

    def _open_blob(self, key: str) -> BinaryIO:
        return call_with_timeout(self.config.store_timeout_seconds, "Blob store", self.blob_store.open, key)

    def _enter(self, db: Session, job: ImportJob, status: JobStatus) -> None:
        if job.status != status.value:
            self.state_machine.transition(db, job, status)

    def _reopen_mapping(self, db: Session, job: ImportJob) -> None:
        """Configuration changed after validation: the job has to be validated again."""
        if job.status in (JobStatus.VALIDATING.value, JobStatus.READY.value):
            self.state_machine.transition(db, job, JobStatus.MAPPING)
        elif job.status != JobStatus.MAPPING.value:
            raise InvalidJobTransition(job.id, job.status, JobStatus.MAPPING.value)

    @staticmethod
    def _profiles(job: ImportJob) -> List[ColumnProfile]:
        if not job.column_profiles:
            raise InvalidJobTransition(job.id, job.status, JobStatus.MAPPING.value)
        return [ColumnProfile.model_validate(p) for p in job.column_profiles]

    # -- jobs -------------------------------------------------------------------

    def create_job(
        self,
        tenant_id: str,
        source_system: str,
        target_entity_type: str,
        options: Optional[JobOptions] = None,
    ) -> JobSummary:
        """Create a job; ``source_system="auto"`` takes the system detected on upload."""
        options = options or JobOptions()
        self._schema(target_entity_type)
        with self._session() as db:
            job = create_import_job(
                db,
                tenant_id=tenant_id,
                source_system=source_system or AUTO_DETECT_SOURCE,
                target_entity_type=target_entity_type,
                error_handling=options.error_handling,
                batch_size=options.batch_size,
                dry_run=options.dry_run,
                incremental=options.incremental,
            )
            return job_summary(job)

    def get_job(self, tenant_id: str, job_id: str) -> JobSummary:
        with self._session() as db:
            return job_summary(get_import_job(db, tenant_id, job_id))

    def list_jobs(
        self, tenant_id: str, status: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[JobSummary], int]:
        with self._session() as db:
            jobs, total = list_import_jobs(db, tenant_id, status=status, limit=limit, offset=offset)
            return [job_summary(job) for job in jobs], total

    # -- analysis ---------------------------------------------------------------

    def upload_file(
        self,
        tenant_id: str,
        job_id: str,
        content: Union[bytes, BinaryIO],
        file_name: Optional[str] = None,
        encoding_hint: Optional[str] = None,
    ) -> AnalysisResult:
        """Store the raw upload (bytes or a binary stream) in the blob store and analyze it."""
        key = f"{tenant_id}/{job_id}/{file_name or 'upload'}"
        self.blob_store.put(key, content)
        return self.submit_file(tenant_id, job_id, key, encoding_hint=encoding_hint, file_name=file_name)

    def submit_file(
        self,
        tenant_id: str,
        job_id: str,
        blob_key: str,
        encoding_hint: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> AnalysisResult:
        """
        Analyze an uploaded export and attach it to the job.

        Raises:
            UnsupportedFormat: the file cannot be parsed at all
            EmptyInput: the file has a header but no data rows
        """
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            self.state_machine.transition(db, job, JobStatus.ANALYZING)

        try:
            with self._open_blob(blob_key) as handle:
                analysis = analyze_file(handle, encoding_hint, file_name or blob_key)
        except Exception as exc:
            with self._session() as db:
                job = get_import_job(db, tenant_id, job_id)
                self.state_machine.transition(
                    db, job, JobStatus.CREATED, error_message=getattr(exc, "message", str(exc))
                )
            raise

        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            job.file_key = blob_key
            job.file_name = file_name or blob_key.rsplit("/", 1)[-1]
            job.file_format = analysis.file_format
            job.encoding = analysis.encoding
            job.detected_source_system = analysis.source_system
            job.source_confidence = analysis.source_confidence
            job.column_profiles = [p.model_dump(mode="json") for p in analysis.columns]
            job.source_count = analysis.record_count
            job.parse_error_count = analysis.parse_error_count
            job.error_message = None
            if job.source_system == AUTO_DETECT_SOURCE:
                job.source_system = analysis.source_system
            self.state_machine.transition(db, job, JobStatus.MAPPING)
        return analysis

    # -- mapping ----------------------------------------------------------------

    def _store_suggested_rules(self, db: Session, job: ImportJob, mapping: FieldMapping,
                               schema: TargetSchema, profiles: List[ColumnProfile]) -> None:
        existing = load_rules(db, job.id)
        for target_field, config in mapping_engine.suggest_rules(mapping, schema, profiles).items():
            if target_field not in existing:
                store_rule(db, job, target_field, parse_rule(config, target_field))

    def propose_mapping(self, tenant_id: str, job_id: str) -> FieldMapping:
        """
        Score every column against the target schema. Confirmed entries of an
        existing mapping are kept, and suggested rules are added for mapped
        fields that have none yet.
        """
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            profiles = self._profiles(job)
            self._reopen_mapping(db, job)
            schema = self._schema(job.target_entity_type)
            previous = mapping_engine.load_mapping(db, job.id)
            template = None
            if previous is not None and previous.template_id:
                template = mapping_engine.template_to_mapping(
                    mapping_engine.get_template(db, tenant_id, previous.template_id, previous.template_version)
                )
            proposed = mapping_engine.propose_mapping(profiles, schema, self.scorer, previous, template)
            if previous is not None:
                proposed.unmapped_action = previous.unmapped_action
                proposed.field_defaults = previous.field_defaults
            mapping_engine.store_mapping(db, job, proposed)
            self._store_suggested_rules(db, job, proposed, schema, profiles)
            logger.info(
                f"Proposed mapping for job {job_id}: {len(proposed.mapped_entries())}/{len(proposed.entries)} "
                f"columns mapped, {len(proposed.pending_confirmation())} need confirmation"
            )
            return proposed

    def confirm_mapping(
        self,
        tenant_id: str,
        job_id: str,
        entries: List[MappingEntry],
        unmapped_action: Optional[UnmappedAction] = None,
        field_defaults: Optional[Dict[str, Any]] = None,
    ) -> FieldMapping:
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            profiles = self._profiles(job)
            self._reopen_mapping(db, job)
            schema = self._schema(job.target_entity_type)
            current = mapping_engine.load_mapping(db, job.id) or FieldMapping()
            confirmed = mapping_engine.confirm_mapping(
                current, entries, schema, [p.name for p in profiles], unmapped_action, field_defaults
            )
            mapping_engine.store_mapping(db, job, confirmed)
            return confirmed

    def apply_template(self, tenant_id: str, job_id: str, template_id: str, version: Optional[int] = None) -> FieldMapping:
        """Re-propose the mapping with a saved template taking precedence for matching columns."""
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            profiles = self._profiles(job)
            self._reopen_mapping(db, job)
            schema = self._schema(job.target_entity_type)
            template = mapping_engine.get_template(db, tenant_id, template_id, version)
            template_mapping = mapping_engine.template_to_mapping(template)
            previous = mapping_engine.load_mapping(db, job.id)

            proposed = mapping_engine.propose_mapping(profiles, schema, self.scorer, previous, template_mapping)
            proposed.template_id = template.id
            proposed.template_version = template.version
            proposed.unmapped_action = template_mapping.unmapped_action
            proposed.field_defaults = {
                name: value for name, value in template_mapping.field_defaults.items() if schema.field(name)
            }
            mapping_engine.store_mapping(db, job, proposed)

            mapped = set(proposed.mapped_targets())
            for value_map in mapping_engine.template_value_maps(template):
                if value_map.target_field in mapped:
                    store_value_map(db, job, value_map.model_copy(update={"confirmed": True}))
            self._store_suggested_rules(db, job, proposed, schema, profiles)
            logger.info(f"Applied template '{template.name}' v{template.version} to job {job_id}")
            return proposed

    def save_template(self, tenant_id: str, job_id: str, name: str) -> TemplateSummary:
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            current = mapping_engine.load_mapping(db, job.id)
            if current is None:
                raise InvalidMapping(f"Job '{job_id}' has no mapping to save")
            template = mapping_engine.save_template(
                db,
                tenant_id=tenant_id,
                name=name,
                source_system=job.source_system,
                target_entity_type=job.target_entity_type,
                mapping=current,
                value_maps=list(load_value_maps(db, job.id).values()),
            )
            return template_summary(template)

    def list_templates(
        self, tenant_id: str, source_system: Optional[str] = None, target_entity_type: Optional[str] = None
    ) -> List[TemplateSummary]:
        with self._session() as db:
            return [
                template_summary(t)
                for t in mapping_engine.list_templates(db, tenant_id, source_system, target_entity_type)
            ]

    # -- value maps and rules ---------------------------------------------------

    def propose_value_maps(self, tenant_id: str, job_id: str, target_field: str) -> ValueMap:
        """Propose a value map for one enum field from the mapped column's observed values."""
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            profiles = {p.name: p for p in self._profiles(job)}
            schema = self._schema(job.target_entity_type)
            descriptor = schema.field(target_field)
            if descriptor is None or not descriptor.enum_values:
                raise InvalidMapping(f"'{target_field}' is not an enumerated field", field=target_field)
            mapping = mapping_engine.load_mapping(db, job.id) or FieldMapping()
            column = mapping.mapped_targets().get(target_field)
            if column is None:
                raise InvalidMapping(
                    f"No source column is mapped to '{target_field}'",
                    field=target_field,
                    suggested_fix="Map a column to the field before proposing a value map.",
                )
            profile = profiles[column]
            observed = [vc.value for vc in profile.top_values] or list(profile.sample_values)
            return propose_value_map(descriptor, observed, job.detected_source_system or job.source_system)

    def confirm_value_map(self, tenant_id: str, job_id: str, value_map: ValueMap) -> ValueMap:
        """
        Raises:
            InvalidMapping: unknown field, or a mapped value outside the field's enum
        """
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            schema = self._schema(job.target_entity_type)
            descriptor = schema.field(value_map.target_field)
            if descriptor is None:
                raise InvalidMapping(f"Unknown target field '{value_map.target_field}'", field=value_map.target_field)
            if descriptor.enum_values:
                allowed = set(descriptor.enum_values)
                targets = list(value_map.entries.values())
                if value_map.default_value is not None:
                    targets.append(value_map.default_value)
                invalid = sorted({str(v) for v in targets if v not in allowed})
                if invalid:
                    raise InvalidMapping(
                        f"Values not allowed for '{descriptor.name}': {', '.join(invalid)}",
                        field=descriptor.name,
                        suggested_fix=f"Use one of: {', '.join(descriptor.enum_values)}",
                    )
            self._reopen_mapping(db, job)
            confirmed = value_map.model_copy(update={"confirmed": True})
            store_value_map(db, job, confirmed)
            return confirmed

    def set_rule(self, tenant_id: str, job_id: str, target_field: str, config: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Set (or with ``None`` remove) the transformation rule of a target field."""
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            schema = self._schema(job.target_entity_type)
            if schema.field(target_field) is None:
                raise InvalidMapping(f"Unknown target field '{target_field}'", field=target_field)
            self._reopen_mapping(db, job)
            if config is None:
                delete_rule(db, job.id, target_field)
                return None
            rule = parse_rule(config, target_field)
            store_rule(db, job, target_field, rule)
            return dump_rule(rule)

    def get_rules(self, tenant_id: str, job_id: str) -> Dict[str, Dict[str, Any]]:
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            return {name: dump_rule(rule) for name, rule in load_rules(db, job.id).items()}

    # -- validation -------------------------------------------------------------

    def validate(self, tenant_id: str, job_id: str) -> ValidationReport:
        """
        Transform and check every record, replacing the job's previous issues.

        Issues resolved in an earlier run stay resolved when the same issue
        (row, field, code) comes up again. The job becomes READY when no
        unresolved error remains.

        Raises:
            MappingIncomplete: a required field has no mapping, default or rule
        """
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            schema = self._schema(job.target_entity_type)
            mapping = mapping_engine.load_mapping(db, job.id)
            if mapping is None:
                raise InvalidMapping(f"Job '{job_id}' has no mapping", suggested_fix="Propose a mapping first.")
            mapping_engine.ensure_mapping_complete(mapping, schema, load_rules(db, job.id).keys())
            self._enter(db, job, JobStatus.VALIDATING)
            engine = engine_for_job(db, job, schema, self.clock)
            file_key, encoding, file_name, incremental = job.file_key, job.encoding, job.file_name, job.incremental

        try:
            validator = ValidationEngine(schema, self.schema_provider, incremental=bool(incremental))
            issues: List[ValidationIssue] = []
            records_checked = 0
            with self._open_blob(file_key) as handle:
                reader = RecordReader(handle, encoding, file_name)
                for row_number, record in reader:
                    issues.extend(validator.check(engine.transform(record, row_number)))
                    records_checked += 1
            for row_number in reader.parse_error_rows:
                issues.append(ValidationIssue(
                    row_number=row_number,
                    severity=Severity.WARNING,
                    category=IssueCategory.FORMAT,
                    code="ParseError",
                    message="Row could not be parsed and will not be imported",
                ))
        except Exception:
            with self._session() as db:
                self._enter(db, get_import_job(db, tenant_id, job_id), JobStatus.MAPPING)
            raise

        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            resolved_keys = {
                (r.row_number, r.field, r.code)
                for r in db.query(ValidationIssueRecord).filter(
                    ValidationIssueRecord.job_id == job.id, ValidationIssueRecord.resolved.is_(True)
                )
            }
            db.query(ValidationIssueRecord).filter(ValidationIssueRecord.job_id == job.id).delete()
            for issue in issues:
                issue.resolved = (issue.row_number, issue.field, issue.code) in resolved_keys
                db.add(ValidationIssueRecord(
                    job_id=job.id,
                    tenant_id=tenant_id,
                    row_number=issue.row_number,
                    severity=issue.severity.value,
                    category=issue.category.value,
                    code=issue.code,
                    field=issue.field,
                    message=issue.message,
                    source_value=issue.source_value,
                    suggested_fix=issue.suggested_fix,
                    auto_fixable=issue.auto_fixable,
                    resolved=issue.resolved,
                ))
            db.flush()
            report = self._report(db, job, records_checked)
            job.validated_at = self.clock()
            self.state_machine.transition(
                db, job, JobStatus.READY if report.error_count == 0 else JobStatus.VALIDATING
            )
            logger.info(
                f"Validated job {job_id}: {records_checked} records, {report.error_count} errors, "
                f"{report.warning_count} warnings, {report.info_count} info"
            )
            return report

    def _report(self, db: Session, job: ImportJob, records_checked: Optional[int] = None) -> ValidationReport:
        rows = (
            db.query(ValidationIssueRecord)
            .filter(ValidationIssueRecord.job_id == job.id)
            .order_by(ValidationIssueRecord.id)
            .all()
        )
        counts: Dict[str, int] = defaultdict(int)
        for row in rows:
            if not row.resolved:
                counts[row.severity] += 1
        job.error_count = counts[Severity.ERROR.value]
        job.warning_count = counts[Severity.WARNING.value]
        job.info_count = counts[Severity.INFO.value]
        limit = self.config.max_report_issues
        return ValidationReport(
            job_id=job.id,
            error_count=job.error_count,
            warning_count=job.warning_count,
            info_count=job.info_count,
            records_checked=records_checked if records_checked is not None else job.source_count or 0,
            issues=[issue_from_record(row) for row in rows[:limit]],
            truncated=len(rows) > limit,
        )

    def get_validation_report(self, tenant_id: str, job_id: str) -> ValidationReport:
        with self._session() as db:
            return self._report(db, get_import_job(db, tenant_id, job_id))

    def resolve_issue(self, tenant_id: str, job_id: str, issue_id: int, resolved: bool = True) -> ValidationReport:
        """Mark an issue as accepted by the user (or reopen it) and recompute readiness."""
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            issue = (
                db.query(ValidationIssueRecord)
                .filter(ValidationIssueRecord.id == issue_id, ValidationIssueRecord.job_id == job.id)
                .first()
            )
            if issue is None:
                raise InvalidMapping(f"Validation issue {issue_id} not found for job '{job_id}'")
            issue.resolved = resolved
            db.flush()
            report = self._report(db, job)
            if job.status == JobStatus.VALIDATING.value and report.error_count == 0:
                self.state_machine.transition(db, job, JobStatus.READY)
            elif job.status == JobStatus.READY.value and report.error_count > 0:
                self.state_machine.transition(db, job, JobStatus.VALIDATING)
            return report

    # -- preview ----------------------------------------------------------------

    def preview(
        self,
        tenant_id: str,
        job_id: str,
        sample_size: Optional[int] = None,
        row_numbers: Optional[List[int]] = None,
    ) -> List[RecordPreview]:
        """Transform a sample of records (the first N, or explicit rows) without side effects."""
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            schema = self._schema(job.target_entity_type)
            engine = engine_for_job(db, job, schema, self.clock)
            file_key, encoding, file_name, incremental = job.file_key, job.encoding, job.file_name, job.incremental

        wanted = set(row_numbers or [])
        limit = len(wanted) if wanted else (sample_size or self.config.preview_default_size)
        validator = ValidationEngine(schema, self.schema_provider, incremental=bool(incremental))
        previews: List[RecordPreview] = []
        with self._open_blob(file_key) as handle:
            for row_number, record in iter_records(handle, encoding, file_name):
                if wanted and row_number not in wanted:
                    continue
                result = engine.transform(record, row_number)
                previews.append(RecordPreview(
                    row_number=row_number,
                    source=result.source,
                    target=result.target,
                    transformations_applied=result.applied,
                    issues=validator.check(result),
                ))
                if len(previews) >= limit:
                    break
        return previews

    # -- execution --------------------------------------------------------------

    def execute(
        self,
        tenant_id: str,
        job_id: str,
        *,
        dry_run: Optional[bool] = None,
        error_handling: Optional[ErrorHandlingMode] = None,
        preview_limit: Optional[int] = None,
    ) -> ExecutionHandle:
        """
        Start (or dry-run) the import in the background.

        Raises:
            ValidationBlocked: unresolved error-severity issues exist
            InvalidJobTransition: the job cannot be executed from its state
            JobBusy: the job is already executing or rolling back
        """
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            if error_handling is not None and job.status in {s.value for s in EXECUTABLE_STATES}:
                job.error_handling = ErrorHandlingMode(error_handling).value
            if dry_run is None:
                dry_run = bool(job.dry_run)
            if dry_run:
                ensure_executable(db, job)

        if dry_run:
            return self.scheduler.submit(
                tenant_id, job_id, self.executor.run, job_id, tenant_id,
                dry_run=True, preview_limit=preview_limit, kind="dry_run",
            )
        self.executor.start(job_id, tenant_id)
        return self.scheduler.submit(tenant_id, job_id, self.executor.run, job_id, tenant_id, kind="execute")

    def get_progress(self, tenant_id: str, job_id: str) -> ExecutionProgress:
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            live = self.executor.get_progress(job.id) if self.executor.is_running(job.id) else None
            return live if live is not None else progress_from_job(job)

    def pause(self, tenant_id: str, job_id: str) -> JobSummary:
        """Stop after the in-flight batches; ``resume`` continues from the persisted cursor."""
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            if job.status != JobStatus.IMPORTING.value:
                raise InvalidJobTransition(job.id, job.status, JobStatus.PAUSED.value)
            if not self.executor.request_pause(job.id):
                self.state_machine.transition(db, job, JobStatus.PAUSED)
            return job_summary(job)

    def resume(self, tenant_id: str, job_id: str) -> ExecutionHandle:
        self.executor.start(job_id, tenant_id, resume=True)
        return self.scheduler.submit(tenant_id, job_id, self.executor.run, job_id, tenant_id, kind="execute")

    def cancel(self, tenant_id: str, job_id: str) -> JobSummary:
        """
        Cancel a job. A running import stops after its in-flight batches; what
        it already committed stays and can be rolled back.
        """
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            if job.status == JobStatus.IMPORTING.value and self.executor.request_cancel(job.id):
                return job_summary(job)
            self.state_machine.transition(db, job, JobStatus.CANCELLED)
            return job_summary(job)

    # -- rollback ---------------------------------------------------------------

    def can_rollback(self, tenant_id: str, job_id: str) -> RollbackCheck:
        return self.rollback_manager.check(job_id, tenant_id)

    def rollback(
        self,
        tenant_id: str,
        job_id: str,
        scope: Optional[RollbackScope] = None,
        *,
        force: bool = False,
    ) -> ExecutionHandle:
        """
        Raises:
            RollbackBlocked: the restore point is missing, used or expired, or
                the job is not finished
        """
        self.rollback_manager.ensure_can_rollback(job_id, tenant_id)
        return self.scheduler.submit(
            tenant_id, job_id, self.rollback_manager.rollback, job_id, tenant_id, scope,
            force=force, kind="rollback",
        )

    # -- reporting --------------------------------------------------------------

    def get_report(self, tenant_id: str, job_id: str) -> ImportReport:
        with self._session() as db:
            job = get_import_job(db, tenant_id, job_id)
            errors = (
                db.query(ImportErrorRecord)
                .filter(ImportErrorRecord.job_id == job.id)
                .order_by(ImportErrorRecord.id)
                .all()
            )
            digest: Dict[str, ErrorDigestEntry] = {}
            for error in errors:
                entry = digest.setdefault(
                    error.error_type,
                    ErrorDigestEntry(error_type=error.error_type, count=0, sample_message=error.message),
                )
                entry.count += 1
                if error.row_number is not None and len(entry.sample_rows) < DIGEST_SAMPLE_ROWS:
                    entry.sample_rows.append(error.row_number)

            point = (
                db.query(RestorePoint)
                .filter(RestorePoint.job_id == job.id)
                .order_by(RestorePoint.created_at.desc())
                .first()
            )
            return ImportReport(
                job_id=job.id,
                tenant_id=job.tenant_id,
                status=job.status,
                source_system=job.source_system,
                detected_source_system=job.detected_source_system,
                target_entity_type=job.target_entity_type,
                file_name=job.file_name,
                counts={
                    "source": job.source_count or 0,
                    "parse_errors": job.parse_error_count or 0,
                    "created": job.imported_count or 0,
                    "updated": job.updated_count or 0,
                    "skipped": job.skipped_count or 0,
                    "failed": job.failed_count or 0,
                },
                validation={
                    "errors": job.error_count or 0,
                    "warnings": job.warning_count or 0,
                    "info": job.info_count or 0,
                    "unresolved_errors": count_unresolved_errors(db, job.id),
                },
                mapping=mapping_engine.load_mapping(db, job.id),
                value_maps=list(load_value_maps(db, job.id).values()),
                error_digest=sorted(digest.values(), key=lambda e: -e.count),
                restore_point=restore_point_summary(point) if point is not None else None,
                error_message=job.error_message,
                created_at=job.created_at,
                completed_at=job.completed_at,
            )

    def shutdown(self, wait: bool = True) -> None:
        self.scheduler.shutdown(wait=wait)


def issue_from_record(row: ValidationIssueRecord) -> ValidationIssue:
    return ValidationIssue(
        id=row.id,
        row_number=row.row_number,
        severity=Severity(row.severity),
        category=IssueCategory(row.category),
        code=row.code,
        field=row.field,
        message=row.message,
        source_value=row.source_value,
        suggested_fix=row.suggested_fix,
        auto_fixable=row.auto_fixable,
        resolved=row.resolved,
    )


def template_summary(template) -> TemplateSummary:
    return TemplateSummary(
        id=template.id,
        name=template.name,
        version=template.version,
        source_system=template.source_system,
        target_entity_type=template.target_entity_type,
        field_count=len(template.entries or []),
        created_at=template.created_at,
    )


def restore_point_summary(point: RestorePoint) -> Dict[str, Any]:
    return {
        "id": point.id,
        "status": point.status,
        "created_at": point.created_at.isoformat(),
        "expires_at": point.expires_at.isoformat(),
        "record_count": point.record_count,
        "entity_types": point.entity_types or [],
        "used_at": point.used_at.isoformat() if point.used_at else None,
    }
