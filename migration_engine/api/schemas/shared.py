from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class IssueCategory(str, Enum):
    """Issue categories; validation runs the last six in this order."""
    TRANSFORMATION = "transformation"
    REQUIRED = "required"
    TYPE = "type"
    FORMAT = "format"
    REFERENCE = "reference"
    BUSINESS_RULE = "business_rule"
    QUALITY = "quality"


class ErrorHandlingMode(str, Enum):
    STOP_ON_ERROR = "STOP_ON_ERROR"
    SKIP_AND_CONTINUE = "SKIP_AND_CONTINUE"
    RETRY_THEN_SKIP = "RETRY_THEN_SKIP"


class MappingStatus(str, Enum):
    AUTO_ACCEPTED = "auto_accepted"
    NEEDS_CONFIRMATION = "needs_confirmation"
    UNMAPPED = "unmapped"
    CONFIRMED = "confirmed"
    TEMPLATE = "template"


class UnmappedAction(str, Enum):
    """What happens to source columns that are not mapped to a target field."""
    IGNORE = "ignore"
    STORE_AS_CUSTOM = "store_as_custom"
    STORE_IN_OVERFLOW = "store_in_overflow"


# ---------------------------------------------------------------------------
# File analysis
# ---------------------------------------------------------------------------

class ValueCount(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str
    count: int


class ColumnProfile(BaseModel):
    """Per-column metadata computed once by the analyzer."""
    model_config = ConfigDict(frozen=True)

    name: str
    inferred_type: str
    null_count: int = 0
    distinct_count: int = 0
    distinct_capped: bool = False
    sample_values: Tuple[str, ...] = ()
    top_values: Tuple[ValueCount, ...] = ()


class AnalysisResult(BaseModel):
    columns: List[ColumnProfile]
    record_count: int
    parse_error_count: int = 0
    parse_error_rows: List[int] = Field(default_factory=list)
    source_system: str = "custom"
    source_confidence: float = 0.0
    file_format: str
    encoding: Optional[str] = None
    delimiter: Optional[str] = None


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------

class MappingEntry(BaseModel):
    source_column: str
    target_field: Optional[str] = None
    confidence: float = 0.0
    status: MappingStatus = MappingStatus.UNMAPPED
    rule_id: Optional[str] = None
    reason: Optional[str] = None

    @field_validator("confidence")
    def clamp_confidence(cls, value: float) -> float:
        return max(0.0, min(1.0, round(float(value), 4)))

    @property
    def is_mapped(self) -> bool:
        return self.target_field is not None and self.status != MappingStatus.UNMAPPED


class FieldMapping(BaseModel):
    """Ordered column → field assignments for one job."""
    entries: List[MappingEntry] = Field(default_factory=list)
    unmapped_action: UnmappedAction = UnmappedAction.IGNORE
    field_defaults: Dict[str, Any] = Field(default_factory=dict)
    template_id: Optional[str] = None
    template_version: Optional[int] = None

    def entry_for(self, source_column: str) -> Optional[MappingEntry]:
        for entry in self.entries:
            if entry.source_column == source_column:
                return entry
        return None

    def mapped_entries(self) -> List[MappingEntry]:
        return [entry for entry in self.entries if entry.is_mapped]

    def mapped_targets(self) -> Dict[str, str]:
        """target field -> source column for every mapped entry."""
        return {entry.target_field: entry.source_column for entry in self.mapped_entries()}

    def pending_confirmation(self) -> List[MappingEntry]:
        return [entry for entry in self.entries if entry.status == MappingStatus.NEEDS_CONFIRMATION]


class TemplateSummary(BaseModel):
    id: str
    name: str
    version: int
    source_system: str
    target_entity_type: str
    field_count: int
    created_at: datetime


# ---------------------------------------------------------------------------
# Value maps
# ---------------------------------------------------------------------------

class ValueMap(BaseModel):
    """
    Source value → target value table for one target field.

    ``default_value`` is the "other" fallback for unlisted values; when it is
    None unlisted values pass through unchanged so validation can flag them.
    """
    target_field: str
    entries: Dict[str, Any] = Field(default_factory=dict)
    default_value: Optional[Any] = None
    case_sensitive: bool = False
    confirmed: bool = False
    confidence: Dict[str, float] = Field(default_factory=dict)

    def lookup(self, value: Any) -> Tuple[Any, bool]:
        """Return ``(mapped_value, changed)`` for a single source value."""
        if value is None:
            return None, False
        key = str(value).strip()
        if key in self.entries:
            return self.entries[key], True
        if not self.case_sensitive:
            lowered = key.lower()
            for source_value, target_value in self.entries.items():
                if source_value.strip().lower() == lowered:
                    return target_value, True
        if self.default_value is not None:
            return self.default_value, True
        return value, False


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationIssue(BaseModel):
    id: Optional[int] = None
    row_number: Optional[int] = None
    severity: Severity
    category: IssueCategory
    code: Optional[str] = None
    field: Optional[str] = None
    message: str
    source_value: Optional[str] = None
    suggested_fix: Optional[str] = None
    auto_fixable: bool = False
    resolved: bool = False


class ValidationReport(BaseModel):
    job_id: Optional[str] = None
    error_count: int = 0
    warning_count: int = 0
    info_count: int = 0
    records_checked: int = 0
    issues: List[ValidationIssue] = Field(default_factory=list)
    truncated: bool = False

    @property
    def can_execute(self) -> bool:
        return self.error_count == 0


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

class JobOptions(BaseModel):
    error_handling: ErrorHandlingMode = ErrorHandlingMode.SKIP_AND_CONTINUE
    batch_size: Optional[int] = Field(default=None, ge=1, le=10000)
    dry_run: bool = False
    incremental: bool = False


class ExecutionProgress(BaseModel):
    job_id: str
    status: str
    dry_run: bool = False
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    batches_total: Optional[int] = None
    batches_completed: int = 0
    last_committed_batch: int = -1
    eta_seconds: Optional[float] = None
    started_at: Optional[datetime] = None


class ImportErrorDetail(BaseModel):
    row_number: Optional[int] = None
    source_record_id: Optional[str] = None
    batch_index: Optional[int] = None
    error_type: str
    message: str
    attempts: int = 1


class RecordPreview(BaseModel):
    row_number: int
    source: Dict[str, Any]
    target: Dict[str, Any]
    transformations_applied: List[str] = Field(default_factory=list)
    issues: List[ValidationIssue] = Field(default_factory=list)
    action: Optional[str] = None  # create / update / skip, for dry runs
    existing: Optional[Dict[str, Any]] = None


class ExecutionResult(BaseModel):
    job_id: str
    status: str
    dry_run: bool = False
    progress: ExecutionProgress
    previews: List[RecordPreview] = Field(default_factory=list)
    errors: List[ImportErrorDetail] = Field(default_factory=list)
    partial_rollback_available: bool = False
    error_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------

class RollbackScope(BaseModel):
    """Subset of a job's imported records to reverse; empty means everything."""
    record_ids: Optional[List[str]] = None
    row_numbers: Optional[List[int]] = None
    entity_types: Optional[List[str]] = None

    @property
    def is_partial(self) -> bool:
        return bool(self.record_ids or self.row_numbers or self.entity_types)


class RollbackConflict(BaseModel):
    imported_record_id: str
    target_entity_id: str
    entity_type: str
    row_number: Optional[int] = None
    message: str


class RollbackCheck(BaseModel):
    can_rollback: bool
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    restore_point_status: Optional[str] = None
    record_count: int = 0


class RollbackResult(BaseModel):
    job_id: str
    rolled_back_count: int = 0
    deleted_count: int = 0
    restored_count: int = 0
    already_missing_count: int = 0
    conflicts: List[RollbackConflict] = Field(default_factory=list)
    remaining_count: int = 0
    restore_point_status: Optional[str] = None
    job_status: str


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

class ErrorDigestEntry(BaseModel):
    error_type: str
    count: int
    sample_rows: List[int] = Field(default_factory=list)
    sample_message: Optional[str] = None


class ImportReport(BaseModel):
    job_id: str
    tenant_id: str
    status: str
    source_system: str
    detected_source_system: Optional[str] = None
    target_entity_type: str
    file_name: Optional[str] = None
    counts: Dict[str, int]
    validation: Dict[str, int]
    mapping: Optional[FieldMapping] = None
    value_maps: List[ValueMap] = Field(default_factory=list)
    error_digest: List[ErrorDigestEntry] = Field(default_factory=list)
    restore_point: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class JobSummary(BaseModel):
    id: str
    tenant_id: str
    status: str
    source_system: str
    target_entity_type: str
    error_handling: str
    batch_size: int
    dry_run: bool
    incremental: bool
    file_name: Optional[str] = None
    source_count: int = 0
    imported_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# HTTP requests / responses
# ---------------------------------------------------------------------------

class CreateJobRequest(BaseModel):
    source_system: str = "auto"
    target_entity_type: str
    options: JobOptions = Field(default_factory=JobOptions)


class SubmitFileRequest(BaseModel):
    blob_key: str
    encoding_hint: Optional[str] = None
    file_name: Optional[str] = None


class ConfirmMappingRequest(BaseModel):
    entries: List[MappingEntry]
    unmapped_action: Optional[UnmappedAction] = None
    field_defaults: Optional[Dict[str, Any]] = None


class ApplyTemplateRequest(BaseModel):
    template_id: str
    version: Optional[int] = None


class SaveTemplateRequest(BaseModel):
    job_id: str
    name: str = Field(..., min_length=1, max_length=255)


class RuleRequest(BaseModel):
    config: Optional[Dict[str, Any]] = None


class ResolveIssueRequest(BaseModel):
    resolved: bool = True


class PreviewRequest(BaseModel):
    sample_size: Optional[int] = Field(default=None, ge=1, le=1000)
    row_numbers: Optional[List[int]] = None


class ExecuteRequest(BaseModel):
    dry_run: Optional[bool] = None
    error_handling: Optional[ErrorHandlingMode] = None
    preview_limit: Optional[int] = Field(default=None, ge=1)


class RollbackRequest(BaseModel):
    scope: RollbackScope = Field(default_factory=RollbackScope)
    force: bool = False


class JobResponse(BaseModel):
    success: bool
    job: JobSummary


class JobListResponse(BaseModel):
    success: bool
    jobs: List[JobSummary]
    total_count: int
    limit: int
    offset: int


class AnalysisResponse(BaseModel):
    success: bool
    job_id: str
    analysis: AnalysisResult


class MappingResponse(BaseModel):
    success: bool
    job_id: str
    mapping: FieldMapping


class TemplateResponse(BaseModel):
    success: bool
    template: TemplateSummary


class TemplateListResponse(BaseModel):
    success: bool
    templates: List[TemplateSummary]


class ValueMapResponse(BaseModel):
    success: bool
    job_id: str
    value_map: ValueMap


class RuleResponse(BaseModel):
    success: bool
    job_id: str
    target_field: str
    rule: Optional[Dict[str, Any]] = None


class PreviewResponse(BaseModel):
    success: bool
    job_id: str
    records: List[RecordPreview]


class ExecutionAcceptedResponse(BaseModel):
    success: bool
    job_id: str
    kind: str
    progress: ExecutionProgress
