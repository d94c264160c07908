"""
Error kinds raised by the migration engine.

Every error carries enough context for a user-facing message: the row number
and field when the failure is tied to a record, the offending value, and a
suggested fix when one can be derived deterministically. ``to_dict`` is what
the HTTP layer returns; stack traces never leave the process.
"""
from typing import Any, Dict, List, Optional


class MigrationError(Exception):
    """Base class for all engine errors."""

    code = "migration_error"

    def __init__(
        self,
        message: str,
        *,
        row_number: Optional[int] = None,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        suggested_fix: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.row_number = row_number
        self.field = field
        self.value = value
        self.suggested_fix = suggested_fix
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.row_number is not None:
            payload["row_number"] = self.row_number
        if self.field is not None:
            payload["field"] = self.field
        if self.value is not None:
            payload["value"] = self.value if isinstance(self.value, (int, float, str, bool)) else str(self.value)
        if self.suggested_fix:
            payload["suggested_fix"] = self.suggested_fix
        if self.details:
            payload["details"] = self.details
        return payload


class UnsupportedFormat(MigrationError):
    """The container format of an uploaded file cannot be parsed at all."""

    code = "UnsupportedFormat"


class EmptyInput(MigrationError):
    """A file parsed but contained no data rows after the header."""

    code = "EmptyInput"


class MappingIncomplete(MigrationError):
    """Required target fields have neither a mapped column nor a default."""

    code = "MappingIncomplete"

    def __init__(self, missing_fields: List[str], message: Optional[str] = None):
        self.missing_fields = list(missing_fields)
        super().__init__(
            message or f"Required target fields are not mapped: {', '.join(self.missing_fields)}",
            suggested_fix="Map a source column to each required field or configure a default value.",
            details={"missing_fields": self.missing_fields},
        )


class InvalidMapping(MigrationError):
    """A submitted mapping references unknown fields or maps one field twice."""

    code = "InvalidMapping"


class TransformationFailed(MigrationError):
    """A rule could not convert a single value; recorded as a validation issue."""

    code = "TransformationFailed"


class ValidationBlocked(MigrationError):
    """Execution was requested while error-severity issues are outstanding."""

    code = "ValidationBlocked"

    def __init__(self, error_count: int, message: Optional[str] = None):
        self.error_count = error_count
        super().__init__(
            message or f"Import blocked by {error_count} unresolved validation error(s).",
            suggested_fix="Fix the source data or mapping and re-run validation.",
            details={"error_count": error_count},
        )


class RecordConflict(MigrationError):
    """The same source record appears more than once in a non-incremental job."""

    code = "RecordConflict"


class RecordWriteError(MigrationError):
    """
    A single operation inside a batch could not be written.

    ``index`` identifies the failing operation so the executor can isolate it
    and commit the rest of the batch.
    """

    code = "RecordWriteError"

    def __init__(self, index: int, message: str, *, cause: Optional[BaseException] = None, **kwargs: Any):
        self.index = index
        self.cause = cause
        super().__init__(message, **kwargs)


class BatchCommitFailed(MigrationError):
    """A storage-layer failure prevented a batch from committing."""

    code = "BatchCommitFailed"

    def __init__(self, batch_index: int, message: str, **kwargs: Any):
        self.batch_index = batch_index
        super().__init__(message, **kwargs)


class StoreTimeout(MigrationError):
    """A call to the record store or blob store did not finish within ``store_timeout_seconds``."""

    code = "StoreTimeout"


class RollbackBlocked(MigrationError):
    """Rollback is not possible (restore point unusable or records modified)."""

    code = "RollbackBlocked"

    def __init__(self, message: str, *, conflicts: Optional[List[Dict[str, Any]]] = None, **kwargs: Any):
        self.conflicts = conflicts or []
        details = kwargs.pop("details", {}) or {}
        if self.conflicts:
            details["conflicts"] = self.conflicts
        super().__init__(message, details=details, **kwargs)


class JobNotFound(MigrationError):
    code = "JobNotFound"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job '{job_id}' not found")


class InvalidJobTransition(MigrationError):
    """The requested operation is not allowed from the job's current state."""

    code = "InvalidJobTransition"

    def __init__(self, job_id: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Job '{job_id}' cannot move from {current} to {target}",
            details={"current_status": current, "requested_status": target},
        )


class JobBusy(MigrationError):
    """Another execution or rollback currently holds the job lock."""

    code = "JobBusy"


class TemplateNotFound(MigrationError):
    code = "TemplateNotFound"
