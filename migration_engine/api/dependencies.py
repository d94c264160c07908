"""
Shared dependencies for the HTTP layer.

The ``ImportService`` is built once per process from settings; tests replace
it through ``app.dependency_overrides[get_import_service]``.
"""
import logging
from contextlib import contextmanager
from typing import Optional

from fastapi import Header, HTTPException

from migration_engine.core.config import settings
from migration_engine.core.exceptions import (
    InvalidJobTransition,
    JobBusy,
    JobNotFound,
    MigrationError,
    RecordConflict,
    RollbackBlocked,
    StoreTimeout,
    TemplateNotFound,
    ValidationBlocked,
)
from migration_engine.db.session import get_session_local
from migration_engine.domain.imports.schema import StaticSchemaProvider, load_schemas
from migration_engine.domain.imports.service import ImportService
from migration_engine.integrations.storage import StorageError

logger = logging.getLogger(__name__)

_service: Optional[ImportService] = None

NOT_FOUND_ERRORS = (JobNotFound, TemplateNotFound)
CONFLICT_ERRORS = (ValidationBlocked, RollbackBlocked, InvalidJobTransition, JobBusy, RecordConflict)


def build_import_service() -> ImportService:
    schemas = load_schemas(settings.target_schema_path) if settings.target_schema_path else []
    if not schemas:
        logger.warning("No target schemas configured (TARGET_SCHEMA_PATH); every job creation will be rejected")

    scorer = None
    if settings.anthropic_api_key:
        from migration_engine.domain.imports.llm_scorer import LLMFieldScorer

        scorer = LLMFieldScorer()
    return ImportService(StaticSchemaProvider(schemas), session_factory=get_session_local(), scorer=scorer)


def get_import_service() -> ImportService:
    global _service
    if _service is None:
        _service = build_import_service()
    return _service


def shutdown_import_service() -> None:
    global _service
    if _service is not None:
        _service.shutdown(wait=False)
        _service = None


def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-ID")) -> str:
    tenant_id = x_tenant_id.strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    return tenant_id


def http_error(exc: Exception) -> HTTPException:
    """Translate an engine error into an HTTP error with a structured detail."""
    if isinstance(exc, NOT_FOUND_ERRORS):
        return HTTPException(status_code=404, detail=exc.to_dict())
    if isinstance(exc, CONFLICT_ERRORS):
        return HTTPException(status_code=409, detail=exc.to_dict())
    if isinstance(exc, StoreTimeout):
        return HTTPException(status_code=504, detail=exc.to_dict())
    if isinstance(exc, MigrationError):
        return HTTPException(status_code=422, detail=exc.to_dict())
    if isinstance(exc, StorageError):
        return HTTPException(status_code=502, detail={"error": "StorageError", "message": str(exc)})
    logger.exception("Unhandled error in migration endpoint")
    return HTTPException(status_code=500, detail={"error": "internal_error", "message": "Internal server error"})


@contextmanager
def translate_errors():
    try:
        yield
    except HTTPException:
        raise
    except Exception as exc:
        raise http_error(exc) from exc
