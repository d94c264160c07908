"""
Endpoints driving a migration job through its lifecycle.

Every route is scoped to the tenant named by the ``X-Tenant-ID`` header.
Execution and rollback are accepted with 202 and run on the tenant's
scheduler; poll ``/progress`` or the job itself for the outcome.
"""
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import JSONResponse

from migration_engine.api.dependencies import get_import_service, get_tenant_id, translate_errors
from migration_engine.api.schemas.shared import (
    AnalysisResponse,
    ApplyTemplateRequest,
    ConfirmMappingRequest,
    CreateJobRequest,
    ExecuteRequest,
    ExecutionAcceptedResponse,
    ExecutionProgress,
    ExecutionResult,
    ImportReport,
    JobListResponse,
    JobResponse,
    MappingResponse,
    PreviewRequest,
    PreviewResponse,
    ResolveIssueRequest,
    RollbackCheck,
    RollbackRequest,
    RuleRequest,
    RuleResponse,
    SaveTemplateRequest,
    SubmitFileRequest,
    TemplateListResponse,
    TemplateResponse,
    ValidationReport,
    ValueMap,
    ValueMapResponse,
)
from migration_engine.domain.imports.service import ImportService

router = APIRouter(prefix="/migrations", tags=["migrations"])


def _accepted(service: ImportService, tenant_id: str, job_id: str, kind: str) -> JSONResponse:
    body = ExecutionAcceptedResponse(
        success=True,
        job_id=job_id,
        kind=kind,
        progress=service.get_progress(tenant_id, job_id),
    )
    return JSONResponse(status_code=202, content=body.model_dump(mode="json"))


# -- jobs ------------------------------------------------------------------------


@router.post("/jobs", response_model=JobResponse, status_code=201)
def create_job_endpoint(
    request: CreateJobRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        job = service.create_job(tenant_id, request.source_system, request.target_entity_type, request.options)
    return JobResponse(success=True, job=job)


@router.get("/jobs", response_model=JobListResponse)
def list_jobs_endpoint(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        jobs, total = service.list_jobs(tenant_id, status=status, limit=limit, offset=offset)
    return JobListResponse(success=True, jobs=jobs, total_count=total, limit=limit, offset=offset)


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job_endpoint(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        job = service.get_job(tenant_id, job_id)
    return JobResponse(success=True, job=job)


# -- source file -----------------------------------------------------------------


@router.post("/jobs/{job_id}/file", response_model=AnalysisResponse)
def upload_file_endpoint(
    job_id: str,
    file: UploadFile = File(...),
    encoding_hint: Optional[str] = Form(None),
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        analysis = service.upload_file(tenant_id, job_id, file.file, file_name=file.filename, encoding_hint=encoding_hint)
    return AnalysisResponse(success=True, job_id=job_id, analysis=analysis)


@router.post("/jobs/{job_id}/file-key", response_model=AnalysisResponse)
def submit_file_endpoint(
    job_id: str,
    request: SubmitFileRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    """Analyze a file that was already uploaded to the blob store."""
    with translate_errors():
        analysis = service.submit_file(
            tenant_id, job_id, request.blob_key, encoding_hint=request.encoding_hint, file_name=request.file_name
        )
    return AnalysisResponse(success=True, job_id=job_id, analysis=analysis)


# -- mapping ---------------------------------------------------------------------


@router.post("/jobs/{job_id}/mapping/propose", response_model=MappingResponse)
def propose_mapping_endpoint(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        mapping = service.propose_mapping(tenant_id, job_id)
    return MappingResponse(success=True, job_id=job_id, mapping=mapping)


@router.put("/jobs/{job_id}/mapping", response_model=MappingResponse)
def confirm_mapping_endpoint(
    job_id: str,
    request: ConfirmMappingRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        mapping = service.confirm_mapping(
            tenant_id, job_id, request.entries, request.unmapped_action, request.field_defaults
        )
    return MappingResponse(success=True, job_id=job_id, mapping=mapping)


@router.post("/jobs/{job_id}/mapping/template", response_model=MappingResponse)
def apply_template_endpoint(
    job_id: str,
    request: ApplyTemplateRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        mapping = service.apply_template(tenant_id, job_id, request.template_id, request.version)
    return MappingResponse(success=True, job_id=job_id, mapping=mapping)


@router.post("/templates", response_model=TemplateResponse, status_code=201)
def save_template_endpoint(
    request: SaveTemplateRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        template = service.save_template(tenant_id, request.job_id, request.name)
    return TemplateResponse(success=True, template=template)


@router.get("/templates", response_model=TemplateListResponse)
def list_templates_endpoint(
    source_system: Optional[str] = None,
    target_entity_type: Optional[str] = None,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        templates = service.list_templates(tenant_id, source_system, target_entity_type)
    return TemplateListResponse(success=True, templates=templates)


# -- value maps and rules --------------------------------------------------------


@router.post("/jobs/{job_id}/value-maps/{target_field}/propose", response_model=ValueMapResponse)
def propose_value_map_endpoint(
    job_id: str,
    target_field: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        value_map = service.propose_value_maps(tenant_id, job_id, target_field)
    return ValueMapResponse(success=True, job_id=job_id, value_map=value_map)


@router.put("/jobs/{job_id}/value-maps/{target_field}", response_model=ValueMapResponse)
def confirm_value_map_endpoint(
    job_id: str,
    target_field: str,
    value_map: ValueMap,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        confirmed = service.confirm_value_map(
            tenant_id, job_id, value_map.model_copy(update={"target_field": target_field})
        )
    return ValueMapResponse(success=True, job_id=job_id, value_map=confirmed)


@router.put("/jobs/{job_id}/rules/{target_field}", response_model=RuleResponse)
def set_rule_endpoint(
    job_id: str,
    target_field: str,
    request: RuleRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    """Set a field's transformation rule; a null ``config`` removes it."""
    with translate_errors():
        rule = service.set_rule(tenant_id, job_id, target_field, request.config)
    return RuleResponse(success=True, job_id=job_id, target_field=target_field, rule=rule)


@router.get("/jobs/{job_id}/rules")
def get_rules_endpoint(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        rules = service.get_rules(tenant_id, job_id)
    return {"success": True, "job_id": job_id, "rules": rules}


# -- validation and preview ------------------------------------------------------


@router.post("/jobs/{job_id}/validate", response_model=ValidationReport)
def validate_endpoint(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        return service.validate(tenant_id, job_id)


@router.get("/jobs/{job_id}/validation", response_model=ValidationReport)
def get_validation_report_endpoint(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        return service.get_validation_report(tenant_id, job_id)


@router.post("/jobs/{job_id}/issues/{issue_id}/resolve", response_model=ValidationReport)
def resolve_issue_endpoint(
    job_id: str,
    issue_id: int,
    request: ResolveIssueRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        return service.resolve_issue(tenant_id, job_id, issue_id, request.resolved)


@router.post("/jobs/{job_id}/preview", response_model=PreviewResponse)
def preview_endpoint(
    job_id: str,
    request: PreviewRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        records = service.preview(tenant_id, job_id, request.sample_size, request.row_numbers)
    return PreviewResponse(success=True, job_id=job_id, records=records)


# -- execution -------------------------------------------------------------------


@router.post(
    "/jobs/{job_id}/execute",
    response_model=ExecutionResult,
    responses={202: {"model": ExecutionAcceptedResponse}},
)
def execute_endpoint(
    job_id: str,
    request: ExecuteRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    """
    Start the import. A dry run is answered inline with its previews; a real
    run is accepted and continues in the background.
    """
    with translate_errors():
        handle = service.execute(
            tenant_id,
            job_id,
            dry_run=request.dry_run,
            error_handling=request.error_handling,
            preview_limit=request.preview_limit,
        )
        if handle.kind == "dry_run":
            return handle.result()
        return _accepted(service, tenant_id, job_id, handle.kind)


@router.get("/jobs/{job_id}/progress", response_model=ExecutionProgress)
def progress_endpoint(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        return service.get_progress(tenant_id, job_id)


@router.post("/jobs/{job_id}/pause", response_model=JobResponse)
def pause_endpoint(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        job = service.pause(tenant_id, job_id)
    return JobResponse(success=True, job=job)


@router.post("/jobs/{job_id}/resume", status_code=202, response_model=ExecutionAcceptedResponse)
def resume_endpoint(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        handle = service.resume(tenant_id, job_id)
        return _accepted(service, tenant_id, job_id, handle.kind)


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
def cancel_endpoint(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        job = service.cancel(tenant_id, job_id)
    return JobResponse(success=True, job=job)


# -- rollback and reporting ------------------------------------------------------


@router.get("/jobs/{job_id}/rollback", response_model=RollbackCheck)
def can_rollback_endpoint(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        return service.can_rollback(tenant_id, job_id)


@router.post("/jobs/{job_id}/rollback", status_code=202, response_model=ExecutionAcceptedResponse)
def rollback_endpoint(
    job_id: str,
    request: RollbackRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        handle = service.rollback(tenant_id, job_id, request.scope, force=request.force)
        return _accepted(service, tenant_id, job_id, handle.kind)


@router.get("/jobs/{job_id}/report", response_model=ImportReport)
def report_endpoint(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: ImportService = Depends(get_import_service),
):
    with translate_errors():
        return service.get_report(tenant_id, job_id)
