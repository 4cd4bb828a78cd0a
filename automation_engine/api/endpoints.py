"""FastAPI REST endpoints for the automation engine."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status
from pydantic import BaseModel, Field

from ..core.audit import AuditRecorder
from ..core.enrollment_store import EnrollmentStore
from ..core.event_router import EventResult, EventRouter
from ..core.exceptions import WorkflowEngineError, create_error_response
from ..core.middleware import http_status_for_error
from ..core.scheduler import ExecutionScheduler
from ..core.workflow_manager import WorkflowManager
from ..models.core import (
    ContactEvent,
    Enrollment,
    EnrollmentResult,
    EnrollmentStatus,
    ExecutionLogEntry,
    ValidationResult,
    Workflow,
    WorkflowDefinition,
    WorkflowStatus,
)
from ..core.logging import get_logger

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["automation"])

# Global instances (initialized by the application factory)
_workflow_manager: Optional[WorkflowManager] = None
_enrollment_store: Optional[EnrollmentStore] = None
_audit_recorder: Optional[AuditRecorder] = None
_event_router: Optional[EventRouter] = None
_scheduler: Optional[ExecutionScheduler] = None


def init_dependencies(
    workflow_manager: WorkflowManager,
    enrollment_store: EnrollmentStore,
    audit_recorder: AuditRecorder,
    event_router: EventRouter,
    scheduler: ExecutionScheduler
):
    """Initialize the global dependencies."""
    global _workflow_manager, _enrollment_store, _audit_recorder, _event_router, _scheduler
    _workflow_manager = workflow_manager
    _enrollment_store = enrollment_store
    _audit_recorder = audit_recorder
    _event_router = event_router
    _scheduler = scheduler


def get_workflow_manager() -> WorkflowManager:
    """Dependency to get workflow manager."""
    if _workflow_manager is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow manager not initialized"
        )
    return _workflow_manager


def get_enrollment_store() -> EnrollmentStore:
    """Dependency to get enrollment store."""
    if _enrollment_store is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Enrollment store not initialized"
        )
    return _enrollment_store


def get_audit_recorder() -> AuditRecorder:
    """Dependency to get audit recorder."""
    if _audit_recorder is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Audit recorder not initialized"
        )
    return _audit_recorder


def get_event_router() -> EventRouter:
    """Dependency to get event router."""
    if _event_router is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Event router not initialized"
        )
    return _event_router


def get_scheduler() -> ExecutionScheduler:
    """Dependency to get execution scheduler."""
    if _scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Scheduler not initialized"
        )
    return _scheduler


def _http_error(error: WorkflowEngineError, action: str) -> HTTPException:
    """Translate an engine error raised while performing ``action``."""
    status_code = http_status_for_error(error)
    if status_code >= 500:
        logger.error(f"Error while trying to {action}: {error.message}")
    else:
        logger.warning(f"Rejected request to {action}: {error.message}")
    return HTTPException(status_code=status_code, detail=create_error_response(error))


# Request/Response models
class CreateWorkflowRequest(BaseModel):
    """Request model for creating a workflow."""
    organization_id: str = Field(..., description="Owning organization")
    definition: WorkflowDefinition = Field(..., description="Workflow graph definition")


class UpdateWorkflowRequest(BaseModel):
    """Request model for replacing a workflow definition."""
    definition: WorkflowDefinition = Field(..., description="Replacement graph definition")


class PublishWorkflowRequest(BaseModel):
    """Request model for publishing a workflow."""
    definition: Optional[WorkflowDefinition] = Field(None, description="Definition to publish, the stored one if unset")


class WorkflowResponse(BaseModel):
    """Response model for workflow create and update."""
    workflow: Workflow = Field(..., description="Stored workflow")
    validation: ValidationResult = Field(..., description="Validation result of the stored definition")


class EnrollRequest(BaseModel):
    """Request model for enrolling one contact."""
    contact_id: str = Field(..., description="Contact to enroll")
    context: Dict[str, Any] = Field(default_factory=dict, description="Initial enrollment variables")


class BulkEnrollRequest(BaseModel):
    """Request model for enrolling many contacts."""
    contact_ids: List[str] = Field(..., min_length=1, description="Contacts to enroll")
    context: Dict[str, Any] = Field(default_factory=dict, description="Initial enrollment variables")


class BulkEnrollResponse(BaseModel):
    """Response model for bulk enrollment."""
    enrolled: int = Field(..., description="Number of enrollments created")
    skipped: int = Field(..., description="Number of contacts skipped")
    results: List[EnrollmentResult] = Field(..., description="Per contact results")


class DropEnrollmentRequest(BaseModel):
    """Request model for dropping an enrollment."""
    reason: str = Field(default="manually dropped", description="Human readable drop reason")


class EnrollmentStatusResponse(BaseModel):
    """Response model for enrollment status."""
    enrollment: Enrollment = Field(..., description="Enrollment snapshot")
    workflow_status: WorkflowStatus = Field(..., description="Status of the owning workflow")
    waiting: bool = Field(..., description="Whether the enrollment is suspended on an event")


# Workflow endpoints

@router.post(
    "/workflows",
    response_model=WorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow",
    description="Store a new workflow in draft status and report its validation result"
)
def create_workflow(
    request: CreateWorkflowRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowResponse:
    try:
        workflow = workflow_manager.create_workflow(request.organization_id, request.definition)
        return WorkflowResponse(workflow=workflow, validation=workflow_manager.validate(workflow.definition))
    except WorkflowEngineError as e:
        raise _http_error(e, "create workflow")


@router.get(
    "/workflows",
    response_model=List[Workflow],
    summary="List workflows"
)
def list_workflows(
    organization_id: Optional[str] = Query(None, description="Filter by organization"),
    workflow_status: Optional[WorkflowStatus] = Query(None, alias="status", description="Filter by status"),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> List[Workflow]:
    try:
        return workflow_manager.list_workflows(organization_id=organization_id, status=workflow_status)
    except WorkflowEngineError as e:
        raise _http_error(e, "list workflows")


@router.post(
    "/workflows/validate",
    response_model=ValidationResult,
    summary="Validate a workflow definition",
    description="Run static validation without storing anything"
)
def validate_workflow(
    definition: WorkflowDefinition,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> ValidationResult:
    return workflow_manager.validate(definition)


@router.get(
    "/workflows/{workflow_id}",
    response_model=Workflow,
    summary="Get a workflow"
)
def get_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        return workflow_manager.get_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"get workflow {workflow_id}")


@router.put(
    "/workflows/{workflow_id}",
    response_model=WorkflowResponse,
    summary="Replace a workflow definition",
    description="Replace the whole definition of a draft or paused workflow"
)
def update_workflow(
    workflow_id: str,
    request: UpdateWorkflowRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowResponse:
    try:
        workflow = workflow_manager.update_workflow(workflow_id, request.definition)
        return WorkflowResponse(workflow=workflow, validation=workflow_manager.validate(workflow.definition))
    except WorkflowEngineError as e:
        raise _http_error(e, f"update workflow {workflow_id}")


@router.post(
    "/workflows/{workflow_id}/publish",
    response_model=Workflow,
    summary="Publish a workflow",
    description="Validate the definition, bump the version and make the workflow active"
)
def publish_workflow(
    workflow_id: str,
    request: Optional[PublishWorkflowRequest] = None,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        definition = request.definition if request else None
        return workflow_manager.publish(workflow_id, definition)
    except WorkflowEngineError as e:
        raise _http_error(e, f"publish workflow {workflow_id}")


@router.post(
    "/workflows/{workflow_id}/pause",
    response_model=Workflow,
    summary="Pause a workflow",
    description="Stop dispatching the workflow's enrollments until it is resumed"
)
def pause_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        return workflow_manager.pause(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"pause workflow {workflow_id}")


@router.post(
    "/workflows/{workflow_id}/resume",
    response_model=Workflow,
    summary="Resume a paused workflow"
)
def resume_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        return workflow_manager.resume(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"resume workflow {workflow_id}")


@router.post(
    "/workflows/{workflow_id}/archive",
    response_model=Workflow,
    summary="Archive a workflow",
    description="Archive the workflow and drop its live enrollments"
)
def archive_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        return workflow_manager.archive(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"archive workflow {workflow_id}")


@router.get(
    "/workflows/{workflow_id}/analytics",
    summary="Workflow analytics",
    description="Enrollment counts, per-node outcomes, branch counts, conversions and drop reasons"
)
def workflow_analytics(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Dict[str, Any]:
    try:
        return workflow_manager.analytics(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"build analytics for workflow {workflow_id}")


# Enrollment endpoints

@router.post(
    "/workflows/{workflow_id}/enrollments",
    response_model=EnrollmentResult,
    summary="Enroll a contact",
    description="Enroll one contact at the trigger node; returns immediately"
)
def enroll_contact(
    workflow_id: str,
    request: EnrollRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager),
    enrollment_store: EnrollmentStore = Depends(get_enrollment_store)
) -> EnrollmentResult:
    try:
        workflow = workflow_manager.get_workflow(workflow_id)
        result = enrollment_store.enroll(workflow, request.contact_id, source="manual", context=request.context)
        if result.skipped:
            logger.info(f"Enrollment of {request.contact_id} into {workflow_id} skipped: {result.reason}")
        return result
    except WorkflowEngineError as e:
        raise _http_error(e, f"enroll contact into workflow {workflow_id}")


@router.post(
    "/workflows/{workflow_id}/enrollments/bulk",
    response_model=BulkEnrollResponse,
    summary="Enroll many contacts"
)
def bulk_enroll_contacts(
    workflow_id: str,
    request: BulkEnrollRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager),
    enrollment_store: EnrollmentStore = Depends(get_enrollment_store)
) -> BulkEnrollResponse:
    try:
        workflow = workflow_manager.get_workflow(workflow_id)
        results = enrollment_store.bulk_enroll(workflow, request.contact_ids, context=request.context)
        enrolled = sum(1 for result in results if result.enrolled)
        return BulkEnrollResponse(enrolled=enrolled, skipped=len(results) - enrolled, results=results)
    except WorkflowEngineError as e:
        raise _http_error(e, f"bulk enroll into workflow {workflow_id}")


@router.get(
    "/workflows/{workflow_id}/enrollments",
    response_model=List[Enrollment],
    summary="List enrollments of a workflow"
)
def list_enrollments(
    workflow_id: str,
    enrollment_status: Optional[EnrollmentStatus] = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    enrollment_store: EnrollmentStore = Depends(get_enrollment_store)
) -> List[Enrollment]:
    try:
        return enrollment_store.list_for_workflow(workflow_id, status=enrollment_status, limit=limit, offset=offset)
    except WorkflowEngineError as e:
        raise _http_error(e, f"list enrollments of workflow {workflow_id}")


@router.get(
    "/enrollments/{enrollment_id}",
    response_model=EnrollmentStatusResponse,
    summary="Get enrollment status"
)
def get_enrollment_status(
    enrollment_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager),
    enrollment_store: EnrollmentStore = Depends(get_enrollment_store)
) -> EnrollmentStatusResponse:
    try:
        enrollment = enrollment_store.get(enrollment_id)
        workflow = workflow_manager.get_workflow(enrollment.workflow_id)
        return EnrollmentStatusResponse(
            enrollment=enrollment,
            workflow_status=workflow.status,
            waiting=enrollment.wait_condition is not None and not enrollment.wait_condition.matched
        )
    except WorkflowEngineError as e:
        raise _http_error(e, f"get enrollment {enrollment_id}")


@router.post(
    "/enrollments/{enrollment_id}/drop",
    response_model=Enrollment,
    summary="Drop an enrollment",
    description="Terminate a live enrollment with a human readable reason"
)
def drop_enrollment(
    enrollment_id: str,
    request: Optional[DropEnrollmentRequest] = None,
    enrollment_store: EnrollmentStore = Depends(get_enrollment_store)
) -> Enrollment:
    try:
        reason = request.reason if request else DropEnrollmentRequest().reason
        return enrollment_store.drop(enrollment_id, reason=reason)
    except WorkflowEngineError as e:
        raise _http_error(e, f"drop enrollment {enrollment_id}")


@router.get(
    "/enrollments/{enrollment_id}/log",
    response_model=List[ExecutionLogEntry],
    summary="Execution log of an enrollment"
)
def get_enrollment_log(
    enrollment_id: str,
    enrollment_store: EnrollmentStore = Depends(get_enrollment_store),
    audit_recorder: AuditRecorder = Depends(get_audit_recorder)
) -> List[ExecutionLogEntry]:
    try:
        enrollment_store.get(enrollment_id)
        return audit_recorder.get_enrollment_log(enrollment_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"get log of enrollment {enrollment_id}")


# Events and scheduler

@router.post(
    "/events",
    response_model=EventResult,
    summary="Deliver an inbound event",
    description="Enroll, wake or stop enrollments in response to a contact event"
)
def receive_event(
    event: ContactEvent,
    event_router: EventRouter = Depends(get_event_router)
) -> EventResult:
    try:
        return event_router.handle_event(event)
    except WorkflowEngineError as e:
        raise _http_error(e, f"handle {event.type.value} event")


@router.post(
    "/scheduler/sweep",
    summary="Run one scheduler sweep",
    description="Claim and dispatch due enrollments now instead of waiting for the next interval"
)
def run_sweep(
    scheduler: ExecutionScheduler = Depends(get_scheduler)
) -> Dict[str, Any]:
    result = scheduler.run_sweep()
    return {**result.to_dict(), "worker_id": scheduler.worker_id, "completed_at": datetime.utcnow().isoformat()}


@router.get(
    "/scheduler/status",
    summary="Scheduler status"
)
def scheduler_status(
    scheduler: ExecutionScheduler = Depends(get_scheduler)
) -> Dict[str, Any]:
    return scheduler.health()
