"""FastAPI REST endpoints for the automation engine."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ..core.exceptions import (
    ConfigurationError,
    DuplicateExecutionError,
    StorageError,
    WorkflowEngineError,
    WorkflowValidationError,
    create_error_response,
)
from ..core.logging import get_logger
from ..core.scheduler import ResumptionScheduler, SchedulerResult
from ..core.state_manager import StateManager
from ..core.trigger_service import TriggerDispatcher
from ..core.workflow_manager import WorkflowManager
from ..core.workflow_scheduler import ScheduleManager, ScheduleRunResult, ScheduledWorkflowRunner
from ..models.core import (
    ExecutionLogSummary,
    ExecutionSummary,
    LogEntry,
    ScheduleConfig,
    ScheduleType,
    TriggerEvent,
    WorkflowDefinition,
    WorkflowSchedule,
    utcnow,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["automation"])

# Global instances, initialized by the application lifespan
_workflow_manager: Optional[WorkflowManager] = None
_state_manager: Optional[StateManager] = None
_dispatcher: Optional[TriggerDispatcher] = None
_scheduler: Optional[ResumptionScheduler] = None
_schedule_manager: Optional[ScheduleManager] = None
_schedule_runner: Optional[ScheduledWorkflowRunner] = None


def init_dependencies(
    workflow_manager: WorkflowManager,
    state_manager: StateManager,
    dispatcher: TriggerDispatcher,
    scheduler: ResumptionScheduler,
    schedule_manager: Optional[ScheduleManager] = None,
    schedule_runner: Optional[ScheduledWorkflowRunner] = None,
):
    """Initialize the global dependencies."""
    global _workflow_manager, _state_manager, _dispatcher, _scheduler, _schedule_manager, _schedule_runner
    _workflow_manager = workflow_manager
    _state_manager = state_manager
    _dispatcher = dispatcher
    _scheduler = scheduler
    _schedule_manager = schedule_manager
    _schedule_runner = schedule_runner


def _not_initialized(component: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{component} not initialized"
    )


def get_workflow_manager() -> WorkflowManager:
    """Dependency to get the workflow manager."""
    if _workflow_manager is None:
        raise _not_initialized("Workflow manager")
    return _workflow_manager


def get_state_manager() -> StateManager:
    """Dependency to get the state manager."""
    if _state_manager is None:
        raise _not_initialized("State manager")
    return _state_manager


def get_dispatcher() -> TriggerDispatcher:
    """Dependency to get the trigger dispatcher."""
    if _dispatcher is None:
        raise _not_initialized("Trigger dispatcher")
    return _dispatcher


def get_scheduler() -> ResumptionScheduler:
    """Dependency to get the resumption scheduler."""
    if _scheduler is None:
        raise _not_initialized("Resumption scheduler")
    return _scheduler


def get_schedule_manager() -> ScheduleManager:
    """Dependency to get the schedule manager."""
    if _schedule_manager is None:
        raise _not_initialized("Schedule manager")
    return _schedule_manager


def get_schedule_runner() -> ScheduledWorkflowRunner:
    """Dependency to get the scheduled workflow runner."""
    if _schedule_runner is None:
        raise _not_initialized("Schedule runner")
    return _schedule_runner


# Request/Response models
class CreateWorkflowRequest(BaseModel):
    """Request model for creating a workflow."""
    workflow: WorkflowDefinition = Field(..., description="Workflow definition to create")


class CreateWorkflowResponse(BaseModel):
    """Response model for workflow creation."""
    workflow_id: str = Field(..., description="Identifier of the created workflow")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class TriggerEventRequest(BaseModel):
    """Normalized inbound event."""
    type: str = Field(..., description="Event type, e.g. contact_replied")
    organization_id: str = Field(..., description="Organization the event belongs to")
    contact_id: str = Field(..., description="Contact the event is about")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Type-specific event data")
    timestamp: Optional[datetime] = Field(None, description="Event time; defaults to now")


class TriggerResultResponse(BaseModel):
    workflow_id: str
    triggered: bool
    reason: Optional[str] = None


class EventResponse(BaseModel):
    """Response model for event dispatch."""
    results: List[TriggerResultResponse] = Field(default_factory=list)
    executions: List[ExecutionSummary] = Field(default_factory=list)
    skipped: Dict[str, str] = Field(default_factory=dict)


class CreateScheduleRequest(BaseModel):
    """Request model for scheduling a workflow."""
    workflow_id: str = Field(..., description="Workflow to run")
    schedule_type: ScheduleType = Field(..., description="once, recurring or cron")
    config: ScheduleConfig = Field(default_factory=ScheduleConfig, description="Timing for the schedule type")
    timezone: str = Field("UTC", description="IANA zone cron expressions are evaluated in")
    max_executions: Optional[int] = Field(None, ge=1, description="Runs after which the schedule deactivates")


def _http_error(e: WorkflowEngineError) -> HTTPException:
    if isinstance(e, (WorkflowValidationError, ConfigurationError)):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(e, DuplicateExecutionError):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(e, StorageError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=status_code, detail=create_error_response(e))


def _internal_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"Unexpected error while {action}: {str(e)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(e)},
            "timestamp": utcnow().isoformat()
        }
    )


def _not_found(kind: str, identifier: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={
            "error": f"{kind}NotFound",
            "message": f"{kind} with ID '{identifier}' not found",
            "details": {"id": identifier}
        }
    )


# Endpoints

@router.get("/health", summary="Service health")
def health(scheduler: ResumptionScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    return {
        "status": "healthy",
        "scheduler_running": scheduler.running,
        "timestamp": utcnow().isoformat(),
    }


@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow",
    description="Store a workflow definition. Active workflows are validated first."
)
def create_workflow(
    request: CreateWorkflowRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> CreateWorkflowResponse:
    """
    Create a new workflow.

    Raises:
        HTTPException: 400 if validation fails, 503 on storage errors
    """
    try:
        validation = workflow_manager.validate_workflow(request.workflow)
        workflow = workflow_manager.create_workflow(request.workflow)
        return CreateWorkflowResponse(
            workflow_id=workflow.id,
            message=f"Workflow '{workflow.name}' created successfully",
            validation_warnings=validation.warnings,
        )
    except WorkflowEngineError as e:
        logger.warning(f"Workflow engine error during workflow creation: {str(e)}")
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("creating the workflow", e)


@router.get("/workflows/{workflow_id}", response_model=WorkflowDefinition, summary="Get a workflow")
def get_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowDefinition:
    try:
        workflow = workflow_manager.get_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    if workflow is None:
        raise _not_found("Workflow", workflow_id)
    return workflow


@router.post("/workflows/{workflow_id}/activate", response_model=WorkflowDefinition, summary="Activate a workflow")
def activate_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowDefinition:
    if workflow_manager.get_workflow(workflow_id) is None:
        raise _not_found("Workflow", workflow_id)
    try:
        return workflow_manager.activate_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/workflows/{workflow_id}/deactivate", response_model=WorkflowDefinition,
             summary="Deactivate a workflow")
def deactivate_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowDefinition:
    if workflow_manager.get_workflow(workflow_id) is None:
        raise _not_found("Workflow", workflow_id)
    try:
        return workflow_manager.deactivate_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/events",
    response_model=EventResponse,
    summary="Submit a trigger event",
    description="Evaluate an event against the organization's active workflows and start matching executions"
)
def submit_event(
    request: TriggerEventRequest,
    dispatcher: TriggerDispatcher = Depends(get_dispatcher)
) -> EventResponse:
    event_fields = request.model_dump(exclude_none=True)
    try:
        event = TriggerEvent(**event_fields)
        dispatch = dispatcher.dispatch(event)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("dispatching the event", e)

    return EventResponse(
        results=[TriggerResultResponse(workflow_id=r.workflow_id, triggered=r.triggered, reason=r.reason)
                 for r in dispatch.results],
        executions=[ExecutionSummary.from_context(context) for context in dispatch.executions],
        skipped=dispatch.skipped,
    )


@router.get("/executions/{execution_id}", response_model=ExecutionSummary, summary="Get an execution")
def get_execution(
    execution_id: str,
    state_manager: StateManager = Depends(get_state_manager)
) -> ExecutionSummary:
    try:
        context = state_manager.get_execution(execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    if context is None:
        raise _not_found("Execution", execution_id)
    return ExecutionSummary.from_context(context)


@router.get("/executions/{execution_id}/logs", response_model=List[LogEntry], summary="Get execution logs")
def get_execution_logs(
    execution_id: str,
    state_manager: StateManager = Depends(get_state_manager)
) -> List[LogEntry]:
    try:
        if state_manager.get_execution(execution_id) is None:
            raise _not_found("Execution", execution_id)
        return state_manager.get_execution_logs(execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/executions/{execution_id}/summary", response_model=ExecutionLogSummary,
            summary="Get per-node counts and durations of an execution")
def get_execution_summary(
    execution_id: str,
    state_manager: StateManager = Depends(get_state_manager)
) -> ExecutionLogSummary:
    try:
        if state_manager.get_execution(execution_id) is None:
            raise _not_found("Execution", execution_id)
        return state_manager.get_execution_summary(execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/scheduler/resume-due", response_model=SchedulerResult, summary="Resume due executions now")
def resume_due(scheduler: ResumptionScheduler = Depends(get_scheduler)) -> SchedulerResult:
    try:
        return scheduler.resume_due()
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/schedules",
    response_model=WorkflowSchedule,
    status_code=status.HTTP_201_CREATED,
    summary="Schedule a workflow",
    description="Run a workflow for its organization's target contacts once, on an interval or on a cron expression"
)
def create_schedule(
    request: CreateScheduleRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager),
    schedule_manager: ScheduleManager = Depends(get_schedule_manager)
) -> WorkflowSchedule:
    """
    Create a schedule for an existing workflow.

    Raises:
        HTTPException: 404 if the workflow does not exist, 400 if no run time can be computed
    """
    try:
        workflow = workflow_manager.get_workflow(request.workflow_id)
        if workflow is None:
            raise _not_found("Workflow", request.workflow_id)
        return schedule_manager.create_schedule(
            workflow.id,
            workflow.organization_id,
            request.schedule_type,
            request.config,
            tz_name=request.timezone,
            max_executions=request.max_executions,
        )
    except WorkflowEngineError as e:
        logger.warning(f"Workflow engine error during schedule creation: {str(e)}")
        raise _http_error(e)


@router.get("/schedules/{schedule_id}", response_model=WorkflowSchedule, summary="Get a schedule")
def get_schedule(
    schedule_id: str,
    schedule_manager: ScheduleManager = Depends(get_schedule_manager)
) -> WorkflowSchedule:
    try:
        schedule = schedule_manager.get_schedule(schedule_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    if schedule is None:
        raise _not_found("Schedule", schedule_id)
    return schedule


@router.post("/schedules/{schedule_id}/deactivate", response_model=WorkflowSchedule,
             summary="Deactivate a schedule")
def deactivate_schedule(
    schedule_id: str,
    schedule_manager: ScheduleManager = Depends(get_schedule_manager)
) -> WorkflowSchedule:
    try:
        if not schedule_manager.deactivate_schedule(schedule_id):
            raise _not_found("Schedule", schedule_id)
        return schedule_manager.get_schedule(schedule_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/scheduler/run-schedules", response_model=ScheduleRunResult, summary="Run due schedules now")
def run_schedules(runner: ScheduledWorkflowRunner = Depends(get_schedule_runner)) -> ScheduleRunResult:
    try:
        return runner.process_due_schedules()
    except WorkflowEngineError as e:
        raise _http_error(e)
