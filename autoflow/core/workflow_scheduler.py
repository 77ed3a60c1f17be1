"""Scheduled workflow runs: one-time, interval and cron schedules."""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.core import (
    ScheduleConfig,
    ScheduleType,
    TriggerConfig,
    TriggerEvent,
    WorkflowDefinition,
    WorkflowSchedule,
    WorkflowStatusEnum,
    utcnow,
)
from ..storage.database import get_session_factory
from ..storage.models import WorkflowScheduleModel
from .exceptions import ConfigurationError, DuplicateExecutionError, StorageError, WorkflowEngineError
from .logging import clear_logging_context, get_logger, set_logging_context
from .reentry import ReentryController
from .workflow_manager import WorkflowManager

logger = get_logger(__name__)

SCHEDULE_TRIGGER_TYPE = "schedule"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"


def _zone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError(f"Unknown timezone: {name}", config_key="timezone")


def next_cron_time(expression: str, after: datetime, tz_name: str = "UTC") -> datetime:
    """
    First cron fire time strictly after ``after``.

    Args:
        expression: Five-field cron expression
        after: Naive UTC reference time
        tz_name: Zone the expression's fields are read in

    Returns:
        Naive UTC fire time

    Raises:
        ConfigurationError: If the expression or zone is invalid
    """
    if not expression or not croniter.is_valid(expression):
        raise ConfigurationError(f"Invalid cron expression: {expression}", config_key="cron_expression")
    local = after.replace(tzinfo=timezone.utc).astimezone(_zone(tz_name))
    fire_at = croniter(expression, local).get_next(datetime)
    return fire_at.astimezone(timezone.utc).replace(tzinfo=None)


def first_run_time(schedule_type: ScheduleType, config: ScheduleConfig, tz_name: str,
                   now: datetime) -> datetime:
    """
    When a new schedule first fires.

    Raises:
        ConfigurationError: If the configuration lacks what its type needs
    """
    if schedule_type == ScheduleType.ONCE:
        if config.scheduled_at is None:
            raise ConfigurationError("One-time schedules need scheduled_at", config_key="scheduled_at")
        return config.scheduled_at
    if schedule_type == ScheduleType.RECURRING:
        if config.interval_minutes is None:
            raise ConfigurationError("Recurring schedules need interval_minutes", config_key="interval_minutes")
        return config.start_at or now
    return next_cron_time(config.cron_expression, now, tz_name)


def following_run_time(schedule: WorkflowSchedule, ran_at: datetime) -> Optional[datetime]:
    """When a schedule fires after a run at ``ran_at``; None once it is exhausted."""
    config = schedule.config
    if schedule.schedule_type == ScheduleType.ONCE:
        return None
    if schedule.schedule_type == ScheduleType.RECURRING:
        if not config.interval_minutes:
            return None
        next_run = ran_at + timedelta(minutes=config.interval_minutes)
        if config.end_at is not None and next_run > config.end_at:
            return None
        return next_run
    try:
        return next_cron_time(config.cron_expression, ran_at, schedule.timezone)
    except ConfigurationError as e:
        logger.error(f"Schedule {schedule.id} cannot compute its next run: {e.message}")
        return None


class ScheduleManager:
    """Stores workflow schedules."""

    def __init__(self, session_factory: Optional[sessionmaker] = None, clock: Optional[Callable[[], datetime]] = None):
        self._session_factory = session_factory
        self.clock = clock or utcnow

    @contextmanager
    def _session(self, operation: str):
        session: Session = (self._session_factory or get_session_factory())()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error during {operation}: {str(e)}")
            raise StorageError(f"Failed to {operation.replace('_', ' ')}: {str(e)}", operation=operation,
                               table=WorkflowScheduleModel.__tablename__)
        finally:
            session.close()

    def create_schedule(
        self,
        workflow_id: str,
        organization_id: str,
        schedule_type: ScheduleType,
        config: ScheduleConfig,
        tz_name: str = "UTC",
        max_executions: Optional[int] = None,
    ) -> WorkflowSchedule:
        """
        Store a new active schedule with its first run time.

        Raises:
            ConfigurationError: If the first run time cannot be computed
            StorageError: If storage fails
        """
        _zone(tz_name)
        schedule_type = ScheduleType(schedule_type)
        schedule = WorkflowSchedule(
            workflow_id=workflow_id,
            organization_id=organization_id,
            schedule_type=schedule_type,
            config=config,
            timezone=tz_name,
            max_executions=max_executions,
            next_run_at=first_run_time(schedule_type, config, tz_name, self.clock()),
        )
        with self._session("create_schedule") as session:
            session.add(WorkflowScheduleModel(
                id=schedule.id,
                workflow_id=schedule.workflow_id,
                organization_id=schedule.organization_id,
                schedule_type=schedule.schedule_type.value,
                config=schedule.config.model_dump(mode="json"),
                timezone=schedule.timezone,
                is_active=True,
                next_run_at=schedule.next_run_at,
                max_executions=schedule.max_executions,
                execution_count=0,
            ))
        logger.info(f"Created {schedule_type.value} schedule {schedule.id} for workflow {workflow_id}, "
                    f"first run at {schedule.next_run_at.isoformat()}")
        return schedule

    def get_schedule(self, schedule_id: str) -> Optional[WorkflowSchedule]:
        with self._session("get_schedule") as session:
            record = session.get(WorkflowScheduleModel, schedule_id)
            return self._to_schedule(record) if record else None

    def list_due_schedules(self, now: datetime, limit: int = 100) -> List[WorkflowSchedule]:
        """Active schedules whose next run has arrived, earliest first."""
        with self._session("list_due_schedules") as session:
            records = (
                session.query(WorkflowScheduleModel)
                .filter(WorkflowScheduleModel.is_active.is_(True))
                .filter(WorkflowScheduleModel.next_run_at <= now)
                .order_by(WorkflowScheduleModel.next_run_at.asc(), WorkflowScheduleModel.id.asc())
                .limit(limit)
                .all()
            )
            return [self._to_schedule(record) for record in records]

    def deactivate_schedule(self, schedule_id: str) -> bool:
        """Stop a schedule. Returns False if it does not exist."""
        with self._session("deactivate_schedule") as session:
            record = session.get(WorkflowScheduleModel, schedule_id)
            if record is None:
                return False
            record.is_active = False
            record.next_run_at = None
        logger.info(f"Deactivated schedule {schedule_id}")
        return True

    def record_run(self, schedule: WorkflowSchedule, ran_at: datetime) -> WorkflowSchedule:
        """
        Count a completed run and plan the next one.

        The schedule deactivates when no next run exists or ``max_executions``
        is reached.
        """
        count = schedule.execution_count + 1
        next_run = following_run_time(schedule, ran_at)
        if schedule.max_executions is not None and count >= schedule.max_executions:
            next_run = None

        with self._session("record_run") as session:
            record = session.get(WorkflowScheduleModel, schedule.id)
            if record is None:
                raise StorageError(f"Schedule {schedule.id} not found", operation="record_run")
            record.last_run_at = ran_at
            record.last_run_status = RUN_COMPLETED
            record.last_error = None
            record.execution_count = count
            record.next_run_at = next_run
            record.is_active = next_run is not None
            updated = self._to_schedule(record)

        if not updated.is_active:
            logger.info(f"Schedule {schedule.id} finished after {count} run(s)")
        return updated

    def record_failure(self, schedule_id: str, error: str) -> None:
        """Flag a failed run. The next run time is left as is, so the run is retried."""
        with self._session("record_failure") as session:
            record = session.get(WorkflowScheduleModel, schedule_id)
            if record is None:
                return
            record.last_run_status = RUN_FAILED
            record.last_error = error

    @staticmethod
    def _to_schedule(record: WorkflowScheduleModel) -> WorkflowSchedule:
        return WorkflowSchedule(
            id=record.id,
            workflow_id=record.workflow_id,
            organization_id=record.organization_id,
            schedule_type=ScheduleType(record.schedule_type),
            config=ScheduleConfig.model_validate(record.config or {}),
            timezone=record.timezone or "UTC",
            is_active=bool(record.is_active),
            next_run_at=record.next_run_at,
            last_run_at=record.last_run_at,
            last_run_status=record.last_run_status,
            last_error=record.last_error,
            max_executions=record.max_executions,
            execution_count=record.execution_count or 0,
        )


class ScheduleRunResult(BaseModel):
    """Outcome of one schedule sweep."""
    schedules_processed: int = 0
    executions_started: int = 0
    skipped: int = 0
    errors: List[Dict[str, str]] = Field(default_factory=list)


class ScheduledWorkflowRunner:
    """Starts scheduled workflows for their target contacts.

    Args:
        schedule_manager: Source of due schedules
        workflow_manager: Loads the scheduled workflows
        engine_factory: Builds an ExecutionEngine for a workflow
        contact_directory: Lists target contacts and loads credentials
        reentry: Applies each workflow's re-entry settings; optional
        batch_size: Schedules fetched per sweep
        max_contacts: Contacts targeted per run
        clock: Returns the current naive UTC time
    """

    def __init__(
        self,
        schedule_manager: ScheduleManager,
        workflow_manager: WorkflowManager,
        engine_factory: Callable,
        contact_directory,
        reentry: Optional[ReentryController] = None,
        batch_size: int = 100,
        max_contacts: int = 1000,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.schedule_manager = schedule_manager
        self.workflow_manager = workflow_manager
        self.engine_factory = engine_factory
        self.contact_directory = contact_directory
        self.reentry = reentry
        self.batch_size = batch_size
        self.max_contacts = max_contacts
        self.clock = clock or utcnow

    def process_due_schedules(self, now: Optional[datetime] = None) -> ScheduleRunResult:
        """
        Run every active schedule whose next run time has passed.

        A schedule whose run fails keeps its next run time and is retried on
        the following sweep.
        """
        now = now or self.clock()
        result = ScheduleRunResult()
        for schedule in self.schedule_manager.list_due_schedules(now, self.batch_size):
            result.schedules_processed += 1
            token = set_logging_context(schedule_id=schedule.id, workflow_id=schedule.workflow_id)
            try:
                result.executions_started += self._run_schedule(schedule, now, result)
                self.schedule_manager.record_run(schedule, now)
            except WorkflowEngineError as e:
                logger.error(f"Scheduled run of {schedule.id} failed: {e.message}")
                result.errors.append({"schedule_id": schedule.id, "error": e.message})
                self._record_failure(schedule.id, e.message)
            finally:
                clear_logging_context(token)

        if result.schedules_processed:
            logger.info(f"Schedule sweep: {result.executions_started} executions started from "
                        f"{result.schedules_processed} schedules")
        return result

    def _run_schedule(self, schedule: WorkflowSchedule, now: datetime, result: ScheduleRunResult) -> int:
        workflow = self.workflow_manager.get_workflow(schedule.workflow_id)
        if workflow is None or workflow.status != WorkflowStatusEnum.ACTIVE:
            logger.warning(f"Workflow {schedule.workflow_id} not found or not active, nothing started")
            return 0

        contacts = self.contact_directory.list_contacts(schedule.organization_id, self._target_tags(workflow),
                                                        limit=self.max_contacts)
        if not contacts:
            logger.info(f"No target contacts for workflow {workflow.id}")
            return 0
        credentials = self.contact_directory.get_channel_credentials(schedule.organization_id)

        started = 0
        for contact in contacts:
            if self.reentry is not None:
                decision = self.reentry.check_entry(workflow.id, contact.id, workflow.settings)
                if not decision.eligible:
                    result.skipped += 1
                    continue
            event = TriggerEvent(type=SCHEDULE_TRIGGER_TYPE, organization_id=schedule.organization_id,
                                 contact_id=contact.id, payload={"schedule_id": schedule.id}, timestamp=now)
            try:
                self.engine_factory(workflow).start_execution(
                    contact.id,
                    schedule.organization_id,
                    contact_profile=contact,
                    channel_credentials=credentials,
                    trigger_event=event,
                )
            except DuplicateExecutionError as e:
                logger.info(f"Skipped contact {contact.id}: {e.message}")
                result.skipped += 1
                continue
            except WorkflowEngineError as e:
                logger.error(f"Failed to start workflow {workflow.id} for contact {contact.id}: {e.message}")
                result.errors.append({"schedule_id": schedule.id, "contact_id": contact.id, "error": e.message})
                continue
            started += 1

        logger.info(f"Started workflow {workflow.id} for {started} of {len(contacts)} contacts")
        return started

    @staticmethod
    def _target_tags(workflow: WorkflowDefinition) -> List[str]:
        trigger = workflow.trigger_node
        if trigger is None:
            return []
        try:
            return TriggerConfig.model_validate(trigger.config).tag_ids
        except ValidationError:
            logger.warning(f"Malformed trigger configuration on workflow {workflow.id}, targeting all contacts")
            return []

    def _record_failure(self, schedule_id: str, error: str) -> None:
        try:
            self.schedule_manager.record_failure(schedule_id, error)
        except WorkflowEngineError as e:
            logger.error(f"Failed to record schedule failure for {schedule_id}: {e.message}")
