"""Resumption scheduler for waiting executions."""

import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models.core import ExecutionContext, ExecutionStatusEnum, LogEventType, WorkflowDefinition, utcnow
from .exceptions import ExecutionEngineError, WorkflowEngineError
from .logging import get_logger
from .state_manager import StateManager
from .workflow_manager import WorkflowManager

logger = get_logger(__name__)


class SchedulerResult(BaseModel):
    """Outcome of one sweep."""
    processed: int = 0
    resumed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[Dict[str, str]] = Field(default_factory=list)


class ResumptionScheduler:
    """Resumes waiting executions once their wake time has passed.

    Args:
        state_manager: Source of due executions
        workflow_manager: Loads each execution's workflow definition
        engine_factory: Builds an ExecutionEngine for a workflow
        contact_directory: Reloads contact profiles and credentials; optional
        schedule_runner: Starts due scheduled workflows on each loop tick; optional
        batch_size: Executions fetched per query
        clock: Returns the current naive UTC time
    """

    def __init__(
        self,
        state_manager: StateManager,
        workflow_manager: WorkflowManager,
        engine_factory: Callable,
        contact_directory=None,
        schedule_runner=None,
        batch_size: int = 100,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.state_manager = state_manager
        self.workflow_manager = workflow_manager
        self.engine_factory = engine_factory
        self.contact_directory = contact_directory
        self.schedule_runner = schedule_runner
        self.batch_size = batch_size
        self.clock = clock or utcnow
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def resume_due(self, now: Optional[datetime] = None) -> SchedulerResult:
        """
        Resume every waiting execution with ``wake_at <= now``.

        Batches are paged by ``(wake_at, execution_id)`` until a short batch
        is returned, so executions left waiting by an error never hide the
        ones behind them. Errors are collected per execution and never stop
        the sweep.
        """
        now = now or self.clock()
        result = SchedulerResult()
        cursor = None
        workflows: Dict[str, Optional[WorkflowDefinition]] = {}

        while True:
            batch = self.state_manager.list_due_executions(now, self.batch_size, after=cursor)
            if not batch:
                break
            # resuming clears wake_at on the context
            cursor = (batch[-1].wake_at, batch[-1].execution_id)
            for context in batch:
                result.processed += 1
                self._resume_one(context, workflows, result)
            if len(batch) < self.batch_size:
                break

        if result.processed:
            logger.info(f"Resumption sweep: {result.resumed} resumed, {result.skipped} skipped, "
                        f"{result.failed} failed of {result.processed}")
        return result

    def _resume_one(self, context: ExecutionContext, workflows: Dict[str, Optional[WorkflowDefinition]],
                    result: SchedulerResult) -> None:
        try:
            if context.workflow_id not in workflows:
                workflows[context.workflow_id] = self.workflow_manager.get_workflow(context.workflow_id)
            workflow = workflows[context.workflow_id]

            if workflow is None:
                self._fail_orphan(context)
                result.failed += 1
                return

            self._attach_collaborator_data(context)
            engine = self.engine_factory(workflow)
            engine.resume_execution(context)
            result.resumed += 1
        except ExecutionEngineError as e:
            logger.info(f"Execution {context.execution_id} not resumed: {e.message}")
            result.skipped += 1
        except WorkflowEngineError as e:
            logger.error(f"Failed to resume execution {context.execution_id}: {e.message}")
            result.errors.append({"execution_id": context.execution_id, "error": e.message})
        except Exception as e:
            logger.error(f"Unexpected error resuming execution {context.execution_id}: {str(e)}", exc_info=True)
            result.errors.append({"execution_id": context.execution_id, "error": str(e)})

    def _fail_orphan(self, context: ExecutionContext) -> None:
        message = f"Workflow not found: {context.workflow_id}"
        if not self.state_manager.claim_for_resume(context.execution_id):
            return
        context.status = ExecutionStatusEnum.FAILED
        context.error_message = message
        context.error_node_id = context.current_node_id
        context.wake_at = None
        context.completed_at = self.clock()
        self.state_manager.save_execution(context)
        self.state_manager.log_event(context.execution_id, LogEventType.WORKFLOW_FAILED, message,
                                     node_id=context.current_node_id)
        logger.error(f"Execution {context.execution_id} failed: {message}")

    def _attach_collaborator_data(self, context: ExecutionContext) -> None:
        if self.contact_directory is None:
            return
        context.contact = self.contact_directory.get_contact_profile(context.contact_id)
        context.credentials = self.contact_directory.get_channel_credentials(context.organization_id)

    def start(self, interval: float = 60.0) -> None:
        """Run ``resume_due`` every ``interval`` seconds on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, args=(interval,), name="resumption-scheduler",
                                        daemon=True)
        self._thread.start()
        logger.info(f"Resumption scheduler started with {interval}s interval")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Resumption scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                self.resume_due()
            except Exception as e:
                logger.error(f"Resumption sweep failed: {str(e)}", exc_info=True)
            if self.schedule_runner is not None:
                try:
                    self.schedule_runner.process_due_schedules()
                except Exception as e:
                    logger.error(f"Schedule sweep failed: {str(e)}", exc_info=True)
            self._stop_event.wait(interval)
