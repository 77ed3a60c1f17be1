"""Execution engine driving one workflow's step loop."""

from typing import Any, Callable, Dict, Optional
from datetime import datetime

from ..models.core import (
    ChannelCredentials,
    ContactProfile,
    ExecutionContext,
    ExecutionStatusEnum,
    LogEventType,
    NodeDefinition,
    TriggerEvent,
    WorkflowDefinition,
    utcnow,
)
from .error_recovery import NoRetryPolicy, RetryPolicy
from .exceptions import ConfigurationError, ExecutionEngineError, NodeExecutionError
from .logging import clear_logging_context, get_logger, set_logging_context
from .node_executors import NodeExecutorRegistry, NodeOutcome, OutcomeKind, build_default_registry
from .state_manager import StateManager

logger = get_logger(__name__)

DEFAULT_MAX_STEPS = 1000


class ExecutionEngine:
    """Runs executions of a single workflow.

    The step loop is an explicit state machine over ``context.status`` and
    ``context.current_node_id``. It runs synchronously until the execution is
    waiting, completed or failed, persisting at each of those points.
    """

    def __init__(
        self,
        workflow: WorkflowDefinition,
        state_manager: Optional[StateManager] = None,
        executors: Optional[NodeExecutorRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_steps: int = DEFAULT_MAX_STEPS,
    ):
        """
        Initialize the engine.

        Args:
            workflow: Workflow definition, read-only for the engine
            state_manager: Execution persistence; executions are not persisted when None
            executors: Node executor registry; defaults to the built-in executors without collaborators
            retry_policy: Decides whether failed nodes are retried; failures are final by default
            clock: Returns the current naive UTC time
            max_steps: Upper bound on nodes executed by one start or resume call
        """
        self.workflow = workflow
        self.state_manager = state_manager
        self.executors = executors or build_default_registry(clock=clock)
        self.retry_policy = retry_policy or NoRetryPolicy()
        self.clock = clock or utcnow
        self.max_steps = max_steps

    def start_execution(
        self,
        contact_id: str,
        organization_id: str,
        contact_profile: Optional[ContactProfile] = None,
        channel_credentials: Optional[ChannelCredentials] = None,
        trigger_event: Optional[TriggerEvent] = None,
    ) -> ExecutionContext:
        """
        Start a new execution at the trigger node and run it until it stops.

        Args:
            contact_id: Contact entering the workflow
            organization_id: Owning organization
            contact_profile: Contact attributes for rendering and conditions
            channel_credentials: Messaging credentials for message nodes
            trigger_event: Event that started the execution

        Returns:
            The execution context in its waiting, completed or failed state

        Raises:
            ConfigurationError: If the workflow has no trigger node
            DuplicateExecutionError: If storage already holds an active execution
                for this contact and the workflow disallows re-entry
        """
        trigger = self.workflow.trigger_node
        if trigger is None:
            raise ConfigurationError("Workflow must have a trigger node", workflow_id=self.workflow.id)

        context = ExecutionContext(
            workflow_id=self.workflow.id,
            contact_id=contact_id,
            organization_id=organization_id,
            current_node_id=trigger.id,
            status=ExecutionStatusEnum.RUNNING,
            contact=contact_profile,
            credentials=channel_credentials,
            trigger_type=trigger_event.type if trigger_event else None,
            input_data=dict(trigger_event.payload) if trigger_event else {},
            started_at=self.clock(),
        )

        token = set_logging_context(
            execution_id=context.execution_id,
            workflow_id=context.workflow_id,
            contact_id=contact_id,
        )
        try:
            if self.state_manager is not None:
                self.state_manager.create_execution(context, exclusive=not self.workflow.settings.allow_reentry)

            logger.info(f"Starting execution {context.execution_id} of workflow {self.workflow.id}")
            self._log(context, LogEventType.WORKFLOW_START, "Workflow execution started",
                      details={"trigger_type": context.trigger_type})
            self._run_or_abort(context)
        finally:
            clear_logging_context(token)

        return context

    def resume_execution(self, context: ExecutionContext) -> None:
        """
        Continue a waiting execution from its persisted node.

        The context is mutated in place.

        Raises:
            ExecutionEngineError: If the context is not waiting, belongs to another
                workflow, or was already claimed by another resumer
        """
        if context.status != ExecutionStatusEnum.WAITING:
            raise ExecutionEngineError(
                f"Execution {context.execution_id} is {context.status.value}, only waiting executions can resume",
                execution_id=context.execution_id,
                workflow_id=context.workflow_id,
            )
        if context.workflow_id != self.workflow.id:
            raise ExecutionEngineError(
                f"Execution {context.execution_id} belongs to workflow {context.workflow_id}",
                execution_id=context.execution_id,
                workflow_id=self.workflow.id,
            )

        token = set_logging_context(
            execution_id=context.execution_id,
            workflow_id=context.workflow_id,
            contact_id=context.contact_id,
        )
        try:
            if self.state_manager is not None and not self.state_manager.claim_for_resume(context.execution_id):
                raise ExecutionEngineError(
                    f"Execution {context.execution_id} is no longer waiting",
                    execution_id=context.execution_id,
                    workflow_id=context.workflow_id,
                )

            context.status = ExecutionStatusEnum.RUNNING
            context.wake_at = None
            logger.info(f"Resuming execution {context.execution_id} at node {context.current_node_id}")
            self._log(context, LogEventType.WORKFLOW_RESUMED, "Workflow execution resumed",
                      node_id=context.current_node_id)
            self._run_or_abort(context)
        finally:
            clear_logging_context(token)

    def _run_or_abort(self, context: ExecutionContext) -> None:
        try:
            self._run(context)
        except Exception as e:
            self._abort(context, e)
            raise

    def _abort(self, context: ExecutionContext, error: Exception) -> None:
        """Fail an execution whose step loop raised, typically on a storage write.

        The record is forced to failed so it neither stays running nor keeps
        the contact's active key. The original error is re-raised by the caller.
        """
        message = f"Execution aborted: {getattr(error, 'message', None) or str(error)}"
        node_id = context.current_node_id
        context.status = ExecutionStatusEnum.FAILED
        context.error_message = message
        context.error_node_id = node_id
        context.wake_at = None
        context.completed_at = self.clock()
        logger.error(f"Execution {context.execution_id} aborted at node {node_id}: {error}")

        if self.state_manager is None:
            return
        try:
            self.state_manager.mark_failed(context.execution_id, message, node_id=node_id,
                                           completed_at=context.completed_at)
        except Exception as e:
            logger.error(f"Failed to mark execution {context.execution_id} as failed: {str(e)}")
        self._log(context, LogEventType.WORKFLOW_FAILED, message, node_id=node_id)

    def _run(self, context: ExecutionContext) -> None:
        steps = 0
        while context.status == ExecutionStatusEnum.RUNNING:
            if steps >= self.max_steps:
                self._fail(context, f"Step limit of {self.max_steps} exceeded", context.current_node_id)
                return
            steps += 1
            self._step(context)

    def _step(self, context: ExecutionContext) -> None:
        node_id = context.current_node_id
        node = self.workflow.get_node(node_id)
        if node is None:
            self._fail(context, f"Node not found: {node_id}", node_id)
            return

        executor = self.executors.get(node.type)
        if executor is None:
            self._fail(context, f"Unknown node type: {node.type}", node.id)
            return

        self._log(context, LogEventType.NODE_START, f"Executing {node.type} node", node_id=node.id)
        try:
            outcome = executor.execute(node, context, self.workflow)
        except NodeExecutionError as e:
            context.execution_path.append(node.id)
            self._handle_node_error(context, node, e)
            return
        except Exception as e:
            logger.error(f"Unexpected error in node {node.id}: {str(e)}", exc_info=True)
            context.execution_path.append(node.id)
            error = NodeExecutionError(f"Node {node.id} failed: {str(e)}", node_id=node.id,
                                       execution_id=context.execution_id, recoverable=False)
            self._handle_node_error(context, node, error)
            return

        context.execution_path.append(node.id)
        self._apply_outcome(context, node, outcome)

    def _apply_outcome(self, context: ExecutionContext, node: NodeDefinition, outcome: NodeOutcome) -> None:
        details = {"output": context.data[node.id]} if node.id in context.data else None
        self._log(context, LogEventType.NODE_COMPLETE, f"Completed {node.type} node", node_id=node.id,
                  details=details)

        if outcome.kind == OutcomeKind.SUSPEND:
            context.current_node_id = outcome.advance_to
            context.wake_at = outcome.wake_at
            context.status = ExecutionStatusEnum.WAITING
            self._persist(context)
            logger.info(f"Execution {context.execution_id} waiting until {outcome.wake_at.isoformat()}")
            self._log(context, LogEventType.WORKFLOW_SUSPENDED, "Workflow execution suspended",
                      node_id=node.id,
                      details={"wake_at": outcome.wake_at.isoformat(), "resume_node_id": outcome.advance_to})
        elif outcome.kind == OutcomeKind.TERMINAL or outcome.advance_to is None:
            self._complete(context)
        else:
            context.current_node_id = outcome.advance_to

    def _handle_node_error(self, context: ExecutionContext, node: NodeDefinition, error: NodeExecutionError) -> None:
        self._log(context, LogEventType.NODE_ERROR, error.message, node_id=node.id,
                  details={"error_code": error.error_code})

        wake_at = self.retry_policy.next_attempt_at(error, context.retry_count, self.clock())
        if wake_at is not None:
            context.retry_count += 1
            context.wake_at = wake_at
            context.status = ExecutionStatusEnum.WAITING
            self._persist(context)
            logger.warning(f"Node {node.id} failed, retry {context.retry_count} scheduled for {wake_at.isoformat()}")
            self._log(context, LogEventType.WORKFLOW_SUSPENDED, "Node retry scheduled", node_id=node.id,
                      details={"wake_at": wake_at.isoformat(), "retry_count": context.retry_count,
                               "error": error.message})
            return

        self._fail(context, error.message, node.id)

    def _complete(self, context: ExecutionContext) -> None:
        context.status = ExecutionStatusEnum.COMPLETED
        context.wake_at = None
        context.completed_at = self.clock()
        self._persist(context)
        logger.info(f"Execution {context.execution_id} completed after {len(context.execution_path)} nodes")
        self._log(context, LogEventType.WORKFLOW_COMPLETE, "Workflow execution completed",
                  details={"execution_path": list(context.execution_path)})

    def _fail(self, context: ExecutionContext, message: str, node_id: Optional[str]) -> None:
        context.status = ExecutionStatusEnum.FAILED
        context.error_message = message
        context.error_node_id = node_id
        context.wake_at = None
        context.completed_at = self.clock()
        self._persist(context)
        logger.error(f"Execution {context.execution_id} failed at node {node_id}: {message}")
        self._log(context, LogEventType.WORKFLOW_FAILED, message, node_id=node_id)

    def _persist(self, context: ExecutionContext) -> None:
        if self.state_manager is not None:
            self.state_manager.save_execution(context)

    def _log(self, context: ExecutionContext, event_type: LogEventType, message: str,
             node_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        logger.debug(f"[{event_type.value}] {message}" + (f" ({node_id})" if node_id else ""))
        if self.state_manager is not None:
            self.state_manager.log_event(context.execution_id, event_type, message, node_id=node_id, details=details)
