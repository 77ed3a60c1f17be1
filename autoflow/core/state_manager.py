"""Persistence of execution records and execution logs."""

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.core import (
    ACTIVE_EXECUTION_STATUSES,
    ExecutionContext,
    ExecutionLogSummary,
    ExecutionStatusEnum,
    LogEntry,
    LogEventType,
    NodeLogSummary,
    utcnow,
)
from ..storage.database import get_session_factory
from ..storage.models import ExecutionLogModel, ExecutionModel
from .error_recovery import RetryConfig, with_retry
from .exceptions import DuplicateExecutionError, StateManagementError, StorageError, TransientError
from .logging import get_logger

logger = get_logger(__name__)

_storage_retry = RetryConfig(max_attempts=3, base_delay=0.2, retryable_exceptions=[StorageError, TransientError])
_NODE_EVENTS = (LogEventType.NODE_START, LogEventType.NODE_COMPLETE, LogEventType.NODE_ERROR)


def active_key_for(workflow_id: str, contact_id: str) -> str:
    return f"{workflow_id}:{contact_id}"


class StateManager:
    """Stores execution contexts so waiting executions survive restarts.

    Only the step loop's state is persisted. Contact profiles and channel
    credentials are reloaded on resume.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """Initialize the StateManager.

        Args:
            session_factory: Optional session factory. Defaults to the global database.
        """
        self._session_factory = session_factory
        logger.info("StateManager initialized")

    @contextmanager
    def _session(self, operation: str, execution_id: Optional[str] = None):
        session: Session = (self._session_factory or get_session_factory())()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error during {operation}: {str(e)}")
            raise StorageError(
                f"Failed to {operation.replace('_', ' ')}: {str(e)}",
                operation=operation,
                table=ExecutionModel.__tablename__,
            ).add_context(execution_id=execution_id)
        finally:
            session.close()

    @with_retry(_storage_retry)
    def create_execution(self, context: ExecutionContext, exclusive: bool = False) -> None:
        """
        Insert a new execution record.

        Args:
            context: Freshly created execution context
            exclusive: Reserve the (workflow, contact) pair while the execution is active

        Raises:
            DuplicateExecutionError: If ``exclusive`` and an active execution already holds the pair
            StorageError: If database operations fail
        """
        active_key = active_key_for(context.workflow_id, context.contact_id) if exclusive else None
        try:
            with self._session("create_execution", context.execution_id) as session:
                session.add(ExecutionModel(
                    id=context.execution_id,
                    workflow_id=context.workflow_id,
                    contact_id=context.contact_id,
                    organization_id=context.organization_id,
                    status=context.status.value,
                    active_key=active_key,
                    current_node_id=context.current_node_id,
                    execution_path=list(context.execution_path),
                    data=dict(context.data),
                    input_data=dict(context.input_data),
                    trigger_type=context.trigger_type,
                    retry_count=context.retry_count,
                    started_at=context.started_at,
                ))
        except IntegrityError as e:
            if active_key is not None:
                raise DuplicateExecutionError(
                    f"Contact {context.contact_id} already has an active execution of workflow {context.workflow_id}",
                    workflow_id=context.workflow_id,
                    contact_id=context.contact_id,
                )
            raise StorageError(f"Failed to create execution: {str(e)}", operation="create_execution")

        logger.debug(f"Created execution record {context.execution_id}")

    @with_retry(_storage_retry)
    def save_execution(self, context: ExecutionContext) -> None:
        """
        Write the context's current state to its record.

        The active key is released once the execution is terminal.

        Raises:
            StateManagementError: If the record does not exist
            StorageError: If database operations fail
        """
        with self._session("save_execution", context.execution_id) as session:
            record = session.get(ExecutionModel, context.execution_id)
            if record is None:
                raise StateManagementError(
                    f"Execution {context.execution_id} not found",
                    execution_id=context.execution_id,
                    operation="save_execution",
                )
            self._apply(record, context)

    @staticmethod
    def _apply(record: ExecutionModel, context: ExecutionContext) -> None:
        record.status = context.status.value
        record.current_node_id = context.current_node_id
        record.execution_path = list(context.execution_path)
        record.data = dict(context.data)
        record.retry_count = context.retry_count
        record.error_message = context.error_message
        record.error_node_id = context.error_node_id
        record.wake_at = context.wake_at
        record.completed_at = context.completed_at
        if context.is_terminal:
            record.active_key = None

    def claim_for_resume(self, execution_id: str) -> bool:
        """
        Atomically move a waiting execution to running.

        Returns:
            True if this caller won the claim, False if the record is no longer waiting
        """
        with self._session("claim_for_resume", execution_id) as session:
            result = session.execute(
                update(ExecutionModel)
                .where(ExecutionModel.id == execution_id)
                .where(ExecutionModel.status == ExecutionStatusEnum.WAITING.value)
                .values(status=ExecutionStatusEnum.RUNNING.value, wake_at=None, updated_at=utcnow())
            )
            return result.rowcount == 1

    def get_execution(self, execution_id: str) -> Optional[ExecutionContext]:
        with self._session("get_execution", execution_id) as session:
            record = session.get(ExecutionModel, execution_id)
            return self._to_context(record) if record else None

    def list_due_executions(self, now: Optional[datetime] = None, limit: int = 100,
                            after: Optional[Tuple[datetime, str]] = None) -> List[ExecutionContext]:
        """
        Waiting executions whose wake time has passed, earliest first.

        Args:
            now: Cut-off wake time; defaults to the current time
            limit: Maximum number of records returned
            after: ``(wake_at, execution_id)`` of the last record of the previous
                page; only records ordered strictly after it are returned
        """
        now = now or utcnow()
        with self._session("list_due_executions") as session:
            query = (
                session.query(ExecutionModel)
                .filter(ExecutionModel.status == ExecutionStatusEnum.WAITING.value)
                .filter(ExecutionModel.wake_at <= now)
            )
            if after is not None:
                wake_at, execution_id = after
                query = query.filter(or_(
                    ExecutionModel.wake_at > wake_at,
                    and_(ExecutionModel.wake_at == wake_at, ExecutionModel.id > execution_id),
                ))
            records = (
                query.order_by(ExecutionModel.wake_at.asc(), ExecutionModel.id.asc())
                .limit(limit)
                .all()
            )
            return [self._to_context(record) for record in records]

    def mark_failed(self, execution_id: str, message: str, node_id: Optional[str] = None,
                    completed_at: Optional[datetime] = None) -> bool:
        """
        Force a non-terminal execution into the failed state.

        Used when the step loop cannot persist its own terminal state. The
        active key is released so the contact may enter the workflow again.

        Returns:
            True if a running or waiting record was updated
        """
        with self._session("mark_failed", execution_id) as session:
            result = session.execute(
                update(ExecutionModel)
                .where(ExecutionModel.id == execution_id)
                .where(ExecutionModel.status.in_([status.value for status in ACTIVE_EXECUTION_STATUSES]))
                .values(
                    status=ExecutionStatusEnum.FAILED.value,
                    active_key=None,
                    wake_at=None,
                    error_message=message,
                    error_node_id=node_id,
                    completed_at=completed_at or utcnow(),
                    updated_at=utcnow(),
                )
            )
            return result.rowcount == 1

    def list_executions(self, workflow_id: Optional[str] = None, contact_id: Optional[str] = None,
                        limit: int = 100) -> List[ExecutionContext]:
        with self._session("list_executions") as session:
            query = session.query(ExecutionModel)
            if workflow_id:
                query = query.filter(ExecutionModel.workflow_id == workflow_id)
            if contact_id:
                query = query.filter(ExecutionModel.contact_id == contact_id)
            records = query.order_by(ExecutionModel.started_at.desc()).limit(limit).all()
            return [self._to_context(record) for record in records]

    def count_executions(self, workflow_id: str, contact_id: str,
                         statuses: Optional[Iterable[ExecutionStatusEnum]] = None) -> int:
        """
        Count a contact's executions of a workflow.

        Args:
            workflow_id: Workflow to count
            contact_id: Contact to count
            statuses: Restrict the count to these statuses; all statuses when None

        Raises:
            StorageError: If database operations fail
        """
        with self._session("count_executions") as session:
            query = (
                session.query(func.count(ExecutionModel.id))
                .filter(ExecutionModel.workflow_id == workflow_id)
                .filter(ExecutionModel.contact_id == contact_id)
            )
            if statuses is not None:
                query = query.filter(ExecutionModel.status.in_([ExecutionStatusEnum(s).value for s in statuses]))
            return int(query.scalar() or 0)

    def log_event(self, execution_id: str, event_type: LogEventType, message: str,
                  node_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        """Append an execution log entry. Failures are logged, never raised."""
        try:
            with self._session("log_event", execution_id) as session:
                session.add(ExecutionLogModel(
                    execution_id=execution_id,
                    node_id=node_id,
                    event_type=event_type.value,
                    message=message,
                    details=details,
                    timestamp=utcnow(),
                ))
        except Exception as e:
            logger.error(f"Failed to log execution event: {str(e)}")

    def get_execution_logs(self, execution_id: str) -> List[LogEntry]:
        with self._session("get_execution_logs", execution_id) as session:
            records = (
                session.query(ExecutionLogModel)
                .filter(ExecutionLogModel.execution_id == execution_id)
                .order_by(ExecutionLogModel.id.asc())
                .all()
            )
            return [
                LogEntry(
                    timestamp=record.timestamp,
                    execution_id=record.execution_id,
                    node_id=record.node_id,
                    event_type=LogEventType(record.event_type),
                    message=record.message,
                    details=record.details,
                )
                for record in records
            ]

    def get_execution_summary(self, execution_id: str) -> ExecutionLogSummary:
        """
        Aggregate an execution's log into per-node counts and durations.

        A node run spans its ``node_start`` entry and the next ``node_complete``
        or ``node_error`` entry of the same node. Completed runs whose output
        reports a skip are counted as skipped.
        """
        nodes: Dict[str, NodeLogSummary] = {}
        started_at: Dict[str, datetime] = {}
        for entry in self.get_execution_logs(execution_id):
            if entry.node_id is None or entry.event_type not in _NODE_EVENTS:
                continue
            node = nodes.setdefault(entry.node_id, NodeLogSummary(node_id=entry.node_id))
            if entry.event_type == LogEventType.NODE_START:
                node.started += 1
                started_at[entry.node_id] = entry.timestamp
                continue

            output = (entry.details or {}).get("output")
            if entry.event_type == LogEventType.NODE_ERROR:
                node.failed += 1
            elif isinstance(output, dict) and output.get("status") == "skipped":
                node.skipped += 1
            else:
                node.completed += 1
            start = started_at.pop(entry.node_id, None)
            if start is not None:
                node.duration_ms += (entry.timestamp - start) / timedelta(milliseconds=1)

        summaries = list(nodes.values())
        return ExecutionLogSummary(
            execution_id=execution_id,
            total_nodes=sum(node.started for node in summaries),
            completed_nodes=sum(node.completed for node in summaries),
            skipped_nodes=sum(node.skipped for node in summaries),
            failed_nodes=sum(node.failed for node in summaries),
            total_duration_ms=sum(node.duration_ms for node in summaries),
            nodes=summaries,
        )

    @staticmethod
    def _to_context(record: ExecutionModel) -> ExecutionContext:
        return ExecutionContext(
            workflow_id=record.workflow_id,
            execution_id=record.id,
            contact_id=record.contact_id,
            organization_id=record.organization_id,
            current_node_id=record.current_node_id,
            execution_path=list(record.execution_path or []),
            data=dict(record.data or {}),
            status=ExecutionStatusEnum(record.status),
            retry_count=record.retry_count or 0,
            error_message=record.error_message,
            error_node_id=record.error_node_id,
            wake_at=record.wake_at,
            trigger_type=record.trigger_type,
            input_data=dict(record.input_data or {}),
            started_at=record.started_at,
            completed_at=record.completed_at,
        )
