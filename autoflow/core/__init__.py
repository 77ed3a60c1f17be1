"""Core automation engine components."""

from .exceptions import (
    WorkflowEngineError,
    ConfigurationError,
    WorkflowValidationError,
    NodeExecutionError,
    MessagingError,
    ExecutionEngineError,
    StateManagementError,
    StorageError,
    DuplicateExecutionError,
)
from .logging import setup_logging, get_logger
from .state_manager import StateManager
from .workflow_manager import WorkflowManager
from .node_executors import NodeExecutorRegistry, NodeOutcome, build_default_registry
from .execution_engine import ExecutionEngine
from .reentry import ReentryController, EntryDecision
from .trigger_service import TriggerService, TriggerDispatcher, DispatchResult
from .scheduler import ResumptionScheduler, SchedulerResult
from .workflow_scheduler import ScheduleManager, ScheduledWorkflowRunner, ScheduleRunResult

__all__ = [
    "WorkflowEngineError",
    "ConfigurationError",
    "WorkflowValidationError",
    "NodeExecutionError",
    "MessagingError",
    "ExecutionEngineError",
    "StateManagementError",
    "StorageError",
    "DuplicateExecutionError",
    "setup_logging",
    "get_logger",
    "StateManager",
    "WorkflowManager",
    "NodeExecutorRegistry",
    "NodeOutcome",
    "build_default_registry",
    "ExecutionEngine",
    "ReentryController",
    "EntryDecision",
    "TriggerService",
    "TriggerDispatcher",
    "DispatchResult",
    "ResumptionScheduler",
    "SchedulerResult",
    "ScheduleManager",
    "ScheduledWorkflowRunner",
    "ScheduleRunResult",
]
