"""Data models for the automation engine."""

from .core import (
    NodeType,
    ExecutionStatusEnum,
    WorkflowStatusEnum,
    ExecutionCountMode,
    TriggerEventType,
    LogEventType,
    ValidationResult,
    NodeDefinition,
    EdgeDefinition,
    WorkflowSettings,
    WorkflowDefinition,
    ContactProfile,
    ChannelCredentials,
    ExecutionContext,
    ExecutionSummary,
    LogEntry,
    TriggerEvent,
    TriggerEvaluationResult,
    utcnow,
)

__all__ = [
    "NodeType",
    "ExecutionStatusEnum",
    "WorkflowStatusEnum",
    "ExecutionCountMode",
    "TriggerEventType",
    "LogEventType",
    "ValidationResult",
    "NodeDefinition",
    "EdgeDefinition",
    "WorkflowSettings",
    "WorkflowDefinition",
    "ContactProfile",
    "ChannelCredentials",
    "ExecutionContext",
    "ExecutionSummary",
    "LogEntry",
    "TriggerEvent",
    "TriggerEvaluationResult",
    "utcnow",
]
