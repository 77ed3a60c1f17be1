"""Core Pydantic models for the automation engine."""

import re
import uuid
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the SQL layer stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex}"


class NodeType(str, Enum):
    """Node types understood by the default executor registry."""
    TRIGGER = "trigger"
    MESSAGE = "message"
    DELAY = "delay"
    CONDITION = "condition"
    ACTION = "action"
    SPLIT = "split"
    GOAL = "goal"
    WAIT_UNTIL = "wait_until"


BRANCHING_NODE_TYPES = {NodeType.CONDITION.value, NodeType.SPLIT.value}


class ExecutionStatusEnum(str, Enum):
    """Lifecycle states of one contact's run through one workflow."""
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatusEnum.COMPLETED, ExecutionStatusEnum.FAILED)


ACTIVE_EXECUTION_STATUSES = (ExecutionStatusEnum.RUNNING, ExecutionStatusEnum.WAITING)


class WorkflowStatusEnum(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"


class ExecutionCountMode(str, Enum):
    """Which executions count toward ``max_executions_per_contact``."""
    ALL = "all"
    COMPLETED = "completed"


class TriggerEventType(str, Enum):
    """Known trigger event types. Events may carry other type strings."""
    CONTACT_REPLIED = "contact_replied"
    CONTACT_ADDED = "contact_added"
    TAG_APPLIED = "tag_applied"
    CUSTOM_FIELD_CHANGED = "custom_field_changed"
    WEBHOOK_RECEIVED = "webhook_received"
    DATE_TIME = "date_time"


class LogEventType(str, Enum):
    """Execution log event types."""
    NODE_START = "node_start"
    NODE_COMPLETE = "node_complete"
    NODE_ERROR = "node_error"
    WORKFLOW_START = "workflow_start"
    WORKFLOW_SUSPENDED = "workflow_suspended"
    WORKFLOW_RESUMED = "workflow_resumed"
    WORKFLOW_COMPLETE = "workflow_complete"
    WORKFLOW_FAILED = "workflow_failed"


class ValidationResult(BaseModel):
    """Result of workflow validation."""
    is_valid: bool = Field(..., description="Whether the workflow is startable and well formed")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


# ---------------------------------------------------------------------------
# Node configuration payloads
# ---------------------------------------------------------------------------

class NodeConfig(BaseModel):
    """Base for per-type node configuration. Unknown keys are ignored."""
    model_config = ConfigDict(extra="ignore")


class TriggerConfig(NodeConfig):
    trigger_type: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    match_type: str = "contains"
    case_sensitive: bool = True
    message_types: List[str] = Field(default_factory=list)
    tag_names: List[str] = Field(default_factory=list)
    tag_ids: List[str] = Field(default_factory=list)
    list_ids: List[str] = Field(default_factory=list)
    field_name: Optional[str] = None
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None


class MessageConfig(NodeConfig):
    text: Optional[str] = None
    template_id: Optional[str] = None
    template_language: str = "en"
    template_components: List[Dict[str, Any]] = Field(default_factory=list)
    media_url: Optional[str] = None
    media_type: str = "image"


class DelayConfig(NodeConfig):
    amount: float = 0
    unit: str = "minutes"


class WaitUntilConfig(NodeConfig):
    event_type: str = "specific_date"
    date: Optional[str] = None
    time: Optional[str] = Field(None, description="HH:MM on the given date")


class ConditionClause(NodeConfig):
    field: Optional[str] = None
    operator: Optional[str] = None
    value: Any = None
    logical_operator: str = "AND"


class ConditionConfig(ConditionClause):
    conditions: List[ConditionClause] = Field(default_factory=list)


class ActionConfig(NodeConfig):
    action_type: Optional[str] = None
    tag_ids: List[str] = Field(default_factory=list)
    field_name: Optional[str] = None
    field_value: Any = None
    list_id: Optional[str] = None
    notification_target: Optional[str] = None
    notification_message: Optional[str] = None


class SplitBranch(NodeConfig):
    id: str
    weight: float = 0


class SplitConfig(NodeConfig):
    branches: List[SplitBranch] = Field(default_factory=list)


class GoalConfig(NodeConfig):
    goal_name: str = "Goal"
    goal_type: str = "custom"
    notification_target: Optional[str] = None
    terminal: bool = False


# ---------------------------------------------------------------------------
# Workflow graph
# ---------------------------------------------------------------------------

class NodeDefinition(BaseModel):
    """A single step of a workflow graph."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique identifier for the node within its workflow")
    type: str = Field(..., description="Node type, e.g. trigger, message, delay")
    config: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")
    label: Optional[str] = Field(None, description="Human readable label")

    @field_validator("id")
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        if not re.match(r"^[a-zA-Z0-9_.:-]+$", id_value.strip()):
            raise ValueError("Node ID must contain only alphanumeric characters, underscores, dots, colons and hyphens")
        return id_value.strip()

    @field_validator("type")
    @classmethod
    def normalize_type(cls, node_type):
        if not node_type or not node_type.strip():
            raise ValueError("Node type cannot be empty")
        return node_type.strip().lower()


class EdgeDefinition(BaseModel):
    """A directed connection between two nodes."""
    model_config = ConfigDict(frozen=True)

    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    handle: Optional[str] = Field(None, description="Branch label for condition/split sources")

    @field_validator("source", "target")
    @classmethod
    def validate_node_ids(cls, node_id):
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()


class WorkflowSettings(BaseModel):
    allow_reentry: bool = Field(False, description="Whether a contact may enter the workflow again")
    max_executions_per_contact: Optional[int] = Field(None, description="Lifetime cap per contact")
    execution_count_mode: ExecutionCountMode = Field(
        ExecutionCountMode.ALL, description="Which executions count toward the cap"
    )

    @field_validator("max_executions_per_contact")
    @classmethod
    def validate_max_executions(cls, value):
        if value is not None and value < 0:
            raise ValueError("max_executions_per_contact cannot be negative")
        return value


class WorkflowDefinition(BaseModel):
    """Complete definition of an automation workflow."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Workflow ID")
    organization_id: str = Field(..., description="Owning organization")
    name: str = Field("Untitled workflow", description="Name of the workflow")
    description: str = Field("", description="Description of the workflow")
    nodes: List[NodeDefinition] = Field(default_factory=list)
    edges: List[EdgeDefinition] = Field(default_factory=list)
    status: WorkflowStatusEnum = Field(WorkflowStatusEnum.DRAFT)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    version: int = Field(1)

    @field_validator("nodes")
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    def get_node(self, node_id: Optional[str]) -> Optional[NodeDefinition]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def trigger_node(self) -> Optional[NodeDefinition]:
        for node in self.nodes:
            if node.type == NodeType.TRIGGER.value:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[EdgeDefinition]:
        return [edge for edge in self.edges if edge.source == node_id]

    def edge_for_handle(self, node_id: str, handle: str) -> Optional[EdgeDefinition]:
        for edge in self.outgoing_edges(node_id):
            if edge.handle == handle:
                return edge
        return None

    def validate_structure(self) -> ValidationResult:
        """Check that the workflow is startable and its edges are addressable."""
        errors: List[str] = []
        warnings: List[str] = []
        node_ids = {node.id for node in self.nodes}

        trigger_count = sum(1 for node in self.nodes if node.type == NodeType.TRIGGER.value)
        if trigger_count == 0:
            errors.append("Workflow must have a trigger node")
        elif trigger_count > 1:
            errors.append(f"Workflow must have exactly one trigger node, found {trigger_count}")

        for edge in self.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge references non-existent source node: '{edge.source}'")
            if edge.target not in node_ids:
                errors.append(f"Edge references non-existent target node: '{edge.target}'")
            if edge.source == edge.target:
                errors.append(f"Self-referencing edge not allowed: '{edge.source}'")

        known_types = {t.value for t in NodeType}
        for node in self.nodes:
            outgoing = self.outgoing_edges(node.id)
            if node.type not in known_types:
                warnings.append(f"Node '{node.id}' has unknown type '{node.type}'")
            if node.type == NodeType.CONDITION.value:
                for edge in outgoing:
                    if edge.handle not in ("true", "false"):
                        errors.append(f"Condition node '{node.id}' has edge with invalid handle '{edge.handle}'")
            elif node.type == NodeType.SPLIT.value:
                branch_ids = {branch.get("id") for branch in node.config.get("branches", []) if isinstance(branch, dict)}
                for edge in outgoing:
                    if edge.handle not in branch_ids:
                        errors.append(f"Split node '{node.id}' has edge with unknown branch handle '{edge.handle}'")
            elif len(outgoing) > 1:
                errors.append(f"Node '{node.id}' of type '{node.type}' cannot have more than one outgoing edge")

        trigger = self.trigger_node
        if trigger is not None and not errors:
            unreachable = node_ids - self._find_reachable_nodes(trigger.id)
            if unreachable:
                warnings.append(f"Unreachable nodes detected: {', '.join(sorted(unreachable))}")

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def _find_reachable_nodes(self, entry_point: str) -> Set[str]:
        """Breadth-first walk from the entry point."""
        reachable = {entry_point}
        queue = deque([entry_point])
        while queue:
            current = queue.popleft()
            for edge in self.outgoing_edges(current):
                if edge.target not in reachable:
                    reachable.add(edge.target)
                    queue.append(edge.target)
        return reachable


# ---------------------------------------------------------------------------
# Contacts and execution state
# ---------------------------------------------------------------------------

class ContactProfile(BaseModel):
    """Contact attributes available to message rendering and conditions."""
    id: str
    phone: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)

    def attributes(self) -> Dict[str, Any]:
        """Flat attribute view. Built-in attributes win over custom fields."""
        values: Dict[str, Any] = dict(self.custom_fields)
        first_name = self.name.split()[0] if self.name and self.name.strip() else None
        values.update({
            "id": self.id,
            "phone": self.phone,
            "name": self.name,
            "first_name": first_name,
            "email": self.email,
            "tags": list(self.tags),
            "custom_fields": dict(self.custom_fields),
        })
        return values


class ChannelCredentials(BaseModel):
    """Per-organization messaging credentials."""
    access_token: str
    phone_number_id: str


class ExecutionContext(BaseModel):
    """Mutable state of one contact's run through one workflow."""

    workflow_id: str
    execution_id: str = Field(default_factory=generate_execution_id)
    contact_id: str
    organization_id: str
    current_node_id: Optional[str] = None
    execution_path: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict, description="Scratch space keyed by node id")
    status: ExecutionStatusEnum = ExecutionStatusEnum.RUNNING
    retry_count: int = 0
    error_message: Optional[str] = None
    error_node_id: Optional[str] = None
    wake_at: Optional[datetime] = None
    contact: Optional[ContactProfile] = None
    credentials: Optional[ChannelCredentials] = None
    trigger_type: Optional[str] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class ExecutionSummary(BaseModel):
    """Inspectable view of an execution record, credentials excluded."""
    execution_id: str
    workflow_id: str
    contact_id: str
    organization_id: str
    status: ExecutionStatusEnum
    current_node_id: Optional[str] = None
    execution_path: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0
    error_message: Optional[str] = None
    error_node_id: Optional[str] = None
    wake_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_context(cls, context: ExecutionContext) -> "ExecutionSummary":
        return cls(**context.model_dump(exclude={"contact", "credentials", "trigger_type", "input_data"}))


class LogEntry(BaseModel):
    """Execution log entry."""
    timestamp: datetime = Field(..., description="Timestamp of the log entry")
    execution_id: str = Field(..., description="ID of the execution")
    node_id: Optional[str] = Field(None, description="ID of the node that generated the log")
    event_type: LogEventType = Field(..., description="Type of event")
    message: str = Field(..., description="Log message")
    details: Optional[Dict[str, Any]] = Field(None, description="Structured details")


class NodeLogSummary(BaseModel):
    """Per-node aggregate of an execution's log."""
    node_id: str
    started: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    duration_ms: float = Field(0.0, description="Time between each node start and its completion or error")


class ExecutionLogSummary(BaseModel):
    """Aggregate view of an execution's log."""
    execution_id: str
    total_nodes: int = 0
    completed_nodes: int = 0
    skipped_nodes: int = 0
    failed_nodes: int = 0
    total_duration_ms: float = 0.0
    nodes: List[NodeLogSummary] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Trigger evaluation
# ---------------------------------------------------------------------------

class TriggerEvent(BaseModel):
    """Normalized inbound business event. Immutable."""
    model_config = ConfigDict(frozen=True)

    type: str = Field(..., description="Event type, e.g. contact_replied")
    organization_id: str
    contact_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        if isinstance(value, Enum):
            return value.value
        return value

    @classmethod
    def contact_replied(cls, organization_id: str, contact_id: str, content: Optional[str],
                        message_type: str = "text", **extra) -> "TriggerEvent":
        payload = {"content": content, "message_type": message_type, **extra}
        return cls(type=TriggerEventType.CONTACT_REPLIED, organization_id=organization_id,
                   contact_id=contact_id, payload=payload)

    @classmethod
    def tag_applied(cls, organization_id: str, contact_id: str, tag_name: Optional[str] = None,
                    tag_id: Optional[str] = None) -> "TriggerEvent":
        return cls(type=TriggerEventType.TAG_APPLIED, organization_id=organization_id,
                   contact_id=contact_id, payload={"tag_name": tag_name, "tag_id": tag_id})

    @classmethod
    def contact_added(cls, organization_id: str, contact_id: str, list_id: Optional[str] = None,
                      **extra) -> "TriggerEvent":
        return cls(type=TriggerEventType.CONTACT_ADDED, organization_id=organization_id,
                   contact_id=contact_id, payload={"list_id": list_id, **extra})

    @classmethod
    def custom_field_changed(cls, organization_id: str, contact_id: str, field_name: str,
                             old_value: Any = None, new_value: Any = None) -> "TriggerEvent":
        return cls(type=TriggerEventType.CUSTOM_FIELD_CHANGED, organization_id=organization_id,
                   contact_id=contact_id,
                   payload={"field_name": field_name, "old_value": old_value, "new_value": new_value})


class TriggerEvaluationResult(BaseModel):
    """Outcome of matching one workflow against one event."""
    workflow_id: str
    triggered: bool
    reason: Optional[str] = None
    workflow: Optional[WorkflowDefinition] = None


# ---------------------------------------------------------------------------
# Scheduled runs
# ---------------------------------------------------------------------------

class ScheduleType(str, Enum):
    ONCE = "once"
    RECURRING = "recurring"
    CRON = "cron"


class ScheduleConfig(BaseModel):
    """Timing of a workflow schedule. Which fields apply depends on the schedule type."""
    scheduled_at: Optional[datetime] = Field(None, description="Run time of a one-time schedule")
    interval_minutes: Optional[int] = Field(None, description="Gap between recurring runs")
    start_at: Optional[datetime] = Field(None, description="First recurring run; defaults to now")
    end_at: Optional[datetime] = Field(None, description="No recurring run is scheduled after this time")
    cron_expression: Optional[str] = Field(None, description="Five-field cron expression")

    @field_validator("interval_minutes")
    @classmethod
    def validate_interval(cls, value):
        if value is not None and value < 1:
            raise ValueError("interval_minutes must be at least 1")
        return value

    @field_validator("scheduled_at", "start_at", "end_at")
    @classmethod
    def normalize_to_utc(cls, value):
        """Store aware times as naive UTC; naive times are taken as UTC."""
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class WorkflowSchedule(BaseModel):
    """Starts a workflow for its organization's target contacts at planned times."""
    id: str = Field(default_factory=lambda: f"sched_{uuid.uuid4().hex}")
    workflow_id: str
    organization_id: str
    schedule_type: ScheduleType
    config: ScheduleConfig = Field(default_factory=ScheduleConfig)
    timezone: str = Field("UTC", description="IANA zone cron expressions are evaluated in")
    is_active: bool = True
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_run_status: Optional[str] = None
    last_error: Optional[str] = None
    max_executions: Optional[int] = Field(None, description="Runs after which the schedule deactivates")
    execution_count: int = 0

    @field_validator("max_executions")
    @classmethod
    def validate_max_executions(cls, value):
        if value is not None and value < 1:
            raise ValueError("max_executions must be at least 1")
        return value
