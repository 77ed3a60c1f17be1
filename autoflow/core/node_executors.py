"""Node executors and the registry that maps node types to them."""

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from ..integrations.base import ContactDataService, MessagingChannel, Notifier
from ..models.core import (
    ActionConfig,
    ChannelCredentials,
    DelayConfig,
    ExecutionContext,
    GoalConfig,
    MessageConfig,
    NodeDefinition,
    NodeType,
    WaitUntilConfig,
    WorkflowDefinition,
    utcnow,
)
from .conditions import ConditionEvaluator, WeightedSplitSelector, build_condition_data
from .exceptions import ConfigurationError, NodeExecutionError
from .logging import get_logger
from .template_renderer import TemplateRenderer

logger = get_logger(__name__)

Clock = Callable[[], datetime]
ChannelFactory = Callable[[ChannelCredentials], Optional[MessagingChannel]]


class OutcomeKind(str, Enum):
    ADVANCE = "advance"
    SUSPEND = "suspend"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class NodeOutcome:
    """Instruction returned by a node executor to the step loop."""
    kind: OutcomeKind
    advance_to: Optional[str] = None
    wake_at: Optional[datetime] = None

    @classmethod
    def advance(cls, node_id: Optional[str]) -> "NodeOutcome":
        """Continue with ``node_id``; None completes the execution."""
        return cls(OutcomeKind.ADVANCE, advance_to=node_id)

    @classmethod
    def suspend(cls, wake_at: datetime, advance_to: str) -> "NodeOutcome":
        return cls(OutcomeKind.SUSPEND, advance_to=advance_to, wake_at=wake_at)

    @classmethod
    def terminal(cls) -> "NodeOutcome":
        return cls(OutcomeKind.TERMINAL)


def single_successor(workflow: WorkflowDefinition, node: NodeDefinition) -> Optional[str]:
    """Target of a non-branching node's outgoing edge, or None."""
    edges = workflow.outgoing_edges(node.id)
    if not edges:
        return None
    if len(edges) > 1:
        logger.warning(f"Node '{node.id}' has {len(edges)} outgoing edges, following the first")
    return edges[0].target


def branch_target(workflow: WorkflowDefinition, node: NodeDefinition, handle: str) -> Optional[str]:
    edge = workflow.edge_for_handle(node.id, handle)
    if edge is None:
        logger.warning(f"Node '{node.id}' has no edge for handle '{handle}', completing")
        return None
    return edge.target


class NodeExecutor(ABC):
    """Execution strategy for one node type."""

    node_type: str = ""

    @abstractmethod
    def execute(self, node: NodeDefinition, context: ExecutionContext,
                workflow: WorkflowDefinition) -> NodeOutcome:
        """
        Execute a node against an execution context.

        Args:
            node: Node being executed
            context: Execution context, mutated in place (scratch data only)
            workflow: Workflow the node belongs to, used for edge lookup

        Returns:
            Instruction for the step loop

        Raises:
            NodeExecutionError: If the node fails fatally
        """


class TriggerNodeExecutor(NodeExecutor):
    """Entry point of every workflow; passes straight through."""

    node_type = NodeType.TRIGGER.value

    def execute(self, node, context, workflow):
        return NodeOutcome.advance(single_successor(workflow, node))


class MessageNodeExecutor(NodeExecutor):
    """Renders and sends a text, template or media message."""

    node_type = NodeType.MESSAGE.value

    def __init__(self, channel_factory: Optional[ChannelFactory] = None,
                 renderer: Optional[TemplateRenderer] = None):
        self.channel_factory = channel_factory
        self.renderer = renderer or TemplateRenderer()

    def execute(self, node, context, workflow):
        successor = single_successor(workflow, node)
        try:
            config = MessageConfig.model_validate(node.config)
        except ValidationError as e:
            logger.warning(f"Malformed message configuration on node '{node.id}': {e.error_count()} error(s)")
            return self._skip(node, context, successor, "invalid_config")

        contact = context.contact
        phone = contact.phone if contact is not None else None
        if not phone:
            return self._skip(node, context, successor, "no_phone")
        if not (config.template_id or config.media_url or config.text):
            return self._skip(node, context, successor, "empty_message")
        if context.credentials is None or self.channel_factory is None:
            return self._skip(node, context, successor, "no_channel")

        channel = self.channel_factory(context.credentials)
        if channel is None:
            return self._skip(node, context, successor, "no_channel")

        extra = {"organization": {"id": context.organization_id}}
        try:
            if config.template_id:
                kind = "template"
                components = self.renderer.render_value(config.template_components, contact, extra)
                message_id = channel.send_template(phone, config.template_id, config.template_language, components)
            elif config.media_url:
                kind = "media"
                caption = self.renderer.render(config.text, contact, extra) or None
                message_id = channel.send_media(phone, config.media_url, caption, config.media_type)
            else:
                kind = "text"
                text = self.renderer.render(config.text, contact, extra)
                message_id = channel.send_text(phone, text)
        except Exception as e:
            raise NodeExecutionError(
                f"Failed to send message: {e}",
                node_id=node.id,
                execution_id=context.execution_id,
                recoverable=getattr(e, "recoverable", True),
            )

        context.data[node.id] = {"status": "sent", "kind": kind, "message_id": message_id}
        logger.info(f"Sent {kind} message {message_id} for node '{node.id}'")
        return NodeOutcome.advance(successor)

    @staticmethod
    def _skip(node, context, successor, reason: str) -> NodeOutcome:
        context.data[node.id] = {"status": "skipped", "reason": reason}
        logger.info(f"Skipped message node '{node.id}': {reason}")
        return NodeOutcome.advance(successor)


DELAY_UNITS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
}


class DelayNodeExecutor(NodeExecutor):
    """Suspends the execution until ``now + amount * unit``."""

    node_type = NodeType.DELAY.value

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or utcnow

    def compute_delay(self, config: Dict[str, Any]) -> timedelta:
        try:
            delay = DelayConfig.model_validate(config)
        except ValidationError:
            logger.warning("Malformed delay configuration, using zero delay")
            return timedelta(0)

        unit = DELAY_UNITS.get(str(delay.unit).lower())
        if unit is None:
            logger.warning(f"Unknown delay unit '{delay.unit}', using zero delay")
            return timedelta(0)
        if delay.amount <= 0:
            return timedelta(0)
        return unit * delay.amount

    def execute(self, node, context, workflow):
        successor = single_successor(workflow, node)
        if successor is None:
            logger.info(f"Delay node '{node.id}' has no successor, completing")
            return NodeOutcome.advance(None)
        wake_at = self.clock() + self.compute_delay(node.config)
        return NodeOutcome.suspend(wake_at, successor)


class WaitUntilNodeExecutor(NodeExecutor):
    """Suspends the execution until a calendar date.

    Only ``specific_date`` waits are scheduled. Other wait kinds, and dates
    that cannot be parsed, pass straight through with a skip recorded. A
    date already in the past continues immediately.
    """

    node_type = NodeType.WAIT_UNTIL.value

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or utcnow

    @staticmethod
    def resolve_wake_time(config: WaitUntilConfig) -> Optional[datetime]:
        """Naive UTC time named by ``date`` and optional ``time``, or None."""
        if not config.date:
            return None
        try:
            wake_at = datetime.fromisoformat(config.date.strip())
            if wake_at.tzinfo is not None:
                wake_at = wake_at.astimezone(timezone.utc).replace(tzinfo=None)
            if config.time:
                hours, minutes = config.time.strip().split(":")[:2]
                wake_at = wake_at.replace(hour=int(hours), minute=int(minutes), second=0, microsecond=0)
        except ValueError:
            return None
        return wake_at

    def execute(self, node, context, workflow):
        successor = single_successor(workflow, node)
        try:
            config = WaitUntilConfig.model_validate(node.config)
        except ValidationError:
            logger.warning(f"Malformed wait configuration on node '{node.id}', continuing")
            context.data[node.id] = {"status": "skipped", "reason": "invalid_config"}
            return NodeOutcome.advance(successor)

        if config.event_type != "specific_date":
            logger.warning(f"Wait type '{config.event_type}' on node '{node.id}' is not supported, continuing")
            context.data[node.id] = {"status": "skipped", "reason": "unsupported_wait_type"}
            return NodeOutcome.advance(successor)

        wake_at = self.resolve_wake_time(config)
        if wake_at is None:
            logger.warning(f"Invalid wait date on node '{node.id}': {config.date} {config.time or ''}")
            context.data[node.id] = {"status": "skipped", "reason": "invalid_date"}
            return NodeOutcome.advance(successor)

        if wake_at <= self.clock():
            context.data[node.id] = {"status": "elapsed", "wait_until": wake_at.isoformat()}
            return NodeOutcome.advance(successor)

        context.data[node.id] = {"status": "waiting", "wait_until": wake_at.isoformat()}
        if successor is None:
            logger.info(f"Wait node '{node.id}' has no successor, completing")
            return NodeOutcome.advance(None)
        return NodeOutcome.suspend(wake_at, successor)


class ConditionNodeExecutor(NodeExecutor):
    """Routes along the ``true`` or ``false`` edge."""

    node_type = NodeType.CONDITION.value

    def __init__(self, evaluator: Optional[ConditionEvaluator] = None):
        self.evaluator = evaluator or ConditionEvaluator()

    def execute(self, node, context, workflow):
        result = self.evaluator.evaluate(node.config, build_condition_data(context))
        context.data[node.id] = result
        handle = "true" if result else "false"
        logger.debug(f"Condition node '{node.id}' evaluated to {handle}")
        return NodeOutcome.advance(branch_target(workflow, node, handle))


class ActionNodeExecutor(NodeExecutor):
    """Applies a contact mutation or sends an internal notification.

    Failures are recorded in the scratch space and never fail the execution.
    """

    node_type = NodeType.ACTION.value

    def __init__(self, contact_service: Optional[ContactDataService] = None,
                 notifier: Optional[Notifier] = None,
                 renderer: Optional[TemplateRenderer] = None):
        self.contact_service = contact_service
        self.notifier = notifier
        self.renderer = renderer or TemplateRenderer()
        self._handlers = {
            "add_tag": self._add_tag,
            "remove_tag": self._remove_tag,
            "update_field": self._update_field,
            "add_to_list": self._add_to_list,
            "remove_from_list": self._remove_from_list,
            "send_notification": self._send_notification,
        }

    def execute(self, node, context, workflow):
        successor = single_successor(workflow, node)
        try:
            config = ActionConfig.model_validate(node.config)
        except ValidationError as e:
            logger.warning(f"Malformed action configuration on node '{node.id}': {e}")
            context.data[node.id] = {"status": "failed", "error": "Invalid action configuration"}
            return NodeOutcome.advance(successor)

        handler = self._handlers.get(config.action_type or "")
        if handler is None:
            logger.warning(f"Unknown action type '{config.action_type}' on node '{node.id}'")
            context.data[node.id] = {"status": "skipped", "action_type": config.action_type,
                                     "reason": "unknown_action"}
            return NodeOutcome.advance(successor)

        try:
            status = handler(config, context)
            context.data[node.id] = {"status": status, "action_type": config.action_type}
        except Exception as e:
            logger.error(f"Action '{config.action_type}' failed on node '{node.id}': {e}")
            context.data[node.id] = {"status": "failed", "action_type": config.action_type, "error": str(e)}

        return NodeOutcome.advance(successor)

    def _require_contact_service(self) -> ContactDataService:
        if self.contact_service is None:
            raise ConfigurationError("No contact data service configured")
        return self.contact_service

    def _add_tag(self, config: ActionConfig, context: ExecutionContext) -> str:
        if not config.tag_ids:
            return "skipped"
        self._require_contact_service().add_tags(context.contact_id, config.tag_ids)
        if context.contact is not None:
            new_tags = [tag for tag in config.tag_ids if tag not in context.contact.tags]
            context.contact.tags.extend(new_tags)
        return "applied"

    def _remove_tag(self, config: ActionConfig, context: ExecutionContext) -> str:
        if not config.tag_ids:
            return "skipped"
        self._require_contact_service().remove_tags(context.contact_id, config.tag_ids)
        if context.contact is not None:
            context.contact.tags = [tag for tag in context.contact.tags if tag not in config.tag_ids]
        return "applied"

    def _update_field(self, config: ActionConfig, context: ExecutionContext) -> str:
        if not config.field_name:
            return "skipped"
        value = config.field_value
        if isinstance(value, str):
            value = self.renderer.render(value, context.contact)
        self._require_contact_service().update_field(context.contact_id, config.field_name, value)
        if context.contact is not None:
            if config.field_name in ("name", "email", "phone"):
                setattr(context.contact, config.field_name, value)
            else:
                context.contact.custom_fields[config.field_name] = value
        return "applied"

    def _add_to_list(self, config: ActionConfig, context: ExecutionContext) -> str:
        if not config.list_id:
            return "skipped"
        self._require_contact_service().add_to_list(context.contact_id, config.list_id)
        return "applied"

    def _remove_from_list(self, config: ActionConfig, context: ExecutionContext) -> str:
        if not config.list_id:
            return "skipped"
        self._require_contact_service().remove_from_list(context.contact_id, config.list_id)
        return "applied"

    def _send_notification(self, config: ActionConfig, context: ExecutionContext) -> str:
        if not config.notification_target or self.notifier is None:
            return "skipped"
        message = self.renderer.render(config.notification_message or "Workflow notification", context.contact)
        self.notifier.notify(config.notification_target, message, {
            "workflow_id": context.workflow_id,
            "execution_id": context.execution_id,
            "contact_id": context.contact_id,
        })
        return "applied"


class SplitNodeExecutor(NodeExecutor):
    """Weighted random A/B split."""

    node_type = NodeType.SPLIT.value

    def __init__(self, rng=None, selector: Optional[WeightedSplitSelector] = None):
        self.rng = rng or random.Random()
        self.selector = selector or WeightedSplitSelector()

    def execute(self, node, context, workflow):
        branch_id = self.selector.choose(node.config, self.rng)
        if branch_id is None:
            logger.warning(f"Split node '{node.id}' has no branches, completing")
            context.data[node.id] = None
            return NodeOutcome.advance(None)
        context.data[node.id] = branch_id
        return NodeOutcome.advance(branch_target(workflow, node, branch_id))


class GoalNodeExecutor(NodeExecutor):
    """Records a conversion goal; terminal when configured or when nothing follows."""

    node_type = NodeType.GOAL.value

    def __init__(self, notifier: Optional[Notifier] = None, clock: Optional[Clock] = None):
        self.notifier = notifier
        self.clock = clock or utcnow

    def execute(self, node, context, workflow):
        try:
            config = GoalConfig.model_validate(node.config)
        except ValidationError:
            logger.warning(f"Malformed goal configuration on node '{node.id}', using defaults")
            config = GoalConfig()

        record = {
            "goal_name": config.goal_name,
            "goal_type": config.goal_type,
            "achieved_at": self.clock().isoformat(),
        }
        context.data[node.id] = record
        logger.info(f"Goal '{config.goal_name}' achieved by contact {context.contact_id}")

        if config.notification_target and self.notifier is not None:
            try:
                self.notifier.notify(
                    config.notification_target,
                    f"Goal '{config.goal_name}' achieved",
                    {"workflow_id": context.workflow_id, "contact_id": context.contact_id, **record},
                )
            except Exception as e:
                logger.error(f"Goal notification failed for node '{node.id}': {e}")

        successor = single_successor(workflow, node)
        if config.terminal or successor is None:
            return NodeOutcome.terminal()
        return NodeOutcome.advance(successor)


class NodeExecutorRegistry:
    """Registry mapping node types to executors."""

    def __init__(self):
        self._executors: Dict[str, NodeExecutor] = {}

    def register(self, executor: NodeExecutor, node_type: Optional[str] = None, replace: bool = False) -> None:
        """Register an executor.

        Args:
            executor: Executor instance
            node_type: Type it handles; defaults to ``executor.node_type``
            replace: Whether an existing registration may be overwritten

        Raises:
            ConfigurationError: If the type is empty or already registered
        """
        node_type = (node_type or executor.node_type or "").strip().lower()
        if not node_type:
            raise ConfigurationError("Node executor type cannot be empty")
        if node_type in self._executors and not replace:
            raise ConfigurationError(f"Node executor for '{node_type}' is already registered")
        self._executors[node_type] = executor
        logger.debug(f"Registered executor for node type '{node_type}'")

    def get(self, node_type: str) -> Optional[NodeExecutor]:
        return self._executors.get(node_type)

    def exists(self, node_type: str) -> bool:
        return node_type in self._executors

    def unregister(self, node_type: str) -> bool:
        return self._executors.pop(node_type, None) is not None

    def list_types(self) -> List[str]:
        return sorted(self._executors)


def build_default_registry(
    channel_factory: Optional[ChannelFactory] = None,
    contact_service: Optional[ContactDataService] = None,
    notifier: Optional[Notifier] = None,
    rng=None,
    clock: Optional[Clock] = None,
    renderer: Optional[TemplateRenderer] = None,
) -> NodeExecutorRegistry:
    """Registry with one executor per built-in node type."""
    renderer = renderer or TemplateRenderer()
    registry = NodeExecutorRegistry()
    registry.register(TriggerNodeExecutor())
    registry.register(MessageNodeExecutor(channel_factory=channel_factory, renderer=renderer))
    registry.register(DelayNodeExecutor(clock=clock))
    registry.register(WaitUntilNodeExecutor(clock=clock))
    registry.register(ConditionNodeExecutor())
    registry.register(ActionNodeExecutor(contact_service=contact_service, notifier=notifier, renderer=renderer))
    registry.register(SplitNodeExecutor(rng=rng))
    registry.register(GoalNodeExecutor(notifier=notifier, clock=clock))
    return registry
