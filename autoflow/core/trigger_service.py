"""Trigger evaluation: which workflows does an inbound event start?"""

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List

from pydantic import BaseModel, Field, ValidationError

from ..models.core import (
    ExecutionContext,
    TriggerConfig,
    TriggerEvaluationResult,
    TriggerEvent,
    TriggerEventType,
    WorkflowDefinition,
)
from .exceptions import DuplicateExecutionError, WorkflowEngineError
from .logging import clear_logging_context, get_logger, set_logging_context
from .reentry import ReentryController
from .workflow_manager import WorkflowManager

logger = get_logger(__name__)

REASON_NO_TRIGGER = "No trigger node found"
REASON_TYPE_MISMATCH = "Trigger type mismatch"
REASON_CONDITIONS = "Trigger conditions not met"
REASON_SCHEDULED = "Date/time triggers run on schedule"


def _match_keyword(content: str, keyword: str, match_type: str) -> bool:
    if match_type == "exact":
        return content.strip() == keyword.strip()
    if match_type == "starts_with":
        return content.startswith(keyword)
    return keyword in content


def matches_contact_replied(config: TriggerConfig, payload: Dict[str, Any]) -> bool:
    message_type = payload.get("message_type") or payload.get("type")
    if config.message_types and message_type not in config.message_types:
        return False

    keywords = [keyword for keyword in config.keywords if keyword]
    if not keywords:
        return True

    content = payload.get("content")
    if not isinstance(content, str):
        return False

    if not config.case_sensitive:
        content = content.lower()
        keywords = [keyword.lower() for keyword in keywords]
    match_type = (config.match_type or "contains").lower()
    return any(_match_keyword(content, keyword, match_type) for keyword in keywords)


def matches_tag_applied(config: TriggerConfig, payload: Dict[str, Any]) -> bool:
    if not config.tag_names and not config.tag_ids:
        return True
    if config.tag_names and payload.get("tag_name") in config.tag_names:
        return True
    if config.tag_ids and payload.get("tag_id") in config.tag_ids:
        return True
    return False


def matches_custom_field_changed(config: TriggerConfig, payload: Dict[str, Any]) -> bool:
    if config.field_name is not None and payload.get("field_name") != config.field_name:
        return False
    if config.old_value is not None and payload.get("old_value") != config.old_value:
        return False
    if config.new_value is not None and payload.get("new_value") != config.new_value:
        return False
    return True


def matches_contact_added(config: TriggerConfig, payload: Dict[str, Any]) -> bool:
    if not config.list_ids:
        return True
    return payload.get("list_id") in config.list_ids


CONDITION_MATCHERS: Dict[str, Callable[[TriggerConfig, Dict[str, Any]], bool]] = {
    TriggerEventType.CONTACT_REPLIED.value: matches_contact_replied,
    TriggerEventType.TAG_APPLIED.value: matches_tag_applied,
    TriggerEventType.CUSTOM_FIELD_CHANGED.value: matches_custom_field_changed,
    TriggerEventType.CONTACT_ADDED.value: matches_contact_added,
}


class TriggerService:
    """Evaluates an event against every active workflow of its organization."""

    def __init__(self, workflow_manager: WorkflowManager, reentry: ReentryController, max_workers: int = 1):
        self.workflow_manager = workflow_manager
        self.reentry = reentry
        self.max_workers = max(1, max_workers)

    def evaluate_triggers(self, event: TriggerEvent) -> List[TriggerEvaluationResult]:
        """
        Evaluate an event against all active workflows of its organization.

        Args:
            event: Normalized trigger event

        Returns:
            One result per active workflow, in load order. Empty when the
            workflows cannot be loaded.
        """
        token = set_logging_context(organization_id=event.organization_id, contact_id=event.contact_id,
                                    event_type=event.type)
        try:
            try:
                workflows = self.workflow_manager.list_active_workflows(event.organization_id)
            except WorkflowEngineError as e:
                logger.error(f"Failed to load workflows for trigger evaluation: {e.message}")
                return []

            if self.max_workers > 1 and len(workflows) > 1:
                with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="trigger-eval") as pool:
                    results = list(pool.map(lambda workflow: self.evaluate_workflow(workflow, event), workflows))
            else:
                results = [self.evaluate_workflow(workflow, event) for workflow in workflows]

            triggered = sum(1 for result in results if result.triggered)
            logger.info(f"Event {event.type} matched {triggered} of {len(results)} active workflows")
            return results
        finally:
            clear_logging_context(token)

    def evaluate_workflow(self, workflow: WorkflowDefinition, event: TriggerEvent) -> TriggerEvaluationResult:
        """Evaluate a single workflow against an event; never raises."""
        try:
            return self._evaluate(workflow, event)
        except Exception as e:
            logger.error(f"Trigger evaluation failed for workflow {workflow.id}: {str(e)}", exc_info=True)
            return TriggerEvaluationResult(workflow_id=workflow.id, triggered=False,
                                           reason=f"Evaluation error: {str(e)}")

    def _evaluate(self, workflow: WorkflowDefinition, event: TriggerEvent) -> TriggerEvaluationResult:
        trigger = workflow.trigger_node
        if trigger is None:
            return self._not_triggered(workflow, REASON_NO_TRIGGER)

        try:
            config = TriggerConfig.model_validate(trigger.config)
        except ValidationError as e:
            logger.warning(f"Malformed trigger configuration on workflow {workflow.id}: {e}")
            return self._not_triggered(workflow, REASON_CONDITIONS)

        if config.trigger_type != event.type:
            return self._not_triggered(workflow, REASON_TYPE_MISMATCH)

        if event.type == TriggerEventType.DATE_TIME.value:
            return self._not_triggered(workflow, REASON_SCHEDULED)

        matcher = CONDITION_MATCHERS.get(event.type)
        if matcher is not None and not matcher(config, event.payload):
            return self._not_triggered(workflow, REASON_CONDITIONS)

        decision = self.reentry.check_entry(workflow.id, event.contact_id, workflow.settings)
        if not decision.eligible:
            return self._not_triggered(workflow, decision.reason or "Contact is not eligible")

        return TriggerEvaluationResult(workflow_id=workflow.id, triggered=True, workflow=workflow)

    @staticmethod
    def _not_triggered(workflow: WorkflowDefinition, reason: str) -> TriggerEvaluationResult:
        logger.debug(f"Workflow {workflow.id} not triggered: {reason}")
        return TriggerEvaluationResult(workflow_id=workflow.id, triggered=False, reason=reason)


class DispatchResult(BaseModel):
    """What happened to an event once it was evaluated."""
    results: List[TriggerEvaluationResult] = Field(default_factory=list)
    executions: List[ExecutionContext] = Field(default_factory=list)
    skipped: Dict[str, str] = Field(default_factory=dict, description="Workflow id to reason for triggered but not started")


class TriggerDispatcher:
    """Evaluates an event and starts an execution for every triggered workflow.

    Args:
        trigger_service: Evaluates events
        engine_factory: Builds an ExecutionEngine for a workflow
        contact_directory: Loads contact profiles and channel credentials; optional
    """

    def __init__(self, trigger_service: TriggerService, engine_factory: Callable, contact_directory=None):
        self.trigger_service = trigger_service
        self.engine_factory = engine_factory
        self.contact_directory = contact_directory

    def dispatch(self, event: TriggerEvent) -> DispatchResult:
        results = self.trigger_service.evaluate_triggers(event)
        dispatch = DispatchResult(results=results)
        triggered = [result for result in results if result.triggered and result.workflow is not None]
        if not triggered:
            return dispatch

        profile, credentials = self._load_collaborator_data(event)

        for result in triggered:
            engine = self.engine_factory(result.workflow)
            try:
                context = engine.start_execution(
                    event.contact_id,
                    event.organization_id,
                    contact_profile=profile.model_copy(deep=True) if profile else None,
                    channel_credentials=credentials,
                    trigger_event=event,
                )
            except DuplicateExecutionError as e:
                logger.info(f"Skipped workflow {result.workflow_id}: {e.message}")
                dispatch.skipped[result.workflow_id] = e.message
                continue
            except WorkflowEngineError as e:
                logger.error(f"Failed to start workflow {result.workflow_id}: {e.message}")
                dispatch.skipped[result.workflow_id] = e.message
                continue
            dispatch.executions.append(context)

        return dispatch

    def _load_collaborator_data(self, event: TriggerEvent):
        if self.contact_directory is None:
            return None, None
        try:
            profile = self.contact_directory.get_contact_profile(event.contact_id)
            credentials = self.contact_directory.get_channel_credentials(event.organization_id)
        except WorkflowEngineError as e:
            logger.error(f"Failed to load contact data for {event.contact_id}: {e.message}")
            return None, None
        return profile, credentials
