"""Re-entry control: may a contact start (another) execution of a workflow?"""

from typing import Optional

from pydantic import BaseModel

from ..models.core import ACTIVE_EXECUTION_STATUSES, ExecutionCountMode, ExecutionStatusEnum, WorkflowSettings
from .exceptions import WorkflowEngineError
from .logging import get_logger
from .state_manager import StateManager

logger = get_logger(__name__)

REASON_ACTIVE_EXECUTION = "Contact already in workflow or reentry not allowed"
REASON_MAX_EXECUTIONS = "Maximum executions per contact reached"


class EntryDecision(BaseModel):
    eligible: bool
    reason: Optional[str] = None


class ReentryController:
    """Applies a workflow's re-entry settings to a contact's execution history.

    Any storage failure makes the contact ineligible.
    """

    def __init__(self, state_manager: StateManager):
        self.state_manager = state_manager

    def can_contact_enter_workflow(self, workflow_id: str, contact_id: str, settings: WorkflowSettings) -> bool:
        return self.check_entry(workflow_id, contact_id, settings).eligible

    def check_entry(self, workflow_id: str, contact_id: str, settings: WorkflowSettings) -> EntryDecision:
        """
        Decide whether a contact may enter a workflow.

        Rules, in order:
        1. Re-entry allowed with no cap: eligible.
        2. Re-entry disallowed: ineligible while a running or waiting execution exists.
        3. Cap set: the counted executions must stay below the cap.

        Args:
            workflow_id: Workflow being entered
            contact_id: Contact entering it
            settings: The workflow's re-entry settings

        Returns:
            EntryDecision carrying a reason when ineligible
        """
        max_executions = settings.max_executions_per_contact
        if settings.allow_reentry and max_executions is None:
            return EntryDecision(eligible=True)

        try:
            if not settings.allow_reentry:
                active = self.state_manager.count_executions(workflow_id, contact_id, statuses=ACTIVE_EXECUTION_STATUSES)
                if active > 0:
                    return EntryDecision(eligible=False, reason=REASON_ACTIVE_EXECUTION)

            if max_executions is not None:
                statuses = None
                if settings.execution_count_mode == ExecutionCountMode.COMPLETED:
                    statuses = [ExecutionStatusEnum.COMPLETED]
                total = self.state_manager.count_executions(workflow_id, contact_id, statuses=statuses)
                if total >= max_executions:
                    return EntryDecision(eligible=False, reason=REASON_MAX_EXECUTIONS)
        except WorkflowEngineError as e:
            logger.error(f"Re-entry check failed for workflow {workflow_id}, contact {contact_id}: {e.message}")
            return EntryDecision(eligible=False, reason=f"Eligibility check failed: {e.message}")

        return EntryDecision(eligible=True)
