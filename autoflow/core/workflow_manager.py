"""Workflow definition storage and validation."""

from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.core import ValidationResult, WorkflowDefinition, WorkflowStatusEnum, utcnow
from ..storage.database import get_session_factory
from ..storage.models import WorkflowModel
from .exceptions import StorageError, WorkflowValidationError
from .logging import get_logger

logger = get_logger(__name__)


class WorkflowManager:
    """Manages workflow definitions, validation and storage."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """Initialize WorkflowManager with an optional session factory."""
        self._session_factory = session_factory

    def _get_db_session(self) -> Session:
        return (self._session_factory or get_session_factory())()

    def validate_workflow(self, workflow: WorkflowDefinition) -> ValidationResult:
        """Validate a workflow's structure; never raises."""
        try:
            return workflow.validate_structure()
        except Exception as e:
            logger.error(f"Unexpected error during workflow validation: {str(e)}")
            return ValidationResult(is_valid=False, errors=[f"Validation error: {str(e)}"])

    def create_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        """
        Store a new workflow definition.

        Active workflows must pass validation; drafts may be stored incomplete.

        Args:
            workflow: The workflow definition to store

        Returns:
            WorkflowDefinition: The stored definition

        Raises:
            WorkflowValidationError: If an active workflow fails validation or the id is taken
            StorageError: If storage operation fails
        """
        logger.info(f"Creating workflow '{workflow.name}' for organization {workflow.organization_id}")

        if workflow.status == WorkflowStatusEnum.ACTIVE:
            self._ensure_valid(workflow)

        db = self._get_db_session()
        try:
            if db.get(WorkflowModel, workflow.id) is not None:
                raise WorkflowValidationError(f"Workflow with ID '{workflow.id}' already exists", workflow_id=workflow.id)

            db.add(WorkflowModel(
                id=workflow.id,
                organization_id=workflow.organization_id,
                name=workflow.name,
                description=workflow.description,
                status=workflow.status.value,
                definition=self._definition_payload(workflow),
                allow_reentry=workflow.settings.allow_reentry,
                version=workflow.version,
            ))
            db.commit()
            logger.info(f"Successfully created workflow '{workflow.name}' with ID: {workflow.id}")
            return workflow

        except WorkflowValidationError:
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while creating workflow: {str(e)}")
            raise StorageError(f"Failed to store workflow: {str(e)}", operation="create_workflow", table="workflows")
        finally:
            db.close()

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        """
        Retrieve a workflow definition by its ID.

        Returns:
            The definition, or None if no such workflow exists

        Raises:
            StorageError: If storage operation fails
        """
        db = self._get_db_session()
        try:
            record = db.get(WorkflowModel, workflow_id)
            return self._to_definition(record) if record else None
        except SQLAlchemyError as e:
            logger.error(f"Database error while retrieving workflow: {str(e)}")
            raise StorageError(f"Failed to retrieve workflow: {str(e)}", operation="get_workflow", table="workflows")
        finally:
            db.close()

    def list_active_workflows(self, organization_id: str) -> List[WorkflowDefinition]:
        """
        Load all active workflows of an organization in creation order.

        Raises:
            StorageError: If storage operation fails
        """
        db = self._get_db_session()
        try:
            records = (
                db.query(WorkflowModel)
                .filter(WorkflowModel.organization_id == organization_id)
                .filter(WorkflowModel.status == WorkflowStatusEnum.ACTIVE.value)
                .order_by(WorkflowModel.created_at.asc(), WorkflowModel.id.asc())
                .all()
            )
            return [self._to_definition(record) for record in records]
        except SQLAlchemyError as e:
            logger.error(f"Database error while listing workflows: {str(e)}")
            raise StorageError(f"Failed to list workflows: {str(e)}", operation="list_active_workflows",
                               table="workflows")
        finally:
            db.close()

    def set_status(self, workflow_id: str, status: WorkflowStatusEnum) -> WorkflowDefinition:
        """
        Change a workflow's status. Activation validates the definition first.

        Raises:
            StorageError: If the workflow does not exist or storage fails
            WorkflowValidationError: If activating an invalid workflow
        """
        db = self._get_db_session()
        try:
            record = db.get(WorkflowModel, workflow_id)
            if record is None:
                raise StorageError(f"Workflow with ID '{workflow_id}' not found", operation="set_status")

            workflow = self._to_definition(record)
            if status == WorkflowStatusEnum.ACTIVE:
                self._ensure_valid(workflow)

            record.status = status.value
            record.updated_at = utcnow()
            db.commit()
            logger.info(f"Workflow {workflow_id} is now {status.value}")
            return workflow.model_copy(update={"status": status})

        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while updating workflow status: {str(e)}")
            raise StorageError(f"Failed to update workflow: {str(e)}", operation="set_status", table="workflows")
        finally:
            db.close()

    def activate_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return self.set_status(workflow_id, WorkflowStatusEnum.ACTIVE)

    def deactivate_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return self.set_status(workflow_id, WorkflowStatusEnum.INACTIVE)

    def delete_workflow(self, workflow_id: str) -> bool:
        """
        Delete a workflow definition. Execution records are kept.

        Returns:
            True if a workflow was deleted, False if it did not exist
        """
        db = self._get_db_session()
        try:
            record = db.get(WorkflowModel, workflow_id)
            if record is None:
                return False
            db.delete(record)
            db.commit()
            logger.info(f"Deleted workflow {workflow_id}")
            return True
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while deleting workflow: {str(e)}")
            raise StorageError(f"Failed to delete workflow: {str(e)}", operation="delete_workflow", table="workflows")
        finally:
            db.close()

    def _ensure_valid(self, workflow: WorkflowDefinition) -> None:
        result = self.validate_workflow(workflow)
        if not result.is_valid:
            error_msg = f"Workflow validation failed: {'; '.join(result.errors)}"
            logger.error(error_msg)
            raise WorkflowValidationError(error_msg, validation_errors=result.errors, workflow_id=workflow.id)
        if result.warnings:
            logger.warning(f"Workflow validation warnings: {'; '.join(result.warnings)}")

    @staticmethod
    def _definition_payload(workflow: WorkflowDefinition) -> dict:
        return workflow.model_dump(mode="json", include={"nodes", "edges", "settings"})

    @staticmethod
    def _to_definition(record: WorkflowModel) -> WorkflowDefinition:
        definition = record.definition or {}
        return WorkflowDefinition(
            id=record.id,
            organization_id=record.organization_id,
            name=record.name,
            description=record.description or "",
            nodes=definition.get("nodes", []),
            edges=definition.get("edges", []),
            settings=definition.get("settings", {}),
            status=WorkflowStatusEnum(record.status),
            version=record.version or 1,
        )
