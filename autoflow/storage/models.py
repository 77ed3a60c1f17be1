"""SQLAlchemy database models for the automation engine."""

from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from .database import Base


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrganizationModel(Base):
    """Tenant record holding messaging credentials."""
    __tablename__ = "organizations"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, default="")
    whatsapp_access_token = Column(String)
    whatsapp_phone_number_id = Column(String)
    created_at = Column(DateTime, default=_utcnow)


class ContactModel(Base):
    """Contact record mutated by action nodes."""
    __tablename__ = "contacts"

    id = Column(String, primary_key=True)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    phone = Column(String)
    name = Column(String)
    email = Column(String)
    tags = Column(JSON, default=list)
    custom_fields = Column(JSON, default=dict)
    lists = Column(JSON, default=list)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class WorkflowModel(Base):
    """Database model for workflow definitions."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    organization_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    status = Column(String, nullable=False, default="draft")
    definition = Column(JSON, nullable=False)  # nodes, edges and settings
    allow_reentry = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    executions = relationship("ExecutionModel", back_populates="workflow", passive_deletes=True)


class ExecutionModel(Base):
    """Database model for one contact's run through a workflow."""
    __tablename__ = "workflow_executions"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    contact_id = Column(String, nullable=False, index=True)
    organization_id = Column(String, nullable=False)
    status = Column(String, nullable=False)  # running, waiting, completed, failed
    # "<workflow_id>:<contact_id>" while a non-reentrant execution is active, NULL otherwise
    active_key = Column(String, unique=True, nullable=True)
    current_node_id = Column(String)
    execution_path = Column(JSON)
    data = Column(JSON)
    input_data = Column(JSON)
    trigger_type = Column(String)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    error_node_id = Column(String)
    wake_at = Column(DateTime, index=True)
    started_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime)

    workflow = relationship("WorkflowModel", back_populates="executions")
    logs = relationship("ExecutionLogModel", back_populates="execution")


class ExecutionLogModel(Base):
    """Database model for execution log entries."""
    __tablename__ = "execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False)
    timestamp = Column(DateTime, default=_utcnow)
    node_id = Column(String)
    event_type = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON)

    execution = relationship("ExecutionModel", back_populates="logs")


class WorkflowScheduleModel(Base):
    """Database model for planned workflow runs."""
    __tablename__ = "workflow_schedules"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, nullable=False, index=True)
    organization_id = Column(String, nullable=False)
    schedule_type = Column(String, nullable=False)  # once, recurring, cron
    config = Column(JSON, nullable=False)
    timezone = Column(String, nullable=False, default="UTC")
    is_active = Column(Boolean, nullable=False, default=True)
    next_run_at = Column(DateTime)
    last_run_at = Column(DateTime)
    last_run_status = Column(String)
    last_error = Column(Text)
    max_executions = Column(Integer)
    execution_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
