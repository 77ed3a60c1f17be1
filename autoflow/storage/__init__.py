"""Database models and storage layer."""

from .database import Base, get_session_factory, create_tables
from .models import (
    OrganizationModel,
    ContactModel,
    WorkflowModel,
    ExecutionModel,
    ExecutionLogModel,
)

__all__ = [
    "Base",
    "get_session_factory",
    "create_tables",
    "OrganizationModel",
    "ContactModel",
    "WorkflowModel",
    "ExecutionModel",
    "ExecutionLogModel",
]
