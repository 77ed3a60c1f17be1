"""SQL-backed contact mutation and lookup."""

from contextlib import contextmanager
from typing import Any, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.exceptions import StorageError
from ..core.logging import get_logger
from ..models.core import ChannelCredentials, ContactProfile
from ..storage.database import get_session_factory
from ..storage.models import ContactModel, OrganizationModel
from .base import ContactDataService

logger = get_logger(__name__)


class _SessionScope:
    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str):
        session: Session = (self._session_factory or get_session_factory())()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error during {operation}: {str(e)}")
            raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation, table="contacts")
        finally:
            session.close()


class SqlContactDataService(_SessionScope, ContactDataService):
    """Applies tag, field and list mutations to the ``contacts`` table."""

    def _load(self, session: Session, contact_id: str) -> ContactModel:
        contact = session.get(ContactModel, contact_id)
        if contact is None:
            raise StorageError(f"Contact {contact_id} not found", operation="load_contact", table="contacts")
        return contact

    def add_tags(self, contact_id: str, tag_ids: List[str]) -> None:
        with self._session("add_tags") as session:
            contact = self._load(session, contact_id)
            tags = list(contact.tags or [])
            tags.extend(tag for tag in tag_ids if tag not in tags)
            contact.tags = tags
        logger.info(f"Added tags {tag_ids} to contact {contact_id}")

    def remove_tags(self, contact_id: str, tag_ids: List[str]) -> None:
        with self._session("remove_tags") as session:
            contact = self._load(session, contact_id)
            contact.tags = [tag for tag in (contact.tags or []) if tag not in tag_ids]
        logger.info(f"Removed tags {tag_ids} from contact {contact_id}")

    def update_field(self, contact_id: str, field_name: str, value: Any) -> None:
        with self._session("update_field") as session:
            contact = self._load(session, contact_id)
            if field_name in ("name", "email", "phone"):
                setattr(contact, field_name, value)
            else:
                fields = dict(contact.custom_fields or {})
                fields[field_name] = value
                contact.custom_fields = fields
        logger.info(f"Updated field '{field_name}' on contact {contact_id}")

    def add_to_list(self, contact_id: str, list_id: str) -> None:
        with self._session("add_to_list") as session:
            contact = self._load(session, contact_id)
            lists = list(contact.lists or [])
            if list_id not in lists:
                lists.append(list_id)
            contact.lists = lists

    def remove_from_list(self, contact_id: str, list_id: str) -> None:
        with self._session("remove_from_list") as session:
            contact = self._load(session, contact_id)
            contact.lists = [item for item in (contact.lists or []) if item != list_id]


class ContactDirectory(_SessionScope):
    """Loads contact profiles and organization credentials for new executions."""

    def get_contact_profile(self, contact_id: str) -> Optional[ContactProfile]:
        with self._session("get_contact_profile") as session:
            contact = session.get(ContactModel, contact_id)
            return self._to_profile(contact) if contact is not None else None

    def list_contacts(self, organization_id: str, tag_ids: Optional[Iterable[str]] = None,
                      limit: int = 1000) -> List[ContactProfile]:
        """
        Contacts of an organization in creation order.

        Args:
            organization_id: Owning organization
            tag_ids: When non-empty, only contacts carrying at least one of these tags
            limit: Maximum number of contacts returned
        """
        wanted = set(tag_ids or [])
        with self._session("list_contacts") as session:
            query = (
                session.query(ContactModel)
                .filter(ContactModel.organization_id == organization_id)
                .order_by(ContactModel.created_at.asc(), ContactModel.id.asc())
            )
            profiles = []
            for contact in query:
                if wanted and not wanted.intersection(contact.tags or []):
                    continue
                profiles.append(self._to_profile(contact))
                if len(profiles) >= limit:
                    break
            return profiles

    @staticmethod
    def _to_profile(contact: ContactModel) -> ContactProfile:
        return ContactProfile(
            id=contact.id,
            phone=contact.phone,
            name=contact.name,
            email=contact.email,
            tags=list(contact.tags or []),
            custom_fields=dict(contact.custom_fields or {}),
        )

    def get_channel_credentials(self, organization_id: str) -> Optional[ChannelCredentials]:
        with self._session("get_channel_credentials") as session:
            organization = session.get(OrganizationModel, organization_id)
            if organization is None:
                return None
            if not organization.whatsapp_access_token or not organization.whatsapp_phone_number_id:
                return None
            return ChannelCredentials(
                access_token=organization.whatsapp_access_token,
                phone_number_id=organization.whatsapp_phone_number_id,
            )
