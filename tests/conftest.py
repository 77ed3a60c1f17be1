"""Pytest configuration and fixtures."""

import pytest

from autoflow.core.state_manager import StateManager
from autoflow.core.workflow_manager import WorkflowManager
from autoflow.integrations.contacts import ContactDirectory, SqlContactDataService
from autoflow.models.core import ChannelCredentials
from autoflow.storage.database import build_engine, create_tables, get_session_factory
from autoflow.storage.models import ContactModel, OrganizationModel

from helpers import CONTACT_ID, ORG_ID, FixedClock, RecordingChannel


@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite database per test."""
    engine = build_engine(f"sqlite:///{tmp_path / 'autoflow_test.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory(db_engine)


@pytest.fixture
def state_manager(session_factory):
    return StateManager(session_factory)


@pytest.fixture
def workflow_manager(session_factory):
    return WorkflowManager(session_factory)


@pytest.fixture
def contact_directory(session_factory):
    return ContactDirectory(session_factory)


@pytest.fixture
def contact_service(session_factory):
    return SqlContactDataService(session_factory)


@pytest.fixture
def seeded_contact(session_factory):
    """Organization with WhatsApp credentials and one contact."""
    session = session_factory()
    try:
        session.add(OrganizationModel(id=ORG_ID, name="Acme", whatsapp_access_token="token-123",
                                      whatsapp_phone_number_id="1029384756"))
        session.add(ContactModel(id=CONTACT_ID, organization_id=ORG_ID, phone="+15550001111",
                                 name="Test User", email="test@example.com", tags=["lead"],
                                 custom_fields={"plan": "pro"}, lists=[]))
        session.commit()
    finally:
        session.close()
    return CONTACT_ID


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def credentials():
    return ChannelCredentials(access_token="token-123", phone_number_id="1029384756")
