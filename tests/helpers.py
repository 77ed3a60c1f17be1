"""Shared builders and fakes for the test suite."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from autoflow.core.exceptions import MessagingError
from autoflow.integrations.base import ContactDataService, MessagingChannel, Notifier
from autoflow.models.core import (
    ContactProfile,
    EdgeDefinition,
    NodeDefinition,
    WorkflowDefinition,
    WorkflowSettings,
    WorkflowStatusEnum,
)

ORG_ID = "org_1"
CONTACT_ID = "contact_1"
START_TIME = datetime(2024, 1, 15, 9, 0, 0)


def node(node_id: str, node_type: str, **config) -> NodeDefinition:
    return NodeDefinition(id=node_id, type=node_type, config=config)


def edge(source: str, target: str, handle: Optional[str] = None) -> EdgeDefinition:
    return EdgeDefinition(source=source, target=target, handle=handle)


def trigger(node_id: str = "trigger", trigger_type: str = "contact_replied", **config) -> NodeDefinition:
    return node(node_id, "trigger", trigger_type=trigger_type, **config)


def chain(*node_ids: str) -> List[EdgeDefinition]:
    """Edges linking the given node ids in order."""
    return [edge(source, target) for source, target in zip(node_ids, node_ids[1:])]


def make_workflow(nodes: List[NodeDefinition], edges: Optional[List[EdgeDefinition]] = None,
                  workflow_id: str = "wf_1", organization_id: str = ORG_ID,
                  status: WorkflowStatusEnum = WorkflowStatusEnum.ACTIVE,
                  **settings) -> WorkflowDefinition:
    return WorkflowDefinition(
        id=workflow_id,
        organization_id=organization_id,
        name=f"Workflow {workflow_id}",
        nodes=nodes,
        edges=edges or [],
        status=status,
        settings=WorkflowSettings(**settings),
    )


def make_contact(**overrides) -> ContactProfile:
    fields = {
        "id": CONTACT_ID,
        "phone": "+15550001111",
        "name": "Test User",
        "email": "test@example.com",
        "tags": ["lead"],
        "custom_fields": {"plan": "pro", "score": 42},
    }
    fields.update(overrides)
    return ContactProfile(**fields)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class SequenceRandom:
    """Random source returning a fixed cycle of values."""

    def __init__(self, values: List[float]):
        self.values = list(values)
        self.index = 0

    def random(self) -> float:
        value = self.values[self.index % len(self.values)]
        self.index += 1
        return value


class RecordingChannel(MessagingChannel):
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def _record(self, **fields) -> str:
        message_id = f"wamid.{len(self.sent) + 1}"
        self.sent.append({"id": message_id, **fields})
        return message_id

    def send_text(self, phone, text):
        return self._record(kind="text", phone=phone, text=text)

    def send_template(self, phone, template_id, language, components=None):
        return self._record(kind="template", phone=phone, template_id=template_id, language=language,
                            components=components)

    def send_media(self, phone, media_url, caption=None, media_type="image"):
        return self._record(kind="media", phone=phone, media_url=media_url, caption=caption,
                            media_type=media_type)


class FailingChannel(MessagingChannel):
    def __init__(self, message: str = "Recipient phone number not in allowed list"):
        self.message = message
        self.attempts = 0

    def _fail(self):
        self.attempts += 1
        raise MessagingError(self.message, provider="test", status_code=400)

    def send_text(self, phone, text):
        self._fail()

    def send_template(self, phone, template_id, language, components=None):
        self._fail()

    def send_media(self, phone, media_url, caption=None, media_type="image"):
        self._fail()


class RecordingContactService(ContactDataService):
    def __init__(self, fail: bool = False):
        self.calls: List[tuple] = []
        self.fail = fail

    def _call(self, *args):
        if self.fail:
            raise RuntimeError("contact service unavailable")
        self.calls.append(args)

    def add_tags(self, contact_id, tag_ids):
        self._call("add_tags", contact_id, list(tag_ids))

    def remove_tags(self, contact_id, tag_ids):
        self._call("remove_tags", contact_id, list(tag_ids))

    def update_field(self, contact_id, field_name, value):
        self._call("update_field", contact_id, field_name, value)

    def add_to_list(self, contact_id, list_id):
        self._call("add_to_list", contact_id, list_id)

    def remove_from_list(self, contact_id, list_id):
        self._call("remove_from_list", contact_id, list_id)


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    def notify(self, target, message, details=None):
        if self.fail:
            raise RuntimeError("notifier unavailable")
        self.sent.append({"target": target, "message": message, "details": details or {}})
