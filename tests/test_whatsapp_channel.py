"""Tests for the WhatsApp Cloud API channel and the contact integrations."""

import json

import httpx
import pytest

from autoflow.core.exceptions import MessagingError, StorageError
from autoflow.integrations.whatsapp import (
    LoggingMessagingChannel,
    WhatsAppCloudChannel,
    dry_run_channel_factory,
    whatsapp_channel_factory,
)
from autoflow.storage.models import ContactModel

from helpers import CONTACT_ID, ORG_ID


def mock_client(handler, requests=None):
    def record(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return handler(request)
    return httpx.Client(transport=httpx.MockTransport(record))


def accepted(request):
    return httpx.Response(200, json={"messaging_product": "whatsapp", "messages": [{"id": "wamid.ABC"}]})


class TestWhatsAppCloudChannel:
    def test_send_text(self, credentials):
        requests = []
        channel = WhatsAppCloudChannel(credentials, base_url="https://graph.test/v18.0",
                                       client=mock_client(accepted, requests))

        message_id = channel.send_text("+15550001111", "Hello")

        assert message_id == "wamid.ABC"
        request = requests[0]
        assert str(request.url) == "https://graph.test/v18.0/1029384756/messages"
        assert request.headers["Authorization"] == "Bearer token-123"
        body = json.loads(request.content)
        assert body["messaging_product"] == "whatsapp"
        assert body["to"] == "+15550001111"
        assert body["type"] == "text"
        assert body["text"]["body"] == "Hello"

    def test_send_template(self, credentials):
        requests = []
        channel = WhatsAppCloudChannel(credentials, client=mock_client(accepted, requests))
        components = [{"type": "body", "parameters": [{"type": "text", "text": "Ana"}]}]

        channel.send_template("+15550001111", "welcome", "pt_BR", components)

        body = json.loads(requests[0].content)
        assert body["type"] == "template"
        assert body["template"] == {"name": "welcome", "language": {"code": "pt_BR"}, "components": components}

    def test_send_media(self, credentials):
        requests = []
        channel = WhatsAppCloudChannel(credentials, client=mock_client(accepted, requests))

        channel.send_media("+15550001111", "https://cdn.test/doc.pdf", "Your invoice", "document")
        channel.send_media("+15550001111", "https://cdn.test/a.ogg", "ignored", "audio")

        document = json.loads(requests[0].content)
        audio = json.loads(requests[1].content)
        assert document["document"] == {"link": "https://cdn.test/doc.pdf", "caption": "Your invoice"}
        assert audio["audio"] == {"link": "https://cdn.test/a.ogg"}

    def test_unsupported_media_type(self, credentials):
        channel = WhatsAppCloudChannel(credentials, client=mock_client(accepted))

        with pytest.raises(MessagingError, match="Unsupported media type"):
            channel.send_media("+15550001111", "https://cdn.test/x", media_type="hologram")

    def test_api_error(self, credentials):
        def rejected(request):
            return httpx.Response(400, json={"error": {"message": "Invalid parameter", "code": 100}})

        channel = WhatsAppCloudChannel(credentials, client=mock_client(rejected))

        with pytest.raises(MessagingError) as exc_info:
            channel.send_text("+15550001111", "Hello")

        assert exc_info.value.status_code == 400
        assert "Invalid parameter" in exc_info.value.message
        assert exc_info.value.recoverable is True

    def test_transport_error(self, credentials):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        channel = WhatsAppCloudChannel(credentials, client=mock_client(unreachable))

        with pytest.raises(MessagingError, match="request failed"):
            channel.send_text("+15550001111", "Hello")

    def test_missing_message_id(self, credentials):
        channel = WhatsAppCloudChannel(credentials, client=mock_client(lambda request: httpx.Response(200, json={})))

        with pytest.raises(MessagingError, match="no message id"):
            channel.send_text("+15550001111", "Hello")

    def test_factory_shares_client(self, credentials):
        client = mock_client(accepted)
        factory = whatsapp_channel_factory(client=client)

        first, second = factory(credentials), factory(credentials)

        assert first._client is second._client is client


class TestDryRunChannel:
    def test_records_sends(self, credentials):
        channel = dry_run_channel_factory()(credentials)

        message_id = channel.send_text("+15550001111", "Hello")

        assert isinstance(channel, LoggingMessagingChannel)
        assert message_id.startswith("dryrun_")
        assert channel.sent[0]["text"] == "Hello"


class TestContactIntegrations:
    def test_directory_loads_profile_and_credentials(self, contact_directory, seeded_contact):
        profile = contact_directory.get_contact_profile(CONTACT_ID)
        credentials = contact_directory.get_channel_credentials(ORG_ID)

        assert profile.name == "Test User"
        assert profile.custom_fields == {"plan": "pro"}
        assert credentials.phone_number_id == "1029384756"

    def test_directory_missing_records(self, contact_directory):
        assert contact_directory.get_contact_profile("nobody") is None
        assert contact_directory.get_channel_credentials("no_org") is None

    def test_mutations(self, contact_service, session_factory, seeded_contact):
        contact_service.add_tags(CONTACT_ID, ["vip", "lead"])
        contact_service.remove_tags(CONTACT_ID, ["lead"])
        contact_service.update_field(CONTACT_ID, "plan", "enterprise")
        contact_service.update_field(CONTACT_ID, "email", "new@example.com")
        contact_service.add_to_list(CONTACT_ID, "newsletter")
        contact_service.add_to_list(CONTACT_ID, "newsletter")

        session = session_factory()
        try:
            contact = session.get(ContactModel, CONTACT_ID)
            assert contact.tags == ["vip"]
            assert contact.custom_fields == {"plan": "enterprise"}
            assert contact.email == "new@example.com"
            assert contact.lists == ["newsletter"]
        finally:
            session.close()

        contact_service.remove_from_list(CONTACT_ID, "newsletter")

    def test_mutating_missing_contact_raises(self, contact_service):
        with pytest.raises(StorageError):
            contact_service.add_tags("nobody", ["vip"])
