"""WhatsApp Cloud API messaging channel."""

import uuid
from typing import Any, Dict, List, Optional

import httpx

from ..core.exceptions import MessagingError
from ..core.logging import get_logger
from ..models.core import ChannelCredentials
from .base import MessagingChannel

logger = get_logger(__name__)

DEFAULT_GRAPH_URL = "https://graph.facebook.com/v18.0"
MEDIA_TYPES = {"image", "video", "audio", "document"}


class WhatsAppCloudChannel(MessagingChannel):
    """Sends messages through the WhatsApp Cloud (Graph) API.

    Args:
        credentials: Organization access token and phone number id
        base_url: Graph API root, overridable for testing
        timeout: Request timeout in seconds
        client: Pre-built ``httpx.Client``; a private one is created otherwise
    """

    provider = "whatsapp_cloud"

    def __init__(self, credentials: ChannelCredentials, base_url: str = DEFAULT_GRAPH_URL,
                 timeout: float = 30.0, client: Optional[httpx.Client] = None):
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/{self.credentials.phone_number_id}/messages"

    def send_text(self, phone: str, text: str) -> str:
        return self._send(phone, "text", {"text": {"preview_url": False, "body": text}})

    def send_template(self, phone: str, template_id: str, language: str,
                      components: Optional[List[Dict[str, Any]]] = None) -> str:
        template: Dict[str, Any] = {"name": template_id, "language": {"code": language}}
        if components:
            template["components"] = components
        return self._send(phone, "template", {"template": template})

    def send_media(self, phone: str, media_url: str, caption: Optional[str] = None,
                   media_type: str = "image") -> str:
        if media_type not in MEDIA_TYPES:
            raise MessagingError(f"Unsupported media type: {media_type}", provider=self.provider)
        media: Dict[str, Any] = {"link": media_url}
        if caption and media_type != "audio":
            media["caption"] = caption
        return self._send(phone, media_type, {media_type: media})

    def _send(self, phone: str, message_type: str, body: Dict[str, Any]) -> str:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone,
            "type": message_type,
            **body,
        }
        headers = {"Authorization": f"Bearer {self.credentials.access_token}"}

        try:
            response = self._client.post(self.messages_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise MessagingError(f"WhatsApp request failed: {e}", provider=self.provider)

        if response.status_code >= 400:
            raise MessagingError(
                f"WhatsApp API error {response.status_code}: {self._error_detail(response)}",
                provider=self.provider,
                status_code=response.status_code,
            )

        try:
            message_id = response.json()["messages"][0]["id"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise MessagingError("WhatsApp API returned no message id", provider=self.provider,
                                 status_code=response.status_code)

        logger.info(f"Sent WhatsApp {message_type} message {message_id}")
        return message_id

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            return response.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            return response.text or response.reason_phrase

    def close(self) -> None:
        self._client.close()


class LoggingMessagingChannel(MessagingChannel):
    """Dry-run channel that logs each send and returns a synthetic id."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def _record(self, kind: str, phone: str, **fields) -> str:
        message_id = f"dryrun_{uuid.uuid4().hex[:12]}"
        self.sent.append({"id": message_id, "kind": kind, "phone": phone, **fields})
        logger.info(f"[dry-run] {kind} message to {phone}: {fields}")
        return message_id

    def send_text(self, phone: str, text: str) -> str:
        return self._record("text", phone, text=text)

    def send_template(self, phone: str, template_id: str, language: str,
                      components: Optional[List[Dict[str, Any]]] = None) -> str:
        return self._record("template", phone, template_id=template_id, language=language,
                            components=components or [])

    def send_media(self, phone: str, media_url: str, caption: Optional[str] = None,
                   media_type: str = "image") -> str:
        return self._record("media", phone, media_url=media_url, caption=caption, media_type=media_type)


def whatsapp_channel_factory(base_url: str = DEFAULT_GRAPH_URL, timeout: float = 30.0,
                             client: Optional[httpx.Client] = None):
    """Channel factory producing a WhatsApp channel per organization's credentials.

    All channels share one connection pool.
    """
    shared_client = client or httpx.Client(timeout=timeout)

    def create(credentials: ChannelCredentials) -> MessagingChannel:
        return WhatsAppCloudChannel(credentials, base_url=base_url, client=shared_client)
    return create


def dry_run_channel_factory():
    """Channel factory sharing a single logging channel."""
    channel = LoggingMessagingChannel()

    def create(credentials: ChannelCredentials) -> MessagingChannel:
        return channel
    return create
