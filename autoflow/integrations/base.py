"""Collaborator interfaces consumed by the node executors."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class MessagingChannel(ABC):
    """Outbound messaging provider.

    Every send returns the provider's message id and raises
    :class:`~autoflow.core.exceptions.MessagingError` on failure.
    """

    @abstractmethod
    def send_text(self, phone: str, text: str) -> str:
        """Send a plain text message."""

    @abstractmethod
    def send_template(self, phone: str, template_id: str, language: str,
                      components: Optional[List[Dict[str, Any]]] = None) -> str:
        """Send a pre-approved template message."""

    @abstractmethod
    def send_media(self, phone: str, media_url: str, caption: Optional[str] = None,
                   media_type: str = "image") -> str:
        """Send an image, video, audio or document by URL."""


class ContactDataService(ABC):
    """Mutations that action nodes apply to a contact."""

    @abstractmethod
    def add_tags(self, contact_id: str, tag_ids: List[str]) -> None: ...

    @abstractmethod
    def remove_tags(self, contact_id: str, tag_ids: List[str]) -> None: ...

    @abstractmethod
    def update_field(self, contact_id: str, field_name: str, value: Any) -> None: ...

    @abstractmethod
    def add_to_list(self, contact_id: str, list_id: str) -> None: ...

    @abstractmethod
    def remove_from_list(self, contact_id: str, list_id: str) -> None: ...


class Notifier(ABC):
    """Internal notifications, e.g. alerting an agent that a goal was reached."""

    @abstractmethod
    def notify(self, target: str, message: str, details: Optional[Dict[str, Any]] = None) -> None: ...

