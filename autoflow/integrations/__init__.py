"""Messaging, contact and notification collaborators."""

from .base import MessagingChannel, ContactDataService, Notifier
from .contacts import SqlContactDataService, ContactDirectory
from .notifications import LoggingNotifier
from .whatsapp import (
    WhatsAppCloudChannel,
    LoggingMessagingChannel,
    whatsapp_channel_factory,
    dry_run_channel_factory,
)

__all__ = [
    "MessagingChannel",
    "ContactDataService",
    "Notifier",
    "SqlContactDataService",
    "ContactDirectory",
    "LoggingNotifier",
    "WhatsAppCloudChannel",
    "LoggingMessagingChannel",
    "whatsapp_channel_factory",
    "dry_run_channel_factory",
]
