"""
Utility modules for the school fleet transport service

- notifications: outbound channels (webhook, SMS, email) subscribed to the event bus
"""

from .notifications import (
    NotificationService,
    WebhookService,
    SMSService,
    EmailService,
    register_notification_channels
)

__all__ = [
    "NotificationService",
    "WebhookService",
    "SMSService",
    "EmailService",
    "register_notification_channels"
]
