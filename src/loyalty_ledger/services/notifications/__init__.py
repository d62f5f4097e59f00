"""Notification service package."""

from .backend import EmailBackend, InMemoryEmailBackend, SMTPEmailBackend
from .service import NotificationEvent, NotificationService
from .templates import TEMPLATES, NotificationKind, RenderedTemplate, render_notification

__all__ = [
    "EmailBackend",
    "InMemoryEmailBackend",
    "NotificationEvent",
    "NotificationKind",
    "NotificationService",
    "RenderedTemplate",
    "SMTPEmailBackend",
    "TEMPLATES",
    "render_notification",
]
