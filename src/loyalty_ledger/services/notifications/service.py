"""Fire-and-forget notification sink for points lifecycle events."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_ledger.core.settings import get_settings
from loyalty_ledger.models.user import User

from .backend import EmailBackend, InMemoryEmailBackend, SMTPEmailBackend
from .templates import NotificationKind, render_notification


@dataclass
class NotificationEvent:
    """Representation of a notification that was sent."""

    recipient: str
    subject: str
    body_text: str
    body_html: str | None
    event_type: str
    user_id: UUID
    metadata: dict[str, Any]


class NotificationService:
    """Renders and delivers points notifications; delivery failures never propagate."""

    def __init__(
        self,
        db_session: AsyncSession,
        backend: Optional[EmailBackend] = None,
        *,
        enabled: bool | None = None,
    ) -> None:
        self._db = db_session
        self._backend = backend or self._build_default_backend()
        self._enabled = get_settings().points_notifications_enabled if enabled is None else enabled
        self._events: list[NotificationEvent] = []

    @property
    def sent_events(self) -> list[NotificationEvent]:
        """Expose events (useful for tests when using in-memory backend)."""
        return self._events

    def use_in_memory_backend(self) -> InMemoryEmailBackend:
        """Replace backend with in-memory implementation (useful for tests)."""
        backend = InMemoryEmailBackend()
        self._backend = backend
        return backend

    async def notify(self, user_id: UUID, kind: NotificationKind | str, payload: Mapping[str, Any]) -> None:
        if not self._enabled or self._backend is None:
            return

        try:
            notification_kind = NotificationKind(kind)
            user = await self._db.get(User, user_id)
            if user is None:
                logger.warning("Skipping points notification for unknown user", user_id=str(user_id))
                return

            template = render_notification(notification_kind, payload, contact_name=user.display_name)
            await self._backend.send_email(
                user.email,
                template.subject,
                template.text_body,
                body_html=template.html_body,
            )
        except Exception as exc:
            logger.exception(
                "Points notification failed",
                user_id=str(user_id),
                kind=str(kind),
                error=str(exc),
            )
            return

        self._events.append(
            NotificationEvent(
                recipient=user.email,
                subject=template.subject,
                body_text=template.text_body,
                body_html=template.html_body,
                event_type=notification_kind.value,
                user_id=user_id,
                metadata=dict(payload),
            )
        )
        logger.info("Sent points notification", user_id=str(user_id), kind=notification_kind.value)

    def _build_default_backend(self) -> Optional[EmailBackend]:
        settings = get_settings()
        if not settings.smtp_host or not settings.smtp_sender_email:
            return None

        return SMTPEmailBackend(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            sender_email=settings.smtp_sender_email,
        )


__all__ = ["NotificationEvent", "NotificationService"]
