"""Email backend implementations for points notifications."""

from __future__ import annotations

import asyncio
import smtplib
from email.message import EmailMessage
from typing import List, Optional, Protocol


class EmailBackend(Protocol):
    """Minimal protocol for sending notification emails."""

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
    ) -> None:
        ...


def _build_message(sender: str | None, recipient: str, subject: str, body_text: str, body_html: str | None) -> EmailMessage:
    message = EmailMessage()
    if sender:
        message["From"] = sender
    message["To"] = recipient
    message["Subject"] = subject
    message.set_content(body_text)
    if body_html:
        message.add_alternative(body_html, subtype="html")
    return message


class SMTPEmailBackend:
    """SMTP delivery; the blocking client runs in a worker thread."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: Optional[str],
        password: Optional[str],
        use_tls: bool,
        sender_email: str,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._sender_email = sender_email
        self._timeout = timeout_seconds

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
    ) -> None:
        message = _build_message(self._sender_email, recipient, subject, body_text, body_html)
        await asyncio.to_thread(self._send, message)

    def _send(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as smtp:
            if self._use_tls:
                smtp.starttls()
            if self._username and self._password:
                smtp.login(self._username, self._password)
            smtp.send_message(message)


class InMemoryEmailBackend:
    """Test backend storing outbound messages in memory."""

    def __init__(self) -> None:
        self.sent_messages: List[EmailMessage] = []

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        *,
        body_html: str | None = None,
    ) -> None:
        self.sent_messages.append(_build_message(None, recipient, subject, body_text, body_html))


__all__ = ["EmailBackend", "InMemoryEmailBackend", "SMTPEmailBackend"]
