from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Protocol
from uuid import uuid4

import httpx

from abuseguard.core.config import get_settings
from abuseguard.core.errors import SenderConfigError
from abuseguard.services.notifications.recipients import NotificationRecipient


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


class ChannelSender(Protocol):
    # Transports report failures as data; they must not raise.
    async def send(
        self,
        channel: str,
        recipient: NotificationRecipient,
        subject: str,
        body: str,
    ) -> SendResult:
        ...


class LogSender:
    """Writes messages to the log instead of a real transport; used in dev and tests."""

    async def send(
        self,
        channel: str,
        recipient: NotificationRecipient,
        subject: str,
        body: str,
    ) -> SendResult:
        message_id = f"log-{uuid4().hex}"
        logger.info(
            "notification_sent_to_log channel=%s recipient=%s subject=%s message_id=%s",
            channel,
            recipient.email,
            subject,
            message_id,
        )
        return SendResult(success=True, message_id=message_id)


class HttpEmailSender:
    def __init__(self, *, api_url: str, api_key: str, sender: str, timeout_ms: int) -> None:
        if not api_url:
            raise SenderConfigError("EMAIL_API_URL is required for the http email provider")
        self._api_url = api_url
        self._api_key = api_key
        self._sender = sender
        self._timeout_s = max(0.2, timeout_ms / 1000.0)

    async def send(
        self,
        channel: str,
        recipient: NotificationRecipient,
        subject: str,
        body: str,
    ) -> SendResult:
        # Timeouts and non-2xx responses become failed results for the retry policy.
        payload = {"from": self._sender, "to": [recipient.email], "subject": subject, "text": body}
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.post(self._api_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("email_send_failed recipient=%s error=%s", recipient.email, exc)
            return SendResult(success=False, error=f"email transport error: {exc}")
        if response.status_code >= 400:
            return SendResult(success=False, error=f"email provider rejected message ({response.status_code})")
        try:
            data = response.json()
        except ValueError:
            data = {}
        message_id = data.get("id") if isinstance(data, dict) else None
        return SendResult(success=True, message_id=str(message_id) if message_id else None)


_channel_sender: ChannelSender | None = None


def get_channel_sender() -> ChannelSender:
    # Select the email transport from settings once per process.
    global _channel_sender
    if _channel_sender is not None:
        return _channel_sender
    settings = get_settings()
    provider = (settings.email_provider or "log").lower()
    if provider == "log":
        _channel_sender = LogSender()
    elif provider == "http":
        _channel_sender = HttpEmailSender(
            api_url=settings.email_api_url,
            api_key=settings.email_api_key,
            sender=settings.email_from,
            timeout_ms=settings.email_timeout_ms,
        )
    else:
        raise SenderConfigError(f"Unsupported email provider: {provider}")
    return _channel_sender


def reset_channel_sender() -> None:
    # Reset cached sender for deterministic tests.
    global _channel_sender
    _channel_sender = None
