from __future__ import annotations

import httpx
import pytest

from abuseguard.core.errors import UnknownChannelError
from abuseguard.services.notifications import senders as senders_module
from abuseguard.services.notifications.channels import (
    NO_RECIPIENTS_ERROR,
    DeliveryContext,
    get_channel_processor,
)
from abuseguard.services.notifications.recipients import NotificationRecipient
from abuseguard.services.notifications.senders import HttpEmailSender, LogSender, SendResult


class _ScriptedSender:
    # Fails for any recipient whose email is listed in `failing`.
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.sent: list[str] = []

    async def send(self, channel, recipient, subject, body):  # noqa: ANN001
        self.sent.append(recipient.email)
        if recipient.email in self.failing:
            return SendResult(success=False, error=f"mailbox full for {recipient.email}")
        return SendResult(success=True, message_id=f"m-{recipient.user_id}")


def _context(*emails: str) -> DeliveryContext:
    return DeliveryContext(
        notification_id="n-1",
        project_id="p-1",
        notification_type="project_suspended",
        subject="subject",
        body="body",
        recipients=[
            NotificationRecipient(user_id=f"u-{index}", email=email) for index, email in enumerate(emails)
        ],
    )


@pytest.mark.asyncio
async def test_email_succeeds_only_when_every_recipient_succeeds() -> None:
    processor = get_channel_processor("email")
    sender = _ScriptedSender(failing={"b@example.com", "c@example.com"})

    result = await processor.process(_context("a@example.com", "b@example.com", "c@example.com"), sender)

    assert result.success is False
    # Every recipient is attempted and the last failure is reported.
    assert sender.sent == ["a@example.com", "b@example.com", "c@example.com"]
    assert result.error == "mailbox full for c@example.com"
    assert result.message_ids == ("m-u-0",)


@pytest.mark.asyncio
async def test_email_without_recipients_fails() -> None:
    result = await get_channel_processor("email").process(_context(), _ScriptedSender())
    assert result.success is False
    assert result.error == NO_RECIPIENTS_ERROR


@pytest.mark.asyncio
async def test_placeholder_channels() -> None:
    sender = _ScriptedSender()
    in_app = await get_channel_processor("in_app").process(_context("a@example.com"), sender)
    sms = await get_channel_processor("sms").process(_context("a@example.com"), sender)
    webhook = await get_channel_processor("webhook").process(_context("a@example.com"), sender)

    assert in_app.success is True
    assert (sms.success, sms.error) == (False, "SMS not implemented")
    assert (webhook.success, webhook.error) == (False, "Webhook not implemented")
    assert sender.sent == []


def test_unknown_channel_is_rejected() -> None:
    with pytest.raises(UnknownChannelError) as exc_info:
        get_channel_processor("pigeon")
    assert str(exc_info.value) == "Unknown channel: pigeon"


@pytest.mark.asyncio
async def test_log_sender_always_succeeds() -> None:
    result = await LogSender().send("email", NotificationRecipient(user_id="u", email="u@example.com"), "s", "b")
    assert result.success is True
    assert result.message_id.startswith("log-")


@pytest.mark.asyncio
async def test_http_sender_maps_provider_responses(monkeypatch) -> None:
    seen: list[dict] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append({"auth": request.headers.get("Authorization"), "body": request.read()})
        if b"reject@example.com" in request.content:
            return httpx.Response(422, json={"error": "invalid"})
        return httpx.Response(200, json={"id": "msg-1"})

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        senders_module.httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(_handler), **kwargs),
    )
    sender = HttpEmailSender(
        api_url="https://mail.example.test/send", api_key="k", sender="abuse@example.com", timeout_ms=1000
    )

    ok = await sender.send("email", NotificationRecipient(user_id="u1", email="ok@example.com"), "s", "b")
    rejected = await sender.send("email", NotificationRecipient(user_id="u2", email="reject@example.com"), "s", "b")

    assert ok == SendResult(success=True, message_id="msg-1")
    assert rejected.success is False
    assert "422" in (rejected.error or "")
    assert seen[0]["auth"] == "Bearer k"


@pytest.mark.asyncio
async def test_http_sender_reports_transport_errors(monkeypatch) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        senders_module.httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(_handler), **kwargs),
    )
    sender = HttpEmailSender(
        api_url="https://mail.example.test/send", api_key="", sender="abuse@example.com", timeout_ms=1000
    )
    result = await sender.send("email", NotificationRecipient(user_id="u1", email="a@example.com"), "s", "b")
    assert result.success is False
    assert result.error.startswith("email transport error")
