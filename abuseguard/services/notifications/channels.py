from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from abuseguard.core.errors import UnknownChannelError
from abuseguard.domain.types import NotificationChannel
from abuseguard.services.notifications.recipients import NotificationRecipient
from abuseguard.services.notifications.senders import ChannelSender


logger = logging.getLogger(__name__)

NO_RECIPIENTS_ERROR = "No recipients found"


@dataclass(frozen=True)
class ChannelResult:
    channel: str
    success: bool
    error: str | None = None
    message_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class DeliveryContext:
    # Everything a processor needs for one notification's delivery pass.
    notification_id: str
    project_id: str
    notification_type: str
    subject: str
    body: str
    recipients: list[NotificationRecipient]
    data: dict[str, Any] = field(default_factory=dict)


class ChannelProcessor:
    channel: str = ""

    async def process(self, context: DeliveryContext, sender: ChannelSender) -> ChannelResult:
        raise NotImplementedError


class EmailProcessor(ChannelProcessor):
    channel = NotificationChannel.EMAIL.value

    async def process(self, context: DeliveryContext, sender: ChannelSender) -> ChannelResult:
        """Send to each recipient individually.

        The channel succeeds only if every recipient send succeeds; on any
        failure the last error is kept and the whole notification is retried,
        including recipients that already received it.
        """
        if not context.recipients:
            return ChannelResult(channel=self.channel, success=False, error=NO_RECIPIENTS_ERROR)
        all_successful = True
        last_error: str | None = None
        message_ids: list[str] = []
        for recipient in context.recipients:
            result = await sender.send(self.channel, recipient, context.subject, context.body)
            if result.success:
                if result.message_id:
                    message_ids.append(result.message_id)
                continue
            all_successful = False
            last_error = result.error or "email send failed"
            logger.warning(
                "notification_email_recipient_failed notification_id=%s recipient=%s error=%s",
                context.notification_id,
                recipient.email,
                last_error,
            )
        return ChannelResult(
            channel=self.channel,
            success=all_successful,
            error=None if all_successful else last_error,
            message_ids=tuple(message_ids),
        )


class InAppProcessor(ChannelProcessor):
    channel = NotificationChannel.IN_APP.value

    async def process(self, context: DeliveryContext, sender: ChannelSender) -> ChannelResult:
        # The notification row itself is the in-app inbox entry.
        return ChannelResult(channel=self.channel, success=True)


class SmsProcessor(ChannelProcessor):
    channel = NotificationChannel.SMS.value

    async def process(self, context: DeliveryContext, sender: ChannelSender) -> ChannelResult:
        return ChannelResult(channel=self.channel, success=False, error="SMS not implemented")


class WebhookProcessor(ChannelProcessor):
    channel = NotificationChannel.WEBHOOK.value

    async def process(self, context: DeliveryContext, sender: ChannelSender) -> ChannelResult:
        return ChannelResult(channel=self.channel, success=False, error="Webhook not implemented")


CHANNEL_PROCESSORS: dict[str, ChannelProcessor] = {
    processor.channel: processor
    for processor in (EmailProcessor(), InAppProcessor(), SmsProcessor(), WebhookProcessor())
}


def get_channel_processor(channel: str) -> ChannelProcessor:
    processor = CHANNEL_PROCESSORS.get(str(channel))
    if processor is None:
        raise UnknownChannelError(f"Unknown channel: {channel}")
    return processor
