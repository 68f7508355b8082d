"""Notification channels: map a target + alert to a tagged ChannelResult."""

import logging

from ..exceptions import ChannelFailure, ConfigurationError
from ..models import Alert, ChannelResult, DeliveryStatus, NotificationTarget
from .email_client import EmailClient
from .push_client import PushClient
from .twilio_client import TwilioClient

logger = logging.getLogger(__name__)


class NotificationChannel:
    """One delivery channel.

    ``deliver`` reports every outcome in the returned ChannelResult:
    no address for the target is SKIPPED, a missing configuration or a
    rejected address is FAILED.
    """

    name = "channel"

    def deliver(self, target: NotificationTarget, alert: Alert) -> ChannelResult:
        raise NotImplementedError

    def _skipped(self) -> ChannelResult:
        return ChannelResult(channel=self.name, status=DeliveryStatus.SKIPPED)

    def _failed(self, error: Exception, failures: int = 1) -> ChannelResult:
        logger.warning(f"{self.name} delivery failed: {error}")
        return ChannelResult(
            channel=self.name,
            status=DeliveryStatus.FAILED,
            failure_count=failures,
            error=str(error),
        )


class PushChannel(NotificationChannel):
    name = "push"

    def __init__(self, client: PushClient):
        self.client = client

    def deliver(self, target: NotificationTarget, alert: Alert) -> ChannelResult:
        tokens = [t for t in target.push_tokens if t]
        if not tokens:
            return self._skipped()

        try:
            sent = self.client.send_multicast(tokens, alert.title, alert.push_body(), alert.push_data())
        except (ConfigurationError, ChannelFailure) as e:
            return self._failed(e, failures=len(tokens))

        if sent.failure_count == 0:
            status = DeliveryStatus.SUCCESS
        elif sent.success_count > 0:
            status = DeliveryStatus.PARTIAL
        else:
            status = DeliveryStatus.FAILED

        return ChannelResult(
            channel=self.name,
            status=status,
            success_count=sent.success_count,
            failure_count=sent.failure_count,
            error="; ".join(sent.errors[:3]) or None,
        )


class WhatsAppChannel(NotificationChannel):
    name = "whatsapp"

    def __init__(self, client: TwilioClient):
        self.client = client

    def deliver(self, target: NotificationTarget, alert: Alert) -> ChannelResult:
        if not target.phone_number:
            return self._skipped()
        try:
            self.client.send_whatsapp(target.phone_number, alert.format_message())
        except (ConfigurationError, ChannelFailure) as e:
            return self._failed(e)
        return ChannelResult(channel=self.name, status=DeliveryStatus.SUCCESS, success_count=1)


class EmailChannel(NotificationChannel):
    name = "email"

    def __init__(self, client: EmailClient):
        self.client = client

    def deliver(self, target: NotificationTarget, alert: Alert) -> ChannelResult:
        if not target.email:
            return self._skipped()
        try:
            self.client.send_alert(target.email, alert)
        except (ConfigurationError, ChannelFailure) as e:
            return self._failed(e)
        return ChannelResult(channel=self.name, status=DeliveryStatus.SUCCESS, success_count=1)
