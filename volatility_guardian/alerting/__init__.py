"""Alerting module for Volatility Guardian."""

from .push_client import PushClient
from .twilio_client import TwilioClient
from .email_client import EmailClient
from .channels import NotificationChannel, PushChannel, WhatsAppChannel, EmailChannel
from .dispatcher import NotificationDispatcher, combine_results

__all__ = [
    "PushClient",
    "TwilioClient",
    "EmailClient",
    "NotificationChannel",
    "PushChannel",
    "WhatsAppChannel",
    "EmailChannel",
    "NotificationDispatcher",
    "combine_results",
]
