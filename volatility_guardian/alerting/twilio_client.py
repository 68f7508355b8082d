"""Twilio client for WhatsApp alerts."""

import logging
import re
from typing import Optional

from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException

from ..config import settings
from ..exceptions import ChannelFailure, ConfigurationError

logger = logging.getLogger(__name__)

CHANNEL = "whatsapp"

# WhatsApp message length limit
MAX_MESSAGE_LENGTH = 4096


def validate_phone_number(phone: str) -> bool:
    """Basic check: 10-15 digits once punctuation is removed."""
    digits = re.sub(r"\D", "", phone or "")
    return 10 <= len(digits) <= 15


def format_phone_number(phone: str) -> str:
    """Normalise to E.164, defaulting 10-digit numbers to India (+91) or US (+1)."""
    digits = re.sub(r"\D", "", phone)

    if len(digits) == 10 and not digits.startswith("1"):
        return f"+91{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


class TwilioClient:
    """Client for sending WhatsApp messages via Twilio."""

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
    ):
        self.account_sid = account_sid or settings.twilio_account_sid
        self.auth_token = auth_token or settings.twilio_auth_token
        self.from_number = from_number or settings.twilio_whatsapp_number
        self.enabled = all([self.account_sid, self.auth_token, self.from_number])
        self.client: Optional[Client] = None

    def connect(self):
        """Initialize Twilio client."""
        if not self.enabled:
            logger.warning("Twilio not configured - WhatsApp alerts disabled")
            return

        try:
            self.client = Client(self.account_sid, self.auth_token)
            # Verify credentials by fetching account info
            account = self.client.api.accounts(self.account_sid).fetch()
            logger.info(f"Twilio connected - Account: {account.friendly_name}")
        except TwilioRestException as e:
            logger.error(f"Failed to connect to Twilio: {e}")
            self.enabled = False
            self.client = None
            raise

    def send_whatsapp(self, to: str, message: str) -> str:
        """Send a WhatsApp message.

        Args:
            to: Recipient phone number (any common format)
            message: Message body

        Returns:
            Twilio message SID

        Raises:
            ConfigurationError: Twilio credentials missing
            ChannelFailure: invalid number or Twilio rejected the message
        """
        if not self.enabled or not self.client:
            raise ConfigurationError("Twilio WhatsApp is not configured")
        if not validate_phone_number(to):
            raise ChannelFailure(CHANNEL, f"invalid phone number {to!r}")

        if len(message) > MAX_MESSAGE_LENGTH:
            message = message[: MAX_MESSAGE_LENGTH - 3] + "..."

        try:
            msg = self.client.messages.create(
                body=message,
                from_=f"whatsapp:{format_phone_number(self.from_number)}",
                to=f"whatsapp:{format_phone_number(to)}",
            )
        except TwilioRestException as e:
            if e.status == 401:
                logger.error("Twilio authentication failed - check TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN")
            raise ChannelFailure(CHANNEL, f"Twilio error {e.status}: {e.msg}")

        logger.info(f"WhatsApp message sent: {msg.sid}")
        return msg.sid
