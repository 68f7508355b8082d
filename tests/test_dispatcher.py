"""Tests for notification channels and the dispatcher fan-out."""

import smtplib
import threading
import unittest
from decimal import Decimal
from unittest.mock import MagicMock, patch

from twilio.base.exceptions import TwilioRestException

from volatility_guardian.alerting.channels import EmailChannel, PushChannel, WhatsAppChannel
from volatility_guardian.alerting.dispatcher import NotificationDispatcher, combine_results
from volatility_guardian.alerting.email_client import EmailClient, render_alert_html, validate_email
from volatility_guardian.alerting.push_client import MulticastResult, PushClient
from volatility_guardian.alerting.twilio_client import TwilioClient, format_phone_number, validate_phone_number
from volatility_guardian.exceptions import ChannelFailure, ConfigurationError
from volatility_guardian.models import (
    Alert,
    AlertCondition,
    ChannelResult,
    DeliveryStatus,
    NotificationTarget,
    Recommendation,
    Region,
    VolatilityResult,
)


def make_alert(region=Region.US) -> Alert:
    return Alert(
        symbol="AAPL",
        region=region,
        condition=AlertCondition.PRICE_ALERT,
        result=VolatilityResult(
            current_price=Decimal("150"),
            atr=Decimal("2"),
            stop_loss=Decimal("146"),
            stop_loss_percentage=Decimal("2.6667"),
            recommendation=Recommendation.HOLD,
        ),
        alert_price=Decimal("151"),
    )


def full_target() -> NotificationTarget:
    return NotificationTarget(
        user_id="u1",
        push_tokens=["tok-a", "tok-b"],
        phone_number="+14155550100",
        email="trader@example.com",
    )


class FakePush:
    def __init__(self, success=None, failure=0, error=None):
        self.success = success
        self.failure = failure
        self.error = error
        self.calls = []

    def send_multicast(self, tokens, title, body, data=None):
        self.calls.append((tokens, title, body, data))
        if self.error:
            raise self.error
        success = len(tokens) - self.failure if self.success is None else self.success
        return MulticastResult(success_count=success, failure_count=self.failure)


class FakeWhatsApp:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    def send_whatsapp(self, to, message):
        if self.error:
            raise self.error
        self.sent.append((to, message))
        return "SM123"


class FakeEmail:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    def send_alert(self, to, alert):
        if self.error:
            raise self.error
        self.sent.append((to, alert.symbol))


class TestCombineResults:

    def test_reduces_counts_and_tags(self):
        results = [
            ChannelResult("push", DeliveryStatus.PARTIAL, success_count=2, failure_count=1),
            ChannelResult("whatsapp", DeliveryStatus.FAILED, failure_count=1, error="boom"),
            ChannelResult("email", DeliveryStatus.SUCCESS, success_count=1),
            ChannelResult("sms", DeliveryStatus.SKIPPED),
        ]
        combined = combine_results(results)

        assert combined.success_count == 3
        assert combined.failure_count == 2
        assert combined.errored_channels == ["whatsapp"]
        assert combined.partial_channels == ["push"]
        assert combined.delivered

    def test_order_does_not_change_totals(self):
        results = [
            ChannelResult("push", DeliveryStatus.SUCCESS, success_count=2),
            ChannelResult("email", DeliveryStatus.FAILED, failure_count=1),
        ]
        forward = combine_results(results)
        backward = combine_results(reversed(results))
        assert (forward.success_count, forward.failure_count) == (backward.success_count, backward.failure_count)

    def test_empty(self):
        combined = combine_results([])
        assert combined.success_count == 0
        assert not combined.delivered


class TestNotificationDispatcher:

    def test_one_failing_channel_does_not_block_others(self):
        push = FakePush()
        email = FakeEmail()
        dispatcher = NotificationDispatcher([
            PushChannel(push),
            WhatsAppChannel(FakeWhatsApp(error=ChannelFailure("whatsapp", "Twilio error 500"))),
            EmailChannel(email),
        ])

        result = dispatcher.dispatch(full_target(), make_alert())

        assert result.success_count == 3  # 2 push tokens + 1 email
        assert result.failure_count == 1
        assert result.errored_channels == ["whatsapp"]
        assert email.sent == [("trader@example.com", "AAPL")]
        assert len(push.calls) == 1

    def test_partial_push(self):
        dispatcher = NotificationDispatcher([PushChannel(FakePush(failure=1))])
        result = dispatcher.dispatch(full_target(), make_alert())

        assert result.success_count == 1
        assert result.failure_count == 1
        assert result.partial_channels == ["push"]
        assert result.errored_channels == []

    def test_missing_addresses_are_skipped(self):
        push, whatsapp, email = FakePush(), FakeWhatsApp(), FakeEmail()
        dispatcher = NotificationDispatcher([PushChannel(push), WhatsAppChannel(whatsapp), EmailChannel(email)])

        result = dispatcher.dispatch(NotificationTarget(user_id="u2"), make_alert())

        assert result.success_count == 0
        assert result.failure_count == 0
        assert {c.status for c in result.channels} == {DeliveryStatus.SKIPPED}
        assert push.calls == [] and whatsapp.sent == [] and email.sent == []

    def test_unconfigured_channel_is_failed(self):
        dispatcher = NotificationDispatcher([
            EmailChannel(FakeEmail(error=ConfigurationError("SMTP email is not configured"))),
        ])
        result = dispatcher.dispatch(full_target(), make_alert())
        assert result.errored_channels == ["email"]
        assert result.channels[0].error == "SMTP email is not configured"

    def test_unexpected_channel_exception_is_contained(self):
        class Exploding:
            name = "exploding"

            def deliver(self, target, alert):
                raise RuntimeError("kaboom")

        dispatcher = NotificationDispatcher([Exploding(), EmailChannel(FakeEmail())])
        result = dispatcher.dispatch(full_target(), make_alert())

        assert result.errored_channels == ["exploding"]
        assert result.success_count == 1

    def test_channels_run_concurrently(self):
        barrier = threading.Barrier(2, timeout=5)

        class Waiting:
            def __init__(self, name):
                self.name = name

            def deliver(self, target, alert):
                # Both channels must be in flight at once to pass the barrier
                barrier.wait()
                return ChannelResult(self.name, DeliveryStatus.SUCCESS, success_count=1)

        result = NotificationDispatcher([Waiting("a"), Waiting("b")]).dispatch(full_target(), make_alert())
        assert result.success_count == 2

    def test_no_channels(self):
        result = NotificationDispatcher([]).dispatch(full_target(), make_alert())
        assert result.channels == []


class TestPushClient(unittest.TestCase):

    def setUp(self):
        self.client = PushClient(service_account_json='{"type": "service_account"}')
        self.client.app = MagicMock()

    @patch("volatility_guardian.alerting.push_client.messaging.send_each_for_multicast")
    def test_counts_per_token(self, mock_send):
        failed = MagicMock(success=False)
        failed.exception.code = "UNREGISTERED"
        mock_send.return_value = MagicMock(
            success_count=1, failure_count=1, responses=[MagicMock(success=True), failed]
        )

        result = self.client.send_multicast(["tok-a", "tok-b"], "title", "body", {"symbol": "AAPL"})

        self.assertEqual(result.success_count, 1)
        self.assertEqual(result.failure_count, 1)
        self.assertEqual(result.failed_tokens, ["tok-b"])

    @patch("volatility_guardian.alerting.push_client.messaging.send_each_for_multicast")
    def test_chunks_large_token_lists(self, mock_send):
        mock_send.side_effect = lambda message, app: MagicMock(
            success_count=len(message.tokens), failure_count=0, responses=[]
        )
        tokens = [f"tok-{i}" for i in range(501)]

        result = self.client.send_multicast(tokens, "title", "body")

        self.assertEqual(mock_send.call_count, 2)
        self.assertEqual(result.success_count, 501)

    def test_not_configured(self):
        client = PushClient(service_account_json="")
        client.service_account_json = None
        client.enabled = False
        with self.assertRaises(ConfigurationError):
            client.send_multicast(["tok"], "t", "b")


class TestTwilioClient(unittest.TestCase):

    def setUp(self):
        self.client = TwilioClient("ACtest", "secret", "+14155238886")
        self.client.client = MagicMock()
        self.client.client.messages.create.return_value = MagicMock(sid="SM42")

    def test_phone_helpers(self):
        self.assertEqual(format_phone_number("98765 43210"), "+919876543210")
        self.assertEqual(format_phone_number("(123) 456-7890"), "+11234567890")
        self.assertEqual(format_phone_number("+1 415 555 0100"), "+14155550100")
        self.assertTrue(validate_phone_number("+91 98765 43210"))
        self.assertFalse(validate_phone_number("12345"))

    def test_send_uses_whatsapp_addresses(self):
        sid = self.client.send_whatsapp("9876543210", "hello")

        self.assertEqual(sid, "SM42")
        self.client.client.messages.create.assert_called_once_with(
            body="hello",
            from_="whatsapp:+14155238886",
            to="whatsapp:+919876543210",
        )

    def test_invalid_number(self):
        with self.assertRaises(ChannelFailure):
            self.client.send_whatsapp("123", "hello")

    def test_twilio_error(self):
        self.client.client.messages.create.side_effect = TwilioRestException(400, "/Messages", msg="bad request")
        with self.assertRaises(ChannelFailure):
            self.client.send_whatsapp("+14155550100", "hello")

    def test_not_configured(self):
        client = TwilioClient("ACtest", "secret", "+14155238886")
        with self.assertRaises(ConfigurationError):
            client.send_whatsapp("+14155550100", "hello")


class TestEmailClient(unittest.TestCase):

    def test_validate_email(self):
        self.assertTrue(validate_email("trader@example.com"))
        self.assertTrue(validate_email("Trader <trader@example.com>"))
        self.assertFalse(validate_email("not-an-email"))

    def test_html_uses_region_currency(self):
        html = render_alert_html(make_alert(Region.INDIA))
        self.assertIn("₹146.00", html)
        self.assertIn("rec-hold", html)

    @patch("volatility_guardian.alerting.email_client.smtplib.SMTP")
    def test_send_alert_over_starttls(self, mock_smtp):
        client = EmailClient(host="smtp.example.com", port=587, user="u", password="p",
                             sender="alerts@example.com", use_ssl=False)

        client.send_alert("trader@example.com", make_alert())

        server = mock_smtp.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("u", "p")
        sent = server.send_message.call_args[0][0]
        self.assertEqual(sent["To"], "trader@example.com")
        self.assertIn("AAPL", sent["Subject"])

    @patch("volatility_guardian.alerting.email_client.smtplib.SMTP")
    def test_login_failure_closes_connection(self, mock_smtp):
        server = mock_smtp.return_value.__enter__.return_value
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        client = EmailClient(host="smtp.example.com", port=587, user="u", password="wrong",
                             sender="alerts@example.com", use_ssl=False)

        with self.assertRaises(ChannelFailure):
            client.send_alert("trader@example.com", make_alert())

        mock_smtp.return_value.__exit__.assert_called_once()
        server.send_message.assert_not_called()

    @patch("volatility_guardian.alerting.email_client.smtplib.SMTP_SSL")
    def test_send_over_implicit_tls(self, mock_smtp_ssl):
        client = EmailClient(host="smtp.example.com", port=465, sender="alerts@example.com", use_ssl=True)

        client.send_alert("trader@example.com", make_alert())

        server = mock_smtp_ssl.return_value.__enter__.return_value
        server.starttls.assert_not_called()
        server.send_message.assert_called_once()

    @patch("volatility_guardian.alerting.email_client.smtplib.SMTP")
    def test_smtp_failure_is_channel_failure(self, mock_smtp):
        mock_smtp.side_effect = OSError("connection refused")
        client = EmailClient(host="smtp.example.com", use_ssl=False)
        with self.assertRaises(ChannelFailure):
            client.send_alert("trader@example.com", make_alert())

    def test_invalid_address(self):
        client = EmailClient(host="smtp.example.com", use_ssl=False)
        with self.assertRaises(ChannelFailure):
            client.send_alert("nope", make_alert())
