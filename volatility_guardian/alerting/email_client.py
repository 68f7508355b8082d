"""SMTP client for HTML email alerts."""

import logging
import re
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import parseaddr
from html import escape
from typing import Optional

from ..config import settings
from ..exceptions import ChannelFailure, ConfigurationError
from ..models import Alert, Recommendation, format_money

logger = logging.getLogger(__name__)

CHANNEL = "email"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_STYLE = """
body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
.container { max-width: 600px; margin: 0 auto; padding: 20px; }
.header { background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); color: white; padding: 20px; border-radius: 8px 8px 0 0; }
.content { background: #f9fafb; padding: 30px; border-radius: 0 0 8px 8px; }
.metric { background: white; padding: 15px; margin: 10px 0; border-radius: 6px; border-left: 4px solid #667eea; }
.metric-label { font-size: 14px; color: #6b7280; margin-bottom: 5px; }
.metric-value { font-size: 24px; font-weight: bold; color: #1f2937; }
.stop-loss { border-left-color: #ef4444; }
.stop-loss .metric-value { color: #dc2626; }
.recommendation { padding: 15px; margin: 20px 0; border-radius: 6px; text-align: center; font-weight: bold; font-size: 18px; }
.rec-buy { background: #d1fae5; color: #065f46; }
.rec-hold { background: #fef3c7; color: #92400e; }
.rec-sell { background: #fee2e2; color: #991b1b; }
.footer { margin-top: 20px; padding-top: 20px; border-top: 1px solid #e5e7eb; font-size: 12px; color: #6b7280; }
"""


def validate_email(address: str) -> bool:
    _, addr = parseaddr(address or "")
    return bool(_EMAIL_RE.match(addr))


def _volatility_note(alert: Alert) -> str:
    rec = alert.result.recommendation
    if rec is Recommendation.SELL:
        return "Price reached your exit level - review the position"
    if rec is Recommendation.BUY:
        return "Low volatility - Tight stop, more stable stock"
    return "Moderate volatility - Standard risk level"


def render_alert_html(alert: Alert) -> str:
    """HTML body for a volatility alert email."""
    r = alert.result

    def money(value):
        return format_money(value, alert.region)

    symbol = escape(alert.symbol)
    rec = r.recommendation.value

    alert_price_block = ""
    if alert.alert_price is not None:
        alert_price_block = f"""
      <div class="metric">
        <div class="metric-label">Your Alert Price</div>
        <div class="metric-value">{money(alert.alert_price)}</div>
      </div>"""

    return f"""<!DOCTYPE html>
<html>
  <head><style>{_STYLE}</style></head>
  <body>
    <div class="container">
      <div class="header">
        <h1 style="margin: 0;">📈 Stock Volatility Alert</h1>
        <p style="margin: 10px 0 0 0; opacity: 0.9;">Analysis for {symbol}</p>
      </div>
      <div class="content">
      <div class="metric">
        <div class="metric-label">Current Price</div>
        <div class="metric-value">{money(r.current_price)}</div>
      </div>
      <div class="metric">
        <div class="metric-label">Average True Range (ATR, {alert.atr_period}-day)</div>
        <div class="metric-value">{money(r.atr)}</div>
      </div>
      <div class="metric stop-loss">
        <div class="metric-label">Volatility Stop Loss</div>
        <div class="metric-value">{money(r.stop_loss)}</div>
        <div style="margin-top: 5px; font-size: 14px; color: #dc2626;">
          {r.stop_loss_percentage:.2f}% below current price
        </div>
      </div>{alert_price_block}
      <div class="recommendation rec-{rec.lower()}">Recommendation: {rec}</div>
      <div style="background: white; padding: 15px; border-radius: 6px; margin-top: 20px;">
        <h3 style="margin-top: 0;">What does this mean?</h3>
        <ul style="margin: 0; padding-left: 20px;">
          <li>Place your stop loss at <strong>{money(r.stop_loss)}</strong></li>
          <li>Risk per share: <strong>{money(r.risk_per_share)}</strong></li>
          <li>{_volatility_note(alert)}</li>
        </ul>
      </div>
      <div class="footer">
        <p>This is an automated alert from your stock watchlist.</p>
        <p>Stop loss levels are calculated using the Average True Range (ATR) method.</p>
      </div>
      </div>
    </div>
  </body>
</html>
"""


class EmailClient:
    """Client for sending alert emails over SMTP."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
        use_ssl: Optional[bool] = None,
        timeout: float = 15.0,
    ):
        self.host = host or settings.smtp_host
        self.port = port or settings.smtp_port
        self.user = user or settings.smtp_user
        self.password = password or settings.smtp_password
        self.sender = sender or settings.email_from
        self.use_ssl = settings.smtp_use_ssl if use_ssl is None else use_ssl
        self.timeout = timeout
        self.enabled = bool(self.host)
        if not self.enabled:
            logger.warning("SMTP not configured - email alerts disabled")

    def _connect(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.use_ssl:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=context)
        return smtplib.SMTP(self.host, self.port, timeout=self.timeout)

    def send_email(self, to: str, subject: str, text: str, html: Optional[str] = None) -> None:
        """Send one message with a plain-text body and optional HTML alternative.

        Raises:
            ConfigurationError: SMTP host missing
            ChannelFailure: invalid address or SMTP error
        """
        if not self.enabled:
            raise ConfigurationError("SMTP email is not configured")
        if not validate_email(to):
            raise ChannelFailure(CHANNEL, f"invalid email address {to!r}")

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.set_content(text)
        if html:
            msg.add_alternative(html, subtype="html")

        context = ssl.create_default_context()
        try:
            # starttls and login must stay inside the block; it closes the socket on failure
            with self._connect(context) as server:
                if not self.use_ssl:
                    server.starttls(context=context)
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise ChannelFailure(CHANNEL, f"SMTP error: {e}")

        logger.info(f"Email sent to {to}: {subject}")

    def send_alert(self, to: str, alert: Alert) -> None:
        self.send_email(
            to,
            alert.email_subject,
            alert.format_message().replace("*", ""),
            render_alert_html(alert),
        )
