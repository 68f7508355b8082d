"""Firebase Cloud Messaging client for multicast push alerts."""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, messaging
from firebase_admin.exceptions import FirebaseError

from ..config import settings
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class MulticastResult:
    """Per-token outcome counts of one logical multicast."""
    success_count: int = 0
    failure_count: int = 0
    failed_tokens: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class PushClient:
    """Sends push notifications through the Firebase Admin SDK."""

    # FCM limit for send_each_for_multicast
    MAX_TOKENS_PER_MULTICAST = 500

    def __init__(self, service_account_json: Optional[str] = None, app_name: str = "volatility-guardian"):
        self.service_account_json = service_account_json or settings.firebase_service_account_json
        self.app_name = app_name
        self.enabled = bool(self.service_account_json)
        self.app: Optional[firebase_admin.App] = None

    def connect(self):
        """Initialize the Firebase app from service account JSON."""
        if not self.enabled:
            logger.warning("Firebase not configured - push alerts disabled")
            return

        try:
            self.app = firebase_admin.get_app(self.app_name)
        except ValueError:
            try:
                cred = credentials.Certificate(json.loads(self.service_account_json))
                self.app = firebase_admin.initialize_app(cred, name=self.app_name)
            except (ValueError, FirebaseError) as e:
                logger.error(f"Failed to initialize Firebase Admin SDK: {e}")
                self.enabled = False
                raise
        logger.info("Firebase Admin SDK initialized")

    def send_multicast(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Optional[Dict[str, str]] = None,
    ) -> MulticastResult:
        """Send one notification to many device tokens.

        Partial token failure is reported in the counts, never raised.

        Raises:
            ConfigurationError: Firebase not initialized
        """
        if not self.enabled or self.app is None:
            raise ConfigurationError("Firebase push is not configured")

        result = MulticastResult()
        if not tokens:
            logger.warning("No tokens provided for multicast notification")
            return result

        for start in range(0, len(tokens), self.MAX_TOKENS_PER_MULTICAST):
            chunk = tokens[start:start + self.MAX_TOKENS_PER_MULTICAST]
            message = messaging.MulticastMessage(
                notification=messaging.Notification(title=title, body=body),
                data=data or {},
                tokens=chunk,
            )
            try:
                response = messaging.send_each_for_multicast(message, app=self.app)
            except FirebaseError as e:
                logger.error(f"Multicast send failed for {len(chunk)} token(s): {e}")
                result.failure_count += len(chunk)
                result.failed_tokens.extend(chunk)
                result.errors.append(str(e))
                continue

            result.success_count += response.success_count
            result.failure_count += response.failure_count
            for token, resp in zip(chunk, response.responses):
                if not resp.success:
                    code = getattr(resp.exception, "code", None)
                    logger.warning(f"Push token {token[:12]}... failed: {code} {resp.exception}")
                    result.failed_tokens.append(token)
                    result.errors.append(f"{code}: {resp.exception}")

        logger.info(
            f"Multicast notification sent: {result.success_count} successful, {result.failure_count} failed"
        )
        return result
