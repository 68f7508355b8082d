"""Read-only watchlist repository for Volatility Guardian."""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from ..config import settings
from ..exceptions import ConfigurationError, InvalidInput
from ..models import NotificationTarget, Region, WatchedItem, WatchEntry

logger = logging.getLogger(__name__)


def _region(value: Optional[str]) -> Region:
    if not value:
        return Region.US
    try:
        return Region(value.strip().upper())
    except ValueError:
        raise InvalidInput(f"unknown region {value!r}")


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise InvalidInput(f"not a number: {value!r}")


def row_to_entry(row: Dict[str, Any]) -> WatchEntry:
    """Build a validated WatchEntry from a ``watchlist_items`` row."""
    multiplier = _decimal(row.get("atr_multiplier"))
    item = WatchedItem(
        symbol=row["symbol"],
        region=_region(row.get("region")),
        atr_period=int(row.get("atr_period") or settings.default_atr_period),
        atr_multiplier=multiplier if multiplier is not None else settings.default_atr_multiplier,
        alert_price=_decimal(row.get("alert_price")),
        owned=bool(row.get("owned")),
        name=row.get("name"),
    )
    item.validate()
    return WatchEntry(user_id=str(row["user_id"]), item=item)


class WatchlistRepository:
    """Database access for watched items and notification targets.

    The batch pipeline only reads; nothing here writes.
    """

    def __init__(self):
        self.conn = None

    def connect(self):
        """Establish database connection."""
        try:
            self.conn = psycopg2.connect(
                host=settings.db_host,
                port=settings.db_port,
                user=settings.db_user,
                password=settings.db_password,
                dbname=settings.db_name,
            )
            self.conn.set_session(readonly=True, autocommit=True)
            logger.info("Connected to database")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def _fetchall(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        if self.conn is None:
            raise ConfigurationError("Watchlist database not connected")
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params)
            return cur.fetchall()

    def list_watch_entries(self) -> List[WatchEntry]:
        """All (user, watched item) pairs; malformed rows are logged and skipped.

        Raises:
            ConfigurationError: database not connected or query failed
        """
        query = """
            SELECT
                wi.user_id,
                wi.symbol,
                wi.name,
                wi.region,
                wi.atr_period,
                wi.atr_multiplier,
                wi.alert_price,
                wi.owned
            FROM watchlist_items wi
            ORDER BY wi.user_id, wi.symbol
        """
        try:
            rows = self._fetchall(query)
        except psycopg2.Error as e:
            logger.error(f"Failed to list watchlist items: {e}")
            raise ConfigurationError(f"Watchlist store unavailable: {e}")

        entries = []
        for row in rows:
            try:
                entries.append(row_to_entry(row))
            except (InvalidInput, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed watchlist row {row.get('user_id')}/{row.get('symbol')}: {e}")
        logger.info(f"Loaded {len(entries)} watchlist entries ({len(rows) - len(entries)} skipped)")
        return entries

    def get_notification_target(self, user_id: str) -> Optional[NotificationTarget]:
        """Delivery addresses for a user, or None if the user does not exist."""
        users = self._fetchall(
            "SELECT id, phone_number, email FROM users WHERE id = %s",
            (user_id,),
        )
        if not users:
            return None
        user = users[0]

        tokens = self._fetchall(
            "SELECT token FROM push_tokens WHERE user_id = %s ORDER BY token",
            (user_id,),
        )
        return NotificationTarget(
            user_id=str(user["id"]),
            push_tokens=[t["token"] for t in tokens if t.get("token")],
            phone_number=user.get("phone_number") or None,
            email=user.get("email") or None,
        )
