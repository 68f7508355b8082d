"""Redis client for market data caching and the batch run lock."""

import json
import logging
import uuid
from typing import Any, Optional

import redis

from .config import settings

logger = logging.getLogger(__name__)


class RedisClient:
    """Best-effort cache and lock store.

    Every read/write failure is logged and treated as a cache miss so a
    Redis outage never fails a batch run.
    """

    _PREFIX = "volatility_guardian"

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None, db: Optional[int] = None):
        self.host = host or settings.redis_host
        self.port = port or settings.redis_port
        self.db = settings.redis_db if db is None else db
        self.client: Optional[redis.Redis] = None

    def connect(self):
        """Establish Redis connection."""
        try:
            self.client = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                decode_responses=True,
            )
            # Test connection
            self.client.ping()
            logger.info("Connected to Redis")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self.client = None
            raise

    def close(self):
        """Close Redis connection."""
        if self.client:
            self.client.close()
            self.client = None

    def _key(self, *parts: str) -> str:
        return ":".join((self._PREFIX,) + parts)

    # ------------------------------------------------------------------
    # JSON cache
    # ------------------------------------------------------------------
    def get_json(self, *key_parts: str) -> Optional[Any]:
        if not self.client:
            return None
        key = self._key(*key_parts)
        try:
            data_str = self.client.get(key)
            if not data_str:
                return None
            return json.loads(data_str)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unparseable cache entry {key}: {e}")
            return None
        except Exception as e:
            logger.warning(f"Failed to read cache entry {key}: {e}")
            return None

    def set_json(self, payload: Any, ttl_seconds: int, *key_parts: str) -> None:
        if not self.client or ttl_seconds <= 0:
            return
        key = self._key(*key_parts)
        try:
            self.client.set(key, json.dumps(payload), ex=ttl_seconds)
        except Exception as e:
            logger.warning(f"Failed to write cache entry {key}: {e}")

    # ------------------------------------------------------------------
    # Run lock (single-flight batch runs)
    # ------------------------------------------------------------------
    def acquire_lock(self, name: str, ttl_seconds: int) -> Optional[str]:
        """Try to take a lock; returns an owner token, or None if held elsewhere.

        Raises if Redis is unreachable so the caller can decide a fallback.
        """
        if not self.client:
            raise ConnectionError("Redis not connected")
        token = uuid.uuid4().hex
        if self.client.set(self._key("lock", name), token, nx=True, ex=ttl_seconds):
            return token
        return None

    def release_lock(self, name: str, token: str) -> None:
        """Release the lock if we still own it."""
        if not self.client:
            return
        key = self._key("lock", name)
        try:
            if self.client.get(key) == token:
                self.client.delete(key)
        except Exception as e:
            logger.warning(f"Failed to release lock {key}: {e}")
