"""Volatility Guardian - Entry Point.

Runs the batch volatility pipeline over every user's watchlist and exposes
a small HTTP trigger surface:

    GET  /health          liveness
    GET  /market/status   gate decision per region
    POST /batch/run       run one batch (``manual`` bypasses market hours)
    GET  /prices          batch current-price lookup

With BATCH_ENABLED=true the batch also runs on a fixed interval.
"""

import hmac
import json
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import parse_qs, urlparse

from .config import settings
from .db.repository import WatchlistRepository
from .exceptions import ConfigurationError
from .market_data import FinnhubClient, MarketDataService, RecommendationProvider, YahooClient
from .market_hours import MarketHoursGate
from .models import BatchRunStatus, Region, RunState
from .orchestrator import BatchOrchestrator
from .redis_client import RedisClient
from .alerting import (
    EmailChannel,
    EmailClient,
    NotificationDispatcher,
    PushChannel,
    PushClient,
    TwilioClient,
    WhatsAppChannel,
)
from .volatility import VolatilityEngine, VolatilityPolicy

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ],
)

logger = logging.getLogger(__name__)


@dataclass
class Service:
    """Process-scoped handles, created once at startup."""
    orchestrator: BatchOrchestrator
    market_data: MarketDataService
    gate: MarketHoursGate
    repository: WatchlistRepository
    redis: Optional[RedisClient]
    finnhub: FinnhubClient

    def close(self):
        self.orchestrator.stop()
        self.repository.close()
        if self.redis:
            self.redis.close()
        self.finnhub.close()


# Global service instance for signal handling
service: Optional[Service] = None


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    logger.info(f"Received signal {signum}, shutting down...")
    if service:
        service.close()
    sys.exit(0)


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def build_service() -> Service:
    """Wire every collaborator from settings."""
    repository = WatchlistRepository()
    repository.connect()

    redis_client: Optional[RedisClient] = None
    if settings.redis_enabled:
        redis_client = RedisClient()
        try:
            redis_client.connect()
        except Exception as e:
            logger.warning(f"Redis unavailable, running without cache: {e}")
            redis_client = None

    finnhub = FinnhubClient()
    market_data = MarketDataService(
        finnhub=finnhub,
        yahoo=YahooClient(),
        cache=redis_client,
        max_workers=settings.max_workers,
        history_days=settings.history_days,
        price_cache_seconds=settings.price_cache_seconds,
        history_cache_seconds=settings.history_cache_seconds,
    )
    recommendations = RecommendationProvider(
        finnhub, cache=redis_client, cache_seconds=settings.recommendation_cache_seconds
    )

    push = PushClient()
    if settings.firebase_enabled:
        push.connect()
    twilio = TwilioClient()
    if settings.twilio_enabled:
        twilio.connect()
    dispatcher = NotificationDispatcher(
        [PushChannel(push), WhatsAppChannel(twilio), EmailChannel(EmailClient())]
    )

    gate = MarketHoursGate.with_extra_holidays(
        {Region.US: settings.extra_us_holidays, Region.INDIA: settings.extra_india_holidays}
    )
    engine = VolatilityEngine(
        VolatilityPolicy(
            low_volatility_pct=settings.low_volatility_pct,
            high_volatility_pct=settings.high_volatility_pct,
            alert_on_high_volatility=settings.alert_on_high_volatility,
        )
    )

    summary_sender = None
    if settings.admin_phone and twilio.enabled:
        def summary_sender(status: BatchRunStatus):
            twilio.send_whatsapp(settings.admin_phone, status.format_summary())

    orchestrator = BatchOrchestrator(
        store=repository,
        resolver=repository,
        market_data=market_data,
        engine=engine,
        gate=gate,
        dispatcher=dispatcher,
        recommendations=recommendations,
        max_workers=settings.max_workers,
        timeout_seconds=settings.batch_timeout_seconds,
        fetch_recommendations=settings.fetch_recommendations,
        lock_store=redis_client,
        single_flight=settings.single_flight,
        lock_ttl_seconds=settings.run_lock_ttl_seconds,
        summary_sender=summary_sender,
    )
    return Service(
        orchestrator=orchestrator,
        market_data=market_data,
        gate=gate,
        repository=repository,
        redis=redis_client,
        finnhub=finnhub,
    )


def make_handler(svc: Service, cron_secret: Optional[str] = None):
    """Build the request handler class bound to a service."""

    class _Handler(BaseHTTPRequestHandler):
        def _send_json(self, code: int, payload):
            body = json.dumps(payload).encode("utf-8")
            self.send_response(code)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _authorized(self) -> bool:
            if not cron_secret:
                return True
            header = self.headers.get("Authorization", "")
            return hmac.compare_digest(header, f"Bearer {cron_secret}")

        def _read_json(self) -> dict:
            length = int(self.headers.get("Content-Length") or 0)
            if not length:
                return {}
            try:
                body = json.loads(self.rfile.read(length))
            except ValueError:
                return {}
            return body if isinstance(body, dict) else {}

        def do_GET(self):
            url = urlparse(self.path)
            query = parse_qs(url.query)

            if url.path == "/health":
                self._send_json(200, {"status": "ok", "scheduler": settings.batch_enabled})
            elif url.path == "/market/status":
                self._market_status(query)
            elif url.path == "/prices":
                self._prices(query)
            else:
                self._send_json(404, {"error": "not found"})

        def do_POST(self):
            url = urlparse(self.path)
            if url.path != "/batch/run":
                self._send_json(404, {"error": "not found"})
                return
            if not self._authorized():
                self._send_json(401, {"error": "unauthorized"})
                return

            query = parse_qs(url.query)
            body = self._read_json()
            manual = _parse_bool(query.get("manual", [body.get("manual", False)])[0])

            status = svc.orchestrator.run_batch(manual=manual)
            code = 500 if status.state == RunState.ERROR else 200
            self._send_json(code, status.to_dict())

        def _market_status(self, query):
            try:
                regions = [Region(r.upper()) for r in query.get("region", [])] or list(Region)
            except ValueError:
                self._send_json(400, {"error": "region must be one of US, INDIA"})
                return
            now = datetime.now(timezone.utc)
            self._send_json(200, {r.value: svc.gate.status(r, now).to_dict() for r in regions})

        def _prices(self, query):
            try:
                region = Region(query.get("region", ["US"])[0].upper())
            except ValueError:
                self._send_json(400, {"error": "region must be one of US, INDIA"})
                return
            symbols = [
                s.strip().upper() for s in ",".join(query.get("symbols", [])).split(",") if s.strip()
            ]
            if not symbols:
                self._send_json(400, {"error": "symbols is required"})
                return
            try:
                result = svc.market_data.batch_fetch((s, region) for s in symbols)
            except ConfigurationError as e:
                self._send_json(500, {"error": str(e)})
                return
            self._send_json(200, result.to_dict())

        def log_message(self, *args):
            pass  # suppress HTTP access logs

    return _Handler


def _start_http_server(svc: Service) -> ThreadingHTTPServer:
    """Start the trigger server on a daemon thread."""
    server = ThreadingHTTPServer(("", settings.http_port), make_handler(svc, settings.cron_secret))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info(f"HTTP server listening on :{settings.http_port}")
    return server


def main():
    """Main entry point."""
    global service

    logger.info("=" * 60)
    logger.info("VOLATILITY GUARDIAN")
    logger.info("=" * 60)

    # Log configuration
    logger.info(f"Database: {settings.db_host}:{settings.db_port}/{settings.db_name}")
    logger.info(f"Redis: {settings.redis_host}:{settings.redis_port} (enabled: {settings.redis_enabled})")
    logger.info(f"Finnhub configured: {bool(settings.finnhub_api_key)}")
    logger.info(f"Twilio enabled: {settings.twilio_enabled}")
    logger.info(f"Firebase enabled: {settings.firebase_enabled}")
    logger.info(f"SMTP enabled: {settings.smtp_enabled}")
    logger.info(f"Volatility thresholds: low {settings.low_volatility_pct}% / high {settings.high_volatility_pct}%")
    logger.info(f"Batch: enabled={settings.batch_enabled} interval={settings.batch_interval_seconds}s "
                f"timeout={settings.batch_timeout_seconds}s workers={settings.max_workers} "
                f"overlap={settings.run_overlap_policy}")

    # Setup signal handlers
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        service = build_service()
        server = _start_http_server(service)
        if settings.batch_enabled:
            service.orchestrator.run_forever(settings.batch_interval_seconds)
        else:
            # Trigger-only mode: serve until signalled
            threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if service:
            service.close()


if __name__ == "__main__":
    main()
