"""Batch orchestrator - one gated, bounded, fault-isolated pass over all watchlists.

Flow of one run::

    GATED -> FETCHING -> EVALUATING -> DISPATCHING -> DONE
                                  \\-> ERROR (configuration only)

Per-item failures are recorded in the run status and never abort siblings.
"""

import logging
import threading
import time
import uuid
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor, as_completed, wait
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from .alerting.dispatcher import NotificationDispatcher
from .exceptions import ConfigurationError, GuardianError, InvalidInput
from .market_data.recommendations import RecommendationProvider
from .market_data.service import MarketDataService
from .market_hours import MarketHoursGate
from .models import (
    Alert,
    BatchRunStatus,
    DispatchResult,
    ItemError,
    MarketSnapshot,
    RecommendationTrend,
    Region,
    RunState,
    WatchEntry,
)
from .volatility import VolatilityEngine

logger = logging.getLogger(__name__)

SymbolKey = Tuple[str, Region]


class _RunTimeout(Exception):
    """The run-level deadline passed while waiting on workers."""


def _label(entry: WatchEntry) -> str:
    return f"{entry.user_id}:{entry.item.key}"


class BatchOrchestrator:
    """Runs the volatility pipeline over every watched item.

    Collaborators are injected; ``store`` provides ``list_watch_entries()``
    and ``resolver`` provides ``get_notification_target(user_id)``.
    All run counters are written by the calling thread only, as worker
    futures complete.
    """

    LOCK_NAME = "batch_run"

    # Number of consecutive failed runs before logging a critical error.
    _ERROR_ALERT_THRESHOLD = 3

    def __init__(
        self,
        store,
        resolver,
        market_data: Optional[MarketDataService],
        engine: VolatilityEngine,
        gate: MarketHoursGate,
        dispatcher: Optional[NotificationDispatcher],
        recommendations: Optional[RecommendationProvider] = None,
        max_workers: int = 4,
        timeout_seconds: Optional[float] = None,
        fetch_recommendations: bool = True,
        lock_store=None,
        single_flight: bool = False,
        lock_ttl_seconds: int = 900,
        summary_sender: Optional[Callable[[BatchRunStatus], None]] = None,
    ):
        if max_workers < 1:
            raise ConfigurationError(f"max_workers must be >= 1, got {max_workers}")
        self.store = store
        self.resolver = resolver
        self.market_data = market_data
        self.engine = engine
        self.gate = gate
        self.dispatcher = dispatcher
        self.recommendations = recommendations
        self.max_workers = max_workers
        self.timeout_seconds = timeout_seconds if timeout_seconds and timeout_seconds > 0 else None
        self.fetch_recommendations = fetch_recommendations
        self.lock_store = lock_store
        self.single_flight = single_flight
        self.lock_ttl_seconds = lock_ttl_seconds
        self.summary_sender = summary_sender

        self._local_lock = threading.Lock()
        self._running = False
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def run_batch(self, manual: bool = False, now: Optional[datetime] = None) -> BatchRunStatus:
        """Run one batch pass. Never raises; failures are in the returned status."""
        now = now or datetime.now(timezone.utc)
        status = BatchRunStatus(run_id=uuid.uuid4().hex[:12], manual=manual, started_at=now)

        release = None
        if self.single_flight:
            release = self._acquire_run_lock()
            if release is None:
                logger.warning(f"Batch run {status.run_id} skipped - another run is in progress")
                status.state = RunState.SKIPPED
                status.finished_at = datetime.now(timezone.utc)
                return status

        logger.info(f"Batch run {status.run_id} started (manual={manual})")
        try:
            self._run(status, now)
        except ConfigurationError as e:
            logger.error(f"Batch run {status.run_id} failed: {e}")
            status.state = RunState.ERROR
            status.fatal_error = str(e)
        except Exception as e:
            logger.error(f"Unexpected error in batch run {status.run_id}: {e}", exc_info=True)
            status.state = RunState.ERROR
            status.fatal_error = f"Unexpected error: {e}"
        finally:
            if release is not None:
                release()
            status.finished_at = datetime.now(timezone.utc)

        logger.info(
            f"Batch run {status.run_id} {status.state.value}: "
            f"{status.symbols_evaluated} evaluated, {status.alerts_sent} alerts, "
            f"{status.error_count} errors, {status.items_skipped} gated"
            + (f", {len(status.unreached)} unreached (timeout)" if status.timed_out else "")
        )
        self._send_summary(status)
        return status

    def run_forever(self, interval_seconds: float):
        """Run batches on a fixed interval until ``stop()`` is called."""
        logger.info(f"Starting batch scheduler (interval: {interval_seconds}s)")
        self._running = True
        self._stop_event.clear()
        consecutive_errors = 0

        while self._running:
            status = self.run_batch()

            if status.state == RunState.ERROR:
                consecutive_errors += 1
                logger.error(f"Batch run failed (consecutive: {consecutive_errors}): {status.fatal_error}")
                if consecutive_errors == self._ERROR_ALERT_THRESHOLD:
                    logger.critical(
                        f"Volatility Guardian: {consecutive_errors} consecutive failed batch runs. "
                        f"Watchlists are NOT being monitored. Last error: {status.fatal_error}"
                    )
            else:
                if consecutive_errors > 0:
                    logger.info(f"Batch scheduler recovered after {consecutive_errors} failed run(s)")
                consecutive_errors = 0

            self._stop_event.wait(interval_seconds)

    def stop(self):
        """Stop the scheduler loop. Safe to call more than once."""
        self._running = False
        self._stop_event.set()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    def _run(self, status: BatchRunStatus, now: datetime):
        self._check_wiring()
        deadline = time.monotonic() + self.timeout_seconds if self.timeout_seconds else None

        entries = self.store.list_watch_entries()
        status.items_total = len(entries)

        # GATED
        status.state = RunState.GATED
        admitted = self._admit(status, self._validate(status, entries), now)
        pending: Dict[int, WatchEntry] = dict(enumerate(admitted))
        if not pending:
            status.state = RunState.DONE
            return

        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="batch")
        try:
            # FETCHING
            status.state = RunState.FETCHING
            snapshots, fetch_errors, trends = self._fetch(pending.values(), executor, deadline)

            # EVALUATING
            status.state = RunState.EVALUATING
            alerts = self._evaluate(status, pending, snapshots, fetch_errors, trends)

            # DISPATCHING
            status.state = RunState.DISPATCHING
            self._dispatch(status, pending, alerts, executor, deadline)

        except _RunTimeout:
            status.timed_out = True
            status.unreached = [_label(entry) for entry in pending.values()]
            logger.warning(
                f"Batch run {status.run_id} hit the {self.timeout_seconds}s timeout in "
                f"{status.state.value}; {len(status.unreached)} item(s) not reached"
            )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        status.state = RunState.DONE

    def _check_wiring(self):
        missing = [
            name
            for name, value in (
                ("watchlist store", self.store),
                ("notification target resolver", self.resolver),
                ("market data provider", self.market_data),
                ("notification dispatcher", self.dispatcher),
            )
            if value is None
        ]
        if missing:
            raise ConfigurationError(f"Not configured: {', '.join(missing)}")

    def _validate(self, status: BatchRunStatus, entries: Iterable[WatchEntry]) -> List[WatchEntry]:
        valid = []
        for entry in entries:
            try:
                entry.item.validate()
            except InvalidInput as e:
                self._record_error(status, entry, "validate", e)
                continue
            valid.append(entry)
        return valid

    def _admit(self, status: BatchRunStatus, entries: List[WatchEntry], now: datetime) -> List[WatchEntry]:
        """Apply the market-hours gate per region (bypassed on manual runs)."""
        by_region: Dict[Region, List[WatchEntry]] = defaultdict(list)
        for entry in entries:
            by_region[entry.item.region].append(entry)

        admitted = []
        for region, region_entries in by_region.items():
            try:
                decision = self.gate.status(region, now)
            except ValueError as e:
                raise ConfigurationError(str(e))

            if not decision.is_open and status.manual:
                decision.bypassed = True
                logger.info(f"{region.value} market closed - gate bypassed for manual run")
            status.gate[region] = decision

            if decision.admitted:
                admitted.extend(region_entries)
            else:
                status.items_skipped += len(region_entries)
                logger.info(f"{region.value}: {decision.message} - skipping {len(region_entries)} item(s)")
        return admitted

    def _fetch(
        self,
        entries: Iterable[WatchEntry],
        executor: ThreadPoolExecutor,
        deadline: Optional[float],
    ) -> Tuple[Dict[SymbolKey, MarketSnapshot], Dict[SymbolKey, GuardianError], Dict[str, RecommendationTrend]]:
        """One snapshot per unique (symbol, region) and one trend per unique symbol."""
        # Shortest lookback per symbol; the engine re-checks each item's own period
        lookbacks: Dict[SymbolKey, int] = {}
        for entry in entries:
            key = (entry.item.symbol, entry.item.region)
            needed = entry.item.atr_period + 1
            lookbacks[key] = min(needed, lookbacks.get(key, needed))

        snapshot_futures: Dict[Future, SymbolKey] = {}
        for (symbol, region), lookback in lookbacks.items():
            future = executor.submit(self.market_data.fetch_snapshot, symbol, region, lookback)
            snapshot_futures[future] = (symbol, region)

        # Analyst lookups never share workers with snapshots or dispatch
        trend_symbols = []
        if self.fetch_recommendations and self.recommendations is not None:
            trend_symbols = sorted({symbol for symbol, region in lookbacks if region is Region.US})
        trend_executor: Optional[ThreadPoolExecutor] = None
        trend_futures: Dict[Future, str] = {}
        if trend_symbols:
            trend_executor = ThreadPoolExecutor(
                max_workers=min(self.max_workers, len(trend_symbols)), thread_name_prefix="batch-trend"
            )
            for symbol in trend_symbols:
                future = trend_executor.submit(self.recommendations.fetch_recommendations, symbol, Region.US)
                trend_futures[future] = symbol

        snapshots: Dict[SymbolKey, MarketSnapshot] = {}
        errors: Dict[SymbolKey, GuardianError] = {}
        try:
            for future in self._completed(snapshot_futures, deadline):
                key = snapshot_futures[future]
                try:
                    snapshots[key] = future.result()
                except ConfigurationError:
                    raise
                except GuardianError as e:
                    errors[key] = e
                except Exception as e:
                    logger.error(f"Unexpected error fetching {key}: {e}", exc_info=True)
                    errors[key] = GuardianError(f"unexpected error: {e}")

            trends = self._collect_trends(trend_futures, deadline)
        finally:
            if trend_executor is not None:
                trend_executor.shutdown(wait=False, cancel_futures=True)

        logger.info(f"Fetched {len(snapshots)} snapshot(s), {len(errors)} failed, {len(trends)} analyst trend(s)")
        return snapshots, errors, trends

    def _collect_trends(
        self, futures: Dict[Future, str], deadline: Optional[float]
    ) -> Dict[str, RecommendationTrend]:
        """Gather analyst trends that finish in time; the rest are dropped.

        With a deadline, trends may use at most half of what is left so
        dispatch keeps the other half.
        """
        if not futures:
            return {}
        timeout = None
        if deadline is not None:
            timeout = max(0.0, deadline - time.monotonic()) / 2
        done, not_done = wait(futures, timeout=timeout)
        for future in not_done:
            future.cancel()
        if not_done:
            logger.warning(f"Dropped {len(not_done)} analyst trend fetch(es) still pending after snapshots")

        trends: Dict[str, RecommendationTrend] = {}
        for future in done:
            symbol = futures[future]
            try:
                trends[symbol] = future.result()
            except GuardianError as e:
                logger.debug(f"No analyst data for {symbol}: {e}")
            except Exception as e:
                logger.error(f"Unexpected error fetching analyst data for {symbol}: {e}", exc_info=True)
        return trends

    def _evaluate(
        self,
        status: BatchRunStatus,
        pending: Dict[int, WatchEntry],
        snapshots: Dict[SymbolKey, MarketSnapshot],
        fetch_errors: Dict[SymbolKey, GuardianError],
        trends: Dict[str, RecommendationTrend],
    ) -> Dict[int, Alert]:
        alerts: Dict[int, Alert] = {}
        for idx, entry in list(pending.items()):
            item = entry.item
            key = (item.symbol, item.region)

            if key in fetch_errors:
                self._record_error(status, entry, "fetch", fetch_errors[key])
                del pending[idx]
                continue

            try:
                result = self.engine.evaluate(item, snapshots[key])
            except GuardianError as e:
                self._record_error(status, entry, "evaluate", e)
                del pending[idx]
                continue
            status.symbols_evaluated += 1

            condition = self.engine.alert_condition(item, result)
            if condition is None:
                del pending[idx]
                continue

            alerts[idx] = Alert(
                symbol=item.symbol,
                region=item.region,
                condition=condition,
                result=result,
                atr_period=item.atr_period,
                alert_price=item.alert_price,
                analyst=trends.get(item.symbol) if item.region is Region.US else None,
            )
        logger.info(f"Evaluated {status.symbols_evaluated} item(s), {len(alerts)} alert(s) to send")
        return alerts

    def _dispatch(
        self,
        status: BatchRunStatus,
        pending: Dict[int, WatchEntry],
        alerts: Dict[int, Alert],
        executor: ThreadPoolExecutor,
        deadline: Optional[float],
    ):
        targets = {}
        futures: Dict[Future, int] = {}

        for idx, alert in alerts.items():
            entry = pending[idx]
            if entry.user_id not in targets:
                try:
                    targets[entry.user_id] = self.resolver.get_notification_target(entry.user_id)
                except Exception as e:
                    logger.error(f"Failed to resolve notification target for user {entry.user_id}: {e}")
                    targets[entry.user_id] = None

            target = targets[entry.user_id]
            if target is None:
                self._record_error(
                    status, entry, "dispatch", ConfigurationError(f"no notification target for user {entry.user_id}")
                )
                del pending[idx]
                continue

            futures[executor.submit(self.dispatcher.dispatch, target, alert)] = idx

        for future in self._completed(futures, deadline):
            idx = futures[future]
            entry = pending.pop(idx)
            try:
                result: DispatchResult = future.result()
            except Exception as e:
                logger.error(f"Unexpected error dispatching alert for {entry.item.symbol}: {e}", exc_info=True)
                self._record_error(status, entry, "dispatch", e)
                continue

            status.notifications_sent += result.success_count
            status.notification_failures += result.failure_count
            if result.delivered:
                status.alerts_sent += 1
            for channel in result.channels:
                if channel.error:
                    status.channel_errors.append(f"{entry.item.symbol}/{channel.channel}: {channel.error}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _completed(self, futures: Dict[Future, object], deadline: Optional[float]) -> Iterator[Future]:
        """Yield futures as they finish; cancel the rest once the deadline passes."""
        timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            for future in as_completed(futures, timeout=timeout):
                yield future
        except FuturesTimeout:
            for future in futures:
                future.cancel()
            raise _RunTimeout()

    def _record_error(self, status: BatchRunStatus, entry: WatchEntry, stage: str, error: Exception):
        kind = getattr(error, "kind", "error")
        logger.warning(f"{entry.item.key} (user {entry.user_id}) failed at {stage}: {error}")
        status.errors.append(
            ItemError(
                symbol=entry.item.symbol,
                region=entry.item.region,
                stage=stage,
                kind=kind,
                message=str(error),
                user_id=entry.user_id,
            )
        )

    def _acquire_run_lock(self) -> Optional[Callable[[], None]]:
        """Take the single-flight lock; returns its release function or None if held."""
        if self.lock_store is not None:
            try:
                token = self.lock_store.acquire_lock(self.LOCK_NAME, self.lock_ttl_seconds)
            except Exception as e:
                logger.warning(f"Run lock unavailable in Redis ({e}) - using in-process lock")
            else:
                if token is None:
                    return None
                return lambda: self.lock_store.release_lock(self.LOCK_NAME, token)

        if not self._local_lock.acquire(blocking=False):
            return None
        return self._local_lock.release

    def _send_summary(self, status: BatchRunStatus):
        if self.summary_sender is None or status.state == RunState.SKIPPED:
            return
        try:
            self.summary_sender(status)
        except Exception as e:
            logger.error(f"Failed to send batch summary: {e}")
