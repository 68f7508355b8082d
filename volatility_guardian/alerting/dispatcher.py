"""Alert dispatcher - concurrent fan-out over independent channels."""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Iterable, List, Sequence

from ..models import Alert, ChannelResult, DeliveryStatus, DispatchResult, NotificationTarget
from .channels import NotificationChannel

logger = logging.getLogger(__name__)


def combine_results(results: Iterable[ChannelResult]) -> DispatchResult:
    """Reduce per-channel outcomes into one DispatchResult.

    Pure; the order of ``results`` does not change the totals.
    """
    combined = DispatchResult()
    for result in results:
        combined.channels.append(result)
        combined.success_count += result.success_count
        combined.failure_count += result.failure_count
        if result.status == DeliveryStatus.FAILED:
            combined.errored_channels.append(result.channel)
        elif result.status == DeliveryStatus.PARTIAL:
            combined.partial_channels.append(result.channel)
    return combined


class NotificationDispatcher:
    """Delivers one alert to one target over every configured channel.

    Channels run concurrently and are joined before the result is
    combined, so a slow or failing channel never blocks or cancels the
    others.
    """

    def __init__(self, channels: Sequence[NotificationChannel]):
        self.channels: List[NotificationChannel] = list(channels)

    def dispatch(self, target: NotificationTarget, alert: Alert) -> DispatchResult:
        if not self.channels:
            logger.warning(f"No notification channels configured - alert for {alert.symbol} dropped")
            return DispatchResult()

        with ThreadPoolExecutor(max_workers=len(self.channels)) as executor:
            futures = [executor.submit(channel.deliver, target, alert) for channel in self.channels]
            wait(futures)

        results = []
        for channel, future in zip(self.channels, futures):
            try:
                results.append(future.result())
            except Exception as e:
                logger.error(f"Unexpected error in {channel.name} channel: {e}", exc_info=True)
                results.append(
                    ChannelResult(channel=channel.name, status=DeliveryStatus.FAILED, failure_count=1, error=str(e))
                )

        combined = combine_results(results)
        log_level = logging.INFO if combined.delivered else logging.WARNING
        logger.log(
            log_level,
            f"Alert {alert.condition.value} for {alert.symbol} -> user {target.user_id}: "
            f"{combined.success_count} delivered, {combined.failure_count} failed"
            + (f", errored: {', '.join(combined.errored_channels)}" if combined.errored_channels else ""),
        )
        return combined
