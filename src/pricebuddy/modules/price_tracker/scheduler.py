"""Batch price checks over every tracked url."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable

from pricebuddy.core.config import get_settings
from pricebuddy.core.observability.logging import log_event
from pricebuddy.core.protocols import FetchError
from pricebuddy.modules.price_tracker.alerts import PriceAlertHandler
from pricebuddy.modules.price_tracker.models import Price
from pricebuddy.modules.price_tracker.service import PriceTrackerService

logger = logging.getLogger(__name__)


class PriceCheckScheduler:
    """Fetch all urls serially, pausing between fetches."""

    CHECK_INTERVAL_SECONDS = 6 * 60 * 60

    def __init__(
        self,
        tracker: PriceTrackerService,
        alerts: PriceAlertHandler | None = None,
        sleep_seconds: float | None = None,
        max_attempts: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self.tracker = tracker
        self.alerts = alerts
        self.sleep_seconds = (
            sleep_seconds if sleep_seconds is not None else settings.sleep_seconds_between_scrape
        )
        self.max_attempts = max(
            1, max_attempts if max_attempts is not None else settings.max_attempts_to_scrape
        )
        self._sleep = sleep
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._stats: dict[str, int] = {
            "checks_total": 0,
            "checks_success": 0,
            "checks_failed": 0,
            "prices_recorded": 0,
            "alerts_sent": 0,
        }

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Price check scheduler started")

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Price check scheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Scheduler error: {e}", exc_info=True)

            await self._sleep(self.CHECK_INTERVAL_SECONDS)

    async def run_once(self) -> dict[str, int]:
        """Check every url once. Returns the counters of this run."""
        run = dict.fromkeys(self._stats, 0)
        url_ids = await self.tracker.list_url_ids()
        logger.info(f"Checking prices of {len(url_ids)} urls")

        for index, url_id in enumerate(url_ids):
            if index:
                await self._sleep(self.sleep_seconds)

            run["checks_total"] += 1
            ok, price = await self._check_url(url_id)
            if not ok:
                run["checks_failed"] += 1
                continue

            run["checks_success"] += 1
            if price is None:
                continue
            run["prices_recorded"] += 1

            if self.alerts is not None:
                try:
                    if await self.alerts.handle_price_created(price):
                        run["alerts_sent"] += 1
                except Exception as e:
                    logger.error(f"Price alert failed for url {url_id}: {e}", exc_info=True)

        for key, value in run.items():
            self._stats[key] += value
        log_event("price_check_finished", **run)
        return run

    async def _check_url(self, url_id: uuid.UUID) -> tuple[bool, Price | None]:
        """Record the current price of a url.

        Fetch errors are retried up to ``max_attempts``; any other error gives
        up on the url for this run.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return True, await self.tracker.record_price(url_id)
            except FetchError as e:
                logger.warning(
                    f"Fetch failed for url {url_id} (attempt {attempt}/{self.max_attempts}): {e}"
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.sleep_seconds)
            except Exception as e:
                logger.error(f"Price check failed for url {url_id}: {e}", exc_info=True)
                return False, None
        logger.error(f"Giving up on url {url_id} after {self.max_attempts} attempts")
        return False, None


__all__ = ["PriceCheckScheduler"]
