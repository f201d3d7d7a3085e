"""React to newly recorded prices with a notification."""

from __future__ import annotations

import logging

from pricebuddy.core.observability.logging import log_event
from pricebuddy.modules.price_tracker.errors import NotificationDeliveryError
from pricebuddy.modules.price_tracker.models import Price
from pricebuddy.modules.price_tracker.notifier import (
    CHANNEL,
    NotificationDispatcher,
    PriceChange,
)
from pricebuddy.modules.price_tracker.service import PriceTrackerService

logger = logging.getLogger(__name__)


class PriceAlertHandler:
    """Decide, flag and deliver the alert for a price.

    The ``notified`` flag is committed before delivery, so a failed delivery
    is logged and never retried for the same price.
    """

    def __init__(self, tracker: PriceTrackerService, dispatcher: NotificationDispatcher) -> None:
        self.tracker = tracker
        self.dispatcher = dispatcher

    async def build_change(self, price: Price) -> PriceChange | None:
        url = await self.tracker.get_url(price.url_id)
        if url is None or url.product is None:
            return None

        latest = await self.tracker.latest_prices(url.id, limit=2)
        cache = url.product.price_cache or {}
        return PriceChange(
            product_title=url.product.title,
            url=url.url,
            new_price=float(latest[0].price) if latest else float(price.price),
            previous_price=float(latest[1].price) if len(latest) > 1 else None,
            min_price=cache.get("min"),
            max_price=cache.get("max"),
            price_count=await self.tracker.count_prices(url.id),
            locale=url.store.locale if url.store else None,
            currency=url.store.currency if url.store else None,
        )

    async def handle_price_created(self, price: Price) -> bool:
        """Returns True when a notification was delivered."""
        if price.notified:
            return False

        url = await self.tracker.get_url(price.url_id)
        if url is None or url.product is None:
            return False
        owner = url.product.user
        if owner is None:
            logger.debug("Product has no owner to notify", extra={"product_id": str(url.product_id)})
            return False

        try:
            channel = self.dispatcher.channel_settings(owner.get_notification_settings(CHANNEL))
        except NotificationDeliveryError as e:
            logger.warning(f"Price alert not sent: {e}", extra={"user_id": str(owner.id)})
            return False

        if not await self.tracker.should_notify(url.id, price):
            log_event("price_alert_suppressed", url_id=str(url.id), price=float(price.price))
            return False

        if not await self.tracker.mark_notified(price):
            return False

        change = await self.build_change(price)
        if change is None:
            return False

        try:
            await self.dispatcher.dispatch(change, channel)
        except NotificationDeliveryError as e:
            logger.error(
                f"Error sending price alert notification: {e}",
                extra={
                    "product": url.product.title,
                    "product_id": str(url.product_id),
                    "url": url.url,
                    "url_id": str(url.id),
                    "output": e.output,
                },
            )
            return False

        log_event(
            "price_alert_sent",
            url_id=str(url.id),
            user_id=str(owner.id),
            price=change.new_price,
            previous_price=change.previous_price,
        )
        return True


__all__ = ["PriceAlertHandler"]
