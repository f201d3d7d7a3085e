"""Price Tracker Module.

Tracks product prices across online stores: extracts fields from fetched pages
with per-store strategies, keeps a deduplicated price ledger per url and
decides when a change is worth a notification.
"""

from pricebuddy.modules.price_tracker.alerts import PriceAlertHandler
from pricebuddy.modules.price_tracker.autodetect import (
    HeuristicCatalog,
    StoreAttributes,
    StoreAutoDetector,
)
from pricebuddy.modules.price_tracker.backup import DatabaseBackupService
from pricebuddy.modules.price_tracker.notifier import NotificationDispatcher, PriceChange
from pricebuddy.modules.price_tracker.scheduler import PriceCheckScheduler
from pricebuddy.modules.price_tracker.scraper import StoreScraper
from pricebuddy.modules.price_tracker.service import PriceTrackerService

__all__ = [
    "DatabaseBackupService",
    "HeuristicCatalog",
    "NotificationDispatcher",
    "PriceAlertHandler",
    "PriceChange",
    "PriceCheckScheduler",
    "PriceTrackerService",
    "StoreAttributes",
    "StoreAutoDetector",
    "StoreScraper",
]
