"""Exceptions raised by the price tracker."""

from __future__ import annotations


class PriceTrackerError(Exception):
    """Base class for price tracker errors."""


class NotificationDeliveryError(PriceTrackerError):
    """A notification transport failed to deliver a message.

    ``output`` holds the diagnostic text of the transport (command output or
    HTTP response body) when there is one.
    """

    def __init__(self, message: str, output: str | None = None) -> None:
        super().__init__(message)
        self.output = output


class ImportValidationError(PriceTrackerError, ValueError):
    """A backup payload is malformed or cannot be resolved; nothing was written."""


class ProductOwnerRequiredError(PriceTrackerError):
    """A product has to be created but no owning user was given."""


__all__ = [
    "ImportValidationError",
    "NotificationDeliveryError",
    "PriceTrackerError",
    "ProductOwnerRequiredError",
]
