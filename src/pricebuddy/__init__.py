"""PriceBuddy: track product prices across online stores."""

__version__ = "0.1.0"
