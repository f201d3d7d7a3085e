"""Configuration management for the price tracker."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

# Ensure .env values are loaded before settings initialisation.
load_dotenv()

DEFAULT_NOTIFICATION_TEXT = """{evolution} price changed from {previousPrice} to {newPrice}.

Min: {min} Max: {max}.

{url}"""


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    ENV_PREFIX: ClassVar[str] = "PRICEBUDDY_"

    model_config = ConfigDict(extra="ignore")

    app_name: str = Field(default="PriceBuddy", description="Human friendly service name.")
    environment: Literal["development", "production", "test"] = Field(
        default="development",
        description="Runtime environment used for logging and diagnostics.",
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///data/pricebuddy.sqlite",
        description="SQLAlchemy async database URL.",
    )

    log_level: str = Field(default="INFO", description="Python logging level for the service.")
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format: structured JSON or rich text for local use.",
    )

    default_locale: str = Field(
        default="en",
        description="Locale used to format prices when a store has none configured.",
    )
    default_currency: str = Field(
        default="USD",
        description="ISO 4217 currency used when a store has none configured.",
    )

    scrape_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds passed to the fetcher for a single page.",
    )
    sleep_seconds_between_scrape: float = Field(
        default=10.0,
        description="Delay between two consecutive fetches of the batch price check.",
    )
    max_attempts_to_scrape: int = Field(
        default=3,
        description="Fetch attempts per url before the batch gives up on it for the run.",
    )
    user_agent: str = Field(
        default="Mozilla/5.0 (compatible; PriceBuddy/0.1)",
        description="User agent sent by the bundled HTTP fetcher.",
    )

    auto_create_store_strategies_path: Path | None = Field(
        default=None,
        description="YAML catalog of store auto-detection heuristics. "
        "Falls back to the catalog bundled with the package.",
    )

    notification_text: str = Field(
        default=DEFAULT_NOTIFICATION_TEXT,
        description="Template for price change notifications.",
    )
    apprise_url: str | None = Field(
        default=None,
        description="Apprise API base URL; with a token, notifications are posted to "
        "<url>/notify/<token> unless the URL already ends in /notify/<key>. "
        "An Apprise target URL when the token is 'local'.",
    )
    apprise_token: str | None = Field(
        default=None,
        description="Apprise API config token. 'local' delivers through the apprise command.",
    )
    apprise_tags: str | None = Field(default=None, description="Apprise tags to notify.")

    def __init__(self, **data: Any) -> None:  # noqa: D401 - inherited docstring
        env_values = type(self)._load_environment_values()
        env_values.update(data)
        super().__init__(**env_values)

    @classmethod
    def _load_environment_values(cls) -> dict[str, Any]:
        """Return field values sourced from the current environment."""

        values: dict[str, Any] = {}
        for field_name in cls.model_fields:
            env_key = f"{cls.ENV_PREFIX}{field_name.upper()}"
            if env_key in os.environ:
                values[field_name] = os.environ[env_key]
        return values

    def apprise_settings(self) -> dict[str, str | None]:
        """Global notification channel defaults."""
        return {
            "url": self.apprise_url,
            "token": self.apprise_token,
            "tags": self.apprise_tags,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a singleton instance of :class:`Settings`."""

    return Settings()


__all__ = ["DEFAULT_NOTIFICATION_TEXT", "Settings", "get_settings"]
