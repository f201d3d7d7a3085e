"""Command line interface for the price tracker."""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from pricebuddy.core.config import get_settings
from pricebuddy.core.db import create_engine, init_db
from pricebuddy.core.observability.logging import setup_logging
from pricebuddy.core.protocols import FetchError
from pricebuddy.modules.fetcher import HttpFetcher
from pricebuddy.modules.price_tracker import (
    DatabaseBackupService,
    HeuristicCatalog,
    NotificationDispatcher,
    PriceAlertHandler,
    PriceCheckScheduler,
    PriceTrackerService,
    StoreAutoDetector,
    StoreScraper,
)
from pricebuddy.modules.price_tracker.errors import NotificationDeliveryError, PriceTrackerError
from pricebuddy.modules.price_tracker.extraction import Document

console = Console()
app = typer.Typer(help="Track product prices across online stores.")


@dataclass
class Services:
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    fetcher: HttpFetcher
    scraper: StoreScraper
    detector: StoreAutoDetector
    tracker: PriceTrackerService
    dispatcher: NotificationDispatcher
    alerts: PriceAlertHandler
    backup: DatabaseBackupService


@asynccontextmanager
async def open_services() -> AsyncIterator[Services]:
    """Wire the services against the configured database for one command."""
    settings = get_settings()
    engine = create_engine(settings.database_url)
    await init_db(engine)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)

    fetcher = HttpFetcher()
    scraper = StoreScraper(fetcher)
    detector = StoreAutoDetector(HeuristicCatalog.load(settings.auto_create_store_strategies_path))
    tracker = PriceTrackerService(session_factory, scraper=scraper, detector=detector)
    dispatcher = NotificationDispatcher()
    try:
        yield Services(
            engine=engine,
            session_factory=session_factory,
            fetcher=fetcher,
            scraper=scraper,
            detector=detector,
            tracker=tracker,
            dispatcher=dispatcher,
            alerts=PriceAlertHandler(tracker, dispatcher),
            backup=DatabaseBackupService(session_factory),
        )
    finally:
        await fetcher.close()
        await engine.dispose()


def _parse_uuid(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid {label}: {value}") from exc


@app.callback()
def main(
    log_level: str | None = typer.Option(None, help="Override the configured log level."),
) -> None:
    settings = get_settings()
    setup_logging(log_level or settings.log_level, settings.log_format, settings.app_name.lower())


@app.command("init-db")
def init_db_command() -> None:
    """Create the database tables."""

    async def run() -> None:
        async with open_services():
            pass

    asyncio.run(run())
    console.print("[green]Database ready.[/green]")


@app.command("add-user")
def add_user(
    email: str = typer.Argument(..., help="Email of the user."),
    name: str | None = typer.Option(None, help="Display name."),
    apprise_url: str | None = typer.Option(None, help="Personal Apprise URL override."),
    apprise_token: str | None = typer.Option(None, help="Personal Apprise token override."),
    apprise_tags: str | None = typer.Option(None, help="Personal Apprise tags override."),
) -> None:
    """Create a user that owns products and receives alerts."""
    overrides = {
        key: value
        for key, value in {"url": apprise_url, "token": apprise_token, "tags": apprise_tags}.items()
        if value
    }

    async def run() -> None:
        async with open_services() as services:
            user = await services.tracker.get_or_create_user(
                email, name=name, notification_settings={"apprise": overrides} if overrides else None
            )
            console.print(f"User [cyan]{user.email}[/cyan] ({user.id})")

    asyncio.run(run())


@app.command("add-url")
def add_url(
    url: str = typer.Argument(..., help="Product page to track."),
    user: str | None = typer.Option(None, help="Email of the product owner."),
    product: str | None = typer.Option(None, help="Attach the url to an existing product id."),
    create_store: bool = typer.Option(True, help="Auto create the store when unknown."),
) -> None:
    """Start tracking a product page and record its first price."""
    product_id = _parse_uuid(product, "product id") if product else None

    async def run() -> None:
        async with open_services() as services:
            user_id = None
            if user:
                owner = await services.tracker.find_user(user)
                if owner is None:
                    raise typer.BadParameter(f"Unknown user: {user}")
                user_id = owner.id

            created = await services.tracker.create_url(
                url, product_id=product_id, user_id=user_id, create_store=create_store
            )
            if created is None:
                console.print("[red]Unable to track url: no store or price found.[/red]")
                raise typer.Exit(code=1)

            latest = await services.tracker.latest_prices(created.id, limit=1)
            if latest:
                await services.alerts.handle_price_created(latest[0])
                console.print(
                    f"[green]Tracking[/green] {created.url} ({created.id}) at {float(latest[0].price)}"
                )
            else:
                console.print(f"[green]Tracking[/green] {created.url} ({created.id})")

    try:
        asyncio.run(run())
    except (FetchError, PriceTrackerError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


@app.command("detect-store")
def detect_store(
    url: str = typer.Argument(..., help="A product page of the store."),
    create: bool = typer.Option(False, help="Persist the detected store."),
) -> None:
    """Auto detect the scrape strategy of a store from one of its pages."""

    async def run() -> None:
        async with open_services() as services:
            document = await services.scraper.fetch_document(url)
            attributes = services.detector.detect(url, Document(document))
            if attributes is None:
                console.print("[red]Unable to auto create store: title or price not found.[/red]")
                raise typer.Exit(code=1)

            console.print_json(json.dumps(attributes.model_dump(mode="json")))
            if create:
                store = await services.tracker.create_store_from_url(url, document=document)
                if store is not None:
                    console.print(f"[green]Store[/green] {store.name} ({store.slug})")

    try:
        asyncio.run(run())
    except FetchError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


@app.command("fetch-all")
def fetch_all(
    notify: bool = typer.Option(True, help="Send alerts for new prices."),
) -> None:
    """Fetch the current price of every tracked url."""

    async def run() -> dict[str, int]:
        async with open_services() as services:
            scheduler = PriceCheckScheduler(
                services.tracker, alerts=services.alerts if notify else None
            )
            return await scheduler.run_once()

    stats = asyncio.run(run())
    table = Table()
    table.add_column("Counter")
    table.add_column("Value", justify="right")
    for key, value in stats.items():
        table.add_row(key, str(value))
    console.print(table)
    if stats["checks_failed"]:
        raise typer.Exit(code=1)


@app.command("history")
def history(url_id: str = typer.Argument(..., help="Id of the tracked url.")) -> None:
    """Show the price ledger of a url."""
    parsed_id = _parse_uuid(url_id, "url id")

    async def run() -> list[dict[str, object]]:
        async with open_services() as services:
            return await services.tracker.get_price_history(parsed_id)

    rows = asyncio.run(run())
    table = Table()
    table.add_column("Date")
    table.add_column("Price", justify="right")
    table.add_column("Notified")
    for row in rows:
        table.add_row(str(row["created_at"]), f"{row['price']:.2f}", "yes" if row["notified"] else "")
    console.print(table)


@app.command("export-backup")
def export_backup(
    output: Path | None = typer.Option(None, help="Write to this file instead of stdout."),
) -> None:
    """Export products, urls and prices as JSON."""

    async def run() -> str:
        async with open_services() as services:
            return await services.backup.export_json()

    text = asyncio.run(run())
    if output is None:
        typer.echo(text)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text, encoding="utf-8")
    console.print(f"[green]Backup written to {output}[/green]")


@app.command("import-backup")
def import_backup(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Backup JSON file."),
    user: str | None = typer.Option(None, help="Default owner email for products without one."),
) -> None:
    """Import a JSON backup. Running it twice does not duplicate prices."""

    async def run() -> dict[str, int]:
        async with open_services() as services:
            default_user_id = None
            if user:
                owner = await services.tracker.find_user(user)
                if owner is None:
                    raise typer.BadParameter(f"Unknown user: {user}")
                default_user_id = owner.id
            summary = await services.backup.import_json(
                path.read_text(encoding="utf-8"), default_user_id=default_user_id
            )
            return summary.to_dict()

    try:
        counts = asyncio.run(run())
    except PriceTrackerError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    for key, value in counts.items():
        console.print(f"{key}: {value}")


@app.command("test-notification")
def test_notification(
    text: str | None = typer.Option(None, help="Template to render instead of the configured one."),
    user: str | None = typer.Option(None, help="Use the channel overrides of this user."),
) -> None:
    """Send a sample price alert through the configured channel."""

    async def run() -> str:
        async with open_services() as services:
            overrides = None
            if user:
                owner = await services.tracker.find_user(user)
                if owner is None:
                    raise typer.BadParameter(f"Unknown user: {user}")
                overrides = owner.get_notification_settings("apprise")
            return await services.dispatcher.send_test(overrides, text=text)

    try:
        output = asyncio.run(run())
    except NotificationDeliveryError as exc:
        console.print(f"[red]Notification failed: {exc}[/red]")
        if exc.output:
            console.print(exc.output)
        raise typer.Exit(code=1) from exc

    console.print("[green]Test notification sent successfully[/green]")
    if output:
        console.print(output)


if __name__ == "__main__":
    app()
