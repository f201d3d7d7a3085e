"""Price Tracker ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pricebuddy.core.db.models import Base, _utc_now


class User(Base):
    """Owner of products and recipient of price alerts.

    Only carries what the price tracker needs: an email to resolve owners on
    backup import and per-user notification channel overrides.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # {"apprise": {"url": ..., "token": ..., "tags": ...}}
    notification_settings: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    products: Mapped[list[Product]] = relationship(back_populates="user")

    def get_notification_settings(self, channel: str) -> dict[str, Any]:
        return dict((self.notification_settings or {}).get(channel) or {})


class Store(Base):
    """Online store with its scrape strategy.

    The strategy holds one FieldStrategy per field (title, price, image),
    serialized as ``{"type": ..., "value": ..., "prepend": ..., "append": ...}``.
    """

    __tablename__ = "stores"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255))
    slug: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    initials: Mapped[str | None] = mapped_column(String(10), nullable=True)
    scrape_strategy: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    scraper_service: Mapped[str] = mapped_column(String(20), default="http")  # http, api
    scraper_service_settings: Mapped[str] = mapped_column(Text, default="")
    test_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    locale: Mapped[str | None] = mapped_column(String(20), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    # Relationships
    domains: Mapped[list[StoreDomain]] = relationship(
        back_populates="store",
        cascade="all, delete-orphan",
        order_by="StoreDomain.position",
        lazy="selectin",
    )
    urls: Mapped[list[Url]] = relationship(back_populates="store")

    @property
    def domain_names(self) -> list[str]:
        return [entry.domain for entry in self.domains]

    def __repr__(self) -> str:
        return f"<Store(id={self.id}, slug={self.slug!r}, domains={self.domain_names})>"


class StoreDomain(Base):
    """One hostname of a store, in declaration order."""

    __tablename__ = "store_domains"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("stores.id", ondelete="CASCADE"), index=True
    )
    domain: Mapped[str] = mapped_column(String(255), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)

    store: Mapped[Store] = relationship(back_populates="domains")

    __table_args__ = (UniqueConstraint("store_id", "domain", name="uq_store_domain"),)


class Product(Base):
    """A product tracked through one or more store urls.

    ``price_cache`` is a read-only projection of the ledger
    (``{"min", "avg", "max", "latest", "count"}``) refreshed whenever a price
    is recorded or a url removed.
    """

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), index=True, nullable=True
    )
    title: Mapped[str] = mapped_column(String(255))
    image: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    favourite: Mapped[bool] = mapped_column(Boolean, default=False)
    price_cache: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    # Relationships
    user: Mapped[User | None] = relationship(back_populates="products")
    urls: Mapped[list[Url]] = relationship(
        back_populates="product", cascade="all, delete-orphan"
    )


class Url(Base):
    """A product page on one store."""

    __tablename__ = "urls"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), index=True
    )
    store_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("stores.id"), index=True)
    url: Mapped[str] = mapped_column(String(1024))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    # Relationships
    product: Mapped[Product] = relationship(back_populates="urls")
    store: Mapped[Store] = relationship(back_populates="urls")
    prices: Mapped[list[Price]] = relationship(
        back_populates="url",
        cascade="all, delete-orphan",
        order_by="Price.created_at",
    )

    def __repr__(self) -> str:
        return f"<Url(id={self.id}, url={self.url!r}, store_id={self.store_id})>"


class Price(Base):
    """A single price observation of a url.

    Rows are append-only; only ``notified`` changes, from False to True once.
    """

    __tablename__ = "prices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    url_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("urls.id", ondelete="CASCADE"), index=True
    )
    store_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("stores.id"), index=True)
    price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False))
    notified: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, index=True)

    # Relationships
    url: Mapped[Url] = relationship(back_populates="prices")

    def __repr__(self) -> str:
        return (
            f"<Price(id={self.id}, url_id={self.url_id}, price={self.price}, "
            f"notified={self.notified}, created_at={self.created_at})>"
        )


__all__ = ["Price", "Product", "Store", "StoreDomain", "Url", "User"]
