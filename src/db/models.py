"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Source(Base):
    """A retailer feed or scrape source. Compliance flags gate every fetch."""

    __tablename__ = "sources"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    retailer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    adapter_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    base_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    scrape_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    robots_compliant: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    # Relationships
    targets: Mapped[list["ScrapeTarget"]] = relationship(
        "ScrapeTarget", back_populates="source", cascade="all, delete-orphan"
    )


class ScrapeTarget(Base):
    """One retailer product URL under management. Never deleted, only marked BROKEN."""

    __tablename__ = "scrape_targets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    source_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sources.id"), nullable=False
    )
    adapter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    canonical_url: Mapped[str] = mapped_column(Text, nullable=False)
    source_product_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("source_products.id"), nullable=True
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="ACTIVE", nullable=False)  # ACTIVE, BROKEN
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # SUCCESS, FAILED
    last_scraped_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    robots_path_blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)  # Admin override
    scrape_interval_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    # Relationships
    source: Mapped["Source"] = relationship("Source", back_populates="targets")

    __table_args__ = (
        UniqueConstraint("source_id", "canonical_url", name="uq_scrape_target_source_url"),
        Index("ix_scrape_targets_due", "status", "enabled", "last_scraped_at"),
    )


class ScrapeRun(Base):
    """One execution batch with aggregate counters and finalized rates."""

    __tablename__ = "scrape_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    source_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sources.id"), nullable=False
    )
    adapter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    adapter_version: Mapped[str] = mapped_column(String(32), nullable=False)
    retailer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger: Mapped[str] = mapped_column(String(16), default="SCHEDULED", nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="RUNNING", nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Counters (incremented atomically by workers)
    urls_attempted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    urls_succeeded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    urls_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    offers_extracted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    offers_valid: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    offers_dropped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    offers_quarantined: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    zero_price_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    oos_no_price_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Derived at finalization
    failure_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    yield_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    drop_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    __table_args__ = (Index("ix_scrape_runs_status_started", "status", "started_at"),)


class SourceProduct(Base):
    """A retailer's product as seen by one source, keyed by identity key."""

    __tablename__ = "source_products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    source_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sources.id"), nullable=False
    )
    identity_key: Mapped[str] = mapped_column(String(300), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    brand: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    upc: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Ballistic attributes
    caliber: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    grain_weight: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    round_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    case_material: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    bullet_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    load_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    shell_length: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    created_by_run_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    # Relationships
    identifiers: Mapped[list["SourceProductIdentifier"]] = relationship(
        "SourceProductIdentifier", back_populates="source_product", cascade="all, delete-orphan"
    )
    prices: Mapped[list["Price"]] = relationship("Price", back_populates="source_product")

    __table_args__ = (
        UniqueConstraint("source_id", "identity_key", name="uq_source_product_identity"),
    )


class SourceProductIdentifier(Base):
    """Identity signal attached to a source product (UPC, SKU, retailer product id, URL)."""

    __tablename__ = "source_product_identifiers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    source_product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("source_products.id"), nullable=False
    )
    id_type: Mapped[str] = mapped_column(String(32), nullable=False)  # UPC, SKU, RETAILER_PRODUCT_ID, URL_HASH
    id_value: Mapped[str] = mapped_column(String(300), nullable=False)
    namespace: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    normalized_value: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    is_canonical: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    # Relationships
    source_product: Mapped["SourceProduct"] = relationship(
        "SourceProduct", back_populates="identifiers"
    )

    __table_args__ = (
        UniqueConstraint(
            "source_product_id", "id_type", "namespace", "id_value",
            name="uq_source_product_identifier",
        ),
    )


class Price(Base):
    """Append-only price observation tagged with run provenance."""

    __tablename__ = "prices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    source_product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("source_products.id"), nullable=False
    )
    source_id: Mapped[str] = mapped_column(String(36), nullable=False)
    retailer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    in_stock: Mapped[bool] = mapped_column(Boolean, nullable=False)
    availability: Mapped[str] = mapped_column(String(16), nullable=False)
    shipping: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    cost_per_round_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    observed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ingestion_run_type: Mapped[str] = mapped_column(String(16), default="SCRAPE", nullable=False)
    ingestion_run_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    adapter_version: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    # Relationships
    source_product: Mapped["SourceProduct"] = relationship("SourceProduct", back_populates="prices")

    __table_args__ = (Index("ix_prices_source_product_observed", "source_product_id", "observed_at"),)


class QuarantinedRecord(Base):
    """Offer held for human review. Never read by consumer-facing surfaces."""

    __tablename__ = "quarantined_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    source_id: Mapped[str] = mapped_column(String(36), nullable=False)
    match_key: Mapped[str] = mapped_column(String(300), nullable=False)  # Identity key
    feed_type: Mapped[str] = mapped_column(String(16), default="SCRAPE", nullable=False)
    run_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    target_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    reasons: Mapped[list] = mapped_column(JSON, nullable=False)  # Ordered blocking reasons
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)  # Normalized offer snapshot
    status: Mapped[str] = mapped_column(String(16), default="QUARANTINED", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("source_id", "match_key", name="uq_quarantine_source_match_key"),
    )


class ScrapeAdapterStatus(Base):
    """Per-adapter enablement and run-level drift state."""

    __tablename__ = "scrape_adapter_status"

    adapter_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    disabled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    disabled_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    consecutive_failed_batches: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_run_had_zero_price: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    baseline_failure_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    baseline_yield_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    baseline_sample_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    baseline_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
