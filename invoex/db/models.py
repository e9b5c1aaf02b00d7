from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from invoex.db.connection import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CatalogItem(Base):
    """Canonical product identity. Never deleted; deactivated instead."""
    __tablename__ = 'catalog_items'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name = Column(String(255), nullable=False)
    normalized_name = Column(String(255), nullable=False, index=True)
    external_id = Column(String(64), unique=True)
    variation_external_id = Column(String(64))
    category = Column(String(100))
    cost_ex_gst = Column(Numeric(12, 4))
    sell_ex_gst = Column(Numeric(12, 2))
    sell_inc_gst = Column(Numeric(12, 2))
    has_gst = Column(Boolean)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    links = relationship("ProductLink", back_populates="catalog_item")

    def __repr__(self):
        return f"<CatalogItem(id={self.id}, name='{self.name}', external_id='{self.external_id}')>"


class ProductLink(Base):
    """
    Maps a raw invoice product name to a catalog item

    The partial unique index allows any number of inactive links per name
    but only one active one.
    """
    __tablename__ = 'product_links'
    __table_args__ = (
        Index(
            'uq_product_links_active_name',
            'normalized_name',
            unique=True,
            sqlite_where=text('is_active = 1'),
            postgresql_where=text('is_active')
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    product_name = Column(String(500), nullable=False)
    normalized_name = Column(String(500), nullable=False)
    catalog_item_id = Column(String(36), ForeignKey('catalog_items.id'), nullable=False)
    confidence = Column(Float, nullable=False, default=1.0)
    origin = Column(String(32), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    linked_by = Column(String(100))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    deactivated_at = Column(DateTime)

    catalog_item = relationship("CatalogItem", back_populates="links")

    def __repr__(self):
        return (
            f"<ProductLink(id={self.id}, name='{self.normalized_name}', "
            f"catalog_item_id={self.catalog_item_id}, active={self.is_active})>"
        )


class Invoice(Base):
    __tablename__ = 'invoices'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    vendor_name = Column(String(255))
    invoice_number = Column(String(100))
    invoice_date = Column(Date)
    subtotal_ex_gst = Column(Numeric(12, 2))
    gst_amount = Column(Numeric(12, 2))
    total_inc_gst = Column(Numeric(12, 2))
    confidence = Column(Float)
    requires_review = Column(Boolean, nullable=False, default=False)
    review_reasons = Column(JSON)
    debugging = Column(JSON)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    line_items = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.line_number"
    )

    def __repr__(self):
        return f"<Invoice(id={self.id}, vendor='{self.vendor_name}', number='{self.invoice_number}')>"


class InvoiceLineItem(Base):
    """Historical line item; ``catalog_item_id`` is back-filled when its name gets linked"""
    __tablename__ = 'invoice_line_items'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    invoice_id = Column(String(36), ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False)
    line_number = Column(Integer, nullable=False)
    product_name = Column(String(500), nullable=False)
    normalized_name = Column(String(500), nullable=False, index=True)
    quantity = Column(Numeric(12, 3))
    unit_cost_ex_gst = Column(Numeric(12, 4))
    price_ex_gst = Column(Numeric(12, 2))
    price_inc_gst = Column(Numeric(12, 2))
    has_gst = Column(Boolean)
    category = Column(String(100))
    validation_confidence = Column(Float)
    validation_flags = Column(JSON)
    catalog_item_id = Column(String(36), ForeignKey('catalog_items.id'))
    created_at = Column(DateTime, default=utcnow, nullable=False)

    invoice = relationship("Invoice", back_populates="line_items")

    def __repr__(self):
        return f"<InvoiceLineItem(id={self.id}, product='{self.product_name}')>"


class DailySales(Base):
    """Per-day, per-item, per-variation sales aggregate"""
    __tablename__ = 'daily_sales'
    __table_args__ = (
        UniqueConstraint('sale_date', 'item_name', 'variation_name', name='uq_daily_sales_key'),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    sale_date = Column(Date, nullable=False)
    item_name = Column(String(255), nullable=False)
    variation_name = Column(String(255), nullable=False, default='')
    quantity = Column(Numeric(12, 3), nullable=False, default=0)
    gross_cents = Column(Integer, nullable=False, default=0)
    tax_cents = Column(Integer, nullable=False, default=0)
    net_cents = Column(Integer, nullable=False, default=0)
    order_count = Column(Integer, nullable=False, default=0)
    category = Column(String(100))
    catalog_external_id = Column(String(64))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<DailySales(date={self.sale_date}, item='{self.item_name}', variation='{self.variation_name}')>"


class InventoryLevel(Base):
    """On-hand quantity of a catalog item at one POS location"""
    __tablename__ = 'inventory_levels'
    __table_args__ = (
        UniqueConstraint('catalog_item_id', 'location_id', name='uq_inventory_item_location'),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    catalog_item_id = Column(String(36), ForeignKey('catalog_items.id'), nullable=False)
    location_id = Column(String(64), nullable=False)
    quantity = Column(Numeric(12, 3), nullable=False, default=0)
    counted_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<InventoryLevel(item={self.catalog_item_id}, location='{self.location_id}', quantity={self.quantity})>"


class SyncRun(Base):
    """Append-only audit record of one sync invocation"""
    __tablename__ = 'sync_runs'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)
    window_start = Column(DateTime)
    window_end = Column(DateTime)
    status = Column(String(20), nullable=False)
    phases = Column(JSON)
    errors = Column(JSON)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<SyncRun(id={self.id}, status='{self.status}')>"
