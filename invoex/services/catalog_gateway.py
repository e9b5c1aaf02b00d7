"""
Catalog Gateway

The read/write contract the reconciliation engine, sync workflow and invoice
service need from the catalog store, plus its SQLAlchemy implementation.

The SQL implementation runs each blocking unit of work in a worker thread
and retries transient failures (lost connections, lock contention) with
backoff. Link exclusivity is enforced by a partial unique index on the
normalized product name, so two writers racing for the same name cannot
both win.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError

from invoex.db.connection import Database
from invoex.db.models import (
    CatalogItem,
    DailySales,
    InventoryLevel,
    Invoice,
    InvoiceLineItem,
    ProductLink,
    SyncRun,
    utcnow,
)
from invoex.exceptions import CatalogItemNotFoundError, LinkConflictError
from invoex.matching.similarity import normalize_name
from invoex.models.catalog import (
    CatalogCandidate,
    CatalogItemRecord,
    InventoryLevelRecord,
    LinkOrigin,
    ProductLinkRecord,
    SalesAggregate,
)
from invoex.models.invoice import ExtractedInvoice
from invoex.models.sync import SyncRunReport
from invoex.utils.retry import RetryConfig, with_retry

logger = logging.getLogger(__name__)

T = TypeVar('T')

CATALOG_ITEM_FIELDS = {
    'name', 'external_id', 'variation_external_id', 'category', 'cost_ex_gst',
    'sell_ex_gst', 'sell_inc_gst', 'has_gst', 'is_active',
}


class CatalogGateway(ABC):
    """Persistence contract for catalog items, product links, sales aggregates and sync runs"""

    # Catalog items

    @abstractmethod
    async def find_by_external_id(self, external_id: str) -> Optional[CatalogItemRecord]:
        pass

    @abstractmethod
    async def find_by_name(self, name: str) -> Optional[CatalogItemRecord]:
        """Exact, case-insensitive name match against active items"""
        pass

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[CatalogItemRecord]:
        pass

    @abstractmethod
    async def create_item(self, fields: Dict[str, Any]) -> CatalogItemRecord:
        pass

    @abstractmethod
    async def update_item(self, item_id: str, fields: Dict[str, Any]) -> CatalogItemRecord:
        pass

    @abstractmethod
    async def list_candidates(self, name_hint: Optional[str] = None) -> List[CatalogCandidate]:
        """
        Active catalog items as ``(id, name)`` in a stable order

        ``name_hint`` lets an implementation narrow a very large catalog; an
        implementation that ignores it must return every active item.
        """
        pass

    @abstractmethod
    async def list_pos_items(self) -> List[CatalogItemRecord]:
        """Active items that carry a POS variation id"""
        pass

    # Product links

    @abstractmethod
    async def get_active_link(self, product_name: str) -> Optional[ProductLinkRecord]:
        pass

    @abstractmethod
    async def activate_link(
        self,
        product_name: str,
        catalog_item_id: str,
        confidence: float,
        origin: LinkOrigin,
        replace_existing: bool = False,
        linked_by: Optional[str] = None
    ) -> ProductLinkRecord:
        """
        Make ``catalog_item_id`` the active link for ``product_name``

        With ``replace_existing`` the previous active link is deactivated in
        the same transaction. Without it, an existing active link raises
        ``LinkConflictError``.
        """
        pass

    @abstractmethod
    async def create_item_with_link(
        self,
        fields: Dict[str, Any],
        product_name: str,
        confidence: float,
        origin: LinkOrigin
    ) -> Tuple[CatalogItemRecord, ProductLinkRecord]:
        """Create a catalog item and its first link atomically"""
        pass

    @abstractmethod
    async def deactivate_link(self, product_name: str) -> Optional[ProductLinkRecord]:
        pass

    @abstractmethod
    async def backfill_line_items(
        self,
        product_name: str,
        catalog_item_id: str,
        replace_existing: bool = False
    ) -> int:
        """Point historical line items with this name at the catalog item; returns rows updated"""
        pass

    @abstractmethod
    async def detach_line_items(self, product_name: str, catalog_item_id: str) -> int:
        pass

    @abstractmethod
    async def list_unlinked_product_names(self, limit: Optional[int] = None) -> List[str]:
        pass

    # Invoices, sales and sync runs

    @abstractmethod
    async def save_invoice(self, invoice: ExtractedInvoice) -> str:
        pass

    @abstractmethod
    async def upsert_daily_sales(self, aggregate: SalesAggregate) -> bool:
        """Create or replace the aggregate for its key; True when a row was created"""
        pass

    @abstractmethod
    async def list_daily_sales(self, start: date, end: date) -> List[SalesAggregate]:
        pass

    @abstractmethod
    async def upsert_inventory_level(self, level: InventoryLevelRecord) -> bool:
        """Create or replace the level for (item, location); True when a row was created"""
        pass

    @abstractmethod
    async def list_inventory_levels(self, catalog_item_id: Optional[str] = None) -> List[InventoryLevelRecord]:
        pass

    @abstractmethod
    async def record_sync_run(self, report: SyncRunReport) -> str:
        pass


def _item_record(item: CatalogItem) -> CatalogItemRecord:
    return CatalogItemRecord.model_validate(item)


def _link_record(link: ProductLink) -> ProductLinkRecord:
    return ProductLinkRecord.model_validate(link)


class SqlCatalogGateway(CatalogGateway):
    """Catalog gateway backed by the SQLAlchemy ``Database``"""

    def __init__(self, db: Database, retry_config: Optional[RetryConfig] = None):
        self.db = db
        self.retry_config = retry_config or RetryConfig()

    async def _run(self, func_: Callable[..., T], *args: Any, description: str = 'database operation') -> T:
        return await with_retry(
            lambda: asyncio.to_thread(func_, *args),
            config=self.retry_config,
            description=description
        )

    # Catalog items

    async def find_by_external_id(self, external_id: str) -> Optional[CatalogItemRecord]:
        return await self._run(self._find_by_external_id, external_id, description='find catalog item by external id')

    def _find_by_external_id(self, external_id: str) -> Optional[CatalogItemRecord]:
        with self.db.transaction() as session:
            item = session.execute(
                select(CatalogItem).where(CatalogItem.external_id == external_id)
            ).scalar_one_or_none()
            return _item_record(item) if item else None

    async def find_by_name(self, name: str) -> Optional[CatalogItemRecord]:
        return await self._run(self._find_by_name, name, description='find catalog item by name')

    def _find_by_name(self, name: str) -> Optional[CatalogItemRecord]:
        with self.db.transaction() as session:
            item = session.execute(
                select(CatalogItem)
                .where(CatalogItem.normalized_name == normalize_name(name), CatalogItem.is_active.is_(True))
                .order_by(CatalogItem.created_at, CatalogItem.id)
                .limit(1)
            ).scalar_one_or_none()
            return _item_record(item) if item else None

    async def get_item(self, item_id: str) -> Optional[CatalogItemRecord]:
        return await self._run(self._get_item, item_id, description='get catalog item')

    def _get_item(self, item_id: str) -> Optional[CatalogItemRecord]:
        with self.db.transaction() as session:
            item = session.get(CatalogItem, item_id)
            return _item_record(item) if item else None

    async def create_item(self, fields: Dict[str, Any]) -> CatalogItemRecord:
        return await self._run(self._create_item, fields, description='create catalog item')

    def _create_item(self, fields: Dict[str, Any]) -> CatalogItemRecord:
        with self.db.transaction() as session:
            item = self._new_item(fields)
            session.add(item)
            session.flush()
            logger.info(f"Created catalog item '{item.name}' ({item.id})")
            return _item_record(item)

    @staticmethod
    def _new_item(fields: Dict[str, Any]) -> CatalogItem:
        unknown = set(fields) - CATALOG_ITEM_FIELDS
        if unknown:
            raise ValueError(f"Unknown catalog item fields: {sorted(unknown)}")
        if not fields.get('name'):
            raise ValueError("Catalog item requires a name")
        return CatalogItem(normalized_name=normalize_name(fields['name']), **fields)

    async def update_item(self, item_id: str, fields: Dict[str, Any]) -> CatalogItemRecord:
        return await self._run(self._update_item, item_id, fields, description='update catalog item')

    def _update_item(self, item_id: str, fields: Dict[str, Any]) -> CatalogItemRecord:
        unknown = set(fields) - CATALOG_ITEM_FIELDS
        if unknown:
            raise ValueError(f"Unknown catalog item fields: {sorted(unknown)}")
        with self.db.transaction() as session:
            item = session.get(CatalogItem, item_id)
            if item is None:
                raise CatalogItemNotFoundError(f"Catalog item {item_id} not found")
            for key, value in fields.items():
                setattr(item, key, value)
            if 'name' in fields:
                item.normalized_name = normalize_name(fields['name'])
            session.flush()
            return _item_record(item)

    async def list_candidates(self, name_hint: Optional[str] = None) -> List[CatalogCandidate]:
        return await self._run(self._list_candidates, description='list catalog candidates')

    def _list_candidates(self) -> List[CatalogCandidate]:
        with self.db.transaction() as session:
            rows = session.execute(
                select(CatalogItem.id, CatalogItem.name)
                .where(CatalogItem.is_active.is_(True))
                .order_by(CatalogItem.created_at, CatalogItem.id)
            ).all()
            return [CatalogCandidate(row.id, row.name) for row in rows]

    async def list_pos_items(self) -> List[CatalogItemRecord]:
        return await self._run(self._list_pos_items, description='list POS catalog items')

    def _list_pos_items(self) -> List[CatalogItemRecord]:
        with self.db.transaction() as session:
            items = session.execute(
                select(CatalogItem)
                .where(CatalogItem.is_active.is_(True), CatalogItem.variation_external_id.isnot(None))
                .order_by(CatalogItem.name, CatalogItem.id)
            ).scalars().all()
            return [_item_record(item) for item in items]

    # Product links

    async def get_active_link(self, product_name: str) -> Optional[ProductLinkRecord]:
        return await self._run(self._get_active_link, product_name, description='get active link')

    def _get_active_link(self, product_name: str) -> Optional[ProductLinkRecord]:
        with self.db.transaction() as session:
            link = self._active_link(session, normalize_name(product_name))
            return _link_record(link) if link else None

    @staticmethod
    def _active_link(session, normalized: str) -> Optional[ProductLink]:
        return session.execute(
            select(ProductLink).where(
                ProductLink.normalized_name == normalized,
                ProductLink.is_active.is_(True)
            )
        ).scalar_one_or_none()

    async def activate_link(
        self,
        product_name: str,
        catalog_item_id: str,
        confidence: float,
        origin: LinkOrigin,
        replace_existing: bool = False,
        linked_by: Optional[str] = None
    ) -> ProductLinkRecord:
        return await self._run(
            self._activate_link, product_name, catalog_item_id, confidence, origin,
            replace_existing, linked_by,
            description='activate product link'
        )

    def _activate_link(
        self,
        product_name: str,
        catalog_item_id: str,
        confidence: float,
        origin: LinkOrigin,
        replace_existing: bool,
        linked_by: Optional[str]
    ) -> ProductLinkRecord:
        normalized = normalize_name(product_name)
        try:
            with self.db.transaction() as session:
                if session.get(CatalogItem, catalog_item_id) is None:
                    raise CatalogItemNotFoundError(f"Catalog item {catalog_item_id} not found")

                current = self._active_link(session, normalized)
                if current is not None:
                    if not replace_existing:
                        raise LinkConflictError(f"'{product_name}' is already linked to {current.catalog_item_id}")
                    current.is_active = False
                    current.deactivated_at = utcnow()
                    # the old row must be inactive before the new one is inserted
                    session.flush()

                link = ProductLink(
                    product_name=product_name.strip(),
                    normalized_name=normalized,
                    catalog_item_id=catalog_item_id,
                    confidence=confidence,
                    origin=LinkOrigin(origin).value,
                    is_active=True,
                    linked_by=linked_by
                )
                session.add(link)
                session.flush()
                return _link_record(link)
        except IntegrityError as e:
            raise LinkConflictError(f"Concurrent link for '{product_name}': {e.orig}") from e

    async def create_item_with_link(
        self,
        fields: Dict[str, Any],
        product_name: str,
        confidence: float,
        origin: LinkOrigin
    ) -> Tuple[CatalogItemRecord, ProductLinkRecord]:
        return await self._run(
            self._create_item_with_link, fields, product_name, confidence, origin,
            description='create catalog item with link'
        )

    def _create_item_with_link(
        self,
        fields: Dict[str, Any],
        product_name: str,
        confidence: float,
        origin: LinkOrigin
    ) -> Tuple[CatalogItemRecord, ProductLinkRecord]:
        try:
            with self.db.transaction() as session:
                item = self._new_item(fields)
                session.add(item)
                session.flush()
                link = ProductLink(
                    product_name=product_name.strip(),
                    normalized_name=normalize_name(product_name),
                    catalog_item_id=item.id,
                    confidence=confidence,
                    origin=LinkOrigin(origin).value,
                    is_active=True
                )
                session.add(link)
                session.flush()
                return _item_record(item), _link_record(link)
        except IntegrityError as e:
            raise LinkConflictError(f"Concurrent link for '{product_name}': {e.orig}") from e

    async def deactivate_link(self, product_name: str) -> Optional[ProductLinkRecord]:
        return await self._run(self._deactivate_link, product_name, description='deactivate product link')

    def _deactivate_link(self, product_name: str) -> Optional[ProductLinkRecord]:
        with self.db.transaction() as session:
            link = self._active_link(session, normalize_name(product_name))
            if link is None:
                return None
            link.is_active = False
            link.deactivated_at = utcnow()
            session.flush()
            return _link_record(link)

    async def backfill_line_items(
        self,
        product_name: str,
        catalog_item_id: str,
        replace_existing: bool = False
    ) -> int:
        return await self._run(
            self._backfill_line_items, product_name, catalog_item_id, replace_existing,
            description='back-fill line items'
        )

    def _backfill_line_items(self, product_name: str, catalog_item_id: str, replace_existing: bool) -> int:
        conditions = [InvoiceLineItem.normalized_name == normalize_name(product_name)]
        if not replace_existing:
            conditions.append(InvoiceLineItem.catalog_item_id.is_(None))
        with self.db.transaction() as session:
            result = session.execute(
                update(InvoiceLineItem)
                .where(and_(*conditions))
                .values(catalog_item_id=catalog_item_id)
            )
            return result.rowcount or 0

    async def detach_line_items(self, product_name: str, catalog_item_id: str) -> int:
        return await self._run(
            self._detach_line_items, product_name, catalog_item_id,
            description='detach line items'
        )

    def _detach_line_items(self, product_name: str, catalog_item_id: str) -> int:
        with self.db.transaction() as session:
            result = session.execute(
                update(InvoiceLineItem)
                .where(
                    InvoiceLineItem.normalized_name == normalize_name(product_name),
                    InvoiceLineItem.catalog_item_id == catalog_item_id
                )
                .values(catalog_item_id=None)
            )
            return result.rowcount or 0

    async def list_unlinked_product_names(self, limit: Optional[int] = None) -> List[str]:
        return await self._run(self._list_unlinked_product_names, limit, description='list unlinked names')

    def _list_unlinked_product_names(self, limit: Optional[int]) -> List[str]:
        linked = select(ProductLink.normalized_name).where(ProductLink.is_active.is_(True))
        query = (
            select(InvoiceLineItem.normalized_name, func.min(InvoiceLineItem.product_name))
            .where(
                InvoiceLineItem.catalog_item_id.is_(None),
                InvoiceLineItem.normalized_name.not_in(linked)
            )
            .group_by(InvoiceLineItem.normalized_name)
            .order_by(InvoiceLineItem.normalized_name)
        )
        if limit:
            query = query.limit(limit)
        with self.db.transaction() as session:
            return [row[1] for row in session.execute(query).all()]

    # Invoices, sales and sync runs

    async def save_invoice(self, invoice: ExtractedInvoice) -> str:
        return await self._run(self._save_invoice, invoice, description='save invoice')

    def _save_invoice(self, invoice: ExtractedInvoice) -> str:
        with self.db.transaction() as session:
            record = Invoice(
                vendor_name=invoice.vendor.name or None,
                invoice_number=invoice.invoice_number or None,
                invoice_date=invoice.invoice_date,
                subtotal_ex_gst=invoice.subtotal_ex_gst,
                gst_amount=invoice.gst_amount,
                total_inc_gst=invoice.total_inc_gst,
                confidence=invoice.confidence,
                requires_review=invoice.requires_review,
                review_reasons=list(invoice.review_reasons),
                debugging=invoice.debugging.model_dump(mode='json', by_alias=True)
            )
            names = {normalize_name(item.description) for item in invoice.line_items}
            active = dict(session.execute(
                select(ProductLink.normalized_name, ProductLink.catalog_item_id).where(
                    ProductLink.normalized_name.in_(names),
                    ProductLink.is_active.is_(True)
                )
            ).all()) if names else {}

            for line_number, item in enumerate(invoice.line_items, start=1):
                normalized = normalize_name(item.description)
                record.line_items.append(InvoiceLineItem(
                    line_number=line_number,
                    product_name=item.description,
                    normalized_name=normalized,
                    quantity=item.quantity,
                    unit_cost_ex_gst=item.unit_cost_ex_gst,
                    price_ex_gst=item.price_ex_gst,
                    price_inc_gst=item.price_inc_gst,
                    has_gst=item.has_gst,
                    category=item.category,
                    validation_confidence=item.validation_confidence,
                    validation_flags=list(item.validation_flags),
                    catalog_item_id=active.get(normalized)
                ))
            session.add(record)
            session.flush()
            logger.info(f"Saved invoice {record.id} with {len(record.line_items)} line items")
            return record.id

    async def upsert_daily_sales(self, aggregate: SalesAggregate) -> bool:
        return await self._run(self._upsert_daily_sales, aggregate, description='upsert daily sales')

    def _upsert_daily_sales(self, aggregate: SalesAggregate) -> bool:
        try:
            return self._write_daily_sales(aggregate)
        except IntegrityError:
            # another writer inserted the key first; the retry lands on the update path
            logger.debug(f"Daily sales key {aggregate.key} inserted concurrently, updating")
            return self._write_daily_sales(aggregate)

    def _write_daily_sales(self, aggregate: SalesAggregate) -> bool:
        values = aggregate.model_dump(exclude={'sale_date', 'item_name', 'variation_name'})
        with self.db.transaction() as session:
            row = session.execute(
                select(DailySales).where(
                    DailySales.sale_date == aggregate.sale_date,
                    DailySales.item_name == aggregate.item_name,
                    DailySales.variation_name == aggregate.variation_name
                )
            ).scalar_one_or_none()
            created = row is None
            if created:
                row = DailySales(
                    sale_date=aggregate.sale_date,
                    item_name=aggregate.item_name,
                    variation_name=aggregate.variation_name
                )
                session.add(row)
            for key, value in values.items():
                setattr(row, key, value)
            session.flush()
            return created

    async def list_daily_sales(self, start: date, end: date) -> List[SalesAggregate]:
        return await self._run(self._list_daily_sales, start, end, description='list daily sales')

    def _list_daily_sales(self, start: date, end: date) -> List[SalesAggregate]:
        with self.db.transaction() as session:
            rows = session.execute(
                select(DailySales)
                .where(DailySales.sale_date >= start, DailySales.sale_date <= end)
                .order_by(DailySales.sale_date, DailySales.item_name, DailySales.variation_name)
            ).scalars().all()
            return [
                SalesAggregate(
                    sale_date=row.sale_date,
                    item_name=row.item_name,
                    variation_name=row.variation_name,
                    quantity=row.quantity,
                    gross_cents=row.gross_cents,
                    tax_cents=row.tax_cents,
                    net_cents=row.net_cents,
                    order_count=row.order_count,
                    category=row.category,
                    catalog_external_id=row.catalog_external_id
                )
                for row in rows
            ]

    async def upsert_inventory_level(self, level: InventoryLevelRecord) -> bool:
        return await self._run(self._upsert_inventory_level, level, description='upsert inventory level')

    def _upsert_inventory_level(self, level: InventoryLevelRecord) -> bool:
        try:
            return self._write_inventory_level(level)
        except IntegrityError:
            logger.debug(f"Inventory key {level.key} inserted concurrently, updating")
            return self._write_inventory_level(level)

    def _write_inventory_level(self, level: InventoryLevelRecord) -> bool:
        with self.db.transaction() as session:
            if session.get(CatalogItem, level.catalog_item_id) is None:
                raise CatalogItemNotFoundError(f"Catalog item {level.catalog_item_id} not found")
            row = session.execute(
                select(InventoryLevel).where(
                    InventoryLevel.catalog_item_id == level.catalog_item_id,
                    InventoryLevel.location_id == level.location_id
                )
            ).scalar_one_or_none()
            created = row is None
            if created:
                row = InventoryLevel(catalog_item_id=level.catalog_item_id, location_id=level.location_id)
                session.add(row)
            row.quantity = level.quantity
            row.counted_at = level.counted_at
            session.flush()
            return created

    async def list_inventory_levels(self, catalog_item_id: Optional[str] = None) -> List[InventoryLevelRecord]:
        return await self._run(self._list_inventory_levels, catalog_item_id, description='list inventory levels')

    def _list_inventory_levels(self, catalog_item_id: Optional[str]) -> List[InventoryLevelRecord]:
        query = select(InventoryLevel).order_by(InventoryLevel.catalog_item_id, InventoryLevel.location_id)
        if catalog_item_id is not None:
            query = query.where(InventoryLevel.catalog_item_id == catalog_item_id)
        with self.db.transaction() as session:
            return [InventoryLevelRecord.model_validate(row) for row in session.execute(query).scalars().all()]

    async def record_sync_run(self, report: SyncRunReport) -> str:
        return await self._run(self._record_sync_run, report, description='record sync run')

    def _record_sync_run(self, report: SyncRunReport) -> str:
        data = report.to_dict()
        with self.db.transaction() as session:
            run = SyncRun(
                started_at=report.started_at,
                completed_at=report.completed_at,
                window_start=report.window_start,
                window_end=report.window_end,
                status=report.status.value,
                phases=data['phases'],
                errors=report.errors
            )
            session.add(run)
            session.flush()
            report.id = run.id
            return run.id
