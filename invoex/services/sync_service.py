"""
Sync Workflow

Pulls a catalog snapshot, inventory counts and a window of completed orders
from the POS platform and upserts them through the Catalog Gateway:

catalog -> inventory -> sales -> links

Each phase keeps its own counters. A failing item is recorded and the
phase moves on; a failing fetch aborts only its own phase. Sales
aggregates are keyed on (date, item, variation) and inventory levels on
(item, location); both are written with create-or-replace. The sales
window is widened to whole UTC days, so re-running over an overlapping
range converges instead of double counting.
"""

import logging
from collections import defaultdict
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from invoex.connectors.base import PosPlatform
from invoex.exceptions import LinkConflictError
from invoex.models.catalog import (
    CatalogItemRecord,
    ExternalCatalogItem,
    ExternalOrder,
    InventoryLevelRecord,
    LinkOrigin,
    MatchedCatalog,
    PricingConfig,
    SalesAggregate,
    SyncConfig,
)
from invoex.models.invoice import DEFAULT_CATEGORY
from invoex.models.sync import PhaseCounters, SyncRunReport
from invoex.services.catalog_gateway import CatalogGateway
from invoex.utils.pricing import (
    cents_to_decimal,
    derive_cost_from_sell,
    markup_for_category,
    round_to_cents,
)

if TYPE_CHECKING:
    from invoex.matching.reconciler import ReconciliationEngine

logger = logging.getLogger(__name__)

PHASE_CATALOG = 'catalog'
PHASE_INVENTORY = 'inventory'
PHASE_SALES = 'sales'
PHASE_LINKS = 'links'


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def whole_day_window(start: datetime, end: datetime) -> Tuple[datetime, datetime]:
    """Widen [start, end] to [start-of-day, start-of-next-day) in UTC"""
    start, end = _as_utc(start), _as_utc(end)
    if start > end:
        raise ValueError(f"Sync window start {start.isoformat()} is after end {end.isoformat()}")
    day_start = datetime.combine(start.date(), time.min, tzinfo=timezone.utc)
    day_end = datetime.combine(end.date(), time.min, tzinfo=timezone.utc) + timedelta(days=1)
    return day_start, day_end


def aggregate_orders(
    orders: List[ExternalOrder],
    categories: Optional[Dict[str, str]] = None
) -> List[SalesAggregate]:
    """
    Roll order lines up into one record per (UTC date, item, variation)

    Net is gross less tax. ``categories`` maps a catalog object id to its
    category name when the catalog snapshot is available.
    """
    categories = categories or {}
    buckets: Dict[Tuple, Dict[str, Any]] = defaultdict(lambda: {
        'quantity': Decimal('0'),
        'gross_cents': 0,
        'tax_cents': 0,
        'orders': set(),
        'catalog_external_id': None,
    })

    for order in orders:
        sale_date = _as_utc(order.created_at).date()
        for line in order.line_items:
            bucket = buckets[(sale_date, line.name, line.variation_name)]
            bucket['quantity'] += line.quantity
            bucket['gross_cents'] += line.gross_cents
            bucket['tax_cents'] += line.tax_cents
            bucket['orders'].add(order.order_id)
            if bucket['catalog_external_id'] is None and line.catalog_object_id:
                bucket['catalog_external_id'] = line.catalog_object_id

    aggregates = []
    for (sale_date, name, variation), bucket in sorted(buckets.items(), key=lambda kv: kv[0]):
        external_id = bucket['catalog_external_id']
        aggregates.append(SalesAggregate(
            sale_date=sale_date,
            item_name=name,
            variation_name=variation,
            quantity=bucket['quantity'],
            gross_cents=bucket['gross_cents'],
            tax_cents=bucket['tax_cents'],
            net_cents=bucket['gross_cents'] - bucket['tax_cents'],
            order_count=len(bucket['orders']),
            category=categories.get(external_id) if external_id else None,
            catalog_external_id=external_id
        ))
    return aggregates


class SyncWorkflow:
    """
    Usage:
        workflow = SyncWorkflow(gateway, square, reconciler, PricingConfig(), SyncConfig())
        report = await workflow.run()
        print(report.status, report.to_dict()['phases'])
    """

    def __init__(
        self,
        gateway: CatalogGateway,
        pos: PosPlatform,
        reconciler: Optional['ReconciliationEngine'] = None,
        pricing: Optional[PricingConfig] = None,
        config: Optional[SyncConfig] = None,
        default_category: str = DEFAULT_CATEGORY,
        clock: Callable[[], datetime] = utc_now
    ):
        self.gateway = gateway
        self.pos = pos
        self.reconciler = reconciler
        self.pricing = pricing or PricingConfig()
        self.config = config or SyncConfig()
        self.default_category = default_category
        self.clock = clock

    def window(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Tuple[datetime, datetime]:
        end = end or self.clock()
        start = start or (end - timedelta(weeks=self.config.weeks_back))
        return whole_day_window(start, end)

    async def run(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> SyncRunReport:
        """
        Run every phase and persist the run record

        The report is returned even when phases failed; check ``status``.
        """
        window_start, window_end = self.window(start, end)
        report = SyncRunReport(window_start=window_start, window_end=window_end, started_at=self.clock())
        logger.info(f"Sync started for {window_start.date()} .. {window_end.date()} (exclusive)")

        categories = await self.sync_catalog(report.phase(PHASE_CATALOG))
        if self.config.sync_inventory:
            await self.sync_inventory(report.phase(PHASE_INVENTORY))
        await self.sync_sales(report.phase(PHASE_SALES), window_start, window_end, categories)
        if self.reconciler is not None and self.config.link_pending_names:
            await self.link_pending_names(report.phase(PHASE_LINKS))

        report.finish(self.clock())
        try:
            await self.gateway.record_sync_run(report)
        except Exception as e:
            logger.error(f"Failed to record sync run: {e}")

        for name, counters in report.phases.items():
            logger.info(
                f"Sync phase {name}: created={counters.created} updated={counters.updated} "
                f"skipped={counters.skipped} failed={counters.failed} aborted={counters.aborted}"
            )
        logger.info(f"Sync finished with status {report.status.value}")
        return report

    # Catalog

    async def sync_catalog(self, counters: PhaseCounters) -> Dict[str, str]:
        """Merge the external catalog; returns variation/item id -> category for the sales phase"""
        try:
            items = await self.pos.fetch_catalog()
        except Exception as e:
            logger.error(f"Catalog fetch failed; catalog phase aborted: {e}")
            counters.aborted = True
            counters.errors.append(f"Catalog fetch failed: {e}")
            return {}

        categories: Dict[str, str] = {}
        for ext in items:
            if ext.category:
                categories[ext.external_id] = ext.category
                for variation in ext.variations:
                    categories[variation.external_id] = ext.category

            if not ext.name:
                counters.skipped += 1
                continue
            try:
                outcome = await self.merge_catalog_item(ext)
            except Exception as e:
                logger.warning(f"Catalog item '{ext.name}' ({ext.external_id}) failed: {e}")
                counters.record_failure(f"{ext.name}: {e}")
                continue

            if outcome == 'created':
                counters.created += 1
            elif outcome == 'updated':
                counters.updated += 1
            else:
                counters.skipped += 1
        return categories

    async def merge_catalog_item(self, ext: ExternalCatalogItem) -> str:
        """Create or merge one external item; returns 'created', 'updated' or 'unchanged'"""
        existing = await self._find_local(ext)
        if existing is None:
            await self._create_local(ext)
            return 'created'

        updates = self._merge_fields(existing, ext)
        if not updates:
            return 'unchanged'
        await self.gateway.update_item(existing.id, updates)
        logger.debug(f"Updated catalog item {existing.id} with {sorted(updates)}")
        return 'updated'

    async def _find_local(self, ext: ExternalCatalogItem) -> Optional[CatalogItemRecord]:
        item = await self.gateway.find_by_external_id(ext.external_id)
        if item is not None:
            return item
        item = await self.gateway.find_by_name(ext.name)
        if item is not None:
            return item
        # an invoice name already linked to a local item also counts as a hit
        link = await self.gateway.get_active_link(ext.name)
        if link is not None:
            return await self.gateway.get_item(link.catalog_item_id)
        return None

    def _external_prices(self, ext: ExternalCatalogItem) -> Tuple[Optional[Decimal], Optional[Decimal], Optional[Decimal]]:
        """(cost ex GST, sell ex GST, sell inc GST) from the primary variation"""
        variation = ext.primary_variation
        if variation is None:
            return None, None, None
        cost = cents_to_decimal(variation.cost_cents)
        sell_inc = cents_to_decimal(variation.price_cents)
        sell_ex = None
        if sell_inc is not None:
            sell_ex = round_to_cents(sell_inc / (1 + self.pricing.tax_rate)) if ext.is_taxable else sell_inc
        return cost, sell_ex, sell_inc

    def _merge_fields(self, existing: CatalogItemRecord, ext: ExternalCatalogItem) -> Dict[str, Any]:
        cost, sell_ex, sell_inc = self._external_prices(ext)
        updates: Dict[str, Any] = {}

        # cost always refreshes; sell prices only fill gaps so operator edits survive
        if cost is not None and cost != existing.cost_ex_gst:
            updates['cost_ex_gst'] = cost
        if existing.sell_inc_gst is None and sell_inc is not None:
            updates['sell_inc_gst'] = sell_inc
            if existing.sell_ex_gst is None:
                updates['sell_ex_gst'] = sell_ex
        if existing.has_gst is None:
            updates['has_gst'] = ext.is_taxable
        if not existing.category and ext.category:
            updates['category'] = ext.category
        if not existing.external_id:
            updates['external_id'] = ext.external_id
            if ext.primary_variation is not None:
                updates['variation_external_id'] = ext.primary_variation.external_id
        return updates

    async def _create_local(self, ext: ExternalCatalogItem) -> CatalogItemRecord:
        cost, sell_ex, sell_inc = self._external_prices(ext)
        category = ext.category or self.default_category

        if cost is None and sell_inc is not None:
            markup = markup_for_category(category, self.pricing.category_markups, self.pricing.default_markup)
            tax_rate = self.pricing.tax_rate if ext.is_taxable else Decimal('0')
            cost = derive_cost_from_sell(sell_inc, markup, tax_rate)
            logger.debug(f"Derived cost {cost} for '{ext.name}' from sell {sell_inc} at markup {markup}")

        fields = {
            'name': ext.name,
            'external_id': ext.external_id,
            'variation_external_id': ext.primary_variation.external_id if ext.primary_variation else None,
            'category': category,
            'cost_ex_gst': cost,
            'sell_ex_gst': sell_ex,
            'sell_inc_gst': sell_inc,
            'has_gst': ext.is_taxable,
        }
        try:
            item, _ = await self.gateway.create_item_with_link(fields, ext.name, 1.0, LinkOrigin.AUTOMATIC_CREATE)
        except LinkConflictError:
            # the name was linked concurrently; keep the item without a link
            item = await self.gateway.create_item(fields)
        logger.info(f"Created catalog item '{ext.name}' from POS item {ext.external_id}")
        return item

    # Inventory

    async def sync_inventory(self, counters: PhaseCounters) -> None:
        """Replace on-hand levels for every local item that carries a POS variation id"""
        try:
            items = await self.gateway.list_pos_items()
            by_variation = {item.variation_external_id: item for item in items}
            counts = await self.pos.fetch_inventory_counts(list(by_variation)) if by_variation else []
        except Exception as e:
            logger.error(f"Inventory fetch failed; inventory phase aborted: {e}")
            counters.aborted = True
            counters.errors.append(f"Inventory fetch failed: {e}")
            return

        levels: Dict[Tuple[str, str], Tuple[CatalogItemRecord, InventoryLevelRecord]] = {}
        for count in counts:
            item = by_variation.get(count.catalog_object_id)
            if item is None:
                continue
            level = InventoryLevelRecord(
                catalog_item_id=item.id,
                location_id=count.location_id,
                quantity=count.quantity,
                counted_at=count.calculated_at
            )
            levels[level.key] = (item, level)

        counted = {item.id for item, _ in levels.values()}
        # untracked items report no count at all
        counters.skipped += sum(1 for item in items if item.id not in counted)

        for item, level in levels.values():
            try:
                created = await self.gateway.upsert_inventory_level(level)
            except Exception as e:
                logger.warning(f"Inventory for '{item.name}' at {level.location_id} failed: {e}")
                counters.record_failure(f"{item.name} @ {level.location_id}: {e}")
                continue
            if created:
                counters.created += 1
            else:
                counters.updated += 1

    # Sales

    async def sync_sales(
        self,
        counters: PhaseCounters,
        start: datetime,
        end: datetime,
        categories: Optional[Dict[str, str]] = None
    ) -> None:
        try:
            orders = await self.pos.fetch_orders(start, end)
        except Exception as e:
            logger.error(f"Order fetch failed; sales phase aborted: {e}")
            counters.aborted = True
            counters.errors.append(f"Order fetch failed: {e}")
            return

        for aggregate in aggregate_orders(orders, categories):
            try:
                created = await self.gateway.upsert_daily_sales(aggregate)
            except Exception as e:
                logger.warning(f"Daily sales {aggregate.key} failed: {e}")
                counters.record_failure(f"{aggregate.sale_date} {aggregate.item_name}: {e}")
                continue
            if created:
                counters.created += 1
            else:
                counters.updated += 1

    # Links

    async def link_pending_names(self, counters: PhaseCounters) -> None:
        """Retry unlinked invoice names against the refreshed catalog, without creating items"""
        try:
            names = await self.gateway.list_unlinked_product_names()
        except Exception as e:
            counters.aborted = True
            counters.errors.append(f"Listing unlinked names failed: {e}")
            return

        for name in names:
            try:
                decision = await self.reconciler.resolve(name, allow_create=False)
            except Exception as e:
                counters.record_failure(f"{name}: {e}")
                continue
            if isinstance(decision, MatchedCatalog):
                counters.created += 1
            else:
                counters.skipped += 1
