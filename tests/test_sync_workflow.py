"""
Tests for the POS sync workflow
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from invoex.connectors.base import PosPlatform
from invoex.exceptions import PosPlatformError
from invoex.matching.reconciler import ReconciliationEngine
from invoex.models.catalog import (
    ExternalCatalogItem,
    ExternalInventoryCount,
    ExternalOrder,
    ExternalOrderLine,
    ExternalVariation,
    LinkOrigin,
    SyncConfig,
)
from invoex.models.invoice import ExtractedInvoice, ExtractedLineItem, Vendor
from invoex.models.sync import SyncStatus
from invoex.services.sync_service import SyncWorkflow, aggregate_orders, whole_day_window

UTC = timezone.utc


class FakePos(PosPlatform):
    """In-memory POS returning fixed snapshots"""

    def __init__(self, catalog=None, orders=None, counts=None, catalog_error=None, orders_error=None,
                 inventory_error=None):
        self.catalog = catalog or []
        self.orders = orders or []
        self.counts = counts or []
        self.catalog_error = catalog_error
        self.orders_error = orders_error
        self.inventory_error = inventory_error
        self.order_windows = []
        self.inventory_requests = []

    async def fetch_catalog(self):
        if self.catalog_error:
            raise self.catalog_error
        return list(self.catalog)

    async def fetch_orders(self, start, end):
        self.order_windows.append((start, end))
        if self.orders_error:
            raise self.orders_error
        return [o for o in self.orders if start <= o.created_at < end]

    async def fetch_inventory_counts(self, catalog_object_ids):
        self.inventory_requests.append(list(catalog_object_ids))
        if self.inventory_error:
            raise self.inventory_error
        return [c for c in self.counts if c.catalog_object_id in catalog_object_ids]


def external_item(external_id, name, price_cents=None, cost_cents=None, category='Groceries', taxable=True):
    return ExternalCatalogItem(
        external_id=external_id,
        name=name,
        category=category,
        is_taxable=taxable,
        variations=[ExternalVariation(
            external_id=f'{external_id}-V', name='Regular', price_cents=price_cents, cost_cents=cost_cents
        )]
    )


def order(order_id, created_at, *lines):
    return ExternalOrder(
        order_id=order_id,
        created_at=created_at,
        line_items=[
            ExternalOrderLine(name=name, variation_name='Regular', catalog_object_id=f'{item_id}-V',
                              quantity=Decimal(qty), gross_cents=gross, tax_cents=tax)
            for item_id, name, qty, gross, tax in lines
        ]
    )


def count(variation_id, location_id, quantity):
    return ExternalInventoryCount(
        catalog_object_id=variation_id,
        location_id=location_id,
        quantity=Decimal(quantity),
        calculated_at=datetime(2024, 3, 7, 6, 0, tzinfo=UTC)
    )


def fixed_clock():
    return datetime(2024, 3, 7, 15, 30, tzinfo=UTC)


ORDERS = [
    order('O1', datetime(2024, 3, 5, 9, 0, tzinfo=UTC), ('SQ-1', 'Oat Milk', '2', 1100, 100)),
    order('O2', datetime(2024, 3, 5, 23, 59, tzinfo=UTC), ('SQ-1', 'Oat Milk', '1', 550, 50),
          ('SQ-2', 'Bananas', '1.5', 600, 0)),
    order('O3', datetime(2024, 3, 6, 8, 15, tzinfo=UTC), ('SQ-1', 'Oat Milk', '3', 1650, 150)),
]


class TestWindow:

    def test_whole_days(self):
        """Test windows widen to whole UTC days"""
        start, end = whole_day_window(
            datetime(2024, 3, 5, 13, 45, tzinfo=UTC), datetime(2024, 3, 6, 1, 0, tzinfo=UTC)
        )
        assert start == datetime(2024, 3, 5, tzinfo=UTC)
        assert end == datetime(2024, 3, 7, tzinfo=UTC)

    def test_naive_treated_as_utc(self):
        """Test naive datetimes are treated as UTC"""
        start, _ = whole_day_window(datetime(2024, 3, 5, 13, 45), datetime(2024, 3, 5, 14, 0))
        assert start.tzinfo == UTC

    def test_reversed_window(self):
        """Test a reversed window raises"""
        with pytest.raises(ValueError):
            whole_day_window(datetime(2024, 3, 6, tzinfo=UTC), datetime(2024, 3, 5, tzinfo=UTC))

    def test_default_lookback(self, gateway):
        """Test the default lookback window"""
        workflow = SyncWorkflow(gateway, FakePos(), config=SyncConfig(weeks_back=1), clock=fixed_clock)
        start, end = workflow.window()
        assert start == datetime(2024, 2, 29, tzinfo=UTC)
        assert end == datetime(2024, 3, 8, tzinfo=UTC)


class TestAggregateOrders:

    def test_rollup(self):
        """Test orders roll up into daily buckets"""
        aggregates = aggregate_orders(ORDERS, {'SQ-1-V': 'Drinks Fridge'})

        assert [(a.sale_date, a.item_name) for a in aggregates] == [
            (date(2024, 3, 5), 'Bananas'),
            (date(2024, 3, 5), 'Oat Milk'),
            (date(2024, 3, 6), 'Oat Milk'),
        ]
        milk = aggregates[1]
        assert milk.quantity == Decimal('3')
        assert milk.gross_cents == 1650
        assert milk.tax_cents == 150
        assert milk.net_cents == 1500
        assert milk.order_count == 2
        assert milk.category == 'Drinks Fridge'
        assert aggregates[0].category is None

    def test_offset_timestamps_use_utc_date(self):
        """Test offset timestamps bucket by UTC date"""
        sydney = timezone(timedelta(hours=11))
        late = order('O9', datetime(2024, 3, 6, 9, 30, tzinfo=sydney), ('SQ-1', 'Oat Milk', '1', 550, 50))
        assert aggregate_orders([late])[0].sale_date == date(2024, 3, 5)


class TestCatalogPhase:

    @pytest.mark.asyncio
    async def test_creates_with_derived_cost(self, gateway):
        """Test new POS items get a derived cost"""
        pos = FakePos(catalog=[external_item('SQ-1', 'Oat Milk 1L', price_cents=1100)])
        workflow = SyncWorkflow(gateway, pos, clock=fixed_clock)

        report = await workflow.run()

        item = await gateway.find_by_external_id('SQ-1')
        assert item.cost_ex_gst == Decimal('6.06')
        assert item.sell_inc_gst == Decimal('11.00')
        assert item.sell_ex_gst == Decimal('10.00')
        assert item.variation_external_id == 'SQ-1-V'
        assert report.phases['catalog'].created == 1
        link = await gateway.get_active_link('Oat Milk 1L')
        assert link.origin == LinkOrigin.AUTOMATIC_CREATE

    @pytest.mark.asyncio
    async def test_gst_free_cost_derivation(self, gateway):
        """Test cost derivation for GST-free items"""
        pos = FakePos(catalog=[external_item('SQ-2', 'Bananas', price_cents=330, category='Fruit & Veg', taxable=False)])

        await SyncWorkflow(gateway, pos, clock=fixed_clock).run()

        item = await gateway.find_by_external_id('SQ-2')
        # 3.30 / 1.75 with no tax component
        assert item.cost_ex_gst == Decimal('1.89')
        assert item.sell_ex_gst == Decimal('3.30')
        assert item.has_gst is False

    @pytest.mark.asyncio
    async def test_merge_keeps_operator_sell_price(self, gateway):
        """Test merging keeps an existing sell price"""
        local = await gateway.create_item({
            'name': 'Oat Milk 1L', 'cost_ex_gst': Decimal('5.00'),
            'sell_ex_gst': Decimal('9.00'), 'sell_inc_gst': Decimal('9.90'), 'has_gst': True,
        })
        pos = FakePos(catalog=[external_item('SQ-1', 'oat milk 1l', price_cents=1200, cost_cents=550)])

        report = await SyncWorkflow(gateway, pos, clock=fixed_clock).run()

        item = await gateway.get_item(local.id)
        assert item.cost_ex_gst == Decimal('5.50')
        assert item.sell_inc_gst == Decimal('9.90')
        assert item.external_id == 'SQ-1'
        assert report.phases['catalog'].updated == 1

    @pytest.mark.asyncio
    async def test_unchanged_item_is_skipped(self, gateway):
        """Test unchanged items are skipped"""
        pos = FakePos(catalog=[external_item('SQ-1', 'Oat Milk 1L', price_cents=1100, cost_cents=600)])
        workflow = SyncWorkflow(gateway, pos, clock=fixed_clock)

        await workflow.run()
        report = await workflow.run()

        assert report.phases['catalog'].skipped == 1
        assert report.phases['catalog'].created == 0

    @pytest.mark.asyncio
    async def test_matches_through_existing_link(self, gateway):
        """Test POS items match through an invoice link"""
        local = await gateway.create_item({'name': 'House Oat Milk'})
        await gateway.activate_link('Oat Milk 1L', local.id, 1.0, LinkOrigin.MANUAL)
        pos = FakePos(catalog=[external_item('SQ-1', 'Oat Milk 1L', price_cents=1100)])

        await SyncWorkflow(gateway, pos, clock=fixed_clock).run()

        assert (await gateway.find_by_external_id('SQ-1')).id == local.id

    @pytest.mark.asyncio
    async def test_item_failure_is_counted(self, gateway, monkeypatch):
        """Test one failing item is counted"""
        pos = FakePos(catalog=[
            external_item('SQ-1', 'Oat Milk 1L', price_cents=1100),
            external_item('SQ-2', 'Broken Item', price_cents=500),
            ExternalCatalogItem(external_id='SQ-3', name='   '),
        ])
        workflow = SyncWorkflow(gateway, pos, clock=fixed_clock)
        original = workflow.merge_catalog_item

        async def flaky(ext):
            if ext.external_id == 'SQ-2':
                raise RuntimeError('constraint failed')
            return await original(ext)

        monkeypatch.setattr(workflow, 'merge_catalog_item', flaky)

        report = await workflow.run()

        counters = report.phases['catalog']
        assert (counters.created, counters.failed, counters.skipped) == (1, 1, 1)
        assert report.status == SyncStatus.PARTIAL
        assert any('Broken Item' in e for e in report.errors)


class TestInventoryPhase:
    """Tests for the inventory phase"""

    CATALOG = [
        external_item('SQ-1', 'Oat Milk 1L', price_cents=1100),
        external_item('SQ-2', 'Bananas', price_cents=330, category='Fruit & Veg', taxable=False),
    ]

    @pytest.mark.asyncio
    async def test_levels_per_location_converge(self, gateway):
        """Test repeated runs replace levels per item and location"""
        pos = FakePos(catalog=self.CATALOG, counts=[
            count('SQ-1-V', 'LOC-1', '12'),
            count('SQ-1-V', 'LOC-2', '3'),
            count('SQ-2-V', 'LOC-1', '40.5'),
        ])
        workflow = SyncWorkflow(gateway, pos, clock=fixed_clock)

        first = await workflow.run()
        pos.counts[0] = count('SQ-1-V', 'LOC-1', '7')
        second = await workflow.run()

        assert (first.phases['inventory'].created, first.phases['inventory'].updated) == (3, 0)
        assert (second.phases['inventory'].created, second.phases['inventory'].updated) == (0, 3)
        milk = await gateway.find_by_external_id('SQ-1')
        levels = {level.location_id: level.quantity for level in await gateway.list_inventory_levels(milk.id)}
        assert levels == {'LOC-1': Decimal('7'), 'LOC-2': Decimal('3')}
        assert len(await gateway.list_inventory_levels()) == 3
        assert set(pos.inventory_requests[0]) == {'SQ-1-V', 'SQ-2-V'}

    @pytest.mark.asyncio
    async def test_untracked_items_are_skipped(self, gateway):
        """Test items with no reported count are skipped"""
        pos = FakePos(catalog=self.CATALOG, counts=[count('SQ-1-V', 'LOC-1', '12')])

        report = await SyncWorkflow(gateway, pos, clock=fixed_clock).run()

        inventory = report.phases['inventory']
        assert (inventory.created, inventory.skipped, inventory.failed) == (1, 1, 0)
        assert report.status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_level_failure_is_counted(self, gateway, monkeypatch):
        """Test one failing level is counted and the rest are written"""
        pos = FakePos(catalog=self.CATALOG, counts=[
            count('SQ-1-V', 'LOC-1', '12'),
            count('SQ-1-V', 'LOC-2', '3'),
            count('SQ-2-V', 'LOC-1', '40.5'),
        ])
        original = gateway.upsert_inventory_level

        async def flaky(level):
            if level.location_id == 'LOC-2':
                raise RuntimeError('disk full')
            return await original(level)

        monkeypatch.setattr(gateway, 'upsert_inventory_level', flaky)

        report = await SyncWorkflow(gateway, pos, clock=fixed_clock).run()

        inventory = report.phases['inventory']
        assert (inventory.created, inventory.failed) == (2, 1)
        assert report.status == SyncStatus.PARTIAL
        assert any('Oat Milk 1L @ LOC-2' in e for e in report.errors)
        assert len(await gateway.list_inventory_levels()) == 2

    @pytest.mark.asyncio
    async def test_fetch_failure_aborts_only_inventory(self, gateway):
        """Test an inventory fetch failure keeps the other phases"""
        pos = FakePos(catalog=self.CATALOG, orders=ORDERS[:1],
                      inventory_error=PosPlatformError('Square API error 503', status_code=503))

        report = await SyncWorkflow(gateway, pos, clock=fixed_clock).run(datetime(2024, 3, 5, tzinfo=UTC))

        assert report.phases['inventory'].aborted is True
        assert report.phases['catalog'].created == 2
        assert report.phases['sales'].created == 1
        assert report.status == SyncStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_inventory_phase_can_be_disabled(self, gateway):
        """Test the inventory phase can be disabled"""
        pos = FakePos(catalog=self.CATALOG, counts=[count('SQ-1-V', 'LOC-1', '12')])
        workflow = SyncWorkflow(gateway, pos, config=SyncConfig(sync_inventory=False), clock=fixed_clock)

        report = await workflow.run()

        assert 'inventory' not in report.phases
        assert pos.inventory_requests == []


class TestSalesPhase:

    @pytest.mark.asyncio
    async def test_overlapping_runs_converge(self, gateway):
        """Test overlapping runs converge on the same totals"""
        pos = FakePos(orders=ORDERS)
        workflow = SyncWorkflow(gateway, pos, clock=fixed_clock)

        first = await workflow.run(datetime(2024, 3, 5, 12, tzinfo=UTC), datetime(2024, 3, 5, 13, tzinfo=UTC))
        after_first = await gateway.list_daily_sales(date(2024, 3, 1), date(2024, 3, 31))
        second = await workflow.run(datetime(2024, 3, 4, tzinfo=UTC), datetime(2024, 3, 6, 23, tzinfo=UTC))
        third = await workflow.run(datetime(2024, 3, 4, tzinfo=UTC), datetime(2024, 3, 6, 23, tzinfo=UTC))
        after_third = await gateway.list_daily_sales(date(2024, 3, 1), date(2024, 3, 31))

        # the partial-day request still pulled all of 5 March
        assert first.phases['sales'].created == 2
        assert second.phases['sales'].created == 1
        assert second.phases['sales'].updated == 2
        assert third.phases['sales'].created == 0
        assert [a for a in after_third if a.sale_date == date(2024, 3, 5)] == after_first
        assert sum(a.gross_cents for a in after_third) == 1100 + 550 + 600 + 1650
        assert pos.order_windows[0] == (datetime(2024, 3, 5, tzinfo=UTC), datetime(2024, 3, 6, tzinfo=UTC))

    @pytest.mark.asyncio
    async def test_sales_category_from_catalog(self, gateway):
        """Test sales rows take their category from the catalog"""
        pos = FakePos(catalog=[external_item('SQ-1', 'Oat Milk', price_cents=550, category='Drinks Fridge')],
                      orders=ORDERS[:1])

        await SyncWorkflow(gateway, pos, clock=fixed_clock).run(datetime(2024, 3, 5, tzinfo=UTC))

        rows = await gateway.list_daily_sales(date(2024, 3, 5), date(2024, 3, 5))
        assert rows[0].category == 'Drinks Fridge'


class TestFailures:

    @pytest.mark.asyncio
    async def test_order_fetch_failure_keeps_catalog(self, gateway):
        """Test an order failure keeps catalog results"""
        pos = FakePos(catalog=[external_item('SQ-1', 'Oat Milk 1L', price_cents=1100)],
                      orders_error=PosPlatformError('Square API error 503', status_code=503))

        report = await SyncWorkflow(gateway, pos, clock=fixed_clock).run()

        assert report.phases['catalog'].created == 1
        assert report.phases['sales'].aborted is True
        assert report.status == SyncStatus.PARTIAL
        assert await gateway.find_by_external_id('SQ-1') is not None

    @pytest.mark.asyncio
    async def test_everything_failing(self, gateway):
        """Test a run where every phase fails"""
        await gateway.create_item({'name': 'Oat Milk 1L', 'external_id': 'SQ-1', 'variation_external_id': 'SQ-1-V'})
        error = PosPlatformError('Square API error 401', status_code=401)
        pos = FakePos(catalog_error=error, orders_error=error, inventory_error=error)

        report = await SyncWorkflow(gateway, pos, clock=fixed_clock).run()

        assert report.status == SyncStatus.FAILED
        assert report.id is not None
        assert report.completed_at == fixed_clock()


class TestLinksPhase:

    @pytest.mark.asyncio
    async def test_pending_names_link_without_creating(self, gateway):
        """Test pending names link without creating items"""
        await gateway.save_invoice(ExtractedInvoice(
            vendor=Vendor(name='Wholefoods Direct'),
            line_items=[
                ExtractedLineItem(description='Organik Spelt Flour 1kg', quantity=Decimal('1')),
                ExtractedLineItem(description='Totally Novel Snack Bar', quantity=Decimal('1')),
            ]
        ))
        pos = FakePos(catalog=[external_item('SQ-9', 'Organic Spelt Flour 1kg', price_cents=825)])
        reconciler = ReconciliationEngine(gateway)

        report = await SyncWorkflow(gateway, pos, reconciler, clock=fixed_clock).run()

        links = report.phases['links']
        assert (links.created, links.skipped) == (1, 1)
        flour = await gateway.find_by_external_id('SQ-9')
        assert (await gateway.get_active_link('Organik Spelt Flour 1kg')).catalog_item_id == flour.id
        assert await gateway.list_unlinked_product_names() == ['Totally Novel Snack Bar']

    @pytest.mark.asyncio
    async def test_links_phase_can_be_disabled(self, gateway):
        """Test the links phase can be disabled"""
        workflow = SyncWorkflow(gateway, FakePos(), ReconciliationEngine(gateway),
                                config=SyncConfig(link_pending_names=False), clock=fixed_clock)
        report = await workflow.run()
        assert 'links' not in report.phases
        assert report.status == SyncStatus.SUCCESS
