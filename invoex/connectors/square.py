"""
Square POS connector

Pulls the item catalog, completed orders and inventory counts over Square's
REST API using httpx. Throttling (429), server errors and transport failures are retried
with backoff; any other non-2xx response raises ``PosPlatformError``.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx

from invoex.connectors.base import PosPlatform
from invoex.exceptions import PosPlatformError
from invoex.models.catalog import (
    ExternalCatalogItem,
    ExternalInventoryCount,
    ExternalOrder,
    ExternalOrderLine,
    ExternalVariation,
)
from invoex.utils.pricing import to_decimal
from invoex.utils.retry import RetryConfig, with_retry

logger = logging.getLogger(__name__)

BASE_URLS = {
    'production': 'https://connect.squareup.com',
    'sandbox': 'https://connect.squareupsandbox.com',
}
DEFAULT_API_VERSION = '2024-10-17'


def _money(value: Optional[Dict[str, Any]]) -> Optional[int]:
    if not value or value.get('amount') is None:
        return None
    return int(value['amount'])


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


class SquareConnector(PosPlatform):
    """
    Square REST API client

    Usage:
        square = SquareConnector(access_token, environment='sandbox')
        items = await square.fetch_catalog()
        orders = await square.fetch_orders(start, end)
        counts = await square.fetch_inventory_counts(['VARIATION-ID'])
    """

    def __init__(
        self,
        access_token: str,
        environment: str = 'production',
        api_version: str = DEFAULT_API_VERSION,
        location_ids: Optional[List[str]] = None,
        timeout: float = 30.0,
        page_size: int = 500,
        max_pages: int = 100,
        inventory_batch_size: int = 100,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        if not access_token:
            raise ValueError("Square access token is required (set SQUARE_ACCESS_TOKEN)")
        if environment not in BASE_URLS:
            raise ValueError(f"Unknown Square environment: {environment}")

        self.base_url = BASE_URLS[environment]
        self.headers = {
            'Authorization': f'Bearer {access_token}',
            'Square-Version': api_version,
            'Content-Type': 'application/json',
        }
        self.location_ids = list(location_ids or [])
        self.timeout = timeout
        self.page_size = page_size
        self.max_pages = max_pages
        self.inventory_batch_size = inventory_batch_size
        self.retry_config = retry_config or RetryConfig()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            transport=self._transport
        )

    async def _request(self, client: httpx.AsyncClient, method: str, path: str, **kwargs) -> Dict[str, Any]:
        async def send() -> Dict[str, Any]:
            response = await client.request(method, path, **kwargs)
            if response.status_code >= 400:
                detail = response.text[:300]
                raise PosPlatformError(
                    f"Square {method} {path} returned {response.status_code}: {detail}",
                    status_code=response.status_code
                )
            return response.json()

        return await with_retry(send, config=self.retry_config, description=f"Square {method} {path}")

    async def fetch_catalog(self) -> List[ExternalCatalogItem]:
        """Catalog ITEM objects with their variations; category names resolved"""
        raw_items: List[Dict[str, Any]] = []
        categories: Dict[str, str] = {}

        async with self._client() as client:
            cursor = None
            for _ in range(self.max_pages):
                params = {'types': 'ITEM,CATEGORY'}
                if cursor:
                    params['cursor'] = cursor
                data = await self._request(client, 'GET', '/v2/catalog/list', params=params)
                for obj in data.get('objects', []):
                    if obj.get('is_deleted'):
                        continue
                    if obj.get('type') == 'CATEGORY':
                        categories[obj['id']] = obj.get('category_data', {}).get('name', '')
                    elif obj.get('type') == 'ITEM':
                        raw_items.append(obj)
                cursor = data.get('cursor')
                if not cursor:
                    break
            else:
                logger.warning(f"Catalog listing stopped after {self.max_pages} pages")

        items = [self._parse_item(obj, categories) for obj in raw_items]
        logger.info(f"Fetched {len(items)} catalog items from Square")
        return items

    @staticmethod
    def _parse_item(obj: Dict[str, Any], categories: Dict[str, str]) -> ExternalCatalogItem:
        data = obj.get('item_data', {})
        category_id = data.get('category_id')
        if not category_id and data.get('categories'):
            category_id = data['categories'][0].get('id')

        variations = []
        for variation in data.get('variations', []):
            vdata = variation.get('item_variation_data', {})
            variations.append(ExternalVariation(
                external_id=variation['id'],
                name=vdata.get('name', ''),
                price_cents=_money(vdata.get('price_money')),
                cost_cents=_money(vdata.get('default_unit_cost')),
                sku=vdata.get('sku')
            ))

        return ExternalCatalogItem(
            external_id=obj['id'],
            name=data.get('name', ''),
            category=categories.get(category_id) if category_id else None,
            is_taxable=bool(data.get('tax_ids')),
            variations=variations
        )

    async def _resolve_locations(self, client: httpx.AsyncClient) -> List[str]:
        if self.location_ids:
            return self.location_ids
        data = await self._request(client, 'GET', '/v2/locations')
        self.location_ids = [
            loc['id'] for loc in data.get('locations', [])
            if loc.get('status', 'ACTIVE') == 'ACTIVE'
        ]
        if not self.location_ids:
            raise PosPlatformError("No active Square locations found")
        return self.location_ids

    async def fetch_orders(self, start: datetime, end: datetime) -> List[ExternalOrder]:
        """Completed orders created in the window, across all locations"""
        orders: List[ExternalOrder] = []
        async with self._client() as client:
            location_ids = await self._resolve_locations(client)
            cursor = None
            for page in range(self.max_pages):
                body: Dict[str, Any] = {
                    'location_ids': location_ids,
                    'limit': self.page_size,
                    'query': {
                        'filter': {
                            'state_filter': {'states': ['COMPLETED']},
                            'date_time_filter': {
                                'created_at': {'start_at': _iso(start), 'end_at': _iso(end)}
                            }
                        },
                        'sort': {'sort_field': 'CREATED_AT', 'sort_order': 'ASC'}
                    }
                }
                if cursor:
                    body['cursor'] = cursor
                data = await self._request(client, 'POST', '/v2/orders/search', json=body)
                orders.extend(self._parse_order(order) for order in data.get('orders', []))
                cursor = data.get('cursor')
                logger.debug(f"Orders page {page + 1}: {len(orders)} orders so far")
                if not cursor:
                    break
            else:
                logger.warning(f"Order search stopped after {self.max_pages} pages; window may be incomplete")

        logger.info(f"Fetched {len(orders)} completed orders from Square")
        return orders

    @staticmethod
    def _parse_order(order: Dict[str, Any]) -> ExternalOrder:
        lines = []
        for line in order.get('line_items', []):
            lines.append(ExternalOrderLine(
                name=(line.get('name') or 'Unknown Item').strip(),
                variation_name=(line.get('variation_name') or '').strip(),
                catalog_object_id=line.get('catalog_object_id'),
                quantity=to_decimal(line.get('quantity')),
                gross_cents=_money(line.get('total_money')) or 0,
                tax_cents=_money(line.get('total_tax_money')) or 0
            ))
        return ExternalOrder(
            order_id=order['id'],
            created_at=_parse_timestamp(order['created_at']),
            location_id=order.get('location_id'),
            state=order.get('state', 'COMPLETED'),
            line_items=lines
        )

    async def fetch_inventory_counts(self, catalog_object_ids: Sequence[str]) -> List[ExternalInventoryCount]:
        """IN_STOCK counts for the variations across all locations, requested in batches"""
        ids = list(dict.fromkeys(catalog_object_ids))
        if not ids:
            return []

        counts: List[ExternalInventoryCount] = []
        async with self._client() as client:
            location_ids = await self._resolve_locations(client)
            for offset in range(0, len(ids), self.inventory_batch_size):
                batch = ids[offset:offset + self.inventory_batch_size]
                cursor = None
                for _ in range(self.max_pages):
                    body: Dict[str, Any] = {
                        'catalog_object_ids': batch,
                        'location_ids': location_ids,
                        'states': ['IN_STOCK'],
                    }
                    if cursor:
                        body['cursor'] = cursor
                    data = await self._request(client, 'POST', '/v2/inventory/counts/batch-retrieve', json=body)
                    counts.extend(
                        self._parse_count(count) for count in data.get('counts', [])
                        if count.get('state', 'IN_STOCK') == 'IN_STOCK'
                    )
                    cursor = data.get('cursor')
                    if not cursor:
                        break
                else:
                    logger.warning(f"Inventory counts stopped after {self.max_pages} pages for one batch")

        logger.info(f"Fetched {len(counts)} inventory counts for {len(ids)} variations from Square")
        return counts

    @staticmethod
    def _parse_count(count: Dict[str, Any]) -> ExternalInventoryCount:
        calculated_at = count.get('calculated_at')
        return ExternalInventoryCount(
            catalog_object_id=count['catalog_object_id'],
            location_id=count['location_id'],
            quantity=to_decimal(count.get('quantity')),
            calculated_at=_parse_timestamp(calculated_at) if calculated_at else None
        )
