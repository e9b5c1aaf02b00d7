"""
Point-of-sale platform contract

Read-only: the core pulls catalog, order and inventory snapshots and never
pushes changes back to the platform.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Sequence

from invoex.models.catalog import ExternalCatalogItem, ExternalInventoryCount, ExternalOrder


class PosPlatform(ABC):

    @abstractmethod
    async def fetch_catalog(self) -> List[ExternalCatalogItem]:
        """Every catalog item with its variations, prices and costs"""
        pass

    @abstractmethod
    async def fetch_orders(self, start: datetime, end: datetime) -> List[ExternalOrder]:
        """Completed orders created in ``[start, end)``"""
        pass

    @abstractmethod
    async def fetch_inventory_counts(self, catalog_object_ids: Sequence[str]) -> List[ExternalInventoryCount]:
        """In-stock counts for the given variation ids, one per (variation, location)"""
        pass
