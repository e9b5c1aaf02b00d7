"""
Catalog, Link and POS Data Models

Records passed across the Catalog Gateway boundary, the reconciliation
decision variants, and the snapshots pulled from the POS platform.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, NamedTuple, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from invoex.utils.pricing import DEFAULT_CATEGORY_MARKUPS, DEFAULT_MARKUP, DEFAULT_TAX_RATE


class LinkOrigin(str, Enum):
    """How a product link came to exist"""
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    AUTOMATIC_CREATE = "automatic-create"


class CatalogCandidate(NamedTuple):
    id: str
    name: str


class MatchResult(NamedTuple):
    id: str
    name: str
    score: float


# Reconciliation decisions

@dataclass(frozen=True)
class UseExistingLink:
    """An active link already exists; nothing was decided"""
    catalog_item_id: str
    link_id: str
    kind: ClassVar[str] = 'use_existing_link'


@dataclass(frozen=True)
class MatchedCatalog:
    """Linked to an existing catalog item by similarity"""
    catalog_item_id: str
    confidence: float
    link_id: str
    kind: ClassVar[str] = 'matched_catalog'


@dataclass(frozen=True)
class CreateNew:
    """No candidate cleared the threshold; a catalog item was created"""
    catalog_item_id: str
    link_id: str
    confidence: float = 1.0
    kind: ClassVar[str] = 'create_new'


@dataclass(frozen=True)
class Unresolved:
    """Nothing was linked; kept for later audit"""
    reason: str
    best_candidate_id: Optional[str] = None
    best_score: Optional[float] = None
    kind: ClassVar[str] = 'unresolved'


LinkDecision = Union[UseExistingLink, MatchedCatalog, CreateNew, Unresolved]


def decision_to_dict(decision: LinkDecision) -> Dict[str, Any]:
    data = {'decision': decision.kind}
    data.update(decision.__dict__)
    return data


@dataclass(frozen=True)
class LinkSuggestion:
    catalog_item_id: str
    name: str
    confidence: float
    is_exact_match: bool


class CatalogItemRecord(BaseModel):
    """A catalog item as seen through the gateway"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    external_id: Optional[str] = None
    variation_external_id: Optional[str] = None
    category: Optional[str] = None
    cost_ex_gst: Optional[Decimal] = None
    sell_ex_gst: Optional[Decimal] = None
    sell_inc_gst: Optional[Decimal] = None
    has_gst: Optional[bool] = None
    is_active: bool = True


class ProductLinkRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    product_name: str
    normalized_name: str
    catalog_item_id: str
    confidence: float
    origin: LinkOrigin
    is_active: bool
    linked_by: Optional[str] = None
    created_at: Optional[datetime] = None


class SalesAggregate(BaseModel):
    """Sales for one item variation on one day; keyed by (sale_date, item_name, variation_name)"""
    sale_date: date
    item_name: str
    variation_name: str = ''
    quantity: Decimal = Decimal('0')
    gross_cents: int = 0
    tax_cents: int = 0
    net_cents: int = 0
    order_count: int = 0
    category: Optional[str] = None
    catalog_external_id: Optional[str] = None

    @property
    def key(self):
        return (self.sale_date, self.item_name, self.variation_name)


# POS platform snapshots

class ExternalVariation(BaseModel):
    external_id: str
    name: str = ''
    price_cents: Optional[int] = None
    cost_cents: Optional[int] = None
    sku: Optional[str] = None


class ExternalCatalogItem(BaseModel):
    external_id: str
    name: str
    category: Optional[str] = None
    is_taxable: bool = True
    variations: List[ExternalVariation] = Field(default_factory=list)

    @field_validator('name', mode='before')
    @classmethod
    def strip_name(cls, v: Any) -> str:
        return (v or '').strip()

    @property
    def primary_variation(self) -> Optional[ExternalVariation]:
        return self.variations[0] if self.variations else None


class ExternalOrderLine(BaseModel):
    name: str
    variation_name: str = ''
    catalog_object_id: Optional[str] = None
    quantity: Decimal = Decimal('0')
    gross_cents: int = 0
    tax_cents: int = 0


class ExternalOrder(BaseModel):
    order_id: str
    created_at: datetime
    location_id: Optional[str] = None
    state: str = 'COMPLETED'
    line_items: List[ExternalOrderLine] = Field(default_factory=list)


class ExternalInventoryCount(BaseModel):
    """In-stock quantity of one variation at one location"""
    catalog_object_id: str
    location_id: str
    quantity: Decimal = Decimal('0')
    calculated_at: Optional[datetime] = None


class InventoryLevelRecord(BaseModel):
    """On-hand quantity of a catalog item at a location; keyed by (catalog_item_id, location_id)"""
    model_config = ConfigDict(from_attributes=True)

    catalog_item_id: str
    location_id: str
    quantity: Decimal = Decimal('0')
    counted_at: Optional[datetime] = None

    @property
    def key(self):
        return (self.catalog_item_id, self.location_id)


# Configuration sections

class ReconciliationConfig(BaseModel):
    auto_link_threshold: float = Field(default=0.8, ge=0, le=1)
    suggestion_threshold: float = Field(default=0.3, ge=0, le=1)
    suggestion_limit: int = Field(default=10, ge=1)
    exact_match_threshold: float = Field(default=0.95, ge=0, le=1)
    auto_create: bool = True


class PricingConfig(BaseModel):
    tax_rate: Decimal = DEFAULT_TAX_RATE
    default_markup: Decimal = DEFAULT_MARKUP
    category_markups: Dict[str, Decimal] = Field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_MARKUPS)
    )


class SyncConfig(BaseModel):
    weeks_back: int = Field(default=6, ge=0)
    max_order_pages: int = Field(default=100, ge=1)
    order_page_size: int = Field(default=500, ge=1, le=1000)
    inventory_batch_size: int = Field(default=100, ge=1, le=1000)
    sync_inventory: bool = True
    link_pending_names: bool = True
