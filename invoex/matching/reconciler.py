"""
Reconciliation Engine

Maps free-text product names to catalog items:

1. an active link for the normalized name short-circuits everything
2. otherwise the best catalog candidate at or above the auto-link threshold
   gets an automatic link, and historical line items are back-filled
3. otherwise a catalog item is created from the name with a full-confidence
   automatic-create link

Manual links always win and replace the active link atomically. Racing
writers for the same name are settled by the store's one-active-link
constraint; the loser re-reads and reports the winner's link.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from invoex.exceptions import LinkConflictError
from invoex.matching.similarity import best_match, normalize_name, rank_matches
from invoex.models.catalog import (
    CreateNew,
    LinkDecision,
    LinkOrigin,
    LinkSuggestion,
    MatchedCatalog,
    PricingConfig,
    ProductLinkRecord,
    ReconciliationConfig,
    Unresolved,
    UseExistingLink,
)
from invoex.models.invoice import DEFAULT_CATEGORY, ExtractedLineItem
from invoex.services.catalog_gateway import CatalogGateway
from invoex.utils.pricing import calculate_sell_price, markup_for_category, validate_pricing

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """
    Usage:
        engine = ReconciliationEngine(gateway, ReconciliationConfig())
        decision = await engine.resolve("Organik Spelt Flour 1kg")
    """

    def __init__(
        self,
        gateway: CatalogGateway,
        config: Optional[ReconciliationConfig] = None,
        pricing: Optional[PricingConfig] = None,
        default_category: str = DEFAULT_CATEGORY
    ):
        self.gateway = gateway
        self.config = config or ReconciliationConfig()
        self.pricing = pricing or PricingConfig()
        self.default_category = default_category

    async def resolve(
        self,
        product_name: str,
        line_item: Optional[ExtractedLineItem] = None,
        allow_create: Optional[bool] = None
    ) -> LinkDecision:
        """
        Decide which catalog item ``product_name`` refers to

        Args:
            product_name: Raw name from an invoice or vendor feed
            line_item: Optional source row; seeds category and prices of a created item
            allow_create: Override the configured auto-create behaviour
        """
        name = (product_name or '').strip()
        if not normalize_name(name):
            return Unresolved(reason='Empty product name')

        existing = await self.gateway.get_active_link(name)
        if existing is not None:
            logger.debug(f"'{name}' already linked to {existing.catalog_item_id}")
            return UseExistingLink(existing.catalog_item_id, existing.id)

        candidates = await self.gateway.list_candidates(name)
        match = best_match(name, candidates, self.config.auto_link_threshold)
        if match is not None:
            try:
                link = await self.gateway.activate_link(name, match.id, match.score, LinkOrigin.AUTOMATIC)
            except LinkConflictError as e:
                return await self._winner_after_conflict(name, e)
            updated = await self.gateway.backfill_line_items(name, match.id)
            logger.info(
                f"Linked '{name}' to '{match.name}' ({match.score:.3f}); "
                f"back-filled {updated} line item(s)"
            )
            return MatchedCatalog(match.id, match.score, link.id)

        create = self.config.auto_create if allow_create is None else allow_create
        if not create:
            nearest = best_match(name, candidates, 0.0)
            logger.info(f"No catalog match for '{name}'; left unresolved")
            return Unresolved(
                reason=f"No catalog item scored at least {self.config.auto_link_threshold}",
                best_candidate_id=nearest.id if nearest else None,
                best_score=nearest.score if nearest else None
            )

        try:
            item, link = await self.gateway.create_item_with_link(
                self._new_item_fields(name, line_item), name, 1.0, LinkOrigin.AUTOMATIC_CREATE
            )
        except LinkConflictError as e:
            return await self._winner_after_conflict(name, e)
        updated = await self.gateway.backfill_line_items(name, item.id)
        logger.info(f"Created catalog item '{name}' ({item.id}); back-filled {updated} line item(s)")
        return CreateNew(item.id, link.id)

    async def _winner_after_conflict(self, name: str, error: LinkConflictError) -> LinkDecision:
        winner = await self.gateway.get_active_link(name)
        if winner is not None:
            logger.info(f"Concurrent resolution of '{name}'; using link {winner.id}")
            return UseExistingLink(winner.catalog_item_id, winner.id)
        logger.warning(f"Link conflict for '{name}' with no active link afterwards: {error}")
        return Unresolved(reason=f"Link conflict: {error}")

    def _new_item_fields(self, name: str, line_item: Optional[ExtractedLineItem]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {'name': name, 'category': self.default_category}
        if line_item is None:
            return fields

        fields['category'] = line_item.category or self.default_category
        fields['has_gst'] = line_item.has_gst
        if line_item.unit_cost_ex_gst > 0:
            markup = markup_for_category(
                fields['category'], self.pricing.category_markups, self.pricing.default_markup
            )
            prices = calculate_sell_price(
                line_item.unit_cost_ex_gst, markup, has_gst=line_item.has_gst, tax_rate=self.pricing.tax_rate
            )
            fields['cost_ex_gst'] = line_item.unit_cost_ex_gst
            issues = validate_pricing(line_item.unit_cost_ex_gst, prices['sell_ex_gst'])
            if issues:
                logger.warning(f"Not pricing '{name}' from its invoice line: {'; '.join(issues)}")
            else:
                fields['sell_ex_gst'] = prices['sell_ex_gst']
                fields['sell_inc_gst'] = prices['sell_inc_gst']
        return fields

    async def resolve_many(
        self,
        names: Iterable[str],
        line_items: Optional[Dict[str, ExtractedLineItem]] = None,
        allow_create: Optional[bool] = None
    ) -> Dict[str, LinkDecision]:
        """Resolve each name independently; one failure never stops the rest"""
        decisions: Dict[str, LinkDecision] = {}
        line_items = line_items or {}
        for name in names:
            try:
                decisions[name] = await self.resolve(name, line_items.get(name), allow_create)
            except Exception as e:
                logger.error(f"Failed to resolve '{name}': {e}")
                decisions[name] = Unresolved(reason=f"Error: {e}")
        return decisions

    async def link_manual(
        self,
        product_name: str,
        catalog_item_id: str,
        linked_by: Optional[str] = None
    ) -> ProductLinkRecord:
        """
        Operator override: point the name at ``catalog_item_id``

        The previous link is deactivated in the same transaction, and all
        historical line items with this name are re-pointed.

        Raises:
            CatalogItemNotFoundError: the catalog item does not exist
        """
        name = product_name.strip()
        if not normalize_name(name):
            raise ValueError("Product name is required")
        try:
            link = await self.gateway.activate_link(
                name, catalog_item_id, 1.0, LinkOrigin.MANUAL, replace_existing=True, linked_by=linked_by
            )
        except LinkConflictError:
            # a concurrent writer committed between our read and insert
            link = await self.gateway.activate_link(
                name, catalog_item_id, 1.0, LinkOrigin.MANUAL, replace_existing=True, linked_by=linked_by
            )
        updated = await self.gateway.backfill_line_items(name, catalog_item_id, replace_existing=True)
        logger.info(f"Manually linked '{name}' to {catalog_item_id}; re-pointed {updated} line item(s)")
        return link

    async def unlink(self, product_name: str) -> Optional[ProductLinkRecord]:
        """Deactivate the active link and detach its historical line items"""
        link = await self.gateway.deactivate_link(product_name)
        if link is None:
            return None
        detached = await self.gateway.detach_line_items(product_name, link.catalog_item_id)
        logger.info(f"Unlinked '{product_name}' from {link.catalog_item_id}; detached {detached} line item(s)")
        return link

    async def suggest(self, product_name: str) -> List[LinkSuggestion]:
        """Ranked catalog suggestions for an operator choosing a manual link"""
        candidates = await self.gateway.list_candidates(product_name)
        ranked = rank_matches(
            product_name,
            candidates,
            threshold=self.config.suggestion_threshold,
            limit=self.config.suggestion_limit
        )
        return [
            LinkSuggestion(
                catalog_item_id=match.id,
                name=match.name,
                confidence=round(match.score, 4),
                is_exact_match=match.score >= self.config.exact_match_threshold
            )
            for match in ranked
        ]
