"""
Invoice processing service

Parse an invoice's page images, persist the result, then reconcile every
distinct product name on it against the catalog.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

from invoex.models.catalog import LinkDecision, decision_to_dict
from invoex.models.invoice import ExtractedInvoice
from invoex.processors.invoice.pipeline import InvoiceParser
from invoex.services.catalog_gateway import CatalogGateway

if TYPE_CHECKING:
    from invoex.matching.reconciler import ReconciliationEngine

logger = logging.getLogger(__name__)


@dataclass
class ProcessedInvoice:
    invoice: ExtractedInvoice
    invoice_id: Optional[str] = None
    decisions: Dict[str, LinkDecision] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'invoiceId': self.invoice_id,
            'invoice': self.invoice.model_dump(mode='json', by_alias=True),
            'links': {name: decision_to_dict(d) for name, d in self.decisions.items()},
        }


class InvoiceService:
    """
    Usage:
        service = InvoiceService(parser, gateway, reconciler)
        result = await service.process_invoice([page1, page2])
    """

    def __init__(
        self,
        parser: InvoiceParser,
        gateway: Optional[CatalogGateway] = None,
        reconciler: Optional['ReconciliationEngine'] = None
    ):
        self.parser = parser
        self.gateway = gateway
        self.reconciler = reconciler

    async def process_invoice(self, pages: Sequence[bytes], save: bool = True, reconcile: bool = True) -> ProcessedInvoice:
        """
        Raises:
            InvoiceExtractionError: no page could be extracted by any strategy
        """
        invoice = await self.parser.parse(pages)
        result = ProcessedInvoice(invoice=invoice)

        if save and self.gateway is not None:
            result.invoice_id = await self.gateway.save_invoice(invoice)

        if reconcile and self.reconciler is not None:
            first_items = {}
            for item in invoice.line_items:
                first_items.setdefault(item.description.strip(), item)
            result.decisions = await self.reconciler.resolve_many(invoice.product_names(), first_items)
            logger.info(f"Reconciled {len(result.decisions)} product name(s)")

        return result
