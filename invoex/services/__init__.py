from .catalog_gateway import CatalogGateway, SqlCatalogGateway
from .invoice_service import InvoiceService, ProcessedInvoice
from .sync_service import SyncWorkflow, aggregate_orders, whole_day_window

__all__ = [
    'CatalogGateway',
    'InvoiceService',
    'ProcessedInvoice',
    'SqlCatalogGateway',
    'SyncWorkflow',
    'aggregate_orders',
    'whole_day_window',
]
