from .connection import Base, Database
from .models import CatalogItem, DailySales, Invoice, InvoiceLineItem, ProductLink, SyncRun

__all__ = [
    'Base',
    'Database',
    'CatalogItem',
    'DailySales',
    'Invoice',
    'InvoiceLineItem',
    'ProductLink',
    'SyncRun',
]
