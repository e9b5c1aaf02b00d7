"""
invoex data models
"""

from .invoice import (
    ExtractionConfig,
    ExtractedInvoice,
    ExtractedLineItem,
    ExtractionDebugInfo,
    InvoiceDebugging,
    PageExtraction,
    Vendor,
)
from .catalog import (
    CatalogCandidate,
    CatalogItemRecord,
    CreateNew,
    LinkDecision,
    LinkOrigin,
    MatchedCatalog,
    MatchResult,
    ProductLinkRecord,
    SalesAggregate,
    Unresolved,
    UseExistingLink,
)
from .sync import PhaseCounters, SyncRunReport, SyncStatus

__all__ = [
    'ExtractionConfig',
    'ExtractedInvoice',
    'ExtractedLineItem',
    'ExtractionDebugInfo',
    'InvoiceDebugging',
    'PageExtraction',
    'Vendor',
    'CatalogCandidate',
    'CatalogItemRecord',
    'CreateNew',
    'LinkDecision',
    'LinkOrigin',
    'MatchedCatalog',
    'MatchResult',
    'ProductLinkRecord',
    'SalesAggregate',
    'Unresolved',
    'UseExistingLink',
    'PhaseCounters',
    'SyncRunReport',
    'SyncStatus',
]
