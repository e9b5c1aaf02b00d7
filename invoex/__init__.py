"""
invoex - Invoice Extraction and Catalog Reconciliation

Reads supplier invoice images into validated line items, links product
names to a product catalog and keeps that catalog in step with a
point-of-sale platform.

Basic usage:
    from invoex.config import InvoexConfig
    from invoex.context import ServiceContext

    services = ServiceContext.from_config(InvoexConfig())

    # Parse, save and reconcile an invoice
    result = await services.invoice_service.process_invoice([page1, page2])
    print(result.invoice.requires_review, result.decisions)

    # Pull catalog and sales from the POS platform
    report = await services.sync_workflow.run()
"""

__version__ = '1.0.0'
