"""
Shared fixtures for invoex tests
"""

import json

import pytest

from invoex.db.connection import Database
from invoex.models.invoice import ExtractionConfig
from invoex.services.catalog_gateway import SqlCatalogGateway
from invoex.utils.retry import RetryConfig

PNG_BYTES = b'\x89PNG\r\n\x1a\n' + b'\x00' * 64
JPEG_BYTES = b'\xff\xd8\xff\xe0' + b'\x00' * 64


@pytest.fixture
def db(tmp_path):
    database = Database({'type': 'sqlite', 'path': str(tmp_path / 'invoex-test.db')})
    database.create_tables()
    yield database
    database.dispose()


@pytest.fixture
def gateway(db):
    return SqlCatalogGateway(db, RetryConfig(max_attempts=5, base_delay=0.01, max_delay=0.05))


@pytest.fixture
def extraction_config():
    return ExtractionConfig()


@pytest.fixture
def png_page():
    return PNG_BYTES


def line_item(description, quantity=1, unit_cost='10.00', price_ex=None, has_gst=True, category='Groceries'):
    """Wire-format line item as the vision model returns it"""
    price_ex = price_ex if price_ex is not None else str(round(float(unit_cost) * quantity, 2))
    return {
        'itemDescription': description,
        'quantity': quantity,
        'unitCostExGst': unit_cost,
        'priceExGst': price_ex,
        'hasGst': has_gst,
        'category': category,
    }


def debugging_block(item_count, totals=None, claimed_count=None):
    claimed = item_count if claimed_count is None else claimed_count
    block = {
        'tableStructure': {
            'columnHeaders': ['Qty', 'Description', 'GST', 'Price'],
            'columnCount': 4,
            'rowCount': claimed,
            'qtyColumnIndex': 0,
            'descriptionColumnIndex': 1,
            'gstColumnIndex': 2,
            'priceColumnIndex': 3,
        },
        'sampleRowAnalysis': {
            'rowNumber': 1,
            'qtyValue': '1',
            'descriptionValue': 'first row',
            'gstValue': 'GST',
            'priceValue': '10.00',
            'extractedQuantity': 1,
            'gstDetected': True,
        },
        'invoiceTotals': {'totalsFound': False},
        'validationSummary': {
            'totalLineItemsFound': claimed,
            'extractedLineItems': item_count,
            'totalsMatch': True,
            'warnings': [],
        },
    }
    if totals is not None:
        block['invoiceTotals'] = {
            'subtotalExGst': totals[0],
            'gstAmount': totals[1],
            'totalIncGst': totals[2],
            'totalsFound': True,
        }
    return block


def vision_reply(items, debugging=True, vendor='Wholefoods Direct', invoice_number='INV-1001',
                 invoice_date='2024-03-05', confidence=0.95, totals=None, claimed_count=None):
    """A model reply with a fenced JSON block"""
    payload = {
        'vendor': {'name': vendor, 'confidence': 0.9},
        'invoiceNumber': invoice_number,
        'invoiceDate': invoice_date,
        'lineItems': items,
        'confidence': confidence,
    }
    if debugging:
        payload['debugging'] = debugging_block(len(items), totals, claimed_count)
    return f"Here is the extraction.\n```json\n{json.dumps(payload)}\n```\n"
