"""
Tests for invoice line item validation
"""

from decimal import Decimal

from invoex.models.invoice import (
    ExtractedLineItem,
    ExtractionConfig,
    ExtractionDebugInfo,
    PageExtraction,
    parse_invoice_date,
)

CONTEXT = ExtractionConfig().validation_context()


def make_item(**fields):
    return ExtractedLineItem.model_validate(fields, context=CONTEXT)


class TestExtractedLineItem:
    """Amount reconciliation on validation"""

    def test_consistent_item_is_untouched(self):
        """Test a consistent item keeps its values"""
        item = make_item(itemDescription='Organic Oats 1kg', quantity=2, unitCostExGst='4.50',
                         priceExGst='9.00', hasGst=True)
        assert item.price_inc_gst == Decimal('9.90')
        assert item.tax_amount == Decimal('0.90')
        assert item.validation_flags == []
        assert item.validation_confidence == 1.0

    def test_gst_free_inc_equals_ex(self):
        """Test GST-free items have equal inc and ex prices"""
        item = make_item(itemDescription='Bananas', quantity=3, unitCostExGst='1.00', hasGst=False)
        assert item.price_ex_gst == Decimal('3.00')
        assert item.price_inc_gst == Decimal('3.00')
        assert item.tax_amount == Decimal('0')

    def test_unit_cost_recalculated_from_line_total(self):
        """Test unit cost is recomputed from the line total"""
        item = make_item(itemDescription='Tahini 500g', quantity=2, unitCostExGst='7.00',
                         priceExGst='12.00', hasGst=True)
        assert item.unit_cost_ex_gst == Decimal('6.0000')
        assert 'unit cost recalculated from line total' in item.validation_flags
        assert item.validation_confidence == 0.85

    def test_inconsistent_gst_amount_is_flagged_and_fixed(self):
        """Test an inconsistent GST amount is corrected"""
        item = make_item(itemDescription='Kombucha', quantity=1, unitCostExGst='5.00',
                         priceExGst='5.00', hasGst=False, priceIncGst='5.50')
        assert item.price_inc_gst == Decimal('5.00')
        assert 'gst amount inconsistent with gst flag' in item.validation_flags

    def test_pack_quantity_ambiguity(self):
        """Test pack-size ambiguity is flagged"""
        item = make_item(itemDescription='Coconut Water 12pk', quantity=12, unitCostExGst='2.00', hasGst=False)
        assert 'pack-quantity ambiguous' in item.validation_flags
        # quantity is never rewritten from the description
        assert item.quantity == 12

    def test_category_defaults(self):
        """Test missing category uses the default"""
        item = make_item(itemDescription='Rice Crackers', quantity=1, unitCostExGst='2.50')
        assert item.category == 'Groceries'

    def test_gst_flag_strings(self):
        """Test GST flags given as strings"""
        assert make_item(itemDescription='A', quantity=1, unitCostExGst='1', hasGst='GST').has_gst is True
        assert make_item(itemDescription='B', quantity=1, unitCostExGst='1', hasGst='').has_gst is False


class TestPageModels:

    def test_empty_page(self):
        """Test an empty page result"""
        page = PageExtraction.empty(2, 'vision', 'No line items found on this page')
        assert page.is_empty
        assert page.confidence == 0.0
        assert page.warnings == ['No line items found on this page']

    def test_debug_block_tolerates_garbage(self):
        """Test the debugging block tolerates malformed values"""
        info = ExtractionDebugInfo.model_validate({
            'tableStructure': 'not a dict',
            'validationSummary': {'totalLineItemsFound': '12', 'extractedLineItems': 'x', 'warnings': 'one'},
        })
        assert info.table_structure.column_count == 0
        assert info.validation_summary.total_line_items_found == 12
        assert info.validation_summary.extracted_line_items == 0
        assert info.validation_summary.warnings == ['one']

    def test_parse_invoice_date(self):
        """Test invoice date parsing on the model"""
        assert str(parse_invoice_date('2024-03-05')) == '2024-03-05'
        assert parse_invoice_date('5th of March') is None
        assert parse_invoice_date(None) is None
