"""
Heuristic Extractor

Deterministic fallback: OCR the page, then parse item rows with regular
expressions. It has no self-validation signal, so every page it produces
carries the fixed heuristic confidence and forces review.
"""

import logging
import re
from datetime import date
from decimal import Decimal
from typing import List, Optional, Tuple

from invoex.models.invoice import ExtractedLineItem, ExtractionConfig, PageExtraction, Vendor
from invoex.processors.base import ExtractionOutcome, PageExtractor
from invoex.processors.ocr import OCREngine
from invoex.utils.pricing import round_to_cents, to_decimal

logger = logging.getLogger(__name__)

MONEY = r'\$?\s?(-?\d{1,3}(?:,\d{3})+\.\d{2}|-?\d+\.\d{2,4})'
QTY = r'(\d+(?:\.\d{1,3})?)'
GST_MARK = r'(?:\s+(GST|FRE|G|F|\*))?'

# (name, regex, field order)
LINE_PATTERNS = [
    # 2  ORG-SPF1  Organic Spelt Flour 1kg  4.50  9.00  GST
    ('qty_first', re.compile(rf'^{QTY}\s+(.+?)\s+{MONEY}\s+{MONEY}{GST_MARK}\s*$', re.IGNORECASE),
     ('qty', 'desc', 'unit', 'total', 'mark')),
    # Organic Spelt Flour 1kg  2  4.50  0.90  9.90
    ('desc_qty_unit_gst_total', re.compile(rf'^(.+?)\s+{QTY}\s+{MONEY}\s+{MONEY}\s+{MONEY}\s*$'),
     ('desc', 'qty', 'unit', 'gst', 'total')),
    # Organic Spelt Flour 1kg  2  4.50  9.00  GST
    ('desc_qty_unit_total', re.compile(rf'^(.+?)\s+{QTY}\s+{MONEY}\s+{MONEY}{GST_MARK}\s*$', re.IGNORECASE),
     ('desc', 'qty', 'unit', 'total', 'mark')),
]

SKIP_WORDS = re.compile(
    r'\b(sub\s*-?total|total|gst\s+amount|tax\s+amount|freight|delivery|balance|amount\s+due|'
    r'payment|remittance|bsb|abn|account|page\s+\d)\b',
    re.IGNORECASE
)

INVOICE_NUMBER_PATTERNS = [
    re.compile(r'invoice\s*(?:no\.?|number|num|#)\s*[:#.]?\s*([A-Z0-9][A-Z0-9\-/]{1,30})', re.IGNORECASE),
    re.compile(r'\binv(?:oice)?\s*[:#]\s*([A-Z0-9][A-Z0-9\-/]{1,30})', re.IGNORECASE),
    re.compile(r'tax\s+invoice\s+([A-Z]*\d[A-Z0-9\-/]{1,30})', re.IGNORECASE),
]

MONTHS = {
    'jan': 1, 'feb': 2, 'mar': 3, 'apr': 4, 'may': 5, 'jun': 6,
    'jul': 7, 'aug': 8, 'sep': 9, 'oct': 10, 'nov': 11, 'dec': 12,
}
ISO_DATE = re.compile(r'\b(\d{4})-(\d{1,2})-(\d{1,2})\b')
# Australian invoices are day-first
NUMERIC_DATE = re.compile(r'\b(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{2,4})\b')
TEXT_DATE = re.compile(r'\b(\d{1,2})(?:st|nd|rd|th)?\s+([A-Za-z]{3,9})\.?,?\s+(\d{4})\b')
DATE_LABEL = re.compile(r'\b(?:invoice\s+)?date\b', re.IGNORECASE)

VENDOR_SKIP = re.compile(
    r'(tax\s+invoice|^invoice\b|\babn\b|phone|\bph\b|fax|email|@|www\.|http|date|page|'
    r'bill\s+to|ship\s+to|deliver\s+to|po\s+box|customer|account)',
    re.IGNORECASE
)


def parse_date(text: str) -> Optional[date]:
    """First recognisable date in ``text`` (day-first for numeric dates)"""
    candidates: List[Tuple[int, date]] = []

    for match in ISO_DATE.finditer(text):
        year, month, day = (int(g) for g in match.groups())
        parsed = _safe_date(year, month, day)
        if parsed:
            candidates.append((match.start(), parsed))

    for match in NUMERIC_DATE.finditer(text):
        day, month, year = (int(g) for g in match.groups())
        if year < 100:
            year += 2000
        parsed = _safe_date(year, month, day)
        if parsed:
            candidates.append((match.start(), parsed))

    for match in TEXT_DATE.finditer(text):
        month = MONTHS.get(match.group(2)[:3].lower())
        if month:
            parsed = _safe_date(int(match.group(3)), month, int(match.group(1)))
            if parsed:
                candidates.append((match.start(), parsed))

    if not candidates:
        return None
    return min(candidates, key=lambda c: c[0])[1]


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


class HeuristicExtractor(PageExtractor):
    """
    OCR plus regex line parsing

    Usage:
        extractor = HeuristicExtractor(TesseractOCREngine(), ExtractionConfig())
        outcome = await extractor.try_extract(png_bytes, page_number=2)
    """

    strategy = 'heuristic'

    def __init__(self, ocr_engine: OCREngine, config: Optional[ExtractionConfig] = None):
        self.ocr_engine = ocr_engine
        self.config = config or ExtractionConfig()

    async def extract_page(self, image: bytes, page_number: int) -> PageExtraction:
        result = await self.ocr_engine.recognize(image)
        page = self.parse_text(result.text, page_number)
        if result.issues:
            page.warnings.append(f"OCR quality issues: {', '.join(result.issues)}")
        return page

    async def try_extract(self, image: bytes, page_number: int) -> ExtractionOutcome:
        try:
            page = await self.extract_page(image, page_number)
        except Exception as e:
            logger.error(f"Page {page_number}: heuristic extraction failed: {e}")
            return ExtractionOutcome.failed(f"Heuristic extraction failed: {e}")
        return ExtractionOutcome.ok(page)

    def parse_text(self, text: str, page_number: int) -> PageExtraction:
        lines = [re.sub(r'\s{2,}', '  ', line.strip()) for line in (text or '').splitlines()]
        lines = [line for line in lines if line]

        items = []
        for line in lines:
            item = self.parse_line(line)
            if item is not None:
                items.append(item)

        page = PageExtraction(
            page_number=page_number,
            strategy=self.strategy,
            line_items=items,
            confidence=self.config.heuristic_confidence,
            warnings=['Extracted by OCR heuristics; requires review']
        )
        if page_number == 1:
            page.vendor = self.parse_vendor(lines)
            page.invoice_number = self.parse_invoice_number(text or '')
            page.invoice_date = self.parse_invoice_date(lines)

        logger.info(f"Page {page_number}: {len(items)} items via OCR heuristics from {len(lines)} lines")
        return page

    def parse_line(self, line: str) -> Optional[ExtractedLineItem]:
        """One item row, or None for anything that is not an item row"""
        if '|' in line:
            line = '  '.join(cell.strip() for cell in line.split('|') if cell.strip())
        if SKIP_WORDS.search(line):
            return None

        for name, pattern, fields in LINE_PATTERNS:
            match = pattern.match(line)
            if not match:
                continue
            values = dict(zip(fields, match.groups()))
            item = self._build_item(values)
            if item is not None:
                logger.debug(f"Parsed line with {name}: {line}")
                return item
        return None

    def _build_item(self, values) -> Optional[ExtractedLineItem]:
        description = re.sub(r'\s+', ' ', values['desc']).strip(' -:')
        if len(description) < 3 or not re.search(r'[A-Za-z]{2,}', description):
            return None

        quantity = to_decimal(values['qty'])
        unit = to_decimal(values['unit'])
        total = to_decimal(values['total'])
        if quantity <= 0 or total <= 0:
            return None

        tax_rate = self.config.tax_rate
        expected = quantity * unit
        gst_amount = to_decimal(values.get('gst'))
        mark = (values.get('mark') or '').upper()

        if 'gst' in values:
            has_gst = gst_amount > 0
            price_ex = total - gst_amount if has_gst and abs(total - gst_amount - expected) <= Decimal('0.05') else total
        else:
            has_gst = mark in ('GST', 'G', '*')
            price_ex = total
            if has_gst and abs(total - expected * (1 + tax_rate)) <= Decimal('0.05'):
                # line total printed inc GST
                price_ex = round_to_cents(expected)

        if price_ex <= 0:
            return None

        # qty x unit must agree with the line total within 10%
        if expected > 0 and abs(expected - price_ex) / price_ex > Decimal('0.10'):
            return None

        return ExtractedLineItem.model_validate(
            {
                'itemDescription': description,
                'quantity': quantity,
                'unitCostExGst': unit,
                'priceExGst': price_ex,
                'hasGst': has_gst,
                'category': self.config.default_category,
                'validationConfidence': self.config.heuristic_confidence,
            },
            context=self.config.validation_context()
        )

    @staticmethod
    def parse_vendor(lines: List[str]) -> Vendor:
        for line in lines[:8]:
            if VENDOR_SKIP.search(line):
                continue
            if len(line) < 3 or not re.search(r'[A-Za-z]{3,}', line):
                continue
            if re.search(MONEY, line):
                continue
            return Vendor(name=line.strip(), confidence=0.4)
        return Vendor(name='Unknown Vendor', confidence=0.1)

    @staticmethod
    def parse_invoice_number(text: str) -> str:
        for pattern in INVOICE_NUMBER_PATTERNS:
            match = pattern.search(text)
            if match:
                return match.group(1).strip()
        return ''

    @staticmethod
    def parse_invoice_date(lines: List[str]) -> Optional[date]:
        for line in lines:
            if DATE_LABEL.search(line):
                parsed = parse_date(line)
                if parsed:
                    return parsed
        return parse_date('\n'.join(lines[:30]))
