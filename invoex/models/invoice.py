"""
Invoice Extraction Data Models

Pydantic models for what the extractors produce. Field names are snake_case
in Python and camelCase on the wire, matching the JSON the vision model is
asked to return.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from invoex.utils.pricing import (
    CENT,
    DEFAULT_TAX_RATE,
    detect_pack_size,
    round_to_cents,
    to_decimal,
)

DEFAULT_CATEGORY = 'Groceries'

# Each corrective normalization costs an item this much confidence.
CORRECTION_PENALTY = 0.15

_TRUE_STRINGS = {'true', 'yes', 'y', '1', 'gst', 'x', '*', 'taxable'}


class ExtractionConfig(BaseModel):
    """Configuration for invoice extraction and review routing"""
    min_viable_items: int = Field(default=3, ge=1)
    review_confidence_threshold: float = Field(default=0.8, ge=0, le=1)
    item_confidence_threshold: float = Field(default=0.7, ge=0, le=1)
    heuristic_confidence: float = Field(default=0.5, ge=0, le=1)
    tax_rate: Decimal = Field(default=DEFAULT_TAX_RATE, ge=0)
    default_category: str = DEFAULT_CATEGORY
    vision_timeout_seconds: float = Field(default=60.0, gt=0)
    rounding_tolerance: Decimal = Decimal('0.01')
    totals_warning_tolerance: Decimal = Decimal('5.00')

    def validation_context(self) -> Dict[str, Any]:
        """Context handed to line item validation"""
        return {
            'tax_rate': self.tax_rate,
            'rounding_tolerance': self.rounding_tolerance,
            'default_category': self.default_category,
        }


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra='ignore'
    )


def _to_int(v: Any) -> int:
    try:
        return int(to_decimal(v))
    except (ValueError, ArithmeticError):
        return 0


def _to_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return v != 0
    if isinstance(v, str):
        return v.strip().lower() in _TRUE_STRINGS
    return False


class TableStructure(_WireModel):
    """Column layout the model claims to have read"""
    column_headers: List[str] = Field(default_factory=list)
    column_count: int = 0
    row_count: int = 0
    qty_column_index: int = -1
    description_column_index: int = -1
    gst_column_index: int = -1
    price_column_index: int = -1

    @field_validator(
        'column_count', 'row_count', 'qty_column_index', 'description_column_index',
        'gst_column_index', 'price_column_index', mode='before'
    )
    @classmethod
    def parse_int(cls, v: Any) -> int:
        return _to_int(v)

    @field_validator('column_headers', mode='before')
    @classmethod
    def parse_headers(cls, v: Any) -> List[str]:
        if not isinstance(v, list):
            return []
        return [str(h) for h in v if h is not None]


class SampleRowAnalysis(_WireModel):
    """One row the model walked through column by column"""
    row_number: int = 0
    qty_value: str = ''
    description_value: str = ''
    gst_value: str = ''
    price_value: str = ''
    extracted_quantity: Decimal = Decimal('0')
    gst_detected: bool = False

    @field_validator('row_number', mode='before')
    @classmethod
    def parse_int(cls, v: Any) -> int:
        return _to_int(v)

    @field_validator('qty_value', 'description_value', 'gst_value', 'price_value', mode='before')
    @classmethod
    def parse_str(cls, v: Any) -> str:
        return '' if v is None else str(v)

    @field_validator('extracted_quantity', mode='before')
    @classmethod
    def parse_decimal(cls, v: Any) -> Decimal:
        return to_decimal(v)

    @field_validator('gst_detected', mode='before')
    @classmethod
    def parse_bool(cls, v: Any) -> bool:
        return _to_bool(v)


class ClaimedTotals(_WireModel):
    """Totals printed on the invoice, as read by the model"""
    subtotal_ex_gst: Decimal = Decimal('0')
    gst_amount: Decimal = Decimal('0')
    total_inc_gst: Decimal = Decimal('0')
    totals_found: bool = False

    @field_validator('subtotal_ex_gst', 'gst_amount', 'total_inc_gst', mode='before')
    @classmethod
    def parse_decimal(cls, v: Any) -> Decimal:
        return to_decimal(v)

    @field_validator('totals_found', mode='before')
    @classmethod
    def parse_bool(cls, v: Any) -> bool:
        return _to_bool(v)


class ValidationSummary(_WireModel):
    """The model's own accounting of what it extracted"""
    total_line_items_found: int = 0
    extracted_line_items: int = 0
    calculated_subtotal: Decimal = Decimal('0')
    calculated_gst: Decimal = Decimal('0')
    calculated_total: Decimal = Decimal('0')
    totals_match: bool = False
    warnings: List[str] = Field(default_factory=list)

    @field_validator('total_line_items_found', 'extracted_line_items', mode='before')
    @classmethod
    def parse_int(cls, v: Any) -> int:
        return _to_int(v)

    @field_validator('calculated_subtotal', 'calculated_gst', 'calculated_total', mode='before')
    @classmethod
    def parse_decimal(cls, v: Any) -> Decimal:
        return to_decimal(v)

    @field_validator('totals_match', mode='before')
    @classmethod
    def parse_bool(cls, v: Any) -> bool:
        return _to_bool(v)

    @field_validator('warnings', mode='before')
    @classmethod
    def parse_warnings(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            return [v]
        if not isinstance(v, list):
            return []
        return [str(w) for w in v]


class ExtractionDebugInfo(_WireModel):
    """
    Self-reported debugging block required on every vision extraction

    It is the only signal available for spotting a probabilistic extractor
    that skipped rows, misread the quantity column or invented totals.
    """
    table_structure: TableStructure = Field(default_factory=TableStructure)
    sample_row_analysis: SampleRowAnalysis = Field(default_factory=SampleRowAnalysis)
    invoice_totals: ClaimedTotals = Field(default_factory=ClaimedTotals)
    validation_summary: ValidationSummary = Field(default_factory=ValidationSummary)

    @field_validator(
        'table_structure', 'sample_row_analysis', 'invoice_totals', 'validation_summary',
        mode='before'
    )
    @classmethod
    def dict_or_default(cls, v: Any) -> Any:
        return v if isinstance(v, (dict, BaseModel)) else {}


class Vendor(_WireModel):
    name: str = ''
    confidence: float = Field(default=0.0, ge=0, le=1)

    @field_validator('name', mode='before')
    @classmethod
    def parse_name(cls, v: Any) -> str:
        return '' if v is None else str(v)

    @field_validator('confidence', mode='before')
    @classmethod
    def parse_confidence(cls, v: Any) -> float:
        return _clamp_confidence(v)


def _clamp_confidence(v: Any) -> float:
    value = float(to_decimal(v))
    return min(max(value, 0.0), 1.0)


class ExtractedLineItem(_WireModel):
    """
    One invoice row

    Quantity comes from the quantity column only. Amounts are reconciled on
    validation: ``price_ex_gst`` is trusted over the unit cost, and
    ``price_inc_gst`` is derived from ``price_ex_gst`` and ``has_gst``.
    Every correction is recorded in ``validation_flags``.
    """
    description: str = Field(default='', alias='itemDescription')
    quantity: Decimal = Decimal('0')
    unit_cost_ex_gst: Decimal = Decimal('0')
    category: str = ''
    price_ex_gst: Decimal = Decimal('0')
    has_gst: bool = False
    price_inc_gst: Decimal = Decimal('0')
    validation_confidence: float = Field(default=1.0, ge=0, le=1)
    validation_flags: List[str] = Field(default_factory=list)

    @field_validator('description', 'category', mode='before')
    @classmethod
    def parse_str(cls, v: Any) -> str:
        return '' if v is None else str(v)

    @field_validator('quantity', 'unit_cost_ex_gst', 'price_ex_gst', 'price_inc_gst', mode='before')
    @classmethod
    def parse_decimal(cls, v: Any) -> Decimal:
        return to_decimal(v)

    @field_validator('has_gst', mode='before')
    @classmethod
    def parse_bool(cls, v: Any) -> bool:
        return _to_bool(v)

    @field_validator('validation_confidence', mode='before')
    @classmethod
    def parse_confidence(cls, v: Any) -> float:
        return 1.0 if v is None else _clamp_confidence(v)

    @field_validator('validation_flags', mode='before')
    @classmethod
    def parse_flags(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            return [v] if v else []
        if not isinstance(v, list):
            return []
        return [str(f) for f in v]

    @model_validator(mode='after')
    def reconcile_amounts(self, info: ValidationInfo) -> 'ExtractedLineItem':
        """Enforce price_ex ≈ unit × qty and the GST relationship"""
        context = info.context or {}
        tax_rate = to_decimal(context.get('tax_rate', DEFAULT_TAX_RATE))
        tolerance = to_decimal(context.get('rounding_tolerance', CENT))

        if not self.category:
            self.category = context.get('default_category', DEFAULT_CATEGORY)

        qty = self.quantity
        if qty > 0:
            if self.price_ex_gst == 0 and self.unit_cost_ex_gst > 0:
                self.price_ex_gst = round_to_cents(self.unit_cost_ex_gst * qty)
            elif self.unit_cost_ex_gst == 0 and self.price_ex_gst > 0:
                self.unit_cost_ex_gst = (self.price_ex_gst / qty).quantize(Decimal('0.0001'))
            else:
                # unit prices printed to the cent drift by up to half a cent per unit
                allowed = max(tolerance, qty * Decimal('0.005'))
                if abs(self.unit_cost_ex_gst * qty - self.price_ex_gst) > allowed:
                    self.unit_cost_ex_gst = (self.price_ex_gst / qty).quantize(Decimal('0.0001'))
                    self._flag('unit cost recalculated from line total')

        expected_inc = (
            round_to_cents(self.price_ex_gst * (Decimal('1') + tax_rate))
            if self.has_gst else self.price_ex_gst
        )
        if self.price_inc_gst != expected_inc:
            if self.price_inc_gst != 0 and abs(self.price_inc_gst - expected_inc) > tolerance:
                self._flag('gst amount inconsistent with gst flag')
            self.price_inc_gst = expected_inc

        pack_size = detect_pack_size(self.description)
        if pack_size > 1 and qty == pack_size:
            self._flag('pack-quantity ambiguous')

        return self

    def _flag(self, flag: str) -> None:
        if flag not in self.validation_flags:
            self.validation_flags.append(flag)
            self.validation_confidence = round(
                max(self.validation_confidence - CORRECTION_PENALTY, 0.0), 4
            )

    @property
    def tax_amount(self) -> Decimal:
        """GST charged on this line (zero when GST-free)"""
        return self.price_inc_gst - self.price_ex_gst if self.has_gst else Decimal('0')


def parse_invoice_date(value: Any) -> Optional[date]:
    """Accept ISO dates (YYYY-MM-DD) or datetimes; anything else is None"""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


class PageExtraction(_WireModel):
    """
    What one strategy produced for one page

    A page with no line items is the designated empty-page result, used for
    summary or totals-only pages.
    """
    page_number: int = Field(..., ge=1)
    strategy: str = 'vision'
    vendor: Vendor = Field(default_factory=Vendor)
    invoice_number: str = ''
    invoice_date: Optional[date] = None
    line_items: List[ExtractedLineItem] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0, le=1)
    debugging: Optional[ExtractionDebugInfo] = None
    warnings: List[str] = Field(default_factory=list)

    @field_validator('invoice_number', mode='before')
    @classmethod
    def parse_invoice_number(cls, v: Any) -> str:
        return '' if v is None else str(v)

    @field_validator('invoice_date', mode='before')
    @classmethod
    def parse_date(cls, v: Any) -> Optional[date]:
        return parse_invoice_date(v)

    @field_validator('confidence', mode='before')
    @classmethod
    def parse_confidence(cls, v: Any) -> float:
        return _clamp_confidence(v)

    @classmethod
    def empty(cls, page_number: int, strategy: str = 'vision', warning: Optional[str] = None) -> 'PageExtraction':
        return cls(
            page_number=page_number,
            strategy=strategy,
            warnings=[warning] if warning else []
        )

    @property
    def is_empty(self) -> bool:
        return not self.line_items


class PageSummary(_WireModel):
    """Per-page trace kept on the merged invoice"""
    page_number: int
    strategy: str
    item_count: int
    confidence: float
    claimed_item_count: Optional[int] = None
    warnings: List[str] = Field(default_factory=list)


class InvoiceDebugging(_WireModel):
    """Claimed-versus-computed record for a merged invoice"""
    pages: List[PageSummary] = Field(default_factory=list)
    table_structure: Optional[TableStructure] = None
    claimed_item_count: int = 0
    extracted_item_count: int = 0
    claimed_totals: Optional[ClaimedTotals] = None
    computed_subtotal_ex_gst: Decimal = Decimal('0')
    computed_gst_amount: Decimal = Decimal('0')
    computed_total_inc_gst: Decimal = Decimal('0')
    totals_match: Optional[bool] = None
    warnings: List[str] = Field(default_factory=list)


class ExtractedInvoice(_WireModel):
    """
    A parsed invoice document

    Totals are always recomputed from the line items. ``requires_review``
    marks output that still needs a human look; such invoices flow on
    downstream like any other.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True
    )

    vendor: Vendor
    invoice_number: str = ''
    invoice_date: Optional[date] = None
    line_items: List[ExtractedLineItem] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0, le=1)
    subtotal_ex_gst: Decimal = Decimal('0')
    gst_amount: Decimal = Decimal('0')
    total_inc_gst: Decimal = Decimal('0')
    requires_review: bool = False
    review_reasons: List[str] = Field(default_factory=list)
    used_fallback: bool = False
    debugging: InvoiceDebugging = Field(default_factory=InvoiceDebugging)

    @property
    def item_count(self) -> int:
        return len(self.line_items)

    def product_names(self) -> List[str]:
        """Distinct non-blank descriptions in invoice order"""
        seen = set()
        names = []
        for item in self.line_items:
            key = item.description.strip().casefold()
            if key and key not in seen:
                seen.add(key)
                names.append(item.description.strip())
        return names
