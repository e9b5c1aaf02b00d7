"""
Pricing helpers

Money is handled as Decimal and rounded half-up to cents. The markup table
maps a catalog category to the multiplier applied to ex-GST cost to reach
the ex-GST sell price.
"""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

CENT = Decimal('0.01')
DEFAULT_TAX_RATE = Decimal('0.10')
DEFAULT_MARKUP = Decimal('1.65')

DEFAULT_CATEGORY_MARKUPS: Dict[str, Decimal] = {
    'House': Decimal('1.65'),
    'Bulk': Decimal('1.75'),
    'Fruit & Veg': Decimal('1.75'),
    'Fridge & Freezer': Decimal('1.5'),
    'Naturo': Decimal('1.65'),
    'Groceries': Decimal('1.65'),
    'Drinks Fridge': Decimal('1.65'),
    'Supplements': Decimal('1.65'),
    'Personal Care': Decimal('1.65'),
    'Fresh Bread': Decimal('1.5'),
}

# Count-style pack tokens only; weights and volumes are not unit counts.
_PACK_PATTERNS = [
    re.compile(r'(\d+)\s*(?:pk|pack)\b', re.IGNORECASE),
    re.compile(r'pack\s*of\s*(\d+)', re.IGNORECASE),
    re.compile(r'(?<![\d.])(\d+)\s*x\s*\d', re.IGNORECASE),
    re.compile(r'\bx\s*(\d+)(?!\d)', re.IGNORECASE),
    re.compile(r'\((\d+)\)'),
    re.compile(r'(\d+)\s*/\s*(?:ctn|carton|case|box)\b', re.IGNORECASE),
]
_DOZEN = re.compile(r'\bdoz(?:en)?\b', re.IGNORECASE)


def to_decimal(value: Any) -> Decimal:
    """Parse money-ish input; anything non-numeric becomes zero"""
    if value is None or isinstance(value, bool):
        return Decimal('0')
    if isinstance(value, Decimal):
        return value if value.is_finite() else Decimal('0')
    if isinstance(value, (int, float)):
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            return Decimal('0')
        return result if result.is_finite() else Decimal('0')
    if isinstance(value, str):
        cleaned = re.sub(r'[^\d.\-]', '', value.strip())
        if cleaned in ('', '-', '.', '-.'):
            return Decimal('0')
        try:
            return Decimal(cleaned)
        except InvalidOperation:
            return Decimal('0')
    return Decimal('0')


def round_to_cents(amount: Any) -> Decimal:
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def cents_to_decimal(cents: Optional[int]) -> Optional[Decimal]:
    if cents is None:
        return None
    return (Decimal(int(cents)) / 100).quantize(CENT)


def markup_for_category(
    category: Optional[str],
    markups: Optional[Dict[str, Any]] = None,
    default_markup: Any = DEFAULT_MARKUP
) -> Decimal:
    """Look up the markup for a category, case-insensitively"""
    table = markups if markups is not None else DEFAULT_CATEGORY_MARKUPS
    if category:
        wanted = category.strip().casefold()
        for name, value in table.items():
            if name.casefold() == wanted:
                return to_decimal(value)
    return to_decimal(default_markup)


def calculate_sell_price(
    cost_ex_gst: Any,
    markup: Any,
    has_gst: bool = True,
    tax_rate: Any = DEFAULT_TAX_RATE
) -> Dict[str, Decimal]:
    """
    Forward pricing: cost -> sell price

    Returns sell_ex_gst, gst_amount and sell_inc_gst rounded to cents.
    """
    sell_ex = to_decimal(cost_ex_gst) * to_decimal(markup)
    gst = sell_ex * to_decimal(tax_rate) if has_gst else Decimal('0')
    return {
        'sell_ex_gst': round_to_cents(sell_ex),
        'gst_amount': round_to_cents(gst),
        'sell_inc_gst': round_to_cents(sell_ex + gst),
    }


def derive_cost_from_sell(
    sell_inc_gst: Any,
    markup: Any,
    tax_rate: Any = DEFAULT_TAX_RATE
) -> Decimal:
    """
    Reverse pricing for items with an observed sell price but unknown cost:
    cost_ex_gst = (sell_inc_gst / (1 + tax_rate)) / markup
    """
    markup_value = to_decimal(markup)
    if markup_value <= 0:
        raise ValueError(f"Markup must be positive, got {markup}")
    sell_ex = to_decimal(sell_inc_gst) / (Decimal('1') + to_decimal(tax_rate))
    return round_to_cents(sell_ex / markup_value)


def detect_pack_size(description: str) -> int:
    """Return the unit count implied by a pack token in the description, else 1"""
    if not description:
        return 1
    for pattern in _PACK_PATTERNS:
        match = pattern.search(description)
        if match:
            number = int(match.group(1))
            if 1 < number <= 100:
                return number
    if _DOZEN.search(description):
        return 12
    return 1


def validate_pricing(cost_ex_gst: Any, sell_ex_gst: Any) -> List[str]:
    """Sanity checks used before accepting a derived price"""
    errors = []
    cost = to_decimal(cost_ex_gst)
    sell = to_decimal(sell_ex_gst)
    if cost <= 0:
        errors.append('Cost must be greater than zero')
    if sell <= 0:
        errors.append('Sell price must be greater than zero')
    if cost > 0 and sell > 0 and sell < cost:
        errors.append('Sell price is below cost')
    return errors
