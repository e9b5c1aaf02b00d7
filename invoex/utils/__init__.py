"""
Shared helpers: pricing arithmetic and retry
"""

from .pricing import (
    round_to_cents,
    to_decimal,
    markup_for_category,
    calculate_sell_price,
    derive_cost_from_sell,
    detect_pack_size,
)
from .retry import RetryConfig, with_retry, is_transient_error

__all__ = [
    'round_to_cents',
    'to_decimal',
    'markup_for_category',
    'calculate_sell_price',
    'derive_cost_from_sell',
    'detect_pack_size',
    'RetryConfig',
    'with_retry',
    'is_transient_error',
]
