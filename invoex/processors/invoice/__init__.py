"""
Invoice extraction

Components:
- VisionExtractor: vision language model, with a required self-check block
- HeuristicExtractor: OCR plus regex line parsing, used as fallback
- InvoiceParser: per-page fallback, merge, totals and review policy
"""

from .heuristic_extractor import HeuristicExtractor
from .pipeline import InvoiceParser, ParseState
from .vision_extractor import VisionExtractor

__all__ = [
    'HeuristicExtractor',
    'InvoiceParser',
    'ParseState',
    'VisionExtractor',
]
