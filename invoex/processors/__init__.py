"""
Document processors: OCR, language-model services and invoice extraction
"""

from .base import ExtractionOutcome, OutcomeKind, PageExtractor

__all__ = ['ExtractionOutcome', 'OutcomeKind', 'PageExtractor']
