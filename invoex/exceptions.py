"""
Error taxonomy for invoex.

Extraction-quality errors end the attempted strategy and are never retried.
Transport errors are retried a bounded number of times, then fall back or
propagate. Persistence errors are handled per unit by the caller.
"""

from typing import Optional


class InvoexError(Exception):
    """Base class for all invoex errors"""


class ExtractionQualityError(InvoexError):
    """An extractor produced output that cannot be trusted"""

    def __init__(self, message: str, page_number: Optional[int] = None):
        super().__init__(message)
        self.page_number = page_number


class MissingDebugInfoError(ExtractionQualityError):
    """The vision response omitted its self-reported debugging block"""


class TooFewItemsError(ExtractionQualityError):
    """Fewer line items than the minimum viable extraction"""

    def __init__(self, found: int, minimum: int, page_number: Optional[int] = None):
        super().__init__(
            f"Only {found} line items extracted (minimum {minimum})",
            page_number=page_number
        )
        self.found = found
        self.minimum = minimum


class MalformedResponseError(ExtractionQualityError):
    """The response carried a JSON block that could not be decoded"""


class UnsupportedImageError(ExtractionQualityError):
    """Page bytes are not a recognised image format"""


class VisionServiceError(InvoexError):
    """Network or API failure calling the vision model"""


class OCRError(InvoexError):
    """The OCR engine failed to read a page"""


class PosPlatformError(InvoexError):
    """Failure talking to the external point-of-sale platform"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InvoiceExtractionError(InvoexError):
    """Every strategy failed on every page; no usable record exists"""


class CatalogItemNotFoundError(InvoexError):
    """A referenced catalog item does not exist"""


class LinkConflictError(InvoexError):
    """Another writer activated a link for the same product name first"""
