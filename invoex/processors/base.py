"""
Page extractor contract and its tagged result type
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from invoex.models.invoice import PageExtraction


class OutcomeKind(str, Enum):
    OK = "ok"
    NEEDS_FALLBACK = "needs_fallback"
    FAILED = "failed"


@dataclass(frozen=True)
class ExtractionOutcome:
    """
    Result of running one strategy on one page

    ``OK`` carries a page (possibly the empty-page result). ``NEEDS_FALLBACK``
    means the strategy ran but its output is unusable and the next strategy
    should try. ``FAILED`` means the strategy could not run at all.
    """
    kind: OutcomeKind
    page: Optional[PageExtraction] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, page: PageExtraction) -> 'ExtractionOutcome':
        return cls(OutcomeKind.OK, page=page)

    @classmethod
    def needs_fallback(cls, reason: str) -> 'ExtractionOutcome':
        return cls(OutcomeKind.NEEDS_FALLBACK, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> 'ExtractionOutcome':
        return cls(OutcomeKind.FAILED, reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.kind == OutcomeKind.OK


class PageExtractor(ABC):
    """One extraction strategy for a single page image"""

    strategy: str = 'base'

    @abstractmethod
    async def extract_page(self, image: bytes, page_number: int) -> PageExtraction:
        """
        Extract one page, raising on failure

        Raises:
            ExtractionQualityError: output exists but is not usable
        """
        pass

    @abstractmethod
    async def try_extract(self, image: bytes, page_number: int) -> ExtractionOutcome:
        """Like ``extract_page`` but folds every failure into an outcome"""
        pass
