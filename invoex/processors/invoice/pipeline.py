"""
Invoice Parsing Pipeline

Per document:
try vision (page) -> [unusable: try heuristic (page)] -> accumulate
-> merge -> validate totals -> decide review -> done

Fallback is per page, so one invoice can mix vision and heuristic pages.
Header fields come from page 1; line items keep page order. A single bad
page never aborts the document. Only when every strategy failed on every
page does parsing raise ``InvoiceExtractionError``.
"""

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Sequence

from invoex.exceptions import InvoiceExtractionError
from invoex.models.invoice import (
    ClaimedTotals,
    ExtractedInvoice,
    ExtractionConfig,
    InvoiceDebugging,
    PageExtraction,
    PageSummary,
)
from invoex.processors.base import ExtractionOutcome, PageExtractor
from invoex.utils.pricing import round_to_cents

logger = logging.getLogger(__name__)


class ParseState(str, Enum):
    """Parser states"""
    START = "start"
    TRY_VISION = "try_vision"
    TRY_HEURISTIC = "try_heuristic"
    ACCUMULATE = "accumulate"
    MERGE = "merge"
    VALIDATE_TOTALS = "validate_totals"
    DECIDE = "decide"
    DONE = "done"


@dataclass
class ParseContext:
    """Per-document accumulators"""
    page_count: int
    state: ParseState = ParseState.START
    pages: List[PageExtraction] = field(default_factory=list)
    fallback_pages: List[int] = field(default_factory=list)
    failed_pages: List[int] = field(default_factory=list)
    page_reasons: Dict[int, List[str]] = field(default_factory=dict)
    review_reasons: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_review_reason(self, reason: str) -> None:
        if reason not in self.review_reasons:
            self.review_reasons.append(reason)

    def note(self, page_number: int, reason: str) -> None:
        self.page_reasons.setdefault(page_number, []).append(reason)


class InvoiceParser:
    """
    Multi-strategy invoice parser

    Usage:
        parser = InvoiceParser(vision_extractor, heuristic_extractor, ExtractionConfig())
        invoice = await parser.parse([page1_png, page2_png])
        if invoice.requires_review:
            ...
    """

    def __init__(
        self,
        vision_extractor: Optional[PageExtractor],
        heuristic_extractor: Optional[PageExtractor],
        config: Optional[ExtractionConfig] = None
    ):
        if vision_extractor is None and heuristic_extractor is None:
            raise ValueError("At least one extractor is required")
        self.vision_extractor = vision_extractor
        self.heuristic_extractor = heuristic_extractor
        self.config = config or ExtractionConfig()

    async def parse(self, pages: Sequence[bytes]) -> ExtractedInvoice:
        """
        Parse an invoice given one image buffer per page, in page order

        Raises:
            ValueError: no pages given
            InvoiceExtractionError: every strategy failed on every page
        """
        if not pages:
            raise ValueError("Invoice has no pages")

        start = time.time()
        ctx = ParseContext(page_count=len(pages))

        for page_number, image in enumerate(pages, start=1):
            await self._extract_page(ctx, image, page_number)

        if len(ctx.failed_pages) == ctx.page_count:
            reasons = '; '.join(
                f"page {n}: {', '.join(r)}" for n, r in sorted(ctx.page_reasons.items())
            )
            logger.error(f"No strategy could extract any page: {reasons}")
            raise InvoiceExtractionError(f"No strategy could extract any page ({reasons})")

        ctx.state = ParseState.MERGE
        invoice = self._merge(ctx)
        ctx.state = ParseState.DONE

        logger.info(
            f"Parsed {ctx.page_count} page(s) into {invoice.item_count} items in "
            f"{int((time.time() - start) * 1000)}ms "
            f"(confidence {invoice.confidence:.2f}, review={invoice.requires_review})"
        )
        return invoice

    async def _extract_page(self, ctx: ParseContext, image: bytes, page_number: int) -> None:
        ctx.state = ParseState.TRY_VISION
        if self.vision_extractor is not None:
            outcome = await self._attempt(self.vision_extractor, image, page_number)
        else:
            outcome = ExtractionOutcome.needs_fallback("Vision extraction not configured")

        if outcome.is_ok:
            self._accumulate(ctx, outcome.page)
            return

        ctx.note(page_number, outcome.reason)
        ctx.fallback_pages.append(page_number)
        ctx.state = ParseState.TRY_HEURISTIC
        logger.warning(f"Page {page_number}: falling back to heuristic extraction ({outcome.reason})")

        if self.heuristic_extractor is not None:
            outcome = await self._attempt(self.heuristic_extractor, image, page_number)
        else:
            outcome = ExtractionOutcome.failed("Heuristic extraction not configured")

        if outcome.is_ok:
            self._accumulate(ctx, outcome.page)
            return

        ctx.note(page_number, outcome.reason)
        ctx.failed_pages.append(page_number)
        self._accumulate(ctx, PageExtraction.empty(page_number, 'none', f"Page could not be extracted: {outcome.reason}"))

    @staticmethod
    async def _attempt(extractor: PageExtractor, image: bytes, page_number: int) -> ExtractionOutcome:
        try:
            return await extractor.try_extract(image, page_number)
        except Exception as e:
            logger.exception(f"Page {page_number}: {extractor.strategy} extractor raised: {e}")
            return ExtractionOutcome.failed(f"{extractor.strategy} extractor raised: {e}")

    @staticmethod
    def _accumulate(ctx: ParseContext, page: PageExtraction) -> None:
        ctx.state = ParseState.ACCUMULATE
        ctx.pages.append(page)
        ctx.warnings.extend(f"Page {page.page_number}: {w}" for w in page.warnings)

    def _merge(self, ctx: ParseContext) -> ExtractedInvoice:
        pages = sorted(ctx.pages, key=lambda p: p.page_number)
        first = pages[0]
        line_items = [item for page in pages for item in page.line_items]

        contributing = [page for page in pages if page.line_items]
        if contributing:
            weighted = sum(page.confidence * len(page.line_items) for page in contributing)
            confidence = round(weighted / len(line_items), 4)
        else:
            confidence = 0.0

        subtotal = round_to_cents(sum((item.price_ex_gst for item in line_items), Decimal('0')))
        gst = round_to_cents(sum((item.tax_amount for item in line_items), Decimal('0')))
        total = subtotal + gst

        ctx.state = ParseState.VALIDATE_TOTALS
        debugging = self._validate_totals(ctx, pages, subtotal, gst, total, len(line_items))

        ctx.state = ParseState.DECIDE
        self._decide(ctx, confidence, line_items)

        return ExtractedInvoice(
            vendor=first.vendor,
            invoice_number=first.invoice_number,
            invoice_date=first.invoice_date,
            line_items=line_items,
            confidence=confidence,
            subtotal_ex_gst=subtotal,
            gst_amount=gst,
            total_inc_gst=total,
            requires_review=bool(ctx.review_reasons),
            review_reasons=list(ctx.review_reasons),
            used_fallback=bool(ctx.fallback_pages),
            debugging=debugging
        )

    def _validate_totals(
        self,
        ctx: ParseContext,
        pages: List[PageExtraction],
        subtotal: Decimal,
        gst: Decimal,
        total: Decimal,
        item_count: int
    ) -> InvoiceDebugging:
        """Compare computed totals with whatever totals the model read off the page"""
        claimed_totals: Optional[ClaimedTotals] = None
        table_structure = None
        claimed_items = 0
        summaries = []

        for page in pages:
            claimed_for_page = None
            if page.debugging is not None:
                summary = page.debugging.validation_summary
                claimed_for_page = summary.total_line_items_found or summary.extracted_line_items
                claimed_items += claimed_for_page
                if page.debugging.invoice_totals.totals_found:
                    # later pages carry the final totals on multi-page invoices
                    claimed_totals = page.debugging.invoice_totals
                if table_structure is None and page.debugging.table_structure.column_count > 0:
                    table_structure = page.debugging.table_structure
            else:
                claimed_items += len(page.line_items)
            summaries.append(PageSummary(
                page_number=page.page_number,
                strategy=page.strategy,
                item_count=len(page.line_items),
                confidence=page.confidence,
                claimed_item_count=claimed_for_page,
                warnings=list(page.warnings)
            ))

        warnings = list(ctx.warnings)
        totals_match = None
        if claimed_totals is not None:
            tolerance = self.config.totals_warning_tolerance
            subtotal_ok = abs(claimed_totals.subtotal_ex_gst - subtotal) <= tolerance
            gst_ok = abs(claimed_totals.gst_amount - gst) <= tolerance
            total_ok = abs(claimed_totals.total_inc_gst - total) <= tolerance
            totals_match = subtotal_ok and gst_ok and total_ok
            if not totals_match:
                message = (
                    f"Computed totals (ex {subtotal}, GST {gst}, inc {total}) differ from printed totals "
                    f"(ex {claimed_totals.subtotal_ex_gst}, GST {claimed_totals.gst_amount}, "
                    f"inc {claimed_totals.total_inc_gst})"
                )
                logger.warning(message)
                warnings.append(message)

        if claimed_items and claimed_items != item_count:
            warnings.append(f"Pages claimed {claimed_items} item rows but {item_count} were extracted")

        return InvoiceDebugging(
            pages=summaries,
            table_structure=table_structure,
            claimed_item_count=claimed_items,
            extracted_item_count=item_count,
            claimed_totals=claimed_totals,
            computed_subtotal_ex_gst=subtotal,
            computed_gst_amount=gst,
            computed_total_inc_gst=total,
            totals_match=totals_match,
            warnings=warnings
        )

    def _decide(self, ctx: ParseContext, confidence: float, line_items) -> None:
        """Review policy; flagged invoices still flow downstream"""
        cfg = self.config
        if confidence < cfg.review_confidence_threshold:
            ctx.add_review_reason(
                f"Overall confidence {confidence:.2f} below {cfg.review_confidence_threshold}"
            )
        low_items = [item for item in line_items if item.validation_confidence < cfg.item_confidence_threshold]
        if low_items:
            ctx.add_review_reason(
                f"{len(low_items)} line item(s) below confidence {cfg.item_confidence_threshold}"
            )
        if len(line_items) < cfg.min_viable_items:
            ctx.add_review_reason(f"Only {len(line_items)} line item(s) extracted")
        if ctx.fallback_pages:
            ctx.add_review_reason(
                f"Heuristic fallback used on page(s) {', '.join(str(n) for n in ctx.fallback_pages)}"
            )
        if ctx.failed_pages:
            ctx.add_review_reason(
                f"Page(s) {', '.join(str(n) for n in ctx.failed_pages)} could not be extracted"
            )
