"""
Vision Extractor

Sends a page image to a vision-capable language model and turns the fenced
JSON block in its reply into a ``PageExtraction``.

Rules:
- no JSON block: the page has no items (totals or terms page), not an error
- JSON without the ``debugging`` block: rejected
- fewer line items than ``min_viable_items``: rejected
- claimed versus returned item counts that disagree: logged and kept as a warning
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from invoex.exceptions import (
    ExtractionQualityError,
    MalformedResponseError,
    MissingDebugInfoError,
    TooFewItemsError,
    VisionServiceError,
)
from invoex.models.invoice import (
    ExtractedLineItem,
    ExtractionConfig,
    ExtractionDebugInfo,
    PageExtraction,
    Vendor,
)
from invoex.processors.base import ExtractionOutcome, PageExtractor
from invoex.processors.llm.claude_service import ClaudeVisionService
from invoex.processors.llm.prompt_manager import PromptManager
from invoex.utils.pricing import DEFAULT_CATEGORY_MARKUPS

logger = logging.getLogger(__name__)

PROMPT_NAME = 'invoice_vision_extraction'

_FENCED_JSON = re.compile(r'```(?:json|JSON)?\s*(\{.*?\})\s*```', re.DOTALL)


def extract_json_block(text: str) -> Optional[str]:
    """The first fenced JSON object in ``text``, or None"""
    if not text:
        return None
    match = _FENCED_JSON.search(text)
    return match.group(1) if match else None


def quality_warnings(items: Sequence[ExtractedLineItem]) -> List[str]:
    """Patterns that usually mean a column was misread"""
    warnings = []
    if not items:
        return warnings
    ones = sum(1 for item in items if item.quantity == 1)
    if len(items) >= 5 and ones / len(items) > 0.8:
        warnings.append(
            f"{ones}/{len(items)} items have quantity 1; the quantity column may have been misread"
        )
    gst_items = sum(1 for item in items if item.has_gst)
    if len(items) >= 5 and gst_items == len(items):
        warnings.append("All items marked with GST")
    elif len(items) >= 5 and gst_items == 0:
        warnings.append("All items marked GST-free")
    return warnings


class VisionExtractor(PageExtractor):
    """
    Vision-model page extractor

    Usage:
        extractor = VisionExtractor(ClaudeVisionService(), ExtractionConfig())
        outcome = await extractor.try_extract(png_bytes, page_number=1)
    """

    strategy = 'vision'

    def __init__(
        self,
        vision_service: ClaudeVisionService,
        config: Optional[ExtractionConfig] = None,
        prompt_manager: Optional[PromptManager] = None,
        categories: Optional[Sequence[str]] = None
    ):
        self.vision_service = vision_service
        self.config = config or ExtractionConfig()
        self.prompt_manager = prompt_manager or PromptManager()
        self.categories = list(categories or DEFAULT_CATEGORY_MARKUPS.keys())

    def build_prompt(self, page_number: int) -> Dict[str, str]:
        return {
            'system': self.prompt_manager.get_system_prompt(PROMPT_NAME),
            'user': self.prompt_manager.get_user_prompt(
                PROMPT_NAME,
                page_number=page_number,
                tax_rate=self.config.tax_rate,
                default_category=self.config.default_category,
                categories=self.categories,
                min_items=self.config.min_viable_items
            ),
        }

    async def extract_page(self, image: bytes, page_number: int) -> PageExtraction:
        prompt = self.build_prompt(page_number)
        logger.info(f"Vision extraction for page {page_number} ({len(image)} bytes)")
        text = await asyncio.wait_for(
            self.vision_service.describe_image(image, prompt['user'], system_prompt=prompt['system']),
            timeout=self.config.vision_timeout_seconds
        )
        return self.parse_response(text, page_number)

    async def try_extract(self, image: bytes, page_number: int) -> ExtractionOutcome:
        try:
            page = await self.extract_page(image, page_number)
        except asyncio.TimeoutError:
            reason = f"Vision request timed out after {self.config.vision_timeout_seconds}s"
            logger.warning(f"Page {page_number}: {reason}")
            return ExtractionOutcome.needs_fallback(reason)
        except ExtractionQualityError as e:
            logger.warning(f"Page {page_number}: vision extraction rejected: {e}")
            return ExtractionOutcome.needs_fallback(str(e))
        except VisionServiceError as e:
            logger.warning(f"Page {page_number}: vision service unavailable: {e}")
            return ExtractionOutcome.needs_fallback(str(e))
        except Exception as e:
            logger.exception(f"Page {page_number}: unexpected vision failure: {e}")
            return ExtractionOutcome.needs_fallback(f"Unexpected vision failure: {e}")
        return ExtractionOutcome.ok(page)

    def parse_response(self, text: str, page_number: int) -> PageExtraction:
        """
        Turn the model's reply into a page result

        Raises:
            MalformedResponseError: JSON block present but undecodable
            MissingDebugInfoError: no ``debugging`` block
            TooFewItemsError: below the minimum viable item count
        """
        payload = extract_json_block(text)
        if payload is None:
            logger.info(f"Page {page_number}: no JSON in response, treating as a page without items")
            return PageExtraction.empty(page_number, self.strategy, 'No line items found on this page')

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Invalid JSON in vision response: {e}", page_number) from e
        if not isinstance(data, dict):
            raise MalformedResponseError("Vision response JSON is not an object", page_number)

        raw_debug = data.get('debugging')
        if not isinstance(raw_debug, dict) or not raw_debug:
            raise MissingDebugInfoError("Vision response lacks the required debugging block", page_number)
        debugging = ExtractionDebugInfo.model_validate(raw_debug)
        summary = debugging.validation_summary

        items = self._parse_items(data.get('lineItems'), page_number)
        warnings = list(summary.warnings)

        if not items and summary.total_line_items_found == 0 and summary.extracted_line_items == 0:
            logger.info(f"Page {page_number}: model reports no item rows")
            return PageExtraction(
                page_number=page_number,
                strategy=self.strategy,
                debugging=debugging,
                warnings=warnings or ['No line items found on this page']
            )

        if summary.extracted_line_items != len(items):
            message = (
                f"Model claimed {summary.extracted_line_items} extracted items "
                f"but returned {len(items)}"
            )
            logger.warning(f"Page {page_number}: {message}")
            warnings.append(message)
        if len(items) < summary.total_line_items_found:
            message = f"Model found {summary.total_line_items_found} rows but extracted {len(items)}"
            logger.warning(f"Page {page_number}: {message}")
            warnings.append(message)
        if not summary.totals_match and debugging.invoice_totals.totals_found:
            warnings.append("Model reports its extracted totals do not match the printed totals")

        if len(items) < self.config.min_viable_items:
            raise TooFewItemsError(len(items), self.config.min_viable_items, page_number)

        warnings.extend(quality_warnings(items))

        vendor = data.get('vendor')
        if isinstance(vendor, str):
            vendor = {'name': vendor, 'confidence': 0.5}

        page = PageExtraction(
            page_number=page_number,
            strategy=self.strategy,
            vendor=Vendor.model_validate(vendor if isinstance(vendor, dict) else {}),
            invoice_number=data.get('invoiceNumber'),
            invoice_date=data.get('invoiceDate'),
            line_items=items,
            confidence=data.get('confidence', 0),
            debugging=debugging,
            warnings=warnings
        )
        logger.info(
            f"Page {page_number}: {len(items)} items via vision "
            f"(confidence {page.confidence:.2f}, {len(warnings)} warnings)"
        )
        return page

    def _parse_items(self, raw_items: Any, page_number: int) -> List[ExtractedLineItem]:
        if not isinstance(raw_items, list):
            return []
        context = self.config.validation_context()
        items = []
        for index, raw in enumerate(raw_items, start=1):
            if not isinstance(raw, dict):
                logger.warning(f"Page {page_number}: skipping non-object line item {index}")
                continue
            try:
                item = ExtractedLineItem.model_validate(raw, context=context)
            except ValidationError as e:
                logger.warning(f"Page {page_number}: skipping invalid line item {index}: {e}")
                continue
            if not item.description:
                logger.warning(f"Page {page_number}: skipping line item {index} without description")
                continue
            items.append(item)
        return items
