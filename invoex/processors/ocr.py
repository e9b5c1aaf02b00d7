"""
OCR engines for the heuristic extractor

Tesseract (via pytesseract and Pillow) is the bundled engine. Recognition
runs in a worker thread so the event loop is never blocked.
"""

import asyncio
import io
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List

import pytesseract
from PIL import Image, ImageOps

from invoex.exceptions import OCRError
from invoex.utils.images import detect_media_type

logger = logging.getLogger(__name__)


@dataclass
class OCRResult:
    text: str
    confidence: float  # 0..1, mean word confidence
    engine: str
    issues: List[str] = field(default_factory=list)


class OCREngine(ABC):

    name: str = 'base'

    @abstractmethod
    async def recognize(self, image: bytes) -> OCRResult:
        """
        Raises:
            UnsupportedImageError: bytes are not an image
            OCRError: the engine failed
        """
        pass


def assess_ocr_quality(text: str) -> Dict[str, Any]:
    """Flag common OCR artifacts; the score drops 0.1 per issue"""
    if not text or not text.strip():
        return {'score': 0.0, 'issues': ['empty_output']}

    issues = []
    garbage_patterns = [
        (r'[^\x00-\x7F]{5,}', 'non_ascii_sequences'),
        (r'(.)\1{4,}', 'repeated_chars'),
        (r'\d{14,}', 'long_numbers'),
    ]
    for pattern, issue_name in garbage_patterns:
        if re.search(pattern, text):
            issues.append(issue_name)

    words = text.split()
    avg_word_len = sum(len(w) for w in words) / len(words) if words else 0
    if avg_word_len < 2:
        issues.append('very_short_words')
    elif avg_word_len > 15:
        issues.append('very_long_words')

    score = max(0.0, min(1.0, 1.0 - 0.1 * len(issues)))
    return {'score': round(score, 2), 'issues': issues}


class TesseractOCREngine(OCREngine):
    """Local Tesseract OCR"""

    name = 'tesseract'

    def __init__(self, lang: str = 'eng', config: str = '--oem 3 --psm 6', timeout: float = 60.0):
        self.lang = lang
        self.config = config
        self.timeout = timeout

    async def recognize(self, image: bytes) -> OCRResult:
        detect_media_type(image)
        try:
            return await asyncio.to_thread(self._recognize_sync, image)
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, RuntimeError, OSError) as e:
            logger.error(f"Tesseract OCR failed: {e}")
            raise OCRError(f"Tesseract OCR failed: {e}") from e

    def _recognize_sync(self, image: bytes) -> OCRResult:
        with Image.open(io.BytesIO(image)) as img:
            prepared = self._preprocess(img)
            text = pytesseract.image_to_string(
                prepared, lang=self.lang, config=self.config, timeout=self.timeout
            )
            data = pytesseract.image_to_data(
                prepared, lang=self.lang, config=self.config, timeout=self.timeout,
                output_type=pytesseract.Output.DICT
            )

        word_confidences = []
        for conf in data.get('conf', []):
            try:
                value = float(conf)
            except (TypeError, ValueError):
                continue
            if value >= 0:
                word_confidences.append(value)
        confidence = sum(word_confidences) / len(word_confidences) / 100 if word_confidences else 0.0

        quality = assess_ocr_quality(text)
        logger.debug(f"Tesseract read {len(text)} characters (confidence {confidence:.2f})")
        return OCRResult(text=text, confidence=round(confidence, 3), engine=self.name, issues=quality['issues'])

    @staticmethod
    def _preprocess(img: Image.Image) -> Image.Image:
        gray = ImageOps.grayscale(img)
        # small phone photos read better upscaled
        if gray.width < 1500:
            scale = 1500 / gray.width
            gray = gray.resize((1500, int(gray.height * scale)), Image.LANCZOS)
        return ImageOps.autocontrast(gray)
