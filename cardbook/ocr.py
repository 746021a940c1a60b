"""Text extraction from business-card images and PDF scans.

Images go straight to Tesseract; PDFs use their text layer when it has enough
content and are rasterised for OCR otherwise.
"""
from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Protocol

import pdfplumber
import pytesseract
from pdf2image import convert_from_bytes
from PIL import Image, UnidentifiedImageError

from .config import OCRSettings, settings

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


class TextExtractionError(Exception):
    """Raised when the OCR engine cannot process the input."""
    pass


@dataclass
class OCRResult:
    """Raw text and a 0-1 confidence score."""
    text: str
    confidence: float


class TextExtractor(Protocol):
    """Turns an uploaded file into raw text plus confidence."""

    async def extract(self, data: bytes, content_type: str | None = None) -> OCRResult:
        ...


def is_pdf(data: bytes, content_type: str | None = None) -> bool:
    if content_type == PDF_CONTENT_TYPE:
        return True
    return data.startswith(b"%PDF")


def average_confidence(conf_values: list) -> float:
    """Mean of Tesseract word confidences, scaled to 0-1.

    Tesseract reports -1 for non-word boxes; those are skipped.
    """
    scores = []
    for value in conf_values:
        try:
            score = float(value)
        except (TypeError, ValueError):
            continue
        if score >= 0:
            scores.append(score)
    if not scores:
        return 0.0
    return min(1.0, sum(scores) / len(scores) / 100.0)


class TesseractTextExtractor:
    """Tesseract-backed text extraction.

    Stateless apart from configuration, so one instance serves concurrent
    pipeline runs; the blocking engine calls run in worker threads.
    """

    def __init__(self, ocr_settings: OCRSettings | None = None) -> None:
        self.settings = ocr_settings or settings.ocr
        if self.settings.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.settings.tesseract_cmd

    async def extract(self, data: bytes, content_type: str | None = None) -> OCRResult:
        if is_pdf(data, content_type):
            return await asyncio.to_thread(self._extract_pdf, data)
        return await asyncio.to_thread(self._extract_image_bytes, data)

    def _ocr_image(self, image: Image.Image) -> OCRResult:
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")

        ocr_data = pytesseract.image_to_data(
            image,
            lang=self.settings.tesseract_lang,
            output_type=pytesseract.Output.DICT,
        )
        text = pytesseract.image_to_string(image, lang=self.settings.tesseract_lang).strip()
        confidence = average_confidence(ocr_data.get("conf", [])) if text else 0.0
        return OCRResult(text=text, confidence=confidence)

    def _extract_image_bytes(self, data: bytes) -> OCRResult:
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.load()
                result = self._ocr_image(image)
        except UnidentifiedImageError as e:
            raise TextExtractionError(f"Unsupported or corrupt image: {e}") from e
        except pytesseract.TesseractError as e:
            raise TextExtractionError(f"OCR processing failed: {e}") from e

        logger.info(f"OCR extracted {len(result.text)} chars with confidence {result.confidence:.2f}")
        return result

    def _extract_pdf_native(self, data: bytes) -> OCRResult:
        try:
            with pdfplumber.open(io.BytesIO(data)) as pdf:
                text_parts = []
                for page in pdf.pages:
                    page_text = page.extract_text()
                    if page_text:
                        text_parts.append(page_text)
        except Exception as e:
            logger.warning(f"pdfplumber extraction failed: {e}, falling back to OCR")
            return OCRResult(text="", confidence=0.0)

        text = "\n\n".join(text_parts).strip()

        # Estimate confidence based on text density
        if len(text) > 100:
            return OCRResult(text=text, confidence=0.95)
        elif len(text) > 20:
            return OCRResult(text=text, confidence=0.7)
        return OCRResult(text=text, confidence=0.3 if text else 0.0)

    def _extract_pdf(self, data: bytes) -> OCRResult:
        native = self._extract_pdf_native(data)
        if len(native.text) >= self.settings.min_native_text_chars and native.confidence > 0:
            logger.info(f"Using PDF text layer ({len(native.text)} chars)")
            return native

        try:
            images = convert_from_bytes(data, dpi=self.settings.dpi, fmt="jpeg")
        except Exception as e:
            raise TextExtractionError(f"Could not rasterise PDF: {e}") from e

        if not images:
            logger.warning("No pages rendered from PDF")
            return native

        text_parts = []
        confidences = []
        for idx, image in enumerate(images):
            try:
                page = self._ocr_image(image)
            except pytesseract.TesseractError as e:
                logger.error(f"OCR failed for page {idx + 1}: {e}")
                continue
            if page.text:
                text_parts.append(page.text)
                confidences.append(page.confidence)

        text = "\n\n".join(text_parts)
        confidence = sum(confidences) / len(confidences) if confidences else 0.0

        # Use OCR result only if it found more than the text layer
        if len(text) < len(native.text):
            return native

        logger.info(f"PDF OCR extracted {len(text)} chars from {len(images)} pages with confidence {confidence:.2f}")
        return OCRResult(text=text, confidence=confidence)
