"""Structured contact extraction from OCR text with an LLM.

The model returns JSON; the result is cleaned and its self-reported
confidence is capped when the extraction looks thin.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from openai import AsyncOpenAI

from cardbook.config import settings
from cardbook.models import Industry

from .client import get_openai_client

logger = logging.getLogger(__name__)

MINIMUM_FIELDS = 3
DEFAULT_CONFIDENCE = 0.5

EXTRACTION_SYSTEM_PROMPT = """You are an expert at extracting contact information from business card text.

CRITICAL RULES:
1. Only extract information that is clearly visible and readable in the text
2. Do not make assumptions or fill in missing data
3. Be extremely conservative with confidence scoring
4. If text appears garbled, OCR-corrupted, or unclear, significantly reduce confidence
5. Email addresses must contain @ symbol to be valid
6. Phone numbers should preserve original formatting when possible
7. Company names should not include job titles or personal names
8. If fewer than 3 fields are extractable, set confidence below 0.5

Extract the following information and return as JSON:
- name: Full name of the person (first and last name)
- email: Email address (must contain @ symbol)
- phone: Phone number (preserve formatting)
- company: Company name only
- title: Job title/position
- industry: Best match from: {industries}
- address: Complete physical address
- website: Website URL
- confidence: Your confidence level (0-1) in the extraction accuracy

Return only valid JSON. If information is not clearly present, omit that field.
Be very conservative with confidence - if you're unsure, lower the score."""


class ContactExtractionError(Exception):
    """Raised when the language model call fails or returns unusable output."""
    pass


@dataclass
class ExtractedContactData:
    """Contact fields found on a card plus the extraction confidence."""
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    title: str | None = None
    industry: str | None = None
    address: str | None = None
    website: str | None = None
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    def contact_fields(self) -> dict[str, Any]:
        """Fields that map directly onto a Contact row."""
        data = asdict(self)
        data.pop("confidence")
        return data


class ContactExtractor(Protocol):
    """Turns raw card text into structured contact data."""

    async def extract(self, text: str) -> ExtractedContactData:
        ...


def _clean_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _normalize_industry(value: Any) -> str | None:
    value = _clean_str(value)
    if value is None:
        return None
    for industry in Industry:
        if industry.value.lower() == value.lower():
            return industry.value
    return None


def _clamp_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, float(value)))


def clean_extraction(result: dict[str, Any]) -> ExtractedContactData:
    """Validate model output and apply quality-based confidence caps.

    - emails without ``@`` are dropped
    - industries outside the known set are dropped
    - fewer than three fields caps confidence at 0.4
    - a name shorter than three characters caps confidence at 0.3
    """
    email = _clean_str(result.get("email"))
    data = ExtractedContactData(
        name=_clean_str(result.get("name")),
        email=email if email and "@" in email else None,
        phone=_clean_str(result.get("phone")),
        company=_clean_str(result.get("company")),
        title=_clean_str(result.get("title")),
        industry=_normalize_industry(result.get("industry")),
        address=_clean_str(result.get("address")),
        website=_clean_str(result.get("website")),
        confidence=_clamp_confidence(result.get("confidence")),
    )

    fields_found = sum(1 for value in data.contact_fields().values() if value is not None)
    if fields_found < MINIMUM_FIELDS:
        data.confidence = min(data.confidence, 0.4)

    if data.name and len(data.name) < 3:
        data.confidence = min(data.confidence, 0.3)

    return data


class OpenAIContactExtractor:
    """Contact extraction through the OpenAI chat completions API."""

    def __init__(self, client: AsyncOpenAI | None = None, model: str | None = None) -> None:
        self._client = client
        self.model = model or settings.llm.model

    @property
    def client(self) -> AsyncOpenAI:
        return self._client or get_openai_client()

    async def extract(self, text: str) -> ExtractedContactData:
        """Extract contact data from OCR text.

        Raises:
            ContactExtractionError: If the API call fails or the reply is not a JSON object
        """
        system_prompt = EXTRACTION_SYSTEM_PROMPT.format(
            industries=", ".join(industry.value for industry in Industry),
        )
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {
                        "role": "user",
                        "content": (
                            "Extract contact information from this business card text. "
                            f'Be precise and conservative:\n\n"{text}"'
                        ),
                    },
                ],
                response_format={"type": "json_object"},
                temperature=0.0,
            )
            content = response.choices[0].message.content or "{}"
            result = json.loads(content)
        except json.JSONDecodeError as e:
            raise ContactExtractionError(f"AI extraction returned invalid JSON: {e}") from e
        except Exception as e:
            logger.error(f"AI extraction failed: {e}")
            raise ContactExtractionError(f"AI extraction failed: {e}") from e

        if not isinstance(result, dict):
            raise ContactExtractionError("AI extraction returned a non-object JSON value")

        data = clean_extraction(result)
        logger.info(f"AI extraction found {len(data.to_dict()) - 1} fields with confidence {data.confidence:.2f}")
        return data
