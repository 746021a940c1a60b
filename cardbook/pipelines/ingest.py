"""Business-card ingestion: uploaded image -> OCR -> AI extraction -> contact.

A run moves a card from ``processing`` to one of ``completed``,
``pending-verification`` or ``failed``. Each store write is its own
transaction; a run never raises to its caller. Writes only apply while the card
is still ``processing``, so a card verified by hand mid-run keeps its
verified state.
"""
from __future__ import annotations

import logging
import math
import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ai.extraction import ContactExtractor, ExtractedContactData
from cardbook import models, storage
from cardbook.config import IngestionSettings, settings
from cardbook.ocr import TextExtractor

logger = logging.getLogger(__name__)

UNKNOWN_CONTACT_NAME = "Unknown"
EMPTY_TEXT_MESSAGE = (
    "Unable to extract text from image. Please ensure the image is clear and in a "
    "supported format (JPG, PNG, GIF, BMP, WEBP, PDF)."
)


def as_percent(confidence: float) -> int:
    """Confidence (0-1) as a whole percentage, rounding halves up."""
    return math.floor(confidence * 100 + 0.5)


@dataclass(frozen=True)
class ConfidencePolicy:
    """Thresholds below which a card is held for human verification."""
    ocr_threshold: float = 0.5
    ai_threshold: float = 0.15

    @classmethod
    def from_settings(cls, ingestion: IngestionSettings | None = None) -> ConfidencePolicy:
        ingestion = ingestion or settings.ingestion
        return cls(
            ocr_threshold=ingestion.ocr_confidence_threshold,
            ai_threshold=ingestion.ai_confidence_threshold,
        )


class CardIngestionPipeline:
    """Drives one uploaded card to a terminal processing state.

    Collaborators are injected so one instance can serve concurrent runs:
    the session factory opens a fresh session per run, and the extractors
    keep no per-call state.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        text_extractor: TextExtractor,
        contact_extractor: ContactExtractor,
        policy: ConfidencePolicy | None = None,
    ) -> None:
        self.session_maker = session_maker
        self.text_extractor = text_extractor
        self.contact_extractor = contact_extractor
        self.policy = policy or ConfidencePolicy.from_settings()

    async def run(self, card_id: int, file_path: str, user_id: str) -> models.ProcessingStatus:
        """Process one uploaded card; returns the status it ended in."""
        async with self.session_maker() as session:
            try:
                return await self._process(session, card_id, file_path, user_id)
            except Exception as e:
                logger.error(f"Error processing business card {card_id}: {e}", exc_info=True)
                await session.rollback()
                return await self._mark_failed(session, card_id, user_id, f"Processing failed: {e}")

    async def _write(
        self,
        session: AsyncSession,
        card_id: int,
        user_id: str,
        updates: Mapping[str, Any],
    ) -> bool:
        # Writes only land while the card is processing; a manual verify wins.
        written = await storage.update_processing_business_card(session, card_id, user_id, updates)
        if not written:
            logger.info(f"Business card {card_id} left processing during the run; discarding its results")
        return written

    async def _current_status(self, session: AsyncSession, card_id: int, user_id: str) -> models.ProcessingStatus:
        card = await storage.get_business_card(session, card_id, user_id)
        if card is None:
            return models.ProcessingStatus.FAILED
        return models.ProcessingStatus(card.processing_status)

    async def _mark_failed(
        self,
        session: AsyncSession,
        card_id: int,
        user_id: str,
        message: str,
    ) -> models.ProcessingStatus:
        try:
            updates = {
                "processing_status": models.ProcessingStatus.FAILED,
                "processing_error": message,
            }
            if not await self._write(session, card_id, user_id, updates):
                return await self._current_status(session, card_id, user_id)
        except Exception:
            logger.exception(f"Could not record failure for business card {card_id}")
        return models.ProcessingStatus.FAILED

    async def _process(
        self,
        session: AsyncSession,
        card_id: int,
        file_path: str,
        user_id: str,
    ) -> models.ProcessingStatus:
        # Step 1: Read the upload
        try:
            image_bytes = Path(file_path).read_bytes()
        except OSError as e:
            logger.error(f"Could not read upload for business card {card_id}: {e}")
            return await self._mark_failed(session, card_id, user_id, f"Unable to read uploaded file: {e}")

        content_type, _ = mimetypes.guess_type(file_path)

        # Step 2: OCR
        ocr_result = await self.text_extractor.extract(image_bytes, content_type)
        ocr_confidence = ocr_result.confidence

        if not ocr_result.text or ocr_confidence == 0:
            logger.info(f"OCR found no text for business card {card_id}")
            written = await self._write(
                session,
                card_id,
                user_id,
                {
                    "ocr_text": ocr_result.text or None,
                    "ocr_confidence": ocr_confidence,
                    "processing_status": models.ProcessingStatus.FAILED,
                    "processing_error": EMPTY_TEXT_MESSAGE,
                },
            )
            if not written:
                return await self._current_status(session, card_id, user_id)
            return models.ProcessingStatus.FAILED

        # Step 3: Record OCR output
        written = await self._write(
            session,
            card_id,
            user_id,
            {
                "ocr_text": ocr_result.text,
                "ocr_confidence": ocr_confidence,
            },
        )
        if not written:
            return await self._current_status(session, card_id, user_id)

        # Step 4: Structured extraction, also run on weak OCR to pre-fill review
        contact_data = await self.contact_extractor.extract(ocr_result.text)
        ai_confidence = contact_data.confidence

        if ocr_confidence < self.policy.ocr_threshold:
            logger.info(
                f"OCR confidence is low ({ocr_confidence:.2f}), queuing business card {card_id} for verification"
            )
            return await self._hold_for_verification(
                session,
                card_id,
                user_id,
                contact_data,
                f"Low OCR confidence ({as_percent(ocr_confidence)}%). Please verify extracted data.",
            )

        if ai_confidence < self.policy.ai_threshold:
            logger.info(
                f"AI extraction confidence too low ({ai_confidence:.2f}) for business card {card_id}"
            )
            return await self._hold_for_verification(
                session,
                card_id,
                user_id,
                contact_data,
                f"Low AI confidence ({as_percent(ai_confidence)}%). Please verify extracted data.",
            )

        # Step 5: Create the contact
        fields = contact_data.contact_fields()
        fields["name"] = fields.get("name") or UNKNOWN_CONTACT_NAME
        fields["notes"] = f"Extracted from business card with {as_percent(ai_confidence)}% confidence"
        contact = await storage.create_contact(session, user_id, fields)

        written = await self._write(
            session,
            card_id,
            user_id,
            {
                "contact_id": contact.id,
                "extracted_data": contact_data.to_dict(),
                "ai_confidence": ai_confidence,
                "processing_status": models.ProcessingStatus.COMPLETED,
                "processing_error": None,
            },
        )
        if not written:
            # The card was verified into its own contact meanwhile
            await storage.delete_contact(session, contact.id, user_id)
            return await self._current_status(session, card_id, user_id)

        try:
            os.remove(file_path)
        except OSError as e:
            logger.warning(f"Could not remove upload {file_path} for business card {card_id}: {e}")

        logger.info(f"Business card {card_id} processed successfully into contact {contact.id}")
        return models.ProcessingStatus.COMPLETED

    async def _hold_for_verification(
        self,
        session: AsyncSession,
        card_id: int,
        user_id: str,
        contact_data: ExtractedContactData,
        message: str,
    ) -> models.ProcessingStatus:
        written = await self._write(
            session,
            card_id,
            user_id,
            {
                "processing_status": models.ProcessingStatus.PENDING_VERIFICATION,
                "processing_error": message,
                "extracted_data": contact_data.to_dict(),
                "ai_confidence": contact_data.confidence,
            },
        )
        if not written:
            return await self._current_status(session, card_id, user_id)
        return models.ProcessingStatus.PENDING_VERIFICATION


async def verify_business_card(
    session: AsyncSession,
    card_id: int,
    user_id: str,
    fields: Mapping[str, Any],
) -> tuple[models.BusinessCard, models.Contact] | None:
    """Create a contact from human-verified fields and complete the card.

    Confidence checks are skipped. Returns None when the card is not found
    for this user.
    """
    card = await storage.get_business_card(session, card_id, user_id)
    if card is None:
        return None

    contact = await storage.create_contact(session, user_id, fields)
    card = await storage.update_business_card(
        session,
        card_id,
        user_id,
        {
            "contact_id": contact.id,
            "processing_status": models.ProcessingStatus.COMPLETED,
            "processing_error": None,
        },
    )
    logger.info(f"Business card {card_id} verified into contact {contact.id}")
    return card, contact
