"""Background execution of ingestion runs.

Uploads return as soon as the card row exists; the run itself is an asyncio
task owned by the runner rather than by the request that started it.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardbook import models, storage

from .ingest import CardIngestionPipeline

logger = logging.getLogger(__name__)

STALE_CARD_MESSAGE = "Processing was interrupted before completion. Please upload the card again."


class IngestionRunner:
    """Schedules pipeline runs and tracks them until they finish.

    There is no queue and no concurrency cap: each submitted card gets its
    own task immediately.
    """

    def __init__(self, pipeline: CardIngestionPipeline) -> None:
        self.pipeline = pipeline
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def submit(self, card_id: int, file_path: str, user_id: str) -> asyncio.Task:
        """Start processing a card in the background."""
        if self._closed:
            raise RuntimeError("Ingestion runner is shut down")

        task = asyncio.create_task(
            self.pipeline.run(card_id, file_path, user_id),
            name=f"ingest-card-{card_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.info(f"Started processing business card {card_id}")
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Task {task.get_name()} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Task {task.get_name()} crashed: {exc}", exc_info=exc)

    async def drain(self) -> None:
        """Wait for every run submitted so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, grace_seconds: float = 10.0) -> None:
        """Stop accepting work, wait up to ``grace_seconds``, cancel the rest.

        Cancelled cards stay in ``processing`` and are picked up by
        ``recover_stale_cards`` on the next start.
        """
        self._closed = True
        if not self._tasks:
            return

        pending = list(self._tasks)
        logger.info(f"Waiting for {len(pending)} ingestion runs to finish")
        _, still_running = await asyncio.wait(pending, timeout=grace_seconds)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} unfinished ingestion runs")
            await asyncio.gather(*still_running, return_exceptions=True)


async def recover_stale_cards(
    session_maker: async_sessionmaker[AsyncSession],
    *,
    stale_after_minutes: int,
) -> int:
    """Fail cards left in ``processing`` by a previous process.

    Returns the number of cards updated; a non-positive age disables recovery.
    """
    if stale_after_minutes <= 0:
        return 0

    cutoff = datetime.utcnow() - timedelta(minutes=stale_after_minutes)
    async with session_maker() as session:
        count = await storage.fail_stale_business_cards(
            session,
            older_than=cutoff,
            message=STALE_CARD_MESSAGE,
        )
    if count:
        logger.warning(
            f"Marked {count} business cards stuck in {models.ProcessingStatus.PROCESSING.value} as failed"
        )
    return count
