"""Shared OpenAI client.

Built lazily so the service can start (and tests can run) without an API key;
the key is only needed once an extraction or search actually calls out.
"""
from __future__ import annotations

import logging
from functools import lru_cache

from openai import AsyncOpenAI

from cardbook.config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_openai_client() -> AsyncOpenAI:
    """Create and cache the async OpenAI client.

    Retries are disabled; failed calls surface to the caller immediately.
    """
    logger.info(f"Initialising OpenAI client for model {settings.llm.model}")
    return AsyncOpenAI(
        api_key=settings.llm.api_key,
        timeout=settings.llm.timeout_seconds,
        max_retries=0,
    )
