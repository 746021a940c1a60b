"""Natural-language contact search: question in, SearchCriteria out."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Protocol

from openai import AsyncOpenAI

from cardbook.config import settings
from cardbook.criteria import SearchCriteria, parse_criteria
from cardbook.models import Industry

from .client import get_openai_client

logger = logging.getLogger(__name__)

QUERY_SYSTEM_PROMPT = """You are a smart contact database assistant. Given a natural language query about contacts,
translate it into a JSON object of filter criteria for a database search.

Return JSON of this shape (every part optional):
{{
  "where": {{
    "<field>": {{"<operator>": <value>}},
    "and": [<where>, ...],
    "or": [<where>, ...]
  }},
  "orderBy": {{"column": "<field>", "order": "asc" | "desc"}}
}}

Fields: name, email, company, title, industry, createdAt.
Operators:
- name, email, company, title, industry: "ilike" (case-insensitive contains) or "eq" (exact)
- createdAt: "gte" or "lte" with an ISO 8601 timestamp
Keys inside one "where" object are combined with AND.
Known industries: {industries}.
Today is {today}. Resolve relative times ("last week", "recent") against it.

Examples:
"construction industry" -> {{"where": {{"industry": {{"ilike": "construction"}}}}}}
"recent contacts" -> {{"orderBy": {{"column": "createdAt", "order": "desc"}}}}
"people from TechCorp" -> {{"where": {{"company": {{"ilike": "TechCorp"}}}}}}
"john or jane" -> {{"where": {{"or": [{{"name": {{"ilike": "john"}}}}, {{"name": {{"ilike": "jane"}}}}]}}}}

Return only valid JSON."""


class QueryInterpreter(Protocol):
    """Turns a free-text question into search criteria. Must not raise."""

    async def interpret(self, query: str) -> SearchCriteria:
        ...


class OpenAIQueryInterpreter:
    """Query interpretation through the OpenAI chat completions API.

    Any failure, from the network to malformed JSON, yields empty criteria
    so the search falls back to listing all of the user's contacts.
    """

    def __init__(self, client: AsyncOpenAI | None = None, model: str | None = None) -> None:
        self._client = client
        self.model = model or settings.llm.model

    @property
    def client(self) -> AsyncOpenAI:
        return self._client or get_openai_client()

    def _system_prompt(self) -> str:
        return QUERY_SYSTEM_PROMPT.format(
            industries=", ".join(industry.value for industry in Industry),
            today=datetime.now(timezone.utc).date().isoformat(),
        )

    async def interpret(self, query: str) -> SearchCriteria:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self._system_prompt()},
                    {"role": "user", "content": query},
                ],
                response_format={"type": "json_object"},
                temperature=0.0,
            )
            raw = json.loads(response.choices[0].message.content or "{}")
            criteria = parse_criteria(raw)
        except Exception as e:
            logger.warning(f"Query interpretation failed, searching without filters: {e}")
            return SearchCriteria()

        logger.info(f"Interpreted search query {query!r} as {criteria}")
        return criteria
