"""Tests for LLM contact extraction."""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from ai.extraction import ContactExtractionError, OpenAIContactExtractor, clean_extraction


def fake_client(content=None, error=None):
    client = MagicMock()
    if error is not None:
        client.chat.completions.create = AsyncMock(side_effect=error)
    else:
        message = MagicMock()
        message.content = content
        choice = MagicMock()
        choice.message = message
        client.chat.completions.create = AsyncMock(return_value=MagicMock(choices=[choice]))
    return client


class TestCleanExtraction:
    """Test cases for clean_extraction."""

    def test_full_card(self):
        data = clean_extraction({
            "name": " Jane Roe ",
            "email": "jane@acme.test",
            "phone": "+1 (555) 010-0100",
            "company": "Acme",
            "title": "CTO",
            "industry": "technology",
            "confidence": 0.9,
        })

        assert data.name == "Jane Roe"
        assert data.phone == "+1 (555) 010-0100"
        assert data.industry == "Technology"
        assert data.confidence == 0.9

    def test_email_without_at_is_dropped(self):
        data = clean_extraction({"name": "Jane Roe", "email": "jane.acme.test", "company": "Acme", "confidence": 0.8})

        assert data.email is None
        assert "email" not in data.to_dict()

    def test_unknown_industry_is_dropped(self):
        data = clean_extraction({"name": "Jane Roe", "industry": "Space Piracy"})

        assert data.industry is None

    def test_few_fields_cap_confidence(self):
        data = clean_extraction({"name": "Jane Roe", "company": "Acme", "confidence": 0.95})

        assert data.confidence == 0.4

    def test_short_name_caps_confidence(self):
        data = clean_extraction({
            "name": "JR",
            "email": "jr@acme.test",
            "company": "Acme",
            "title": "CTO",
            "confidence": 0.95,
        })

        assert data.confidence == 0.3

    @pytest.mark.parametrize("raw, expected", [
        (None, 0.4),  # default 0.5, then capped for thin extraction
        ("high", 0.4),
        (1.7, 0.4),
        (-0.2, 0.0),
        (0, 0.0),
    ])
    def test_confidence_is_clamped(self, raw, expected):
        data = clean_extraction({"name": "Jane Roe", "confidence": raw})

        assert data.confidence == expected

    def test_default_confidence_without_cap(self):
        data = clean_extraction({"name": "Jane Roe", "email": "jane@acme.test", "company": "Acme"})

        assert data.confidence == 0.5

    def test_non_string_values_are_ignored(self):
        data = clean_extraction({"name": ["Jane"], "phone": 5550100, "company": ""})

        assert data.name is None
        assert data.phone is None
        assert data.company is None


class TestOpenAIContactExtractor:
    """Test cases for OpenAIContactExtractor."""

    def test_extract(self):
        client = fake_client(json.dumps({
            "name": "Jane Roe",
            "email": "jane@acme.test",
            "company": "Acme",
            "title": "CTO",
            "confidence": 0.88,
        }))
        extractor = OpenAIContactExtractor(client=client, model="test-model")

        data = asyncio.run(extractor.extract("Jane Roe\nCTO\nAcme\njane@acme.test"))

        assert data.name == "Jane Roe"
        assert data.confidence == 0.88
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "Jane Roe\nCTO" in kwargs["messages"][1]["content"]
        assert "Technology" in kwargs["messages"][0]["content"]

    def test_invalid_json_raises(self):
        extractor = OpenAIContactExtractor(client=fake_client("not json"), model="test-model")

        with pytest.raises(ContactExtractionError):
            asyncio.run(extractor.extract("Jane Roe"))

    def test_non_object_json_raises(self):
        extractor = OpenAIContactExtractor(client=fake_client("[1, 2]"), model="test-model")

        with pytest.raises(ContactExtractionError):
            asyncio.run(extractor.extract("Jane Roe"))

    def test_api_failure_raises(self):
        extractor = OpenAIContactExtractor(client=fake_client(error=TimeoutError("timed out")), model="test-model")

        with pytest.raises(ContactExtractionError, match="timed out"):
            asyncio.run(extractor.extract("Jane Roe"))
