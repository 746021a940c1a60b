"""Shared fixtures: a throwaway SQLite database and helpers to call the store."""
import asyncio
import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="cardbook-tests-")
os.environ["DB_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR}/cardbook.db"
os.environ["UPLOAD_DIR"] = os.path.join(_TMP_DIR, "uploads")
os.environ["LOG_FORMAT"] = "text"
os.environ.pop("AUTH_PROXY_SECRET", None)

import pytest

from cardbook.db import AsyncSessionMaker, engine
from cardbook.models import Base


async def _reset_schema():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture(autouse=True)
def database():
    """Fresh tables for every test."""
    asyncio.run(_reset_schema())
    yield


def _run_in_session(fn, *args, **kwargs):
    async def _call():
        async with AsyncSessionMaker() as session:
            return await fn(session, *args, **kwargs)

    return asyncio.run(_call())


@pytest.fixture
def db():
    """Call a store function with a fresh session: ``db(storage.get_contact, 1, "user")``."""
    return _run_in_session
