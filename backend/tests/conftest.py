"""Shared fixtures for tests.

Coroutines are driven with asyncio.run inside each test; no async fixtures.
"""
import os
from datetime import datetime, timezone

import pytest

# Must be set before importing app modules.
os.environ["APP_ENV"] = "test"
os.environ["STORAGE"] = "memory"
os.environ.pop("TELEGRAM_BOT_TOKEN", None)

from common.memory_store import MemoryRepository
from common.sql_store import SqlRepository


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current


class RecordingSender:
    """Stands in for TelegramClient.send_message."""

    def __init__(self):
        self.sent = []

    async def send_message(self, chat_id, text):
        self.sent.append((chat_id, text))
        return {"ok": True}

    @property
    def texts(self):
        return [text for _, text in self.sent]


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def memory_repo(clock):
    return MemoryRepository(clock=clock)


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture(params=["memory", "sql"])
def make_repo(request, clock):
    """Factory for either backend; each call builds a fresh, ready repository."""

    async def _make():
        if request.param == "memory":
            return MemoryRepository(clock=clock)
        repo = SqlRepository.from_url("sqlite+aiosqlite://", clock=clock)
        await repo.init_schema()
        return repo

    return _make
