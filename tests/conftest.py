"""Shared fixtures."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from patchwatch.db.models import Base
from patchwatch.ingest.base import CandidateListing
from patchwatch.notify.events import NotificationDispatcher, NotificationEvent
from patchwatch.tracking.models import TrackedEntity

PUBLISHED = datetime(2025, 9, 22, 12, 0, tzinfo=timezone.utc)


def make_entity(**overrides) -> TrackedEntity:
    fields = {
        "id": "hollow-knight",
        "user_id": "user-1",
        "title": "Hollow Knight",
        "current_version": "1.4",
    }
    fields.update(overrides)
    return TrackedEntity(**fields)


def make_listing(title: str, url: str = None, **overrides) -> CandidateListing:
    fields = {
        "title": title,
        "url": url or f"https://aggregator.example/{title.lower().replace(' ', '-')}",
        "source": "aggregator",
        "published_at": PUBLISHED,
    }
    fields.update(overrides)
    return CandidateListing(**fields)


class RecordingDispatcher(NotificationDispatcher):
    """Keeps every dispatched event."""

    def __init__(self):
        self.events: list[NotificationEvent] = []

    async def dispatch(self, event: NotificationEvent) -> bool:
        self.events.append(event)
        return True

    def kinds(self) -> list[str]:
        return [event.kind for event in self.events]


async def no_sleep(seconds: float) -> None:
    return None


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class WallClock:
    """UTC clock advanced by hand."""

    def __init__(self, now: datetime = datetime(2025, 10, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
async def session_factory(tmp_path):
    """SQLite-backed session factory with the schema created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'patchwatch.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False)
    finally:
        await engine.dispose()
