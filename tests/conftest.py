"""
Test fixtures for the progression engine.

Provides an in-memory store, a controllable clock, and a ledger, achievement
engine and reward engine wired together for one user. Redis is replaced by a
MagicMock backed by a dict.
"""

from __future__ import annotations

import pytest
from unittest.mock import MagicMock
from datetime import datetime, timedelta

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))


class FakeClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    # A Wednesday, mid ISO week 11
    return FakeClock(datetime(2026, 3, 11, 10, 0, 0))


@pytest.fixture
def store():
    from kv_store import MemoryStore
    return MemoryStore()


@pytest.fixture
def ledger(store, clock):
    from progress_store import ProgressLedger
    return ProgressLedger(store, user_id="u1", clock=clock)


@pytest.fixture
def achievements(store, clock):
    from achievements import AchievementEngine
    return AchievementEngine(store, user_id="u1", clock=clock)


@pytest.fixture
def engine(ledger, achievements):
    from reward_engine import RewardEngine
    return RewardEngine(ledger, achievements)


@pytest.fixture
def fake_redis():
    """MagicMock standing in for redis.Redis, storing bytes in a dict."""
    data: dict[str, bytes] = {}
    client = MagicMock()

    def _set(key, value):
        data[key] = value.encode() if isinstance(value, str) else value
        return True

    def _delete(key):
        return 1 if data.pop(key, None) is not None else 0

    client.get.side_effect = lambda key: data.get(key)
    client.set.side_effect = _set
    client.delete.side_effect = _delete
    client.data = data
    return client
