"""Shared fixtures.

The database URL is pinned to an in-memory SQLite engine before any test
module imports the application settings.
"""

import os
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["RANDOM_SEED"] = "7"

from dosewise.services.catalog import Catalog, Protocol  # noqa: E402
from dosewise.stats.engine import DecisionEngine  # noqa: E402


class FakeClock:
    """Controllable replacement for the engine's wall clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def engine(rng, clock):
    return DecisionEngine(Catalog(), rng=rng, clock=clock)


def focus_catalog(*ids: str) -> Catalog:
    """Synthetic catalog of focus-only protocols with a 120 s base dose."""
    return Catalog(tuple(
        Protocol(id=item_id, name=item_id.title(), supports=("focus",), base_seconds=120)
        for item_id in ids
    ))
