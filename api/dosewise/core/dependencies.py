from typing import Annotated

import numpy as np
from fastapi import Path

from dosewise.core.config import settings
from dosewise.services.catalog import Catalog, default_catalog
from dosewise.stats.engine import DecisionEngine

# Opaque per-user partition key; each key owns one state document
UserKey = Annotated[str, Path(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_.@-]+$")]


def get_catalog() -> Catalog:
    return default_catalog


def get_engine() -> DecisionEngine:
    """Build a decision engine for one request.

    Engines hold no user state; a fresh one per request keeps the random
    source independent between concurrent users.
    """
    return DecisionEngine(
        default_catalog,
        rng=np.random.default_rng(settings.RANDOM_SEED),
        hourly_exploration=settings.HOURLY_EXPLORATION_ENABLED,
        min_hourly_trials=settings.MIN_HOURLY_TRIALS,
    )
