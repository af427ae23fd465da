"""Insights router: read-only analytics over a user's learning state."""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from dosewise.core.database import get_db
from dosewise.core.dependencies import UserKey, get_catalog
from dosewise.services.catalog import Catalog
from dosewise.services.state_store import load_state
from dosewise.stats import insights
from dosewise.stats.state import Goal

router = APIRouter(tags=["insights"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class ItemInsight(BaseModel):
    item_id: str
    name: str
    trials: int
    performance: float
    confidence: float
    credible_interval: tuple[float, float]
    best_hour: int | None = None
    trend: str
    significant_change: bool
    dose_seconds: float | None = None
    recommendation: str


class AlgorithmMetrics(BaseModel):
    total_sessions: int
    unique_items: int
    exploration_rate: float
    drift_detections: int
    average_confidence: float
    convergence_status: str
    streak: int
    summary: str


class Recommendations(BaseModel):
    top: list[ItemInsight]
    contextual: list[ItemInsight] | None = None
    predictions: dict[str, dict] | None = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/users/{user_key}/insights", response_model=list[ItemInsight])
async def get_insights(
    user_key: UserKey,
    catalog: Catalog = Depends(get_catalog),
    db: AsyncSession = Depends(get_db),
) -> list[ItemInsight]:
    """Per-protocol performance, confidence, trend and advice."""
    state = await load_state(db, user_key)
    return [ItemInsight(**row) for row in insights.get_insights(state, catalog.names())]


@router.get("/users/{user_key}/metrics", response_model=AlgorithmMetrics)
async def get_metrics(
    user_key: UserKey,
    db: AsyncSession = Depends(get_db),
) -> AlgorithmMetrics:
    """Exploration rate, drift detections and convergence status."""
    state = await load_state(db, user_key)
    return AlgorithmMetrics(
        **insights.get_algorithm_metrics(state),
        summary=insights.performance_summary(state),
    )


@router.get("/users/{user_key}/recommendations", response_model=Recommendations)
async def get_recommendations(
    user_key: UserKey,
    n: int = Query(3, ge=1, le=10),
    goal: Goal | None = None,
    hour: int | None = Query(None, ge=0, le=23),
    catalog: Catalog = Depends(get_catalog),
    db: AsyncSession = Depends(get_db),
) -> Recommendations:
    """Best-established protocols, optionally for one goal and hour of day."""
    state = await load_state(db, user_key)
    names = catalog.names()
    supported = {p.id: p.supports for p in catalog.all()}

    top = insights.get_top_recommendations(state, names, n=n, goal=goal, supported=supported)
    contextual = None
    if hour is not None:
        contextual = [
            ItemInsight(**{k: v for k, v in row.items() if k != "contextual_score"})
            for row in insights.get_contextual_recommendations(state, names, hour)
        ]
    predictions = None
    if goal is not None:
        predictions = insights.get_goal_predictions(state, [p.id for p in catalog.by_goal(goal)], goal)

    return Recommendations(
        top=[ItemInsight(**row) for row in top],
        contextual=contextual,
        predictions=predictions,
    )


@router.get("/users/{user_key}/hierarchy")
async def get_hierarchy(
    user_key: UserKey,
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Hierarchical pooling diagnostics and transfer-learning summary."""
    state = await load_state(db, user_key)
    return insights.get_hierarchical_report(state)
