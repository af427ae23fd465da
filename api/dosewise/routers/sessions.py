"""Sessions router: protocol selection, rating feedback and state reset.

Each request loads the user's state document, runs the decision engine on
it and writes it back within the same database session.
"""

import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from dosewise.core.database import get_db
from dosewise.core.dependencies import UserKey, get_engine
from dosewise.routers.protocols import ProtocolOut
from dosewise.services.state_store import clear_state, load_state, save_state
from dosewise.stats.bayesian import beta_mean, credible_interval_95
from dosewise.stats.engine import DecisionEngine
from dosewise.stats.state import Goal

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class SelectionRequest(BaseModel):
    goal: Goal


class SelectionResponse(BaseModel):
    item: ProtocolOut
    dose_seconds: float
    trace: dict


class FeedbackRequest(BaseModel):
    item_id: str
    delta: Literal[-1, 0, 1]
    session_seconds: float = Field(ge=0)
    goal: Goal | None = None


class PosteriorOut(BaseModel):
    item_id: str
    trials: int
    alpha: float
    beta: float
    posterior_mean: float
    credible_interval: tuple[float, float]
    running_average: float
    ema_average: float
    recent_variance: float
    dose_seconds: float | None = None
    last_reset_ms: float | None = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/users/{user_key}/selection", response_model=SelectionResponse)
async def select_protocol(
    user_key: UserKey,
    body: SelectionRequest,
    engine: DecisionEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db),
) -> SelectionResponse:
    """Pick the next protocol and dose for a goal."""
    state = await load_state(db, user_key)
    decision = engine.select_item(state, body.goal)
    if decision.item is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No protocols support goal {body.goal}",
        )

    await save_state(db, user_key, state)
    return SelectionResponse(
        item=ProtocolOut.model_validate(decision.item.model_dump()),
        dose_seconds=decision.dose_seconds,
        trace=decision.trace.to_dict(),
    )


@router.post("/users/{user_key}/feedback", response_model=PosteriorOut)
async def record_feedback(
    user_key: UserKey,
    body: FeedbackRequest,
    engine: DecisionEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db),
) -> PosteriorOut:
    """Record a session rating and return the updated posterior."""
    state = await load_state(db, user_key)
    try:
        posterior = engine.record_feedback(
            state, body.item_id, body.delta, body.session_seconds, goal=body.goal
        )
    except LookupError as exc:
        logger.info("Feedback for unknown protocol %s from %s", body.item_id, user_key)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    await save_state(db, user_key, state)
    return PosteriorOut(
        item_id=body.item_id,
        trials=posterior.trials,
        alpha=posterior.alpha,
        beta=posterior.beta,
        posterior_mean=beta_mean(posterior.alpha, posterior.beta),
        credible_interval=credible_interval_95(posterior.alpha, posterior.beta),
        running_average=posterior.running_average,
        ema_average=posterior.ema_average,
        recent_variance=posterior.recent_variance,
        dose_seconds=posterior.dose_seconds,
        last_reset_ms=posterior.last_reset_ms,
    )


@router.delete("/users/{user_key}/state", status_code=status.HTTP_204_NO_CONTENT)
async def delete_state(
    user_key: UserKey,
    db: AsyncSession = Depends(get_db),
) -> None:
    """Forget everything learned for this user."""
    if not await clear_state(db, user_key):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No state for this user")
