"""Typed, validated shapes for a user's persisted learning state.

Everything the engine remembers about one user lives in a single
``AppState`` document: per-protocol posteriors, the session log, the pooled
goal model and the transfer-learning knowledge base.  Documents written by
older clients used camelCase keys and left most fields optional; the
aliases below accept those spellings and the defaults fill the gaps, so the
normalisation happens exactly once, when the document is parsed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from dosewise.stats.bayesian import DEFAULT_ALPHA, DEFAULT_BETA

Goal = Literal["calm", "focus", "pre-sleep"]
GOALS: tuple[str, ...] = ("calm", "focus", "pre-sleep")


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class _StateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Per-protocol posteriors
# ---------------------------------------------------------------------------


class HourlyPosterior(_StateModel):
    trials: int = Field(0, ge=0)
    alpha: float = Field(1.0, gt=0)
    beta: float = Field(1.0, gt=0)
    avg: float = 0.0


class ItemPosterior(_StateModel):
    """Everything learned about one protocol for one user."""

    trials: int = Field(0, ge=0)
    alpha: float = Field(DEFAULT_ALPHA, gt=0, validation_alias=_alias("alpha", "alphaParam"))
    beta: float = Field(DEFAULT_BETA, gt=0, validation_alias=_alias("beta", "betaParam"))
    running_average: float = Field(0.0, validation_alias=_alias("running_average", "avg"))
    ema_average: float = Field(0.0, validation_alias=_alias("ema_average", "emaAvg"))
    dose_seconds: float | None = Field(None, validation_alias=_alias("dose_seconds", "medDuration"))
    hourly_posteriors: dict[int, HourlyPosterior] = Field(
        default_factory=dict, validation_alias=_alias("hourly_posteriors", "hourlyModels")
    )
    recent_scores: list[int] = Field(
        default_factory=list, validation_alias=_alias("recent_scores", "windowScores")
    )
    recent_variance: float = Field(0.0, validation_alias=_alias("recent_variance", "recentVariance"))
    last_reset_ms: float | None = Field(
        None, validation_alias=_alias("last_reset_ms", "lastResetTimestamp")
    )
    last_delta: int | None = Field(None, validation_alias=_alias("last_delta", "lastDelta"))
    last_used: datetime | None = Field(None, validation_alias=_alias("last_used", "lastUsedISO"))
    prior_alpha: float = Field(DEFAULT_ALPHA, gt=0)
    prior_beta: float = Field(DEFAULT_BETA, gt=0)

    @model_validator(mode="after")
    def _trim_window(self) -> ItemPosterior:
        if len(self.recent_scores) > 5:
            self.recent_scores = self.recent_scores[-5:]
        return self


class SessionRecord(_StateModel):
    timestamp: datetime = Field(validation_alias=_alias("timestamp", "dateISO"))
    goal: Goal
    item_id: str = Field(validation_alias=_alias("item_id", "protocolId"))
    seconds: float = Field(ge=0)
    delta: Literal[-1, 0, 1]


# ---------------------------------------------------------------------------
# Pooled goal model
# ---------------------------------------------------------------------------


class BetaParams(_StateModel):
    alpha: float = Field(DEFAULT_ALPHA, gt=0)
    beta: float = Field(DEFAULT_BETA, gt=0)


class GoalPrior(BetaParams):
    item_count: int = Field(0, ge=0, validation_alias=_alias("item_count", "protocolCount"))


class ItemGoalNode(BetaParams):
    trials: int = Field(0, ge=0)


class PooledGoalModel(_StateModel):
    """Global -> goal -> item:goal Beta priors, updated on every rating."""

    global_prior: BetaParams = Field(
        default_factory=BetaParams, validation_alias=_alias("global_prior", "globalPrior")
    )
    goal_priors: dict[str, GoalPrior] = Field(
        default_factory=dict, validation_alias=_alias("goal_priors", "goalPriors")
    )
    item_goal: dict[str, ItemGoalNode] = Field(
        default_factory=dict, validation_alias=_alias("item_goal", "protocolGoalModels")
    )

    @model_validator(mode="after")
    def _fill_goals(self) -> PooledGoalModel:
        for goal in GOALS:
            self.goal_priors.setdefault(goal, GoalPrior())
        return self


# ---------------------------------------------------------------------------
# Transfer-learning knowledge
# ---------------------------------------------------------------------------


class ItemFeature(_StateModel):
    item_id: str
    duration_seconds: float
    cadence: float
    complexity: float
    physical_load: float
    cognitive_load: float
    goal_affinities: dict[str, float] = Field(default_factory=dict)
    embedding: list[float] = Field(default_factory=list)


class MetaParameters(_StateModel):
    learning_rate: float = 0.1
    similarity_threshold: float = 0.6
    transfer_strength: float = 0.4


class LearningEpisode(_StateModel):
    item_id: str
    goal: str
    initial_prior: BetaParams
    final_performance: float
    trials: int = Field(ge=0)


class TransferKnowledge(_StateModel):
    item_features: dict[str, ItemFeature] = Field(default_factory=dict)
    similarity_matrix: dict[str, dict[str, float]] = Field(default_factory=dict)
    meta: MetaParameters = Field(default_factory=MetaParameters)
    performance_history: list[LearningEpisode] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Whole document
# ---------------------------------------------------------------------------


class AppState(_StateModel):
    """One user's complete learning state."""

    posteriors: dict[str, ItemPosterior] = Field(
        default_factory=dict, validation_alias=_alias("posteriors", "models")
    )
    history: list[SessionRecord] = Field(default_factory=list)
    streak: int = Field(0, ge=0)
    pooling: PooledGoalModel = Field(default_factory=PooledGoalModel)
    transfer: TransferKnowledge = Field(default_factory=TransferKnowledge)

    @classmethod
    def from_raw(cls, raw: Union[str, bytes, dict, None]) -> AppState:
        """Parse a stored document, filling defaults for anything missing.

        Raises ``pydantic.ValidationError`` (or ``ValueError`` for malformed
        JSON text) when the document cannot be interpreted; the persistence
        layer decides how to recover.
        """
        if raw is None or raw == "" or raw == b"":
            return cls()
        if isinstance(raw, (str, bytes)):
            return cls.model_validate_json(raw)
        return cls.model_validate(raw)

    def to_raw(self) -> dict:
        return self.model_dump(mode="json")

    def item_history(self, item_id: str) -> list[SessionRecord]:
        return [r for r in self.history if r.item_id == item_id]

    @property
    def total_trials(self) -> int:
        return sum(p.trials for p in self.posteriors.values())
