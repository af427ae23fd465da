"""Decision engine: protocol selection, feedback updates and dose search.

Selection is a decision table of named phases evaluated top to bottom; the
first phase that produces a decision wins.  The drift sweep never decides
on its own, it only resets stale posteriors before the scoring phases run.

    no_candidates       -> sentinel decision (item None)
    untried             -> uniform pick among protocols never rated
    undertried          -> uniform pick among protocols with < 2 ratings,
                           skipping ones that consistently hurt (EMA < -0.3)
    hourly_exploration  -> (disabled by default) force ratings per hour
    drift_sweep         -> full reset of drifting posteriors, then continue
    close_competition   -> ensemble vote when the top two are within 0.05
    standard            -> Thompson draw plus a small uncertainty bonus

Every decision carries a ``DecisionTrace`` describing which phase fired,
what was scored and what the exploration gate advised.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, NamedTuple, Optional

import numpy as np

from dosewise.stats import drift, pooling, transfer
from dosewise.stats.bandits import Arm, EnsembleArbitrator
from dosewise.stats.bayesian import (
    DEFAULT_ALPHA,
    DEFAULT_BETA,
    beta_mean,
    beta_variance,
    delta_to_reward,
    sample_beta,
    update_posterior,
)
from dosewise.stats.contextual import update_hourly
from dosewise.stats.exploration import exploration_recommendation
from dosewise.stats.priors import resolve_prior
from dosewise.stats.state import GOALS, AppState, BetaParams, ItemPosterior, SessionRecord

if TYPE_CHECKING:
    from dosewise.services.catalog import Catalog, Protocol

logger = logging.getLogger(__name__)

MIN_TRIALS_FOR_THOMPSON = 2
EXPLORATION_BONUS = 0.05
HARMFUL_EMA = -0.3
CLOSE_COMPETITION_THRESHOLD = 0.05
CLOSE_COMPETITION_MIN_TRIALS = 20
FLAT_LANDSCAPE_RANGE = 0.10
FLAT_LANDSCAPE_MIN_TRIALS = 50
EMA_SMOOTHING = 0.2

MIN_DOSE_SECONDS = 45
MAX_DOSE_SECONDS = 180
STEP_MOMENTUM = 10
STEP_DEFAULT = 15
STEP_RECOVERY = 20


def _local_now() -> datetime:
    return datetime.now().astimezone()


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class DecisionTrace:
    """Provenance of one selection."""

    goal: str
    phase: str = ""
    candidates: list[str] = field(default_factory=list)
    scores: dict[str, float] = field(default_factory=dict)
    reason: str = ""
    drift_resets: list[str] = field(default_factory=list)
    seeded: dict[str, str] = field(default_factory=dict)
    ensemble: Optional[dict] = None
    exploration: Optional[dict] = None
    flat_landscape: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Decision:
    item: Optional[Protocol]
    dose_seconds: float
    trace: DecisionTrace

    @property
    def item_id(self) -> str | None:
        return self.item.id if self.item is not None else None


class _Cycle:
    """Working state for one selection call."""

    def __init__(self, state: AppState, goal: str, candidates: list, now: datetime) -> None:
        self.state = state
        self.goal = goal
        self.candidates = candidates
        self.now = now
        self.now_ms = now.timestamp() * 1000.0
        self.trace = DecisionTrace(goal=goal, candidates=[p.id for p in candidates])

    def posterior(self, item_id: str) -> ItemPosterior | None:
        return self.state.posteriors.get(item_id)

    def trials(self, item_id: str) -> int:
        p = self.posterior(item_id)
        return p.trials if p is not None else 0


class Phase(NamedTuple):
    name: str
    applies: Callable[[_Cycle], bool]
    run: Callable[[_Cycle], Optional[Decision]]


# ---------------------------------------------------------------------------
# Dose search
# ---------------------------------------------------------------------------


def adjust_dose(last_delta: int, current_seconds: float, recent_deltas: list[int]) -> float:
    """Minimum-effective-dose step.

    Parameters
    ----------
    last_delta : int
        The rating just received.
    current_seconds : float
        Duration of the rated session.
    recent_deltas : list[int]
        The protocol's most recent ratings, oldest first, including
        ``last_delta``.  Only the last three are considered.

    Returns
    -------
    float
        Next duration: shorter after "better", longer after "worse".  The
        step is 10 s when the last two ratings were both "better", 20 s when
        any of the last three was "worse", 15 s otherwise.  The result is
        always clamped to [45, 180], whatever duration was rated.
    """
    recent = list(recent_deltas)[-3:]
    step = STEP_DEFAULT
    if recent and all(d == 1 for d in recent[-2:]):
        step = STEP_MOMENTUM
    if any(d == -1 for d in recent):
        step = STEP_RECOVERY

    if last_delta == 1:
        seconds = current_seconds - step
    elif last_delta == -1:
        seconds = current_seconds + step
    else:
        seconds = current_seconds
    return float(min(MAX_DOSE_SECONDS, max(MIN_DOSE_SECONDS, seconds)))


def _update_streak(state: AppState, now: datetime) -> None:
    if not state.history:
        state.streak = 1
        return
    last = state.history[-1].timestamp
    if last.tzinfo is not None and now.tzinfo is not None:
        last = last.astimezone(now.tzinfo)
    gap = (now.date() - last.date()).days
    if gap == 1:
        state.streak += 1
    elif gap > 1 or state.streak == 0:
        state.streak = 1


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class DecisionEngine:
    """Selects protocols and learns from ratings for one user's state.

    Parameters
    ----------
    catalog : Catalog
        Protocols to choose from.
    rng : np.random.Generator | None
        Random source for every draw; a fresh generator when omitted.
    clock : Callable[[], datetime] | None
        Returns the current time; defaults to the local wall clock.
    hourly_exploration : bool
        Enable the per-hour exploration phase.
    min_hourly_trials : int
        Ratings required per hour before that phase lets go.
    """

    def __init__(
        self,
        catalog: Catalog,
        rng: np.random.Generator | None = None,
        clock: Callable[[], datetime] | None = None,
        hourly_exploration: bool = False,
        min_hourly_trials: int = 2,
    ) -> None:
        self.catalog = catalog
        self.rng = rng if rng is not None else np.random.default_rng()
        self.clock = clock or _local_now
        self.hourly_exploration = hourly_exploration
        self.min_hourly_trials = min_hourly_trials
        self.phases: tuple[Phase, ...] = (
            Phase("no_candidates", self._no_candidates, self._sentinel),
            Phase("untried", self._has_untried, self._pick_untried),
            Phase("undertried", self._has_undertried, self._pick_undertried),
            Phase("hourly_exploration", self._has_hourly_gaps, self._pick_hourly),
            Phase("drift_sweep", self._has_drift, self._sweep_drift),
            Phase("close_competition", self._is_close_competition, self._ensemble),
            Phase("standard", lambda cycle: True, self._thompson),
        )

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_item(self, state: AppState, goal: str) -> Decision:
        """Choose a protocol and dose for ``goal``.

        Mutates ``state`` only to register protocols for transfer learning,
        create posteriors lazily and apply drift resets.
        """
        candidates = self.catalog.by_goal(goal)
        cycle = _Cycle(state, goal, candidates, self.clock())
        for protocol in candidates:
            transfer.register_item(state.transfer, protocol.id, protocol.base_seconds, list(protocol.supports))

        for phase in self.phases:
            if not phase.applies(cycle):
                continue
            decision = phase.run(cycle)
            if decision is None:
                continue
            decision.trace.phase = phase.name
            if decision.item is not None:
                self._ensure_posterior(state, decision.item, goal, decision.trace)
            logger.debug(
                "Selected %s for %s via %s (%s)",
                decision.item_id, goal, phase.name, decision.trace.reason,
            )
            return decision

        raise RuntimeError("Decision table produced no decision")

    def _decide(self, cycle: _Cycle, protocol, reason: str, learned_dose: bool = True) -> Decision:
        dose = protocol.base_seconds
        posterior = cycle.posterior(protocol.id)
        if learned_dose and posterior is not None and posterior.dose_seconds:
            dose = posterior.dose_seconds
        cycle.trace.reason = reason
        return Decision(item=protocol, dose_seconds=float(dose), trace=cycle.trace)

    def _ensure_posterior(self, state: AppState, protocol, goal: str | None, trace: DecisionTrace | None = None) -> ItemPosterior:
        posterior = state.posteriors.get(protocol.id)
        if posterior is not None:
            return posterior

        transfer.register_item(state.transfer, protocol.id, protocol.base_seconds, list(protocol.supports))
        prior, source = resolve_prior(state, protocol.id, goal)
        posterior = ItemPosterior(
            alpha=prior.alpha,
            beta=prior.beta,
            prior_alpha=prior.alpha,
            prior_beta=prior.beta,
        )
        state.posteriors[protocol.id] = posterior
        if trace is not None:
            trace.seeded[protocol.id] = source
        logger.debug("Created posterior for %s from %s prior %.3f/%.3f", protocol.id, source, prior.alpha, prior.beta)
        return posterior

    def _choice(self, items: list):
        return items[int(self.rng.integers(len(items)))]

    # -- phase 0 --------------------------------------------------------

    def _no_candidates(self, cycle: _Cycle) -> bool:
        return not cycle.candidates

    def _sentinel(self, cycle: _Cycle) -> Decision:
        cycle.trace.reason = f"No protocols support goal {cycle.goal!r}"
        return Decision(item=None, dose_seconds=0.0, trace=cycle.trace)

    # -- phase 1 --------------------------------------------------------

    def _untried(self, cycle: _Cycle) -> list:
        return [p for p in cycle.candidates if cycle.trials(p.id) == 0]

    def _has_untried(self, cycle: _Cycle) -> bool:
        return bool(self._untried(cycle))

    def _pick_untried(self, cycle: _Cycle) -> Decision:
        untried = self._untried(cycle)
        protocol = self._choice(untried)
        return self._decide(cycle, protocol, f"Exploring untried protocol ({len(untried)} untried)", learned_dose=False)

    # -- phase 2 --------------------------------------------------------

    def _undertried(self, cycle: _Cycle) -> list:
        found = []
        for p in cycle.candidates:
            posterior = cycle.posterior(p.id)
            if posterior is None or posterior.ema_average < HARMFUL_EMA:
                continue
            if posterior.trials < MIN_TRIALS_FOR_THOMPSON:
                found.append(p)
        return found

    def _has_undertried(self, cycle: _Cycle) -> bool:
        return bool(self._undertried(cycle))

    def _pick_undertried(self, cycle: _Cycle) -> Decision:
        protocol = self._choice(self._undertried(cycle))
        return self._decide(
            cycle, protocol,
            f"Building data ({cycle.trials(protocol.id)} trials)",
            learned_dose=False,
        )

    # -- phase 2b -------------------------------------------------------

    def _hourly_gaps(self, cycle: _Cycle) -> list:
        hour = cycle.now.hour
        found = []
        for p in cycle.candidates:
            posterior = cycle.posterior(p.id)
            if posterior is None or posterior.trials == 0 or posterior.ema_average < HARMFUL_EMA:
                continue
            hourly = posterior.hourly_posteriors.get(hour)
            if hourly is None or hourly.trials < self.min_hourly_trials:
                found.append(p)
        return found

    def _has_hourly_gaps(self, cycle: _Cycle) -> bool:
        return self.hourly_exploration and bool(self._hourly_gaps(cycle))

    def _pick_hourly(self, cycle: _Cycle) -> Decision:
        protocol = self._choice(self._hourly_gaps(cycle))
        return self._decide(cycle, protocol, f"Hourly exploration at hour {cycle.now.hour}", learned_dose=False)

    # -- phase 3 --------------------------------------------------------

    def _drifting(self, cycle: _Cycle) -> list:
        found = []
        for p in cycle.candidates:
            posterior = cycle.posterior(p.id)
            if posterior is None:
                continue
            if drift.should_reset(posterior.recent_variance, posterior.last_reset_ms, cycle.now_ms):
                found.append(p)
        return found

    def _has_drift(self, cycle: _Cycle) -> bool:
        return bool(self._drifting(cycle))

    def _sweep_drift(self, cycle: _Cycle) -> None:
        state = cycle.state
        for protocol in self._drifting(cycle):
            old = state.posteriors[protocol.id]
            transfer.record_performance(
                state.transfer, protocol.id, cycle.goal,
                BetaParams(alpha=old.prior_alpha, beta=old.prior_beta),
                old.alpha, old.beta, old.trials,
            )
            state.posteriors[protocol.id] = ItemPosterior(
                alpha=DEFAULT_ALPHA,
                beta=DEFAULT_BETA,
                last_reset_ms=cycle.now_ms,
            )
            cycle.trace.drift_resets.append(protocol.id)
            logger.info("Drift detected for %s, resetting posterior", protocol.id)
        return None

    # -- phase 4 --------------------------------------------------------

    def _ranked(self, cycle: _Cycle) -> list[tuple[str, float, int]]:
        ranked = []
        for p in cycle.candidates:
            posterior = cycle.posterior(p.id)
            if posterior is None or posterior.trials == 0:
                continue
            ranked.append((p.id, beta_mean(posterior.alpha, posterior.beta), posterior.trials))
        ranked.sort(key=lambda r: r[1], reverse=True)
        return ranked

    def _is_close_competition(self, cycle: _Cycle) -> bool:
        ranked = self._ranked(cycle)
        if len(ranked) < 2:
            return False
        (_, mean_a, trials_a), (_, mean_b, trials_b) = ranked[0], ranked[1]
        return (
            trials_a >= CLOSE_COMPETITION_MIN_TRIALS
            and trials_b >= CLOSE_COMPETITION_MIN_TRIALS
            and mean_a - mean_b < CLOSE_COMPETITION_THRESHOLD
        )

    def _arms(self, cycle: _Cycle) -> list[Arm]:
        arms = []
        for p in cycle.candidates:
            posterior = cycle.posterior(p.id)
            if posterior is None:
                arms.append(Arm(p.id, DEFAULT_ALPHA, DEFAULT_BETA, 0))
            else:
                arms.append(Arm(p.id, posterior.alpha, posterior.beta, posterior.trials))
        return arms

    def _advise(self, cycle: _Cycle, arms: list[Arm], total_trials: int) -> None:
        means = [a.mean for a in arms]
        best, worst = max(means), min(means)
        cycle.trace.exploration = exploration_recommendation(arms, best, total_trials)
        cycle.trace.flat_landscape = (best - worst) < FLAT_LANDSCAPE_RANGE and total_trials > FLAT_LANDSCAPE_MIN_TRIALS

    def _ensemble(self, cycle: _Cycle) -> Decision:
        arms = self._arms(cycle)
        total_trials = sum(a.trials for a in arms)
        result = EnsembleArbitrator(arms).select(total_trials, self.rng)

        cycle.trace.ensemble = result
        cycle.trace.scores = dict(result["tally"])
        self._advise(cycle, arms, total_trials)

        protocol = self.catalog.get(result["item_id"])
        return self._decide(cycle, protocol, f"Close competition: {result['explanation']}")

    # -- phase 5 --------------------------------------------------------

    def _thompson(self, cycle: _Cycle) -> Decision:
        best, best_score = None, -math.inf
        for protocol in cycle.candidates:
            posterior = cycle.posterior(protocol.id)
            if posterior is None or posterior.trials < MIN_TRIALS_FOR_THOMPSON:
                score = float(self.rng.random()) + EXPLORATION_BONUS
            else:
                draw = sample_beta(posterior.alpha, posterior.beta, self.rng)
                bonus = math.sqrt(beta_variance(posterior.alpha, posterior.beta)) * EXPLORATION_BONUS
                score = draw + bonus
            cycle.trace.scores[protocol.id] = score
            if score > best_score:
                best, best_score = protocol, score

        self._advise(cycle, self._arms(cycle), cycle.state.total_trials)
        return self._decide(cycle, best, f"Thompson sampling (score {best_score:.3f})")

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def record_feedback(
        self,
        state: AppState,
        item_id: str,
        delta: int,
        session_seconds: float,
        goal: str | None = None,
    ) -> ItemPosterior:
        """Learn from one rated session.

        Appends the session to the history and updates, in order: running
        averages, the Beta posterior, the hourly sub-model, the drift window
        (soft-resetting on confirmed drift), the pooled goal model, the
        transfer embedding and the learned dose.

        Raises
        ------
        LookupError
            If ``item_id`` is not in the catalog.
        ValueError
            If ``delta`` is not -1, 0 or 1, or ``goal`` is unknown.
        """
        protocol = self.catalog.get(item_id)
        reward = delta_to_reward(delta)
        delta = int(delta)
        if goal is None:
            goal = protocol.supports[0]
        if goal not in GOALS:
            raise ValueError(f"Unknown goal: {goal!r}")
        if session_seconds < 0:
            raise ValueError("session_seconds must be non-negative")

        now = self.clock()
        now_ms = now.timestamp() * 1000.0

        _update_streak(state, now)
        state.history.append(
            SessionRecord(timestamp=now, goal=goal, item_id=item_id, seconds=session_seconds, delta=delta)
        )

        transfer.register_item(state.transfer, protocol.id, protocol.base_seconds, list(protocol.supports))
        posterior = self._ensure_posterior(state, protocol, goal)

        # 1. Running and exponential averages
        if posterior.trials == 0:
            posterior.running_average = float(delta)
            posterior.ema_average = float(delta)
        else:
            posterior.running_average = (posterior.running_average * posterior.trials + delta) / (posterior.trials + 1)
            posterior.ema_average = posterior.ema_average * (1 - EMA_SMOOTHING) + delta * EMA_SMOOTHING
        posterior.trials += 1
        posterior.last_used = now
        posterior.last_delta = delta

        # 2. Conjugate update and hourly sub-model
        posterior.alpha, posterior.beta = update_posterior(posterior.alpha, posterior.beta, reward)
        update_hourly(posterior, now.hour, reward)

        # 3. Drift window
        posterior.recent_scores = drift.update_score_window(posterior.recent_scores, delta)
        posterior.recent_variance = drift.recent_variance(posterior.recent_scores)
        if drift.should_reset(posterior.recent_variance, posterior.last_reset_ms, now_ms):
            self._soft_reset(state, item_id, goal, posterior, now_ms)

        # 4. Pooled goal model and transfer embedding
        pooling.update_pooled_model(state.pooling, item_id, goal, reward)
        transfer.update_item_embedding(
            state.transfer, item_id, goal, beta_mean(posterior.alpha, posterior.beta)
        )

        # 5. Dose
        recent = [r.delta for r in state.item_history(item_id)[-3:]]
        posterior.dose_seconds = adjust_dose(delta, session_seconds, recent)

        logger.debug(
            "Updated %s: trials=%d alpha=%.2f beta=%.2f variance=%.3f dose=%.0f",
            item_id, posterior.trials, posterior.alpha, posterior.beta,
            posterior.recent_variance, posterior.dose_seconds,
        )
        return posterior

    def _soft_reset(self, state: AppState, item_id: str, goal: str, posterior: ItemPosterior, now_ms: float) -> None:
        transfer.record_performance(
            state.transfer, item_id, goal,
            BetaParams(alpha=posterior.prior_alpha, beta=posterior.prior_beta),
            posterior.alpha, posterior.beta, posterior.trials,
        )
        posterior.alpha, posterior.beta = drift.soft_reset(posterior.alpha, posterior.beta)
        posterior.prior_alpha, posterior.prior_beta = posterior.alpha, posterior.beta
        posterior.ema_average = 0.0
        posterior.running_average = 0.0
        posterior.last_reset_ms = now_ms
        posterior.recent_scores = []
        posterior.recent_variance = 0.0
        logger.info("Drift detected for %s, soft reset to %.2f/%.2f", item_id, posterior.alpha, posterior.beta)
