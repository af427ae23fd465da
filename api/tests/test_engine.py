"""Tests for the decision engine.

Tests cover:
- Each selection phase of the decision table
- Feedback bookkeeping: averages, posterior, hourly model, pooling, streak
- Soft reset on drift and the full reset sweep at selection time
- Minimum-effective-dose search
- End-to-end simulations: convergence, close competition, preference shift
"""

import numpy as np
import pytest

from conftest import FakeClock, focus_catalog
from dosewise.services.catalog import Catalog
from dosewise.stats.engine import DecisionEngine, adjust_dose
from dosewise.stats.state import AppState, ItemPosterior


def _rate(rng, p):
    """+1 with probability ``p``, otherwise 0 or -1 with equal odds."""
    if rng.random() < p:
        return 1
    return 0 if rng.random() < 0.5 else -1


def _simulate(engine, state, clock, rates, trials, rng, step):
    picks, phases = [], []
    for t in range(trials):
        decision = engine.select_item(state, "focus")
        delta = _rate(rng, rates(t)[decision.item_id])
        engine.record_feedback(state, decision.item_id, delta, decision.dose_seconds, "focus")
        picks.append(decision.item_id)
        phases.append(decision.trace.phase)
        clock.advance(**step)
    return picks, phases


# ======================================================================
# Selection phases
# ======================================================================


class TestSelectionPhases:
    """The decision table, phase by phase."""

    def test_no_candidates(self, rng, clock):
        engine = DecisionEngine(focus_catalog("a"), rng=rng, clock=clock)
        decision = engine.select_item(AppState(), "pre-sleep")
        assert decision.item is None
        assert decision.dose_seconds == 0.0
        assert decision.trace.phase == "no_candidates"

    def test_untried_items_each_eligible(self, engine):
        state = AppState()
        seen = set()
        for _ in range(100):
            decision = engine.select_item(state, "calm")
            assert decision.trace.phase == "untried"
            seen.add(decision.item_id)
        assert seen == {p.id for p in Catalog().by_goal("calm")}

    def test_untried_exhausted_in_catalog_size_rounds(self, engine):
        state = AppState()
        picked = []
        for _ in range(5):
            decision = engine.select_item(state, "calm")
            assert decision.trace.phase == "untried"
            assert decision.dose_seconds == decision.item.base_seconds
            picked.append(decision.item_id)
            engine.record_feedback(state, decision.item_id, 0, decision.dose_seconds, "calm")
        assert len(set(picked)) == 5

    def test_first_selection_seeds_default_prior(self, engine):
        state = AppState()
        decision = engine.select_item(state, "focus")
        assert decision.trace.seeded == {decision.item_id: "default"}
        posterior = state.posteriors[decision.item_id]
        assert (posterior.alpha, posterior.beta, posterior.trials) == (1.5, 1.0, 0)

    def test_similar_protocol_seeds_transfer_prior(self, engine):
        state = AppState()
        engine.record_feedback(state, "box-breathing", 1, 120, "calm")
        decision = engine.select_item(state, "pre-sleep")
        assert decision.item_id in {"physiological-sigh", "4-7-8-breathing"}
        assert decision.trace.seeded[decision.item_id] == "transfer"

    def test_undertried_skips_harmful(self, rng, clock):
        engine = DecisionEngine(focus_catalog("a", "b", "c"), rng=rng, clock=clock)
        state = AppState(posteriors={
            "a": ItemPosterior(trials=1, ema_average=-1.0),
            "b": ItemPosterior(trials=1, ema_average=0.0),
            "c": ItemPosterior(trials=5, alpha=4.0, beta=2.5),
        })
        for _ in range(20):
            decision = engine.select_item(state, "focus")
            assert decision.trace.phase == "undertried"
            assert decision.item_id == "b"

    def test_hourly_exploration_disabled_by_default(self, rng, clock):
        state = AppState(posteriors={
            "a": ItemPosterior(trials=5, alpha=4.0, beta=2.5),
            "b": ItemPosterior(trials=5, alpha=2.5, beta=4.0),
        })
        off = DecisionEngine(focus_catalog("a", "b"), rng=rng, clock=clock)
        assert off.select_item(state, "focus").trace.phase == "standard"

        on = DecisionEngine(focus_catalog("a", "b"), rng=rng, clock=clock, hourly_exploration=True)
        decision = on.select_item(state, "focus")
        assert decision.trace.phase == "hourly_exploration"
        assert "hour 9" in decision.trace.reason

    def test_drift_sweep_resets_then_continues(self, rng, clock):
        engine = DecisionEngine(focus_catalog("a", "b"), rng=rng, clock=clock)
        now_ms = clock.now.timestamp() * 1000
        state = AppState(posteriors={
            "a": ItemPosterior(trials=30, alpha=20.0, beta=12.0, recent_variance=0.5,
                               last_reset_ms=now_ms - 2 * 3_600_000),
            "b": ItemPosterior(trials=10, alpha=6.0, beta=6.0),
        })
        decision = engine.select_item(state, "focus")

        assert decision.trace.drift_resets == ["a"]
        assert decision.trace.phase == "standard"
        reset = state.posteriors["a"]
        assert (reset.trials, reset.alpha, reset.beta) == (0, 1.5, 1.0)
        assert reset.last_reset_ms == pytest.approx(now_ms)
        episodes = state.transfer.performance_history
        assert len(episodes) == 1
        assert episodes[0].trials == 30

    def test_drift_sweep_respects_cooldown(self, rng, clock):
        engine = DecisionEngine(focus_catalog("a", "b"), rng=rng, clock=clock)
        now_ms = clock.now.timestamp() * 1000
        state = AppState(posteriors={
            "a": ItemPosterior(trials=30, alpha=20.0, beta=12.0, recent_variance=0.5,
                               last_reset_ms=now_ms - 60_000),
            "b": ItemPosterior(trials=10, alpha=6.0, beta=6.0),
        })
        decision = engine.select_item(state, "focus")
        assert decision.trace.drift_resets == []
        assert state.posteriors["a"].trials == 30

    def test_close_competition_uses_ensemble(self, rng, clock):
        engine = DecisionEngine(focus_catalog("a", "b", "c"), rng=rng, clock=clock)
        state = AppState(posteriors={
            "a": ItemPosterior(trials=25, alpha=20.5, beta=5.5),
            "b": ItemPosterior(trials=25, alpha=20.0, beta=6.0),
            "c": ItemPosterior(trials=25, alpha=8.0, beta=18.0),
        })
        decision = engine.select_item(state, "focus")
        trace = decision.trace
        assert trace.phase == "close_competition"
        assert trace.ensemble["consensus_score"] in {0.25, 0.5, 0.75, 1.0}
        assert decision.item_id == trace.ensemble["item_id"]
        assert trace.exploration is not None
        assert trace.flat_landscape is False

    def test_flat_landscape_flagged(self, rng, clock):
        engine = DecisionEngine(focus_catalog("a", "b", "c"), rng=rng, clock=clock)
        state = AppState(posteriors={
            "a": ItemPosterior(trials=20, alpha=10.0, beta=10.0),
            "b": ItemPosterior(trials=20, alpha=10.5, beta=10.0),
            "c": ItemPosterior(trials=20, alpha=9.5, beta=10.0),
        })
        assert engine.select_item(state, "focus").trace.flat_landscape is True

    def test_standard_uses_learned_dose(self, rng, clock):
        engine = DecisionEngine(focus_catalog("a", "b"), rng=rng, clock=clock)
        state = AppState(posteriors={
            "a": ItemPosterior(trials=30, alpha=27.0, beta=5.0, dose_seconds=100),
            "b": ItemPosterior(trials=30, alpha=5.0, beta=27.0),
        })
        decision = engine.select_item(state, "focus")
        assert decision.trace.phase == "standard"
        assert set(decision.trace.scores) == {"a", "b"}
        assert decision.item_id == "a"
        assert decision.dose_seconds == 100

    def test_trace_serialises(self, engine):
        trace = engine.select_item(AppState(), "focus").trace.to_dict()
        assert trace["phase"] == "untried"
        assert trace["goal"] == "focus"


# ======================================================================
# Feedback
# ======================================================================


class TestFeedback:
    """Everything one rated session updates."""

    def test_first_rating(self, engine, clock):
        state = AppState()
        posterior = engine.record_feedback(state, "box-breathing", 1, 120, "calm")

        assert posterior.trials == 1
        assert (posterior.alpha, posterior.beta) == (2.5, 1.0)
        assert posterior.running_average == 1.0
        assert posterior.ema_average == 1.0
        assert posterior.last_delta == 1
        assert posterior.hourly_posteriors[clock.now.hour].trials == 1
        assert state.pooling.item_goal["box-breathing:calm"].trials == 1
        assert len(state.history) == 1
        assert state.history[0].goal == "calm"
        assert state.streak == 1

    def test_averages(self, engine):
        state = AppState()
        engine.record_feedback(state, "box-breathing", 1, 120, "calm")
        posterior = engine.record_feedback(state, "box-breathing", -1, 110, "calm")
        assert posterior.running_average == pytest.approx(0.0)
        assert posterior.ema_average == pytest.approx(0.6)

    def test_goal_defaults_to_first_supported(self, engine):
        state = AppState()
        engine.record_feedback(state, "eye-break", 0, 60)
        assert state.history[0].goal == "focus"

    def test_rejects_bad_input(self, engine):
        state = AppState()
        with pytest.raises(LookupError):
            engine.record_feedback(state, "cold-plunge", 1, 60)
        with pytest.raises(ValueError):
            engine.record_feedback(state, "box-breathing", 2, 60)
        with pytest.raises(ValueError):
            engine.record_feedback(state, "box-breathing", 1, 60, "energy")
        with pytest.raises(ValueError):
            engine.record_feedback(state, "box-breathing", 1, -5)
        assert state.history == []
        assert state.posteriors == {}

    def test_soft_reset_on_drift(self, engine, clock):
        state = AppState(posteriors={
            "box-breathing": ItemPosterior(trials=10, alpha=9.0, beta=3.0, recent_scores=[1, 1, -1, 1]),
        })
        posterior = engine.record_feedback(state, "box-breathing", -1, 120, "calm")

        assert posterior.alpha + posterior.beta == pytest.approx(4.0)
        assert posterior.alpha == pytest.approx(1 + 2 * 9 / 13)
        assert posterior.ema_average == 0.0
        assert posterior.running_average == 0.0
        assert posterior.recent_scores == []
        # pseudo-counts shrink, the rating count does not
        assert posterior.trials == 11
        assert posterior.recent_variance == 0.0
        assert posterior.last_reset_ms == pytest.approx(clock.now.timestamp() * 1000)
        assert (posterior.prior_alpha, posterior.prior_beta) == (posterior.alpha, posterior.beta)
        assert state.transfer.performance_history[-1].trials == 11

    def test_no_second_reset_within_cooldown(self, engine, clock):
        state = AppState()
        for delta in [1, -1, 1, -1, 1]:
            engine.record_feedback(state, "box-breathing", delta, 120, "calm")
            clock.advance(minutes=1)
        first_reset = state.posteriors["box-breathing"].last_reset_ms
        assert first_reset is not None

        for delta in [1, -1, 1, -1, 1]:
            engine.record_feedback(state, "box-breathing", delta, 120, "calm")
            clock.advance(minutes=1)
        posterior = state.posteriors["box-breathing"]
        assert posterior.last_reset_ms == first_reset
        assert posterior.recent_variance >= 0.3

    def test_streak(self, engine, clock):
        state = AppState()
        engine.record_feedback(state, "eye-break", 1, 60)
        clock.advance(hours=1)
        engine.record_feedback(state, "eye-break", 1, 60)
        assert state.streak == 1
        clock.advance(days=1)
        engine.record_feedback(state, "eye-break", 1, 60)
        assert state.streak == 2
        clock.advance(days=3)
        engine.record_feedback(state, "eye-break", 1, 60)
        assert state.streak == 1


# ======================================================================
# Dose search
# ======================================================================


class TestDose:
    """Minimum-effective-dose steps."""

    def test_three_better_ratings(self, engine, clock):
        state = AppState()
        seconds = 120.0
        doses = []
        for _ in range(3):
            posterior = engine.record_feedback(state, "box-breathing", 1, seconds, "calm")
            seconds = posterior.dose_seconds
            doses.append(seconds)
            clock.advance(seconds=1)
        assert doses == [110.0, 100.0, 90.0]

    def test_worse_takes_precedence(self):
        assert adjust_dose(-1, 120, [1, -1]) == 140
        assert adjust_dose(1, 120, [-1, 1, 1]) == 100

    def test_default_step(self):
        assert adjust_dose(1, 120, [0, 1]) == 105

    def test_neutral_keeps_duration(self):
        assert adjust_dose(0, 100, [0]) == 100

    def test_bounds(self):
        assert adjust_dose(1, 50, [1, 1]) == 45
        assert adjust_dose(-1, 175, [-1]) == 180

    def test_out_of_range_sessions_are_clamped(self):
        assert adjust_dose(0, 20, [0]) == 45
        assert adjust_dose(0, 300, [0]) == 180
        assert adjust_dose(-1, 20, [-1]) == 45
        assert adjust_dose(1, 300, [1]) == 180

    def test_short_rated_session_stores_floor(self, engine):
        posterior = engine.record_feedback(AppState(), "eye-break", 0, 20, "focus")
        assert posterior.dose_seconds == 45

    def test_only_last_three_count(self):
        assert adjust_dose(1, 120, [-1, 0, 0, 1]) == 105


# ======================================================================
# Simulations
# ======================================================================


class TestSimulations:
    """Closed-loop runs against synthetic users."""

    def test_converges_on_best(self):
        rates = {"steady-a": 0.9, "steady-b": 0.5, "steady-c": 0.3}
        shares = []
        for seed in (1, 2, 3):
            local_clock = FakeClock()
            engine = DecisionEngine(focus_catalog(*rates), rng=np.random.default_rng(seed), clock=local_clock)
            picks, _ = _simulate(
                engine, AppState(), local_clock, lambda t: rates, 200,
                np.random.default_rng(seed + 100), {"seconds": 1},
            )
            shares.append(picks[-50:].count("steady-a") / 50)
        assert min(shares) > 0.7

    def test_close_competition_reaches_ensemble(self, clock):
        rates = {"close-a": 0.80, "close-b": 0.78, "far-c": 0.30}
        engine = DecisionEngine(focus_catalog(*rates), rng=np.random.default_rng(5), clock=clock)
        state = AppState()
        picks, phases = _simulate(
            engine, state, clock, lambda t: rates, 250, np.random.default_rng(6), {"seconds": 1},
        )
        assert state.posteriors["close-a"].trials >= 20
        assert state.posteriors["close-b"].trials >= 20
        assert "close_competition" in phases

    def test_adapts_to_preference_shift(self):
        def rates(t):
            if t < 100:
                return {"shift-x": 0.8, "shift-y": 0.5}
            return {"shift-x": 0.3, "shift-y": 0.7}

        shares = []
        for seed in range(1, 6):
            clock = FakeClock()
            engine = DecisionEngine(
                focus_catalog("shift-x", "shift-y"), rng=np.random.default_rng(seed), clock=clock,
            )
            picks, _ = _simulate(
                engine, AppState(), clock, rates, 200,
                np.random.default_rng(seed + 50), {"hours": 2},
            )
            shares.append(picks[-50:].count("shift-y") / 50)
        assert np.mean(shares) > 0.5
