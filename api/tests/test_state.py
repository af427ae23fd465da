"""Tests for persisted state normalisation, the state store and analytics.

Tests cover:
- Defaults for missing fields and legacy camelCase documents
- Rejection of corrupt documents and the store's fallback to a fresh state
- Insights, algorithm metrics and recommendations over a learned state
"""

import asyncio
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from dosewise.services import state_store
from dosewise.services.catalog import Catalog
from dosewise.stats import insights
from dosewise.stats.state import GOALS, AppState, HourlyPosterior, ItemPosterior, SessionRecord


# ======================================================================
# Document parsing
# ======================================================================


class TestStateParsing:
    """AppState.from_raw normalises whatever storage hands back."""

    def test_empty_inputs(self):
        for raw in (None, "", b"", {}):
            state = AppState.from_raw(raw)
            assert state.posteriors == {}
            assert state.history == []
            assert state.streak == 0
            assert set(state.pooling.goal_priors) == set(GOALS)

    def test_partial_posterior_gets_defaults(self):
        state = AppState.from_raw({"posteriors": {"eye-break": {"trials": 2}}})
        posterior = state.posteriors["eye-break"]
        assert (posterior.alpha, posterior.beta) == (1.5, 1.0)
        assert posterior.hourly_posteriors == {}
        assert posterior.last_reset_ms is None

    def test_legacy_document(self):
        raw = {
            "models": {
                "box-breathing": {
                    "trials": 3,
                    "avg": 0.5,
                    "emaAvg": 0.4,
                    "alphaParam": 3.0,
                    "betaParam": 2.0,
                    "medDuration": 105,
                    "hourlyModels": {"9": {"trials": 2, "alpha": 2.0, "beta": 1.0, "avg": 0.75}},
                    "windowScores": [1, 0, 1, 1, -1, 1, 1],
                    "lastResetTimestamp": 1000,
                },
            },
            "history": [{
                "dateISO": "2026-01-01T09:00:00.000Z",
                "goal": "calm",
                "protocolId": "box-breathing",
                "seconds": 120,
                "delta": 1,
            }],
            "streak": 2,
        }
        state = AppState.from_raw(raw)
        posterior = state.posteriors["box-breathing"]
        assert (posterior.alpha, posterior.beta) == (3.0, 2.0)
        assert posterior.running_average == 0.5
        assert posterior.ema_average == 0.4
        assert posterior.dose_seconds == 105
        assert posterior.hourly_posteriors[9].trials == 2
        assert posterior.recent_scores == [1, 1, -1, 1, 1]
        assert posterior.last_reset_ms == 1000
        assert state.history[0].item_id == "box-breathing"
        assert state.history[0].timestamp.tzinfo is not None
        assert state.streak == 2

    def test_dump_and_reload(self):
        state = AppState(posteriors={"eye-break": ItemPosterior(trials=4, alpha=3.0, beta=3.0)})
        state.posteriors["eye-break"].hourly_posteriors[14] = HourlyPosterior(trials=1, alpha=2.0)
        restored = AppState.from_raw(state.to_raw())
        assert restored == state

    @pytest.mark.parametrize("raw", [
        "{not json",
        {"posteriors": {"eye-break": {"trials": -1}}},
        {"posteriors": {"eye-break": {"alpha": 0}}},
        {"history": [{"timestamp": "2026-01-01T00:00:00Z", "goal": "calm",
                      "item_id": "eye-break", "seconds": 60, "delta": 3}]},
    ])
    def test_corrupt_documents_rejected(self, raw):
        with pytest.raises(ValueError):
            AppState.from_raw(raw)

    def test_validation_error_is_value_error(self):
        assert issubclass(ValidationError, ValueError)


class _FakeDocument:
    def __init__(self, payload):
        self.payload = payload


class _FakeSession:
    """Just enough of AsyncSession for load_state."""

    def __init__(self, document=None):
        self.document = document

    async def get(self, model, key):
        return self.document


class TestStateStore:
    """Missing and unreadable documents both load as a fresh state."""

    def test_storage_key(self):
        assert state_store.storage_key("ana") == "dosewise.v1:ana"

    def test_missing_document(self):
        state = asyncio.run(state_store.load_state(_FakeSession(), "ana"))
        assert state == AppState()

    def test_corrupt_document_falls_back(self, caplog):
        session = _FakeSession(_FakeDocument({"posteriors": {"x": {"trials": -5}}}))
        with caplog.at_level("WARNING"):
            state = asyncio.run(state_store.load_state(session, "ana"))
        assert state.posteriors == {}
        assert "Discarding unreadable state document" in caplog.text

    def test_valid_document(self):
        session = _FakeSession(_FakeDocument({"streak": 4}))
        state = asyncio.run(state_store.load_state(session, "ana"))
        assert state.streak == 4


# ======================================================================
# Analytics
# ======================================================================


def _record(item_id, delta, goal="calm"):
    return SessionRecord(
        timestamp=datetime(2026, 2, 1, 9, tzinfo=timezone.utc),
        goal=goal, item_id=item_id, seconds=90, delta=delta,
    )


def _learned_state():
    state = AppState(posteriors={
        "box-breathing": ItemPosterior(trials=100, alpha=90.0, beta=10.0, running_average=0.3, ema_average=0.8),
        "eye-break": ItemPosterior(trials=4, alpha=3.0, beta=3.5, running_average=0.2, ema_average=0.25),
        "alternate-nostril": ItemPosterior(trials=2, alpha=3.0, beta=1.0),
        "physiological-sigh": ItemPosterior(trials=0),
    })
    state.history = [_record("box-breathing", 1) for _ in range(12)] + [_record("eye-break", 0)]
    return state


class TestInsights:
    """Per-protocol summaries."""

    names = Catalog().names()

    def test_only_rated_items_best_first(self):
        rows = insights.get_insights(_learned_state(), self.names)
        assert [r["item_id"] for r in rows] == ["box-breathing", "alternate-nostril", "eye-break"]
        assert rows[0]["name"] == "Box Breathing 4-4-4-4"

    def test_recommendation_and_trend(self):
        row = insights.get_insights(_learned_state(), self.names)[0]
        assert row["performance"] == pytest.approx(0.9)
        assert row["confidence"] > 0.95
        assert row["recommendation"] == "Excellent protocol - use frequently"
        assert row["trend"] == "improving"

    def test_middling_item(self):
        rows = {r["item_id"]: r for r in insights.get_insights(_learned_state(), self.names)}
        assert rows["eye-break"]["recommendation"] == "Needs more data"
        assert rows["eye-break"]["trend"] == "stable"

    def test_top_recommendations_need_three_ratings(self):
        top = insights.get_top_recommendations(_learned_state(), self.names)
        assert [r["item_id"] for r in top] == ["box-breathing", "eye-break"]

    def test_top_recommendations_filter_by_goal(self):
        supported = {p.id: p.supports for p in Catalog().all()}
        top = insights.get_top_recommendations(_learned_state(), self.names, goal="pre-sleep", supported=supported)
        assert [r["item_id"] for r in top] == ["box-breathing"]

    def test_contextual_prefers_hourly_means(self):
        state = _learned_state()
        state.posteriors["eye-break"].hourly_posteriors[21] = HourlyPosterior(trials=5, alpha=50.0, beta=1.0)
        ranked = insights.get_contextual_recommendations(state, self.names, 21)
        assert ranked[0]["item_id"] == "eye-break"
        assert ranked[0]["contextual_score"] == pytest.approx(50 / 51)

    def test_goal_predictions_cover_unrated(self):
        predictions = insights.get_goal_predictions(AppState(), ["eye-break", "box-breathing"], "focus")
        assert set(predictions) == {"eye-break", "box-breathing"}
        assert predictions["eye-break"]["confidence"] == "low"


class TestAlgorithmMetrics:
    """Whole-state health indicators."""

    def test_empty_state(self):
        metrics = insights.get_algorithm_metrics(AppState())
        assert metrics["total_sessions"] == 0
        assert metrics["exploration_rate"] == 0.0
        assert metrics["average_confidence"] == 0.0
        assert metrics["convergence_status"] == "exploring"

    def test_learned_state(self):
        state = _learned_state()
        state.posteriors["eye-break"].last_reset_ms = 1.0
        metrics = insights.get_algorithm_metrics(state)
        assert metrics["total_sessions"] == 13
        assert metrics["unique_items"] == 3
        assert metrics["exploration_rate"] == pytest.approx(2 / 3)
        assert metrics["drift_detections"] == 1
        assert metrics["convergence_status"] in {"converging", "converged"}

    def test_summary_text(self):
        state = _learned_state()
        state.posteriors["eye-break"].last_reset_ms = 1.0
        summary = insights.performance_summary(state)
        assert summary.startswith("Algorithm Performance Summary")
        assert "Total Sessions: 13" in summary
        assert "Drift Detected: 1 protocol(s)" in summary
        assert "Protocols Tested: 3" in summary

    def test_selected_but_unrated_not_counted(self, engine):
        state = AppState()
        engine.select_item(state, "focus")
        assert len(state.posteriors) == 1
        assert insights.get_algorithm_metrics(state)["unique_items"] == 0

    def test_hierarchical_report_after_feedback(self, engine):
        state = AppState()
        for item_id in ("box-breathing", "eye-break", "alternate-nostril"):
            for delta in (1, 1, 0):
                engine.record_feedback(state, item_id, delta, 90, "focus")
        report = insights.get_hierarchical_report(state)
        assert set(report) == {"diagnostics", "insights", "best_by_goal", "transfer"}
        assert report["best_by_goal"]["focus"]["item_id"] in {"box-breathing", "eye-break", "alternate-nostril"}
        assert 0.0 <= report["diagnostics"]["coverage"] <= 1.0


class TestAnalyticsReadOnly:
    """Analytics never write back into the state they summarise."""

    def test_queries_leave_state_unchanged(self, engine, clock):
        state = _learned_state()
        for goal in ("calm", "focus", "pre-sleep"):
            for delta in (1, -1, 0, 1):
                decision = engine.select_item(state, goal)
                engine.record_feedback(state, decision.item_id, delta, decision.dose_seconds, goal)
                clock.advance(hours=1)
        before = state.to_raw()

        catalog = Catalog()
        names = catalog.names()
        supported = {p.id: p.supports for p in catalog.all()}
        insights.get_insights(state, names)
        insights.get_algorithm_metrics(state)
        insights.get_top_recommendations(state, names)
        insights.get_top_recommendations(state, names, goal="calm", supported=supported)
        insights.get_contextual_recommendations(state, names, 9)
        insights.get_goal_predictions(state, list(names), "focus")
        insights.get_hierarchical_report(state)
        insights.performance_summary(state)

        assert state.to_raw() == before
