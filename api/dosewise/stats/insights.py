"""Read-only analytics over a user's learning state.

Nothing here mutates posteriors; every function takes the state and
returns plain dicts ready for the API layer.
"""

from __future__ import annotations

import math

import numpy as np

from dosewise.stats import drift, pooling, transfer
from dosewise.stats.bayesian import beta_mean, beta_variance, credible_interval_95
from dosewise.stats.contextual import best_hour
from dosewise.stats.hierarchical import (
    build_hierarchical_model,
    diagnose_hierarchical_model,
    export_hierarchical_insights,
    hierarchical_recommendation,
)
from dosewise.stats.state import AppState, ItemPosterior

TREND_THRESHOLD = 0.2
RECENT_SESSIONS = 20
MIN_RECOMMENDATION_TRIALS = 3
MIN_HOURLY_RECOMMENDATION_TRIALS = 2


def _trend(posterior: ItemPosterior) -> str:
    if not posterior.ema_average or not posterior.running_average:
        return "stable"
    difference = posterior.ema_average - posterior.running_average
    if difference > TREND_THRESHOLD:
        return "improving"
    if difference < -TREND_THRESHOLD:
        return "declining"
    return "stable"


def _recommendation(posterior: ItemPosterior, performance: float, confidence: float) -> str:
    if performance > 0.7 and confidence > 0.8:
        return "Excellent protocol - use frequently"
    if performance > 0.6 and confidence < 0.6:
        return "Promising - needs more data"
    if performance < 0.4 and confidence > 0.7:
        return "Avoid - consistently underperforms"
    if performance < 0.5 and confidence < 0.6:
        return "Uncertain - try a few more times"
    if posterior.recent_variance > 0.3:
        return "Unstable - preferences may be changing"
    if 0.5 <= performance <= 0.6:
        return "Good option - works well"
    return "Needs more data"


def get_insights(state: AppState, names: dict[str, str]) -> list[dict]:
    """Per-protocol performance summary, best first.

    Parameters
    ----------
    state : AppState
        The user's state.
    names : dict[str, str]
        Display names keyed by protocol id.

    Returns
    -------
    list[dict]
        One entry per protocol with at least one rating.
    """
    insights = []
    for item_id, posterior in state.posteriors.items():
        if posterior.trials == 0:
            continue
        performance = beta_mean(posterior.alpha, posterior.beta)
        confidence = 1 - math.sqrt(beta_variance(posterior.alpha, posterior.beta))
        history = drift.analyze_session_history(item_id, state.history)
        insights.append({
            "item_id": item_id,
            "name": names.get(item_id, item_id),
            "trials": posterior.trials,
            "performance": performance,
            "confidence": confidence,
            "credible_interval": credible_interval_95(posterior.alpha, posterior.beta),
            "best_hour": best_hour(posterior),
            "trend": _trend(posterior),
            "significant_change": history["significant_change"],
            "dose_seconds": posterior.dose_seconds,
            "recommendation": _recommendation(posterior, performance, confidence),
        })
    insights.sort(key=lambda i: i["performance"], reverse=True)
    return insights


def get_algorithm_metrics(state: AppState) -> dict:
    total_sessions = len(state.history)
    unique_items = sum(1 for p in state.posteriors.values() if p.trials > 0)

    recent = state.history[-RECENT_SESSIONS:]
    denom = min(len(recent), unique_items)
    exploration_rate = len({r.item_id for r in recent}) / denom if recent and denom else 0.0

    drift_detections = sum(1 for p in state.posteriors.values() if p.last_reset_ms is not None)

    confidences = [
        1 - math.sqrt(beta_variance(p.alpha, p.beta))
        for p in state.posteriors.values()
        if p.trials > 0
    ]
    average_confidence = float(np.mean(confidences)) if confidences else 0.0

    if total_sessions < 10:
        status = "exploring"
    elif average_confidence > 0.8:
        status = "converged"
    else:
        status = "converging"

    return {
        "total_sessions": total_sessions,
        "unique_items": unique_items,
        "exploration_rate": exploration_rate,
        "drift_detections": drift_detections,
        "average_confidence": average_confidence,
        "convergence_status": status,
        "streak": state.streak,
    }


def get_top_recommendations(
    state: AppState,
    names: dict[str, str],
    n: int = 3,
    goal: str | None = None,
    supported: dict[str, tuple] | None = None,
) -> list[dict]:
    """Protocols with at least three ratings ranked by performance x confidence.

    When ``goal`` is given, ``supported`` (protocol id -> goals) restricts
    the ranking to protocols that serve it.
    """
    qualified = [i for i in get_insights(state, names) if i["trials"] >= MIN_RECOMMENDATION_TRIALS]
    if goal is not None and supported is not None:
        qualified = [i for i in qualified if goal in supported.get(i["item_id"], ())]
    qualified.sort(key=lambda i: i["performance"] * i["confidence"], reverse=True)
    return qualified[:n]


def get_contextual_recommendations(state: AppState, names: dict[str, str], hour: int) -> list[dict]:
    """Top three for ``hour``, preferring hourly means backed by two ratings."""
    ranked = []
    for insight in get_insights(state, names):
        if insight["trials"] < MIN_RECOMMENDATION_TRIALS:
            continue
        hourly = state.posteriors[insight["item_id"]].hourly_posteriors.get(hour)
        score = insight["performance"]
        if hourly is not None and hourly.trials >= MIN_HOURLY_RECOMMENDATION_TRIALS:
            score = beta_mean(hourly.alpha, hourly.beta)
        ranked.append({**insight, "contextual_score": score})
    ranked.sort(key=lambda i: i["contextual_score"], reverse=True)
    return ranked[:3]


def get_hierarchical_report(state: AppState) -> dict:
    model = build_hierarchical_model(pooling.item_goal_table(state.pooling))
    best = {
        goal: hierarchical_recommendation(model, goal, list(layer.children))
        for goal, layer in model.children.items()
        if layer.children
    }
    return {
        "diagnostics": diagnose_hierarchical_model(model),
        "insights": export_hierarchical_insights(model),
        "best_by_goal": best,
        "transfer": transfer.transfer_insights(state.transfer),
    }


def performance_summary(state: AppState) -> str:
    metrics = get_algorithm_metrics(state)
    lines = [
        "Algorithm Performance Summary",
        "",
        f"Total Sessions: {metrics['total_sessions']}",
        f"Protocols Tested: {metrics['unique_items']}",
        f"Confidence Level: {metrics['average_confidence'] * 100:.1f}%",
        f"Status: {metrics['convergence_status'].upper()}",
    ]
    if metrics["drift_detections"] > 0:
        lines.append(
            f"Drift Detected: {metrics['drift_detections']} protocol(s) reset due to preference changes"
        )

    rate = metrics["exploration_rate"]
    if rate > 0.5:
        label = "Still exploring"
    elif rate > 0.2:
        label = "Balanced"
    else:
        label = "Mostly exploiting"
    lines.append(f"Exploration Rate: {rate * 100:.1f}% ({label})")
    return "\n".join(lines)


def get_goal_predictions(state: AppState, item_ids: list[str], goal: str) -> dict[str, dict]:
    """Pooled-model predictions for each protocol under ``goal``, rated or not."""
    return {item_id: pooling.predict_performance(state.pooling, item_id, goal) for item_id in item_ids}
