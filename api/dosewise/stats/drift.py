"""Concentration-drift detection for per-protocol posteriors.

A protocol that used to work can stop working (habituation, changed
circumstances).  The detector watches the variance of the last few raw
ratings; when it is high and the cooldown since the previous reset has
expired, the posterior is collapsed toward its current mean so the
sampler starts exploring the protocol again.
"""

from __future__ import annotations

import math

import numpy as np

WINDOW_SIZE = 5
MIN_SAMPLES = 3
VARIANCE_THRESHOLD = 0.30
RESET_COOLDOWN_MS = 3_600_000
RETAINED_FRACTION = 0.25

HISTORY_WINDOW = 10
SIGNIFICANT_CHANGE = 0.5


def update_score_window(window: list[int], delta: int, size: int = WINDOW_SIZE) -> list[int]:
    """Append ``delta`` and keep only the ``size`` most recent ratings."""
    return (list(window) + [int(delta)])[-size:]


def recent_variance(window: list[int]) -> float:
    """Population variance of the rating window, or 0 with fewer than 3 samples."""
    if len(window) < MIN_SAMPLES:
        return 0.0
    return float(np.var(np.asarray(window, dtype=float)))


def should_reset(variance: float, last_reset_ms: float | None, now_ms: float) -> bool:
    """True iff the variance crosses the threshold and the cooldown has expired.

    Parameters
    ----------
    variance : float
        Current recent-score variance.
    last_reset_ms : float | None
        Epoch milliseconds of the previous reset, or None if never reset.
    now_ms : float
        Current epoch milliseconds.
    """
    if variance < VARIANCE_THRESHOLD:
        return False
    if last_reset_ms is None:
        return True
    return now_ms - last_reset_ms >= RESET_COOLDOWN_MS


def soft_reset(alpha: float, beta: float) -> tuple[float, float]:
    """Collapse a posterior toward its mean, keeping a quarter of its evidence.

    ``kept = floor((alpha + beta - 2) * 0.25)`` pseudo-trials survive and are
    redistributed on top of Beta(1, 1) at the pre-reset mean.
    """
    total_prior_trials = alpha + beta - 2.0
    mean = alpha / (alpha + beta)
    kept = math.floor(max(total_prior_trials, 0.0) * RETAINED_FRACTION)
    return (1.0 + mean * kept, 1.0 + (1.0 - mean) * kept)


def analyze_session_history(item_id: str, history: list) -> dict:
    """Compare the last ten ratings of an item against the ten before them.

    Parameters
    ----------
    item_id : str
        Protocol to analyse.
    history : list
        Session records (objects with ``item_id`` and ``delta``), oldest first.

    Returns
    -------
    dict
        ``{"has_enough_data", "recent_mean", "previous_mean", "change",
        "significant_change"}``.  Means are None when fewer than 20
        sessions exist for the item.
    """
    deltas = [r.delta for r in history if r.item_id == item_id]
    if len(deltas) < 2 * HISTORY_WINDOW:
        return {
            "has_enough_data": False,
            "recent_mean": None,
            "previous_mean": None,
            "change": 0.0,
            "significant_change": False,
        }

    recent = float(np.mean(deltas[-HISTORY_WINDOW:]))
    previous = float(np.mean(deltas[-2 * HISTORY_WINDOW:-HISTORY_WINDOW]))
    change = recent - previous
    return {
        "has_enough_data": True,
        "recent_mean": recent,
        "previous_mean": previous,
        "change": change,
        "significant_change": abs(change) > SIGNIFICANT_CHANGE,
    }
