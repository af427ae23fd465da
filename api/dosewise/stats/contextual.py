"""Hour-of-day sub-models layered under each protocol's global posterior.

The hourly posteriors are kept up to date on every rating but, by default,
only feed analytics: plain Thompson sampling on the global posterior beat
naive hourly conditioning on every workload we simulated.  The engine can
opt back in through its ``hourly_exploration`` flag.
"""

from __future__ import annotations

from datetime import datetime

import numpy as np

from dosewise.stats.bayesian import beta_mean, sample_beta, update_posterior
from dosewise.stats.state import HourlyPosterior, ItemPosterior

MIN_HOURLY_TRIALS = 1


def current_context(now: datetime) -> dict:
    """Describe ``now`` as hour, weekday, weekend flag and time-of-day bucket."""
    hour = now.hour
    if 5 <= hour < 12:
        time_of_day = "morning"
    elif 12 <= hour < 17:
        time_of_day = "afternoon"
    elif 17 <= hour < 22:
        time_of_day = "evening"
    else:
        time_of_day = "night"

    weekday = now.weekday()
    return {
        "hour": hour,
        "weekday": weekday,
        "is_weekend": weekday >= 5,
        "time_of_day": time_of_day,
    }


def update_hourly(posterior: ItemPosterior, hour: int, reward: float) -> HourlyPosterior:
    """Apply one reward to the sub-model for ``hour``, creating it at Beta(1, 1)."""
    if not 0 <= hour <= 23:
        raise ValueError("hour must be between 0 and 23")

    hourly = posterior.hourly_posteriors.get(hour)
    if hourly is None:
        hourly = HourlyPosterior()
        posterior.hourly_posteriors[hour] = hourly

    hourly.alpha, hourly.beta = update_posterior(hourly.alpha, hourly.beta, reward)
    hourly.trials += 1
    hourly.avg = (hourly.avg * (hourly.trials - 1) + reward) / hourly.trials
    return hourly


def sample_contextual(posterior: ItemPosterior, hour: int, rng: np.random.Generator) -> float:
    """Sample the hourly posterior when it has data, else the global one."""
    hourly = posterior.hourly_posteriors.get(hour)
    if hourly is not None and hourly.trials >= MIN_HOURLY_TRIALS:
        return sample_beta(hourly.alpha, hourly.beta, rng)
    return sample_beta(posterior.alpha, posterior.beta, rng)


def hourly_summary(posterior: ItemPosterior) -> list[dict]:
    """Hours with data, best posterior mean first."""
    rows = [
        {
            "hour": hour,
            "performance": beta_mean(h.alpha, h.beta),
            "trials": h.trials,
        }
        for hour, h in posterior.hourly_posteriors.items()
        if h.trials >= MIN_HOURLY_TRIALS
    ]
    rows.sort(key=lambda r: r["performance"], reverse=True)
    return rows


def best_hour(posterior: ItemPosterior) -> int | None:
    summary = hourly_summary(posterior)
    return summary[0]["hour"] if summary else None
