"""Value-of-information gate over exploration.

Estimates how much trying a protocol again is worth (an EVPI-style
heuristic) against a budget that decays as total experience grows.  The
engine records the gate's advice in its decision trace; the phase
thresholds in the engine remain the ones that pick the protocol.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace

from dosewise.stats.bandits import Arm
from dosewise.stats.bayesian import beta_mean, beta_variance, credible_interval_95

BASE_BUDGET = 100.0
BUDGET_DECAY_TRIALS = 50.0
DOMINANCE_MARGIN = 0.05


@dataclass(frozen=True)
class ExplorationBudget:
    total_budget: float
    spent: float
    per_item_limit: float


def initialize_budget(total_trials: int) -> ExplorationBudget:
    """Fresh budget for this decision: ``100 * exp(-trials / 50)``, floored."""
    decayed = BASE_BUDGET * math.exp(-total_trials / BUDGET_DECAY_TRIALS)
    return ExplorationBudget(
        total_budget=max(10.0, decayed),
        spent=0.0,
        per_item_limit=max(3.0, decayed / 5),
    )


def spend_budget(budget: ExplorationBudget, cost: float) -> ExplorationBudget:
    return replace(budget, spent=budget.spent + cost)


def calculate_evpi(alpha: float, beta: float, current_best_mean: float) -> float:
    """Heuristic expected value of perfect information for one protocol.

    - Clearly dominated (upper bound more than 0.05 below the best): 0
    - Clearly better (lower bound more than 0.05 above): ``(lower - best) * 10``
    - Otherwise: ``max(0, mean - best) + 5 * sd``
    """
    lower, upper = credible_interval_95(alpha, beta)
    if upper < current_best_mean - DOMINANCE_MARGIN:
        return 0.0
    if lower > current_best_mean + DOMINANCE_MARGIN:
        return (lower - current_best_mean) * 10

    mean = beta_mean(alpha, beta)
    return max(0.0, mean - current_best_mean) + math.sqrt(beta_variance(alpha, beta)) * 5


def information_gain(alpha: float, beta: float, current_best_mean: float) -> dict:
    mean = beta_mean(alpha, beta)
    _, upper = credible_interval_95(alpha, beta)
    sd = math.sqrt(beta_variance(alpha, beta))
    future_sd = math.sqrt(beta_variance(alpha + 0.5, beta + 0.5))
    return {
        "evoi": calculate_evpi(alpha, beta, current_best_mean),
        "regret_bound": max(0.0, upper - current_best_mean),
        "uncertainty_reduction": sd - future_sd,
        "opportunity_cost": max(0.0, current_best_mean - mean),
    }


def should_explore(arm: Arm, current_best_mean: float, budget: ExplorationBudget) -> dict:
    """Decide whether ``arm`` deserves an exploratory trial.

    Returns
    -------
    dict
        ``{"explore": bool, "reason": str, "cost": float, "metrics": dict}``
    """
    metrics = information_gain(arm.alpha, arm.beta, current_best_mean)
    cost = math.sqrt(arm.trials + 1)

    def decision(explore: bool, reason: str) -> dict:
        return {"explore": explore, "reason": reason, "cost": cost, "metrics": metrics}

    if budget.spent + cost > budget.total_budget:
        return decision(False, "Budget exhausted")
    if arm.trials > budget.per_item_limit:
        return decision(False, "Per-item limit reached")
    if metrics["evoi"] > 0.5:
        return decision(True, f"High EVOI: {metrics['evoi']:.2f}")
    if metrics["uncertainty_reduction"] > 0.1 and metrics["opportunity_cost"] < 0.2:
        return decision(True, "High uncertainty, low cost")
    if metrics["regret_bound"] < 0.1 and arm.trials < 3:
        return decision(True, "Possibly optimal, needs more data")
    return decision(False, f"Low value: EVOI={metrics['evoi']:.2f}")


def exploration_recommendation(arms: list[Arm], current_best_mean: float, total_trials: int) -> dict:
    """The protocol with the highest EVOI among those worth exploring."""
    budget = initialize_budget(total_trials)
    worth = []
    for arm in arms:
        verdict = should_explore(arm, current_best_mean, budget)
        if verdict["explore"]:
            worth.append((arm, verdict))

    if not worth:
        return {
            "item_id": None,
            "explore": False,
            "justification": "No items worth exploring (low EVOI, budget constraints)",
            "metrics": None,
        }

    arm, verdict = max(worth, key=lambda pair: pair[1]["metrics"]["evoi"])
    return {
        "item_id": arm.item_id,
        "explore": True,
        "justification": verdict["reason"],
        "metrics": verdict["metrics"],
    }


def exploration_efficiency(explorations: list[dict]) -> float:
    """Share of past explorations whose information gain exceeded 0.1.

    Each entry carries an ``information_gain`` value; an empty log scores 0.
    """
    if not explorations:
        return 0.0
    valuable = sum(1 for e in explorations if e["information_gain"] > 0.1)
    return valuable / len(explorations)
