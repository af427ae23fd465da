"""Ensemble arbitration for close-call protocol decisions.

When the two leading protocols are statistically indistinguishable a single
Thompson draw is close to a coin flip.  Instead, four independent selection
strategies vote and their confidences are combined with fixed weights:

- Thompson sampling: confidence from the gap between the top two draws
- UCB: optimism bonus shrinking with trials
- Epsilon-greedy: decaying random exploration, otherwise the best mean
- Softmax: Boltzmann draw over posterior means with a cooling temperature
"""

from __future__ import annotations

import math

import numpy as np
from scipy.special import softmax

from dosewise.stats.bayesian import beta_mean, beta_variance, sample_beta

DEFAULT_WEIGHTS = {
    "thompson": 0.35,
    "ucb": 0.25,
    "epsilon_greedy": 0.25,
    "softmax": 0.15,
}


class Arm:
    """A candidate protocol as the bandit strategies see it.

    Parameters
    ----------
    item_id : str
        Protocol identifier.
    alpha, beta : float
        Posterior shape parameters.
    trials : int
        Number of rated sessions.
    """

    __slots__ = ("item_id", "alpha", "beta", "trials")

    def __init__(self, item_id: str, alpha: float, beta: float, trials: int = 0) -> None:
        if alpha <= 0 or beta <= 0:
            raise ValueError("Alpha and beta must be positive")
        self.item_id = item_id
        self.alpha = alpha
        self.beta = beta
        self.trials = trials

    @property
    def mean(self) -> float:
        return beta_mean(self.alpha, self.beta)

    @property
    def variance(self) -> float:
        return beta_variance(self.alpha, self.beta)

    def __repr__(self) -> str:
        return f"Arm({self.item_id!r}, alpha={self.alpha:.3g}, beta={self.beta:.3g}, trials={self.trials})"


def _vote(algorithm: str, item_id: str, confidence: float, score: float, reasoning: str) -> dict:
    return {
        "algorithm": algorithm,
        "item_id": item_id,
        "confidence": float(confidence),
        "score": float(score),
        "reasoning": reasoning,
    }


# ======================================================================
# Individual strategies
# ======================================================================

def thompson_vote(arms: list[Arm], rng: np.random.Generator) -> dict:
    draws = [sample_beta(a.alpha, a.beta, rng) for a in arms]
    order = np.argsort(draws)[::-1]
    winner = arms[int(order[0])]
    top = draws[int(order[0])]
    gap = top - draws[int(order[1])] if len(arms) > 1 else 0.5
    confidence = min(1.0, gap * 2) * (1 - math.sqrt(winner.variance))
    return _vote("thompson", winner.item_id, confidence, top, f"Sampled {top:.3f}, gap: {gap:.3f}")


def ucb_vote(arms: list[Arm], total_trials: int) -> dict:
    best = None
    for arm in arms:
        exploration = math.sqrt(2 * math.log(total_trials + 1) / (arm.trials + 1))
        score = arm.mean + exploration + math.sqrt(arm.variance)
        if best is None or score > best[1]:
            best = (arm, score, exploration)

    arm, score, exploration = best
    denom = arm.mean + exploration
    confidence = min(1.0, arm.mean / denom) if denom > 0 else 0.0
    return _vote(
        "ucb",
        arm.item_id,
        confidence,
        score,
        f"UCB score: {score:.3f} (mean: {arm.mean:.3f}, explore: {exploration:.3f})",
    )


def epsilon_greedy_vote(arms: list[Arm], total_trials: int, rng: np.random.Generator) -> dict:
    epsilon = max(0.05, 0.2 * math.exp(-total_trials / 30))
    if float(rng.random()) < epsilon:
        arm = arms[int(rng.integers(len(arms)))]
        return _vote(
            "epsilon_greedy", arm.item_id, 0.3, arm.mean, f"Random exploration (eps={epsilon:.2f})"
        )

    arm = max(arms, key=lambda a: a.mean)
    return _vote(
        "epsilon_greedy",
        arm.item_id,
        1 - math.sqrt(arm.variance),
        arm.mean,
        f"Greedy choice: mean={arm.mean:.3f}",
    )


def softmax_vote(arms: list[Arm], total_trials: int, rng: np.random.Generator) -> dict:
    temperature = max(0.1, math.exp(-total_trials / 40))
    means = np.array([a.mean for a in arms])
    probabilities = softmax(means / temperature)

    cumulative = np.cumsum(probabilities)
    idx = int(np.searchsorted(cumulative, float(rng.random()), side="left"))
    idx = min(idx, len(arms) - 1)

    prob = float(probabilities[idx])
    return _vote(
        "softmax",
        arms[idx].item_id,
        prob,
        float(means[idx]),
        f"Softmax prob: {prob:.3f} (T={temperature:.2f})",
    )


# ======================================================================
# Combination
# ======================================================================

class EnsembleArbitrator:
    """Confidence-weighted vote across four bandit strategies.

    Parameters
    ----------
    arms : list[Arm]
        Candidate protocols, in catalog order.
    weights : dict[str, float] | None
        Per-strategy weights; defaults to ``DEFAULT_WEIGHTS``.
    """

    def __init__(self, arms: list[Arm], weights: dict[str, float] | None = None) -> None:
        if not arms:
            raise ValueError("Must provide at least one arm")
        self.arms = arms
        self.weights = dict(DEFAULT_WEIGHTS if weights is None else weights)

    def votes(self, total_trials: int, rng: np.random.Generator) -> list[dict]:
        return [
            thompson_vote(self.arms, rng),
            ucb_vote(self.arms, total_trials),
            epsilon_greedy_vote(self.arms, total_trials, rng),
            softmax_vote(self.arms, total_trials, rng),
        ]

    def select(self, total_trials: int, rng: np.random.Generator) -> dict:
        """Run all strategies and tally weighted confidences.

        Returns
        -------
        dict
            ``{"item_id", "votes", "tally", "consensus_score", "explanation",
            "metrics"}``.  ``consensus_score`` is the fraction of strategies
            that picked the winner.
        """
        votes = self.votes(total_trials, rng)

        tally: dict[str, float] = {}
        for vote in votes:
            weighted = self.weights.get(vote["algorithm"], 0.0) * vote["confidence"]
            tally[vote["item_id"]] = tally.get(vote["item_id"], 0.0) + weighted

        # Ties resolve to the earliest arm in catalog order
        winner = None
        for arm in self.arms:
            if arm.item_id in tally and (winner is None or tally[arm.item_id] > tally[winner]):
                winner = arm.item_id

        agreeing = [v for v in votes if v["item_id"] == winner]
        explanation = f"{len(agreeing)}/{len(votes)} algorithms agree. " + "; ".join(
            f"{v['algorithm']}: {v['reasoning']}" for v in agreeing
        )

        return {
            "item_id": winner,
            "votes": votes,
            "tally": tally,
            "consensus_score": len(agreeing) / len(votes),
            "explanation": explanation,
            "metrics": ensemble_metrics(votes),
        }


def ensemble_metrics(votes: list[dict]) -> dict:
    """Diversity of picks, mean confidence and the most confident strategy."""
    if not votes:
        return {"diversity": 0.0, "average_confidence": 0.0, "most_confident": None}
    most_confident = max(votes, key=lambda v: v["confidence"])
    return {
        "diversity": len({v["item_id"] for v in votes}) / len(votes),
        "average_confidence": float(np.mean([v["confidence"] for v in votes])),
        "most_confident": most_confident["algorithm"],
    }


def adapt_ensemble_weights(
    weights: dict[str, float],
    recent_performance: dict[str, list[float]],
    temperature: float = 0.5,
    smoothing: float = 0.8,
) -> dict[str, float]:
    """Move strategy weights toward the strategies that have been paying off.

    Each strategy's mean recent reward (0.5 when it has none) goes through
    a softmax at ``temperature``; the result is blended with the current
    weights, keeping ``smoothing`` of the old value.
    """
    algorithms = list(DEFAULT_WEIGHTS)
    averages = np.array([
        float(np.mean(recent_performance[alg])) if recent_performance.get(alg) else 0.5
        for alg in algorithms
    ])
    target = softmax(averages / temperature)
    return {
        alg: weights.get(alg, 0.0) * smoothing + float(p) * (1 - smoothing)
        for alg, p in zip(algorithms, target)
    }
