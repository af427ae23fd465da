"""Empirical-Bayes hierarchy over protocol x goal posteriors.

Three levels: a global hyperprior fitted to every protocol-goal mean, one
hyperprior per goal fitted to that goal's protocols, and the individual
protocol-goal posteriors.  Sparse posteriors are shrunk toward their goal's
hyperprior, James-Stein style, to produce an *effective prior* used for
scoring and reporting.  Stored posteriors are never overwritten.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from dosewise.stats.bayesian import beta_mean, beta_variance
from dosewise.stats.state import GOALS

DEFAULT_POOLED_VARIANCE = 0.1


@dataclass
class HyperPrior:
    mu: float = 0.5
    kappa: float = 2.0
    alpha0: float = 1.5
    beta0: float = 1.5
    effective_sample_size: float = 3.0


@dataclass
class PosteriorNode:
    alpha: float
    beta: float
    trials: int
    shrinkage: float
    effective_alpha: float
    effective_beta: float

    @property
    def effective_mean(self) -> float:
        return beta_mean(self.effective_alpha, self.effective_beta)

    @property
    def effective_variance(self) -> float:
        return beta_variance(self.effective_alpha, self.effective_beta)


@dataclass
class HierarchicalLayer:
    name: str
    level: str
    hyper_prior: HyperPrior
    pooled_mean: float
    pooled_variance: float
    total_observations: int
    children: dict = field(default_factory=dict)


# ======================================================================
# Hyperprior estimation
# ======================================================================

def initialize_hyper_prior(observations: list[float] | None = None) -> HyperPrior:
    """Method-of-moments Beta hyperprior over a set of posterior means.

    Parameters
    ----------
    observations : list[float] | None
        Posterior means, one per protocol-goal pair with data.

    Returns
    -------
    HyperPrior
        Weak Beta(1.5, 1.5) hyperprior when there are no observations,
        otherwise ``mu = mean``, ``kappa = max(2, mu(1-mu)/var - 1)``.
    """
    if not observations:
        return HyperPrior()

    arr = np.asarray(observations, dtype=float)
    mu = float(np.mean(arr))
    variance = float(np.var(arr))

    if variance <= 0:
        # Identical observations carry no spread information
        kappa = 2.0
    else:
        kappa = max(2.0, mu * (1 - mu) / variance - 1)

    return HyperPrior(
        mu=mu,
        kappa=kappa,
        alpha0=mu * kappa,
        beta0=(1 - mu) * kappa,
        effective_sample_size=float(len(observations)),
    )


def update_hyper_prior(prior: HyperPrior, observations: list[float]) -> HyperPrior:
    """Fold new posterior means into an existing hyperprior.

    The mean and the variance are both averaged with the prior's, weighted
    by effective sample size; the prior's variance is the one implied by
    its Beta, ``mu(1-mu)/(kappa+1)``.
    """
    if not observations:
        return prior

    arr = np.asarray(observations, dtype=float)
    n = len(arr)
    total = prior.effective_sample_size + n

    mu = (prior.mu * prior.effective_sample_size + float(np.mean(arr)) * n) / total
    old_variance = prior.mu * (1 - prior.mu) / (prior.kappa + 1)
    variance = (old_variance * prior.effective_sample_size + float(np.var(arr)) * n) / total

    kappa = max(2.0, mu * (1 - mu) / variance - 1) if variance > 0 else 2.0
    return HyperPrior(
        mu=mu,
        kappa=kappa,
        alpha0=mu * kappa,
        beta0=(1 - mu) * kappa,
        effective_sample_size=total,
    )


def _pooled_variance(observations: list[float], mu: float, fallback: float) -> float:
    if not observations:
        return fallback
    arr = np.asarray(observations, dtype=float)
    return float(np.mean((arr - mu) ** 2))


# ======================================================================
# Shrinkage
# ======================================================================

def calculate_shrinkage(trials: int, parent_ess: float, pooled_variance: float) -> float:
    """Weight pulling a posterior toward its parent hyperprior.

    ``(1 - trials / (trials + ess)) * (1 + min(1, 2 * pooled_variance))``

    The variance term can push the result above 1, which extrapolates past
    the parent; callers receive it unclamped.
    """
    denom = trials + parent_ess
    trial_weight = trials / denom if denom > 0 else 0.0
    variance_penalty = min(1.0, pooled_variance * 2)
    return (1 - trial_weight) * (1 + variance_penalty)


def get_hierarchical_prior(
    alpha: float,
    beta: float,
    trials: int,
    parent: HyperPrior,
    pooled_variance: float,
) -> PosteriorNode:
    """Blend a protocol-goal posterior with its parent hyperprior."""
    shrinkage = calculate_shrinkage(trials, parent.effective_sample_size, pooled_variance)
    return PosteriorNode(
        alpha=alpha,
        beta=beta,
        trials=trials,
        shrinkage=shrinkage,
        effective_alpha=shrinkage * parent.alpha0 + (1 - shrinkage) * alpha,
        effective_beta=shrinkage * parent.beta0 + (1 - shrinkage) * beta,
    )


# ======================================================================
# Model construction
# ======================================================================

def build_hierarchical_model(item_data: dict[str, dict[str, dict]]) -> HierarchicalLayer:
    """Build the global -> goal -> protocol hierarchy.

    Parameters
    ----------
    item_data : dict
        ``{item_id: {goal: {"alpha", "beta", "trials"}}}``.

    Returns
    -------
    HierarchicalLayer
        The global layer; its ``children`` map each goal to a goal layer
        whose ``children`` map item ids to ``PosteriorNode``.
    """
    global_obs = [
        beta_mean(m["alpha"], m["beta"])
        for goals in item_data.values()
        for m in goals.values()
        if m["trials"] > 0
    ]
    global_prior = initialize_hyper_prior(global_obs)
    global_variance = _pooled_variance(global_obs, global_prior.mu, DEFAULT_POOLED_VARIANCE)

    goal_layers: dict[str, HierarchicalLayer] = {}
    for goal in GOALS:
        goal_obs = [
            beta_mean(goals[goal]["alpha"], goals[goal]["beta"])
            for goals in item_data.values()
            if goal in goals and goals[goal]["trials"] > 0
        ]
        if goal_obs:
            goal_prior = initialize_hyper_prior(goal_obs)
            goal_variance = _pooled_variance(goal_obs, goal_prior.mu, global_variance)
        else:
            goal_prior = global_prior
            goal_variance = global_variance

        children = {
            item_id: get_hierarchical_prior(
                goals[goal]["alpha"],
                goals[goal]["beta"],
                goals[goal]["trials"],
                goal_prior,
                goal_variance,
            )
            for item_id, goals in item_data.items()
            if goal in goals
        }
        goal_layers[goal] = HierarchicalLayer(
            name=goal,
            level="goal",
            hyper_prior=goal_prior,
            pooled_mean=goal_prior.mu,
            pooled_variance=goal_variance,
            total_observations=len(goal_obs),
            children=children,
        )

    return HierarchicalLayer(
        name="global",
        level="global",
        hyper_prior=global_prior,
        pooled_mean=global_prior.mu,
        pooled_variance=global_variance,
        total_observations=len(global_obs),
        children=goal_layers,
    )


# ======================================================================
# Read-side helpers
# ======================================================================

def hierarchical_recommendation(model: HierarchicalLayer, goal: str, item_ids: list[str]) -> dict:
    """Pick the protocol with the best effective-prior mean for ``goal``."""
    if not item_ids:
        raise ValueError("item_ids must not be empty")

    layer = model.children.get(goal)
    if layer is None:
        return {
            "item_id": item_ids[0],
            "confidence": 0.3,
            "shrinkage": 0.0,
            "reasoning": "No hierarchical data available",
        }

    scores = []
    for item_id in item_ids:
        node = layer.children.get(item_id)
        if node is None:
            # Unobserved protocol: fully pooled to the goal level
            scores.append((item_id, layer.hyper_prior.mu, 0.4, 1.0, 0))
            continue
        confidence = 1 - float(np.sqrt(node.effective_variance))
        scores.append((item_id, node.effective_mean, confidence, node.shrinkage, node.trials))

    item_id, score, confidence, shrinkage, trials = max(scores, key=lambda s: s[1])
    return {
        "item_id": item_id,
        "confidence": confidence,
        "shrinkage": shrinkage,
        "reasoning": f"Hierarchical score={score:.3f}, shrinkage={shrinkage:.2f}, trials={trials}",
    }


def diagnose_hierarchical_model(model: HierarchicalLayer) -> dict:
    """Coverage, average shrinkage and a data-sufficiency tier.

    Tiers: ``excellent`` (coverage >= 0.8 and shrinkage < 0.3), ``good``
    (>= 0.6 and < 0.5), ``fair`` (coverage >= 0.4), otherwise ``poor``.
    """
    total_pairs = 0
    shrinkages: list[float] = []
    for layer in model.children.values():
        for node in layer.children.values():
            total_pairs += 1
            if node.trials > 0:
                shrinkages.append(node.shrinkage)

    coverage = len(shrinkages) / total_pairs if total_pairs else 0.0
    avg_shrinkage = float(np.mean(shrinkages)) if shrinkages else 1.0

    if coverage >= 0.8 and avg_shrinkage < 0.3:
        sufficiency = "excellent"
    elif coverage >= 0.6 and avg_shrinkage < 0.5:
        sufficiency = "good"
    elif coverage >= 0.4:
        sufficiency = "fair"
    else:
        sufficiency = "poor"

    recommendations: list[str] = []
    if coverage < 0.5:
        recommendations.append("Increase exploration to improve coverage")
    if avg_shrinkage > 0.6:
        recommendations.append("More trials needed to reduce reliance on priors")
    if model.total_observations < 20:
        recommendations.append("Continue collecting data for better hyperprior estimates")

    return {
        "coverage": coverage,
        "average_shrinkage": avg_shrinkage,
        "data_sufficiency": sufficiency,
        "recommendations": recommendations,
    }


def export_hierarchical_insights(model: HierarchicalLayer) -> dict:
    goal_stats = {}
    distribution = {"low": 0, "medium": 0, "high": 0}

    for goal, layer in model.children.items():
        best_item, best_score = None, 0.0
        for item_id, node in layer.children.items():
            score = node.effective_mean
            if score > best_score:
                best_item, best_score = item_id, score
            if node.shrinkage < 0.3:
                distribution["low"] += 1
            elif node.shrinkage < 0.6:
                distribution["medium"] += 1
            else:
                distribution["high"] += 1
        goal_stats[goal] = {
            "mean": layer.pooled_mean,
            "variance": layer.pooled_variance,
            "item_count": len(layer.children),
            "best_item": best_item,
        }

    return {
        "global_mean": model.pooled_mean,
        "global_variance": model.pooled_variance,
        "goals": goal_stats,
        "shrinkage_distribution": distribution,
    }
