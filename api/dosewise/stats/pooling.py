"""Pooled goal model: global -> goal -> protocol:goal Beta priors.

Every rating lands on its protocol:goal node and leaks, with small fixed
weights, into the goal prior and the global prior.  A protocol that has
never been tried for a goal therefore starts from what the user's other
protocols taught us about that goal.
"""

from __future__ import annotations

import math

from dosewise.stats.bayesian import BetaPosterior, beta_mean, beta_variance, update_posterior
from dosewise.stats.state import GOALS, BetaParams, ItemGoalNode, PooledGoalModel

GOAL_WEIGHT = 0.05
GLOBAL_WEIGHT = 0.02
MIN_NODE_TRIALS = 3
MAX_NODE_SHRINKAGE = 0.3
SIMILAR_MIN_TRIALS = 2
SIMILAR_WEIGHT = 0.7
CROSS_GOAL_MIN_TRIALS = 3


def node_key(item_id: str, goal: str) -> str:
    return f"{item_id}:{goal}"


def effective_prior(model: PooledGoalModel, item_id: str, goal: str) -> BetaPosterior:
    """Best available prior for ``item_id`` under ``goal``.

    A node with at least three trials is shrunk toward its goal prior by
    ``min(0.3, 5 / trials)``; otherwise the goal prior is used once the goal
    has seen any rating, and the global prior before that.
    """
    goal_prior = model.goal_priors[goal]
    node = model.item_goal.get(node_key(item_id, goal))

    if node is not None and node.trials >= MIN_NODE_TRIALS:
        shrinkage = min(MAX_NODE_SHRINKAGE, 5 / node.trials)
        return BetaPosterior(
            node.alpha * (1 - shrinkage) + goal_prior.alpha * shrinkage,
            node.beta * (1 - shrinkage) + goal_prior.beta * shrinkage,
        )

    if goal_prior.item_count > 0:
        return BetaPosterior(goal_prior.alpha, goal_prior.beta)

    return BetaPosterior(model.global_prior.alpha, model.global_prior.beta)


def has_goal_data(model: PooledGoalModel, goal: str) -> bool:
    return model.goal_priors[goal].item_count > 0


def _slow_update(params: BetaParams, reward: float, weight: float) -> None:
    alpha, beta = update_posterior(params.alpha, params.beta, reward)
    params.alpha = params.alpha * (1 - weight) + alpha * weight
    params.beta = params.beta * (1 - weight) + beta * weight


def update_pooled_model(model: PooledGoalModel, item_id: str, goal: str, reward: float) -> ItemGoalNode:
    """Record one reward for ``item_id`` under ``goal`` and propagate it upward."""
    key = node_key(item_id, goal)
    node = model.item_goal.get(key)
    if node is None:
        prior = effective_prior(model, item_id, goal)
        node = ItemGoalNode(alpha=prior.alpha, beta=prior.beta, trials=0)
        model.item_goal[key] = node

    node.alpha, node.beta = update_posterior(node.alpha, node.beta, reward)
    node.trials += 1

    goal_prior = model.goal_priors[goal]
    _slow_update(goal_prior, reward, GOAL_WEIGHT)
    goal_prior.item_count += 1

    _slow_update(model.global_prior, reward, GLOBAL_WEIGHT)
    return node


def predict_performance(model: PooledGoalModel, item_id: str, goal: str) -> dict:
    """Expected performance of a protocol for a goal, observed or not."""
    node = model.item_goal.get(node_key(item_id, goal))

    if node is not None and node.trials >= 5:
        alpha, beta, confidence = node.alpha, node.beta, "high"
    else:
        prior = effective_prior(model, item_id, goal)
        alpha, beta = prior.alpha, prior.beta
        confidence = "medium" if node is not None and node.trials >= 2 else "low"

    return {
        "expected_performance": beta_mean(alpha, beta),
        "uncertainty": math.sqrt(beta_variance(alpha, beta)),
        "confidence": confidence,
    }


def item_goal_table(model: PooledGoalModel) -> dict[str, dict[str, dict]]:
    """Reshape nodes into ``{item_id: {goal: {alpha, beta, trials}}}``."""
    table: dict[str, dict[str, dict]] = {}
    for key, node in model.item_goal.items():
        item_id, _, goal = key.rpartition(":")
        table.setdefault(item_id, {})[goal] = {
            "alpha": node.alpha,
            "beta": node.beta,
            "trials": node.trials,
        }
    return table


def similar_items_prior(
    model: PooledGoalModel, item_id: str, goal: str, similar_ids: list[str]
) -> BetaPosterior:
    """Starting prior for ``item_id`` under ``goal`` borrowed from look-alikes.

    The averaged nodes of similar protocols with at least two trials for
    ``goal`` are blended 70/30 with the goal prior.  With no such nodes this
    is just ``effective_prior``.
    """
    nodes = [
        node for node in (model.item_goal.get(node_key(other, goal)) for other in similar_ids)
        if node is not None and node.trials >= SIMILAR_MIN_TRIALS
    ]
    if not nodes:
        return effective_prior(model, item_id, goal)

    pooled_alpha = sum(n.alpha for n in nodes) / len(nodes)
    pooled_beta = sum(n.beta for n in nodes) / len(nodes)
    goal_prior = model.goal_priors[goal]
    return BetaPosterior(
        pooled_alpha * SIMILAR_WEIGHT + goal_prior.alpha * (1 - SIMILAR_WEIGHT),
        pooled_beta * SIMILAR_WEIGHT + goal_prior.beta * (1 - SIMILAR_WEIGHT),
    )


def cross_goal_similarity(model: PooledGoalModel, item_id: str) -> dict[str, float]:
    """Expected performance of one protocol under every goal.

    Goals where the protocol has three or more trials use its own node;
    the rest fall back to the goal prior mean.
    """
    scores = {}
    for goal in GOALS:
        node = model.item_goal.get(node_key(item_id, goal))
        if node is not None and node.trials >= CROSS_GOAL_MIN_TRIALS:
            scores[goal] = beta_mean(node.alpha, node.beta)
        else:
            prior = model.goal_priors[goal]
            scores[goal] = beta_mean(prior.alpha, prior.beta)
    return scores
