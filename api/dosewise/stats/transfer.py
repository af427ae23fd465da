"""Transfer learning across similar protocols.

Protocols are described by a handful of hand-derived features (breathing
cadence, complexity, physical and cognitive load, duration) plus a
5-dimensional embedding that starts as the normalised feature vector and is
nudged by observed performance.  A protocol nobody has rated yet borrows a
prior from its most similar neighbours that do have ratings.
"""

from __future__ import annotations

import logging

import numpy as np

from dosewise.stats.bayesian import DEFAULT_ALPHA, DEFAULT_BETA, BetaPosterior, beta_mean
from dosewise.stats.state import (
    GOALS,
    BetaParams,
    ItemFeature,
    ItemPosterior,
    LearningEpisode,
    TransferKnowledge,
)

logger = logging.getLogger(__name__)

MAX_NEIGHBOURS = 3
TRANSFER_BLEND = 0.6
MAX_EPISODES = 100
SUPPORTED_AFFINITY = 0.7
UNSUPPORTED_AFFINITY = 0.3
BASELINE_TRIALS = 20

# (identifier fragment, value) pairs, first match wins
_CADENCE_RULES = (("box", 4), ("4-7-8", 3), ("nostril", 5), ("sigh", 6))
_COMPLEXITY_RULES = (("nostril", 4), ("4-7-8", 3), ("box", 2))
_COGNITIVE_RULES = (("4-7-8", 4), ("box", 3), ("nostril", 3), ("eye", 2))


def _match(item_id: str, rules: tuple, default: float) -> float:
    for fragment, value in rules:
        if fragment in item_id:
            return float(value)
    return float(default)


# ======================================================================
# Features and similarity
# ======================================================================

def extract_features(item_id: str, base_seconds: float, supported_goals: list[str]) -> ItemFeature:
    """Derive features and the initial embedding from protocol metadata.

    Parameters
    ----------
    item_id : str
        Protocol identifier; fragments such as ``box`` or ``nostril`` drive
        the rule tables.
    base_seconds : float
        Default session duration.
    supported_goals : list[str]
        Goals the catalog lists for this protocol.

    Returns
    -------
    ItemFeature
        Feature record with embedding
        ``[cadence/10, complexity/5, physical/5, cognitive/5, duration/60]``.
    """
    cadence = _match(item_id, _CADENCE_RULES, 10)
    complexity = _match(item_id, _COMPLEXITY_RULES, 1)
    if "nostril" in item_id:
        physical = 3.0
    elif cadence < 5:
        physical = 2.0
    else:
        physical = 1.0
    cognitive = _match(item_id, _COGNITIVE_RULES, 1)

    affinities = {
        goal: SUPPORTED_AFFINITY if goal in supported_goals else UNSUPPORTED_AFFINITY
        for goal in GOALS
    }
    embedding = [cadence / 10, complexity / 5, physical / 5, cognitive / 5, base_seconds / 60]

    return ItemFeature(
        item_id=item_id,
        duration_seconds=float(base_seconds),
        cadence=cadence,
        complexity=complexity,
        physical_load=physical,
        cognitive_load=cognitive,
        goal_affinities=affinities,
        embedding=embedding,
    )


def similarity(f1: ItemFeature, f2: ItemFeature) -> float:
    """``0.6 * cosine(embeddings) + 0.4 * (1 - manhattan / 5)``.

    The Manhattan term compares the raw features, each scaled by the same
    denominators used for the initial embedding.
    """
    e1 = np.asarray(f1.embedding, dtype=float)
    e2 = np.asarray(f2.embedding, dtype=float)
    norms = float(np.linalg.norm(e1) * np.linalg.norm(e2))
    cosine = float(np.dot(e1, e2)) / norms if norms > 0 else 0.0

    distance = (
        abs(f1.cadence - f2.cadence) / 10
        + abs(f1.complexity - f2.complexity) / 5
        + abs(f1.physical_load - f2.physical_load) / 5
        + abs(f1.cognitive_load - f2.cognitive_load) / 5
        + abs(f1.duration_seconds - f2.duration_seconds) / 60
    )
    return 0.6 * cosine + 0.4 * (1 - distance / 5)


def update_similarity_matrix(knowledge: TransferKnowledge, item_id: str) -> None:
    """Recompute ``item_id``'s row and mirror every entry into its column."""
    feature = knowledge.item_features.get(item_id)
    if feature is None:
        return

    row = knowledge.similarity_matrix.setdefault(item_id, {})
    for other_id, other in knowledge.item_features.items():
        if other_id == item_id:
            row[other_id] = 1.0
            continue
        value = min(1.0, max(0.0, similarity(feature, other)))
        row[other_id] = value
        knowledge.similarity_matrix.setdefault(other_id, {})[item_id] = value


def register_item(
    knowledge: TransferKnowledge,
    item_id: str,
    base_seconds: float,
    supported_goals: list[str],
) -> ItemFeature:
    """Add a protocol to the feature space if it is not there yet."""
    feature = knowledge.item_features.get(item_id)
    if feature is None:
        feature = extract_features(item_id, base_seconds, supported_goals)
        knowledge.item_features[item_id] = feature
        update_similarity_matrix(knowledge, item_id)
    return feature


# ======================================================================
# Prior construction
# ======================================================================

def transfer_prior(
    knowledge: TransferKnowledge,
    item_id: str,
    posteriors: dict[str, ItemPosterior],
) -> tuple[BetaPosterior, bool]:
    """Prior for ``item_id`` borrowed from up to three similar protocols.

    Neighbours must clear the similarity threshold and have at least one
    rating.  Each is weighted by ``similarity * transfer_strength``; the
    weighted Beta is blended 60/40 with the optimistic Beta(1.5, 1.0).

    Returns
    -------
    tuple[BetaPosterior, bool]
        The prior and whether any neighbour contributed to it.
    """
    default = BetaPosterior(DEFAULT_ALPHA, DEFAULT_BETA)
    row = knowledge.similarity_matrix.get(item_id)
    if not row:
        return default, False

    meta = knowledge.meta
    neighbours = sorted(
        (
            (other_id, sim)
            for other_id, sim in row.items()
            if other_id != item_id
            and sim >= meta.similarity_threshold
            and other_id in posteriors
            and posteriors[other_id].trials > 0
        ),
        key=lambda pair: pair[1],
        reverse=True,
    )[:MAX_NEIGHBOURS]
    if not neighbours:
        return default, False

    weights = np.array([sim * meta.transfer_strength for _, sim in neighbours])
    total = float(weights.sum())
    if total <= 0:
        return default, False

    alphas = np.array([posteriors[other_id].alpha for other_id, _ in neighbours])
    betas = np.array([posteriors[other_id].beta for other_id, _ in neighbours])
    alpha = float(np.dot(weights, alphas)) / total
    beta = float(np.dot(weights, betas)) / total

    prior = BetaPosterior(
        TRANSFER_BLEND * alpha + (1 - TRANSFER_BLEND) * DEFAULT_ALPHA,
        TRANSFER_BLEND * beta + (1 - TRANSFER_BLEND) * DEFAULT_BETA,
    )
    logger.debug(
        "Transfer prior for %s from %s: %r",
        item_id, [other_id for other_id, _ in neighbours], prior,
    )
    return prior, True


# ======================================================================
# Meta-learning
# ======================================================================

def record_performance(
    knowledge: TransferKnowledge,
    item_id: str,
    goal: str,
    initial_prior: BetaParams,
    final_alpha: float,
    final_beta: float,
    trials: int,
) -> LearningEpisode:
    """Append a finished learning episode, keeping the last 100."""
    episode = LearningEpisode(
        item_id=item_id,
        goal=goal,
        initial_prior=initial_prior,
        final_performance=beta_mean(final_alpha, final_beta),
        trials=trials,
    )
    knowledge.performance_history.append(episode)
    if len(knowledge.performance_history) > MAX_EPISODES:
        del knowledge.performance_history[: len(knowledge.performance_history) - MAX_EPISODES]
    return episode


def update_item_embedding(knowledge: TransferKnowledge, item_id: str, goal: str, performance: float) -> None:
    """Move goal affinity toward ``performance`` and nudge the embedding.

    The embedding is shifted by ``learning_rate * error * 0.1`` where
    ``error`` is the best goal affinity minus the observed performance,
    renormalised to unit length, and the similarity row is refreshed.
    """
    feature = knowledge.item_features.get(item_id)
    if feature is None:
        return

    lr = knowledge.meta.learning_rate
    current = feature.goal_affinities.get(goal, UNSUPPORTED_AFFINITY)
    feature.goal_affinities[goal] = current + lr * (performance - current)

    error = max(feature.goal_affinities.values()) - performance
    embedding = np.asarray(feature.embedding, dtype=float) + lr * error * 0.1
    norm = float(np.linalg.norm(embedding))
    if norm > 0:
        embedding = embedding / norm
    feature.embedding = embedding.tolist()

    update_similarity_matrix(knowledge, item_id)


def transfer_insights(knowledge: TransferKnowledge) -> dict:
    pairs = [
        {"item_a": a, "item_b": b, "similarity": sim}
        for a, row in knowledge.similarity_matrix.items()
        for b, sim in row.items()
        if a < b
    ]
    pairs.sort(key=lambda p: p["similarity"], reverse=True)

    history = knowledge.performance_history
    fastest = sorted(history, key=lambda e: e.trials)[:5]
    avg_trials = float(np.mean([e.trials for e in history])) if history else 0.0
    effectiveness = 1 - avg_trials / BASELINE_TRIALS if avg_trials > 0 else 0.0

    return {
        "most_similar_pairs": pairs[:5],
        "fastest_learners": [e.model_dump() for e in fastest],
        "transfer_effectiveness": max(0.0, min(1.0, effectiveness)),
    }
