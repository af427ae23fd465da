"""Prior selection for protocols that have no posterior yet.

Three sources of prior information, in priority order:
1. Transfer: similar protocols the user has already rated
2. Pooled: the user's goal-level pooled model
3. Default: optimistic Beta(1.5, 1.0)
"""

from __future__ import annotations

from dosewise.stats import pooling, transfer
from dosewise.stats.bayesian import DEFAULT_ALPHA, DEFAULT_BETA, BetaPosterior
from dosewise.stats.state import AppState


def resolve_prior(state: AppState, item_id: str, goal: str | None) -> tuple[BetaPosterior, str]:
    """Resolve the best available prior via fallback chain.

    The protocol must already be registered in ``state.transfer`` for the
    transfer source to be considered.

    Returns
    -------
    tuple[BetaPosterior, str]
        (prior, source) where source is "transfer" | "pooled" | "default"
    """
    # 1. Transfer from similar protocols
    prior, transferred = transfer.transfer_prior(state.transfer, item_id, state.posteriors)
    if transferred:
        return (prior, "transfer")

    # 2. Pooled goal model
    if goal is not None and pooling.has_goal_data(state.pooling, goal):
        return (pooling.effective_prior(state.pooling, item_id, goal), "pooled")

    # 3. Default
    return (BetaPosterior(DEFAULT_ALPHA, DEFAULT_BETA), "default")
