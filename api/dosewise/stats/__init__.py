"""Dosewise Bayesian decision engine.

Public API:
- BetaPosterior: Immutable Beta posterior with moments and sampling
- DecisionEngine: Phase-ordered protocol selection, feedback and dose search
- EnsembleArbitrator: Four-strategy vote for close competitions
- AppState: Validated per-user learning state
- resolve_prior: Transfer -> pooled -> default prior chain
- build_hierarchical_model: Empirical-Bayes goal hierarchy
"""

from dosewise.stats.bandits import Arm, EnsembleArbitrator
from dosewise.stats.bayesian import BetaPosterior, delta_to_reward, sample_beta
from dosewise.stats.engine import Decision, DecisionEngine, DecisionTrace, adjust_dose
from dosewise.stats.hierarchical import build_hierarchical_model, diagnose_hierarchical_model
from dosewise.stats.priors import resolve_prior
from dosewise.stats.state import AppState, ItemPosterior, SessionRecord

__all__ = [
    "Arm",
    "EnsembleArbitrator",
    "BetaPosterior",
    "delta_to_reward",
    "sample_beta",
    "Decision",
    "DecisionEngine",
    "DecisionTrace",
    "adjust_dose",
    "build_hierarchical_model",
    "diagnose_hierarchical_model",
    "resolve_prior",
    "AppState",
    "ItemPosterior",
    "SessionRecord",
]
