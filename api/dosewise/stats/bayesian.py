"""Conjugate Beta-Bernoulli primitives for protocol effectiveness.

Each protocol's success probability is tracked as a Beta(alpha, beta)
posterior.  Ordinal session feedback (-1 / 0 / +1) is mapped onto a
continuous reward in [0, 1] and applied as a single fractional Bernoulli
update, so a neutral rating moves both shape parameters by one half.

Sampling goes through an injected ``numpy.random.Generator`` so callers
(and tests) decide where randomness comes from.  Gamma variates are drawn
with the Marsaglia-Tsang squeeze method rather than ``Generator.beta`` to
keep the draw sequence fully determined by uniform and normal variates.
"""

from __future__ import annotations

import math

import numpy as np

DEFAULT_ALPHA = 1.5
DEFAULT_BETA = 1.0

_REWARDS = {-1: 0.0, 0: 0.5, 1: 1.0}


# ======================================================================
# Moments
# ======================================================================

def beta_mean(alpha: float, beta: float) -> float:
    """Expected value of Beta(alpha, beta): alpha / (alpha + beta)."""
    return alpha / (alpha + beta)


def beta_variance(alpha: float, beta: float) -> float:
    """Variance of Beta(alpha, beta).

    Var = alpha * beta / ((alpha + beta)^2 * (alpha + beta + 1))
    """
    ab = alpha + beta
    return (alpha * beta) / (ab * ab * (ab + 1))


def credible_interval_95(alpha: float, beta: float) -> tuple[float, float]:
    """Normal-approximation 95% interval, clipped to [0, 1].

    This is ``mean +/- 1.96 * sd`` rather than exact Beta quantiles; it is
    only used for ranking and display, where the approximation is adequate.
    """
    mean = beta_mean(alpha, beta)
    sd = math.sqrt(beta_variance(alpha, beta))
    return (max(0.0, mean - 1.96 * sd), min(1.0, mean + 1.96 * sd))


# ======================================================================
# Sampling
# ======================================================================

def sample_gamma(shape: float, rng: np.random.Generator) -> float:
    """Draw one Gamma(shape, 1) variate.

    Parameters
    ----------
    shape : float
        Shape parameter, must be positive.
    rng : np.random.Generator
        Source of uniform and standard-normal variates.

    Returns
    -------
    float
        A single Gamma draw.
    """
    if shape <= 0:
        raise ValueError("Gamma shape must be positive")

    if shape < 1:
        # Boost: Gamma(k) = Gamma(k + 1) * U^(1/k)
        u = float(rng.random())
        return sample_gamma(shape + 1.0, rng) * u ** (1.0 / shape)

    d = shape - 1.0 / 3.0
    c = 1.0 / math.sqrt(9.0 * d)
    while True:
        x = float(rng.standard_normal())
        v = 1.0 + c * x
        if v <= 0:
            continue
        v = v * v * v
        u = float(rng.random())
        if u < 1.0 - 0.0331 * x ** 4:
            return d * v
        if math.log(u) < 0.5 * x * x + d * (1.0 - v + math.log(v)):
            return d * v


def sample_beta(alpha: float, beta: float, rng: np.random.Generator) -> float:
    """Draw one Beta(alpha, beta) variate as Ga / (Ga + Gb)."""
    if alpha <= 0 or beta <= 0:
        raise ValueError("Alpha and beta must be positive")
    x = sample_gamma(alpha, rng)
    y = sample_gamma(beta, rng)
    total = x + y
    if total <= 0:
        # Both draws underflowed; fall back to the mean
        return beta_mean(alpha, beta)
    return x / total


# ======================================================================
# Updates
# ======================================================================

def delta_to_reward(delta: int) -> float:
    """Map ordinal feedback onto a reward: -1 -> 0, 0 -> 0.5, +1 -> 1."""
    try:
        return _REWARDS[int(delta)]
    except (KeyError, TypeError, ValueError):
        raise ValueError(f"delta must be -1, 0 or 1, got {delta!r}") from None


def update_posterior(alpha: float, beta: float, reward: float) -> tuple[float, float]:
    """Apply one fractional Bernoulli observation to a Beta posterior.

    Parameters
    ----------
    alpha, beta : float
        Current shape parameters.
    reward : float
        Observed reward in [0, 1].

    Returns
    -------
    tuple[float, float]
        ``(alpha + reward, beta + 1 - reward)``
    """
    if not 0.0 <= reward <= 1.0:
        raise ValueError("reward must be within [0, 1]")
    return (alpha + reward, beta + (1.0 - reward))


class BetaPosterior:
    """Immutable Beta posterior over a protocol's success probability.

    Parameters
    ----------
    alpha : float
        Pseudo-successes.  Default 1.5, a mildly optimistic prior.
    beta : float
        Pseudo-failures.  Default 1.0.
    """

    __slots__ = ("alpha", "beta")

    def __init__(self, alpha: float = DEFAULT_ALPHA, beta: float = DEFAULT_BETA) -> None:
        if alpha <= 0 or beta <= 0:
            raise ValueError("Alpha and beta must be positive")
        self.alpha = float(alpha)
        self.beta = float(beta)

    def update(self, reward: float) -> BetaPosterior:
        """Return a **new** posterior after observing one reward."""
        alpha, beta = update_posterior(self.alpha, self.beta, reward)
        return BetaPosterior(alpha, beta)

    def mean(self) -> float:
        return beta_mean(self.alpha, self.beta)

    def variance(self) -> float:
        return beta_variance(self.alpha, self.beta)

    def credible_interval(self) -> tuple[float, float]:
        return credible_interval_95(self.alpha, self.beta)

    def sample(self, rng: np.random.Generator) -> float:
        return sample_beta(self.alpha, self.beta, rng)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BetaPosterior):
            return NotImplemented
        return self.alpha == other.alpha and self.beta == other.beta

    def __repr__(self) -> str:
        return f"BetaPosterior(alpha={self.alpha:.4g}, beta={self.beta:.4g})"
