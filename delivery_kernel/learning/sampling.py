"""
Beta sampling for Thompson Sampling.

Beta(alpha, beta) is drawn as X / (X + Y) with X ~ Gamma(alpha, 1) and
Y ~ Gamma(beta, 1), two independent draws.
"""

import random
from typing import Optional


def sample_gamma(shape: float, rng: Optional[random.Random] = None) -> float:
    """One draw from Gamma(shape, scale=1)."""
    if shape <= 0:
        raise ValueError(f"Gamma shape must be positive, got {shape}")
    rng = rng or random
    return rng.gammavariate(shape, 1.0)


def sample_beta(alpha: float, beta: float, rng: Optional[random.Random] = None) -> float:
    """One draw from Beta(alpha, beta) via two independent Gamma draws."""
    x = sample_gamma(alpha, rng)
    y = sample_gamma(beta, rng)
    total = x + y
    if total == 0.0:
        # Both draws underflowed; the distribution is symmetric in that limit.
        return 0.5
    return x / total
