"""
--------------------------------------------------------------------------------
<gendismix project>
gendismix/principles.py

Weights of the three objective terms (log-likelihood, conditional
log-likelihood, log-prior) and the named learning principles.

Module Author(s): Eric J. South
Dunlop Lab
--------------------------------------------------------------------------------
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class ObjectiveWeights:
    likelihood: float
    conditional_likelihood: float
    prior: float

    @classmethod
    def checked(cls, likelihood: float, conditional_likelihood: float, prior: float) -> "ObjectiveWeights":
        """Validate and rescale so the three weights sum to one."""
        raw = (float(likelihood), float(conditional_likelihood), float(prior))
        if any(not math.isfinite(w) or w < 0 for w in raw):
            raise ValueError(f"Objective weights must be finite and non-negative, got {raw}.")
        total = sum(raw)
        if total <= 0:
            raise ValueError("At least one objective weight must be positive.")
        return cls(*(w / total for w in raw))

    @property
    def uses_likelihood(self) -> bool:
        return self.likelihood != 0

    @property
    def uses_conditional_likelihood(self) -> bool:
        return self.conditional_likelihood != 0

    @property
    def uses_prior(self) -> bool:
        return self.prior != 0


class LearningPrinciple(str, Enum):
    ML = "ml"  # maximum likelihood
    MAP = "map"  # maximum a posteriori
    MCL = "mcl"  # maximum conditional likelihood
    MSP = "msp"  # maximum supervised posterior

    def weights(self) -> ObjectiveWeights:
        return _PRINCIPLE_WEIGHTS[self]


_PRINCIPLE_WEIGHTS = {
    LearningPrinciple.ML: ObjectiveWeights(1.0, 0.0, 0.0),
    LearningPrinciple.MAP: ObjectiveWeights(0.5, 0.0, 0.5),
    LearningPrinciple.MCL: ObjectiveWeights(0.0, 1.0, 0.0),
    LearningPrinciple.MSP: ObjectiveWeights(0.0, 0.5, 0.5),
}
