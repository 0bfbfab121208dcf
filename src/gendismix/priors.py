"""
--------------------------------------------------------------------------------
<gendismix project>
gendismix/priors.py

Log-prior terms added once per evaluation on the aggregating thread.

Module Author(s): Eric J. South
Dunlop Lab
--------------------------------------------------------------------------------
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Sequence

import numpy as np
from scipy.special import logsumexp, softmax

from .layout import ParameterLayout
from .scores import DifferentiableSequenceScore

logger = logging.getLogger(__name__)


class LogPrior(ABC):
    """Additive log-prior term over the full parameter vector."""

    def bind(self, layout: ParameterLayout, scores: Sequence[DifferentiableSequenceScore]) -> None:
        """Called on every reset with the current layout and scoring functions."""
        return None

    @abstractmethod
    def log_prior_term(self, params: np.ndarray) -> float: ...

    @abstractmethod
    def add_gradient(self, params: np.ndarray, grad: np.ndarray) -> None:
        """Add the gradient of ``log_prior_term`` to ``grad`` in place."""
        ...


class NoPrior(LogPrior):
    def log_prior_term(self, params: np.ndarray) -> float:
        return 0.0

    def add_gradient(self, params: np.ndarray, grad: np.ndarray) -> None:
        return None

    def __repr__(self) -> str:
        return "NoPrior()"


class GaussianLogPrior(LogPrior):
    """
    Independent zero-mean Gaussians on the parameters (constants dropped):
    -sum(theta^2) / (2 * variance).
    """

    def __init__(self, variance: float = 1.0, *, include_class_params: bool = True) -> None:
        if variance <= 0:
            raise ValueError("variance must be > 0")
        self.variance = float(variance)
        self.include_class_params = bool(include_class_params)
        self._start = 0

    def bind(self, layout: ParameterLayout, scores: Sequence[DifferentiableSequenceScore]) -> None:
        self._start = 0 if self.include_class_params else layout.class_segment_length

    def log_prior_term(self, params: np.ndarray) -> float:
        tail = params[self._start :]
        return float(-0.5 * np.dot(tail, tail) / self.variance)

    def add_gradient(self, params: np.ndarray, grad: np.ndarray) -> None:
        grad[self._start :] -= params[self._start :] / self.variance

    def __repr__(self) -> str:
        return f"GaussianLogPrior(variance={self.variance}, include_class_params={self.include_class_params})"


class CompositeLogPrior(LogPrior):
    """
    Prior assembled from the scoring functions themselves: each function
    contributes its own ``log_prior_term`` over its block, and the class weights
    get a Dirichlet term with the functions' equivalent sample sizes as
    pseudocounts.

    Only the class-weight segment is read from ``params``. The model blocks are
    read from the bound scoring functions, so they must already hold the same
    parameters; the objective guarantees this by calling ``set_params`` before
    it asks for the prior. A direct caller has to push ``params`` into the
    scoring functions first.
    """

    def __init__(self) -> None:
        self._layout: Optional[ParameterLayout] = None
        self._scores: Sequence[DifferentiableSequenceScore] = ()
        self._ess = np.zeros(0, dtype=float)

    def bind(self, layout: ParameterLayout, scores: Sequence[DifferentiableSequenceScore]) -> None:
        self._layout = layout
        self._scores = scores
        self._ess = np.array([s.ess for s in scores], dtype=float)

    def _require_bound(self) -> ParameterLayout:
        if self._layout is None:
            raise RuntimeError("CompositeLogPrior is not bound; reset the objective function first.")
        return self._layout

    def log_prior_term(self, params: np.ndarray) -> float:
        layout = self._require_bound()
        value = sum(s.log_prior_term() for s in self._scores)
        total = float(self._ess.sum())
        if total > 0:
            log_w = layout.class_params(params)
            value += float(np.dot(self._ess, log_w) - total * logsumexp(log_w))
        return float(value)

    def add_gradient(self, params: np.ndarray, grad: np.ndarray) -> None:
        layout = self._require_bound()
        for c, s in enumerate(self._scores):
            s.add_gradient_of_log_prior_term(grad, int(layout.offsets[c]))
        total = float(self._ess.sum())
        if total > 0:
            log_w = layout.class_params(params)
            class_grad = self._ess - total * softmax(log_w)
            grad[: layout.class_segment_length] += layout.free_class_gradient(class_grad)

    def __repr__(self) -> str:
        return "CompositeLogPrior()"


PriorFactory = Callable[..., LogPrior]

_REGISTRY: Dict[str, PriorFactory] = {}


def register_prior(name: str, factory: PriorFactory) -> None:
    key = name.strip().lower()
    if not key:
        raise ValueError("prior name must be non-empty")
    if key in _REGISTRY:
        raise ValueError(f"prior '{key}' is already registered")
    _REGISTRY[key] = factory


def get_prior(name: str) -> PriorFactory:
    key = name.strip().lower()
    if key not in _REGISTRY:
        raise ValueError(f"Unknown prior '{name}'. Available: {sorted(_REGISTRY)}")
    return _REGISTRY[key]


def list_priors() -> list[str]:
    return sorted(_REGISTRY)


# Built-ins
register_prior("none", NoPrior)
register_prior("gaussian", GaussianLogPrior)
register_prior("composite", CompositeLogPrior)
