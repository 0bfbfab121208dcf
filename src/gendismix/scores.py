"""
--------------------------------------------------------------------------------
<gendismix project>
gendismix/scores.py

Scoring-function contract used by the objective functions, plus two small
models over integer-encoded sequences.

Module Author(s): Eric J. South
Dunlop Lab
--------------------------------------------------------------------------------
"""

from __future__ import annotations

import copy
import logging
import math
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import numpy as np
from scipy.special import logsumexp

logger = logging.getLogger(__name__)


class DifferentiableSequenceScore(ABC):
    """
    A parametrized log-score s(x) with sparse partial derivatives.

    Instances are mutable (``set_parameters``). Worker threads never share an
    instance: each worker holds its own ``clone()``.
    """

    @abstractmethod
    def log_score(self, seq: np.ndarray, start: int = 0) -> float: ...

    @abstractmethod
    def log_score_and_partial_derivation(
        self,
        seq: np.ndarray,
        start: int,
        indices: List[int],
        partials: List[float],
    ) -> float:
        """
        Return the log score and append the non-zero partial derivatives
        (local parameter index, value) to ``indices``/``partials``.
        """
        ...

    @abstractmethod
    def number_of_parameters(self) -> int: ...

    @abstractmethod
    def set_parameters(self, params: np.ndarray, offset: int) -> None: ...

    @abstractmethod
    def current_parameter_values(self) -> np.ndarray: ...

    def clone(self) -> "DifferentiableSequenceScore":
        return copy.deepcopy(self)

    def initial_class_param(self, class_fraction: float) -> float:
        """Log of the class fraction; a class without any weight gets -inf."""
        with np.errstate(divide="ignore"):
            return float(np.log(class_fraction))

    @property
    def ess(self) -> float:
        return 0.0

    # Contributions to CompositeLogPrior; a plain score has no prior of its own.
    def log_prior_term(self) -> float:
        return 0.0

    def add_gradient_of_log_prior_term(self, grad: np.ndarray, start: int) -> None:
        return None


class DifferentiableStatisticalModel(DifferentiableSequenceScore):
    """
    A score whose normalization constant Z = sum_x exp(s(x)) is known, so that
    s(x) - log Z is a proper log-likelihood.
    """

    @abstractmethod
    def log_normalization_constant(self) -> float: ...

    @abstractmethod
    def log_partial_normalization_constant(self, index: int) -> float:
        """log of dZ/d(theta_index)."""
        ...

    def log_partial_normalization_constants(self) -> np.ndarray:
        n = self.number_of_parameters()
        return np.array([self.log_partial_normalization_constant(i) for i in range(n)], dtype=float)


class IndependentModel(DifferentiableStatisticalModel):
    """
    Position-specific independent model (PWM) in log-linear form.

    Parameters theta[l, a] for position l and symbol a; s(x) = sum_l theta[l, x_l]
    and log Z = sum_l logsumexp(theta[l, :]). With ``ess > 0`` the model carries a
    symmetric Dirichlet-style prior of ``ess / alphabet_size`` pseudocounts per
    position and symbol.
    """

    def __init__(self, length: int, alphabet_size: int = 4, ess: float = 0.0, name: str = "") -> None:
        if length < 1:
            raise ValueError("length must be >= 1")
        if alphabet_size < 2:
            raise ValueError("alphabet_size must be >= 2")
        if ess < 0:
            raise ValueError("ess must be >= 0")
        self.length = int(length)
        self.alphabet_size = int(alphabet_size)
        self._ess = float(ess)
        self.name = name
        self._theta = np.zeros((self.length, self.alphabet_size), dtype=float)
        self._positions = np.arange(self.length)

    @property
    def ess(self) -> float:
        return self._ess

    @property
    def theta(self) -> np.ndarray:
        return self._theta.copy()

    def _window(self, seq: np.ndarray, start: int) -> np.ndarray:
        window = seq[start : start + self.length]
        if window.size != self.length:
            raise ValueError(f"sequence too short: need {self.length} symbols from position {start}, got {window.size}")
        return window

    def log_score(self, seq: np.ndarray, start: int = 0) -> float:
        window = self._window(seq, start)
        return float(self._theta[self._positions, window].sum())

    def log_score_and_partial_derivation(
        self,
        seq: np.ndarray,
        start: int,
        indices: List[int],
        partials: List[float],
    ) -> float:
        window = self._window(seq, start)
        flat = self._positions * self.alphabet_size + window
        indices.extend(flat.tolist())
        partials.extend([1.0] * self.length)
        return float(self._theta[self._positions, window].sum())

    def number_of_parameters(self) -> int:
        return self.length * self.alphabet_size

    def set_parameters(self, params: np.ndarray, offset: int) -> None:
        n = self.number_of_parameters()
        block = np.asarray(params[offset : offset + n], dtype=float)
        if block.size != n:
            raise ValueError(f"expected {n} parameters from offset {offset}, got {block.size}")
        self._theta[:] = block.reshape(self.length, self.alphabet_size)

    def current_parameter_values(self) -> np.ndarray:
        return self._theta.ravel().copy()

    def log_normalization_constant(self) -> float:
        return float(logsumexp(self._theta, axis=1).sum())

    def log_partial_normalization_constant(self, index: int) -> float:
        if not 0 <= index < self.number_of_parameters():
            raise IndexError(f"parameter index {index} out of range")
        l, a = divmod(index, self.alphabet_size)
        row = self._theta[l]
        return self.log_normalization_constant() + float(row[a] - logsumexp(row))

    def log_partial_normalization_constants(self) -> np.ndarray:
        row_lse = logsumexp(self._theta, axis=1, keepdims=True)
        return (self.log_normalization_constant() + (self._theta - row_lse)).ravel()

    def log_prior_term(self) -> float:
        if self._ess <= 0:
            return 0.0
        alpha = self._ess / self.alphabet_size
        return float(alpha * self._theta.sum() - self._ess * self.log_normalization_constant())

    def add_gradient_of_log_prior_term(self, grad: np.ndarray, start: int) -> None:
        if self._ess <= 0:
            return
        alpha = self._ess / self.alphabet_size
        probs = np.exp(self._theta - logsumexp(self._theta, axis=1, keepdims=True))
        n = self.number_of_parameters()
        grad[start : start + n] += (alpha - self._ess * probs).ravel()

    def initialize_from_data(self, sequences: Sequence[np.ndarray], weights: Optional[np.ndarray] = None) -> None:
        """
        Plug-in estimate: log of weighted symbol frequencies per position plus
        ``ess / alphabet_size`` pseudocounts.
        """
        counts = np.zeros_like(self._theta)
        if weights is None:
            weights = np.ones(len(sequences), dtype=float)
        for seq, w in zip(sequences, weights):
            counts[self._positions, self._window(seq, 0)] += w
        counts += self._ess / self.alphabet_size
        totals = counts.sum(axis=1, keepdims=True)
        if np.any(totals <= 0):
            raise ValueError("cannot initialize from data without any weight or pseudocounts")
        with np.errstate(divide="ignore"):
            self._theta = np.log(counts / totals)
        if not np.all(np.isfinite(self._theta)):
            logger.warning("IndependentModel %r: unobserved symbols without pseudocounts; clipping to -30.", self.name)
            self._theta = np.maximum(self._theta, -30.0)
        logger.debug("IndependentModel %r initialized from %d sequences", self.name, len(sequences))

    def __repr__(self) -> str:
        return f"IndependentModel(length={self.length}, alphabet_size={self.alphabet_size}, ess={self._ess})"


class UniformModel(DifferentiableStatisticalModel):
    """Parameter-free model assigning probability alphabet_size ** -length to every sequence."""

    def __init__(self, length: int, alphabet_size: int = 4) -> None:
        self.length = int(length)
        self.alphabet_size = int(alphabet_size)

    def log_score(self, seq: np.ndarray, start: int = 0) -> float:
        if seq.size - start < self.length:
            raise ValueError(f"sequence too short: need {self.length} symbols from position {start}")
        return 0.0

    def log_score_and_partial_derivation(
        self,
        seq: np.ndarray,
        start: int,
        indices: List[int],
        partials: List[float],
    ) -> float:
        return self.log_score(seq, start)

    def number_of_parameters(self) -> int:
        return 0

    def set_parameters(self, params: np.ndarray, offset: int) -> None:
        return None

    def current_parameter_values(self) -> np.ndarray:
        return np.zeros(0, dtype=float)

    def log_normalization_constant(self) -> float:
        return self.length * math.log(self.alphabet_size)

    def log_partial_normalization_constant(self, index: int) -> float:
        raise IndexError("UniformModel has no parameters")

    def __repr__(self) -> str:
        return f"UniformModel(length={self.length}, alphabet_size={self.alphabet_size})"
