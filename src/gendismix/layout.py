"""
--------------------------------------------------------------------------------
<gendismix project>
gendismix/layout.py

Bookkeeping for the flat parameter vector:

    [ class weights (C or C-1) | class 0 model | class 1 model | ... ]

With ClassWeightLayout.LAST_ELIMINATED the log weight of the last class is
not a parameter; it is pinned to 0 and serves as the reference against which
the other C-1 log weights are measured. Class probabilities are the softmax
of the C log weights and therefore always sum to one.

Module Author(s): Eric J. South
Dunlop Lab
--------------------------------------------------------------------------------
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Sequence

import numpy as np
from scipy.special import logsumexp, softmax

from .errors import ClassIndexError, DimensionError


class ClassWeightLayout(str, Enum):
    ALL_FREE = "all_free"
    LAST_ELIMINATED = "last_eliminated"

    @classmethod
    def from_free_params(cls, free_params: bool) -> "ClassWeightLayout":
        """``free_params=True`` keeps only the free (C-1) class weights."""
        return cls.LAST_ELIMINATED if free_params else cls.ALL_FREE


class ParameterLayout:
    """
    Offsets of every segment of the parameter vector.

    ``offsets[0]`` is the end of the class-weight segment, ``offsets[c]`` the
    start of the model block of class ``c`` and ``offsets[C]`` the dimension.
    """

    def __init__(self, n_classes: int, layout: ClassWeightLayout, parameter_counts: Sequence[int]) -> None:
        if n_classes < 1:
            raise ValueError("At least one class is required.")
        if len(parameter_counts) != n_classes:
            raise ValueError(f"Expected {n_classes} parameter counts, got {len(parameter_counts)}.")
        self.n_classes = int(n_classes)
        self.layout = ClassWeightLayout(layout)
        counts = [int(n) for n in parameter_counts]
        if any(n < 0 for n in counts):
            raise ValueError("Parameter counts must be non-negative.")
        offsets = np.zeros(n_classes + 1, dtype=np.int64)
        offsets[0] = n_classes - 1 if self.layout is ClassWeightLayout.LAST_ELIMINATED else n_classes
        for c, n in enumerate(counts):
            offsets[c + 1] = offsets[c] + n
        offsets.setflags(write=False)
        self.offsets = offsets
        self.parameter_counts = tuple(counts)

    @property
    def class_segment_length(self) -> int:
        return int(self.offsets[0])

    @property
    def dimension(self) -> int:
        return int(self.offsets[-1])

    @property
    def eliminated_class(self) -> int | None:
        return self.n_classes - 1 if self.layout is ClassWeightLayout.LAST_ELIMINATED else None

    def is_eliminated(self, class_index: int) -> bool:
        return class_index == self.eliminated_class

    def model_slice(self, class_index: int) -> slice:
        return slice(int(self.offsets[class_index]), int(self.offsets[class_index + 1]))

    def check_class_index(self, class_index: int) -> None:
        if not 0 <= class_index < self.n_classes:
            raise ClassIndexError(f"Class index {class_index} is out of range [0, {self.n_classes}).")

    def check_dimension(self, params: np.ndarray) -> None:
        if params.ndim != 1 or params.size != self.dimension:
            raise DimensionError(int(params.size), self.dimension)

    def class_params(self, params: np.ndarray) -> np.ndarray:
        """All C log class weights; an eliminated weight is reconstructed as 0."""
        res = np.zeros(self.n_classes, dtype=float)
        k = self.class_segment_length
        res[:k] = params[:k]
        return res

    def compensate(self, class_index: int, term: float) -> np.ndarray:
        """
        Change of the C log class weights that realizes "add ``term`` to the log
        weight of ``class_index``".

        The eliminated weight stays at 0, so a shift of it is expressed as the
        opposite shift of every free weight; the class probabilities are the same.
        """
        self.check_class_index(class_index)
        delta = np.zeros(self.n_classes, dtype=float)
        if self.is_eliminated(class_index):
            delta[: self.class_segment_length] -= term
        else:
            delta[class_index] += term
        return delta

    def free_class_gradient(self, grad: np.ndarray) -> np.ndarray:
        """Restrict a gradient over all C log weights to the stored (free) ones."""
        return np.asarray(grad[: self.class_segment_length], dtype=float)

    def __repr__(self) -> str:
        return f"ParameterLayout(classes={self.n_classes}, layout={self.layout.value}, offsets={self.offsets.tolist()})"


@dataclass(frozen=True)
class ClassWeightState:
    """Log class weights and their exponentials, derived from one parameter vector."""

    log_weights: np.ndarray
    weights: np.ndarray

    def __post_init__(self) -> None:
        self.log_weights.setflags(write=False)
        self.weights.setflags(write=False)

    @classmethod
    def from_log_weights(cls, log_weights: np.ndarray) -> "ClassWeightState":
        lw = np.array(log_weights, dtype=float)
        return cls(log_weights=lw, weights=np.exp(lw))

    @classmethod
    def zeros(cls, n_classes: int) -> "ClassWeightState":
        return cls.from_log_weights(np.zeros(n_classes, dtype=float))

    @classmethod
    def from_params(cls, layout: ParameterLayout, params: np.ndarray) -> "ClassWeightState":
        return cls.from_log_weights(layout.class_params(params))

    def add_term(self, layout: ParameterLayout, class_index: int, term: float) -> "ClassWeightState":
        return ClassWeightState.from_log_weights(self.log_weights + layout.compensate(class_index, term))

    def free_values(self, layout: ParameterLayout) -> np.ndarray:
        return np.array(self.log_weights[: layout.class_segment_length], dtype=float)

    def log_norm(self) -> float:
        return float(logsumexp(self.log_weights))

    def probabilities(self) -> np.ndarray:
        return softmax(self.log_weights)
