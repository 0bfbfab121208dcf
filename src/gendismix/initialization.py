"""
--------------------------------------------------------------------------------
<gendismix project>
gendismix/initialization.py

Starting parameter vectors for the outer optimizer.

Module Author(s): Eric J. South
Dunlop Lab
--------------------------------------------------------------------------------
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Sequence

import numpy as np

from .errors import ShapeMismatchError, UnknownParameterKindError
from .layout import ClassWeightState, ParameterLayout
from .scores import DifferentiableSequenceScore

logger = logging.getLogger(__name__)


class ParameterKind(str, Enum):
    ZEROS = "zeros"  # everything 0
    LAST = "last"  # continue from the cached class weights and current model parameters
    PLUGIN = "plugin"  # class weights from weighted class sizes plus ESS pseudocounts

    @classmethod
    def parse(cls, kind: "ParameterKind | str") -> "ParameterKind":
        if isinstance(kind, ParameterKind):
            return kind
        if isinstance(kind, str):
            key = kind.strip().lower()
            for member in cls:
                if member.value == key:
                    return member
        raise UnknownParameterKindError(f"Unknown kind of parameter: {kind!r}. Choose from {[k.value for k in cls]}.")


def plugin_class_params(
    layout: ParameterLayout,
    scores: Sequence[DifferentiableSequenceScore],
    sums: np.ndarray,
) -> np.ndarray:
    ess = np.array([s.ess for s in scores], dtype=float)
    denom = float(sums[-1] + ess.sum())
    if denom <= 0:
        raise ValueError("PLUGIN initialization needs a positive total weight or equivalent sample size.")
    values = np.array(
        [scores[c].initial_class_param(float(sums[c] + ess[c]) / denom) for c in range(layout.n_classes)],
        dtype=float,
    )
    if layout.eliminated_class is not None:
        # the eliminated class is the reference at 0
        reference = values[layout.eliminated_class]
        if not np.isfinite(reference):
            raise ShapeMismatchError(
                f"Class {layout.eliminated_class} has zero total weight and no equivalent sample size, so it "
                "cannot be the reference class of PLUGIN initialization; give it weight or use free_params=False."
            )
        values -= reference
    return values[: layout.class_segment_length]


def initial_parameters(
    kind: ParameterKind | str,
    layout: ParameterLayout,
    class_state: ClassWeightState,
    scores: Sequence[DifferentiableSequenceScore],
    sums: np.ndarray,
) -> np.ndarray:
    kind = ParameterKind.parse(kind)
    params = np.zeros(layout.dimension, dtype=float)
    if kind is ParameterKind.ZEROS:
        return params

    k = layout.class_segment_length
    if kind is ParameterKind.LAST:
        params[:k] = class_state.free_values(layout)
    else:
        params[:k] = plugin_class_params(layout, scores, sums)

    for c, score in enumerate(scores):
        block = np.asarray(score.current_parameter_values(), dtype=float)
        sl = layout.model_slice(c)
        if block.size != sl.stop - sl.start:
            raise ValueError(
                f"Scoring function of class {c} reports {block.size} parameter values, layout expects "
                f"{sl.stop - sl.start}; call reset() after changing a scoring function."
            )
        params[sl] = block
    logger.debug("Initial parameters (%s): dimension=%d", kind.value, layout.dimension)
    return params
