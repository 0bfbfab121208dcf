"""
--------------------------------------------------------------------------------
<gendismix project>
gendismix/function.py

Multi-threaded objective functions over class-partitioned weighted data.

Each call to ``evaluate``/``gradient``:
  1) checks the dimension and copies the parameter vector,
  2) derives the class weights once and pushes the parameters into every
     worker's scoring functions,
  3) lets every worker score its contiguous range of sequences,
  4) joins the per-worker partial sums on the calling thread in worker-index
     order and adds the prior once.

Results are bit-for-bit reproducible for a fixed number of threads; a
different number of threads may change the rounding of the partial sums.

Module Author(s): Eric J. South
Dunlop Lab
--------------------------------------------------------------------------------
"""

from __future__ import annotations

import logging
import math
import time
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.special import logsumexp

from .data import DataSet, WorkRange, check_data_and_weights, partition_workload, weight_sums
from .errors import EvaluationError, GenDisMixError, ShapeMismatchError
from .initialization import ParameterKind, initial_parameters
from .layout import ClassWeightLayout, ClassWeightState, ParameterLayout
from .principles import LearningPrinciple, ObjectiveWeights
from .priors import LogPrior, NoPrior
from .scores import DifferentiableSequenceScore, DifferentiableStatisticalModel
from .telemetry import EvaluationTelemetry, NullTelemetry
from .workers import WorkerPool, WorkerScratch

logger = logging.getLogger(__name__)

WeightsLike = Optional[Sequence[Optional[Sequence[float]]]]


class ScoreBasedObjective(ABC):
    """
    Parallel evaluator shared by all objective functions.

    Subclasses implement the per-range work (``_evaluate_range``,
    ``_gradient_range``) and the joins (``_join_function``, ``_join_gradients``).
    ``reset()`` must be called before the first evaluation and again whenever the
    scoring functions are replaced.
    """

    def __init__(
        self,
        threads: int,
        scores: Sequence[DifferentiableSequenceScore],
        data: Sequence[DataSet],
        weights: WeightsLike = None,
        prior: Optional[LogPrior] = None,
        *,
        normalize: bool = True,
        free_params: bool = False,
        telemetry: Optional[EvaluationTelemetry] = None,
    ) -> None:
        if int(threads) < 1:
            raise ValueError("The number of threads has to be positive.")
        if not scores:
            raise ValueError("At least one scoring function (class) is required.")
        self._threads = int(threads)
        self._scores: List[DifferentiableSequenceScore] = list(scores)
        self.n_classes = len(self._scores)
        self.normalize = bool(normalize)
        self.free_params = bool(free_params)
        self.class_layout = ClassWeightLayout.from_free_params(self.free_params)
        self.prior: LogPrior = prior if prior is not None else NoPrior()
        self.telemetry: EvaluationTelemetry = telemetry or NullTelemetry()

        self._layout: Optional[ParameterLayout] = None
        self._workers: List[WorkerScratch] = []
        self._pool: Optional[WorkerPool] = None
        self._params: Optional[np.ndarray] = None
        self._state = ClassWeightState.zeros(self.n_classes)

        self._data: Tuple[DataSet, ...] = ()
        self._weights: List[np.ndarray] = []
        self._sizes: List[int] = []
        self._sums = np.zeros(self.n_classes + 1, dtype=float)
        self._ranges: List[WorkRange] = []
        self.set_data_and_weights(data, weights)

    # ------------------------------------------------------------------ data

    def _check_data(self, data: Sequence[DataSet], weights: WeightsLike) -> Tuple[Tuple[DataSet, ...], List[np.ndarray]]:
        data_t = tuple(data)
        return data_t, check_data_and_weights(data_t, weights, self.n_classes)

    def set_data_and_weights(self, data: Sequence[DataSet], weights: WeightsLike) -> None:
        """Replace the data; every check runs before any state is touched."""
        data_t, weights_t = self._check_data(data, weights)
        sums = weight_sums(weights_t)
        if self.normalize and sums[-1] <= 0:
            raise ShapeMismatchError("The total weight must be positive when the objective is normalized.")
        sizes = [len(d) for d in data_t]
        ranges = partition_workload(sizes, self._threads)

        self._data = data_t
        self._weights = weights_t
        self._sizes = sizes
        self._sums = sums
        self._ranges = ranges
        logger.info(
            "Data set: %d sequences in %d data set(s), total weight %.4g, %d thread(s)",
            sum(sizes),
            len(sizes),
            sums[-1],
            self._threads,
        )

    @property
    def data(self) -> Tuple[DataSet, ...]:
        return self._data

    @property
    def weights(self) -> List[np.ndarray]:
        return list(self._weights)

    @property
    def weight_sums(self) -> np.ndarray:
        return self._sums.copy()

    @property
    def work_ranges(self) -> List[WorkRange]:
        return list(self._ranges)

    # ----------------------------------------------------------------- setup

    def _check_scores(self, scores: Sequence[DifferentiableSequenceScore]) -> None:
        return None

    def reset(self, scores: Optional[Sequence[DifferentiableSequenceScore]] = None) -> None:
        """(Re)build the parameter layout, the worker clones and the thread pool."""
        if scores is not None:
            if len(scores) != self.n_classes:
                raise ValueError(f"Expected {self.n_classes} scoring functions, got {len(scores)}.")
            candidate = list(scores)
        else:
            candidate = self._scores
        self._check_scores(candidate)

        layout = ParameterLayout(self.n_classes, self.class_layout, [s.number_of_parameters() for s in candidate])
        workers = [WorkerScratch(0, candidate)]
        for t in range(1, self._threads):
            workers.append(WorkerScratch(t, [s.clone() for s in candidate]))
        for w in workers:
            w.ensure_dimension(layout.dimension)

        self._scores = candidate
        self._layout = layout
        self._workers = workers
        self._params = None
        self._join_ll = np.zeros(layout.dimension, dtype=float)
        self._join_cll = np.zeros(layout.dimension, dtype=float)
        self._join_prior = np.zeros(layout.dimension, dtype=float)
        self.prior.bind(layout, self._scores)
        if self._pool is None or self._pool.closed:
            self._pool = WorkerPool(self._threads)
        logger.info(
            "Reset objective: classes=%d, threads=%d, dimension=%d, class weights=%s",
            self.n_classes,
            self._threads,
            layout.dimension,
            self.class_layout.value,
        )
        logger.debug("  %r", layout)

    def _require_layout(self) -> ParameterLayout:
        if self._layout is None:
            raise GenDisMixError("The objective function has not been reset; call reset() before using it.")
        return self._layout

    @property
    def layout(self) -> ParameterLayout:
        return self._require_layout()

    @property
    def scores(self) -> List[DifferentiableSequenceScore]:
        return list(self._scores)

    @property
    def number_of_threads(self) -> int:
        return self._threads

    @property
    def dimension(self) -> int:
        return self._require_layout().dimension

    def get_dimension_of_scope(self) -> int:
        return self.dimension

    # ------------------------------------------------------------ parameters

    def set_params(self, params: np.ndarray) -> None:
        layout = self._require_layout()
        x = np.asarray(params, dtype=float)
        layout.check_dimension(x)
        if self._params is None or self._params.size != x.size:
            self._params = x.copy()
        else:
            np.copyto(self._params, x)
        self._state = ClassWeightState.from_params(layout, self._params)
        offsets = layout.offsets
        self._pool.run(lambda _t, scratch: scratch.set_parameters(self._params, offsets), self._workers)

    @property
    def class_weights(self) -> ClassWeightState:
        return self._state

    def get_class_params(self, params: np.ndarray) -> np.ndarray:
        return self._require_layout().class_params(np.asarray(params, dtype=float))

    def add_term_to_class_parameter(self, class_index: int, term: float) -> None:
        self._state = self._state.add_term(self._require_layout(), class_index, float(term))

    def get_parameters(self, kind: ParameterKind | str) -> np.ndarray:
        kind = ParameterKind.parse(kind)
        return initial_parameters(kind, self._require_layout(), self._state, self._scores, self._sums)

    # ------------------------------------------------------------ evaluation

    def evaluate(self, params: np.ndarray) -> float:
        started = time.perf_counter()
        self.set_params(params)
        state = self._state
        self._pool.run(lambda t, work: self._evaluate_range(self._workers[t], work, state), self._ranges)
        value = self._join_function(state)
        self.telemetry.update(kind="evaluate", value=value, threads=self._threads, seconds=time.perf_counter() - started)
        logger.debug("evaluate -> %.10g", value)
        return value

    def gradient(self, params: np.ndarray) -> np.ndarray:
        started = time.perf_counter()
        self.set_params(params)
        state = self._state
        self._pool.run(lambda t, work: self._gradient_range(self._workers[t], work, state), self._ranges)
        grad = self._join_gradients(state)
        self.telemetry.update(
            kind="gradient",
            norm=float(np.linalg.norm(grad)),
            threads=self._threads,
            seconds=time.perf_counter() - started,
        )
        return grad

    @abstractmethod
    def _evaluate_range(self, scratch: WorkerScratch, work: WorkRange, state: ClassWeightState) -> None: ...

    @abstractmethod
    def _gradient_range(self, scratch: WorkerScratch, work: WorkRange, state: ClassWeightState) -> None: ...

    @abstractmethod
    def _join_function(self, state: ClassWeightState) -> float: ...

    @abstractmethod
    def _join_gradients(self, state: ClassWeightState) -> np.ndarray: ...

    # -------------------------------------------------------------- shutdown

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _scatter(grad: np.ndarray, offset: int, indices: List[int], partials: List[float], factor: float) -> None:
    if indices:
        np.add.at(grad, offset + np.asarray(indices, dtype=np.int64), factor * np.asarray(partials, dtype=float))


def resolve_objective_weights(
    weights: Union[LearningPrinciple, ObjectiveWeights, str, Sequence[float]],
) -> ObjectiveWeights:
    if isinstance(weights, LearningPrinciple):
        return weights.weights()
    if isinstance(weights, ObjectiveWeights):
        return ObjectiveWeights.checked(weights.likelihood, weights.conditional_likelihood, weights.prior)
    if isinstance(weights, str):
        return LearningPrinciple(weights.strip().lower()).weights()
    values = [float(v) for v in weights]
    if len(values) != 3:
        raise ValueError("Objective weights need exactly three values: likelihood, conditional likelihood, prior.")
    return ObjectiveWeights.checked(*values)


class LogGenDisMixFunction(ScoreBasedObjective):
    """
    Weighted combination of log-likelihood, conditional log-likelihood and
    log-prior:

        f = b_ll * LL + b_cll * CLL + b_prior * log p(theta)   (divided by the total weight if normalized)

        LL  = sum_{c,n} w_cn (log a_c + s_c(x_cn)) - W * log sum_k a_k Z_k
        CLL = sum_{c,n} w_cn (log a_c + s_c(x_cn) - log sum_k a_k exp(s_k(x_cn)))

    with class weights a_c, scores s_c, normalization constants Z_c and total
    weight W. Maximum likelihood, MAP, conditional likelihood and supervised
    posterior training are special cases (see LearningPrinciple).
    """

    def __init__(
        self,
        threads: int,
        scores: Sequence[DifferentiableSequenceScore],
        data: Sequence[DataSet],
        weights: WeightsLike = None,
        prior: Optional[LogPrior] = None,
        objective_weights: Union[LearningPrinciple, ObjectiveWeights, str, Sequence[float]] = LearningPrinciple.MSP,
        *,
        normalize: bool = True,
        free_params: bool = False,
        telemetry: Optional[EvaluationTelemetry] = None,
    ) -> None:
        self.beta = resolve_objective_weights(objective_weights)
        if self.beta.uses_conditional_likelihood and len(scores) < 2:
            raise ValueError(
                "The conditional likelihood needs at least two classes; use the likelihood for a single class."
            )
        super().__init__(
            threads,
            scores,
            data,
            weights,
            prior,
            normalize=normalize,
            free_params=free_params,
            telemetry=telemetry,
        )
        self._check_scores(self._scores)

    def _check_scores(self, scores: Sequence[DifferentiableSequenceScore]) -> None:
        if self.beta.uses_likelihood:
            for c, s in enumerate(scores):
                if not isinstance(s, DifferentiableStatisticalModel):
                    raise ValueError(
                        f"Evaluating the likelihood needs normalizable models; class {c} uses {type(s).__name__}."
                    )

    def _class_log_scores(self, scratch: WorkerScratch, seq: np.ndarray, state: ClassWeightState, classes) -> None:
        for k in classes:
            scratch.help[k] = state.log_weights[k] + scratch.scores[k].log_score(seq, 0)

    def _class_log_scores_and_partials(
        self, scratch: WorkerScratch, seq: np.ndarray, state: ClassWeightState, classes
    ) -> None:
        for k in classes:
            scratch.clear_sparse(k)
            scratch.help[k] = state.log_weights[k] + scratch.scores[k].log_score_and_partial_derivation(
                seq, 0, scratch.indices[k], scratch.partials[k]
            )

    def _accumulate_gradient(
        self,
        scratch: WorkerScratch,
        layout: ParameterLayout,
        class_index: int,
        weight: float,
        posterior: Optional[np.ndarray],
    ) -> None:
        """Add one (sequence, class, weight) contribution to the worker's dense buffers."""
        offsets = layout.offsets
        k0 = layout.class_segment_length
        if self.beta.uses_likelihood:
            if class_index < k0:
                scratch.ll_grad[class_index] += weight
            _scatter(
                scratch.ll_grad,
                int(offsets[class_index]),
                scratch.indices[class_index],
                scratch.partials[class_index],
                weight,
            )
        if posterior is not None:
            residual = -posterior
            residual[class_index] += 1.0
            scratch.cll_grad[:k0] += weight * layout.free_class_gradient(residual)
            for k in range(self.n_classes):
                _scatter(scratch.cll_grad, int(offsets[k]), scratch.indices[k], scratch.partials[k], weight * residual[k])

    def _evaluate_range(self, scratch: WorkerScratch, work: WorkRange, state: ClassWeightState) -> None:
        ll = cll = 0.0
        n_classes = self.n_classes
        conditional = self.beta.uses_conditional_likelihood
        help_ = scratch.help
        for c, n in work.iter_items(self._sizes):
            seq = self._data[c][n]
            w = self._weights[c][n]
            if conditional:
                self._class_log_scores(scratch, seq, state, range(n_classes))
                cll += w * (help_[c] - logsumexp(help_[:n_classes]))
            else:
                self._class_log_scores(scratch, seq, state, (c,))
            ll += w * help_[c]
        scratch.ll = ll
        scratch.cll = cll

    def _gradient_range(self, scratch: WorkerScratch, work: WorkRange, state: ClassWeightState) -> None:
        layout = self._layout
        scratch.ll_grad.fill(0.0)
        scratch.cll_grad.fill(0.0)
        n_classes = self.n_classes
        conditional = self.beta.uses_conditional_likelihood
        for c, n in work.iter_items(self._sizes):
            seq = self._data[c][n]
            w = self._weights[c][n]
            classes = range(n_classes) if conditional else (c,)
            self._class_log_scores_and_partials(scratch, seq, state, classes)
            posterior = None
            if conditional:
                logits = scratch.help[:n_classes]
                posterior = np.exp(logits - logsumexp(logits))
            self._accumulate_gradient(scratch, layout, c, w, posterior)

    def _log_normalization_constants(self) -> np.ndarray:
        return np.array([s.log_normalization_constant() for s in self._scores], dtype=float)

    def _join_function(self, state: ClassWeightState) -> float:
        ll = 0.0
        cll = 0.0
        for scratch in self._workers:
            ll += scratch.ll
            cll += scratch.cll
        total = float(self._sums[-1])
        lpr = 0.0
        if self.beta.uses_likelihood:
            ll -= total * float(logsumexp(state.log_weights + self._log_normalization_constants()))
        if self.beta.uses_prior:
            lpr = float(self.prior.log_prior_term(self._params))
        # unused terms are exactly 0, so 0 * inf cannot occur
        if not self.beta.uses_likelihood:
            ll = 0.0
        if not self.beta.uses_conditional_likelihood:
            cll = 0.0
        b = self.beta
        res = b.likelihood * ll + b.conditional_likelihood * cll + b.prior * lpr
        if not math.isfinite(res):
            logger.error("Non-finite objective for params %s", np.array2string(self._params, threshold=20))
            raise EvaluationError(
                f"Evaluating the function gives: {b.conditional_likelihood} * {cll} + "
                f"{b.likelihood} * {ll} + {b.prior} * {lpr}"
            )
        return res / total if self.normalize else res

    def _join_gradients(self, state: ClassWeightState) -> np.ndarray:
        layout = self._layout
        ll_grad, cll_grad, pr_grad = self._join_ll, self._join_cll, self._join_prior
        np.copyto(ll_grad, self._workers[0].ll_grad)
        np.copyto(cll_grad, self._workers[0].cll_grad)
        for scratch in self._workers[1:]:
            ll_grad += scratch.ll_grad
            cll_grad += scratch.cll_grad

        total = float(self._sums[-1])
        if self.beta.uses_likelihood:
            log_z = self._log_normalization_constants()
            shifted = state.log_weights + log_z
            norm = float(logsumexp(shifted))
            ll_grad[: layout.class_segment_length] -= total * layout.free_class_gradient(np.exp(shifted - norm))
            for c, score in enumerate(self._scores):
                sl = layout.model_slice(c)
                if sl.stop > sl.start:
                    partial = np.asarray(score.log_partial_normalization_constants(), dtype=float)
                    ll_grad[sl] -= total * np.exp(state.log_weights[c] + partial - norm)

        pr_grad.fill(0.0)
        if self.beta.uses_prior:
            self.prior.add_gradient(self._params, pr_grad)
        if not self.beta.uses_likelihood:
            ll_grad.fill(0.0)
        if not self.beta.uses_conditional_likelihood:
            cll_grad.fill(0.0)

        b = self.beta
        grad = b.likelihood * ll_grad + b.conditional_likelihood * cll_grad + b.prior * pr_grad
        if self.normalize:
            grad /= total
        return grad


class OneDataSetLogGenDisMixFunction(LogGenDisMixFunction):
    """
    Variant on a single data set in which every sequence carries one weight per
    class (soft class labels). Work is partitioned over sequences only.
    """

    def _check_data(self, data, weights: WeightsLike) -> Tuple[Tuple[DataSet, ...], List[np.ndarray]]:
        data_t = (data,) if isinstance(data, DataSet) else tuple(data)
        if len(data_t) != 1:
            raise ShapeMismatchError(f"Expected exactly one data set, got {len(data_t)}.")
        if weights is None:
            raise ShapeMismatchError("One weight array per class is required for a shared data set.")
        return data_t, check_data_and_weights(data_t, weights, self.n_classes, weight_sets=self.n_classes)

    def _evaluate_range(self, scratch: WorkerScratch, work: WorkRange, state: ClassWeightState) -> None:
        ll = cll = 0.0
        n_classes = self.n_classes
        all_classes = range(n_classes)
        help_ = scratch.help
        for _, n in work.iter_items(self._sizes):
            seq = self._data[0][n]
            self._class_log_scores(scratch, seq, state, all_classes)
            log_sum = logsumexp(help_[:n_classes])
            for c in all_classes:
                w = self._weights[c][n]
                ll += w * help_[c]
                cll += w * (help_[c] - log_sum)
        scratch.ll = ll
        scratch.cll = cll

    def _gradient_range(self, scratch: WorkerScratch, work: WorkRange, state: ClassWeightState) -> None:
        layout = self._layout
        scratch.ll_grad.fill(0.0)
        scratch.cll_grad.fill(0.0)
        n_classes = self.n_classes
        all_classes = range(n_classes)
        conditional = self.beta.uses_conditional_likelihood
        for _, n in work.iter_items(self._sizes):
            seq = self._data[0][n]
            self._class_log_scores_and_partials(scratch, seq, state, all_classes)
            posterior = None
            if conditional:
                logits = scratch.help[:n_classes]
                posterior = np.exp(logits - logsumexp(logits))
            for c in all_classes:
                w = self._weights[c][n]
                if w != 0:
                    self._accumulate_gradient(scratch, layout, c, w, posterior)


class NegativeFunction:
    """Negated view of an objective, for optimizers that minimize."""

    def __init__(self, function: ScoreBasedObjective) -> None:
        self.function = function

    def evaluate(self, params: np.ndarray) -> float:
        return -self.function.evaluate(params)

    def gradient(self, params: np.ndarray) -> np.ndarray:
        return -self.function.gradient(params)

    def get_dimension_of_scope(self) -> int:
        return self.function.get_dimension_of_scope()

    def __getattr__(self, name: str):
        return getattr(self.function, name)
