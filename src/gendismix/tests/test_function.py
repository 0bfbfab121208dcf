"""
--------------------------------------------------------------------------------
<gendismix project>
gendismix/tests/test_function.py

Module Author(s): Eric J. South
Dunlop Lab
--------------------------------------------------------------------------------
"""

from __future__ import annotations

import math
from typing import List

import numpy as np
import pytest
from scipy.optimize import minimize

from gendismix.data import DataSet
from gendismix.errors import (
    ClassIndexError,
    DimensionError,
    EvaluationError,
    GenDisMixError,
    ShapeMismatchError,
    WorkerError,
)
from gendismix.function import LogGenDisMixFunction, NegativeFunction, OneDataSetLogGenDisMixFunction
from gendismix.initialization import ParameterKind
from gendismix.principles import LearningPrinciple, ObjectiveWeights
from gendismix.priors import CompositeLogPrior, GaussianLogPrior
from gendismix.scores import DifferentiableSequenceScore, IndependentModel
from gendismix.telemetry import RecordingTelemetry

ALL_TERMS = ObjectiveWeights(1.0, 1.0, 1.0)


def _params(fn, seed: int = 0, scale: float = 0.5) -> np.ndarray:
    return np.random.default_rng(seed).normal(scale=scale, size=fn.dimension)


def _fd_gradient(fn, x: np.ndarray, eps: float = 1e-6) -> np.ndarray:
    grad = np.zeros_like(x)
    for i in range(x.size):
        up, down = x.copy(), x.copy()
        up[i] += eps
        down[i] -= eps
        grad[i] = (fn.evaluate(up) - fn.evaluate(down)) / (2 * eps)
    return grad


def _build(cls=LogGenDisMixFunction, *args, **kwargs):
    fn = cls(*args, **kwargs)
    fn.reset()
    return fn


class _FailingModel(IndependentModel):
    """Raises when asked to score one particular sequence."""

    def __init__(self, length: int, poison: np.ndarray) -> None:
        super().__init__(length)
        self.poison = np.asarray(poison)

    def log_score(self, seq: np.ndarray, start: int = 0) -> float:
        if np.array_equal(seq, self.poison):
            raise RuntimeError("poisoned sequence")
        return super().log_score(seq, start)

    def log_score_and_partial_derivation(self, seq, start, indices, partials):
        if np.array_equal(seq, self.poison):
            raise RuntimeError("poisoned sequence")
        return super().log_score_and_partial_derivation(seq, start, indices, partials)


class _PlainScore(DifferentiableSequenceScore):
    """Unnormalized score: one weight per symbol, summed over the sequence."""

    def __init__(self) -> None:
        self.w = np.zeros(4)

    def log_score(self, seq, start=0):
        return float(self.w[seq[start:]].sum())

    def log_score_and_partial_derivation(self, seq, start, indices, partials):
        counts = np.bincount(seq[start:], minlength=4)
        for a in np.flatnonzero(counts):
            indices.append(int(a))
            partials.append(float(counts[a]))
        return self.log_score(seq, start)

    def number_of_parameters(self):
        return 4

    def set_parameters(self, params, offset):
        self.w[:] = params[offset : offset + 4]

    def current_parameter_values(self):
        return self.w.copy()


@pytest.mark.parametrize("threads", [1, 3])
@pytest.mark.parametrize("free_params", [False, True])
def test_gradient_matches_finite_differences(two_class_data, uneven_weights, make_models, threads, free_params) -> None:
    fn = _build(
        LogGenDisMixFunction,
        threads,
        make_models(2),
        two_class_data,
        uneven_weights,
        GaussianLogPrior(variance=4.0),
        ALL_TERMS,
        free_params=free_params,
    )
    x = _params(fn, seed=threads)
    np.testing.assert_allclose(fn.gradient(x), _fd_gradient(fn, x), atol=1e-6)
    fn.close()


@pytest.mark.parametrize("principle", list(LearningPrinciple))
def test_gradient_matches_finite_differences_per_principle(three_class_data, make_models, principle) -> None:
    fn = _build(
        LogGenDisMixFunction,
        2,
        make_models(3, ess=3.0),
        three_class_data,
        None,
        CompositeLogPrior(),
        principle,
        free_params=True,
        normalize=False,
    )
    x = _params(fn, seed=7)
    np.testing.assert_allclose(fn.gradient(x), _fd_gradient(fn, x), rtol=1e-5, atol=1e-5)
    fn.close()


def test_thread_counts_agree(three_class_data, make_models) -> None:
    values, grads = [], []
    for threads in (1, 2, 3, 5):
        with LogGenDisMixFunction(threads, make_models(3), three_class_data, objective_weights=ALL_TERMS) as fn:
            fn.reset()
            x = _params(fn, seed=1)
            values.append(fn.evaluate(x))
            grads.append(fn.gradient(x))
    for v, g in zip(values[1:], grads[1:]):
        assert v == pytest.approx(values[0], rel=1e-12)
        np.testing.assert_allclose(g, grads[0], rtol=1e-10, atol=1e-12)


def test_repeated_calls_are_bitwise_identical(three_class_data, make_models) -> None:
    with LogGenDisMixFunction(3, make_models(3), three_class_data, objective_weights=ALL_TERMS) as fn:
        fn.reset()
        x = _params(fn, seed=2)
        first_value, first_grad = fn.evaluate(x), fn.gradient(x)
        fn.evaluate(_params(fn, seed=3))
        assert fn.evaluate(x) == first_value
        np.testing.assert_array_equal(fn.gradient(x), first_grad)


def test_gradient_does_not_alias_internal_buffers(two_class_data, make_models) -> None:
    with LogGenDisMixFunction(2, make_models(2), two_class_data) as fn:
        fn.reset()
        g1 = fn.gradient(_params(fn, seed=1))
        snapshot = g1.copy()
        fn.gradient(_params(fn, seed=2))
        np.testing.assert_array_equal(g1, snapshot)


def test_uniform_models_give_mean_log_likelihood(make_models) -> None:
    data = [DataSet.from_strings(["ACGTA", "CCGTA", "TTTTT"]), DataSet.from_strings(["GGGGG", "AAAAA", "ACACA"])]
    with LogGenDisMixFunction(2, make_models(2), data, objective_weights=LearningPrinciple.ML) as fn:
        fn.reset()
        value = fn.evaluate(np.zeros(fn.dimension))
    # equal class weights and flat models: log(0.5) + log(4 ** -5) for every sequence
    assert value == pytest.approx(math.log(0.5) - 5 * math.log(4.0))


def test_likelihood_of_plugin_models(two_class_data) -> None:
    models = [IndependentModel(5, ess=1.0), IndependentModel(5, ess=1.0)]
    for m, ds in zip(models, two_class_data):
        m.initialize_from_data(list(ds))
    with LogGenDisMixFunction(1, models, two_class_data, objective_weights=LearningPrinciple.ML) as fn:
        fn.reset()
        x = fn.get_parameters(ParameterKind.PLUGIN)
        value = fn.evaluate(x)
    expected = np.mean(
        [
            math.log((len(ds) + 1.0) / 13.0) + sum(float(m.theta[i, s]) for i, s in enumerate(seq))
            for m, ds in zip(models, two_class_data)
            for seq in ds
        ]
    )
    assert value == pytest.approx(expected)


def test_worker_failure_raises_once(two_class_data) -> None:
    poison = two_class_data[0][2]
    models = [_FailingModel(5, poison), IndependentModel(5)]
    with LogGenDisMixFunction(4, models, two_class_data, objective_weights=LearningPrinciple.ML) as fn:
        fn.reset()
        x = np.zeros(fn.dimension)
        with pytest.raises(WorkerError, match="poisoned") as info:
            fn.evaluate(x)
        assert info.value.worker_index == 0
        assert isinstance(info.value.__cause__, RuntimeError)


def test_worker_failure_during_gradient_raises_once(two_class_data) -> None:
    # class 0 sequence 2 lands in worker 0, class 1 sequence 4 in worker 3
    models = [_FailingModel(5, two_class_data[0][2]), _FailingModel(5, two_class_data[1][4])]
    with LogGenDisMixFunction(4, models, two_class_data, objective_weights=LearningPrinciple.MSP) as fn:
        fn.reset()
        x = np.zeros(fn.dimension)
        with pytest.raises(WorkerError, match="poisoned") as info:
            fn.gradient(x)
        assert info.value.worker_index == 0
        assert isinstance(info.value.__cause__, RuntimeError)


def test_set_data_and_weights_mismatch_leaves_state(two_class_data, uneven_weights, make_models) -> None:
    with LogGenDisMixFunction(2, make_models(2), two_class_data, uneven_weights) as fn:
        fn.reset()
        x = _params(fn)
        before = fn.evaluate(x)
        sums = fn.weight_sums
        with pytest.raises(ShapeMismatchError):
            fn.set_data_and_weights(two_class_data, [np.ones(6), np.ones(4)])
        with pytest.raises(ShapeMismatchError):
            fn.set_data_and_weights(two_class_data[:1], None)
        np.testing.assert_array_equal(fn.weight_sums, sums)
        assert fn.data[0] is two_class_data[0]
        assert fn.evaluate(x) == before


def test_set_data_and_weights_replaces_data(two_class_data, three_class_data, make_models) -> None:
    with LogGenDisMixFunction(2, make_models(2), two_class_data) as fn:
        fn.reset()
        fn.set_data_and_weights(three_class_data[1:], [None, np.full(4, 2.0)])
        np.testing.assert_allclose(fn.weight_sums, [5.0, 8.0, 13.0])
        assert math.isfinite(fn.evaluate(np.zeros(fn.dimension)))


def test_too_many_threads(two_class_data, make_models) -> None:
    with pytest.raises(ShapeMismatchError, match="fewer sequences"):
        LogGenDisMixFunction(12, make_models(2), two_class_data)


def test_zero_total_weight_cannot_be_normalized(two_class_data, make_models) -> None:
    with pytest.raises(ShapeMismatchError, match="total weight"):
        LogGenDisMixFunction(1, make_models(2), two_class_data, [np.zeros(6), np.zeros(5)])


def test_dimension_mismatch(two_class_data, make_models) -> None:
    with LogGenDisMixFunction(2, make_models(2), two_class_data) as fn:
        fn.reset()
        assert fn.get_dimension_of_scope() == 2 + 2 * 20
        with pytest.raises(DimensionError):
            fn.evaluate(np.zeros(fn.dimension + 1))
        with pytest.raises(DimensionError):
            fn.gradient(np.zeros((2, fn.dimension)))


def test_use_before_reset(two_class_data, make_models) -> None:
    fn = LogGenDisMixFunction(1, make_models(2), two_class_data)
    with pytest.raises(GenDisMixError, match="reset"):
        fn.evaluate(np.zeros(42))


def test_non_finite_value_raises(two_class_data, make_models) -> None:
    with LogGenDisMixFunction(1, make_models(2), two_class_data, objective_weights=LearningPrinciple.ML) as fn:
        fn.reset()
        x = np.zeros(fn.dimension)
        x[0] = np.nan
        with pytest.raises(EvaluationError, match="Evaluating the function"):
            fn.evaluate(x)


def test_conditional_likelihood_needs_two_classes(two_class_data, make_models) -> None:
    with pytest.raises(ValueError, match="at least two classes"):
        LogGenDisMixFunction(1, make_models(1), two_class_data[:1], objective_weights=LearningPrinciple.MCL)
    fn = _build(LogGenDisMixFunction, 1, make_models(1), two_class_data[:1], objective_weights=LearningPrinciple.ML)
    assert fn.dimension == 1 + 20
    fn.close()


def test_likelihood_needs_normalizable_models(two_class_data) -> None:
    with pytest.raises(ValueError, match="normalizable"):
        LogGenDisMixFunction(1, [_PlainScore(), _PlainScore()], two_class_data, objective_weights=LearningPrinciple.ML)


def test_conditional_likelihood_with_plain_scores(two_class_data) -> None:
    fn = _build(
        LogGenDisMixFunction,
        2,
        [_PlainScore(), _PlainScore()],
        two_class_data,
        objective_weights=LearningPrinciple.MCL,
        free_params=True,
    )
    x = _params(fn, seed=4)
    np.testing.assert_allclose(fn.gradient(x), _fd_gradient(fn, x), atol=1e-6)
    fn.close()


def test_class_weight_terms(two_class_data, make_models) -> None:
    with LogGenDisMixFunction(1, make_models(2), two_class_data) as fn:
        fn.reset()
        x = _params(fn, seed=5)
        fn.evaluate(x)
        np.testing.assert_allclose(fn.get_class_params(x), x[:2])
        fn.add_term_to_class_parameter(0, 1.0)
        last = fn.get_parameters(ParameterKind.LAST)
        np.testing.assert_allclose(last[:2], x[:2] + [1.0, 0.0])
        np.testing.assert_allclose(last[2:], x[2:])
        assert fn.class_weights.probabilities().sum() == pytest.approx(1.0)


def test_class_weight_terms_with_eliminated_class(two_class_data, make_models) -> None:
    with LogGenDisMixFunction(1, make_models(2), two_class_data, free_params=True) as fn:
        fn.reset()
        x = np.zeros(fn.dimension)
        fn.evaluate(x)
        for c, term in [(1, 0.5), (0, -0.25), (1, 2.0)]:
            fn.add_term_to_class_parameter(c, term)
            assert fn.class_weights.probabilities().sum() == pytest.approx(1.0)
        np.testing.assert_allclose(fn.get_parameters("last")[:1], [-0.5 - 0.25 - 2.0])


@pytest.mark.parametrize("class_index", [2, -1])
def test_class_weight_term_out_of_range(two_class_data, make_models, class_index) -> None:
    with LogGenDisMixFunction(1, make_models(2), two_class_data) as fn:
        fn.reset()
        fn.evaluate(np.zeros(fn.dimension))
        before = fn.class_weights
        with pytest.raises(ClassIndexError, match="out of range"):
            fn.add_term_to_class_parameter(class_index, 1.0)
        assert fn.class_weights is before


def test_plugin_parameters(two_class_data, make_models) -> None:
    with LogGenDisMixFunction(1, make_models(2), two_class_data) as fn:
        fn.reset()
        plugin = fn.get_parameters(ParameterKind.PLUGIN)
        np.testing.assert_allclose(plugin[:2], np.log([6 / 11, 5 / 11]))
        np.testing.assert_array_equal(fn.get_parameters(ParameterKind.PLUGIN), plugin)
        assert not fn.get_parameters(ParameterKind.ZEROS).any()

    with LogGenDisMixFunction(1, make_models(2), two_class_data, free_params=True) as fn:
        fn.reset()
        np.testing.assert_allclose(fn.get_parameters(ParameterKind.PLUGIN)[:1], [math.log(6 / 5)])


def _zero_weight_setups(two_class_data):
    fg, bg = two_class_data
    return {
        "zero_weights_last": ([fg, bg], [np.ones(6), np.zeros(5)]),
        "empty_last": ([fg, DataSet([])], None),
        "zero_weights_first": ([fg, bg], [np.zeros(6), np.ones(5)]),
        "empty_first": ([DataSet([]), bg], None),
    }


@pytest.mark.parametrize(
    "setup, expected",
    [
        ("zero_weights_last", [0.0, -np.inf]),
        ("empty_last", [0.0, -np.inf]),
        ("zero_weights_first", [-np.inf, 0.0]),
        ("empty_first", [-np.inf, 0.0]),
    ],
)
def test_plugin_with_weightless_class(two_class_data, make_models, setup, expected) -> None:
    data, weights = _zero_weight_setups(two_class_data)[setup]
    with LogGenDisMixFunction(1, make_models(2), data, weights, objective_weights=LearningPrinciple.MCL) as fn:
        fn.reset()
        np.testing.assert_array_equal(fn.get_parameters(ParameterKind.PLUGIN)[:2], expected)


@pytest.mark.parametrize("setup", ["zero_weights_first", "empty_first"])
def test_plugin_with_weightless_free_class(two_class_data, make_models, setup) -> None:
    data, weights = _zero_weight_setups(two_class_data)[setup]
    with LogGenDisMixFunction(
        1, make_models(2), data, weights, objective_weights=LearningPrinciple.MCL, free_params=True
    ) as fn:
        fn.reset()
        np.testing.assert_array_equal(fn.get_parameters(ParameterKind.PLUGIN)[:1], [-np.inf])


@pytest.mark.parametrize("setup", ["zero_weights_last", "empty_last"])
def test_plugin_with_weightless_reference_class(two_class_data, make_models, setup) -> None:
    data, weights = _zero_weight_setups(two_class_data)[setup]
    with LogGenDisMixFunction(
        1, make_models(2), data, weights, objective_weights=LearningPrinciple.MCL, free_params=True
    ) as fn:
        fn.reset()
        with pytest.raises(ShapeMismatchError, match="zero total weight"):
            fn.get_parameters(ParameterKind.PLUGIN)


def test_empty_class_evaluates_at_plugin_start(two_class_data, make_models) -> None:
    data = [two_class_data[0], DataSet([])]
    with LogGenDisMixFunction(2, make_models(2), data, objective_weights=LearningPrinciple.MCL) as fn:
        fn.reset()
        x = fn.get_parameters(ParameterKind.PLUGIN)
        assert math.isfinite(fn.evaluate(x))
        assert np.all(np.isfinite(fn.gradient(x)[2:]))


def test_reset_with_new_scores_recomputes_layout(two_class_data, make_models) -> None:
    fn = _build(LogGenDisMixFunction, 2, make_models(2), two_class_data)
    assert fn.dimension == 42
    fn.reset([IndependentModel(3), IndependentModel(3)])
    assert fn.dimension == 2 + 24
    assert math.isfinite(fn.evaluate(np.zeros(26)))
    with pytest.raises(ValueError, match="Expected 2 scoring functions"):
        fn.reset([IndependentModel(3)])
    fn.close()
    # a closed function can be revived by reset
    fn.reset()
    assert math.isfinite(fn.evaluate(np.zeros(26)))
    fn.close()


def test_telemetry_records_calls(two_class_data, make_models) -> None:
    telemetry = RecordingTelemetry()
    with LogGenDisMixFunction(2, make_models(2), two_class_data, telemetry=telemetry) as fn:
        fn.reset()
        x = np.zeros(fn.dimension)
        value = fn.evaluate(x)
        fn.gradient(x)
    frame = telemetry.to_frame()
    assert frame["kind"].tolist() == ["evaluate", "gradient"]
    assert frame.loc[0, "value"] == pytest.approx(value)
    assert (frame["threads"] == 2).all()


def test_one_data_set_matches_split_data(two_class_data, make_models) -> None:
    shared = DataSet(list(two_class_data[0]) + list(two_class_data[1]))
    labels: List[np.ndarray] = [np.r_[np.ones(6), np.zeros(5)], np.r_[np.zeros(6), np.ones(5)]]
    kwargs = dict(objective_weights=ALL_TERMS, free_params=True)
    with LogGenDisMixFunction(3, make_models(2), two_class_data, None, GaussianLogPrior(), **kwargs) as split:
        split.reset()
        x = _params(split, seed=9)
        expected_value, expected_grad = split.evaluate(x), split.gradient(x)
    with OneDataSetLogGenDisMixFunction(3, make_models(2), shared, labels, GaussianLogPrior(), **kwargs) as one:
        one.reset()
        assert one.evaluate(x) == pytest.approx(expected_value, rel=1e-12)
        np.testing.assert_allclose(one.gradient(x), expected_grad, rtol=1e-10, atol=1e-12)


def test_one_data_set_soft_labels_gradient(two_class_data, make_models) -> None:
    shared = DataSet(list(two_class_data[0]) + list(two_class_data[1]))
    soft = np.linspace(0.0, 1.0, len(shared))
    fn = _build(
        OneDataSetLogGenDisMixFunction,
        2,
        make_models(2),
        [shared],
        [soft, 1.0 - soft],
        GaussianLogPrior(),
        ALL_TERMS,
    )
    np.testing.assert_allclose(fn.weight_sums, [5.5, 5.5, 11.0])
    x = _params(fn, seed=10)
    np.testing.assert_allclose(fn.gradient(x), _fd_gradient(fn, x), atol=1e-6)
    fn.close()


def test_one_data_set_requires_weights(two_class_data, make_models) -> None:
    with pytest.raises(ShapeMismatchError, match="One weight array per class"):
        OneDataSetLogGenDisMixFunction(1, make_models(2), two_class_data[0], None)
    with pytest.raises(ShapeMismatchError, match="exactly one data set"):
        OneDataSetLogGenDisMixFunction(1, make_models(2), two_class_data, [np.ones(6), np.ones(6)])


def test_negative_function_with_scipy(two_class_data, make_models) -> None:
    fn = _build(
        LogGenDisMixFunction,
        2,
        make_models(2),
        two_class_data,
        None,
        GaussianLogPrior(variance=10.0),
        LearningPrinciple.MSP,
        free_params=True,
    )
    neg = NegativeFunction(fn)
    assert neg.dimension == fn.dimension
    x0 = np.zeros(neg.get_dimension_of_scope())
    np.testing.assert_allclose(neg.gradient(x0), -fn.gradient(x0))
    res = minimize(neg.evaluate, x0, jac=neg.gradient, method="L-BFGS-B", options={"maxiter": 50})
    assert res.fun < neg.evaluate(x0)
    fn.close()
