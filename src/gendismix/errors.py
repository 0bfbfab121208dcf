"""
--------------------------------------------------------------------------------
<gendismix project>
gendismix/errors.py

Module Author(s): Eric J. South
Dunlop Lab
--------------------------------------------------------------------------------
"""

from __future__ import annotations


class GenDisMixError(Exception):
    """Base exception for this package."""


class ConfigError(GenDisMixError, ValueError): ...


class ShapeMismatchError(GenDisMixError, ValueError):
    """Data sets and weight arrays do not line up with the classes."""


class DimensionError(GenDisMixError, ValueError):
    """A parameter vector does not match the dimension of the objective."""

    def __init__(self, got: int, expected: int):
        super().__init__(f"Parameter vector has dimension {got}, expected {expected}.")
        self.got = got
        self.expected = expected


class ClassIndexError(GenDisMixError, IndexError): ...


class UnknownParameterKindError(GenDisMixError, ValueError): ...


class EvaluationError(GenDisMixError, ArithmeticError):
    """The objective could not be evaluated to a finite value."""


class WorkerError(GenDisMixError, RuntimeError):
    """A worker thread raised while scoring its share of the data."""

    def __init__(self, worker_index: int, message: str):
        super().__init__(f"Worker {worker_index} failed: {message}")
        self.worker_index = worker_index
