"""
--------------------------------------------------------------------------------
<gendismix project>
gendismix/__init__.py

Public API:
  - LogGenDisMixFunction / OneDataSetLogGenDisMixFunction (parallel objectives)
  - DataSet, scoring functions, priors, learning principles
  - load_config / build_function (YAML-driven)
  - setup_console_logging (for scripts; the library itself only logs)

Module Author(s): Eric J. South
Dunlop Lab
--------------------------------------------------------------------------------
"""

from ._logging import setup_console_logging
from .config import EngineConfig, build_function, build_prior, load_config
from .data import DataSet, WorkRange, encode_dna, partition_workload
from .errors import (
    ClassIndexError,
    ConfigError,
    DimensionError,
    EvaluationError,
    GenDisMixError,
    ShapeMismatchError,
    UnknownParameterKindError,
    WorkerError,
)
from .function import LogGenDisMixFunction, NegativeFunction, OneDataSetLogGenDisMixFunction, ScoreBasedObjective
from .initialization import ParameterKind
from .layout import ClassWeightLayout, ClassWeightState, ParameterLayout
from .principles import LearningPrinciple, ObjectiveWeights
from .priors import CompositeLogPrior, GaussianLogPrior, LogPrior, NoPrior, get_prior, list_priors, register_prior
from .scores import DifferentiableSequenceScore, DifferentiableStatisticalModel, IndependentModel, UniformModel
from .telemetry import NullTelemetry, RecordingTelemetry

__all__ = [
    "ClassIndexError",
    "ClassWeightLayout",
    "ClassWeightState",
    "CompositeLogPrior",
    "ConfigError",
    "DataSet",
    "DifferentiableSequenceScore",
    "DifferentiableStatisticalModel",
    "DimensionError",
    "EngineConfig",
    "EvaluationError",
    "GaussianLogPrior",
    "GenDisMixError",
    "IndependentModel",
    "LearningPrinciple",
    "LogGenDisMixFunction",
    "LogPrior",
    "NegativeFunction",
    "NoPrior",
    "NullTelemetry",
    "ObjectiveWeights",
    "OneDataSetLogGenDisMixFunction",
    "ParameterKind",
    "ParameterLayout",
    "RecordingTelemetry",
    "ScoreBasedObjective",
    "ShapeMismatchError",
    "UniformModel",
    "UnknownParameterKindError",
    "WorkRange",
    "WorkerError",
    "build_function",
    "build_prior",
    "encode_dna",
    "get_prior",
    "list_priors",
    "load_config",
    "partition_workload",
    "register_prior",
    "setup_console_logging",
]
