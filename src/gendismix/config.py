"""
--------------------------------------------------------------------------------
<gendismix project>
gendismix/config.py

YAML configuration for building objective functions.

    gendismix:
      threads: 4
      init: plugin
      objective:
        principle: msp
        normalize: true
        free_params: false
      prior:
        kind: gaussian
        variance: 10.0

Module Author(s): Eric J. South
Dunlop Lab
--------------------------------------------------------------------------------
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal, Optional, Sequence, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .data import DataSet
from .errors import ConfigError
from .function import LogGenDisMixFunction, OneDataSetLogGenDisMixFunction
from .initialization import ParameterKind
from .principles import LearningPrinciple, ObjectiveWeights
from .priors import GaussianLogPrior, LogPrior, get_prior, list_priors
from .scores import DifferentiableSequenceScore
from .telemetry import EvaluationTelemetry

logger = logging.getLogger(__name__)


class StrictBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PriorConfig(StrictBaseModel):
    kind: str = "none"
    variance: float = Field(default=1.0, gt=0)
    include_class_params: bool = True

    @field_validator("kind")
    @classmethod
    def _check_kind(cls, v: str) -> str:
        key = v.strip().lower()
        if key not in list_priors():
            raise ValueError(f"prior.kind must be one of {list_priors()}, got '{v}'")
        return key


class ObjectiveConfig(StrictBaseModel):
    principle: Optional[LearningPrinciple] = None
    weights: Optional[Tuple[float, float, float]] = None
    normalize: bool = True
    free_params: bool = False
    shared_data: bool = False

    @model_validator(mode="after")
    def _one_of_principle_or_weights(self) -> "ObjectiveConfig":
        if self.principle is not None and self.weights is not None:
            raise ValueError("objective: set either 'principle' or 'weights', not both")
        if self.weights is not None:
            ObjectiveWeights.checked(*self.weights)
        return self

    def objective_weights(self) -> ObjectiveWeights:
        if self.weights is not None:
            return ObjectiveWeights.checked(*self.weights)
        return (self.principle or LearningPrinciple.MSP).weights()


class EngineConfig(StrictBaseModel):
    threads: int = Field(default=1, ge=1)
    init: Literal["zeros", "last", "plugin"] = "plugin"
    objective: ObjectiveConfig = Field(default_factory=ObjectiveConfig)
    prior: PriorConfig = Field(default_factory=PriorConfig)

    @property
    def init_kind(self) -> ParameterKind:
        return ParameterKind.parse(self.init)


class GenDisMixRoot(StrictBaseModel):
    gendismix: EngineConfig


def load_config(path: Path | str) -> EngineConfig:
    path = Path(path)
    try:
        raw = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Could not read config {path}: {exc}") from exc
    if not isinstance(raw, dict) or "gendismix" not in raw:
        raise ConfigError(f"{path}: missing root key 'gendismix'")
    if raw["gendismix"] is None:
        raw["gendismix"] = {}
    try:
        cfg = GenDisMixRoot.model_validate(raw).gendismix
    except ValidationError as exc:
        raise ConfigError(f"Invalid config {path}:\n{exc}") from exc
    logger.info("Loaded config %s (threads=%d, prior=%s)", path, cfg.threads, cfg.prior.kind)
    return cfg


def build_prior(cfg: PriorConfig) -> LogPrior:
    if cfg.kind == "gaussian":
        return GaussianLogPrior(cfg.variance, include_class_params=cfg.include_class_params)
    return get_prior(cfg.kind)()


def build_function(
    cfg: EngineConfig,
    scores: Sequence[DifferentiableSequenceScore],
    data: Sequence[DataSet] | DataSet,
    weights=None,
    telemetry: Optional[EvaluationTelemetry] = None,
) -> LogGenDisMixFunction:
    """Construct and reset the objective described by ``cfg``."""
    cls = OneDataSetLogGenDisMixFunction if cfg.objective.shared_data else LogGenDisMixFunction
    fn = cls(
        cfg.threads,
        scores,
        data,
        weights,
        build_prior(cfg.prior),
        cfg.objective.objective_weights(),
        normalize=cfg.objective.normalize,
        free_params=cfg.objective.free_params,
        telemetry=telemetry,
    )
    fn.reset()
    return fn
