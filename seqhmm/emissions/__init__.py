"""Pluggable per-state emission models."""

from typing import Any, Dict

from seqhmm.core.exceptions import ConfigurationError
from seqhmm.emissions.base import EmissionModel
from seqhmm.emissions.basic import Gaussian, Poisson
from seqhmm.emissions.regression import (
    BernoulliRegression,
    GaussianRegression,
    PoissonRegression,
)

EMISSION_MODELS = {
    cls.name: cls
    for cls in (Gaussian, Poisson, GaussianRegression, BernoulliRegression, PoissonRegression)
}


def emission_from_dict(d: Dict[str, Any]) -> EmissionModel:
    """Rebuild an emission model from its ``to_dict()`` form."""
    kind = d.get('type')
    if kind not in EMISSION_MODELS:
        raise ConfigurationError(
            f"Unknown emission type {kind!r}; expected one of {sorted(EMISSION_MODELS)}")
    return EMISSION_MODELS[kind].from_dict(d)


__all__ = [
    'EmissionModel',
    'Gaussian',
    'Poisson',
    'GaussianRegression',
    'BernoulliRegression',
    'PoissonRegression',
    'EMISSION_MODELS',
    'emission_from_dict',
]
