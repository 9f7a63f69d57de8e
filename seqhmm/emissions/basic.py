"""Basic emissions: multivariate Gaussian and Poisson counts, no covariates."""

from typing import Any, Dict, Optional

import numpy as np
from scipy import stats

from seqhmm.core.exceptions import ConfigurationError, DataShapeError
from seqhmm.emissions.base import (
    EmissionModel,
    MIN_TOTAL_WEIGHT,
    as_observations,
    as_weights,
    check_covariance,
    get_rng,
    weighted_covariance,
)


class Gaussian(EmissionModel):
    """
    Full-covariance multivariate normal emission.

    Defaults to a zero mean and identity covariance; pair it with
    ``HiddenMarkovModel.weighted_initialization`` to break the symmetry
    between states before fitting.
    """

    name = 'gaussian'

    def __init__(self, output_dim: int = 1, mean=None, covariance=None,
                 ridge: float = 1e-6):
        self.output_dim = int(output_dim)
        if mean is None:
            mean = np.zeros(self.output_dim)
        if covariance is None:
            covariance = np.eye(self.output_dim)
        self.mean = np.array(mean, dtype=np.float64).reshape(-1)
        self.covariance = np.atleast_2d(np.array(covariance, dtype=np.float64))
        self.ridge = float(ridge)

    def validate(self) -> None:
        if self.output_dim < 1:
            raise ConfigurationError(f"output_dim must be >= 1, got {self.output_dim}")
        if self.mean.shape != (self.output_dim,):
            raise ConfigurationError(
                f"mean must have shape ({self.output_dim},), got {self.mean.shape}")
        if not np.all(np.isfinite(self.mean)):
            raise ConfigurationError("mean contains non-finite values")
        check_covariance(self.covariance, self.output_dim)

    def validate_data(self, *data) -> None:
        if len(data) > 1:
            raise DataShapeError(f"Gaussian takes (Y,), got {len(data)} arrays")
        if data:
            as_observations(data[0], self.output_dim)

    def log_likelihood(self, *data) -> np.ndarray:
        Y = as_observations(data[0], self.output_dim)
        ll = stats.multivariate_normal.logpdf(Y, mean=self.mean, cov=self.covariance)
        return np.atleast_1d(ll).astype(np.float64)

    def sample(self, *data, n: Optional[int] = None, random_state=None) -> np.ndarray:
        n = 1 if n is None else int(n)
        rng = get_rng(random_state)
        return rng.multivariate_normal(self.mean, self.covariance, size=n)

    def weighted_fit(self, *data, weights: np.ndarray) -> None:
        Y = as_observations(data[0], self.output_dim)
        w = as_weights(weights, Y.shape[0])
        w_sum = w.sum()
        if w_sum < MIN_TOTAL_WEIGHT:
            return

        self.mean = w @ Y / w_sum
        self.covariance = weighted_covariance(Y - self.mean, w, w_sum, self.ridge)

    def get_params(self) -> Dict[str, Any]:
        return {
            'output_dim': self.output_dim,
            'mean': self.mean.tolist(),
            'covariance': self.covariance.tolist(),
            'ridge': self.ridge,
        }


class Poisson(EmissionModel):
    """Independent Poisson counts, one rate per output dimension."""

    name = 'poisson'

    MIN_RATE = 1e-8

    def __init__(self, output_dim: int = 1, rates=None):
        self.output_dim = int(output_dim)
        if rates is None:
            rates = np.ones(self.output_dim)
        self.rates = np.array(rates, dtype=np.float64).reshape(-1)

    def validate(self) -> None:
        if self.output_dim < 1:
            raise ConfigurationError(f"output_dim must be >= 1, got {self.output_dim}")
        if self.rates.shape != (self.output_dim,):
            raise ConfigurationError(
                f"rates must have shape ({self.output_dim},), got {self.rates.shape}")
        if not np.all(np.isfinite(self.rates)) or np.any(self.rates <= 0):
            raise ConfigurationError("rates must be finite and positive")

    def _counts(self, Y) -> np.ndarray:
        Y = as_observations(Y, self.output_dim, label='counts')
        if np.any(Y < 0):
            raise DataShapeError("counts must be nonnegative")
        if not np.all(Y == np.floor(Y)):
            raise DataShapeError("counts must be integers")
        return Y

    def validate_data(self, *data) -> None:
        if len(data) > 1:
            raise DataShapeError(f"Poisson takes (Y,), got {len(data)} arrays")
        if data:
            self._counts(data[0])

    def log_likelihood(self, *data) -> np.ndarray:
        Y = self._counts(data[0])
        return stats.poisson.logpmf(Y, self.rates).sum(axis=1)

    def sample(self, *data, n: Optional[int] = None, random_state=None) -> np.ndarray:
        n = 1 if n is None else int(n)
        rng = get_rng(random_state)
        return rng.poisson(self.rates, size=(n, self.output_dim)).astype(np.float64)

    def weighted_fit(self, *data, weights: np.ndarray) -> None:
        Y = self._counts(data[0])
        w = as_weights(weights, Y.shape[0])
        w_sum = w.sum()
        if w_sum < MIN_TOTAL_WEIGHT:
            return
        self.rates = np.maximum(w @ Y / w_sum, self.MIN_RATE)

    def get_params(self) -> Dict[str, Any]:
        return {'output_dim': self.output_dim, 'rates': self.rates.tolist()}
