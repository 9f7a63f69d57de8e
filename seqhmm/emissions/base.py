"""
Emission model contract.

Every per-state distribution plugged into a HiddenMarkovModel implements
the five operations below. The HMM only ever calls these, so Gaussian,
count and covariate-conditioned emissions share one Baum-Welch loop.

Data is passed positionally and is time-major (first axis = observation):
unconditional emissions take ``(Y,)``; regression emissions take
``(Phi, Y)`` to score or fit, and ``(Phi,)`` to sample.
"""

import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import numpy as np

from seqhmm.core.exceptions import ConfigurationError, DataShapeError

# Below this total responsibility a state is treated as unobserved and
# keeps its current parameters.
MIN_TOTAL_WEIGHT = 1e-10


class EmissionModel(ABC):
    """Abstract state-conditional distribution."""

    name: str = ''

    @abstractmethod
    def validate(self) -> None:
        """Raise ConfigurationError if the parameters are malformed."""

    @abstractmethod
    def validate_data(self, *data) -> None:
        """Raise DataShapeError if ``data`` does not fit this model's dimensions."""

    @abstractmethod
    def log_likelihood(self, *data) -> np.ndarray:
        """Per-observation log-likelihoods, shape (T,)."""

    @abstractmethod
    def sample(self, *data, n: Optional[int] = None,
               random_state=None) -> np.ndarray:
        """Draw ``n`` observations, in the same layout as the observed data."""

    @abstractmethod
    def weighted_fit(self, *data, weights: np.ndarray) -> None:
        """Refit in place, maximizing sum_t weights[t] * log p(data[t])."""

    @abstractmethod
    def get_params(self) -> Dict[str, Any]:
        """JSON-serializable constructor arguments."""

    def clone(self) -> 'EmissionModel':
        """Independent copy with no shared mutable state."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        d = {'type': self.name}
        d.update(self.get_params())
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'EmissionModel':
        params = {k: v for k, v in d.items() if k != 'type'}
        try:
            model = cls(**params)
        except TypeError as e:
            raise ConfigurationError(f"Bad parameters for {cls.__name__}: {e}") from e
        model.validate()
        return model

    def __repr__(self):
        return f"{type(self).__name__}({self.get_params()})"


# =============================================================================
# Shared checks
# =============================================================================

def as_observations(Y, dim: int, label: str = 'observations') -> np.ndarray:
    """
    Coerce Y to a float (T, dim) array.

    A 1-D array is accepted as T scalar observations when dim == 1.
    """
    Y = np.asarray(Y, dtype=np.float64)
    if Y.ndim == 1 and dim == 1:
        Y = Y.reshape(-1, 1)
    if Y.ndim != 2:
        raise DataShapeError(f"{label} must be 2-D (T, {dim}), got shape {Y.shape}")
    if Y.shape[1] != dim:
        raise DataShapeError(f"{label} have {Y.shape[1]} columns, model expects {dim}")
    if Y.shape[0] == 0:
        raise DataShapeError(f"{label} are empty")
    if not np.all(np.isfinite(Y)):
        raise DataShapeError(f"{label} contain non-finite values")
    return Y


def as_weights(weights, n_obs: int) -> np.ndarray:
    w = np.asarray(weights, dtype=np.float64)
    if w.ndim != 1 or w.shape[0] != n_obs:
        raise DataShapeError(f"weights must have shape ({n_obs},), got {w.shape}")
    if not np.all(np.isfinite(w)) or np.any(w < 0):
        raise DataShapeError("weights must be finite and nonnegative")
    return w


def check_covariance(cov: np.ndarray, dim: int, label: str = 'covariance') -> None:
    if cov.shape != (dim, dim):
        raise ConfigurationError(f"{label} must have shape ({dim}, {dim}), got {cov.shape}")
    if not np.all(np.isfinite(cov)):
        raise ConfigurationError(f"{label} contains non-finite values")
    if not np.allclose(cov, cov.T, atol=1e-8):
        raise ConfigurationError(f"{label} is not symmetric")
    try:
        np.linalg.cholesky(cov)
    except np.linalg.LinAlgError:
        raise ConfigurationError(f"{label} is not positive definite") from None


def weighted_covariance(residuals: np.ndarray, w: np.ndarray, w_sum: float,
                        ridge: float) -> np.ndarray:
    """Weighted scatter matrix with a ridge keeping it positive definite."""
    cov = (residuals * w[:, np.newaxis]).T @ residuals / w_sum
    cov = 0.5 * (cov + cov.T)
    cov += ridge * np.eye(cov.shape[0])
    return cov


def get_rng(random_state) -> np.random.Generator:
    if isinstance(random_state, np.random.Generator):
        return random_state
    return np.random.default_rng(random_state)
