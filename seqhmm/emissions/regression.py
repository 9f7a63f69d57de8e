"""
Regression emissions: observations conditioned on per-step covariates.

Data layout is ``(Phi, Y)`` with Phi of shape (T, input_dim); sampling
takes ``(Phi,)`` and draws one response per covariate row. With
``include_intercept`` a column of ones is prepended to Phi and its
coefficient is never penalized.
"""

import logging
from abc import abstractmethod
from typing import Any, Dict, Optional, Tuple

import numpy as np
from scipy import optimize, stats
from scipy.special import expit, gammaln

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

logger = logging.getLogger(__name__)


class _RegressionEmission(EmissionModel):
    """Shared covariate handling for regression emissions."""

    output_dim = 1

    def __init__(self, input_dim: int, include_intercept: bool = True,
                 l2_penalty: float = 0.0):
        self.input_dim = int(input_dim)
        self.include_intercept = bool(include_intercept)
        self.l2_penalty = float(l2_penalty)

    @property
    def n_coefficients(self) -> int:
        return self.input_dim + int(self.include_intercept)

    def _design(self, Phi) -> np.ndarray:
        Phi = as_observations(Phi, self.input_dim, label='covariates')
        if self.include_intercept:
            Phi = np.hstack([np.ones((Phi.shape[0], 1)), Phi])
        return Phi

    def _penalty_mask(self) -> np.ndarray:
        mask = np.ones(self.n_coefficients)
        if self.include_intercept:
            mask[0] = 0.0
        return mask

    def _validate_common(self) -> None:
        if self.input_dim < 1:
            raise ConfigurationError(f"input_dim must be >= 1, got {self.input_dim}")
        if not np.isfinite(self.l2_penalty) or self.l2_penalty < 0:
            raise ConfigurationError(f"l2_penalty must be >= 0, got {self.l2_penalty}")

    def _responses(self, Y) -> np.ndarray:
        return as_observations(Y, self.output_dim, label='responses')

    def _split(self, data) -> Tuple[np.ndarray, np.ndarray]:
        if len(data) != 2:
            raise DataShapeError(
                f"{type(self).__name__} takes (Phi, Y), got {len(data)} arrays")
        X = self._design(data[0])
        Y = self._responses(data[1])
        if X.shape[0] != Y.shape[0]:
            raise DataShapeError(
                f"covariates have {X.shape[0]} rows but responses have {Y.shape[0]}")
        return X, Y

    def validate_data(self, *data) -> None:
        if len(data) == 1:
            self._design(data[0])
        elif len(data) == 2:
            self._split(data)
        else:
            raise DataShapeError(
                f"{type(self).__name__} takes (Phi,) or (Phi, Y), got {len(data)} arrays")

    def _sample_design(self, data, n: Optional[int]) -> np.ndarray:
        if len(data) != 1:
            raise DataShapeError(
                f"{type(self).__name__} samples from (Phi,), got {len(data)} arrays")
        X = self._design(data[0])
        if n is None:
            return X
        if n > X.shape[0]:
            raise DataShapeError(f"cannot draw {n} samples from {X.shape[0]} covariate rows")
        return X[:n]

    def _common_params(self) -> Dict[str, Any]:
        return {
            'input_dim': self.input_dim,
            'include_intercept': self.include_intercept,
            'l2_penalty': self.l2_penalty,
        }


class GaussianRegression(_RegressionEmission):
    """Linear-Gaussian regression: Y[t] ~ N(x[t] @ B, Sigma)."""

    name = 'gaussian_regression'

    def __init__(self, input_dim: int, output_dim: int = 1, coefficients=None,
                 covariance=None, include_intercept: bool = True,
                 l2_penalty: float = 0.0, ridge: float = 1e-6):
        super().__init__(input_dim, include_intercept, l2_penalty)
        self.output_dim = int(output_dim)
        if coefficients is None:
            coefficients = np.zeros((self.n_coefficients, self.output_dim))
        if covariance is None:
            covariance = np.eye(self.output_dim)
        self.coefficients = np.array(coefficients, dtype=np.float64)
        if self.coefficients.ndim == 1:
            self.coefficients = self.coefficients.reshape(-1, 1)
        self.covariance = np.atleast_2d(np.array(covariance, dtype=np.float64))
        self.ridge = float(ridge)

    def validate(self) -> None:
        self._validate_common()
        if self.output_dim < 1:
            raise ConfigurationError(f"output_dim must be >= 1, got {self.output_dim}")
        expected = (self.n_coefficients, self.output_dim)
        if self.coefficients.shape != expected:
            raise ConfigurationError(
                f"coefficients must have shape {expected}, got {self.coefficients.shape}")
        if not np.all(np.isfinite(self.coefficients)):
            raise ConfigurationError("coefficients contain non-finite values")
        check_covariance(self.covariance, self.output_dim)

    def log_likelihood(self, *data) -> np.ndarray:
        X, Y = self._split(data)
        residuals = Y - X @ self.coefficients
        ll = stats.multivariate_normal.logpdf(
            residuals, mean=np.zeros(self.output_dim), cov=self.covariance)
        return np.atleast_1d(ll).astype(np.float64)

    def sample(self, *data, n: Optional[int] = None, random_state=None) -> np.ndarray:
        X = self._sample_design(data, n)
        rng = get_rng(random_state)
        noise = rng.multivariate_normal(np.zeros(self.output_dim), self.covariance,
                                        size=X.shape[0])
        return X @ self.coefficients + noise

    def weighted_fit(self, *data, weights: np.ndarray) -> None:
        X, Y = self._split(data)
        w = as_weights(weights, X.shape[0])
        w_sum = w.sum()
        if w_sum < MIN_TOTAL_WEIGHT:
            return

        XtW = X.T * w
        gram = XtW @ X + self.l2_penalty * np.diag(self._penalty_mask())
        self.coefficients = np.linalg.lstsq(gram, XtW @ Y, rcond=None)[0]
        residuals = Y - X @ self.coefficients
        self.covariance = weighted_covariance(residuals, w, w_sum, self.ridge)

    def get_params(self) -> Dict[str, Any]:
        params = self._common_params()
        params.update({
            'output_dim': self.output_dim,
            'coefficients': self.coefficients.tolist(),
            'covariance': self.covariance.tolist(),
            'ridge': self.ridge,
        })
        return params


class _GLMEmission(_RegressionEmission):
    """Single-response GLM fitted by penalized weighted maximum likelihood."""

    def __init__(self, input_dim: int, coefficients=None,
                 include_intercept: bool = True, l2_penalty: float = 0.0):
        super().__init__(input_dim, include_intercept, l2_penalty)
        if coefficients is None:
            coefficients = np.zeros(self.n_coefficients)
        self.coefficients = np.array(coefficients, dtype=np.float64).reshape(-1)

    def validate(self) -> None:
        self._validate_common()
        if self.coefficients.shape != (self.n_coefficients,):
            raise ConfigurationError(
                f"coefficients must have shape ({self.n_coefficients},), "
                f"got {self.coefficients.shape}")
        if not np.all(np.isfinite(self.coefficients)):
            raise ConfigurationError("coefficients contain non-finite values")

    def _split(self, data):
        X, Y = super()._split(data)
        return X, Y[:, 0]

    @abstractmethod
    def _loglik_terms(self, eta: np.ndarray, y: np.ndarray) -> np.ndarray:
        """Per-step log-likelihood given the linear predictor."""

    @abstractmethod
    def _mean(self, eta: np.ndarray) -> np.ndarray:
        """Inverse link."""

    def log_likelihood(self, *data) -> np.ndarray:
        X, y = self._split(data)
        return self._loglik_terms(X @ self.coefficients, y)

    def weighted_fit(self, *data, weights: np.ndarray) -> None:
        X, y = self._split(data)
        w = as_weights(weights, X.shape[0])
        if w.sum() < MIN_TOTAL_WEIGHT:
            return

        mask = self._penalty_mask()

        def objective(beta):
            eta = X @ beta
            penalty = 0.5 * self.l2_penalty * np.sum(mask * beta ** 2)
            value = -(w @ self._loglik_terms(eta, y)) + penalty
            grad = -X.T @ (w * (y - self._mean(eta))) + self.l2_penalty * mask * beta
            return value, grad

        result = optimize.minimize(objective, self.coefficients, jac=True,
                                   method='L-BFGS-B')
        if not result.success:
            logger.warning("%s fit did not converge: %s", type(self).__name__, result.message)
        self.coefficients = np.asarray(result.x, dtype=np.float64)

    def get_params(self) -> Dict[str, Any]:
        params = self._common_params()
        params['coefficients'] = self.coefficients.tolist()
        return params


class BernoulliRegression(_GLMEmission):
    """Logistic regression emission for binary responses."""

    name = 'bernoulli_regression'

    def _responses(self, Y) -> np.ndarray:
        Y = super()._responses(Y)
        if np.any((Y < 0) | (Y > 1)):
            raise DataShapeError("Bernoulli responses must lie in [0, 1]")
        return Y

    def _loglik_terms(self, eta, y):
        return y * eta - np.logaddexp(0.0, eta)

    def _mean(self, eta):
        return expit(eta)

    def sample(self, *data, n: Optional[int] = None, random_state=None) -> np.ndarray:
        X = self._sample_design(data, n)
        rng = get_rng(random_state)
        return rng.binomial(1, expit(X @ self.coefficients)).astype(np.float64).reshape(-1, 1)


class PoissonRegression(_GLMEmission):
    """Log-link Poisson regression emission for count responses."""

    name = 'poisson_regression'

    # exp() overflow guard on the linear predictor
    MAX_ETA = 50.0

    def _responses(self, Y) -> np.ndarray:
        Y = super()._responses(Y)
        if np.any(Y < 0):
            raise DataShapeError("Poisson responses must be nonnegative")
        if not np.all(Y == np.floor(Y)):
            raise DataShapeError("Poisson responses must be integers")
        return Y

    def _loglik_terms(self, eta, y):
        eta = np.minimum(eta, self.MAX_ETA)
        return y * eta - np.exp(eta) - gammaln(y + 1.0)

    def _mean(self, eta):
        return np.exp(np.minimum(eta, self.MAX_ETA))

    def sample(self, *data, n: Optional[int] = None, random_state=None) -> np.ndarray:
        X = self._sample_design(data, n)
        rng = get_rng(random_state)
        rates = self._mean(X @ self.coefficients)
        return rng.poisson(rates).astype(np.float64).reshape(-1, 1)
