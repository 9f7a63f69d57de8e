"""
seqhmm HMM module

Provides:
1. K-state HMM with pluggable emission models (any EmissionModel)
2. Baum-Welch training, forward-backward posteriors and Viterbi decoding
3. Ancestral sampling and randomized (Dirichlet) initialization
4. Multi-restart training (train_model)

The model owns one emission model per state and refits each of them with
posterior weights in the M-step; it never looks inside them.
"""

import enum
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from seqhmm.core.exceptions import ConfigurationError, DataShapeError
from seqhmm.core.forward_backward import (
    Posteriors,
    forward_backward,
    logsumexp,
    viterbi,
)
from seqhmm.core.parallel import parallel_map
from seqhmm.emissions import EmissionModel, emission_from_dict

logger = logging.getLogger(__name__)

# Tolerance on row sums of the transition matrix and the start distribution
STOCHASTIC_ATOL = 1e-8


# =============================================================================
# Randomized initializers
# =============================================================================

def initialize_transition_matrix(n_states: int, random_state=None) -> np.ndarray:
    """Each row drawn independently from Dirichlet(1, ..., 1)."""
    rng = _get_rng(random_state)
    return rng.dirichlet(np.ones(n_states), size=n_states)


def initialize_state_distribution(n_states: int, random_state=None) -> np.ndarray:
    """A single Dirichlet(1, ..., 1) draw."""
    rng = _get_rng(random_state)
    return rng.dirichlet(np.ones(n_states))


def _get_rng(random_state) -> np.random.Generator:
    if isinstance(random_state, np.random.Generator):
        return random_state
    return np.random.default_rng(random_state)


# =============================================================================
# Training bookkeeping
# =============================================================================

class FitStatus(enum.Enum):
    INITIALIZING = 'initializing'
    ITERATING = 'iterating'
    CONVERGED = 'converged'
    MAX_ITER_REACHED = 'max_iter_reached'


class TrainingMonitor:
    """Tracks training progress."""

    def __init__(self, tol: float, max_iters: int):
        self.tol = tol
        self.max_iters = max_iters
        self.history: List[float] = []
        self.status = FitStatus.INITIALIZING

    @property
    def n_iter(self) -> int:
        return len(self.history)

    @property
    def converged(self) -> bool:
        return self.status is FitStatus.CONVERGED

    def __repr__(self):
        last = self.history[-1] if self.history else None
        return (f"TrainingMonitor(status={self.status.value}, n_iter={self.n_iter}, "
                f"log_likelihood={last})")


# =============================================================================
# Model
# =============================================================================

class HiddenMarkovModel:
    """
    Hidden Markov Model with custom emissions.

    Args:
        n_states: Number of hidden states K
        emissions: Emission models, one per state. If fewer than K are given,
            the rest are filled with clones of ``emission``.
        emission: Template emission model cloned to fill missing states
        transmat: (K, K) row-stochastic transition matrix; random
            Dirichlet rows if omitted
        startprob: (K,) initial state distribution; random Dirichlet draw
            if omitted
        n_jobs: Worker threads for per-state work (None = auto, 1 = serial)
        random_state: Seed or numpy Generator for initialization and sampling

    Every emission passed in is copied, so states never share parameters
    with each other or with the caller's objects.

    Example:
        >>> from seqhmm import HiddenMarkovModel, Gaussian
        >>> model = HiddenMarkovModel(2, emission=Gaussian(output_dim=2))
        >>> states, Y = model.sample(n=100)
    """

    def __init__(self, n_states: int,
                 emissions: Optional[Sequence[EmissionModel]] = None,
                 emission: Optional[EmissionModel] = None,
                 transmat: Optional[np.ndarray] = None,
                 startprob: Optional[np.ndarray] = None,
                 n_jobs: Optional[int] = None,
                 random_state=None):
        if not isinstance(n_states, (int, np.integer)) or n_states < 1:
            raise ConfigurationError(f"n_states must be a positive integer, got {n_states!r}")
        self.n_states = n_states
        self.n_jobs = n_jobs
        self._rng = _get_rng(random_state)

        emissions = [e.clone() if isinstance(e, EmissionModel) else e
                     for e in (emissions if emissions is not None else [])]
        if emission is not None:
            while len(emissions) < n_states:
                emissions.append(emission.clone())
        self.emissions_: List[EmissionModel] = emissions

        if transmat is None:
            transmat = initialize_transition_matrix(n_states, self._rng)
        if startprob is None:
            startprob = initialize_state_distribution(n_states, self._rng)
        self.transmat_ = np.array(transmat, dtype=np.float64)
        self.startprob_ = np.array(startprob, dtype=np.float64)

        self.monitor_: Optional[TrainingMonitor] = None

        self.validate()

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self) -> None:
        """
        Check shapes, stochasticity and the emission set.

        Raises ConfigurationError on the first problem found. Has no side
        effects, so calling it repeatedly gives the same answer.
        """
        K = self.n_states
        if not isinstance(K, (int, np.integer)) or K < 1:
            raise ConfigurationError(f"n_states must be a positive integer, got {K!r}")

        A = np.asarray(self.transmat_)
        if A.shape != (K, K):
            raise ConfigurationError(f"transmat_ must have shape ({K}, {K}), got {A.shape}")
        if not np.all(np.isfinite(A)) or np.any(A < 0) or np.any(A > 1 + STOCHASTIC_ATOL):
            raise ConfigurationError("transmat_ entries must lie in [0, 1]")
        if not np.allclose(A.sum(axis=1), 1.0, rtol=0, atol=STOCHASTIC_ATOL):
            raise ConfigurationError(f"transmat_ rows must sum to 1, got {A.sum(axis=1)}")

        pi = np.asarray(self.startprob_)
        if pi.shape != (K,):
            raise ConfigurationError(f"startprob_ must have shape ({K},), got {pi.shape}")
        if not np.all(np.isfinite(pi)) or np.any(pi < 0) or np.any(pi > 1 + STOCHASTIC_ATOL):
            raise ConfigurationError("startprob_ entries must lie in [0, 1]")
        if not np.isclose(pi.sum(), 1.0, rtol=0, atol=STOCHASTIC_ATOL):
            raise ConfigurationError(f"startprob_ must sum to 1, got {pi.sum()}")

        if len(self.emissions_) != K:
            raise ConfigurationError(
                f"Expected {K} emission models, got {len(self.emissions_)}")
        for i, e in enumerate(self.emissions_):
            if not isinstance(e, EmissionModel):
                raise ConfigurationError(
                    f"Emission {i} is {type(e).__name__}, not an EmissionModel")
        kinds = {type(e) for e in self.emissions_}
        if len(kinds) > 1:
            raise ConfigurationError(
                f"All emissions must be the same type, got {sorted(k.__name__ for k in kinds)}")

        for e in self.emissions_:
            e.validate()

    def validate_data(self, *data) -> None:
        """Raise DataShapeError if the data does not fit the emission models."""
        self.emissions_[0].validate_data(*data)

    # -------------------------------------------------------------------------
    # E-step machinery
    # -------------------------------------------------------------------------

    def _compute_log_probs(self) -> Tuple[np.ndarray, np.ndarray]:
        """Log start and transition probabilities; zeros become -inf."""
        with np.errstate(divide='ignore'):
            return np.log(self.startprob_), np.log(self.transmat_)

    def emission_log_likelihoods(self, *data) -> np.ndarray:
        """
        Per-state, per-observation log-likelihoods.

        Returns:
            (K, T) matrix; row k comes from emission model k
        """
        if not data:
            raise DataShapeError("No observation data given")
        rows = parallel_map(lambda e: np.asarray(e.log_likelihood(*data), dtype=np.float64),
                            self.emissions_, self.n_jobs)
        lengths = {row.shape for row in rows}
        if len(lengths) != 1 or rows[0].ndim != 1:
            raise DataShapeError(
                f"Emission log-likelihoods have inconsistent shapes: {sorted(lengths)}")
        if rows[0].shape[0] == 0:
            raise DataShapeError("No observations")
        return np.vstack(rows)

    def _e_step(self, data) -> Posteriors:
        log_startprob, log_transmat = self._compute_log_probs()
        loglik = self.emission_log_likelihoods(*data)
        return forward_backward(log_startprob, log_transmat, loglik)

    def e_step(self, *data) -> Posteriors:
        """Forward-backward pass: log alpha, beta, gamma, xi and the log-likelihood."""
        self.validate()
        self.validate_data(*data)
        return self._e_step(data)

    # -------------------------------------------------------------------------
    # Scoring and decoding
    # -------------------------------------------------------------------------

    def score(self, *data) -> float:
        """
        Log-likelihood of the data under the model.

        Args:
            *data: Observation arrays in the emission models' layout

        Returns:
            log p(data)
        """
        return self.e_step(*data).log_likelihood

    def predict_proba(self, *data) -> np.ndarray:
        """
        Posterior state probabilities P(state | observations).

        Returns:
            (T, K) array, each row sums to 1
        """
        return np.exp(self.e_step(*data).log_gamma)

    def decode(self, *data) -> Tuple[np.ndarray, float]:
        """
        Viterbi decoding.

        Returns:
            path: Most likely state sequence, shape (T,), values in [0, K-1]
            log_prob: Log joint probability of the path and the data
        """
        self.validate()
        self.validate_data(*data)
        log_startprob, log_transmat = self._compute_log_probs()
        loglik = self.emission_log_likelihoods(*data)
        return viterbi(log_startprob, log_transmat, loglik)

    def predict(self, *data) -> np.ndarray:
        """Most likely state sequence (Viterbi)."""
        path, _ = self.decode(*data)
        return path

    def predict_with_confidence(self, *data) -> Tuple[np.ndarray, np.ndarray]:
        """
        Viterbi path plus the posterior probability of the chosen state at
        each step.

        Returns:
            path: (T,)
            confidence: P(path[t] | observations), shape (T,)
        """
        path, _ = self.decode(*data)
        posteriors = np.exp(self._e_step(data).log_gamma)
        confidence = posteriors[np.arange(len(path)), path]
        return path, confidence

    # -------------------------------------------------------------------------
    # Sampling
    # -------------------------------------------------------------------------

    def sample(self, *data, n: Optional[int] = None) -> Tuple[np.ndarray, np.ndarray]:
        """
        Draw a state path and matching observations.

        Args:
            *data: Conditioning data for regression emissions (e.g. ``Phi``);
                empty for unconditional emissions
            n: Sequence length. Defaults to the number of covariate rows
                when conditioning data is given.

        Returns:
            states: (n,) state indices
            observations: (n, ...) one row per step, in the emission layout
        """
        self.validate()
        self.validate_data(*data)

        if n is None:
            if not data:
                raise ValueError("n is required when sampling without covariates")
            n = len(data[0])
        n = int(n)
        if n < 1:
            raise ValueError(f"n must be positive, got {n}")
        if data and n > len(data[0]):
            raise DataShapeError(f"cannot draw {n} samples from {len(data[0])} covariate rows")

        states = np.empty(n, dtype=np.int64)
        states[0] = self._rng.choice(self.n_states, p=self.startprob_)
        for t in range(1, n):
            states[t] = self._rng.choice(self.n_states, p=self.transmat_[states[t - 1]])

        rows = []
        for t, k in enumerate(states):
            step_data = tuple(np.asarray(d)[t:t + 1] for d in data)
            rows.append(self.emissions_[k].sample(*step_data, n=1, random_state=self._rng))

        return states, np.concatenate(rows, axis=0)

    # -------------------------------------------------------------------------
    # Training
    # -------------------------------------------------------------------------

    def weighted_initialization(self, *data) -> 'HiddenMarkovModel':
        """
        Warm start from random responsibilities.

        Every observation gets a random Dirichlet(1, ..., 1) responsibility
        vector, each emission model is fitted to its column, and the
        transition matrix and start distribution are reset to uniform.
        """
        self.validate()
        self.validate_data(*data)

        n_obs = self.emission_log_likelihoods(*data).shape[1]
        responsibilities = self._rng.dirichlet(np.ones(self.n_states), size=n_obs)
        self._update_emissions(data, responsibilities)

        self.transmat_ = np.full((self.n_states, self.n_states), 1.0 / self.n_states)
        self.startprob_ = np.full(self.n_states, 1.0 / self.n_states)
        return self

    def _update_startprob(self, log_gamma: np.ndarray) -> None:
        startprob = np.exp(log_gamma[0])
        self.startprob_ = startprob / startprob.sum()

    def _update_transmat(self, log_gamma: np.ndarray, log_xi: np.ndarray) -> None:
        # A[i, j] = exp(logsumexp_t xi[t, i, j] - logsumexp_{t<T} gamma[t, i])
        if log_xi.shape[0] == 0:
            return
        expected_transitions = logsumexp(log_xi, axis=0)
        expected_visits = logsumexp(log_gamma[:-1], axis=0)

        visited = np.isfinite(expected_visits)
        transmat = self.transmat_.copy()
        transmat[visited] = np.exp(expected_transitions[visited] -
                                   expected_visits[visited, np.newaxis])
        self.transmat_ = transmat / transmat.sum(axis=1, keepdims=True)

    def _update_emissions(self, data, weights: np.ndarray) -> None:
        def refit(k):
            self.emissions_[k].weighted_fit(*data, weights=weights[:, k])

        parallel_map(refit, range(self.n_states), self.n_jobs)

    def _m_step(self, posteriors: Posteriors, data) -> None:
        self._update_startprob(posteriors.log_gamma)
        self._update_transmat(posteriors.log_gamma, posteriors.log_xi)
        self._update_emissions(data, np.exp(posteriors.log_gamma))

    def fit(self, *data, max_iters: int = 100, tol: float = 1e-6,
            verbose: bool = False, desc: str = "EM") -> 'HiddenMarkovModel':
        """
        Train with the Baum-Welch algorithm.

        Stops when successive log-likelihoods differ by less than ``tol``
        or after ``max_iters`` iterations; hitting the cap is not an error,
        check ``monitor_.status``.

        Args:
            *data: Observation arrays in the emission models' layout
            max_iters: Maximum EM iterations
            tol: Convergence threshold on the log-likelihood change
            verbose: Show a progress bar for the EM iterations
            desc: Description for the progress bar

        Returns:
            self
        """
        if not isinstance(max_iters, (int, np.integer)) or max_iters < 1:
            raise ValueError(f"max_iters must be a positive integer, got {max_iters!r}")
        if not tol > 0:
            raise ValueError(f"tol must be positive, got {tol!r}")

        self.validate()
        self.validate_data(*data)

        self.monitor_ = monitor = TrainingMonitor(tol=tol, max_iters=max_iters)
        prev_log_prob = -np.inf

        iterator = range(max_iters)
        if verbose:
            iterator = tqdm(iterator, desc=desc, leave=False)

        monitor.status = FitStatus.ITERATING
        for iteration in iterator:
            posteriors = self._e_step(data)
            log_prob = posteriors.log_likelihood
            monitor.history.append(log_prob)

            improvement = log_prob - prev_log_prob
            logger.debug("EM iteration %d: log-likelihood %.6f (delta %.3e)",
                         iteration + 1, log_prob, improvement)
            if verbose:
                iterator.set_postfix({'logprob': f'{log_prob:.4e}',
                                      'delta': f'{improvement:.2e}'})

            if abs(improvement) < tol:
                monitor.status = FitStatus.CONVERGED
                break
            if improvement < -tol:
                logger.warning("Log-likelihood decreased by %.3e at iteration %d",
                               -improvement, iteration + 1)

            prev_log_prob = log_prob
            self._m_step(posteriors, data)
        else:
            monitor.status = FitStatus.MAX_ITER_REACHED

        logger.info("EM %s after %d iterations, log-likelihood %.6f",
                    monitor.status.value, monitor.n_iter, monitor.history[-1])

        try:
            self.validate()
        except ConfigurationError as e:
            raise ConfigurationError(f"Model invalid after fitting: {e}") from e
        return self

    # -------------------------------------------------------------------------
    # State relabelling and serialization
    # -------------------------------------------------------------------------

    def permute_states(self, order: Sequence[int]) -> 'HiddenMarkovModel':
        """
        Relabel states so that new state i is old state ``order[i]``.

        Baum-Welch can converge to any labelling of the states; this fixes a
        canonical one without changing the distribution the model defines.
        """
        order = np.asarray(order, dtype=np.int64)
        if sorted(order.tolist()) != list(range(self.n_states)):
            raise ConfigurationError(
                f"order must be a permutation of 0..{self.n_states - 1}, got {order.tolist()}")

        self.startprob_ = self.startprob_[order]
        self.transmat_ = self.transmat_[order][:, order]
        self.emissions_ = [self.emissions_[i] for i in order]
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Serialize model to dictionary."""
        return {
            'n_states': self.n_states,
            'startprob': self.startprob_.tolist(),
            'transmat': self.transmat_.tolist(),
            'emissions': [e.to_dict() for e in self.emissions_],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any], n_jobs: Optional[int] = None,
                  random_state=None) -> 'HiddenMarkovModel':
        """Deserialize model from dictionary."""
        try:
            emissions = [emission_from_dict(e) for e in d['emissions']]
            return cls(
                n_states=int(d['n_states']),
                emissions=emissions,
                transmat=np.array(d['transmat'], dtype=np.float64),
                startprob=np.array(d['startprob'], dtype=np.float64),
                n_jobs=n_jobs,
                random_state=random_state,
            )
        except KeyError as e:
            raise ConfigurationError(f"Model dictionary is missing {e}") from e

    def __repr__(self):
        kind = type(self.emissions_[0]).__name__ if self.emissions_ else None
        return f"HiddenMarkovModel(n_states={self.n_states}, emission={kind})"


# =============================================================================
# Multi-restart training
# =============================================================================

def train_model(n_states: int, emission: EmissionModel, *data,
                n_restarts: int = 10,
                max_iters: int = 100,
                tol: float = 1e-6,
                n_jobs: Optional[int] = None,
                seed: int = 0,
                verbose: bool = False) -> Tuple[HiddenMarkovModel, List[HiddenMarkovModel]]:
    """
    Train several randomly initialized HMMs and return the best one.

    Each restart ``i`` is seeded with ``seed + i``, warm-started with
    ``weighted_initialization`` and fitted with Baum-Welch.

    Args:
        n_states: Number of hidden states
        emission: Template emission model, cloned for every state
        *data: Training data in the emission layout
        n_restarts: Number of random initializations
        max_iters, tol: Passed to ``HiddenMarkovModel.fit``
        n_jobs: Worker threads for per-state work
        seed: Base random seed
        verbose: Show progress bars

    Returns:
        (best_model, all_models)
    """
    if n_restarts < 1:
        raise ValueError(f"n_restarts must be positive, got {n_restarts}")

    best_model = None
    best_logprob = -np.inf
    all_models = []

    pbar = tqdm(range(n_restarts), desc="Training restarts", disable=not verbose)

    for i in pbar:
        model = HiddenMarkovModel(n_states, emission=emission, n_jobs=n_jobs,
                                  random_state=seed + i)
        model.weighted_initialization(*data)
        model.fit(*data, max_iters=max_iters, tol=tol, verbose=verbose,
                  desc=f"Init {i + 1} EM")

        logprob = model.score(*data)
        logger.info("Restart %d/%d: log-likelihood %.6f (%s)",
                    i + 1, n_restarts, logprob, model.monitor_.status.value)
        all_models.append(model)

        if best_model is None or logprob > best_logprob:
            best_logprob = logprob
            best_model = model

        pbar.set_postfix({'best_logprob': f'{best_logprob:.4e}'})

    return best_model, all_models
