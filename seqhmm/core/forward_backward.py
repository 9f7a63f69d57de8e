"""
seqhmm forward-backward module

Log-space dynamic programming over a K-state transition graph:
1. Forward (alpha) and backward (beta) recursions
2. State posteriors (gamma) and pairwise transition posteriors (xi)
3. Viterbi decoding

Every routine works from a precomputed (K x T) matrix of per-state,
per-observation emission log-likelihoods, so nothing here knows what the
emission models are. Zero probabilities are carried as -inf and fall out
of the log-sum-exp as zero posterior mass.

The recursions are Numba-compiled; within a time step the per-state loop
runs as a ``prange`` loop, time steps stay sequential.
"""

from typing import NamedTuple, Optional, Tuple, Union

import numpy as np
from numba import jit, prange
from scipy.special import logsumexp as scipy_logsumexp


# =============================================================================
# Numba JIT-compiled recursions
# =============================================================================

@jit(nopython=True, cache=False)
def _logsumexp_of_sum(a, b):
    """log(sum(exp(a + b))) for two 1-D arrays of equal length."""
    n = a.shape[0]
    m = -np.inf
    for i in range(n):
        v = a[i] + b[i]
        if v > m:
            m = v
    if m == -np.inf:
        return -np.inf
    s = 0.0
    for i in range(n):
        s += np.exp(a[i] + b[i] - m)
    return m + np.log(s)


@jit(nopython=True, parallel=True, cache=False)
def _forward_numba(log_startprob, log_transmat_T, loglik):
    """
    Numba-compiled forward recursion.

    Args:
        log_startprob: (K,) log initial distribution
        log_transmat_T: (K, K) transposed log transition matrix, so that
            row k holds log A[:, k]
        loglik: (K, T) emission log-likelihoods

    Returns:
        alpha: (T, K) log forward variables
    """
    K = loglik.shape[0]
    T = loglik.shape[1]
    alpha = np.empty((T, K))

    for k in prange(K):
        alpha[0, k] = log_startprob[k] + loglik[k, 0]

    for t in range(1, T):
        prev = alpha[t - 1]
        for k in prange(K):
            alpha[t, k] = _logsumexp_of_sum(prev, log_transmat_T[k]) + loglik[k, t]

    return alpha


@jit(nopython=True, parallel=True, cache=False)
def _backward_numba(log_transmat, loglik):
    """Numba-compiled backward recursion; returns (T, K) log beta."""
    K = loglik.shape[0]
    T = loglik.shape[1]
    beta = np.empty((T, K))

    for k in range(K):
        beta[T - 1, k] = 0.0

    for t in range(T - 2, -1, -1):
        # log B[j, t+1] + beta[t+1, j], shared by every source state i
        ahead = np.empty(K)
        for j in range(K):
            ahead[j] = loglik[j, t + 1] + beta[t + 1, j]
        for i in prange(K):
            beta[t, i] = _logsumexp_of_sum(log_transmat[i], ahead)

    return beta


@jit(nopython=True, parallel=True, cache=False)
def _viterbi_numba(log_startprob, log_transmat, loglik):
    """
    Numba-compiled Viterbi for a K-state HMM.

    Ties are broken towards the lowest state index.

    Returns:
        path: Most likely state sequence (T,)
        log_prob: Log probability of that path
    """
    K = loglik.shape[0]
    T = loglik.shape[1]
    delta = np.empty((T, K))
    backpointer = np.zeros((T, K), dtype=np.int64)

    for k in prange(K):
        delta[0, k] = log_startprob[k] + loglik[k, 0]

    for t in range(1, T):
        for j in prange(K):
            best_score = delta[t - 1, 0] + log_transmat[0, j]
            best_state = 0
            for i in range(1, K):
                score = delta[t - 1, i] + log_transmat[i, j]
                if score > best_score:
                    best_score = score
                    best_state = i
            delta[t, j] = best_score + loglik[j, t]
            backpointer[t, j] = best_state

    path = np.zeros(T, dtype=np.int64)
    last_state = 0
    log_prob = delta[T - 1, 0]
    for k in range(1, K):
        if delta[T - 1, k] > log_prob:
            log_prob = delta[T - 1, k]
            last_state = k
    path[T - 1] = last_state

    for t in range(T - 2, -1, -1):
        path[t] = backpointer[t + 1, path[t + 1]]

    return path, log_prob


# =============================================================================
# Public API
# =============================================================================

class Posteriors(NamedTuple):
    """E-step output. All quantities are in log space."""
    log_gamma: np.ndarray       # (T, K), each row log-sums to 0
    log_xi: np.ndarray          # (T-1, K, K), each slice log-sums to 0
    log_alpha: np.ndarray       # (T, K)
    log_beta: np.ndarray        # (T, K)
    log_likelihood: float


def logsumexp(a: np.ndarray, axis: Optional[Union[int, Tuple[int, ...]]] = None,
              keepdims: bool = False) -> np.ndarray:
    """Numerically stable log-sum-exp; all -inf inputs give -inf, not a warning."""
    with np.errstate(divide='ignore', invalid='ignore'):
        return scipy_logsumexp(a, axis=axis, keepdims=keepdims)


def _prepare(log_transmat: np.ndarray, loglik: np.ndarray):
    log_transmat = np.ascontiguousarray(log_transmat, dtype=np.float64)
    loglik = np.ascontiguousarray(loglik, dtype=np.float64)
    return log_transmat, loglik


def forward(log_startprob: np.ndarray, log_transmat: np.ndarray,
            loglik: np.ndarray) -> np.ndarray:
    """
    Forward algorithm in log space.

    Args:
        log_startprob: (K,) log initial state distribution
        log_transmat: (K, K) log transition matrix, rows are source states
        loglik: (K, T) per-state emission log-likelihoods

    Returns:
        log_alpha: (T, K)
    """
    log_transmat, loglik = _prepare(log_transmat, loglik)
    log_startprob = np.ascontiguousarray(log_startprob, dtype=np.float64)
    return _forward_numba(log_startprob, np.ascontiguousarray(log_transmat.T), loglik)


def backward(log_transmat: np.ndarray, loglik: np.ndarray) -> np.ndarray:
    """
    Backward algorithm in log space.

    Returns:
        log_beta: (T, K), last row is 0 (log 1)
    """
    log_transmat, loglik = _prepare(log_transmat, loglik)
    return _backward_numba(log_transmat, loglik)


def sequence_log_likelihood(log_alpha: np.ndarray) -> float:
    """Total log-likelihood of the sequence: logsumexp over the last alpha row."""
    return float(logsumexp(log_alpha[-1]))


def state_posteriors(log_alpha: np.ndarray, log_beta: np.ndarray) -> np.ndarray:
    """Log gamma: alpha + beta, normalized per time step."""
    log_gamma = log_alpha + log_beta
    log_gamma -= logsumexp(log_gamma, axis=1, keepdims=True)
    return log_gamma


def pair_posteriors(log_alpha: np.ndarray, log_beta: np.ndarray,
                    log_transmat: np.ndarray, loglik: np.ndarray) -> np.ndarray:
    """
    Log xi[t, i, j] = alpha[t, i] + log A[i, j] + L[j, t+1] + beta[t+1, j],
    normalized over (i, j) at each t.

    Returns:
        log_xi: (T-1, K, K)
    """
    T, K = log_alpha.shape
    if T < 2:
        return np.empty((0, K, K))

    ahead = loglik[:, 1:].T + log_beta[1:]                # (T-1, K)
    log_xi = (log_alpha[:-1, :, np.newaxis] +
              log_transmat[np.newaxis, :, :] +
              ahead[:, np.newaxis, :])
    log_xi -= logsumexp(log_xi, axis=(1, 2), keepdims=True)
    return log_xi


def forward_backward(log_startprob: np.ndarray, log_transmat: np.ndarray,
                     loglik: np.ndarray) -> Posteriors:
    """Full E-step: alpha, beta, gamma, xi and the sequence log-likelihood."""
    log_alpha = forward(log_startprob, log_transmat, loglik)
    log_beta = backward(log_transmat, loglik)
    return Posteriors(
        log_gamma=state_posteriors(log_alpha, log_beta),
        log_xi=pair_posteriors(log_alpha, log_beta, log_transmat, loglik),
        log_alpha=log_alpha,
        log_beta=log_beta,
        log_likelihood=sequence_log_likelihood(log_alpha),
    )


def viterbi(log_startprob: np.ndarray, log_transmat: np.ndarray,
            loglik: np.ndarray) -> Tuple[np.ndarray, float]:
    """
    Most likely state path.

    Returns:
        path: (T,) state indices in [0, K-1]
        log_prob: Log joint probability of the path and the observations
    """
    log_transmat, loglik = _prepare(log_transmat, loglik)
    log_startprob = np.ascontiguousarray(log_startprob, dtype=np.float64)
    path, log_prob = _viterbi_numba(log_startprob, log_transmat, loglik)
    return path, float(log_prob)
