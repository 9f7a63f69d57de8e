"""
Shared pytest fixtures for seqhmm tests.
"""
import pytest
import numpy as np
import tempfile

from seqhmm import Gaussian, GaussianRegression, HiddenMarkovModel, Poisson


@pytest.fixture
def true_transmat():
    return np.array([[0.9, 0.1], [0.2, 0.8]])


@pytest.fixture
def gaussian_model(true_transmat):
    """
    2-state, 2-D Gaussian HMM with well separated states.
    State 0: mean (3, 4)
    State 1: mean (-5, 2)
    """
    return HiddenMarkovModel(
        2,
        emissions=[
            Gaussian(output_dim=2, mean=[3.0, 4.0], covariance=np.eye(2)),
            Gaussian(output_dim=2, mean=[-5.0, 2.0], covariance=np.eye(2)),
        ],
        transmat=true_transmat,
        startprob=np.array([0.5, 0.5]),
        n_jobs=1,
        random_state=0,
    )


@pytest.fixture
def gaussian_sequence(gaussian_model):
    """500 steps sampled from gaussian_model: (states, Y)."""
    return gaussian_model.sample(n=500)


@pytest.fixture
def scalar_model():
    """1-D Gaussian HMM with sticky states at -2 and +2."""
    return HiddenMarkovModel(
        2,
        emissions=[Gaussian(mean=[-2.0]), Gaussian(mean=[2.0])],
        transmat=np.array([[0.95, 0.05], [0.05, 0.95]]),
        startprob=np.array([0.5, 0.5]),
        n_jobs=1,
        random_state=1,
    )


@pytest.fixture
def poisson_model():
    """2-state Poisson HMM with low (1) and high (10) count states."""
    return HiddenMarkovModel(
        2,
        emissions=[Poisson(rates=[1.0]), Poisson(rates=[10.0])],
        transmat=np.array([[0.9, 0.1], [0.1, 0.9]]),
        startprob=np.array([0.5, 0.5]),
        n_jobs=1,
        random_state=2,
    )


@pytest.fixture
def regression_model():
    """2-state linear-Gaussian regression HMM with opposite slopes."""
    return HiddenMarkovModel(
        2,
        emissions=[
            GaussianRegression(input_dim=1, coefficients=[[1.0], [3.0]],
                               covariance=[[0.25]]),
            GaussianRegression(input_dim=1, coefficients=[[-1.0], [-3.0]],
                               covariance=[[0.25]]),
        ],
        transmat=np.array([[0.9, 0.1], [0.1, 0.9]]),
        startprob=np.array([0.5, 0.5]),
        n_jobs=1,
        random_state=3,
    )


@pytest.fixture
def covariates():
    """300 x 1 covariate matrix."""
    rng = np.random.default_rng(4)
    return rng.normal(size=(300, 1))


@pytest.fixture
def temp_dir():
    """Temporary directory for file operations."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir
