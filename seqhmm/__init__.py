"""
seqhmm - Hidden Markov Models with pluggable emission models, fitted by
Baum-Welch (EM) and decoded with Viterbi.
"""

__version__ = "0.3.0"

from seqhmm.core.exceptions import ConfigurationError, DataShapeError
from seqhmm.core.hmm import (
    FitStatus,
    HiddenMarkovModel,
    TrainingMonitor,
    initialize_state_distribution,
    initialize_transition_matrix,
    train_model,
)
from seqhmm.core.model_io import load_model, load_model_with_metadata, save_model
from seqhmm.emissions import (
    BernoulliRegression,
    EmissionModel,
    Gaussian,
    GaussianRegression,
    Poisson,
    PoissonRegression,
)
