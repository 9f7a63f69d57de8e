"""Core HMM algorithms, parallel helpers and model I/O."""

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
