"""
seqhmm model I/O module

Saves and loads HiddenMarkovModel parameters as JSON: the start
distribution, the transition matrix and every state's emission
parameters, plus optional free-form metadata.

Saving is JSON-only; any other extension is rewritten to .json.
"""

import json
import os
import warnings
from typing import Any, Dict, Optional, Tuple

from seqhmm.core.exceptions import ConfigurationError
from seqhmm.core.hmm import HiddenMarkovModel

FORMAT_VERSION = '1.0'


# =============================================================================
# Loading
# =============================================================================

def load_model(filepath: str, random_state=None) -> HiddenMarkovModel:
    """
    Load a model from a JSON file.

    Args:
        filepath: Path to model file
        random_state: Seed or numpy Generator for the loaded model

    Returns:
        Validated HiddenMarkovModel
    """
    model, _ = load_model_with_metadata(filepath, random_state=random_state)
    return model


def load_model_with_metadata(filepath: str, random_state=None) -> Tuple[HiddenMarkovModel, Dict[str, Any]]:
    """
    Load model and the metadata stored alongside it.

    Returns:
        (model, metadata)
    """
    with open(filepath, 'r') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"{filepath} is not valid JSON: {e}") from e

    if not isinstance(data, dict) or data.get('model_type') != 'HiddenMarkovModel':
        raise ConfigurationError(f"{filepath} does not contain a HiddenMarkovModel")

    model = HiddenMarkovModel.from_dict(data, random_state=random_state)
    return model, data.get('metadata', {})


# =============================================================================
# Saving
# =============================================================================

def save_model(model: HiddenMarkovModel, filepath: str,
               metadata: Optional[Dict[str, Any]] = None) -> str:
    """
    Save model to file in JSON format.

    If the filepath does not end in .json, the extension is replaced with
    .json and a warning is issued.

    Args:
        model: HiddenMarkovModel to save
        filepath: Output path (.json)
        metadata: Extra JSON-serializable information (training settings etc.)

    Returns:
        The path actually written
    """
    if not filepath.endswith('.json'):
        old_path = filepath
        base, _ = os.path.splitext(filepath)
        filepath = base + '.json'
        warnings.warn(
            f"Only JSON format is supported for saving. "
            f"Saving to '{filepath}' instead of '{old_path}'."
        )

    model.validate()
    data = {
        'model_type': 'HiddenMarkovModel',
        'version': FORMAT_VERSION,
    }
    data.update(model.to_dict())
    data['metadata'] = metadata or {}

    with open(filepath, 'w') as f:
        json.dump(data, f, indent=2)
    return filepath
