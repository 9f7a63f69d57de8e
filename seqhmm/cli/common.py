"""Shared argparse argument factories and table loading for seqhmm CLI tools.

Each add_* function adds a group of related arguments to an ArgumentParser.
Default values can be overridden per-script where needed.
"""

import argparse
import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from seqhmm.core.exceptions import DataShapeError
from seqhmm.emissions import EMISSION_MODELS, EmissionModel

REGRESSION_EMISSIONS = ('gaussian_regression', 'bernoulli_regression', 'poisson_regression')


def add_model_args(parser: argparse.ArgumentParser,
                   default_emission: str = 'gaussian',
                   default_states: int = 2) -> None:
    """Add model structure arguments (--n-states, --emission, --l2-penalty)."""
    parser.add_argument(
        '--n-states', '-K', type=int, default=default_states,
        help=f"Number of hidden states (default: {default_states})"
    )
    parser.add_argument(
        '--emission', '-e',
        choices=sorted(EMISSION_MODELS), default=default_emission,
        help=f"Emission model (default: {default_emission})"
    )
    parser.add_argument(
        '--l2-penalty', type=float, default=0.0,
        help="L2 penalty for regression emissions (default: 0.0)"
    )


def add_column_args(parser: argparse.ArgumentParser) -> None:
    """Add --columns and --covariates table column selectors."""
    parser.add_argument(
        '--columns', nargs='+', default=None,
        help="Observation columns (default: every column not used as a covariate)"
    )
    parser.add_argument(
        '--covariates', nargs='+', default=None,
        help="Covariate columns for regression emissions"
    )


def add_fit_args(parser: argparse.ArgumentParser,
                 max_iters: int = 100,
                 tol: float = 1e-6,
                 restarts: int = 10) -> None:
    """Add EM arguments (--max-iters, --tol, --restarts)."""
    parser.add_argument(
        '--max-iters', type=int, default=max_iters,
        help=f"Maximum EM iterations per restart (default: {max_iters})"
    )
    parser.add_argument(
        '--tol', type=float, default=tol,
        help=f"Convergence tolerance on the log-likelihood (default: {tol})"
    )
    parser.add_argument(
        '--restarts', '-r', type=int, default=restarts,
        help=f"Random initializations to try (default: {restarts})"
    )


def add_parallel_args(parser: argparse.ArgumentParser,
                      default_jobs: Optional[int] = None) -> None:
    """Add --jobs argument."""
    parser.add_argument(
        '--jobs', '-j', type=int, default=default_jobs,
        help="Worker threads for per-state work (0=all cores, default: auto)"
    )


def add_seed_args(parser: argparse.ArgumentParser, default: int = 42) -> None:
    """Add --seed argument."""
    parser.add_argument(
        '--seed', '-s', type=int, default=default,
        help=f"Random seed (default: {default})"
    )


def add_output_args(parser: argparse.ArgumentParser,
                    required: bool = True,
                    help_text: str = "Output file") -> None:
    """Add -o/--output argument."""
    parser.add_argument(
        '-o', '--output', required=required,
        help=help_text
    )


def add_verbose_args(parser: argparse.ArgumentParser) -> None:
    """Add --verbose flag."""
    parser.add_argument(
        '-v', '--verbose', action='store_true',
        help="Verbose output"
    )


def add_version_args(parser: argparse.ArgumentParser) -> None:
    """Add --version flag."""
    from seqhmm import __version__
    parser.add_argument(
        '--version', action='version',
        version=f'%(prog)s {__version__}'
    )


def setup_logging(verbose: bool = False) -> None:
    """Console logging for CLI tools; library modules only create loggers."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(message)s',
    )


# =============================================================================
# Tables and emission construction
# =============================================================================

def read_table(filepath: str) -> pd.DataFrame:
    """Read a tab-separated table, or comma-separated if the file ends in .csv."""
    sep = ',' if filepath.endswith('.csv') else '\t'
    return pd.read_csv(filepath, sep=sep)


def read_observations(filepath: str,
                      columns: Optional[Sequence[str]] = None,
                      covariates: Optional[Sequence[str]] = None
                      ) -> Tuple[Tuple[np.ndarray, ...], List[str], List[str]]:
    """
    Load model data from a table.

    Args:
        filepath: TSV/CSV file with a header row, one row per time step
        columns: Observation columns; default is every non-covariate column
        covariates: Covariate columns (regression emissions only)

    Returns:
        (data, columns, covariates) where data is ``(Y,)`` or ``(Phi, Y)``
    """
    table = read_table(filepath)
    covariates = list(covariates or [])
    if columns is None:
        columns = [c for c in table.columns if c not in covariates]
    columns = list(columns)

    missing = [c for c in columns + covariates if c not in table.columns]
    if missing:
        raise DataShapeError(f"Columns not found in {filepath}: {missing}")
    if not columns:
        raise DataShapeError(f"No observation columns selected from {filepath}")

    Y = table[columns].to_numpy(dtype=np.float64)
    if covariates:
        Phi = table[covariates].to_numpy(dtype=np.float64)
        return (Phi, Y), columns, covariates
    return (Y,), columns, covariates


def make_emission(name: str, n_outputs: int, n_inputs: int = 0,
                  l2_penalty: float = 0.0) -> EmissionModel:
    """Build a default-initialized emission template for the given dimensions."""
    cls = EMISSION_MODELS[name]
    if name in REGRESSION_EMISSIONS:
        if n_inputs < 1:
            raise DataShapeError(f"{name} emissions need --covariates")
        if name == 'gaussian_regression':
            return cls(input_dim=n_inputs, output_dim=n_outputs, l2_penalty=l2_penalty)
        if n_outputs != 1:
            raise DataShapeError(f"{name} emissions take exactly one response column")
        return cls(input_dim=n_inputs, l2_penalty=l2_penalty)

    if n_inputs:
        raise DataShapeError(f"{name} emissions do not take covariates")
    return cls(output_dim=n_outputs)
