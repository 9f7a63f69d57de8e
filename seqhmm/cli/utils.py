#!/usr/bin/env python3
"""
seqhmm-utils: model inspection and synthetic data generation.

Subcommands:
  inspect   Print model metadata, start/transition probabilities and emission parameters
  sample    Draw a state path and observations from a model and write them as TSV
"""

import argparse
import os
import sys

import numpy as np
import pandas as pd

from seqhmm.cli.common import (
    add_output_args, add_seed_args, add_version_args, read_table,
)
from seqhmm.core.exceptions import DataShapeError
from seqhmm.core.model_io import load_model, load_model_with_metadata


def _format_param(value) -> str:
    if isinstance(value, list):
        return np.array2string(np.asarray(value), precision=6, suppress_small=True)
    return str(value)


# =============================================================================
# inspect subcommand
# =============================================================================

def cmd_inspect(args):
    """Inspect a model file: print metadata, parameters and emission parameters."""
    filepath = args.model

    if not os.path.exists(filepath):
        print(f"Error: File not found: {filepath}", file=sys.stderr)
        sys.exit(1)

    try:
        model, metadata = load_model_with_metadata(filepath)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Model: {filepath}")
    print(f"  States: {model.n_states}")
    print(f"  Emission: {type(model.emissions_[0]).__name__}")
    for key, value in metadata.items():
        print(f"  {key}: {value}")
    print()

    print("Start probabilities:")
    for i, p in enumerate(model.startprob_):
        print(f"  State {i}: {p:.6f}")
    print()

    print("Transition matrix:")
    header = "         " + "  ".join(f"{f'to {j}':>10s}" for j in range(model.n_states))
    print(header)
    for i, row in enumerate(model.transmat_):
        row_str = "  ".join(f"{v:10.6f}" for v in row)
        print(f"  from {i}  {row_str}")
    print()

    print("Emission parameters:")
    for i, emission in enumerate(model.emissions_):
        print(f"  State {i}:")
        for key, value in emission.get_params().items():
            print(f"    {key}: {_format_param(value)}")


# =============================================================================
# sample subcommand
# =============================================================================

def cmd_sample(args):
    """Sample a synthetic sequence from a model and write it as TSV."""
    try:
        model = load_model(args.model, random_state=args.seed)

        data = ()
        if args.covariates_file:
            table = read_table(args.covariates_file)
            columns = args.covariates or list(table.columns)
            missing = [c for c in columns if c not in table.columns]
            if missing:
                raise DataShapeError(
                    f"Columns not found in {args.covariates_file}: {missing}")
            data = (table[columns].to_numpy(dtype=np.float64),)

        states, observations = model.sample(*data, n=args.length)
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    observations = observations.reshape(len(states), -1)
    result = pd.DataFrame({'state': states})
    for d in range(observations.shape[1]):
        result[f'y{d}'] = observations[:, d]
    result.to_csv(args.output, sep='\t', index=False)

    print(f"Sampled {len(states)} steps from {args.model}")
    print(f"  Saved: {args.output}")


# =============================================================================
# main: argument parsing with subcommands
# =============================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        prog='seqhmm-utils',
        description='seqhmm utilities: model inspection and sampling',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subcommands:
  inspect   Print model metadata, parameters and emission parameters
  sample    Sample a synthetic state path and observations

Examples:
  seqhmm-utils inspect model.json
  seqhmm-utils sample model.json -n 1000 -o synthetic.tsv
  seqhmm-utils sample model.json --covariates-file inputs.tsv -o synthetic.tsv
        """
    )
    add_version_args(parser)
    subparsers = parser.add_subparsers(dest='command')

    # --- inspect ---
    p_inspect = subparsers.add_parser(
        'inspect',
        help='Inspect a model file',
        description='Print model metadata, start and transition probabilities, '
                    'and per-state emission parameters.'
    )
    p_inspect.add_argument('model', help='Model file to inspect (.json)')

    # --- sample ---
    p_sample = subparsers.add_parser(
        'sample',
        help='Sample a synthetic sequence',
        description='Draw a state path and matching observations from a model.',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    p_sample.add_argument('model', help='Model file (.json)')
    p_sample.add_argument('-n', '--length', type=int, default=None,
                          help='Sequence length (default: number of covariate rows)')
    p_sample.add_argument('--covariates-file', default=None,
                          help='Covariate table for regression emissions')
    p_sample.add_argument('--covariates', nargs='+', default=None,
                          help='Covariate columns (default: all columns)')
    add_output_args(p_sample, help_text='Output TSV')
    add_seed_args(p_sample)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == 'inspect':
        cmd_inspect(args)
    elif args.command == 'sample':
        cmd_sample(args)


if __name__ == '__main__':
    main()
