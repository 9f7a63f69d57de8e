#!/usr/bin/env python3
"""
seqhmm-decode
Apply a trained HMM to a table of observations.

Writes one row per time step: the Viterbi state, the posterior probability
of that state, and the posterior probability of every state.
"""

import argparse
import sys

import numpy as np
import pandas as pd

from seqhmm.cli.common import (
    add_column_args, add_output_args, add_parallel_args, add_verbose_args,
    add_version_args, read_observations, setup_logging,
)
from seqhmm.core.model_io import load_model_with_metadata


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='seqhmm-decode',
        description='Decode hidden states with a trained seqhmm model',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Column selection defaults to the columns recorded in the model metadata
by seqhmm-train.

Examples:
  seqhmm-decode -m model.json -i signal.tsv -o states.tsv
  seqhmm-decode -m model.json -i signal.csv --columns x y -o states.tsv
        '''
    )
    parser.add_argument('-m', '--model', required=True,
                        help='Trained model (.json)')
    parser.add_argument('-i', '--input', required=True,
                        help='Observation table (.tsv, or .csv)')
    add_output_args(parser, help_text='Output TSV of states and posteriors')
    add_column_args(parser)
    parser.add_argument('--no-posteriors', action='store_true',
                        help='Only write the state and confidence columns')
    add_parallel_args(parser)
    add_verbose_args(parser)
    add_version_args(parser)
    return parser.parse_args(argv)


def decode_table(model, data, posteriors: bool = True):
    """
    Viterbi states, confidence and (optionally) per-state posteriors.

    Returns:
        (DataFrame, log-likelihood of the data) from a single forward-backward pass
    """
    path = model.predict(*data)
    fb = model.e_step(*data)
    proba = np.exp(fb.log_gamma)
    result = pd.DataFrame({'state': path, 'confidence': proba[np.arange(len(path)), path]})
    if posteriors:
        for k in range(model.n_states):
            result[f'posterior_{k}'] = proba[:, k]
    return result, fb.log_likelihood


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.verbose)

    try:
        print(f"Loading model from {args.model}")
        model, metadata = load_model_with_metadata(args.model)
        model.n_jobs = args.jobs
        print(f"  {model}")

        columns = args.columns or metadata.get('columns')
        covariates = args.covariates or metadata.get('covariates') or None
        data, columns, covariates = read_observations(
            args.input, columns=columns, covariates=covariates)
        print(f"  Observations: {data[-1].shape[0]} steps x {len(columns)} columns")

        result, log_likelihood = decode_table(model, data, posteriors=not args.no_posteriors)
        result.to_csv(args.output, sep='\t', index=False)
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    counts = np.bincount(result['state'].to_numpy(), minlength=model.n_states)
    print(f"\nLog-likelihood: {log_likelihood:.6f}")
    for k, c in enumerate(counts):
        print(f"  State {k}: {c} steps ({c / len(result):.1%})")
    print(f"  Saved: {args.output}")
    print("Done!")


if __name__ == '__main__':
    main()
