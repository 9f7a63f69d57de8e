#!/usr/bin/env python3
"""
seqhmm-train
Train an HMM on a table of observations with multiple random restarts.

Each row of the input table is one time step. Observation columns feed the
emission model; for regression emissions the --covariates columns are the
inputs and the remaining (or --columns) columns are the responses.
"""

import argparse
import sys

from seqhmm.cli.common import (
    add_column_args, add_fit_args, add_model_args, add_output_args,
    add_parallel_args, add_seed_args, add_verbose_args, add_version_args,
    make_emission, read_observations, setup_logging,
)
from seqhmm.core.hmm import train_model
from seqhmm.core.model_io import save_model


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='seqhmm-train',
        description='Train a hidden Markov model from a TSV/CSV table',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('-i', '--input', required=True,
                        help='Observation table (.tsv, or .csv)')
    add_output_args(parser, help_text='Output model file (.json)')
    add_column_args(parser)
    add_model_args(parser)
    add_fit_args(parser)
    add_parallel_args(parser)
    add_seed_args(parser)
    add_verbose_args(parser)
    add_version_args(parser)
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.verbose)

    print("seqhmm training")
    print(f"  Input: {args.input}")
    print(f"  States: {args.n_states}")
    print(f"  Emission: {args.emission}")
    print(f"  Restarts: {args.restarts}")
    print(f"  Seed: {args.seed}")

    try:
        data, columns, covariates = read_observations(
            args.input, columns=args.columns, covariates=args.covariates)
        emission = make_emission(
            args.emission,
            n_outputs=data[-1].shape[1],
            n_inputs=data[0].shape[1] if covariates else 0,
            l2_penalty=args.l2_penalty,
        )
        print(f"  Observations: {data[-1].shape[0]} steps x {len(columns)} columns")

        best_model, all_models = train_model(
            args.n_states, emission, *data,
            n_restarts=args.restarts,
            max_iters=args.max_iters,
            tol=args.tol,
            n_jobs=args.jobs,
            seed=args.seed,
            verbose=args.verbose,
        )
        log_likelihood = best_model.score(*data)

        metadata = {
            'input': args.input,
            'columns': columns,
            'covariates': covariates,
            'restarts': args.restarts,
            'max_iters': args.max_iters,
            'tol': args.tol,
            'seed': args.seed,
            'log_likelihood': log_likelihood,
            'status': best_model.monitor_.status.value,
            'n_iter': best_model.monitor_.n_iter,
        }
        path = save_model(best_model, args.output, metadata=metadata)
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"\nBest model selected ({len(all_models)} restarts)")
    print(f"  Log-likelihood: {log_likelihood:.6f}")
    print(f"  Start probabilities: {best_model.startprob_}")
    print(f"  Transition matrix:\n{best_model.transmat_}")
    print(f"  Saved: {path}")
    print("Done!")


if __name__ == '__main__':
    main()
