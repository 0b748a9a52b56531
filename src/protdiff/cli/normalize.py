"""
CLI for variance-stabilizing normalization.

Fits VSN jointly over all channels and writes the normalized matrix as a
checkpoint that `protdiff differential --no-normalize` can pick up.

Usage:
    protdiff normalize \\
        --input data/proteins.tsv \\
        --output results/normalized.tsv \\
        --params results/vsn_parameters.tsv
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime
from pathlib import Path

from protdiff.cli._validators import _positive_float, _positive_int, _quantile


def add_vsn_arguments(parser: argparse.ArgumentParser) -> None:
    """VSN options shared by the normalize and differential commands."""
    group = parser.add_argument_group("normalization")
    group.add_argument("--input-scale", choices=["intensity", "log2"], default="intensity",
                       help="Scale of the input values. 'log2' exponentiates before fitting "
                            "(default: intensity)")
    group.add_argument("--output-scale", choices=["glog2", "arcsinh"], default="glog2",
                       help="Scale of the normalized values (default: glog2)")
    group.add_argument("--max-iter", type=_positive_int, default=1000,
                       help="Optimizer iteration cap per fit (default: 1000)")
    group.add_argument("--tol", type=_positive_float, default=1e-9,
                       help="Relative objective change for convergence (default: 1e-9)")
    group.add_argument("--lts-quantile", type=_quantile, default=0.9,
                       help="Fraction of features kept by trimming; 1 disables (default: 0.9)")
    group.add_argument("--lts-iterations", type=_positive_int, default=3,
                       help="Number of trimmed refits (default: 3)")


def vsn_kwargs_from_args(args: argparse.Namespace) -> dict:
    return {
        "max_iter": args.max_iter,
        "tol": args.tol,
        "lts_quantile": args.lts_quantile,
        "lts_iterations": args.lts_iterations,
        "input_scale": args.input_scale,
        "output_scale": args.output_scale,
    }


def apply_config(args: argparse.Namespace) -> argparse.Namespace | None:
    """Merge ``--config`` into args; None on a config error (already reported)."""
    if not args.config:
        return args

    from protdiff.cli.config import load_config, merge_config_with_args, validate_config
    from protdiff.core.errors import ConfigurationError

    print(f"Loading configuration from: {args.config}")
    try:
        config = load_config(args.config)
        validate_config(config)
        args = merge_config_with_args(config, args, getattr(args, "cli_args", None))
        print("  Configuration loaded successfully")
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"ERROR: Config file error: {e}")
        return None
    return args


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the normalize subcommand."""
    parser = subparsers.add_parser(
        "normalize",
        help="Variance-stabilizing normalization across channels (VSN)",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("--config", "-c", type=Path, default=None,
                        help="Path to YAML/JSON config file (optional, CLI args override config values)")
    parser.add_argument("--input", "-i", type=Path, required=False,
                        help="Intensity matrix (feature ids x sample ids, NA = missing)")
    parser.add_argument("--output", "-o", type=Path, required=False,
                        help="Normalized matrix output file")
    parser.add_argument("--params", type=Path, default=None,
                        help="Optional output file for per-channel VSN parameters")
    parser.add_argument("--sep", default=None,
                        help="Input delimiter (default: sniffed)")
    parser.add_argument("--report-bins", type=_positive_int, default=5,
                        help="Intensity bins for the variance stabilization report (default: 5)")
    parser.add_argument("--report-binning", choices=["count", "width"], default="count",
                        help="Equal-count or fixed-width report bins (default: count)")
    add_vsn_arguments(parser)

    parser.set_defaults(func=run_normalize)


def run_normalize(args: argparse.Namespace) -> int:
    """Execute the normalize command."""
    from protdiff.core.errors import ProtdiffError
    from protdiff.io import load_intensity_matrix, write_intensity_matrix, write_vsn_parameters
    from protdiff.stats.normalization import (
        VarianceStabilizingNormalizer,
        assess_variance_stabilization,
    )

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    args = apply_config(args)
    if args is None:
        return 1

    if not args.input:
        print("ERROR: --input is required (via CLI or config file)")
        return 1
    if not args.output:
        print("ERROR: --output is required (via CLI or config file)")
        return 1

    start_time = datetime.now()
    print(f"\n{'='*70}")
    print("  Variance-Stabilizing Normalization")
    print(f"{'='*70}")
    print(f"Started: {start_time.strftime('%Y-%m-%d %H:%M:%S')}\n")

    try:
        matrix = load_intensity_matrix(args.input, sep=args.sep)
        print(f"Loaded {matrix.n_features} features x {matrix.n_samples} channels")

        normalizer = VarianceStabilizingNormalizer(**vsn_kwargs_from_args(args))
        fit = normalizer.fit(matrix)
        normalized = fit.transform(matrix)
    except (ProtdiffError, ValueError, FileNotFoundError) as e:
        print(f"ERROR: {e}")
        return 1

    print(f"\nVSN fit: objective={fit.objective:.6g}, iterations={fit.n_iter}, "
          f"features used={fit.n_features_fit}")
    if not fit.converged:
        print("  WARNING: the optimizer stopped early in at least one pass; "
              "see the log for details")
    if fit.excluded_channels:
        print(f"  Excluded degenerate channels: {', '.join(fit.excluded_channels)}")
    print(fit.to_frame().to_string())

    report = assess_variance_stabilization(
        normalized, n_bins=args.report_bins, binning=args.report_binning
    )
    print(f"\nVariance of channel differences across intensity bins: "
          f"max/min ratio {report.mean_ratio:.2f} (worst pair {report.max_ratio:.2f})")

    write_intensity_matrix(normalized, args.output)
    if args.params:
        write_vsn_parameters(fit, args.params)

    elapsed = datetime.now() - start_time
    print(f"\nDone in {elapsed.total_seconds():.1f}s")
    return 0
