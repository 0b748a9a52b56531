"""
CLI for protein-level differential abundance analysis.

Normalizes the intensity matrix with VSN (unless --no-normalize), fits an
empirical Bayes moderated linear model per protein and writes a
Benjamini-Hochberg corrected result table.

Usage:
    protdiff differential \\
        --input data/proteins.tsv \\
        --design data/design.tsv \\
        --output results/differential.tsv \\
        --baseline wt \\
        --contrast double_ko:single_ko
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime
from pathlib import Path

from protdiff.cli._validators import _positive_float, _positive_int, _probability
from protdiff.cli.normalize import add_vsn_arguments, apply_config, vsn_kwargs_from_args


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the differential subcommand."""
    parser = subparsers.add_parser(
        "differential",
        help="Moderated differential abundance testing (limma-style)",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("--config", "-c", type=Path, default=None,
                        help="Path to YAML/JSON config file (optional, CLI args override config values)")

    # Input files
    parser.add_argument("--input", "-i", type=Path, required=False,
                        help="Intensity matrix (feature ids x sample ids, NA = missing)")
    parser.add_argument("--design", "-d", type=Path, required=False,
                        help="Design table with sample_id, condition, replicate columns")
    parser.add_argument("--output", "-o", type=Path, required=False,
                        help="Result table output file (TSV unless .csv)")
    parser.add_argument("--sep", default=None,
                        help="Input delimiter (default: sniffed)")

    # Model
    parser.add_argument("--baseline", default=None,
                        help="Reference condition level (required)")
    parser.add_argument("--levels", nargs="+", default=None,
                        help="Condition level order (default: lexicographic)")
    parser.add_argument("--coefficient", nargs="+", default=None,
                        help="Coefficients to test (default: every non-baseline level)")
    parser.add_argument("--contrast", nargs="+", default=None,
                        help="Level comparisons as NUMERATOR:DENOMINATOR")
    parser.add_argument("--no-eb", dest="eb_moderation", action="store_false", default=True,
                        help="Disable empirical Bayes moderation (ordinary t-statistics)")
    parser.add_argument("--variance-floor", type=_positive_float, default=1e-12,
                        help="Floor for degenerate posterior variances (default: 1e-12)")
    parser.add_argument("--fdr-method", choices=["BH", "BY", "bonferroni"], default="BH",
                        help="Multiple testing correction per coefficient (default: BH)")
    parser.add_argument("--conf-level", type=_probability, default=0.95,
                        help="Confidence level of reported intervals (default: 0.95)")
    parser.add_argument("--alpha", type=_probability, default=0.05,
                        help="Adjusted p-value threshold for the summary (default: 0.05)")

    # Normalization
    parser.add_argument("--no-normalize", dest="normalize", action="store_false", default=True,
                        help="Input is already normalized; skip VSN")
    parser.add_argument("--normalized-output", type=Path, default=None,
                        help="Optional checkpoint of the normalized matrix")
    add_vsn_arguments(parser)

    # Compute
    parser.add_argument("--workers", type=_positive_int, default=None,
                        help="Threads for per-feature fitting (default: min(4, CPUs))")
    parser.add_argument("--batch-size", type=_positive_int, default=2048,
                        help="Features per work item (default: 2048)")
    parser.add_argument("--top", type=_positive_int, default=10,
                        help="Number of top features to print (default: 10)")

    parser.set_defaults(func=run_differential)


def run_differential(args: argparse.Namespace) -> int:
    """Execute the differential command."""
    from protdiff.cli.config import parse_contrast
    from protdiff.core.errors import ProtdiffError
    from protdiff.io import (
        load_design_table,
        load_intensity_matrix,
        write_intensity_matrix,
        write_result_table,
    )
    from protdiff.stats.pipeline import run_differential_analysis

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    logger = logging.getLogger(__name__)

    args = apply_config(args)
    if args is None:
        return 1

    for required in ("input", "design", "output", "baseline"):
        if not getattr(args, required):
            print(f"ERROR: --{required} is required (via CLI or config file)")
            return 1

    start_time = datetime.now()
    print(f"\n{'='*70}")
    print("  Differential Abundance Analysis")
    print(f"{'='*70}")
    print(f"Started: {start_time.strftime('%Y-%m-%d %H:%M:%S')}\n")

    try:
        contrasts = [parse_contrast(c) for c in args.contrast or []]
        matrix = load_intensity_matrix(args.input, sep=args.sep)
        design_table = load_design_table(args.design)

        result = run_differential_analysis(
            matrix,
            design_table,
            baseline=args.baseline,
            coefficients=args.coefficient,
            contrasts=contrasts or None,
            normalize=args.normalize,
            vsn_kwargs=vsn_kwargs_from_args(args),
            levels=args.levels,
            eb_moderation=args.eb_moderation,
            variance_floor=args.variance_floor,
            fdr_method=args.fdr_method,
            conf_level=args.conf_level,
            n_workers=args.workers,
            batch_size=args.batch_size,
        )
    except (ProtdiffError, ValueError, FileNotFoundError) as e:
        logger.error(f"Analysis failed: {e}")
        print(f"ERROR: {e}")
        return 1

    fit = result.fit
    print(f"\nDesign: {result.design.n_samples} samples, columns {result.design.column_names}")
    if fit.eb_moderation:
        print(f"Empirical Bayes prior: d0={fit.d0:.3g}, s0^2={fit.s0_sq:.3g}")

    print(f"\nSignificant features (adjusted p < {args.alpha}):")
    for coefficient in result.table.coefficients:
        subset = result.table.for_coefficient(coefficient)
        n_sig = len(subset.significant(args.alpha))
        print(f"  {coefficient}: {n_sig}/{len(subset)}")
        top = subset.top(args.top)
        print(top[['feature_id', 'log2_fold_change', 'statistic', 'p_value',
                   'adjusted_p_value']].to_string(index=False))

    if args.normalized_output and result.vsn_fit is not None:
        write_intensity_matrix(result.normalized, args.normalized_output)
    write_result_table(result.table, args.output)

    elapsed = datetime.now() - start_time
    print(f"\nDone in {elapsed.total_seconds():.1f}s")
    return 0
