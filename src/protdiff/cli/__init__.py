"""
protdiff CLI - Command-line interface for differential proteomics.

Commands:
    protdiff normalize     - Variance-stabilizing normalization across channels
    protdiff differential  - Moderated differential abundance with FDR control
"""

import argparse
import sys
from typing import Optional, List


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for protdiff."""
    parser = argparse.ArgumentParser(
        prog="protdiff",
        description="Variance-stabilized differential abundance for multiplexed proteomics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  normalize     Variance-stabilizing normalization across channels (VSN)
  differential  Moderated t-tests per protein with Benjamini-Hochberg FDR

Examples:
  protdiff normalize --input proteins.tsv --output normalized.tsv
  protdiff differential --input proteins.tsv --design design.tsv --baseline wt --output results.tsv
  protdiff differential --config analysis.yaml --no-eb
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version="%(prog)s 0.1.0"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    from protdiff.cli import normalize, differential
    normalize.register_parser(subparsers)
    differential.register_parser(subparsers)

    raw_args = list(sys.argv[1:] if args is None else args)
    parsed_args = parser.parse_args(raw_args)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    # Raw tokens after the subcommand, for config-override detection
    parsed_args.cli_args = raw_args[1:]

    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
