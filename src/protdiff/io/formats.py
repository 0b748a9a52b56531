"""
Delimited-text conventions shared by loaders and writers.

Numbers are written with 17 significant digits, enough to identify every
float64 uniquely, and parsed back with Python's correctly rounded float(),
so a write/read cycle is bit-identical. Missing values are written as "NA";
"NA" and empty cells are read as missing.
"""

from __future__ import annotations

import csv
from pathlib import Path

import numpy as np

__all__ = [
    'FLOAT_FORMAT',
    'NA_REP',
    'NA_TOKENS',
    'sniff_delimiter',
    'delimiter_for',
    'parse_float',
]

FLOAT_FORMAT = "%.17g"
NA_REP = "NA"
NA_TOKENS = frozenset({"NA", ""})


def parse_float(value: str) -> float:
    """Parse one cell; NA tokens become NaN. Raises ValueError otherwise."""
    value = value.strip()
    if value in NA_TOKENS:
        return np.nan
    return float(value)


def delimiter_for(path: Path) -> str:
    """Delimiter implied by the file extension (tab unless .csv)."""
    return "," if Path(path).suffix.lower() == ".csv" else "\t"


def sniff_delimiter(path: Path, sample_size: int = 8192) -> str:
    """
    Auto-detect delimiter from file content.

    Uses Python's csv.Sniffer with a first-line count as fallback.

    Returns:
        Detected delimiter character ('\\t', ',' or ';')

    Raises:
        ValueError: If delimiter cannot be determined
    """
    with open(path, 'r', encoding='utf-8', errors='ignore') as f:
        sample = f.read(sample_size)

    try:
        dialect = csv.Sniffer().sniff(sample, delimiters='\t,;')
        return dialect.delimiter
    except csv.Error:
        pass

    first_line = sample.split('\n')[0]
    counts = {
        '\t': first_line.count('\t'),
        ',': first_line.count(','),
        ';': first_line.count(';'),
    }

    if max(counts.values()) == 0:
        raise ValueError(
            f"Could not detect delimiter in {path}. Please pass sep explicitly"
        )

    return max(counts, key=counts.get)
