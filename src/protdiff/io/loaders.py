"""
Loaders for intensity matrices and experimental design tables.

Intensity file format (delimited text):
    - First column: feature ids (protein groups, peptides); header may be empty
    - Header row: sample (channel) ids
    - Cells: intensities; "NA" or empty = not measured

    Example:
    ```
    protein	wt_1	wt_2	ko_1	ko_2
    P12345	10234.5	9876.1	20511.0	NA
    Q67890	512.0	498.3	505.9	530.2
    ```

Design file format:
    One row per sample with at least sample_id, condition and replicate.

All values are read as text and parsed with Python float(), so identifiers
keep their exact spelling (leading zeros included) and numbers written by
protdiff.io.writers are reproduced bit for bit.

Examples:
    >>> from protdiff.io import load_intensity_matrix, load_design_table
    >>> matrix = load_intensity_matrix("proteins.tsv")
    >>> design = load_design_table("design.tsv")
"""

from __future__ import annotations

import logging
import warnings
from pathlib import Path

import numpy as np
import pandas as pd

from protdiff.core.errors import ConfigurationError
from protdiff.core.intensity import IntensityMatrix
from protdiff.io.formats import parse_float, sniff_delimiter
from protdiff.stats.design_matrix import REQUIRED_DESIGN_COLUMNS

logger = logging.getLogger(__name__)

__all__ = ['load_intensity_matrix', 'load_design_table']


def _read_text_table(path: Path, sep: str | None) -> pd.DataFrame:
    if not isinstance(path, Path):
        path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")

    if sep is None:
        sep = sniff_delimiter(path)
        logger.debug(f"Sniffed delimiter: {repr(sep)}")

    # Raw header row; read_csv would rename repeated names (s1 -> s1.1)
    try:
        table = pd.read_csv(path, sep=sep, header=None, dtype=str, keep_default_na=False)
    except pd.errors.EmptyDataError as e:
        raise ValueError(f"File is empty: {path}") from e

    header = pd.Index(table.iloc[0].tolist())
    duplicated = header[header.duplicated()].unique().tolist()
    if duplicated:
        raise ValueError(f"{path}: duplicated column names in header: {duplicated}")

    table = table.iloc[1:].reset_index(drop=True)
    table.columns = header
    return table


def load_intensity_matrix(
    path: Path | str,
    sep: str | None = None,
    design_table: pd.DataFrame | None = None,
) -> IntensityMatrix:
    """
    Load an intensity matrix from delimited text.

    Args:
        path: Input file
        sep: Delimiter; sniffed from content when None
        design_table: Optional design table; when given its rows are attached
            as sample_metadata (indexed by sample_id, matrix order)

    Returns:
        IntensityMatrix with NaN for missing cells

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: Empty file, duplicated header names, non-numeric or
            infinite cells
        ConfigurationError: design_table sample ids differ from the matrix
    """
    path = Path(path)
    raw = _read_text_table(path, sep)

    if raw.shape[1] < 2:
        raise ValueError(f"{path}: expected a feature id column and at least one sample column")
    if raw.shape[0] == 0:
        raise ValueError(f"{path}: contains no features (rows)")

    feature_ids = pd.Index(raw.iloc[:, 0].str.strip())
    values = raw.iloc[:, 1:]
    sample_ids = pd.Index([str(c) for c in values.columns])

    if feature_ids.duplicated().any():
        n_duplicates = int(feature_ids.duplicated().sum())
        warnings.warn(
            f"Found {n_duplicates} duplicate feature IDs. Using first occurrence of each.",
            UserWarning,
        )
        keep = ~feature_ids.duplicated(keep='first')
        feature_ids = feature_ids[keep]
        values = values.loc[keep]

    data = np.empty(values.shape, dtype=np.float64)
    non_numeric = []
    for j, column in enumerate(values.columns):
        for i, cell in enumerate(values[column].tolist()):
            try:
                data[i, j] = parse_float(cell)
            except ValueError:
                non_numeric.append(f"row {i} ('{feature_ids[i]}'), col '{column}': {cell!r}")
                data[i, j] = np.nan
    if non_numeric:
        raise ValueError(
            f"{path} contains non-numeric values:\n"
            + "\n".join(f"  - {x}" for x in non_numeric[:5])
            + ("\n  ..." if len(non_numeric) > 5 else "")
        )

    if np.isinf(data).any():
        raise ValueError(
            f"{path} contains {int(np.isinf(data).sum())} infinite values. "
            "Please clean data before loading."
        )

    n_missing = int(np.isnan(data).sum())
    logger.info(
        f"Loaded {data.shape[0]} features x {data.shape[1]} samples from {path} "
        f"({n_missing} missing values, {100 * n_missing / max(data.size, 1):.2f}%)"
    )

    sample_metadata = None
    if design_table is not None:
        sample_metadata = _align_design(design_table, sample_ids)

    return IntensityMatrix(
        data=data,
        feature_ids=feature_ids,
        sample_ids=sample_ids,
        sample_metadata=sample_metadata,
    )


def load_design_table(
    path: Path | str,
    sep: str | None = None,
    required_columns: tuple[str, ...] = REQUIRED_DESIGN_COLUMNS,
) -> pd.DataFrame:
    """
    Load the per-sample design table.

    Every column is kept as text; condition labels and sample ids are
    compared as strings downstream.

    Raises:
        ConfigurationError: Missing required columns or duplicated sample ids
    """
    path = Path(path)
    table = _read_text_table(path, sep)
    table.columns = [str(c).strip() for c in table.columns]

    missing = [c for c in required_columns if c not in table.columns]
    if missing:
        raise ConfigurationError(
            f"{path}: design table lacks required column(s) {missing}. "
            f"Found: {list(table.columns)}"
        )

    for col in table.columns:
        table[col] = table[col].str.strip()

    duplicated = table.loc[table["sample_id"].duplicated(), "sample_id"].tolist()
    if duplicated:
        raise ConfigurationError(f"{path}: duplicated sample ids {duplicated}")

    logger.info(
        f"Loaded design for {len(table)} samples: "
        f"{table['condition'].value_counts().to_dict()}"
    )
    return table


def _align_design(design_table: pd.DataFrame, sample_ids: pd.Index) -> pd.DataFrame:
    table_ids = pd.Index(design_table["sample_id"].astype(str))
    missing = sample_ids.difference(table_ids).tolist()
    extra = table_ids.difference(sample_ids).tolist()
    if missing or extra:
        raise ConfigurationError(
            f"Design table does not match matrix samples. "
            f"Missing from design: {missing}; missing from matrix: {extra}"
        )
    return design_table.assign(sample_id=table_ids).set_index("sample_id").loc[sample_ids]
