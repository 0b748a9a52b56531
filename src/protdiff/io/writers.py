"""
Writers for normalized matrices and result tables.

The normalized IntensityMatrix can be checkpointed so that downstream
analysis restarts without re-normalizing. The checkpoint is the same
delimited layout the loader reads (feature ids in the first column, sample
ids in the header) with floats at 17 significant digits, so reloading it
reproduces the matrix bit for bit.

Examples:
    >>> from protdiff.io.writers import write_intensity_matrix
    >>> write_intensity_matrix(normalized, Path("normalized.tsv"))
    Wrote intensity matrix to normalized.tsv
    >>> write_result_table(result.table, Path("results.tsv"))
    Wrote 2400 result rows to results.tsv
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pandas as pd

from protdiff.core.intensity import IntensityMatrix
from protdiff.io.formats import FLOAT_FORMAT, NA_REP, delimiter_for

if TYPE_CHECKING:
    from protdiff.stats.normalization import VSNFit
    from protdiff.stats.results import DifferentialResultTable

__all__ = [
    'write_intensity_matrix',
    'write_result_table',
    'write_vsn_parameters',
]


def _prepare(path: Path | str) -> Path:
    if not isinstance(path, Path):
        path = Path(path)
    if path.parent != Path('.') and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    return path


def write_intensity_matrix(
    matrix: IntensityMatrix,
    path: Path | str,
    sep: str | None = None,
    write_sample_metadata: bool = False,
) -> None:
    """
    Write an IntensityMatrix as delimited text.

    Args:
        matrix: Matrix to write
        path: Output file
        sep: Delimiter; defaults to "," for .csv and tab otherwise
        write_sample_metadata: Also write ``{path}.samples{suffix}`` with the
            per-sample annotations

    Raises:
        TypeError: If matrix is not an IntensityMatrix
        OSError: If path is not writable
    """
    if not isinstance(matrix, IntensityMatrix):
        raise TypeError(f"matrix must be IntensityMatrix, got {type(matrix)}")

    path = _prepare(path)
    sep = sep or delimiter_for(path)

    df = matrix.to_dataframe()
    df.index.name = "feature_id"
    try:
        df.to_csv(path, sep=sep, float_format=FLOAT_FORMAT, na_rep=NA_REP)
        print(f"Wrote intensity matrix to {path}")
    except Exception as e:
        raise OSError(f"Failed to write matrix file {path}: {e}") from e

    if write_sample_metadata and not matrix.sample_metadata.empty:
        meta_path = path.with_name(f"{path.stem}.samples{path.suffix}")
        metadata = matrix.sample_metadata.copy()
        metadata.index.name = "sample_id"
        try:
            metadata.to_csv(meta_path, sep=sep, na_rep=NA_REP)
            print(f"Wrote sample metadata to {meta_path}")
        except Exception as e:
            raise OSError(f"Failed to write metadata file {meta_path}: {e}") from e


def write_result_table(
    table: DifferentialResultTable,
    path: Path | str,
    sep: str | None = None,
) -> None:
    """Write a DifferentialResultTable (input feature order, all columns)."""
    path = _prepare(path)
    sep = sep or delimiter_for(path)
    try:
        table.to_csv(path, sep=sep)
        print(f"Wrote {len(table)} result rows to {path}")
    except Exception as e:
        raise OSError(f"Failed to write result file {path}: {e}") from e


def write_vsn_parameters(fit: VSNFit, path: Path | str, sep: str | None = None) -> None:
    """Write per-channel VSN offsets and scales."""
    path = _prepare(path)
    sep = sep or delimiter_for(path)
    frame: pd.DataFrame = fit.to_frame()
    frame.index.name = "sample_id"
    try:
        frame.to_csv(path, sep=sep, float_format=FLOAT_FORMAT)
        print(f"Wrote VSN parameters to {path}")
    except Exception as e:
        raise OSError(f"Failed to write VSN parameter file {path}: {e}") from e
