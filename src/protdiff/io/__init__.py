"""
I/O module for intensity matrices, design tables and result tables.

Key Functions:
    - load_intensity_matrix: Load an intensity matrix from delimited text
    - load_design_table: Load the per-sample design (sample_id, condition, replicate)
    - write_intensity_matrix: Checkpoint a (normalized) matrix
    - write_result_table: Export a DifferentialResultTable

Design Philosophy:
    - Identifiers are kept as text, in file order
    - "NA" or empty cells are missing values, never zero
    - Floats are written with 17 significant digits so a write/read cycle
      is bit-identical

Examples:
    >>> from protdiff.io import load_intensity_matrix, write_intensity_matrix
    >>> matrix = load_intensity_matrix(Path("proteins.tsv"))
    >>> write_intensity_matrix(matrix, Path("checkpoint.tsv"))
"""

from protdiff.io.loaders import load_intensity_matrix, load_design_table
from protdiff.io.writers import (
    write_intensity_matrix,
    write_result_table,
    write_vsn_parameters,
)

__all__ = [
    'load_intensity_matrix',
    'load_design_table',
    'write_intensity_matrix',
    'write_result_table',
    'write_vsn_parameters',
]
