"""
Core data structure for protein/peptide intensity matrices.

IntensityMatrix couples the numeric measurements of a multiplexed experiment
with their identifiers: one row per quantified feature (protein or peptide),
one column per labeling channel (sample).

Biological Context:
    - Rows = features (protein groups, peptides), filtered upstream to
      reliably quantified entries with contaminants removed
    - Columns = channels of an isobaric labeling run (one per sample)
    - Values = reporter-ion intensities; after normalization, transformed
      intensities on a log2-like scale

    Missing values are explicit NaN ("not measured"). Zero is a valid
    intensity and is never used as a stand-in for missingness.

Engineering Design:
    - Immutable: the only way to change rows, columns or values is to build
      a new instance (select_features, select_samples, with_data)
    - Validated: constructor checks shape, identifier uniqueness and
      metadata alignment so identifiers can never desynchronize from data
    - Read-only arrays: the stored data array is flagged non-writeable

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from protdiff.core.intensity import IntensityMatrix
    >>>
    >>> matrix = IntensityMatrix(
    ...     data=np.array([[1200.0, 1500.0], [310.0, np.nan]]),
    ...     feature_ids=pd.Index(["P12345", "Q67890"]),
    ...     sample_ids=pd.Index(["126", "127N"]),
    ... )
    >>> matrix.n_missing_per_feature
    array([0, 1])
    >>> detected = matrix.select_features(matrix.n_missing_per_feature == 0)
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

__all__ = ['IntensityMatrix']


def _as_index(ids, name: str) -> pd.Index:
    if isinstance(ids, pd.Index):
        index = ids
    else:
        index = pd.Index(list(ids))
    return index.astype(str).rename(name)


class IntensityMatrix:
    """
    Immutable container for an intensity matrix and its identifiers.

    Attributes:
        data: Numeric matrix (features × samples), float64, NaN = missing
        feature_ids: Row identifiers (unique)
        sample_ids: Column identifiers (unique)
        sample_metadata: Per-sample annotations indexed by sample_ids

    Shape Invariants:
        - data.shape[0] == len(feature_ids)
        - data.shape[1] == len(sample_ids)
        - sample_metadata.index equals sample_ids
    """

    def __init__(
        self,
        data: np.ndarray,
        feature_ids: pd.Index | list[str],
        sample_ids: pd.Index | list[str],
        sample_metadata: Optional[pd.DataFrame] = None,
    ):
        """
        Initialize IntensityMatrix with validation.

        Args:
            data: Intensity matrix (features × samples); converted to float64
            feature_ids: Row identifiers, unique
            sample_ids: Column identifiers, unique
            sample_metadata: Optional per-sample table. Must be indexed by
                sample_ids (same order). Defaults to an empty table.

        Raises:
            TypeError: If data is not an ndarray
            ValueError: If shapes are inconsistent, identifiers are duplicated
                or the metadata index does not match sample_ids
        """
        if not isinstance(data, np.ndarray):
            raise TypeError(f"data must be np.ndarray, got {type(data)}")
        if data.ndim != 2:
            raise ValueError(f"data must be 2D, got shape {data.shape}")

        feature_ids = _as_index(feature_ids, "feature_id")
        sample_ids = _as_index(sample_ids, "sample_id")

        n_features, n_samples = data.shape

        if len(feature_ids) != n_features:
            raise ValueError(
                f"feature_ids length ({len(feature_ids)}) must match data rows ({n_features})"
            )
        if len(sample_ids) != n_samples:
            raise ValueError(
                f"sample_ids length ({len(sample_ids)}) must match data columns ({n_samples})"
            )
        if feature_ids.has_duplicates:
            dupes = feature_ids[feature_ids.duplicated()].unique().tolist()
            raise ValueError(f"feature_ids must be unique, duplicated: {dupes[:5]}")
        if sample_ids.has_duplicates:
            dupes = sample_ids[sample_ids.duplicated()].unique().tolist()
            raise ValueError(f"sample_ids must be unique, duplicated: {dupes[:5]}")

        if sample_metadata is None:
            sample_metadata = pd.DataFrame(index=sample_ids)
        elif not isinstance(sample_metadata, pd.DataFrame):
            raise TypeError(f"sample_metadata must be pd.DataFrame, got {type(sample_metadata)}")
        elif not sample_metadata.index.astype(str).equals(sample_ids):
            raise ValueError(
                "sample_metadata.index must match sample_ids exactly. "
                f"Got {len(sample_metadata.index)} metadata rows for {len(sample_ids)} samples."
            )
        else:
            sample_metadata = sample_metadata.copy()
            sample_metadata.index = sample_ids

        values = np.array(data, dtype=np.float64, copy=True)
        values.setflags(write=False)

        # Store as private attributes (immutability by convention + read-only array)
        self._data = values
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids
        self._sample_metadata = sample_metadata

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        sample_metadata: Optional[pd.DataFrame] = None,
    ) -> IntensityMatrix:
        """Build from a DataFrame indexed by feature id with one column per sample."""
        return cls(
            data=df.to_numpy(dtype=np.float64),
            feature_ids=df.index,
            sample_ids=df.columns,
            sample_metadata=sample_metadata,
        )

    @property
    def data(self) -> np.ndarray:
        """Intensity matrix (features × samples), read-only."""
        return self._data

    @property
    def feature_ids(self) -> pd.Index:
        """Row identifiers (proteins, peptides)."""
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        """Column identifiers (channels/samples)."""
        return self._sample_ids

    @property
    def sample_metadata(self) -> pd.DataFrame:
        """Per-sample annotations."""
        return self._sample_metadata

    @property
    def shape(self) -> tuple[int, int]:
        """Matrix dimensions (n_features, n_samples)."""
        return self._data.shape

    @property
    def n_features(self) -> int:
        return self._data.shape[0]

    @property
    def n_samples(self) -> int:
        return self._data.shape[1]

    @property
    def missing_mask(self) -> np.ndarray:
        """Boolean matrix, True where a value was not measured."""
        return np.isnan(self._data)

    @property
    def n_missing_per_feature(self) -> np.ndarray:
        return self.missing_mask.sum(axis=1)

    @property
    def empty_features(self) -> pd.Index:
        """Ids of features without a single observed value."""
        return self._feature_ids[self.missing_mask.all(axis=1)]

    def select_samples(self, mask: np.ndarray | pd.Series) -> IntensityMatrix:
        """
        Subset matrix by samples (columns).

        Args:
            mask: Boolean array/Series indicating which samples to keep.
                If Series, uses values and ignores index.

        Returns:
            New IntensityMatrix with selected samples

        Raises:
            ValueError: If mask length doesn't match n_samples
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_samples:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_samples ({self.n_samples})"
            )

        return IntensityMatrix(
            data=self._data[:, mask],
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids[mask],
            sample_metadata=self._sample_metadata.loc[self._sample_ids[mask]],
        )

    def select_features(self, mask: np.ndarray | pd.Series) -> IntensityMatrix:
        """
        Subset matrix by features (rows).

        Args:
            mask: Boolean array/Series indicating which features to keep.
                If Series, uses values and ignores index.

        Returns:
            New IntensityMatrix with selected features

        Raises:
            ValueError: If mask length doesn't match n_features

        Examples:
            >>> # Keep features quantified in every channel
            >>> complete = matrix.select_features(matrix.n_missing_per_feature == 0)
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_features:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_features ({self.n_features})"
            )

        return IntensityMatrix(
            data=self._data[mask, :],
            feature_ids=self._feature_ids[mask],
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
        )

    def with_data(self, data: np.ndarray) -> IntensityMatrix:
        """
        Return a new matrix with the same identifiers and replaced values.

        Raises:
            ValueError: If the new data has a different shape
        """
        if data.shape != self.shape:
            raise ValueError(f"new data shape {data.shape} must match {self.shape}")
        return IntensityMatrix(
            data=data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
        )

    def with_sample_metadata(self, sample_metadata: pd.DataFrame) -> IntensityMatrix:
        """Return a new matrix with replaced sample annotations."""
        return IntensityMatrix(
            data=self._data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=sample_metadata,
        )

    def to_dataframe(self) -> pd.DataFrame:
        """Features × samples DataFrame (a copy)."""
        return pd.DataFrame(
            self._data.copy(),
            index=self._feature_ids,
            columns=self._sample_ids,
        )

    def __repr__(self) -> str:
        """String representation for debugging."""
        if self.n_features == 0 or self.n_samples == 0:
            return f"IntensityMatrix({self.n_features} features × {self.n_samples} samples)"
        return (
            f"IntensityMatrix({self.n_features} features × {self.n_samples} samples)\n"
            f"  Features: {self.feature_ids[0]}...{self.feature_ids[-1]}\n"
            f"  Samples: {self.sample_ids[0]}...{self.sample_ids[-1]}\n"
            f"  Missing values: {int(self.missing_mask.sum())}"
        )

    def __str__(self) -> str:
        return self.__repr__()
