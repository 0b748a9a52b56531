"""
Base transformation framework for immutable matrix operations.

Transformations are pure: they take an IntensityMatrix and return a new one.
The raw and the transformed matrix therefore stay inspectable side by side,
which is what a normalization step needs (compare before/after, rerun the
model on either).

Examples:
    >>> from protdiff.core.transform import Transform
    >>>
    >>> class Log2Transform(Transform):
    ...     def __init__(self, pseudocount: float = 1.0):
    ...         super().__init__(name="Log2Transform", params={"pseudocount": pseudocount})
    ...         self.pseudocount = pseudocount
    ...
    ...     def apply(self, matrix):
    ...         return matrix.with_data(np.log2(matrix.data + self.pseudocount))
    >>>
    >>> transformed = Log2Transform().apply(raw)
    >>> # raw is unchanged
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from protdiff.core.intensity import IntensityMatrix

__all__ = ['Transform']


class Transform(ABC):
    """
    Abstract base class for all matrix transformations.

    Attributes:
        name: Human-readable transformation name (e.g., "VSN")
        params: Parameters used for this transformation (JSON-serializable)
        timestamp: When this transform instance was created (for audit trail)
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, matrix: IntensityMatrix) -> IntensityMatrix:
        """
        Execute transformation and return a new matrix.

        Must never modify the input matrix.

        Raises:
            ValueError: If transformation cannot be applied (check validate() first)
        """

    def validate(self, matrix: IntensityMatrix) -> list[str]:
        """
        Check preconditions before applying the transformation.

        Subclasses should override and call super().validate() first.

        Returns:
            List of error messages (empty list = valid)
        """
        errors: list[str] = []

        if matrix.data.size == 0:
            errors.append("Cannot process empty matrix")

        return errors

    def __repr__(self) -> str:
        """String like ``VSN(max_iter=500, tol=1e-08)``."""
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"
