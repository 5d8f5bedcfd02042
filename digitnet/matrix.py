"""
matrix.py
~~~~~~~~~

Dense 2-D weight storage addressed by (source unit, destination unit).
"""

from typing import Tuple

import numpy as np


class Matrix:
    """
    Fixed-size matrix of float32 weights.

    Rows index the source layer (including its bias unit) and columns
    index the destination layer. The dimensions never change after
    construction.
    """

    def __init__(self, rows: int, cols: int, dtype=np.float32):
        if rows < 1 or cols < 1:
            raise ValueError(
                f"Matrix dimensions must be positive, got {rows}x{cols}"
            )
        self._values = np.zeros((rows, cols), dtype=dtype)

    def _check_index(self, row: int, col: int) -> None:
        rows, cols = self._values.shape
        if not (0 <= row < rows and 0 <= col < cols):
            raise IndexError(
                f"Index ({row}, {col}) out of range for {rows}x{cols} matrix"
            )

    def get(self, row: int, col: int) -> float:
        self._check_index(row, col)
        return float(self._values[row, col])

    def set(self, row: int, col: int, value: float) -> None:
        self._check_index(row, col)
        self._values[row, col] = value

    def __getitem__(self, index: Tuple[int, int]) -> float:
        return self.get(*index)

    def __setitem__(self, index: Tuple[int, int], value: float) -> None:
        self.set(index[0], index[1], value)

    def row_count(self) -> int:
        return self._values.shape[0]

    def col_count(self) -> int:
        return self._values.shape[1]

    @property
    def shape(self) -> Tuple[int, int]:
        return self._values.shape

    @property
    def values(self) -> np.ndarray:
        """The backing array. Writes through it mutate the matrix."""
        return self._values

    def fill_uniform(
        self,
        rng: np.random.Generator,
        low: float,
        high: float
    ) -> None:
        """Overwrite every entry with a draw from U[low, high]."""
        self._values[...] = rng.uniform(low, high, size=self._values.shape)

    def __repr__(self) -> str:
        return f"Matrix({self.row_count()}x{self.col_count()})"
