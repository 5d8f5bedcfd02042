"""
test_matrix.py
~~~~~~~~~~~~~~

Unit tests for the dense weight matrix.
"""

import numpy as np
import pytest

from digitnet.matrix import Matrix


@pytest.mark.unit
class TestMatrix:
    """Test storage, indexing and dimensions."""

    def test_dimensions(self):
        """Test that row and column counts match construction."""
        m = Matrix(3, 5)
        assert m.row_count() == 3
        assert m.col_count() == 5
        assert m.shape == (3, 5)

    def test_starts_zeroed_float32(self):
        m = Matrix(2, 2)
        assert m.values.dtype == np.float32
        assert not m.values.any()

    def test_get_set(self):
        """Test that set values are read back by get and indexing."""
        m = Matrix(2, 3)
        m.set(1, 2, 0.25)
        m[0, 1] = -1.5

        assert m.get(1, 2) == pytest.approx(0.25)
        assert m[0, 1] == pytest.approx(-1.5)
        assert m.get(0, 0) == 0.0

    @pytest.mark.parametrize('row,col', [(2, 0), (0, 3), (-1, 0), (0, -1)])
    def test_out_of_range_raises(self, row, col):
        """Test that indices outside the matrix are rejected, negatives too."""
        m = Matrix(2, 3)
        with pytest.raises(IndexError):
            m.get(row, col)
        with pytest.raises(IndexError):
            m.set(row, col, 1.0)

    def test_invalid_dimensions(self):
        with pytest.raises(ValueError):
            Matrix(0, 3)

    def test_values_is_a_view(self):
        """Test that writes through the backing array reach the matrix."""
        m = Matrix(2, 2)
        m.values[1, 1] = 3.0
        assert m.get(1, 1) == pytest.approx(3.0)

    def test_fill_uniform_range(self):
        m = Matrix(50, 40)
        m.fill_uniform(np.random.default_rng(0), -0.1, 0.1)

        assert m.values.min() >= -0.1
        assert m.values.max() <= 0.1
        # Not a constant fill
        assert np.unique(m.values).size > 1
