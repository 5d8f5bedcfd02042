"""
conftest.py
~~~~~~~~~~~

Shared fixtures for the digitnet test suite.
"""

import os
import sys

import numpy as np
import pytest

# Make the package importable without installing it
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from digitnet.dataset import Dataset

PROTOTYPES = np.array([
    [1.0, 1.0, 0.0, 0.0],
    [0.0, 0.0, 1.0, 1.0],
], dtype=np.float32)


def make_separable(count: int, seed: int) -> Dataset:
    """Two well separated classes with small uniform noise."""
    rng = np.random.default_rng(seed)
    labels = np.arange(count) % 2
    features = PROTOTYPES[labels] + rng.uniform(-0.1, 0.1, (count, 4))
    return Dataset.from_labels(features, labels, class_count=2)


@pytest.fixture
def separable_train():
    return make_separable(60, seed=1)


@pytest.fixture
def separable_test():
    return make_separable(20, seed=2)
