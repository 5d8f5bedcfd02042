"""
dataset.py
~~~~~~~~~~

Labelled instances for training and evaluation, and loaders for the two
on-disk formats the project understands:

- the NPZ digit archive (``train_images``, ``train_labels``, ``val_images``,
  ``val_labels``, ``test_images``, ``test_labels``), as written by
  ``scripts/convert_arff_to_npz.py``;
- ARFF files with numeric feature attributes followed by a nominal class
  attribute, e.g. ``MNIST_train_abridged.arff``.

Targets are always stored one-hot encoded, in the order the class values
are declared.
"""

import logging
import re
from typing import Iterator, List, NamedTuple, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

NPZ_SPLITS = ('train', 'val', 'test')

_NUMERIC_TYPES = {'numeric', 'real', 'integer'}
_ATTRIBUTE_RE = re.compile(
    r"""^@attribute\s+('[^']*'|"[^"]*"|\S+)\s+(.+)$""", re.IGNORECASE
)


class DatasetFormatError(ValueError):
    """Raised when a dataset file cannot be interpreted."""


class Instance(NamedTuple):
    features: np.ndarray
    targets: np.ndarray


def one_hot(label: int, class_count: int) -> np.ndarray:
    """
    Encode ``label`` as a one-hot float32 vector.

    Example:
        >>> one_hot(2, 4)
        array([0., 0., 1., 0.], dtype=float32)
    """
    if not 0 <= label < class_count:
        raise ValueError(f"Label {label} outside 0..{class_count - 1}")
    vector = np.zeros(class_count, dtype=np.float32)
    vector[label] = 1.0
    return vector


class Dataset:
    """
    An ordered collection of (features, one-hot targets) instances.

    Args:
        features: Array of shape (instance_count, feature_count)
        targets: Array of shape (instance_count, class_count)
        class_names: Optional label for each target position
    """

    def __init__(self, features: np.ndarray, targets: np.ndarray,
                 class_names: Sequence[str] = None):
        features = np.asarray(features, dtype=np.float32)
        targets = np.asarray(targets, dtype=np.float32)
        if features.ndim != 2 or targets.ndim != 2:
            raise ValueError("features and targets must be 2-D arrays")
        if features.shape[0] != targets.shape[0]:
            raise ValueError(
                f"{features.shape[0]} feature rows but "
                f"{targets.shape[0]} target rows"
            )
        self.features = features
        self.targets = targets
        if class_names is None:
            class_names = [str(i) for i in range(targets.shape[1])]
        self.class_names = list(class_names)

    @classmethod
    def from_labels(cls, images: np.ndarray, labels: Sequence[int],
                    class_count: int = 10) -> 'Dataset':
        """Build a dataset from integer labels."""
        labels = np.asarray(labels, dtype=np.int64)
        if labels.size and (labels.min() < 0 or labels.max() >= class_count):
            raise DatasetFormatError(
                f"Labels must lie in 0..{class_count - 1}"
            )
        targets = np.zeros((labels.size, class_count), dtype=np.float32)
        targets[np.arange(labels.size), labels] = 1.0
        images = np.asarray(images, dtype=np.float32)
        if images.ndim > 2:
            images = images.reshape(images.shape[0], -1)
        return cls(images, targets)

    @property
    def instance_count(self) -> int:
        return self.features.shape[0]

    @property
    def feature_count(self) -> int:
        return self.features.shape[1]

    @property
    def class_count(self) -> int:
        return self.targets.shape[1]

    @property
    def labels(self) -> np.ndarray:
        """Integer class of each instance."""
        return np.argmax(self.targets, axis=1)

    def get_instance(self, index: int) -> Instance:
        return Instance(self.features[index], self.targets[index])

    def __getitem__(self, index: int) -> Instance:
        return self.get_instance(index)

    def __len__(self) -> int:
        return self.instance_count

    def __iter__(self) -> Iterator[Instance]:
        for index in range(self.instance_count):
            yield self.get_instance(index)

    def __repr__(self) -> str:
        return (f"Dataset({self.instance_count} instances, "
                f"{self.feature_count} features, {self.class_count} classes)")


# ============================================================================
# NPZ
# ============================================================================

def load_npz(path: str,
             class_count: int = 10) -> Tuple[Dataset, Dataset, Dataset]:
    """
    Load the training, validation and test sets from an NPZ archive.

    Args:
        path: Path to the .npz file
        class_count: Number of digit classes

    Returns:
        tuple: (training, validation, test) datasets

    Raises:
        FileNotFoundError: If ``path`` does not exist
        DatasetFormatError: If a required array is missing or invalid
    """
    logger.info(f"Loading digit data from {path}")
    splits = []
    with np.load(path) as data:
        for split in NPZ_SPLITS:
            images_key, labels_key = f'{split}_images', f'{split}_labels'
            missing = [k for k in (images_key, labels_key) if k not in data]
            if missing:
                raise DatasetFormatError(
                    f"{path} is missing array(s): {', '.join(missing)}"
                )
            splits.append(Dataset.from_labels(
                data[images_key], data[labels_key], class_count
            ))

    training, validation, test = splits
    logger.info(
        f"Data loaded: {len(training)} training, "
        f"{len(validation)} validation, {len(test)} test"
    )
    return training, validation, test


# ============================================================================
# ARFF
# ============================================================================

def _unquote(name: str) -> str:
    if len(name) >= 2 and name[0] == name[-1] and name[0] in '\'"':
        return name[1:-1]
    return name


def _parse_nominal(declaration: str) -> List[str]:
    declaration = declaration.strip()
    if not (declaration.startswith('{') and declaration.endswith('}')):
        return []
    return [_unquote(v.strip()) for v in declaration[1:-1].split(',') if v.strip()]


def load_arff(path: str, feature_scale: float = 1.0) -> Dataset:
    """
    Load an ARFF file whose last attribute is the nominal class.

    Every other attribute must be numeric; feature values are divided by
    ``feature_scale`` (use 255 for raw pixel intensities). Sparse data
    rows are not supported.

    Raises:
        FileNotFoundError: If ``path`` does not exist
        DatasetFormatError: If the header or a data row is malformed
    """
    if feature_scale <= 0:
        raise ValueError(f"feature_scale must be positive, got {feature_scale}")

    attributes = []
    rows = []
    labels = []
    class_values: List[str] = []
    in_data = False

    with open(path, 'r') as f:
        for line_number, raw_line in enumerate(f, start=1):
            line = raw_line.strip()
            if not line or line.startswith('%'):
                continue

            if not in_data:
                lowered = line.lower()
                if lowered.startswith('@relation'):
                    continue
                if lowered.startswith('@attribute'):
                    match = _ATTRIBUTE_RE.match(line)
                    if match is None:
                        raise DatasetFormatError(
                            f"{path}:{line_number}: bad attribute declaration"
                        )
                    attributes.append(
                        (_unquote(match.group(1)), match.group(2).strip())
                    )
                    continue
                if lowered.startswith('@data'):
                    class_values = _check_header(path, attributes)
                    in_data = True
                    continue
                raise DatasetFormatError(
                    f"{path}:{line_number}: unexpected header line"
                )

            if line.startswith('{'):
                raise DatasetFormatError(
                    f"{path}:{line_number}: sparse rows are not supported"
                )
            values = [v.strip() for v in line.split(',')]
            if len(values) != len(attributes):
                raise DatasetFormatError(
                    f"{path}:{line_number}: expected {len(attributes)} "
                    f"values, got {len(values)}"
                )
            label = _unquote(values[-1])
            if label not in class_values:
                raise DatasetFormatError(
                    f"{path}:{line_number}: unknown class '{label}'"
                )
            try:
                rows.append([float(v) for v in values[:-1]])
            except ValueError as e:
                raise DatasetFormatError(
                    f"{path}:{line_number}: {e}"
                ) from e
            labels.append(class_values.index(label))

    if not in_data:
        raise DatasetFormatError(f"{path}: no @data section")

    features = np.asarray(rows, dtype=np.float32).reshape(
        len(rows), len(attributes) - 1
    ) / np.float32(feature_scale)
    targets = np.zeros((len(labels), len(class_values)), dtype=np.float32)
    targets[np.arange(len(labels)), labels] = 1.0

    dataset = Dataset(features, targets, class_names=class_values)
    logger.info(f"Loaded {dataset} from {path}")
    return dataset


def _check_header(path: str, attributes: List[Tuple[str, str]]) -> List[str]:
    """Validate the attribute list and return the declared class values."""
    if len(attributes) < 2:
        raise DatasetFormatError(
            f"{path}: need at least one feature and a class attribute"
        )
    class_values = _parse_nominal(attributes[-1][1])
    if not class_values:
        raise DatasetFormatError(
            f"{path}: last attribute '{attributes[-1][0]}' must be nominal"
        )
    for name, kind in attributes[:-1]:
        if kind.lower() not in _NUMERIC_TYPES:
            raise DatasetFormatError(
                f"{path}: attribute '{name}' has unsupported type '{kind}'"
            )
    return class_values
