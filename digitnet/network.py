"""
network.py
~~~~~~~~~~

A fully-connected network with exactly one hidden layer, trained by
online backpropagation.

Every unit uses the logistic sigmoid. The input and hidden layers each
carry a bias unit whose activation is pinned to 1.0; the matching bias
weights live in the last row of the outgoing weight matrix, so they are
learned by the same update rule as every other weight.

Training is per instance: a forward pass, a backward pass and one full
weight sweep for each training instance, in dataset order.
"""

import logging
import math
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np

from digitnet.matrix import Matrix

logger = logging.getLogger(__name__)

# Indices into Network.layers
INPUT, HIDDEN, OUTPUT = 0, 1, 2

INIT_WEIGHT_RANGE = 0.1

# Beyond this magnitude exp() overflows float64; sigmoid is already
# saturated long before it.
_SIGMOID_CLIP = 500.0


def sigmoid(z: np.ndarray) -> np.ndarray:
    """
    Logistic function evaluated in float64.

    The result lies strictly in (0, 1) in float64. Once it is narrowed to
    float32 activation storage it saturates to exactly 1.0 for z above
    about 16.6 and to 0.0 below about -103.
    """
    z = np.clip(np.asarray(z, dtype=np.float64), -_SIGMOID_CLIP, _SIGMOID_CLIP)
    return 1.0 / (1.0 + np.exp(-z))


def sigmoid_prime(activation: np.ndarray) -> np.ndarray:
    """Derivative of the sigmoid, given its output rather than its input."""
    return activation * (1.0 - activation)


class LayerState:
    """
    Activation and delta buffers for one layer.

    When ``has_bias`` is set the activation buffer has one extra trailing
    slot holding the bias unit, fixed at 1.0. Input layers carry no deltas.
    """

    def __init__(self, size: int, has_bias: bool, has_deltas: bool):
        self.size = size
        self.activations = np.zeros(size + 1 if has_bias else size,
                                    dtype=np.float32)
        if has_bias:
            self.activations[size] = 1.0
        self.deltas = (np.zeros(size, dtype=np.float32)
                       if has_deltas else None)

    @property
    def units(self) -> np.ndarray:
        """Activations of the real units, bias slot excluded."""
        return self.activations[:self.size]


class WeightConnection:
    """
    Full connection from a source layer to a destination layer.

    ``weights`` has one row per source activation (bias included) and
    one column per destination unit.
    """

    def __init__(self, weights: Matrix, source: LayerState,
                 destination: LayerState):
        if weights.shape != (source.activations.size, destination.size):
            raise ValueError(
                f"Weight matrix {weights.shape} does not connect "
                f"{source.activations.size} sources to "
                f"{destination.size} destinations"
            )
        self.weights = weights
        self.source = source
        self.destination = destination

    def propagate(self) -> None:
        """Overwrite destination activations from the source activations."""
        net = np.dot(self.source.activations.astype(np.float64),
                     self.weights.values.astype(np.float64))
        self.destination.units[:] = sigmoid(net)

    def backpropagate(self) -> np.ndarray:
        """
        Weighted sum of destination deltas for each non-bias source unit.
        """
        return np.dot(self.weights.values[:-1], self.destination.deltas)

    def apply_deltas(self, learning_rate: float) -> None:
        """In-place ``w[i][j] += lr * a_source[i] * delta_destination[j]``."""
        self.weights.values[...] += learning_rate * np.outer(
            self.source.activations, self.destination.deltas
        ).astype(self.weights.values.dtype)


class Network:
    """
    Single-hidden-layer sigmoid network.

    Args:
        input_count: Length of a feature vector
        hidden_count: Number of hidden units
        output_count: Number of classes
        learning_rate: Step size, fixed for the network's lifetime
        seed: Seed for the weight initialisation

    Example:
        >>> net = Network(784, 200, 10)
        >>> net.train_on_instance(features, targets)
        >>> net.classify(features)
        7
    """

    def __init__(
        self,
        input_count: int = 784,
        hidden_count: int = 200,
        output_count: int = 10,
        learning_rate: float = 1.0,
        seed: Optional[int] = None
    ):
        sizes = [input_count, hidden_count, output_count]
        if any(isinstance(n, bool) or not isinstance(n, (int, np.integer))
               or n < 1 for n in sizes):
            raise ValueError(f"Layer sizes must be positive integers, got {sizes}")
        if (isinstance(learning_rate, bool)
                or not isinstance(learning_rate, (int, float, np.integer, np.floating))
                or not math.isfinite(learning_rate) or learning_rate <= 0):
            raise ValueError(
                f"learning_rate must be a positive finite number, got {learning_rate}"
            )

        self.input_count = int(input_count)
        self.hidden_count = int(hidden_count)
        self.output_count = int(output_count)
        self.sizes = [self.input_count, self.hidden_count, self.output_count]
        self.learning_rate = float(learning_rate)

        self.layers = [
            LayerState(self.input_count, has_bias=True, has_deltas=False),
            LayerState(self.hidden_count, has_bias=True, has_deltas=True),
            LayerState(self.output_count, has_bias=False, has_deltas=True),
        ]

        self.first_weights = Matrix(self.input_count + 1, self.hidden_count)
        self.second_weights = Matrix(self.hidden_count + 1, self.output_count)
        self.connections = [
            WeightConnection(self.first_weights,
                             self.layers[INPUT], self.layers[HIDDEN]),
            WeightConnection(self.second_weights,
                             self.layers[HIDDEN], self.layers[OUTPUT]),
        ]

        self.initialize_weights(seed)
        logger.debug(
            f"Initialized network {self.sizes} with "
            f"learning_rate={self.learning_rate}"
        )

    # ------------------------------------------------------------------
    # Buffers

    @property
    def input_activations(self) -> np.ndarray:
        return self.layers[INPUT].activations

    @property
    def hidden_activations(self) -> np.ndarray:
        return self.layers[HIDDEN].activations

    @property
    def output_activations(self) -> np.ndarray:
        return self.layers[OUTPUT].activations

    @property
    def hidden_deltas(self) -> np.ndarray:
        return self.layers[HIDDEN].deltas

    @property
    def output_deltas(self) -> np.ndarray:
        return self.layers[OUTPUT].deltas

    def initialize_weights(self, seed: Optional[int] = None) -> None:
        """Draw every weight, bias rows included, from U[-0.1, 0.1]."""
        rng = np.random.default_rng(seed)
        for connection in self.connections:
            connection.weights.fill_uniform(
                rng, -INIT_WEIGHT_RANGE, INIT_WEIGHT_RANGE
            )

    # ------------------------------------------------------------------
    # Forward / backward / update

    def compute_activations(self, features: Sequence[float]) -> np.ndarray:
        """
        Run the forward pass for one feature vector.

        Returns:
            The output activation buffer (overwritten on the next call)
        """
        self.layers[INPUT].units[:] = features
        for connection in self.connections:
            connection.propagate()
        return self.output_activations

    def compute_deltas(self, targets: Sequence[float]) -> None:
        """
        Backpropagate the error for ``targets``.

        Must follow ``compute_activations`` for the same instance.
        """
        output = self.layers[OUTPUT]
        output.deltas[:] = (
            (np.asarray(targets, dtype=np.float32) - output.activations)
            * sigmoid_prime(output.activations)
        )

        # Walk the connections backwards; the first one has no deltas to
        # hand back because the input layer has none.
        for connection in reversed(self.connections[1:]):
            source = connection.source
            source.deltas[:] = (connection.backpropagate()
                                * sigmoid_prime(source.units))

    def apply_weight_deltas(self) -> None:
        """Apply one online gradient step using the current deltas."""
        for connection in self.connections:
            connection.apply_deltas(self.learning_rate)

    # ------------------------------------------------------------------
    # Classification

    def classify(self, features: Sequence[float]) -> int:
        """
        Index of the most active output unit.

        Ties resolve to the lowest index.
        """
        self.compute_activations(features)
        return int(np.argmax(self.output_activations))

    @staticmethod
    def target_classification(targets: Sequence[float]) -> int:
        """
        Class encoded by a one-hot target vector.

        Returns the index of the last entry equal to 1.0, or -1 if there
        is none.
        """
        hot = np.flatnonzero(np.asarray(targets) == 1.0)
        return int(hot[-1]) if hot.size else -1

    def squared_error(self, features: Sequence[float],
                      targets: Sequence[float]) -> float:
        """Sum of squared output errors for one instance."""
        output = self.compute_activations(features).astype(np.float64)
        return float(np.sum((np.asarray(targets, dtype=np.float64) - output) ** 2))

    def evaluate(self, instances: Iterable) -> int:
        """Number of instances whose class is predicted correctly."""
        return sum(
            int(self.classify(features) == self.target_classification(targets))
            for features, targets in instances
        )

    def classification_accuracy(self, instances: Sequence) -> float:
        """Fraction of ``instances`` classified correctly."""
        total = len(instances)
        if total == 0:
            return 0.0
        return self.evaluate(instances) / total

    # ------------------------------------------------------------------
    # Training

    def train_on_instance(self, features: Sequence[float],
                          targets: Sequence[float]) -> None:
        self.compute_activations(features)
        self.compute_deltas(targets)
        self.apply_weight_deltas()

    def train_on_dataset(
        self,
        training_instances: Sequence,
        evaluation_instances: Sequence,
        max_epochs: int,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> List[float]:
        """
        Train online for ``max_epochs`` passes over the training set.

        Instances are visited in order, each fully processed before the
        next. After every epoch the network is scored on
        ``evaluation_instances``.

        Args:
            training_instances: Sequence of (features, targets) pairs
            evaluation_instances: Held-out (features, targets) pairs
            max_epochs: Number of passes over the training set
            callback: Called after each epoch with a progress dictionary
            yield_func: Called after each instance so that cooperative
                schedulers can run other work

        Returns:
            Evaluation accuracy after each epoch
        """
        accuracies = []
        total = len(evaluation_instances)
        start_time = time.time()

        for epoch in range(max_epochs):
            for features, targets in training_instances:
                self.train_on_instance(features, targets)
                if yield_func:
                    yield_func()

            correct = self.evaluate(evaluation_instances)
            accuracy = correct / total if total else 0.0
            accuracies.append(accuracy)
            elapsed_time = time.time() - start_time

            logger.info(
                f"Epoch {epoch + 1}/{max_epochs}: {correct}/{total} "
                f"correct ({accuracy:.2%}), {elapsed_time:.1f}s elapsed"
            )

            if callback:
                callback({
                    'epoch': epoch + 1,
                    'total_epochs': max_epochs,
                    'accuracy': accuracy,
                    'correct': correct,
                    'total': total,
                    'elapsed_time': elapsed_time
                })

        return accuracies
