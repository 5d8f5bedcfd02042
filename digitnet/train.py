"""
train.py
~~~~~~~~

Command-line driver: load a training and an evaluation set, train a
network online for a number of epochs and report accuracy after each.

Usage:
    python -m digitnet.train --data data/mnist.npz --epochs 10
    python -m digitnet.train --train MNIST_train_abridged.arff \\
        --test MNIST_test_abridged.arff
"""

import argparse
import logging
import os
import sys
from typing import List, Optional, Tuple

from digitnet.dataset import Dataset, DatasetFormatError, load_arff, load_npz
from digitnet.log_config import configure_logging
from digitnet.network import Network

logger = logging.getLogger(__name__)

DEFAULT_DATA_PATH = os.getenv('DIGITNET_DATA_PATH', 'data/mnist.npz')


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Train a single-hidden-layer digit classifier"
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        '--data', default=None,
        help=f"NPZ digit archive (default: {DEFAULT_DATA_PATH})"
    )
    source.add_argument('--train', help="Training set in ARFF format")
    parser.add_argument('--test', help="Evaluation set in ARFF format")
    parser.add_argument('--epochs', type=int, default=10)
    parser.add_argument('--hidden', type=int, default=200,
                        help="Number of hidden units")
    parser.add_argument('--learning-rate', type=float, default=1.0)
    parser.add_argument('--seed', type=int, default=None,
                        help="Seed for weight initialisation")
    parser.add_argument('--feature-scale', type=float, default=255.0,
                        help="Divisor applied to ARFF feature values")
    parser.add_argument('--log-level', default=None,
                        help="Overrides the LOG_LEVEL environment variable")

    args = parser.parse_args(argv)
    if bool(args.train) != bool(args.test):
        parser.error("--train and --test must be given together")
    if args.epochs < 1:
        parser.error("--epochs must be a positive integer")
    return args


def load_datasets(args: argparse.Namespace) -> Tuple[Dataset, Dataset]:
    """Return (training, evaluation) datasets for the parsed arguments."""
    if args.train:
        return (load_arff(args.train, feature_scale=args.feature_scale),
                load_arff(args.test, feature_scale=args.feature_scale))

    training, _validation, test = load_npz(args.data or DEFAULT_DATA_PATH)
    return training, test


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        training, evaluation = load_datasets(args)
    except (FileNotFoundError, DatasetFormatError) as e:
        logger.error(f"Could not load data: {e}")
        return 1

    if training.feature_count != evaluation.feature_count or \
            training.class_count != evaluation.class_count:
        logger.error(
            f"Training set {training} and evaluation set {evaluation} "
            f"have different shapes"
        )
        return 1

    net = Network(
        training.feature_count,
        args.hidden,
        training.class_count,
        learning_rate=args.learning_rate,
        seed=args.seed
    )
    logger.info(
        f"Training network {net.sizes} for {args.epochs} epoch(s) on "
        f"{len(training)} instances, evaluating on {len(evaluation)}"
    )

    accuracies = net.train_on_dataset(training, evaluation, args.epochs)

    best_epoch = max(range(len(accuracies)), key=accuracies.__getitem__)
    logger.info(
        f"Final accuracy {accuracies[-1]:.2%} "
        f"(best {accuracies[best_epoch]:.2%} at epoch {best_epoch + 1})"
    )
    return 0


if __name__ == '__main__':
    sys.exit(main())
