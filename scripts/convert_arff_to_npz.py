#!/usr/bin/env python3
"""
Convert ARFF digit files to the NPZ archive format.

Reads a training and a test ARFF file (numeric pixel attributes followed
by a nominal class attribute), holds out the tail of the training set as
a validation split, and writes the arrays the trainer and API server load.

Usage:
    python scripts/convert_arff_to_npz.py MNIST_train_abridged.arff \\
        MNIST_test_abridged.arff data/mnist.npz --validation-size 1000

The script will:
1. Load both ARFF files
2. Split off the validation set
3. Save everything as a compressed NPZ file
4. Verify the conversion was successful
"""

import argparse
import os
import sys
from typing import Tuple

import numpy as np

from digitnet.dataset import Dataset, DatasetFormatError, load_arff, load_npz


def load_arff_pair(train_path: str, test_path: str,
                   feature_scale: float) -> Tuple[Dataset, Dataset]:
    """
    Load the training and test ARFF files.

    Parameters:
    -----------
    train_path : str
        Path to the training ARFF file
    test_path : str
        Path to the test ARFF file
    feature_scale : float
        Divisor applied to every feature value

    Returns:
    --------
    tuple
        (training, test) datasets
    """
    print(f"📂 Loading ARFF data from: {train_path}, {test_path}")

    training = load_arff(train_path, feature_scale=feature_scale)
    test = load_arff(test_path, feature_scale=feature_scale)

    if training.class_names != test.class_names:
        raise DatasetFormatError(
            f"Class declarations differ: {training.class_names} "
            f"vs {test.class_names}"
        )

    print(f"✅ Loaded successfully:")
    print(f"   - Training: {len(training)} images")
    print(f"   - Test: {len(test)} images")

    return training, test


def split_validation(training: Dataset,
                     validation_size: int) -> Tuple[Dataset, Dataset]:
    """Hold out the last ``validation_size`` training instances."""
    if not 0 <= validation_size < len(training):
        raise ValueError(
            f"validation_size must be in 0..{len(training) - 1}, "
            f"got {validation_size}"
        )
    cut = len(training) - validation_size
    return (
        Dataset(training.features[:cut], training.targets[:cut],
                training.class_names),
        Dataset(training.features[cut:], training.targets[cut:],
                training.class_names)
    )


def save_as_npz(splits: Tuple[Dataset, Dataset, Dataset], filepath: str) -> None:
    """
    Save the three splits in NPZ format.

    Parameters:
    -----------
    splits : tuple
        (training, validation, test)
    filepath : str
        Output path for the .npz file
    """
    print(f"\n💾 Converting to NPZ format: {filepath}")

    training, validation, test = splits

    out_dir = os.path.dirname(filepath)
    if out_dir and not os.path.exists(out_dir):
        os.makedirs(out_dir)

    np.savez_compressed(
        filepath,
        train_images=training.features,
        train_labels=training.labels,
        val_images=validation.features,
        val_labels=validation.labels,
        test_images=test.features,
        test_labels=test.labels
    )

    npz_size = os.path.getsize(filepath) / (1024 * 1024)  # MB
    print(f"✅ Saved successfully (size: {npz_size:.2f} MB)")


def verify_conversion(npz_filepath: str,
                      splits: Tuple[Dataset, Dataset, Dataset]) -> bool:
    """
    Verify that the NPZ file loads back to the same datasets.

    Returns:
    --------
    bool
        True if verification passes
    """
    print(f"\n🔍 Verifying conversion...")

    class_count = splits[0].class_count
    loaded = load_npz(npz_filepath, class_count=class_count)

    for name, original, restored in zip(
            ('Training', 'Validation', 'Test'), splits, loaded):
        assert np.array_equal(original.features, restored.features), \
            f"{name} images don't match!"
        assert np.array_equal(original.targets, restored.targets), \
            f"{name} labels don't match!"

    print("✅ Verification passed! Data is identical.")
    return True


def main():
    """Main conversion function."""
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument('train_arff')
    parser.add_argument('test_arff')
    parser.add_argument('output', nargs='?', default='data/mnist.npz')
    parser.add_argument('--validation-size', type=int, default=0)
    parser.add_argument('--feature-scale', type=float, default=255.0)
    args = parser.parse_args()

    print("=" * 60)
    print("Digit Data Format Converter")
    print("ARFF → NPZ format")
    print("=" * 60)

    if os.path.exists(args.output):
        response = input(f"\n⚠️  {args.output} already exists. Overwrite? (y/N): ")
        if response.lower() != 'y':
            print("❌ Conversion cancelled.")
            sys.exit(0)

    try:
        training, test = load_arff_pair(
            args.train_arff, args.test_arff, args.feature_scale
        )
        training, validation = split_validation(training, args.validation_size)
        splits = (training, validation, test)

        save_as_npz(splits, args.output)
        verify_conversion(args.output, splits)

        print("\n" + "=" * 60)
        print("✅ CONVERSION COMPLETE!")
        print("=" * 60)
        print(f"\n📁 Output: {args.output}")
        print(f"   - Training: {len(training)}")
        print(f"   - Validation: {len(validation)}")
        print(f"   - Test: {len(test)}")

    except (FileNotFoundError, ValueError, AssertionError) as e:
        print(f"\n❌ Error during conversion: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
