"""
labels.py — Multi-Hot Label Encoder
=====================================
Key functions: encode_labels, decode_labels

PURPOSE:
    Converts an item's raw tag strings into a multi-hot target vector
    against the frozen vocabulary (1.0 at each recognised term, 0.0
    elsewhere).  Terms that are not in the vocabulary are ignored: the
    vocabulary is built from the same item collection in the same run.
"""

from collections.abc import Iterable

import numpy as np

from tag_trainer.data.vocabulary import Vocabulary


def encode_labels(tags: Iterable[str], vocabulary: Vocabulary) -> np.ndarray:
    """
    Args:
        tags:       Raw category / keyword strings for one item.
        vocabulary: Frozen vocabulary.

    Returns:
        np.ndarray: (len(vocabulary),) float32 multi-hot vector.
    """
    labels = np.zeros(len(vocabulary), dtype=np.float32)
    for term in tags:
        index = vocabulary.index_of(term)
        if index is not None:
            labels[index] = 1.0
    return labels


def decode_labels(labels, vocabulary: Vocabulary, threshold: float = 0.5) -> list[str]:
    """Terms whose label / probability exceeds `threshold` (vocabulary order)."""
    values = np.asarray(labels, dtype=np.float32)
    return [vocabulary.term_at(int(i)) for i in np.flatnonzero(values > threshold)]
