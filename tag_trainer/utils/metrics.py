"""
metrics.py — Multi-Label Evaluation Metrics
=============================================

PURPOSE:
    Implements the metrics reported for the tag classifier:

    1. Label accuracy   — fraction of individual label bits predicted
                          correctly after thresholding probabilities at 0.5
                          (used for BOTH the training and validation phase)
    2. Per-tag scores   — precision / recall / F1 / support for every
                          vocabulary term, used by the standalone evaluation

USAGE:
    from tag_trainer.utils.metrics import label_accuracy_counts, per_tag_metrics
    correct, total = label_accuracy_counts(probs, targets)
"""

import numpy as np
import pandas as pd
import torch

DEFAULT_THRESHOLD = 0.5


def label_accuracy_counts(probs, targets, threshold=DEFAULT_THRESHOLD):
    """
    Count correctly predicted label bits for one batch.

    Args:
        probs (Tensor):   (B, L) sigmoid outputs.
        targets (Tensor): (B, L) multi-hot 0/1 targets.
        threshold (float): Decision threshold.

    Returns:
        tuple[int, int]: (correct_bits, total_bits)
    """
    predicted = (probs > threshold).to(torch.int64)
    correct = (predicted == targets.to(torch.int64)).sum().item()
    return int(correct), int(targets.numel())


def multilabel_accuracy(probs, targets, threshold=DEFAULT_THRESHOLD):
    """
    Label-bit accuracy over a whole prediction matrix.

    Returns:
        float: correct bits / total bits, 0.0 for an empty matrix.
    """
    probs = np.asarray(probs, dtype=np.float32)
    targets = np.asarray(targets, dtype=np.float32)
    if targets.size == 0:
        return 0.0
    predicted = (probs > threshold).astype(np.int64)
    return float((predicted == targets.astype(np.int64)).mean())


def per_tag_metrics(probs, targets, terms, threshold=DEFAULT_THRESHOLD):
    """
    Precision / recall / F1 for every tag.

    Args:
        probs (array):   (N, L) predicted probabilities.
        targets (array): (N, L) multi-hot targets.
        terms (list[str]): Vocabulary terms, index = column.
        threshold (float): Decision threshold.

    Returns:
        pd.DataFrame indexed by term with columns
        precision, recall, f1, support, predicted.
    """
    probs = np.asarray(probs, dtype=np.float32)
    targets = np.asarray(targets, dtype=np.float32)
    if probs.shape != targets.shape:
        raise ValueError("probs and targets must have the same shape")
    if probs.ndim != 2 or probs.shape[1] != len(terms):
        raise ValueError("column count must match the number of terms")

    predicted = probs > threshold
    actual = targets > 0.5

    tp = np.logical_and(predicted, actual).sum(axis=0).astype(float)
    fp = np.logical_and(predicted, ~actual).sum(axis=0).astype(float)
    fn = np.logical_and(~predicted, actual).sum(axis=0).astype(float)

    with np.errstate(divide="ignore", invalid="ignore"):
        precision = np.where(tp + fp > 0, tp / (tp + fp), 0.0)
        recall = np.where(tp + fn > 0, tp / (tp + fn), 0.0)
        f1 = np.where(
            precision + recall > 0,
            2 * precision * recall / (precision + recall),
            0.0,
        )

    return pd.DataFrame(
        {
            "precision": precision,
            "recall": recall,
            "f1": f1,
            "support": actual.sum(axis=0).astype(int),
            "predicted": predicted.sum(axis=0).astype(int),
        },
        index=pd.Index(list(terms), name="term"),
    )
