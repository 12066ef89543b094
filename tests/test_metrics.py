import numpy as np
import pytest
import torch

from tag_trainer.utils.metrics import label_accuracy_counts, multilabel_accuracy, per_tag_metrics


def test_label_accuracy_counts_bits():
    probs = torch.tensor([[0.9, 0.2], [0.6, 0.7]])
    targets = torch.tensor([[1.0, 0.0], [0.0, 1.0]])
    assert label_accuracy_counts(probs, targets) == (3, 4)


def test_threshold_is_strict():
    probs = torch.tensor([[0.5]])
    assert label_accuracy_counts(probs, torch.tensor([[0.0]])) == (1, 1)


def test_multilabel_accuracy():
    assert multilabel_accuracy([[0.9, 0.1]], [[1, 0]]) == 1.0
    assert multilabel_accuracy(np.zeros((0, 2)), np.zeros((0, 2))) == 0.0


def test_per_tag_metrics():
    probs = np.array([[0.9, 0.1], [0.8, 0.7], [0.2, 0.6]])
    targets = np.array([[1, 0], [0, 1], [1, 0]])
    df = per_tag_metrics(probs, targets, ["cat", "dog"])

    assert list(df.index) == ["cat", "dog"]
    assert df.loc["cat", "precision"] == pytest.approx(0.5)
    assert df.loc["cat", "recall"] == pytest.approx(0.5)
    assert df.loc["dog", "precision"] == pytest.approx(0.5)
    assert df.loc["dog", "recall"] == pytest.approx(1.0)
    assert df.loc["dog", "f1"] == pytest.approx(2 / 3)
    assert df["support"].tolist() == [2, 1]


def test_per_tag_metrics_shape_mismatch():
    with pytest.raises(ValueError):
        per_tag_metrics(np.zeros((2, 2)), np.zeros((2, 3)), ["a", "b"])
