"""
model.py — Multi-Label Tag Classifier Head
============================================
Key classes: TagClassifier

PURPOSE:
    A small feed-forward head trained on frozen backbone embeddings.  Each
    output unit is an independent sigmoid, so an image can carry any number
    of tags (multi-label), unlike a softmax over mutually exclusive classes.

ARCHITECTURE:
    features (B, F)
      ─► [Linear(F, h1) ─► ReLU ─► Dropout] × len(hidden_dimensions)
      ─► Linear(h_last, L)
      ─► Sigmoid
      ─► probabilities (B, L)

    With an empty `hidden_dimensions` the head is a single Linear + Sigmoid
    (multi-label logistic regression).
"""

import os

import torch
import torch.nn as nn


class TagClassifier(nn.Module):
    """Feed-forward multi-label classifier producing per-tag probabilities."""

    def __init__(
        self,
        feature_dim: int,
        label_dim: int,
        hidden_dimensions=(256, 128, 64),
        dropout_rate: float = 0.2,
    ):
        """
        Args:
            feature_dim:       Input embedding size (e.g. 2048 for ResNet50).
            label_dim:         Vocabulary size.
            hidden_dimensions: Widths of the hidden layers, in order.
            dropout_rate:      Dropout after every hidden activation (0 = off).
        """
        super().__init__()
        self.feature_dim = int(feature_dim)
        self.label_dim = int(label_dim)
        self.hidden_dimensions = [int(h) for h in hidden_dimensions]
        self.dropout_rate = float(dropout_rate)

        layers: list[nn.Module] = []
        current = self.feature_dim
        for width in self.hidden_dimensions:
            layers.append(nn.Linear(current, width))
            layers.append(nn.ReLU())
            if self.dropout_rate > 0:
                layers.append(nn.Dropout(self.dropout_rate))
            current = width
        layers.append(nn.Linear(current, self.label_dim))
        layers.append(nn.Sigmoid())
        self.net = nn.Sequential(*layers)

    def forward(self, features: torch.Tensor) -> torch.Tensor:
        """
        Args:
            features (FloatTensor): (B, F)

        Returns:
            probabilities (FloatTensor): (B, L) in [0, 1]
        """
        return self.net(features)

    def architecture(self) -> dict:
        """Everything needed to rebuild an identical (untrained) head."""
        return {
            "feature_dim": self.feature_dim,
            "label_dim": self.label_dim,
            "hidden_dimensions": list(self.hidden_dimensions),
            "dropout_rate": self.dropout_rate,
        }

    @classmethod
    def from_architecture(cls, arch: dict) -> "TagClassifier":
        return cls(
            feature_dim=arch["feature_dim"],
            label_dim=arch["label_dim"],
            hidden_dimensions=arch["hidden_dimensions"],
            dropout_rate=arch["dropout_rate"],
        )


# ──────────────────────────────────────────────────────────────
# Persistence
# ──────────────────────────────────────────────────────────────

MODEL_FILE = "model.pt"


def save_classifier(path: str, model: TagClassifier, vocabulary_terms: list[str], config: dict) -> None:
    """Save weights + architecture + label list as one torch checkpoint."""
    state = {
        "model_state_dict": {k: v.detach().cpu() for k, v in model.state_dict().items()},
        "architecture": model.architecture(),
        "vocabulary": list(vocabulary_terms),
        "config": config,
    }
    torch.save(state, path)


def load_classifier(path: str, device: torch.device | str = "cpu") -> tuple[TagClassifier, dict]:
    """
    Rebuild a trained head from a checkpoint written by save_classifier.

    Args:
        path: model.pt file, or the model directory containing it.

    Returns:
        (model in eval mode, raw checkpoint dict)
    """
    if os.path.isdir(path):
        path = os.path.join(path, MODEL_FILE)
    ckpt = torch.load(path, map_location=device, weights_only=False)
    model = TagClassifier.from_architecture(ckpt["architecture"])
    model.load_state_dict(ckpt["model_state_dict"])
    model.to(device)
    model.eval()
    return model, ckpt
