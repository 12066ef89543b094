"""
evaluate.py — Standalone Evaluation of a Trained Tag Classifier
=================================================================
Key functions: evaluate_model

PURPOSE:
    Loads a saved model directory and a saved dataset and reports, without
    re-training:
      - mean BCE loss and thresholded label accuracy
      - per-tag precision / recall / F1 / support (written to CSV)

    The dataset's vocabulary must match the model's label list; a mismatch
    means the model was trained on a different extraction run.

USAGE:
    python run_all.py --stage evaluate --model-dir models/20250101_120000
"""

import json
import logging
import os

import numpy as np
import torch
import torch.nn as nn

from tag_trainer.classifier.model import load_classifier
from tag_trainer.data.dataset import load_dataset
from tag_trainer.utils.metrics import DEFAULT_THRESHOLD, multilabel_accuracy, per_tag_metrics

logger = logging.getLogger("tag-trainer")


@torch.no_grad()
def evaluate_model(
    model_dir: str,
    dataset_dir: str,
    threshold: float = DEFAULT_THRESHOLD,
    output_dir: str | None = None,
    batch_size: int = 256,
) -> dict:
    """
    Args:
        model_dir:   Directory written by the Trainer.
        dataset_dir: Directory written by save_dataset.
        threshold:   Decision threshold for label accuracy / per-tag metrics.
        output_dir:  Where evaluation.json and per_tag_metrics.csv go
                     (defaults to model_dir).

    Returns:
        dict: {"loss", "accuracy", "num_samples", "threshold", "per_tag_csv"}
    """
    model, ckpt = load_classifier(model_dir)
    dataset = load_dataset(dataset_dir)
    terms = ckpt.get("vocabulary", [])
    if terms != dataset.vocabulary.terms:
        raise ValueError(
            f"Dataset vocabulary ({len(dataset.vocabulary)} terms) does not match "
            f"the model's label list ({len(terms)} terms)"
        )

    features = torch.from_numpy(dataset.feature_matrix())
    targets = dataset.label_matrix()

    probs_parts = []
    for start in range(0, len(features), batch_size):
        probs_parts.append(model(features[start:start + batch_size]).numpy())
    probs = np.concatenate(probs_parts) if probs_parts else np.zeros_like(targets)

    if targets.size:
        loss = nn.BCELoss()(torch.from_numpy(probs), torch.from_numpy(targets)).item()
    else:
        loss = 0.0
    accuracy = multilabel_accuracy(probs, targets, threshold)

    per_tag = per_tag_metrics(probs, targets, terms, threshold)
    output_dir = output_dir or model_dir
    os.makedirs(output_dir, exist_ok=True)
    csv_path = os.path.join(output_dir, "per_tag_metrics.csv")
    per_tag.to_csv(csv_path)

    logger.info("─── Evaluation ───")
    logger.info(f"  samples:  {len(dataset)}")
    logger.info(f"  loss:     {loss:.4f}")
    logger.info(f"  accuracy: {accuracy:.4f}")
    worst = per_tag[per_tag["support"] > 0].sort_values("f1").head(5)
    for term, row in worst.iterrows():
        logger.info(f"  weakest tag {term!r}: F1={row['f1']:.3f} (support {int(row['support'])})")

    results = {
        "loss": loss,
        "accuracy": accuracy,
        "num_samples": len(dataset),
        "threshold": threshold,
        "per_tag_csv": csv_path,
    }
    with open(os.path.join(output_dir, "evaluation.json"), "w") as f:
        json.dump(results, f, indent=2)
    return results
