"""
dataset.py — Training Data Assembly & PyTorch Dataset Definitions
===================================================================
Key classes: TrainingSample, TrainingDataset, FeatureLabelDataset
Key functions: build_dataset, split_samples, build_dataloaders,
               save_dataset, load_dataset

PURPOSE:
    Turns a collection of tagged images into a (features, labels) dataset:

        item source ─► vocabulary ─► per item: feature extractor
                                               + label encoder
                                               ─► TrainingSample

    and wraps the result for the trainer (train/val split + DataLoaders).

NOTES:
    - Items whose features cannot be extracted are dropped entirely; a
      sample is only valid with both features and labels present.
    - Samples are shuffled once (seeded) after assembly; the trainer splits
      the already-shuffled list without reshuffling.
    - Cancellation is checked between items and yields a partial dataset
      flagged `cancelled=True`.
"""

import json
import logging
import os
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import numpy as np
import torch
from torch.utils.data import DataLoader, Dataset

from tag_trainer.data.labels import encode_labels
from tag_trainer.data.sources import ItemSource
from tag_trainer.data.vocabulary import Vocabulary, build_vocabulary

logger = logging.getLogger("tag-trainer")

# (processed_count, total_count, message)
ExtractionProgress = Callable[[int, int, str], None]
CancelCheck = Callable[[], bool]

FEATURES_FILE = "features.npy"
LABELS_FILE = "labels.npy"
SAMPLES_FILE = "samples.json"
VOCABULARY_FILE = "vocabulary.json"
SUMMARY_FILE = "dataset_summary.json"


# ──────────────────────────────────────────────────────────────
# Data model
# ──────────────────────────────────────────────────────────────

@dataclass
class TrainingSample:
    id: int
    file_name: str
    file_path: str
    features: np.ndarray
    labels: np.ndarray


@dataclass
class TrainingDataset:
    """All samples of one extraction run plus the vocabulary they were encoded with."""

    samples: list[TrainingSample]
    feature_dimension: int
    label_dimension: int
    vocabulary: Vocabulary
    excluded_count: int = 0
    cancelled: bool = False
    source: str = ""
    preprocessing: dict = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat(timespec="seconds"))

    def __len__(self) -> int:
        return len(self.samples)

    def validate(self) -> None:
        """Check the per-sample dimension invariant."""
        if self.label_dimension != len(self.vocabulary):
            raise ValueError(
                f"label_dimension={self.label_dimension} but vocabulary has "
                f"{len(self.vocabulary)} terms"
            )
        for s in self.samples:
            if len(s.features) != self.feature_dimension or len(s.labels) != self.label_dimension:
                raise ValueError(
                    f"Sample {s.id} ({s.file_name}) has {len(s.features)} features / "
                    f"{len(s.labels)} labels, expected "
                    f"{self.feature_dimension} / {self.label_dimension}"
                )

    def feature_matrix(self) -> np.ndarray:
        if not self.samples:
            return np.zeros((0, self.feature_dimension), dtype=np.float32)
        return np.stack([s.features for s in self.samples]).astype(np.float32)

    def label_matrix(self) -> np.ndarray:
        if not self.samples:
            return np.zeros((0, self.label_dimension), dtype=np.float32)
        return np.stack([s.labels for s in self.samples]).astype(np.float32)

    def shuffle(self, seed: int = 42) -> None:
        random.Random(seed).shuffle(self.samples)

    def summary_dict(self) -> dict:
        return {
            "sample_count": len(self.samples),
            "excluded_count": self.excluded_count,
            "feature_dimension": self.feature_dimension,
            "label_dimension": self.label_dimension,
            "extraction_timestamp": self.created_at,
            "source": self.source,
            "cancelled": self.cancelled,
            "preprocessing": self.preprocessing,
        }

    def summary(self) -> str:
        text = (
            f"Included {len(self.samples)} samples, excluded {self.excluded_count}; "
            f"{self.feature_dimension} features, {self.label_dimension} labels"
        )
        if self.cancelled:
            text += " (cancelled — partial dataset)"
        return text


# ──────────────────────────────────────────────────────────────
# Dataset assembly
# ──────────────────────────────────────────────────────────────

def build_dataset(
    item_source: ItemSource,
    extractor,
    max_items: int | None = None,
    include_subfolders: bool | None = None,
    progress: ExtractionProgress | None = None,
    should_cancel: CancelCheck | None = None,
    seed: int = 42,
) -> TrainingDataset:
    """
    Assemble a TrainingDataset from an item source.

    Args:
        item_source:        Yields SourceItem(file_path, categories, keywords).
        extractor:          FeatureExtractor (anything with .extract(path) and
                            .feature_dim).
        max_items:          Cap on the number of items processed (None = all).
        include_subfolders: Recurse into subfolders (local folder sources only).
        progress:           Called after every item with (done, total, message).
        should_cancel:      Polled between items; True stops assembly early.
        seed:               Seed for the one-time sample shuffle.

    Returns:
        TrainingDataset
    """
    items = list(item_source.iter_items(max_items=max_items, include_subfolders=include_subfolders))
    total = len(items)
    logger.info(f"Assembling dataset from {total:,} items ({item_source.describe()})")

    vocabulary = build_vocabulary(item.tags for item in items)

    samples: list[TrainingSample] = []
    excluded = 0
    cancelled = False
    next_id = 1

    for i, item in enumerate(items):
        if should_cancel is not None and should_cancel():
            logger.info(f"Dataset assembly cancelled after {i}/{total} items")
            cancelled = True
            break

        name = item.display_name
        features = extractor.extract(item.file_path) if item.file_path else None

        if features is None:
            if not item.file_path:
                logger.warning(f"Skipping {name}: no file path")
            excluded += 1
            message = f"Skipped {name}"
        else:
            sample_id = item.item_id if item.item_id is not None else next_id
            next_id = max(next_id, sample_id) + 1
            samples.append(TrainingSample(
                id=sample_id,
                file_name=name,
                file_path=item.file_path,
                features=np.asarray(features, dtype=np.float32),
                labels=encode_labels(item.tags, vocabulary),
            ))
            message = f"Processed {name}"

        if progress is not None:
            progress(i + 1, total, message)

    dataset = TrainingDataset(
        samples=samples,
        feature_dimension=int(extractor.feature_dim),
        label_dimension=len(vocabulary),
        vocabulary=vocabulary,
        excluded_count=excluded,
        cancelled=cancelled,
        source=item_source.describe(),
        preprocessing=extractor.describe() if hasattr(extractor, "describe") else {},
    )
    dataset.validate()
    dataset.shuffle(seed)
    logger.info(dataset.summary())
    return dataset


# ──────────────────────────────────────────────────────────────
# Persistence
# ──────────────────────────────────────────────────────────────

def save_dataset(dataset: TrainingDataset, directory: str) -> str:
    """
    Write a dataset to `directory`:

        features.npy / labels.npy  → (N, F) / (N, L) float32
        samples.json               → row index → {id, file_name, file_path}
        vocabulary.json            → ordered term list (index = position)
        dataset_summary.json       → counts, dimensions, timestamp
    """
    os.makedirs(directory, exist_ok=True)
    np.save(os.path.join(directory, FEATURES_FILE), dataset.feature_matrix())
    np.save(os.path.join(directory, LABELS_FILE), dataset.label_matrix())
    rows = [
        {"id": s.id, "file_name": s.file_name, "file_path": s.file_path}
        for s in dataset.samples
    ]
    with open(os.path.join(directory, SAMPLES_FILE), "w", encoding="utf-8") as f:
        json.dump(rows, f, indent=2, ensure_ascii=False)
    dataset.vocabulary.save(os.path.join(directory, VOCABULARY_FILE))
    with open(os.path.join(directory, SUMMARY_FILE), "w", encoding="utf-8") as f:
        json.dump(dataset.summary_dict(), f, indent=2)
    logger.info(f"Dataset saved → {directory} ({len(dataset)} samples)")
    return directory


def load_dataset(directory: str) -> TrainingDataset:
    """Inverse of save_dataset (sample order is preserved)."""
    features = np.load(os.path.join(directory, FEATURES_FILE))
    labels = np.load(os.path.join(directory, LABELS_FILE))
    with open(os.path.join(directory, SAMPLES_FILE), "r", encoding="utf-8") as f:
        rows = json.load(f)
    vocabulary = Vocabulary.load(os.path.join(directory, VOCABULARY_FILE))
    with open(os.path.join(directory, SUMMARY_FILE), "r", encoding="utf-8") as f:
        summary = json.load(f)

    if not (len(rows) == len(features) == len(labels)):
        raise ValueError(f"Inconsistent dataset files in {directory}")

    samples = [
        TrainingSample(
            id=row["id"],
            file_name=row["file_name"],
            file_path=row["file_path"],
            features=features[i].astype(np.float32),
            labels=labels[i].astype(np.float32),
        )
        for i, row in enumerate(rows)
    ]
    dataset = TrainingDataset(
        samples=samples,
        feature_dimension=int(summary["feature_dimension"]),
        label_dimension=int(summary["label_dimension"]),
        vocabulary=vocabulary,
        excluded_count=int(summary.get("excluded_count", 0)),
        cancelled=bool(summary.get("cancelled", False)),
        source=summary.get("source", ""),
        preprocessing=summary.get("preprocessing") or {},
        created_at=summary.get("extraction_timestamp", ""),
    )
    dataset.validate()
    logger.info(f"Dataset loaded ← {directory}: {dataset.summary()}")
    return dataset


# ──────────────────────────────────────────────────────────────
# PyTorch interface
# ──────────────────────────────────────────────────────────────

class FeatureLabelDataset(Dataset):
    """
    Tensor view over a list of TrainingSamples.

    Each item returns:
        features (FloatTensor): (F,)
        labels   (FloatTensor): (L,)
    """

    def __init__(self, samples: list[TrainingSample]):
        super().__init__()
        if samples:
            self.features = torch.from_numpy(np.stack([s.features for s in samples]).astype(np.float32))
            self.labels = torch.from_numpy(np.stack([s.labels for s in samples]).astype(np.float32))
        else:
            self.features = torch.zeros((0, 0))
            self.labels = torch.zeros((0, 0))

    def __len__(self) -> int:
        return self.features.shape[0]

    def __getitem__(self, index: int) -> dict:
        return {"features": self.features[index], "labels": self.labels[index]}


def split_samples(
    samples: list[TrainingSample], validation_split: float,
) -> tuple[list[TrainingSample], list[TrainingSample]]:
    """
    Split the (pre-shuffled) samples: the validation subset is the trailing
    `int(N * validation_split)` samples, training is the remainder.
    """
    val_count = int(len(samples) * validation_split)
    cut = len(samples) - val_count
    return samples[:cut], samples[cut:]


def build_dataloaders(
    dataset: TrainingDataset, validation_split: float, batch_size: int,
) -> tuple[DataLoader, DataLoader]:
    """
    Returns (train_loader, val_loader).  Neither loader shuffles: batch order
    follows the dataset's one-time shuffle.
    """
    train_samples, val_samples = split_samples(dataset.samples, validation_split)
    train_loader = DataLoader(
        FeatureLabelDataset(train_samples), batch_size=batch_size,
        shuffle=False, num_workers=0, drop_last=False,
    )
    val_loader = DataLoader(
        FeatureLabelDataset(val_samples), batch_size=batch_size,
        shuffle=False, num_workers=0,
    )
    logger.info(
        f"DataLoaders ready: train={len(train_samples)}, val={len(val_samples)}, "
        f"batch_size={batch_size}"
    )
    return train_loader, val_loader
