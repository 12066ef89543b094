"""
Shared fixtures: a tiny injected backbone (no pretrained weights are
downloaded), Pillow-generated images, XMP sidecars and synthetic
feature/label datasets.
"""

import numpy as np
import pytest
import torch
import torch.nn as nn
from PIL import Image

from tag_trainer.classifier.config import TrainingConfig
from tag_trainer.data.dataset import TrainingDataset, TrainingSample
from tag_trainer.data.embeddings import FeatureExtractor
from tag_trainer.data.vocabulary import Vocabulary

TINY_FEATURE_DIM = 4


def xmp_packet(keywords=(), categories=()) -> str:
    def bag(values):
        return "<rdf:Bag>" + "".join(f"<rdf:li>{v}</rdf:li>" for v in values) + "</rdf:Bag>"

    return (
        '<x:xmpmeta xmlns:x="adobe:ns:meta/">'
        '<rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#">'
        '<rdf:Description rdf:about="" xmlns:dc="http://purl.org/dc/elements/1.1/">'
        f"<dc:subject>{bag(keywords)}</dc:subject>"
        f"<dc:type>{bag(categories)}</dc:type>"
        "</rdf:Description></rdf:RDF></x:xmpmeta>"
    )


def write_image(path, color=(200, 30, 30), size=(40, 30), keywords=None, categories=None):
    """Save a solid-colour image; tags (if any) go into an .xmp sidecar."""
    Image.new("RGB", size, color).save(str(path))
    if keywords or categories:
        sidecar = path.with_suffix(".xmp")
        sidecar.write_text(xmp_packet(keywords or (), categories or ()), encoding="utf-8")
    return path


def write_truncated_jpeg(path, size=(256, 256)):
    """First half of a valid, noisy JPEG: the header parses but the scan data stops early."""
    full = path.with_name(path.stem + "_full.jpg")
    pixels = np.random.default_rng(0).integers(0, 256, (size[1], size[0], 3), dtype=np.uint8)
    Image.fromarray(pixels).save(str(full), quality=95)
    data = full.read_bytes()
    path.write_bytes(data[: len(data) // 2])
    full.unlink()
    return path


@pytest.fixture
def tiny_extractor():
    torch.manual_seed(0)
    backbone = nn.Sequential(
        nn.Conv2d(3, TINY_FEATURE_DIM, kernel_size=3),
        nn.AdaptiveAvgPool2d(1),
    )
    return FeatureExtractor(backbone=backbone, feature_dim=TINY_FEATURE_DIM, image_size=32)


def make_cat_dog_dataset(n_cat=80, n_dog=20, feature_dim=4, noise=0.05, seed=0) -> TrainingDataset:
    """Linearly separable two-tag dataset, shuffled once like an assembled dataset."""
    rng = np.random.default_rng(seed)
    vocab = Vocabulary(["cat", "dog"])
    samples = []
    for i in range(n_cat + n_dog):
        is_cat = i < n_cat
        base = np.zeros(feature_dim, dtype=np.float32)
        base[0 if is_cat else 1] = 1.0
        features = (base + rng.normal(0, noise, feature_dim)).astype(np.float32)
        labels = np.array([1.0, 0.0] if is_cat else [0.0, 1.0], dtype=np.float32)
        samples.append(TrainingSample(
            id=i + 1, file_name=f"img_{i}.jpg", file_path=f"/images/img_{i}.jpg",
            features=features, labels=labels,
        ))
    dataset = TrainingDataset(
        samples=samples, feature_dimension=feature_dim, label_dimension=2, vocabulary=vocab,
    )
    dataset.shuffle(seed)
    return dataset


@pytest.fixture
def cat_dog_dataset():
    return make_cat_dog_dataset()


@pytest.fixture
def fast_config(tmp_path):
    return TrainingConfig(
        learning_rate=0.01,
        epochs=8,
        batch_size=16,
        validation_split=0.2,
        hidden_dimensions=(16,),
        dropout_rate=0.0,
        weight_decay=0.0,
        use_early_stopping=False,
        output_path=str(tmp_path / "models"),
    )
