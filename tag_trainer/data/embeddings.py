"""
embeddings.py — ResNet50 Visual Feature Extraction
====================================================
Key classes: FeatureExtractor
Key functions: build_backbone, build_feature_extractor

PURPOSE:
    Turns one image file into a fixed-length embedding using a frozen,
    pre-trained ResNet50 with its final classification layer removed.  The
    classifier head is trained on these vectors, never on raw pixels.

PIPELINE (per image):
    decode (Pillow, → RGB)
      → crop-to-fit resize to image_size × image_size
      → ToTensor + per-channel ImageNet mean/std normalisation
      → backbone forward pass under torch.no_grad()
      → flatten the (1, 2048, 1, 1) pooled map → (2048,) float32

FAILURE POLICY:
    Missing files, decode errors (truncated files included: Pillow's strict
    decoding is kept) and backbone errors return None with a warning; the
    caller drops the item.  The backbone's weights are never updated.
"""

import logging
import os

import numpy as np
import torch
import torch.nn as nn
from PIL import Image, ImageOps, UnidentifiedImageError
from torchvision import models, transforms

from tag_trainer.utils.helpers import get_device

logger = logging.getLogger("tag-trainer")

IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)

EXTRACTION_DEFAULTS = {
    "backbone": "resnet50",
    "pretrained": True,
    "image_size": 224,
    "device": "cpu",
}

# name → (constructor, default weights enum, feature dimension)
_BACKBONES = {
    "resnet18": (models.resnet18, models.ResNet18_Weights.IMAGENET1K_V1, 512),
    "resnet50": (models.resnet50, models.ResNet50_Weights.IMAGENET1K_V2, 2048),
}


def build_backbone(name: str = "resnet50", pretrained: bool = True) -> tuple[nn.Module, int]:
    """
    Build a headless ResNet.

    Returns:
        (backbone, feature_dim) — backbone outputs (B, feature_dim, 1, 1).
    """
    if name not in _BACKBONES:
        raise ValueError(f"Unsupported backbone {name!r}; choose from {sorted(_BACKBONES)}")
    ctor, weights, feature_dim = _BACKBONES[name]
    resnet = ctor(weights=weights if pretrained else None)
    # Everything up to and including the global average pool; drop `fc`
    backbone = nn.Sequential(*list(resnet.children())[:-1])
    return backbone, feature_dim


class FeatureExtractor:
    """
    Frozen CNN feature extractor.

    A custom `backbone` can be injected (any module mapping (B, 3, H, W) to
    (B, feature_dim, ...)); otherwise the named torchvision ResNet is built.
    """

    def __init__(
        self,
        backbone: nn.Module | None = None,
        feature_dim: int | None = None,
        backbone_name: str = "resnet50",
        pretrained: bool = True,
        image_size: int = 224,
        device: str | torch.device = "cpu",
        mean: tuple = IMAGENET_MEAN,
        std: tuple = IMAGENET_STD,
    ):
        if backbone is None:
            backbone, feature_dim = build_backbone(backbone_name, pretrained)
            self.backbone_name = backbone_name
        elif feature_dim is None:
            raise ValueError("feature_dim is required when injecting a backbone")
        else:
            self.backbone_name = "custom"

        self.feature_dim = int(feature_dim)
        self.image_size = int(image_size)
        self.mean = tuple(mean)
        self.std = tuple(std)
        self.device = device if isinstance(device, torch.device) else get_device(device)

        self.model = backbone.to(self.device)
        self.model.eval()
        for p in self.model.parameters():
            p.requires_grad_(False)

        self.transform = transforms.Compose([
            transforms.ToTensor(),
            transforms.Normalize(mean=self.mean, std=self.std),
        ])
        logger.info(
            f"FeatureExtractor ready: backbone={self.backbone_name}, "
            f"dim={self.feature_dim}, image_size={self.image_size}, device={self.device}"
        )

    # ── preprocessing ────────────────────────────────────────

    def load_image(self, path: str) -> torch.Tensor:
        """Decode + crop-to-fit + normalise → (1, 3, S, S) tensor."""
        with Image.open(path) as img:
            img = ImageOps.exif_transpose(img)
            rgb = img.convert("RGB")
        fitted = ImageOps.fit(rgb, (self.image_size, self.image_size), method=Image.Resampling.BILINEAR)
        return self.transform(fitted).unsqueeze(0)

    # ── extraction ───────────────────────────────────────────

    @torch.no_grad()
    def embed_tensor(self, batch: torch.Tensor) -> torch.Tensor:
        """(B, 3, S, S) → (B, feature_dim) on CPU."""
        out = self.model(batch.to(self.device))
        out = torch.flatten(out, start_dim=1).cpu()
        if out.shape[1] != self.feature_dim:
            raise RuntimeError(
                f"Backbone produced {out.shape[1]} features, expected {self.feature_dim}"
            )
        return out

    def extract(self, path: str) -> np.ndarray | None:
        """
        Extract the embedding for one image.

        Returns:
            (feature_dim,) float32 array, or None if the image cannot be used.
        """
        if not path or not os.path.isfile(path):
            logger.warning(f"Image file not found: {path}")
            return None
        try:
            tensor = self.load_image(path)
        except (UnidentifiedImageError, OSError, ValueError) as e:
            logger.warning(f"Could not decode image {path}: {e}")
            return None
        try:
            features = self.embed_tensor(tensor)
        except RuntimeError as e:
            logger.warning(f"Backbone failed on {path}: {e}")
            return None
        return features[0].numpy().astype(np.float32)

    def describe(self) -> dict:
        """Preprocessing description stored next to exported models."""
        return {
            "backbone": self.backbone_name,
            "feature_dim": self.feature_dim,
            "image_size": self.image_size,
            "resize": "crop-to-fit",
            "mean": list(self.mean),
            "std": list(self.std),
        }


def build_feature_extractor(config: dict) -> FeatureExtractor:
    """Create the extractor described by config.yaml → extraction."""
    cfg = {**EXTRACTION_DEFAULTS, **(config.get("extraction") or {})}
    return FeatureExtractor(
        backbone_name=cfg["backbone"],
        pretrained=cfg["pretrained"],
        image_size=cfg["image_size"],
        device=cfg["device"],
    )
