"""
predict.py — Tag Suggestions from an Exported Model
=====================================================
Key classes: TagPredictor, TagPrediction

PURPOSE:
    Loads an exported ONNX classifier and its JSON sidecar with
    onnxruntime and turns embeddings (or image files, via a
    FeatureExtractor) into ranked tag suggestions.

USAGE:
    predictor = TagPredictor("exports/tag_classifier_20250101_120000.onnx",
                             extractor=build_feature_extractor(cfg))
    for p in predictor.predict_image("photo.jpg"):
        print(p.name, p.confidence)
"""

import json
import logging
import os
from dataclasses import dataclass

import numpy as np
import onnxruntime as ort

logger = logging.getLogger("tag-trainer")


@dataclass(order=True)
class TagPrediction:
    confidence: float
    name: str


class TagPredictor:
    """Runs the exported head; one InferenceSession per predictor."""

    def __init__(self, onnx_path: str, extractor=None, threshold: float = 0.5, top_k: int | None = None):
        if not os.path.isfile(onnx_path):
            raise FileNotFoundError(f"Model file not found: {onnx_path}")
        sidecar = os.path.splitext(onnx_path)[0] + ".json"
        if not os.path.isfile(sidecar):
            raise FileNotFoundError(f"Model metadata not found: {sidecar}")
        with open(sidecar, "r", encoding="utf-8") as f:
            self.metadata = json.load(f)

        self.labels: list[str] = list(self.metadata["labels"])
        self.input_name = self.metadata["inputs"][0]["name"]
        self.output_name = self.metadata["outputs"][0]["name"]
        self.feature_dim = int(self.metadata["inputs"][0]["shape"][1])
        self.threshold = threshold
        self.top_k = top_k
        self.extractor = extractor
        self.session = ort.InferenceSession(onnx_path, providers=["CPUExecutionProvider"])
        logger.info(f"TagPredictor loaded {onnx_path}: {len(self.labels)} tags")

    def predict_proba(self, features) -> np.ndarray:
        """(F,) or (B, F) embeddings → (B, L) probabilities."""
        x = np.asarray(features, dtype=np.float32)
        if x.ndim == 1:
            x = x[None, :]
        if x.shape[1] != self.feature_dim:
            raise ValueError(f"Expected {self.feature_dim} features, got {x.shape[1]}")
        (probs,) = self.session.run([self.output_name], {self.input_name: x})
        return probs

    def _rank(self, probs: np.ndarray) -> list[TagPrediction]:
        preds = [
            TagPrediction(confidence=float(p), name=self.labels[i])
            for i, p in enumerate(probs)
            if p >= self.threshold
        ]
        preds.sort(reverse=True)
        return preds[: self.top_k] if self.top_k else preds

    def predict_features(self, features) -> list[TagPrediction]:
        """Tag suggestions for a single embedding, most confident first."""
        return self._rank(self.predict_proba(features)[0])

    def predict_image(self, path: str) -> list[TagPrediction]:
        """Tag suggestions for an image file (empty if it cannot be read)."""
        if self.extractor is None:
            raise RuntimeError("TagPredictor was created without a feature extractor")
        features = self.extractor.extract(path)
        if features is None:
            return []
        return self.predict_features(features)
