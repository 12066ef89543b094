"""
export.py — Portable Model Export (ONNX / TorchScript)
========================================================
Key functions: export_onnx, export_torchscript
Key classes: ModelExportError

PURPOSE:
    Converts a trained classifier head (a model directory written by the
    Trainer) into an ONNX artifact that the tagging app can run without
    PyTorch, plus a JSON sidecar describing it:

        tag_classifier_<timestamp>.onnx
        tag_classifier_<timestamp>.json   ← input/output names & shapes,
                                            label list (index = output unit),
                                            training config, preprocessing

VALIDATION:
    - onnx.checker on the exported graph
    - onnxruntime vs. torch parity on random inputs (max abs error ≤ 1e-4)
    A failed check raises ModelExportError and leaves no artifact behind.
"""

import json
import logging
import os
from datetime import datetime

import numpy as np
import onnx
import onnxruntime as ort
import torch

from tag_trainer.classifier.model import load_classifier

logger = logging.getLogger("tag-trainer")

EXPORT_DEFAULTS = {
    "opset": 17,
    "save_torchscript": False,
    "accuracy_tolerance": 1e-4,
    "validation_samples": 8,
}

INPUT_NAME = "features"
OUTPUT_NAME = "probabilities"


class ModelExportError(RuntimeError):
    """Raised when there is nothing to export or the exported model is invalid."""


def _read_json(path: str) -> dict:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _check_parity(model: torch.nn.Module, onnx_path: str, feature_dim: int,
                  n_samples: int, tolerance: float) -> float:
    """Run the same random inputs through torch and onnxruntime; return max abs error."""
    rng = np.random.default_rng(0)
    x = rng.standard_normal((n_samples, feature_dim)).astype(np.float32)
    with torch.no_grad():
        expected = model(torch.from_numpy(x)).numpy()
    session = ort.InferenceSession(onnx_path, providers=["CPUExecutionProvider"])
    (actual,) = session.run([OUTPUT_NAME], {INPUT_NAME: x})
    max_err = float(np.max(np.abs(actual - expected)))
    if max_err > tolerance:
        raise ModelExportError(
            f"ONNX output deviates from torch by {max_err:.2e} (tolerance {tolerance:.0e})"
        )
    return max_err


def export_torchscript(model: torch.nn.Module, path: str, feature_dim: int) -> str:
    """Trace the head to TorchScript (for consumers that embed libtorch)."""
    traced = torch.jit.trace(model, torch.zeros(1, feature_dim))
    traced.save(path)
    logger.info(f"  TorchScript saved → {path}")
    return path


def export_onnx(
    model_dir: str,
    output_dir: str,
    opset: int = EXPORT_DEFAULTS["opset"],
    save_torchscript: bool = EXPORT_DEFAULTS["save_torchscript"],
    accuracy_tolerance: float = EXPORT_DEFAULTS["accuracy_tolerance"],
    validation_samples: int = EXPORT_DEFAULTS["validation_samples"],
    model_name: str | None = None,
) -> str:
    """
    Export a trained model directory to ONNX.

    Args:
        model_dir:  Directory written by Trainer (must contain model.pt).
        output_dir: Where the .onnx and .json sidecar are written.
        opset:      ONNX opset version.
        save_torchscript: Also write a traced .pt next to the ONNX file.
        model_name: File stem prefix (defaults to the config's model_name).

    Returns:
        str: Path of the .onnx file.

    Raises:
        ModelExportError: no trained model in model_dir, or validation failed.
    """
    if not model_dir or not os.path.isfile(os.path.join(model_dir, "model.pt")):
        raise ModelExportError(f"No trained model found in {model_dir!r}")

    model, ckpt = load_classifier(model_dir, device="cpu")
    arch = ckpt["architecture"]
    labels = ckpt.get("vocabulary", [])
    training_config = _read_json(os.path.join(model_dir, "training_config.json")) or ckpt.get("config", {})
    dataset_summary = _read_json(os.path.join(model_dir, "dataset_summary.json"))

    name = model_name or training_config.get("model_name") or "tag_classifier"
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    os.makedirs(output_dir, exist_ok=True)
    onnx_path = os.path.join(output_dir, f"{name}_{timestamp}.onnx")
    sidecar_path = os.path.splitext(onnx_path)[0] + ".json"

    logger.info(f"Exporting {model_dir} → {onnx_path} (opset {opset})")
    dummy = torch.zeros(1, arch["feature_dim"])
    try:
        torch.onnx.export(
            model,
            (dummy,),
            onnx_path,
            input_names=[INPUT_NAME],
            output_names=[OUTPUT_NAME],
            dynamic_axes={INPUT_NAME: {0: "batch"}, OUTPUT_NAME: {0: "batch"}},
            opset_version=opset,
            dynamo=False,
        )
        onnx.checker.check_model(onnx.load(onnx_path))
        max_err = _check_parity(
            model, onnx_path, arch["feature_dim"], validation_samples, accuracy_tolerance,
        )
    except ModelExportError:
        if os.path.exists(onnx_path):
            os.remove(onnx_path)
        raise
    except (RuntimeError, onnx.checker.ValidationError) as e:
        if os.path.exists(onnx_path):
            os.remove(onnx_path)
        raise ModelExportError(f"ONNX export failed: {e}") from e

    metadata = {
        "model_name": name,
        "exported_at": datetime.now().isoformat(timespec="seconds"),
        "source_model_dir": os.path.abspath(model_dir),
        "opset": opset,
        "inputs": [{"name": INPUT_NAME, "shape": ["batch", arch["feature_dim"]], "dtype": "float32"}],
        "outputs": [{"name": OUTPUT_NAME, "shape": ["batch", arch["label_dim"]], "dtype": "float32"}],
        "labels": labels,
        "architecture": arch,
        "training_config": training_config,
        "preprocessing": dataset_summary.get("preprocessing", {}),
        "validation": {"max_abs_error": max_err, "tolerance": accuracy_tolerance},
    }
    with open(sidecar_path, "w", encoding="utf-8") as f:
        json.dump(metadata, f, indent=2, ensure_ascii=False)

    if save_torchscript:
        export_torchscript(model, os.path.splitext(onnx_path)[0] + ".pt", arch["feature_dim"])

    logger.info(f"  ✅ ONNX export validated (max abs error {max_err:.2e}) → {onnx_path}")
    return onnx_path
