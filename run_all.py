"""
run_all.py — Master Pipeline Script
=====================================

PURPOSE:
    Single entry point that runs the tag-classifier pipeline end-to-end:

    1. Extract: enumerate tagged images, build vocabulary, embed with ResNet50
    2. Train:   train the multi-label head with validation + early stopping
    3. Export:  convert the trained head to ONNX (+ metadata sidecar)
    4. Evaluate: per-tag metrics of a saved model on the saved dataset
    5. Predict: suggest tags for image files with an exported model

USAGE:
    python run_all.py --config config.yaml
    python run_all.py --config config.yaml --stage train       # run a single stage
    python run_all.py --stage predict --onnx exports/x.onnx img1.jpg img2.jpg
"""

import argparse
import glob
import os
import sys

from tag_trainer.utils.helpers import load_config, set_seed, setup_logging


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Catalog Tag Classifier — Full Pipeline")
    parser.add_argument("--config", type=str, default="config.yaml", help="Path to config file")
    parser.add_argument("--stage", type=str, default="all",
                        choices=["all", "extract", "train", "export", "evaluate", "predict"],
                        help="Run a specific stage only")
    parser.add_argument("--folder", type=str, default=None, help="Override extraction.folder")
    parser.add_argument("--max-items", type=int, default=None, help="Override extraction.max_items")
    parser.add_argument("--model-dir", type=str, default=None,
                        help="Model directory for export/evaluate (default: newest under paths.models)")
    parser.add_argument("--onnx", type=str, default=None, help="Exported model for the predict stage")
    parser.add_argument("images", nargs="*", help="Image files for the predict stage")
    return parser.parse_args(argv)


def _latest_model_dir(models_root: str) -> str:
    candidates = [
        d for d in glob.glob(os.path.join(models_root, "*"))
        if os.path.isfile(os.path.join(d, "model.pt"))
    ]
    if not candidates:
        raise FileNotFoundError(f"No trained model found under {models_root}")
    return max(candidates, key=os.path.getmtime)


def main(argv=None):
    args = parse_args(argv)
    config = load_config(args.config) if os.path.exists(args.config) else {}
    project = config.get("project") or {}
    paths = config.get("paths") or {}
    extraction = dict(config.get("extraction") or {})
    export_cfg = config.get("export") or {}
    inference_cfg = config.get("inference") or {}

    logger = setup_logging(level=project.get("log_level"))
    seed = project.get("seed", 42)
    set_seed(seed)

    dataset_dir = paths.get("dataset", "data/dataset")
    models_root = paths.get("models", "models")
    exports_dir = paths.get("exports", os.path.join(models_root, "onnx_exports"))

    if args.folder:
        extraction["source"] = "local"
        extraction["folder"] = args.folder
    if args.max_items is not None:
        extraction["max_items"] = args.max_items
    config["extraction"] = extraction

    logger.info("=" * 60)
    logger.info("  Catalog Tag Classifier — training pipeline")
    logger.info("=" * 60)

    model_dir = args.model_dir

    # Stage 1: Extraction
    if args.stage in ("all", "extract"):
        logger.info("[1/4] Extracting training data...")
        from tag_trainer.data.dataset import build_dataset, save_dataset
        from tag_trainer.data.embeddings import build_feature_extractor
        from tag_trainer.data.sources import build_item_source

        source = build_item_source(extraction)
        extractor = build_feature_extractor(config)

        def report(done, total, message):
            if done == total or done % 25 == 0:
                logger.info(f"  [{done}/{total}] {message}")

        dataset = build_dataset(
            source, extractor,
            max_items=extraction.get("max_items"),
            include_subfolders=extraction.get("include_subfolders"),
            progress=report,
            seed=seed,
        )
        save_dataset(dataset, dataset_dir)

    # Stage 2: Training
    if args.stage in ("all", "train"):
        logger.info("[2/4] Training the tag classifier...")
        from tag_trainer.classifier.config import get_trainer_config
        from tag_trainer.classifier.trainer import Trainer
        from tag_trainer.data.dataset import load_dataset

        trainer = Trainer(get_trainer_config(config))
        results = trainer.train(load_dataset(dataset_dir))
        model_dir = results.model_dir

    # Stage 3: Export
    if args.stage in ("all", "export"):
        logger.info("[3/4] Exporting to ONNX...")
        from tag_trainer.classifier.export import EXPORT_DEFAULTS, export_onnx

        opts = {**EXPORT_DEFAULTS, **export_cfg}
        onnx_path = export_onnx(
            model_dir or _latest_model_dir(models_root), exports_dir,
            opset=opts["opset"], save_torchscript=opts["save_torchscript"],
        )
        args.onnx = args.onnx or onnx_path

    # Stage 4: Evaluation
    if args.stage in ("all", "evaluate"):
        logger.info("[4/4] Evaluating...")
        from tag_trainer.classifier.evaluate import evaluate_model

        evaluate_model(
            model_dir or _latest_model_dir(models_root), dataset_dir,
            threshold=inference_cfg.get("threshold", 0.5),
        )

    # Optional: Prediction
    if args.stage == "predict":
        if not args.onnx or not args.images:
            logger.error("--onnx and at least one image are required for the predict stage")
            return 2
        from tag_trainer.classifier.predict import TagPredictor
        from tag_trainer.data.embeddings import build_feature_extractor

        predictor = TagPredictor(
            args.onnx,
            extractor=build_feature_extractor(config),
            threshold=inference_cfg.get("threshold", 0.5),
            top_k=inference_cfg.get("top_k"),
        )
        for image in args.images:
            tags = predictor.predict_image(image)
            logger.info(f"{image}: " + ", ".join(f"{t.name} ({t.confidence:.2f})" for t in tags))

    logger.info("Pipeline complete.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
