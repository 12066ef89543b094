"""
trainer.py — Training Loop for the Tag Classifier
===================================================
Key classes: Trainer, TrainerState, TrainingProgress, TrainingResults

PURPOSE:
    Trains the multi-label classifier head on an assembled TrainingDataset:
    train/validation split, epoch loop, BCE loss, thresholded label
    accuracy, early stopping, cooperative cancellation, and persistence of
    the trained model plus its training metadata.

STATE MACHINE:
    IDLE → PREPARING → TRAINING(e) → VALIDATING(e) → TRAINING(e+1) …
                                                  ↘ EARLY_STOPPED
                                                  ↘ COMPLETED
                                                  ↘ CANCELLED
    Any exception → FAILED (re-raised, nothing written to disk).
    Every non-FAILED terminal state saves the model before returning.

OUTPUT (one directory per run, named by timestamp):
    <output_path>/<YYYYmmdd_HHMMSS>/
      - model.pt               — weights + architecture + label list
      - training_config.json   — the TrainingConfig used
      - dataset_summary.json   — sample count, dimensions, extraction time
      - vocabulary.json        — ordered term list (index = output unit)
      - training_history.json  — per-epoch history and final metrics

USAGE:
    trainer = Trainer(get_trainer_config(cfg), progress_callback=print)
    results = trainer.train(dataset)
    onnx_path = trainer.export_model()
"""

import json
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

import torch
import torch.nn as nn

from tag_trainer.classifier.config import ConfigurationError, TrainingConfig
from tag_trainer.classifier.export import ModelExportError, export_onnx
from tag_trainer.classifier.model import MODEL_FILE, TagClassifier, save_classifier
from tag_trainer.data.dataset import (
    SUMMARY_FILE,
    VOCABULARY_FILE,
    TrainingDataset,
    build_dataloaders,
    split_samples,
)
from tag_trainer.utils.helpers import get_device, set_seed
from tag_trainer.utils.metrics import label_accuracy_counts

logger = logging.getLogger("tag-trainer")

CONFIG_FILE = "training_config.json"
HISTORY_FILE = "training_history.json"


class TrainerState(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    TRAINING = "training"
    VALIDATING = "validating"
    EARLY_STOPPED = "early_stopped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class TrainingProgress:
    """Snapshot emitted once per completed epoch."""

    epoch: int
    total_epochs: int
    training_loss: float
    validation_loss: float
    training_accuracy: float
    validation_accuracy: float
    learning_rate: float
    status: str
    elapsed_s: float = 0.0

    @property
    def progress(self) -> float:
        return self.epoch / self.total_epochs if self.total_epochs > 0 else 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TrainingResults:
    model_path: str
    model_dir: str
    state: TrainerState
    history: list[TrainingProgress] = field(default_factory=list)
    best_validation_loss: float | None = None
    training_samples: int = 0
    validation_samples: int = 0

    @property
    def epochs_completed(self) -> int:
        return len(self.history)

    def _final(self, attr: str) -> float | None:
        return getattr(self.history[-1], attr) if self.history else None

    @property
    def final_training_loss(self):
        return self._final("training_loss")

    @property
    def final_validation_loss(self):
        return self._final("validation_loss")

    @property
    def final_training_accuracy(self):
        return self._final("training_accuracy")

    @property
    def final_validation_accuracy(self):
        return self._final("validation_accuracy")

    def summary(self) -> str:
        if not self.history:
            return f"Training {self.state.value} before any epoch completed; model saved to {self.model_path}"
        return (
            f"Training {self.state.value} after {self.epochs_completed} epoch(s): "
            f"train loss={self.final_training_loss:.4f}, val loss={self.final_validation_loss:.4f}, "
            f"train acc={self.final_training_accuracy:.4f}, val acc={self.final_validation_accuracy:.4f}; "
            f"model saved to {self.model_path}"
        )

    def to_dict(self) -> dict:
        return {
            "model_path": self.model_path,
            "state": self.state.value,
            "epochs_completed": self.epochs_completed,
            "best_validation_loss": self.best_validation_loss,
            "training_samples": self.training_samples,
            "validation_samples": self.validation_samples,
            "final_training_loss": self.final_training_loss,
            "final_validation_loss": self.final_validation_loss,
            "final_training_accuracy": self.final_training_accuracy,
            "final_validation_accuracy": self.final_validation_accuracy,
            "history": [p.to_dict() for p in self.history],
        }


class _Cancelled(Exception):
    """Internal: unwinds the epoch loop after the in-flight batch has finished."""


class Trainer:
    """
    One Trainer per training run; model, optimizer and loss live only for
    the duration of train().  The compute device is fixed at construction
    (falling back to CPU when the requested device is unusable).
    """

    def __init__(
        self,
        config: TrainingConfig,
        progress_callback: Callable[[TrainingProgress], None] | None = None,
    ):
        self.config = config
        self.progress_callback = progress_callback
        self.device = get_device(config.device)
        self.state = TrainerState.IDLE
        self.model: TagClassifier | None = None
        self.model_dir: str | None = None
        self.results: TrainingResults | None = None
        logger.info(f"Trainer initialised on device {self.device}")

    # ──────────────────────────────────────────────────────────
    # Preparation
    # ──────────────────────────────────────────────────────────

    def _check_dataset(self, dataset: TrainingDataset) -> None:
        if dataset is None or len(dataset) == 0:
            raise ConfigurationError("Training dataset is empty")
        if dataset.label_dimension == 0:
            raise ConfigurationError("No valid labels found: the vocabulary is empty")
        if dataset.feature_dimension < 1:
            raise ConfigurationError("Feature dimension must be positive")
        try:
            dataset.validate()
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        train, val = split_samples(dataset.samples, self.config.validation_split)
        if not train or not val:
            raise ConfigurationError(
                f"{len(dataset)} samples cannot be split with validation_split="
                f"{self.config.validation_split} (train={len(train)}, val={len(val)})"
            )

    def _build_model(self, dataset: TrainingDataset) -> TagClassifier:
        model = TagClassifier(
            feature_dim=dataset.feature_dimension,
            label_dim=dataset.label_dimension,
            hidden_dimensions=self.config.hidden_dimensions,
            dropout_rate=self.config.dropout_rate,
        )
        try:
            return model.to(self.device)
        except RuntimeError as e:
            logger.warning(f"Could not move model to {self.device}, falling back to CPU: {e}")
            self.device = torch.device("cpu")
            return model.to(self.device)

    def _build_optimizer(self, model: nn.Module) -> torch.optim.Optimizer:
        cfg = self.config
        if cfg.optimizer == "sgd":
            return torch.optim.SGD(
                model.parameters(), lr=cfg.learning_rate,
                momentum=cfg.momentum, weight_decay=cfg.weight_decay,
            )
        if cfg.optimizer == "adamw":
            return torch.optim.AdamW(
                model.parameters(), lr=cfg.learning_rate, weight_decay=cfg.weight_decay,
            )
        return torch.optim.Adam(
            model.parameters(), lr=cfg.learning_rate, weight_decay=cfg.weight_decay,
        )

    def _build_scheduler(self, optimizer):
        if self.config.lr_scheduler == "plateau":
            return torch.optim.lr_scheduler.ReduceLROnPlateau(
                optimizer, mode="min", factor=0.5, patience=3,
            )
        return None

    # ──────────────────────────────────────────────────────────
    # Epoch loops
    # ──────────────────────────────────────────────────────────

    def _check_cancel(self, should_cancel) -> None:
        if should_cancel is not None and should_cancel():
            raise _Cancelled()

    def _train_epoch(self, model, loader, optimizer, criterion, should_cancel) -> tuple[float, float]:
        """One pass over the training subset → (mean batch loss, label accuracy)."""
        model.train()
        running_loss = 0.0
        n_batches = 0
        correct = 0
        total = 0

        for batch in loader:
            self._check_cancel(should_cancel)
            features = batch["features"].to(self.device)
            labels = batch["labels"].to(self.device)

            optimizer.zero_grad()
            probs = model(features)
            loss = criterion(probs, labels)
            loss.backward()
            if self.config.grad_clip_norm:
                torch.nn.utils.clip_grad_norm_(model.parameters(), max_norm=self.config.grad_clip_norm)
            optimizer.step()

            running_loss += loss.item()
            n_batches += 1
            c, t = label_accuracy_counts(probs.detach(), labels)
            correct += c
            total += t

        return running_loss / max(n_batches, 1), correct / max(total, 1)

    @torch.no_grad()
    def _validate_epoch(self, model, loader, criterion, should_cancel) -> tuple[float, float]:
        """One pass over the validation subset → (mean batch loss, label accuracy)."""
        model.eval()
        total_loss = 0.0
        n_batches = 0
        correct = 0
        total = 0

        for batch in loader:
            self._check_cancel(should_cancel)
            features = batch["features"].to(self.device)
            labels = batch["labels"].to(self.device)

            probs = model(features)
            total_loss += criterion(probs, labels).item()
            n_batches += 1
            c, t = label_accuracy_counts(probs, labels)
            correct += c
            total += t

        return total_loss / max(n_batches, 1), correct / max(total, 1)

    # ──────────────────────────────────────────────────────────
    # Training
    # ──────────────────────────────────────────────────────────

    def train(
        self,
        dataset: TrainingDataset,
        should_cancel: Callable[[], bool] | None = None,
    ) -> TrainingResults:
        """
        Full training run.

        Args:
            dataset:       Assembled (and already shuffled) dataset.
            should_cancel: Polled between epochs and between batches.

        Returns:
            TrainingResults (state is COMPLETED, EARLY_STOPPED or CANCELLED).

        Raises:
            ConfigurationError: empty dataset / no labels / unusable split.
            Exception:          anything else aborts the run (state FAILED).
        """
        try:
            return self._run(dataset, should_cancel)
        except Exception:
            self.state = TrainerState.FAILED
            raise

    def _run(self, dataset, should_cancel) -> TrainingResults:
        cfg = self.config
        self._check_dataset(dataset)

        # ── Preparing ────────────────────────────────────────
        self.state = TrainerState.PREPARING
        set_seed(cfg.seed)
        train_loader, val_loader = build_dataloaders(dataset, cfg.validation_split, cfg.batch_size)
        model = self._build_model(dataset)
        optimizer = self._build_optimizer(model)
        scheduler = self._build_scheduler(optimizer)
        criterion = nn.BCELoss()

        total_params = sum(p.numel() for p in model.parameters())
        logger.info(
            f"TagClassifier: {dataset.feature_dimension} → {list(cfg.hidden_dimensions)} → "
            f"{dataset.label_dimension} ({total_params:,} parameters), optimizer={cfg.optimizer}"
        )

        history: list[TrainingProgress] = []
        best_val_loss = float("inf")
        epochs_without_improvement = 0
        terminal = TrainerState.COMPLETED

        logger.info(f"{'Epoch':>5} | {'Train Loss':>10} | {'Val Loss':>8} | "
                    f"{'Train Acc':>9} | {'Val Acc':>8} | {'LR':>10} | {'Time':>6}")
        logger.info("─" * 74)

        for epoch in range(cfg.epochs):
            t0 = time.time()
            try:
                self._check_cancel(should_cancel)

                self.state = TrainerState.TRAINING
                train_loss, train_acc = self._train_epoch(
                    model, train_loader, optimizer, criterion, should_cancel,
                )

                self.state = TrainerState.VALIDATING
                val_loss, val_acc = self._validate_epoch(
                    model, val_loader, criterion, should_cancel,
                )
            except _Cancelled:
                logger.info(f"  ⏹ Cancelled during epoch {epoch + 1}; keeping {len(history)} completed epoch(s)")
                terminal = TrainerState.CANCELLED
                break

            if scheduler is not None:
                scheduler.step(val_loss)
            current_lr = optimizer.param_groups[0]["lr"]
            elapsed = time.time() - t0

            # ── Early stopping bookkeeping ───────────────────
            if val_loss < best_val_loss - cfg.early_stopping_min_delta:
                best_val_loss = val_loss
                epochs_without_improvement = 0
            else:
                epochs_without_improvement += 1

            stop_early = (
                cfg.use_early_stopping
                and epochs_without_improvement >= cfg.early_stopping_patience
            )
            if stop_early:
                status = "Early stopped"
            elif epoch == cfg.epochs - 1:
                status = "Completed"
            else:
                status = "Training"

            logger.info(
                f"{epoch + 1:>5} | {train_loss:>10.4f} | {val_loss:>8.4f} | "
                f"{train_acc:>9.4f} | {val_acc:>8.4f} | {current_lr:>10.6f} | {elapsed:>5.1f}s"
            )

            progress = TrainingProgress(
                epoch=epoch + 1,
                total_epochs=cfg.epochs,
                training_loss=train_loss,
                validation_loss=val_loss,
                training_accuracy=train_acc,
                validation_accuracy=val_acc,
                learning_rate=current_lr,
                status=status,
                elapsed_s=round(elapsed, 3),
            )
            history.append(progress)
            if self.progress_callback is not None:
                self.progress_callback(progress)

            if stop_early:
                logger.info(
                    f"  ⏹ Early stopping at epoch {epoch + 1} "
                    f"(no improvement > {cfg.early_stopping_min_delta} for "
                    f"{cfg.early_stopping_patience} epochs)"
                )
                terminal = TrainerState.EARLY_STOPPED
                break

        logger.info("─" * 74)

        # ── Persist (every non-failed outcome) ───────────────
        self.model = model
        model_dir = self._save_run(model, dataset, history)
        results = TrainingResults(
            model_path=os.path.join(model_dir, MODEL_FILE),
            model_dir=model_dir,
            state=terminal,
            history=history,
            best_validation_loss=best_val_loss if history else None,
            training_samples=len(train_loader.dataset),
            validation_samples=len(val_loader.dataset),
        )
        with open(os.path.join(model_dir, HISTORY_FILE), "w") as f:
            json.dump(results.to_dict(), f, indent=2)

        self.model_dir = model_dir
        self.results = results
        self.state = terminal
        logger.info(results.summary())
        return results

    # ──────────────────────────────────────────────────────────
    # Persistence & export
    # ──────────────────────────────────────────────────────────

    def _new_model_dir(self) -> str:
        base = os.path.join(self.config.output_path, datetime.now().strftime("%Y%m%d_%H%M%S"))
        path = base
        suffix = 1
        while os.path.exists(path):
            path = f"{base}_{suffix}"
            suffix += 1
        os.makedirs(path)
        return path

    def _save_run(self, model, dataset: TrainingDataset, history) -> str:
        model_dir = self._new_model_dir()
        save_classifier(
            os.path.join(model_dir, MODEL_FILE), model,
            dataset.vocabulary.terms, self.config.to_dict(),
        )
        with open(os.path.join(model_dir, CONFIG_FILE), "w") as f:
            json.dump(self.config.to_dict(), f, indent=2)
        with open(os.path.join(model_dir, SUMMARY_FILE), "w") as f:
            json.dump(dataset.summary_dict(), f, indent=2)
        dataset.vocabulary.save(os.path.join(model_dir, VOCABULARY_FILE))
        logger.info(f"  💾 Model saved → {model_dir}")
        return model_dir

    def export_model(self, output_dir: str | None = None, **kwargs) -> str:
        """
        Export the last trained model to ONNX (+ metadata sidecar).

        Raises:
            ModelExportError: if train() has not completed successfully.
        """
        if self.model is None or self.model_dir is None:
            raise ModelExportError("No trained model: call train() before export_model()")
        output_dir = output_dir or os.path.join(self.config.output_path, "onnx_exports")
        return export_onnx(self.model_dir, output_dir, **kwargs)
