"""
config.py — Classifier Training Hyperparameters
=================================================
Key classes: TrainingConfig, ConfigurationError
Key functions: get_trainer_config

PURPOSE:
    Provides defaults and validation for the classifier-head training run.
    Values in config.yaml (→ training) take precedence; this module fills
    gaps.  The resulting TrainingConfig is frozen for the whole run.
"""

from dataclasses import asdict, dataclass, field

TRAINER_DEFAULTS = {
    "learning_rate": 0.001,
    "epochs": 100,
    "batch_size": 32,
    "validation_split": 0.2,
    "hidden_dimensions": [256, 128, 64],
    "dropout_rate": 0.2,
    "weight_decay": 0.0001,
    "optimizer": "adam",
    "momentum": 0.9,
    "loss": "bce",
    "use_early_stopping": True,
    "early_stopping_patience": 10,
    "early_stopping_min_delta": 0.001,
    "lr_scheduler": "none",
    "grad_clip_norm": None,
    "device": "cpu",
    "seed": 42,
    "output_path": "models",
    "model_name": "tag_classifier",
}

OPTIMIZERS = ("adam", "sgd", "adamw")
LOSSES = ("bce",)
SCHEDULERS = ("none", "plateau")
DEVICES = ("cpu", "gpu", "cuda", "mps")


class ConfigurationError(ValueError):
    """Invalid hyperparameters or unusable training data; raised before any training."""


@dataclass(frozen=True)
class TrainingConfig:
    learning_rate: float = 0.001
    epochs: int = 100
    batch_size: int = 32
    validation_split: float = 0.2
    hidden_dimensions: tuple = (256, 128, 64)
    dropout_rate: float = 0.2
    weight_decay: float = 0.0001
    optimizer: str = "adam"
    momentum: float = 0.9
    loss: str = "bce"
    use_early_stopping: bool = True
    early_stopping_patience: int = 10
    early_stopping_min_delta: float = 0.001
    lr_scheduler: str = "none"
    grad_clip_norm: float | None = None
    device: str = "cpu"
    seed: int = 42
    output_path: str = "models"
    model_name: str = "tag_classifier"
    extra: dict = field(default_factory=dict, compare=False)

    def __post_init__(self):
        # Normalise case-insensitive choices and list-typed widths
        object.__setattr__(self, "optimizer", str(self.optimizer).lower())
        object.__setattr__(self, "loss", str(self.loss).lower())
        object.__setattr__(self, "lr_scheduler", str(self.lr_scheduler or "none").lower())
        object.__setattr__(self, "device", str(self.device).lower())
        object.__setattr__(self, "hidden_dimensions", tuple(int(h) for h in self.hidden_dimensions))
        self.validate()

    def validate(self) -> None:
        if self.epochs < 1:
            raise ConfigurationError(f"epochs must be >= 1, got {self.epochs}")
        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.learning_rate <= 0:
            raise ConfigurationError(f"learning_rate must be > 0, got {self.learning_rate}")
        if not 0.0 < self.validation_split < 1.0:
            raise ConfigurationError(
                f"validation_split must be in (0, 1), got {self.validation_split}"
            )
        if not 0.0 <= self.dropout_rate < 1.0:
            raise ConfigurationError(f"dropout_rate must be in [0, 1), got {self.dropout_rate}")
        if self.weight_decay < 0:
            raise ConfigurationError(f"weight_decay must be >= 0, got {self.weight_decay}")
        if any(h < 1 for h in self.hidden_dimensions):
            raise ConfigurationError(f"hidden_dimensions must be positive, got {self.hidden_dimensions}")
        if self.optimizer not in OPTIMIZERS:
            raise ConfigurationError(f"optimizer must be one of {OPTIMIZERS}, got {self.optimizer!r}")
        if self.loss not in LOSSES:
            raise ConfigurationError(f"loss must be one of {LOSSES}, got {self.loss!r}")
        if self.lr_scheduler not in SCHEDULERS:
            raise ConfigurationError(
                f"lr_scheduler must be one of {SCHEDULERS}, got {self.lr_scheduler!r}"
            )
        if self.early_stopping_patience < 1:
            raise ConfigurationError(
                f"early_stopping_patience must be >= 1, got {self.early_stopping_patience}"
            )
        if self.early_stopping_min_delta < 0:
            raise ConfigurationError(
                f"early_stopping_min_delta must be >= 0, got {self.early_stopping_min_delta}"
            )
        if self.grad_clip_norm is not None and self.grad_clip_norm <= 0:
            raise ConfigurationError(f"grad_clip_norm must be > 0, got {self.grad_clip_norm}")
        if self.device not in DEVICES:
            raise ConfigurationError(f"device must be one of {DEVICES}, got {self.device!r}")

    def to_dict(self) -> dict:
        d = asdict(self)
        d["hidden_dimensions"] = list(self.hidden_dimensions)
        d.pop("extra")
        return d

    @classmethod
    def from_dict(cls, values: dict) -> "TrainingConfig":
        known = {k: v for k, v in values.items() if k in cls.__dataclass_fields__ and k != "extra"}
        unknown = {k: v for k, v in values.items() if k not in cls.__dataclass_fields__}
        return cls(**known, extra=unknown)


def get_trainer_config(global_config: dict) -> TrainingConfig:
    """
    Merge global config's training section with defaults.

    Values in config.yaml override TRAINER_DEFAULTS; `project.seed` and
    `paths.models` are used when the training section does not set them.

    Args:
        global_config: Full parsed config.yaml dict.

    Returns:
        TrainingConfig with all hyperparameters resolved and validated.

    Raises:
        ConfigurationError: on any invalid value.
    """
    merged = {**TRAINER_DEFAULTS}
    project = global_config.get("project") or {}
    paths = global_config.get("paths") or {}
    if "seed" in project:
        merged["seed"] = project["seed"]
    if "models" in paths:
        merged["output_path"] = paths["models"]
    if global_config.get("training"):
        merged.update(global_config["training"])
    try:
        return TrainingConfig.from_dict(merged)
    except (TypeError, ValueError) as e:
        if isinstance(e, ConfigurationError):
            raise
        raise ConfigurationError(f"Invalid training configuration: {e}") from e
