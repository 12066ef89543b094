"""
helpers.py — Shared Utility Functions
=======================================

PURPOSE:
    Common utilities used across the entire project:
    - Config loading (YAML → dict)
    - Random seed setting (reproducibility)
    - Device selection (CPU / CUDA / MPS, always falling back to CPU)
    - Logging setup
"""

import logging
import os
import random

import numpy as np
import torch
import yaml

LOGGER_NAME = "tag-trainer"

logger = logging.getLogger(LOGGER_NAME)


def load_config(path="config.yaml"):
    """Load and return the YAML configuration as a dict (empty if the file is blank)."""
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def set_seed(seed=42):
    """Set random seeds for reproducibility across all libraries."""
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


def get_device(preference="cpu"):
    """
    Return the requested torch device, or CPU when it cannot be used.

    Args:
        preference (str): "cpu", "cuda" (alias "gpu") or "mps".

    Returns:
        torch.device
    """
    pref = (preference or "cpu").lower()
    try:
        if pref in ("cuda", "gpu"):
            if torch.cuda.is_available():
                device = torch.device("cuda")
                # Touch the device so a broken driver fails here, not mid-run
                torch.zeros(1, device=device)
                return device
            logger.warning("CUDA requested but not available — falling back to CPU.")
        elif pref == "mps":
            if getattr(torch.backends, "mps", None) and torch.backends.mps.is_available():
                return torch.device("mps")
            logger.warning("MPS requested but not available — falling back to CPU.")
    except RuntimeError as e:
        logger.warning(f"Error initialising device '{preference}', falling back to CPU: {e}")
    return torch.device("cpu")


def setup_logging(name=LOGGER_NAME, level=None):
    """Configure logging for the project."""
    level = level or os.environ.get("TAG_TRAINER_LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=f"[{name}] %(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger(name)
