"""
Training configuration and paths.

All tuneable settings live in Django settings (``medscan/settings.py``);
this module resolves them into paths and turns a ``TrainingJob`` row
into the immutable ``JobConfig`` the worker runs with.

Directory conventions
---------------------
::

    <DATA_ROOT>/
    ├── datasets/
    │   └── <datasetId>/
    │       ├── train/<class>/*.png|jpg|jpeg
    │       └── validation/<class>/*.png|jpg|jpeg
    │
    └── models/
        └── <jobId>/
            ├── model.json              ← Topology + weights manifest
            ├── weights.bin             ← Weight shard(s) named by the manifest
            ├── config.json             ← Training config snapshot
            ├── training_log.json       ← Loss / accuracy per epoch
            ├── metrics.json            ← Final evaluation results
            └── confusion_matrix.png
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from django.conf import settings

from .exceptions import ValidationError

# ── Bounds ──────────────────────────────────────────────────────────────────

ARCHITECTURES = ("default", "mobilenet", "simple")
MODEL_TYPES = ("classification", "detection", "segmentation", "prediction")

EPOCHS_RANGE = (1, 100)
BATCH_SIZE_RANGE = (1, 256)
VALIDATION_SPLIT_RANGE = (0.1, 0.5)
CHANNELS = (1, 3)

TRAIN_SPLIT_NAME = "train"
VALIDATION_SPLIT_NAME = "validation"


def data_root() -> Path:
    return Path(settings.DATA_ROOT)


def datasets_root() -> Path:
    return Path(getattr(settings, "DATASETS_ROOT", data_root() / "datasets"))


def models_root() -> Path:
    return Path(getattr(settings, "MODELS_ROOT", data_root() / "models"))


@dataclass(frozen=True)
class InputShape:
    """Network input geometry; tensors are laid out ``[h, w, c]``."""

    width: int = 224
    height: int = 224
    channels: int = 3

    def __post_init__(self):
        if self.width < 1 or self.height < 1:
            raise ValidationError("inputShape width and height must be positive")
        if self.channels not in CHANNELS:
            raise ValidationError("inputShape channels must be 1 or 3")

    @property
    def hwc(self) -> tuple:
        return (self.height, self.width, self.channels)

    def to_dict(self) -> dict:
        return {"width": self.width, "height": self.height, "channels": self.channels}


@dataclass
class JobConfig:
    """Everything a worker needs to train one job.

    Attributes
    ----------
    job_id : int
        Primary key of the ``TrainingJob``; also seeds the shuffle.
    architecture : str
        One of ``default``, ``mobilenet``, ``simple``.
    input_shape : InputShape
        Target image geometry.
    epochs : int
        Number of epochs, within ``EPOCHS_RANGE``.
    batch_size : int
        Mini-batch size, within ``BATCH_SIZE_RANGE``.
    validation_split : float
        Fraction held out when the dataset has no validation split.
    """

    job_id: int
    architecture: str = "default"
    input_shape: InputShape = field(default_factory=InputShape)
    epochs: int = 10
    batch_size: int = 32
    validation_split: float = 0.2

    @classmethod
    def from_job(cls, job) -> "JobConfig":
        return cls(
            job_id=job.pk,
            architecture=job.model_architecture,
            input_shape=InputShape(
                width=job.input_width,
                height=job.input_height,
                channels=job.input_channels,
            ),
            epochs=job.epochs,
            batch_size=job.batch_size,
            validation_split=job.validation_split,
        )

    def to_dict(self) -> dict:
        """Serialise to a JSON-safe dict (for saving alongside artefacts)."""
        return {
            "job_id": self.job_id,
            "architecture": self.architecture,
            "input_shape": self.input_shape.to_dict(),
            "epochs": self.epochs,
            "batch_size": self.batch_size,
            "validation_split": self.validation_split,
        }


def preprocessing_steps(shape: InputShape) -> List[str]:
    """Ordered preprocessing tags recorded on a catalog entry."""
    steps = [f"resize({shape.width},{shape.height})"]
    if shape.channels == 1:
        steps.append("grayscale")
    steps.append("normalize(0,1)")
    return steps
