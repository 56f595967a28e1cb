"""
Shared pytest fixtures.

Every test gets its own ``DATA_ROOT`` under ``tmp_path``; datasets are
small trees of generated PNG/JPEG images written with Pillow.
"""

import threading
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from training.config import InputShape

# Class-distinct base colours so tiny networks can separate them
PALETTE = [(30, 30, 30), (220, 220, 220), (200, 40, 40), (40, 200, 40), (40, 40, 200)]


def write_image(path: Path, color=(128, 128, 128), size=(32, 32), fmt="PNG", seed=0) -> Path:
    rng = np.random.default_rng(seed)
    base = np.array(color, dtype=np.int16)
    noise = rng.integers(-15, 16, size=(size[1], size[0], 3))
    pixels = np.clip(base + noise, 0, 255).astype(np.uint8)
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(pixels, "RGB").save(path, format=fmt)
    return path


def image_bytes(color=(128, 128, 128), size=(32, 32), fmt="PNG") -> bytes:
    import io

    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture(autouse=True)
def data_root(tmp_path, settings):
    root = tmp_path / "data"
    (root / "datasets").mkdir(parents=True)
    (root / "models").mkdir(parents=True)
    settings.DATA_ROOT = root
    settings.DATASETS_ROOT = root / "datasets"
    settings.MODELS_ROOT = root / "models"
    settings.TRAINING_STATUS_WRITE_BACKOFF = 0
    settings.TRAINING_DISPATCH_INTERVAL = 0.1
    settings.INFERENCE_MOCK_MODE = False
    return root


@pytest.fixture(autouse=True)
def reset_singletons():
    yield
    from diagnostics.model_loader import reset_runtime
    from training.tasks import reset_orchestrator

    reset_orchestrator()
    reset_runtime()


@pytest.fixture
def small_shape():
    return InputShape(width=16, height=16, channels=3)


@pytest.fixture
def image_tree(data_root):
    """Write ``root/<split>/<class>/img_<i>.png`` and return the root."""

    def _make(name, classes, train_per_class=4, val_per_class=0, size=(32, 32), fmt="PNG"):
        root = data_root / "datasets" / name
        ext = "jpg" if fmt == "JPEG" else "png"
        for label, class_name in enumerate(classes):
            color = PALETTE[label % len(PALETTE)]
            for split, count in (("train", train_per_class), ("validation", val_per_class)):
                (root / split / class_name).mkdir(parents=True, exist_ok=True)
                for i in range(count):
                    write_image(
                        root / split / class_name / f"img_{i}.{ext}",
                        color=color, size=size, fmt=fmt, seed=label * 1000 + i,
                    )
        return root

    return _make


@pytest.fixture
def make_dataset(image_tree):
    """Create a ``Dataset`` row backed by a generated image tree."""
    from diagnostics.models import Dataset

    def _make(name="chest", classes=("normal", "pneumonia"), train_per_class=4,
              val_per_class=0, size=(32, 32), status="ready", fmt="PNG"):
        root = image_tree(name, classes, train_per_class, val_per_class, size, fmt)
        dataset = Dataset.objects.create(
            name=name,
            imaging_type="xray",
            classes=[{"name": c, "count": 0} for c in classes],
            path=str(root),
            status=status,
            created_by="tester",
        )
        dataset.refresh_counts()
        return dataset

    return _make


@pytest.fixture
def job_payload():
    def _payload(dataset, **overrides):
        payload = {
            "name": "test job",
            "datasetId": dataset.pk,
            "modelType": "classification",
            "modelName": "chest-classifier",
            "modelVersion": "1.0",
            "modelArchitecture": "simple",
            "inputShape": {"width": 16, "height": 16, "channels": 3},
            "applicableBodyParts": ["chest"],
            "epochs": 1,
            "batchSize": 4,
            "validationSplit": 0.2,
        }
        payload.update(overrides)
        return payload

    return _payload


class EventLog:
    """Thread-safe recorder for job status and progress signals."""

    def __init__(self):
        self._lock = threading.Lock()
        self.statuses = []
        self.progress = []

    def on_status(self, sender, job_id, status, **kwargs):
        with self._lock:
            self.statuses.append((job_id, status))

    def on_progress(self, sender, job_id, progress, **kwargs):
        with self._lock:
            self.progress.append((job_id, dict(progress)))

    def statuses_for(self, job_id):
        with self._lock:
            return [s for j, s in self.statuses if j == job_id]

    def progress_for(self, job_id):
        with self._lock:
            return [p for j, p in self.progress if j == job_id]


@pytest.fixture
def job_events():
    from training.progress import job_progress, job_status_changed

    log = EventLog()
    job_status_changed.connect(log.on_status, weak=False)
    job_progress.connect(log.on_progress, weak=False)
    yield log
    job_status_changed.disconnect(log.on_status)
    job_progress.disconnect(log.on_progress)
