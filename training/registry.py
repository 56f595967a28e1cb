"""
Model registry — artifact files on disk plus catalog rows in the DB.

Artifact layout (one directory per job)::

    <DATA_ROOT>/models/<jobId>/
    ├── model.json                      ← topology + weights manifest + metadata
    └── weights.bin                     ← or weights-shard{i}of{n}.bin

``model.json``::

    {
      "format": "layers-model",
      "generatedBy": "tensorflow <version>",
      "modelTopology": {... Keras model config ...},
      "weightsManifest": [
        {"paths": ["weights.bin"],
         "weights": [{"name": ..., "shape": [...], "dtype": "float32"}, ...]}
      ],
      "metadata": {"classNames": [...], "inputShape": {...}, ...}
    }

Weights are concatenated in ``model.get_weights()`` order as float32
little-endian and cut into shards of at most ``MODEL_WEIGHT_SHARD_BYTES``.
Only the job's own worker writes its directory.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import tensorflow as tf
from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from diagnostics.models import MLModel, TrainingJob
from .architectures import compile_model
from .config import InputShape, models_root, preprocessing_steps
from .exceptions import ArtifactLoadError, ModelAlreadyRegistered, ValidationError
from .train import TrainingResult

logger = logging.getLogger(__name__)

MODEL_JSON = "model.json"
ARTIFACT_FORMAT = "layers-model"
WEIGHT_DTYPE = np.dtype("<f4")


def artifact_dir(job_id) -> Path:
    """Stable artifact directory for a job (not created)."""
    return models_root() / str(job_id)


def _shard_names(count: int) -> List[str]:
    if count == 1:
        return ["weights.bin"]
    return [f"weights-shard{i}of{count}.bin" for i in range(1, count + 1)]


# ═══════════════════════════════════════════════════════════════════════════
# Artifact writer / reader
# ═══════════════════════════════════════════════════════════════════════════

def save_artifact(
    model: tf.keras.Model,
    directory: Path,
    metadata: Optional[Dict[str, Any]] = None,
) -> Path:
    """Write ``model.json`` and weight shards into *directory*.

    Returns the path of ``model.json``.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    specs = []
    chunks = []
    for variable, value in zip(model.weights, model.get_weights()):
        array = np.asarray(value, dtype=WEIGHT_DTYPE)
        specs.append({
            "name": getattr(variable, "path", None) or variable.name,
            "shape": list(array.shape),
            "dtype": "float32",
        })
        chunks.append(array.tobytes(order="C"))
    blob = b"".join(chunks)
    del chunks

    shard_bytes = max(4, int(getattr(settings, "MODEL_WEIGHT_SHARD_BYTES", 4 * 1024 * 1024)))
    count = max(1, -(-len(blob) // shard_bytes))
    paths = _shard_names(count)
    for i, name in enumerate(paths):
        (directory / name).write_bytes(blob[i * shard_bytes:(i + 1) * shard_bytes])

    descriptor = {
        "format": ARTIFACT_FORMAT,
        "generatedBy": f"tensorflow {tf.__version__}",
        "convertedBy": None,
        "modelTopology": json.loads(model.to_json()),
        "weightsManifest": [{"paths": paths, "weights": specs}],
        "metadata": metadata or {},
    }
    path = directory / MODEL_JSON
    path.write_text(json.dumps(descriptor), encoding="utf-8")

    logger.info(
        "Saved artifact to %s (%d weight tensors, %d bytes in %d shard(s))",
        directory, len(specs), len(blob), count,
    )
    return path


def read_descriptor(directory: Path) -> Dict[str, Any]:
    """Parse ``model.json`` from an artifact directory.

    Raises
    ------
    ArtifactLoadError
        If the file is missing or is not valid JSON.
    """
    path = Path(directory) / MODEL_JSON
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ArtifactLoadError(f"Cannot read {path}: {exc}") from exc


def load_artifact(directory: Path) -> tf.keras.Model:
    """Rebuild the network stored in *directory*.

    Raises
    ------
    ArtifactLoadError
        On a missing/corrupt descriptor, missing shard or size mismatch.
    """
    directory = Path(directory)
    descriptor = read_descriptor(directory)

    try:
        topology = descriptor["modelTopology"]
        groups = descriptor["weightsManifest"]
        blob = b"".join(
            (directory / name).read_bytes()
            for group in groups for name in group["paths"]
        )
        specs = [spec for group in groups for spec in group["weights"]]
    except (KeyError, TypeError, OSError) as exc:
        raise ArtifactLoadError(f"Incomplete artifact in {directory}: {exc}") from exc

    weights = []
    offset = 0
    for spec in specs:
        shape = tuple(spec["shape"])
        nbytes = int(np.prod(shape, dtype=np.int64)) * WEIGHT_DTYPE.itemsize
        if offset + nbytes > len(blob):
            raise ArtifactLoadError(
                f"Weight data in {directory} is truncated at tensor {spec['name']}"
            )
        count = nbytes // WEIGHT_DTYPE.itemsize
        weights.append(np.frombuffer(blob, dtype=WEIGHT_DTYPE, count=count, offset=offset).reshape(shape))
        offset += nbytes
    if offset != len(blob):
        raise ArtifactLoadError(
            f"Weight data in {directory} has {len(blob) - offset} unexpected trailing bytes"
        )

    try:
        model = tf.keras.models.model_from_json(json.dumps(topology))
        model.set_weights(weights)
    except (ValueError, TypeError, KeyError) as exc:
        raise ArtifactLoadError(f"Cannot rebuild model from {directory}: {exc}") from exc

    compile_model(model)
    logger.info("Loaded artifact from %s", directory)
    return model


# ═══════════════════════════════════════════════════════════════════════════
# Catalog
# ═══════════════════════════════════════════════════════════════════════════

def _pct(value) -> Optional[float]:
    return None if value is None else round(float(value) * 100, 2)


def build_performance(result: TrainingResult, evaluation: Dict[str, Any]) -> Dict[str, Any]:
    """Catalog ``performance`` block, percentages in ``[0, 100]``."""
    final = result.final
    accuracy = None
    if final is not None:
        accuracy = final.val_accuracy if final.val_accuracy is not None else final.train_accuracy
    if accuracy is None:
        accuracy = evaluation.get("accuracy")
    return {
        "accuracy": _pct(accuracy),
        "precision": _pct(evaluation.get("precision")),
        "recall": _pct(evaluation.get("recall")),
        "f1Score": _pct(evaluation.get("macro_f1")),
        "loss": evaluation.get("loss"),
        "confusionMatrix": evaluation.get("confusion_matrix", []),
    }


def register_model(
    job: TrainingJob,
    class_names: List[str],
    result: TrainingResult,
    evaluation: Dict[str, Any],
    directory: Path,
) -> MLModel:
    """Create the catalog entry for a finished job.

    Raises
    ------
    ModelAlreadyRegistered
        If ``(model_name, model_version)`` already exists.  The artifact
        directory is left in place.
    """
    shape = InputShape(job.input_width, job.input_height, job.input_channels)
    dataset = job.dataset
    imaging_types = [dataset.imaging_type] if dataset is not None else []
    duplicate = ModelAlreadyRegistered(
        f"Model {job.model_name} v{job.model_version} is already registered"
    )

    if MLModel.objects.filter(name=job.model_name, version=job.model_version).exists():
        raise duplicate

    try:
        with transaction.atomic():
            entry = MLModel.objects.create(
                name=job.model_name,
                version=job.model_version,
                description=job.model_description,
                model_type=job.model_type,
                architecture=job.model_architecture,
                applicable_body_parts=job.applicable_body_parts or [],
                applicable_imaging_types=imaging_types,
                class_names=list(class_names),
                input_width=shape.width,
                input_height=shape.height,
                input_channels=shape.channels,
                preprocessing_steps=preprocessing_steps(shape),
                performance=build_performance(result, evaluation),
                trained_on={
                    "datasetName": job.dataset_name,
                    "datasetSize": (job.train_samples or 0) + (job.val_samples or 0),
                    "trainDate": timezone.now().isoformat(),
                },
                artifact_path=str(directory),
                status="testing",
                created_by=job.submitted_by,
                training_job_id=job.pk,
            )
    except IntegrityError as exc:
        raise duplicate from exc

    logger.info("Registered model %s v%s (id=%s) from job %s", entry.name, entry.version, entry.pk, job.pk)
    return entry


def sync_catalog(created_by: str = "") -> Dict[str, int]:
    """Reconcile catalog rows with the artifact tree.

    Entries whose ``model.json`` is gone become ``inactive``; artifact
    directories with a readable ``model.json`` and no entry are
    registered from their metadata.  Artifacts left by a job that ended
    ``failed`` are skipped.

    Returns
    -------
    dict
        ``{"created": int, "deactivated": int, "skipped": int}``.
    """
    deactivated = 0
    known = set()
    for entry in MLModel.objects.all():
        known.add(str(Path(entry.artifact_path)))
        if entry.status in ("inactive", "archived"):
            continue
        if not (Path(entry.artifact_path) / MODEL_JSON).is_file():
            entry.status = "inactive"
            entry.save(update_fields=["status", "updated_at"])
            deactivated += 1
            logger.warning("Model %s v%s lost its artifact; marked inactive", entry.name, entry.version)

    created = skipped = 0
    root = models_root()
    directories = sorted(d for d in root.iterdir() if d.is_dir()) if root.is_dir() else []
    for directory in directories:
        if str(directory) in known or not (directory / MODEL_JSON).is_file():
            continue
        try:
            meta = read_descriptor(directory).get("metadata") or {}
            shape = InputShape(**meta.get("inputShape", {}))
            name = meta.get("modelName") or directory.name
            version = meta.get("modelVersion") or "1.0"
            job_id = meta.get("jobId")
            if isinstance(job_id, int) and TrainingJob.objects.filter(
                pk=job_id, status=TrainingJob.FAILED,
            ).exists():
                raise ArtifactLoadError(f"Artifact belongs to failed job {job_id}")
            if MLModel.objects.filter(name=name, version=version).exists():
                raise ModelAlreadyRegistered(f"Model {name} v{version} is already registered")
            MLModel.objects.create(
                name=name,
                version=version,
                description=meta.get("description", ""),
                model_type=meta.get("modelType", "classification"),
                architecture=meta.get("architecture", ""),
                applicable_body_parts=meta.get("applicableBodyParts", []),
                class_names=list(meta.get("classNames", [])),
                input_width=shape.width,
                input_height=shape.height,
                input_channels=shape.channels,
                preprocessing_steps=preprocessing_steps(shape),
                trained_on={"datasetName": meta.get("datasetName", "")},
                artifact_path=str(directory),
                status="testing",
                created_by=created_by,
                training_job_id=job_id,
            )
            created += 1
        except (ArtifactLoadError, ModelAlreadyRegistered, ValidationError, TypeError) as exc:
            skipped += 1
            logger.warning("Skipping artifact %s during sync: %s", directory, exc)

    logger.info("Catalog sync: %d created, %d deactivated, %d skipped", created, deactivated, skipped)
    return {"created": created, "deactivated": deactivated, "skipped": skipped}
