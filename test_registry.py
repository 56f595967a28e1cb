import json

import numpy as np
import pytest

from diagnostics.models import MLModel, TrainingJob
from training.architectures import build_model
from training.config import InputShape
from training.exceptions import ArtifactLoadError, ModelAlreadyRegistered
from training.registry import (
    MODEL_JSON,
    artifact_dir,
    build_performance,
    load_artifact,
    read_descriptor,
    register_model,
    save_artifact,
    sync_catalog,
)
from training.tasks import claim_job, submit_job
from training.train import EpochMetrics, TrainingResult

SHAPE = InputShape(8, 8, 3)


@pytest.fixture
def model():
    return build_model("simple", SHAPE, num_classes=2)


def _result(val_accuracy=0.8, train_accuracy=0.9):
    return TrainingResult(history=[
        EpochMetrics(1, 1, train_loss=0.5, train_accuracy=train_accuracy,
                     val_loss=0.6, val_accuracy=val_accuracy),
    ], training_time=1.5)


EVALUATION = {
    "loss": 0.61, "accuracy": 0.75, "precision": 0.7, "recall": 0.65,
    "macro_f1": 0.675, "confusion_matrix": [[3, 1], [1, 3]],
}


# ── Artifacts ───────────────────────────────────────────────────────────────

def test_artifact_round_trip_gives_identical_predictions(model, tmp_path):
    save_artifact(model, tmp_path / "a", metadata={"classNames": ["x", "y"]})
    restored = load_artifact(tmp_path / "a")

    xs = np.random.default_rng(0).random((3, 8, 8, 3)).astype(np.float32)
    assert np.array_equal(
        np.asarray(model.predict_on_batch(xs)),
        np.asarray(restored.predict_on_batch(xs)),
    )
    for before, after in zip(model.get_weights(), restored.get_weights()):
        assert np.array_equal(before, after)


def test_descriptor_layout(model, tmp_path):
    save_artifact(model, tmp_path, metadata={"classNames": ["x", "y"]})
    descriptor = read_descriptor(tmp_path)

    assert descriptor["format"] == "layers-model"
    assert descriptor["generatedBy"].startswith("tensorflow ")
    assert descriptor["metadata"] == {"classNames": ["x", "y"]}
    manifest = descriptor["weightsManifest"]
    assert manifest[0]["paths"] == ["weights.bin"]
    assert all(w["dtype"] == "float32" for w in manifest[0]["weights"])
    total = sum(int(np.prod(w["shape"])) for w in manifest[0]["weights"]) * 4
    assert (tmp_path / "weights.bin").stat().st_size == total


def test_weights_are_sharded(model, tmp_path, settings):
    settings.MODEL_WEIGHT_SHARD_BYTES = 4096
    save_artifact(model, tmp_path)
    paths = read_descriptor(tmp_path)["weightsManifest"][0]["paths"]

    assert len(paths) > 1
    assert paths[0] == f"weights-shard1of{len(paths)}.bin"
    assert all((tmp_path / p).stat().st_size <= 4096 for p in paths)
    assert load_artifact(tmp_path).count_params() == model.count_params()


def test_missing_descriptor(tmp_path):
    with pytest.raises(ArtifactLoadError):
        load_artifact(tmp_path / "nothing-here")


def test_missing_shard(model, tmp_path):
    save_artifact(model, tmp_path)
    (tmp_path / "weights.bin").unlink()
    with pytest.raises(ArtifactLoadError):
        load_artifact(tmp_path)


def test_truncated_and_padded_weights(model, tmp_path):
    save_artifact(model, tmp_path)
    data = (tmp_path / "weights.bin").read_bytes()

    (tmp_path / "weights.bin").write_bytes(data[:-8])
    with pytest.raises(ArtifactLoadError, match="truncated"):
        load_artifact(tmp_path)

    (tmp_path / "weights.bin").write_bytes(data + b"\0\0\0\0")
    with pytest.raises(ArtifactLoadError, match="trailing"):
        load_artifact(tmp_path)


def test_corrupt_descriptor(model, tmp_path):
    save_artifact(model, tmp_path)
    (tmp_path / MODEL_JSON).write_text("{not json")
    with pytest.raises(ArtifactLoadError):
        load_artifact(tmp_path)


# ── Catalog ─────────────────────────────────────────────────────────────────

def test_performance_is_in_percent():
    perf = build_performance(_result(), EVALUATION)
    assert perf["accuracy"] == 80.0
    assert perf["precision"] == 70.0
    assert perf["recall"] == 65.0
    assert perf["f1Score"] == 67.5
    assert perf["confusionMatrix"] == [[3, 1], [1, 3]]


def test_performance_falls_back_to_train_accuracy():
    assert build_performance(_result(val_accuracy=None), EVALUATION)["accuracy"] == 90.0
    assert build_performance(TrainingResult(), EVALUATION)["accuracy"] == 75.0


@pytest.mark.django_db
def test_register_model_creates_testing_entry(make_dataset, job_payload, model):
    job = submit_job(job_payload(make_dataset()), "alice")
    directory = artifact_dir(job.pk)
    save_artifact(model, directory)

    entry = register_model(job, ["normal", "pneumonia"], _result(), EVALUATION, directory)

    assert entry.status == "testing"
    assert entry.class_names == ["normal", "pneumonia"]
    assert entry.training_job_id == job.pk
    assert entry.created_by == "alice"
    assert entry.input_shape == {"width": 16, "height": 16, "channels": 3}
    assert entry.applicable_imaging_types == ["xray"]
    assert entry.trained_on["datasetName"] == "chest"
    assert entry.performance["accuracy"] == 80.0


@pytest.mark.django_db
def test_duplicate_registration_is_rejected(make_dataset, job_payload, model):
    dataset = make_dataset()
    first = submit_job(job_payload(dataset), "alice")
    second = submit_job(job_payload(dataset), "bob")
    save_artifact(model, artifact_dir(first.pk))
    save_artifact(model, artifact_dir(second.pk))

    original = register_model(first, ["a", "b"], _result(), EVALUATION, artifact_dir(first.pk))
    with pytest.raises(ModelAlreadyRegistered, match="already registered"):
        register_model(second, ["a", "b"], _result(), EVALUATION, artifact_dir(second.pk))

    assert MLModel.objects.count() == 1
    assert MLModel.objects.get().pk == original.pk
    assert (artifact_dir(second.pk) / MODEL_JSON).is_file()


@pytest.mark.django_db
def test_sync_deactivates_lost_and_registers_orphans(make_dataset, job_payload, model):
    job = submit_job(job_payload(make_dataset()), "alice")
    claim_job(job.pk)
    lost_dir = artifact_dir(job.pk)
    save_artifact(model, lost_dir)
    lost = register_model(job, ["a", "b"], _result(), EVALUATION, lost_dir)
    (lost_dir / MODEL_JSON).unlink()

    orphan_dir = artifact_dir(999)
    save_artifact(model, orphan_dir, metadata={
        "jobId": 999, "modelName": "orphan", "modelVersion": "2.0",
        "classNames": ["a", "b"], "inputShape": SHAPE.to_dict(),
        "architecture": "simple",
    })
    junk_dir = artifact_dir("junk")
    junk_dir.mkdir(parents=True)
    (junk_dir / MODEL_JSON).write_text(json.dumps({"metadata": {"inputShape": {"channels": 2}}}))

    counts = sync_catalog(created_by="admin")

    assert counts == {"created": 1, "deactivated": 1, "skipped": 1}
    lost.refresh_from_db()
    assert lost.status == "inactive"
    orphan = MLModel.objects.get(name="orphan")
    assert orphan.version == "2.0"
    assert orphan.class_names == ["a", "b"]
    assert orphan.training_job_id == 999
    assert orphan.created_by == "admin"

    assert sync_catalog() == {"created": 0, "deactivated": 0, "skipped": 1}


@pytest.mark.django_db
def test_sync_skips_artifacts_of_failed_jobs(make_dataset, job_payload, model):
    job = submit_job(job_payload(make_dataset()), "alice")
    save_artifact(model, artifact_dir(job.pk), metadata={
        "jobId": job.pk, "modelName": "late", "modelVersion": "1.0",
        "classNames": ["a", "b"], "inputShape": SHAPE.to_dict(),
    })
    TrainingJob.objects.filter(pk=job.pk).update(status=TrainingJob.FAILED)

    assert sync_catalog() == {"created": 0, "deactivated": 0, "skipped": 1}
    assert not MLModel.objects.filter(name="late").exists()
