import threading
import time

import numpy as np
import pytest

from conftest import image_bytes
from diagnostics.model_loader import (
    InferenceRuntime,
    MockPredictor,
    ModelCache,
    build_explanation,
    confidence_level,
    get_runtime,
)
from diagnostics.models import MLModel
from training.architectures import build_model
from training.config import InputShape
from training.exceptions import ArtifactLoadError, DecodeError, ModelNotFound, ValidationError
from training.registry import save_artifact

pytestmark = pytest.mark.django_db

SHAPE = InputShape(8, 8, 3)


@pytest.fixture
def catalog_entry(data_root):
    """A catalog entry backed by a real (untrained) artifact."""

    def _make(name="chest", classes=("normal", "pneumonia"), save=True, **fields):
        directory = data_root / "models" / name
        if save:
            save_artifact(build_model("simple", SHAPE, len(classes)), directory)
        return MLModel.objects.create(
            name=name, version="1.0", class_names=list(classes),
            input_width=SHAPE.width, input_height=SHAPE.height, input_channels=SHAPE.channels,
            artifact_path=str(directory), performance={"accuracy": 91.5}, **fields,
        )

    return _make


# ── Explanations ────────────────────────────────────────────────────────────

@pytest.mark.parametrize("confidence, level", [
    (95.0, "very high"), (90.01, "very high"), (90.0, "high"), (75.5, "high"),
    (75.0, "moderate"), (50.5, "moderate"), (50.0, "low"), (10.0, "low"),
])
def test_confidence_levels(confidence, level):
    assert confidence_level(confidence) == level


def test_explanation_for_known_condition():
    entry = MLModel(name="chest", version="1.0", model_type="classification",
                    performance={"accuracy": 91.5})
    explanation = build_explanation("Pneumonia", 92.34, entry)

    assert explanation["summary"] == "AI model detected Pneumonia with 92.3% confidence."
    assert explanation["confidenceLevel"] == "very high"
    assert "very confident" in explanation["details"][0]
    assert "chest (v1.0)" in explanation["details"][1]
    assert "91.5%" in explanation["details"][1]
    assert "air sacs" in explanation["details"][2]
    assert explanation["recommendations"][0].startswith("Consult with a physician")


def test_explanation_for_unknown_condition():
    entry = MLModel(name="bones", version="2", model_type="classification")
    explanation = build_explanation("sprain", 40.0, entry)
    assert explanation["confidenceLevel"] == "low"
    assert "additional testing" in explanation["details"][0]
    assert len(explanation["details"]) == 2
    assert explanation["recommendations"] == []


# ── Mock predictor ──────────────────────────────────────────────────────────

def test_mock_predictions_sum_to_one_hundred(catalog_entry):
    entry = catalog_entry(classes=("normal", "pneumonia", "covid"), save=False)
    runtime = InferenceRuntime(predictor=MockPredictor(seed=3))

    for _ in range(20):
        result = runtime.predict(entry.pk, image_bytes())
        scores = [p["confidence"] for p in result["allPredictions"]]
        assert sum(scores) == pytest.approx(100.0)
        assert 70.0 <= result["confidence"] <= 95.0
        assert result["confidence"] == max(scores)
        assert result["condition"] in entry.class_names


def test_mock_single_class_is_certain(catalog_entry):
    entry = catalog_entry(classes=("normal",), save=False)
    result = InferenceRuntime(predictor=MockPredictor()).predict(entry.pk, image_bytes())
    assert result["condition"] == "normal"
    assert result["confidence"] == pytest.approx(100.0)


def test_mock_still_rejects_undecodable_upload(catalog_entry):
    entry = catalog_entry(save=False)
    with pytest.raises(DecodeError):
        InferenceRuntime(predictor=MockPredictor()).predict(entry.pk, b"not an image")


def test_runtime_strategy_follows_mock_setting(settings):
    settings.INFERENCE_MOCK_MODE = True
    assert isinstance(get_runtime().predictor, MockPredictor)


def test_batch_primary_is_most_confident(catalog_entry):
    entry = catalog_entry(save=False)
    runtime = InferenceRuntime(predictor=MockPredictor(seed=11))
    result = runtime.batch_predict(entry.pk, [image_bytes()] * 4)

    assert len(result["predictions"]) == 4
    best = max(p["confidence"] for p in result["predictions"])
    assert result["primaryDiagnosis"]["confidence"] == best
    entry.refresh_from_db()
    assert entry.usage_count == 4

    with pytest.raises(ValidationError):
        runtime.batch_predict(entry.pk, [])


# ── Real models and the cache ───────────────────────────────────────────────

def test_unknown_model():
    with pytest.raises(ModelNotFound):
        InferenceRuntime().predict(12345, image_bytes())


def test_real_prediction_is_stable_across_cache_clear(catalog_entry):
    entry = catalog_entry()
    runtime = InferenceRuntime()
    upload = image_bytes((200, 40, 40))

    first = runtime.predict(entry.pk, upload)
    assert runtime.clear_cache() == 1
    second = runtime.predict(entry.pk, upload)

    assert first["allPredictions"] == second["allPredictions"]
    assert runtime.cache.loads == 2
    assert first["model"] == {"id": entry.pk, "name": "chest", "version": "1.0"}
    assert sum(p["confidence"] for p in first["allPredictions"]) == pytest.approx(100.0, abs=1e-3)

    entry.refresh_from_db()
    assert entry.usage_count == 2
    assert entry.last_used is not None


def test_missing_artifact_fails_and_is_not_cached(catalog_entry):
    entry = catalog_entry(save=False)
    runtime = InferenceRuntime()
    with pytest.raises(ArtifactLoadError):
        runtime.predict(entry.pk, image_bytes())
    assert entry.pk not in runtime.cache


def test_class_count_mismatch_is_reported(catalog_entry, data_root):
    entry = catalog_entry()
    entry.class_names = ["a", "b", "c"]
    entry.save()
    with pytest.raises(ArtifactLoadError, match="outputs 2 classes"):
        InferenceRuntime().predict(entry.pk, image_bytes())


def test_concurrent_first_use_loads_once():
    loads = []
    gate = threading.Event()

    def slow_loader(path):
        loads.append(path)
        gate.wait(timeout=5)
        return object()

    cache = ModelCache(loader=slow_loader)
    results = []
    threads = [
        threading.Thread(target=lambda: results.append(cache.get(7, "/models/7")))
        for _ in range(8)
    ]
    for t in threads:
        t.start()
    time.sleep(0.1)
    gate.set()
    for t in threads:
        t.join(timeout=5)

    assert len(loads) == 1
    assert cache.loads == 1
    assert len(results) == 8
    assert all(r is results[0] for r in results)


def test_failed_load_is_retried():
    attempts = []

    def flaky(path):
        attempts.append(path)
        if len(attempts) == 1:
            raise ArtifactLoadError("disk hiccup")
        return "model"

    cache = ModelCache(loader=flaky)
    with pytest.raises(ArtifactLoadError):
        cache.get(1, "p")
    assert 1 not in cache
    assert cache.get(1, "p") == "model"
    assert len(cache) == 1


def test_drop_and_clear():
    cache = ModelCache(loader=lambda path: np.zeros(1))
    cache.get(1, "a")
    cache.get(2, "b")
    assert cache.drop(1) is True
    assert cache.drop(1) is False
    assert 2 in cache
    assert cache.clear() == 1
    assert len(cache) == 0
