"""
Inference runtime for catalog models.

Loads trained artifacts on first use, keeps them in a process-wide
cache, and turns softmax outputs into diagnosis results with a plain
language explanation.

Pipeline for ``predict(model_id, image)``:
    1. Fetch the catalog entry (``ModelNotFound`` if missing)
    2. Predictor → class probabilities, shape (N, K)
         KerasPredictor : cached network, images preprocessed with the
                          entry's input shape
         MockPredictor  : random top class at 70–95 %, rest spread randomly
    3. Top index → ``class_names``; confidence = softmax[top] · 100
    4. Explanation: confidence level, model context, condition notes

The predictor strategy is picked once when the runtime is created
(``INFERENCE_MOCK_MODE``); nothing downstream branches on mock mode.
"""

import logging
import threading
from concurrent.futures import Future
from datetime import datetime, timezone as dt_timezone
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import tensorflow as tf
from django.conf import settings

from diagnostics.models import MLModel
from training.config import InputShape
from training.exceptions import ArtifactLoadError, ModelNotFound, ValidationError
from training.images import ImageSource, stack_images
from training.registry import load_artifact

logger = logging.getLogger(__name__)

# ── Condition notes ─────────────────────────────────────────────────────────

CONDITIONS: Dict[str, Dict[str, object]] = {
    "pneumonia": {
        "description": (
            "Pneumonia is an infection that inflames the air sacs in one or "
            "both lungs, which may fill with fluid."
        ),
        "recommendations": [
            "Consult with a physician for proper evaluation",
            "Additional tests may include blood tests, sputum tests, or chest CT scan",
            "Follow-up imaging recommended after treatment",
        ],
    },
    "covid": {
        "description": (
            "COVID-19 is a respiratory disease caused by the SARS-CoV-2 virus, "
            "which can cause various levels of respiratory distress."
        ),
        "recommendations": [
            "Immediate isolation to prevent spread",
            "Follow-up with PCR testing to confirm diagnosis",
            "Monitor oxygen levels and symptoms",
            "Consult with a healthcare provider for treatment options",
        ],
    },
    "normal": {
        "description": "No abnormalities detected in the image.",
        "recommendations": [
            "Regular check-ups as recommended by your healthcare provider",
            "Maintain preventive healthcare practices",
        ],
    },
    "fracture": {
        "description": (
            "A fracture is a break in the continuity of the bone, which can "
            "vary in severity."
        ),
        "recommendations": [
            "Immobilize the affected area",
            "Consult with an orthopedic specialist",
            "Follow-up imaging to monitor healing",
            "Physical therapy may be recommended after initial healing",
        ],
    },
}

MOCK_CONFIDENCE_RANGE = (70.0, 95.0)


def confidence_level(confidence: float) -> str:
    if confidence > 90:
        return "very high"
    if confidence > 75:
        return "high"
    if confidence > 50:
        return "moderate"
    return "low"


def build_explanation(condition: str, confidence: float, entry: MLModel) -> dict:
    """Summary, confidence level, detail sentences and recommendations."""
    level = confidence_level(confidence)
    pct = f"{confidence:.1f}%"
    sentences = {
        "very high": f"The AI is very confident in this diagnosis ({pct} confidence).",
        "high": f"The AI is confident in this diagnosis ({pct} confidence).",
        "moderate": f"The AI has moderate confidence in this diagnosis ({pct} confidence).",
        "low": (
            f"The AI has low confidence in this diagnosis ({pct} confidence). "
            "Consider additional testing."
        ),
    }
    details = [sentences[level]]

    accuracy = (entry.performance or {}).get("accuracy")
    context = (
        f"This analysis was performed using a {entry.name} (v{entry.version}) "
        f"{entry.model_type} model"
    )
    if accuracy is not None:
        context += f" with a reported accuracy of {float(accuracy):.1f}%"
    details.append(context + ".")

    info = CONDITIONS.get(condition.lower())
    if info:
        details.append(info["description"])

    return {
        "summary": f"AI model detected {condition} with {pct} confidence.",
        "confidenceLevel": level,
        "details": details,
        "recommendations": list(info["recommendations"]) if info else [],
    }


def _now_iso() -> str:
    return datetime.now(dt_timezone.utc).isoformat()


# ── Model cache ─────────────────────────────────────────────────────────────

class ModelCache:
    """Process-wide ``{model_id: network}`` map guarded by a mutex.

    The first caller for an id loads the artifact; concurrent callers for
    the same id wait on the same ``Future``.  A failed load is not cached.
    """

    def __init__(self, loader: Callable[[str], tf.keras.Model] = load_artifact):
        self._loader = loader
        self._lock = threading.Lock()
        self._entries: Dict[int, Future] = {}
        self.loads = 0

    def __contains__(self, model_id) -> bool:
        with self._lock:
            return model_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, model_id: int, artifact_path: str) -> tf.keras.Model:
        with self._lock:
            future = self._entries.get(model_id)
            owner = future is None
            if owner:
                future = Future()
                self._entries[model_id] = future

        if owner:
            try:
                model = self._loader(artifact_path)
            except Exception as exc:
                with self._lock:
                    self._entries.pop(model_id, None)
                future.set_exception(exc)
                raise
            with self._lock:
                self.loads += 1
            future.set_result(model)
            logger.info("Cached model %s from %s", model_id, artifact_path)
        return future.result()

    def drop(self, model_id: int) -> bool:
        with self._lock:
            removed = self._entries.pop(model_id, None) is not None
        if removed:
            logger.info("Dropped model %s from cache", model_id)
        return removed

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("Cleared %d cached model(s)", count)
        return count


# ── Predictor strategies ────────────────────────────────────────────────────

class KerasPredictor:
    """Runs the entry's trained network on preprocessed images."""

    def __init__(self, cache: ModelCache):
        self.cache = cache

    def probabilities(self, entry: MLModel, images: Sequence[ImageSource]) -> np.ndarray:
        model = self.cache.get(entry.pk, entry.artifact_path)
        shape = InputShape(entry.input_width, entry.input_height, entry.input_channels)
        batch = stack_images(images, shape)
        try:
            probs = np.asarray(model.predict_on_batch(batch), dtype=np.float32)
        finally:
            del batch
        if probs.ndim != 2 or probs.shape[1] != len(entry.class_names):
            raise ArtifactLoadError(
                f"Model {entry.pk} outputs {probs.shape[-1]} classes but the catalog "
                f"lists {len(entry.class_names)}"
            )
        return probs


class MockPredictor:
    """Plausible random outputs for exercising the stack without artifacts."""

    def __init__(self, seed: Optional[int] = None):
        self._rng = np.random.default_rng(seed)
        self._lock = threading.Lock()

    def probabilities(self, entry: MLModel, images: Sequence[ImageSource]) -> np.ndarray:
        shape = InputShape(entry.input_width, entry.input_height, entry.input_channels)
        # Decode anyway so bad uploads fail the same way as in real mode
        stack_images(images, shape)

        k = len(entry.class_names)
        low, high = MOCK_CONFIDENCE_RANGE
        out = np.zeros((len(images), k), dtype=np.float64)
        with self._lock:
            for row in out:
                if k == 1:
                    row[0] = 1.0
                    continue
                top = int(self._rng.integers(k))
                confidence = low + self._rng.random() * (high - low)
                spread = self._rng.random(k - 1) + 1e-6
                rest = (100.0 - confidence) * spread / spread.sum()
                row[:] = np.insert(rest, top, confidence) / 100.0
        return out


# ── Runtime ─────────────────────────────────────────────────────────────────

class InferenceRuntime:
    """``predict`` / ``batch_predict`` / ``clear_cache`` over the catalog."""

    def __init__(self, predictor=None, cache: Optional[ModelCache] = None):
        self.cache = cache or ModelCache()
        self.predictor = predictor or KerasPredictor(self.cache)

    @staticmethod
    def _entry(model_id) -> MLModel:
        try:
            return MLModel.objects.get(pk=model_id)
        except (MLModel.DoesNotExist, ValueError, TypeError):
            raise ModelNotFound(f"Model {model_id} not found") from None

    @staticmethod
    def _prediction(entry: MLModel, probs: np.ndarray) -> dict:
        top = int(np.argmax(probs))
        condition = entry.class_names[top]
        confidence = float(probs[top]) * 100.0
        return {
            "condition": condition,
            "confidence": confidence,
            "allPredictions": [
                {"label": label, "confidence": float(p) * 100.0}
                for label, p in zip(entry.class_names, probs)
            ],
            "explanation": build_explanation(condition, confidence, entry),
            "model": {"id": entry.pk, "name": entry.name, "version": entry.version},
            "timestamp": _now_iso(),
        }

    def predict(self, model_id, image: ImageSource) -> dict:
        """Diagnose one image.

        Raises
        ------
        ModelNotFound
            Unknown model id.
        DecodeError
            The image is not a readable JPEG/PNG.
        ArtifactLoadError
            The model's artifact is missing or corrupt.
        """
        entry = self._entry(model_id)
        probs = self.predictor.probabilities(entry, [image])
        prediction = self._prediction(entry, probs[0])
        entry.record_usage()
        return prediction

    def batch_predict(self, model_id, images: Sequence[ImageSource]) -> dict:
        """Diagnose several images; ``primaryDiagnosis`` is the most confident."""
        if not images:
            raise ValidationError("At least one image is required")
        entry = self._entry(model_id)
        probs = self.predictor.probabilities(entry, list(images))
        predictions: List[dict] = [self._prediction(entry, row) for row in probs]
        entry.record_usage(len(predictions))
        primary = max(predictions, key=lambda p: p["confidence"])
        return {
            "predictions": predictions,
            "primaryDiagnosis": primary,
            "timestamp": _now_iso(),
        }

    def drop(self, model_id) -> bool:
        return self.cache.drop(model_id)

    def clear_cache(self) -> int:
        return self.cache.clear()


_runtime: Optional[InferenceRuntime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> InferenceRuntime:
    """Process-wide runtime; the predictor is chosen from ``INFERENCE_MOCK_MODE``."""
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            if getattr(settings, "INFERENCE_MOCK_MODE", False):
                logger.warning("Inference running in mock mode")
                _runtime = InferenceRuntime(predictor=MockPredictor())
            else:
                _runtime = InferenceRuntime()
        return _runtime


def reset_runtime() -> None:
    global _runtime
    with _runtime_lock:
        if _runtime is not None:
            _runtime.clear_cache()
        _runtime = None
