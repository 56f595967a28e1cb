"""
Final evaluation of a trained job.

Produces:
- Evaluation loss and accuracy over the held-out split (or the training
  split when the job has no validation samples).
- Macro precision / recall / F1 and a per-class breakdown from
  ``sklearn.metrics.classification_report``.
- Confusion matrix saved as ``confusion_matrix.png``.
- ``metrics.json`` with all numbers for programmatic use.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from matplotlib import colormaps
from matplotlib.figure import Figure
import numpy as np
import tensorflow as tf
from sklearn.metrics import classification_report, confusion_matrix

from .data import BatchSource
from .exceptions import Cancelled, EmptyDatasetError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Core evaluation
# ═══════════════════════════════════════════════════════════════════════════

def evaluate_model(
    model: tf.keras.Model,
    source: BatchSource,
    class_names: List[str],
    output_dir: Optional[Path] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """Run one exhaustive pass over *source* and summarise it.

    Parameters
    ----------
    model : tf.keras.Model
        Trained model with a softmax head.
    source : BatchSource
        Evaluation batches (images in [0,1], one-hot labels).
    class_names : list[str]
        Ordered class names matching label indices.
    output_dir : Path, optional
        Where to save confusion_matrix.png and metrics.json.
    cancel_event : threading.Event, optional
        Checked between batches.

    Returns
    -------
    dict
        Keys: loss, accuracy, precision, recall, macro_f1, samples,
        per_class (list), confusion_matrix (nested list).
    """
    y_true: List[int] = []
    y_pred: List[int] = []
    loss_sum = 0.0

    for xs, ys in source:
        if cancel_event is not None and cancel_event.is_set():
            raise Cancelled("Training cancelled by user")
        probs = np.asarray(model.predict_on_batch(xs))
        per_sample = tf.keras.losses.categorical_crossentropy(ys, probs)
        loss_sum += float(np.sum(np.asarray(per_sample)))
        y_pred.extend(np.argmax(probs, axis=1).tolist())
        y_true.extend(np.argmax(ys, axis=1).tolist())
        del xs, ys, probs

    if not y_true:
        raise EmptyDatasetError("Dataset is empty: no evaluation image could be decoded")

    n = len(y_true)
    loss = loss_sum / n
    accuracy = float(np.mean(np.asarray(y_true) == np.asarray(y_pred)))

    # ── Per-class stats from sklearn ────────────────────────────────
    all_labels = list(range(len(class_names)))
    report_dict = classification_report(
        y_true, y_pred,
        target_names=class_names,
        labels=all_labels,
        output_dict=True,
        zero_division=0,
    )
    per_class = []
    for name in class_names:
        stats = report_dict.get(name, {})
        per_class.append({
            "class": name,
            "precision": round(stats.get("precision", 0), 4),
            "recall": round(stats.get("recall", 0), 4),
            "f1": round(stats.get("f1-score", 0), 4),
            "support": int(stats.get("support", 0)),
        })
    macro = report_dict.get("macro avg", {})

    cm = confusion_matrix(y_true, y_pred, labels=all_labels)

    metrics = {
        "loss": round(float(loss), 4),
        "accuracy": round(accuracy, 4),
        "precision": round(float(macro.get("precision", 0)), 4),
        "recall": round(float(macro.get("recall", 0)), 4),
        "macro_f1": round(float(macro.get("f1-score", 0)), 4),
        "samples": n,
        "per_class": per_class,
        "confusion_matrix": cm.tolist(),
    }

    logger.info(
        "Evaluation — accuracy=%.4f, macro_f1=%.4f, loss=%.4f over %d samples",
        metrics["accuracy"], metrics["macro_f1"], metrics["loss"], n,
    )

    if output_dir is not None:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        _save_confusion_matrix(cm, class_names, output_dir)
        (output_dir / "metrics.json").write_text(
            json.dumps(metrics, indent=2), encoding="utf-8",
        )
        logger.info("Metrics saved to %s", output_dir / "metrics.json")

    return metrics


# ═══════════════════════════════════════════════════════════════════════════
# Confusion matrix plot
# ═══════════════════════════════════════════════════════════════════════════

def _save_confusion_matrix(
    cm: np.ndarray,
    class_names: List[str],
    output_dir: Path,
) -> None:
    # pyplot-free; several workers may plot at once
    size = max(4, min(12, len(class_names) + 2))
    fig = Figure(figsize=(size + 2, size))
    ax = fig.add_subplot()
    im = ax.imshow(cm, interpolation="nearest", cmap=colormaps["Blues"])
    ax.set_title("Confusion Matrix")
    fig.colorbar(im, ax=ax)

    ticks = np.arange(len(class_names))
    ax.set_xticks(ticks)
    ax.set_xticklabels(class_names, rotation=45, ha="right")
    ax.set_yticks(ticks)
    ax.set_yticklabels(class_names)

    threshold = cm.max() / 2.0 if cm.size else 0
    for i in range(len(class_names)):
        for j in range(len(class_names)):
            ax.text(
                j, i, str(cm[i, j]),
                ha="center", va="center",
                color="white" if cm[i, j] > threshold else "black",
            )

    ax.set_xlabel("Predicted")
    ax.set_ylabel("Actual")
    fig.tight_layout()

    path = output_dir / "confusion_matrix.png"
    fig.savefig(str(path), dpi=100)
    logger.info("Confusion matrix saved to %s", path)
