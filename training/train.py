"""
Step-driven training loop with cooperative cancellation.

Instead of ``model.fit`` the loop drives ``train_on_batch`` itself so it
can look at the job's cancel flag between every optimizer step::

    for epoch in 1..E:
        for step in 1..ceil(n_train / batch):
            check cancel → pull batch → train_on_batch → drop batch
        exhaustive validation pass (test_on_batch, averaged)
        on_epoch(EpochMetrics)           ← one progress update per epoch

The latency between a cancel request and ``Cancelled`` is therefore at
most one training step.  Batch arrays are dropped as soon as the step
returns, and the batch generator is closed when the loop exits for any
reason, so no batch outlives the loop.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Iterator, List, Optional, Tuple

import numpy as np
import tensorflow as tf

from .data import BatchSource, PreparedDataset
from .exceptions import Cancelled

logger = logging.getLogger(__name__)


@dataclass
class EpochMetrics:
    """Progress event emitted once per finished epoch."""

    epoch: int
    total_epochs: int
    train_loss: float
    train_accuracy: float
    val_loss: Optional[float] = None
    val_accuracy: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TrainingResult:
    history: List[EpochMetrics] = field(default_factory=list)
    training_time: float = 0.0

    @property
    def final(self) -> Optional[EpochMetrics]:
        return self.history[-1] if self.history else None


def _scalar(logs: dict, key: str) -> float:
    value = logs.get(key)
    if value is None and key == "accuracy":
        value = logs.get("acc", logs.get("categorical_accuracy", 0.0))
    return float(np.asarray(value))


class TrainingLoop:
    """Drive epochs and steps for one job.

    Parameters
    ----------
    model : tf.keras.Model
        Compiled network.
    data : PreparedDataset
        Train (and optional validation) batch sources.
    epochs : int
        Number of epochs to run.
    cancel_event : threading.Event, optional
        Polled at every step boundary.
    on_epoch : callable, optional
        Receives an ``EpochMetrics`` after each epoch.
    """

    def __init__(
        self,
        model: tf.keras.Model,
        data: PreparedDataset,
        epochs: int,
        *,
        cancel_event: Optional[threading.Event] = None,
        on_epoch: Optional[Callable[[EpochMetrics], None]] = None,
    ) -> None:
        self.model = model
        self.data = data
        self.epochs = epochs
        self.cancel_event = cancel_event or threading.Event()
        self.on_epoch = on_epoch

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise Cancelled("Training cancelled by user")

    # ── Steps ───────────────────────────────────────────────────────────

    def _train_step(self, batches: Iterator[Tuple[np.ndarray, np.ndarray]]) -> Tuple[float, float]:
        xs, ys = next(batches)
        try:
            # Per-step values, not the running mean across steps
            self.model.reset_metrics()
            logs = self.model.train_on_batch(xs, ys, return_dict=True)
        finally:
            del xs, ys
        return _scalar(logs, "loss"), _scalar(logs, "accuracy")

    def _validate(self, source: BatchSource) -> Tuple[Optional[float], Optional[float]]:
        losses: List[float] = []
        accs: List[float] = []
        for xs, ys in source:
            self.check_cancelled()
            try:
                self.model.reset_metrics()
                logs = self.model.test_on_batch(xs, ys, return_dict=True)
            finally:
                del xs, ys
            losses.append(_scalar(logs, "loss"))
            accs.append(_scalar(logs, "accuracy"))
        if not losses:
            return None, None
        return float(np.mean(losses)), float(np.mean(accs))

    # ── Loop ────────────────────────────────────────────────────────────

    def run(self) -> TrainingResult:
        """Run every epoch and return the per-epoch history.

        Raises
        ------
        Cancelled
            If the cancel flag is seen at a step boundary.
        EmptyDatasetError
            If no training image can be decoded.
        """
        result = TrainingResult()
        steps_per_epoch = len(self.data.train)
        batches = self.data.train.cycle()
        started = time.monotonic()

        try:
            for epoch in range(1, self.epochs + 1):
                losses: List[float] = []
                accs: List[float] = []

                for _ in range(steps_per_epoch):
                    self.check_cancelled()
                    loss, acc = self._train_step(batches)
                    losses.append(loss)
                    accs.append(acc)
                self.check_cancelled()

                val_loss = val_acc = None
                if self.data.validation is not None:
                    val_loss, val_acc = self._validate(self.data.validation)

                metrics = EpochMetrics(
                    epoch=epoch,
                    total_epochs=self.epochs,
                    train_loss=float(np.mean(losses)),
                    train_accuracy=float(np.mean(accs)),
                    val_loss=val_loss,
                    val_accuracy=val_acc,
                )
                result.history.append(metrics)

                logger.info(
                    "Epoch %d/%d — loss=%.4f acc=%.4f val_loss=%s val_acc=%s",
                    epoch, self.epochs, metrics.train_loss, metrics.train_accuracy,
                    "n/a" if val_loss is None else f"{val_loss:.4f}",
                    "n/a" if val_acc is None else f"{val_acc:.4f}",
                )

                if self.on_epoch is not None:
                    self.on_epoch(metrics)
        finally:
            batches.close()
            result.training_time = time.monotonic() - started

        return result
