"""
Per-job progress record and best-effort status writes.

The worker owns one ``ProgressStore`` per job.  The training loop hands
it an ``EpochMetrics`` at every epoch boundary; the store updates its
in-memory record under a lock, refuses epoch regressions, and then
persists the changed columns through ``persist_job_fields``.

Status writes retry a bounded number of times
(``TRAINING_STATUS_WRITE_RETRIES``, ``TRAINING_STATUS_WRITE_BACKOFF``
seconds apart) and are then abandoned with a logged ``StoreWriteError``;
a flaky database never aborts a training run.  A write that reaches the
database but finds the row already terminal is different: the job was
failed underneath the worker (restart recovery in another process), and
the store raises ``JobSuperseded`` so the worker stops.

Two signals let other parts of the process observe a job::

    job_status_changed(sender=TrainingJob, job_id, status, previous, reason)
    job_progress(sender=TrainingJob, job_id, progress)
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import DatabaseError
from django.dispatch import Signal
from django.utils import timezone

from diagnostics.models import TrainingJob
from .exceptions import JobSuperseded, StoreWriteError
from .train import EpochMetrics

logger = logging.getLogger(__name__)

job_status_changed = Signal()
job_progress = Signal()


def persist_job_fields(
    job_id: int,
    values: Dict[str, Any],
    *,
    only_if_active: bool = False,
) -> Optional[int]:
    """Write *values* onto the job row, retrying on database errors.

    Returns the number of rows updated once a write goes through, or
    ``None`` if every attempt failed.  ``only_if_active`` restricts the
    write to rows that are not already terminal, so ``0`` means the job
    has been finished by someone else.
    """
    attempts = max(1, int(getattr(settings, "TRAINING_STATUS_WRITE_RETRIES", 3)))
    backoff = float(getattr(settings, "TRAINING_STATUS_WRITE_BACKOFF", 0.2))
    values = dict(values, updated_at=timezone.now())

    for attempt in range(1, attempts + 1):
        try:
            qs = TrainingJob.objects.filter(pk=job_id)
            if only_if_active:
                qs = qs.exclude(status__in=TrainingJob.TERMINAL_STATUSES)
            return qs.update(**values)
        except DatabaseError as exc:
            logger.warning(
                "Status write for job %s failed (attempt %d/%d): %s",
                job_id, attempt, attempts, exc,
            )
            if attempt < attempts:
                time.sleep(backoff)

    err = StoreWriteError(
        f"Abandoned write of {sorted(values)} for job {job_id} after {attempts} attempts"
    )
    logger.error("%s", err.message)
    return None


class ProgressStore:
    """Lock-protected progress record for one running job."""

    def __init__(self, job: TrainingJob) -> None:
        self.job = job
        self._lock = threading.Lock()

    @property
    def job_id(self) -> int:
        return self.job.pk

    def _superseded(self) -> JobSuperseded:
        return JobSuperseded(f"Job {self.job_id} is no longer active")

    def ensure_active(self) -> None:
        """Raise ``JobSuperseded`` unless the stored row is still active."""
        status = (
            TrainingJob.objects.filter(pk=self.job_id)
            .values_list("status", flat=True)
            .first()
        )
        if status not in TrainingJob.ACTIVE_STATUSES:
            raise self._superseded()

    def reload(self) -> TrainingJob:
        with self._lock:
            self.job.refresh_from_db()
            return self.job

    # ── Status ──────────────────────────────────────────────────────────

    def transition(self, to: str, *, message: str = "", reason: str = "", **extra) -> bool:
        """Move the job to *to* and persist it before returning.

        Extra keyword arguments are model fields written in the same
        update (e.g. ``model`` on completion).  Returns ``False`` when
        the write was abandoned after retries.

        Raises
        ------
        JobSuperseded
            If the stored row is already terminal.
        """
        with self._lock:
            previous = self.job.status
            fields = self.job.transition(to, message=message, reason=reason)
            for name, value in extra.items():
                setattr(self.job, name, value)
            values = {name: getattr(self.job, name) for name in fields}
            values.update(extra)

        rows = persist_job_fields(self.job_id, values, only_if_active=True)
        if rows == 0:
            raise self._superseded()
        logger.info("Job %s: %s → %s %s", self.job_id, previous, to, reason or message)
        job_status_changed.send(
            sender=TrainingJob,
            job_id=self.job_id,
            status=to,
            previous=previous,
            reason=self.job.failure_reason,
        )
        return rows is not None

    def fail(self, reason: str) -> bool:
        if self.job.is_terminal:
            return False
        try:
            return self.transition(TrainingJob.FAILED, message=reason, reason=reason)
        except JobSuperseded as exc:
            logger.warning("%s; keeping its stored outcome over '%s'", exc.message, reason)
            self.reload()
            return False

    def update(self, **values) -> bool:
        """Persist plain columns (sample counts, final metrics).

        Rows that are already terminal are left alone.
        """
        with self._lock:
            for name, value in values.items():
                setattr(self.job, name, value)
        return bool(persist_job_fields(self.job_id, values, only_if_active=True))

    # ── Epochs ──────────────────────────────────────────────────────────

    def record_epoch(self, metrics: EpochMetrics) -> Optional[dict]:
        """Apply one epoch's metrics; regressions are logged and dropped.

        Raises
        ------
        JobSuperseded
            If the stored row is already terminal.
        """
        with self._lock:
            if metrics.epoch < self.job.current_epoch or metrics.epoch > metrics.total_epochs:
                logger.warning(
                    "Job %s: ignoring out-of-order progress for epoch %d (current %d/%d)",
                    self.job_id, metrics.epoch, self.job.current_epoch, metrics.total_epochs,
                )
                return None

            self.job.current_epoch = metrics.epoch
            self.job.total_epochs = metrics.total_epochs
            self.job.train_loss = metrics.train_loss
            self.job.train_accuracy = metrics.train_accuracy
            self.job.val_loss = metrics.val_loss
            self.job.val_accuracy = metrics.val_accuracy
            self.job.status_message = f"Epoch {metrics.epoch}/{metrics.total_epochs}"
            progress = dict(self.job.progress)
            values = {
                "current_epoch": metrics.epoch,
                "total_epochs": metrics.total_epochs,
                "train_loss": metrics.train_loss,
                "train_accuracy": metrics.train_accuracy,
                "val_loss": metrics.val_loss,
                "val_accuracy": metrics.val_accuracy,
                "status_message": self.job.status_message,
            }

        if persist_job_fields(self.job_id, values, only_if_active=True) == 0:
            raise self._superseded()
        job_progress.send(sender=TrainingJob, job_id=self.job_id, progress=progress)
        return progress
