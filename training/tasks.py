"""
Job submission, dispatch, cancellation and restart recovery.

One dispatcher thread claims ``pending`` jobs (oldest first) and hands
them to a bounded ``ThreadPoolExecutor``; each worker runs
``runner.run_job`` with its own ``threading.Event`` cancel flag::

    submit_job ──► pending ──(claim_job: atomic CAS)──► preparing ──► worker
                      │                                                 │
                cancel_job: pending → failed              cancel flag polled per step

Claiming is a compare-and-set ``UPDATE … WHERE status='pending'`` so a
job is claimed exactly once even with several dispatchers.  A cancel
request is also persisted on the row (``cancel_requested``) and
forwarded by the dispatcher to the worker's flag, so cancelling from a
different process than the one running the worker still works.

``recover_interrupted_jobs`` fails every job left non-terminal by a
previous process.  It runs when the orchestrator starts, i.e. before
the dispatcher claims anything and before ``get_orchestrator`` hands
the orchestrator to a submitter.  Each dispatcher tick also touches
``updated_at`` on the jobs it runs and then fails any running job whose
heartbeat has gone stale; a lazily started web-process orchestrator
only fails such stale jobs at start-up.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from django.conf import settings
from django.db import DatabaseError, close_old_connections, connection
from django.utils import timezone

from diagnostics.models import Dataset, TrainingJob
from .config import (
    ARCHITECTURES,
    BATCH_SIZE_RANGE,
    CHANNELS,
    EPOCHS_RANGE,
    MODEL_TYPES,
    VALIDATION_SPLIT_RANGE,
)
from .exceptions import (
    DatasetNotFound,
    DatasetNotReady,
    Interrupted,
    JobNotFound,
    Unauthenticated,
    ValidationError,
)
from .progress import job_status_changed
from .runner import CANCELLED_REASON, run_job

logger = logging.getLogger(__name__)

RESTART_REASON = "Server restarted during processing"
CLAIM_MESSAGE = "Preparing dataset and model"


# ═══════════════════════════════════════════════════════════════════════════
# Submission
# ═══════════════════════════════════════════════════════════════════════════

def _require_int(payload: Dict[str, Any], key: str, bounds, default=None) -> int:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise ValidationError(f"{key} must be an integer")
    number = int(value)
    low, high = bounds
    if not low <= number <= high:
        raise ValidationError(f"{key} must be between {low} and {high}")
    return number


def _require_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} is required")
    return value.strip()


def validate_job_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Check a submission body and return the ``TrainingJob`` field values.

    Raises
    ------
    ValidationError
        On any missing or out-of-range field.  Nothing is persisted.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")

    architecture = payload.get("modelArchitecture", "default")
    if architecture not in ARCHITECTURES:
        raise ValidationError(f"modelArchitecture must be one of {', '.join(ARCHITECTURES)}")

    model_type = payload.get("modelType", "classification")
    if model_type not in MODEL_TYPES:
        raise ValidationError(f"modelType must be one of {', '.join(MODEL_TYPES)}")

    shape = payload.get("inputShape") or {}
    if not isinstance(shape, dict):
        raise ValidationError("inputShape must be an object")
    width = _require_int(shape, "width", (1, 4096), 224)
    height = _require_int(shape, "height", (1, 4096), 224)
    channels = _require_int(shape, "channels", (1, 3), 3)
    if channels not in CHANNELS:
        raise ValidationError("inputShape channels must be 1 or 3")

    split = payload.get("validationSplit", 0.2)
    if isinstance(split, bool) or not isinstance(split, (int, float)):
        raise ValidationError("validationSplit must be a number")
    low, high = VALIDATION_SPLIT_RANGE
    if not low <= float(split) <= high:
        raise ValidationError(f"validationSplit must be between {low} and {high}")

    body_parts = payload.get("applicableBodyParts") or []
    if not isinstance(body_parts, list) or not all(isinstance(p, str) for p in body_parts):
        raise ValidationError("applicableBodyParts must be a list of strings")

    if payload.get("datasetId") in (None, ""):
        raise ValidationError("datasetId is required")

    return {
        "name": _require_str(payload, "name"),
        "description": payload.get("description") or "",
        "model_type": model_type,
        "model_name": _require_str(payload, "modelName"),
        "model_version": _require_str(payload, "modelVersion"),
        "model_description": payload.get("modelDescription") or "",
        "model_architecture": architecture,
        "input_width": width,
        "input_height": height,
        "input_channels": channels,
        "applicable_body_parts": body_parts,
        "epochs": _require_int(payload, "epochs", EPOCHS_RANGE, 10),
        "batch_size": _require_int(payload, "batchSize", BATCH_SIZE_RANGE, 32),
        "validation_split": float(split),
    }


def submit_job(payload: Dict[str, Any], submitted_by: str) -> TrainingJob:
    """Validate and persist a new ``pending`` job.

    Raises
    ------
    Unauthenticated
        If *submitted_by* is empty.
    ValidationError
        On a malformed body.
    DatasetNotFound / DatasetNotReady
        If the referenced dataset is missing or not ``ready``.
    """
    if not submitted_by:
        raise Unauthenticated("A bearer identity is required to submit a job")

    fields = validate_job_payload(payload)

    try:
        dataset = Dataset.objects.get(pk=int(payload["datasetId"]))
    except (Dataset.DoesNotExist, TypeError, ValueError):
        raise DatasetNotFound(f"Dataset {payload.get('datasetId')} not found") from None
    if dataset.status != "ready":
        raise DatasetNotReady(f"Dataset '{dataset.name}' is {dataset.status}, not ready")

    job = TrainingJob.objects.create(
        submitted_by=submitted_by,
        dataset=dataset,
        dataset_name=dataset.name,
        total_epochs=fields["epochs"],
        status_message="Waiting for a worker",
        **fields,
    )
    logger.info(
        "Job %s submitted by %s: %s v%s on '%s' (%s, %d epochs)",
        job.pk, submitted_by, job.model_name, job.model_version,
        dataset.name, job.model_architecture, job.epochs,
    )
    job_status_changed.send(
        sender=TrainingJob, job_id=job.pk, status=TrainingJob.PENDING,
        previous=None, reason="",
    )
    return job


# ═══════════════════════════════════════════════════════════════════════════
# Claiming, cancelling, recovery
# ═══════════════════════════════════════════════════════════════════════════

def claim_job(job_id: int) -> bool:
    """Atomically move a job from ``pending`` to ``preparing``."""
    now = timezone.now()
    claimed = TrainingJob.objects.filter(pk=job_id, status=TrainingJob.PENDING).update(
        status=TrainingJob.PREPARING,
        status_message=CLAIM_MESSAGE,
        started_at=now,
        updated_at=now,
    )
    if claimed:
        logger.info("Job %s claimed", job_id)
        job_status_changed.send(
            sender=TrainingJob, job_id=job_id, status=TrainingJob.PREPARING,
            previous=TrainingJob.PENDING, reason="",
        )
    return bool(claimed)


def cancel_job(job_id: int) -> TrainingJob:
    """Cancel a job that no local worker is running.

    ``pending`` → ``failed`` immediately; ``preparing``/``training`` get
    ``cancel_requested`` so the owning dispatcher can signal its worker;
    terminal jobs are left untouched.

    Raises
    ------
    JobNotFound
        If no job has this id.
    """
    try:
        job = TrainingJob.objects.get(pk=job_id)
    except TrainingJob.DoesNotExist:
        raise JobNotFound(f"Training job {job_id} not found") from None

    if job.is_terminal:
        return job

    now = timezone.now()
    failed = TrainingJob.objects.filter(pk=job_id, status=TrainingJob.PENDING).update(
        status=TrainingJob.FAILED,
        status_message=CANCELLED_REASON,
        failure_reason=CANCELLED_REASON,
        cancel_requested=True,
        completed_at=now,
        updated_at=now,
    )
    if failed:
        logger.info("Job %s cancelled before it was claimed", job_id)
        job_status_changed.send(
            sender=TrainingJob, job_id=job_id, status=TrainingJob.FAILED,
            previous=TrainingJob.PENDING, reason=CANCELLED_REASON,
        )
    else:
        TrainingJob.objects.filter(pk=job_id).exclude(
            status__in=TrainingJob.TERMINAL_STATUSES,
        ).update(cancel_requested=True, updated_at=now)
        logger.info("Cancel requested for running job %s", job_id)

    job.refresh_from_db()
    return job


def recover_interrupted_jobs(stale_after: Optional[float] = None) -> int:
    """Fail jobs that no live worker is running any more.

    With ``stale_after=None`` every ``pending``/``preparing``/``training``
    job is failed; this is what the service's own startup does.  With a
    number of seconds, only ``preparing``/``training`` rows whose
    ``updated_at`` is older than that are failed.  Live dispatchers touch
    their jobs every tick, so a second process starting up leaves
    another one's work alone.

    Returns the number of jobs recovered.
    """
    reason = Interrupted(RESTART_REASON)
    now = timezone.now()
    if stale_after is None:
        jobs = TrainingJob.objects.filter(status__in=TrainingJob.ACTIVE_STATUSES)
    else:
        jobs = TrainingJob.objects.filter(
            status__in=(TrainingJob.PREPARING, TrainingJob.TRAINING),
            updated_at__lt=now - timedelta(seconds=stale_after),
        )
    count = jobs.update(
        status=TrainingJob.FAILED,
        status_message=reason.message,
        failure_reason=reason.message,
        completed_at=now,
        updated_at=now,
    )
    if count:
        logger.warning(
            "Marked %d interrupted training job(s) as failed (%s: %s).",
            count, reason.kind, reason.message,
        )
    return count


# ═══════════════════════════════════════════════════════════════════════════
# Orchestrator
# ═══════════════════════════════════════════════════════════════════════════

class JobOrchestrator:
    """Dispatcher thread plus a bounded pool of training workers.

    Parameters
    ----------
    max_workers : int, optional
        Concurrency ceiling; defaults to ``TRAINING_MAX_CONCURRENT_JOBS``.
    poll_interval : float, optional
        Seconds between dispatcher ticks when nothing wakes it.
    runner : callable, optional
        ``runner(job_id, cancel_event)``; defaults to ``run_job``.
    """

    def __init__(
        self,
        max_workers: Optional[int] = None,
        poll_interval: Optional[float] = None,
        runner: Callable[[int, threading.Event], Any] = run_job,
    ) -> None:
        self.max_workers = max(1, int(max_workers or settings.TRAINING_MAX_CONCURRENT_JOBS))
        self.poll_interval = float(poll_interval or settings.TRAINING_DISPATCH_INTERVAL)
        self.runner = runner

        self._lock = threading.Lock()
        self._cancel_flags: Dict[int, threading.Event] = {}
        self._futures: Dict[int, Future] = {}
        self._wakeup = threading.Event()
        self._stopping = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None

    # ── Lifecycle ───────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(
        self, *, dispatcher: bool = True, stale_after: Optional[float] = None,
    ) -> "JobOrchestrator":
        """Run restart recovery, then start the worker pool and dispatcher.

        ``stale_after`` is passed to ``recover_interrupted_jobs``; leave it
        ``None`` only when this process is the sole dispatcher.
        """
        with self._lock:
            if self._executor is not None:
                return self
            recover_interrupted_jobs(stale_after)
            self._stopping.clear()
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="training-worker",
            )
            if dispatcher:
                self._thread = threading.Thread(
                    target=self._dispatch_loop, name="training-dispatcher", daemon=True,
                )
                self._thread.start()
        logger.info("Training orchestrator started (%d worker(s))", self.max_workers)
        return self

    def stop(self, *, cancel_running: bool = False, wait: bool = True) -> None:
        self._stopping.set()
        self._wakeup.set()
        if cancel_running:
            with self._lock:
                for event in self._cancel_flags.values():
                    event.set()
        if self._thread is not None and wait:
            self._thread.join()
        self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info("Training orchestrator stopped")

    def wake(self) -> None:
        self._wakeup.set()

    def serve_forever(self) -> None:
        """Block until ``stop`` is called (used by ``run_trainer``)."""
        while not self._stopping.wait(timeout=1.0):
            pass

    # ── Dispatch ────────────────────────────────────────────────────────

    def active_job_ids(self) -> List[int]:
        with self._lock:
            return list(self._cancel_flags)

    def is_active(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._cancel_flags

    def _heartbeat(self) -> None:
        """Touch ``updated_at`` on the jobs this process is running."""
        active = self.active_job_ids()
        if active:
            TrainingJob.objects.filter(
                pk__in=active, status__in=TrainingJob.ACTIVE_STATUSES,
            ).update(updated_at=timezone.now())

    def _forward_cancel_requests(self) -> None:
        active = self.active_job_ids()
        if not active:
            return
        requested = TrainingJob.objects.filter(
            pk__in=active, cancel_requested=True,
        ).values_list("pk", flat=True)
        with self._lock:
            for job_id in requested:
                event = self._cancel_flags.get(job_id)
                if event is not None and not event.is_set():
                    logger.info("Forwarding cancel request to job %s", job_id)
                    event.set()

    def dispatch_once(self) -> List[int]:
        """Claim as many pending jobs as there are free workers.

        Returns the ids of the jobs started by this call.
        """
        if self._executor is None:
            raise RuntimeError("Orchestrator is not started")

        self._heartbeat()
        recover_interrupted_jobs(stale_after=settings.TRAINING_HEARTBEAT_TIMEOUT)
        self._forward_cancel_requests()

        with self._lock:
            free = self.max_workers - len(self._cancel_flags)
        if free <= 0:
            return []

        candidates = list(
            TrainingJob.objects.filter(status=TrainingJob.PENDING)
            .order_by("created_at", "id")
            .values_list("pk", flat=True)[:free]
        )
        started = []
        for job_id in candidates:
            if not claim_job(job_id):
                continue
            event = threading.Event()
            with self._lock:
                self._cancel_flags[job_id] = event
                self._futures[job_id] = self._executor.submit(self._run, job_id, event)
            started.append(job_id)
        return started

    def _run(self, job_id: int, event: threading.Event) -> None:
        try:
            self.runner(job_id, event)
        except Exception:
            logger.exception("Worker for job %s crashed", job_id)
        finally:
            with self._lock:
                self._cancel_flags.pop(job_id, None)
            connection.close()
            self._wakeup.set()

    def _dispatch_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                close_old_connections()
                self.dispatch_once()
            except DatabaseError:
                logger.exception("Dispatcher tick failed; retrying")
            self._wakeup.wait(timeout=self.poll_interval)
            self._wakeup.clear()
        connection.close()

    # ── Client operations ───────────────────────────────────────────────

    def submit(self, payload: Dict[str, Any], submitted_by: str) -> TrainingJob:
        job = submit_job(payload, submitted_by)
        self.wake()
        return job

    def cancel(self, job_id: int) -> TrainingJob:
        """Cancel *job_id*; see ``cancel_job`` for the non-local cases.

        Raises
        ------
        JobNotFound
            If no job has this id.
        """
        with self._lock:
            event = self._cancel_flags.get(job_id)
        if event is not None:
            event.set()
            logger.info("Cancel flag set for running job %s", job_id)
        return cancel_job(job_id)

    def wait(self, job_id: int, timeout: Optional[float] = None) -> TrainingJob:
        """Block until *job_id* is terminal and return its row.

        Raises
        ------
        TimeoutError
            If the job is still active after *timeout* seconds.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            job = TrainingJob.objects.get(pk=job_id)
            if job.is_terminal:
                return job
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise TimeoutError(f"Job {job_id} still {job.status} after {timeout}s")

            with self._lock:
                future = self._futures.get(job_id)
            if future is not None and not future.done():
                wait_futures([future], timeout=remaining)
            else:
                self.wake()
                time.sleep(0.05 if remaining is None else min(0.05, remaining))


_orchestrator: Optional[JobOrchestrator] = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> JobOrchestrator:
    """Return the process-wide orchestrator, starting it on first use.

    Several web processes may each start one, so startup recovery only
    fails jobs whose heartbeat is older than ``TRAINING_HEARTBEAT_TIMEOUT``.
    """
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = JobOrchestrator().start(
                stale_after=settings.TRAINING_HEARTBEAT_TIMEOUT,
            )
        return _orchestrator


def reset_orchestrator() -> None:
    """Stop and forget the process-wide orchestrator."""
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is not None:
            _orchestrator.stop(cancel_running=True)
            _orchestrator = None
