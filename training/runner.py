"""
Worker path for one training job — data → model → train → evaluate → register.

The dispatcher has already moved the job to ``preparing`` when
``run_job`` is called.  From there:

1. Snapshot the config into ``<artifact dir>/config.json``.
2. Index and split the dataset (C2) → sample counts on the job.
3. Build and compile the network (C3).
4. ``training``: run the step loop (C4), one progress write per epoch.
5. Final evaluation pass → metrics.json, confusion_matrix.png.
6. Save the artifact and create the catalog entry (C6).
7. ``completed`` with the job linked to its catalog entry.

Any error moves the job to ``failed`` with a readable reason.  If the row
is made terminal by someone else (restart recovery in another process)
the worker stops at its next write, never registers a model, and
returns the stored row.  Whatever happens, the worker drops its model
and batch sources and runs a GC pass before returning.
"""

from __future__ import annotations

import gc
import json
import logging
import threading
from typing import Optional

from diagnostics.models import TrainingJob
from .architectures import build_model
from .config import JobConfig
from .data import prepare_dataset
from .evaluate import evaluate_model
from .exceptions import Cancelled, DatasetNotFound, JobSuperseded, TrainingError
from .progress import ProgressStore
from .registry import artifact_dir, register_model, save_artifact
from .train import TrainingLoop

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled by user"


def run_job(job_id: int, cancel_event: Optional[threading.Event] = None) -> TrainingJob:
    """Execute one claimed job end-to-end and return its final row.

    Parameters
    ----------
    job_id : int
        Primary key of a job in ``preparing``.
    cancel_event : threading.Event, optional
        Set by the orchestrator to request cancellation.
    """
    cancel_event = cancel_event or threading.Event()
    job = TrainingJob.objects.select_related("dataset").get(pk=job_id)
    store = ProgressStore(job)
    model = prepared = None

    try:
        dataset = job.dataset
        if dataset is None:
            raise DatasetNotFound(f"Dataset '{job.dataset_name}' no longer exists")

        # ── 1. Config snapshot ──────────────────────────────────────────
        config = JobConfig.from_job(job)
        output_dir = artifact_dir(job.pk)
        output_dir.mkdir(parents=True, exist_ok=True)
        (output_dir / "config.json").write_text(
            json.dumps(config.to_dict(), indent=2), encoding="utf-8",
        )

        # ── 2. Data ─────────────────────────────────────────────────────
        prepared = prepare_dataset(dataset.root, dataset.class_names, config)
        store.update(
            train_samples=prepared.train_count,
            val_samples=prepared.val_count,
            total_epochs=config.epochs,
        )

        # ── 3. Model ────────────────────────────────────────────────────
        model = build_model(
            config.architecture, config.input_shape, len(prepared.class_names),
        )
        if cancel_event.is_set():
            raise Cancelled(CANCELLED_REASON)

        # ── 4. Train ────────────────────────────────────────────────────
        store.transition(
            TrainingJob.TRAINING,
            message=f"Training for {config.epochs} epoch(s)",
        )
        result = TrainingLoop(
            model, prepared, config.epochs,
            cancel_event=cancel_event,
            on_epoch=store.record_epoch,
        ).run()

        (output_dir / "training_log.json").write_text(
            json.dumps([m.to_dict() for m in result.history], indent=2),
            encoding="utf-8",
        )

        # ── 5. Evaluate ─────────────────────────────────────────────────
        eval_source = prepared.validation if prepared.validation is not None else prepared.train
        evaluation = evaluate_model(
            model, eval_source, prepared.class_names, output_dir, cancel_event,
        )
        store.update(
            evaluation_loss=evaluation["loss"],
            evaluation_accuracy=evaluation["accuracy"],
            training_time=round(result.training_time, 3),
        )

        # ── 6. Artifact + catalog ───────────────────────────────────────
        store.ensure_active()
        save_artifact(model, output_dir, metadata={
            "jobId": job.pk,
            "modelName": job.model_name,
            "modelVersion": job.model_version,
            "modelType": job.model_type,
            "description": job.model_description,
            "architecture": config.architecture,
            "applicableBodyParts": job.applicable_body_parts or [],
            "classNames": prepared.class_names,
            "inputShape": config.input_shape.to_dict(),
            "datasetName": job.dataset_name,
        })
        entry = register_model(job, prepared.class_names, result, evaluation, output_dir)

        # ── 7. Done ─────────────────────────────────────────────────────
        try:
            store.transition(
                TrainingJob.COMPLETED,
                message=f"Registered {entry.name} v{entry.version}",
                model=entry,
            )
        except JobSuperseded:
            entry.delete()
            raise
        logger.info(
            "═══ JOB %s COMPLETE ═══ accuracy=%.4f loss=%.4f model=%s",
            job.pk, evaluation["accuracy"], evaluation["loss"], entry.pk,
        )

    except JobSuperseded as exc:
        logger.warning("Job %s: %s; dropping its results", job.pk, exc.message)
        store.reload()
    except Cancelled:
        logger.info("Job %s cancelled", job.pk)
        store.fail(CANCELLED_REASON)
    except TrainingError as exc:
        logger.warning("Job %s failed: %s", job.pk, exc.message)
        store.fail(exc.message)
    except Exception as exc:
        logger.exception("Job %s failed unexpectedly", job.pk)
        store.fail(f"Training failed: {exc}")
    finally:
        del model, prepared
        gc.collect()

    return store.job
