"""
Training job API endpoints.

GET    /api/training/jobs/               – Paginated job list (?page, limit, status).
POST   /api/training/jobs/               – Submit a job (bearer identity required).
GET    /api/training/jobs/<id>/          – One job with its progress.
DELETE /api/training/jobs/<id>/          – Remove a finished job record.
PATCH  /api/training/jobs/<id>/cancel/   – Cancel a pending or running job.
"""

from __future__ import annotations

import logging
from typing import Optional

from django.conf import settings
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from diagnostics.models import TrainingJob
from training.exceptions import JobActive, JobNotFound, ValidationError
from training.tasks import JobOrchestrator, cancel_job, get_orchestrator, submit_job
from .helpers import (
    api_view,
    bearer_identity,
    page_params,
    paginate,
    parse_json_body,
    success,
)

logger = logging.getLogger(__name__)


def _orchestrator() -> Optional[JobOrchestrator]:
    """The in-process orchestrator, or ``None`` when ``run_trainer`` owns the workers."""
    if getattr(settings, "TRAINING_EMBEDDED_DISPATCHER", True):
        return get_orchestrator()
    return None


def _get_job(job_id: int) -> TrainingJob:
    try:
        return TrainingJob.objects.get(pk=job_id)
    except TrainingJob.DoesNotExist:
        raise JobNotFound(f"Training job {job_id} not found") from None


@csrf_exempt
@require_http_methods(["GET", "POST"])
@api_view
def api_training_jobs(request):
    """List jobs (GET) or submit a new one (POST).

    POST body
    ---------
    ``{name, description?, datasetId, modelType, modelName, modelVersion,
    modelDescription?, modelArchitecture, inputShape{width,height,channels},
    applicableBodyParts?, epochs, batchSize, validationSplit}``
    """
    if request.method == "POST":
        identity = bearer_identity(request, required=True)
        payload = parse_json_body(request)
        orchestrator = _orchestrator()
        if orchestrator is not None:
            job = orchestrator.submit(payload, identity)
        else:
            job = submit_job(payload, identity)
        return success({"job": job.to_dict()}, status=201)

    qs = TrainingJob.objects.all()
    status = request.GET.get("status")
    if status:
        if status not in dict(TrainingJob.STATUS_CHOICES):
            raise ValidationError(f"Unknown status '{status}'")
        qs = qs.filter(status=status)

    page, limit = page_params(request)
    jobs, pagination = paginate(qs, page, limit)
    return success({
        "jobs": [job.to_dict() for job in jobs],
        "pagination": pagination,
    })


@csrf_exempt
@require_http_methods(["GET", "DELETE"])
@api_view
def api_training_job(request, job_id: int):
    """Return one job (GET) or delete its record (DELETE).

    Deleting keeps any catalog entry the job produced.
    """
    job = _get_job(job_id)

    if request.method == "DELETE":
        if not job.is_terminal:
            raise JobActive(f"Training job {job_id} is {job.status}; cancel it first")
        job.delete()
        logger.info("Deleted training job %s", job_id)
        return success({"id": job_id, "deleted": True})

    return success({"job": job.to_dict()})


@csrf_exempt
@require_http_methods(["PATCH", "POST"])
@api_view
def api_training_job_cancel(request, job_id: int):
    """Cancel a job; a no-op success for jobs that already finished."""
    orchestrator = _orchestrator()
    if orchestrator is not None:
        job = orchestrator.cancel(job_id)
    else:
        job = cancel_job(job_id)
    return success({"job": job.to_dict()})
