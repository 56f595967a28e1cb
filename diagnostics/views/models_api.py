"""
Model catalog API endpoints.

GET   /api/models/               – Paginated catalog (?type, status, search, page, limit).
GET   /api/models/<id>/          – One entry including performance.
PATCH /api/models/<id>/status/   – Move to active / inactive / testing / archived.
POST  /api/models/sync/          – Reconcile the catalog with the artifact tree.
POST  /api/models/<id>/test/     – Run a prediction on an uploaded ``image``.
"""

from __future__ import annotations

import logging

from django.db.models import Q
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from diagnostics.model_loader import get_runtime
from diagnostics.models import MLModel
from training.exceptions import ModelNotFound, ValidationError
from training.registry import sync_catalog
from .helpers import (
    ALLOWED_CONTENT_TYPES,
    MAX_UPLOAD_SIZE,
    api_view,
    bearer_identity,
    page_params,
    paginate,
    parse_json_body,
    success,
)

logger = logging.getLogger(__name__)

SERVING_STATUSES = ("active", "testing")


def _get_model(model_id: int) -> MLModel:
    try:
        return MLModel.objects.get(pk=model_id)
    except MLModel.DoesNotExist:
        raise ModelNotFound(f"Model {model_id} not found") from None


@require_GET
@api_view
def api_models(request):
    """Catalog listing with optional filters."""
    qs = MLModel.objects.all()

    model_type = request.GET.get("type")
    if model_type:
        qs = qs.filter(model_type=model_type)
    status = request.GET.get("status")
    if status:
        qs = qs.filter(status=status)
    search = (request.GET.get("search") or "").strip()
    if search:
        qs = qs.filter(Q(name__icontains=search) | Q(description__icontains=search))

    page, limit = page_params(request)
    models, pagination = paginate(qs, page, limit)
    return success({
        "models": [m.to_dict() for m in models],
        "pagination": pagination,
    })


@require_GET
@api_view
def api_model(request, model_id: int):
    return success({"model": _get_model(model_id).to_dict()})


@csrf_exempt
@require_http_methods(["PATCH"])
@api_view
def api_model_status(request, model_id: int):
    """Change a model's status.

    Leaving ``active``/``testing`` drops the network from the inference
    cache.
    """
    model = _get_model(model_id)
    status = parse_json_body(request).get("status")
    valid = dict(MLModel.STATUS_CHOICES)
    if status not in valid:
        raise ValidationError(f"status must be one of {', '.join(valid)}")

    previous = model.status
    model.status = status
    model.save(update_fields=["status", "updated_at"])
    if status not in SERVING_STATUSES:
        get_runtime().drop(model.pk)

    logger.info("Model %s status %s → %s", model.pk, previous, status)
    return success({"model": model.to_dict()})


@csrf_exempt
@require_POST
@api_view
def api_models_sync(request):
    counts = sync_catalog(created_by=bearer_identity(request))
    return success(counts)


@csrf_exempt
@require_POST
@api_view
def api_model_test(request, model_id: int):
    """Diagnose an uploaded image with this model.

    Expects multipart/form-data with a JPEG or PNG under ``image``.
    """
    upload = request.FILES.get("image")
    if upload is None:
        raise ValidationError("No image uploaded (field 'image')")
    if upload.content_type not in ALLOWED_CONTENT_TYPES:
        raise ValidationError(f"Unsupported content type {upload.content_type}; use JPEG or PNG")
    if upload.size > MAX_UPLOAD_SIZE:
        raise ValidationError(f"Image larger than {MAX_UPLOAD_SIZE // (1024 * 1024)} MB")

    prediction = get_runtime().predict(model_id, upload.read())
    return success({"prediction": prediction})
