"""
URL configuration for the diagnostics app (mounted under ``/api/``).

Route groups
------------
- Training API : submit / list / inspect / cancel / delete jobs.
- Registry API : catalog listing, status changes, sync, test prediction.
"""

from django.urls import path

from . import views

urlpatterns = [
    # ── Training jobs ───────────────────────────────────────────────────
    path("training/jobs/", views.api_training_jobs, name="api_training_jobs"),
    path("training/jobs/<int:job_id>/", views.api_training_job, name="api_training_job"),
    path(
        "training/jobs/<int:job_id>/cancel/",
        views.api_training_job_cancel,
        name="api_training_job_cancel",
    ),

    # ── Model registry ──────────────────────────────────────────────────
    path("models/", views.api_models, name="api_models"),
    path("models/sync/", views.api_models_sync, name="api_models_sync"),
    path("models/<int:model_id>/", views.api_model, name="api_model"),
    path("models/<int:model_id>/status/", views.api_model_status, name="api_model_status"),
    path("models/<int:model_id>/test/", views.api_model_test, name="api_model_test"),
]
