"""
Root URL configuration for the MedScan project.

All training and model-registry endpoints live under ``/api/``.
"""

from django.urls import include, path

urlpatterns = [
    path("api/", include("diagnostics.urls")),
]
