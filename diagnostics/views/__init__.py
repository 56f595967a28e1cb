"""
View package for the MedScan diagnostics app.

Modules
-------
helpers.py      – Response envelopes, bearer identity, pagination.
training_api.py – Training job lifecycle APIs (submit, list, get, cancel, delete).
models_api.py   – Model catalog APIs (list, get, status, sync, test).
"""

# Re-export all views so urls.py can do: from .views import api_training_jobs, …
from .training_api import (                                           # noqa: F401
    api_training_jobs,
    api_training_job,
    api_training_job_cancel,
)
from .models_api import (                                             # noqa: F401
    api_models,
    api_model,
    api_model_status,
    api_models_sync,
    api_model_test,
)
