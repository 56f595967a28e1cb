"""
Django settings for the MedScan training service.

Everything tuneable is read from the environment with a sensible
default so a checkout runs without any configuration.  The training
and inference code reads the ``DATA_ROOT`` / ``TRAINING_*`` /
``INFERENCE_*`` values below; nothing else in the tree hard-codes paths.
"""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


# ── Core ────────────────────────────────────────────────────────────────────

SECRET_KEY = os.environ.get("MEDSCAN_SECRET_KEY", "medscan-dev-secret-key")
DEBUG = _env_bool("MEDSCAN_DEBUG", True)
ALLOWED_HOSTS = os.environ.get("MEDSCAN_ALLOWED_HOSTS", "*").split(",")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "diagnostics.apps.DiagnosticsConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "medscan.urls"
WSGI_APPLICATION = "medscan.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("MEDSCAN_DB_PATH", str(BASE_DIR / "db.sqlite3")),
        # Worker threads write job status concurrently.
        "OPTIONS": {"timeout": 20},
        # File-backed so worker threads see the same test database.
        "TEST": {"NAME": str(BASE_DIR / "test_db.sqlite3")},
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

USE_TZ = True
TIME_ZONE = "UTC"

DATA_UPLOAD_MAX_MEMORY_SIZE = 10 * 1024 * 1024

# ── Storage layout ──────────────────────────────────────────────────────────

DATA_ROOT = Path(os.environ.get("MEDSCAN_DATA_ROOT", str(BASE_DIR / "data")))
DATASETS_ROOT = DATA_ROOT / "datasets"
MODELS_ROOT = DATA_ROOT / "models"

# ── Training orchestrator ───────────────────────────────────────────────────

TRAINING_MAX_CONCURRENT_JOBS = int(os.environ.get("MEDSCAN_MAX_JOBS", "2"))
TRAINING_DISPATCH_INTERVAL = 2.0          # seconds between pending-job polls
TRAINING_STATUS_WRITE_RETRIES = 3
TRAINING_STATUS_WRITE_BACKOFF = 0.2       # seconds between retries
TRAINING_HEARTBEAT_TIMEOUT = 120.0        # seconds before another process may fail a running job
# False when a separate `manage.py run_trainer` process owns the workers
TRAINING_EMBEDDED_DISPATCHER = _env_bool("MEDSCAN_EMBEDDED_DISPATCHER", True)

MODEL_WEIGHT_SHARD_BYTES = 4 * 1024 * 1024

# ── Inference ───────────────────────────────────────────────────────────────

INFERENCE_MOCK_MODE = _env_bool("MEDSCAN_MOCK_INFERENCE", False)

# ── Logging ─────────────────────────────────────────────────────────────────

os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "2")

LOG_LEVEL = os.environ.get("MEDSCAN_LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        },
    },
    "loggers": {
        "training": {"level": LOG_LEVEL},
        "diagnostics": {"level": LOG_LEVEL},
    },
    "root": {"handlers": ["console"], "level": "WARNING"},
}
