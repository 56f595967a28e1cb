import logging

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class DiagnosticsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'diagnostics'

    def ready(self):
        """Schedule recovery of training jobs interrupted by a server shutdown."""
        from django.db.models.signals import post_migrate
        post_migrate.connect(_recover_interrupted_jobs, sender=self)


def _recover_interrupted_jobs(sender, **kwargs):
    """Fail jobs left preparing/training with a stale heartbeat after a restart."""
    from django.conf import settings
    from django.db import DatabaseError
    from training.tasks import recover_interrupted_jobs

    try:
        recover_interrupted_jobs(stale_after=settings.TRAINING_HEARTBEAT_TIMEOUT)
    except DatabaseError:
        logger.exception("Restart recovery after migrate failed")
