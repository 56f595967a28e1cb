"""
Run the training orchestrator as a standalone service.

    python manage.py run_trainer [--workers N] [--interval SECONDS]

Opens the database (exit status 1 if it cannot), fails any job a
previous process left non-terminal, then dispatches pending jobs until
interrupted.  Pair with ``MEDSCAN_EMBEDDED_DISPATCHER=0`` on the web
process so only this process claims jobs.
"""

import logging
import signal

from django.core.management.base import BaseCommand, CommandError
from django.db import DatabaseError, connection

from training.tasks import JobOrchestrator

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Run the training job dispatcher and worker pool until interrupted."

    def add_arguments(self, parser):
        parser.add_argument("--workers", type=int, default=None,
                            help="Concurrent jobs (default: TRAINING_MAX_CONCURRENT_JOBS).")
        parser.add_argument("--interval", type=float, default=None,
                            help="Seconds between dispatcher polls.")

    def handle(self, *args, **options):
        try:
            connection.ensure_connection()
            with connection.cursor() as cursor:
                cursor.execute("SELECT 1 FROM training_jobs LIMIT 1")
        except DatabaseError as exc:
            raise CommandError(f"Cannot open the job store: {exc}") from exc

        orchestrator = JobOrchestrator(
            max_workers=options["workers"], poll_interval=options["interval"],
        )

        def _shutdown(signum, frame):
            logger.info("Received signal %s, stopping dispatcher", signum)
            orchestrator.stop(cancel_running=True, wait=False)

        signal.signal(signal.SIGTERM, _shutdown)

        orchestrator.start()
        self.stdout.write("=" * 60)
        self.stdout.write("TRAINING ORCHESTRATOR RUNNING")
        self.stdout.write(f"  Workers  : {orchestrator.max_workers}")
        self.stdout.write(f"  Interval : {orchestrator.poll_interval}s")
        self.stdout.write("=" * 60)

        try:
            orchestrator.serve_forever()
        except KeyboardInterrupt:
            self.stdout.write("Interrupted, cancelling running jobs…")
            orchestrator.stop(cancel_running=True)
        self.stdout.write(self.style.SUCCESS("Training orchestrator stopped"))
