"""Background jobs module."""

from app.jobs.scheduler import setup_scheduler, shutdown_scheduler
from app.jobs.sync_job import DatabaseJobLock, run_periodic_sync

__all__ = ["DatabaseJobLock", "run_periodic_sync", "setup_scheduler", "shutdown_scheduler"]
