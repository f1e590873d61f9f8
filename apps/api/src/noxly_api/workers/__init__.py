"""Background workers started by the application lifespan."""

from .pending_sweep import PendingUsageSweepWorker

__all__ = ["PendingUsageSweepWorker"]
