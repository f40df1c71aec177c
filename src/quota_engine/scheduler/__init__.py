"""Background scheduling and the daily quota reset."""

from quota_engine.scheduler.reset import (
    ResetScheduler,
    SweepResult,
    compute_next_reset,
    needs_reset,
)
from quota_engine.scheduler.service import SchedulerService

__all__ = [
    "ResetScheduler",
    "SchedulerService",
    "SweepResult",
    "compute_next_reset",
    "needs_reset",
]
