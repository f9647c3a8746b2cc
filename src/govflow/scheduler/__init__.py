"""
Scheduler for periodic SLA evaluation.

The SLA clock is a batch process: each pass ticks every tenant with open
work. The built-in scheduler runs passes in a daemon thread; deployments
that prefer system cron can call `govflow sla tick --all` instead.

Usage:
    from govflow.scheduler import SlaScheduler

    scheduler = SlaScheduler(service, interval_seconds=900, state_dir=state_dir)
    scheduler.start()
    print(scheduler.get_status().last_run)
    scheduler.stop()
"""

from govflow.scheduler.sla_scheduler import (
    ScheduleStatus,
    SchedulerError,
    SlaScheduler,
)

__all__ = [
    "SlaScheduler",
    "ScheduleStatus",
    "SchedulerError",
]
