"""
Workflow: work-item lifecycle, SLA clock and run orchestration.

Usage:
    from govflow.workflow import LifecycleManager, RunOrchestrator, SlaClock

    run = orchestrator.create_run(tenant_id, month_period(2025, 1), owner, actor_id)
    orchestrator.start_run(tenant_id, run.id, actor_id)
    clock.tick(tenant_id)
"""

from govflow.workflow.lifecycle import LifecycleManager
from govflow.workflow.orchestrator import (
    DEFAULT_CLOSE_TEMPLATES,
    RunOrchestrator,
    RunProgress,
    WorkItemTemplate,
    month_period,
)
from govflow.workflow.sla import (
    LATE_ESCALATION_WINDOW,
    SlaClock,
    SlaSummary,
    SlaTransition,
    TickResult,
    compute_severity,
)

__all__ = [
    "LifecycleManager",
    "RunOrchestrator",
    "RunProgress",
    "WorkItemTemplate",
    "DEFAULT_CLOSE_TEMPLATES",
    "month_period",
    "SlaClock",
    "SlaSummary",
    "SlaTransition",
    "TickResult",
    "LATE_ESCALATION_WINDOW",
    "compute_severity",
]
