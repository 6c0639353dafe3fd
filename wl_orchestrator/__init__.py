"""
Supervision of long-running, git-sourced workloads.
"""

from .orchestrator import (
    RunningWorkload,
    RuntimeStatus,
    WorkloadOrchestrator,
    group_logs_by_stage,
    status_for_stage,
)

__all__ = [
    "RunningWorkload",
    "RuntimeStatus",
    "WorkloadOrchestrator",
    "group_logs_by_stage",
    "status_for_stage",
]
