"""Service modules - Collaborators of the completion orchestrator

FlowRunService lives in .run_service and is imported from there; it depends
on the engine, which depends on these services.
"""
from .magic_link_service import MagicLinkService
from .notification_service import NotificationService
from .scheduling_service import StepJobScheduler, compute_due_at
from .assignment_service import AssignmentService, resolve_assignees

__all__ = [
    "MagicLinkService",
    "NotificationService",
    "StepJobScheduler",
    "compute_due_at",
    "AssignmentService",
    "resolve_assignees",
]
