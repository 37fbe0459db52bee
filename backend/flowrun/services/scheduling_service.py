"""Step Job Scheduler - Due dates and due-date notification jobs for active steps

Reminder and escalation cadence belongs to the external sender; this only
computes when a step is due and leaves one scheduled STEP_DUE job in the
outbox for it.
"""
from datetime import datetime, timedelta
from typing import Optional

from ..domain.models import FlowRun, StepDefinition, StepDue, StepExecution
from ..domain.enums import DueType, DueUnit, NotificationTemplateKey
from ..repositories.base import StepExecutionRepository
from .notification_service import NotificationService
from ..utils.logger import get_logger
from ..utils.time import ensure_utc, format_iso, utc_now

logger = get_logger(__name__)

HOURS_PER_UNIT = {
    DueUnit.HOURS: 1,
    DueUnit.DAYS: 24,
    DueUnit.WEEKS: 24 * 7,
}


def compute_due_at(
    due: Optional[StepDue],
    started_at: datetime,
    run_due_at: Optional[datetime] = None
) -> Optional[datetime]:
    """
    Compute when a step is due

    Args:
        due: Step due configuration
        started_at: When the step was activated
        run_due_at: Due date of the whole run, for BEFORE_FLOW_DUE

    Returns:
        Due datetime, or None when the step has no (computable) due date
    """
    if due is None:
        return None

    offset = timedelta(hours=due.value * HOURS_PER_UNIT[due.unit])

    if due.type == DueType.FIXED:
        return ensure_utc(due.date) if due.date else None

    if due.type == DueType.BEFORE_FLOW_DUE:
        if run_due_at is None:
            return None
        return ensure_utc(run_due_at) - offset

    if due.value <= 0:
        return None
    return ensure_utc(started_at) + offset


class StepJobScheduler:
    """Schedules and cancels the due-date jobs of step executions"""

    def __init__(self, step_repo: StepExecutionRepository, notification_service: NotificationService):
        self.step_repo = step_repo
        self.notifications = notification_service

    async def schedule_step_jobs(
        self,
        step_execution: StepExecution,
        step_definition: Optional[StepDefinition],
        run: FlowRun
    ) -> Optional[datetime]:
        """Persist the step's due date and enqueue its due notification"""
        due = step_definition.due if step_definition else None
        started_at = step_execution.started_at or utc_now()
        due_at = compute_due_at(due, started_at, run.due_at)
        if due_at is None:
            return None

        await self.step_repo.update(step_execution.step_execution_id, {"due_at": due_at})

        recipient = (
            step_execution.assigned_to_contact_id
            or step_execution.assigned_to_user_id
            or run.started_by_id
        )
        await self.notifications.enqueue_notification(
            template_key=NotificationTemplateKey.STEP_DUE,
            recipients=[recipient] if recipient else [],
            payload={
                "flow_run_id": run.flow_run_id,
                "flow_run_name": run.name,
                "step_id": step_execution.step_id,
                "due_at": format_iso(due_at),
            },
            flow_run_id=run.flow_run_id,
            step_execution_id=step_execution.step_execution_id,
            send_after=due_at
        )

        logger.info(
            f"Scheduled due date {format_iso(due_at)}",
            extra={
                "flow_run_id": run.flow_run_id,
                "step_execution_id": step_execution.step_execution_id,
            }
        )
        return due_at

    async def cancel_step_jobs(self, step_execution_id: str) -> int:
        """Cancel every pending job of a step"""
        return await self.notifications.cancel_step_notifications(step_execution_id)
