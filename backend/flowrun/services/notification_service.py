"""Notification Service - Outbox notifications for run events

Notifications are written to the outbox and delivered by an external
sender. Nothing here talks to an email provider.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..domain.models import (
    AccessToken, FlowRun, NotificationOutbox, StepExecution, StepExecutionAssignee
)
from ..domain.enums import NotificationStatus, NotificationTemplateKey
from ..domain.errors import NotificationSendError
from ..repositories.base import ContactRepository, NotificationRepository
from .magic_link_service import MagicLinkService
from ..utils.idgen import generate_notification_id
from ..utils.time import format_iso, utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class NotificationService:
    """Service for enqueueing notifications"""

    def __init__(
        self,
        repo: NotificationRepository,
        contact_repo: ContactRepository,
        magic_links: MagicLinkService
    ):
        self.repo = repo
        self.contact_repo = contact_repo
        self.magic_links = magic_links

    # =========================================================================
    # Outbox Creation
    # =========================================================================

    async def enqueue_notification(
        self,
        template_key: NotificationTemplateKey,
        recipients: List[str],
        payload: Dict[str, Any],
        flow_run_id: Optional[str] = None,
        step_execution_id: Optional[str] = None,
        send_after: Optional[datetime] = None
    ) -> NotificationOutbox:
        """
        Enqueue a notification for sending

        Notifications are stored in outbox and sent asynchronously.
        """
        notification = NotificationOutbox(
            notification_id=generate_notification_id(),
            flow_run_id=flow_run_id,
            step_execution_id=step_execution_id,
            template_key=template_key,
            recipients=recipients,
            payload=payload,
            status=NotificationStatus.PENDING,
            send_after=send_after,
            created_at=utc_now()
        )

        return await self.repo.create_notification(notification)

    async def cancel_step_notifications(self, step_execution_id: str) -> int:
        """Cancel the unsent notifications of a step"""
        return await self.repo.cancel_pending_for_step(step_execution_id)

    # =========================================================================
    # Run Events
    # =========================================================================

    async def notify_step_completed(self, step_execution: StepExecution, run: FlowRun) -> Optional[NotificationOutbox]:
        """Tell the run coordinator that a step finished"""
        if not run.started_by_id:
            logger.debug(
                "Run has no coordinator, skipping step completed notification",
                extra={"flow_run_id": run.flow_run_id}
            )
            return None

        return await self.enqueue_notification(
            template_key=NotificationTemplateKey.STEP_COMPLETED,
            recipients=[run.started_by_id],
            payload={
                "flow_run_id": run.flow_run_id,
                "flow_run_name": run.name,
                "step_id": step_execution.step_id,
                "step_execution_id": step_execution.step_execution_id,
                "completed_by_id": step_execution.completed_by_id,
            },
            flow_run_id=run.flow_run_id,
            step_execution_id=step_execution.step_execution_id
        )

    async def notify_flow_completed(self, run: FlowRun) -> Optional[NotificationOutbox]:
        """Tell the run coordinator that the whole run finished"""
        if not run.started_by_id:
            return None

        completed_at = run.completed_at or utc_now()
        return await self.enqueue_notification(
            template_key=NotificationTemplateKey.FLOW_COMPLETED,
            recipients=[run.started_by_id],
            payload={
                "flow_run_id": run.flow_run_id,
                "flow_run_name": run.name,
                "completed_at": format_iso(completed_at),
            },
            flow_run_id=run.flow_run_id
        )

    async def issue_access_and_notify(
        self,
        step_execution: StepExecution,
        run: FlowRun,
        assignee: Optional[StepExecutionAssignee] = None,
        step_name: Optional[str] = None
    ) -> AccessToken:
        """
        Issue a magic link to an external contact and send the task email

        Args:
            step_execution: Step the contact must act on
            run: Owning flow run
            assignee: Group assignee record; None for a single contact assignee
            step_name: Display name for the email

        Raises:
            NotificationSendError: The contact could not be found
        """
        contact_id = assignee.contact_id if assignee else step_execution.assigned_to_contact_id
        if not contact_id:
            raise NotificationSendError(
                "Step has no contact assignee",
                details={"step_execution_id": step_execution.step_execution_id}
            )

        contact = await self.contact_repo.get(contact_id)
        if contact is None:
            raise NotificationSendError(
                f"Contact {contact_id} not found",
                details={"step_execution_id": step_execution.step_execution_id}
            )

        token = await self.magic_links.create_magic_link(
            step_execution.step_execution_id,
            assignee_id=assignee.assignee_id if assignee else None
        )

        await self.enqueue_notification(
            template_key=NotificationTemplateKey.TASK_ASSIGNED,
            recipients=[contact.email],
            payload={
                "contact_name": contact.name,
                "step_name": step_name or f"Step {step_execution.step_index + 1}",
                "flow_run_name": run.name,
                "task_url": self.magic_links.task_url(token),
                "expires_at": format_iso(token.expires_at),
            },
            flow_run_id=run.flow_run_id,
            step_execution_id=step_execution.step_execution_id
        )

        logger.info(
            "Issued magic link",
            extra={
                "flow_run_id": run.flow_run_id,
                "step_execution_id": step_execution.step_execution_id,
                "assignee_id": assignee.assignee_id if assignee else None,
            }
        )
        return token
