"""Repository Protocols - Persistence operations the engine and services depend on

Two backends implement these: MongoDB (motor) for deployments and an
in-memory store for tests and embedding.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from ..domain.models import (
    AccessToken, Contact, FlowDefinition, FlowRun, NotificationOutbox,
    StepExecution, StepExecutionAssignee
)
from ..domain.enums import FlowRunStatus, StepExecutionStatus


class StepExecutionRepository(Protocol):
    """Step execution rows and their group assignee records"""

    async def list_for_run(self, flow_run_id: str) -> List[StepExecution]:
        """All rows of a run ordered by step_index, then dynamic_index."""

    async def get(self, step_execution_id: str) -> Optional[StepExecution]:
        """Row by id."""

    async def create_many(self, executions: List[StepExecution]) -> List[str]:
        """Insert rows, dropping any that duplicate (flow_run_id, step_id, branch_path).

        Returns the ids actually inserted.
        """

    async def transition_status(
        self,
        step_execution_id: str,
        from_statuses: Iterable[StepExecutionStatus],
        to_status: StepExecutionStatus,
        updates: Optional[Dict[str, Any]] = None
    ) -> Optional[StepExecution]:
        """Conditional status change; None when the row is not in from_statuses."""

    async def update(self, step_execution_id: str, updates: Dict[str, Any]) -> Optional[StepExecution]:
        """Unconditional field update."""

    async def create_assignees(self, assignees: List[StepExecutionAssignee]) -> None:
        """Insert group assignee records."""

    async def list_assignees(self, step_execution_id: str) -> List[StepExecutionAssignee]:
        """Assignee records of a group step."""

    async def complete_assignee(
        self,
        step_execution_id: str,
        assignee_id: str,
        result_data: Dict[str, Any],
        completed_at: datetime
    ) -> Optional[StepExecutionAssignee]:
        """Conditional PENDING -> COMPLETED of an assignee of this step; None when already completed or not one of its assignees."""


class FlowRunRepository(Protocol):
    """Flow run documents"""

    async def create(self, run: FlowRun) -> FlowRun:
        """Insert a run."""

    async def get(self, flow_run_id: str) -> Optional[FlowRun]:
        """Run by id."""

    async def find_by_parent_step(self, parent_step_execution_id: str) -> Optional[FlowRun]:
        """Child run launched by a SUB_FLOW step execution."""

    async def update(self, flow_run_id: str, updates: Dict[str, Any]) -> Optional[FlowRun]:
        """Unconditional field update."""

    async def transition_status(
        self,
        flow_run_id: str,
        from_statuses: Iterable[FlowRunStatus],
        to_status: FlowRunStatus,
        updates: Optional[Dict[str, Any]] = None
    ) -> Optional[FlowRun]:
        """Conditional status change; None when the run is not in from_statuses."""


class FlowRepository(Protocol):
    """Flow definitions"""

    async def save(self, flow: FlowDefinition) -> FlowDefinition:
        """Insert or replace a definition."""

    async def get(self, flow_id: str) -> Optional[FlowDefinition]:
        """Definition by id."""


class NotificationRepository(Protocol):
    """Notification outbox"""

    async def create_notification(self, notification: NotificationOutbox) -> NotificationOutbox:
        """Insert an outbox record."""

    async def list_for_step(self, step_execution_id: str) -> List[NotificationOutbox]:
        """Outbox records of a step execution."""

    async def cancel_pending_for_step(self, step_execution_id: str) -> int:
        """Mark the step's PENDING records CANCELLED; returns how many changed."""


class AccessTokenRepository(Protocol):
    """Magic link tokens"""

    async def create(self, token: AccessToken) -> AccessToken:
        """Insert a token."""

    async def get(self, token: str) -> Optional[AccessToken]:
        """Token record by value."""

    async def mark_used(self, token: str, used_at: datetime) -> Optional[AccessToken]:
        """Record first use; returns the updated record."""


class ContactRepository(Protocol):
    """External contacts"""

    async def save(self, contact: Contact) -> Contact:
        """Insert or replace a contact."""

    async def get(self, contact_id: str) -> Optional[Contact]:
        """Contact by id."""
