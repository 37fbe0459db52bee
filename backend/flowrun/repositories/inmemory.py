"""In-Memory Repositories - Process-local implementations of the repository protocols

Rows are copied on the way in and out so callers never share state with the
store. Writes are serialized with an asyncio.Lock, which gives conditional
updates and check-then-create the same atomicity the Mongo backend gets
from find_one_and_update and the unique index.
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..domain.models import (
    AccessToken, Contact, FlowDefinition, FlowRun, NotificationOutbox,
    StepExecution, StepExecutionAssignee
)
from ..domain.enums import AssigneeStatus, FlowRunStatus, NotificationStatus, StepExecutionStatus
from ..domain.errors import AlreadyExistsError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class InMemoryStepExecutionRepository:
    """Step execution rows kept in a dict"""

    def __init__(self):
        self._executions: Dict[str, StepExecution] = {}
        self._assignees: Dict[str, StepExecutionAssignee] = {}
        self._lock = asyncio.Lock()

    def _branch_key(self, execution: StepExecution) -> Tuple[str, str, Optional[str]]:
        return execution.flow_run_id, execution.step_id, execution.branch_path

    async def list_for_run(self, flow_run_id: str) -> List[StepExecution]:
        rows = [e for e in self._executions.values() if e.flow_run_id == flow_run_id]
        rows.sort(key=lambda e: (e.step_index, e.dynamic_index if e.dynamic_index is not None else -1))
        return [e.model_copy(deep=True) for e in rows]

    async def get(self, step_execution_id: str) -> Optional[StepExecution]:
        execution = self._executions.get(step_execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def create_many(self, executions: List[StepExecution]) -> List[str]:
        created: List[str] = []
        async with self._lock:
            taken = {self._branch_key(e) for e in self._executions.values()}
            for execution in executions:
                key = self._branch_key(execution)
                if key in taken or execution.step_execution_id in self._executions:
                    continue
                taken.add(key)
                self._executions[execution.step_execution_id] = execution.model_copy(deep=True)
                created.append(execution.step_execution_id)
        if len(created) < len(executions):
            logger.info(f"Dropped {len(executions) - len(created)} duplicate step execution(s)")
        return created

    async def transition_status(
        self,
        step_execution_id: str,
        from_statuses: Iterable[StepExecutionStatus],
        to_status: StepExecutionStatus,
        updates: Optional[Dict[str, Any]] = None
    ) -> Optional[StepExecution]:
        allowed = set(from_statuses)
        async with self._lock:
            current = self._executions.get(step_execution_id)
            if current is None or current.status not in allowed:
                return None
            changes = dict(updates or {})
            changes["status"] = to_status
            updated = current.model_copy(update=changes, deep=True)
            self._executions[step_execution_id] = updated
            return updated.model_copy(deep=True)

    async def update(self, step_execution_id: str, updates: Dict[str, Any]) -> Optional[StepExecution]:
        async with self._lock:
            current = self._executions.get(step_execution_id)
            if current is None:
                return None
            updated = current.model_copy(update=dict(updates), deep=True)
            self._executions[step_execution_id] = updated
            return updated.model_copy(deep=True)

    async def create_assignees(self, assignees: List[StepExecutionAssignee]) -> None:
        async with self._lock:
            for assignee in assignees:
                if assignee.assignee_id in self._assignees:
                    raise AlreadyExistsError(f"Assignee {assignee.assignee_id} already exists")
                self._assignees[assignee.assignee_id] = assignee.model_copy(deep=True)

    async def list_assignees(self, step_execution_id: str) -> List[StepExecutionAssignee]:
        rows = [a for a in self._assignees.values() if a.step_execution_id == step_execution_id]
        rows.sort(key=lambda a: a.assignee_id)
        return [a.model_copy(deep=True) for a in rows]

    async def complete_assignee(
        self,
        step_execution_id: str,
        assignee_id: str,
        result_data: Dict[str, Any],
        completed_at: datetime
    ) -> Optional[StepExecutionAssignee]:
        async with self._lock:
            current = self._assignees.get(assignee_id)
            if current is None or current.step_execution_id != step_execution_id:
                return None
            if current.status != AssigneeStatus.PENDING:
                return None
            updated = current.model_copy(update={
                "status": AssigneeStatus.COMPLETED,
                "result_data": dict(result_data),
                "completed_at": completed_at,
            }, deep=True)
            self._assignees[assignee_id] = updated
            return updated.model_copy(deep=True)


class InMemoryFlowRunRepository:
    """Flow runs kept in a dict"""

    def __init__(self):
        self._runs: Dict[str, FlowRun] = {}
        self._lock = asyncio.Lock()

    async def create(self, run: FlowRun) -> FlowRun:
        async with self._lock:
            if run.flow_run_id in self._runs:
                raise AlreadyExistsError(f"Flow run {run.flow_run_id} already exists")
            self._runs[run.flow_run_id] = run.model_copy(deep=True)
        return run

    async def get(self, flow_run_id: str) -> Optional[FlowRun]:
        run = self._runs.get(flow_run_id)
        return run.model_copy(deep=True) if run else None

    async def find_by_parent_step(self, parent_step_execution_id: str) -> Optional[FlowRun]:
        for run in self._runs.values():
            if run.parent_step_execution_id == parent_step_execution_id:
                return run.model_copy(deep=True)
        return None

    async def update(self, flow_run_id: str, updates: Dict[str, Any]) -> Optional[FlowRun]:
        async with self._lock:
            current = self._runs.get(flow_run_id)
            if current is None:
                return None
            updated = current.model_copy(update=dict(updates), deep=True)
            self._runs[flow_run_id] = updated
            return updated.model_copy(deep=True)

    async def transition_status(
        self,
        flow_run_id: str,
        from_statuses: Iterable[FlowRunStatus],
        to_status: FlowRunStatus,
        updates: Optional[Dict[str, Any]] = None
    ) -> Optional[FlowRun]:
        allowed = set(from_statuses)
        async with self._lock:
            current = self._runs.get(flow_run_id)
            if current is None or current.status not in allowed:
                return None
            changes = dict(updates or {})
            changes["status"] = to_status
            updated = current.model_copy(update=changes, deep=True)
            self._runs[flow_run_id] = updated
            return updated.model_copy(deep=True)


class InMemoryFlowRepository:
    """Flow definitions kept in a dict"""

    def __init__(self):
        self._flows: Dict[str, FlowDefinition] = {}

    async def save(self, flow: FlowDefinition) -> FlowDefinition:
        self._flows[flow.flow_id] = flow.model_copy(deep=True)
        return flow

    async def get(self, flow_id: str) -> Optional[FlowDefinition]:
        flow = self._flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None


class InMemoryNotificationRepository:
    """Notification outbox kept in a list"""

    def __init__(self):
        self.notifications: List[NotificationOutbox] = []
        self._lock = asyncio.Lock()

    async def create_notification(self, notification: NotificationOutbox) -> NotificationOutbox:
        async with self._lock:
            self.notifications.append(notification.model_copy(deep=True))
        return notification

    async def list_for_step(self, step_execution_id: str) -> List[NotificationOutbox]:
        return [
            n.model_copy(deep=True) for n in self.notifications
            if n.step_execution_id == step_execution_id
        ]

    async def cancel_pending_for_step(self, step_execution_id: str) -> int:
        cancelled = 0
        async with self._lock:
            for position, notification in enumerate(self.notifications):
                if (notification.step_execution_id == step_execution_id
                        and notification.status == NotificationStatus.PENDING):
                    self.notifications[position] = notification.model_copy(
                        update={"status": NotificationStatus.CANCELLED}
                    )
                    cancelled += 1
        return cancelled


class InMemoryAccessTokenRepository:
    """Magic link tokens kept in a dict"""

    def __init__(self):
        self._tokens: Dict[str, AccessToken] = {}
        self._lock = asyncio.Lock()

    async def create(self, token: AccessToken) -> AccessToken:
        async with self._lock:
            if token.token in self._tokens:
                raise AlreadyExistsError("Access token already exists")
            self._tokens[token.token] = token.model_copy(deep=True)
        return token

    async def get(self, token: str) -> Optional[AccessToken]:
        record = self._tokens.get(token)
        return record.model_copy(deep=True) if record else None

    async def mark_used(self, token: str, used_at: datetime) -> Optional[AccessToken]:
        async with self._lock:
            record = self._tokens.get(token)
            if record is None:
                return None
            if record.used_at is None:
                record = record.model_copy(update={"used_at": used_at})
                self._tokens[token] = record
            return record.model_copy(deep=True)


class InMemoryContactRepository:
    """Contacts kept in a dict"""

    def __init__(self):
        self._contacts: Dict[str, Contact] = {}

    async def save(self, contact: Contact) -> Contact:
        self._contacts[contact.contact_id] = contact.model_copy(deep=True)
        return contact

    async def get(self, contact_id: str) -> Optional[Contact]:
        contact = self._contacts.get(contact_id)
        return contact.model_copy(deep=True) if contact else None
