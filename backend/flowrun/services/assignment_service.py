"""Assignment Service - Resolve step assignees from the run's role assignments

A step definition names the role(s) that act on it in `config.assignee`
(one role) or `config.assignees` (several). Each role resolves through
`run.role_assignments` to a contact id, a `{contact_id | user_id}` dict, or a
list of those. One resolved person is a single assignment; several make the
step a group assignment with one assignee record each.
"""
from typing import Any, List, NamedTuple, Optional

from ..domain.models import FlowRun, StepDefinition, StepExecution, StepExecutionAssignee
from ..domain.enums import CompletionMode, StepExecutionStatus
from ..repositories.base import StepExecutionRepository
from ..utils.idgen import generate_assignee_id
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ResolvedAssignee(NamedTuple):
    contact_id: Optional[str] = None
    user_id: Optional[str] = None


def _resolve_one(value: Any) -> List[ResolvedAssignee]:
    if isinstance(value, str) and value:
        return [ResolvedAssignee(contact_id=value)]
    if isinstance(value, dict):
        contact_id = value.get("contact_id") or value.get("contactId")
        user_id = value.get("user_id") or value.get("userId")
        if contact_id or user_id:
            return [ResolvedAssignee(contact_id=contact_id, user_id=user_id)]
    if isinstance(value, list):
        resolved: List[ResolvedAssignee] = []
        for item in value:
            resolved.extend(_resolve_one(item))
        return resolved
    return []


def configured_roles(step_definition: Optional[StepDefinition]) -> List[str]:
    if step_definition is None:
        return []
    roles = step_definition.config.get("assignees") or step_definition.config.get("assignee") or []
    return [roles] if isinstance(roles, str) else list(roles)


def resolve_assignees(step_definition: Optional[StepDefinition], run: FlowRun) -> List[ResolvedAssignee]:
    """Resolve a step's role names to distinct people"""
    roles = configured_roles(step_definition)

    resolved: List[ResolvedAssignee] = []
    for role in roles:
        if role not in run.role_assignments:
            logger.warning(
                f"Role '{role}' has no assignment in run",
                extra={"flow_run_id": run.flow_run_id, "step_id": step_definition.step_id}
            )
            continue
        for person in _resolve_one(run.role_assignments[role]):
            if person not in resolved:
                resolved.append(person)
    return resolved


class AssignmentService:
    """Applies resolved assignees to step executions"""

    def __init__(self, step_repo: StepExecutionRepository):
        self.step_repo = step_repo

    async def assign(
        self,
        step_execution: StepExecution,
        step_definition: Optional[StepDefinition],
        run: FlowRun
    ) -> StepExecution:
        """
        Assign a step execution that has no assignee yet

        Returns:
            The (possibly updated) step execution
        """
        if (step_execution.assigned_to_contact_id or step_execution.assigned_to_user_id
                or step_execution.is_group_assignment):
            return step_execution

        people = resolve_assignees(step_definition, run)
        if not people:
            if not configured_roles(step_definition):
                return step_execution
            # Roles are named but nobody fills them yet
            waiting = await self.step_repo.transition_status(
                step_execution.step_execution_id,
                {StepExecutionStatus.IN_PROGRESS},
                StepExecutionStatus.WAITING_FOR_ASSIGNEE
            )
            return waiting or step_execution

        if len(people) == 1:
            updated = await self.step_repo.update(step_execution.step_execution_id, {
                "assigned_to_contact_id": people[0].contact_id,
                "assigned_to_user_id": people[0].user_id,
            })
            return updated or step_execution

        completion_mode = (
            step_execution.completion_mode
            or (step_definition.completion_mode if step_definition else None)
            or CompletionMode.ANY_ONE
        )
        await self.step_repo.create_assignees([
            StepExecutionAssignee(
                assignee_id=generate_assignee_id(),
                step_execution_id=step_execution.step_execution_id,
                contact_id=person.contact_id,
                user_id=person.user_id
            )
            for person in people
        ])
        updated = await self.step_repo.update(step_execution.step_execution_id, {
            "is_group_assignment": True,
            "completion_mode": completion_mode,
        })
        logger.info(
            f"Group assignment with {len(people)} assignees ({completion_mode.value})",
            extra={
                "flow_run_id": run.flow_run_id,
                "step_execution_id": step_execution.step_execution_id,
            }
        )
        return updated or step_execution
