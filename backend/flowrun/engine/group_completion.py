"""Group Completion Evaluator - Decide when a group-assigned step is done"""
from typing import Any, Dict, List, Optional

from ..domain.models import FlowRun, GroupCompletionResult, StepExecutionAssignee
from ..domain.enums import ACTIVE_STEP_STATUSES, AssigneeStatus, CompletionMode
from ..domain.errors import StepExecutionNotFoundError
from ..repositories.base import StepExecutionRepository
from ..utils.logger import get_logger
from ..utils.time import format_iso, utc_now
from .definition_index import DefinitionIndex
from .step_completion import StepCompletionOrchestrator

logger = get_logger(__name__)

GROUP_COMPLETION_KEY = "_group_completion"


def is_group_satisfied(mode: CompletionMode, completed: int, total: int) -> bool:
    """
    Apply a completion mode policy

    MAJORITY is strict: exactly half is not a majority.
    """
    if mode == CompletionMode.ALL:
        return total > 0 and completed >= total
    if mode == CompletionMode.MAJORITY:
        return completed > total / 2
    return completed >= 1


class GroupCompletionEvaluator:
    """Aggregates individual submissions on group-assigned steps"""

    def __init__(self, step_repo: StepExecutionRepository, orchestrator: StepCompletionOrchestrator):
        self.step_repo = step_repo
        self.orchestrator = orchestrator

    async def evaluate_group_completion(
        self,
        step_execution_id: str,
        assignee_id: str,
        result_data: Optional[Dict[str, Any]],
        run: FlowRun,
        step_definitions
    ) -> GroupCompletionResult:
        """
        Record one assignee's submission and complete the step when the
        completion mode is satisfied

        Args:
            step_execution_id: Group-assigned step
            assignee_id: Assignee record that submitted
            result_data: That assignee's submission
            run: Owning flow run
            step_definitions: Top-level definitions, FlowDefinition or index

        Returns:
            GroupCompletionResult; advanced is True only for the call that
            completed the step

        Raises:
            StepExecutionNotFoundError: No such step execution
        """
        execution = await self.step_repo.get(step_execution_id)
        if execution is None:
            raise StepExecutionNotFoundError(f"Step execution {step_execution_id} not found")

        log_extra = {
            "flow_run_id": run.flow_run_id,
            "step_execution_id": step_execution_id,
            "assignee_id": assignee_id,
        }

        if execution.status not in ACTIVE_STEP_STATUSES:
            assignees = await self.step_repo.list_assignees(step_execution_id)
            logger.info(
                f"Group step is {execution.status.value}, ignoring submission",
                extra=log_extra
            )
            return GroupCompletionResult(
                advanced=False,
                completed_count=self._completed_count(assignees),
                total_count=len(assignees)
            )

        result_data = dict(result_data or {})
        recorded = await self.step_repo.complete_assignee(step_execution_id, assignee_id, result_data, utc_now())
        if recorded is None:
            logger.warning(
                "Assignee submission not recorded (not an assignee of this step or already submitted)",
                extra=log_extra
            )

        assignees = await self.step_repo.list_assignees(step_execution_id)
        completed_count = self._completed_count(assignees)
        total_count = len(assignees)

        index = DefinitionIndex.of(step_definitions)
        definition = index.get(execution.step_id)
        mode = (
            execution.completion_mode
            or (definition.completion_mode if definition else None)
            or CompletionMode.ANY_ONE
        )

        if not is_group_satisfied(mode, completed_count, total_count):
            logger.info(
                f"Group step {completed_count}/{total_count} submitted ({mode.value}), waiting",
                extra=log_extra
            )
            return GroupCompletionResult(
                advanced=False,
                completed_count=completed_count,
                total_count=total_count
            )

        aggregate = dict(result_data)
        aggregate[GROUP_COMPLETION_KEY] = {
            "mode": mode.value,
            "total_assignees": total_count,
            "completed_assignees": completed_count,
            "submissions": self._submissions(assignees),
        }

        completion = await self.orchestrator.complete_step_and_advance(
            step_execution_id, aggregate, run, index,
            completed_by_id=(recorded.user_id or recorded.contact_id) if recorded else None
        )

        logger.info(
            f"Group step {completed_count}/{total_count} submitted ({mode.value}), "
            f"advanced={completion.completed}",
            extra=log_extra
        )
        return GroupCompletionResult(
            advanced=completion.completed,
            completed_count=completed_count,
            total_count=total_count
        )

    def _completed_count(self, assignees: List[StepExecutionAssignee]) -> int:
        return sum(1 for a in assignees if a.status == AssigneeStatus.COMPLETED)

    def _submissions(self, assignees: List[StepExecutionAssignee]) -> List[Dict[str, Any]]:
        """Every completed submission, tagged by assignee"""
        return [
            {
                "assignee_id": a.assignee_id,
                "contact_id": a.contact_id,
                "user_id": a.user_id,
                "completed_at": format_iso(a.completed_at) if a.completed_at else None,
                "result_data": a.result_data,
            }
            for a in assignees if a.status == AssigneeStatus.COMPLETED
        ]
