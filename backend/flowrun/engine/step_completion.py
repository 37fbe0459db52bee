"""
Step Completion Orchestrator - Complete a step and move the run forward

Sequence for one completion:
    1. Conditional update of the step to COMPLETED (from IN_PROGRESS or
       WAITING_FOR_ASSIGNEE). Zero rows -> already handled, no-op.
    2. Cancellation of its jobs and the step completed notification (best-effort)
    3. Run last-activity timestamp
    4. Advancement engine, then the conditional skip chain per next step
    5. Activation of each next step (conditional PENDING -> IN_PROGRESS) with
       assignment, due-date jobs, sub-flow start and magic links
    6. Automation of activated automated steps (unless skip_auto_exec)
    7. Nothing next and nothing waiting -> conditional run completion

Status transitions are persisted before any side effect runs. Side effect
failures are logged and never undo or block a transition.
"""
from typing import Any, Dict, List, Optional, Protocol

from ..domain.models import (
    FlowRun, StepCompletionResult, StepDefinition, StepExecution
)
from ..domain.enums import (
    ACTIVE_STEP_STATUSES, FlowRunStatus, StepExecutionStatus, StepType
)
from ..domain.errors import StepExecutionNotFoundError
from ..repositories.base import FlowRunRepository, StepExecutionRepository
from ..services.assignment_service import AssignmentService
from ..services.notification_service import NotificationService
from ..services.scheduling_service import StepJobScheduler
from ..utils.logger import get_logger
from ..utils.time import utc_now
from .condition_evaluator import build_evaluation_context
from .definition_index import DefinitionIndex
from .step_advancement import StepAdvancementEngine

logger = get_logger(__name__)


class SubFlowLauncher(Protocol):
    """Starts child runs for SUB_FLOW steps and reports child completion back"""

    async def start_child_flow(
        self,
        step_execution: StepExecution,
        step_definition: StepDefinition,
        run: FlowRun
    ) -> Optional[FlowRun]:
        """Start the child run of a SUB_FLOW step."""

    async def propagate_child_completion(self, child_run: FlowRun) -> None:
        """Complete the parent SUB_FLOW step of a finished child run."""


class StepCompletionOrchestrator:
    """
    Caller-facing coordinator for step completion

    Args:
        step_repo: Step execution persistence
        run_repo: Flow run persistence
        engine: Advancement engine
        notification_service: Outbox notifications and magic links
        job_scheduler: Due-date jobs
        assignment_service: Assignee resolution for newly active steps
        sub_flows: Child-flow collaborator (optional)
        automation_runner: Automated step executor (optional)
    """

    def __init__(
        self,
        step_repo: StepExecutionRepository,
        run_repo: FlowRunRepository,
        engine: StepAdvancementEngine,
        notification_service: NotificationService,
        job_scheduler: StepJobScheduler,
        assignment_service: Optional[AssignmentService] = None,
        sub_flows: Optional[SubFlowLauncher] = None,
        automation_runner=None
    ):
        self.step_repo = step_repo
        self.run_repo = run_repo
        self.engine = engine
        self.notifications = notification_service
        self.job_scheduler = job_scheduler
        self.assignments = assignment_service or AssignmentService(step_repo)
        self.sub_flows = sub_flows
        self.automation_runner = automation_runner

    # =========================================================================
    # Completion
    # =========================================================================

    async def complete_step_and_advance(
        self,
        step_execution_id: str,
        result_data: Optional[Dict[str, Any]],
        run: FlowRun,
        step_definitions,
        skip_ai_review: bool = False,
        skip_auto_exec: bool = False,
        completed_by_id: Optional[str] = None
    ) -> StepCompletionResult:
        """
        Mark a step COMPLETED and activate whatever follows it

        Args:
            step_execution_id: Step to complete
            result_data: Recorded output of the step
            run: Owning flow run
            step_definitions: Top-level definitions, FlowDefinition or index
            skip_ai_review: Accepted for callers that already reviewed the result
            skip_auto_exec: Do not run automated next steps (set by the
                automation runner, which chains them itself)
            completed_by_id: Who completed the step

        Returns:
            StepCompletionResult; completed=False when the step was not active

        Raises:
            StepExecutionNotFoundError: No such step execution
        """
        index = DefinitionIndex.of(step_definitions)
        result_data = dict(result_data or {})
        log_extra = {"flow_run_id": run.flow_run_id, "step_execution_id": step_execution_id}

        completed = await self.step_repo.transition_status(
            step_execution_id,
            ACTIVE_STEP_STATUSES,
            StepExecutionStatus.COMPLETED,
            {
                "result_data": result_data,
                "completed_at": utc_now(),
                "completed_by_id": completed_by_id,
            }
        )
        if completed is None:
            if await self.step_repo.get(step_execution_id) is None:
                raise StepExecutionNotFoundError(f"Step execution {step_execution_id} not found")
            logger.info("Step is not active, completion already handled", extra=log_extra)
            return StepCompletionResult(completed=False)

        logger.info(
            f"Completed step {completed.step_id}"
            + (" (AI review skipped)" if skip_ai_review else ""),
            extra={**log_extra, "step_id": completed.step_id}
        )

        await self._after_step_completed(completed, run)

        executions = await self.step_repo.list_for_run(run.flow_run_id)
        context = build_evaluation_context(run, executions, index.by_id)

        advance = await self.engine.advance_step(
            completed, executions, index, run.flow_run_id, result_data, context
        )

        next_ids: List[str] = []
        skipped_ids: List[str] = []
        waiting = advance.waiting
        if advance.next_ids:
            executions = await self.step_repo.list_for_run(run.flow_run_id)
        for candidate_id in advance.next_ids:
            chain = await self.engine.evaluate_skip_chain(candidate_id, executions, index, context)
            skipped_ids.extend(chain.skipped_ids)
            waiting = waiting or chain.waiting
            if chain.next_id and chain.next_id not in next_ids:
                next_ids.append(chain.next_id)
            if chain.skipped_ids:
                executions = await self.step_repo.list_for_run(run.flow_run_id)

        if not next_ids:
            if waiting:
                logger.info("No step to activate yet, waiting on parallel paths", extra=log_extra)
                return StepCompletionResult(completed=True, skipped_step_ids=skipped_ids)
            flow_completed = await self.complete_run(run)
            return StepCompletionResult(
                completed=True,
                skipped_step_ids=skipped_ids,
                flow_completed=flow_completed
            )

        current_run = await self.run_repo.get(run.flow_run_id)
        if current_run is not None and current_run.status == FlowRunStatus.CANCELLED:
            logger.info("Run was cancelled, not activating next steps", extra=log_extra)
            return StepCompletionResult(completed=True, skipped_step_ids=skipped_ids)
        run = current_run or run

        activated: List[StepExecution] = []
        for next_id in next_ids:
            execution = await self.activate_step(next_id, run, index)
            if execution is not None:
                activated.append(execution)

        if not skip_auto_exec:
            await self._auto_execute(activated, run, index)

        activated_ids = [e.step_execution_id for e in activated]
        return StepCompletionResult(
            completed=True,
            next_step_id=activated_ids[0] if activated_ids else None,
            next_step_ids=activated_ids,
            skipped_step_ids=skipped_ids
        )

    # =========================================================================
    # Activation
    # =========================================================================

    async def activate_step(
        self,
        step_execution_id: str,
        run: FlowRun,
        step_definitions
    ) -> Optional[StepExecution]:
        """
        Move a PENDING step to IN_PROGRESS and run its activation side effects

        Returns:
            The activated execution, or None if another caller activated it
        """
        index = DefinitionIndex.of(step_definitions)
        now = utc_now()
        execution = await self.step_repo.transition_status(
            step_execution_id,
            {StepExecutionStatus.PENDING},
            StepExecutionStatus.IN_PROGRESS,
            {"started_at": now}
        )
        if execution is None:
            logger.info(
                "Step already activated",
                extra={"flow_run_id": run.flow_run_id, "step_execution_id": step_execution_id}
            )
            return None

        definition = index.get(execution.step_id)
        logger.info(
            f"Activated step {execution.step_id}",
            extra={
                "flow_run_id": run.flow_run_id,
                "step_execution_id": step_execution_id,
                "step_index": execution.step_index,
                "branch_path": execution.branch_path,
                "parallel_group_id": execution.parallel_group_id,
            }
        )

        await self.run_repo.update(run.flow_run_id, {
            "current_step_index": execution.step_index,
            "last_activity_at": now,
        })

        try:
            execution = await self.assignments.assign(execution, definition, run)
        except Exception as e:
            logger.error(
                f"Failed to assign step: {e}",
                extra={"flow_run_id": run.flow_run_id, "step_execution_id": step_execution_id}
            )

        try:
            await self.job_scheduler.schedule_step_jobs(execution, definition, run)
        except Exception as e:
            logger.warning(
                f"Failed to schedule step jobs: {e}",
                extra={"flow_run_id": run.flow_run_id, "step_execution_id": step_execution_id}
            )

        if definition is not None and definition.step_type == StepType.SUB_FLOW:
            await self._start_sub_flow(execution, definition, run)

        await self._issue_access(execution, definition, run)
        return execution

    async def _start_sub_flow(
        self,
        execution: StepExecution,
        definition: StepDefinition,
        run: FlowRun
    ) -> None:
        if self.sub_flows is None:
            logger.warning(
                "No sub-flow launcher configured, SUB_FLOW step left for manual action",
                extra={"flow_run_id": run.flow_run_id, "step_execution_id": execution.step_execution_id}
            )
            return
        try:
            await self.sub_flows.start_child_flow(execution, definition, run)
        except Exception as e:
            logger.error(
                f"Failed to start child flow: {e}",
                extra={"flow_run_id": run.flow_run_id, "step_execution_id": execution.step_execution_id}
            )

    async def _issue_access(
        self,
        execution: StepExecution,
        definition: Optional[StepDefinition],
        run: FlowRun
    ) -> None:
        """Magic links and task emails for external assignees"""
        step_name = definition.display_name if definition else None

        if execution.is_group_assignment:
            try:
                assignees = await self.step_repo.list_assignees(execution.step_execution_id)
            except Exception as e:
                logger.error(
                    f"Failed to load group assignees: {e}",
                    extra={"flow_run_id": run.flow_run_id, "step_execution_id": execution.step_execution_id}
                )
                return
            for assignee in assignees:
                if not assignee.contact_id:
                    continue
                try:
                    await self.notifications.issue_access_and_notify(execution, run, assignee, step_name)
                except Exception as e:
                    logger.error(
                        f"Failed to send group magic link: {e}",
                        extra={
                            "flow_run_id": run.flow_run_id,
                            "step_execution_id": execution.step_execution_id,
                            "assignee_id": assignee.assignee_id,
                        }
                    )
        elif execution.assigned_to_contact_id:
            try:
                await self.notifications.issue_access_and_notify(execution, run, None, step_name)
            except Exception as e:
                logger.error(
                    f"Failed to send magic link: {e}",
                    extra={"flow_run_id": run.flow_run_id, "step_execution_id": execution.step_execution_id}
                )

    async def _auto_execute(
        self,
        activated: List[StepExecution],
        run: FlowRun,
        index: DefinitionIndex
    ) -> None:
        if self.automation_runner is None:
            return
        for execution in activated:
            definition = index.get(execution.step_id)
            if definition is None or not self.automation_runner.is_automated(definition.step_type):
                continue
            try:
                await self.automation_runner.maybe_auto_execute(execution, definition, run, self, index)
            except Exception as e:
                logger.error(
                    f"Auto-execute check failed: {e}",
                    extra={"flow_run_id": run.flow_run_id, "step_execution_id": execution.step_execution_id}
                )

    # =========================================================================
    # Side Effects & Run Completion
    # =========================================================================

    async def _after_step_completed(self, completed: StepExecution, run: FlowRun) -> None:
        # Jobs first: cancellation covers every unsent notification of the step
        try:
            await self.job_scheduler.cancel_step_jobs(completed.step_execution_id)
        except Exception as e:
            logger.warning(
                f"Failed to cancel step jobs: {e}",
                extra={"flow_run_id": run.flow_run_id, "step_execution_id": completed.step_execution_id}
            )
        try:
            await self.notifications.notify_step_completed(completed, run)
        except Exception as e:
            logger.warning(
                f"Failed to notify step completion: {e}",
                extra={"flow_run_id": run.flow_run_id, "step_execution_id": completed.step_execution_id}
            )
        await self.run_repo.update(run.flow_run_id, {"last_activity_at": utc_now()})

    async def complete_run(self, run: FlowRun) -> bool:
        """
        Complete the run if it is still in progress

        Only the caller whose conditional update succeeds fires the
        completion side effects.
        """
        now = utc_now()
        completed_run = await self.run_repo.transition_status(
            run.flow_run_id,
            {FlowRunStatus.IN_PROGRESS},
            FlowRunStatus.COMPLETED,
            {"completed_at": now, "last_activity_at": now}
        )
        if completed_run is None:
            logger.info("Run already completed or not in progress", extra={"flow_run_id": run.flow_run_id})
            return False

        logger.info(f"Flow run completed: {run.flow_run_id}", extra={"flow_run_id": run.flow_run_id})

        try:
            await self.notifications.notify_flow_completed(completed_run)
        except Exception as e:
            logger.warning(
                f"Failed to notify flow completion: {e}",
                extra={"flow_run_id": run.flow_run_id}
            )

        if completed_run.parent_step_execution_id and self.sub_flows is not None:
            try:
                await self.sub_flows.propagate_child_completion(completed_run)
            except Exception as e:
                logger.error(
                    f"Failed to propagate completion to parent run: {e}",
                    extra={"flow_run_id": run.flow_run_id}
                )
        return True
