"""
Flow Run Service - Entry points for starting, completing and cancelling runs

Wires the advancement engine, the completion orchestrator, the group
evaluator and the automation runner together, and is the sub-flow
collaborator of the orchestrator: SUB_FLOW steps start a child run, and a
child run's completion completes the parent's SUB_FLOW step.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..domain.models import (
    FlowDefinition, FlowRun, GroupCompletionResult, StepCompletionResult,
    StepDefinition, StepExecution, WorkspaceInfo
)
from ..domain.enums import CHILD_FLOW_KEYS, FlowRunStatus, StepExecutionStatus
from ..domain.errors import (
    FlowNotFoundError, FlowValidationError, InvalidStateError, RunNotFoundError,
    StepExecutionNotFoundError, SubFlowError
)
from ..engine.automation_runner import AutomationRunner
from ..engine.condition_evaluator import ConditionEvaluator, build_evaluation_context
from ..engine.definition_index import DefinitionIndex
from ..engine.group_completion import GroupCompletionEvaluator
from ..engine.reference_resolver import substitute_tokens
from ..engine.step_advancement import StepAdvancementEngine
from ..engine.step_completion import StepCompletionOrchestrator
from ..repositories.base import FlowRepository, FlowRunRepository, StepExecutionRepository
from .assignment_service import AssignmentService
from .magic_link_service import MagicLinkService
from .notification_service import NotificationService
from .scheduling_service import StepJobScheduler, compute_due_at
from ..config.settings import settings
from ..utils.idgen import generate_flow_run_id, generate_step_execution_id
from ..utils.logger import ensure_correlation_id, get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class FlowRunService:
    """Service for flow run lifecycle operations"""

    def __init__(
        self,
        flow_repo: FlowRepository,
        run_repo: FlowRunRepository,
        step_repo: StepExecutionRepository,
        notification_service: NotificationService,
        magic_links: Optional[MagicLinkService] = None,
        automation_runner: Optional[AutomationRunner] = None,
        condition_evaluator: Optional[ConditionEvaluator] = None,
        max_sub_flow_depth: Optional[int] = None
    ):
        self.flow_repo = flow_repo
        self.run_repo = run_repo
        self.step_repo = step_repo
        self.notifications = notification_service
        self.magic_links = magic_links or notification_service.magic_links
        self.automation_runner = automation_runner or AutomationRunner(step_repo)
        self.job_scheduler = StepJobScheduler(step_repo, notification_service)
        self.engine = StepAdvancementEngine(step_repo, condition_evaluator)
        self.orchestrator = StepCompletionOrchestrator(
            step_repo=step_repo,
            run_repo=run_repo,
            engine=self.engine,
            notification_service=notification_service,
            job_scheduler=self.job_scheduler,
            assignment_service=AssignmentService(step_repo),
            sub_flows=self,
            automation_runner=self.automation_runner
        )
        self.group_evaluator = GroupCompletionEvaluator(step_repo, self.orchestrator)
        self.max_sub_flow_depth = (
            max_sub_flow_depth if max_sub_flow_depth is not None else settings.max_sub_flow_depth
        )

    # =========================================================================
    # Lookups
    # =========================================================================

    async def get_run_or_raise(self, flow_run_id: str) -> FlowRun:
        run = await self.run_repo.get(flow_run_id)
        if run is None:
            raise RunNotFoundError(f"Flow run {flow_run_id} not found")
        return run

    async def get_flow_or_raise(self, flow_id: str) -> FlowDefinition:
        flow = await self.flow_repo.get(flow_id)
        if flow is None:
            raise FlowNotFoundError(f"Flow {flow_id} not found")
        return flow

    async def get_step_or_raise(self, step_execution_id: str) -> StepExecution:
        execution = await self.step_repo.get(step_execution_id)
        if execution is None:
            raise StepExecutionNotFoundError(f"Step execution {step_execution_id} not found")
        return execution

    # =========================================================================
    # Start
    # =========================================================================

    async def start_run(
        self,
        flow_id: str,
        name: Optional[str] = None,
        kickoff_data: Optional[Dict[str, Any]] = None,
        role_assignments: Optional[Dict[str, Any]] = None,
        started_by_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        workspace: Optional[WorkspaceInfo] = None,
        due_at: Optional[datetime] = None,
        parent_run_id: Optional[str] = None,
        parent_step_execution_id: Optional[str] = None
    ) -> FlowRun:
        """
        Start a run of a flow

        Creates the run and one PENDING row per top-level step, then
        activates the first step that is not skipped. A flow whose steps
        are all skipped completes immediately.

        Raises:
            FlowNotFoundError: Unknown flow
            FlowValidationError: Flow has no steps
        """
        ensure_correlation_id()
        flow = await self.get_flow_or_raise(flow_id)
        if not flow.steps:
            raise FlowValidationError(f"Flow {flow_id} has no steps", details={"flow_id": flow_id})

        now = utc_now()
        if due_at is None and flow.due is not None:
            due_at = compute_due_at(flow.due, now)

        run = FlowRun(
            flow_run_id=generate_flow_run_id(),
            flow_id=flow.flow_id,
            name=name or flow.name,
            status=FlowRunStatus.IN_PROGRESS,
            current_step_index=0,
            started_by_id=started_by_id,
            organization_id=organization_id,
            kickoff_data=kickoff_data or {},
            role_assignments=role_assignments or {},
            workspace=workspace,
            started_at=now,
            due_at=due_at,
            last_activity_at=now,
            parent_run_id=parent_run_id,
            parent_step_execution_id=parent_step_execution_id
        )
        await self.run_repo.create(run)

        rows = [
            StepExecution(
                step_execution_id=generate_step_execution_id(),
                flow_run_id=run.flow_run_id,
                step_id=step.step_id,
                step_index=position,
                status=StepExecutionStatus.PENDING,
                completion_mode=step.completion_mode,
                created_at=now
            )
            for position, step in enumerate(flow.steps)
        ]
        await self.step_repo.create_many(rows)

        logger.info(
            f"Started flow run {run.flow_run_id} with {len(rows)} top-level steps",
            extra={"flow_run_id": run.flow_run_id, "flow_id": flow.flow_id}
        )

        await self._activate_first_step(run, flow, rows[0].step_execution_id)
        return await self.run_repo.get(run.flow_run_id) or run

    async def _activate_first_step(self, run: FlowRun, flow: FlowDefinition, first_id: str) -> None:
        index = DefinitionIndex.of(flow)
        executions = await self.step_repo.list_for_run(run.flow_run_id)
        context = build_evaluation_context(run, executions, index.by_id)

        chain = await self.engine.evaluate_skip_chain(first_id, executions, index, context)
        if chain.next_id is None:
            if not chain.waiting:
                await self.orchestrator.complete_run(run)
            return

        execution = await self.orchestrator.activate_step(chain.next_id, run, index)
        if execution is None:
            return
        definition = index.get(execution.step_id)
        if definition is not None and self.automation_runner.is_automated(definition.step_type):
            await self.automation_runner.maybe_auto_execute(
                execution, definition, run, self.orchestrator, index
            )

    # =========================================================================
    # Completion
    # =========================================================================

    async def complete_step(
        self,
        step_execution_id: str,
        result_data: Optional[Dict[str, Any]] = None,
        completed_by_id: Optional[str] = None
    ) -> StepCompletionResult:
        """
        Complete a single-assignee step

        Raises:
            StepExecutionNotFoundError: Unknown step execution
            InvalidStateError: Step is group-assigned (use complete_assignee)
        """
        ensure_correlation_id()
        execution = await self.get_step_or_raise(step_execution_id)
        if execution.is_group_assignment and not execution.is_terminal:
            raise InvalidStateError(
                "Group-assigned steps are completed per assignee",
                details={"step_execution_id": step_execution_id}
            )
        run = await self.get_run_or_raise(execution.flow_run_id)
        flow = await self.get_flow_or_raise(run.flow_id)
        return await self.orchestrator.complete_step_and_advance(
            step_execution_id, result_data, run, flow, completed_by_id=completed_by_id
        )

    async def complete_assignee(
        self,
        step_execution_id: str,
        assignee_id: str,
        result_data: Optional[Dict[str, Any]] = None
    ) -> GroupCompletionResult:
        """Record one assignee's submission on a group-assigned step"""
        ensure_correlation_id()
        execution = await self.get_step_or_raise(step_execution_id)
        run = await self.get_run_or_raise(execution.flow_run_id)
        flow = await self.get_flow_or_raise(run.flow_id)
        return await self.group_evaluator.evaluate_group_completion(
            step_execution_id, assignee_id, result_data, run, flow
        )

    async def complete_with_magic_link(
        self,
        token: str,
        result_data: Optional[Dict[str, Any]] = None
    ):
        """Complete the step (or the group assignee) a magic link belongs to"""
        ensure_correlation_id()
        access = await self.magic_links.validate_magic_link(token)
        if access.assignee_id:
            return await self.complete_assignee(access.step_execution_id, access.assignee_id, result_data)
        return await self.complete_step(access.step_execution_id, result_data)

    # =========================================================================
    # Cancel
    # =========================================================================

    async def cancel_run(self, flow_run_id: str) -> FlowRun:
        """
        Cancel a run that has not finished

        Active steps keep their status; their pending jobs are cancelled and
        the orchestrator stops activating new steps for the run.

        Raises:
            RunNotFoundError: Unknown run
            InvalidStateError: Run already completed or cancelled
        """
        ensure_correlation_id()
        await self.get_run_or_raise(flow_run_id)
        cancelled = await self.run_repo.transition_status(
            flow_run_id,
            {FlowRunStatus.IN_PROGRESS, FlowRunStatus.PAUSED},
            FlowRunStatus.CANCELLED,
            {"completed_at": utc_now()}
        )
        if cancelled is None:
            raise InvalidStateError(
                f"Flow run {flow_run_id} is not active",
                details={"flow_run_id": flow_run_id}
            )

        for execution in await self.step_repo.list_for_run(flow_run_id):
            if execution.is_terminal:
                continue
            try:
                await self.job_scheduler.cancel_step_jobs(execution.step_execution_id)
            except Exception as e:
                logger.warning(
                    f"Failed to cancel step jobs: {e}",
                    extra={"flow_run_id": flow_run_id, "step_execution_id": execution.step_execution_id}
                )

        logger.info(f"Cancelled flow run {flow_run_id}", extra={"flow_run_id": flow_run_id})
        return cancelled

    # =========================================================================
    # Sub-flows
    # =========================================================================

    async def start_child_flow(
        self,
        step_execution: StepExecution,
        step_definition: StepDefinition,
        run: FlowRun
    ) -> Optional[FlowRun]:
        """
        Start the child run of a SUB_FLOW step

        `config.kickoff_data` values may contain reference tokens, resolved
        against the parent run.

        Raises:
            SubFlowError: No child flow configured, or it could not be started
        """
        config = step_definition.config
        child_flow_id = next((config[k] for k in CHILD_FLOW_KEYS if config.get(k)), None)
        if not child_flow_id:
            raise SubFlowError(
                f"SUB_FLOW step {step_definition.step_id} has no child flow configured",
                details={"step_execution_id": step_execution.step_execution_id}
            )

        existing = await self.run_repo.find_by_parent_step(step_execution.step_execution_id)
        if existing is not None:
            logger.info(
                f"Child run {existing.flow_run_id} already started",
                extra={"flow_run_id": run.flow_run_id, "step_execution_id": step_execution.step_execution_id}
            )
            return existing

        lineage = await self._flow_lineage(run)
        if child_flow_id in lineage:
            raise SubFlowError(
                f"Child flow {child_flow_id} is already running above step {step_definition.step_id}",
                details={"step_execution_id": step_execution.step_execution_id, "flow_lineage": lineage}
            )
        if len(lineage) > self.max_sub_flow_depth:
            raise SubFlowError(
                f"Sub-flow nesting deeper than {self.max_sub_flow_depth} levels",
                details={"step_execution_id": step_execution.step_execution_id, "flow_lineage": lineage}
            )

        executions = await self.step_repo.list_for_run(run.flow_run_id)
        parent_flow = await self.flow_repo.get(run.flow_id)
        index = DefinitionIndex.of(parent_flow.steps if parent_flow else [])
        context = build_evaluation_context(run, executions, index.by_id)

        kickoff: Dict[str, Any] = {}
        for key, value in (config.get("kickoff_data") or {}).items():
            kickoff[key] = substitute_tokens(value, context) if isinstance(value, str) else value

        try:
            child = await self.start_run(
                child_flow_id,
                name=f"{run.name} / {step_definition.display_name}",
                kickoff_data=kickoff,
                role_assignments=dict(run.role_assignments),
                started_by_id=run.started_by_id,
                organization_id=run.organization_id,
                workspace=run.workspace,
                parent_run_id=run.flow_run_id,
                parent_step_execution_id=step_execution.step_execution_id
            )
        except (FlowNotFoundError, FlowValidationError) as e:
            raise SubFlowError(
                f"Could not start child flow {child_flow_id}: {e.message}",
                details={"step_execution_id": step_execution.step_execution_id}
            ) from e

        logger.info(
            f"Started child run {child.flow_run_id}",
            extra={"flow_run_id": run.flow_run_id, "step_execution_id": step_execution.step_execution_id}
        )
        return child

    async def _flow_lineage(self, run: FlowRun) -> List[str]:
        """Flow ids of a run and every run above it, nearest first"""
        lineage = [run.flow_id]
        seen = {run.flow_run_id}
        parent_id = run.parent_run_id
        while parent_id and parent_id not in seen:
            seen.add(parent_id)
            parent = await self.run_repo.get(parent_id)
            if parent is None:
                break
            lineage.append(parent.flow_id)
            parent_id = parent.parent_run_id
        return lineage

    async def propagate_child_completion(self, child_run: FlowRun) -> Optional[StepCompletionResult]:
        """Complete the parent SUB_FLOW step of a completed child run"""
        if not child_run.parent_step_execution_id or not child_run.parent_run_id:
            return None

        parent_run = await self.get_run_or_raise(child_run.parent_run_id)
        parent_flow = await self.get_flow_or_raise(parent_run.flow_id)
        child_executions = await self.step_repo.list_for_run(child_run.flow_run_id)

        outputs: List[Dict[str, Any]] = [
            {"step_id": e.step_id, "result_data": e.result_data}
            for e in child_executions
            if e.status == StepExecutionStatus.COMPLETED
        ]
        return await self.orchestrator.complete_step_and_advance(
            child_run.parent_step_execution_id,
            {"child_flow_run_id": child_run.flow_run_id, "child_outputs": outputs},
            parent_run,
            parent_flow
        )
