"""
Step Advancement Engine - Decide which step(s) run after a step completes

=============================================================================
MODULE STRUCTURE
=============================================================================

1. QUERY PATH
   - get_next_step_executions: Read-only lookup of already-existing rows

2. ADVANCEMENT (authoritative, async)
   - advance_step: Dispatch on the completed step's kind, materialize
     branch rows, return the steps to activate

3. NAVIGATION
   - _next_after: Next step after a finished row (sibling, top-level,
     climb out of a branch path, parallel convergence)

4. PATH SELECTION
   - _select_paths: Single choice, multi choice, parallel

5. CONDITIONAL SKIP CHAIN
   - evaluate_skip_chain

Executions are a flat row table. Top-level rows are ordered by step_index.
Rows inside a branch path share the branch step's step_index, carry the
path id in branch_path and are ordered by dynamic_index.
=============================================================================
"""
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from ..domain.models import (
    AdvanceResult, BranchPath, EvaluationContext, SkipChainResult, StepDefinition, StepExecution
)
from ..domain.enums import ACTIVE_STEP_STATUSES, AdvancementKind, StepExecutionStatus
from ..repositories.base import StepExecutionRepository
from ..utils.idgen import generate_parallel_group_id, generate_step_execution_id
from ..utils.logger import get_logger
from ..utils.time import utc_now
from .condition_evaluator import ConditionEvaluator
from .definition_index import DefinitionIndex, PathOwner

logger = get_logger(__name__)

SELECTED_PATH_KEYS = ("selected_path_id", "selectedPathId")
SELECTED_OPTION_KEYS = ("selected_option", "selectedOption")


class _Hop(NamedTuple):
    """Result of navigating past a finished row"""
    next_id: Optional[str]
    waiting: bool = False


class StepAdvancementEngine:
    """
    Determines next step executions and expands branches into rows

    Args:
        step_repo: Step execution persistence, used to re-read rows and to
            create branch rows and mark skipped steps
        condition_evaluator: Evaluator for multi-choice and skip conditions
    """

    def __init__(
        self,
        step_repo: StepExecutionRepository,
        condition_evaluator: Optional[ConditionEvaluator] = None
    ):
        self._step_repo = step_repo
        self._conditions = condition_evaluator or ConditionEvaluator()

    # =========================================================================
    # Query Path
    # =========================================================================

    def get_next_step_executions(
        self,
        completed: StepExecution,
        all_executions: Sequence[StepExecution],
        step_definitions,
        result_data: Optional[Dict[str, Any]] = None,
        evaluation_context: Optional[EvaluationContext] = None
    ) -> List[str]:
        """
        Return ids of existing PENDING executions that follow a completed step

        Never creates rows. For a branch step whose selected path(s) have not
        been materialized yet this returns an empty list.
        """
        index = DefinitionIndex.of(step_definitions)
        definition = index.get(completed.step_id)
        kind = self._kind_for(definition, completed)

        if kind == AdvancementKind.LINEAR:
            hop = self._next_after(completed, all_executions, index)
            return [hop.next_id] if hop.next_id else []

        paths = self._select_paths(
            definition, kind, result_data or completed.result_data,
            evaluation_context or EvaluationContext()
        )
        if not any(path.steps for path in paths):
            hop = self._next_after(completed, all_executions, index)
            return [hop.next_id] if hop.next_id else []

        return self._first_pending_per_path(paths, all_executions)

    # =========================================================================
    # Advancement
    # =========================================================================

    async def advance_step(
        self,
        completed: StepExecution,
        all_executions: Sequence[StepExecution],
        step_definitions,
        run_id: str,
        result_data: Optional[Dict[str, Any]] = None,
        evaluation_context: Optional[EvaluationContext] = None
    ) -> AdvanceResult:
        """
        Advance past a completed step

        Branch steps have their selected path(s) materialized as PENDING rows
        (at most once per branch activation) and the first row of each path
        is returned. Linear steps return the next sibling or top-level row,
        converging parallel groups when their last row finishes.

        Args:
            completed: The execution that just completed
            all_executions: Caller's view of the run's rows (refreshed here)
            step_definitions: Top-level definitions, FlowDefinition or index
            run_id: Flow run id
            result_data: Result recorded on the completed step
            evaluation_context: Context for multi-choice conditions

        Returns:
            AdvanceResult. Empty next_ids with waiting=False means the flow
            is complete.
        """
        index = DefinitionIndex.of(step_definitions)
        executions = await self._step_repo.list_for_run(run_id) or list(all_executions)
        completed = self._find(executions, completed.step_execution_id) or completed
        context = evaluation_context or EvaluationContext()

        definition = index.get(completed.step_id)
        kind = self._kind_for(definition, completed)

        if kind == AdvancementKind.LINEAR:
            return self._linear_result(completed, executions, index)

        paths = self._select_paths(
            definition, kind, result_data or completed.result_data, context
        )
        selected_path_ids = [path.path_id for path in paths]

        if not any(path.steps for path in paths):
            logger.info(
                f"Selected path(s) of {definition.step_id} have no steps, advancing past branch",
                extra={"flow_run_id": run_id, "step_id": definition.step_id}
            )
            result = self._linear_result(completed, executions, index)
            result.selected_path_ids = selected_path_ids
            return result

        parallel_group_id = (
            generate_parallel_group_id(definition.step_id)
            if kind == AdvancementKind.PARALLEL else None
        )
        created_ids = await self._materialize(completed, paths, parallel_group_id, executions)
        if created_ids:
            executions = await self._step_repo.list_for_run(run_id)

        next_ids = self._first_pending_per_path(paths, executions)

        logger.info(
            f"Branch {definition.step_id} ({kind.value}) advanced to {len(next_ids)} step(s)",
            extra={
                "flow_run_id": run_id,
                "step_id": definition.step_id,
                "parallel_group_id": parallel_group_id,
            }
        )
        return AdvanceResult(
            next_ids=next_ids,
            created_ids=created_ids,
            selected_path_ids=selected_path_ids,
            # Rows exist but were already activated by a concurrent call
            waiting=not next_ids
        )

    def _linear_result(
        self,
        completed: StepExecution,
        executions: Sequence[StepExecution],
        index: DefinitionIndex
    ) -> AdvanceResult:
        hop = self._next_after(completed, executions, index)
        return AdvanceResult(
            next_ids=[hop.next_id] if hop.next_id else [],
            waiting=hop.waiting
        )

    def _kind_for(
        self,
        definition: Optional[StepDefinition],
        execution: StepExecution
    ) -> AdvancementKind:
        """Advancement kind with the missing-definition and no-paths fallbacks"""
        if definition is None:
            logger.warning(
                f"No definition for step {execution.step_id}, falling back to linear advancement",
                extra={"flow_run_id": execution.flow_run_id, "step_id": execution.step_id}
            )
            return AdvancementKind.LINEAR

        kind = AdvancementKind.for_step_type(definition.step_type)
        if kind != AdvancementKind.LINEAR and not definition.paths:
            logger.warning(
                f"Branch step {definition.step_id} has no paths, falling back to linear advancement",
                extra={"flow_run_id": execution.flow_run_id, "step_id": definition.step_id}
            )
            return AdvancementKind.LINEAR
        return kind

    async def _materialize(
        self,
        branch_execution: StepExecution,
        paths: List[BranchPath],
        parallel_group_id: Optional[str],
        executions: Sequence[StepExecution]
    ) -> List[str]:
        """Create PENDING rows for the children of each path that lack one"""
        existing = {(e.step_id, e.branch_path) for e in executions}
        now = utc_now()
        new_rows: List[StepExecution] = []

        for path in paths:
            for dynamic_index, child in enumerate(path.steps):
                if (child.step_id, path.path_id) in existing:
                    continue
                new_rows.append(StepExecution(
                    step_execution_id=generate_step_execution_id(),
                    flow_run_id=branch_execution.flow_run_id,
                    step_id=child.step_id,
                    step_index=branch_execution.step_index,
                    status=StepExecutionStatus.PENDING,
                    branch_path=path.path_id,
                    parallel_group_id=parallel_group_id,
                    dynamic_index=dynamic_index,
                    completion_mode=child.completion_mode,
                    created_at=now
                ))

        if not new_rows:
            return []
        return await self._step_repo.create_many(new_rows)

    def _first_pending_per_path(
        self,
        paths: List[BranchPath],
        executions: Sequence[StepExecution]
    ) -> List[str]:
        next_ids: List[str] = []
        for path in paths:
            path_rows = self._path_rows(path, executions)
            if path_rows and path_rows[0].status == StepExecutionStatus.PENDING:
                next_ids.append(path_rows[0].step_execution_id)
        return next_ids

    # =========================================================================
    # Navigation
    # =========================================================================

    def _next_after(
        self,
        execution: StepExecution,
        executions: Sequence[StepExecution],
        index: DefinitionIndex
    ) -> _Hop:
        """
        Find the step that follows a finished row

        Inside a branch path the next sibling wins. When the path is
        exhausted, choice branches continue after the branch step, while
        parallel branches first require every row under the branch to be
        terminal.
        """
        owner = index.owner_of(execution.step_id) if execution.branch_path else None
        if owner is None:
            return self._next_top_level(execution, executions)

        hop = self._next_sibling(execution, owner, executions)
        if hop is not None:
            return hop

        branch_execution = self._branch_execution(owner, executions)

        if AdvancementKind.for_step_type(owner.branch.step_type) == AdvancementKind.PARALLEL:
            if not self._is_converged(owner.branch, executions, index):
                logger.debug(
                    f"Parallel path {owner.path.path_id} finished, waiting on sibling paths",
                    extra={
                        "flow_run_id": execution.flow_run_id,
                        "parallel_group_id": execution.parallel_group_id,
                    }
                )
                return _Hop(None, waiting=True)
            logger.info(
                f"Parallel branch {owner.branch.step_id} converged",
                extra={
                    "flow_run_id": execution.flow_run_id,
                    "step_id": owner.branch.step_id,
                    "parallel_group_id": generate_parallel_group_id(owner.branch.step_id),
                }
            )

        if branch_execution is None:
            logger.warning(
                f"No execution for branch step {owner.branch.step_id}, continuing by step index",
                extra={"flow_run_id": execution.flow_run_id, "step_id": execution.step_id}
            )
            return self._next_top_level(execution, executions)

        return self._next_after(branch_execution, executions, index)

    def _next_top_level(
        self,
        execution: StepExecution,
        executions: Sequence[StepExecution]
    ) -> _Hop:
        later = sorted(
            (e for e in executions
             if e.branch_path is None and e.step_index > execution.step_index),
            key=lambda e: e.step_index
        )
        return self._first_open(later)

    def _next_sibling(
        self,
        execution: StepExecution,
        owner: PathOwner,
        executions: Sequence[StepExecution]
    ) -> Optional[_Hop]:
        """Next row in the same path, or None when the path is exhausted"""
        position = execution.dynamic_index if execution.dynamic_index is not None else -1
        later = [
            e for e in self._path_rows(owner.path, executions)
            if (e.dynamic_index if e.dynamic_index is not None else -1) > position
        ]
        hop = self._first_open(later)
        if hop.next_id is None and not hop.waiting:
            return None
        return hop

    def _first_open(self, ordered: Sequence[StepExecution]) -> _Hop:
        """
        First PENDING row in order, skipping terminal rows

        A row already IN_PROGRESS means another caller advanced first.
        """
        for candidate in ordered:
            if candidate.status == StepExecutionStatus.PENDING:
                return _Hop(candidate.step_execution_id)
            if candidate.status in ACTIVE_STEP_STATUSES:
                return _Hop(None, waiting=True)
        return _Hop(None)

    def _is_converged(
        self,
        branch: StepDefinition,
        executions: Sequence[StepExecution],
        index: DefinitionIndex
    ) -> bool:
        """All rows under a parallel branch, at any nesting depth, are terminal"""
        descendants = index.descendant_step_ids(branch.step_id)
        return all(
            e.is_terminal for e in executions
            if e.step_id in descendants and e.branch_path is not None
        )

    def _path_rows(self, path: BranchPath, executions: Sequence[StepExecution]) -> List[StepExecution]:
        step_ids = {child.step_id for child in path.steps}
        rows = [
            e for e in executions
            if e.branch_path == path.path_id and e.step_id in step_ids
        ]
        return sorted(rows, key=lambda e: e.dynamic_index if e.dynamic_index is not None else 0)

    def _branch_execution(
        self,
        owner: PathOwner,
        executions: Sequence[StepExecution]
    ) -> Optional[StepExecution]:
        for candidate in executions:
            if candidate.step_id == owner.branch.step_id:
                return candidate
        return None

    def _find(self, executions: Sequence[StepExecution], step_execution_id: str) -> Optional[StepExecution]:
        for candidate in executions:
            if candidate.step_execution_id == step_execution_id:
                return candidate
        return None

    # =========================================================================
    # Path Selection
    # =========================================================================

    def _select_paths(
        self,
        definition: StepDefinition,
        kind: AdvancementKind,
        result_data: Optional[Dict[str, Any]],
        context: EvaluationContext
    ) -> List[BranchPath]:
        if kind == AdvancementKind.PARALLEL:
            return list(definition.paths)
        if kind == AdvancementKind.SINGLE_CHOICE:
            return [self._select_single_choice(definition, result_data or {})]
        return [self._select_multi_choice(definition, context)]

    def _select_single_choice(
        self,
        definition: StepDefinition,
        result_data: Dict[str, Any]
    ) -> BranchPath:
        """User-selected path; unknown or missing selection falls back to the first path"""
        selected_id = next((result_data[k] for k in SELECTED_PATH_KEYS if result_data.get(k)), None)
        if selected_id is not None:
            for path in definition.paths:
                if path.path_id == str(selected_id):
                    return path

        selected_option = next((result_data[k] for k in SELECTED_OPTION_KEYS if result_data.get(k)), None)
        if selected_option is not None:
            option = str(selected_option).strip().lower()
            for path in definition.paths:
                if path.label.strip().lower() == option or path.path_id.lower() == option:
                    return path

        logger.warning(
            f"No valid path selected for {definition.step_id} "
            f"(selected={selected_id or selected_option}), using first path",
            extra={"step_id": definition.step_id}
        )
        return definition.paths[0]

    def _select_multi_choice(
        self,
        definition: StepDefinition,
        context: EvaluationContext
    ) -> BranchPath:
        """First path whose condition holds, else the default path, else the last path"""
        for path in definition.paths:
            if path.condition is not None and self._conditions.evaluate(path.condition, context):
                return path

        for path in definition.paths:
            if path.is_default:
                return path

        logger.info(
            f"No condition matched for {definition.step_id} and no default path, using last path",
            extra={"step_id": definition.step_id}
        )
        return definition.paths[-1]

    # =========================================================================
    # Conditional Skip Chain
    # =========================================================================

    async def evaluate_skip_chain(
        self,
        start_execution_id: str,
        all_executions: Sequence[StepExecution],
        step_definitions,
        evaluation_context: EvaluationContext
    ) -> SkipChainResult:
        """
        Skip steps whose skip condition holds, starting at start_execution_id

        Each skipped step is marked SKIPPED and navigation continues exactly
        as if it had completed. Stops at the first step that is not skipped.

        Returns:
            SkipChainResult with next_id None when the chain runs off the end
            of the flow (or hits a parallel group that is still running, in
            which case waiting is True)
        """
        index = DefinitionIndex.of(step_definitions)
        executions: List[StepExecution] = list(all_executions)
        skipped_ids: List[str] = []
        current_id: Optional[str] = start_execution_id

        # Each row can be skipped at most once
        for _ in range(len(executions) + 1):
            if current_id is None:
                return SkipChainResult(next_id=None, skipped_ids=skipped_ids)

            current = self._find(executions, current_id)
            if current is None or current.status != StepExecutionStatus.PENDING:
                return SkipChainResult(next_id=current_id, skipped_ids=skipped_ids)

            definition = index.get(current.step_id)
            skip_condition = definition.skip_condition if definition else None
            if skip_condition is None or not self._conditions.evaluate(skip_condition, evaluation_context):
                return SkipChainResult(next_id=current_id, skipped_ids=skipped_ids)

            skipped = await self._step_repo.transition_status(
                current_id,
                {StepExecutionStatus.PENDING},
                StepExecutionStatus.SKIPPED,
                {"completed_at": utc_now()}
            )
            if skipped is None:
                # Someone else moved this row on
                return SkipChainResult(next_id=None, skipped_ids=skipped_ids, waiting=True)

            logger.info(
                f"Skipped step {current.step_id} by skip condition",
                extra={"flow_run_id": current.flow_run_id, "step_execution_id": current_id}
            )
            skipped_ids.append(current_id)
            executions = [skipped if e.step_execution_id == current_id else e for e in executions]

            hop = self._next_after(skipped, executions, index)
            if hop.waiting:
                return SkipChainResult(next_id=None, skipped_ids=skipped_ids, waiting=True)
            current_id = hop.next_id

        logger.warning(
            f"Skip chain from {start_execution_id} did not terminate",
            extra={"step_execution_id": start_execution_id}
        )
        return SkipChainResult(next_id=None, skipped_ids=skipped_ids, waiting=True)
