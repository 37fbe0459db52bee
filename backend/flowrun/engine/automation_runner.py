"""Automation Runner - Execute automated steps and chain consecutive ones

Handlers are registered per step type. MULTI_CHOICE_BRANCH and
PARALLEL_BRANCH are control steps with nothing to execute; they complete
with an empty result and the advancement engine picks their paths.
Steps of an automated type without a handler stay IN_PROGRESS.

Chains are walked iteratively: each completion goes through the
orchestrator with skip_auto_exec=True and the runner picks up the newly
activated automated steps itself.
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..domain.models import FlowRun, StepDefinition, StepExecution
from ..domain.enums import AUTOMATED_STEP_TYPES, StepType
from ..repositories.base import StepExecutionRepository
from ..config.settings import settings
from ..utils.logger import get_logger
from .definition_index import DefinitionIndex

logger = get_logger(__name__)

AutomationHandler = Callable[[StepExecution, StepDefinition, FlowRun], Awaitable[Dict[str, Any]]]


async def complete_control_step(
    step_execution: StepExecution,
    step_definition: StepDefinition,
    run: FlowRun
) -> Dict[str, Any]:
    return {}


class AutomationRunner:
    """Runs automated steps through registered handlers"""

    def __init__(
        self,
        step_repo: StepExecutionRepository,
        handlers: Optional[Dict[str, AutomationHandler]] = None,
        max_chain: Optional[int] = None
    ):
        self.step_repo = step_repo
        self._handlers: Dict[str, AutomationHandler] = {
            StepType.MULTI_CHOICE_BRANCH.value: complete_control_step,
            StepType.PARALLEL_BRANCH.value: complete_control_step,
        }
        for step_type, handler in (handlers or {}).items():
            self.register(step_type, handler)
        self.max_chain = max_chain if max_chain is not None else settings.max_auto_exec_chain

    def register(self, step_type: str, handler: AutomationHandler) -> None:
        """Register (or replace) the handler for a step type"""
        key = step_type.value if isinstance(step_type, StepType) else step_type
        self._handlers[key] = handler

    def is_automated(self, step_type: str) -> bool:
        return step_type in self._handlers or step_type in AUTOMATED_STEP_TYPES

    async def maybe_auto_execute(
        self,
        step_execution: StepExecution,
        step_definition: StepDefinition,
        run: FlowRun,
        orchestrator,
        step_definitions
    ) -> int:
        """
        Execute an activated automated step and any automated steps it leads to

        Args:
            step_execution: The just-activated step
            step_definition: Its definition
            run: Owning flow run
            orchestrator: StepCompletionOrchestrator used to complete steps
            step_definitions: Top-level definitions, FlowDefinition or index

        Returns:
            Number of steps executed
        """
        index = DefinitionIndex.of(step_definitions)
        worklist: List[Tuple[StepExecution, StepDefinition]] = [(step_execution, step_definition)]
        executed = 0

        while worklist:
            if executed >= self.max_chain:
                logger.warning(
                    f"Hit max automation chain limit ({self.max_chain}) for run {run.flow_run_id}. "
                    "Possible misconfigured flow with too many consecutive automated steps.",
                    extra={"flow_run_id": run.flow_run_id}
                )
                break

            execution, definition = worklist.pop(0)
            handler = self._handlers.get(definition.step_type)
            if handler is None:
                if definition.step_type in AUTOMATED_STEP_TYPES:
                    logger.warning(
                        f"No handler for automated step type {definition.step_type}, "
                        "leaving step for manual action",
                        extra={"flow_run_id": run.flow_run_id, "step_execution_id": execution.step_execution_id}
                    )
                continue

            executed += 1
            logger.info(
                f"Executing {definition.step_type} step, chain depth: {executed}",
                extra={"flow_run_id": run.flow_run_id, "step_execution_id": execution.step_execution_id}
            )
            try:
                result_data = await handler(execution, definition, run)
            except Exception as e:
                logger.error(
                    f"Failed to execute {definition.step_type} step: {e}",
                    extra={"flow_run_id": run.flow_run_id, "step_execution_id": execution.step_execution_id}
                )
                continue

            completion = await orchestrator.complete_step_and_advance(
                execution.step_execution_id,
                result_data or {},
                run,
                index,
                skip_ai_review=True,
                skip_auto_exec=True
            )
            if completion.flow_completed:
                break

            for next_id in completion.next_step_ids:
                next_execution = await self.step_repo.get(next_id)
                next_definition = index.get(next_execution.step_id) if next_execution else None
                if next_definition is not None and self.is_automated(next_definition.step_type):
                    worklist.append((next_execution, next_definition))

        return executed
