"""Condition Evaluator - Safe evaluation of branch and skip conditions"""
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..domain.models import (
    Condition, EvaluationContext, FlowRun, StepDefinition, StepExecution
)
from ..domain.enums import ConditionOperator, StepExecutionStatus
from .reference_resolver import has_tokens, resolve_reference, step_outputs_for, stringify
from ..utils.logger import get_logger

logger = get_logger(__name__)

ConditionLike = Union[Condition, Dict[str, Any], None]


class ConditionEvaluator:
    """
    Evaluate branch and skip conditions safely

    Uses a simple DSL - no eval() or exec(). All comparisons are
    case-insensitive string comparisons after reference resolution.
    """

    def evaluate(self, condition: ConditionLike, context: EvaluationContext) -> bool:
        """
        Evaluate a single condition

        Args:
            condition: Condition model, raw dict from a stored definition, or None
            context: Evaluation context built from the run

        Returns:
            True if the condition holds. Malformed input evaluates to False.
        """
        if condition is None:
            return False

        try:
            if isinstance(condition, dict):
                condition = Condition.model_validate(condition)

            operator = condition.operator
            if operator == ConditionOperator.ELSE:
                return True

            left = resolve_reference(condition.source, context)
            right = self._resolve_value(condition.value, context)

            return self._compare(left, operator, right)

        except (PydanticValidationError, TypeError, ValueError) as e:
            logger.warning(f"Condition evaluation failed: {e}")
            return False  # Fail closed

    def _resolve_value(self, value: Any, context: EvaluationContext) -> str:
        """Literal unless it carries a reference token"""
        if has_tokens(value):
            return resolve_reference(value, context)
        return stringify(value)

    def _compare(self, left: str, operator: str, right: str) -> bool:
        """Compare resolved values using operator"""
        left_cmp = left.strip().lower()
        right_cmp = right.strip().lower()

        if operator == ConditionOperator.EQUALS:
            return left_cmp == right_cmp

        elif operator == ConditionOperator.NOT_EQUALS:
            return left_cmp != right_cmp

        elif operator == ConditionOperator.CONTAINS:
            return right_cmp in left_cmp

        elif operator == ConditionOperator.NOT_CONTAINS:
            return right_cmp not in left_cmp

        elif operator == ConditionOperator.NOT_EMPTY:
            return left_cmp != ""

        elif operator == ConditionOperator.IS_EMPTY:
            return left_cmp == ""

        elif operator == ConditionOperator.GREATER_THAN:
            return self._compare_numeric(left_cmp, right_cmp, lambda a, b: a > b)

        elif operator == ConditionOperator.LESS_THAN:
            return self._compare_numeric(left_cmp, right_cmp, lambda a, b: a < b)

        elif operator == ConditionOperator.IN:
            return left_cmp in self._split_list(right_cmp)

        elif operator == ConditionOperator.NOT_IN:
            return left_cmp not in self._split_list(right_cmp)

        logger.warning(f"Unknown condition operator: {operator}")
        return False

    def _compare_numeric(self, left: str, right: str, comparator) -> bool:
        """Compare numeric values; non-numeric operands never match"""
        try:
            return comparator(float(left), float(right))
        except ValueError:
            return False

    def _split_list(self, value: str) -> List[str]:
        return [item.strip() for item in value.split(",") if item.strip()]


_default_evaluator = ConditionEvaluator()


def evaluate_condition(condition: ConditionLike, context: EvaluationContext) -> bool:
    """Module-level shortcut for ConditionEvaluator().evaluate"""
    return _default_evaluator.evaluate(condition, context)


def build_evaluation_context(
    run: FlowRun,
    executions: Iterable[StepExecution],
    step_definitions: Optional[Dict[str, StepDefinition]] = None
) -> EvaluationContext:
    """
    Build the evaluation context for a run

    Args:
        run: Flow run supplying kickoff data, role assignments and workspace
        executions: All step executions of the run
        step_definitions: Definitions keyed by step_id, used to expose
            outputs under the step's display name as well as its id

    Returns:
        Read-only EvaluationContext
    """
    step_definitions = step_definitions or {}
    outputs: Dict[str, Dict[str, Any]] = {}

    for execution in executions:
        if execution.status != StepExecutionStatus.COMPLETED:
            continue
        definition = step_definitions.get(execution.step_id)
        step_outputs_for(
            execution.step_id,
            definition.name if definition else None,
            execution.result_data,
            outputs
        )

    return EvaluationContext(
        kickoff_data=dict(run.kickoff_data),
        role_assignments=dict(run.role_assignments),
        step_outputs=outputs,
        workspace=run.workspace
    )
