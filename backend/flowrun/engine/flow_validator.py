"""Flow Validator - Structural checks on a flow definition before it is run"""
from typing import Any, Dict, List, NamedTuple, Set

from pydantic import ValidationError as PydanticValidationError

from ..domain.models import FlowDefinition, StepDefinition
from ..domain.enums import CHILD_FLOW_KEYS, AdvancementKind, ConditionOperator, StepType
from .definition_index import iter_paths

KNOWN_OPERATORS = {op.value for op in ConditionOperator}
KNOWN_STEP_TYPES = {t.value for t in StepType}


class FlowValidationReport(NamedTuple):
    errors: List[str]
    warnings: List[str]

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _walk_steps(steps: List[StepDefinition]):
    for step in steps:
        yield step
        for path in step.paths:
            yield from _walk_steps(path.steps)


def validate_flow(raw: Dict[str, Any]) -> FlowValidationReport:
    """
    Validate a flow definition document

    Errors make the flow unusable; warnings are fallbacks the engine will
    apply at runtime (first path, last path, linear advancement).
    """
    errors: List[str] = []
    warnings: List[str] = []

    try:
        flow = FlowDefinition.model_validate(raw)
    except PydanticValidationError as e:
        return FlowValidationReport([f"Invalid definition: {err['loc']}: {err['msg']}" for err in e.errors()], [])

    if not flow.steps:
        errors.append("Flow has no steps")

    seen: Set[str] = set()
    for step in _walk_steps(flow.steps):
        if step.step_id in seen:
            errors.append(f"Duplicate step id: {step.step_id}")
        seen.add(step.step_id)

        if step.step_type not in KNOWN_STEP_TYPES:
            warnings.append(f"Step {step.step_id} has unknown type {step.step_type}")

        kind = AdvancementKind.for_step_type(step.step_type)
        if kind != AdvancementKind.LINEAR and not step.paths:
            warnings.append(f"Branch step {step.step_id} has no paths (advances linearly)")

        if kind == AdvancementKind.MULTI_CHOICE and step.paths:
            if not any(p.is_default or (p.condition and p.condition.operator == ConditionOperator.ELSE)
                       for p in step.paths):
                warnings.append(
                    f"Multi-choice step {step.step_id} has no default path (last path is the fallback)"
                )

        if step.skip_condition and step.skip_condition.operator not in KNOWN_OPERATORS:
            errors.append(f"Step {step.step_id} skip condition uses unknown operator {step.skip_condition.operator}")

        if step.step_type == StepType.SUB_FLOW and not any(
            step.config.get(k) for k in CHILD_FLOW_KEYS
        ):
            errors.append(f"SUB_FLOW step {step.step_id} has no child flow configured")

    path_ids: Set[str] = set()
    for owner in iter_paths(flow.steps):
        path = owner.path
        if path.path_id in path_ids:
            warnings.append(f"Path id {path.path_id} is reused across branches")
        path_ids.add(path.path_id)
        if not path.steps:
            warnings.append(f"Path {path.path_id} of {owner.branch.step_id} has no steps")
        if path.condition and path.condition.operator not in KNOWN_OPERATORS:
            errors.append(f"Path {path.path_id} condition uses unknown operator {path.condition.operator}")

    return FlowValidationReport(errors, warnings)
