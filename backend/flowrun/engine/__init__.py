"""Step Advancement Engine - Branching, convergence and step completion"""
from .condition_evaluator import ConditionEvaluator, build_evaluation_context, evaluate_condition
from .definition_index import DefinitionIndex
from .step_advancement import StepAdvancementEngine
from .step_completion import StepCompletionOrchestrator, SubFlowLauncher
from .group_completion import GroupCompletionEvaluator
from .automation_runner import AutomationRunner

__all__ = [
    "ConditionEvaluator",
    "build_evaluation_context",
    "evaluate_condition",
    "DefinitionIndex",
    "StepAdvancementEngine",
    "StepCompletionOrchestrator",
    "SubFlowLauncher",
    "GroupCompletionEvaluator",
    "AutomationRunner",
]
