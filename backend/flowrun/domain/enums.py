"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class FlowRunStatus(str, Enum):
    """Global flow run status"""
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    PAUSED = "PAUSED"


class StepExecutionStatus(str, Enum):
    """Runtime status per step execution"""
    PENDING = "PENDING"
    WAITING_FOR_ASSIGNEE = "WAITING_FOR_ASSIGNEE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"


# Statuses from which a step may be completed
ACTIVE_STEP_STATUSES = frozenset({
    StepExecutionStatus.IN_PROGRESS,
    StepExecutionStatus.WAITING_FOR_ASSIGNEE,
})

# Statuses that never change again during a run
TERMINAL_STEP_STATUSES = frozenset({
    StepExecutionStatus.COMPLETED,
    StepExecutionStatus.SKIPPED,
})


class AssigneeStatus(str, Enum):
    """Per-assignee status for group-assigned steps"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class CompletionMode(str, Enum):
    """How a group-assigned step decides it is complete"""
    ANY_ONE = "ANY_ONE"    # One submission is enough
    ALL = "ALL"            # Every assignee must submit
    MAJORITY = "MAJORITY"  # Strictly more than half must submit


class StepType(str, Enum):
    """Types of flow steps"""
    # Human actions
    FORM = "FORM"
    QUESTIONNAIRE = "QUESTIONNAIRE"
    FILE_REQUEST = "FILE_REQUEST"
    TODO = "TODO"
    APPROVAL = "APPROVAL"
    ACKNOWLEDGEMENT = "ACKNOWLEDGEMENT"
    ESIGN = "ESIGN"
    DECISION = "DECISION"
    CUSTOM_ACTION = "CUSTOM_ACTION"
    WEB_APP = "WEB_APP"
    PDF_FORM = "PDF_FORM"
    # Controls
    SINGLE_CHOICE_BRANCH = "SINGLE_CHOICE_BRANCH"
    MULTI_CHOICE_BRANCH = "MULTI_CHOICE_BRANCH"
    PARALLEL_BRANCH = "PARALLEL_BRANCH"
    WAIT = "WAIT"
    SUB_FLOW = "SUB_FLOW"  # Launches a child flow run
    # Automations
    AI_CUSTOM_PROMPT = "AI_CUSTOM_PROMPT"
    AI_EXTRACT = "AI_EXTRACT"
    AI_SUMMARIZE = "AI_SUMMARIZE"
    AI_TRANSCRIBE = "AI_TRANSCRIBE"
    AI_TRANSLATE = "AI_TRANSLATE"
    AI_WRITE = "AI_WRITE"
    SYSTEM_WEBHOOK = "SYSTEM_WEBHOOK"
    SYSTEM_EMAIL = "SYSTEM_EMAIL"
    SYSTEM_CHAT_MESSAGE = "SYSTEM_CHAT_MESSAGE"
    SYSTEM_UPDATE_WORKSPACE = "SYSTEM_UPDATE_WORKSPACE"
    BUSINESS_RULE = "BUSINESS_RULE"


BRANCH_STEP_TYPES = frozenset({
    StepType.SINGLE_CHOICE_BRANCH,
    StepType.MULTI_CHOICE_BRANCH,
    StepType.PARALLEL_BRANCH,
})

# Step types that complete without a human (run by the automation executor)
AUTOMATED_STEP_TYPES = frozenset({
    StepType.AI_CUSTOM_PROMPT,
    StepType.AI_EXTRACT,
    StepType.AI_SUMMARIZE,
    StepType.AI_TRANSCRIBE,
    StepType.AI_TRANSLATE,
    StepType.AI_WRITE,
    StepType.SYSTEM_WEBHOOK,
    StepType.SYSTEM_EMAIL,
    StepType.SYSTEM_CHAT_MESSAGE,
    StepType.SYSTEM_UPDATE_WORKSPACE,
    StepType.BUSINESS_RULE,
})


class AdvancementKind(str, Enum):
    """Closed set of advancement behaviours the engine dispatches on"""
    LINEAR = "LINEAR"
    SINGLE_CHOICE = "SINGLE_CHOICE"
    MULTI_CHOICE = "MULTI_CHOICE"
    PARALLEL = "PARALLEL"

    @classmethod
    def for_step_type(cls, step_type: str) -> "AdvancementKind":
        """Map a step type string to its advancement kind (unknown -> LINEAR)"""
        if step_type == StepType.SINGLE_CHOICE_BRANCH:
            return cls.SINGLE_CHOICE
        if step_type == StepType.MULTI_CHOICE_BRANCH:
            return cls.MULTI_CHOICE
        if step_type == StepType.PARALLEL_BRANCH:
            return cls.PARALLEL
        return cls.LINEAR


class ConditionOperator(str, Enum):
    """Operators for branch and skip conditions"""
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    NOT_EMPTY = "NOT_EMPTY"
    IS_EMPTY = "IS_EMPTY"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    IN = "IN"
    NOT_IN = "NOT_IN"
    ELSE = "ELSE"  # Always true - guaranteed fallback path


class DueType(str, Enum):
    """How a step due date is computed"""
    RELATIVE = "RELATIVE"                # Offset from step start
    FIXED = "FIXED"                      # Absolute date
    BEFORE_FLOW_DUE = "BEFORE_FLOW_DUE"  # Offset before the run due date


class DueUnit(str, Enum):
    """Units for relative due offsets"""
    HOURS = "HOURS"
    DAYS = "DAYS"
    WEEKS = "WEEKS"


class NotificationStatus(str, Enum):
    """Notification outbox status"""
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class NotificationTemplateKey(str, Enum):
    """Notification template identifiers"""
    TASK_ASSIGNED = "TASK_ASSIGNED"
    STEP_COMPLETED = "STEP_COMPLETED"
    STEP_DUE = "STEP_DUE"
    FLOW_COMPLETED = "FLOW_COMPLETED"


# Config keys naming the child flow of a SUB_FLOW step
CHILD_FLOW_KEYS = ("flow_id", "flowId", "sub_flow_id", "subFlowId")
