"""Domain Models - Pydantic schemas for all entities"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import (
    AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
)

from .enums import (
    AssigneeStatus, CompletionMode, DueType, DueUnit, FlowRunStatus, NotificationStatus,
    NotificationTemplateKey, StepExecutionStatus, TERMINAL_STEP_STATUSES
)
from ..utils.time import parse_iso


# Legacy operator spellings accepted from stored definitions
_OPERATOR_ALIASES = {
    "IS_NOT_EMPTY": "NOT_EMPTY",
    "EQUAL": "EQUALS",
    "NOT_EQUAL": "NOT_EQUALS",
}


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


# ============================================================================
# Conditions
# ============================================================================

class Condition(BaseModel):
    """
    A single boolean condition

    `source` is a reference expression resolved against the evaluation
    context. `value` is compared literally unless it contains a `{...}`
    reference token.
    """
    model_config = ConfigDict(extra="ignore")

    source: str = Field(
        default="",
        validation_alias=AliasChoices("source", "left", "field"),
        description="Reference expression, e.g. '{Kickoff / Region}' or 'region'"
    )
    operator: str = Field(..., description="ConditionOperator name")
    value: Optional[Any] = Field(
        default=None,
        validation_alias=AliasChoices("value", "right"),
        description="Value to compare against"
    )

    @field_validator("source", mode="before")
    @classmethod
    def _coerce_source(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("operator", mode="before")
    @classmethod
    def _normalize_operator(cls, value: Any) -> str:
        if value is None:
            return ""
        normalized = str(_enum_value(value)).strip().upper()
        return _OPERATOR_ALIASES.get(normalized, normalized)


# ============================================================================
# Flow & Step Definitions
# ============================================================================

class StepDue(BaseModel):
    """Due date configuration for a step or a whole flow"""
    model_config = ConfigDict(extra="ignore")

    type: DueType = Field(default=DueType.RELATIVE, description="Legacy configs without a type are RELATIVE")
    value: float = 0
    unit: DueUnit = DueUnit.HOURS
    date: Optional[datetime] = Field(None, description="Absolute due date for FIXED")

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value: Any) -> Any:
        if isinstance(value, str) and value:
            return parse_iso(value)
        return value


class BranchPath(BaseModel):
    """One path of a branching step"""
    model_config = ConfigDict(extra="ignore")

    path_id: str = Field(..., validation_alias=AliasChoices("path_id", "pathId", "id"))
    label: str = ""
    is_default: bool = Field(default=False, validation_alias=AliasChoices("is_default", "isDefault"))
    condition: Optional[Condition] = None
    steps: List["StepDefinition"] = Field(default_factory=list, description="Nested child steps")


class StepDefinition(BaseModel):
    """Step template inside a flow definition (recursive through branch paths)"""
    model_config = ConfigDict(extra="allow")

    step_id: str = Field(..., validation_alias=AliasChoices("step_id", "stepId", "id"))
    step_type: str = Field(..., validation_alias=AliasChoices("step_type", "type"))
    name: Optional[str] = Field(None, validation_alias=AliasChoices("name", "title", "step_name"))
    config: Dict[str, Any] = Field(default_factory=dict)
    paths: List[BranchPath] = Field(default_factory=list)
    skip_condition: Optional[Condition] = Field(
        None, validation_alias=AliasChoices("skip_condition", "skipCondition")
    )
    due: Optional[StepDue] = None
    completion_mode: Optional[CompletionMode] = Field(
        None, validation_alias=AliasChoices("completion_mode", "completionMode")
    )

    @model_validator(mode="before")
    @classmethod
    def _lift_config(cls, data: Any) -> Any:
        """Older definitions keep paths, due and name under `config`"""
        if not isinstance(data, dict):
            return data
        config = data.get("config")
        if not isinstance(config, dict):
            return data
        data = dict(data)
        if not data.get("paths") and isinstance(config.get("paths"), list):
            data["paths"] = config["paths"]
        if data.get("due") is None and config.get("due") is not None:
            data["due"] = config["due"]
        if not any(data.get(k) for k in ("name", "title", "step_name")) and config.get("name"):
            data["name"] = config["name"]
        return data

    @field_validator("step_type", mode="before")
    @classmethod
    def _coerce_step_type(cls, value: Any) -> Any:
        return _enum_value(value)

    @property
    def display_name(self) -> str:
        return self.name or self.step_id


class FlowDefinition(BaseModel):
    """A designed flow: ordered top-level steps"""
    model_config = ConfigDict(extra="ignore")

    flow_id: str
    name: str
    steps: List[StepDefinition] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)
    due: Optional[StepDue] = Field(None, description="Run-level due date config")
    version: int = Field(default=1)


BranchPath.model_rebuild()
StepDefinition.model_rebuild()


# ============================================================================
# Runtime State
# ============================================================================

class WorkspaceInfo(BaseModel):
    """Workspace (organization) identity exposed to references"""
    id: str = ""
    name: str = ""


class FlowRun(BaseModel):
    """One running instance of a flow"""
    model_config = ConfigDict(extra="ignore")

    flow_run_id: str
    flow_id: str
    name: str
    status: FlowRunStatus = Field(default=FlowRunStatus.IN_PROGRESS)
    current_step_index: int = 0
    started_by_id: Optional[str] = None
    organization_id: Optional[str] = None
    kickoff_data: Dict[str, Any] = Field(default_factory=dict)
    role_assignments: Dict[str, Any] = Field(default_factory=dict)
    workspace: Optional[WorkspaceInfo] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    # Sub-flow tracking
    parent_run_id: Optional[str] = Field(None, description="Run that launched this run from a SUB_FLOW step")
    parent_step_execution_id: Optional[str] = Field(None, description="The SUB_FLOW step execution in the parent run")


class StepExecution(BaseModel):
    """Runtime row for one activated step instance in a run"""
    model_config = ConfigDict(extra="ignore")

    step_execution_id: str
    flow_run_id: str
    step_id: str = Field(..., description="Reference to step definition")
    step_index: int = Field(..., description="Top-level index; sub-steps share their branch step's index")
    status: StepExecutionStatus = Field(default=StepExecutionStatus.PENDING)
    # Branch / parallel placement
    branch_path: Optional[str] = Field(None, description="Path ID this row belongs to (null for top-level)")
    parallel_group_id: Optional[str] = Field(None, description="Set for rows created under a PARALLEL_BRANCH")
    dynamic_index: Optional[int] = Field(None, description="Order within the branch path")
    # Assignment
    assigned_to_user_id: Optional[str] = None
    assigned_to_contact_id: Optional[str] = None
    is_group_assignment: bool = False
    completion_mode: Optional[CompletionMode] = None
    # Output & timestamps
    result_data: Dict[str, Any] = Field(default_factory=dict)
    completed_by_id: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    due_at: Optional[datetime] = None

    @field_validator("result_data", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES


class StepExecutionAssignee(BaseModel):
    """Per-assignee record of a group-assigned step"""
    model_config = ConfigDict(extra="ignore")

    assignee_id: str
    step_execution_id: str
    contact_id: Optional[str] = None
    user_id: Optional[str] = None
    status: AssigneeStatus = Field(default=AssigneeStatus.PENDING)
    result_data: Dict[str, Any] = Field(default_factory=dict)
    completed_at: Optional[datetime] = None


class Contact(BaseModel):
    """External assignee"""
    model_config = ConfigDict(extra="ignore")

    contact_id: str
    email: EmailStr
    name: str
    organization_id: Optional[str] = None


class AccessToken(BaseModel):
    """Magic link giving an assignee access to one step"""
    model_config = ConfigDict(extra="ignore")

    token: str
    step_execution_id: str
    assignee_id: Optional[str] = Field(None, description="Group assignee record, if any")
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime


class NotificationOutbox(BaseModel):
    """Notification in outbox"""
    model_config = ConfigDict(extra="ignore")  # Allow extra fields from DB

    notification_id: str
    flow_run_id: Optional[str] = None
    step_execution_id: Optional[str] = None
    template_key: NotificationTemplateKey
    recipients: List[str] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: NotificationStatus = Field(default=NotificationStatus.PENDING)
    send_after: Optional[datetime] = Field(None, description="Earliest send time for scheduled jobs")
    created_at: datetime
    sent_at: Optional[datetime] = None


# ============================================================================
# Evaluation Context
# ============================================================================

class EvaluationContext(BaseModel):
    """Read-only snapshot used as input to condition evaluation"""
    model_config = ConfigDict(frozen=True)

    kickoff_data: Dict[str, Any] = Field(default_factory=dict)
    role_assignments: Dict[str, Any] = Field(default_factory=dict)
    step_outputs: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict, description="Completed step outputs keyed by step id and step name"
    )
    workspace: Optional[WorkspaceInfo] = None


# ============================================================================
# Engine Results
# ============================================================================

class AdvanceResult(BaseModel):
    """Outcome of advancing past a completed step"""
    next_ids: List[str] = Field(default_factory=list, description="Executions to activate")
    created_ids: List[str] = Field(default_factory=list, description="Rows materialized by this call")
    selected_path_ids: List[str] = Field(default_factory=list)
    waiting: bool = Field(default=False, description="A parallel group is still running elsewhere")


class SkipChainResult(BaseModel):
    """Outcome of walking a conditional-skip chain"""
    next_id: Optional[str] = None
    skipped_ids: List[str] = Field(default_factory=list)
    waiting: bool = False


class StepCompletionResult(BaseModel):
    """Outcome of completing a step and advancing the run"""
    completed: bool
    next_step_id: Optional[str] = None
    next_step_ids: List[str] = Field(default_factory=list)
    skipped_step_ids: List[str] = Field(default_factory=list)
    flow_completed: bool = False


class GroupCompletionResult(BaseModel):
    """Outcome of one assignee submitting on a group step"""
    advanced: bool
    completed_count: int
    total_count: int
