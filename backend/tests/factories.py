"""Builders for flow definitions and run state used across tests"""
from typing import Any, Dict, Optional

from flowrun.domain.models import FlowDefinition, StepExecution


def step(step_id: str, step_type: str = "FORM", **fields: Any) -> Dict[str, Any]:
    return {"step_id": step_id, "step_type": step_type, "name": fields.pop("name", step_id.title()), **fields}


def path(path_id: str, *steps: Dict[str, Any], **fields: Any) -> Dict[str, Any]:
    return {"path_id": path_id, "label": fields.pop("label", path_id), "steps": list(steps), **fields}


def condition(source: str, operator: str, value: Any = None) -> Dict[str, Any]:
    return {"source": source, "operator": operator, "value": value}


def flow(*steps: Dict[str, Any], flow_id: str = "FLOW-1", name: str = "Test Flow", **fields: Any) -> FlowDefinition:
    return FlowDefinition.model_validate({"flow_id": flow_id, "name": name, "steps": list(steps), **fields})


async def rows_by_step(step_repo, flow_run_id: str) -> Dict[str, StepExecution]:
    """Step executions of a run keyed by step_id (step ids are unique per flow)"""
    return {e.step_id: e for e in await step_repo.list_for_run(flow_run_id)}


def token_from_url(task_url: str) -> str:
    return task_url.rsplit("/", 1)[-1]


def notifications_of(notification_repo, template_key: str, step_execution_id: Optional[str] = None):
    return [
        n for n in notification_repo.notifications
        if n.template_key == template_key
        and (step_execution_id is None or n.step_execution_id == step_execution_id)
    ]
