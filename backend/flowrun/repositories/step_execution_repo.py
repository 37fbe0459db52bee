"""Step Execution Repository - Data access for step execution rows and group assignees"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import BulkWriteError

from .mongo_client import (
    STEP_EXECUTIONS, STEP_EXECUTION_ASSIGNEES, encode_value, get_collection, strip_id, to_document
)
from ..domain.models import StepExecution, StepExecutionAssignee
from ..domain.enums import AssigneeStatus, StepExecutionStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)

DUPLICATE_KEY_CODE = 11000


class MongoStepExecutionRepository:
    """Repository for step execution operations"""

    def __init__(self, database: Optional[AsyncIOMotorDatabase] = None):
        self._executions = get_collection(STEP_EXECUTIONS, database)
        self._assignees = get_collection(STEP_EXECUTION_ASSIGNEES, database)

    # =========================================================================
    # Step Executions
    # =========================================================================

    async def list_for_run(self, flow_run_id: str) -> List[StepExecution]:
        """Get all rows of a run in activation order"""
        cursor = self._executions.find({"flow_run_id": flow_run_id}).sort(
            [("step_index", ASCENDING), ("dynamic_index", ASCENDING)]
        )
        return [StepExecution.model_validate(strip_id(doc)) async for doc in cursor]

    async def get(self, step_execution_id: str) -> Optional[StepExecution]:
        """Get row by ID"""
        doc = await self._executions.find_one({"step_execution_id": step_execution_id})
        if doc:
            return StepExecution.model_validate(strip_id(doc))
        return None

    async def create_many(self, executions: List[StepExecution]) -> List[str]:
        """
        Insert rows, ignoring ones a concurrent caller already created

        The unique (flow_run_id, step_id, branch_path) index rejects the
        duplicates; everything else is inserted.
        """
        if not executions:
            return []

        docs = [to_document(e, "step_execution_id") for e in executions]
        rejected: set = set()
        try:
            await self._executions.insert_many(docs, ordered=False)
        except BulkWriteError as e:
            errors = e.details.get("writeErrors", [])
            if any(err.get("code") != DUPLICATE_KEY_CODE for err in errors):
                raise
            rejected = {err["index"] for err in errors}
            logger.info(
                f"Dropped {len(rejected)} duplicate step execution(s)",
                extra={"flow_run_id": executions[0].flow_run_id}
            )

        created = [
            e.step_execution_id for i, e in enumerate(executions) if i not in rejected
        ]
        logger.info(
            f"Created {len(created)} step execution(s)",
            extra={"flow_run_id": executions[0].flow_run_id}
        )
        return created

    async def transition_status(
        self,
        step_execution_id: str,
        from_statuses: Iterable[StepExecutionStatus],
        to_status: StepExecutionStatus,
        updates: Optional[Dict[str, Any]] = None
    ) -> Optional[StepExecution]:
        """Atomically move a row between statuses; None if the precondition failed"""
        changes = encode_value(dict(updates or {}))
        changes["status"] = to_status.value

        result = await self._executions.find_one_and_update(
            {
                "step_execution_id": step_execution_id,
                "status": {"$in": [s.value for s in from_statuses]},
            },
            {"$set": changes},
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            logger.debug(
                f"Conditional transition to {to_status.value} matched no row",
                extra={"step_execution_id": step_execution_id}
            )
            return None
        return StepExecution.model_validate(strip_id(result))

    async def update(self, step_execution_id: str, updates: Dict[str, Any]) -> Optional[StepExecution]:
        """Update fields of a row"""
        result = await self._executions.find_one_and_update(
            {"step_execution_id": step_execution_id},
            {"$set": encode_value(dict(updates))},
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            return None
        return StepExecution.model_validate(strip_id(result))

    # =========================================================================
    # Group Assignees
    # =========================================================================

    async def create_assignees(self, assignees: List[StepExecutionAssignee]) -> None:
        if not assignees:
            return
        await self._assignees.insert_many([to_document(a, "assignee_id") for a in assignees])
        logger.info(
            f"Created {len(assignees)} assignee record(s)",
            extra={"step_execution_id": assignees[0].step_execution_id}
        )

    async def list_assignees(self, step_execution_id: str) -> List[StepExecutionAssignee]:
        cursor = self._assignees.find({"step_execution_id": step_execution_id}).sort("assignee_id", ASCENDING)
        return [StepExecutionAssignee.model_validate(strip_id(doc)) async for doc in cursor]

    async def complete_assignee(
        self,
        step_execution_id: str,
        assignee_id: str,
        result_data: Dict[str, Any],
        completed_at: datetime
    ) -> Optional[StepExecutionAssignee]:
        """Mark one assignee's submission; None if already completed or not an assignee of the step"""
        result = await self._assignees.find_one_and_update(
            {
                "assignee_id": assignee_id,
                "step_execution_id": step_execution_id,
                "status": AssigneeStatus.PENDING.value,
            },
            {"$set": {
                "status": AssigneeStatus.COMPLETED.value,
                "result_data": encode_value(result_data),
                "completed_at": completed_at,
            }},
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            return None
        return StepExecutionAssignee.model_validate(strip_id(result))
