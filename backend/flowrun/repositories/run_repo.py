"""Flow Run Repository - Data access for flow runs and flow definitions"""
from typing import Any, Dict, Iterable, Optional
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .mongo_client import FLOWS, FLOW_RUNS, encode_value, get_collection, strip_id, to_document
from ..domain.models import FlowDefinition, FlowRun
from ..domain.enums import FlowRunStatus
from ..domain.errors import AlreadyExistsError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class MongoFlowRunRepository:
    """Repository for flow run operations"""

    def __init__(self, database: Optional[AsyncIOMotorDatabase] = None):
        self._runs = get_collection(FLOW_RUNS, database)

    async def create(self, run: FlowRun) -> FlowRun:
        """Create a new flow run"""
        try:
            await self._runs.insert_one(to_document(run, "flow_run_id"))
        except DuplicateKeyError:
            raise AlreadyExistsError(f"Flow run {run.flow_run_id} already exists")
        logger.info(f"Created flow run: {run.flow_run_id}", extra={"flow_run_id": run.flow_run_id})
        return run

    async def get(self, flow_run_id: str) -> Optional[FlowRun]:
        """Get flow run by ID"""
        doc = await self._runs.find_one({"flow_run_id": flow_run_id})
        if doc:
            return FlowRun.model_validate(strip_id(doc))
        return None

    async def find_by_parent_step(self, parent_step_execution_id: str) -> Optional[FlowRun]:
        """Get the child run launched by a SUB_FLOW step execution"""
        doc = await self._runs.find_one({"parent_step_execution_id": parent_step_execution_id})
        if doc:
            return FlowRun.model_validate(strip_id(doc))
        return None

    async def update(self, flow_run_id: str, updates: Dict[str, Any]) -> Optional[FlowRun]:
        """Update fields of a flow run"""
        result = await self._runs.find_one_and_update(
            {"flow_run_id": flow_run_id},
            {"$set": encode_value(dict(updates))},
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            return None
        return FlowRun.model_validate(strip_id(result))

    async def transition_status(
        self,
        flow_run_id: str,
        from_statuses: Iterable[FlowRunStatus],
        to_status: FlowRunStatus,
        updates: Optional[Dict[str, Any]] = None
    ) -> Optional[FlowRun]:
        """Atomically move a run between statuses; None if the precondition failed"""
        changes = encode_value(dict(updates or {}))
        changes["status"] = to_status.value

        result = await self._runs.find_one_and_update(
            {
                "flow_run_id": flow_run_id,
                "status": {"$in": [s.value for s in from_statuses]},
            },
            {"$set": changes},
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            return None
        logger.info(
            f"Flow run {flow_run_id} -> {to_status.value}",
            extra={"flow_run_id": flow_run_id, "status": to_status.value}
        )
        return FlowRun.model_validate(strip_id(result))


class MongoFlowRepository:
    """Repository for flow definitions"""

    def __init__(self, database: Optional[AsyncIOMotorDatabase] = None):
        self._flows = get_collection(FLOWS, database)

    async def save(self, flow: FlowDefinition) -> FlowDefinition:
        """Insert or replace a flow definition"""
        await self._flows.replace_one(
            {"flow_id": flow.flow_id},
            to_document(flow, "flow_id"),
            upsert=True
        )
        logger.info(f"Saved flow: {flow.flow_id}", extra={"flow_id": flow.flow_id})
        return flow

    async def get(self, flow_id: str) -> Optional[FlowDefinition]:
        """Get flow definition by ID"""
        doc = await self._flows.find_one({"flow_id": flow_id})
        if doc:
            return FlowDefinition.model_validate(strip_id(doc))
        return None
