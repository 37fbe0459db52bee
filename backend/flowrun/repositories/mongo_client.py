"""Async MongoDB Client using Motor - Connection and index management"""
from enum import Enum
from typing import Any, Dict, Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pydantic import BaseModel
from pymongo import ASCENDING

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Collection names
FLOWS = "flows"
FLOW_RUNS = "flow_runs"
STEP_EXECUTIONS = "step_executions"
STEP_EXECUTION_ASSIGNEES = "step_execution_assignees"
NOTIFICATION_OUTBOX = "notification_outbox"
ACCESS_TOKENS = "access_tokens"
CONTACTS = "contacts"

# Global async client instance
_async_client: Optional[AsyncIOMotorClient] = None
_async_database: Optional[AsyncIOMotorDatabase] = None


def get_async_client() -> AsyncIOMotorClient:
    """Get or create async MongoDB client using Motor"""
    global _async_client
    if _async_client is None:
        logger.info(f"Creating async MongoDB client for: {settings.mongo_uri}")
        _async_client = AsyncIOMotorClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
        )
    return _async_client


def get_async_database() -> AsyncIOMotorDatabase:
    """Get the async application database"""
    global _async_database
    if _async_database is None:
        client = get_async_client()
        _async_database = client[settings.mongo_db]
        logger.info(f"Using async database: {settings.mongo_db}")
    return _async_database


def get_collection(name: str, database: Optional[AsyncIOMotorDatabase] = None) -> AsyncIOMotorCollection:
    """Get a collection from the given database (default: application database)"""
    db = database if database is not None else get_async_database()
    return db[name]


async def close_async_connection() -> None:
    """Close async MongoDB connection"""
    global _async_client, _async_database
    if _async_client is not None:
        _async_client.close()
        _async_client = None
        _async_database = None
        logger.info("Async MongoDB connection closed")


async def async_health_check() -> dict:
    """Check async MongoDB health"""
    try:
        client = get_async_client()
        await client.admin.command("ping")
        return {
            "status": "healthy",
            "database": settings.mongo_db,
            "connection": "ok",
        }
    except Exception as e:
        logger.error(f"Async MongoDB health check failed: {e}")
        return {
            "status": "unhealthy",
            "database": settings.mongo_db,
            "error": str(e),
        }


async def create_indexes(database: Optional[AsyncIOMotorDatabase] = None) -> None:
    """Create all required indexes"""
    db = database if database is not None else get_async_database()
    logger.info("Creating MongoDB indexes...")

    # Flows collection
    flows = db[FLOWS]
    await flows.create_index("flow_id", unique=True)

    # Flow runs collection
    flow_runs = db[FLOW_RUNS]
    await flow_runs.create_index("flow_run_id", unique=True)
    await flow_runs.create_index([("flow_id", ASCENDING), ("status", ASCENDING)])
    await flow_runs.create_index("parent_step_execution_id", sparse=True)
    await flow_runs.create_index("last_activity_at", background=True)

    # Step executions collection
    step_executions = db[STEP_EXECUTIONS]
    await step_executions.create_index("step_execution_id", unique=True)
    await step_executions.create_index(
        [("flow_run_id", ASCENDING), ("step_index", ASCENDING), ("dynamic_index", ASCENDING)]
    )
    # Branch rows are materialized at most once per (run, step, path)
    await step_executions.create_index(
        [("flow_run_id", ASCENDING), ("step_id", ASCENDING), ("branch_path", ASCENDING)],
        unique=True,
        name="uniq_run_step_branch_path"
    )
    await step_executions.create_index([("flow_run_id", ASCENDING), ("parallel_group_id", ASCENDING)])

    # Step execution assignees collection
    assignees = db[STEP_EXECUTION_ASSIGNEES]
    await assignees.create_index("assignee_id", unique=True)
    await assignees.create_index("step_execution_id")

    # Notification outbox collection
    outbox = db[NOTIFICATION_OUTBOX]
    await outbox.create_index("notification_id", unique=True)
    await outbox.create_index([("step_execution_id", ASCENDING), ("status", ASCENDING)])
    await outbox.create_index([("status", ASCENDING), ("send_after", ASCENDING)])

    # Access tokens collection
    access_tokens = db[ACCESS_TOKENS]
    await access_tokens.create_index("token", unique=True)
    await access_tokens.create_index("step_execution_id")
    await access_tokens.create_index("expires_at", background=True)

    # Contacts collection
    contacts = db[CONTACTS]
    await contacts.create_index("contact_id", unique=True)
    await contacts.create_index("email")

    logger.info("MongoDB indexes created successfully")


# =============================================================================
# Document helpers
# =============================================================================

def encode_value(value: Any) -> Any:
    """Enums are stored by value; datetimes stay native for sorting"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [encode_value(v) for v in value]
    return value


def to_document(model: BaseModel, id_field: str) -> Dict[str, Any]:
    """Serialize a model for insertion, keyed by its natural id"""
    # Don't use mode="json" - it converts datetime to strings, breaking MongoDB sorting
    doc = encode_value(model.model_dump())
    doc["_id"] = doc[id_field]
    return doc


def strip_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is not None:
        doc.pop("_id", None)
    return doc
