"""Repository modules - Data access layer"""
from .base import (
    AccessTokenRepository, ContactRepository, FlowRepository, FlowRunRepository,
    NotificationRepository, StepExecutionRepository
)
from .mongo_client import create_indexes, get_async_database, get_collection
from .step_execution_repo import MongoStepExecutionRepository
from .run_repo import MongoFlowRepository, MongoFlowRunRepository
from .notification_repo import (
    MongoAccessTokenRepository, MongoContactRepository, MongoNotificationRepository
)
from .inmemory import (
    InMemoryAccessTokenRepository, InMemoryContactRepository, InMemoryFlowRepository,
    InMemoryFlowRunRepository, InMemoryNotificationRepository, InMemoryStepExecutionRepository
)

__all__ = [
    "AccessTokenRepository",
    "ContactRepository",
    "FlowRepository",
    "FlowRunRepository",
    "NotificationRepository",
    "StepExecutionRepository",
    "create_indexes",
    "get_async_database",
    "get_collection",
    "MongoStepExecutionRepository",
    "MongoFlowRepository",
    "MongoFlowRunRepository",
    "MongoAccessTokenRepository",
    "MongoContactRepository",
    "MongoNotificationRepository",
    "InMemoryAccessTokenRepository",
    "InMemoryContactRepository",
    "InMemoryFlowRepository",
    "InMemoryFlowRunRepository",
    "InMemoryNotificationRepository",
    "InMemoryStepExecutionRepository",
]
