"""Notification Repository - Data access for notification outbox, access tokens and contacts"""
from datetime import datetime
from typing import List, Optional
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .mongo_client import (
    ACCESS_TOKENS, CONTACTS, NOTIFICATION_OUTBOX, get_collection, strip_id, to_document
)
from ..domain.models import AccessToken, Contact, NotificationOutbox
from ..domain.enums import NotificationStatus
from ..domain.errors import AlreadyExistsError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class MongoNotificationRepository:
    """Repository for notification outbox operations"""

    def __init__(self, database: Optional[AsyncIOMotorDatabase] = None):
        self._outbox = get_collection(NOTIFICATION_OUTBOX, database)

    async def create_notification(self, notification: NotificationOutbox) -> NotificationOutbox:
        """Create a notification in outbox"""
        await self._outbox.insert_one(to_document(notification, "notification_id"))
        logger.info(
            f"Created notification: {notification.template_key.value}",
            extra={
                "notification_id": notification.notification_id,
                "flow_run_id": notification.flow_run_id,
                "step_execution_id": notification.step_execution_id,
            }
        )
        return notification

    async def list_for_step(self, step_execution_id: str) -> List[NotificationOutbox]:
        cursor = self._outbox.find({"step_execution_id": step_execution_id}).sort("created_at", ASCENDING)
        return [NotificationOutbox.model_validate(strip_id(doc)) async for doc in cursor]

    async def cancel_pending_for_step(self, step_execution_id: str) -> int:
        """Cancel every not-yet-sent notification of a step"""
        result = await self._outbox.update_many(
            {"step_execution_id": step_execution_id, "status": NotificationStatus.PENDING.value},
            {"$set": {"status": NotificationStatus.CANCELLED.value}}
        )
        if result.modified_count:
            logger.info(
                f"Cancelled {result.modified_count} pending notification(s)",
                extra={"step_execution_id": step_execution_id}
            )
        return result.modified_count


class MongoAccessTokenRepository:
    """Repository for magic link tokens"""

    def __init__(self, database: Optional[AsyncIOMotorDatabase] = None):
        self._tokens = get_collection(ACCESS_TOKENS, database)

    async def create(self, token: AccessToken) -> AccessToken:
        try:
            await self._tokens.insert_one(to_document(token, "token"))
        except DuplicateKeyError:
            raise AlreadyExistsError("Access token already exists")
        logger.info(
            "Created access token",
            extra={"step_execution_id": token.step_execution_id, "assignee_id": token.assignee_id}
        )
        return token

    async def get(self, token: str) -> Optional[AccessToken]:
        doc = await self._tokens.find_one({"token": token})
        if doc:
            return AccessToken.model_validate(strip_id(doc))
        return None

    async def mark_used(self, token: str, used_at: datetime) -> Optional[AccessToken]:
        """Record first use; later uses keep the original timestamp"""
        await self._tokens.update_one(
            {"token": token, "used_at": None},
            {"$set": {"used_at": used_at}}
        )
        doc = await self._tokens.find_one({"token": token})
        if doc:
            return AccessToken.model_validate(strip_id(doc))
        return None


class MongoContactRepository:
    """Repository for external contacts"""

    def __init__(self, database: Optional[AsyncIOMotorDatabase] = None):
        self._contacts = get_collection(CONTACTS, database)

    async def save(self, contact: Contact) -> Contact:
        await self._contacts.replace_one(
            {"contact_id": contact.contact_id},
            to_document(contact, "contact_id"),
            upsert=True
        )
        return contact

    async def get(self, contact_id: str) -> Optional[Contact]:
        doc = await self._contacts.find_one({"contact_id": contact_id})
        if doc:
            return Contact.model_validate(strip_id(doc))
        return None
