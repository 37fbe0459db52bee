"""Magic Link Service - Token-based step access for external assignees"""
from typing import Optional

from ..domain.models import AccessToken
from ..domain.errors import InvalidStateError, NotFoundError
from ..repositories.base import AccessTokenRepository
from ..config.settings import settings
from ..utils.idgen import generate_access_token
from ..utils.logger import get_logger
from ..utils.time import add_hours, is_expired, utc_now

logger = get_logger(__name__)


class MagicLinkService:
    """Issues and validates magic link tokens"""

    def __init__(self, token_repo: AccessTokenRepository, expiry_hours: Optional[int] = None):
        self.repo = token_repo
        self._expiry_hours = expiry_hours if expiry_hours is not None else settings.magic_link_expiry_hours

    async def create_magic_link(
        self,
        step_execution_id: str,
        expires_in_hours: Optional[int] = None,
        assignee_id: Optional[str] = None
    ) -> AccessToken:
        """
        Create a magic link token for a step execution

        Args:
            step_execution_id: Step the link grants access to
            expires_in_hours: Lifetime (default from settings)
            assignee_id: Group assignee record the link belongs to, if any

        Returns:
            The stored AccessToken
        """
        now = utc_now()
        hours = expires_in_hours if expires_in_hours is not None else self._expiry_hours
        token = AccessToken(
            token=generate_access_token(),
            step_execution_id=step_execution_id,
            assignee_id=assignee_id,
            expires_at=add_hours(now, hours),
            created_at=now
        )
        return await self.repo.create(token)

    async def validate_magic_link(self, token: str) -> AccessToken:
        """
        Validate a magic link token and record its first use

        Raises:
            NotFoundError: Unknown token
            InvalidStateError: Token expired
        """
        record = await self.repo.get(token)
        if record is None:
            raise NotFoundError("Magic link not found")

        if is_expired(record.expires_at):
            logger.info(
                "Rejected expired magic link",
                extra={"step_execution_id": record.step_execution_id}
            )
            raise InvalidStateError(
                "Magic link has expired",
                details={"step_execution_id": record.step_execution_id}
            )

        return await self.repo.mark_used(token, utc_now()) or record

    def task_url(self, token: AccessToken) -> str:
        return settings.task_url(token.token)
