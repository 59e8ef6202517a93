from typing import Annotated, Optional
import uuid
import logging

from fastapi import Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db


logger = logging.getLogger(__name__)


async def get_current_user_id(
    x_user_id: Annotated[Optional[uuid.UUID], Header(alias="X-User-Id")] = None,
) -> Optional[uuid.UUID]:
    """
    Id of the acting user.

    Authentication and permission checks happen upstream; the gateway passes
    the authenticated user id in the X-User-Id header. It is recorded as
    performed_by / requested_by / approved_by on the rows we write.
    """
    return x_user_id


class Pagination:
    """Page/limit query parameters."""

    def __init__(
        self,
        page: int = Query(1, ge=1),
        limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    ):
        self.page = page
        self.limit = limit

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


# Type aliases for dependency injection
DB = Annotated[AsyncSession, Depends(get_db)]
CurrentUserId = Annotated[Optional[uuid.UUID], Depends(get_current_user_id)]
Page = Annotated[Pagination, Depends()]
