from abc import ABC
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Generic, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_relay.core.database import session_scope
from webhook_relay.core.exceptions import InfrastructureError
from webhook_relay.core.logging import get_logger
from webhook_relay.repositories.base_repository import BaseRepository

RepositoryType = TypeVar("RepositoryType", bound=BaseRepository)


class BaseService(ABC, Generic[RepositoryType]):
    """Base service class: one session and transaction per operation."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        repository_factory: Callable[[AsyncSession], RepositoryType],
    ):
        self.session_factory = session_factory
        self.repository_factory = repository_factory
        self.logger = get_logger(self.__class__.__name__)

    @asynccontextmanager
    async def repository(self, operation: str) -> AsyncIterator[RepositoryType]:
        """
        Repository bound to a fresh session for the duration of the block.

        Commits on clean exit. Database errors are logged and re-raised as
        InfrastructureError with the SQLAlchemy error chained.
        """
        try:
            async with session_scope(self.session_factory) as session:
                yield self.repository_factory(session)
        except SQLAlchemyError as e:
            self.logger.error("Database operation failed", operation=operation, error=str(e))
            raise InfrastructureError(f"{operation} failed: {e}") from e
