from typing import Any, Dict, Generic, Optional, Type, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_relay.core.database import Base
from webhook_relay.core.logging import get_logger

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """Base repository class with common CRUD operations."""

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self.model = model
        self.session = session
        self.logger = get_logger(self.__class__.__name__)

    async def get_by_id(self, id: Any) -> Optional[ModelType]:
        """Get a record by ID."""
        try:
            query = select(self.model).where(self.model.id == id)
            result = await self.session.execute(query)
            return result.scalars().first()
        except Exception as e:
            self.logger.error(f"Error getting {self.model.__name__} by ID", id=id, error=str(e))
            raise

    async def merge(self, db_obj: ModelType) -> ModelType:
        """Insert ``db_obj`` or overwrite the row with the same primary key."""
        try:
            merged = await self.session.merge(db_obj)
            await self.session.flush()
            return merged
        except Exception as e:
            self.logger.error(f"Error saving {self.model.__name__}", error=str(e))
            raise

    async def update_values(self, id: Any, values: Dict[str, Any], *criteria: Any) -> int:
        """
        Update a record by ID. ``None`` values are written as NULL.

        Extra ``criteria`` narrow the match, e.g. to rows in a given state.
        Returns the number of rows matched.
        """
        try:
            query = (
                update(self.model)
                .where(self.model.id == id, *criteria)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(query)
            return result.rowcount or 0
        except Exception as e:
            self.logger.error(f"Error updating {self.model.__name__}", id=id, error=str(e))
            raise

    async def delete(self, id: Any) -> bool:
        """Delete a record by ID."""
        try:
            query = delete(self.model).where(self.model.id == id)
            result = await self.session.execute(query)
            return (result.rowcount or 0) > 0
        except Exception as e:
            self.logger.error(f"Error deleting {self.model.__name__}", id=id, error=str(e))
            raise
