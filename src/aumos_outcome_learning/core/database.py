"""Async database plumbing: engine, session factory, unit of work, base repository.

Repositories only flush. ``session_scope`` owns the transaction boundary: it
commits when the wrapped block returns and rolls back when it raises, so an
attribution or uncertainty run is persisted as a whole or not at all.

Batch operations run each item inside an ``ItemScope``. On a real session that
is a SAVEPOINT (``savepoint_scope``), so a failed item rolls back alone and
leaves the surrounding transaction usable for the items after it.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager, asynccontextmanager, nullcontext
from typing import Any, AsyncIterator, Callable, Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from aumos_outcome_learning.core.models import OutcomeLearningModel
from aumos_outcome_learning.observability import get_logger
from aumos_outcome_learning.settings import Settings

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=OutcomeLearningModel)

# Factory for the context each batch item runs in.
ItemScope = Callable[[], AbstractAsyncContextManager[Any]]


def create_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured database."""
    return create_async_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        echo=settings.database_echo,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory whose sessions keep attributes loaded after commit."""
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def session_scope(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Open a session and commit on success, roll back on error.

    Store errors are re-raised unmodified after the rollback.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            logger.warning("unit_of_work_rolled_back")
            raise


def savepoint_scope(session: AsyncSession) -> ItemScope:
    """Item scope that wraps each batch item in ``session.begin_nested()``."""
    return session.begin_nested


def no_item_scope() -> AbstractAsyncContextManager[Any]:
    """Item scope for stores without transactions."""
    return nullcontext()


class BaseRepository(Generic[ModelT]):
    """Primary-key lookup and insert shared by every repository.

    Args:
        session: Session bound to the caller's unit of work.
        model: ORM model class the repository serves.
    """

    def __init__(self, session: AsyncSession, model: type[ModelT]) -> None:
        self._session = session
        self._model = model

    async def get_by_id(self, record_id: str) -> ModelT | None:
        """Retrieve a row by primary key."""
        result = await self._session.execute(select(self._model).where(self._model.id == record_id))
        return result.scalars().first()

    async def create(self, instance: ModelT) -> ModelT:
        """Add a new row and flush so its id and server defaults are assigned."""
        self._session.add(instance)
        await self._session.flush()
        return instance


__all__ = [
    "BaseRepository",
    "ItemScope",
    "create_engine",
    "create_session_factory",
    "no_item_scope",
    "savepoint_scope",
    "session_scope",
]
