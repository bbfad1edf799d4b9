from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator, Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.errors import ConflictError, StoreUnavailableError


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


class SqlStore:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        # Commit on success; any driver failure surfaces as a store outage, never a silent allow.
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except IntegrityError as exc:
                # A unique index rejected the write; the caller lost a race, the store is healthy.
                await session.rollback()
                logger.info("store_conflict store=%s", type(self).__name__)
                raise ConflictError() from exc
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("store_unavailable store=%s", type(self).__name__, exc_info=exc)
                raise StoreUnavailableError() from exc
