from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.errors import ConflictError
from tenantgate.domain.models import User
from tenantgate.persistence.guards import tenant_predicate
from tenantgate.persistence.repos.base import SqlStore


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    normalized = email.strip().lower()
    result = await session.execute(select(User).where(func.lower(User.email) == normalized))
    return result.scalar_one_or_none()


async def list_users(session: AsyncSession, organization_id: str) -> list[User]:
    # Route tenant scoping through the guard helper so unscoped listings cannot be built.
    stmt = select(User).where(tenant_predicate(User, organization_id)).order_by(User.email)
    result = await session.execute(stmt)
    return list(result.scalars().all())


class SqlUserStore(SqlStore):
    async def add(self, user: User) -> User:
        async with self._transaction() as session:
            session.add(user)
            try:
                # Flush inside the block so the unique index decides concurrent signups.
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError("Email already registered") from exc
        return user

    async def get(self, user_id: str) -> User | None:
        async with self._transaction() as session:
            return await get_user(session, user_id)

    async def get_by_email(self, email: str) -> User | None:
        async with self._transaction() as session:
            return await get_user_by_email(session, email)

    async def save(self, user: User) -> User:
        async with self._transaction() as session:
            merged = await session.merge(user)
            try:
                # Email changes hit the same unique index as signups.
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError("Email already registered") from exc
        return merged

    async def list_by_organization(self, organization_id: str) -> list[User]:
        async with self._transaction() as session:
            return await list_users(session, organization_id)
