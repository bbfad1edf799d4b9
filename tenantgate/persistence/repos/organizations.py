from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.domain.models import Organization
from tenantgate.persistence.repos.base import SqlStore


async def get_organization(session: AsyncSession, organization_id: str) -> Organization | None:
    result = await session.execute(select(Organization).where(Organization.id == organization_id))
    return result.scalar_one_or_none()


class SqlOrganizationStore(SqlStore):
    async def add(self, organization: Organization) -> Organization:
        async with self._transaction() as session:
            session.add(organization)
        return organization

    async def get(self, organization_id: str) -> Organization | None:
        async with self._transaction() as session:
            return await get_organization(session, organization_id)

    async def save(self, organization: Organization) -> Organization:
        async with self._transaction() as session:
            return await session.merge(organization)
