from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.domain.models import AuditEvent
from tenantgate.persistence.guards import tenant_predicate
from tenantgate.persistence.repos.base import SqlStore


async def list_events(
    session: AsyncSession,
    *,
    organization_id: str,
    action: str | None = None,
    outcome: str | None = None,
    actor_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    # Scope all audit queries to a tenant to prevent cross-tenant leakage.
    stmt = select(AuditEvent).where(tenant_predicate(AuditEvent, organization_id))
    if action:
        stmt = stmt.where(AuditEvent.action == action)
    if outcome:
        stmt = stmt.where(AuditEvent.outcome == outcome)
    if actor_id:
        stmt = stmt.where(AuditEvent.actor_id == actor_id)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditEvent.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


class SqlAuditSink(SqlStore):
    # Insert-only: this sink exposes no update or delete path.
    async def append(self, event: AuditEvent) -> None:
        async with self._transaction() as session:
            session.add(event)
