from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.domain.models import AuthSession
from tenantgate.persistence.repos.base import SqlStore


async def get_auth_session(session: AsyncSession, session_id: str) -> AuthSession | None:
    result = await session.execute(select(AuthSession).where(AuthSession.id == session_id))
    return result.scalar_one_or_none()


class SqlSessionStore(SqlStore):
    async def add(self, auth_session: AuthSession) -> AuthSession:
        async with self._transaction() as session:
            session.add(auth_session)
        return auth_session

    async def get(self, session_id: str) -> AuthSession | None:
        async with self._transaction() as session:
            return await get_auth_session(session, session_id)

    async def touch(self, session_id: str, *, at: datetime) -> None:
        async with self._transaction() as session:
            await session.execute(
                update(AuthSession).where(AuthSession.id == session_id).values(last_seen_at=at)
            )

    async def revoke(self, session_id: str, *, at: datetime, reason: str) -> bool:
        # Guard on revoked_at so a second revoke reports False instead of rewriting history.
        async with self._transaction() as session:
            result = await session.execute(
                update(AuthSession)
                .where(AuthSession.id == session_id, AuthSession.revoked_at.is_(None))
                .values(revoked_at=at, revoke_reason=reason)
            )
            return result.rowcount == 1

    async def revoke_for_user(
        self,
        user_id: str,
        *,
        at: datetime,
        reason: str,
        except_session_id: str | None = None,
    ) -> int:
        stmt = update(AuthSession).where(
            AuthSession.user_id == user_id, AuthSession.revoked_at.is_(None)
        )
        if except_session_id is not None:
            stmt = stmt.where(AuthSession.id != except_session_id)
        async with self._transaction() as session:
            result = await session.execute(stmt.values(revoked_at=at, revoke_reason=reason))
            return int(result.rowcount or 0)

    async def revoke_for_organization(
        self, organization_id: str, *, at: datetime, reason: str
    ) -> int:
        async with self._transaction() as session:
            result = await session.execute(
                update(AuthSession)
                .where(
                    AuthSession.organization_id == organization_id,
                    AuthSession.revoked_at.is_(None),
                )
                .values(revoked_at=at, revoke_reason=reason)
            )
            return int(result.rowcount or 0)
