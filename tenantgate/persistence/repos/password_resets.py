from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update

from tenantgate.domain.models import PasswordResetToken
from tenantgate.persistence.repos.base import SqlStore


class SqlPasswordResetStore(SqlStore):
    async def add(self, token: PasswordResetToken) -> PasswordResetToken:
        async with self._transaction() as session:
            session.add(token)
        return token

    async def get_by_token_hash(self, token_hash: str) -> PasswordResetToken | None:
        async with self._transaction() as session:
            result = await session.execute(
                select(PasswordResetToken).where(PasswordResetToken.token_hash == token_hash)
            )
            return result.scalar_one_or_none()

    async def mark_used(self, token_id: str, *, at: datetime) -> bool:
        async with self._transaction() as session:
            result = await session.execute(
                update(PasswordResetToken)
                .where(PasswordResetToken.id == token_id, PasswordResetToken.used_at.is_(None))
                .values(used_at=at)
            )
            return result.rowcount == 1
