from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update

from tenantgate.domain.models import Invitation
from tenantgate.persistence.repos.base import SqlStore


class SqlInvitationStore(SqlStore):
    async def add(self, invitation: Invitation) -> Invitation:
        async with self._transaction() as session:
            session.add(invitation)
        return invitation

    async def get_by_token_hash(self, token_hash: str) -> Invitation | None:
        async with self._transaction() as session:
            result = await session.execute(
                select(Invitation).where(Invitation.token_hash == token_hash)
            )
            return result.scalar_one_or_none()

    async def mark_accepted(self, invitation_id: str, *, at: datetime) -> bool:
        # Single conditional UPDATE so two concurrent accepts cannot both succeed.
        async with self._transaction() as session:
            result = await session.execute(
                update(Invitation)
                .where(
                    Invitation.id == invitation_id,
                    Invitation.accepted_at.is_(None),
                    Invitation.revoked_at.is_(None),
                )
                .values(accepted_at=at)
            )
            return result.rowcount == 1
