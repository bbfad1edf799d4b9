from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from tenantgate.core.errors import ConflictError, StoreUnavailableError
from tenantgate.persistence.repos.roles import diff_role_grants
from tenantgate.persistence.repos.users import SqlUserStore
from tenantgate.services.authz.registry import role_grant_rows


class _FakeSession:
    # Minimal async session double; records commit and rollback calls.
    def __init__(self, *, execute_error=None, flush_error=None, commit_error=None, rows=()) -> None:
        self.execute_error = execute_error
        self.flush_error = flush_error
        self.commit_error = commit_error
        self.rows = list(rows)
        self.added = []
        self.committed = False
        self.rolled_back = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    def add(self, instance) -> None:
        self.added.append(instance)

    async def merge(self, instance):
        self.added.append(instance)
        return instance

    async def flush(self) -> None:
        if self.flush_error is not None:
            raise self.flush_error

    async def execute(self, stmt):
        if self.execute_error is not None:
            raise self.execute_error
        return self

    def all(self):
        return list(self.rows)

    async def commit(self) -> None:
        if self.commit_error is not None:
            raise self.commit_error
        self.committed = True

    async def rollback(self) -> None:
        self.rolled_back = True


@pytest.mark.asyncio
async def test_driver_failures_surface_as_store_unavailable() -> None:
    session = _FakeSession(execute_error=OperationalError("SELECT 1", {}, Exception("down")))
    store = SqlUserStore(lambda: session)
    with pytest.raises(StoreUnavailableError):
        await store.get("u1")
    assert session.rolled_back
    assert not session.committed


@pytest.mark.asyncio
async def test_unique_violation_becomes_conflict() -> None:
    session = _FakeSession(flush_error=IntegrityError("INSERT", {}, Exception("duplicate key")))
    store = SqlUserStore(lambda: session)
    with pytest.raises(ConflictError):
        await store.add(object())  # type: ignore[arg-type]
    assert session.rolled_back


@pytest.mark.asyncio
async def test_email_change_onto_taken_address_is_a_conflict() -> None:
    session = _FakeSession(flush_error=IntegrityError("UPDATE", {}, Exception("duplicate key")))
    store = SqlUserStore(lambda: session)
    with pytest.raises(ConflictError):
        await store.save(object())  # type: ignore[arg-type]
    assert session.rolled_back
    assert not session.committed


@pytest.mark.asyncio
async def test_constraint_failure_at_commit_is_a_conflict_not_an_outage() -> None:
    session = _FakeSession(commit_error=IntegrityError("COMMIT", {}, Exception("duplicate key")))
    store = SqlUserStore(lambda: session)
    user = object()
    with pytest.raises(ConflictError):
        await store.save(user)  # type: ignore[arg-type]
    assert session.added == [user]
    assert session.rolled_back


@pytest.mark.asyncio
async def test_role_grant_drift_is_reported_both_ways() -> None:
    expected = sorted(role_grant_rows())
    stale = ("staff", "users.delete", "global")
    session = _FakeSession(rows=expected[1:] + [stale])

    drift = await diff_role_grants(session)  # type: ignore[arg-type]

    assert drift.missing == {expected[0]}
    assert drift.stale == {stale}
    assert not drift.in_sync


@pytest.mark.asyncio
async def test_role_grant_mirror_in_sync() -> None:
    drift = await diff_role_grants(_FakeSession(rows=role_grant_rows()))  # type: ignore[arg-type]
    assert drift.in_sync
