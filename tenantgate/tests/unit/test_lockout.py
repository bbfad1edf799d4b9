from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import jwt
import pytest

from tenantgate.core.errors import ValidationError
from tenantgate.domain.lockout import LockoutPolicy, apply_failure
from tenantgate.persistence.memory import InMemoryCounterStore
from tenantgate.services.auth.lockout import LockoutState, email_identifier, ip_identifier
from tenantgate.services.notifications import KIND_LOGIN_UNLOCK


IDENTIFIER = email_identifier("Someone@Example.com")


async def _fail(services, times: int, identifier: str = IDENTIFIER):
    status = None
    for _ in range(times):
        status = await services.lockout.record_failure(identifier)
    return status


def test_identifiers_are_namespaced_and_normalized() -> None:
    assert IDENTIFIER == "email:someone@example.com"
    assert ip_identifier(" 10.0.0.1 ") == "ip:10.0.0.1"


@pytest.mark.asyncio
async def test_fresh_identifier_is_normal(services) -> None:
    status = await services.lockout.check(IDENTIFIER)
    assert status.state == LockoutState.NORMAL
    assert not status.blocked


@pytest.mark.asyncio
async def test_failures_below_threshold_warn(services) -> None:
    status = await _fail(services, 4)
    assert status.state == LockoutState.WARNING
    assert status.attempts == 4
    assert not status.blocked


@pytest.mark.asyncio
async def test_fifth_failure_applies_soft_lock(services) -> None:
    status = await _fail(services, 5)
    assert status.state == LockoutState.LOCKED
    assert status.retry_after_s == 1800
    assert status.blocked

    events = services.stores.audit.events
    assert events[-1].action == "auth.lockout.locked"
    assert events[-1].target_id == IDENTIFIER


@pytest.mark.asyncio
async def test_retry_after_counts_down(services, clock) -> None:
    await _fail(services, 5)
    clock.advance(minutes=10)
    status = await services.lockout.check(IDENTIFIER)
    assert status.retry_after_s == 1200


@pytest.mark.asyncio
async def test_quiet_window_resets_counter(services, clock) -> None:
    await _fail(services, 3)
    clock.advance(minutes=16)
    assert (await services.lockout.check(IDENTIFIER)).state == LockoutState.NORMAL
    status = await _fail(services, 1)
    assert status.attempts == 1


@pytest.mark.asyncio
async def test_counter_survives_soft_lock_expiry(services, clock) -> None:
    await _fail(services, 5)
    clock.advance(minutes=31)
    status = await services.lockout.check(IDENTIFIER)
    assert status.state == LockoutState.WARNING
    assert status.attempts == 5

    status = await _fail(services, 1)
    assert status.state == LockoutState.LOCKED
    assert status.attempts == 6


@pytest.mark.asyncio
async def test_counter_decays_one_window_after_lock_ends(services, clock) -> None:
    await _fail(services, 5)
    clock.advance(minutes=30 + 16)
    assert (await services.lockout.check(IDENTIFIER)).state == LockoutState.NORMAL


@pytest.mark.asyncio
async def test_hard_lock_never_expires(services, clock) -> None:
    status = await _fail(services, 10)
    assert status.state == LockoutState.HARD_LOCKED
    assert status.retry_after_s is None
    assert services.stores.audit.events[-1].action == "auth.lockout.hard_locked"

    clock.advance(days=30)
    assert (await services.lockout.check(IDENTIFIER)).state == LockoutState.HARD_LOCKED


@pytest.mark.asyncio
async def test_success_resets_counter(services) -> None:
    await _fail(services, 4)
    await services.lockout.record_success(IDENTIFIER)
    assert (await services.lockout.check(IDENTIFIER)).state == LockoutState.NORMAL


@pytest.mark.asyncio
async def test_identifiers_are_tracked_independently(services) -> None:
    await _fail(services, 5)
    other = await services.lockout.check(email_identifier("other@example.com"))
    assert other.state == LockoutState.NORMAL


@pytest.mark.asyncio
async def test_unlock_token_clears_hard_lock(services) -> None:
    await _fail(services, 10)
    token = services.lockout.issue_unlock_token(IDENTIFIER)

    assert await services.lockout.unlock(token) == IDENTIFIER
    assert (await services.lockout.check(IDENTIFIER)).state == LockoutState.NORMAL
    assert services.stores.audit.events[-1].action == "auth.lockout.unlocked"


@pytest.mark.asyncio
async def test_unlock_token_is_single_use(services) -> None:
    await _fail(services, 10)
    token = services.lockout.issue_unlock_token(IDENTIFIER)
    await services.lockout.unlock(token)

    await _fail(services, 10)
    with pytest.raises(ValidationError) as exc_info:
        await services.lockout.unlock(token)
    assert exc_info.value.message == "Unlock token already used"
    assert (await services.lockout.check(IDENTIFIER)).state == LockoutState.HARD_LOCKED

    # A freshly issued token still works.
    await services.lockout.unlock(services.lockout.issue_unlock_token(IDENTIFIER))
    assert (await services.lockout.check(IDENTIFIER)).state == LockoutState.NORMAL


@pytest.mark.asyncio
async def test_hard_threshold_mails_one_unlock_link(services) -> None:
    for _ in range(12):
        await services.lockout.record_failure(
            IDENTIFIER, recipient="someone@example.com", user_id="u1", organization_id="org-a"
        )
    sent = services.notifier.sent
    assert len(sent) == 1
    assert sent[0].kind == KIND_LOGIN_UNLOCK
    assert sent[0].user_id == "u1"
    assert await services.lockout.unlock(sent[0].token) == IDENTIFIER


@pytest.mark.asyncio
async def test_tampered_unlock_token_is_rejected(services) -> None:
    await _fail(services, 10)
    token = services.lockout.issue_unlock_token(IDENTIFIER)
    with pytest.raises(ValidationError) as exc_info:
        await services.lockout.unlock(token[:-2] + ("AA" if token[-2:] != "AA" else "BB"))
    assert exc_info.value.field == "token"
    assert (await services.lockout.check(IDENTIFIER)).state == LockoutState.HARD_LOCKED


@pytest.mark.asyncio
async def test_unlock_token_must_carry_unlock_purpose(services, clock) -> None:
    settings = services.settings
    forged = jwt.encode(
        {
            "sub": IDENTIFIER,
            "purpose": "password_reset",
            "iat": int(clock().timestamp()),
            "exp": int(clock().timestamp()) + 600,
            "iss": settings.session_issuer,
        },
        settings.session_secret,
        algorithm="HS256",
    )
    with pytest.raises(ValidationError):
        await services.lockout.unlock(forged)


@pytest.mark.asyncio
async def test_expired_unlock_token_is_rejected(services, clock) -> None:
    token = services.lockout.issue_unlock_token(IDENTIFIER)
    clock.advance(hours=2)
    with pytest.raises(ValidationError):
        await services.lockout.unlock(token)


@pytest.mark.asyncio
async def test_force_unlock_records_operator(services) -> None:
    await _fail(services, 10)
    await services.lockout.force_unlock(IDENTIFIER)
    assert (await services.lockout.check(IDENTIFIER)).state == LockoutState.NORMAL
    assert services.stores.audit.events[-1].metadata_json == {"via": "operator"}


def test_apply_failure_is_pure() -> None:
    policy = LockoutPolicy()
    now = datetime(2026, 1, 5, tzinfo=timezone.utc)
    first = apply_failure(None, identifier="ip:1.2.3.4", now=now, policy=policy)
    second = apply_failure(first, identifier="ip:1.2.3.4", now=now, policy=policy)
    assert first.count == 1
    assert second.count == 2
    assert first.lock_until is None


def test_concurrent_failures_are_never_lost() -> None:
    store = InMemoryCounterStore()
    policy = LockoutPolicy(soft_threshold=1000, hard_threshold=2000)
    now = datetime(2026, 1, 5, tzinfo=timezone.utc)

    def _record() -> None:
        asyncio.run(store.record_failure("ip:203.0.113.9", now=now, policy=policy))

    with ThreadPoolExecutor(max_workers=16) as pool:
        for future in [pool.submit(_record) for _ in range(200)]:
            future.result()

    record = asyncio.run(store.get("ip:203.0.113.9"))
    assert record.count == 200
