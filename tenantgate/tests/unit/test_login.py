from __future__ import annotations

import pytest

from tenantgate.core.errors import AuthenticationError, RateLimitError, ValidationError
from tenantgate.services.auth.lockout import LockoutState, email_identifier, ip_identifier
from tenantgate.services.notifications import KIND_LOGIN_UNLOCK
from tenantgate.tests.utils.auth import DEFAULT_PASSWORD, seed_user


EMAIL = "owner@acme.test"
WRONG = "Wrong-Horse-1!"


async def _fail_login(services, email: str = EMAIL, *, ip_address: str | None = None) -> None:
    with pytest.raises(AuthenticationError):
        await services.login.login(email, WRONG, ip_address=ip_address)


@pytest.mark.asyncio
async def test_login_issues_session(services) -> None:
    user = await seed_user(services, organization_id="org-a", role="owner", email=EMAIL)
    result = await services.login.login(EMAIL.upper(), DEFAULT_PASSWORD, ip_address="198.51.100.7")

    assert result.user.id == user.id
    check = await services.sessions.validate(result.token)
    assert check.ok
    assert check.actor.organization_id == "org-a"
    assert services.stores.audit.events[-1].action == "auth.login"
    assert services.stores.audit.events[-1].outcome == "allow"


@pytest.mark.asyncio
async def test_unknown_and_inactive_users_fail_identically(services) -> None:
    await seed_user(services, organization_id="org-a", role="staff", email="gone@acme.test", is_active=False)

    with pytest.raises(AuthenticationError) as unknown:
        await services.login.login("nobody@acme.test", DEFAULT_PASSWORD)
    with pytest.raises(AuthenticationError) as inactive:
        await services.login.login("gone@acme.test", DEFAULT_PASSWORD)

    assert str(unknown.value) == str(inactive.value)
    denials = [event for event in services.stores.audit.events if event.action == "auth.login"]
    assert {event.reason for event in denials} == {"INVALID_CREDENTIALS"}


@pytest.mark.asyncio
async def test_sixth_attempt_is_rate_limited_even_with_correct_password(services) -> None:
    await seed_user(services, organization_id="org-a", role="owner", email=EMAIL)
    for _ in range(5):
        await _fail_login(services)

    with pytest.raises(RateLimitError) as exc_info:
        await services.login.login(EMAIL, DEFAULT_PASSWORD)
    assert exc_info.value.retry_after_s == 1800

    # Blocked attempts are not counted.
    status = await services.lockout.check(email_identifier(EMAIL))
    assert status.attempts == 5


@pytest.mark.asyncio
async def test_login_succeeds_after_soft_lock_expires(services, clock) -> None:
    await seed_user(services, organization_id="org-a", role="owner", email=EMAIL)
    for _ in range(5):
        await _fail_login(services)

    clock.advance(minutes=31)
    result = await services.login.login(EMAIL, DEFAULT_PASSWORD)
    assert result.token
    assert (await services.lockout.check(email_identifier(EMAIL))).state == LockoutState.NORMAL


@pytest.mark.asyncio
async def test_client_address_is_locked_across_emails(services) -> None:
    await seed_user(services, organization_id="org-a", role="owner", email=EMAIL)
    for index in range(5):
        await _fail_login(services, f"visitor-{index}@acme.test", ip_address="203.0.113.5")

    with pytest.raises(RateLimitError):
        await services.login.login(EMAIL, DEFAULT_PASSWORD, ip_address="203.0.113.5")

    status = await services.lockout.check(ip_identifier("203.0.113.5"))
    assert status.state == LockoutState.LOCKED
    result = await services.login.login(EMAIL, DEFAULT_PASSWORD, ip_address="203.0.113.6")
    assert result.token


@pytest.mark.asyncio
async def test_tenth_failure_hard_locks_until_unlocked(services, clock) -> None:
    await seed_user(services, organization_id="org-a", role="owner", email=EMAIL)
    for _ in range(5):
        await _fail_login(services)
    # Each failure past the soft threshold re-arms the soft lock.
    for _ in range(5):
        clock.advance(minutes=31)
        await _fail_login(services)

    # The unlock link went to the account's address when the hard lock engaged.
    sent = [note for note in services.notifier.sent if note.kind == KIND_LOGIN_UNLOCK]
    assert [note.recipient for note in sent] == [EMAIL]

    clock.advance(days=2)
    with pytest.raises(RateLimitError) as exc_info:
        await services.login.login(EMAIL, DEFAULT_PASSWORD)
    assert exc_info.value.retry_after_s is None
    with pytest.raises(ValidationError):
        await services.lockout.unlock(sent[0].token)

    token = services.lockout.issue_unlock_token(email_identifier(EMAIL))
    assert await services.lockout.unlock(token) == email_identifier(EMAIL)
    assert (await services.login.login(EMAIL, DEFAULT_PASSWORD)).token


@pytest.mark.asyncio
async def test_hard_lock_on_unknown_email_sends_nothing(services, clock) -> None:
    for _ in range(5):
        await _fail_login(services, "ghost@acme.test")
    for _ in range(5):
        clock.advance(minutes=31)
        await _fail_login(services, "ghost@acme.test")

    status = await services.lockout.check(email_identifier("ghost@acme.test"))
    assert status.state == LockoutState.HARD_LOCKED
    assert services.notifier.sent == ()
