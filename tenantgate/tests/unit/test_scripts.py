from __future__ import annotations

import pytest

from scripts.revoke_user_sessions import _build_parser as revoke_parser
from scripts.revoke_user_sessions import _run as revoke_run
from scripts.revoke_user_sessions import main as revoke_main
from scripts.unlock_login import _build_parser as unlock_parser
from scripts.unlock_login import _run as unlock_run
from tenantgate.services.auth.lockout import LockoutState, email_identifier
from tenantgate.tests.utils.auth import seed_user


@pytest.mark.asyncio
async def test_unlock_login_clears_hard_lock(services, capsys: pytest.CaptureFixture[str]) -> None:
    identifier = email_identifier("locked@acme.test")
    for _ in range(10):
        await services.lockout.record_failure(identifier)

    exit_code = await unlock_run(unlock_parser().parse_args(["--email", "Locked@Acme.test"]), services)

    assert exit_code == 0
    assert "was hard_locked" in capsys.readouterr().out
    assert (await services.lockout.check(identifier)).state == LockoutState.NORMAL
    event = services.stores.audit.events[-1]
    assert event.action == "auth.lockout.unlocked"
    assert event.metadata_json == {"via": "unlock_login"}


@pytest.mark.asyncio
async def test_unlock_login_can_issue_token(services, capsys: pytest.CaptureFixture[str]) -> None:
    identifier = email_identifier("locked@acme.test")
    for _ in range(10):
        await services.lockout.record_failure(identifier)

    await unlock_run(unlock_parser().parse_args(["--email", "locked@acme.test", "--issue-token"]), services)
    token = capsys.readouterr().out.strip()

    # Issuing a token alone leaves the lock in place.
    assert (await services.lockout.check(identifier)).state == LockoutState.HARD_LOCKED
    assert await services.lockout.unlock(token) == identifier


def test_unlock_login_requires_exactly_one_identifier() -> None:
    with pytest.raises(SystemExit):
        unlock_parser().parse_args(["--email", "a@acme.test", "--ip", "10.0.0.1"])
    with pytest.raises(SystemExit):
        unlock_parser().parse_args([])


@pytest.mark.asyncio
async def test_revoke_user_sessions_by_email(services, capsys: pytest.CaptureFixture[str]) -> None:
    user = await seed_user(services, organization_id="org-a", role="staff", email="ops@acme.test")
    issued = [await services.sessions.issue(user, "org-a") for _ in range(2)]

    exit_code = await revoke_run(revoke_parser().parse_args(["--email", "ops@acme.test"]), services)

    assert exit_code == 0
    assert "Revoked 2 session(s)" in capsys.readouterr().out
    for session in issued:
        assert not (await services.sessions.validate(session.token)).ok


def test_revoke_user_sessions_reports_unknown_user(services, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = revoke_main(["--user-id", "missing"], services=services)
    assert exit_code == 1
    assert "User not found" in capsys.readouterr().err
