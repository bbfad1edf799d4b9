from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from tenantgate.core.config import Settings
from tenantgate.domain.models import Organization, User
from tenantgate.services.auth.passwords import hash_password
from tenantgate.services.authz.decisions import ActorContext
from tenantgate.services.authz.registry import normalize_role
from tenantgate.services.container import AuthServices, build_memory_services


DEFAULT_PASSWORD = "Correct-Horse-9!"


class FakeClock:
    # Deterministic clock injected into every service under test.
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def memory_services(*, clock: FakeClock | None = None, **overrides) -> AuthServices:
    settings = Settings(store_backend="memory", counter_backend="memory", **overrides)
    return build_memory_services(settings=settings, clock=clock)


async def seed_organization(
    services: AuthServices,
    *,
    organization_id: str | None = None,
    name: str = "Acme",
) -> Organization:
    organization_id = organization_id or uuid4().hex
    existing = await services.stores.organizations.get(organization_id)
    if existing is not None:
        return existing
    organization = Organization(
        id=organization_id,
        name=name,
        status="active",
        created_at=datetime.now(timezone.utc),
        deleted_at=None,
    )
    return await services.stores.organizations.add(organization)


async def seed_user(
    services: AuthServices,
    *,
    organization_id: str,
    role: str,
    email: str | None = None,
    password: str = DEFAULT_PASSWORD,
    is_active: bool = True,
) -> User:
    # Provision a user row directly in the stores, bypassing authorization.
    await seed_organization(services, organization_id=organization_id)
    user = User(
        id=uuid4().hex,
        organization_id=organization_id,
        email=email or f"{role}-{uuid4().hex[:8]}@example.com",
        password_hash=hash_password(password),
        first_name=role.title(),
        last_name="Tester",
        role=normalize_role(role).value,
        is_active=is_active,
        created_at=datetime.now(timezone.utc),
    )
    return await services.stores.users.add(user)


async def issue_token(services: AuthServices, user: User) -> str:
    issued = await services.sessions.issue(user, user.organization_id)
    return issued.token


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def actor_for(user: User, *, session_id: str | None = None) -> ActorContext:
    return ActorContext(
        user_id=user.id,
        organization_id=user.organization_id,
        role=normalize_role(user.role),
        session_id=session_id,
    )
