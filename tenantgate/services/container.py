"""Service wiring.

Every service receives its stores explicitly; ``build_services`` picks the
backends named in settings, ``build_memory_services`` returns an isolated
in-memory graph for tests and local development.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Callable

from tenantgate.core.config import Settings, get_settings
from tenantgate.persistence.memory import (
    InMemoryAuditSink,
    InMemoryCounterStore,
    InMemoryInvitationStore,
    InMemoryOrganizationStore,
    InMemoryPasswordResetStore,
    InMemorySessionStore,
    InMemoryUserStore,
)
from tenantgate.persistence.stores import (
    AuditSink,
    CounterStore,
    InvitationStore,
    OrganizationStore,
    PasswordResetStore,
    SessionStore,
    UserStore,
)
from tenantgate.services.audit import AuditLogger
from tenantgate.services.auth.lockout import LockoutService
from tenantgate.services.auth.login import LoginService
from tenantgate.services.auth.sessions import SessionManager
from tenantgate.services.authz.engine import AuthorizationEngine
from tenantgate.services.identity import IdentityService
from tenantgate.services.notifications import InMemoryNotifier, Notifier, WebhookNotifier
from tenantgate.services.throttle import RequestThrottle


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass
class Stores:
    organizations: OrganizationStore
    users: UserStore
    sessions: SessionStore
    invitations: InvitationStore
    password_resets: PasswordResetStore
    counters: CounterStore
    audit: AuditSink


@dataclass
class AuthServices:
    settings: Settings
    stores: Stores
    notifier: Notifier
    audit: AuditLogger
    engine: AuthorizationEngine
    sessions: SessionManager
    lockout: LockoutService
    login: LoginService
    identity: IdentityService
    throttle: RequestThrottle


def build_notifier(settings: Settings) -> Notifier:
    if settings.notify_backend == "webhook":
        if not settings.notify_webhook_url or not settings.notify_webhook_secret:
            raise ValueError("notify_webhook_url and notify_webhook_secret are required for webhook delivery")
        return WebhookNotifier(
            url=settings.notify_webhook_url,
            secret=settings.notify_webhook_secret,
            timeout_s=settings.notify_webhook_timeout_ms / 1000,
        )
    if settings.notify_backend != "memory":
        raise ValueError(f"Unsupported notify backend: {settings.notify_backend}")
    return InMemoryNotifier()


def assemble(
    settings: Settings,
    stores: Stores,
    *,
    notifier: Notifier | None = None,
    clock: Clock | None = None,
) -> AuthServices:
    notifier = notifier or build_notifier(settings)
    audit = AuditLogger(stores.audit, best_effort=settings.audit_best_effort, clock=clock)
    engine = AuthorizationEngine(audit)
    sessions = SessionManager.from_settings(
        settings, sessions=stores.sessions, users=stores.users, audit=audit, clock=clock
    )
    lockout = LockoutService.from_settings(
        settings, counters=stores.counters, audit=audit, notifier=notifier, clock=clock
    )
    login = LoginService(stores.users, sessions, lockout, audit)
    identity = IdentityService(
        organizations=stores.organizations,
        users=stores.users,
        invitations=stores.invitations,
        password_resets=stores.password_resets,
        engine=engine,
        sessions=sessions,
        audit=audit,
        invitation_ttl=timedelta(hours=settings.invitation_ttl_hours),
        password_reset_ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
        notifier=notifier,
        clock=clock,
    )
    throttle = RequestThrottle.from_settings(
        settings, counters=stores.counters, audit=audit, clock=clock
    )
    return AuthServices(
        settings=settings,
        stores=stores,
        notifier=notifier,
        audit=audit,
        engine=engine,
        sessions=sessions,
        lockout=lockout,
        login=login,
        identity=identity,
        throttle=throttle,
    )


def memory_stores() -> Stores:
    return Stores(
        organizations=InMemoryOrganizationStore(),
        users=InMemoryUserStore(),
        sessions=InMemorySessionStore(),
        invitations=InMemoryInvitationStore(),
        password_resets=InMemoryPasswordResetStore(),
        counters=InMemoryCounterStore(),
        audit=InMemoryAuditSink(),
    )


def sql_stores(settings: Settings) -> Stores:
    # Import lazily so memory-only deployments never create a database engine.
    from tenantgate.persistence.counters import RedisCounterStore
    from tenantgate.persistence.db import SessionLocal
    from tenantgate.persistence.repos.audit import SqlAuditSink
    from tenantgate.persistence.repos.invitations import SqlInvitationStore
    from tenantgate.persistence.repos.organizations import SqlOrganizationStore
    from tenantgate.persistence.repos.password_resets import SqlPasswordResetStore
    from tenantgate.persistence.repos.sessions import SqlSessionStore
    from tenantgate.persistence.repos.users import SqlUserStore

    counters: CounterStore
    if settings.counter_backend == "redis":
        counters = RedisCounterStore.from_url(settings.redis_url, prefix=settings.lockout_redis_prefix)
    else:
        # A per-process counter cannot see failures recorded by other workers.
        logger.warning("lockout_counter_backend=memory shared=false")
        counters = InMemoryCounterStore()

    return Stores(
        organizations=SqlOrganizationStore(SessionLocal),
        users=SqlUserStore(SessionLocal),
        sessions=SqlSessionStore(SessionLocal),
        invitations=SqlInvitationStore(SessionLocal),
        password_resets=SqlPasswordResetStore(SessionLocal),
        counters=counters,
        audit=SqlAuditSink(SessionLocal),
    )


def build_services(settings: Settings | None = None) -> AuthServices:
    settings = settings or get_settings()
    if settings.store_backend == "memory":
        stores = memory_stores()
    elif settings.store_backend == "sql":
        stores = sql_stores(settings)
    else:
        raise ValueError(f"Unsupported store backend: {settings.store_backend}")
    if settings.notify_backend == "memory":
        # Reset and unlock links stay in process memory and never reach users.
        logger.warning("notify_backend=memory delivery=disabled")
    return assemble(settings, stores)


def build_memory_services(
    *,
    settings: Settings | None = None,
    clock: Clock | None = None,
) -> AuthServices:
    return assemble(settings or get_settings(), memory_stores(), clock=clock)
