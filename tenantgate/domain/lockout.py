from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta


@dataclass(frozen=True)
class LockoutPolicy:
    # Thresholds for the failed-login state machine.
    soft_threshold: int = 5
    hard_threshold: int = 10
    window_seconds: int = 900
    soft_lock_seconds: int = 1800

    @classmethod
    def from_settings(cls, settings) -> LockoutPolicy:
        return cls(
            soft_threshold=settings.lockout_soft_threshold,
            hard_threshold=settings.lockout_hard_threshold,
            window_seconds=settings.lockout_window_seconds,
            soft_lock_seconds=settings.lockout_soft_lock_seconds,
        )

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)

    @property
    def soft_lock(self) -> timedelta:
        return timedelta(seconds=self.soft_lock_seconds)


@dataclass(frozen=True)
class AttemptRecord:
    # Ephemeral per-identifier counter; never shared between identifiers.
    identifier: str
    count: int
    window_start: datetime
    lock_until: datetime | None = None
    hard_locked: bool = False


def window_anchor(record: AttemptRecord) -> datetime:
    # Once a soft lock was applied the window restarts only after the lock ends.
    if record.lock_until is not None and record.lock_until > record.window_start:
        return record.lock_until
    return record.window_start


def is_stale(record: AttemptRecord, now: datetime, policy: LockoutPolicy) -> bool:
    # Hard locks never decay; everything else decays after a quiet window.
    if record.hard_locked:
        return False
    if record.lock_until is not None and record.lock_until > now:
        return False
    return now - window_anchor(record) > policy.window


def apply_failure(
    record: AttemptRecord | None,
    *,
    identifier: str,
    now: datetime,
    policy: LockoutPolicy,
) -> AttemptRecord:
    """Return the counter after one more failed attempt.

    Pure transition shared by every counter store; stores are responsible for
    running it atomically per identifier.
    """
    if record is None or is_stale(record, now, policy):
        record = AttemptRecord(identifier=identifier, count=0, window_start=now)
    count = record.count + 1
    lock_until = record.lock_until
    hard_locked = record.hard_locked
    if count >= policy.hard_threshold:
        hard_locked = True
    if count >= policy.soft_threshold:
        lock_until = now + policy.soft_lock
    return replace(record, count=count, lock_until=lock_until, hard_locked=hard_locked)
