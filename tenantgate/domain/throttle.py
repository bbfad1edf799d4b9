from __future__ import annotations

from dataclasses import dataclass
import math


@dataclass(frozen=True)
class BucketConfig:
    # Sustained refill rate (tokens per second) plus burst capacity.
    rate: float
    burst: int

    @classmethod
    def per_hour(cls, limit: int) -> BucketConfig:
        return cls(rate=limit / 3600.0, burst=limit)

    @property
    def ttl_seconds(self) -> int:
        # Idle buckets expire after a conservative refill window.
        if self.rate <= 0:
            return max(1, self.burst)
        return max(1, int(math.ceil((self.burst / self.rate) * 2)))


@dataclass(frozen=True)
class BucketState:
    tokens: float
    updated_ms: int


@dataclass(frozen=True)
class BucketDecision:
    allowed: bool
    remaining: float
    retry_after_ms: int = 0

    @property
    def retry_after_s(self) -> int:
        return int(math.ceil(self.retry_after_ms / 1000.0))


def refill(state: BucketState | None, *, now_ms: int, config: BucketConfig) -> float:
    if state is None:
        return float(config.burst)
    last_ms = min(state.updated_ms, now_ms)
    delta_s = (now_ms - last_ms) / 1000.0
    return min(float(config.burst), state.tokens + delta_s * config.rate)


def retry_after_ms(tokens: float, *, rate: float, cost: int) -> int:
    if tokens >= cost:
        return 0
    if rate <= 0:
        return 1000
    return int(math.ceil(((cost - tokens) / rate) * 1000))


def take(
    state: BucketState | None,
    *,
    now_ms: int,
    config: BucketConfig,
    cost: int = 1,
) -> tuple[BucketState, BucketDecision]:
    """Spend ``cost`` tokens if available and return the new bucket state.

    Pure transition shared by the in-memory and Redis counter stores; a
    rejected request still advances the refill timestamp.
    """
    tokens = refill(state, now_ms=now_ms, config=config)
    wait_ms = retry_after_ms(tokens, rate=config.rate, cost=cost)
    allowed = tokens >= cost
    if allowed:
        tokens -= cost
    return (
        BucketState(tokens=tokens, updated_ms=now_ms),
        BucketDecision(allowed=allowed, remaining=tokens, retry_after_ms=0 if allowed else wait_ms),
    )
