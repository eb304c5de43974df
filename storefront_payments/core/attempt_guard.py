"""
Attempt guard: consecutive-failure lockout keyed by an arbitrary string.

After ``max_attempts`` consecutive failures, each within ``duration`` of the
previous one, a key is blocked until ``duration`` has passed since the last
failure. A success clears the key. Used for payment initiation per order and
for callback signature failures per source address.

The backend (database table or Redis) is chosen once, at startup, from
configuration.
"""
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import DateTime, case, delete, literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront_payments.config import Settings
from storefront_payments.core.exceptions import AttemptsBlockedError
from storefront_payments.database.models import AttemptCounter, as_utc, utc_now
from storefront_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LockoutPolicy:
    """How many consecutive failures are allowed and for how long a key stays blocked."""

    max_attempts: int = 5
    duration: timedelta = timedelta(minutes=15)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.duration.total_seconds() <= 0:
            raise ValueError("duration must be positive")

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(
            max_attempts=settings.lockout_max_attempts,
            duration=settings.lockout_duration,
        )

    @property
    def duration_seconds(self) -> int:
        return int(self.duration.total_seconds())


@dataclass(frozen=True)
class AttemptStatus:
    """Current standing of a guarded key."""

    blocked: bool
    retry_after_seconds: int
    attempts_remaining: int


class AttemptGuard(ABC):
    """Base class for attempt guard backends."""

    def __init__(self, policy: LockoutPolicy):
        self.policy = policy

    @abstractmethod
    async def record_attempt(self, key: str) -> AttemptStatus:
        """Count one failed attempt for ``key`` and return the new standing."""

    @abstractmethod
    async def is_blocked(self, key: str) -> AttemptStatus:
        """Return the standing of ``key`` without changing it."""

    @abstractmethod
    async def clear(self, key: str) -> None:
        """Forget all failures for ``key``."""

    def _status(self, failed_attempts: int, retry_after_seconds: int) -> AttemptStatus:
        blocked = failed_attempts >= self.policy.max_attempts and retry_after_seconds > 0
        return AttemptStatus(
            blocked=blocked,
            retry_after_seconds=retry_after_seconds if blocked else 0,
            attempts_remaining=max(self.policy.max_attempts - failed_attempts, 0),
        )

    async def ensure_allowed(self, key: str, scope: str) -> AttemptStatus:
        """
        Raise if ``key`` is currently blocked.

        Raises:
            AttemptsBlockedError: With the seconds until the block lifts
        """
        status = await self.is_blocked(key)
        if status.blocked:
            metrics.record_attempt_blocked(scope)
            logger.warning(
                "attempt_guard_blocked",
                key=key,
                scope=scope,
                retry_after_seconds=status.retry_after_seconds,
            )
            raise AttemptsBlockedError(
                "Too many failed attempts, try again later",
                retry_after_seconds=status.retry_after_seconds,
            )
        return status


class DatabaseAttemptGuard(AttemptGuard):
    """
    Attempt counters in the ``attempt_counters`` table.

    Runs in its own short sessions so counters are committed independently of
    the request's unit of work.
    """

    def __init__(
        self,
        policy: LockoutPolicy,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(policy)
        self.session_factory = session_factory
        self.clock = clock

    async def _increment(self, session: AsyncSession, key: str, now: datetime) -> bool:
        """Bump an existing counter, restarting it if the last failure is too old."""
        cutoff = now - self.policy.duration
        stale = AttemptCounter.last_failed_at < cutoff
        result = await session.execute(
            update(AttemptCounter)
            .where(AttemptCounter.key == key)
            .values(
                failed_attempts=case((stale, 1), else_=AttemptCounter.failed_attempts + 1),
                first_failed_at=case(
                    (stale, literal(now, DateTime(timezone=True))),
                    else_=AttemptCounter.first_failed_at,
                ),
                last_failed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _load(self, session: AsyncSession, key: str) -> Optional[AttemptCounter]:
        result = await session.execute(
            select(AttemptCounter).where(AttemptCounter.key == key)
        )
        return result.scalar_one_or_none()

    def _standing(self, counter: Optional[AttemptCounter], now: datetime) -> AttemptStatus:
        if counter is None:
            return self._status(0, 0)
        lifts_at = as_utc(counter.last_failed_at) + self.policy.duration
        if lifts_at <= now:
            return self._status(0, 0)
        retry_after = math.ceil((lifts_at - now).total_seconds())
        return self._status(counter.failed_attempts, retry_after)

    async def record_attempt(self, key: str) -> AttemptStatus:
        now = self.clock()
        async with self.session_factory() as session:
            if not await self._increment(session, key, now):
                session.add(
                    AttemptCounter(
                        key=key,
                        failed_attempts=1,
                        first_failed_at=now,
                        last_failed_at=now,
                    )
                )
                try:
                    await session.flush()
                except IntegrityError:
                    # Another request inserted the row first
                    await session.rollback()
                    await self._increment(session, key, now)
            await session.commit()
            status = self._standing(await self._load(session, key), now)

        logger.info(
            "attempt_recorded",
            key=key,
            attempts_remaining=status.attempts_remaining,
            blocked=status.blocked,
        )
        return status

    async def is_blocked(self, key: str) -> AttemptStatus:
        async with self.session_factory() as session:
            counter = await self._load(session, key)
            return self._standing(counter, self.clock())

    async def clear(self, key: str) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(AttemptCounter).where(AttemptCounter.key == key))
            await session.commit()


class RedisAttemptGuard(AttemptGuard):
    """
    Attempt counters in Redis.

    Each failure increments the key and pushes its expiry out by the policy
    duration, so the key disappears once ``duration`` passes without a failure.
    """

    KEY_PREFIX = "attempts:"

    def __init__(self, policy: LockoutPolicy, redis_client: aioredis.Redis):
        super().__init__(policy)
        self.redis = redis_client

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    async def record_attempt(self, key: str) -> AttemptStatus:
        pipe = self.redis.pipeline()
        pipe.incr(self._key(key))
        pipe.expire(self._key(key), self.policy.duration_seconds)
        count, _ = await pipe.execute()

        status = self._status(int(count), self.policy.duration_seconds)
        logger.info(
            "attempt_recorded",
            key=key,
            attempts_remaining=status.attempts_remaining,
            blocked=status.blocked,
        )
        return status

    async def is_blocked(self, key: str) -> AttemptStatus:
        pipe = self.redis.pipeline()
        pipe.get(self._key(key))
        pipe.ttl(self._key(key))
        count, ttl = await pipe.execute()

        if count is None:
            return self._status(0, 0)
        return self._status(int(count), max(int(ttl), 0))

    async def clear(self, key: str) -> None:
        await self.redis.delete(self._key(key))


def build_attempt_guard(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    redis_client: Optional[aioredis.Redis] = None,
) -> AttemptGuard:
    """
    Create the configured attempt guard backend.

    Args:
        settings: Application settings
        session_factory: Required for the database backend
        redis_client: Redis client; created from ``redis_url`` when omitted

    Returns:
        AttemptGuard: The single backend used for the life of the process
    """
    policy = LockoutPolicy.from_settings(settings)

    if settings.attempt_guard_backend == "redis":
        if redis_client is None:
            redis_client = aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        guard: AttemptGuard = RedisAttemptGuard(policy, redis_client)
    else:
        if session_factory is None:
            raise ValueError("Database attempt guard needs a session factory")
        guard = DatabaseAttemptGuard(policy, session_factory)

    logger.info(
        "attempt_guard_configured",
        backend=settings.attempt_guard_backend,
        max_attempts=policy.max_attempts,
        duration_seconds=policy.duration_seconds,
    )
    return guard
