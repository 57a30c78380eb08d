import threading
from collections.abc import Callable
from datetime import date, datetime, time, timedelta
from typing import Protocol

from autocategorizer.core.settings import DEFAULT_MAX_AI_CALLS_PER_USER_PER_DAY
from autocategorizer.logger import get_logger

logger = get_logger(__name__)


class UsageCounterStore(Protocol):
    """Daily counters keyed by user and date.

    ``increment_if_below`` must check and increment as one step so concurrent
    runs cannot jointly exceed the limit.
    """

    def get(self, key: str, now: datetime) -> int: ...

    def increment(self, key: str, expires_at: datetime, now: datetime) -> int: ...

    def increment_if_below(
        self, key: str, limit: int, expires_at: datetime, now: datetime
    ) -> tuple[bool, int]: ...

    def decrement(self, key: str, now: datetime) -> int: ...


class InMemoryUsageCounterStore:
    """Process-local counters that expire at their absolute expiry time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[int, datetime]] = {}

    def _current(self, key: str, now: datetime) -> int:
        """Must be called while holding ``_lock``."""
        entry = self._entries.get(key)
        if entry is None:
            return 0
        value, expires_at = entry
        if now >= expires_at:
            del self._entries[key]
            return 0
        return value

    def get(self, key: str, now: datetime) -> int:
        with self._lock:
            return self._current(key, now)

    def increment(self, key: str, expires_at: datetime, now: datetime) -> int:
        with self._lock:
            value = self._current(key, now) + 1
            self._entries[key] = (value, expires_at)
            return value

    def increment_if_below(
        self, key: str, limit: int, expires_at: datetime, now: datetime
    ) -> tuple[bool, int]:
        with self._lock:
            value = self._current(key, now)
            if value >= limit:
                return False, value
            value += 1
            self._entries[key] = (value, expires_at)
            return True, value

    def decrement(self, key: str, now: datetime) -> int:
        with self._lock:
            value = self._current(key, now)
            if value == 0:
                return 0
            _, expires_at = self._entries[key]
            self._entries[key] = (value - 1, expires_at)
            return value - 1


class UsageTracker:
    """Per-user, per-calendar-day quota for the costly LLM stage."""

    def __init__(
        self,
        store: UsageCounterStore | None = None,
        max_calls_per_day: int = DEFAULT_MAX_AI_CALLS_PER_USER_PER_DAY,
        clock: Callable[[], datetime] = datetime.now,
    ):
        if max_calls_per_day <= 0:
            logger.warning(
                "[USAGE] Invalid daily quota %s, using default %s",
                max_calls_per_day,
                DEFAULT_MAX_AI_CALLS_PER_USER_PER_DAY,
            )
            max_calls_per_day = DEFAULT_MAX_AI_CALLS_PER_USER_PER_DAY
        self.store = store or InMemoryUsageCounterStore()
        self.max_calls_per_day = max_calls_per_day
        self.clock = clock

    @staticmethod
    def cache_key(user_id: str, day: date) -> str:
        return f"ai_usage:{user_id}:{day.isoformat()}"

    def _key(self, user_id: str) -> tuple[datetime, str, datetime]:
        now = self.clock()
        # Entries live until the next local midnight
        expires_at = datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=now.tzinfo)
        return now, self.cache_key(user_id, now.date()), expires_at

    def current_usage(self, user_id: str) -> int:
        now, key, _ = self._key(user_id)
        return self.store.get(key, now)

    def can_use(self, user_id: str) -> bool:
        usage = self.current_usage(user_id)
        allowed = usage < self.max_calls_per_day
        if allowed:
            logger.debug(
                "[USAGE] AI usage check for user %s: %s/%s", user_id, usage, self.max_calls_per_day
            )
        else:
            logger.warning(
                "[USAGE] AI usage quota exceeded for user %s: %s/%s",
                user_id,
                usage,
                self.max_calls_per_day,
            )
        return allowed

    def record_usage(self, user_id: str, operation: str) -> int:
        now, key, expires_at = self._key(user_id)
        usage = self.store.increment(key, expires_at, now)
        logger.info(
            "[USAGE] Recorded AI usage for user %s. Operation: %s, daily total: %s",
            user_id,
            operation,
            usage,
        )
        return usage

    def try_acquire(self, user_id: str, operation: str) -> bool:
        """Reserve one call from today's quota; ``False`` when it is used up."""
        now, key, expires_at = self._key(user_id)
        acquired, usage = self.store.increment_if_below(
            key, self.max_calls_per_day, expires_at, now
        )
        if acquired:
            logger.info(
                "[USAGE] Reserved AI usage for user %s. Operation: %s, daily total: %s/%s",
                user_id,
                operation,
                usage,
                self.max_calls_per_day,
            )
        else:
            logger.warning(
                "[USAGE] AI usage quota exhausted for user %s (%s/%s); skipping %s",
                user_id,
                usage,
                self.max_calls_per_day,
                operation,
            )
        return acquired

    def release(self, user_id: str, operation: str) -> int:
        """Give back a unit reserved by ``try_acquire`` when the call produced nothing."""
        now, key, _ = self._key(user_id)
        usage = self.store.decrement(key, now)
        logger.info(
            "[USAGE] Released AI usage for user %s. Operation: %s, daily total: %s/%s",
            user_id,
            operation,
            usage,
            self.max_calls_per_day,
        )
        return usage

    def remaining_quota(self, user_id: str) -> int:
        return max(0, self.max_calls_per_day - self.current_usage(user_id))
