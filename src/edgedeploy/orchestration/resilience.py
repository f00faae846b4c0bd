"""Retry backoff and circuit breaking around capability calls."""

import random
import threading
import time
from collections.abc import Callable
from enum import Enum

from edgedeploy.config import CircuitBreakerConfig, RetryConfig
from edgedeploy.core.exceptions import CircuitOpen
from edgedeploy.core.logging import StructuredLogger

logger = StructuredLogger(__name__)


class RetryPolicy:
    """Bounded retry with capped exponential backoff and jitter.

    The delay before retry ``k`` (1-based) is
    ``min(base_delay * multiplier ** (k - 1), max_delay)``, scaled up by a
    random factor in ``[1, 1 + jitter]``. Successive delays never decrease,
    even when jitter on an earlier delay drew high.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        multiplier: float = 2.0,
        jitter: float = 0.1,
        rng: random.Random | None = None,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config: RetryConfig, rng: random.Random | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            multiplier=config.multiplier,
            jitter=config.jitter,
            rng=rng,
        )

    def next_delay(self, retry: int, previous: float = 0.0) -> float:
        """Delay before the given retry.

        Args:
            retry: 1 for the first retry, 2 for the second, ...
            previous: Delay used before the prior retry
        """
        delay = min(self.base_delay * self.multiplier ** (retry - 1), self.max_delay)
        if self.jitter:
            delay *= 1 + self._rng.uniform(0, self.jitter)
        return max(delay, previous)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure circuit breaker for one (capability, target) pair."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown: float = 60.0,
        half_open_successes: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.half_open_successes = half_open_successes
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at: float | None = None
        self._mutex = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._mutex:
            self._maybe_half_open()
            return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def _maybe_half_open(self) -> None:
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.cooldown:
            self._state = CircuitState.HALF_OPEN
            self._successes = 0
            logger.info("Circuit half-open", circuit=self.name)

    def before_call(self, capability: str | None = None, target: str | None = None) -> None:
        """Check that a call may proceed.

        Raises:
            CircuitOpen: While the circuit is open
        """
        with self._mutex:
            self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                retry_after = self.cooldown - (self._clock() - self._opened_at)
                raise CircuitOpen(
                    f"Circuit open for {self.name}",
                    capability=capability,
                    target=target,
                    retry_after=max(retry_after, 0.0),
                )

    def record_success(self) -> None:
        with self._mutex:
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes < self.half_open_successes:
                    return
                logger.info("Circuit closed", circuit=self.name)
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._mutex:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning("Circuit opened", circuit=self.name, failures=self._failures)
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()


class CircuitBreakerRegistry:
    """Lazily created breakers keyed by (capability, target)."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[tuple[str, str], CircuitBreaker] = {}
        self._mutex = threading.Lock()

    def get(self, capability: str, target: str) -> CircuitBreaker:
        key = (capability, target)
        with self._mutex:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(
                    f"{capability}@{target}",
                    failure_threshold=self.config.failure_threshold,
                    cooldown=self.config.cooldown,
                    half_open_successes=self.config.half_open_successes,
                    clock=self._clock,
                )
                self._breakers[key] = breaker
            return breaker

    def reset(self) -> None:
        with self._mutex:
            self._breakers.clear()
