"""
Circuit breaker for AI provider streams.

A provider whose streams keep failing is taken out of rotation for a
cool-down period. While its circuit is open the gateway refuses new
sessions for that provider and the relay answers with an error frame
instead of calling it. After the cool-down one trial stream is let
through (half-open); its outcome closes or re-opens the circuit.

A stream that ends because the client went away is not a provider
failure and is never counted.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple, Type

from siftstream.core.config import settings
from siftstream.core.logging import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"        # streams flow
    OPEN = "open"            # provider refused until the cool-down ends
    HALF_OPEN = "half_open"  # cool-down over, next outcome decides


class StreamAbandoned(Exception):
    """Raised inside a guarded block to leave it without recording an outcome."""


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 1
    timeout: float = 30.0
    excluded_exceptions: Tuple[Type[BaseException], ...] = (
        asyncio.CancelledError,
        GeneratorExit,
        StreamAbandoned,
    )


@dataclass
class CircuitBreakerStats:
    """Counters since creation or the last manual reset."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    opened_at: Optional[float] = None
    last_failure_time: Optional[float] = None
    total_failures: int = 0
    total_successes: int = 0
    total_rejected: int = 0


class CircuitOpenError(Exception):
    """Raised on entry while the circuit is open."""

    def __init__(self, name: str, retry_in: float):
        self.name = name
        self.retry_in = retry_in
        super().__init__(f"Circuit breaker [{name}] is open, retry in {retry_in:.1f}s")


class CircuitBreaker:
    """
    Failure counter guarding one provider.

    Usage:
        breaker = get_provider_breaker("anthropic")

        async with breaker:
            async for chunk in provider.stream_text(...):
                ...
    """

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.stats = CircuitBreakerStats()
        self._lock = asyncio.Lock()

    def _cooled_down(self) -> bool:
        opened_at = self.stats.opened_at
        return opened_at is not None and time.monotonic() - opened_at >= self.config.timeout

    @property
    def state(self) -> CircuitState:
        """Current state; an open circuit reads as half-open once cooled down."""
        if self.stats.state is CircuitState.OPEN and self._cooled_down():
            return CircuitState.HALF_OPEN
        return self.stats.state

    def is_available(self) -> bool:
        return self.state is not CircuitState.OPEN

    def seconds_until_retry(self) -> float:
        if self.state is not CircuitState.OPEN:
            return 0
        return max(0.0, self.config.timeout - (time.monotonic() - self.stats.opened_at))

    def _open(self) -> None:
        previous = self.state
        self.stats.state = CircuitState.OPEN
        self.stats.opened_at = time.monotonic()
        self.stats.success_count = 0
        logger.warning(
            f"Circuit breaker [{self.name}] opened",
            extra={"previous": previous.value, "failures": self.stats.failure_count},
        )

    def _close(self) -> None:
        self.stats.state = CircuitState.CLOSED
        self.stats.opened_at = None
        self.stats.failure_count = 0
        self.stats.success_count = 0
        logger.info(f"Circuit breaker [{self.name}] closed")

    async def record_success(self) -> None:
        async with self._lock:
            self.stats.total_successes += 1
            state = self.state
            if state is CircuitState.HALF_OPEN:
                self.stats.success_count += 1
                if self.stats.success_count >= self.config.success_threshold:
                    self._close()
            elif state is CircuitState.CLOSED:
                self.stats.failure_count = 0

    async def record_failure(self, exception: BaseException) -> None:
        """Count a provider failure; excluded exception types are ignored."""
        if isinstance(exception, self.config.excluded_exceptions):
            return

        async with self._lock:
            self.stats.total_failures += 1
            self.stats.failure_count += 1
            self.stats.last_failure_time = time.time()
            state = self.state
            if state is CircuitState.HALF_OPEN:
                self._open()
            elif state is CircuitState.CLOSED and self.stats.failure_count >= self.config.failure_threshold:
                self._open()

    async def __aenter__(self) -> "CircuitBreaker":
        if not self.is_available():
            self.stats.total_rejected += 1
            raise CircuitOpenError(self.name, self.seconds_until_retry())
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is None:
            await self.record_success()
        else:
            await self.record_failure(exc_val)
        return False

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.stats.failure_count,
            "total_failures": self.stats.total_failures,
            "total_successes": self.stats.total_successes,
            "total_rejected": self.stats.total_rejected,
            "last_failure": self.stats.last_failure_time,
            "seconds_until_retry": round(self.seconds_until_retry(), 1),
        }


class CircuitBreakerRegistry:
    """Named breakers sharing one default configuration."""

    def __init__(self, default_config: Optional[CircuitBreakerConfig] = None):
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._default_config = default_config or CircuitBreakerConfig()

    def get_or_create(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = self._breakers[name] = CircuitBreaker(name, config or self._default_config)
        return breaker

    def get_all_stats(self) -> Dict[str, dict]:
        return {name: breaker.get_stats() for name, breaker in self._breakers.items()}

    def reset(self, name: str) -> bool:
        """Forget a breaker's history and close it."""
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.stats = CircuitBreakerStats()
        logger.info(f"Circuit breaker [{name}] manually reset")
        return True

    def reset_all(self) -> None:
        for name in list(self._breakers):
            self.reset(name)


# One breaker per provider, shared by the gateway and the relay
provider_circuit_breakers = CircuitBreakerRegistry(
    default_config=CircuitBreakerConfig(
        failure_threshold=settings.provider_failure_threshold,
        timeout=settings.provider_recovery_timeout_seconds,
    )
)


def get_provider_breaker(provider: str) -> CircuitBreaker:
    """Breaker guarding ``provider`` (named ``provider_<name>``)."""
    return provider_circuit_breakers.get_or_create(f"provider_{provider}")
