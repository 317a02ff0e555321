"""
Error taxonomy, primary/secondary fallback and circuit breaking for chain reads
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
from enum import Enum
from dataclasses import dataclass, field
import structlog

from tenacity import (
    retry, stop_after_attempt, wait_exponential,
    retry_if_exception_type, retry_if_not_exception_type, before_sleep_log
)

logger = structlog.get_logger()

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Exception classes for the risk core
class RiskEngineError(Exception):
    """Base class for every error raised by the risk core"""
    pass


class UpstreamUnavailable(RiskEngineError):
    """Raised when a Chain Reader call fails (network, timeout, revert or unsupported)"""
    pass


class NotFound(RiskEngineError):
    """Raised when a referenced pool or pair has no data"""
    pass


class InsufficientData(RiskEngineError):
    """Raised inside estimators when there are too few observations for a statistic"""
    pass


class ComputeFault(RiskEngineError):
    """Raised inside estimators on arithmetic edge cases (division by zero, NaN)"""
    pass


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Circuit is open, failing fast
    HALF_OPEN = "half_open"  # Testing if service has recovered


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration"""
    failure_threshold: int = 5  # Number of failures before opening
    timeout: int = 60  # Seconds to wait before trying again
    expected_exception: type = UpstreamUnavailable
    excluded: tuple = ()  # Raised by a healthy upstream; counted as success
    name: str = "default"


@dataclass
class CircuitBreakerStats:
    """Circuit breaker statistics"""
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[datetime] = None
    state_changed_time: datetime = field(default_factory=_utcnow)
    total_calls: int = 0


class CircuitBreaker:
    """Async circuit breaker; an open circuit fails fast with UpstreamUnavailable"""

    def __init__(self, config: CircuitBreakerConfig):
        self.config = config
        self.state = CircuitState.CLOSED
        self.stats = CircuitBreakerStats()
        self._lock = asyncio.Lock()

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Execute function with circuit breaker protection"""
        async with self._lock:
            self.stats.total_calls += 1

            if self.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self.state = CircuitState.HALF_OPEN
                    logger.info("Circuit breaker moved to HALF_OPEN", breaker=self.config.name)
                else:
                    raise UpstreamUnavailable(
                        f"Circuit breaker {self.config.name} is OPEN"
                    )

        try:
            result = await func(*args, **kwargs)
        except self.config.excluded:
            await self._on_success()
            raise
        except self.config.expected_exception as e:
            await self._on_failure(e)
            raise

        await self._on_success()
        return result

    async def _on_success(self):
        async with self._lock:
            self.stats.failure_count = 0
            self.stats.success_count += 1

            if self.state == CircuitState.HALF_OPEN:
                self.state = CircuitState.CLOSED
                self.stats.state_changed_time = _utcnow()
                logger.info("Circuit breaker CLOSED after recovery", breaker=self.config.name)

    async def _on_failure(self, exception: Exception):
        async with self._lock:
            self.stats.failure_count += 1
            self.stats.last_failure_time = _utcnow()

            if (self.stats.failure_count >= self.config.failure_threshold and
                self.state == CircuitState.CLOSED):
                self.state = CircuitState.OPEN
                self.stats.state_changed_time = _utcnow()
                logger.error(
                    "Circuit breaker OPENED",
                    breaker=self.config.name,
                    failures=self.stats.failure_count,
                    exception=str(exception)
                )
            elif self.state == CircuitState.HALF_OPEN:
                self.state = CircuitState.OPEN
                self.stats.state_changed_time = _utcnow()
                logger.error(
                    "Circuit breaker returned to OPEN after test failure",
                    breaker=self.config.name,
                    exception=str(exception)
                )

    def _should_attempt_reset(self) -> bool:
        """Check if enough time has passed to attempt reset"""
        return (_utcnow() - self.stats.state_changed_time).total_seconds() >= self.config.timeout

    def get_stats(self) -> Dict:
        """Get circuit breaker statistics"""
        return {
            "name": self.config.name,
            "state": self.state.value,
            "failure_count": self.stats.failure_count,
            "success_count": self.stats.success_count,
            "total_calls": self.stats.total_calls,
            "last_failure_time": self.stats.last_failure_time.isoformat() if self.stats.last_failure_time else None,
        }


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    exceptions: tuple = (UpstreamUnavailable,),
    excluded: tuple = ()
):
    """Retry decorator with exponential backoff; ``excluded`` failures are never retried"""
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception_type(exceptions) & retry_if_not_exception_type(excluded),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


async def with_fallback(
    name: str,
    primary: Callable[[], Awaitable[T]],
    secondary: Callable[[], Awaitable[T]],
) -> T:
    """Attempt the primary source; on UpstreamUnavailable run the secondary computation.

    Any other exception propagates unchanged, so only a typed upstream failure
    selects the fallback path.
    """
    try:
        return await primary()
    except UpstreamUnavailable as e:
        logger.debug("Primary source unavailable, using fallback", source=name, error=str(e))
        return await secondary()


async def with_default(name: str, func: Callable[[], Awaitable[T]], default: T) -> T:
    """Run an optional upstream read, returning ``default`` when it is unavailable"""
    try:
        return await func()
    except UpstreamUnavailable as e:
        logger.warning("Upstream read unavailable, using default", source=name, error=str(e))
        return default
