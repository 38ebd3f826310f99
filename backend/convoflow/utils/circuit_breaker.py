# /convoflow/utils/circuit_breaker.py

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised instead of calling the protected function while the circuit is open."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker is OPEN for {name}; retry in {retry_after:.0f}s")
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """
    Stops calling an upstream after `failure_threshold` consecutive failures.

    After `timeout` seconds the circuit lets trial calls through (HALF_OPEN);
    `success_threshold` successes close it again, a single failure reopens it.
    Only exceptions of `tracked_exceptions` count as failures.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: float = 60,
        success_threshold: int = 2,
        tracked_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.tracked_exceptions = tracked_exceptions
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None
        self._lock = asyncio.Lock()

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        await self._admit()
        try:
            result = await func(*args, **kwargs)
        except self.tracked_exceptions:
            await self._record_failure()
            raise
        await self._record_success()
        return result

    async def _admit(self) -> None:
        async with self._lock:
            if self.state != CircuitState.OPEN:
                return
            elapsed = time.monotonic() - (self.opened_at or 0.0)
            if elapsed < self.timeout:
                raise CircuitOpenError(self.name, self.timeout - elapsed)
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0
            logger.info(f"Circuit breaker '{self.name}' is HALF_OPEN; allowing trial calls.")

    async def _record_success(self) -> None:
        async with self._lock:
            if self.state != CircuitState.HALF_OPEN:
                self.failure_count = 0
                return
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                logger.info(f"Circuit breaker '{self.name}' closed again.")

    async def _record_failure(self) -> None:
        async with self._lock:
            self.failure_count += 1
            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                self.state = CircuitState.OPEN
                self.opened_at = time.monotonic()
                logger.error(f"Circuit breaker '{self.name}' opened after {self.failure_count} failures.")
