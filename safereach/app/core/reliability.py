"""
Reliability Utilities.

Circuit breaker and bounded retry for calls to external providers.
"""

import time
import asyncio
import logging
from typing import Callable, Any, Tuple, Type

logger = logging.getLogger(__name__)


class CircuitOpenError(Exception):
    pass


class CircuitBreaker:
    """
    Simple Circuit Breaker implementation.
    If 'failure_threshold' failures occur within 'reset_timeout', 
    the circuit opens and rejects calls for 'reset_timeout' seconds.
    """
    def __init__(self, failure_threshold: int = 5, reset_timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failures = 0
        self.last_failure_time = 0
        self.state = "CLOSED" # CLOSED, OPEN, HALF_OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == "OPEN":
            if time.time() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF_OPEN"
            else:
                raise CircuitOpenError("Circuit is OPEN")

        try:
            result = await func(*args, **kwargs)
            if self.state != "CLOSED" or self.failures:
                self.reset_state()
            return result
        except Exception:
            self.record_failure()
            raise

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = time.time()
        if self.failures >= self.failure_threshold or self.state == "HALF_OPEN":
            if self.state != "OPEN":
                logger.warning("Circuit opened after %d failures", self.failures)
            self.state = "OPEN"

    def reset_state(self):
        self.failures = 0
        self.state = "CLOSED"


async def call_with_retry(
    func: Callable,
    *args,
    retries: int = 1,
    backoff_seconds: float = 0.2,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    **kwargs
) -> Any:
    """
    Await ``func`` and retry it up to ``retries`` more times on ``retry_on``.
    
    The last exception propagates once the attempts are used up.
    """
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except retry_on as e:
            if attempt >= retries:
                raise
            attempt += 1
            logger.info("Retrying %s after %s (attempt %d/%d)", getattr(func, "__name__", func), e, attempt, retries)
            await asyncio.sleep(backoff_seconds * attempt)


# Shared breaker for the routing provider
routing_circuit_breaker = CircuitBreaker(failure_threshold=3, reset_timeout=30)
