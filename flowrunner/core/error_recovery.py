"""Retry and health-check helpers."""

import asyncio
import logging
import time
import random
from typing import Callable, Any, Optional, Dict, List, Type
from functools import wraps
from datetime import datetime, timezone

from .exceptions import WorkflowEngineError, TransientError, StorageError
from .logging import get_logger, log_with_context


logger = get_logger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 5.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [TransientError, StorageError]

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        # No attempts left
        if attempt >= self.max_attempts:
            return False

        # Our own errors say whether they are recoverable
        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable

        return any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        # Spread out retries from concurrent callers
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator to add retry logic to functions."""
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return _execute_with_retry(func, config, *args, **kwargs)
        return wrapper

    return decorator


def _execute_with_retry(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Execute function with retry logic."""
    operation = func.__name__

    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e, attempt):
                # Out of attempts, or not worth retrying
                log_with_context(
                    logger, logging.ERROR,
                    f"{operation} failed after {attempt} attempt(s): {e}",
                    operation=operation,
                    error_type=type(e).__name__,
                    attempts_used=attempt,
                )
                raise

            delay = config.get_delay(attempt)
            log_with_context(
                logger, logging.WARNING,
                f"Retrying {operation} in {delay:.2f}s (attempt {attempt}/{config.max_attempts}): {e}",
                operation=operation,
                error_type=type(e).__name__,
                attempt=attempt,
            )
            time.sleep(delay)


class HealthChecker:
    """Health checker for system components."""

    def __init__(self):
        self.checks: Dict[str, Dict[str, Any]] = {}
        self.logger = get_logger("health_checker")

    def register_check(self, name: str, check_func: Callable, timeout: float = 5.0):
        """Register a health check function."""
        self.checks[name] = {
            "func": check_func,
            "timeout": timeout
        }
        self.logger.info(f"Registered health check: {name}")

    async def run_check(self, name: str) -> Dict[str, Any]:
        """Run a specific health check."""
        if name not in self.checks:
            return {
                "status": "error",
                "message": f"Health check '{name}' not found",
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

        check_info = self.checks[name]
        start_time = time.time()

        try:
            # Run check with timeout; sync checks run inline
            if asyncio.iscoroutinefunction(check_info["func"]):
                result = await asyncio.wait_for(check_info["func"](), timeout=check_info["timeout"])
            else:
                result = check_info["func"]()

            check_result = {
                "status": "healthy",
                "message": result if isinstance(result, str) else "Check passed",
                "duration_ms": round((time.time() - start_time) * 1000, 2),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
            # Dict results carry extra fields for the report
            if isinstance(result, dict):
                check_result.update(result)
            return check_result

        except asyncio.TimeoutError:
            return {
                "status": "timeout",
                "message": f"Health check timed out after {check_info['timeout']}s",
                "duration_ms": round((time.time() - start_time) * 1000, 2),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        except Exception as e:
            return {
                "status": "unhealthy",
                "message": str(e),
                "error_type": type(e).__name__,
                "duration_ms": round((time.time() - start_time) * 1000, 2),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

    async def run_all_checks(self) -> Dict[str, Any]:
        """Run all registered health checks."""
        results = {}
        overall_status = "healthy"

        for name in self.checks:
            result = await self.run_check(name)
            results[name] = result
            # Any failing check marks the service unhealthy
            if result["status"] != "healthy":
                overall_status = "unhealthy"

        return {
            "overall_status": overall_status,
            "checks": results,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }


# Global health checker instance
health_checker = HealthChecker()
