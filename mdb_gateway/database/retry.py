"""
Bounded timeout and retry for upstream MongoDB calls.

Only transient failures are retried: connection-level errors from the driver
and timeouts. Anything the server rejects (bad query, duplicate key, ...)
fails on the first attempt since retrying cannot change the outcome.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from pymongo.errors import ConnectionFailure
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
)
from ..exceptions import UpstreamUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ConnectionFailure covers AutoReconnect, NotPrimaryError, NetworkTimeout and
# ServerSelectionTimeoutError.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (ConnectionFailure, asyncio.TimeoutError)


class RetryPolicy:
    """
    Runs an upstream call with a per-attempt timeout and exponential backoff.

    With the defaults a call is attempted up to 4 times, sleeping 100ms,
    200ms and 400ms between attempts.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_RETRY_MAX_DELAY_SECONDS,
        timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.base_delay_seconds,
                min=self.base_delay_seconds,
                max=self.max_delay_seconds,
            ),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )

    async def call(self, func: Callable[[], Awaitable[T]], operation: str = "operation") -> T:
        """
        Run ``func`` until it succeeds or the retries are exhausted.

        Args:
            func: Zero-argument coroutine factory; called once per attempt
            operation: Operation name for error messages

        Returns:
            The result of the first successful attempt

        Raises:
            UpstreamUnavailableError: If every attempt failed transiently
        """
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await asyncio.wait_for(func(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailableError(
                f"{operation} timed out after {self.timeout_seconds}s",
                context={"attempts": self.max_retries + 1},
            ) from e
        except ConnectionFailure as e:
            raise UpstreamUnavailableError(
                f"{operation} failed: {e}", context={"attempts": self.max_retries + 1}
            ) from e
        raise AssertionError("unreachable")  # pragma: no cover
