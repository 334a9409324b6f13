"""Bounded retry with a fixed backoff for remote storage operations."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from upload_relay.exceptions import OperationExhausted, TransientNetworkError
from upload_relay.observability.logging import get_logger
from upload_relay.observability.metrics import metrics_registry

logger = get_logger(__name__)

T = TypeVar("T")


class RetryExecutor:
    """Run a remote operation up to ``max_retries + 1`` times.

    Only ``TransientNetworkError`` is retried. Permanent failures and any
    other exception propagate from the attempt that raised them. When every
    attempt fails, ``OperationExhausted`` is raised carrying the last error.
    """

    def __init__(self, max_retries: int = 2, delay: float = 0.25):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.delay = delay

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str = "operation",
        max_retries: int | None = None,
        delay: float | None = None,
    ) -> T:
        """Execute ``operation`` with retries.

        Args:
            operation: Zero-argument callable returning an awaitable
            name: Operation name used in logs and metrics
            max_retries: Override the executor's retry bound
            delay: Override the executor's backoff in seconds

        Returns:
            The operation's result

        Raises:
            OperationExhausted: If every attempt failed transiently
        """
        retries = self.max_retries if max_retries is None else max_retries
        wait = self.delay if delay is None else delay

        last_error: TransientNetworkError | None = None
        for attempt in range(retries + 1):
            try:
                return await operation()
            except TransientNetworkError as e:
                last_error = e
                remaining = retries - attempt
                logger.warning(
                    f"{name} attempt {attempt} failed",
                    operation=name,
                    attempt=attempt,
                    remaining=remaining,
                    error=str(e),
                    exc_info=True,
                )
                if remaining == 0:
                    break
                metrics_registry.record_retry(name, "retrying")
                await asyncio.sleep(wait)

        metrics_registry.record_retry(name, "exhausted")
        raise OperationExhausted(name, retries + 1, last_error) from last_error
