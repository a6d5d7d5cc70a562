"""Bounded retries for one-off ledger calls outside the round loop."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from ..exceptions import TransientLedgerError
from ..settings import TRANSIENT_RETRIES, TRANSIENT_RETRY_DELAY

logger = structlog.get_logger()

T = TypeVar("T")


class TransientRetry:
    """Retries a ledger call a fixed number of times on ``TransientLedgerError``.

    Only wrap calls that are safe to repeat: reads, or writes whose effect
    is absolute rather than additive. The delay grows linearly per attempt.
    """

    def __init__(self, attempts: int = TRANSIENT_RETRIES, delay: float = TRANSIENT_RETRY_DELAY):
        self.attempts = max(1, attempts)
        self.delay = delay
        self.logger = logger.bind(component="transient_retry")

    async def __call__(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except TransientLedgerError as e:
                if attempt >= self.attempts:
                    self.logger.error(
                        "Ledger call failed, out of retries",
                        operation=description,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise
                self.logger.warning(
                    "Ledger call failed, retrying",
                    operation=description,
                    attempt=attempt,
                    error=str(e),
                )
                await asyncio.sleep(self.delay * attempt)
                attempt += 1
