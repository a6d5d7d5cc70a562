"""Tests for bounded retries of ledger calls."""

import pytest

from ledger_migrate.core.exceptions import TransactionRejectedError, TransientLedgerError
from ledger_migrate.core.ledger import TransientRetry


def flaky(*results):
    """Async callable returning or raising ``results`` in order."""
    calls = []

    async def call():
        result = results[len(calls)]
        calls.append(result)
        if isinstance(result, Exception):
            raise result
        return result

    return call, calls


@pytest.mark.asyncio
async def test_retries_until_success():
    call, calls = flaky(TransientLedgerError("timeout"), TransientLedgerError("timeout"), 7)

    assert await TransientRetry(attempts=3, delay=0)(call, "read") == 7
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_gives_up_after_attempts():
    call, calls = flaky(*(TransientLedgerError("timeout") for _ in range(3)))

    with pytest.raises(TransientLedgerError):
        await TransientRetry(attempts=2, delay=0)(call, "read")
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_rejections_are_not_retried():
    call, calls = flaky(TransactionRejectedError("reverted"), 7)

    with pytest.raises(TransactionRejectedError):
        await TransientRetry(attempts=3, delay=0)(call, "write")
    assert len(calls) == 1
