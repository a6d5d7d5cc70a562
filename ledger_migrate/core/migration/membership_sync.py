"""Registration of migrating accounts as members of the new ledger."""

import asyncio

import structlog

from ...constants import DEFAULT_SYNC_BATCH_SIZE
from ...models import Account, TransactionRequest, TxKind
from ..exceptions import BroadcastUnconfirmedError, DataConsistencyError, TransactionRejectedError
from ..ledger import LedgerClient, TransientRetry
from ..settings import RECEIPT_TIMEOUT
from .nonce import NonceSequencer

logger = structlog.get_logger()


class MembershipSynchronizer:
    """Adds accounts the new ledger doesn't know yet, in batches.

    Already-active members are filtered out first: adding an active member
    reverts the whole batch. Transient failures are retried a bounded
    number of times, re-checking membership before anything is resent.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        sequencer: NonceSequencer,
        batch_size: int = DEFAULT_SYNC_BATCH_SIZE,
        receipt_timeout: float = RECEIPT_TIMEOUT,
        dry_run: bool = False,
        retry: TransientRetry | None = None,
    ):
        self.ledger = ledger
        self.sequencer = sequencer
        self.batch_size = max(1, batch_size)
        self.receipt_timeout = receipt_timeout
        self.dry_run = dry_run
        self.retry = retry or TransientRetry()
        self.logger = logger.bind(component="membership_sync")

    async def find_missing(self, accounts: list[Account]) -> list[str]:
        """Addresses of ``accounts`` that aren't active members of the new ledger."""
        return await self._missing([a.address for a in accounts])

    async def _missing(self, addresses: list[str]) -> list[str]:
        missing: list[str] = []
        for start in range(0, len(addresses), self.batch_size):
            chunk = addresses[start : start + self.batch_size]
            active = await self.retry(
                lambda chunk=chunk: asyncio.gather(*(self.ledger.is_active_member(a) for a in chunk)),
                "membership check",
            )
            missing.extend(address for address, is_active in zip(chunk, active) if not is_active)
        return missing

    async def sync(self, accounts: list[Account]) -> int:
        """Add every missing account. Returns how many were added.

        Raises:
            DataConsistencyError: If the new ledger rejects a batch
        """
        missing = await self.find_missing(accounts)
        self.logger.info("Membership check done", accounts=len(accounts), missing=len(missing))
        if not missing:
            return 0
        if self.dry_run:
            self.logger.info("Dry run, would add members", count=len(missing))
            return 0

        added = 0
        for start in range(0, len(missing), self.batch_size):
            batch = missing[start : start + self.batch_size]
            added += await self._add_batch(batch)
            self.logger.info("Added member batch", size=len(batch), added=added, total=len(missing))
        return added

    async def _add_batch(self, batch: list[str]) -> int:
        # A batch that may already have landed is looked up, never blindly resent
        tx_hash: str | None = None
        remaining = batch

        async def add() -> int:
            nonlocal tx_hash, remaining
            if tx_hash is None:
                remaining = await self._missing(batch)
                if not remaining:
                    return 0
                request = TransactionRequest(kind=TxKind.ADD_MEMBERS, recipients=remaining)
                try:
                    pending = await self.sequencer.submit(request)
                except BroadcastUnconfirmedError as e:
                    tx_hash = await self.ledger.find_transaction(e.nonce)
                    raise
                tx_hash = pending.tx_hash
            await self.ledger.wait_for_receipt(tx_hash, self.receipt_timeout)
            return len(remaining)

        try:
            return await self.retry(add, "member batch")
        except TransactionRejectedError as e:
            raise DataConsistencyError(
                "New ledger rejected member batch",
                first=batch[0],
                size=len(remaining),
                error=str(e),
            ) from e
