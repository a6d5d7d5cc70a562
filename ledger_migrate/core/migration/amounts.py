"""Owed-amount computation for migrating accounts."""

import asyncio

import structlog

from ...models import Account
from ..exceptions import ConfigurationError, DataConsistencyError
from ..ledger import LedgerClient

logger = structlog.get_logger()


class AmountResolver:
    """Computes what each account is still owed on the new ledger.

    ``owed = total_earnings // divisor - withdrawn_on_old - migrated_on_new``

    Ledger fields are read once per round per account; ``begin_round``
    starts a fresh round and ``refresh`` forces a re-read.
    """

    def __init__(self, ledger: LedgerClient, divisor: int = 1):
        if divisor < 1:
            raise ConfigurationError(f"divisor must be a positive integer, got {divisor}")
        self.ledger = ledger
        self.divisor = divisor
        self._round_cache: dict[str, int] = {}
        self.logger = logger.bind(component="amount_resolver")

    def scaled_earnings(self, account: Account) -> int:
        return account.total_earnings // self.divisor

    def begin_round(self) -> None:
        self._round_cache.clear()

    def invalidate(self, account: Account) -> None:
        self._round_cache.pop(account.address, None)

    async def resolve(self, account: Account) -> int:
        """Return the amount still owed, reading the ledgers on first touch this round.

        Raises:
            DataConsistencyError: If the account received more than its earnings
        """
        cached = self._round_cache.get(account.address)
        if cached is not None:
            return cached
        return await self.refresh(account)

    async def refresh(self, account: Account) -> int:
        """Re-read both ledgers for ``account`` and update its state."""
        withdrawn, migrated = await asyncio.gather(
            self.ledger.get_withdrawn(account.address),
            self.ledger.get_migrated(account.address),
        )
        # Both fields only grow on chain; a lower read is a lagging node
        withdrawn = max(withdrawn, account.withdrawn_on_old)
        migrated = max(migrated, account.migrated_on_new)
        earnings = self.scaled_earnings(account)
        owed = earnings - withdrawn - migrated
        if owed < 0:
            raise DataConsistencyError(
                "Member received more than recorded earnings",
                address=account.address,
                earnings=earnings,
                withdrawn=withdrawn,
                migrated=migrated,
                owed=owed,
            )

        account.withdrawn_on_old = withdrawn
        account.migrated_on_new = migrated
        account.owed = owed
        self._round_cache[account.address] = owed
        self.logger.debug(
            "Resolved owed amount",
            address=account.address,
            earnings=earnings,
            withdrawn=withdrawn,
            migrated=migrated,
            owed=owed,
        )
        return owed
