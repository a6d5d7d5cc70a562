"""Priority work queue of accounts awaiting migration."""

import structlog

from ...models import Account, AccountReport, OutcomeStatus
from .amounts import AmountResolver

logger = structlog.get_logger()


class MigrationScheduler:
    """Keeps accounts ordered by how much they are owed, largest first.

    Unresolved accounts sort by their scaled earnings, which bound their owed
    amount from above. When the head of the queue is at or below the dust
    threshold no remaining account can be above it, so migration is done.

    Only the control loop mutates the queue, between rounds.
    """

    def __init__(self, resolver: AmountResolver, dust_threshold: int = 0):
        self.resolver = resolver
        self.dust_threshold = dust_threshold
        self._queue: list[Account] = []
        self._next_sequence = 0
        self.retired: dict[str, AccountReport] = {}
        self.logger = logger.bind(component="migration_scheduler")

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def queue(self) -> list[Account]:
        return list(self._queue)

    def sort_key(self, account: Account) -> int:
        if account.owed is not None:
            return account.owed
        return self.resolver.scaled_earnings(account)

    def add(self, accounts: list[Account]) -> None:
        """Enqueue new accounts, keeping their order as tie-break."""
        for account in accounts:
            account.sequence = self._next_sequence
            self._next_sequence += 1
            self._queue.append(account)
        self.resort()

    def resort(self) -> None:
        self._queue.sort(key=lambda a: (-self.sort_key(a), a.sequence))

    def is_exhausted(self) -> bool:
        return not self._queue or self.sort_key(self._queue[0]) <= self.dust_threshold

    def next_batch(self, n: int) -> list[Account]:
        """Pop up to ``n`` accounts from the head that are above the dust threshold."""
        batch: list[Account] = []
        while self._queue and len(batch) < n:
            if self.sort_key(self._queue[0]) <= self.dust_threshold:
                break
            batch.append(self._queue.pop(0))
        return batch

    def reinsert(self, account: Account) -> None:
        """Put an account back; its position is fixed by the next ``resort``."""
        self._queue.append(account)

    def retire(
        self,
        account: Account,
        status: OutcomeStatus,
        transferred: int = 0,
        reason: str | None = None,
    ) -> None:
        """Remove an account from further rounds and remember why."""
        self.retired[account.address] = AccountReport(
            address=account.address,
            status=status,
            transferred=transferred,
            remaining=account.owed,
            reason=reason,
        )

    def drain_below_threshold(self, transferred: dict[str, int] | None = None) -> list[Account]:
        """Retire everything left in the queue as below the dust threshold."""
        transferred = transferred or {}
        remaining, self._queue = self._queue, []
        for account in remaining:
            self.retire(
                account,
                OutcomeStatus.BELOW_THRESHOLD,
                transferred=transferred.get(account.address, 0),
                reason=f"owed at most {self.sort_key(account)}, dust threshold {self.dust_threshold}",
            )
        if remaining:
            self.logger.info(
                "Accounts left below dust threshold",
                count=len(remaining),
                dust_threshold=self.dust_threshold,
            )
        return remaining

    def total_owed_upper_bound(self) -> int:
        return sum(self.sort_key(a) for a in self._queue)
