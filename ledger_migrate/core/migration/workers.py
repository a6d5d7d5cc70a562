"""Concurrent per-account transfer attempts."""

import asyncio

import structlog

from ...models import (
    Account,
    AccountOutcome,
    OutcomeStatus,
    RoundOutcome,
    TransactionRequest,
    TransferRecord,
    TxKind,
)
from ...utils import format_amount
from ..exceptions import (
    BroadcastUnconfirmedError,
    DataConsistencyError,
    ReceiptTimeoutError,
    TransactionRejectedError,
    TransientLedgerError,
)
from ..ledger import LedgerClient
from ..logging_config import get_transfer_logger
from ..progress_ledger import ProgressLedger
from ..settings import RECEIPT_TIMEOUT
from .amounts import AmountResolver
from .nonce import NonceSequencer

logger = structlog.get_logger()


class TransferWorkerPool:
    """Runs one round of transfer attempts with bounded parallelism.

    Workers only report outcomes; the caller decides what happens to each
    account in the work queue.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        resolver: AmountResolver,
        sequencer: NonceSequencer,
        progress: ProgressLedger,
        *,
        dust_threshold: int = 0,
        parallelism: int = 1,
        max_transient_failures: int = 10,
        receipt_timeout: float = RECEIPT_TIMEOUT,
        dry_run: bool = False,
    ):
        self.ledger = ledger
        self.resolver = resolver
        self.sequencer = sequencer
        self.progress = progress
        self.dust_threshold = dust_threshold
        self.parallelism = max(1, parallelism)
        self.max_transient_failures = max_transient_failures
        self.receipt_timeout = receipt_timeout
        self.dry_run = dry_run
        self.logger = logger.bind(component="transfer_worker_pool")
        self.transfer_logger = get_transfer_logger()

    async def run_round(self, accounts: list[Account], round_number: int = 0) -> RoundOutcome:
        """Attempt every account in ``accounts``, at most ``parallelism`` at a time.

        In-flight attempts always run to completion. An attempt that raises
        (a data-consistency error, say) is reported as FAILED and the first
        such error is returned on the outcome, next to the settled results
        of every other account, for the caller to raise.
        """
        semaphore = asyncio.Semaphore(self.parallelism)

        async def guarded(account: Account) -> AccountOutcome:
            async with semaphore:
                return await self.attempt(account)

        results = await asyncio.gather(
            *(guarded(account) for account in accounts), return_exceptions=True
        )

        outcome = RoundOutcome(round_number=round_number)
        for account, result in zip(accounts, results):
            if isinstance(result, BaseException):
                if outcome.error is None:
                    outcome.error = result
                self.logger.error(
                    "Transfer attempt aborted", address=account.address, error=str(result)
                )
                result = AccountOutcome(
                    address=account.address,
                    status=OutcomeStatus.FAILED,
                    owed=account.owed,
                    reason=f"{type(result).__name__}: {result}",
                )
            outcome.outcomes.append(result)
        return outcome

    async def attempt(self, account: Account) -> AccountOutcome:
        """One attempt for one account: settle, resolve or transfer."""
        try:
            if account.pending_nonce is not None:
                await self._locate_pending(account)
            if account.pending_tx is not None:
                return await self._settle_pending(account)

            first_touch = not account.is_resolved
            owed = await self.resolver.resolve(account)
            if owed <= self.dust_threshold:
                return AccountOutcome(
                    address=account.address, status=OutcomeStatus.BELOW_THRESHOLD, owed=owed
                )
            if first_touch:
                # Priority is only known now; let the next sort place it
                return AccountOutcome(address=account.address, status=OutcomeStatus.RESOLVED, owed=owed)
            if self.dry_run:
                self.logger.info(
                    "Dry run, would transfer",
                    address=account.address,
                    amount=format_amount(owed),
                )
                return AccountOutcome(
                    address=account.address, status=OutcomeStatus.DRY_RUN, amount=owed, owed=owed
                )
            return await self._transfer(account, owed)

        except TransientLedgerError as e:
            return self._transient(account, e)
        except TransactionRejectedError as e:
            account.pending_tx = None
            account.pending_amount = None
            self.logger.warning("Transfer rejected", address=account.address, error=str(e))
            return AccountOutcome(
                address=account.address,
                status=OutcomeStatus.FAILED,
                owed=account.owed,
                tx_hash=e.tx_hash,
                reason=str(e),
            )

    async def _transfer(self, account: Account, owed: int) -> AccountOutcome:
        request = TransactionRequest(kind=TxKind.TRANSFER, recipients=[account.address], amount=owed)
        try:
            pending = await self.sequencer.submit(request)
        except BroadcastUnconfirmedError as e:
            account.pending_nonce = e.nonce
            account.pending_amount = owed
            raise
        account.pending_tx = pending.tx_hash
        account.pending_amount = owed

        receipt = await self.ledger.wait_for_receipt(pending.tx_hash, self.receipt_timeout)
        return await self._complete(account, owed, receipt.tx_hash)

    async def _locate_pending(self, account: Account) -> None:
        """Find out whether an unconfirmed broadcast landed before sending anything new."""
        nonce = account.pending_nonce
        tx_hash = await self.ledger.find_transaction(nonce)
        account.pending_nonce = None
        if tx_hash is None:
            self.logger.info("Earlier broadcast never landed", address=account.address, nonce=nonce)
            account.pending_amount = None
            return
        self.logger.warning(
            "Earlier broadcast landed despite failure",
            address=account.address,
            nonce=nonce,
            tx_hash=tx_hash,
        )
        account.pending_tx = tx_hash

    async def _settle_pending(self, account: Account) -> AccountOutcome:
        self.logger.info(
            "Waiting for earlier transfer before sending more",
            address=account.address,
            tx_hash=account.pending_tx,
        )
        receipt = await self.ledger.wait_for_receipt(account.pending_tx, self.receipt_timeout)
        return await self._complete(account, account.pending_amount or 0, receipt.tx_hash)

    async def _complete(self, account: Account, amount: int, tx_hash: str) -> AccountOutcome:
        account.pending_tx = None
        account.pending_amount = None
        account.transient_failures = 0
        # Lower bound until the ledger is re-read
        account.migrated_on_new += amount
        local_owed = (
            self.resolver.scaled_earnings(account) - account.withdrawn_on_old - account.migrated_on_new
        )

        # Re-read both ledgers: catches withdrawals made meanwhile and any overpayment
        self.resolver.invalidate(account)
        verified = True
        overpaid: DataConsistencyError | None = None
        try:
            owed_after = await self.resolver.refresh(account)
        except DataConsistencyError as e:
            owed_after, overpaid = local_owed, e
        except TransientLedgerError as e:
            self.logger.warning("Refresh after transfer failed", address=account.address, error=str(e))
            owed_after, verified = local_owed, False
        satisfied = owed_after <= self.dust_threshold and overpaid is None

        await self.progress.record(
            TransferRecord(
                run_id=self.progress.run_id,
                account=account.address,
                amount=amount,
                tx_hash=tx_hash,
                satisfied=satisfied,
            )
        )
        self.transfer_logger.info(
            "Transferred",
            address=account.address,
            amount=str(amount),
            amount_formatted=format_amount(amount),
            tx_hash=tx_hash,
            satisfied=satisfied,
        )
        if overpaid is not None:
            raise overpaid
        if owed_after < 0:
            raise DataConsistencyError(
                "Transfer exceeded recorded earnings",
                address=account.address,
                amount=amount,
                tx_hash=tx_hash,
                owed_after=owed_after,
            )
        account.owed = owed_after

        return AccountOutcome(
            address=account.address,
            # Unverified transfers are re-resolved next round
            status=OutcomeStatus.COMPLETED if satisfied and verified else OutcomeStatus.TRANSFERRED,
            amount=amount,
            owed=owed_after,
            tx_hash=tx_hash,
        )

    def _transient(self, account: Account, error: TransientLedgerError) -> AccountOutcome:
        self.resolver.invalidate(account)
        account.transient_failures += 1
        account.last_error = str(error)
        if isinstance(error, ReceiptTimeoutError) and error.tx_hash:
            account.pending_tx = error.tx_hash

        if account.transient_failures >= self.max_transient_failures:
            reason = f"gave up after {account.transient_failures} transient failures: {error}"
            self.logger.error("Giving up on account", address=account.address, error=str(error))
            return AccountOutcome(
                address=account.address,
                status=OutcomeStatus.FAILED,
                owed=account.owed,
                tx_hash=account.pending_tx,
                reason=reason,
            )

        self.logger.warning(
            "Transient failure, retrying next round",
            address=account.address,
            failures=account.transient_failures,
            error=str(error),
        )
        return AccountOutcome(
            address=account.address,
            status=OutcomeStatus.TRANSIENT,
            owed=account.owed,
            tx_hash=account.pending_tx,
            reason=str(error),
        )
