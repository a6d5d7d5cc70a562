"""Top-level control loop of a ledger migration run."""

import asyncio
import uuid
from datetime import UTC, datetime

from ...models import (
    Account,
    AccountReport,
    Chain,
    LedgerSide,
    MigrationReport,
    OutcomeStatus,
    RoundOutcome,
    TransactionRequest,
    TxKind,
)
from ...utils import format_amount
from ..config_loader import MigrationOptions
from ..exceptions import ConfigurationError, DataConsistencyError, LedgerMigrationError
from ..ledger import LedgerClient, TransientRetry
from ..logging_config import get_migration_logger
from ..membership import MembershipSource, load_accounts
from ..progress_ledger import ProgressLedger
from ..settings import (
    BRIDGE_POLL_INTERVAL,
    BRIDGE_TIMEOUT,
    RECEIPT_TIMEOUT,
    TRANSIENT_RETRIES,
    TRANSIENT_RETRY_DELAY,
)
from .amounts import AmountResolver
from .funding import FundingCoordinator
from .membership_sync import MembershipSynchronizer
from .nonce import NonceSequencer
from .scheduler import MigrationScheduler
from .workers import TransferWorkerPool


def new_run_id() -> str:
    return f"{datetime.now(UTC):%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:8]}"


class MigrationDriver:
    """Runs a migration: preflight, membership, sync, funding and approval, then rounds.

    Phases always run in that order. Fatal errors end the run with a report
    carrying the error; a stop request lets the current round finish first.
    The progress ledger is snapshotted on every exit path.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        membership: MembershipSource,
        progress: ProgressLedger,
        legacy_ledger: str,
        new_ledger: str,
        options: MigrationOptions | None = None,
        *,
        receipt_timeout: float = RECEIPT_TIMEOUT,
        bridge_poll_interval: float = BRIDGE_POLL_INTERVAL,
        bridge_timeout: float = BRIDGE_TIMEOUT,
        retry_attempts: int = TRANSIENT_RETRIES,
        retry_delay: float = TRANSIENT_RETRY_DELAY,
    ):
        self.ledger = ledger
        self.membership = membership
        self.progress = progress
        self.legacy_ledger = legacy_ledger
        self.new_ledger = new_ledger
        self.options = options or MigrationOptions()
        self.receipt_timeout = receipt_timeout
        self.retry = TransientRetry(retry_attempts, retry_delay)

        self.resolver = AmountResolver(ledger, self.options.divisor)
        self.scheduler = MigrationScheduler(self.resolver, self.options.dust_threshold)
        self.sequencer = NonceSequencer(ledger)
        self.funding = FundingCoordinator(
            ledger,
            poll_interval=bridge_poll_interval,
            timeout=bridge_timeout,
            dry_run=self.options.dry_run,
            progress=progress,
            retry=self.retry,
        )
        self.member_sync = MembershipSynchronizer(
            ledger,
            self.sequencer,
            batch_size=self.options.sync_batch_size,
            receipt_timeout=receipt_timeout,
            dry_run=self.options.dry_run,
            retry=self.retry,
        )
        self.pool = TransferWorkerPool(
            ledger,
            self.resolver,
            self.sequencer,
            progress,
            dust_threshold=self.options.dust_threshold,
            parallelism=self.options.parallelism,
            max_transient_failures=self.options.max_transient_failures,
            receipt_timeout=receipt_timeout,
            dry_run=self.options.dry_run,
        )

        self.report: MigrationReport | None = None
        self._stop_requested = False
        self._transferred: dict[str, int] = {}
        self.logger = get_migration_logger().bind(
            component="migration_driver", run_id=progress.run_id
        )

    def request_stop(self) -> None:
        """Finish the round in flight, then stop."""
        if not self._stop_requested:
            self.logger.warning("Stop requested, finishing current round")
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    async def run(self) -> MigrationReport:
        """Run the migration and return its report."""
        report = MigrationReport(
            run_id=self.progress.run_id,
            legacy_ledger=self.legacy_ledger,
            new_ledger=self.new_ledger,
            dry_run=self.options.dry_run,
        )
        # Visible to callers even if the run is cancelled
        self.report = report
        self.logger.info(
            "Starting migration",
            legacy_ledger=self.legacy_ledger,
            new_ledger=self.new_ledger,
            divisor=self.options.divisor,
            parallelism=self.options.parallelism,
            dust_threshold=self.options.dust_threshold,
            dry_run=self.options.dry_run,
        )
        try:
            await self.preflight()
            accounts = await self.load_members()
            self.scheduler.add(accounts)

            if self.options.skip_member_sync:
                self.logger.info("Skipping membership sync")
            else:
                await self.member_sync.sync(accounts)

            required = await self.required_funding(accounts)
            if self.options.skip_funding_check:
                self.logger.info("Skipping funding check")
            else:
                report.funding = await self.funding.ensure_funded(required)
            await self.approve(required)

            await self._run_rounds(report)
        except asyncio.CancelledError:
            report.interrupted = True
            raise
        except LedgerMigrationError as e:
            report.fatal_error = f"{type(e).__name__}: {e}"
            self.logger.error("Migration aborted", error_type=type(e).__name__, error=str(e))
        finally:
            await self._finish(report)
        return report

    async def preflight(self) -> None:
        """Check both ledgers exist and pay out the same token.

        Raises:
            ConfigurationError: If a ledger contract is not deployed
            DataConsistencyError: If the ledgers use different tokens
        """
        for name, address in (("legacy", self.legacy_ledger), ("new", self.new_ledger)):
            code = await self.retry(
                lambda address=address: self.ledger.get_code(address, Chain.PRIMARY),
                f"{name} ledger code",
            )
            if not code:
                raise ConfigurationError(f"No contract deployed at {name} ledger address {address}")

        legacy_token, new_token = [
            await self.retry(lambda side=side: self.ledger.get_token(side), f"{side.value} token")
            for side in (LedgerSide.LEGACY, LedgerSide.CURRENT)
        ]
        if legacy_token != new_token:
            raise DataConsistencyError(
                "Ledgers use different tokens",
                legacy_ledger=self.legacy_ledger,
                legacy_token=legacy_token,
                new_ledger=self.new_ledger,
                new_token=new_token,
            )

    async def load_members(self) -> list[Account]:
        records = await self.membership.list_members(self.legacy_ledger)
        accounts = load_accounts(records, self.options.whitelist or None)

        if self.options.whitelist:
            found = {a.address for a in accounts}
            for address in self.options.whitelist:
                if address not in found:
                    self.logger.warning("Whitelisted address is not an active member", address=address)

        self.logger.info(
            "Loaded active members",
            members=len(records),
            selected=len(accounts),
            total_earnings=format_amount(sum(a.total_earnings for a in accounts)),
        )
        return accounts

    async def required_funding(self, accounts: list[Account]) -> int:
        """Upper bound of what the remaining transfers will disburse.

        Whatever the new ledger has already credited is subtracted, but only
        for full runs: with a whitelist the credited total includes accounts
        outside this run.
        """
        required = sum(self.resolver.scaled_earnings(a) for a in accounts)
        if not self.options.whitelist:
            required -= await self.retry(self.ledger.get_total_migrated, "total migrated")
        return max(0, required)

    async def approve(self, required: int) -> None:
        """Let the new ledger pull up to ``required`` from the operating wallet.

        Runs on every live run, funding check or not. Approval sets the
        allowance outright, so it is only sent when the current allowance
        falls short.
        """
        if self.options.dry_run or required <= 0:
            return
        allowance = await self.retry(self.ledger.get_allowance, "allowance")
        if allowance >= required:
            self.logger.info(
                "Allowance already covers remaining transfers",
                allowance=format_amount(allowance),
                required=format_amount(required),
            )
            return

        async def send() -> str:
            request = TransactionRequest(
                kind=TxKind.APPROVE, recipients=[self.new_ledger], amount=required
            )
            pending = await self.sequencer.submit(request)
            await self.ledger.wait_for_receipt(pending.tx_hash, self.receipt_timeout)
            return pending.tx_hash

        tx_hash = await self.retry(send, "approve")
        self.logger.info(
            "Approved new ledger to disburse",
            amount=format_amount(required),
            previous_allowance=format_amount(allowance),
            tx_hash=tx_hash,
        )

    async def _run_rounds(self, report: MigrationReport) -> None:
        round_number = 0
        while not self.scheduler.is_exhausted():
            if self._stop_requested:
                report.interrupted = True
                break
            if self.options.max_rounds and round_number >= self.options.max_rounds:
                self.logger.warning("Round limit reached", max_rounds=self.options.max_rounds)
                break

            round_number += 1
            report.rounds = round_number
            self.resolver.begin_round()
            batch = self.scheduler.next_batch(self.options.round_size)
            try:
                outcome = await self.pool.run_round(batch, round_number)
            except BaseException:
                # Keep the batch visible in the final report
                for account in batch:
                    self.scheduler.reinsert(account)
                raise
            self._apply(batch, outcome)
            self.scheduler.resort()
            self._log_progress(outcome)
            if outcome.error is not None:
                raise outcome.error

        if not report.interrupted and self.scheduler.is_exhausted():
            self.scheduler.drain_below_threshold(self._transferred)

    def _apply(self, batch: list[Account], outcome: RoundOutcome) -> None:
        by_address = {a.address: a for a in batch}
        for result in outcome.outcomes:
            account = by_address[result.address]
            if result.status in (OutcomeStatus.TRANSFERRED, OutcomeStatus.COMPLETED):
                self._transferred[account.address] = (
                    self._transferred.get(account.address, 0) + result.amount
                )
            if result.status.is_terminal:
                self.scheduler.retire(
                    account,
                    result.status,
                    transferred=self._transferred.get(account.address, 0),
                    reason=result.reason,
                )
            else:
                self.scheduler.reinsert(account)

    def _log_progress(self, outcome: RoundOutcome) -> None:
        self.logger.info(
            "Round finished",
            round=outcome.round_number,
            attempted=len(outcome.outcomes),
            transferred=format_amount(outcome.transferred_amount),
            completed=outcome.count(OutcomeStatus.COMPLETED),
            resolved=outcome.count(OutcomeStatus.RESOLVED),
            transient=outcome.count(OutcomeStatus.TRANSIENT),
            failed=outcome.count(OutcomeStatus.FAILED),
            queued=len(self.scheduler),
            retired=len(self.scheduler.retired),
            remaining_upper_bound=format_amount(self.scheduler.total_owed_upper_bound()),
        )

    async def _finish(self, report: MigrationReport) -> None:
        accounts = list(self.scheduler.retired.values())
        for account in self.scheduler.queue:
            accounts.append(
                AccountReport(
                    address=account.address,
                    status=OutcomeStatus.TRANSIENT,
                    transferred=self._transferred.get(account.address, 0),
                    remaining=account.owed,
                    reason=account.last_error or "not finished",
                )
            )
        report.accounts = accounts
        report.total_transferred = sum(self._transferred.values())
        report.finished_at = datetime.now(UTC)

        try:
            await self.progress.snapshot()
        except Exception as e:
            self.logger.error("Failed to write progress snapshot", error=str(e))

        self.logger.info(
            "Migration finished",
            rounds=report.rounds,
            total_transferred=format_amount(report.total_transferred),
            accounts=len(report.accounts),
            failed=len(report.failed),
            interrupted=report.interrupted,
            fatal_error=report.fatal_error,
            exit_code=report.exit_code,
        )
