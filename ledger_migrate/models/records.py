"""Transaction, funding and reporting models."""

from datetime import UTC, datetime

from pydantic import Field

from ..constants import EXIT_FATAL, EXIT_INCOMPLETE, EXIT_INTERRUPTED, EXIT_OK
from .account import LedgerModel
from .enums import OutcomeStatus, TxKind


class TransactionRequest(LedgerModel):
    """Unsigned transaction for the operating wallet on the secondary chain."""

    kind: TxKind
    recipients: list[str] = Field(default_factory=list)
    amount: int = Field(default=0, ge=0)


class PendingTransaction(LedgerModel):
    """A broadcast transaction and the sequence slot it consumed."""

    tx_hash: str
    nonce: int
    request: TransactionRequest


class TransactionReceipt(LedgerModel):
    """Inclusion receipt for a transaction."""

    tx_hash: str
    success: bool = True
    block_number: int | None = None
    reason: str | None = None


class TransferRecord(LedgerModel):
    """Immutable audit entry for one completed transfer."""

    run_id: str
    account: str
    amount: int = Field(gt=0)
    tx_hash: str
    satisfied: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = {"frozen": True}


class FundingState(LedgerModel):
    """Required vs. observed balance of the operating wallet on the secondary ledger."""

    required: int
    available: int
    deficit: int = 0
    relayed: bool = False
    relay_tx: str | None = None

    @property
    def is_funded(self) -> bool:
        return self.available >= self.required


class BridgeRelay(LedgerModel):
    """A relay across the bridge, kept until its funds are observed."""

    run_id: str
    relay_tx: str
    amount: int = Field(gt=0)
    target_balance: int  # secondary balance that proves arrival
    settled: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class AccountOutcome(LedgerModel):
    """Result of one attempt for one account within a round."""

    address: str
    status: OutcomeStatus
    amount: int = 0
    owed: int | None = None
    tx_hash: str | None = None
    reason: str | None = None


class RoundOutcome(LedgerModel):
    """Aggregated outcomes of a single dispatch round."""

    round_number: int
    outcomes: list[AccountOutcome] = Field(default_factory=list)
    # First fatal error of the round, raised by the caller once outcomes are applied
    error: BaseException | None = Field(default=None, exclude=True)

    model_config = {"arbitrary_types_allowed": True}

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    @property
    def transferred_amount(self) -> int:
        return sum(
            outcome.amount
            for outcome in self.outcomes
            if outcome.status in (OutcomeStatus.TRANSFERRED, OutcomeStatus.COMPLETED)
        )


class AccountReport(LedgerModel):
    """Final state of one account."""

    address: str
    status: OutcomeStatus
    transferred: int = 0
    remaining: int | None = None
    reason: str | None = None


class MigrationReport(LedgerModel):
    """Final report of a migration run."""

    run_id: str
    legacy_ledger: str
    new_ledger: str
    dry_run: bool = False
    interrupted: bool = False
    fatal_error: str | None = None
    rounds: int = 0
    total_transferred: int = 0
    funding: FundingState | None = None
    accounts: list[AccountReport] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def failed(self) -> list[AccountReport]:
        return [a for a in self.accounts if a.status is OutcomeStatus.FAILED]

    @property
    def all_satisfied(self) -> bool:
        """No account failed or was left unfinished."""
        finished = (
            OutcomeStatus.COMPLETED,
            OutcomeStatus.BELOW_THRESHOLD,
            OutcomeStatus.DRY_RUN,
        )
        return all(a.status in finished for a in self.accounts)

    @property
    def exit_code(self) -> int:
        if self.fatal_error:
            return EXIT_FATAL
        if self.interrupted:
            return EXIT_INTERRUPTED
        return EXIT_OK if self.all_satisfied else EXIT_INCOMPLETE
