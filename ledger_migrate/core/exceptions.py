"""Core exceptions for ledger migration operations."""


class LedgerMigrationError(Exception):
    """Base exception for ledger migration operations."""


class ConfigurationError(LedgerMigrationError):
    """Configuration validation or loading failed."""


class TransientLedgerError(LedgerMigrationError):
    """Ledger call failed in a way that is safe to retry next round."""


class NonceTooLowError(TransientLedgerError):
    """Chain rejected the assigned sequence number as already used."""


class ReceiptTimeoutError(TransientLedgerError):
    """Transaction was broadcast but no receipt was observed in time."""

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class BroadcastUnconfirmedError(TransientLedgerError):
    """Broadcast failed after the slot was assigned; the transaction may still have landed.

    ``nonce`` is the consumed slot. Whoever retries must first find out
    whether a transaction landed at that slot.
    """

    def __init__(self, message: str, nonce: int):
        super().__init__(message)
        self.nonce = nonce


class TransactionRejectedError(LedgerMigrationError):
    """Contract-level rejection (revert) of a single transaction."""

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class DataConsistencyError(LedgerMigrationError):
    """Ledger or membership data contradict each other. Aborts the run."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.context = context

    def __str__(self) -> str:
        base = super().__str__()
        if not self.context:
            return base
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{base} ({details})"


class FundingError(LedgerMigrationError):
    """Operating wallet could not be funded before disbursement."""


class InsufficientSourceFundsError(FundingError):
    """Primary ledger balance does not cover the bridge deficit."""


class BridgeTimeoutError(FundingError):
    """Relayed funds did not arrive on the secondary ledger in time."""


class MembershipSourceError(LedgerMigrationError):
    """Membership data source could not be read."""
