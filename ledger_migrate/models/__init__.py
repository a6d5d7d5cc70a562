"""Data models for the ledger migration tool."""

from .account import Account, LedgerModel, MemberRecord  # noqa: F401
from .enums import Chain, LedgerSide, OutcomeStatus, TxKind  # noqa: F401
from .records import (  # noqa: F401
    AccountOutcome,
    AccountReport,
    BridgeRelay,
    FundingState,
    MigrationReport,
    PendingTransaction,
    RoundOutcome,
    TransactionReceipt,
    TransactionRequest,
    TransferRecord,
)

__all__ = [
    # Account models
    "Account",
    "LedgerModel",
    "MemberRecord",
    # Enums
    "Chain",
    "LedgerSide",
    "OutcomeStatus",
    "TxKind",
    # Transaction and report models
    "AccountOutcome",
    "AccountReport",
    "BridgeRelay",
    "FundingState",
    "MigrationReport",
    "PendingTransaction",
    "RoundOutcome",
    "TransactionReceipt",
    "TransactionRequest",
    "TransferRecord",
]
