"""Enum definitions for the ledger migration models."""

from enum import Enum


class Chain(Enum):
    """Network a balance or contract lives on."""

    PRIMARY = "primary"
    SECONDARY = "secondary"


class LedgerSide(Enum):
    """Which of the two ledger contracts a call targets."""

    LEGACY = "legacy"
    CURRENT = "current"


class TxKind(Enum):
    """Kinds of transactions the operating wallet signs on the secondary chain."""

    TRANSFER = "transfer"
    ADD_MEMBERS = "add_members"
    APPROVE = "approve"


class OutcomeStatus(Enum):
    """Result of one transfer attempt for one account."""

    RESOLVED = "resolved"
    TRANSFERRED = "transferred"
    COMPLETED = "completed"
    BELOW_THRESHOLD = "below_threshold"
    TRANSIENT = "transient"
    FAILED = "failed"
    DRY_RUN = "dry_run"

    @property
    def is_terminal(self) -> bool:
        """Account leaves the work queue after this outcome."""
        return self in (
            OutcomeStatus.COMPLETED,
            OutcomeStatus.BELOW_THRESHOLD,
            OutcomeStatus.FAILED,
            OutcomeStatus.DRY_RUN,
        )
