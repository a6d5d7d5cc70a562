"""Migration engine: amount resolution, funding, scheduling and dispatch."""

from .amounts import AmountResolver  # noqa: F401
from .driver import MigrationDriver, new_run_id  # noqa: F401
from .funding import FundingCoordinator  # noqa: F401
from .membership_sync import MembershipSynchronizer  # noqa: F401
from .nonce import NonceSequencer  # noqa: F401
from .scheduler import MigrationScheduler  # noqa: F401
from .workers import TransferWorkerPool  # noqa: F401

__all__ = [
    "AmountResolver",
    "FundingCoordinator",
    "MembershipSynchronizer",
    "MigrationDriver",
    "MigrationScheduler",
    "NonceSequencer",
    "TransferWorkerPool",
    "new_run_id",
]
