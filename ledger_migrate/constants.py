"""Centralized constants for the ledger migration tool."""

# Token amounts are integers in the smallest unit
TOKEN_DECIMALS = 18

# Defaults for operator controls
DEFAULT_DIVISOR = 1
DEFAULT_PARALLELISM = 1
DEFAULT_DUST_THRESHOLD = 0
DEFAULT_SYNC_BATCH_SIZE = 100
DEFAULT_MEMBERS_PAGE_SIZE = 1000

# Logger names (each gets its own log file)
MIGRATION_LOGGER = "migration"
TRANSFER_LOGGER = "transfers"

# Process exit codes
EXIT_OK = 0
EXIT_INCOMPLETE = 1
EXIT_FATAL = 2
EXIT_INTERRUPTED = 130
