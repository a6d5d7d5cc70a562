"""Abstract base class for ledger clients."""

from abc import ABC, abstractmethod

import structlog

from ...models import Chain, LedgerSide, TransactionReceipt, TransactionRequest

logger = structlog.get_logger()


class LedgerClient(ABC):
    """Read/write access to the legacy and new ledgers on both chains.

    Every method may raise ``TransientLedgerError`` (safe to retry) or
    ``TransactionRejectedError`` (the chain refused the call). Implementations
    sign with a single operating wallet, exposed as ``signer_address``.
    """

    def __init__(self):
        self.logger = logger.bind(component=self.__class__.__name__.lower())

    @property
    @abstractmethod
    def signer_address(self) -> str:
        """Address of the operating wallet that signs every transaction."""

    @abstractmethod
    async def get_balance(self, identity: str, chain: Chain) -> int:
        """Token balance of ``identity`` on the given chain."""

    @abstractmethod
    async def get_withdrawn(self, account: str) -> int:
        """Amount ``account`` has already withdrawn from the legacy ledger."""

    @abstractmethod
    async def get_migrated(self, account: str) -> int:
        """Amount already credited to ``account`` on the new ledger (0 if not a member)."""

    @abstractmethod
    async def get_total_migrated(self) -> int:
        """Sum of everything credited to members on the new ledger."""

    @abstractmethod
    async def is_active_member(self, account: str) -> bool:
        """Whether the new ledger already recognizes ``account`` as an active member."""

    @abstractmethod
    async def get_allowance(self) -> int:
        """How much the new ledger may still pull from the operating wallet on the secondary chain."""

    @abstractmethod
    async def get_nonce(self, identity: str) -> int:
        """Next sequence number for ``identity`` on the secondary chain, pending included."""

    @abstractmethod
    async def broadcast(self, request: TransactionRequest, nonce: int) -> str:
        """Sign and broadcast ``request`` with the given nonce.

        Returns:
            Transaction hash of the broadcast transaction

        Raises:
            NonceTooLowError: If ``nonce`` was already used on chain
        """

    @abstractmethod
    async def find_transaction(self, nonce: int) -> str | None:
        """Hash of the operating wallet's transaction at ``nonce``, or None if the chain never saw one."""

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TransactionReceipt:
        """Wait until ``tx_hash`` is included.

        Raises:
            ReceiptTimeoutError: If no receipt appears within ``timeout`` seconds
            TransactionRejectedError: If the transaction reverted
        """

    @abstractmethod
    async def approve_and_relay(self, amount: int) -> TransactionReceipt:
        """Approve the bridge and relay ``amount`` from the primary to the secondary chain."""

    @abstractmethod
    async def get_code(self, address: str, chain: Chain) -> bytes:
        """Deployed bytecode at ``address`` (empty if nothing is deployed)."""

    @abstractmethod
    async def get_token(self, ledger: LedgerSide) -> str:
        """Address of the token the given ledger contract pays out."""

    @abstractmethod
    async def deploy_ledger(self, factory: str) -> str:
        """Deploy a new ledger through ``factory`` and return its address.

        Later calls on this client address the deployed ledger.
        """

    async def aclose(self) -> None:
        """Release network resources."""
