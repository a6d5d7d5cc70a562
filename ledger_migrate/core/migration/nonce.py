"""Sequence-number assignment for the operating wallet."""

import asyncio

import structlog

from ...models import PendingTransaction, TransactionRequest
from ..exceptions import BroadcastUnconfirmedError, NonceTooLowError, TransientLedgerError
from ..ledger import LedgerClient

logger = structlog.get_logger()


class NonceSequencer:
    """Serializes transaction submission from the signing wallet.

    The counter is seeded once from the chain and only ever moves forward.
    A slot is taken and the counter advanced before the broadcast, and the
    broadcast itself happens under the lock, so concurrent submitters
    broadcast in slot order. A failed broadcast still consumes its slot.
    """

    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger
        self._lock = asyncio.Lock()
        self._next_nonce: int | None = None
        self.logger = logger.bind(component="nonce_sequencer", signer=ledger.signer_address)

    @property
    def next_nonce(self) -> int | None:
        return self._next_nonce

    async def submit(self, request: TransactionRequest) -> PendingTransaction:
        """Assign the next slot to ``request`` and broadcast it.

        Raises:
            NonceTooLowError: The chain had already used the slot; the counter
                is moved past the chain's nonce before this propagates
            BroadcastUnconfirmedError: Any other transient broadcast failure,
                carrying the consumed slot so callers can look it up later
        """
        async with self._lock:
            if self._next_nonce is None:
                self._next_nonce = await self.ledger.get_nonce(self.ledger.signer_address)
                self.logger.info("Seeded nonce counter", nonce=self._next_nonce)

            nonce = self._next_nonce
            self._next_nonce += 1

            try:
                # A signed transaction is always handed to the network, even on cancellation
                tx_hash = await asyncio.shield(self.ledger.broadcast(request, nonce))
            except NonceTooLowError:
                await self._resync()
                raise
            except TransientLedgerError as e:
                self.logger.warning(
                    "Broadcast outcome unknown, slot stays consumed", nonce=nonce, error=str(e)
                )
                raise BroadcastUnconfirmedError(str(e), nonce=nonce) from e

        self.logger.debug("Submitted transaction", kind=request.kind.value, nonce=nonce, tx_hash=tx_hash)
        return PendingTransaction(tx_hash=tx_hash, nonce=nonce, request=request)

    async def _resync(self) -> None:
        # Called with the lock held
        chain_nonce = await self.ledger.get_nonce(self.ledger.signer_address)
        if chain_nonce > self._next_nonce:
            self.logger.warning(
                "Nonce counter behind chain, skipping forward",
                counter=self._next_nonce,
                chain_nonce=chain_nonce,
            )
            self._next_nonce = chain_nonce
