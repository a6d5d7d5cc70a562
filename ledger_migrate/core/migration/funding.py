"""Funding of the operating wallet on the secondary ledger."""

import structlog

from ...models import BridgeRelay, Chain, FundingState
from ...utils import format_amount, wait_until
from ..exceptions import BridgeTimeoutError, InsufficientSourceFundsError, TransientLedgerError
from ..ledger import LedgerClient, TransientRetry
from ..progress_ledger import ProgressLedger
from ..settings import BRIDGE_POLL_INTERVAL, BRIDGE_TIMEOUT

logger = structlog.get_logger()


class FundingCoordinator:
    """Makes sure the operating wallet can cover every disbursement.

    A shortfall on the secondary chain is relayed across the bridge from
    the same wallet on the primary chain. Arrival is only ever observed,
    never assumed. With a progress ledger the relay is persisted before
    waiting, and a later call waits for an unobserved relay instead of
    starting another one. A timeout is terminal: the funds may be in the
    bridge and need an operator.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        poll_interval: float = BRIDGE_POLL_INTERVAL,
        timeout: float = BRIDGE_TIMEOUT,
        dry_run: bool = False,
        progress: ProgressLedger | None = None,
        retry: TransientRetry | None = None,
    ):
        self.ledger = ledger
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.dry_run = dry_run
        self.progress = progress
        self.retry = retry or TransientRetry()
        self.logger = logger.bind(component="funding_coordinator")

    async def ensure_funded(self, total_required: int) -> FundingState:
        """Ensure the secondary balance is at least ``total_required``.

        Raises:
            InsufficientSourceFundsError: If the primary balance can't cover the deficit
            BridgeTimeoutError: If relayed funds were not observed in time
        """
        balance = await self._balance(Chain.SECONDARY)
        state = FundingState(required=total_required, available=balance)

        pending = await self.progress.pending_relay() if self.progress else None
        if pending is not None and balance < total_required and not self.dry_run:
            self.logger.warning(
                "Earlier relay not observed yet, waiting for it instead of relaying again",
                relay_tx=pending.relay_tx,
                amount=format_amount(pending.amount),
                relayed_by=pending.run_id,
            )
            state.relay_tx = pending.relay_tx
            await self._await_arrival(state, pending.target_balance, pending.relay_tx, pending.amount)
            balance = state.available
        if pending is not None and (balance >= total_required or balance >= pending.target_balance):
            await self.progress.settle_relay(pending.relay_tx)

        if balance >= total_required:
            self.logger.info(
                "Operating wallet already funded",
                required=format_amount(total_required),
                available=format_amount(balance),
            )
            return state

        deficit = total_required - balance
        state.deficit = deficit
        source_balance = await self._balance(Chain.PRIMARY)
        if source_balance < deficit:
            raise InsufficientSourceFundsError(
                f"Insufficient funds at source: need {format_amount(deficit)} on the primary chain, "
                f"wallet {self.ledger.signer_address} holds {format_amount(source_balance)}"
            )

        if self.dry_run:
            self.logger.info(
                "Dry run, would relay across bridge",
                deficit=format_amount(deficit),
                source_balance=format_amount(source_balance),
            )
            return state

        self.logger.info(
            "Relaying deficit across bridge",
            deficit=format_amount(deficit),
            secondary_balance=format_amount(balance),
        )
        receipt = await self.ledger.approve_and_relay(deficit)
        state.relayed = True
        state.relay_tx = receipt.tx_hash

        target = balance + deficit
        if self.progress is not None:
            await self.progress.record_relay(
                BridgeRelay(
                    run_id=self.progress.run_id,
                    relay_tx=receipt.tx_hash,
                    amount=deficit,
                    target_balance=target,
                )
            )

        await self._await_arrival(state, target, receipt.tx_hash, deficit)
        if self.progress is not None:
            await self.progress.settle_relay(receipt.tx_hash)
        return state

    async def _balance(self, chain: Chain) -> int:
        return await self.retry(
            lambda: self.ledger.get_balance(self.ledger.signer_address, chain),
            f"{chain.value} balance",
        )

    async def _await_arrival(
        self, state: FundingState, target: int, relay_tx: str, amount: int
    ) -> None:
        async def arrived() -> bool:
            try:
                state.available = await self.ledger.get_balance(
                    self.ledger.signer_address, Chain.SECONDARY
                )
            except TransientLedgerError as e:
                # Keep polling until the deadline; the relay must not be repeated
                self.logger.warning("Balance read failed while waiting for bridge", error=str(e))
                return False
            return state.available >= target

        if not await wait_until(arrived, self.timeout, self.poll_interval):
            raise BridgeTimeoutError(
                f"Relayed {format_amount(amount)} did not arrive on the secondary chain within "
                f"{self.timeout} seconds (relay tx {relay_tx}, balance "
                f"{format_amount(state.available)}); check the bridge before retrying"
            )

        self.logger.info(
            "Bridge funds arrived",
            available=format_amount(state.available),
            relay_tx=relay_tx,
        )
