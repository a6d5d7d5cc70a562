"""Tests for funding the operating wallet."""

import pytest

from ledger_migrate.core.exceptions import (
    BridgeTimeoutError,
    InsufficientSourceFundsError,
    TransientLedgerError,
)
from ledger_migrate.core.ledger import TransientRetry
from ledger_migrate.core.migration import FundingCoordinator
from ledger_migrate.core.progress_ledger import ProgressLedger
from ledger_migrate.models import Chain
from tests.fakes import SIGNER, FakeLedger


def coordinator(ledger: FakeLedger, **kwargs) -> FundingCoordinator:
    kwargs.setdefault("poll_interval", 0.001)
    kwargs.setdefault("timeout", 1.0)
    kwargs.setdefault("retry", TransientRetry(attempts=3, delay=0))
    return FundingCoordinator(ledger, **kwargs)


class TestFundingCoordinator:
    """Test FundingCoordinator."""

    @pytest.mark.asyncio
    async def test_already_funded_does_not_relay(self):
        ledger = FakeLedger(secondary_balance=100, primary_balance=1000)

        state = await coordinator(ledger).ensure_funded(100)

        assert state.is_funded
        assert not state.relayed
        assert ledger.relay_calls == []

    @pytest.mark.asyncio
    async def test_insufficient_source_fails_before_relay(self):
        ledger = FakeLedger(secondary_balance=70, primary_balance=20)

        with pytest.raises(InsufficientSourceFundsError, match="Insufficient funds at source"):
            await coordinator(ledger).ensure_funded(100)

        assert ledger.relay_calls == []

    @pytest.mark.asyncio
    async def test_relays_deficit_and_waits_for_arrival(self):
        ledger = FakeLedger(secondary_balance=70, primary_balance=50)
        ledger.bridge_delay_reads = 3

        state = await coordinator(ledger).ensure_funded(100)

        assert ledger.relay_calls == [30]
        assert state.relayed
        assert state.deficit == 30
        assert state.available == 100
        assert ledger.balances[(Chain.PRIMARY, SIGNER)] == 20

    @pytest.mark.asyncio
    async def test_bridge_timeout_is_terminal(self):
        ledger = FakeLedger(secondary_balance=0, primary_balance=50)
        ledger.bridge_delivers = False

        with pytest.raises(BridgeTimeoutError):
            await coordinator(ledger, timeout=0.02).ensure_funded(40)

        assert ledger.relay_calls == [40]

    @pytest.mark.asyncio
    async def test_dry_run_checks_source_without_relaying(self):
        ledger = FakeLedger(secondary_balance=0, primary_balance=50)

        state = await coordinator(ledger, dry_run=True).ensure_funded(40)

        assert state.deficit == 40
        assert not state.relayed
        assert ledger.relay_calls == []

    @pytest.mark.asyncio
    async def test_zero_requirement_is_funded(self):
        ledger = FakeLedger()

        state = await coordinator(ledger).ensure_funded(0)

        assert state.is_funded
        assert ledger.calls["get_balance"] == 1

    @pytest.mark.asyncio
    async def test_failed_balance_reads_while_waiting_do_not_relay_again(self):
        ledger = FakeLedger(secondary_balance=70, primary_balance=50)
        ledger.bridge_delay_reads = 2
        relay = ledger.approve_and_relay

        async def relay_then_flaky_reads(amount):
            receipt = await relay(amount)
            ledger.fail("get_balance", *(TransientLedgerError("rpc timeout") for _ in range(2)))
            return receipt

        ledger.approve_and_relay = relay_then_flaky_reads

        state = await coordinator(ledger).ensure_funded(100)

        assert ledger.relay_calls == [30]
        assert state.available == 100

    @pytest.mark.asyncio
    async def test_initial_balance_read_is_retried(self):
        ledger = FakeLedger(secondary_balance=100)
        ledger.fail("get_balance", TransientLedgerError("rpc timeout"))

        state = await coordinator(ledger).ensure_funded(100)

        assert state.is_funded
        assert ledger.calls["get_balance"] == 2

    @pytest.mark.asyncio
    async def test_relay_is_persisted_until_funds_arrive(self, progress):
        ledger = FakeLedger(secondary_balance=0, primary_balance=50)

        await coordinator(ledger, progress=progress).ensure_funded(40)

        assert ledger.relay_calls == [40]
        assert await progress.pending_relay() is None

    @pytest.mark.asyncio
    async def test_rerun_waits_for_earlier_relay(self, progress, progress_db):
        ledger = FakeLedger(secondary_balance=0, primary_balance=100)
        ledger.bridge_delivers = False

        with pytest.raises(BridgeTimeoutError):
            await coordinator(ledger, progress=progress, timeout=0.02).ensure_funded(40)

        pending = await progress.pending_relay()
        assert pending.amount == 40
        assert pending.target_balance == 40

        ledger.bridge_delivers = True
        ledger.bridge_delay_reads = 3
        async with ProgressLedger(progress_db, run_id="second-run") as second:
            state = await coordinator(ledger, progress=second).ensure_funded(40)
            assert await second.pending_relay() is None

        assert ledger.relay_calls == [40]
        assert not state.relayed
        assert state.available == 40

    @pytest.mark.asyncio
    async def test_rerun_with_relay_still_missing_times_out_again(self, progress):
        ledger = FakeLedger(secondary_balance=0, primary_balance=100)
        ledger.bridge_delivers = False

        for _ in range(2):
            with pytest.raises(BridgeTimeoutError):
                await coordinator(ledger, progress=progress, timeout=0.02).ensure_funded(40)

        assert ledger.relay_calls == [40]
