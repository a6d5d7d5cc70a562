"""Tests for the progress ledger."""

import json

import pytest

from ledger_migrate.core.exceptions import DataConsistencyError
from ledger_migrate.core.progress_ledger import ProgressLedger
from ledger_migrate.models import BridgeRelay, TransferRecord
from tests.fakes import addr


def record(n: int, amount: int, tx: int, satisfied: bool = False, run_id: str = "test-run"):
    return TransferRecord(
        run_id=run_id,
        account=addr(n),
        amount=amount,
        tx_hash=f"0x{tx:064x}",
        satisfied=satisfied,
    )


class TestProgressLedger:
    """Test ProgressLedger persistence."""

    @pytest.mark.asyncio
    async def test_records_persist_across_connections(self, progress, progress_db):
        await progress.record(record(1, 10**21, tx=1, satisfied=True))
        await progress.close()

        async with ProgressLedger(progress_db, run_id="later-run") as reopened:
            records = await reopened.records_for(addr(1))

        assert len(records) == 1
        # Amounts beyond 64 bits survive the round trip
        assert records[0].amount == 10**21
        assert records[0].satisfied

    @pytest.mark.asyncio
    async def test_second_satisfied_record_in_run_is_rejected(self, progress):
        await progress.record(record(1, 50, tx=1, satisfied=True))

        with pytest.raises(DataConsistencyError, match="already fully satisfied"):
            await progress.record(record(1, 50, tx=2, satisfied=True))

    @pytest.mark.asyncio
    async def test_partial_records_accumulate(self, progress):
        await progress.record(record(1, 30, tx=1))
        await progress.record(record(1, 20, tx=2, satisfied=True))

        assert await progress.total_transferred(addr(1)) == 50
        assert await progress.total_transferred(addr(1), run_id="other-run") == 0

    @pytest.mark.asyncio
    async def test_satisfied_again_in_new_run_is_allowed(self, progress, progress_db):
        await progress.record(record(1, 50, tx=1, satisfied=True))

        await progress.record(record(1, 5, tx=2, satisfied=True, run_id="second-run"))

        assert len(await progress.records_for(addr(1))) == 2

    @pytest.mark.asyncio
    async def test_snapshot_writes_json(self, progress):
        await progress.record(record(1, 30, tx=1))
        await progress.record(record(2, 40, tx=2, satisfied=True))

        records = await progress.snapshot()

        payload = json.loads(progress.snapshot_path.read_text())
        assert len(records) == 2
        assert [row["account"] for row in payload] == [addr(1), addr(2)]
        assert payload[1]["satisfied"] is True

    @pytest.mark.asyncio
    async def test_unopened_ledger_raises(self, progress_db):
        ledger = ProgressLedger(progress_db, run_id="x")

        with pytest.raises(RuntimeError):
            await ledger.records_for(addr(1))

    @pytest.mark.asyncio
    async def test_unsettled_relay_is_visible_to_later_runs(self, progress, progress_db):
        await progress.record_relay(
            BridgeRelay(run_id="test-run", relay_tx="0xrelay1", amount=10**21, target_balance=2 * 10**21)
        )
        await progress.close()

        async with ProgressLedger(progress_db, run_id="later-run") as reopened:
            pending = await reopened.pending_relay()
            await reopened.settle_relay(pending.relay_tx)
            settled = await reopened.pending_relay()

        assert pending.run_id == "test-run"
        assert pending.amount == 10**21
        assert pending.target_balance == 2 * 10**21
        assert settled is None
