"""Shared pytest fixtures for ledger migration tests."""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from ledger_migrate.core.migration import AmountResolver, NonceSequencer
from ledger_migrate.core.progress_ledger import ProgressLedger
from tests.fakes import FakeLedger


@pytest.fixture
def ledger() -> FakeLedger:
    """Fake ledger whose operating wallet holds plenty of funds on both chains."""
    return FakeLedger(secondary_balance=10**24, primary_balance=10**24)


@pytest.fixture
def resolver(ledger: FakeLedger) -> AmountResolver:
    return AmountResolver(ledger)


@pytest.fixture
def sequencer(ledger: FakeLedger) -> NonceSequencer:
    return NonceSequencer(ledger)


@pytest.fixture
def progress_db(tmp_path: Path) -> Path:
    return tmp_path / "progress.db"


@pytest.fixture
async def progress(progress_db: Path) -> AsyncGenerator[ProgressLedger, None]:
    """Open progress ledger for a single run."""
    async with ProgressLedger(progress_db, run_id="test-run") as ledger:
        yield ledger
