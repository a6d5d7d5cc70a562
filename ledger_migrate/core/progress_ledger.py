"""SQLite record of completed transfers and bridge relays."""

import asyncio
import json
from datetime import datetime
from pathlib import Path

import aiosqlite
import structlog

from ..models import BridgeRelay, TransferRecord
from ..utils import normalize_address
from .exceptions import DataConsistencyError

logger = structlog.get_logger()


class ProgressLedger:
    """Durable audit trail of transfers, one row per on-chain transfer.

    Transfer rows are only ever inserted. Each ``record`` call commits
    before returning, so the database reflects every transfer that was
    reported as done. Bridge relays are kept across runs until their funds
    are observed, so a re-run waits for them instead of relaying again.
    ``snapshot`` also exports all transfer rows to a JSON file next to the
    database for operators.
    """

    def __init__(self, db_path: Path | str, run_id: str):
        self.db_path = Path(db_path)
        self.snapshot_path = self.db_path.with_suffix(".snapshot.json")
        self.run_id = run_id
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component="progress_ledger", run_id=run_id)

    async def open(self) -> None:
        """Open the database and create the schema if needed."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS transfer_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                account TEXT NOT NULL,
                amount TEXT NOT NULL,  -- decimal string, exceeds SQLite INTEGER range
                tx_hash TEXT NOT NULL UNIQUE,
                satisfied INTEGER NOT NULL DEFAULT 0,
                timestamp TEXT NOT NULL  -- ISO timestamp
            )
        """)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS bridge_relays (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                relay_tx TEXT NOT NULL UNIQUE,
                amount TEXT NOT NULL,
                target_balance TEXT NOT NULL,
                settled INTEGER NOT NULL DEFAULT 0,
                timestamp TEXT NOT NULL
            )
        """)
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_records_run_account ON transfer_records(run_id, account)"
        )
        await self._db.commit()
        self.logger.info("Progress ledger opened", db_path=str(self.db_path))

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "ProgressLedger":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("ProgressLedger is not open")
        return self._db

    async def record(self, record: TransferRecord) -> None:
        """Append a transfer record and commit it.

        Raises:
            DataConsistencyError: If the account already has a record marking
                its owed amount fully satisfied in this run
        """
        async with self._lock:
            if record.satisfied:
                async with self.db.execute(
                    "SELECT tx_hash FROM transfer_records"
                    " WHERE run_id = ? AND account = ? AND satisfied = 1",
                    (record.run_id, record.account),
                ) as cursor:
                    existing = await cursor.fetchone()
                if existing:
                    raise DataConsistencyError(
                        "Account already fully satisfied in this run",
                        address=record.account,
                        previous_tx=existing[0],
                        new_tx=record.tx_hash,
                    )

            await self.db.execute(
                "INSERT INTO transfer_records (run_id, account, amount, tx_hash, satisfied, timestamp)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.run_id,
                    record.account,
                    str(record.amount),
                    record.tx_hash,
                    int(record.satisfied),
                    record.timestamp.isoformat(),
                ),
            )
            await self.db.commit()

    async def record_relay(self, relay: BridgeRelay) -> None:
        """Persist a bridge relay before waiting for its funds."""
        async with self._lock:
            await self.db.execute(
                "INSERT INTO bridge_relays (run_id, relay_tx, amount, target_balance, settled, timestamp)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (
                    relay.run_id,
                    relay.relay_tx,
                    str(relay.amount),
                    str(relay.target_balance),
                    int(relay.settled),
                    relay.timestamp.isoformat(),
                ),
            )
            await self.db.commit()

    async def pending_relay(self) -> BridgeRelay | None:
        """Most recent relay, from any run, whose funds were never observed."""
        async with self.db.execute(
            "SELECT run_id, relay_tx, amount, target_balance, settled, timestamp"
            " FROM bridge_relays WHERE settled = 0 ORDER BY id DESC LIMIT 1"
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return BridgeRelay(
            run_id=row[0],
            relay_tx=row[1],
            amount=int(row[2]),
            target_balance=int(row[3]),
            settled=bool(row[4]),
            timestamp=datetime.fromisoformat(row[5]),
        )

    async def settle_relay(self, relay_tx: str) -> None:
        async with self._lock:
            await self.db.execute(
                "UPDATE bridge_relays SET settled = 1 WHERE relay_tx = ?", (relay_tx,)
            )
            await self.db.commit()

    async def records_for(self, address: str, run_id: str | None = None) -> list[TransferRecord]:
        """Records for one account, optionally restricted to one run."""
        query = "SELECT run_id, account, amount, tx_hash, satisfied, timestamp FROM transfer_records WHERE account = ?"
        params: tuple = (normalize_address(address),)
        if run_id is not None:
            query += " AND run_id = ?"
            params += (run_id,)
        return await self._fetch(query + " ORDER BY id", params)

    async def total_transferred(self, address: str, run_id: str | None = None) -> int:
        return sum(r.amount for r in await self.records_for(address, run_id))

    async def snapshot(self) -> list[TransferRecord]:
        """Return every record and export them to the JSON snapshot file."""
        async with self._lock:
            records = await self._fetch(
                "SELECT run_id, account, amount, tx_hash, satisfied, timestamp"
                " FROM transfer_records ORDER BY id",
                (),
            )
            payload = [r.model_dump(mode="json") for r in records]
            await asyncio.to_thread(
                self.snapshot_path.write_text, json.dumps(payload, indent=2), "utf-8"
            )
        self.logger.info(
            "Progress snapshot written", path=str(self.snapshot_path), records=len(records)
        )
        return records

    async def _fetch(self, query: str, params: tuple) -> list[TransferRecord]:
        async with self.db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [
            TransferRecord(
                run_id=row[0],
                account=row[1],
                amount=int(row[2]),
                tx_hash=row[3],
                satisfied=bool(row[4]),
                timestamp=datetime.fromisoformat(row[5]),
            )
            for row in rows
        ]
