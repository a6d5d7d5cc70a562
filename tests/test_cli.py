"""Tests for the command-line entry point."""

import asyncio
import json
from unittest.mock import MagicMock, patch

import pytest

from ledger_migrate.cli import (
    apply_cli_overrides,
    ensure_new_ledger,
    get_data_dir,
    main,
    parse_args,
    run_migration,
)
from ledger_migrate.constants import EXIT_FATAL
from ledger_migrate.core.config_loader import LedgerEndpoints, MigrationConfig, MigrationOptions
from ledger_migrate.core.exceptions import ConfigurationError
from ledger_migrate.models import MigrationReport
from tests.fakes import LEGACY, NEW, SIGNER, FakeLedger, addr, member


def test_parse_args_defaults():
    args = parse_args([])

    assert args.config is None
    assert args.whitelist == []
    assert not args.dry_run
    assert args.divisor is None


def test_cli_flags_override_config():
    config = MigrationConfig(options=MigrationOptions(divisor=10, parallelism=2))
    args = parse_args(
        [
            "--old", LEGACY,
            "--new", NEW.upper().replace("0X", "0x"),
            "--divisor", "1000",
            "--dust-threshold", "5",
            "--whitelist", f"{addr(1)},{addr(2)}",
            "--whitelist", addr(3),
            "--dry-run",
            "--log-level", "DEBUG",
        ]
    )

    apply_cli_overrides(config, args)

    assert config.ledgers.legacy_ledger == LEGACY
    assert config.ledgers.new_ledger == NEW
    assert config.options.divisor == 1000
    assert config.options.parallelism == 2
    assert config.options.dust_threshold == 5
    assert config.options.whitelist == [addr(1), addr(2), addr(3)]
    assert config.options.dry_run
    assert config.log_level == "DEBUG"


def test_whitelist_file(tmp_path):
    path = tmp_path / "whitelist.txt"
    path.write_text(f"# accounts to retry\n{addr(4)}\n\n{addr(5)}\n")
    config = MigrationConfig()

    apply_cli_overrides(config, parse_args(["--whitelist-file", str(path)]))

    assert config.options.whitelist == [addr(4), addr(5)]


def test_invalid_cli_value_is_rejected():
    config = MigrationConfig()

    with pytest.raises(ValueError):
        apply_cli_overrides(config, parse_args(["--parallelism", "0"]))


def test_data_dir_override(monkeypatch, tmp_path):
    monkeypatch.setenv("MIGRATION_DATA_DIR", str(tmp_path))

    assert get_data_dir() == tmp_path


def test_main_exits_fatal_on_missing_settings(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    for var in ("MIGRATION_LEGACY_LEDGER", "MIGRATION_NEW_LEDGER", "MIGRATION_GATEWAY_URL"):
        monkeypatch.delenv(var, raising=False)

    logger = MagicMock()
    with (
        patch("ledger_migrate.core.config_loader.load_dotenv"),
        patch("ledger_migrate.cli._setup_logging_system", return_value=logger),
        pytest.raises(SystemExit) as exc_info,
    ):
        main(["--validate-config"])

    assert exc_info.value.code == EXIT_FATAL
    logger.error.assert_called_once()


@pytest.mark.asyncio
async def test_run_migration_writes_report(tmp_path):
    config = MigrationConfig(
        ledgers=LedgerEndpoints(
            legacy_ledger=LEGACY,
            new_ledger=NEW,
            signer_address=SIGNER,
            gateway_url="http://gateway.test",
            members_file=str(tmp_path / "members.json"),
        ),
        options=MigrationOptions(
            progress_db=str(tmp_path / "progress.db"),
            report_path=str(tmp_path / "report.json"),
        ),
    )

    async def fake_run(self):
        self.report = MigrationReport(
            run_id=self.progress.run_id, legacy_ledger=LEGACY, new_ledger=NEW, rounds=3
        )
        return self.report

    with patch("ledger_migrate.cli.MigrationDriver.run", fake_run):
        report = await run_migration(config)

    written = json.loads((tmp_path / "report.json").read_text())
    assert written["run_id"] == report.run_id
    assert written["rounds"] == 3


def live_config(tmp_path, **ledgers) -> MigrationConfig:
    ledgers.setdefault("new_ledger", NEW)
    return MigrationConfig(
        ledgers=LedgerEndpoints(
            legacy_ledger=LEGACY,
            signer_address=SIGNER,
            gateway_url="http://gateway.test",
            members_file=str(tmp_path / "members.json"),
            **ledgers,
        ),
        options=MigrationOptions(
            progress_db=str(tmp_path / "progress.db"),
            report_path=str(tmp_path / "report.json"),
        ),
    )


def test_factory_address_flag():
    config = MigrationConfig()

    apply_cli_overrides(config, parse_args(["--factory-address", addr(9)[2:].upper()]))

    assert config.ledgers.factory_address == addr(9)


@pytest.mark.asyncio
async def test_new_ledger_is_deployed_through_factory(tmp_path):
    config = live_config(tmp_path, new_ledger=None, factory_address=addr(9))
    ledger = FakeLedger()

    address = await ensure_new_ledger(config, ledger)

    assert ledger.deployed == [addr(9)]
    assert config.ledgers.new_ledger == address
    assert address in ledger.contracts


@pytest.mark.asyncio
async def test_given_new_ledger_is_not_redeployed(tmp_path):
    config = live_config(tmp_path, factory_address=addr(9))
    ledger = FakeLedger()

    assert await ensure_new_ledger(config, ledger) == NEW
    assert ledger.deployed == []


@pytest.mark.asyncio
async def test_deploy_requires_factory(tmp_path):
    config = live_config(tmp_path, new_ledger=None)

    with pytest.raises(ConfigurationError, match="no factory"):
        await ensure_new_ledger(config, FakeLedger())


@pytest.mark.asyncio
async def test_report_written_when_run_is_cancelled(tmp_path):
    (tmp_path / "members.json").write_text(json.dumps([member(1, 100), member(2, 50)]))
    config = live_config(tmp_path)
    ledger = FakeLedger(secondary_balance=10**24, primary_balance=10**24)
    ledger.latency = 0.01

    with patch("ledger_migrate.cli.GatewayLedgerClient", return_value=ledger):
        task = asyncio.create_task(run_migration(config))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    written = json.loads((tmp_path / "report.json").read_text())
    assert written["interrupted"] is True
    assert len(written["accounts"]) == 2
