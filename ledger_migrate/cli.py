"""Command-line entry point for the ledger migration tool."""

import argparse
import asyncio
import os
import signal
import sys
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .constants import EXIT_FATAL, EXIT_INTERRUPTED
from .core.config_loader import MigrationConfig, load_config
from .core.exceptions import ConfigurationError, LedgerMigrationError
from .core.ledger import GatewayLedgerClient, LedgerClient
from .core.logging_config import get_migration_logger
from .core.membership import FileMembershipSource, HttpMembershipSource, MembershipSource
from .core.migration import MigrationDriver, new_run_id
from .core.progress_ledger import ProgressLedger
from .core.settings import timeout_settings
from .models import MigrationReport
from .utils import normalize_address


def get_data_dir() -> Path:
    """Get data directory for logs, progress databases and reports.

    Priority order:
    1. MIGRATION_DATA_DIR (explicit override)
    2. XDG_DATA_HOME (Linux/Unix standard)
    3. User home fallback (~/.local/share/ledger-migrate)
    """
    if explicit := os.getenv("MIGRATION_DATA_DIR"):
        return Path(explicit)
    if xdg_path := os.getenv("XDG_DATA_HOME"):
        return Path(xdg_path) / "ledger-migrate"
    return Path.home() / ".local" / "share" / "ledger-migrate"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Migrate member balances from a legacy ledger to its replacement"
    )
    parser.add_argument("--config", default=None, help="Configuration file path (YAML)")
    parser.add_argument("--old", help="Address of the legacy ledger to migrate from")
    parser.add_argument("--new", help="Address of the new ledger to migrate to")
    parser.add_argument(
        "--factory-address", help="Factory that deploys the new ledger when --new is not given"
    )
    parser.add_argument("--signer", help="Address of the operating wallet held by the gateway")
    parser.add_argument("--gateway-url", help="Signing gateway URL")
    parser.add_argument("--membership-url", help="Operator API URL for the member listing")
    parser.add_argument("--members-file", help="JSON/YAML membership snapshot used instead of the API")
    parser.add_argument(
        "--divisor", type=int, help="Divide every member's earnings by this (test runs)"
    )
    parser.add_argument("--parallelism", type=int, help="Concurrent transfer attempts")
    parser.add_argument("--batch-size", type=int, help="Accounts per round (defaults to parallelism)")
    parser.add_argument(
        "--dust-threshold", type=int, help="Smallest owed amount worth transferring (token units)"
    )
    parser.add_argument("--max-rounds", type=int, help="Stop after this many rounds")
    parser.add_argument(
        "--whitelist",
        action="append",
        default=[],
        help="Only migrate this address (repeatable, comma-separated allowed)",
    )
    parser.add_argument("--whitelist-file", help="File with one address per line to migrate")
    parser.add_argument(
        "--skip-funding-check", action="store_true", help="Don't check or bridge funds (re-runs)"
    )
    parser.add_argument(
        "--skip-member-sync", action="store_true", help="Don't add missing members to the new ledger"
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Resolve amounts and log transfers without sending"
    )
    parser.add_argument("--progress-db", help="Progress database path")
    parser.add_argument("--report", help="Where to write the JSON report")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration and exit"
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = load_config(args.config)
        apply_cli_overrides(config, args)
    except (ConfigurationError, ValueError, OSError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_FATAL)

    logger = _setup_logging_system(config, _setup_log_directory())

    try:
        config.validate_for_run()
    except ConfigurationError as e:
        logger.error("Invalid configuration", error=str(e))
        sys.exit(EXIT_FATAL)

    if args.validate_config:
        logger.info("Configuration is valid", config_file=config.config_file)
        return

    try:
        report = asyncio.run(run_migration(config))
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.warning("Migration cancelled")
        sys.exit(EXIT_INTERRUPTED)
    except LedgerMigrationError as e:
        logger.error("Migration could not start", error_type=type(e).__name__, error=str(e))
        sys.exit(EXIT_FATAL)

    sys.exit(report.exit_code)


def apply_cli_overrides(config: MigrationConfig, args: argparse.Namespace) -> None:
    """Override configuration with explicitly given command-line flags."""
    ledger_flags = {
        "legacy_ledger": args.old,
        "new_ledger": args.new,
        "factory_address": args.factory_address,
        "signer_address": args.signer,
        "gateway_url": args.gateway_url,
        "membership_url": args.membership_url,
        "members_file": args.members_file,
    }
    for key, value in ledger_flags.items():
        if value:
            if key in ("legacy_ledger", "new_ledger", "factory_address", "signer_address"):
                value = normalize_address(value)
            setattr(config.ledgers, key, value)

    options = config.options
    option_flags: dict[str, Any] = {
        "divisor": args.divisor,
        "parallelism": args.parallelism,
        "batch_size": args.batch_size,
        "dust_threshold": args.dust_threshold,
        "max_rounds": args.max_rounds,
        "progress_db": args.progress_db,
        "report_path": args.report,
    }
    updates = {key: value for key, value in option_flags.items() if value is not None}
    for flag in ("skip_funding_check", "skip_member_sync", "dry_run"):
        if getattr(args, flag):
            updates[flag] = True

    whitelist = [entry for value in args.whitelist for entry in value.split(",") if entry.strip()]
    if args.whitelist_file:
        lines = Path(args.whitelist_file).read_text(encoding="utf-8").splitlines()
        whitelist.extend(line.strip() for line in lines if line.strip() and not line.startswith("#"))
    if whitelist:
        updates["whitelist"] = whitelist

    if updates:
        # Re-validate the merged options as a whole
        config.options = type(options).model_validate({**options.model_dump(), **updates})

    if args.log_level:
        config.log_level = args.log_level


async def run_migration(config: MigrationConfig) -> MigrationReport:
    """Wire up collaborators, run the driver and write the report.

    The report is written even when the run is cancelled.
    """
    ledgers = config.ledgers
    ledger = GatewayLedgerClient(
        ledgers.gateway_url,
        ledgers.legacy_ledger,
        ledgers.new_ledger,
        ledgers.signer_address,
        timeout=timeout_settings.rpc_timeout,
        poll_interval=timeout_settings.receipt_poll_interval,
    )
    membership: MembershipSource
    if ledgers.members_file:
        membership = FileMembershipSource(ledgers.members_file)
    else:
        membership = HttpMembershipSource(ledgers.membership_url)

    run_id = new_run_id()
    report_path = Path(config.options.report_path or f"migration-report-{run_id}.json")
    driver: MigrationDriver | None = None
    try:
        new_ledger = await ensure_new_ledger(config, ledger)
        async with ProgressLedger(config.options.progress_db, run_id) as progress:
            driver = MigrationDriver(
                ledger,
                membership,
                progress,
                ledgers.legacy_ledger,
                new_ledger,
                config.options,
                receipt_timeout=timeout_settings.receipt_timeout,
                bridge_poll_interval=timeout_settings.bridge_poll_interval,
                bridge_timeout=timeout_settings.bridge_timeout,
                retry_attempts=timeout_settings.transient_retries,
                retry_delay=timeout_settings.transient_retry_delay,
            )
            with shutdown_signals(driver):
                await driver.run()
    finally:
        await ledger.aclose()
        await membership.aclose()
        if driver is not None and driver.report is not None:
            await write_report(driver.report, report_path)

    return driver.report


async def ensure_new_ledger(config: MigrationConfig, ledger: LedgerClient) -> str:
    """Return the new ledger's address, deploying it through the factory if none was given."""
    ledgers = config.ledgers
    if ledgers.new_ledger:
        return ledgers.new_ledger
    if config.options.dry_run or not ledgers.factory_address:
        raise ConfigurationError("No new ledger address given and no factory to deploy one")

    address = await ledger.deploy_ledger(ledgers.factory_address)
    ledgers.new_ledger = address
    get_migration_logger().warning(
        "Deployed new ledger; reuse it to continue this migration later",
        new_ledger=address,
        hint=f'add "--new {address}" to the command line',
    )
    return address


async def write_report(report: MigrationReport, path: Path) -> None:
    await asyncio.to_thread(path.write_text, report.model_dump_json(indent=2), "utf-8")
    get_migration_logger().info("Report written", path=str(path), exit_code=report.exit_code)


@contextmanager
def shutdown_signals(driver: MigrationDriver) -> Iterator[None]:
    """Route SIGINT/SIGTERM to a graceful stop; a second signal cancels the run."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    signals = (signal.SIGINT, signal.SIGTERM)

    def handle_signal() -> None:
        if driver.stop_requested and task is not None:
            task.cancel()
        else:
            driver.request_stop()

    for sig in signals:
        loop.add_signal_handler(sig, handle_signal)
    try:
        yield
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)


def _setup_log_directory() -> str | None:
    """Setup log directory with fallback options."""
    log_dir_candidates = [
        os.getenv("LOG_DIR"),  # Explicit environment override
        str(get_data_dir() / "logs"),
        str(Path(tempfile.gettempdir()) / "ledger-migrate-logs"),  # System fallback
    ]

    for candidate in log_dir_candidates:
        if candidate:
            try:
                candidate_path = Path(candidate)
                candidate_path.mkdir(parents=True, exist_ok=True)
                if candidate_path.is_dir() and os.access(candidate_path, os.W_OK):
                    return str(candidate_path)
            except OSError:
                continue

    print("Warning: Unable to create log directory, using console-only logging")
    return None


def _setup_logging_system(config: MigrationConfig, log_dir: str | None):
    """Setup logging system and return the migration logger."""
    from .core.logging_config import setup_logging

    try:
        max_file_size_mb = int(os.getenv("LOG_FILE_SIZE_MB", "10"))
        if max_file_size_mb < 1 or max_file_size_mb > 100:
            max_file_size_mb = 10  # Reset to default if out of range
    except ValueError:
        max_file_size_mb = 10

    setup_logging(log_dir=log_dir, log_level=config.log_level, max_file_size_mb=max_file_size_mb)
    return get_migration_logger()


if __name__ == "__main__":
    main()
