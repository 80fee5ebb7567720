from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from croniter import croniter

from .cancellation import CancelToken
from .config import BackupConfig, ConfigurationError, SchedulerConfig, load_config
from .logger import configure_logging
from .orchestrator import BackupOrchestrator, CycleResult
from .storage import build_layout

DEFAULT_CONFIG_PATH = "/etc/snapshot-backup/config.yaml"
EXIT_CONFIG_ERROR = 2


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Periodic repository snapshot backup.")
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to an optional YAML configuration file (default {DEFAULT_CONFIG_PATH} when present).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single backup cycle and exit.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override the configured log level.",
    )
    return parser.parse_args(argv)


def load_configuration(args: argparse.Namespace) -> BackupConfig:
    if args.config:
        return load_config(Path(args.config).expanduser(), require_file=True)
    path = Path(os.getenv("SNAPSHOT_BACKUP_CONFIG", DEFAULT_CONFIG_PATH)).expanduser()
    return load_config(path)


def log_result(result: CycleResult) -> None:
    if result.success:
        logging.info(
            "Cycle %s in %.2fs: %d discovered, %d changed, %d exported",
            result.status,
            result.duration,
            result.discovered,
            result.changed,
            result.exported,
        )
    else:
        logging.error("Cycle %s: %s", result.status, "; ".join(result.errors))
    if result.rejected:
        logging.warning("Rejected repositories: %s", ", ".join(result.rejected))


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or os.getenv("LOG_LEVEL", "INFO"))

    try:
        config = load_configuration(args)
        build_layout(config.storage).ensure()
    except ConfigurationError as exc:
        logging.error("Configuration error: %s", exc)
        return EXIT_CONFIG_ERROR

    if not args.log_level:
        configure_logging(config.logging.level)

    cancel_token = CancelToken()
    install_signal_handlers(cancel_token)
    orchestrator = BackupOrchestrator(config=config, cancel_token=cancel_token)

    if args.once:
        result = orchestrator.run_cycle()
        log_result(result)
        return 0 if result.success else 1

    return run_with_scheduler(orchestrator, config.scheduler, cancel_token)


def install_signal_handlers(cancel_token: CancelToken) -> None:
    def _handle_signal(signum: int, _frame: Optional[object]) -> None:
        logging.info("Received signal %s; cancelling current cycle and stopping", signum)
        cancel_token.cancel()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)


def run_with_scheduler(
    orchestrator: BackupOrchestrator,
    scheduler: SchedulerConfig,
    cancel_token: CancelToken,
) -> int:
    timezone = ZoneInfo(scheduler.timezone)
    if scheduler.run_on_startup:
        logging.info("Executing initial run immediately")
    else:
        _wait_for_next_run(scheduler, timezone, cancel_token)

    while not cancel_token.cancelled:
        log_result(orchestrator.run_cycle())
        if cancel_token.cancelled:
            break
        _wait_for_next_run(scheduler, timezone, cancel_token)

    logging.info("Scheduler stopped")
    return 0


def next_run_time(scheduler: SchedulerConfig, now: datetime) -> datetime:
    if scheduler.cron:
        return croniter(scheduler.cron, now).get_next(datetime)
    return now + timedelta(seconds=scheduler.interval_seconds)


def _wait_for_next_run(scheduler: SchedulerConfig, timezone: ZoneInfo, cancel_token: CancelToken) -> None:
    now = datetime.now(timezone)
    next_run = next_run_time(scheduler, now)
    logging.info("Next run scheduled for %s", next_run.isoformat())
    cancel_token.wait(max((next_run - now).total_seconds(), 0))


if __name__ == "__main__":
    sys.exit(main())
