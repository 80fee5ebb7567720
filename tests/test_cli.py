import signal
from datetime import datetime, timezone

from snapshot_backup import cli
from snapshot_backup.cancellation import CancelToken
from snapshot_backup.config import SchedulerConfig
from snapshot_backup.orchestrator import CycleResult


def test_interval_schedule():
    now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    scheduler = SchedulerConfig(interval_seconds=90)
    assert (cli.next_run_time(scheduler, now) - now).total_seconds() == 90


def test_cron_schedule_overrides_interval():
    now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    scheduler = SchedulerConfig(interval_seconds=90, cron="0 3 * * *")
    assert cli.next_run_time(scheduler, now) == datetime(2024, 1, 2, 3, 0, tzinfo=timezone.utc)


def test_missing_configuration_exits_with_config_error(monkeypatch, tmp_path):
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)
    for variable in ("GITHUB_TOKEN", "BACKUP_LOCATION", "TEMP_LOCATION", "INTERVAL", "BACKUPS"):
        monkeypatch.delenv(variable, raising=False)
    monkeypatch.setenv("SNAPSHOT_BACKUP_CONFIG", str(tmp_path / "absent.yaml"))

    assert cli.main(["--once"]) == cli.EXIT_CONFIG_ERROR


def test_explicit_missing_config_file_is_fatal(monkeypatch, tmp_path, base_env):
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)
    for key, value in base_env.items():
        monkeypatch.setenv(key, value)

    assert cli.main(["--config", str(tmp_path / "absent.yaml"), "--once"]) == cli.EXIT_CONFIG_ERROR


def test_scheduler_loop_stops_when_cancelled(monkeypatch):
    token = CancelToken()
    calls = []

    class StubOrchestrator:
        def run_cycle(self):
            calls.append(1)
            if len(calls) == 2:
                token.cancel()
            now = datetime.now(timezone.utc)
            return CycleResult(status="success", started_at=now, completed_at=now)

    monkeypatch.setattr(cli, "_wait_for_next_run", lambda scheduler, tz, cancel: None)

    exit_code = cli.run_with_scheduler(StubOrchestrator(), SchedulerConfig(interval_seconds=1), token)

    assert exit_code == 0
    assert len(calls) == 2


def test_single_run_installs_signal_handlers_before_the_cycle(monkeypatch, base_env):
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)
    for key, value in base_env.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("SNAPSHOT_BACKUP_CONFIG", raising=False)
    monkeypatch.setattr(cli, "DEFAULT_CONFIG_PATH", "/nonexistent/snapshot-backup.yaml")
    handlers = {}
    monkeypatch.setattr(cli.signal, "signal", lambda signum, handler: handlers.__setitem__(signum, handler))

    class StubOrchestrator:
        def __init__(self, config, cancel_token):
            self.cancel_token = cancel_token

        def run_cycle(self):
            assert set(handlers) == {signal.SIGTERM, signal.SIGINT}
            handlers[signal.SIGTERM](signal.SIGTERM, None)
            assert self.cancel_token.cancelled
            now = datetime.now(timezone.utc)
            return CycleResult(status="cancelled", started_at=now, completed_at=now)

    monkeypatch.setattr(cli, "BackupOrchestrator", StubOrchestrator)

    assert cli.main(["--once"]) == 1
