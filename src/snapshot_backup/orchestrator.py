from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from .archiver import Archiver, GitBundleArchiver
from .cancellation import CancelToken
from .config import BackupConfig
from .github import DiscoveryError, GitHubAPI, discover_repositories
from .manifest import MANIFEST_FILENAME, Manifest
from .pipeline import ExportCancelledError, ExportError, ExportPipeline
from .rotation import RotationEngine, RotationError
from .storage import FilesystemLayout, build_layout
from .tracker import ChangeTracker, FingerprintError, FingerprintStore

LOG = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"


@dataclass
class CycleResult:
    status: str
    started_at: datetime
    completed_at: datetime
    discovered: int = 0
    changed: int = 0
    exported: int = 0
    rejected: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status in (STATUS_SUCCESS, STATUS_SKIPPED)

    @property
    def duration(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()


class BackupOrchestrator:
    """Runs one discover -> filter -> export -> rotate cycle."""

    def __init__(
        self,
        config: BackupConfig,
        api: Optional[GitHubAPI] = None,
        archiver: Optional[Archiver] = None,
        cancel_token: Optional[CancelToken] = None,
        layout: Optional[FilesystemLayout] = None,
    ) -> None:
        self._config = config
        self._cancel = cancel_token or CancelToken()
        self._api = api or GitHubAPI(config.token, base_url=config.github.api_url)
        self._archiver = archiver or GitBundleArchiver(
            token=config.token,
            git_binary=config.export.git_binary,
            cancel_token=self._cancel,
        )
        self._layout = layout or build_layout(config.storage)
        self._rotation = RotationEngine(self._layout.backup_root, config.retention_limit)
        self._pipeline = ExportPipeline(
            self._archiver,
            max_retries=config.export.max_retries,
            retry_delay=config.export.retry_delay_seconds,
            workers=config.export.workers,
            cancel_token=self._cancel,
        )

    def run_cycle(self) -> CycleResult:
        result = CycleResult(status=STATUS_SUCCESS, started_at=_now(), completed_at=_now())
        if self._rotation.check_interrupted():
            LOG.error(
                "A previous rotation in %s did not finish; inspect the generations before trusting them",
                self._layout.backup_root,
            )

        try:
            self._run(result)
        except ExportCancelledError as exc:
            result.status = STATUS_CANCELLED
            result.errors.append(str(exc))
        except (DiscoveryError, FingerprintError, ExportError, RotationError, OSError) as exc:
            result.status = STATUS_FAILED
            result.errors.append(str(exc))
        except Exception as exc:  # noqa: BLE001
            LOG.exception("Unexpected error during backup cycle")
            result.status = STATUS_FAILED
            result.errors.append(f"Unexpected error: {exc}")

        result.completed_at = _now()
        return result

    def _run(self, result: CycleResult) -> None:
        LOG.info("Loading all repositories")
        repositories = discover_repositories(self._api)
        result.discovered = len(repositories)

        store = FingerprintStore.load(self._layout.fingerprint_path)
        tracker = ChangeTracker(self._api, store)
        changed = tracker.filter_changed(repositories)
        result.changed = len(changed)

        if not changed:
            LOG.info("No repositories changed; nothing to export")
            tracker.persist()
            result.status = STATUS_SKIPPED
            return

        self._layout.purge_stale_staging()
        staging = self._layout.create_staging()
        try:
            report = self._pipeline.export_all(changed, staging)
            result.rejected = sorted(report.rejected)
            tracker.discard(report.rejected)

            if not report.exported:
                LOG.warning("Every changed repository was rejected; skipping rotation")
                result.status = STATUS_SKIPPED
            elif self._cancel.cancelled:
                raise ExportCancelledError("Cycle cancelled before rotation")
            else:
                Manifest.from_report(report, staging, result.started_at, _now()).write(
                    staging / MANIFEST_FILENAME
                )
                self._rotation.rotate(staging)
                result.exported = report.success_count
        finally:
            self._layout.remove_staging(staging)

        tracker.persist()


def _now() -> datetime:
    return datetime.now(timezone.utc)
