from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .config import ConfigurationError, StorageConfig
from .rotation import generation_name

LOG = logging.getLogger(__name__)

FINGERPRINT_FILENAME = "fingerprints.json"
STAGING_PREFIX = "snapshot-backup-"


@dataclass
class FilesystemLayout:
    """Backup root and scratch root on a host-mounted filesystem."""

    backup_root: Path
    staging_root: Path

    @property
    def fingerprint_path(self) -> Path:
        return self.backup_root / FINGERPRINT_FILENAME

    def generation_path(self, index: int) -> Path:
        return self.backup_root / generation_name(index)

    def ensure(self) -> None:
        for label, path in (("backup root", self.backup_root), ("staging root", self.staging_root)):
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise ConfigurationError(f"Cannot create {label} {path}: {exc}") from exc
            if not os.access(path, os.W_OK | os.X_OK):
                raise ConfigurationError(f"The {label} {path} is not writable")

    def purge_stale_staging(self) -> int:
        """Remove staging directories left behind by an interrupted run."""
        if not self.staging_root.exists():
            return 0
        removed = 0
        for stale in sorted(self.staging_root.glob(f"{STAGING_PREFIX}*")):
            LOG.warning("Removing stale staging directory %s", stale)
            if stale.is_dir() and not stale.is_symlink():
                shutil.rmtree(stale)
            else:
                stale.unlink()
            removed += 1
        return removed

    def create_staging(self) -> Path:
        self.staging_root.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=self.staging_root))
        LOG.debug("Created staging directory %s", staging)
        return staging

    def remove_staging(self, staging: Path) -> None:
        shutil.rmtree(staging, ignore_errors=True)


def build_layout(config: StorageConfig) -> FilesystemLayout:
    return FilesystemLayout(backup_root=config.backup_root, staging_root=config.staging_root)
