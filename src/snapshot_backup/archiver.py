from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from .cancellation import CancelToken
from .models import RepositoryDescriptor

LOG = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".bundle"
MIRROR_SUFFIX = ".git"
FORBIDDEN_CHARACTERS = frozenset(";|&")
CLONE_HOST = "github.com"


class RepositoryNameError(ValueError):
    """Raised when a repository owner or name is unsafe to pass to git."""


class ArchiveError(Exception):
    """Raised when a repository archive could not be produced."""


class ArchiveCancelledError(ArchiveError):
    """Raised when archiving was interrupted by cancellation."""


class Archiver(Protocol):
    def output_paths(self, repo: RepositoryDescriptor, dest_root: Path) -> List[Path]:
        ...

    def export(
        self,
        repo: RepositoryDescriptor,
        dest_root: Path,
        cancel_token: Optional[CancelToken] = None,
    ) -> Path:
        ...


def validate_repository(repo: RepositoryDescriptor) -> None:
    for label, value in (("owner", repo.owner), ("name", repo.name)):
        if not value:
            raise RepositoryNameError(f"Repository {label} is empty for '{repo.full_name}'")
        bad = sorted(set(value) & FORBIDDEN_CHARACTERS)
        if bad:
            raise RepositoryNameError(
                f"Repository {label} '{value}' contains forbidden characters: {''.join(bad)}"
            )
        if "/" in value or "\\" in value or value in (".", ".."):
            raise RepositoryNameError(f"Repository {label} '{value}' is not a valid path component")


class GitBundleArchiver:
    """Mirror-clones a repository and packs it into a single git bundle.

    Output lands at ``<dest_root>/<owner>/<name>.bundle``; the mirror clone
    ``<name>.git`` beside it only exists while the export runs.
    """

    def __init__(
        self,
        token: str,
        git_binary: str = "git",
        cancel_token: Optional[CancelToken] = None,
        host: str = CLONE_HOST,
    ) -> None:
        self._token = token
        self._git = git_binary
        self._cancel = cancel_token or CancelToken()
        self._host = host

    def archive_path(self, repo: RepositoryDescriptor, dest_root: Path) -> Path:
        return dest_root / repo.owner / f"{repo.name}{ARCHIVE_SUFFIX}"

    def output_paths(self, repo: RepositoryDescriptor, dest_root: Path) -> List[Path]:
        return [
            self.archive_path(repo, dest_root),
            dest_root / repo.owner / f"{repo.name}{MIRROR_SUFFIX}",
        ]

    def export(
        self,
        repo: RepositoryDescriptor,
        dest_root: Path,
        cancel_token: Optional[CancelToken] = None,
    ) -> Path:
        """Export ``repo``; ``cancel_token`` overrides the archiver-wide token for this call."""
        validate_repository(repo)
        cancel = cancel_token or self._cancel
        owner_dir = dest_root / repo.owner
        owner_dir.mkdir(parents=True, exist_ok=True)
        archive_path = self.archive_path(repo, dest_root)
        mirror_path = owner_dir / f"{repo.name}{MIRROR_SUFFIX}"
        bundle_name = f"{repo.name}{ARCHIVE_SUFFIX}"

        LOG.info("Cloning %s", repo.full_name)
        self._run(["clone", "--mirror", self._clone_url(repo), str(mirror_path)], owner_dir, cancel)

        LOG.info("Bundling %s", repo.full_name)
        self._run(["bundle", "create", bundle_name, "--all"], mirror_path, cancel)

        try:
            os.replace(mirror_path / bundle_name, archive_path)
            shutil.rmtree(mirror_path)
        except OSError as exc:
            raise ArchiveError(f"Failed to finalize bundle for {repo.full_name}: {exc}") from exc
        return archive_path

    def _clone_url(self, repo: RepositoryDescriptor) -> str:
        return f"https://x-access-token:{self._token}@{self._host}/{repo.full_name}.git"

    def _run(self, args: Sequence[str], cwd: Path, cancel: CancelToken) -> None:
        if cancel.cancelled:
            raise ArchiveCancelledError("Archiving cancelled before git started")

        cmd = [self._git, *args]
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as exc:
            raise ArchiveError(f"Failed to start {self._git}: {exc}") from exc

        with cancel.on_cancel(proc.terminate):
            output, _ = proc.communicate()

        if cancel.cancelled:
            raise ArchiveCancelledError(f"git {args[0]} cancelled")
        if proc.returncode != 0:
            message = self._redact(output.decode("utf-8", "ignore").strip())
            LOG.error("git %s failed (exit %s): %s", args[0], proc.returncode, message)
            raise ArchiveError(f"git {args[0]} exited with {proc.returncode}: {message}")

    def _redact(self, text: str) -> str:
        if self._token:
            return text.replace(self._token, "***")
        return text
