"""
Shared fixtures for the snapshot backup tests.
"""

import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from snapshot_backup.archiver import ArchiveError
from snapshot_backup.config import load_config
from snapshot_backup.models import RepositoryDescriptor


def make_repo(full_name: str) -> RepositoryDescriptor:
    return RepositoryDescriptor.from_full_name(full_name)


class FakeArchiver:
    """Archiver double that writes a small bundle file per repository.

    ``failures`` maps a full name to how many attempts fail before success;
    a negative count fails forever.
    """

    def __init__(self, failures: Optional[Dict[str, int]] = None, content: str = "bundle") -> None:
        self.failures = dict(failures or {})
        self.content = content
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def output_paths(self, repo, dest_root: Path) -> List[Path]:
        return [dest_root / repo.owner / f"{repo.name}.bundle", dest_root / repo.owner / f"{repo.name}.git"]

    def export(self, repo, dest_root: Path, cancel_token=None) -> Path:
        with self._lock:
            self.calls.append(repo.full_name)
            remaining = self.failures.get(repo.full_name, 0)
            if remaining:
                self.failures[repo.full_name] = remaining - 1 if remaining > 0 else remaining
        target = dest_root / repo.owner / f"{repo.name}.bundle"
        target.parent.mkdir(parents=True, exist_ok=True)
        if remaining:
            # leave partial output behind the way a dying clone would
            (dest_root / repo.owner / f"{repo.name}.git").mkdir(exist_ok=True)
            raise ArchiveError(f"simulated failure for {repo.full_name}")
        target.write_text(f"{self.content}:{repo.full_name}", encoding="utf-8")
        return target


class FakeAPI:
    """In-memory stand-in for the GitHub API client."""

    def __init__(self, repositories: List[str], events: Optional[Dict[str, list]] = None) -> None:
        self.repositories = repositories
        self.events = events if events is not None else {name: [{"id": name}] for name in repositories}
        self.empty: set = set()
        self.events_error: Optional[Exception] = None

    def list_repositories(self):
        return [_payload(name) for name in self.repositories]

    def list_organizations(self):
        return []

    def list_organization_repositories(self, organization):
        return []

    def has_contents(self, owner, name):
        return f"{owner}/{name}" not in self.empty

    def repository_events(self, owner, name):
        if self.events_error is not None:
            raise self.events_error
        return self.events.get(f"{owner}/{name}", [])


def _payload(full_name: str) -> dict:
    owner, name = full_name.split("/", 1)
    return {"full_name": full_name, "name": name, "owner": {"login": owner}}


def write_tree(root: Path, files: Dict[str, str]) -> None:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


def read_tree(root: Path) -> Dict[str, str]:
    return {
        path.relative_to(root).as_posix(): path.read_text(encoding="utf-8")
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


@pytest.fixture()
def base_env(tmp_path: Path) -> Dict[str, str]:
    return {
        "GITHUB_TOKEN": "ghp_testtoken",
        "BACKUP_LOCATION": str(tmp_path / "backups"),
        "TEMP_LOCATION": str(tmp_path / "scratch"),
        "INTERVAL": "60",
        "BACKUPS": "3",
        "RETRY_DELAY": "0",
        "MAX_RETRIES": "3",
    }


@pytest.fixture()
def config(base_env):
    return load_config(None, base_env)
