from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from .github.api import GitHubAPIError
from .models import RepositoryDescriptor

LOG = logging.getLogger(__name__)

Fingerprint = str


class FingerprintError(Exception):
    """Raised when a repository fingerprint cannot be computed."""


class EventSource(Protocol):
    def repository_events(self, owner: str, name: str) -> List[Dict[str, Any]]:
        ...


def fingerprint_events(events: Iterable[Dict[str, Any]]) -> Fingerprint:
    digest = hashlib.sha256()
    for event in events:
        digest.update(json.dumps(event, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    return digest.hexdigest()


class FingerprintStore:
    """``full_name -> fingerprint`` map persisted as a single JSON file."""

    def __init__(self, path: Path, entries: Optional[Dict[str, Fingerprint]] = None) -> None:
        self.path = path
        self._entries: Dict[str, Fingerprint] = dict(entries or {})

    @classmethod
    def load(cls, path: Path) -> "FingerprintStore":
        if not path.exists():
            LOG.info("No fingerprint store at %s; treating every repository as changed", path)
            return cls(path)

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            LOG.warning("Ignoring unreadable fingerprint store %s: %s", path, exc)
            return cls(path)

        if not isinstance(raw, dict) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in raw.items()
        ):
            LOG.warning("Ignoring malformed fingerprint store %s", path)
            return cls(path)

        return cls(path, raw)

    def get(self, full_name: str) -> Optional[Fingerprint]:
        return self._entries.get(full_name)

    def set(self, full_name: str, fingerprint: Fingerprint) -> None:
        self._entries[full_name] = fingerprint

    def remove(self, full_name: str) -> None:
        self._entries.pop(full_name, None)

    def as_dict(self) -> Dict[str, Fingerprint]:
        return dict(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def save(self) -> None:
        """Atomically replace the store file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._entries, fh, indent=2, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class ChangeTracker:
    """Decides which repositories need a fresh export."""

    def __init__(self, source: EventSource, store: FingerprintStore) -> None:
        self._source = source
        self._store = store
        self._previous: Dict[str, Optional[Fingerprint]] = {}

    @property
    def store(self) -> FingerprintStore:
        return self._store

    def fingerprint_of(self, repo: RepositoryDescriptor) -> Fingerprint:
        try:
            events = self._source.repository_events(repo.owner, repo.name)
        except GitHubAPIError as exc:
            raise FingerprintError(f"Failed to fetch activity for {repo.full_name}: {exc}") from exc
        return fingerprint_events(events)

    def filter_changed(self, repos: Sequence[RepositoryDescriptor]) -> List[RepositoryDescriptor]:
        # Compute everything first so a remote failure leaves the store untouched.
        current = [(repo, self.fingerprint_of(repo)) for repo in repos]

        changed: List[RepositoryDescriptor] = []
        for repo, fingerprint in current:
            previous = self._store.get(repo.full_name)
            if previous is None or previous != fingerprint:
                changed.append(repo)
            self._previous.setdefault(repo.full_name, previous)
            self._store.set(repo.full_name, fingerprint)

        LOG.info("%d of %d repositories changed since the last run", len(changed), len(current))
        return changed

    def discard(self, full_names: Iterable[str]) -> None:
        """Revert in-memory updates for repositories that were not attempted."""
        for full_name in full_names:
            if full_name not in self._previous:
                continue
            previous = self._previous.pop(full_name)
            if previous is None:
                self._store.remove(full_name)
            else:
                self._store.set(full_name, previous)

    def persist(self) -> None:
        self._store.save()
        LOG.info("Persisted %d fingerprints to %s", len(self._store), self._store.path)
