"""Generational rotation of exported snapshots.

The backup root holds numbered generations ``T-0`` (newest) to
``T-<retention_limit>`` (oldest). Each rotation shifts every generation one
slot older, installs the staging directory as ``T-0``, carries forward any
per-repository archive that the newer neighbour lacks, and evicts whatever
fell past the retention limit.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from pathlib import Path
from typing import Dict, List

LOG = logging.getLogger(__name__)

GENERATION_PREFIX = "T-"
GENERATION_PATTERN = re.compile(r"^T-(\d+)$")
MARKER_NAME = ".rotation-in-progress"


class RotationError(Exception):
    """Raised when a rotation step fails; the backup root may be mid-shift."""


def generation_name(index: int) -> str:
    return f"{GENERATION_PREFIX}{index}"


def list_generations(backup_root: Path) -> Dict[int, Path]:
    """Map generation index to directory for every ``T-<n>`` under the root."""
    generations: Dict[int, Path] = {}
    if not backup_root.exists():
        return generations
    for child in backup_root.iterdir():
        match = GENERATION_PATTERN.match(child.name)
        if match and child.is_dir() and not child.is_symlink():
            generations[int(match.group(1))] = child
    return generations


def copy_tree(src: Path, dst: Path) -> None:
    """Recursively copy ``src`` into ``dst``.

    Symbolic links are recreated as links, owner/group and permission bits
    are preserved, and the first I/O error propagates.
    """
    dst.mkdir(parents=True, exist_ok=True)
    with os.scandir(src) as entries:
        for entry in entries:
            source_path = Path(entry.path)
            dest_path = dst / entry.name
            stat = entry.stat(follow_symlinks=False)

            if entry.is_symlink():
                os.symlink(os.readlink(source_path), dest_path)
            elif entry.is_dir(follow_symlinks=False):
                copy_tree(source_path, dest_path)
            else:
                shutil.copyfile(source_path, dest_path, follow_symlinks=False)

            os.lchown(dest_path, stat.st_uid, stat.st_gid)
            if not entry.is_symlink():
                os.chmod(dest_path, stat.st_mode & 0o7777)


def move_tree(src: Path, dst: Path) -> None:
    """Copy then delete, so staging may live on another filesystem."""
    copy_tree(src, dst)
    shutil.rmtree(src)


class RotationEngine:
    def __init__(self, backup_root: Path, retention_limit: int) -> None:
        if retention_limit < 0:
            raise ValueError("retention_limit must not be negative")
        self.backup_root = backup_root
        self.retention_limit = retention_limit

    @property
    def marker_path(self) -> Path:
        return self.backup_root / MARKER_NAME

    def generation_path(self, index: int) -> Path:
        return self.backup_root / generation_name(index)

    def check_interrupted(self) -> bool:
        return self.marker_path.exists()

    def rotate(self, staging: Path) -> None:
        if not staging.is_dir():
            raise RotationError(f"Staging directory {staging} does not exist")

        self.backup_root.mkdir(parents=True, exist_ok=True)
        self._step("write marker", self.marker_path, self.marker_path.touch)
        self._evict_overflow()
        self._shift()

        target = self.generation_path(0)
        self._step("install staging", target, lambda: move_tree(staging, target))

        self._merge()
        self._evict(self.retention_limit + 1)
        self._step("remove marker", self.marker_path, lambda: self.marker_path.unlink(missing_ok=True))
        LOG.info("Rotation complete; generations present: %s", sorted(list_generations(self.backup_root)))

    # Steps -----------------------------------------------------------------
    def _evict_overflow(self) -> None:
        generations = list_generations(self.backup_root)
        overflow = sorted(index for index in generations if index > self.retention_limit)
        if not overflow:
            return
        LOG.error(
            "Generations %s are beyond the retention limit %d; merging them before eviction",
            overflow,
            self.retention_limit,
        )
        if len(overflow) == len(generations):
            # Nothing newer to merge into; the newest overflow takes the oldest kept slot.
            source = self.generation_path(overflow.pop(0))
            target = self.generation_path(self.retention_limit)
            self._step("reslot generation", source, lambda: source.rename(target))
        # Archives only the overflow holds move into the newest generation left.
        self._merge()
        for index in sorted(overflow, reverse=True):
            self._evict(index)

    def _shift(self) -> None:
        # Descending, so no generation is overwritten before it has moved.
        for index in range(self.retention_limit, -1, -1):
            source = self.generation_path(index)
            if not source.exists():
                continue
            target = self.generation_path(index + 1)
            if target.exists():
                raise RotationError(f"Cannot shift {source} to {target}: slot is occupied")
            self._step("shift generation", source, lambda: source.rename(target))
            LOG.debug("Shifted %s -> %s", source.name, target.name)

    def _merge(self) -> None:
        indexes = sorted(list_generations(self.backup_root), reverse=True)
        for older_index, newer_index in zip(indexes, indexes[1:]):
            older = self.generation_path(older_index)
            newer = self.generation_path(newer_index)
            moved = self._carry_forward(older, newer)
            if moved:
                LOG.info("Carried %d archives forward from %s to %s", moved, older.name, newer.name)
            self._prune_empty_owners(older)

    def _carry_forward(self, older: Path, newer: Path) -> int:
        moved = 0
        for owner_dir in _sorted_dirs(older):
            for entry in sorted(owner_dir.iterdir()):
                destination = newer / owner_dir.name / entry.name
                if destination.exists() or destination.is_symlink():
                    # Both generations hold this repository; the older copy stays.
                    continue
                self._step("create owner directory", destination.parent,
                           lambda: destination.parent.mkdir(parents=True, exist_ok=True))
                self._step("carry forward", entry, lambda: entry.rename(destination))
                moved += 1
        return moved

    def _prune_empty_owners(self, generation: Path) -> None:
        for owner_dir in _sorted_dirs(generation):
            if not any(owner_dir.iterdir()):
                self._step("prune owner directory", owner_dir, owner_dir.rmdir)

    def _evict(self, index: int) -> None:
        path = self.generation_path(index)
        if not path.exists():
            return
        LOG.info("Evicting generation %s", path.name)
        self._step("evict generation", path, lambda: shutil.rmtree(path))

    @staticmethod
    def _step(action: str, path: Path, func) -> None:
        try:
            func()
        except OSError as exc:
            raise RotationError(f"Failed to {action} at {path}: {exc}") from exc


def _sorted_dirs(path: Path) -> List[Path]:
    return sorted(child for child in path.iterdir() if child.is_dir() and not child.is_symlink())
