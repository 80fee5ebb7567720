from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List

from .pipeline import ExportReport

MANIFEST_FILENAME = "manifest.json"


@dataclass
class RepositoryManifest:
    full_name: str
    archive_path: str
    attempts: int = 1


@dataclass
class Manifest:
    started_at: datetime
    completed_at: datetime
    repositories: List[RepositoryManifest]
    rejected: Dict[str, str] = field(default_factory=dict)
    schema_version: str = "1.0.0"

    @classmethod
    def from_report(
        cls,
        report: ExportReport,
        root: Path,
        started_at: datetime,
        completed_at: datetime,
    ) -> "Manifest":
        repositories = [
            RepositoryManifest(
                full_name=item.repository.full_name,
                archive_path=_relative(item.archive_path, root),
                attempts=item.attempts,
            )
            for item in report.exported
        ]
        return cls(
            started_at=started_at,
            completed_at=completed_at,
            repositories=repositories,
            rejected=dict(report.rejected),
        )

    def to_dict(self) -> Dict:
        return {
            "schema_version": self.schema_version,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "repositories": [dataclasses.asdict(repo) for repo in self.repositories],
            "rejected": self.rejected,
        }

    def write(self, path: Path) -> None:
        with path.open("w", encoding="utf-8") as fh:
            json.dump(self.to_dict(), fh, indent=2)


def _relative(path: Path, root: Path) -> str:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return str(path)
