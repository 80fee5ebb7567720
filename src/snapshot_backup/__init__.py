"""Periodic repository export with generational snapshot rotation."""

from __future__ import annotations

from .config import BackupConfig, load_config  # noqa: F401
from .orchestrator import BackupOrchestrator, CycleResult  # noqa: F401
from .rotation import RotationEngine  # noqa: F401
