from __future__ import annotations

import logging
import shutil
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .archiver import Archiver, ArchiveCancelledError, ArchiveError, RepositoryNameError, validate_repository
from .cancellation import CancelToken
from .config import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY_SECONDS
from .models import RepositoryDescriptor

LOG = logging.getLogger(__name__)


class EmptyInputError(ValueError):
    """Raised when an export batch contains no repositories."""


class ExportError(Exception):
    """Raised when a repository could not be exported within the retry budget."""

    def __init__(self, message: str, repository: str = "", attempts: int = 0) -> None:
        super().__init__(message)
        self.repository = repository
        self.attempts = attempts


class ExportCancelledError(ExportError):
    """Raised when the batch was cancelled before every export resolved."""


@dataclass
class ExportedRepository:
    repository: RepositoryDescriptor
    archive_path: Path
    attempts: int


@dataclass
class ExportReport:
    exported: List[ExportedRepository] = field(default_factory=list)
    rejected: Dict[str, str] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return len(self.exported)


class ExportPipeline:
    """Drives the archiver over a batch with bounded retry.

    ``max_retries`` is the total number of attempts per repository; the
    pipeline waits ``retry_delay`` seconds between consecutive attempts.
    """

    def __init__(
        self,
        archiver: Archiver,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        workers: int = 1,
        cancel_token: Optional[CancelToken] = None,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._archiver = archiver
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._workers = workers
        self._cancel = cancel_token or CancelToken()

    def export_all(self, repos: Sequence[RepositoryDescriptor], dest_root: Path) -> ExportReport:
        if not repos:
            raise EmptyInputError("No repositories to export")

        report = ExportReport()
        accepted: List[RepositoryDescriptor] = []
        for repo in repos:
            try:
                validate_repository(repo)
            except RepositoryNameError as exc:
                LOG.error("Rejecting repository %s: %s", repo.full_name, exc)
                report.rejected[repo.full_name] = str(exc)
                continue
            accepted.append(repo)

        if not accepted:
            return report

        dest_root.mkdir(parents=True, exist_ok=True)
        if self._workers == 1:
            for repo in accepted:
                report.exported.append(self._export_with_retry(repo, dest_root, self._cancel))
        else:
            report.exported.extend(self._export_concurrently(accepted, dest_root))

        LOG.info("Exported %d repositories into %s", report.success_count, dest_root)
        return report

    def _export_concurrently(
        self,
        repos: Sequence[RepositoryDescriptor],
        dest_root: Path,
    ) -> List[ExportedRepository]:
        batch_token = self._cancel.child()
        try:
            with ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="export") as executor:
                futures: Dict[Future, RepositoryDescriptor] = {
                    executor.submit(self._export_with_retry, repo, dest_root, batch_token): repo
                    for repo in repos
                }
                done, _ = wait(futures, return_when=FIRST_EXCEPTION)
                if any(future.exception() is not None for future in done):
                    # Stop the rest of the batch; the executor still joins every worker.
                    batch_token.cancel()
                wait(futures)
        finally:
            self._cancel.release(batch_token)

        results: List[ExportedRepository] = []
        cancelled: Optional[ExportCancelledError] = None
        for future in futures:
            error = future.exception()
            if error is None:
                results.append(future.result())
            elif isinstance(error, ExportCancelledError):
                cancelled = cancelled or error
            else:
                raise error
        if cancelled is not None:
            raise cancelled
        return results

    def _export_with_retry(
        self,
        repo: RepositoryDescriptor,
        dest_root: Path,
        cancel_token: CancelToken,
    ) -> ExportedRepository:
        last_error: Optional[Exception] = None
        for attempt in range(1, self._max_retries + 1):
            if cancel_token.cancelled:
                raise ExportCancelledError(
                    f"Export of {repo.full_name} cancelled", repository=repo.full_name, attempts=attempt - 1
                )

            self._remove_partial_output(repo, dest_root)
            try:
                archive_path = self._archiver.export(repo, dest_root, cancel_token=cancel_token)
            except ArchiveCancelledError as exc:
                raise ExportCancelledError(
                    f"Export of {repo.full_name} cancelled", repository=repo.full_name, attempts=attempt
                ) from exc
            except (ArchiveError, OSError) as exc:
                last_error = exc
                LOG.warning(
                    "Export of %s failed (attempt %d/%d): %s",
                    repo.full_name,
                    attempt,
                    self._max_retries,
                    exc,
                )
                if attempt < self._max_retries and cancel_token.wait(self._retry_delay):
                    raise ExportCancelledError(
                        f"Export of {repo.full_name} cancelled", repository=repo.full_name, attempts=attempt
                    ) from exc
                continue

            LOG.info("Exported %s to %s", repo.full_name, archive_path)
            return ExportedRepository(repository=repo, archive_path=archive_path, attempts=attempt)

        self._remove_partial_output(repo, dest_root)
        raise ExportError(
            f"Failed to export {repo.full_name} after {self._max_retries} attempts: {last_error}",
            repository=repo.full_name,
            attempts=self._max_retries,
        ) from last_error

    def _remove_partial_output(self, repo: RepositoryDescriptor, dest_root: Path) -> None:
        for path in self._archiver.output_paths(repo, dest_root):
            if path.is_symlink() or path.is_file():
                path.unlink()
            elif path.is_dir():
                shutil.rmtree(path)
