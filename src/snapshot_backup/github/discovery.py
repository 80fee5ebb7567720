from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from snapshot_backup.models import RepositoryDescriptor

from .api import GitHubAPI, GitHubAPIError

LOG = logging.getLogger(__name__)


class DiscoveryError(Exception):
    """Raised when the set of accessible repositories cannot be determined."""


def discover_repositories(api: GitHubAPI) -> List[RepositoryDescriptor]:
    """List every repository the credential can reach, minus empty ones."""
    try:
        payloads = list(api.list_repositories())
        for org in api.list_organizations():
            login = org.get("login")
            if not login:
                continue
            payloads.extend(api.list_organization_repositories(login))
    except GitHubAPIError as exc:
        raise DiscoveryError(f"Failed to list repositories: {exc}") from exc

    repositories = _deduplicate(RepositoryDescriptor.from_api(item) for item in payloads)
    LOG.info("Discovered %d repositories", len(repositories))
    return remove_empty_repositories(api, repositories)


def remove_empty_repositories(
    api: GitHubAPI,
    repositories: Iterable[RepositoryDescriptor],
) -> List[RepositoryDescriptor]:
    kept: List[RepositoryDescriptor] = []
    for repo in repositories:
        try:
            has_files = api.has_contents(repo.owner, repo.name)
        except GitHubAPIError as exc:
            raise DiscoveryError(f"Failed to inspect contents of {repo.full_name}: {exc}") from exc
        if not has_files:
            LOG.info("Skipping empty repository %s", repo.full_name)
            continue
        kept.append(repo)
    return kept


def _deduplicate(repositories: Iterable[RepositoryDescriptor]) -> List[RepositoryDescriptor]:
    seen: Dict[str, RepositoryDescriptor] = {}
    for repo in repositories:
        if not repo.full_name or repo.full_name in seen:
            continue
        seen[repo.full_name] = repo
    return list(seen.values())
