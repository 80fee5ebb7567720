from .api import GitHubAPI, GitHubAPIError
from .discovery import DiscoveryError, discover_repositories, remove_empty_repositories

__all__ = [
    "GitHubAPI",
    "GitHubAPIError",
    "DiscoveryError",
    "discover_repositories",
    "remove_empty_repositories",
]
