from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import requests

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_ACCEPT_HEADER = "application/vnd.github+json"
PAGE_SIZE = 100
REQUEST_TIMEOUT = 30


class GitHubAPIError(Exception):
    """Raised when a GitHub API request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubAPI:
    def __init__(
        self,
        token: Optional[str],
        base_url: str = DEFAULT_API_URL,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not token:
            raise ValueError("GitHub token must be provided")
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": DEFAULT_ACCEPT_HEADER,
                "User-Agent": "snapshot-backup",
            }
        )
        self._base_url = base_url.rstrip("/")
        self._log = logging.getLogger(self.__class__.__name__)

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self._base_url}/{path.lstrip('/')}"
        response = self._request(url, params)
        if response.status_code >= 400:
            self._log.error("GitHub API request failed: %s %s", response.status_code, response.text)
            raise GitHubAPIError(
                f"GET {path} failed with status {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    def iterate(self, path: str, params: Optional[Dict[str, Any]] = None) -> Iterable[Dict[str, Any]]:
        url = f"{self._base_url}/{path.lstrip('/')}"
        next_url: Optional[str] = url
        request_params = params.copy() if params else {}
        request_params.setdefault("per_page", PAGE_SIZE)

        while next_url:
            response = self._request(next_url, request_params)
            if response.status_code >= 400:
                self._log.error("GitHub API pagination failed: %s %s", response.status_code, response.text)
                raise GitHubAPIError(
                    f"GET {path} failed with status {response.status_code}",
                    status_code=response.status_code,
                )

            for item in response.json():
                yield item

            # The next link already carries the query string.
            next_url = self._extract_next_link(response.headers.get("Link"))
            request_params = {}

    # Endpoints -------------------------------------------------------------
    def list_organizations(self) -> List[Dict[str, Any]]:
        return list(self.iterate("user/orgs"))

    def list_repositories(self) -> List[Dict[str, Any]]:
        return list(self.iterate("user/repos", {"type": "all"}))

    def list_organization_repositories(self, organization: str) -> List[Dict[str, Any]]:
        return list(self.iterate(f"orgs/{organization}/repos", {"type": "all"}))

    def has_contents(self, owner: str, name: str) -> bool:
        """Return False when the repository root has no files (404)."""
        try:
            self.get(f"repos/{owner}/{name}/contents/")
        except GitHubAPIError as exc:
            if exc.status_code == 404:
                return False
            raise
        return True

    def repository_events(self, owner: str, name: str) -> List[Dict[str, Any]]:
        events = self.get(f"repos/{owner}/{name}/events", params={"per_page": PAGE_SIZE})
        return list(events or [])

    # Internal helpers ------------------------------------------------------
    def _request(self, url: str, params: Optional[Dict[str, Any]]) -> requests.Response:
        try:
            return self._session.get(url, params=params, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as exc:
            raise GitHubAPIError(f"GET {url} failed: {exc}") from exc

    @staticmethod
    def _extract_next_link(link_header: Optional[str]) -> Optional[str]:
        if not link_header:
            return None
        parts = [p.strip() for p in link_header.split(",")]
        for part in parts:
            if 'rel="next"' in part:
                start = part.find("<") + 1
                end = part.find(">")
                return part[start:end]
        return None
