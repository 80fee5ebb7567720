from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class RepositoryDescriptor:
    """A repository as discovered on the remote side.

    ``full_name`` (``owner/name``) is the key used for fingerprints and
    de-duplication.
    """

    owner: str
    name: str
    full_name: str

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "RepositoryDescriptor":
        owner = (payload.get("owner") or {}).get("login", "")
        name = payload.get("name", "")
        full_name = payload.get("full_name") or f"{owner}/{name}"
        return cls(owner=owner, name=name, full_name=full_name)

    @classmethod
    def from_full_name(cls, full_name: str) -> "RepositoryDescriptor":
        owner, _, name = full_name.partition("/")
        return cls(owner=owner, name=name, full_name=full_name)

    def __str__(self) -> str:
        return self.full_name
