"""Stable id <-> mutable path resolution for directory objects.

Directories like Active Directory store relations (member, memberOf, manager)
as distinguished names, which change when an object is renamed or moved. The
canonical model uses the stable id (objectGUID/objectSid/entryUUID) instead.
"""

from typing import Iterable, List, Optional, Protocol

import structlog
from pydantic import BaseModel

from dirsync.clients.exceptions import AmbiguousError, NotFoundError

logger = structlog.get_logger(__name__)


class DirectoryEntry(BaseModel):
    """A directory object as returned by an exact-match lookup."""

    path: str
    stable_id: Optional[str] = None


class DirectorySearcher(Protocol):
    """Exact-match lookups against a directory backend."""

    async def find_by_path(self, path: str) -> List[DirectoryEntry]:
        ...

    async def find_by_stable_id(self, stable_id: str) -> List[DirectoryEntry]:
        ...


def looks_like_path(identifier: str) -> bool:
    """Heuristic for distinguished names such as ``cn=Jane,ou=Users,dc=example``."""
    head = identifier.split(",", 1)[0]
    return "=" in head and "," in identifier


class DirectoryIdentifierResolver:
    """Resolves identifiers with a single exact-match lookup.

    Zero matches raise ``NotFoundError`` and more than one raise
    ``AmbiguousError``; no best guess is ever returned.
    """

    def __init__(self, searcher: DirectorySearcher, tenant: Optional[str] = None) -> None:
        self._searcher = searcher
        self._logger = logger.bind(tenant=tenant)

    async def to_stable_id(self, mutable_path: str) -> str:
        """Resolve a distinguished name to the object's stable id.

        Raises:
            NotFoundError: If no object (or no stable id) exists at the path
            AmbiguousError: If more than one object matches
        """
        entries = await self._searcher.find_by_path(mutable_path)
        entry = self._single(entries, f"dn={mutable_path}")
        if not entry.stable_id:
            raise NotFoundError(f"object at dn={mutable_path} has no stable id")
        self._logger.debug("Resolved path to stable id", path=mutable_path, stable_id=entry.stable_id)
        return entry.stable_id

    async def to_mutable_path(self, stable_id: str) -> str:
        """Resolve a stable id to the object's current distinguished name.

        Raises:
            NotFoundError: If no object has the id
            AmbiguousError: If more than one object has the id
        """
        entries = await self._searcher.find_by_stable_id(stable_id)
        entry = self._single(entries, f"id={stable_id}")
        self._logger.debug("Resolved stable id to path", stable_id=stable_id, path=entry.path)
        return entry.path

    async def to_stable_ids(self, mutable_paths: Iterable[str]) -> List[str]:
        """Resolve several paths, preserving order. Fails on the first miss."""
        return [await self.to_stable_id(path) for path in mutable_paths]

    @staticmethod
    def _single(entries: List[DirectoryEntry], description: str) -> DirectoryEntry:
        if not entries:
            raise NotFoundError(f"did not find object having {description}")
        if len(entries) > 1:
            raise AmbiguousError(
                f"did not find unique object having {description}, {len(entries)} matches",
                matches=len(entries),
            )
        return entries[0]
