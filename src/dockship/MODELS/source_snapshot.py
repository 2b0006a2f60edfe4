"""
Models for the captured set of files that take part in a build.
"""
import hashlib
from typing import Iterable, Optional, Tuple
from pydantic import BaseModel, ConfigDict


class SnapshotEntry(BaseModel):
    """
    A single file of the build context and the hash of its content.
    """
    model_config = ConfigDict(frozen=True)

    path: str
    digest: str
    size: int = 0
    mode: int = 0o644
    link_target: Optional[str] = None


class SourceSnapshot(BaseModel):
    """
    Path-sorted (path, content-hash) pairs plus their aggregate hash.

    The aggregate hash only depends on paths and contents, never on
    timestamps or on the order the tree was walked in.
    """
    model_config = ConfigDict(frozen=True)

    root: str
    entries: Tuple[SnapshotEntry, ...] = ()
    digest: str

    @staticmethod
    def digest_of(entries: Iterable[SnapshotEntry]) -> str:
        """
        Combines per-path hashes in canonical path order.
        """
        h = hashlib.sha256()
        for entry in sorted(entries, key=lambda e: e.path):
            h.update(entry.path.encode("utf-8"))
            h.update(b"\0")
            h.update(entry.digest.encode("ascii"))
            h.update(b"\n")
        return "sha256:" + h.hexdigest()

    @classmethod
    def from_entries(cls, root: str, entries: Iterable[SnapshotEntry]) -> "SourceSnapshot":
        ordered = tuple(sorted(entries, key=lambda e: e.path))
        return cls(root=root, entries=ordered, digest=cls.digest_of(ordered))

    @property
    def paths(self) -> Tuple[str, ...]:
        return tuple(e.path for e in self.entries)

    def get(self, path: str) -> Optional[SnapshotEntry]:
        for entry in self.entries:
            if entry.path == path:
                return entry
        return None
