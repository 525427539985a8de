"""
Layer Build Context

This module contains the BuildContext data class, the immutable snapshot of
the source tree a build reads from.
"""

from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..constants import EntryKind
from ..utils.patterns import select_paths


class FileEntry(BaseModel):
    """One file or symlink of the build context."""
    model_config = ConfigDict(frozen=True)

    path: str
    kind: EntryKind = EntryKind.FILE
    digest: str
    mode: int
    size: int

    def identity(self) -> Tuple[str, str, str, int]:
        """The fields that take part in cache keys (size is implied by the digest)."""
        return (self.path, self.kind.value, self.digest, self.mode)


class BuildContext(BaseModel):
    """
    Holds the hashed snapshot of the source tree for one build run.

    Entries are keyed by POSIX path relative to the root and kept in
    lexicographic order; ``digest`` covers every entry in that order.
    """
    model_config = ConfigDict(frozen=True)

    root: str
    entries: Dict[str, FileEntry] = Field(default_factory=dict)
    ignore_rules: Tuple[str, ...] = ()
    digest: str

    def __contains__(self, path: object) -> bool:
        return path in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, path: str) -> Optional[FileEntry]:
        return self.entries.get(path)

    @property
    def paths(self) -> List[str]:
        return list(self.entries.keys())

    def select(self, patterns: Sequence[str]) -> List[FileEntry]:
        """Entries matched by COPY/RUN source patterns, in context order."""
        return [self.entries[p] for p in select_paths(self.entries.keys(), patterns)]
