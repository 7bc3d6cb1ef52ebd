"""Deterministic destination paths for reorganized files."""

from __future__ import annotations

import hashlib
import posixpath
from dataclasses import dataclass
from typing import Iterator


def compute_identity(full_path: str) -> str:
    """Compute the SHA256 identity of an origin path, as assigned at indexing time."""
    return hashlib.sha256(full_path.encode("utf-8")).hexdigest()


def iter_segments(identity: str, *, depth: int = 3, width: int = 2) -> Iterator[str]:
    """Yield up to ``depth`` fixed-width slices of ``identity``.

    Identities shorter than ``depth * width`` produce a shorter last slice and
    then stop; empty slices are never yielded.
    """
    for level in range(depth):
        segment = identity[level * width : (level + 1) * width]
        if not segment:
            return
        yield segment


def parent_dirs(remote_path: str) -> list[str]:
    """Return every ancestor directory of a remote path, shallowest first.

    >>> parent_dirs("/organized/a1/b2/file.txt")
    ['/organized', '/organized/a1', '/organized/a1/b2']
    """
    parent = posixpath.dirname(remote_path)
    if parent in ("", "/"):
        return []
    prefix = "/" if parent.startswith("/") else ""
    parts = [part for part in parent.split("/") if part]
    return [prefix + "/".join(parts[: index + 1]) for index in range(len(parts))]


@dataclass(frozen=True, slots=True)
class PathResolver:
    depth: int = 3
    width: int = 2

    def __post_init__(self) -> None:
        if self.depth < 1 or self.width < 1:
            raise ValueError("Partition depth and width must be positive")

    def resolve(self, identity: str, destination_base_dir: str, file_name: str) -> str:
        """Map a file identity to its partitioned path under ``destination_base_dir``."""
        segments = list(iter_segments(identity, depth=self.depth, width=self.width))
        base = destination_base_dir.rstrip("/") or "/"
        return posixpath.join(base, *segments, file_name)
