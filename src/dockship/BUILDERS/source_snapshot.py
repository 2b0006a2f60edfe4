# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Capture of the build context: which files participate and what they contain.
"""

import fnmatch
import hashlib
import logging
import os
import stat
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from ..errors import UnsupportedFileType
from ..MODELS.source_snapshot import SnapshotEntry, SourceSnapshot

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def hash_file(path: str) -> str:
    """SHA-256 of a file's content."""
    h = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            h.update(chunk)
    return f"sha256:{h.hexdigest()}"


def read_dockerignore(root: str) -> List[str]:
    """
    Reads exclusion patterns from ``.dockerignore`` at the context root.
    Negated patterns (``!pattern``) are not supported and are skipped.
    """
    path = os.path.join(root, ".dockerignore")
    if not os.path.isfile(path):
        return []
    try:
        with open(path, 'r', encoding='utf-8') as f:
            lines = f.readlines()
    except UnicodeDecodeError:
        raise UnsupportedFileType(".dockerignore", "non-UTF-8 text")
    patterns = []
    for line in lines:
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith('!'):
            logger.warning("Ignoring negated .dockerignore pattern: %s", line)
            continue
        patterns.append(line.lstrip('/'))
    return patterns


def printable_path(path: str) -> str:
    """Escapes bytes that are not valid UTF-8 in a walked file name."""
    return path.encode("utf-8", "surrogateescape").decode("utf-8", "backslashreplace")


def check_name(rel: str) -> None:
    """
    Rejects paths os.walk returned with surrogate escapes (not valid UTF-8).
    """
    try:
        rel.encode("utf-8")
    except UnicodeEncodeError:
        raise UnsupportedFileType(printable_path(rel), "non-UTF-8 file name")


def matches(path: str, patterns: Iterable[str]) -> bool:
    """
    Checks a relative POSIX path against glob patterns.

    A pattern also matches every path below a matching directory, so
    ``build``, ``build/`` and ``build/**`` all exclude the whole subtree.
    """
    parts = path.split('/')
    prefixes = ['/'.join(parts[:i]) for i in range(1, len(parts) + 1)]
    for pattern in patterns:
        pattern = pattern.rstrip('/')
        if pattern.endswith('/**'):
            pattern = pattern[:-3]
        if pattern in ('**', '*', '.'):
            return True
        for prefix in prefixes:
            if fnmatch.fnmatchcase(prefix, pattern):
                return True
            if pattern.startswith('**/') and fnmatch.fnmatchcase(prefix.split('/')[-1], pattern[3:]):
                return True
    return False


class SnapshotBuilder:
    """
    Walks a source tree and produces a deterministic SourceSnapshot.
    """

    def __init__(self,
                 include: Sequence[str] = ("**",),
                 exclude: Sequence[str] = (),
                 allow_symlinks: bool = False,
                 allow_special: bool = False,
                 use_dockerignore: bool = True):
        """
        Args:
            include: Glob patterns a file must match to be captured.
            exclude: Glob patterns that drop a file (or a whole directory).
            allow_symlinks: Capture symlinks by their target text instead of failing.
            allow_special: Skip FIFOs, sockets and devices instead of failing.
            use_dockerignore: Add patterns from ``.dockerignore`` to ``exclude``.
        """
        self.include = list(include) or ["**"]
        self.exclude = list(exclude)
        self.allow_symlinks = allow_symlinks
        self.allow_special = allow_special
        self.use_dockerignore = use_dockerignore

    def snapshot(self, root: str) -> SourceSnapshot:
        """
        Captures every included file below root.

        Args:
            root: Directory of the source checkout.

        Returns:
            The snapshot with entries in path order.

        Raises:
            UnsupportedFileType: On a symlink or special file that is not allowed.
            NotADirectoryError: If root is not a directory.
        """
        root_path = Path(root).resolve()
        if not root_path.is_dir():
            raise NotADirectoryError(str(root))

        exclude = list(self.exclude)
        if self.use_dockerignore:
            exclude.extend(read_dockerignore(str(root_path)))

        entries = [e for e in self._walk(root_path, exclude) if e is not None]
        snapshot = SourceSnapshot.from_entries(str(root_path), entries)
        logger.info("Snapshot of %s: %d file(s), %s", root_path, len(snapshot.entries), snapshot.digest)
        return snapshot

    def _walk(self, root_path: Path, exclude: List[str]):
        for dirpath, dirnames, filenames in os.walk(root_path, followlinks=False):
            rel_dir = os.path.relpath(dirpath, root_path)
            rel_dir = "" if rel_dir == "." else rel_dir.replace(os.sep, "/")

            # Prune excluded directories and surface linked directories as files.
            kept = []
            for name in dirnames:
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if matches(rel, exclude):
                    continue
                check_name(rel)
                if os.path.islink(os.path.join(dirpath, name)):
                    filenames.append(name)
                    continue
                kept.append(name)
            dirnames[:] = kept

            for name in filenames:
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if matches(rel, exclude) or not matches(rel, self.include):
                    continue
                check_name(rel)
                yield self._entry(os.path.join(dirpath, name), rel)

    def _entry(self, full_path: str, rel: str) -> Optional[SnapshotEntry]:
        st = os.lstat(full_path)
        mode = stat.S_IMODE(st.st_mode)

        if stat.S_ISLNK(st.st_mode):
            if not self.allow_symlinks:
                raise UnsupportedFileType(rel, "symlink")
            target = os.readlink(full_path)
            digest = "sha256:" + hashlib.sha256(os.fsencode(target)).hexdigest()
            return SnapshotEntry(path=rel, digest=digest, size=0, mode=mode, link_target=target)

        if not stat.S_ISREG(st.st_mode):
            kind = self._special_kind(st.st_mode)
            if not self.allow_special:
                raise UnsupportedFileType(rel, kind)
            logger.warning("Skipping special file (%s): %s", kind, rel)
            return None

        return SnapshotEntry(path=rel, digest=hash_file(full_path), size=st.st_size, mode=mode)

    @staticmethod
    def _special_kind(mode: int) -> str:
        if stat.S_ISFIFO(mode):
            return "fifo"
        if stat.S_ISSOCK(mode):
            return "socket"
        if stat.S_ISCHR(mode) or stat.S_ISBLK(mode):
            return "device"
        return "special"
