# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Source tree walking.

Every component keys files by their repository-relative POSIX path, which
this module derives from the configured source roots.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .config import Config
from .errors import SourceNotFoundError

logger = logging.getLogger(__name__)


class SourceTree:
    """The set of indexable files under one or more source roots."""

    def __init__(
        self,
        roots: Iterable[Path],
        include_extensions: Iterable[str],
        ignore_dirs: Iterable[str] = (),
        ignore_extensions: Iterable[str] = (),
        max_file_bytes: int = 1_000_000,
    ):
        self.roots = [Path(r).resolve() for r in roots]
        self.include_extensions = {e.lower() for e in include_extensions}
        self.ignore_dirs = set(ignore_dirs)
        self.ignore_extensions = {e.lower() for e in ignore_extensions}
        self.max_file_bytes = max_file_bytes

    @classmethod
    def from_config(cls, config: Config) -> "SourceTree":
        return cls(
            roots=config.source_roots,
            include_extensions=config.include_extensions,
            ignore_dirs=config.ignore_dirs,
            ignore_extensions=config.ignore_extensions,
            max_file_bytes=config.max_file_bytes,
        )

    def should_skip(self, path: Path) -> bool:
        """Whether ``path`` is outside the indexed file set."""
        name = path.name.lower()
        if any(name.endswith(ext) for ext in self.ignore_extensions):
            return True
        if path.suffix.lower() not in self.include_extensions:
            return True
        root = self._root_for(path)
        rel_parts = path.resolve().relative_to(root).parts[:-1] if root else path.parts[:-1]
        return any(part in self.ignore_dirs for part in rel_parts)

    def iter_files(self) -> Iterator[Path]:
        """Yield indexable files in a stable order."""
        for root in self.roots:
            if not root.is_dir():
                logger.warning("Source root %s does not exist, skipping", root)
                continue
            found: list[Path] = []
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames[:] = sorted(d for d in dirnames if d not in self.ignore_dirs)
                for filename in filenames:
                    path = Path(dirpath) / filename
                    if self.should_skip(path):
                        continue
                    try:
                        if path.stat().st_size > self.max_file_bytes:
                            logger.debug("Skipping large file %s", path)
                            continue
                    except OSError:
                        continue
                    found.append(path)
            yield from sorted(found)

    def _root_for(self, path: Path) -> Optional[Path]:
        resolved = path.resolve()
        for root in self.roots:
            if resolved == root or root in resolved.parents:
                return root
        return None

    def key_for(self, path: Path) -> str:
        """Repository-relative POSIX key for ``path``.

        With several roots the key is prefixed by the root's directory name so
        keys stay unique.
        """
        root = self._root_for(path)
        if root is None:
            return Path(path).as_posix()
        rel = path.resolve().relative_to(root).as_posix()
        if len(self.roots) > 1:
            return f"{root.name}/{rel}"
        return rel

    def resolve(self, key: str) -> Optional[Path]:
        """Inverse of :meth:`key_for` for keys of existing files."""
        candidates: list[Path] = []
        if len(self.roots) > 1:
            head, _, rest = key.partition("/")
            candidates = [root / rest for root in self.roots if root.name == head]
        else:
            candidates = [root / key for root in self.roots]
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        return None

    def read_text(self, path: Path) -> str:
        """Read a source file as UTF-8, raising :class:`SourceNotFoundError`."""
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError as exc:
            raise SourceNotFoundError(str(path)) from exc
        except OSError as exc:
            raise SourceNotFoundError(str(path), str(exc)) from exc
