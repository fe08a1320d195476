# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Content hashing for change detection between indexing passes.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from pathlib import Path
from typing import Iterable, Optional, Union

from .models import FileClassification, FileHashRecord, TrackerStatistics
from .storage import StateStore

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

HASH_KEY_PREFIX = "hash:"


class FileHashTracker:
    """Tracks SHA-256 content hashes of files, with a bounded history per file.

    Records are keyed by ``str(path)``. When a :class:`StateStore` is given,
    records are loaded from it on startup and written through on change.
    """

    def __init__(self, history_limit: int = 10, store: Optional[StateStore] = None):
        self.history_limit = history_limit
        self._store = store
        self._records: dict[str, FileHashRecord] = {}
        self._lock = threading.RLock()
        if store is not None:
            self._load()

    def _load(self) -> None:
        for key, data in self._store.items(HASH_KEY_PREFIX):
            try:
                record = FileHashRecord.from_dict(data, self.history_limit)
            except (KeyError, TypeError):
                logger.warning("Ignoring malformed hash record %s", key)
                continue
            self._records[record.path] = record
        logger.debug("Loaded %d file hash records", len(self._records))

    def _persist(self, record: FileHashRecord) -> None:
        if self._store is not None:
            self._store.set(HASH_KEY_PREFIX + record.path, record.to_dict())

    @staticmethod
    def calculate_file_hash(path: PathLike) -> Optional[str]:
        """SHA-256 hex digest of the file's bytes, or None if it cannot be read."""
        digest = hashlib.sha256()
        try:
            with open(path, "rb") as f:
                for block in iter(lambda: f.read(1 << 16), b""):
                    digest.update(block)
        except FileNotFoundError:
            logger.debug("File not found while hashing: %s", path)
            return None
        except OSError as exc:
            logger.warning("Could not hash %s: %s", path, exc)
            return None
        return digest.hexdigest()

    def record_hash(self, path: PathLike, digest: str) -> bool:
        """Store ``digest`` as the current hash; returns True if it is new or different."""
        key = str(path)
        with self._lock:
            record = self._records.get(key)
            if record is None:
                record = FileHashRecord(key, digest, self.history_limit)
                self._records[key] = record
                changed = True
            else:
                changed = record.update(digest)
            if changed:
                self._persist(record)
        return changed

    def track_file_hash(self, path: PathLike) -> Optional[str]:
        digest = self.calculate_file_hash(path)
        if digest is not None:
            self.record_hash(path, digest)
        return digest

    def has_file_changed(self, path: PathLike) -> bool:
        """Recompute and compare; untracked files are tracked and count as changed.

        Missing files report False.
        """
        digest = self.calculate_file_hash(path)
        if digest is None:
            return False
        return self.record_hash(path, digest)

    def classify(self, paths: Iterable[PathLike]) -> FileClassification:
        """Partition ``paths`` into changed, new, unchanged and missing.

        Classification does not update stored hashes; callers record a hash
        once the file has actually been re-indexed.
        """
        result = FileClassification()
        seen: set[str] = set()
        for path in paths:
            key = str(path)
            if key in seen:
                continue
            seen.add(key)
            digest = self.calculate_file_hash(path)
            if digest is None:
                result.missing.append(path)
                continue
            result.hashes[key] = digest
            with self._lock:
                record = self._records.get(key)
            if record is None:
                result.new.append(path)
            elif record.current_hash != digest:
                result.changed.append(path)
            else:
                result.unchanged.append(path)
        return result

    def get_changed_files(self, paths: Iterable[PathLike]) -> list:
        """Tracked files whose content differs from the stored hash."""
        return self.classify(paths).changed

    def get_new_files(self, paths: Iterable[PathLike]) -> list:
        """Files that have never been tracked."""
        return self.classify(paths).new

    def get_file_hash(self, path: PathLike) -> Optional[str]:
        with self._lock:
            record = self._records.get(str(path))
            return record.current_hash if record else None

    def get_previous_file_hash(self, path: PathLike) -> Optional[str]:
        with self._lock:
            record = self._records.get(str(path))
            return record.previous_hash if record else None

    def get_hash_history(self, path: PathLike) -> list[str]:
        with self._lock:
            record = self._records.get(str(path))
            return [h for h, _ in record.history] if record else []

    def is_new_file(self, path: PathLike) -> bool:
        with self._lock:
            return str(path) not in self._records

    def get_all_tracked_files(self) -> list[str]:
        with self._lock:
            return sorted(self._records)

    def forget(self, path: PathLike) -> None:
        key = str(path)
        with self._lock:
            self._records.pop(key, None)
        if self._store is not None:
            self._store.delete(HASH_KEY_PREFIX + key)

    def clear_hash_cache(self) -> None:
        with self._lock:
            self._records.clear()
        if self._store is not None:
            self._store.clear(HASH_KEY_PREFIX)
        logger.info("Cleared file hash cache")

    def get_statistics(self) -> TrackerStatistics:
        with self._lock:
            changes = sum(len(r.history) - 1 for r in self._records.values())
            return TrackerStatistics(tracked_files=len(self._records), total_hash_changes=changes)
