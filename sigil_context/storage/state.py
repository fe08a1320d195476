# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""RocksDB-backed key/value store for incremental-indexing state.

Holds file hash records and the chunk summary cache so change detection
and summary reuse survive restarts. Keys are namespaced by a short prefix
(``hash:``, ``summary:``) and values are zlib-compressed JSON.
"""

from __future__ import annotations

import json
import logging
import threading
import zlib
from pathlib import Path
from typing import Any, Iterator

from rocksdict import Rdict

logger = logging.getLogger(__name__)


class StateStore:
    def __init__(self, path: Path):
        path.mkdir(parents=True, exist_ok=True)
        self.path = path
        self._lock = threading.Lock()
        try:
            self._rd = Rdict(str(path))
        except Exception:
            logger.exception("Failed to open state store at %s", path)
            raise

    @staticmethod
    def _serialize(value: Any) -> bytes:
        return zlib.compress(json.dumps(value, ensure_ascii=False).encode("utf-8"))

    @staticmethod
    def _deserialize(blob: bytes) -> Any:
        return json.loads(zlib.decompress(blob).decode("utf-8"))

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._rd.get(key.encode(), None)
        if raw is None:
            return default
        try:
            return self._deserialize(raw)
        except (zlib.error, ValueError):
            logger.warning("Discarding unreadable state entry %s", key)
            return default

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._rd[key.encode()] = self._serialize(value)

    def delete(self, key: str) -> None:
        with self._lock:
            try:
                del self._rd[key.encode()]
            except KeyError:
                pass

    def items(self, prefix: str = "") -> Iterator[tuple[str, Any]]:
        """Iterate entries whose key starts with ``prefix``, in key order."""
        start = prefix.encode()
        for raw_key, raw_value in self._rd.items(from_key=start):
            key = raw_key.decode() if isinstance(raw_key, (bytes, bytearray)) else str(raw_key)
            if not key.startswith(prefix):
                break
            try:
                yield key, self._deserialize(raw_value)
            except (zlib.error, ValueError):
                logger.warning("Discarding unreadable state entry %s", key)

    def clear(self, prefix: str = "") -> int:
        keys = [key for key, _ in self.items(prefix)]
        for key in keys:
            self.delete(key)
        return len(keys)

    def commit(self) -> None:
        try:
            self._rd.flush()
        except Exception:
            logger.debug("rocksdict flush failed", exc_info=True)

    def close(self) -> None:
        try:
            self._rd.close()
        except Exception:
            logger.debug("Error closing rocksdict", exc_info=True)
