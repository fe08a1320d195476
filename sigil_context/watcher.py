# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Background re-indexing on file-system changes.

Events for indexable files are collected and, once the tree has been quiet
for the debounce interval, a single incremental pass runs.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .sources import SourceTree

logger = logging.getLogger(__name__)


class SourceChangeHandler(FileSystemEventHandler):
    """Debounces source-file events into one ``on_change`` call."""

    def __init__(
        self,
        sources: SourceTree,
        on_change: Callable[[set[str]], None],
        debounce_seconds: float = 2.0,
    ):
        super().__init__()
        self.sources = sources
        self.on_change = on_change
        self.debounce_seconds = debounce_seconds
        self._lock = threading.Lock()
        self._pending: set[str] = set()
        self._timer: Optional[threading.Timer] = None

    def _should_process(self, path: str) -> bool:
        return not self.sources.should_skip(Path(path))

    def _flush(self) -> None:
        with self._lock:
            changed = set(self._pending)
            self._pending.clear()
            self._timer = None
        if not changed:
            return
        logger.info("Detected changes in %d files; re-indexing", len(changed))
        try:
            self.on_change(changed)
        except Exception:
            logger.exception("Incremental re-index after file change failed")

    def _schedule(self, path: str) -> None:
        with self._lock:
            self._pending.add(path)
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self._flush)
            self._timer.daemon = True
            self._timer.start()

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._should_process(event.src_path):
            self._schedule(event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._should_process(event.src_path):
            self._schedule(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._should_process(event.src_path):
            self._schedule(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        for path in (event.src_path, getattr(event, "dest_path", None)):
            if path and self._should_process(path):
                self._schedule(path)

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending.clear()


class IndexWatcher:
    """Runs a watchdog observer over every source root."""

    def __init__(self, engine, debounce_seconds: Optional[float] = None):
        self.engine = engine
        delay = debounce_seconds
        if delay is None:
            delay = engine.config.watch_debounce_seconds
        self.handler = SourceChangeHandler(engine.sources, self._reindex, delay)
        self._observer: Optional[Observer] = None

    def _reindex(self, changed: set[str]) -> None:
        logger.debug("Changed paths: %s", sorted(changed))
        self.engine.reindex_changed()

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        for root in self.engine.sources.roots:
            observer.schedule(self.handler, str(root), recursive=True)
            logger.info("Watching %s", root)
        observer.daemon = True
        observer.start()
        self._observer = observer

    def stop(self) -> None:
        if self._observer is None:
            return
        self.handler.cancel()
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        logger.info("File watcher stopped")
