# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Incremental re-indexing.

Cheap hash comparisons decide what changed; only those files are re-chunked,
re-summarized and re-linked. Every cache here is content-addressed, keyed by
a per-file or per-chunk hash.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from .analysis import truncate_words
from .graph import DependencyGraphBuilder
from .hashing import FileHashTracker
from .indexers import CodeChunkIndexer, CodeSummaryIndexer
from .models import (Document, GraphCalculationResult, GraphEdge, GraphNode,
                     IncrementalIndexResult, IndexingStatistics,
                     SummarizationResult, content_digest)
from .sources import SourceTree
from .storage import StateStore

logger = logging.getLogger(__name__)

SUMMARY_KEY_PREFIX = "summary:"

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def token_set(text: str) -> frozenset[str]:
    """Lower-cased identifier tokens of a text."""
    return frozenset(t.lower() for t in _TOKEN_RE.findall(text))


def token_jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    """Jaccard similarity of two token sets; 0.0 when both are empty."""
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


class IncrementalSummarizer:
    """Summarizes chunks, reusing summaries for content already seen."""

    def __init__(self, max_words: int = 100, store: Optional[StateStore] = None):
        self.max_words = max_words
        self._store = store
        self._by_hash: dict[str, str] = {}
        self._by_chunk: dict[str, str] = {}
        self._lock = threading.Lock()
        self.total_summarized = 0
        self.total_cached = 0

    def _lookup(self, digest: str) -> Optional[str]:
        summary = self._by_hash.get(digest)
        if summary is None and self._store is not None:
            summary = self._store.get(SUMMARY_KEY_PREFIX + digest)
            if summary is not None:
                self._by_hash[digest] = summary
        return summary

    def summarize(self, text: str) -> str:
        """Bounded summary: the first ``max_words`` words, with "..." when cut."""
        return truncate_words(text, self.max_words)

    def summarize_changed_chunks(self, chunks: Iterable[Document]) -> SummarizationResult:
        result = SummarizationResult()
        with self._lock:
            for chunk in chunks:
                result.total_chunks += 1
                try:
                    digest = content_digest(chunk.text)
                    summary = self._lookup(digest)
                    if summary is not None:
                        result.cached_chunks += 1
                    else:
                        summary = self.summarize(chunk.text)
                        self._by_hash[digest] = summary
                        if self._store is not None:
                            self._store.set(SUMMARY_KEY_PREFIX + digest, summary)
                        result.summarized_chunks += 1
                except Exception:
                    logger.exception("Failed to summarize chunk %s", chunk.id)
                    result.errors += 1
                    continue
                self._by_chunk[chunk.id] = summary
                result.summaries[chunk.id] = summary
            self.total_summarized += result.summarized_chunks
            self.total_cached += result.cached_chunks
        logger.debug(
            "Summarized %d chunks (%d cached, %d new)",
            result.total_chunks,
            result.cached_chunks,
            result.summarized_chunks,
        )
        return result

    def get_chunk_summary(self, chunk_id: str) -> Optional[str]:
        return self._by_chunk.get(chunk_id)

    def get_all_summaries(self) -> dict[str, str]:
        with self._lock:
            return dict(self._by_chunk)

    def forget_chunks(self, chunk_ids: Iterable[str]) -> None:
        with self._lock:
            for chunk_id in chunk_ids:
                self._by_chunk.pop(chunk_id, None)

    def clear_cache(self) -> None:
        with self._lock:
            self._by_hash.clear()
            self._by_chunk.clear()
            if self._store is not None:
                self._store.clear(SUMMARY_KEY_PREFIX)

    def get_statistics(self) -> dict[str, object]:
        total = self.total_summarized + self.total_cached
        return {
            "cached_summaries": len(self._by_hash),
            "chunks_with_summaries": len(self._by_chunk),
            "total_summarized": self.total_summarized,
            "total_cached": self.total_cached,
            "cache_hit_rate": (self.total_cached * 100.0 / total) if total else 0.0,
        }


@dataclass(frozen=True)
class _SimilarityState:
    hashes: Mapping[str, str] = field(default_factory=dict)
    tokens: Mapping[str, frozenset[str]] = field(default_factory=dict)
    edges: Mapping[str, Mapping[str, float]] = field(default_factory=dict)


class IncrementalGraphCalculator:
    """Similarity edges between chunks, recomputed only for changed chunks.

    Two nodes are linked when the Jaccard similarity of their identifier
    token sets is at least ``threshold``. Edges are symmetric. Each update
    builds a new state and swaps it in, so readers never see a partial pass.
    """

    def __init__(self, threshold: float = 0.3):
        self.threshold = threshold
        self._state = _SimilarityState()
        self._lock = threading.Lock()

    def calculate_changed_edges(self, nodes: Iterable[GraphNode]) -> GraphCalculationResult:
        result = GraphCalculationResult()
        with self._lock:
            state = self._state
            hashes = dict(state.hashes)
            tokens = dict(state.tokens)
            edges = {k: dict(v) for k, v in state.edges.items()}

            changed: list[str] = []
            for node in nodes:
                result.total_nodes += 1
                try:
                    digest = node.content_hash
                    if hashes.get(node.id) == digest:
                        result.cached_nodes += 1
                        continue
                    hashes[node.id] = digest
                    tokens[node.id] = token_set(node.content)
                except Exception:
                    logger.exception("Failed to hash graph node %s", node.id)
                    result.errors += 1
                    continue
                changed.append(node.id)

            for node_id in changed:
                for neighbour in edges.pop(node_id, {}):
                    edges.get(neighbour, {}).pop(node_id, None)

            processed: set[str] = set()
            for node_id in changed:
                mine = tokens[node_id]
                for other_id, theirs in tokens.items():
                    if other_id == node_id or other_id in processed:
                        continue
                    similarity = token_jaccard(mine, theirs)
                    if similarity >= self.threshold:
                        edges.setdefault(node_id, {})[other_id] = similarity
                        edges.setdefault(other_id, {})[node_id] = similarity
                        result.edges_calculated += 1
                processed.add(node_id)
                result.nodes_processed += 1

            self._state = _SimilarityState(
                hashes=MappingProxyType(hashes),
                tokens=MappingProxyType(tokens),
                edges=MappingProxyType({k: MappingProxyType(v) for k, v in edges.items() if v}),
            )
        logger.debug(
            "Graph pass: %d nodes, %d processed, %d cached, %d edges",
            result.total_nodes,
            result.nodes_processed,
            result.cached_nodes,
            result.edges_calculated,
        )
        return result

    def remove_nodes(self, node_ids: Iterable[str]) -> int:
        doomed = set(node_ids)
        with self._lock:
            state = self._state
            doomed &= set(state.hashes)
            if not doomed:
                return 0
            edges = {}
            for node_id, neighbours in state.edges.items():
                if node_id in doomed:
                    continue
                kept = {n: w for n, w in neighbours.items() if n not in doomed}
                if kept:
                    edges[node_id] = MappingProxyType(kept)
            self._state = _SimilarityState(
                hashes=MappingProxyType({k: v for k, v in state.hashes.items() if k not in doomed}),
                tokens=MappingProxyType({k: v for k, v in state.tokens.items() if k not in doomed}),
                edges=MappingProxyType(edges),
            )
        return len(doomed)

    def get_node_edges(self, node_id: str) -> list[GraphEdge]:
        neighbours = self._state.edges.get(node_id, {})
        edges = [GraphEdge(node_id, other, weight) for other, weight in neighbours.items()]
        return sorted(edges, key=lambda e: (-e.weight, e.target_id))

    def get_all_edges(self) -> list[GraphEdge]:
        """Each undirected edge once, with ``source_id < target_id``."""
        edges = []
        for node_id, neighbours in self._state.edges.items():
            for other, weight in neighbours.items():
                if node_id < other:
                    edges.append(GraphEdge(node_id, other, weight))
        return sorted(edges, key=lambda e: (e.source_id, e.target_id))

    def clear_cache(self) -> None:
        with self._lock:
            self._state = _SimilarityState()

    def get_statistics(self) -> dict[str, object]:
        state = self._state
        edge_count = sum(len(v) for v in state.edges.values()) // 2
        nodes = len(state.hashes)
        return {
            "nodes": nodes,
            "edges": edge_count,
            "threshold": self.threshold,
            "average_degree": (2.0 * edge_count / nodes) if nodes else 0.0,
        }


class IncrementalIndexer:
    """Re-indexes only files whose content hash changed since the last pass.

    A changed file's rows are replaced, never appended, so re-running a pass
    over an unchanged file set is a no-op. Removed files are dropped from the
    indexes, the dependency graph and the similarity graph.
    """

    def __init__(
        self,
        sources: SourceTree,
        tracker: FileHashTracker,
        chunk_indexer: CodeChunkIndexer,
        *,
        summary_indexer: Optional[CodeSummaryIndexer] = None,
        graph_builder: Optional[DependencyGraphBuilder] = None,
        graph_calculator: Optional[IncrementalGraphCalculator] = None,
        summarizer: Optional[IncrementalSummarizer] = None,
    ):
        self.sources = sources
        self.tracker = tracker
        self.chunk_indexer = chunk_indexer
        self.summary_indexer = summary_indexer
        self.graph_builder = graph_builder
        self.graph_calculator = graph_calculator
        self.summarizer = summarizer
        self._stats = IndexingStatistics()
        self._file_nodes: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    def prime(self, files: Iterable[Path], chunks: Iterable[Document]) -> None:
        """Record the state left by a full indexing pass."""
        for path in files:
            self.tracker.track_file_hash(path)
        chunks = list(chunks)
        self._refresh_derived(chunks, replaced_keys=set(), removed_keys=[])

    def _refresh_derived(
        self, chunks: list[Document], replaced_keys: set[str], removed_keys: list[str]
    ) -> None:
        by_file: dict[str, set[str]] = {}
        for chunk in chunks:
            by_file.setdefault(chunk.filename, set()).add(chunk.id)

        stale: set[str] = set()
        for key in replaced_keys | set(by_file):
            stale |= self._file_nodes.get(key, set()) - by_file.get(key, set())
            self._file_nodes[key] = by_file.get(key, set())
        for key in removed_keys:
            stale |= self._file_nodes.pop(key, set())

        if self.graph_calculator is not None:
            if stale:
                self.graph_calculator.remove_nodes(stale)
            if chunks:
                self.graph_calculator.calculate_changed_edges(
                    GraphNode(c.id, c.text, c.chunk_type) for c in chunks
                )
        if self.summarizer is not None:
            if stale:
                self.summarizer.forget_chunks(stale)
            if chunks:
                self.summarizer.summarize_changed_chunks(chunks)

    def index_changed_files(self, all_files: Optional[Iterable[Path]] = None) -> IncrementalIndexResult:
        """Re-index changed and new files among ``all_files`` (the whole corpus)."""
        started = time.monotonic()
        files = list(all_files) if all_files is not None else list(self.sources.iter_files())
        classification = self.tracker.classify(files)
        result = IncrementalIndexResult(
            files_processed=len(files),
            changed_files=len(classification.changed),
            new_files=len(classification.new),
        )

        current = {str(p) for p in files} - {str(p) for p in classification.missing}
        removed = [p for p in self.tracker.get_all_tracked_files() if p not in current]

        reindexed_sources: dict[str, str] = {}
        new_chunks: list[Document] = []
        for path in classification.to_index:
            key = self.sources.key_for(path)
            try:
                text = self.sources.read_text(path)
                chunks = self.chunk_indexer.reindex_file(path, text)
                if self.summary_indexer is not None:
                    self.summary_indexer.reindex_file(path, text)
            except Exception:
                logger.exception("Failed to re-index %s", key)
                result.errors += 1
                continue
            self.tracker.record_hash(path, classification.hashes[str(path)])
            reindexed_sources[key] = text
            new_chunks.extend(chunks)
            result.chunks_indexed += len(chunks)

        removed_keys: list[str] = []
        for tracked in removed:
            key = self.sources.key_for(Path(tracked))
            try:
                self.chunk_indexer.remove_file(key)
                if self.summary_indexer is not None:
                    self.summary_indexer.remove_file(key)
            except Exception:
                logger.exception("Failed to remove %s from the index", key)
                result.errors += 1
                continue
            self.tracker.forget(tracked)
            removed_keys.append(key)
        result.removed_files = len(removed_keys)

        if self.graph_builder is not None and (reindexed_sources or removed_keys):
            self.graph_builder.update_files(reindexed_sources, removed_keys)
        self._refresh_derived(new_chunks, set(reindexed_sources), removed_keys)

        result.duration_seconds = time.monotonic() - started
        with self._lock:
            self._stats.files_indexed += len(reindexed_sources)
            self._stats.total_chunks += result.chunks_indexed
            self._stats.errors += result.errors
            self._stats.passes += 1
        logger.info(
            "Incremental pass: %d files, %d changed, %d new, %d removed, %d chunks, %d errors (%.2fs)",
            result.files_processed,
            result.changed_files,
            result.new_files,
            result.removed_files,
            result.chunks_indexed,
            result.errors,
            result.duration_seconds,
        )
        return result

    def get_statistics(self) -> IndexingStatistics:
        with self._lock:
            return IndexingStatistics(
                files_indexed=self._stats.files_indexed,
                total_chunks=self._stats.total_chunks,
                errors=self._stats.errors,
                passes=self._stats.passes,
                tracked_files=len(self.tracker.get_all_tracked_files()),
            )

    def reset_statistics(self) -> None:
        with self._lock:
            self._stats = IndexingStatistics()
