# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Wiring for the indexing and retrieval components.

``ContextEngine`` owns one instance of each component, configured from
:class:`Config`. Index builds and incremental passes are serialized;
retrievals run concurrently against whatever snapshot is current.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Any, Optional

from .analysis import SourceParser
from .config import Config, get_config
from .context_manager import ContextManager
from .embedding_cache import EmbeddingCacheManager
from .embeddings import EmbeddingFn, build_embedder
from .errors import SourceNotFoundError
from .graph import DependencyGraphBuilder
from .hashing import FileHashTracker
from .incremental import (IncrementalGraphCalculator, IncrementalIndexer,
                          IncrementalSummarizer)
from .indexers import CodeChunkIndexer, CodeSummaryIndexer
from .models import CodeContext, IncrementalIndexResult, SearchPlan
from .planner import QueryPlanner
from .retriever import CodeRetrieverService
from .sources import SourceTree
from .storage import SimilarityIndex, StateStore, open_vector_table
from .summarizer import SummarizeFn

logger = logging.getLogger(__name__)

SUMMARY_INDEX = "summaries"
CHUNK_INDEX = "chunks"


class ContextEngine:
    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        embed_fn: Optional[EmbeddingFn] = None,
        summarize_fn: Optional[SummarizeFn] = None,
    ):
        cfg = config or get_config()
        self.config = cfg
        self.sources = SourceTree.from_config(cfg)
        self.parser = SourceParser()
        embedder = build_embedder(cfg, embed_fn)
        self.state = StateStore(cfg.state_path)

        dimension = cfg.embeddings_dimension
        backend = cfg.index_backend
        self.summary_index = SimilarityIndex(
            SUMMARY_INDEX,
            open_vector_table(cfg.index_path, SUMMARY_INDEX, dimension, backend),
            embedder,
            batch_size=cfg.embeddings_batch_size,
        )
        self.chunk_index = SimilarityIndex(
            CHUNK_INDEX,
            open_vector_table(cfg.index_path, CHUNK_INDEX, dimension, backend),
            embedder,
            batch_size=cfg.embeddings_batch_size,
        )

        self.summary_indexer = CodeSummaryIndexer(
            self.sources,
            self.summary_index,
            EmbeddingCacheManager(cfg.cache_path / SUMMARY_INDEX, cfg.cache_enabled),
            summarize_fn=summarize_fn,
            min_chars=cfg.summary_min_chars,
            max_chars=cfg.summary_max_chars,
            parser=self.parser,
            workers=cfg.indexing_workers,
        )
        self.chunk_indexer = CodeChunkIndexer(
            self.sources,
            self.chunk_index,
            EmbeddingCacheManager(cfg.cache_path / CHUNK_INDEX, cfg.cache_enabled),
            min_method_chars=cfg.chunking_min_method_chars,
            max_lines=cfg.chunking_max_lines,
            overlap=cfg.chunking_overlap,
            parser=self.parser,
            workers=cfg.indexing_workers,
        )
        self.graph_builder = DependencyGraphBuilder(
            self.parser,
            max_call_fanout=cfg.graph_max_call_fanout,
            workers=cfg.indexing_workers,
        )

        self.tracker = FileHashTracker(cfg.hashing_history_limit, store=self.state)
        self.summarizer = IncrementalSummarizer(cfg.summary_max_words, store=self.state)
        self.graph_calculator = IncrementalGraphCalculator(cfg.graph_edge_threshold)
        self.incremental = IncrementalIndexer(
            self.sources,
            self.tracker,
            self.chunk_indexer,
            summary_indexer=self.summary_indexer,
            graph_builder=self.graph_builder,
            graph_calculator=self.graph_calculator,
            summarizer=self.summarizer,
        )

        self.context_manager = ContextManager.from_config(cfg)
        self.planner = QueryPlanner.from_config(cfg)
        self.retriever = CodeRetrieverService(
            self.summary_index,
            self.chunk_index,
            self.graph_builder,
            context_manager=self.context_manager,
            planner=self.planner,
            timeout_seconds=cfg.retrieval_timeout_seconds,
            workers=cfg.retrieval_workers,
        )
        self._index_lock = threading.Lock()
        self._graph_loaded = False

    def _build_graph(self, files) -> None:
        sources = {}
        for path in files:
            try:
                sources[self.sources.key_for(path)] = self.sources.read_text(path)
            except SourceNotFoundError as exc:
                logger.warning("Excluding %s from dependency graph: %s", path, exc)
        self.graph_builder.build_graph(sources)
        self._graph_loaded = True

    def _ensure_graph(self, files=None) -> None:
        # A process that did not run build() starts with empty in-memory graphs.
        if self._graph_loaded:
            return
        if files is None:
            files = list(self.sources.iter_files())
        logger.info("Loading dependency graph for %d files", len(files))
        self._build_graph(files)
        self.incremental.prime((), self.chunk_index.documents())

    def _ensure_graph_loaded(self) -> None:
        if not self._graph_loaded:
            with self._index_lock:
                self._ensure_graph()

    def build(self, force: bool = False) -> dict[str, Any]:
        """Full indexing pass: both indexes, the dependency graph and change tracking."""
        with self._index_lock:
            files = list(self.sources.iter_files())
            logger.info("Indexing %d files under %s", len(files), [str(r) for r in self.sources.roots])
            summary_result = self.summary_indexer.index_codebase(force)
            chunk_result = self.chunk_indexer.index_codebase(force)

            self._build_graph(files)
            self.incremental.prime(files, self.chunk_index.documents())
            self.state.commit()

        return {
            "summaries": summary_result.to_dict(),
            "chunks": chunk_result.to_dict(),
            "graph": self.graph_builder.statistics(),
            "similarity_graph": self.graph_calculator.get_statistics(),
        }

    def reindex_changed(self) -> IncrementalIndexResult:
        """Re-index files changed since the last pass; safe to call repeatedly."""
        with self._index_lock:
            files = list(self.sources.iter_files())
            self._ensure_graph(files)
            result = self.incremental.index_changed_files(files)
            if result.changed_files or result.new_files or result.removed_files:
                self.summary_indexer.sync_cache(files)
                self.chunk_indexer.sync_cache(files)
            self.state.commit()
        return result

    def plan(self, query: str) -> SearchPlan:
        return self.planner.create_search_plan(query)

    def retrieve(self, query: str, plan: Optional[SearchPlan] = None) -> CodeContext:
        self._ensure_graph_loaded()
        return self.retriever.retrieve_code_context(query, plan)

    def retrieve_file(self, filename: str) -> CodeContext:
        self._ensure_graph_loaded()
        return self.retriever.retrieve_specific_file(filename)

    def stats(self) -> dict[str, Any]:
        self._ensure_graph_loaded()
        return {
            "summaries": {
                "documents": self.summary_index.count_rows(),
                "files": self.summary_indexer.get_indexed_file_count(),
                "cache": self.summary_indexer.cache.get_cache_stats(),
            },
            "chunks": {
                "documents": self.chunk_index.count_rows(),
                "files": self.chunk_indexer.get_indexed_file_count(),
                "cache": self.chunk_indexer.cache.get_cache_stats(),
            },
            "graph": self.graph_builder.statistics(),
            "similarity_graph": self.graph_calculator.get_statistics(),
            "tracker": dataclasses.asdict(self.tracker.get_statistics()),
            "incremental": self.incremental.get_statistics().to_dict(),
            "summarizer": self.summarizer.get_statistics(),
        }

    def clear_cache(self) -> None:
        """Drop embedding caches, hash records and derived caches."""
        with self._index_lock:
            self.summary_indexer.cache.clear_cache()
            self.chunk_indexer.cache.clear_cache()
            self.tracker.clear_hash_cache()
            self.summarizer.clear_cache()
            self.graph_calculator.clear_cache()
            self.state.commit()

    def close(self) -> None:
        self.retriever.close()
        self.state.commit()
        self.state.close()

    def __enter__(self) -> "ContextEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
