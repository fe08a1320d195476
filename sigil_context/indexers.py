# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Builders for the two-tier semantic index.

``CodeSummaryIndexer`` writes one file-summary document per source file and
``CodeChunkIndexer`` writes class-overview and method chunks. Both skip all
work at startup when the corpus hash matches their embedding cache, and
otherwise rebuild while reusing cached vectors for unchanged documents.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterable, Optional

from .analysis import (SourceParser, detect_language, split_code_chunks,
                       truncate_for_summary)
from .embedding_cache import EmbeddingCacheManager
from .errors import BackendFailure, ParseFailure, SourceNotFoundError
from .models import ChunkType, Document, IndexBuildResult, content_digest
from .sources import SourceTree
from .storage import SimilarityIndex
from .summarizer import HeuristicSummarizer, SummarizeFn

logger = logging.getLogger(__name__)


class _CodeIndexer:
    def __init__(
        self,
        sources: SourceTree,
        index: SimilarityIndex,
        cache: EmbeddingCacheManager,
        *,
        parser: Optional[SourceParser] = None,
        workers: int = 4,
    ):
        self.sources = sources
        self.index = index
        self.cache = cache
        self.parser = parser or SourceParser()
        self.workers = max(1, workers)
        self._reusable: dict[tuple[str, str], Document] = {}

    def _documents_for(self, key: str, text: str, digest: str) -> list[Document]:
        raise NotImplementedError

    def _reuse(self, doc: Document) -> Document:
        cached = self._reusable.get((doc.id, doc.content_hash))
        if cached is not None:
            doc.vector = cached.vector
        return doc

    def build_documents(self, path: Path, text: Optional[str] = None) -> list[Document]:
        """Documents for one file; raises on unreadable files."""
        key = self.sources.key_for(path)
        if text is None:
            text = self.sources.read_text(path)
        return self._documents_for(key, text, content_digest(text))

    def _build_safely(self, path: Path) -> Optional[list[Document]]:
        try:
            return self.build_documents(path)
        except SourceNotFoundError as exc:
            logger.warning("Excluding %s from %s index: %s", path, self.index.name, exc)
            return []
        except Exception:
            logger.exception("Failed to build %s documents for %s", self.index.name, path)
            return None

    def index_codebase(self, force: bool = False) -> IndexBuildResult:
        """Build the index, or skip when the embedding cache is still valid."""
        started = time.monotonic()
        result = IndexBuildResult(index_name=self.index.name)
        files = list(self.sources.iter_files())
        result.files_seen = len(files)
        corpus_hash = self.cache.calculate_documents_hash(files)

        if not force and self.cache.is_cache_valid(corpus_hash):
            result.cache_hit = True
            if self.index.count_rows() == 0:
                cached = self.cache.load_from_cache()
                self.index.reset(cached)
                logger.info("Restored %d %s documents from cache", len(cached), self.index.name)
            result.documents = self.index.count_rows()
            result.duration_seconds = time.monotonic() - started
            logger.info("%s index is up to date; skipping re-embedding", self.index.name)
            return result

        dimension = self.index.table.dimension
        self._reusable = {
            (d.id, d.content_hash): d
            for d in self.cache.load_from_cache()
            if d.vector is not None and d.vector.shape == (dimension,)
        }
        documents: list[Document] = []
        try:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                for docs in pool.map(self._build_safely, files):
                    if docs is None:
                        result.errors += 1
                        continue
                    if docs:
                        result.files_indexed += 1
                    documents.extend(docs)
            result.reused_vectors = sum(1 for d in documents if d.vector is not None)
            self.index.reset(documents)
        except BackendFailure:
            logger.exception("Failed to rebuild %s index", self.index.name)
            result.errors += 1
            return result
        finally:
            self._reusable = {}

        self.cache.save_to_cache(documents, corpus_hash)
        result.documents = len(documents)
        result.duration_seconds = time.monotonic() - started
        logger.info(
            "Indexed %d %s documents from %d files (%d vectors reused, %d errors) in %.2fs",
            result.documents,
            self.index.name,
            result.files_indexed,
            result.reused_vectors,
            result.errors,
            result.duration_seconds,
        )
        return result

    def reindex_file(self, path: Path, text: Optional[str] = None) -> list[Document]:
        """Replace the indexed documents of one file."""
        documents = self.build_documents(path, text)
        self.index.replace_file(self.sources.key_for(path), documents)
        return documents

    def remove_file(self, key: str) -> None:
        self.index.delete_file(key)

    def sync_cache(self, files: Optional[Iterable[Path]] = None) -> None:
        """Rewrite the cache from the live index after incremental updates."""
        files = list(files) if files is not None else list(self.sources.iter_files())
        corpus_hash = self.cache.calculate_documents_hash(files)
        self.cache.save_to_cache(self.index.documents(), corpus_hash)

    def get_indexed_file_count(self) -> int:
        """Approximate number of indexed files, from a broad similarity query."""
        return self.index.approximate_file_count()


class CodeSummaryIndexer(_CodeIndexer):
    """One summary document per source file."""

    def __init__(
        self,
        sources: SourceTree,
        index: SimilarityIndex,
        cache: EmbeddingCacheManager,
        *,
        summarize_fn: Optional[SummarizeFn] = None,
        min_chars: int = 100,
        max_chars: int = 4000,
        parser: Optional[SourceParser] = None,
        workers: int = 4,
    ):
        super().__init__(sources, index, cache, parser=parser, workers=workers)
        self.summarize_fn = summarize_fn or HeuristicSummarizer(self.parser)
        self.min_chars = min_chars
        self.max_chars = max_chars

    def _documents_for(self, key: str, text: str, digest: str) -> list[Document]:
        if len(text.strip()) < self.min_chars:
            logger.debug("Not summarizing short file %s", key)
            return []
        doc_id = f"{key}#summary"
        cached = self._reusable.get((doc_id, digest))
        if cached is not None:
            return [cached]
        summary = self.summarize_fn(key, truncate_for_summary(text, self.max_chars))
        return [
            Document(
                id=doc_id,
                filename=key,
                text=summary,
                chunk_type=ChunkType.FILE_SUMMARY,
                content_hash=digest,
                name=Path(key).stem,
                start_line=1,
                end_line=text.count("\n") + 1,
                language=detect_language(key),
            )
        ]


class CodeChunkIndexer(_CodeIndexer):
    """Class-overview and method chunks for each source file."""

    def __init__(
        self,
        sources: SourceTree,
        index: SimilarityIndex,
        cache: EmbeddingCacheManager,
        *,
        min_method_chars: int = 50,
        max_lines: int = 100,
        overlap: int = 10,
        parser: Optional[SourceParser] = None,
        workers: int = 4,
    ):
        super().__init__(sources, index, cache, parser=parser, workers=workers)
        self.min_method_chars = min_method_chars
        self.max_lines = max_lines
        self.overlap = overlap

    def _documents_for(self, key: str, text: str, digest: str) -> list[Document]:
        try:
            parsed = self.parser.parse(key, text)
        except ParseFailure as exc:
            logger.warning("Chunking %s by lines: %s", key, exc.reason)
            parsed = None

        spans = split_code_chunks(
            parsed,
            text,
            min_method_chars=self.min_method_chars,
            max_lines=self.max_lines,
            overlap=self.overlap,
        )
        language = detect_language(key)
        seen: Counter = Counter()
        documents = []
        for span in spans:
            ordinal = seen[(span.chunk_type, span.name)]
            seen[(span.chunk_type, span.name)] += 1
            doc = Document(
                id=f"{key}#{span.chunk_type}:{span.name}:{ordinal}",
                filename=key,
                text=span.text,
                chunk_type=span.chunk_type,
                content_hash=content_digest(span.text),
                name=span.name,
                start_line=span.start_line,
                end_line=span.end_line,
                language=language,
            )
            documents.append(self._reuse(doc))
        return documents
