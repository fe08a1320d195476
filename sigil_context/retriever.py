# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Code context retrieval.

One retrieval runs: plan -> budget -> seed summary search -> dependency
expansion -> chunk search over the expanded files -> prioritize and prune ->
:class:`CodeContext`. Every similarity search runs on a bounded executor with
a timeout. Any failure degrades to an empty context; nothing here raises into
the caller's turn.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Iterable, Optional

from .context_manager import ContextManager
from .errors import BackendFailure
from .graph import DependencyGraphBuilder
from .models import CodeContext, Document, SearchPlan, SearchStrategy
from .planner import QueryPlanner
from .storage import SimilarityIndex
from .storage.vector import Filters

logger = logging.getLogger(__name__)

SPECIFIC_FILE_STRATEGY = "specific_file"

SEED_QUERY_HINTS = {
    SearchStrategy.METHOD_FOCUSED: " implementation method function",
    SearchStrategy.ERROR_TRACE: " error exception handling try catch",
    SearchStrategy.CONFIGURATION_CHAIN: " configuration config setup bean",
}

CHUNK_QUERY_HINTS = dict(SEED_QUERY_HINTS)
CHUNK_QUERY_HINTS[SearchStrategy.DEPENDENCY_GRAPH] = " architecture relationship dependency"


def _unique_by_filename(docs: Iterable[Document]) -> list[Document]:
    seen: set[str] = set()
    unique = []
    for doc in docs:
        if doc.filename not in seen:
            seen.add(doc.filename)
            unique.append(doc)
    return unique


class CodeRetrieverService:
    def __init__(
        self,
        summary_index: SimilarityIndex,
        chunk_index: SimilarityIndex,
        graph_builder: Optional[DependencyGraphBuilder] = None,
        *,
        context_manager: Optional[ContextManager] = None,
        planner: Optional[QueryPlanner] = None,
        timeout_seconds: float = 10.0,
        workers: int = 4,
    ):
        self.summary_index = summary_index
        self.chunk_index = chunk_index
        self.graph_builder = graph_builder
        self.context_manager = context_manager or ContextManager()
        self.planner = planner or QueryPlanner()
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, workers), thread_name_prefix="sigil-retrieval"
        )

    def _search(
        self, index: SimilarityIndex, query: str, top_k: int, filters: Optional[Filters] = None
    ) -> list[Document]:
        future = self._executor.submit(index.search, query, top_k, filters)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FuturesTimeout as exc:
            future.cancel()
            raise BackendFailure(
                f"{index.name} search timed out after {self.timeout_seconds}s"
            ) from exc

    def create_search_plan(self, query: str) -> SearchPlan:
        return self.planner.create_search_plan(query)

    def retrieve_code_context(self, query: str, plan: Optional[SearchPlan] = None) -> CodeContext:
        if plan is None:
            plan = self.planner.create_search_plan(query)
        return self.retrieve_code_context_with_plan(plan)

    def retrieve_code_context_with_plan(self, plan: SearchPlan) -> CodeContext:
        """Retrieve context for an explicit plan; empty on any failure."""
        try:
            return self._retrieve(plan)
        except Exception:
            logger.exception(
                "Retrieval failed for %r; returning empty context", plan.original_query
            )
            return CodeContext.empty(plan.original_query, plan.search_strategy.value)

    def _seed_summaries(self, plan: SearchPlan) -> list[Document]:
        query = plan.original_query
        strategy = plan.search_strategy
        if strategy is SearchStrategy.ENTITY_CENTERED and plan.target_entities:
            per_entity = max(2, plan.top_k - 1)
            docs: list[Document] = []
            for entity in plan.target_entities:
                docs.extend(self._search(self.summary_index, f"{entity} {query}", per_entity))
            docs = _unique_by_filename(docs)
            if docs:
                return docs[: max(plan.top_k, len(plan.target_entities))]
        hint = SEED_QUERY_HINTS.get(strategy, "")
        return _unique_by_filename(self._search(self.summary_index, query + hint, plan.top_k))

    def _starting_files(self, plan: SearchPlan) -> list[str]:
        if self.graph_builder is None:
            return []
        files = []
        for name in plan.starting_files:
            files.extend(self.graph_builder.resolve_name(name))
        return files

    def _retrieve(self, plan: SearchPlan) -> CodeContext:
        cm = self.context_manager
        query = plan.original_query
        strategy = plan.search_strategy
        budget = cm.create_budget(query, plan.token_budget)

        seed_docs = self._seed_summaries(plan)
        if not seed_docs:
            logger.info("No summary matches for %r", query)
            return CodeContext.empty(query, strategy.value)

        seeds: list[str] = []
        for filename in [d.filename for d in seed_docs] + self._starting_files(plan):
            if filename not in seeds:
                seeds.append(filename)

        near_limit = cm.is_near_limit(budget)
        hops = plan.max_hops - 1 if near_limit and plan.max_hops > 0 else plan.max_hops
        if self.graph_builder is not None and hops > 0:
            expanded = self.graph_builder.expand(
                seeds,
                hops,
                include_reverse=plan.include_reverse_deps,
                max_per_node=2 if near_limit else 4,
                max_reverse_per_node=1 if near_limit else 2,
                prioritize=lambda files: cm.prioritize_files(files, query, budget, min_score=0.0),
            )
        else:
            expanded = list(seeds)
        extra = cm.prioritize_files(expanded[len(seeds):], query, budget)
        relevant = seeds + extra
        logger.debug(
            "Retrieval %r: %d seeds, %d expanded, %d kept", query, len(seeds), len(expanded), len(relevant)
        )

        summary_docs = list(seed_docs)
        if extra:
            summary_docs += self._search(
                self.summary_index, query, len(extra), {"filename": extra}
            )
        file_summaries = []
        for doc in _unique_by_filename(summary_docs):
            if cm.can_add_content(doc.text, budget):
                cm.add_content(doc.text, budget)
                file_summaries.append({"filename": doc.filename, "text": doc.text})

        chunk_query = query + CHUNK_QUERY_HINTS.get(strategy, "")
        if plan.target_entities:
            chunk_query += " " + " ".join(plan.target_entities)
        chunk_docs = self._search(
            self.chunk_index, chunk_query, plan.top_k * 3, {"filename": relevant}
        )
        chunk_docs = cm.prune_content(chunk_docs, budget, query, text_of=lambda d: d.text)
        code_chunks = [
            {"filename": d.filename, "chunk_type": d.chunk_type, "text": d.text}
            for d in chunk_docs
        ]

        return CodeContext(
            query=query,
            search_strategy=strategy.value,
            confidence=plan.confidence,
            file_summaries=file_summaries,
            code_chunks=code_chunks,
            relevant_files=relevant,
            tokens_used=budget.used_tokens,
        )

    def retrieve_specific_file(self, filename: str) -> CodeContext:
        """Summary and chunks of exactly one file, without planning."""
        try:
            keys = self.graph_builder.resolve_name(filename) if self.graph_builder else []
            key = keys[0] if keys else filename
            filters = {"filename": key}
            summaries = self._search(self.summary_index, f"file: {key}", 5, filters)[:1]
            chunks = self._search(self.chunk_index, f"file: {key}", 20, filters)
        except Exception:
            logger.exception("Retrieval of %s failed; returning empty context", filename)
            return CodeContext.empty(filename, SPECIFIC_FILE_STRATEGY)

        if not summaries and not chunks:
            logger.info("No indexed content for %s", filename)
            return CodeContext.empty(filename, SPECIFIC_FILE_STRATEGY)

        cm = self.context_manager
        budget = cm.create_budget(filename)
        summaries = [d for d in summaries if cm.can_add_content(d.text, budget)]
        for doc in summaries:
            cm.add_content(doc.text, budget)
        chunks = cm.prune_content(chunks, budget, filename, text_of=lambda d: d.text)
        chunks.sort(key=lambda d: (d.start_line, d.id))
        return CodeContext(
            query=filename,
            search_strategy=SPECIFIC_FILE_STRATEGY,
            confidence=1.0,
            file_summaries=[{"filename": d.filename, "text": d.text} for d in summaries],
            code_chunks=[
                {"filename": d.filename, "chunk_type": d.chunk_type, "text": d.text}
                for d in chunks
            ],
            relevant_files=[key],
            tokens_used=budget.used_tokens,
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)
