# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Value types shared by the indexing and retrieval layers.
"""

from __future__ import annotations

import dataclasses
import hashlib
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import numpy as np


class ChunkType:
    """Document kinds stored in the similarity indexes."""

    FILE_SUMMARY = "file-summary"
    CLASS_CHUNK = "class-chunk"
    METHOD_CHUNK = "method-chunk"

    ALL = (FILE_SUMMARY, CLASS_CHUNK, METHOD_CHUNK)


class Intent(str, Enum):
    DEBUG = "DEBUG"
    ARCHITECTURE = "ARCHITECTURE"
    DEFINITION = "DEFINITION"
    IMPLEMENTATION = "IMPLEMENTATION"
    CONFIG = "CONFIG"
    CODE = "CODE"
    GENERAL = "GENERAL"


class SearchStrategy(str, Enum):
    SIMILARITY_SEARCH = "similarity_search"
    DEPENDENCY_GRAPH = "dependency_graph"
    ENTITY_CENTERED = "entity_centered"
    METHOD_FOCUSED = "method_focused"
    ERROR_TRACE = "error_trace"
    CONFIGURATION_CHAIN = "configuration_chain"


class Complexity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


def content_digest(text: str) -> str:
    """SHA-256 hex digest of a text, used as a content-addressed cache key."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class Document:
    """A summary or chunk stored in one of the similarity indexes.

    ``filename`` is the repository-relative POSIX path and is the file key
    used by every other component. ``content_hash`` identifies the content
    the document was derived from, so unchanged documents can reuse cached
    vectors and summaries.
    """

    id: str
    filename: str
    text: str
    chunk_type: str
    content_hash: str = ""
    name: str = ""
    start_line: int = 0
    end_line: int = 0
    language: str = ""
    vector: Optional[np.ndarray] = field(default=None, repr=False, compare=False)
    score: float = 0.0

    RECORD_FIELDS = (
        "id",
        "filename",
        "text",
        "chunk_type",
        "content_hash",
        "name",
        "start_line",
        "end_line",
        "language",
    )

    def to_record(self) -> dict[str, Any]:
        """Row representation for the vector tables."""
        record = {name: getattr(self, name) for name in self.RECORD_FIELDS}
        if self.vector is not None:
            record["vector"] = np.asarray(self.vector, dtype="float32").tolist()
        return record

    @classmethod
    def from_record(cls, row: dict[str, Any]) -> "Document":
        vector = row.get("vector")
        distance = row.get("_distance")
        return cls(
            id=str(row.get("id", "")),
            filename=str(row.get("filename", "")),
            text=str(row.get("text", "")),
            chunk_type=str(row.get("chunk_type", "")),
            content_hash=str(row.get("content_hash") or ""),
            name=str(row.get("name") or ""),
            start_line=int(row.get("start_line") or 0),
            end_line=int(row.get("end_line") or 0),
            language=str(row.get("language") or ""),
            vector=np.asarray(vector, dtype="float32") if vector is not None else None,
            score=float(1.0 - distance) if distance is not None else 0.0,
        )


@dataclass(frozen=True)
class SearchPlan:
    """Retrieval parameters chosen for one query."""

    original_query: str
    intent: Intent
    search_strategy: SearchStrategy
    target_entities: tuple[str, ...] = ()
    starting_files: tuple[str, ...] = ()
    search_keywords: tuple[str, ...] = ()
    complexity: Complexity = Complexity.MEDIUM
    top_k: int = 3
    max_hops: int = 1
    include_reverse_deps: bool = False
    token_budget: int = 7000
    confidence: float = 0.5

    def __post_init__(self):
        for name in ("target_entities", "starting_files", "search_keywords"):
            object.__setattr__(self, name, tuple(getattr(self, name)))
        if self.top_k <= 0:
            raise ValueError(f"top_k must be positive, got {self.top_k}")
        if self.max_hops < 0:
            raise ValueError(f"max_hops must be non-negative, got {self.max_hops}")
        if self.token_budget <= 0:
            raise ValueError(f"token_budget must be positive, got {self.token_budget}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    def with_overrides(self, **changes: Any) -> "SearchPlan":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["intent"] = self.intent.value
        data["search_strategy"] = self.search_strategy.value
        data["complexity"] = self.complexity.value
        for name in ("target_entities", "starting_files", "search_keywords"):
            data[name] = list(data[name])
        return data


@dataclass
class ContextBudget:
    """Token allowance for one retrieval.

    ``remaining_tokens`` is derived, so ``used_tokens + remaining_tokens``
    always equals ``max_tokens``. Remaining may go negative once the single
    most relevant item is forced in over budget.
    """

    max_tokens: int
    used_tokens: int = 0

    @property
    def remaining_tokens(self) -> int:
        return self.max_tokens - self.used_tokens

    @property
    def usage_percentage(self) -> float:
        if self.max_tokens <= 0:
            return 100.0
        return self.used_tokens * 100.0 / self.max_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_tokens": self.max_tokens,
            "used_tokens": self.used_tokens,
            "remaining_tokens": self.remaining_tokens,
            "usage_percentage": round(self.usage_percentage, 1),
        }


@dataclass
class FileHashRecord:
    path: str
    current_hash: str
    history_limit: int = 10
    history: deque = field(default_factory=deque)

    def __post_init__(self):
        self.history = deque(self.history, maxlen=max(1, self.history_limit))
        if not self.history:
            self.history.append((self.current_hash, time.time()))

    def update(self, new_hash: str) -> bool:
        """Record ``new_hash``; returns True when it differs from the current hash."""
        if new_hash == self.current_hash:
            return False
        self.current_hash = new_hash
        self.history.append((new_hash, time.time()))
        return True

    @property
    def previous_hash(self) -> Optional[str]:
        if len(self.history) < 2:
            return None
        return self.history[-2][0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "current_hash": self.current_hash,
            "history": [list(entry) for entry in self.history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], history_limit: int = 10) -> "FileHashRecord":
        return cls(
            path=data["path"],
            current_hash=data["current_hash"],
            history_limit=history_limit,
            history=deque(tuple(entry) for entry in data.get("history", [])),
        )


@dataclass(frozen=True)
class GraphNode:
    """A unit of content linked by similarity in the incremental graph."""

    id: str
    content: str
    type: str = ChunkType.METHOD_CHUNK

    @property
    def content_hash(self) -> str:
        return content_digest(f"{self.id}\x00{self.type}\x00{self.content}")


@dataclass(frozen=True)
class GraphEdge:
    source_id: str
    target_id: str
    weight: float


@dataclass
class CodeContext:
    """Retrieved context handed to the downstream conversation pipeline."""

    query: str
    search_strategy: str
    confidence: float
    file_summaries: list[dict[str, str]] = field(default_factory=list)
    code_chunks: list[dict[str, str]] = field(default_factory=list)
    relevant_files: list[str] = field(default_factory=list)
    tokens_used: int = 0

    NO_CONTEXT_NOTICE = (
        "No relevant code was retrieved for this query. Answer from general "
        "knowledge and do not reference specific project files."
    )

    @classmethod
    def empty(
        cls, query: str, search_strategy: str = SearchStrategy.SIMILARITY_SEARCH.value,
        confidence: float = 0.0,
    ) -> "CodeContext":
        return cls(query=query, search_strategy=search_strategy, confidence=confidence)

    def is_empty(self) -> bool:
        return not self.relevant_files

    def formatted(self) -> str:
        """Render the context as a Markdown block for prompt assembly."""
        if self.is_empty():
            return self.NO_CONTEXT_NOTICE

        lines = [
            f"## Retrieved code context ({self.search_strategy}, "
            f"confidence {self.confidence:.2f})",
            "",
            "Relevant files: " + ", ".join(self.relevant_files),
        ]
        if self.file_summaries:
            lines += ["", "### File summaries"]
            for summary in self.file_summaries:
                lines += ["", f"**{summary['filename']}**", summary["text"]]
        if self.code_chunks:
            lines += ["", "### Code"]
            for chunk in self.code_chunks:
                lines += [
                    "",
                    f"`{chunk['filename']}` ({chunk['chunk_type']})",
                    "```",
                    chunk["text"],
                    "```",
                ]
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class FileClassification:
    """Batch change classification; the four lists are disjoint."""

    changed: list = field(default_factory=list)
    new: list = field(default_factory=list)
    unchanged: list = field(default_factory=list)
    missing: list = field(default_factory=list)
    hashes: dict[str, str] = field(default_factory=dict)

    @property
    def to_index(self) -> list:
        return self.changed + self.new


@dataclass
class TrackerStatistics:
    tracked_files: int
    total_hash_changes: int

    @property
    def average_changes_per_file(self) -> float:
        if not self.tracked_files:
            return 0.0
        return self.total_hash_changes / self.tracked_files


@dataclass
class IndexBuildResult:
    """Outcome of a full summary or chunk indexing pass."""

    index_name: str
    files_seen: int = 0
    files_indexed: int = 0
    documents: int = 0
    reused_vectors: int = 0
    cache_hit: bool = False
    errors: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class IncrementalIndexResult:
    files_processed: int = 0
    changed_files: int = 0
    new_files: int = 0
    removed_files: int = 0
    chunks_indexed: int = 0
    errors: int = 0
    duration_seconds: float = 0.0

    @property
    def efficiency(self) -> float:
        """Percentage of files that did not need re-indexing."""
        if not self.files_processed:
            return 100.0
        touched = self.changed_files + self.new_files
        return (self.files_processed - touched) * 100.0 / self.files_processed

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["efficiency"] = round(self.efficiency, 1)
        return data


@dataclass
class IndexingStatistics:
    files_indexed: int = 0
    total_chunks: int = 0
    errors: int = 0
    passes: int = 0
    tracked_files: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class SummarizationResult:
    total_chunks: int = 0
    summarized_chunks: int = 0
    cached_chunks: int = 0
    errors: int = 0
    summaries: dict[str, str] = field(default_factory=dict, repr=False)

    @property
    def efficiency(self) -> float:
        """Percentage of chunks served from the summary cache."""
        if not self.total_chunks:
            return 0.0
        return self.cached_chunks * 100.0 / self.total_chunks


@dataclass
class GraphCalculationResult:
    total_nodes: int = 0
    nodes_processed: int = 0
    edges_calculated: int = 0
    cached_nodes: int = 0
    errors: int = 0

    @property
    def efficiency(self) -> float:
        if not self.total_nodes:
            return 0.0
        return self.cached_nodes * 100.0 / self.total_nodes

    def to_dict(self) -> dict[str, int]:
        return dataclasses.asdict(self)
