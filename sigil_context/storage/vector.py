# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Vector tables and the similarity index built on them.

Two table backends share one small surface (search, replace_file,
delete_file, overwrite, count_rows, to_list): LanceDB for real use and an
in-memory table selected with ``index.backend = "memory"``. Writers never
mutate rows a reader may be iterating. The in-memory table swaps an
immutable row tuple, and LanceDB commits each write as a new table version.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

import lancedb
import numpy as np

from ..errors import BackendFailure
from ..models import Document
from ..schema import get_document_model

logger = logging.getLogger(__name__)

EmbeddingFn = Callable[[Sequence[str]], np.ndarray]
Filters = Mapping[str, Any]


def _quote(value: Any) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def build_where(filters: Optional[Filters]) -> Optional[str]:
    """Translate ``{"filename": "a.py", "chunk_type": [..]}`` into a SQL predicate."""
    if not filters:
        return None
    clauses = []
    for column, value in filters.items():
        if isinstance(value, (list, tuple, set, frozenset)):
            values = sorted(str(v) for v in value)
            if not values:
                clauses.append("false")
                continue
            clauses.append(f"{column} IN ({', '.join(_quote(v) for v in values)})")
        else:
            clauses.append(f"{column} = {_quote(value)}")
    return " AND ".join(clauses)


def _matches(row: Mapping[str, Any], filters: Optional[Filters]) -> bool:
    if not filters:
        return True
    for column, value in filters.items():
        cell = str(row.get(column))
        if isinstance(value, (list, tuple, set, frozenset)):
            if cell not in {str(v) for v in value}:
                return False
        elif cell != str(value):
            return False
    return True


class InMemoryVectorTable:
    """In-memory table with cosine scoring, used for tests and small corpora."""

    def __init__(self, name: str, dimension: int):
        self.name = name
        self.dimension = dimension
        self._rows: tuple[dict, ...] = ()
        self._lock = threading.Lock()

    def count_rows(self) -> int:
        return len(self._rows)

    def to_list(self) -> list[dict]:
        return [dict(r) for r in self._rows]

    def search(self, vector: np.ndarray, limit: int, filters: Optional[Filters] = None) -> list[dict]:
        rows = [r for r in self._rows if _matches(r, filters)]
        if not rows:
            return []
        matrix = np.asarray([r["vector"] for r in rows], dtype="float32")
        query = np.asarray(vector, dtype="float32")
        norms = np.linalg.norm(matrix, axis=1) * (np.linalg.norm(query) or 1.0)
        scores = (matrix @ query) / np.where(norms == 0, 1.0, norms)
        order = np.argsort(-scores, kind="stable")[:limit]
        results = []
        for i in order:
            row = dict(rows[i])
            row["_distance"] = float(1.0 - scores[i])
            results.append(row)
        return results

    def replace_file(self, filename: str, records: list[dict]) -> None:
        with self._lock:
            kept = [r for r in self._rows if r.get("filename") != filename]
            self._rows = tuple(kept + [dict(r) for r in records])

    def delete_file(self, filename: str) -> None:
        self.replace_file(filename, [])

    def overwrite(self, records: list[dict]) -> None:
        with self._lock:
            self._rows = tuple(dict(r) for r in records)


class LanceVectorTable:
    """LanceDB-backed table storing one row per document."""

    def __init__(self, base_path: Path, name: str, dimension: int):
        base_path.mkdir(parents=True, exist_ok=True)
        self.name = name
        self.dimension = dimension
        self._model = get_document_model(dimension)
        self._db = lancedb.connect(str(base_path))
        self._table = self._db.create_table(name, schema=self._model, exist_ok=True)
        self._lock = threading.Lock()

    def count_rows(self) -> int:
        return int(self._table.count_rows())

    def to_list(self) -> list[dict]:
        return self._table.to_arrow().to_pylist()

    def search(self, vector: np.ndarray, limit: int, filters: Optional[Filters] = None) -> list[dict]:
        query = self._table.search(np.asarray(vector, dtype="float32")).distance_type("cosine")
        where = build_where(filters)
        if where:
            query = query.where(where, prefilter=True)
        return query.limit(limit).to_list()

    def replace_file(self, filename: str, records: list[dict]) -> None:
        """Swap a file's rows in a single commit."""
        where = build_where({"filename": filename})
        with self._lock:
            if not records:
                self._table.delete(where)
                return
            (
                self._table.merge_insert("id")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .when_not_matched_by_source_delete(where)
                .execute(records)
            )

    def delete_file(self, filename: str) -> None:
        self.replace_file(filename, [])

    def overwrite(self, records: list[dict]) -> None:
        with self._lock:
            self._table = self._db.create_table(
                self.name, data=records or None, schema=self._model, mode="overwrite"
            )


_MEMORY_TABLES: dict[str, InMemoryVectorTable] = {}
_MEMORY_TABLES_LOCK = threading.Lock()


def open_vector_table(base_path: Path, name: str, dimension: int, backend: str = "lancedb"):
    """Open (or create) the named table on the configured backend."""
    if backend == "memory":
        key = f"{Path(base_path).expanduser().resolve()}::{name}"
        with _MEMORY_TABLES_LOCK:
            table = _MEMORY_TABLES.get(key)
            if table is None or table.dimension != dimension:
                table = InMemoryVectorTable(name, dimension)
                _MEMORY_TABLES[key] = table
            return table
    return LanceVectorTable(Path(base_path), name, dimension)


class SimilarityIndex:
    """Semantic index over :class:`Document` rows.

    Queries are embedded with the same function as the documents; backend
    errors surface as :class:`BackendFailure` so callers can degrade.
    """

    def __init__(self, name: str, table: Any, embed_fn: EmbeddingFn, *, batch_size: int = 64):
        self.name = name
        self.table = table
        self.embed_fn = embed_fn
        self.batch_size = max(1, batch_size)

    def _embed(self, texts: Sequence[str]) -> np.ndarray:
        vectors = np.asarray(self.embed_fn(list(texts)), dtype="float32")
        if vectors.ndim != 2 or vectors.shape != (len(texts), self.table.dimension):
            raise BackendFailure(
                f"Embedding function returned shape {vectors.shape}, "
                f"expected ({len(texts)}, {self.table.dimension})"
            )
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        return vectors / np.where(norms == 0, 1.0, norms)

    def embed_documents(self, documents: Iterable[Document]) -> int:
        """Fill in missing vectors in batches; returns how many were embedded."""
        missing = [d for d in documents if d.vector is None]
        for start in range(0, len(missing), self.batch_size):
            batch = missing[start : start + self.batch_size]
            vectors = self._embed([d.text for d in batch])
            for doc, vec in zip(batch, vectors):
                doc.vector = vec
        return len(missing)

    def search(self, query_text: str, top_k: int, filters: Optional[Filters] = None) -> list[Document]:
        if top_k <= 0:
            return []
        try:
            vector = self._embed([query_text])[0]
            rows = self.table.search(vector, top_k, filters)
        except BackendFailure:
            raise
        except Exception as exc:
            raise BackendFailure(f"{self.name} search failed: {exc}") from exc
        return [Document.from_record(r) for r in rows]

    def replace_file(self, filename: str, documents: list[Document]) -> None:
        """Replace every row of ``filename`` with ``documents``."""
        try:
            self.embed_documents(documents)
            self.table.replace_file(filename, [d.to_record() for d in documents])
        except BackendFailure:
            raise
        except Exception as exc:
            raise BackendFailure(f"{self.name} update of {filename} failed: {exc}") from exc

    def delete_file(self, filename: str) -> None:
        try:
            self.table.delete_file(filename)
        except Exception as exc:
            raise BackendFailure(f"{self.name} delete of {filename} failed: {exc}") from exc

    def reset(self, documents: list[Document]) -> None:
        """Replace the whole index with ``documents``."""
        try:
            self.embed_documents(documents)
            self.table.overwrite([d.to_record() for d in documents])
        except BackendFailure:
            raise
        except Exception as exc:
            raise BackendFailure(f"{self.name} rebuild failed: {exc}") from exc

    def count_rows(self) -> int:
        try:
            return self.table.count_rows()
        except Exception:
            logger.exception("Failed to count rows on %s index", self.name)
            return 0

    def documents(self) -> list[Document]:
        return [Document.from_record(r) for r in self.table.to_list()]

    def approximate_file_count(self, probe: str = "code", top_k: int = 1000) -> int:
        """Distinct files among the top hits of a broad probe query."""
        try:
            hits = self.search(probe, top_k)
        except BackendFailure:
            logger.warning("Could not estimate %s index size", self.name, exc_info=True)
            return 0
        return len({d.filename for d in hits})
