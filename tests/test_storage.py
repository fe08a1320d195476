# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Tests for vector tables, the similarity index and the state store.
"""

import numpy as np
import pytest

from sigil_context.errors import BackendFailure
from sigil_context.models import ChunkType, Document
from sigil_context.storage import (InMemoryVectorTable, SimilarityIndex,
                                   StateStore, build_where, open_vector_table)


def test_build_where():
    assert build_where(None) is None
    assert build_where({"filename": "a.py"}) == "filename = 'a.py'"
    assert build_where({"filename": ["b.py", "a.py"]}) == "filename IN ('a.py', 'b.py')"
    assert build_where({"filename": "it's.py"}) == "filename = 'it''s.py'"
    assert build_where({"filename": []}) == "false"
    assert build_where({"filename": "a.py", "chunk_type": "method-chunk"}) == (
        "filename = 'a.py' AND chunk_type = 'method-chunk'"
    )


class TestInMemoryVectorTable:
    """Tests for the in-memory table backend."""

    def _row(self, doc_id, filename, vector):
        return {"id": doc_id, "filename": filename, "vector": list(vector)}

    def test_search_orders_by_cosine_similarity(self):
        table = InMemoryVectorTable("t", 2)
        table.overwrite(
            [
                self._row("x", "x.py", [1.0, 0.0]),
                self._row("y", "y.py", [0.0, 1.0]),
                self._row("z", "z.py", [0.7, 0.7]),
            ]
        )

        hits = table.search(np.array([1.0, 0.1]), limit=2)

        assert [h["id"] for h in hits] == ["x", "z"]
        assert hits[0]["_distance"] < hits[1]["_distance"]

    def test_search_filters(self):
        table = InMemoryVectorTable("t", 2)
        table.overwrite([self._row("x", "x.py", [1.0, 0.0]), self._row("y", "y.py", [0.0, 1.0])])

        hits = table.search(np.array([1.0, 0.0]), limit=5, filters={"filename": ["y.py"]})

        assert [h["id"] for h in hits] == ["y"]

    def test_replace_and_delete_file(self):
        table = InMemoryVectorTable("t", 2)
        table.overwrite([self._row("x1", "x.py", [1, 0]), self._row("y1", "y.py", [0, 1])])

        table.replace_file("x.py", [self._row("x2", "x.py", [1, 0])])
        assert sorted(r["id"] for r in table.to_list()) == ["x2", "y1"]

        table.delete_file("y.py")
        assert [r["id"] for r in table.to_list()] == ["x2"]

    def test_open_vector_table_reuses_memory_tables(self, temp_dir):
        first = open_vector_table(temp_dir, "chunks", 4, backend="memory")
        second = open_vector_table(temp_dir, "chunks", 4, backend="memory")
        other = open_vector_table(temp_dir, "summaries", 4, backend="memory")

        assert first is second
        assert first is not other


class TestSimilarityIndex:
    """Tests for embedding, search and file replacement."""

    @pytest.fixture
    def index(self, hashing_embed_fn):
        table = InMemoryVectorTable("chunks", hashing_embed_fn.dimension)
        return SimilarityIndex("chunks", table, hashing_embed_fn, batch_size=2)

    def test_search_returns_documents_with_scores(self, index, make_document):
        index.reset(
            [
                make_document("chat/ChatService.java", "sendMessage", "send message to chat model"),
                make_document("config/AppConfig.java", "getModelName", "model name configuration"),
            ]
        )

        hits = index.search("send a chat message", top_k=1)

        assert len(hits) == 1
        assert hits[0].filename == "chat/ChatService.java"
        assert 0.0 < hits[0].score <= 1.0

    def test_search_with_filters(self, index, make_document):
        index.reset(
            [
                make_document("a.py", "one", "alpha beta"),
                make_document("b.py", "two", "alpha beta"),
            ]
        )
        hits = index.search("alpha", top_k=5, filters={"filename": "b.py"})
        assert [h.filename for h in hits] == ["b.py"]

    def test_replace_file_does_not_duplicate(self, index, make_document):
        index.reset([make_document("a.py", "one", "alpha"), make_document("b.py", "two", "beta")])

        for _ in range(3):
            index.replace_file("a.py", [make_document("a.py", "one", "alpha again")])

        rows = index.documents()
        assert len(rows) == 2
        assert {r.text for r in rows if r.filename == "a.py"} == {"alpha again"}

    def test_embed_documents_only_fills_missing_vectors(self, index, make_document):
        kept = make_document("a.py", "one", "alpha")
        kept.vector = np.ones(index.table.dimension, dtype="float32")
        fresh = make_document("b.py", "two", "beta")

        assert index.embed_documents([kept, fresh]) == 1
        np.testing.assert_array_equal(kept.vector, np.ones(index.table.dimension))
        assert fresh.vector.shape == (index.table.dimension,)

    def test_wrong_embedding_shape_is_backend_failure(self):
        table = InMemoryVectorTable("chunks", 8)
        index = SimilarityIndex("chunks", table, lambda texts: np.zeros((len(texts), 3)))
        with pytest.raises(BackendFailure):
            index.search("anything", top_k=3)

    def test_embedding_errors_surface_as_backend_failure(self):
        def broken(texts):
            raise RuntimeError("model offline")

        index = SimilarityIndex("chunks", InMemoryVectorTable("chunks", 8), broken)
        with pytest.raises(BackendFailure, match="model offline"):
            index.search("anything", top_k=3)

    def test_approximate_file_count(self, index, make_document):
        index.reset(
            [
                make_document("a.py", "one", "code alpha"),
                make_document("a.py", "two", "code beta"),
                make_document("b.py", "three", "code gamma"),
            ]
        )
        assert index.approximate_file_count() == 2
        assert index.count_rows() == 3


class TestStateStore:
    """Tests for the RocksDB-backed state store."""

    def test_set_get_delete(self, temp_dir):
        store = StateStore(temp_dir / "state")
        try:
            store.set("hash:a", {"path": "a", "current_hash": "1"})
            assert store.get("hash:a") == {"path": "a", "current_hash": "1"}
            store.delete("hash:a")
            assert store.get("hash:a", "missing") == "missing"
        finally:
            store.close()

    def test_items_and_clear_by_prefix(self, temp_dir):
        store = StateStore(temp_dir / "state")
        try:
            store.set("hash:a", 1)
            store.set("hash:b", 2)
            store.set("summary:x", "text")

            assert list(store.items("hash:")) == [("hash:a", 1), ("hash:b", 2)]
            assert store.clear("hash:") == 2
            assert list(store.items("hash:")) == []
            assert store.get("summary:x") == "text"
        finally:
            store.close()


def test_document_record_roundtrip_keeps_metadata():
    doc = Document(
        id="a.py#method-chunk:run:0",
        filename="a.py",
        text="def run(): ...",
        chunk_type=ChunkType.METHOD_CHUNK,
        content_hash="abc",
        name="run",
        start_line=3,
        end_line=9,
        language="python",
        vector=np.array([0.5, 0.5], dtype="float32"),
    )
    record = doc.to_record()
    record["_distance"] = 0.25

    restored = Document.from_record(record)

    assert restored.id == doc.id
    assert restored.chunk_type == ChunkType.METHOD_CHUNK
    assert restored.start_line == 3
    assert restored.score == pytest.approx(0.75)
