# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Tests for the corpus-level embedding cache.
"""

import numpy as np
import pytest

from sigil_context.embedding_cache import (EMBEDDINGS_FILE, HASH_FILE,
                                           EmbeddingCacheManager)
from sigil_context.models import ChunkType, Document


@pytest.fixture
def cache(temp_dir):
    return EmbeddingCacheManager(temp_dir / "cache")


@pytest.fixture
def corpus(temp_dir):
    paths = []
    for name in ("A.java", "B.java"):
        path = temp_dir / name
        path.write_text(f"public class {name[0]} {{}}\n")
        paths.append(path)
    return paths


def _doc(doc_id, vector):
    return Document(
        id=doc_id,
        filename=doc_id.split("#")[0],
        text=f"text of {doc_id}",
        chunk_type=ChunkType.FILE_SUMMARY,
        content_hash="h-" + doc_id,
        name=doc_id,
        start_line=1,
        end_line=3,
        language="java",
        vector=np.asarray(vector, dtype="float32"),
    )


def test_documents_hash_is_order_independent(cache, corpus):
    forward = cache.calculate_documents_hash(corpus)
    backward = cache.calculate_documents_hash(list(reversed(corpus)))
    assert forward == backward


def test_documents_hash_changes_with_content(cache, corpus):
    before = cache.calculate_documents_hash(corpus)
    corpus[0].write_text("public class A { int x; }\n")
    assert cache.calculate_documents_hash(corpus) != before


def test_unreadable_files_are_left_out(cache, corpus, temp_dir):
    with_missing = cache.calculate_documents_hash(corpus + [temp_dir / "Gone.java"])
    assert with_missing == cache.calculate_documents_hash(corpus)


def test_cache_valid_iff_marker_matches(cache, corpus):
    corpus_hash = cache.calculate_documents_hash(corpus)
    assert not cache.cache_file_exists()
    assert cache.is_cache_valid(corpus_hash) is False

    cache.save_to_cache([_doc("A.java#summary", [1.0, 0.0])], corpus_hash)
    assert cache.cache_file_exists()
    assert cache.is_cache_valid(corpus_hash) is True

    corpus[1].write_text("public class B { void run() {} }\n")
    assert cache.is_cache_valid(cache.calculate_documents_hash(corpus)) is False


def test_cache_directory_holds_blob_and_marker(cache):
    cache.save_to_cache([], "abc")
    assert sorted(p.name for p in cache.cache_dir.iterdir()) == sorted(
        [EMBEDDINGS_FILE, HASH_FILE]
    )
    assert cache.get_stored_hash() == "abc"


def test_load_from_cache_restores_documents(cache):
    docs = [_doc("A.java#summary", [1.0, 0.0]), _doc("B.java#summary", [0.0, 1.0])]
    cache.save_to_cache(docs, "abc")

    loaded = cache.load_from_cache()

    assert [d.id for d in loaded] == ["A.java#summary", "B.java#summary"]
    assert loaded[0].filename == "A.java"
    assert loaded[0].content_hash == "h-A.java#summary"
    assert loaded[0].end_line == 3
    np.testing.assert_allclose(loaded[1].vector, [0.0, 1.0])


def test_load_without_cache_is_empty(cache):
    assert cache.load_from_cache() == []


def test_disabled_cache_is_never_valid_or_written(temp_dir):
    cache = EmbeddingCacheManager(temp_dir / "disabled", enabled=False)
    cache.save_to_cache([_doc("A.java#summary", [1.0])], "abc")

    assert not (temp_dir / "disabled").exists()
    assert cache.is_cache_valid("abc") is False
    assert cache.load_from_cache() == []


def test_clear_cache_and_stats(cache):
    cache.save_to_cache([_doc("A.java#summary", [1.0, 0.0])], "abc")
    stats = cache.get_cache_stats()
    assert stats["exists"] is True
    assert stats["stored_hash"] == "abc"
    assert stats["blob_bytes"] > 0

    cache.clear_cache()
    assert not cache.cache_dir.exists()
    assert cache.get_cache_stats()["exists"] is False
