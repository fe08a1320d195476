# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Tests for incremental summarization, similarity edges and re-indexing.
"""

import pytest

from sigil_context.engine import ContextEngine
from sigil_context.incremental import (IncrementalGraphCalculator,
                                       IncrementalSummarizer, token_jaccard,
                                       token_set)
from sigil_context.models import GraphNode

FORMATTER = """package com.example.chat;

/**
 * Formats replies before they are returned to the caller.
 */
public class MessageFormatter {
    public String format(String reply) {
        return "[bot] " + reply.trim();
    }
}
"""

APP_CONFIG_V2 = """package com.example.config;

/**
 * Application configuration for the chat model.
 */
public class AppConfig {
    private String modelName = "chat-model";
    private double temperature = 0.2;

    public String getModelName() {
        return modelName;
    }

    public double getTemperature() {
        return temperature;
    }
}
"""


def _docs_for(index, filename):
    return [d for d in index.documents() if d.filename == filename]


def test_token_set_is_lowercase_identifiers():
    assert token_set("sendMessage(config.Model_Name, 42)") == {"sendmessage", "config", "model_name"}


def test_token_jaccard():
    assert token_jaccard(frozenset(), frozenset()) == 0.0
    assert token_jaccard(frozenset({"a", "b"}), frozenset({"b", "c"})) == pytest.approx(1 / 3)


class TestIncrementalSummarizer:
    """Tests for content-addressed chunk summaries."""

    def test_long_text_is_truncated(self, make_document):
        summarizer = IncrementalSummarizer(max_words=5)
        chunk = make_document("a.py", "run", "one two three four five six seven")

        result = summarizer.summarize_changed_chunks([chunk])

        assert result.summaries[chunk.id] == "one two three four five..."
        assert result.summarized_chunks == 1

    def test_short_text_is_kept(self):
        assert IncrementalSummarizer(max_words=5).summarize("just three words") == "just three words"

    def test_identical_content_is_served_from_cache(self, make_document):
        summarizer = IncrementalSummarizer()
        first = make_document("a.py", "run", "def run(): return 1")
        twin = make_document("b.py", "run", "def run(): return 1")

        summarizer.summarize_changed_chunks([first])
        result = summarizer.summarize_changed_chunks([twin, first])

        assert result.cached_chunks == 2
        assert result.summarized_chunks == 0
        assert result.efficiency == 100.0
        assert summarizer.get_chunk_summary(twin.id) == "def run(): return 1"

    def test_forget_and_clear(self, make_document):
        summarizer = IncrementalSummarizer()
        chunk = make_document("a.py", "run", "def run(): return 1")
        summarizer.summarize_changed_chunks([chunk])

        summarizer.forget_chunks([chunk.id])
        assert summarizer.get_all_summaries() == {}
        assert summarizer.get_statistics()["cached_summaries"] == 1

        summarizer.clear_cache()
        assert summarizer.get_statistics()["cached_summaries"] == 0

    def test_statistics(self, make_document):
        summarizer = IncrementalSummarizer()
        chunk = make_document("a.py", "run", "def run(): return 1")
        summarizer.summarize_changed_chunks([chunk])
        summarizer.summarize_changed_chunks([chunk])

        stats = summarizer.get_statistics()
        assert stats["total_summarized"] == 1
        assert stats["total_cached"] == 1
        assert stats["cache_hit_rate"] == 50.0


class TestIncrementalGraphCalculator:
    """Tests for similarity edges between chunks."""

    @pytest.fixture
    def nodes(self):
        return [
            GraphNode("a", "send message chat model"),
            GraphNode("b", "send message chat reply"),
            GraphNode("c", "completely unrelated words here"),
        ]

    def test_similar_nodes_are_linked(self, nodes):
        calculator = IncrementalGraphCalculator(threshold=0.3)

        result = calculator.calculate_changed_edges(nodes)

        assert result.total_nodes == 3
        assert result.nodes_processed == 3
        assert result.edges_calculated == 1
        [edge] = calculator.get_node_edges("a")
        assert edge.target_id == "b"
        assert edge.weight == pytest.approx(0.6)
        assert calculator.get_node_edges("c") == []

    def test_edges_are_symmetric(self, nodes):
        calculator = IncrementalGraphCalculator()
        calculator.calculate_changed_edges(nodes)

        assert [e.target_id for e in calculator.get_node_edges("b")] == ["a"]
        assert [(e.source_id, e.target_id) for e in calculator.get_all_edges()] == [("a", "b")]

    def test_unchanged_rerun_is_cached(self, nodes):
        calculator = IncrementalGraphCalculator()
        calculator.calculate_changed_edges(nodes)

        result = calculator.calculate_changed_edges(nodes)

        assert result.cached_nodes == result.total_nodes == 3
        assert result.nodes_processed == 0
        assert result.edges_calculated == 0
        assert len(calculator.get_all_edges()) == 1

    def test_changed_node_drops_stale_edges(self, nodes):
        calculator = IncrementalGraphCalculator()
        calculator.calculate_changed_edges(nodes)

        calculator.calculate_changed_edges([GraphNode("a", "completely unrelated words there")])

        assert [e.target_id for e in calculator.get_node_edges("a")] == ["c"]
        assert calculator.get_node_edges("b") == []

    def test_remove_nodes(self, nodes):
        calculator = IncrementalGraphCalculator()
        calculator.calculate_changed_edges(nodes)

        assert calculator.remove_nodes(["b", "unknown"]) == 1
        assert calculator.get_node_edges("a") == []
        assert calculator.get_statistics()["nodes"] == 2

    def test_statistics_and_clear(self, nodes):
        calculator = IncrementalGraphCalculator()
        calculator.calculate_changed_edges(nodes)

        stats = calculator.get_statistics()
        assert stats["nodes"] == 3
        assert stats["edges"] == 1
        assert stats["average_degree"] == pytest.approx(2 / 3)

        calculator.clear_cache()
        assert calculator.get_statistics()["nodes"] == 0


class TestIncrementalIndexer:
    """End-to-end incremental passes over the sample repository."""

    def test_unchanged_pass_is_a_no_op(self, built_engine):
        chunk_ids = sorted(d.id for d in built_engine.chunk_index.documents())
        summary_ids = sorted(d.id for d in built_engine.summary_index.documents())

        result = built_engine.reindex_changed()

        assert result.changed_files == 0
        assert result.new_files == 0
        assert result.removed_files == 0
        assert result.efficiency == 100.0
        assert sorted(d.id for d in built_engine.chunk_index.documents()) == chunk_ids
        assert sorted(d.id for d in built_engine.summary_index.documents()) == summary_ids

    def test_modified_file_chunks_are_replaced(self, built_engine, test_repo_path):
        service_before = sorted(d.id for d in _docs_for(built_engine.chunk_index, "chat/ChatService.java"))
        (test_repo_path / "config" / "AppConfig.java").write_text(APP_CONFIG_V2)

        result = built_engine.reindex_changed()

        assert result.changed_files == 1
        assert result.new_files == 0
        config_docs = _docs_for(built_engine.chunk_index, "config/AppConfig.java")
        assert "AppConfig.getTemperature" in {d.name for d in config_docs}
        assert not any("getMaxTokens" in d.text for d in config_docs)
        all_ids = [d.id for d in built_engine.chunk_index.documents()]
        assert len(all_ids) == len(set(all_ids))
        assert sorted(d.id for d in _docs_for(built_engine.chunk_index, "chat/ChatService.java")) == service_before

    def test_repeated_passes_do_not_duplicate(self, built_engine, test_repo_path):
        (test_repo_path / "config" / "AppConfig.java").write_text(APP_CONFIG_V2)
        built_engine.reindex_changed()
        rows = built_engine.chunk_index.count_rows()

        built_engine.reindex_changed()
        built_engine.reindex_changed()

        assert built_engine.chunk_index.count_rows() == rows

    def test_deleted_file_is_removed_everywhere(self, built_engine, test_repo_path):
        path = test_repo_path / "chat" / "MessageRepository.java"
        path.unlink()

        result = built_engine.reindex_changed()

        assert result.removed_files == 1
        assert _docs_for(built_engine.chunk_index, "chat/MessageRepository.java") == []
        assert _docs_for(built_engine.summary_index, "chat/MessageRepository.java") == []
        assert "chat/MessageRepository.java" not in built_engine.graph_builder.graph.files
        assert str(path) not in built_engine.tracker.get_all_tracked_files()

    def test_new_file_is_indexed(self, built_engine, test_repo_path):
        (test_repo_path / "chat" / "MessageFormatter.java").write_text(FORMATTER)

        result = built_engine.reindex_changed()

        assert result.new_files == 1
        assert result.changed_files == 0
        assert _docs_for(built_engine.chunk_index, "chat/MessageFormatter.java")
        assert _docs_for(built_engine.summary_index, "chat/MessageFormatter.java")
        assert "chat/MessageFormatter.java" in built_engine.graph_builder.graph.files

    def test_derived_state_tracks_live_chunks(self, built_engine, test_repo_path):
        (test_repo_path / "config" / "AppConfig.java").write_text(APP_CONFIG_V2)
        (test_repo_path / "web" / "ChatController.java").unlink()
        built_engine.reindex_changed()

        live = {d.id for d in built_engine.chunk_index.documents()}
        assert built_engine.graph_calculator.get_statistics()["nodes"] == len(live)
        assert set(built_engine.summarizer.get_all_summaries()) == live

    def test_statistics_accumulate(self, built_engine, test_repo_path):
        (test_repo_path / "config" / "AppConfig.java").write_text(APP_CONFIG_V2)
        built_engine.reindex_changed()
        built_engine.reindex_changed()

        stats = built_engine.incremental.get_statistics()
        assert stats.passes == 2
        assert stats.files_indexed == 1
        assert stats.total_chunks > 0
        assert stats.tracked_files == 5

        built_engine.incremental.reset_statistics()
        assert built_engine.incremental.get_statistics().passes == 0


def _edges_outside(calculator, filename):
    prefix = f"{filename}#"
    return {
        (e.source_id, e.target_id, e.weight)
        for e in calculator.get_all_edges()
        if not e.source_id.startswith(prefix) and not e.target_id.startswith(prefix)
    }


def test_fresh_process_keeps_similarity_edges(test_config, test_repo_path):
    with ContextEngine(test_config) as first:
        first.build()
        unchanged_edges = _edges_outside(first.graph_calculator, "config/AppConfig.java")

    (test_repo_path / "config" / "AppConfig.java").write_text(APP_CONFIG_V2)

    with ContextEngine(test_config) as second:
        result = second.reindex_changed()
        live = {d.id for d in second.chunk_index.documents()}

        assert result.changed_files == 1
        assert second.graph_calculator.get_statistics()["nodes"] == len(live)
        assert _edges_outside(second.graph_calculator, "config/AppConfig.java") == unchanged_edges
        assert set(second.summarizer.get_all_summaries()) == live
