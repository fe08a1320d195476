# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Tests for engine wiring, the command-line interface and the file watcher.
"""

import json
import threading

import pytest
from watchdog.events import FileDeletedEvent, FileModifiedEvent, FileMovedEvent

from sigil_context.cli import build_parser, main
from sigil_context.engine import ContextEngine
from sigil_context.watcher import IndexWatcher, SourceChangeHandler


class TestContextEngine:
    """Tests for the wired engine."""

    def test_build_reports_every_component(self, engine):
        result = engine.build()

        assert set(result) == {"summaries", "chunks", "graph", "similarity_graph"}
        assert result["summaries"]["documents"] == 5
        assert result["graph"]["files"] == 5
        assert result["similarity_graph"]["nodes"] == result["chunks"]["documents"]

    def test_stats(self, built_engine):
        stats = built_engine.stats()

        assert stats["summaries"]["documents"] == 5
        assert stats["summaries"]["cache"]["exists"] is True
        assert stats["tracker"]["tracked_files"] == 5
        assert stats["incremental"]["passes"] == 0
        assert "cache_hit_rate" in stats["summarizer"]

    def test_clear_cache_makes_every_file_new(self, built_engine):
        built_engine.clear_cache()

        assert built_engine.stats()["summaries"]["cache"]["exists"] is False
        assert built_engine.tracker.get_all_tracked_files() == []

        result = built_engine.reindex_changed()
        assert result.new_files == 5

    def test_fresh_engine_loads_graph_for_retrieval(self, test_config):
        with ContextEngine(test_config) as first:
            first.build()

        with ContextEngine(test_config) as second:
            context = second.retrieve_file("ChatService.java")

            assert context.relevant_files == ["chat/ChatService.java"]
            assert second.graph_builder.get_dependencies("chat/ChatService.java") == {
                "config/AppConfig.java",
                "chat/MessageRepository.java",
            }

    def test_hash_records_survive_restart(self, test_config):
        with ContextEngine(test_config) as first:
            first.build()

        with ContextEngine(test_config) as second:
            result = second.reindex_changed()

        assert result.changed_files == 0
        assert result.new_files == 0

    def test_unknown_embeddings_provider(self, test_config):
        test_config.config_data["embeddings"]["provider"] = "remote"
        with pytest.raises(ValueError):
            ContextEngine(test_config)


class TestCli:
    """Tests for the sigil-context command."""

    def _run(self, config_file, *args):
        return main(["--config", str(config_file), *args])

    def test_parser_requires_command(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_index_command(self, test_config_file, capsys):
        assert self._run(test_config_file, "index") == 0

        out = capsys.readouterr().out
        assert "BUILD INDEXES" in out
        assert "summaries: 5 documents" in out

    def test_query_plan_as_json(self, test_config_file, capsys):
        assert self._run(test_config_file, "query", "--plan", "Why", "does", "ChatService", "crash?") == 0

        plan = json.loads(capsys.readouterr().out)
        assert plan["intent"] == "DEBUG"
        assert plan["target_entities"] == ["ChatService"]

    def test_query_as_json(self, test_config_file, capsys):
        self._run(test_config_file, "index")
        capsys.readouterr()

        assert self._run(test_config_file, "query", "--json", "How does ChatService send a message?") == 0

        context = json.loads(capsys.readouterr().out)
        assert context["query"] == "How does ChatService send a message?"
        assert context["search_strategy"] == "entity_centered"
        assert "chat/ChatService.java" in context["relevant_files"]

    def test_file_command(self, test_config_file, capsys):
        self._run(test_config_file, "index")
        capsys.readouterr()

        assert self._run(test_config_file, "file", "AppConfig.java") == 0
        assert "config/AppConfig.java" in capsys.readouterr().out

        assert self._run(test_config_file, "file", "Missing.java") == 1

    def test_reindex_and_stats(self, test_config_file, capsys):
        self._run(test_config_file, "index")
        capsys.readouterr()

        assert self._run(test_config_file, "reindex") == 0
        result = json.loads(capsys.readouterr().out)
        assert result["changed_files"] == 0
        assert result["efficiency"] == 100.0

        assert self._run(test_config_file, "stats") == 0
        stats = json.loads(capsys.readouterr().out)
        assert stats["graph"]["files"] == 5

    def test_clear_cache_command(self, test_config_file, capsys):
        self._run(test_config_file, "index")
        assert self._run(test_config_file, "clear-cache") == 0
        assert "Cleared" in capsys.readouterr().out

    def test_invalid_provider_exit_code(self, test_config_file):
        data = json.loads(test_config_file.read_text())
        data["embeddings"]["provider"] = "remote"
        test_config_file.write_text(json.dumps(data))

        assert self._run(test_config_file, "stats") == 2


class TestWatcher:
    """Tests for debounced file-change handling."""

    @pytest.fixture
    def recorded(self):
        calls = []
        done = threading.Event()

        def on_change(paths):
            calls.append(paths)
            done.set()

        return calls, done, on_change

    def test_events_are_debounced_into_one_call(self, engine, test_repo_path, recorded):
        calls, done, on_change = recorded
        handler = SourceChangeHandler(engine.sources, on_change, debounce_seconds=0.05)
        service = str(test_repo_path / "chat" / "ChatService.java")
        config = str(test_repo_path / "config" / "AppConfig.java")

        handler.on_modified(FileModifiedEvent(service))
        handler.on_modified(FileModifiedEvent(service))
        handler.on_deleted(FileDeletedEvent(config))

        assert done.wait(2.0)
        assert calls == [{service, config}]

    def test_ignored_files_are_not_scheduled(self, engine, test_repo_path, recorded):
        calls, _, on_change = recorded
        handler = SourceChangeHandler(engine.sources, on_change, debounce_seconds=0.05)

        handler.on_modified(FileModifiedEvent(str(test_repo_path / "README.md")))
        handler.on_modified(FileModifiedEvent(str(test_repo_path / "target" / "Generated.java")))
        handler._flush()

        assert calls == []

    def test_move_schedules_both_paths(self, engine, test_repo_path, recorded):
        calls, _, on_change = recorded
        handler = SourceChangeHandler(engine.sources, on_change, debounce_seconds=60)
        src = str(test_repo_path / "chat" / "ChatService.java")
        dest = str(test_repo_path / "chat" / "ChatServiceImpl.java")

        handler.on_moved(FileMovedEvent(src, dest))
        handler._flush()
        handler.cancel()

        assert calls == [{src, dest}]

    def test_callback_errors_are_logged(self, engine, test_repo_path, caplog):
        def broken(paths):
            raise RuntimeError("index locked")

        handler = SourceChangeHandler(engine.sources, broken, debounce_seconds=60)
        handler._schedule(str(test_repo_path / "chat" / "ChatService.java"))
        handler._flush()
        handler.cancel()

        assert "Incremental re-index after file change failed" in caplog.text

    def test_index_watcher_lifecycle(self, built_engine):
        watcher = IndexWatcher(built_engine, debounce_seconds=0.05)

        watcher.start()
        assert watcher.is_running
        watcher.stop()

        assert not watcher.is_running
