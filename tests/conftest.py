# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Pytest configuration and shared fixtures for the Sigil context engine tests.
"""

# ruff: noqa: E402
import os
import shutil
import tempfile
from pathlib import Path

import numpy as np
import pytest

# Keep vector tables in memory during tests to avoid native LanceDB setup
os.environ.setdefault("SIGIL_CONTEXT_INDEX_BACKEND", "memory")

import sigil_context.config as sigil_config
from sigil_context.embeddings import HashingEmbedder
from sigil_context.engine import ContextEngine
from sigil_context.models import ChunkType, Document, content_digest

TEST_DIMENSION = 128

CHAT_SERVICE = """package com.example.chat;

import com.example.config.AppConfig;

/**
 * Sends user messages to the chat model and records the conversation.
 */
public class ChatService {
    private final AppConfig config;
    private final MessageRepository repository;

    public ChatService(AppConfig config, MessageRepository repository) {
        this.config = config;
        this.repository = repository;
    }

    public String sendMessage(String conversationId, String message) {
        String reply = callModel(message);
        repository.save(conversationId, message, reply);
        return reply;
    }

    private String callModel(String message) {
        if (message == null || message.isEmpty()) {
            throw new IllegalArgumentException("message must not be empty");
        }
        return config.getModelName() + ": " + message;
    }
}
"""

MESSAGE_REPOSITORY = """package com.example.chat;

import java.util.ArrayList;
import java.util.List;

/**
 * Keeps every exchanged message in memory.
 */
public class MessageRepository {
    private final List<String> messages = new ArrayList<>();

    public void save(String conversationId, String message, String reply) {
        messages.add(conversationId + "|" + message + "|" + reply);
    }

    public List<String> findAll() {
        return new ArrayList<>(messages);
    }
}
"""

APP_CONFIG = """package com.example.config;

/**
 * Application configuration for the chat model.
 */
public class AppConfig {
    private String modelName = "chat-model";
    private int maxTokens = 2048;

    public String getModelName() {
        return modelName;
    }

    public int getMaxTokens() {
        return maxTokens;
    }
}
"""

CHAT_CONTROLLER = """package com.example.web;

import com.example.chat.ChatService;

/**
 * HTTP entry point for chat requests.
 */
public class ChatController {
    private final ChatService chatService;

    public ChatController(ChatService chatService) {
        this.chatService = chatService;
    }

    public String handleChat(String conversationId, String body) {
        return chatService.sendMessage(conversationId, body);
    }
}
"""

REPORT_PY = '''"""Conversation reporting helpers."""

from collections import Counter


def count_words(messages):
    """Count word frequencies across messages."""
    counter = Counter()
    for message in messages:
        counter.update(message.lower().split())
    return counter


class ReportBuilder:
    """Builds plain-text reports from stored messages."""

    def __init__(self, title):
        self.title = title

    def build(self, messages):
        counts = count_words(messages)
        lines = [self.title]
        for word, total in counts.most_common(5):
            lines.append(f"{word}: {total}")
        return "\\n".join(lines)
'''

SAMPLE_FILES = {
    "chat/ChatService.java": CHAT_SERVICE,
    "chat/MessageRepository.java": MESSAGE_REPOSITORY,
    "config/AppConfig.java": APP_CONFIG,
    "web/ChatController.java": CHAT_CONTROLLER,
    "tools/report.py": REPORT_PY,
}


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def sample_sources():
    """Repository-relative keys mapped to the sample source text."""
    return dict(SAMPLE_FILES)


@pytest.fixture
def test_repo_path(temp_dir):
    """Create a temporary repository with Java and Python sources."""
    repo_path = temp_dir / "test_repo"
    for key, text in SAMPLE_FILES.items():
        path = repo_path / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    (repo_path / "README.md").write_text("# Chat demo\n\nNot indexed.\n", encoding="utf-8")
    ignored = repo_path / "target"
    ignored.mkdir()
    (ignored / "Generated.java").write_text("public class Generated {}\n", encoding="utf-8")
    yield repo_path


@pytest.fixture
def dummy_embed_fn():
    """Create a deterministic embedding function for testing."""
    import hashlib

    from numpy.random import default_rng

    def embed_fn(texts):
        embeddings = np.empty((len(texts), TEST_DIMENSION), dtype="float32")

        for i, text in enumerate(texts):
            digest = hashlib.sha256(text.encode("utf-8")).digest()
            # Use int from digest to seed a local RNG; avoid global np.random state
            seed_int = int.from_bytes(digest[:8], "big", signed=False)
            rng = default_rng(seed_int)
            embeddings[i] = rng.standard_normal(TEST_DIMENSION).astype("float32")

        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        return embeddings / (norms + 1e-8)

    return embed_fn


@pytest.fixture
def hashing_embed_fn():
    """Token-hashing embedder; similar texts get similar vectors."""
    return HashingEmbedder(TEST_DIMENSION)


@pytest.fixture
def make_document():
    """Factory for method-chunk documents without vectors."""

    def factory(filename, name, text, chunk_type=ChunkType.METHOD_CHUNK):
        return Document(
            id=f"{filename}#{chunk_type}:{name}:0",
            filename=filename,
            text=text,
            chunk_type=chunk_type,
            content_hash=content_digest(text),
            name=name,
            start_line=1,
            end_line=text.count("\n") + 1,
            language="java" if filename.endswith(".java") else "python",
        )

    return factory


@pytest.fixture
def test_config(temp_dir, test_repo_path, monkeypatch):
    """Config pointing at the sample repository with private index and cache dirs."""
    cfg = sigil_config.Config(temp_dir / "no-such-config.json")
    cfg.config_data.update(
        {
            "sources": {"roots": [str(test_repo_path)]},
            "index": {"path": str(temp_dir / "index"), "backend": "memory"},
            "cache": {"path": str(temp_dir / "cache"), "enabled": True},
            "embeddings": {"provider": "hashing", "dimension": TEST_DIMENSION},
            "indexing": {"workers": 2},
            "retrieval": {"timeout_seconds": 5, "workers": 2},
        }
    )
    monkeypatch.setattr(sigil_config, "_config", cfg)
    return cfg


@pytest.fixture
def engine(test_config):
    """A ContextEngine over the sample repository (not yet built)."""
    eng = ContextEngine(test_config)
    yield eng
    eng.close()


@pytest.fixture
def built_engine(engine):
    """A ContextEngine with both indexes and the dependency graph built."""
    engine.build()
    return engine


@pytest.fixture
def test_config_file(temp_dir, test_repo_path):
    """Create a temporary config file for testing."""
    config_path = temp_dir / "config.json"
    config_data = {
        "server": {"log_level": "DEBUG"},
        "sources": {"roots": [str(test_repo_path)]},
        "index": {"path": str(temp_dir / "file_index"), "backend": "memory"},
        "cache": {"path": str(temp_dir / "file_cache")},
        "embeddings": {"provider": "hashing", "dimension": TEST_DIMENSION},
        "context": {"max_tokens": 6000, "reserved_tokens": 500},
    }

    import json
    with open(config_path, "w") as f:
        json.dump(config_data, f, indent=2)

    yield config_path
