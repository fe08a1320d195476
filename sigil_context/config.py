# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Configuration loader for the Sigil context engine.

Loads configuration from config.json file with fallback to environment variables.
"""

import os
import json
from pathlib import Path
from typing import Dict, Any, Optional
import logging

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_DIMENSION = 384


def _parse_csv_list(raw_value: Optional[str]) -> list[str]:
    """Parse comma-separated environment variable values into a list."""
    if not raw_value:
        return []
    return [item.strip() for item in raw_value.split(",") if item.strip()]


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Config:
    """Configuration manager for the Sigil context engine."""

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to config.json file. If None, searches in:
                1. ./config.json (current directory)
                2. ~/.sigil_context/config.json
                3. Falls back to environment variables
        """
        self.config_data: Dict[str, Any] = {}
        self._load_config(config_path)
        self._validate_embeddings_dimension()

    def _load_config(self, config_path: Optional[Path] = None):
        """Load configuration from file or environment."""
        if config_path:
            if config_path.exists():
                self._load_from_file(config_path)
            else:
                logger.info(
                    "Config path %s does not exist, using environment variables",
                    config_path,
                )
                self._load_from_env()
            return

        local_config = Path("config.json")
        if local_config.exists():
            self._load_from_file(local_config)
            return

        user_config = Path.home() / ".sigil_context" / "config.json"
        if user_config.exists():
            self._load_from_file(user_config)
            return

        logger.info("No config.json found, using environment variables")
        self._load_from_env()

    def _validate_embeddings_dimension(self) -> None:
        """Validate the configured embeddings dimension, resetting bad values."""
        dimension_value = self.get("embeddings.dimension")
        if dimension_value is None:
            self.config_data.setdefault("embeddings", {}).setdefault(
                "dimension", DEFAULT_EMBEDDING_DIMENSION
            )
            return

        try:
            dimension = int(dimension_value)
            if dimension <= 0:
                raise ValueError(dimension)
        except (TypeError, ValueError):
            logger.warning(
                "Invalid embeddings.dimension '%s', defaulting to %s",
                dimension_value,
                DEFAULT_EMBEDDING_DIMENSION,
            )
            dimension = DEFAULT_EMBEDDING_DIMENSION

        self.config_data.setdefault("embeddings", {})["dimension"] = dimension

    def _load_from_file(self, path: Path):
        """Load configuration from JSON file."""
        try:
            with open(path, "r") as f:
                self.config_data = json.load(f)
            logger.info("Loaded configuration from %s", path)
        except (OSError, ValueError) as e:
            logger.error("Error loading config from %s: %s", path, e)
            self._load_from_env()

    def _load_from_env(self):
        """Load configuration from SIGIL_CONTEXT_* environment variables."""
        self.config_data = {
            "server": {
                "log_level": os.getenv("SIGIL_CONTEXT_LOG_LEVEL", "INFO"),
            },
            "sources": {
                "roots": _parse_csv_list(os.getenv("SIGIL_CONTEXT_SOURCE_ROOTS")) or ["."],
            },
            "index": {
                "path": os.getenv("SIGIL_CONTEXT_INDEX_PATH", "~/.sigil_context/index"),
            },
            "cache": {
                "path": os.getenv("SIGIL_CONTEXT_CACHE_PATH", "./cache"),
                "enabled": _env_flag("SIGIL_CONTEXT_CACHE_ENABLED", "true"),
            },
            "context": {
                "max_tokens": int(os.getenv("SIGIL_CONTEXT_MAX_TOKENS", "8000")),
                "reserved_tokens": int(os.getenv("SIGIL_CONTEXT_RESERVED_TOKENS", "1000")),
            },
            "embeddings": {
                "provider": os.getenv("SIGIL_CONTEXT_EMBEDDINGS_PROVIDER", "hashing"),
                "dimension": os.getenv(
                    "SIGIL_CONTEXT_EMBEDDINGS_DIMENSION", str(DEFAULT_EMBEDDING_DIMENSION)
                ),
            },
            "watch": {
                "enabled": _env_flag("SIGIL_CONTEXT_WATCH_ENABLED", "true"),
                "debounce_seconds": float(os.getenv("SIGIL_CONTEXT_WATCH_DEBOUNCE", "2.0")),
            },
        }

    # Getters for easy access
    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-notation key."""
        keys = key.split(".")
        value = self.config_data
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    @property
    def log_level(self) -> str:
        return os.getenv("SIGIL_CONTEXT_LOG_LEVEL") or self.get("server.log_level", "INFO")

    @property
    def log_file(self) -> Optional[str]:
        """Get log file path from config or environment."""
        env_log_file = os.getenv("SIGIL_CONTEXT_LOG_FILE")
        if env_log_file:
            return env_log_file
        return self.get("server.log_file") or None

    @property
    def source_roots(self) -> list[Path]:
        """Get the directories whose source files are indexed."""
        roots = self.get("sources.roots", ["."])
        if isinstance(roots, str):
            roots = [roots]
        return [Path(r).expanduser() for r in roots]

    @property
    def include_extensions(self) -> list[str]:
        return self.get("sources.include_extensions", [
            ".java", ".kt", ".scala", ".groovy",
            ".py",
            ".js", ".ts",
            ".go", ".cs", ".rs",
        ])

    @property
    def ignore_dirs(self) -> list[str]:
        """Get directories skipped while walking and watching sources."""
        return self.get("sources.ignore_dirs", [
            # Version control
            ".git", ".hg", ".svn",
            # Python
            "__pycache__", ".pytest_cache", ".mypy_cache", ".ruff_cache", ".tox",
            "build", "dist", ".eggs", "htmlcov",
            # Virtual environments
            "venv", ".venv", "env",
            # IDE
            ".vscode", ".idea",
            # JVM / Node build output
            "target", "out", ".gradle", "node_modules",
            # Runtime state
            "cache", ".sigil_context",
        ])

    @property
    def ignore_extensions(self) -> list[str]:
        return self.get("sources.ignore_extensions", [
            ".pyc", ".pyo", ".class", ".jar", ".so", ".dll", ".min.js",
            ".tmp", ".swp", ".log",
        ])

    @property
    def max_file_bytes(self) -> int:
        return int(self.get("sources.max_file_bytes", 1_000_000))

    @property
    def index_path(self) -> Path:
        path = os.getenv("SIGIL_CONTEXT_INDEX_PATH") or self.get(
            "index.path", "~/.sigil_context/index"
        )
        return Path(path).expanduser()

    @property
    def index_backend(self) -> str:
        """Get the vector table backend: "lancedb" or "memory"."""
        backend = os.getenv("SIGIL_CONTEXT_INDEX_BACKEND") or self.get("index.backend", "lancedb")
        backend = str(backend).lower()
        if backend not in ("lancedb", "memory"):
            logger.warning("Unknown index.backend '%s', using lancedb", backend)
            return "lancedb"
        return backend

    @property
    def state_path(self) -> Path:
        """Get the RocksDB directory holding hash records and summary caches."""
        path = self.get("state.path")
        if path:
            return Path(path).expanduser()
        return self.index_path / "state"

    @property
    def cache_path(self) -> Path:
        return Path(self.get("cache.path", "./cache")).expanduser()

    @property
    def cache_enabled(self) -> bool:
        return bool(self.get("cache.enabled", True))

    @property
    def embeddings_provider(self) -> str:
        return self.get("embeddings.provider", "hashing")

    @property
    def embeddings_dimension(self) -> int:
        """Get embedding dimension."""
        value = self.get("embeddings.dimension", DEFAULT_EMBEDDING_DIMENSION)
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(
                "Invalid embeddings.dimension '%s', defaulting to %s",
                value,
                DEFAULT_EMBEDDING_DIMENSION,
            )
            return DEFAULT_EMBEDDING_DIMENSION

    @property
    def embeddings_batch_size(self) -> int:
        return int(self.get("embeddings.batch_size", 64))

    @property
    def context_max_tokens(self) -> int:
        return int(self.get("context.max_tokens", 8000))

    @property
    def context_reserved_tokens(self) -> int:
        """Tokens held back for the downstream prompt and response."""
        return int(self.get("context.reserved_tokens", 1000))

    @property
    def context_available_tokens(self) -> int:
        return max(1, self.context_max_tokens - self.context_reserved_tokens)

    @property
    def context_near_limit_ratio(self) -> float:
        return float(self.get("context.near_limit_ratio", 0.9))

    @property
    def context_near_limit_file_cap(self) -> int:
        return int(self.get("context.near_limit_file_cap", 3))

    @property
    def context_relevance_floor(self) -> float:
        return float(self.get("context.relevance_floor", 0.3))

    @property
    def context_tokenizer(self) -> Optional[str]:
        """Get the tiktoken encoding name, or None for the chars/4 estimate."""
        return self.get("context.tokenizer") or None

    @property
    def retrieval_timeout_seconds(self) -> float:
        return float(self.get("retrieval.timeout_seconds", 10.0))

    @property
    def retrieval_workers(self) -> int:
        return int(self.get("retrieval.workers", 4))

    @property
    def indexing_workers(self) -> int:
        return max(1, int(self.get("indexing.workers", os.cpu_count() or 4)))

    @property
    def graph_edge_threshold(self) -> float:
        return float(self.get("graph.edge_threshold", 0.3))

    @property
    def graph_max_call_fanout(self) -> int:
        """Method names defined in more files than this are not linked."""
        return int(self.get("graph.max_call_fanout", 5))

    @property
    def hashing_history_limit(self) -> int:
        return max(1, int(self.get("hashing.history_limit", 10)))

    @property
    def summary_max_words(self) -> int:
        return int(self.get("incremental.summary_max_words", 100))

    @property
    def summary_min_chars(self) -> int:
        """Files shorter than this are not summarized."""
        return int(self.get("summaries.min_chars", 100))

    @property
    def summary_max_chars(self) -> int:
        """Content passed to the summarizer is truncated past this length."""
        return int(self.get("summaries.max_chars", 4000))

    @property
    def chunking_min_method_chars(self) -> int:
        return int(self.get("chunking.min_method_chars", 50))

    @property
    def chunking_max_lines(self) -> int:
        return int(self.get("chunking.max_lines", 100))

    @property
    def chunking_overlap(self) -> int:
        return int(self.get("chunking.overlap", 10))

    @property
    def planner_entity_extensions(self) -> list[str]:
        """Extensions used when guessing a starting file from a class name."""
        return self.get("planner.entity_extensions", [".java", ".py"])

    @property
    def watch_enabled(self) -> bool:
        """Get whether file watching is enabled."""
        return self.get("watch.enabled", True)

    @property
    def watch_debounce_seconds(self) -> float:
        """Get file watch debounce time in seconds."""
        return float(self.get("watch.debounce_seconds", 2.0))


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def load_config(config_path: Optional[Path] = None) -> Config:
    """Load configuration from specific path."""
    global _config
    _config = Config(config_path)
    return _config
