# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Corpus-level embedding cache.

A cache directory holds exactly two files: ``embeddings.npz`` with every
indexed document and its vector, and ``documents.hash`` with the aggregate
corpus hash the blob was built from. A matching hash lets startup skip
re-embedding entirely. Documents in the blob carry their own content hash,
so a stale blob still serves vectors for the documents that did not change.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
from pathlib import Path
from typing import Iterable, Mapping, Optional

import numpy as np

from .hashing import FileHashTracker
from .models import Document

logger = logging.getLogger(__name__)

EMBEDDINGS_FILE = "embeddings.npz"
HASH_FILE = "documents.hash"

_STRING_COLUMNS = ("id", "filename", "text", "chunk_type", "content_hash", "name", "language")
_INT_COLUMNS = ("start_line", "end_line")


class EmbeddingCacheManager:
    def __init__(self, cache_dir: Path, enabled: bool = True):
        self.cache_dir = Path(cache_dir)
        self.enabled = enabled

    @property
    def embeddings_path(self) -> Path:
        return self.cache_dir / EMBEDDINGS_FILE

    @property
    def hash_path(self) -> Path:
        return self.cache_dir / HASH_FILE

    @staticmethod
    def combine_hashes(file_hashes: Mapping[str, str]) -> str:
        """Order-independent aggregate of ``{file_key: content_hash}``."""
        digest = hashlib.sha256()
        for key in sorted(file_hashes):
            digest.update(f"{key}:{file_hashes[key]}\n".encode("utf-8"))
        return digest.hexdigest()

    def calculate_documents_hash(self, paths: Iterable[Path]) -> str:
        """Aggregate hash of the corpus; unreadable files are left out."""
        file_hashes = {}
        for path in paths:
            file_hash = FileHashTracker.calculate_file_hash(path)
            if file_hash is None:
                logger.warning("Skipping unreadable file %s in corpus hash", path)
                continue
            file_hashes[str(path)] = file_hash
        return self.combine_hashes(file_hashes)

    def cache_file_exists(self) -> bool:
        return self.embeddings_path.is_file() and self.hash_path.is_file()

    def get_stored_hash(self) -> Optional[str]:
        try:
            return self.hash_path.read_text(encoding="utf-8").strip() or None
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Could not read cache marker %s: %s", self.hash_path, exc)
            return None

    def is_cache_valid(self, current_hash: str) -> bool:
        if not self.enabled or not self.cache_file_exists():
            return False
        stored = self.get_stored_hash()
        valid = stored == current_hash
        logger.debug("Embedding cache %s: %s", self.cache_dir, "valid" if valid else "stale")
        return valid

    def save_to_cache(self, documents: list[Document], corpus_hash: str) -> None:
        """Persist documents with vectors, then the marker."""
        if not self.enabled:
            return
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        arrays = {
            column: np.array([str(getattr(d, column)) for d in documents], dtype=str)
            for column in _STRING_COLUMNS
        }
        for column in _INT_COLUMNS:
            arrays[column] = np.array([getattr(d, column) for d in documents], dtype=np.int64)
        if documents:
            arrays["vectors"] = np.vstack(
                [np.asarray(d.vector, dtype="float32") for d in documents]
            )
        else:
            arrays["vectors"] = np.zeros((0, 0), dtype="float32")

        # Write the blob under a temporary name first so a crash never leaves
        # a marker pointing at a half-written blob.
        tmp_blob = self.cache_dir / "embeddings.tmp.npz"
        np.savez_compressed(tmp_blob, **arrays)
        os.replace(tmp_blob, self.embeddings_path)
        tmp_marker = self.cache_dir / "documents.hash.tmp"
        tmp_marker.write_text(corpus_hash, encoding="utf-8")
        os.replace(tmp_marker, self.hash_path)
        logger.info("Saved %d documents to embedding cache %s", len(documents), self.cache_dir)

    def load_from_cache(self) -> list[Document]:
        """Documents stored in the blob, or an empty list if there is none."""
        if not self.enabled or not self.embeddings_path.is_file():
            return []
        try:
            with np.load(self.embeddings_path, allow_pickle=False) as data:
                vectors = data["vectors"]
                columns = {c: data[c].tolist() for c in _STRING_COLUMNS + _INT_COLUMNS}
        except (OSError, ValueError, KeyError) as exc:
            logger.warning("Ignoring unreadable embedding cache %s: %s", self.embeddings_path, exc)
            return []

        documents = []
        for i in range(len(columns["id"])):
            documents.append(
                Document(
                    id=columns["id"][i],
                    filename=columns["filename"][i],
                    text=columns["text"][i],
                    chunk_type=columns["chunk_type"][i],
                    content_hash=columns["content_hash"][i],
                    name=columns["name"][i],
                    start_line=int(columns["start_line"][i]),
                    end_line=int(columns["end_line"][i]),
                    language=columns["language"][i],
                    vector=vectors[i],
                )
            )
        return documents

    def clear_cache(self) -> None:
        if self.cache_dir.exists():
            shutil.rmtree(self.cache_dir)
            logger.info("Cleared embedding cache %s", self.cache_dir)

    def get_cache_stats(self) -> dict[str, object]:
        exists = self.cache_file_exists()
        return {
            "enabled": self.enabled,
            "cache_dir": str(self.cache_dir),
            "exists": exists,
            "blob_bytes": self.embeddings_path.stat().st_size if exists else 0,
            "stored_hash": self.get_stored_hash() if exists else None,
        }
