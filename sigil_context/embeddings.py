# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Embedding functions.

The engine treats embedding models as black boxes with the ``EmbeddingFn``
signature. ``HashingEmbedder`` is a dependency-free local model: identifier
tokens are hashed into a fixed number of signed buckets, which is enough for
lexical-semantic matching of code and lets the engine run offline.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Callable, Optional, Sequence

import numpy as np

from .config import Config

logger = logging.getLogger(__name__)

EmbeddingFn = Callable[[Sequence[str]], np.ndarray]

_TOKEN_RE = re.compile(r"[A-Za-z][a-z0-9]*|[A-Z]+(?![a-z])|\d+")


def identifier_tokens(text: str) -> list[str]:
    """Lower-cased word pieces, splitting camelCase and snake_case identifiers."""
    return [t.lower() for t in _TOKEN_RE.findall(text)]


class HashingEmbedder:
    """Signed feature hashing over identifier tokens and token bigrams."""

    def __init__(self, dimension: int = 384):
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = dimension

    def _embed_one(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimension, dtype="float32")
        tokens = identifier_tokens(text)
        features = tokens + [f"{a}_{b}" for a, b in zip(tokens, tokens[1:])]
        for feature in features:
            digest = hashlib.sha1(feature.encode("utf-8")).digest()
            slot = int.from_bytes(digest[:4], byteorder="little", signed=False) % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[slot] += sign
        norm = np.linalg.norm(vector)
        if norm:
            vector /= norm
        return vector

    def __call__(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimension), dtype="float32")
        return np.vstack([self._embed_one(t) for t in texts])


def build_embedder(config: Config, embed_fn: Optional[EmbeddingFn] = None) -> EmbeddingFn:
    """Return ``embed_fn`` if given, otherwise the configured provider."""
    if embed_fn is not None:
        return embed_fn
    provider = (config.embeddings_provider or "hashing").lower()
    if provider == "hashing":
        logger.info("Using hashing embedder (dimension=%s)", config.embeddings_dimension)
        return HashingEmbedder(config.embeddings_dimension)
    raise ValueError(
        f"Unknown embeddings.provider '{provider}'; pass an embed_fn for external models"
    )
