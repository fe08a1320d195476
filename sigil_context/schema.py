# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

from __future__ import annotations

import functools

from lancedb.pydantic import LanceModel, Vector


@functools.lru_cache(maxsize=None)
def get_document_model(dimension: int) -> type[LanceModel]:
    """LanceDB row model for summary and chunk documents of a given vector size."""

    class IndexedDocument(LanceModel):
        vector: Vector(dimension)  # type: ignore[valid-type]
        id: str
        filename: str
        text: str
        chunk_type: str
        content_hash: str
        name: str
        start_line: int
        end_line: int
        language: str

    return IndexedDocument
