# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Persistence backends: vector tables, the similarity index and the state store."""

from .state import StateStore
from .vector import (InMemoryVectorTable, LanceVectorTable, SimilarityIndex,
                     build_where, open_vector_table)

__all__ = [
    "InMemoryVectorTable",
    "LanceVectorTable",
    "SimilarityIndex",
    "StateStore",
    "build_where",
    "open_vector_table",
]
