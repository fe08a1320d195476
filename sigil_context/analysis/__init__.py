# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Pure analysis helpers for chunking, symbol extraction, and language classification."""

from .chunking import (CodeSpan, chunk_text, count_tokens, get_encoding,
                       split_code_chunks, truncate_for_summary, truncate_words)
from .languages import detect_language, module_name_for
from .symbols import ParsedSource, SourceParser, Symbol

__all__ = [
    "CodeSpan",
    "ParsedSource",
    "SourceParser",
    "Symbol",
    "chunk_text",
    "count_tokens",
    "detect_language",
    "get_encoding",
    "module_name_for",
    "split_code_chunks",
    "truncate_for_summary",
    "truncate_words",
]
