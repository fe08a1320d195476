# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Stateless text parsing and chunking utilities."""

from __future__ import annotations

import functools
import math
from dataclasses import dataclass

import tiktoken

from ..models import ChunkType
from .symbols import CLASS_KINDS, ParsedSource, split_lines

TRUNCATION_MARKER = "..."
CONTENT_TRUNCATED_NOTICE = "\n// ... (truncated)"


@functools.lru_cache(maxsize=8)
def get_encoding(name: str):
    return tiktoken.get_encoding(name)


def count_tokens(s: str, encoding: str | None = None) -> int:
    """Estimate tokens for a string.

    Without an encoding this is ``ceil(chars / 4)``; with one, the exact
    tiktoken count for that encoding.
    """
    if not s:
        return 0
    if encoding:
        return len(get_encoding(encoding).encode(s, disallowed_special=()))
    return math.ceil(len(s) / 4)


def truncate_words(text: str, max_words: int, marker: str = TRUNCATION_MARKER) -> str:
    """Keep the first ``max_words`` words, appending ``marker`` when anything was cut."""
    words = text.split()
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words]) + marker


def truncate_for_summary(content: str, max_chars: int) -> str:
    """Bound the content handed to a summarizer."""
    if len(content) <= max_chars:
        return content
    return content[:max_chars] + CONTENT_TRUNCATED_NOTICE


def chunk_text(
    text: str, max_lines: int = 100, overlap: int = 10
) -> list[tuple[int, int, int, str]]:
    """Split text into overlapping chunks with line tracking."""
    lines = split_lines(text)
    chunks = []
    i = 0
    chunk_idx = 0
    step = max(1, max_lines - overlap)

    while i < len(lines):
        start = i
        end = min(i + max_lines, len(lines))
        if start >= end:
            break

        chunk = "\n".join(lines[start:end])
        chunks.append((chunk_idx, start + 1, end, chunk))  # 1-indexed lines
        chunk_idx += 1
        if end == len(lines):
            break
        i += step

    return chunks


@dataclass
class CodeSpan:
    """One class overview or method body cut from a source file."""

    chunk_type: str
    name: str
    start_line: int
    end_line: int
    text: str


def _class_overview(parsed: ParsedSource, cls, lines: list[str]) -> str:
    """Declaration, fields and member signatures of a class."""
    header = cls.signature or lines[cls.line - 1].strip()
    if parsed.package:
        header = f"package {parsed.package}\n{header}"
    members = parsed.members_of(cls.name)
    fields = [m.signature for m in members if m.kind == "field" and m.signature]
    methods = [m.signature for m in members if m.kind == "method" and m.signature]
    nested = [m.signature for m in members if m.kind in CLASS_KINDS and m.signature]
    parts = [header]
    if fields:
        parts.append("    // fields")
        parts += [f"    {f}" for f in fields]
    if nested:
        parts.append("    // nested types")
        parts += [f"    {n}" for n in nested]
    if methods:
        parts.append("    // methods")
        parts += [f"    {m}" for m in methods]
    return "\n".join(parts)


def split_code_chunks(
    parsed: ParsedSource | None,
    text: str,
    *,
    min_method_chars: int = 50,
    max_lines: int = 100,
    overlap: int = 10,
) -> list[CodeSpan]:
    """Cut a file into class-overview chunks and method chunks.

    Methods shorter than ``min_method_chars`` are dropped. Files without any
    class or callable fall back to overlapping line windows.
    """
    lines = split_lines(text)
    spans: list[CodeSpan] = []

    if parsed is not None:
        for cls in parsed.classes:
            spans.append(
                CodeSpan(
                    chunk_type=ChunkType.CLASS_CHUNK,
                    name=cls.name,
                    start_line=cls.line,
                    end_line=cls.end_line or cls.line,
                    text=_class_overview(parsed, cls, lines),
                )
            )
        for fn in parsed.callables:
            body = "\n".join(lines[fn.line - 1 : (fn.end_line or fn.line)])
            if len(body.strip()) < min_method_chars:
                continue
            name = f"{fn.scope}.{fn.name}" if fn.scope else fn.name
            spans.append(
                CodeSpan(
                    chunk_type=ChunkType.METHOD_CHUNK,
                    name=name,
                    start_line=fn.line,
                    end_line=fn.end_line or fn.line,
                    text=body,
                )
            )

    if not spans and text.strip():
        for idx, start, end, window in chunk_text(text, max_lines=max_lines, overlap=overlap):
            spans.append(
                CodeSpan(
                    chunk_type=ChunkType.CLASS_CHUNK,
                    name=f"lines {start}-{end}" if idx else "module",
                    start_line=start,
                    end_line=end,
                    text=window,
                )
            )
    return spans
