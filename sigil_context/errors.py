# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Exception types raised inside the context engine.

Indexing code catches these per file and retrieval code catches them per
request, so none of them escape a full indexing pass or a retrieval call.
"""

from __future__ import annotations


class SigilContextError(Exception):
    """Base class for context engine errors."""


class SourceNotFoundError(SigilContextError):
    """A source file disappeared or could not be read."""

    def __init__(self, path: str, reason: str | None = None):
        self.path = path
        self.reason = reason
        message = f"Source file not found: {path}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class ParseFailure(SigilContextError):
    """A source file could not be parsed into symbols."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to parse {path}: {reason}")


class BackendFailure(SigilContextError):
    """A similarity-index or cache backend call failed or timed out."""
