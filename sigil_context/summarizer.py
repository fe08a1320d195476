# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
File summarizers used when building the summary index.

A summarizer is any ``(filename, content) -> str`` callable, typically a
language model. ``HeuristicSummarizer`` builds a structural summary from the
parsed source and needs no model.
"""

from __future__ import annotations

import logging
from typing import Callable

from .analysis import SourceParser, detect_language
from .errors import ParseFailure

logger = logging.getLogger(__name__)

SummarizeFn = Callable[[str, str], str]


class HeuristicSummarizer:
    def __init__(self, parser: SourceParser | None = None, max_items: int = 12):
        self.parser = parser or SourceParser()
        self.max_items = max_items

    def _listing(self, names: list[str]) -> str:
        shown = names[: self.max_items]
        more = len(names) - len(shown)
        return ", ".join(shown) + (f" and {more} more" if more > 0 else "")

    def __call__(self, filename: str, content: str) -> str:
        language = detect_language(filename)
        lines = [f"File: {filename}", f"Language: {language}"]
        try:
            parsed = self.parser.parse(filename, content)
        except ParseFailure as exc:
            logger.debug("Summarizing %s without structure: %s", filename, exc)
            parsed = None

        if parsed is None:
            first = next((ln.strip() for ln in content.splitlines() if ln.strip()), "")
            lines.append(f"Begins with: {first[:160]}")
            return "\n".join(lines)

        if parsed.package:
            lines.append(f"Package: {parsed.package}")
        if parsed.docstring:
            lines.append(f"Purpose: {parsed.docstring.strip().splitlines()[0][:300]}")
        classes = [c.name for c in parsed.classes]
        if classes:
            lines.append(f"Declares: {self._listing(classes)}")
        callables = []
        for fn in parsed.callables:
            qualified = f"{fn.scope}.{fn.name}" if fn.scope else fn.name
            if qualified not in callables:
                callables.append(qualified)
        if callables:
            lines.append(f"Methods: {self._listing(callables)}")
        if parsed.imports:
            lines.append(f"Depends on: {self._listing(sorted(set(parsed.imports)))}")
        return "\n".join(lines)
