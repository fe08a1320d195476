# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Token budgeting and relevance pruning for retrieved context.
"""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath
from typing import Any, Callable, Optional, Sequence, TypeVar

from .analysis import count_tokens, get_encoding
from .config import Config, get_config
from .models import ContextBudget

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROLE_WORDS = ("service", "config", "advisor", "controller", "manager", "repository")

STOP_WORDS = frozenset(
    """
    a an and are as at be by can do does for from how i in is it me of on or
    show tell that the this to use used uses what when where which who why
    with work works explain find get
    """.split()
)

_WORD_RE = re.compile(r"[A-Za-z0-9]+")
_CAMEL_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|[0-9]+")


def query_terms(query: str) -> list[str]:
    """Lower-cased query words longer than two characters, minus stop words."""
    terms = []
    for word in _WORD_RE.findall(query.lower()):
        if len(word) > 2 and word not in STOP_WORDS and word not in terms:
            terms.append(word)
    return terms


def filename_parts(filename: str) -> set[str]:
    """Lower-cased words of a path's file name, split on case and punctuation."""
    stem = PurePosixPath(filename).name
    parts = set()
    for word in _WORD_RE.findall(stem):
        parts.update(p.lower() for p in _CAMEL_RE.findall(word))
    return parts


class ContextManager:
    """Keeps retrieved context within a token budget."""

    def __init__(
        self,
        max_tokens: int = 7000,
        *,
        relevance_floor: float = 0.3,
        near_limit_ratio: float = 0.9,
        near_limit_file_cap: int = 3,
        tokenizer: Optional[str] = None,
    ):
        self.max_tokens = max_tokens
        self.relevance_floor = relevance_floor
        self.near_limit_ratio = near_limit_ratio
        self.near_limit_file_cap = near_limit_file_cap
        self.tokenizer = _checked_tokenizer(tokenizer)

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "ContextManager":
        cfg = config or get_config()
        return cls(
            cfg.context_available_tokens,
            relevance_floor=cfg.context_relevance_floor,
            near_limit_ratio=cfg.context_near_limit_ratio,
            near_limit_file_cap=cfg.context_near_limit_file_cap,
            tokenizer=cfg.context_tokenizer,
        )

    def estimate_tokens(self, text: str) -> int:
        return count_tokens(text, self.tokenizer)

    def create_budget(self, query: str, max_tokens: Optional[int] = None) -> ContextBudget:
        """New budget whose usage starts at the query's own token estimate."""
        limit = max_tokens if max_tokens is not None else self.max_tokens
        return ContextBudget(max_tokens=limit, used_tokens=self.estimate_tokens(query))

    def can_add_content(self, text: str, budget: ContextBudget) -> bool:
        return self.estimate_tokens(text) <= budget.remaining_tokens

    def add_content(self, text: str, budget: ContextBudget) -> int:
        """Charge ``text`` to the budget; callers check ``can_add_content`` first."""
        tokens = self.estimate_tokens(text)
        budget.used_tokens += tokens
        return tokens

    def is_near_limit(self, budget: ContextBudget) -> bool:
        if budget.max_tokens <= 0:
            return True
        return budget.used_tokens / budget.max_tokens >= self.near_limit_ratio

    def is_over_limit(self, budget: ContextBudget) -> bool:
        return budget.used_tokens > budget.max_tokens

    def score_file(self, filename: str, terms: Sequence[str]) -> float:
        parts = filename_parts(filename)
        lowered = PurePosixPath(filename).name.lower()
        score = 0.0
        for term in terms:
            if term in parts or term in lowered:
                score += 0.4
                if term in ROLE_WORDS:
                    score += 0.2
        return min(score, 1.0)

    def prioritize_files(
        self,
        files: Sequence[str],
        query: str,
        budget: ContextBudget,
        min_score: Optional[float] = None,
    ) -> list[str]:
        """Files ordered by relevance to ``query``, dropping those below the floor.

        Ties keep their input order. When the budget is nearly spent only the
        top few files are kept.
        """
        floor = self.relevance_floor if min_score is None else min_score
        terms = query_terms(query)
        scored = [(self.score_file(f, terms), f) for f in files]
        kept = [(s, f) for s, f in scored if s >= floor]
        kept.sort(key=lambda pair: pair[0], reverse=True)
        ranked = [f for _, f in kept]
        if self.is_near_limit(budget):
            ranked = ranked[: self.near_limit_file_cap]
        logger.debug("Prioritized %d of %d files for %r", len(ranked), len(files), query)
        return ranked

    def score_content(self, text: str, terms: Sequence[str]) -> float:
        lowered = text.lower()
        score = 0.0
        for term in terms:
            if term in lowered:
                score += 0.2
        for role in ROLE_WORDS:
            if role in terms and role in lowered:
                score += 0.1
        if len(text) > 5000:
            score *= 0.8
        return min(score, 1.0)

    def prune_content(
        self,
        items: Sequence[T],
        budget: ContextBudget,
        query: str,
        text_of: Optional[Callable[[T], str]] = None,
    ) -> list[T]:
        """Items that fit the remaining budget, most relevant first.

        If everything fits the items come back unchanged, in order. Otherwise
        items are picked greedily by relevance. The most relevant item is
        always kept, even when it alone exceeds the budget. Chosen items are
        charged to ``budget``.
        """
        if not items:
            return []
        text_of = text_of or _default_text
        costs = [self.estimate_tokens(text_of(item)) for item in items]
        if sum(costs) <= budget.remaining_tokens:
            budget.used_tokens += sum(costs)
            return list(items)

        terms = query_terms(query)
        order = sorted(
            range(len(items)),
            key=lambda i: self.score_content(text_of(items[i]), terms),
            reverse=True,
        )
        chosen: list[int] = []
        for i in order:
            if costs[i] <= budget.remaining_tokens:
                budget.used_tokens += costs[i]
                chosen.append(i)
        if not chosen:
            top = order[0]
            budget.used_tokens += costs[top]
            chosen.append(top)
            logger.debug("Forcing top item over budget (%d tokens)", costs[top])
        logger.debug("Pruned %d items to %d", len(items), len(chosen))
        return [items[i] for i in chosen]

    def get_budget_summary(self, budget: ContextBudget) -> dict[str, Any]:
        summary = budget.to_dict()
        summary["near_limit"] = self.is_near_limit(budget)
        summary["over_limit"] = self.is_over_limit(budget)
        return summary


def _checked_tokenizer(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    try:
        get_encoding(name)
    except Exception as exc:
        logger.warning("Tokenizer %r unavailable (%s); estimating tokens as chars/4", name, exc)
        return None
    return name


def _default_text(item: Any) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        return str(item.get("text", ""))
    return str(getattr(item, "text", item))
