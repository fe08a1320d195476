# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Rule-based query planning.

A query is matched against ``PLANNING_RULES`` in order; the first rule whose
predicate holds fixes the intent, search strategy and confidence. Strategy
defaults then set the retrieval parameters, adjusted for query complexity.
Planning is local and deterministic and never raises.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, NamedTuple, Optional, Sequence

from .config import Config, get_config
from .context_manager import query_terms
from .models import Complexity, Intent, SearchPlan, SearchStrategy

logger = logging.getLogger(__name__)

ROLE_SUFFIXES = (
    "Service", "Controller", "Config", "Manager", "Advisor",
    "Builder", "Repository", "Handler", "Factory",
)

_CAMEL_CLASS_RE = re.compile(r"\b(?:[A-Z][a-z0-9]+){2,}\b")
_ROLE_CLASS_RE = re.compile(r"\b[A-Z][A-Za-z0-9]*(?:%s)\b" % "|".join(ROLE_SUFFIXES))
_CAMEL_METHOD_RE = re.compile(r"\b[a-z][a-z0-9]*(?:[A-Z][a-z0-9]*)+\b")
_SNAKE_METHOD_RE = re.compile(r"\b[a-z][a-z0-9]*(?:_[a-z0-9]+)+\b")
_CALL_RE = re.compile(r"\b([A-Za-z_][A-Za-z0-9_]*)\(\)")

_DEBUG_RE = re.compile(
    r"\b(error|errors|exception|exceptions|bug|bugs|debug|debugging|crash|crashes|"
    r"fail|fails|failing|failure|broken|stack ?trace|traceback|npe|null ?pointer|"
    r"not working|doesn't work|fix)\b"
)
_ARCHITECTURE_RE = re.compile(
    r"\b(architecture|architectural|structure|structured|design|overview|layers?|"
    r"components?|modules?|dependencies|relationships?|organi[sz]ed|interact|flow)\b"
)
_DEFINITION_RE = re.compile(
    r"\b(what is|what are|what's|define|definition|defined|declared|declaration|"
    r"meaning of)\b"
)
_METHOD_RE = re.compile(
    r"\b(method|methods|function|functions|how does|how do|implemented|implement|"
    r"implementation|calls?|invoke[sd]?|returns?)\b"
)
_CONFIG_RE = re.compile(
    r"\b(config|configuration|configured|configure|settings?|properties|property|"
    r"yaml|yml|environment|env|bean|beans|setup)\b"
)
_CODE_RE = re.compile(
    r"\b(class|classes|code|interface|variable|parameter|api|endpoint|service|"
    r"controller|repository|field|constructor)\b"
)


class StrategyParams(NamedTuple):
    top_k: int
    max_hops: int
    include_reverse_deps: bool


STRATEGY_PARAMS = {
    SearchStrategy.DEPENDENCY_GRAPH: StrategyParams(5, 3, True),
    SearchStrategy.ENTITY_CENTERED: StrategyParams(3, 2, False),
    SearchStrategy.METHOD_FOCUSED: StrategyParams(4, 1, False),
    SearchStrategy.ERROR_TRACE: StrategyParams(6, 2, True),
    SearchStrategy.CONFIGURATION_CHAIN: StrategyParams(4, 2, False),
    SearchStrategy.SIMILARITY_SEARCH: StrategyParams(3, 1, False),
}

BASE_TOKEN_BUDGET = 7000
COMPLEXITY_TOKEN_BUDGET = {Complexity.HIGH: 6000, Complexity.LOW: 5000}
STRATEGY_TOKEN_CAP = {
    SearchStrategy.DEPENDENCY_GRAPH: 6500,
    SearchStrategy.METHOD_FOCUSED: 4000,
    SearchStrategy.ERROR_TRACE: 5500,
}
MAX_HOPS_CAP = 3


@dataclass(frozen=True)
class QuerySignals:
    """Features of a query that planning rules test."""

    text: str
    lowered: str
    class_entities: tuple[str, ...]
    method_entities: tuple[str, ...]

    @classmethod
    def of(cls, query: str) -> "QuerySignals":
        return cls(
            text=query,
            lowered=query.lower(),
            class_entities=extract_class_entities(query),
            method_entities=extract_method_entities(query),
        )


@dataclass(frozen=True)
class PlanningRule:
    name: str
    predicate: Callable[[QuerySignals], bool]
    intent: Intent
    strategy: SearchStrategy
    confidence: float


PLANNING_RULES: tuple[PlanningRule, ...] = (
    PlanningRule(
        "debug",
        lambda s: bool(_DEBUG_RE.search(s.lowered)),
        Intent.DEBUG, SearchStrategy.ERROR_TRACE, 0.9,
    ),
    PlanningRule(
        "architecture",
        lambda s: bool(_ARCHITECTURE_RE.search(s.lowered)),
        Intent.ARCHITECTURE, SearchStrategy.DEPENDENCY_GRAPH, 0.9,
    ),
    PlanningRule(
        "class_definition",
        lambda s: bool(s.class_entities) and bool(_DEFINITION_RE.search(s.lowered)),
        Intent.DEFINITION, SearchStrategy.ENTITY_CENTERED, 0.85,
    ),
    PlanningRule(
        "class_entity",
        lambda s: bool(s.class_entities),
        Intent.CODE, SearchStrategy.ENTITY_CENTERED, 0.8,
    ),
    PlanningRule(
        "method",
        lambda s: bool(s.method_entities) or bool(_METHOD_RE.search(s.lowered)),
        Intent.IMPLEMENTATION, SearchStrategy.METHOD_FOCUSED, 0.8,
    ),
    PlanningRule(
        "configuration",
        lambda s: bool(_CONFIG_RE.search(s.lowered)),
        Intent.CONFIG, SearchStrategy.CONFIGURATION_CHAIN, 0.85,
    ),
    PlanningRule(
        "code",
        lambda s: bool(_CODE_RE.search(s.lowered)),
        Intent.CODE, SearchStrategy.SIMILARITY_SEARCH, 0.7,
    ),
    PlanningRule(
        "definition",
        lambda s: bool(_DEFINITION_RE.search(s.lowered)),
        Intent.DEFINITION, SearchStrategy.SIMILARITY_SEARCH, 0.7,
    ),
)

DEFAULT_CONFIDENCE = 0.5
FALLBACK_CONFIDENCE = 0.3


def _ordered_unique(items) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return tuple(seen)


def extract_class_entities(query: str) -> tuple[str, ...]:
    """CamelCase identifiers, or capitalized ones ending in a role suffix."""
    found = []
    for regex in (_CAMEL_CLASS_RE, _ROLE_CLASS_RE):
        for match in regex.finditer(query):
            if match.group(0) not in ROLE_SUFFIXES:
                found.append((match.start(), match.group(0)))
    return _ordered_unique(name for _, name in sorted(found))


def extract_method_entities(query: str) -> tuple[str, ...]:
    """camelCase, snake_case or ``name()`` identifiers."""
    found = []
    for match in _CALL_RE.finditer(query):
        found.append((match.start(), match.group(1)))
    for regex in (_CAMEL_METHOD_RE, _SNAKE_METHOD_RE):
        for match in regex.finditer(query):
            found.append((match.start(), match.group(0)))
    return _ordered_unique(name for _, name in sorted(found))


def snake_case(name: str) -> str:
    name = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", name)
    return re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name).lower()


def guess_starting_files(entities: Sequence[str], extensions: Sequence[str]) -> tuple[str, ...]:
    """Likely file names for class entities: ``ChatService.java``, ``chat_service.py``."""
    files = []
    for entity in entities:
        for ext in extensions:
            stem = snake_case(entity) if ext == ".py" else entity
            files.append(stem + ext)
    return _ordered_unique(files)


def classify_complexity(query: str, intent: Intent) -> Complexity:
    words = len(query.split())
    lowered = f" {query.lower()} "
    if words > 20 or " and " in lowered or " also " in lowered:
        return Complexity.HIGH
    if words > 8 or intent is Intent.ARCHITECTURE:
        return Complexity.MEDIUM
    return Complexity.LOW


class QueryPlanner:
    def __init__(
        self,
        entity_extensions: Sequence[str] = (".java", ".py"),
        rules: Sequence[PlanningRule] = PLANNING_RULES,
    ):
        self.entity_extensions = tuple(entity_extensions)
        self.rules = tuple(rules)

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "QueryPlanner":
        cfg = config or get_config()
        return cls(entity_extensions=cfg.planner_entity_extensions)

    def match_rule(self, signals: QuerySignals) -> Optional[PlanningRule]:
        for rule in self.rules:
            if rule.predicate(signals):
                return rule
        return None

    def create_search_plan(self, query: str) -> SearchPlan:
        """Plan retrieval for ``query``; falls back to a plain similarity plan on any error."""
        try:
            return self._plan(query)
        except Exception:
            logger.exception("Query planning failed; using fallback plan")
            return self.fallback_plan(query)

    def _plan(self, query: str) -> SearchPlan:
        signals = QuerySignals.of(query)
        rule = self.match_rule(signals)
        if rule is None:
            intent, strategy, confidence = (
                Intent.GENERAL, SearchStrategy.SIMILARITY_SEARCH, DEFAULT_CONFIDENCE
            )
        else:
            intent, strategy, confidence = rule.intent, rule.strategy, rule.confidence

        complexity = classify_complexity(query, intent)
        params = STRATEGY_PARAMS[strategy]
        top_k, max_hops = params.top_k, params.max_hops
        if complexity is Complexity.HIGH:
            top_k += 2
            max_hops = min(max_hops + 1, MAX_HOPS_CAP)
        elif complexity is Complexity.LOW:
            top_k = max(2, top_k - 1)

        token_budget = COMPLEXITY_TOKEN_BUDGET.get(complexity, BASE_TOKEN_BUDGET)
        if strategy in STRATEGY_TOKEN_CAP:
            token_budget = min(token_budget, STRATEGY_TOKEN_CAP[strategy])

        entities = signals.class_entities + tuple(
            m for m in signals.method_entities if m not in signals.class_entities
        )
        plan = SearchPlan(
            original_query=query,
            intent=intent,
            search_strategy=strategy,
            target_entities=entities,
            starting_files=guess_starting_files(signals.class_entities, self.entity_extensions),
            search_keywords=tuple(query_terms(query)),
            complexity=complexity,
            top_k=top_k,
            max_hops=max_hops,
            include_reverse_deps=params.include_reverse_deps,
            token_budget=token_budget,
            confidence=confidence,
        )
        logger.debug(
            "Planned %r: rule=%s intent=%s strategy=%s complexity=%s",
            query,
            rule.name if rule else "default",
            intent.value,
            strategy.value,
            complexity.value,
        )
        return plan

    def fallback_plan(self, query: str) -> SearchPlan:
        return SearchPlan(
            original_query=query if isinstance(query, str) else str(query),
            intent=Intent.GENERAL,
            search_strategy=SearchStrategy.SIMILARITY_SEARCH,
            complexity=Complexity.LOW,
            top_k=STRATEGY_PARAMS[SearchStrategy.SIMILARITY_SEARCH].top_k,
            max_hops=STRATEGY_PARAMS[SearchStrategy.SIMILARITY_SEARCH].max_hops,
            token_budget=BASE_TOKEN_BUDGET,
            confidence=FALLBACK_CONFIDENCE,
        )
