# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Static file dependency graph.

Files are linked when one imports, instantiates or calls something another
declares. The graph is rebuilt into a new immutable :class:`DependencyGraph`
on every build or update, and the builder swaps the snapshot under a lock,
so retrievals running during a background re-index see either the old or
the new graph in full.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional, Sequence

from .analysis import ParsedSource, SourceParser
from .analysis.languages import CLASS_PER_FILE_LANGUAGES
from .errors import ParseFailure
from .models import content_digest

logger = logging.getLogger(__name__)

Prioritizer = Callable[[list[str]], list[str]]

_EMPTY: frozenset[str] = frozenset()


@dataclass(frozen=True)
class DependencyGraph:
    """Forward and reverse adjacency; A -> B forward iff B -> A reverse."""

    forward: Mapping[str, frozenset[str]] = field(default_factory=dict)
    reverse: Mapping[str, frozenset[str]] = field(default_factory=dict)
    files: frozenset[str] = _EMPTY

    @classmethod
    def from_edges(cls, edges: Mapping[str, Iterable[str]], files: Iterable[str] = ()) -> "DependencyGraph":
        forward: dict[str, frozenset[str]] = {}
        reverse: dict[str, set[str]] = defaultdict(set)
        for source, targets in edges.items():
            targets = frozenset(t for t in targets if t != source)
            if not targets:
                continue
            forward[source] = targets
            for target in targets:
                reverse[target].add(source)
        all_files = set(files) | set(forward) | set(reverse)
        return cls(
            forward=MappingProxyType(forward),
            reverse=MappingProxyType({k: frozenset(v) for k, v in reverse.items()}),
            files=frozenset(all_files),
        )

    def dependencies(self, filename: str) -> frozenset[str]:
        return self.forward.get(filename, _EMPTY)

    def dependents(self, filename: str) -> frozenset[str]:
        return self.reverse.get(filename, _EMPTY)

    @property
    def edge_count(self) -> int:
        return sum(len(t) for t in self.forward.values())


class DependencyGraphBuilder:
    """Builds and serves the dependency graph over repository-relative file keys."""

    def __init__(
        self,
        parser: Optional[SourceParser] = None,
        *,
        max_call_fanout: int = 5,
        workers: int = 4,
    ):
        self.parser = parser or SourceParser()
        self.max_call_fanout = max_call_fanout
        self.workers = max(1, workers)
        self._graph = DependencyGraph()
        self._parsed: Mapping[str, ParsedSource] = MappingProxyType({})
        self._parse_cache: dict[str, ParsedSource] = {}
        self._lock = threading.Lock()
        self.skipped_files: list[str] = []

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    def _parse_one(self, key: str, text: str) -> Optional[ParsedSource]:
        digest = content_digest(f"{key}\x00{text}")
        cached = self._parse_cache.get(digest)
        if cached is not None:
            return cached
        try:
            parsed = self.parser.parse(key, text)
        except ParseFailure as exc:
            logger.warning("Skipping %s in dependency graph: %s", key, exc.reason)
            return None
        except Exception:
            logger.exception("Skipping %s in dependency graph: parser error", key)
            return None
        self._parse_cache[digest] = parsed
        return parsed

    def _parse_all(self, sources: Mapping[str, str]) -> tuple[dict[str, ParsedSource], list[str]]:
        keys = sorted(sources)
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            results = list(pool.map(lambda k: self._parse_one(k, sources[k]), keys))
        parsed = {k: p for k, p in zip(keys, results) if p is not None}
        skipped = [k for k, p in zip(keys, results) if p is None]
        return parsed, skipped

    def build_graph(self, sources: Mapping[str, str]) -> DependencyGraph:
        """Full two-pass build from ``{file_key: source_text}``."""
        parsed, skipped = self._parse_all(sources)
        graph = self._link(parsed, files=sources.keys())
        live = {content_digest(f"{k}\x00{sources[k]}") for k in parsed}
        with self._lock:
            self._parse_cache = {d: p for d, p in self._parse_cache.items() if d in live}
            self._parsed = MappingProxyType(parsed)
            self._graph = graph
            self.skipped_files = skipped
        logger.info(
            "Dependency graph built: %d files, %d edges, %d skipped",
            len(graph.files),
            graph.edge_count,
            len(skipped),
        )
        return graph

    def update_files(
        self, changed: Mapping[str, str], removed: Iterable[str] = ()
    ) -> DependencyGraph:
        """Re-parse ``changed`` files, drop ``removed`` ones and re-link."""
        removed = set(removed)
        reparsed, skipped = self._parse_all(changed)
        with self._lock:
            parsed = dict(self._parsed)
            files = set(self._graph.files)
        for key in removed | set(skipped):
            parsed.pop(key, None)
        files -= removed
        files |= set(changed)
        parsed.update(reparsed)
        graph = self._link(parsed, files=files)
        with self._lock:
            self._parsed = MappingProxyType(parsed)
            self._graph = graph
            self.skipped_files = sorted(set(self.skipped_files) - set(changed) - removed | set(skipped))
        logger.debug(
            "Dependency graph updated: %d changed, %d removed, %d edges",
            len(changed),
            len(removed),
            graph.edge_count,
        )
        return graph

    def _link(self, parsed: Mapping[str, ParsedSource], files: Iterable[str]) -> DependencyGraph:
        # Pass 1: symbol tables.
        class_files: dict[str, set[str]] = defaultdict(set)
        method_files: dict[str, set[str]] = defaultdict(set)
        module_files: dict[str, str] = {}
        for key, source in parsed.items():
            for name in source.class_names:
                class_files[name].add(key)
            for name in source.method_names:
                method_files[name].add(key)
            module_files[source.module_name] = key
            if source.language in CLASS_PER_FILE_LANGUAGES:
                class_files[Path(key).stem].add(key)

        # Pass 2: resolve imports, type references and calls.
        edges: dict[str, set[str]] = defaultdict(set)
        for key, source in parsed.items():
            targets = edges[key]
            for imported in source.imports:
                targets.update(self._resolve_import(imported, module_files, class_files))
            for ref in source.type_references:
                targets.update(class_files.get(ref, ()))
            for call in source.calls:
                defining = method_files.get(call)
                if defining and len(defining) <= self.max_call_fanout:
                    targets.update(defining)
            targets.discard(key)
        return DependencyGraph.from_edges(edges, files=files)

    @staticmethod
    def _resolve_import(
        imported: str, module_files: Mapping[str, str], class_files: Mapping[str, set[str]]
    ) -> set[str]:
        name = imported.rstrip(".*").strip(".")
        if not name:
            return set()
        if name in module_files:
            return {module_files[name]}
        suffix = "." + name
        matches = {k for m, k in module_files.items() if m.endswith(suffix)}
        if matches:
            return matches
        if imported.endswith(".*"):
            package = name + "."
            return {k for m, k in module_files.items() if m.startswith(package)}
        return set(class_files.get(name.rsplit(".", 1)[-1], ()))

    def get_dependencies(self, filename: str) -> set[str]:
        return set(self._graph.dependencies(filename))

    def get_reverse_dependencies(self, filename: str) -> set[str]:
        return set(self._graph.dependents(filename))

    def get_all_dependencies(self, filename: str, include_reverse: bool = True) -> set[str]:
        graph = self._graph
        related = set(graph.dependencies(filename))
        if include_reverse:
            related |= graph.dependents(filename)
        return related

    def expand(
        self,
        seeds: Sequence[str],
        max_hops: int,
        *,
        include_reverse: bool = False,
        max_per_node: Optional[int] = None,
        max_reverse_per_node: Optional[int] = None,
        prioritize: Optional[Prioritizer] = None,
    ) -> list[str]:
        """Breadth-first expansion from ``seeds``, bounded by ``max_hops``.

        Returns the seeds followed by discovered files in visit order, each
        file once. ``prioritize`` orders a node's neighbours before the
        per-node caps are applied.
        """
        graph = self._graph
        order: list[str] = []
        seen: set[str] = set()
        for seed in seeds:
            if seed not in seen:
                seen.add(seed)
                order.append(seed)

        frontier = list(order)
        for _hop in range(max(0, max_hops)):
            next_frontier: list[str] = []
            for node in frontier:
                neighbours = self._ranked(graph.dependencies(node), prioritize, max_per_node)
                if include_reverse:
                    neighbours += self._ranked(
                        graph.dependents(node), prioritize, max_reverse_per_node
                    )
                for neighbour in neighbours:
                    if neighbour not in seen:
                        seen.add(neighbour)
                        order.append(neighbour)
                        next_frontier.append(neighbour)
            if not next_frontier:
                break
            frontier = next_frontier
        return order

    @staticmethod
    def _ranked(
        files: Iterable[str], prioritize: Optional[Prioritizer], cap: Optional[int]
    ) -> list[str]:
        ranked = sorted(files)
        if prioritize is not None and ranked:
            ordered = prioritize(ranked)
            placed = set(ordered)
            ranked = ordered + [f for f in ranked if f not in placed]
        if cap is not None:
            ranked = ranked[: max(0, cap)]
        return ranked

    def resolve_name(self, name: str) -> list[str]:
        """Map a file name, path suffix, module or class name to indexed file keys."""
        graph_files = self._graph.files
        parsed = self._parsed
        if name in graph_files:
            return [name]
        path_matches = sorted(k for k in graph_files if k.endswith("/" + name))
        if path_matches:
            return path_matches
        stem = Path(name).stem
        by_stem = sorted(k for k in graph_files if Path(k).stem == stem)
        if by_stem:
            return by_stem
        return sorted(k for k, p in parsed.items() if name in p.class_names)

    def statistics(self) -> dict[str, int]:
        graph = self._graph
        return {
            "files": len(graph.files),
            "parsed_files": len(self._parsed),
            "edges": graph.edge_count,
            "files_with_dependencies": len(graph.forward),
            "files_with_dependents": len(graph.reverse),
            "skipped_files": len(self.skipped_files),
        }
