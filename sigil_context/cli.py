# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Command-line entry point.

    sigil-context index [--force]
    sigil-context reindex
    sigil-context query "how does ChatService call the model?" [--json]
    sigil-context file ChatService.java [--json]
    sigil-context stats
    sigil-context clear-cache
    sigil-context watch
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from .config import Config, load_config
from .engine import ContextEngine
from .errors import SigilContextError
from .models import CodeContext
from .watcher import IndexWatcher

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        Path(log_file).expanduser().parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(Path(log_file).expanduser(), encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def _banner(title: str) -> None:
    print("=" * 80)
    print(title)
    print("=" * 80)


def _print_context(context: CodeContext, as_json: bool) -> None:
    if as_json:
        print(json.dumps(context.to_dict(), indent=2))
    else:
        print(context.formatted())


def cmd_index(engine: ContextEngine, args: argparse.Namespace) -> int:
    _banner("SIGIL CONTEXT - BUILD INDEXES")
    result = engine.build(force=args.force)
    for name in ("summaries", "chunks"):
        stats = result[name]
        status = "cache hit" if stats["cache_hit"] else f"{stats['files_indexed']} files"
        print(
            f"  {name}: {stats['documents']} documents ({status}, "
            f"{stats['reused_vectors']} vectors reused, {stats['errors']} errors)"
        )
    graph = result["graph"]
    print(f"  dependency graph: {graph['files']} files, {graph['edges']} edges")
    similarity = result["similarity_graph"]
    print(f"  similarity graph: {similarity['nodes']} nodes, {similarity['edges']} edges")
    return 0


def cmd_reindex(engine: ContextEngine, args: argparse.Namespace) -> int:
    result = engine.reindex_changed()
    print(json.dumps(result.to_dict(), indent=2))
    return 1 if result.errors else 0


def cmd_query(engine: ContextEngine, args: argparse.Namespace) -> int:
    query = " ".join(args.text)
    if args.plan:
        print(json.dumps(engine.plan(query).to_dict(), indent=2))
        return 0
    _print_context(engine.retrieve(query), args.json)
    return 0


def cmd_file(engine: ContextEngine, args: argparse.Namespace) -> int:
    context = engine.retrieve_file(args.filename)
    _print_context(context, args.json)
    return 0 if not context.is_empty() else 1


def cmd_stats(engine: ContextEngine, args: argparse.Namespace) -> int:
    print(json.dumps(engine.stats(), indent=2, default=str))
    return 0


def cmd_clear_cache(engine: ContextEngine, args: argparse.Namespace) -> int:
    engine.clear_cache()
    print("Cleared embedding caches and hash records")
    return 0


def cmd_watch(engine: ContextEngine, args: argparse.Namespace) -> int:
    if not engine.config.watch_enabled:
        logger.warning("File watching is disabled in config (watch.enabled=false)")
        return 1
    engine.build()
    watcher = IndexWatcher(engine)
    watcher.start()
    print("Watching for changes; press Ctrl+C to stop")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        watcher.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sigil-context",
        description="Index a source tree and retrieve budgeted code context for queries.",
    )
    parser.add_argument("--config", type=Path, help="path to config.json")
    parser.add_argument("--log-level", help="override the configured log level")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("index", help="build the summary and chunk indexes")
    p.add_argument("--force", action="store_true", help="ignore the embedding cache")
    p.set_defaults(func=cmd_index)

    p = sub.add_parser("reindex", help="re-index files changed since the last pass")
    p.set_defaults(func=cmd_reindex)

    p = sub.add_parser("query", help="retrieve code context for a question")
    p.add_argument("text", nargs="+")
    p.add_argument("--json", action="store_true", help="print the context as JSON")
    p.add_argument("--plan", action="store_true", help="only print the search plan")
    p.set_defaults(func=cmd_query)

    p = sub.add_parser("file", help="retrieve the indexed content of one file")
    p.add_argument("filename")
    p.add_argument("--json", action="store_true", help="print the context as JSON")
    p.set_defaults(func=cmd_file)

    p = sub.add_parser("stats", help="print index statistics")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("clear-cache", help="delete embedding caches and hash records")
    p.set_defaults(func=cmd_clear_cache)

    p = sub.add_parser("watch", help="index, then re-index on file changes")
    p.set_defaults(func=cmd_watch)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config: Config = load_config(args.config)
    setup_logging(args.log_level or config.log_level, config.log_file)

    try:
        with ContextEngine(config) as engine:
            return args.func(engine, args)
    except SigilContextError as exc:
        logger.error("%s", exc)
        return 1
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
