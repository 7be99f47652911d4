"""
kgsat CLI
=========
Command-line access to the maintenance engine. Output is JSON.

Usage:
    kgsat ingest <file> [--private] [--saturate N]
                             Ingest a text file (optionally merge + saturate)
    kgsat merge              Merge duplicate entities
    kgsat saturate [N]       Run up to N saturation iterations
    kgsat query <text> [--private]
                             Answer a question from the graph
    kgsat stats              Graph totals and type distributions
"""

import asyncio
import json
import sys
from pathlib import Path

from kgsat import vocab
from kgsat.errors import KGError


def main():
    from kgsat.log import setup
    setup()

    args = sys.argv[1:]
    if not args:
        cmd_help([])
        return

    cmd = args[0].lower()
    rest = args[1:]

    commands = {
        "ingest": cmd_ingest,
        "merge": cmd_merge,
        "saturate": cmd_saturate,
        "query": cmd_query,
        "stats": cmd_stats,
        "version": cmd_version,
        "--version": cmd_version,
        "help": cmd_help,
        "--help": cmd_help,
        "-h": cmd_help,
    }

    handler = commands.get(cmd)
    if handler is None:
        print(f"Unknown command: {cmd}")
        cmd_help([])
        sys.exit(2)

    try:
        handler(rest)
    except (KGError, ValueError, OSError) as e:
        print(json.dumps({"success": False, "error": str(e), "operation": cmd}))
        sys.exit(1)


def _emit(data):
    print(json.dumps(data, indent=2, default=str))


def _privacy(args) -> str:
    return vocab.PRIVATE if "--private" in args else vocab.PUBLIC


def _option(args, flag, default=None):
    if flag in args:
        i = args.index(flag)
        if i + 1 < len(args):
            return args[i + 1]
    return default


def _positional(args) -> list[str]:
    out, skip = [], False
    for arg in args:
        if skip:
            skip = False
            continue
        if arg == "--saturate":
            skip = True
            continue
        if arg.startswith("--"):
            continue
        out.append(arg)
    return out


def _saturator(store):
    from kgsat.ingestion import IngestionPipeline
    from kgsat.llm import Extractor
    from kgsat.saturation import Saturator
    from kgsat.search import LinkupSearch
    return Saturator(store, LinkupSearch(), IngestionPipeline(store, Extractor()))


def cmd_ingest(args=None):
    """Ingest a text file as a USER document."""
    from kgsat.ingestion import IngestionPipeline
    from kgsat.llm import Extractor
    from kgsat.merge import merge_duplicates
    from kgsat.store import GraphStore

    files = _positional(args or [])
    if not files:
        print("Usage: kgsat ingest <file> [--private] [--saturate N]")
        return
    path = Path(files[0]).expanduser().resolve()
    text = path.read_text(encoding="utf-8", errors="replace")
    privacy = _privacy(args)
    iterations = _option(args, "--saturate")

    async def _run():
        store = GraphStore()
        pipeline = IngestionPipeline(store, Extractor())
        document = await pipeline.ingest(
            text, vocab.USER, privacy, path=str(path), title=path.name
        )
        out = {"success": True, "document_id": document["id"]}
        if iterations is not None:
            out["merge"] = await merge_duplicates(store)
            out["saturation"] = await _saturator(store).saturate(int(iterations))
        return out

    _emit(asyncio.run(_run()))


def cmd_merge(args=None):
    """Merge near-duplicate entities."""
    from kgsat.merge import merge_duplicates
    from kgsat.store import GraphStore
    _emit(asyncio.run(merge_duplicates(GraphStore())))


def cmd_saturate(args=None):
    """Run the saturation loop."""
    from kgsat.config import SATURATION_MAX_ITERATIONS
    from kgsat.store import GraphStore

    n = int(args[0]) if args else SATURATION_MAX_ITERATIONS

    async def _run():
        return await _saturator(GraphStore()).saturate(n)

    _emit(asyncio.run(_run()))


def cmd_query(args=None):
    """Answer a natural-language question from the graph."""
    from kgsat.llm import Extractor
    from kgsat.query import answer_query
    from kgsat.store import GraphStore

    words = _positional(args or [])
    if not words:
        print("Usage: kgsat query <text> [--private]")
        return
    _emit(asyncio.run(answer_query(GraphStore(), Extractor(), " ".join(words), _privacy(args))))


def cmd_stats(args=None):
    """Show graph totals."""
    from kgsat.store import GraphStore
    _emit(asyncio.run(GraphStore().graph_stats()))


def cmd_version(args=None):
    from kgsat.config import PACKAGE_VERSION
    print(f"kgsat v{PACKAGE_VERSION}")


def cmd_help(args=None):
    print("""
kgsat: knowledge graph maintenance.

Graph:
  kgsat ingest <file> [--private]      Ingest a text file
        [--saturate N]                 ...then merge and saturate N rounds
  kgsat merge                          Merge duplicate entities
  kgsat saturate [N]                   Fill gaps from external search
  kgsat query <text> [--private]       Answer a question from the graph
  kgsat stats                          Graph totals

Other:
  kgsat version                        Show version
  kgsat help                           This message

Privacy: --private keeps text on the local model and upgrades
everything it touches to PRIVATE.
""")


if __name__ == "__main__":
    main()
