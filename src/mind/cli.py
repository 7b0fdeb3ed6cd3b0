"""Mind CLI -- ingest, recall, inspect and maintain persona memories from a terminal."""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from mind.config import MemoryConfig, default_db_path
from mind.context import format_age, format_context
from mind.embeddings import HashEmbedder, LocalModelEmbedder
from mind.engine import MemoryEngine
from mind.types import ChatTurn, Memory, MemoryHit, MemoryKind

logger = logging.getLogger("mind.cli")


def _open_engine(args) -> MemoryEngine:
    config = MemoryConfig.from_env()
    if args.embedder == "hash":
        embedder = HashEmbedder(dim=config.dim)
    else:
        embedder = LocalModelEmbedder(dim=config.dim)
    logger.debug("Opening %s with the %s embedder", args.db or default_db_path(), args.embedder)
    return MemoryEngine.open(args.db, embedder=embedder, config=config)


def _run(args, coro_fn):
    """Run ``coro_fn(engine)`` inside an engine that lives for one command."""
    async def runner():
        async with _open_engine(args) as engine:
            return await coro_fn(engine)
    return asyncio.run(runner())


def _memory_dict(memory: Memory) -> dict:
    return {
        "id": memory.id,
        "persona_id": memory.persona_id,
        "user_id": memory.user_id,
        "chat_id": memory.chat_id,
        "role": memory.role.value,
        "text": memory.text,
        "kind": memory.kind.value,
        "emotion": memory.emotion.value if memory.emotion else None,
        "importance": round(memory.importance, 3),
        "created_at": memory.created_at.isoformat(),
        "last_accessed": memory.last_accessed.isoformat(),
    }


def _hit_dict(hit: MemoryHit) -> dict:
    d = _memory_dict(hit.memory)
    d.update(score=round(hit.score, 4), chat_title=hit.from_chat_title)
    return d


def _print_hit(hit: MemoryHit, show_score: bool = True) -> None:
    memory = hit.memory
    score = f"[{hit.score:.2f}] " if show_score else ""
    age = format_age(memory.created_at)
    title = f' in "{hit.from_chat_title}"' if hit.from_chat_title else ""
    print(f"  {score}{memory.kind.value.lower()} ({age}{title}): {memory.text[:120]}  (id:{memory.id[:8]})")


def _joined(words: List[str], usage: str) -> str:
    text = " ".join(words)
    if not text.strip():
        print(f"Usage: mind {usage}", file=sys.stderr)
        sys.exit(1)
    return text


def cmd_ingest(args):
    """Store one chat turn (user message plus optional assistant reply)."""
    text = _joined(args.text, "ingest --persona P --chat C <message>")
    turn = ChatTurn(
        chat_id=args.chat,
        user_id=args.user,
        user_message=text,
        assistant_message=args.assistant,
        chat_title=args.title,
    )
    result = _run(args, lambda engine: engine.ingest(turn, args.persona))
    if args.json:
        print(json.dumps(result, indent=2))
    elif not result["success"]:
        print(f"Ingest failed: {result.get('error')}", file=sys.stderr)
    elif result.get("skipped") == "disabled":
        print(f"Memory is disabled for persona {args.persona}; nothing stored.")
    else:
        print(f"Stored {len(result['stored'])}, deduplicated {len(result['deduplicated'])}.")
    if not result["success"]:
        sys.exit(1)


def cmd_query(args):
    """Recall memories of a persona for a query."""
    text = _joined(args.query_text, "query --persona P <search text>")
    hits = _run(args, lambda engine: engine.recall(args.persona, text, args.limit))
    if args.json:
        print(json.dumps([_hit_dict(h) for h in hits], indent=2))
        return
    if not hits:
        print("No matching memories.")
        return
    print(f"{len(hits)} memories:")
    for hit in hits:
        _print_hit(hit)


def cmd_context(args):
    """Show the context bundle the model would receive for a message."""
    text = _joined(args.text, "context --persona P --chat C <message>")
    bundle = _run(args, lambda engine: engine.context_for(text, args.persona, args.chat))
    if bundle.error:
        print(f"Context failed: {bundle.error}", file=sys.stderr)
        sys.exit(1)
    if args.json:
        print(json.dumps({
            "short_term": [_memory_dict(m) for m in bundle.short_term],
            "long_term": [_hit_dict(h) for h in bundle.long_term],
            "total_tokens": bundle.total_tokens,
        }, indent=2))
        return
    rendered = format_context(bundle)
    print(rendered if rendered else "(empty context)")
    print(f"\n~{bundle.total_tokens} tokens")


def cmd_stats(args):
    """Show per-kind memory counts for a persona."""
    async def go(engine):
        counts = await engine.counts(args.persona, args.user)
        total = await engine.get_count(args.persona, args.user)
        return counts, total

    counts, total = _run(args, go)
    if args.json:
        print(json.dumps({"total": total, "by_kind": {c.kind.value: c.count for c in counts}}, indent=2))
        return
    print(f"Persona {args.persona}: {total} memories")
    for c in counts:
        print(f"  {c.kind.value:<12} {c.count}")


def cmd_feed(args):
    """List a persona's memories newest first; --follow keeps printing changes."""
    kind = MemoryKind(args.kind.upper()) if args.kind else None

    async def go(engine):
        feed = engine.feed(args.persona, kind=kind, query=args.filter, user_id=args.user, limit=args.limit)
        try:
            async for hits in feed:
                if args.json:
                    print(json.dumps([_hit_dict(h) for h in hits], indent=2))
                else:
                    print(f"{len(hits)} memories:")
                    for hit in hits:
                        _print_hit(hit, show_score=False)
                if not args.follow:
                    break
                print("---")
        finally:
            await feed.aclose()

    try:
        _run(args, go)
    except KeyboardInterrupt:
        pass


def cmd_delete(args):
    """Delete one memory by id."""
    result = _run(args, lambda engine: engine.delete(args.memory_id))
    if result["success"]:
        print(f"Deleted {args.memory_id}")
    else:
        print(f"Delete failed: {result['error']}", file=sys.stderr)
        sys.exit(1)


def cmd_delete_all(args):
    """Delete every memory of a persona, or of a user with --user."""
    if not args.persona and not args.user:
        print("Usage: mind delete-all --persona P | --user U", file=sys.stderr)
        sys.exit(1)
    if args.user:
        result = _run(args, lambda engine: engine.delete_all_for_user(args.user))
    else:
        result = _run(args, lambda engine: engine.delete_all(args.persona))
    if result["success"]:
        print(f"Deleted {result['deleted']} memories")
    else:
        print(f"Delete failed: {result['error']}", file=sys.stderr)
        sys.exit(1)


def cmd_prune(args):
    """Delete old memories below the importance floor."""
    result = _run(args, lambda engine: engine.prune(args.persona))
    if result["success"]:
        print(f"Pruned {result['pruned']} memories")
    else:
        print(f"Prune failed: {result['error']}", file=sys.stderr)
        sys.exit(1)


def cmd_enable(args):
    enabled = args.command == "enable"
    result = _run(args, lambda engine: engine.enable(args.persona, enabled))
    if result["success"]:
        print(f"Memory {'enabled' if enabled else 'disabled'} for persona {args.persona}")
    else:
        print(f"Failed: {result['error']}", file=sys.stderr)
        sys.exit(1)


def cmd_status(args):
    """Show database location, size, index availability and totals."""
    stats = _run(args, lambda engine: engine.stats())
    if "error" in stats:
        print(f"Status check failed: {stats['error']}", file=sys.stderr)
        sys.exit(1)
    if args.json:
        print(json.dumps(stats, indent=2))
        return
    size_mb = stats["db_size_bytes"] / (1024 * 1024)
    print("Mind status")
    print(f"  Database:      {stats['db_path']}")
    print(f"  Size:          {size_mb:.2f} MB")
    print(f"  Memories:      {stats['memories']} across {stats['personas']} personas")
    print(f"  Dimensions:    {stats['dim']}")
    print(f"  Full-text:     {'enabled (FTS5)' if stats['fts_available'] else 'unavailable'}")
    print(f"  Vector search: {'enabled (sqlite-vec)' if stats['vec_available'] else 'brute-force fallback'}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mind",
        description="Mind -- long-term memory for chat personas",
    )
    parser.add_argument("--db", default=None, help=f"Database path (default: {default_db_path()})")
    parser.add_argument(
        "--embedder",
        choices=["hash", "local"],
        default=os.environ.get("MIND_EMBEDDER", "local"),
        help="Embedding backend (default: $MIND_EMBEDDER or 'local')",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    ingest_parser = subparsers.add_parser("ingest", help="Store a chat turn")
    ingest_parser.add_argument("text", nargs="+", help="User message")
    ingest_parser.add_argument("--persona", required=True)
    ingest_parser.add_argument("--chat", required=True)
    ingest_parser.add_argument("--user", default="local")
    ingest_parser.add_argument("--assistant", help="Assistant reply for the same turn")
    ingest_parser.add_argument("--title", help="Chat title shown with recalled memories")
    ingest_parser.add_argument("--json", action="store_true", help="Output as JSON")

    query_parser = subparsers.add_parser("query", help="Recall memories for a query")
    query_parser.add_argument("query_text", nargs="+", help="Search text")
    query_parser.add_argument("--persona", required=True)
    query_parser.add_argument("--limit", type=int, default=10, help="Max results (default: 10)")
    query_parser.add_argument("--json", action="store_true", help="Output as JSON")

    context_parser = subparsers.add_parser("context", help="Show the context bundle for a message")
    context_parser.add_argument("text", nargs="+", help="Incoming message")
    context_parser.add_argument("--persona", required=True)
    context_parser.add_argument("--chat", required=True)
    context_parser.add_argument("--json", action="store_true", help="Output as JSON")

    stats_parser = subparsers.add_parser("stats", help="Show per-kind counts for a persona")
    stats_parser.add_argument("--persona", required=True)
    stats_parser.add_argument("--user")
    stats_parser.add_argument("--json", action="store_true", help="Output as JSON")

    feed_parser = subparsers.add_parser("feed", help="List memories newest first")
    feed_parser.add_argument("--persona", required=True)
    feed_parser.add_argument("--kind", choices=[k.value.lower() for k in MemoryKind])
    feed_parser.add_argument("--filter", help="Case-insensitive text filter")
    feed_parser.add_argument("--user")
    feed_parser.add_argument("--limit", type=int, default=20, help="Max results (default: 20)")
    feed_parser.add_argument("--follow", action="store_true", help="Keep printing as memories change")
    feed_parser.add_argument("--json", action="store_true", help="Output as JSON")

    delete_parser = subparsers.add_parser("delete", help="Delete one memory")
    delete_parser.add_argument("memory_id")

    delete_all_parser = subparsers.add_parser("delete-all", help="Delete all memories of a persona or user")
    delete_all_parser.add_argument("--persona")
    delete_all_parser.add_argument("--user")

    prune_parser = subparsers.add_parser("prune", help="Delete old low-importance memories")
    prune_parser.add_argument("--persona", help="Limit to one persona (default: all)")

    for name in ("enable", "disable"):
        p = subparsers.add_parser(name, help=f"{name.capitalize()} memory for a persona")
        p.add_argument("--persona", required=True)

    status_parser = subparsers.add_parser("status", help="Show database and index status")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")
    return parser


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "ingest": cmd_ingest,
        "query": cmd_query,
        "context": cmd_context,
        "stats": cmd_stats,
        "feed": cmd_feed,
        "delete": cmd_delete,
        "delete-all": cmd_delete_all,
        "prune": cmd_prune,
        "enable": cmd_enable,
        "disable": cmd_enable,
        "status": cmd_status,
    }

    if args.command in commands:
        commands[args.command](args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
