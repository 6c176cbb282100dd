from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Any

import orjson
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table

from novel_continuity.config import load_config
from novel_continuity.config.loader import masked_env_snapshot
from novel_continuity.continuity.service import ContinuityEngine, build_engine
from novel_continuity.storage.db import shutdown_db_service
from novel_continuity.storage.types import GRAPH_NODE_TYPES
from novel_continuity.utils.logging import setup_logging

console = Console()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="novel-continuity")
    parser.add_argument("--config", type=Path, default=None, help="Path to custom config YAML")
    parser.add_argument("--profile", type=str, default=None, help="Config profile name")
    parser.add_argument("--data-dir", type=Path, default=None, help="Override data directory")
    parser.add_argument("--language", choices=["zh", "en"], default=None, help="Prompt and digest language")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("config", help="Validate and print effective config")

    novel_parser = subparsers.add_parser("novel-create", help="Register a novel and its planning settings")
    novel_parser.add_argument("--title", type=str, default=None, help="Novel title")
    novel_parser.add_argument("--planned-volumes", type=int, default=None, help="Planned volume count")
    novel_parser.add_argument("--target-chapters", type=int, default=None, help="Target total chapters")

    volume_parser = subparsers.add_parser("volume-set", help="Create or update a volume range")
    volume_parser.add_argument("--novel-id", type=int, required=True)
    volume_parser.add_argument("--volume", type=int, required=True, help="Volume number")
    volume_parser.add_argument("--start", type=int, default=None, help="First chapter (inclusive)")
    volume_parser.add_argument("--end", type=int, default=None, help="Last chapter (inclusive)")
    volume_parser.add_argument("--title", type=str, default=None)
    volume_parser.add_argument("--outline", type=str, default=None)

    node_parser = subparsers.add_parser("node-add", help="Store a narrative graph node")
    node_parser.add_argument("--novel-id", type=int, required=True)
    node_parser.add_argument("--type", dest="node_type", choices=list(GRAPH_NODE_TYPES), required=True)
    node_parser.add_argument("--key", type=str, required=True, help="Stable node id")
    node_parser.add_argument("--chapter", type=int, required=True, help="Chapter the node belongs to")
    node_parser.add_argument("--properties", type=str, default="{}", help="JSON object of node properties")
    node_parser.add_argument("--relevance", type=float, default=None, help="Relevance score")

    extract_parser = subparsers.add_parser("extract", help="Extract and merge state from a chapter text file")
    extract_parser.add_argument("--novel-id", type=int, required=True)
    extract_parser.add_argument("--chapter", type=int, required=True)
    extract_parser.add_argument("--input", type=Path, required=True, help="Chapter text file")
    extract_parser.add_argument("--title", type=str, default="", help="Chapter title")

    rollback_parser = subparsers.add_parser("rollback", help="Remove state contributed by a chapter")
    rollback_parser.add_argument("--novel-id", type=int, required=True)
    rollback_parser.add_argument("--chapter", type=int, required=True)

    context_parser = subparsers.add_parser("context", help="Assemble budgeted context for the next chapter")
    context_parser.add_argument("--novel-id", type=int, required=True)
    context_parser.add_argument("--chapter", type=int, required=True)
    context_parser.add_argument("--input", type=Path, default=None, help="JSON file with raw candidate lists")
    context_parser.add_argument("--max-events", type=int, default=None, help="Override the event cap")

    plan_parser = subparsers.add_parser("plan", help="Show the volume owning a chapter")
    plan_parser.add_argument("--novel-id", type=int, required=True)
    plan_parser.add_argument("--chapter", type=int, required=True)

    return parser


def _build_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.data_dir:
        overrides["app"] = {"data_dir": str(args.data_dir)}

    continuity: dict[str, Any] = {}
    if args.language:
        continuity["extraction"] = {"language": args.language}
        continuity["budget"] = {"language": args.language}
        continuity["planner"] = {"language": args.language}
    if getattr(args, "max_events", None) is not None:
        continuity.setdefault("budget", {})["max_events"] = args.max_events
    if continuity:
        overrides["continuity"] = continuity
    return overrides


def _print_config(config) -> None:
    env_snapshot = masked_env_snapshot(config)
    console.print(Panel(Pretty(config.model_dump(mode="json")), title="Effective Config"))
    console.print(Panel(Pretty(env_snapshot), title="Env Snapshot"))


def _load_json_object(raw: str, label: str) -> dict[str, Any]:
    data = orjson.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"{label} must be a JSON object")
    return data


async def _run_command(args: argparse.Namespace, engine: ContinuityEngine) -> None:
    store = engine.store

    if args.command == "novel-create":
        result = await store.create_novel(
            title=args.title,
            planned_volume_count=args.planned_volumes,
            target_total_chapters=args.target_chapters,
        )
        console.print(Panel(f"Novel ID: {result.id}", title="Novel"))
        return

    if args.command == "volume-set":
        result = await store.upsert_volume(
            novel_id=args.novel_id,
            volume_number=args.volume,
            title=args.title,
            chapter_start=args.start,
            chapter_end=args.end,
            outline=args.outline,
        )
        state = "created" if result.inserted else "updated"
        console.print(Panel(f"Volume {args.volume} {state} (id={result.id})", title="Volume"))
        return

    if args.command == "node-add":
        properties = _load_json_object(args.properties, "--properties")
        result = await store.upsert_graph_node(
            novel_id=args.novel_id,
            node_type=args.node_type,
            node_key=args.key,
            chapter_number=args.chapter,
            properties=properties,
            relevance_score=args.relevance,
        )
        console.print(Panel(f"{args.node_type} {args.key} stored (id={result.id})", title="Graph Node"))
        return

    if args.command == "extract":
        text = args.input.read_text(encoding="utf-8")
        outcome = await engine.extract_and_merge(args.novel_id, args.chapter, args.title, text)
        table = Table(title="Extraction Summary", show_header=True, header_style="bold")
        table.add_column("Metric")
        table.add_column("Value")
        table.add_row("Novel ID", str(outcome.novel_id))
        table.add_row("Chapter", str(outcome.chapter_number))
        table.add_row("Status", outcome.status)
        table.add_row("Reason", outcome.reason or "-")
        for key, value in outcome.counts.items():
            table.add_row(key.replace("_", " ").capitalize(), str(value))
        table.add_row("Write failures", str(outcome.write_failures))
        table.add_row("Cache hit", str(outcome.llm_cache_hit))
        table.add_row("Model attempts", str(outcome.llm_attempts))
        table.add_row("Runtime (s)", f"{outcome.runtime_seconds:.2f}")
        console.print(table)
        for warning in outcome.warnings:
            console.print(f"[yellow]warning[/yellow] {warning}")
        return

    if args.command == "rollback":
        report = await engine.rollback_chapter(args.novel_id, args.chapter)
        table = Table(title="Rollback Summary", show_header=True, header_style="bold")
        table.add_column("Metric")
        table.add_column("Value")
        table.add_row("Skipped", str(report.skipped))
        table.add_row("Characters restored/deleted", f"{report.characters_restored}/{report.characters_deleted}")
        table.add_row(
            "Relationships restored/deleted",
            f"{report.relationships_restored}/{report.relationships_deleted}",
        )
        table.add_row("Quests restored/deleted", f"{report.quests_restored}/{report.quests_deleted}")
        table.add_row("Graph nodes deleted", str(report.graph_nodes_deleted))
        console.print(table)
        return

    if args.command == "context":
        raw = None
        if args.input is not None:
            raw = _load_json_object(args.input.read_text(encoding="utf-8"), "--input")
        context = await engine.assemble_context(args.novel_id, args.chapter, raw)
        console.print(Panel(Pretty(context.digest.to_dict()), title="Digest"))
        table = Table(title="Context Budget", show_header=True, header_style="bold")
        table.add_column("Category")
        table.add_column("Kept")
        for name in ("events", "foreshadows", "conflict_arcs", "character_arcs", "plotlines", "character_profiles"):
            table.add_row(name, str(len(getattr(context, name))))
        table.add_row("recent_chapters", str(len(context.recent_chapters)))
        table.add_row("recent_summaries", str(len(context.recent_summaries)))
        table.add_row("bypassed", str(context.bypassed))
        table.add_row("tokens (est)", str(context.estimated_tokens))
        console.print(table)
        return

    if args.command == "plan":
        selection = await engine.select_volume(args.novel_id, args.chapter)
        if selection is None:
            console.print(Panel("No volume range could be derived for this chapter", title="Plan"))
            return
        console.print(Panel(Pretty(selection.to_dict()), title=f"Volume {selection.volume_number}"))
        return

    raise ValueError(f"Unsupported command: {args.command}")


async def _main_async() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    overrides = _build_overrides(args)
    config = load_config(
        config_path=args.config,
        profile=args.profile,
        overrides=overrides,
    )

    setup_logging(config.app.log_level)
    logger.info("Loaded configuration")

    if args.command == "config":
        _print_config(config)
        return

    engine, cache = await build_engine(config)
    try:
        await _run_command(args, engine)
        await engine.drain()
    finally:
        logger.debug("LLM cache hits={} misses={}", cache.hits, cache.misses)
        cache.close()
        await shutdown_db_service()


def main() -> None:
    asyncio.run(_main_async())


if __name__ == "__main__":
    main()
