"""Command-line access to an entity sync data directory."""

from __future__ import annotations

import argparse
import json
import logging
import sys

from entity_sync.engine_manager import EngineManager
from entity_sync.models.base import EntityKind
from entity_sync.models.validators import SnapshotImportError
from entity_sync.paths import resolve_data_dir


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    with open(path, "r", encoding="utf-8") as fh:
        return fh.read()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="entity_sync")
    parser.add_argument("--data-dir", default=None,
                        help="Engine data directory (default: platform user data dir)")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def add_chat(cmd, with_kind=True):
        cmd.add_argument("--chat", required=True, help="Conversation id")
        if with_kind:
            cmd.add_argument("--kind", choices=[k.value for k in EntityKind],
                             default=EntityKind.NPC.value)

    ingest = sub.add_parser("ingest", help="Merge a panel data JSON file")
    ingest.add_argument("file", help="Panel data JSON ('-' for stdin)")
    ingest.add_argument("--panel", default=None, help="Panel id (default: source panel)")
    add_chat(ingest, with_kind=False)

    search = sub.add_parser("search", help="List entities matching a name")
    search.add_argument("text", nargs="?", default="")
    search.add_argument("--sort", default="lastSeen", choices=["lastSeen", "appearCount", "name"])
    search.add_argument("--order", default="desc", choices=["asc", "desc"])
    add_chat(search)

    export = sub.add_parser("export", help="Print a database snapshot")
    add_chat(export)

    import_cmd = sub.add_parser("import", help="Replace a database from a snapshot")
    import_cmd.add_argument("file", help="Snapshot JSON ('-' for stdin)")
    add_chat(import_cmd)

    delete = sub.add_parser("delete", help="Delete entities by id")
    delete.add_argument("ids", nargs="+")
    add_chat(delete, with_kind=False)

    sub.add_parser("dedup", help="Remove duplicate world-book entries")
    return parser


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)
    _setup_logging(args.verbose)

    em = EngineManager.from_data_dir(resolve_data_dir(args.data_dir))
    try:
        if getattr(args, "chat", None):
            em.switch_chat(args.chat)

        if args.cmd == "ingest":
            data = json.loads(_read_text(args.file))
            result = em.ingest(args.panel or em.settings.source_panel_id, data)
            print(result.summary())
            return 0 if result.ok else 1

        if args.cmd == "search":
            entities = em.search(args.text, args.sort, args.order, kind=EntityKind(args.kind))
            print(json.dumps([e.to_json_dict() for e in entities], ensure_ascii=False, indent=2))
            return 0

        if args.cmd == "export":
            print(em.export(EntityKind(args.kind)))
            return 0

        if args.cmd == "import":
            try:
                count = em.import_snapshot(_read_text(args.file), EntityKind(args.kind))
            except SnapshotImportError as exc:
                print(exc, file=sys.stderr)
                return 2
            print(f"Imported {count} entities into chat {args.chat}")
            return 0

        if args.cmd == "delete":
            count = em.delete_many(args.ids)
            print(f"Deleted {count} of {len(args.ids)} entities")
            return 0 if count == len(args.ids) else 1

        if args.cmd == "dedup":
            removed = em.cleanup_duplicates()
            print(f"Removed {len(removed)} duplicate entries")
            return 0
    finally:
        em.shutdown()

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
