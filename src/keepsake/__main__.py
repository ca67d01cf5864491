"""Entry point: python -m keepsake <command>

- init                      Create the tier collections
- ingest TEXT               Store a journal entry (STRICT_PRIVATE)
- block ENTRY_ID            Block an entry from elevation (STRICT_PRIVATE)
- candidates                List candidates awaiting review (RESTRICTED)
- promote / reject ID       Review a candidate (RESTRICTED)
- archive ID                Archive a persona memory (RESTRICTED)
- query / ask TEXT          Retrieve or answer under --scope
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from keepsake.config import KeepsakeConfig, load_config
from keepsake.errors import AuthorizationError, KeepsakeError


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _credentials(args: argparse.Namespace) -> set[str]:
    creds = set(args.credential or [])
    env = os.getenv("KEEPSAKE_CREDENTIALS", "")
    creds.update(c.strip() for c in env.split(",") if c.strip())
    return creds


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keepsake",
        description="Tiered personal memory with scope-gated retrieval",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to keepsake.toml")
    parser.add_argument(
        "--credential", "-c", action="append", help="Presented credential (repeatable)"
    )
    parser.add_argument("--json", "-j", action="store_true", help="Print JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Create missing tier collections")

    p_ingest = subparsers.add_parser("ingest", help="Store a journal entry")
    p_ingest.add_argument("content", help="Entry text ('-' reads stdin)")
    p_ingest.add_argument("--marker", "-m", action="append", help="Emotional marker (repeatable)")
    p_ingest.add_argument("--theme", "-t", action="append", help="Theme tag (repeatable)")
    p_ingest.add_argument(
        "--block", action="store_true", help="Never elevate this entry beyond the journal"
    )

    p_block = subparsers.add_parser("block", help="Block a journal entry from elevation")
    p_block.add_argument("entry_id")

    subparsers.add_parser("candidates", help="List candidates awaiting review")

    p_promote = subparsers.add_parser("promote", help="Promote a candidate to persona memory")
    p_promote.add_argument("candidate_id")
    p_promote.add_argument("--notes", help="Review notes")

    p_reject = subparsers.add_parser("reject", help="Reject (delete) a candidate")
    p_reject.add_argument("candidate_id")
    p_reject.add_argument("--notes", help="Review notes")

    p_archive = subparsers.add_parser("archive", help="Archive a persona memory")
    p_archive.add_argument("memory_id")

    for name, help_text in (("query", "Retrieve ranked memories"), ("ask", "Answer from memory")):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("text")
        p.add_argument("--scope", "-s", required=True, help="STRICT_PRIVATE, RESTRICTED or PUBLIC")

    return parser


def _print(args: argparse.Namespace, data, text: str) -> None:
    if args.json:
        print(json.dumps(data, ensure_ascii=False, indent=2))
    else:
        print(text)


async def _run(args: argparse.Namespace, config: KeepsakeConfig) -> None:
    from keepsake.core import Keepsake
    from keepsake.lifecycle import JournalEntryInput
    from keepsake.memory.records import RecordKind

    keepsake = Keepsake(config)
    creds = _credentials(args)
    try:
        if args.command == "init":
            report = await keepsake.init()
            _print(
                args,
                report,
                f"created: {', '.join(report['created']) or '-'}; "
                f"skipped: {', '.join(report['skipped']) or '-'}",
            )

        elif args.command == "ingest":
            content = sys.stdin.read() if args.content == "-" else args.content
            result = await keepsake.ingest(
                JournalEntryInput(
                    content=content,
                    emotional_markers=args.marker or [],
                    themes=args.theme or [],
                    public_elevation_blocked=args.block,
                ),
                creds,
            )
            data = {
                "entry_id": result.entry_id,
                "candidate_id": result.candidate_id,
                "error": str(result.error) if result.error else None,
            }
            text = f"entry {result.entry_id}"
            if result.candidate_id:
                text += f"\ncandidate {result.candidate_id} awaiting review"
            elif result.error:
                text += f"\nno candidate: {result.error}"
            _print(args, data, text)

        elif args.command == "block":
            removed = await keepsake.block_elevation(args.entry_id, creds)
            _print(
                args,
                {"entry_id": args.entry_id, "candidates_removed": removed},
                f"blocked {args.entry_id}; withdrew {removed} candidate(s)",
            )

        elif args.command == "candidates":
            candidates = await keepsake.list_candidates(creds)
            lines = [
                f"{c.id}  {c.created_at:%Y-%m-%d}  [{', '.join(c.payload.themes)}]\n"
                f"    {c.payload.summary}"
                for c in candidates
            ]
            _print(args, [c.to_dict() for c in candidates], "\n".join(lines) or "(none)")

        elif args.command == "promote":
            memory = await keepsake.promote(args.candidate_id, creds, args.notes)
            _print(args, memory.to_dict(), f"promoted {args.candidate_id} -> {memory.id}")

        elif args.command == "reject":
            await keepsake.reject(args.candidate_id, creds, args.notes)
            _print(args, {"rejected": args.candidate_id}, f"rejected {args.candidate_id}")

        elif args.command == "archive":
            memory = await keepsake.archive(args.memory_id, creds)
            _print(args, memory.to_dict(), f"archived {memory.id}")

        elif args.command == "query":
            results = await keepsake.query(args.text, args.scope, creds)
            raw = "raw_content" in keepsake.access.permitted_actions(args.scope)
            data = []
            for r in results:
                # Raw journal text only leaves the store for raw_content holders.
                hidden = r.record.kind is RecordKind.JOURNAL_ENTRY and not raw
                data.append(
                    {
                        "id": r.id,
                        "tier": r.tier.value,
                        "score": r.score,
                        "text": None if hidden else r.record.text,
                    }
                )
            lines = [f"{r.score:.3f}  {r.tier.value:<8} {r.id}" for r in results]
            _print(args, data, "\n".join(lines) or "(no matching memory)")

        elif args.command == "ask":
            response = await keepsake.ask(args.text, args.scope, creds)
            _print(args, {"text": response.text, "metadata": response.metadata}, response.text)
    finally:
        await keepsake.close()


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
        _setup_logging(config.log_level)
        asyncio.run(_run(args, config))
    except AuthorizationError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(2)
    except (KeepsakeError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
