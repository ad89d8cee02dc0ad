from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from exportflow.config import settings
from exportflow.core.errors import ExportJobNotFound, InvalidWindow
from exportflow.database import SessionLocal
from exportflow.services.factory import build_orchestrator
from exportflow.services.orchestrator import (
    STATUS_CANCELLED,
    STATUS_DONE,
    PipelineOrchestrator,
    PipelineResult,
)

logger = logging.getLogger("exportflow.cli")

EXIT_DONE = 0
EXIT_FAILED = 1
EXIT_NOTHING_TO_DO = 2
EXIT_CANCELLED = 3


def _parse_iso_datetime(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(
            "Invalid datetime, expected ISO-8601 (e.g. 2024-03-15T00:00:00Z)"
        ) from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Export a table window, then transform every exported file (resumable)."
    )
    parser.add_argument("--table", help="Source table name or ARN")
    parser.add_argument("--start", type=_parse_iso_datetime, help="Window start (inclusive)")
    parser.add_argument("--end", type=_parse_iso_datetime, help="Window end (exclusive)")
    parser.add_argument(
        "--incremental",
        action="store_true",
        help="Run the next gap-free window after the last recorded one",
    )
    parser.add_argument("--window-minutes", type=int, default=None)
    parser.add_argument(
        "--initial-start",
        type=_parse_iso_datetime,
        default=None,
        help="First window start when the table has no export history",
    )
    parser.add_argument(
        "--resubmit-failed",
        action="store_true",
        help="With --incremental, re-export a window whose last export FAILED",
    )
    parser.add_argument("--resume", metavar="JOB_ID", help="Resume processing of an export job")
    return parser


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.resume:
        return
    if not args.table:
        parser.error("--table is required unless --resume is given")
    if args.incremental:
        if args.start or args.end:
            parser.error("--incremental cannot be combined with --start/--end")
        return
    if not (args.start and args.end):
        parser.error("--start and --end are required (or use --incremental / --resume)")


def exit_code_for(result: Optional[PipelineResult]) -> int:
    if result is None:
        return EXIT_NOTHING_TO_DO
    if result.status == STATUS_DONE:
        return EXIT_DONE
    if result.status == STATUS_CANCELLED:
        return EXIT_CANCELLED
    return EXIT_FAILED


async def run(
    args: argparse.Namespace,
    orchestrator: PipelineOrchestrator,
    cancel_event: asyncio.Event,
) -> Optional[PipelineResult]:
    if args.resume:
        return await orchestrator.resume(args.resume, cancel_event=cancel_event)
    if args.incremental:
        return await orchestrator.run_incremental(
            args.table,
            window=timedelta(minutes=args.window_minutes) if args.window_minutes else None,
            initial_start=args.initial_start,
            resubmit_failed=bool(args.resubmit_failed),
            cancel_event=cancel_event,
        )
    return await orchestrator.run_export(
        args.table, args.start, args.end, cancel_event=cancel_event
    )


async def _main_async(args: argparse.Namespace, orchestrator: PipelineOrchestrator) -> int:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform's event loop; Ctrl-C aborts instead.
            pass

    try:
        result = await run(args, orchestrator, cancel_event)
    except (ExportJobNotFound, InvalidWindow) as exc:
        logger.error("cli_rejected", extra={"error": exc.to_dict()})
        print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
        return EXIT_FAILED

    if result is None:
        print(json.dumps({"status": "NOTHING_TO_DO"}))
    else:
        print(json.dumps(result.to_dict(), indent=2))
    return exit_code_for(result)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _validate_args(parser, args)

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s"
    )
    orchestrator = build_orchestrator(settings, SessionLocal)
    return asyncio.run(_main_async(args, orchestrator))


if __name__ == "__main__":
    raise SystemExit(main())
