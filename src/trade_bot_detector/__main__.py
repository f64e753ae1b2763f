"""Command-line entry point.

Usage:
    python -m trade_bot_detector run
    python -m trade_bot_detector backfill --from-block 1000 --to-block 5000
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys

from pydantic import ValidationError

from trade_bot_detector.config import Settings, get_settings
from trade_bot_detector.ingestor.chain import ChainClientError
from trade_bot_detector.pipeline import Pipeline

logger = logging.getLogger("trade_bot_detector")


def _load_settings() -> Settings | None:
    try:
        return get_settings()
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return None


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _run_service(pipeline: Pipeline) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform (e.g. Windows event loops).
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, pipeline.request_stop)
    await pipeline.run()


def cmd_run(args: argparse.Namespace) -> int:
    settings = _load_settings()
    if settings is None:
        return 2
    _configure_logging(settings)
    if args.dry_run:
        settings = settings.model_copy(update={"dry_run": True})
    try:
        settings.validate_requirements(command="run")
    except ValueError as e:
        logger.error("%s", e)
        return 2

    logger.info("Configuration: %s", json.dumps(settings.redacted_summary()))
    pipeline = Pipeline(settings)
    try:
        asyncio.run(_run_service(pipeline))
    except ChainClientError as e:
        logger.critical("Terminated: %s", e)
        return 1
    return 0


def cmd_backfill(args: argparse.Namespace) -> int:
    settings = _load_settings()
    if settings is None:
        return 2
    _configure_logging(settings)
    try:
        settings.validate_requirements(command="backfill")
    except ValueError as e:
        logger.error("%s", e)
        return 2
    if args.to_block is not None and args.to_block < args.from_block:
        logger.error("--to-block must not be lower than --from-block")
        return 2

    publish = args.publish
    if publish and not settings.dry_run and not settings.chain.analyzer_private_key:
        logger.error("--publish needs CHAIN_ANALYZER_PRIVATE_KEY (or DRY_RUN=true)")
        return 2

    pipeline = Pipeline(settings)
    try:
        summary = asyncio.run(
            pipeline.backfill(
                args.from_block,
                args.to_block,
                resume=args.resume,
                publish=publish,
            )
        )
    except ChainClientError as e:
        logger.critical("Backfill aborted: %s", e)
        return 1

    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="trade-bot-detector",
        description="Classify on-chain traders as human, good bot or bad bot",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Run the live detection service")
    p_run.add_argument(
        "--dry-run",
        action="store_true",
        help="publish to an in-memory registry instead of the contract",
    )
    p_run.set_defaults(fn=cmd_run)

    p_bf = sub.add_parser("backfill", help="Replay a block range and print a JSON summary")
    p_bf.add_argument("--from-block", type=int, required=True)
    p_bf.add_argument("--to-block", type=int, default=None, help="defaults to the confirmed head")
    p_bf.add_argument("--resume", action="store_true", help="continue after the stored checkpoint")
    p_bf.add_argument("--publish", action="store_true", help="flush classifications to the registry")
    p_bf.set_defaults(fn=cmd_backfill)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    rc: int = args.fn(args)
    return rc


if __name__ == "__main__":
    raise SystemExit(main())
