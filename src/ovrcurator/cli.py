"""Command-line entry point: run a curation pass or scan the dataset for duplicates."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import TYPE_CHECKING

from ovrcurator.config import get_settings
from ovrcurator.dedup import DuplicateScanner
from ovrcurator.errors import ConfigurationError, CuratorError
from ovrcurator.main import LOG_FORMAT
from ovrcurator.runtime import build_runtime
from ovrcurator.storage import FilesystemStorage

if TYPE_CHECKING:
    from collections.abc import Sequence

    from ovrcurator.config import Settings
    from ovrcurator.models import ProcessingStats

logger = logging.getLogger("ovrcurator.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ovrcurator",
        description="Curate a labeled image dataset with one-vs-rest classifiers.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Fetch, classify, and store a batch of images")
    run.add_argument("--count", type=int, default=None, help="Number of images to fetch")
    run.add_argument("--batch-size", type=int, default=None, help="Images per batch")
    run.add_argument("--max-retries", type=int, default=None, help="Attempts per network call")
    run.add_argument("--threshold", type=float, default=None, help="Minimum confidence for a label")

    scan = subparsers.add_parser("scan-duplicates", help="Report images stored more than once")
    scan.add_argument(
        "--delete",
        action="store_true",
        help="Remove redundant copies from the pending partition",
    )
    return parser


async def _run(settings: Settings, args: argparse.Namespace) -> ProcessingStats:
    runtime = build_runtime(settings)
    try:
        return await runtime.orchestrator.run(
            total_count=args.count,
            batch_size=args.batch_size,
            max_retries=args.max_retries,
            threshold=args.threshold,
        )
    finally:
        await runtime.aclose()


def _scan(settings: Settings, delete: bool) -> int:
    report = DuplicateScanner(FilesystemStorage(settings)).scan(delete=delete)
    for group in report.groups:
        logger.info("Duplicate content %s", group.digest[:16])
        for path in group.confirmed:
            logger.info("  keep (confirmed): %s", path)
        for path in group.pending:
            action = "remove" if path in group.redundant else "keep"
            logger.info("  %s (pending): %s", action, path)
    logger.info(
        "Scanned %d files, %d redundant copies, %d deleted",
        report.scanned_files,
        report.redundant_files,
        len(report.deleted),
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)
    settings = get_settings()

    try:
        if args.command == "scan-duplicates":
            return _scan(settings, args.delete)
        asyncio.run(_run(settings, args))
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2
    except CuratorError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
