"""
Command line entry point.

Usage:
    # Download a file
    python -m resumable_fetch https://example.com/map.bin ./map.bin

    # Continue a previously interrupted download
    python -m resumable_fetch https://example.com/map.bin ./map.bin --resume

Exit codes:
    0   downloaded and published
    1   download failed (including not found)
    2   downloaded but the destination could not be replaced
    130 interrupted
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from resumable_fetch.config import DownloadConfig
from resumable_fetch.download.models import DownloadStatus
from resumable_fetch.download.registry import download_file
from resumable_fetch.errors import ConfigurationError
from resumable_fetch.logging.setup import setup_logging
from resumable_fetch.logging.utilities import log_with_context

logger = logging.getLogger(__name__)

EXIT_CODES = {
    DownloadStatus.OK: 0,
    DownloadStatus.FAILED: 1,
    DownloadStatus.FILE_NOT_FOUND: 1,
    DownloadStatus.FILE_LOCKED: 2,
}
EXIT_INTERRUPTED = 130


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="resumable_fetch",
        description="Download a file over HTTP(S) with retry, redirect and resume support",
    )
    parser.add_argument("url", help="URL to download")
    parser.add_argument("destination", type=Path, help="Path to save the file at")
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Continue from an existing <destination>.downloading file",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: ./config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write JSON logs to this rotating file",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Write console logs as JSON",
    )
    return parser.parse_args(argv)


class ProgressLogger:
    """Logs download progress at every 10% step (or every 10 MiB when size is unknown)."""

    STEP_PERCENT = 10
    STEP_BYTES = 10 * 1024 * 1024

    def __init__(self) -> None:
        self._last_mark = -1

    def __call__(self, url: str, bytes_read: int, bytes_total: int) -> None:
        if bytes_total > 0:
            mark = bytes_read * 100 // bytes_total // self.STEP_PERCENT
            message = f"Downloaded {mark * self.STEP_PERCENT}% ({bytes_read}/{bytes_total} bytes)"
        else:
            mark = bytes_read // self.STEP_BYTES
            message = f"Downloaded {bytes_read} bytes"
        if mark != self._last_mark:
            self._last_mark = mark
            log_with_context(logger, logging.INFO, message, url=url)


async def run(args: argparse.Namespace, config: DownloadConfig) -> int:
    status = await download_file(
        args.url,
        args.destination,
        resume=args.resume,
        on_progress=ProgressLogger(),
        config=config,
    )
    if status is None:
        return EXIT_INTERRUPTED
    log_with_context(
        logger,
        logging.INFO if status == DownloadStatus.OK else logging.ERROR,
        f"Download finished: {status.value}",
        url=args.url,
        status=status.value,
    )
    return EXIT_CODES[status]


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(
        log_file=args.log_file,
        json_format=args.json_logs,
        console_level=getattr(logging, args.log_level),
    )

    try:
        config = DownloadConfig.load_config(args.config)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    try:
        return asyncio.run(run(args, config))
    except KeyboardInterrupt:
        logger.warning("Interrupted, partial download removed")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
