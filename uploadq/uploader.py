#!/usr/bin/env python3
"""
Multipart File Uploader
=======================

Command line front end for ``UploadManager``:
- uploads files and whole directories through presigned multipart sessions
- bounded concurrency across files, optional cap on parts per file
- per-part retry with exponential backoff
- progress bar, summary and optional JSON results file
"""

import argparse
import asyncio
import json
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from tqdm import tqdm

from uploadq import __version__
from uploadq.core.config import UploaderConfig
from uploadq.models.upload import SourceFile, UploadStatus
from uploadq.services.file_uploader import UploadListener
from uploadq.services.upload_manager import UploadManager
from uploadq.utils.exceptions import InvalidInputError

logger = logging.getLogger(__name__)


def setup_logging(level=logging.INFO, log_file: Optional[str] = None):
    """Setup logging with console and optional file handlers."""
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # Clear existing handlers to prevent duplicates
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # keep transport chatter out of INFO output
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    return logging.getLogger(__name__)


def parse_size(size_str: str) -> int:
    """Parse size string like '50MB' into bytes."""
    size_str = size_str.strip().upper()
    units = {"KB": 1024, "MB": 1024 ** 2, "GB": 1024 ** 3}
    try:
        for suffix, factor in units.items():
            if size_str.endswith(suffix):
                return int(size_str[:-2]) * factor
        return int(size_str)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid size: {size_str!r}")


def format_bytes(bytes_value: float) -> str:
    """Format bytes as human-readable string."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_value < 1024:
            return f"{bytes_value:.2f} {unit}"
        bytes_value /= 1024
    return f"{bytes_value:.2f} PB"


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"


def collect_sources(paths: Sequence[str]) -> List[SourceFile]:
    """Expand files and directories (recursively) into upload sources."""
    sources = []
    for raw in paths:
        path = Path(raw)
        if path.is_file():
            sources.append(SourceFile.from_path(path))
        elif path.is_dir():
            for file_path in sorted(path.rglob("*")):
                if file_path.is_file():
                    sources.append(SourceFile.from_path(file_path))
        else:
            raise FileNotFoundError(f"Path not found: {raw}")
    return sources


class ProgressBarListener(UploadListener):
    """Drive a tqdm bar from manager-wide progress."""

    def __init__(self, total_files: int, disable: bool = False):
        self.manager: Optional[UploadManager] = None
        self.total_files = total_files
        self.completed = 0
        self.failed = 0
        self.bar = tqdm(total=100, unit="%", desc="Uploading", disable=disable)

    def _refresh(self):
        if self.bar.disable:
            return
        if self.manager is not None:
            self.bar.n = self.manager.get_total_progress()
        self.bar.set_postfix(done=f"{self.completed}/{self.total_files}", failed=self.failed, refresh=False)
        self.bar.refresh()

    def on_progress(self, file_id, progress):
        self._refresh()

    def on_complete(self, file_id, result):
        self.completed += 1
        self._refresh()

    def on_error(self, file_id, error):
        self.failed += 1
        self._refresh()

    def close(self):
        self.bar.close()


async def run_uploads(sources: List[SourceFile], config: UploaderConfig,
                      listener: Optional[UploadListener] = None) -> UploadManager:
    """Upload every source and return the manager once all have settled."""
    async with UploadManager.from_config(config, listener=listener) as manager:
        if isinstance(listener, ProgressBarListener):
            listener.manager = manager
        manager.add_files(sources)
        try:
            await manager.wait_for_all()
        except asyncio.CancelledError:
            logger.info("Canceling all uploads...")
            abort_tasks = manager.cancel_all()
            if abort_tasks:
                await asyncio.wait(abort_tasks, timeout=5)
            raise
        return manager


def print_upload_summary(manager: UploadManager, elapsed: float):
    uploaders = list(manager.uploaders.values())
    completed = [u for u in uploaders if u.get_status() == UploadStatus.COMPLETED]
    failed = [u for u in uploaders if u.get_status() == UploadStatus.ERROR]
    total_bytes = sum(u.source.size for u in completed)

    print("\n" + "=" * 60)
    print("UPLOAD SUMMARY")
    print("=" * 60)
    print(f"Files: {len(completed)}/{len(uploaders)} completed")
    if failed:
        print(f"Failed: {len(failed)}")
        for u in failed:
            print(f"  {u.source.name}: {u.get_error()}")
    print(f"Data: {format_bytes(total_bytes)}")
    print(f"Duration: {format_duration(elapsed)}")
    if elapsed > 0:
        print(f"Speed: {format_bytes(total_bytes / elapsed)}/s")
    if not failed and len(completed) == len(uploaders):
        print("All uploads completed successfully!")
    elif failed:
        print("Some uploads failed - check logs for details")
    print("=" * 60)


def write_results(path: str, manager: UploadManager, config: UploaderConfig, elapsed: float):
    results = []
    for file_id, u in manager.uploaders.items():
        entry = {
            "file_id": file_id,
            "file_name": u.source.name,
            "file_size": u.source.size,
            "status": u.get_status().value,
        }
        if u.get_status() == UploadStatus.COMPLETED:
            entry["result"] = u.result.to_dict() if u.result else None
        if u.get_error() is not None:
            entry["error"] = str(u.get_error())
        results.append(entry)

    with open(path, "w") as f:
        json.dump({
            "timestamp": datetime.now().isoformat(),
            "config": {
                "api_base": config.api_base,
                "part_size": config.part_size,
                "max_concurrent_uploads": config.max_concurrent_uploads,
                "max_concurrent_parts": config.max_concurrent_parts,
                "max_retries": config.max_retries,
            },
            "stats": {"total_files": len(results), "total_time": elapsed},
            "results": results,
        }, f, indent=2, default=str)
    logger.info(f"Results saved to {path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="uploadq",
        description=f"Multipart File Uploader {__version__}",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s file.zip                          # Upload single file
  %(prog)s /path/to/folder                   # Upload every file in a directory
  %(prog)s a.iso b.iso --max-uploads 2       # Two files at a time
  %(prog)s big.bin --part-size 16MB --max-parts 8

Environment Variables:
  export UPLOAD_API_BASE="https://api.example.com"
  export UPLOAD_API_TOKEN="your_bearer_token"
  export MAX_CONCURRENT_UPLOADS=3
  export DEBUG=true
        """
    )
    parser.add_argument("paths", nargs="+", help="Files or directories to upload")
    parser.add_argument("--api-base", help="Upload API base URL")
    parser.add_argument("--token", help="Bearer token for the upload API")
    parser.add_argument("--part-size", type=parse_size, help="Part size, e.g. 5MB")
    parser.add_argument("--max-uploads", type=int, help="Files uploaded concurrently")
    parser.add_argument("--max-parts", type=int, help="Parts per file uploaded concurrently")
    parser.add_argument("--retries", type=int, help="Retries per part")
    parser.add_argument("--results-file", help="Write a JSON report to this path")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", help="Log file path")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only log errors, no progress bar")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def build_config(args: argparse.Namespace) -> UploaderConfig:
    config = UploaderConfig()
    if args.debug:
        config.debug = True
    if args.api_base:
        config.api_base = args.api_base.rstrip("/")
    if args.token:
        config.api_token = args.token
    if args.part_size:
        config.part_size = args.part_size
    if args.max_uploads:
        config.max_concurrent_uploads = args.max_uploads
    if args.max_parts:
        config.max_concurrent_parts = args.max_parts
    if args.retries is not None:
        config.max_retries = args.retries
    config.validate()
    return config


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.quiet:
        level = logging.ERROR
    elif args.debug:
        level = logging.DEBUG
    else:
        level = logging.INFO
    setup_logging(level, args.log_file)

    try:
        config = build_config(args)
        sources = collect_sources(args.paths)
    except FileNotFoundError as e:
        logger.error(str(e))
        return 2
    except InvalidInputError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    if not sources:
        logger.error("Nothing to upload")
        return 2

    logger.info(f"Uploading {len(sources)} file(s), "
                f"{format_bytes(sum(s.size for s in sources))} total to {config.api_base}")

    listener = ProgressBarListener(len(sources), disable=args.quiet)
    start_time = time.time()
    try:
        manager = asyncio.run(run_uploads(sources, config, listener))
    except KeyboardInterrupt:
        listener.close()
        logger.info("Upload cancelled by user")
        return 130
    listener.close()
    elapsed = time.time() - start_time

    if not args.quiet:
        print_upload_summary(manager, elapsed)
    if args.results_file:
        write_results(args.results_file, manager, config, elapsed)

    statuses = [u.get_status() for u in manager.uploaders.values()]
    return 0 if all(s == UploadStatus.COMPLETED for s in statuses) else 1


if __name__ == "__main__":
    sys.exit(main())
