"""CLI entry point for Mirror Backup.

Usage:
    python -m mirror_backup run SOURCE DESTINATION [--ignore PATTERN ...] [--reindex N]
    python -m mirror_backup batch CONFIG.json
    python -m mirror_backup example-config PATH

Commands:
    run             Mirror one source tree into a destination
    batch           Run every backup listed in a JSON config file
    example-config  Write an example batch config file
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from mirror_backup import __version__
from mirror_backup.config import (
    DEFAULT_AUTO_SAVE_INTERVAL,
    DEFAULT_REINDEX_THRESHOLD,
    BackupConfig,
    load_batch_config,
    split_ignore_list,
    write_example_config,
)
from mirror_backup.sync.engine import BackupEngine
from mirror_backup.utils.formatting import format_size
from mirror_backup.utils.logging import configure_root_logger

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130


def setup_logging(verbose: bool = False, log_file: Optional[str] = None, json_logs: bool = False) -> None:
    """Configure logging for CLI output."""
    level = logging.DEBUG if verbose else logging.INFO
    configure_root_logger(level=level, json_output=json_logs, log_file=Path(log_file) if log_file else None)


def run_backups(configs: List[BackupConfig]) -> int:
    """Run backups one after another; a failed run doesn't stop the batch.

    Returns:
        Exit code (0 if every run completed, 1 otherwise, 130 on Ctrl-C)
    """
    exit_code = EXIT_OK
    for config in configs:
        engine = BackupEngine(config)
        try:
            ok = engine.run()
        except KeyboardInterrupt:
            print(f"\nInterrupted, saving cache of '{engine.title}'...", file=sys.stderr)
            engine.save_cache()
            return EXIT_INTERRUPTED

        p = engine.progress
        status = "done" if ok else "FAILED"
        print(f"Backup '{engine.title}' {status}:")
        print(f"  Copied:  {p.files_copied} ({format_size(p.size_copied)})")
        print(f"  Updated: {p.files_updated} ({format_size(p.size_updated)})")
        print(f"  Deleted: {p.files_deleted} ({format_size(p.size_deleted)})")
        print(f"  Duration: {p.duration_ms / 1000:.1f} s")
        if not ok:
            exit_code = EXIT_FAILED
    return exit_code


def cmd_run(args: argparse.Namespace) -> int:
    """Handle the 'run' command - mirror one source into one destination.

    Args:
        args: Parsed CLI arguments

    Returns:
        Exit code
    """
    patterns: List[str] = []
    for value in args.ignore or []:
        patterns.extend(split_ignore_list(value))

    try:
        config = BackupConfig(
            source=Path(args.source),
            destination=Path(args.destination),
            title=args.title or "",
            ignore_patterns=patterns,
            reindex_threshold=args.reindex,
            auto_save_interval=args.auto_save,
            max_workers=args.workers,
            digest_algorithm=args.digest,
            verify_copies=args.verify,
            skip_on_conflict=args.skip_on_conflict,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED

    return run_backups([config])


def cmd_batch(args: argparse.Namespace) -> int:
    """Handle the 'batch' command - run every backup of a config file.

    Args:
        args: Parsed CLI arguments

    Returns:
        Exit code
    """
    try:
        configs = load_batch_config(args.config)
    except (OSError, ValueError) as e:
        print(f"Error: could not load '{args.config}': {e}", file=sys.stderr)
        return EXIT_FAILED

    if not configs:
        print(f"No backups configured in '{args.config}'")
        return EXIT_OK
    return run_backups(configs)


def cmd_example_config(args: argparse.Namespace) -> int:
    """Handle the 'example-config' command."""
    try:
        path = write_example_config(args.path)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED
    print(f"Example config written to: {path}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="mirror_backup",
        description="Mirror Backup - one-way directory tree backup with a cached destination index",
    )
    parser.add_argument(
        "--version", action="version",
        version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable verbose output"
    )
    parser.add_argument("--log-file", help="Also write log output to this file")
    parser.add_argument("--json-logs", action="store_true", help="Log as JSON lines")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Mirror SOURCE into DESTINATION")
    run_parser.add_argument("source", help="Tree to back up")
    run_parser.add_argument("destination", help="Backup target (holds the cache)")
    run_parser.add_argument(
        "--ignore", action="append", metavar="PATTERN",
        help="Ignore pattern, repeatable or ';' separated (e.g. '^tmp$;.cache')"
    )
    run_parser.add_argument(
        "--reindex", type=int, default=DEFAULT_REINDEX_THRESHOLD,
        help=f"Cache reuses before a full reindex (default: {DEFAULT_REINDEX_THRESHOLD})"
    )
    run_parser.add_argument(
        "--auto-save", type=float, default=DEFAULT_AUTO_SAVE_INTERVAL,
        help=f"Seconds between background cache saves (default: {DEFAULT_AUTO_SAVE_INTERVAL})"
    )
    run_parser.add_argument("--workers", type=int, help="Worker threads (default: 75%% of CPUs)")
    run_parser.add_argument("--title", help="Name shown in the summary")
    run_parser.add_argument(
        "--digest", choices=["sha256", "sha1", "md5", "xxhash"],
        default="sha256", help="Digest used to compare equally sized files (default: sha256)"
    )
    run_parser.add_argument("--verify", action="store_true", help="Verify every copy with xxhash")
    run_parser.add_argument(
        "--skip-on-conflict", action="store_true",
        help="Don't delete entries that still exist in the source"
    )

    # batch command
    batch_parser = subparsers.add_parser("batch", help="Run the backups listed in a JSON file")
    batch_parser.add_argument("config", help="Batch config file")

    # example-config command
    example_parser = subparsers.add_parser("example-config", help="Write an example batch config")
    example_parser.add_argument("path", help="Where to write the file")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_OK

    setup_logging(verbose=args.verbose, log_file=args.log_file, json_logs=args.json_logs)

    commands = {
        "run": cmd_run,
        "batch": cmd_batch,
        "example-config": cmd_example_config,
    }

    handler = commands.get(args.command)
    if handler:
        return handler(args)
    else:
        parser.print_help()
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
