#!/usr/bin/env python3
"""
Command-line interface for Postmark.
"""

import os
import sys
import queue
import logging
import argparse
from datetime import datetime
from typing import Any, Dict, List, Optional

from . import __version__
from .errors import PostmarkError
from .pipeline import ReconciliationPipeline
from .renderer import OutputMode
from .settings import PostmarkSettings
from .store import DataStore
from .watcher import PollingWatcher


class InfoFilter(logging.Filter):
    """Filter to allow only selected INFO messages (and anything more severe) on the console."""
    def filter(self, record):
        if record.levelno >= logging.WARNING:
            return True
        allowed_messages = [
            "Reconciliation completed in",
            "Total tasks processed:",
            "Tasks succeeded:",
            "Tasks failed:",
            "Dry run",
            "Watching for changes in",
            "Stopped watching",
        ]
        return any(msg in record.getMessage() for msg in allowed_messages)


def setup_logging(log_dir: Optional[str] = 'logs', verbose: bool = False) -> logging.Logger:
    """Set up console and file logging for the Postmark logger family."""
    logger = logging.getLogger('Postmark')
    logger.setLevel(logging.DEBUG)

    if not logger.handlers:
        # Console handler with filter
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        if not verbose:
            console_handler.addFilter(InfoFilter())
        console_handler.setFormatter(logging.Formatter('%(message)s'))
        logger.addHandler(console_handler)

        # File handler for all logs
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            log_filename = datetime.now().strftime('postmark_%Y-%m-%d_%H-%M-%S.log')
            file_handler = logging.FileHandler(os.path.join(log_dir, log_filename))
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
            logger.addHandler(file_handler)

    return logger


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('content', nargs='?', default=None,
                        help='Content directory whose subfolders are posts (defaults to the current directory)')
    parser.add_argument('--db', '--database', dest='database', type=str,
                        help='Path to the SQLite database file')
    parser.add_argument('-f', '--fragments', action='store_true', default=None,
                        help='Generate HTML fragments instead of full HTML documents')
    parser.add_argument('--templates', type=str,
                        help='Directory containing a custom document.html template')
    parser.add_argument('--preview-words', type=int,
                        help='Number of leading words kept in post previews')
    parser.add_argument('--log-dir', type=str,
                        help='Directory for log files')
    parser.add_argument('-v', '--verbose', action='store_true', default=False,
                        help='Show debug output on the console')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='postmark',
                                     description='Postmark - a lightweight CMS for Markdown-based posts')
    parser.add_argument('--init', type=str, choices=['yml', 'yaml', 'json'],
                        help='Create a sample configuration file')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    subparsers = parser.add_subparsers(dest='command')

    watch = subparsers.add_parser('watch', help='Watch a content directory and reconcile changes as they happen')
    _add_common_arguments(watch)
    watch.add_argument('--interval', dest='poll_interval', type=float,
                       help='Seconds between filesystem polls')
    watch.add_argument('--no-rescan', dest='rescan_on_start', action='store_false', default=None,
                       help='Skip the full regeneration before watching starts')

    regenerate = subparsers.add_parser('regenerate',
                                       help='Regenerate all database records and static content')
    _add_common_arguments(regenerate)
    regenerate.add_argument('--dry-run', action='store_true', default=None,
                            help='Log the changes that would be made without writing anything')
    regenerate.add_argument('--db-only', '--database-only', dest='db_only', action='store_true', default=None,
                            help='Regenerate database records without touching static content files')
    return parser


def _check_content_directory(content_dir: str) -> str:
    content_dir = os.path.abspath(os.path.expanduser(content_dir))
    if not os.path.isdir(content_dir):
        raise PostmarkError(f"Content directory not found: {content_dir}")
    return content_dir


def _make_pipeline(settings: Dict[str, Any], content_dir: str, store: Optional[DataStore]) -> ReconciliationPipeline:
    return ReconciliationPipeline(
        content_dir,
        store=store,
        output_mode=OutputMode.FRAGMENT if settings['fragments'] else OutputMode.FULL_DOCUMENT,
        dry_run=bool(settings.get('dry_run')),
        render_content=not settings.get('db_only'),
        preview_words=settings['preview_words'],
        templates_dir=settings.get('templates'),
    )


def run_regenerate(settings: Dict[str, Any], logger: logging.Logger) -> None:
    """One-shot regeneration of every post. Partial task failures still exit 0."""
    content_dir = _check_content_directory(settings['content'])
    store = None

    if settings.get('dry_run'):
        logger.info("Dry run: the following changes won't be committed.")
        if os.path.exists(settings['database']):
            store = DataStore(settings['database'], read_only=True).open()
    else:
        store = DataStore(settings['database']).open()

    try:
        pipeline = _make_pipeline(settings, content_dir, store)
        summary = pipeline.regenerate()
        logger.debug(f"Regeneration summary: {summary}")
    finally:
        if store is not None:
            store.close()


def run_watch(settings: Dict[str, Any], logger: logging.Logger) -> None:
    """Optionally regenerate, then reconcile filesystem events until interrupted."""
    content_dir = _check_content_directory(settings['content'])
    store = DataStore(settings['database']).open()
    watcher = None
    try:
        pipeline = _make_pipeline(dict(settings, dry_run=False, db_only=False), content_dir, store)
        if settings['rescan_on_start']:
            pipeline.regenerate()

        events = queue.Queue()
        watcher = PollingWatcher(content_dir, events, interval=settings['poll_interval'])
        watcher.start()
        logger.info(f"Watching for changes in {content_dir}")

        try:
            pipeline.drain(events)
        except KeyboardInterrupt:
            logger.info("Stopped watching.")
    finally:
        if watcher is not None:
            watcher.stop()
        store.close()


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Handle init command
    if args.init:
        settings_loader = PostmarkSettings()
        config_path = settings_loader.create_sample_config(args.init)
        print(f"Created sample configuration file: {config_path}")
        return

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Load settings from configuration file
    settings_loader = PostmarkSettings()
    settings_loader.load_settings()

    # Command line arguments take precedence
    args_dict = {k: v for k, v in vars(args).items() if v is not None and k not in ('command', 'init', 'verbose')}
    final_settings = settings_loader.merge_with_args(args_dict)

    logger = setup_logging(final_settings['log_dir'], verbose=args.verbose)

    try:
        if args.command == 'watch':
            run_watch(final_settings, logger)
        else:
            run_regenerate(final_settings, logger)
    except (PostmarkError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
