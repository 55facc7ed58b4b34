"""CLI entry point for ForumGrabber.

Usage:
    python -m forumgrabber [--config config.json] [options]
"""

import argparse
import signal
import sys
import threading

from .archiver import Archiver
from .config import ArchiveConfig, ConfigError, build_config
from .fetcher import Downloader
from .file_saver import Storer, StorageError
from .frontier import FrontierDiscoverer
from .index_source import IndexLoadError, load_index
from .jit_refresh import JITRefresher
from .metrics import BatchMetrics
from .page_parser import HTMLPaginationParser, HTMLTopicExtractor
from .state import StateLoadError, load_state


def parse_args(argv: list[str] | None = None) -> ArchiveConfig:
    """Parse command-line arguments into an ArchiveConfig.

    Only flags given explicitly override the config file and environment.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:]).

    Returns:
        Populated ArchiveConfig instance.

    Raises:
        ConfigError: If the config file cannot be parsed.
    """
    parser = argparse.ArgumentParser(
        prog="forumgrabber",
        description="ForumGrabber - Resumable archiver for multi-forum discussion sites.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        argument_default=argparse.SUPPRESS,
        epilog="""
Examples:
  # Archive everything in the static index, using config.json if present
  python -m forumgrabber

  # Archive two sub-forums only, into the test archive root
  python -m forumgrabber --test-sub-forum-ids 3,17

  # Faster politeness delay, re-scan 3 listing pages per sub-forum
  python -m forumgrabber --politeness-delay 1.5 --jit-refresh-pages 3
        """,
    )

    parser.add_argument("--config", dest="config_file", default=None,
                        help="JSON configuration file (default: config.json if present)")
    parser.add_argument("--sub-forum-list-file",
                        help="Sub-forum list (CSV: SubForumID,SubForumName,SubForumURL, or JSON)")
    parser.add_argument("--topic-index-dir", help="Directory holding per-sub-forum topic indices")
    parser.add_argument("--topic-index-file-pattern",
                        help="Topic index filename pattern, {} is replaced by the sub-forum ID")
    parser.add_argument("--politeness-delay", type=float,
                        help="Seconds between consecutive requests (default: 3.0)")
    parser.add_argument("--timeout", type=int, help="Request timeout in seconds (default: 30)")
    parser.add_argument("--user-agent", help="User-Agent header sent with every request")
    parser.add_argument("--archive-root", help="Root directory for archived pages")
    parser.add_argument("--state-file-path", help="Progress state JSON file")
    parser.add_argument("--checkpoint-interval", type=float,
                        help="Seconds between state checkpoints while archiving pages (0 = every page)")
    parser.add_argument("--performance-log-path", help="CSV performance log")
    parser.add_argument("--jit-refresh-pages", type=int,
                        help="Listing pages to re-scan per sub-forum for new topics (0 disables)")
    parser.add_argument("--jit-refresh-interval", type=float,
                        help="Minimum seconds between JIT refreshes of one sub-forum")
    parser.add_argument("--forum-base-url", help="Base URL for relative topic and listing URLs")
    parser.add_argument("--test-sub-forum-ids",
                        help="Comma-separated sub-forum IDs to process (enables test mode)")
    parser.add_argument("--test-archive-root", help="Archive root used in test mode")
    parser.add_argument("--verbose", action="store_true",
                        help="Show skipped work and every discovered link")

    args = vars(parser.parse_args(argv))
    config_file = args.pop("config_file", None)
    return build_config(config_file=config_file, overrides=args)


def install_signal_handlers(archiver: Archiver, state_file_path: str) -> None:
    """Turn SIGINT/SIGTERM into a cooperative stop plus an immediate checkpoint."""

    def handle(signum, frame):
        print(f"\n[STOP] Received signal {signum}; finishing current page and stopping...")
        archiver.request_stop()
        if archiver.state.try_save(state_file_path):
            print(f"[STATE] Progress saved to {state_file_path}")
        sys.stdout.flush()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def build_archiver(config: ArchiveConfig) -> Archiver:
    """Load the index and state and wire up the collaborators.

    Raises:
        IndexLoadError, StateLoadError, StorageError: Fatal startup failures.
    """
    print(f"[INFO] Loading sub-forum list from {config.sub_forum_list_file}")
    sub_forums = load_index(
        config.sub_forum_list_file,
        config.topic_index_dir,
        config.topic_index_file_pattern,
        only_ids=config.test_sub_forum_ids or None,
    )
    print(f"[INFO] Loaded {len(sub_forums)} sub-forum(s), "
          f"{sum(len(sf.topics) for sf in sub_forums)} indexed topic(s)")

    state = load_state(config.state_file_path)
    print(f"[INFO] State: {len(state.archived_topics)} topic(s), "
          f"{state.total_pages_archived()} page(s) previously archived")

    storer = Storer(config.effective_archive_root)
    storer.ensure_writable()

    downloader = Downloader(
        user_agent=config.user_agent,
        delay=config.politeness_delay,
        timeout=config.timeout,
    )
    pagination = HTMLPaginationParser()
    discoverer = FrontierDiscoverer(
        downloader, pagination, base_url=config.forum_base_url, verbose=config.verbose
    )
    refresher = None
    if config.jit_enabled:
        refresher = JITRefresher(
            downloader,
            pagination,
            HTMLTopicExtractor(verbose=config.verbose),
            max_pages=config.jit_refresh_pages,
            base_url=config.forum_base_url,
            verbose=config.verbose,
        )

    return Archiver(
        config=config,
        state=state,
        sub_forums=sub_forums,
        downloader=downloader,
        storer=storer,
        discoverer=discoverer,
        refresher=refresher,
        metrics=BatchMetrics(config.performance_log_path),
        stop_event=threading.Event(),
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point. Returns the process exit status."""
    try:
        config = parse_args(argv)
        archiver = build_archiver(config)
    except (ConfigError, IndexLoadError, StateLoadError, StorageError) as e:
        print(f"[FATAL] {e}")
        return 1

    install_signal_handlers(archiver, config.state_file_path)
    try:
        completed = archiver.run()
    finally:
        archiver.downloader.close()

    return 0 if completed else 130


if __name__ == "__main__":
    sys.exit(main())
