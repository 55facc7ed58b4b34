"""Archive control loop - sub-forums, topics, pages, checkpoints, cancellation."""

import sys
import threading
import time
from typing import Callable, Optional, Protocol

from .config import ArchiveConfig
from .fetcher import FetchError
from .file_saver import StorageError
from .frontier import FrontierDiscoverer
from .jit_refresh import JITRefresher, merge_topics, should_refresh
from .metrics import BatchMetrics, PageEvent
from .models import SubForum, Topic
from .state import ProgressState
from .url_resolver import CanonicalizationError


def _flush() -> None:
    """Flush stdout so output appears immediately in piped/buffered contexts."""
    sys.stdout.flush()


class PageFetcher(Protocol):
    def fetch(self, url: str) -> bytes:
        ...


class PageStorer(Protocol):
    def save(self, sub_forum_id: str, topic_id: str, page_number: int, content: bytes) -> str:
        ...


class Archiver:
    """Sequential archiver for a set of sub-forums.

    Processes one page at a time: sub-forums in the given order, topics in
    index order, pages in frontier order. Progress lives in a ProgressState
    so a rerun skips everything already archived and retries only what
    failed or was never reached.

    Cancellation is cooperative. ``request_stop()`` (typically from a signal
    handler) is honoured before a sub-forum, before a topic and before a
    page, never between fetching and storing a page.
    """

    def __init__(
        self,
        config: ArchiveConfig,
        state: ProgressState,
        sub_forums: list[SubForum],
        downloader: PageFetcher,
        storer: PageStorer,
        discoverer: FrontierDiscoverer,
        refresher: Optional[JITRefresher] = None,
        metrics: Optional[BatchMetrics] = None,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.state = state
        self.sub_forums = sub_forums
        self.downloader = downloader
        self.storer = storer
        self.discoverer = discoverer
        self.refresher = refresher
        self.metrics = metrics or BatchMetrics()
        self.stop_event = stop_event or threading.Event()
        self._clock = clock
        self._last_checkpoint = clock()
        self._topics_pending = 0
        self._topics_done = 0

    def request_stop(self) -> None:
        self.stop_event.set()

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    def run(self) -> bool:
        """Archive everything not yet archived.

        Returns:
            True if the loop ran to the end, False if it was cancelled.
        """
        self._restore_jit_topics()
        self._print_banner()
        completed = False
        try:
            completed = self._run_sub_forums()
        finally:
            self.checkpoint()
            self._print_summary(completed)
        return completed

    def _restore_jit_topics(self) -> None:
        """Merge topics found by earlier JIT refreshes back into their sub-forums."""
        for sub_forum in self.sub_forums:
            restored = merge_topics(sub_forum, self.state.jit_topics_for(sub_forum.id))
            if restored and self.config.verbose:
                print(f"[INFO] Sub-forum {sub_forum.id}: restored {restored} JIT topic(s) from state")

    def _run_sub_forums(self) -> bool:
        for sub_forum in self.sub_forums:
            if self.stopped:
                print("[STOP] Stop requested before next sub-forum")
                return False

            if self.state.is_sub_forum_completed(sub_forum.id):
                if self.config.verbose:
                    print(f"[SKIP] Sub-forum {sub_forum.id} already completed")
                continue

            if not self._archive_sub_forum(sub_forum):
                return False

        return True

    def _archive_sub_forum(self, sub_forum: SubForum) -> bool:
        print(f"[INFO] Sub-forum {sub_forum.id} ({sub_forum.name}): {len(sub_forum.topics)} indexed topic(s)")
        _flush()
        self.state.set_cursor(sub_forum.id)

        self._maybe_refresh(sub_forum)

        for topic in list(sub_forum.topics):
            if self.state.is_topic_archived(topic.id):
                self.metrics.record_topic_skipped()
                if self.config.verbose:
                    print(f"  [SKIP] Topic {topic.id} already archived")
                continue

            if self.stopped:
                print("[STOP] Stop requested before next topic")
                return False

            if not self._archive_topic(sub_forum, topic):
                return False

            self._topics_done += 1
            self.checkpoint()
            print(self.metrics.progress_line(self._topics_pending - self._topics_done))
            _flush()

        if not sub_forum.topics and self.state.last_jit_attempt(sub_forum.id) is None:
            # Nothing indexed and the live listing was never read.
            print(f"[INFO] Sub-forum {sub_forum.id} has no known topics yet; left open for a later run")
        elif self.state.mark_sub_forum_completed(sub_forum.id, sub_forum.topic_ids()):
            print(f"[INFO] Sub-forum {sub_forum.id} completed")
        else:
            print(f"[INFO] Sub-forum {sub_forum.id} has topics left for a later run")
        _flush()
        self.checkpoint()
        return True

    def _maybe_refresh(self, sub_forum: SubForum) -> None:
        """JIT-refresh the sub-forum's topic list when due; failures keep the old list."""
        if self.refresher is None:
            return
        if not should_refresh(
            sub_forum,
            self.state.last_jit_attempt(sub_forum.id),
            self.config.jit_enabled,
            self.config.jit_refresh_interval,
        ):
            return

        started = self._clock()
        try:
            new_topics = self.refresher.refresh(
                sub_forum, sub_forum.topic_ids(), self.config.jit_refresh_pages
            )
        except FetchError as e:
            print(f"  [WARN] JIT refresh failed for sub-forum {sub_forum.id}: {e}. "
                  f"Using indexed topics only")
            _flush()
            self.metrics.record_error(PageEvent(
                resource_type="sub_forum",
                resource_id=sub_forum.id,
                action="jit_refresh_error",
                url=sub_forum.listing_url,
                duration=self._clock() - started,
                notes=str(e),
            ))
            return

        added = merge_topics(sub_forum, new_topics)
        self._topics_pending += added
        self.state.record_jit_attempt(sub_forum.id, topics=new_topics)
        self.checkpoint()
        self.metrics.record_page(PageEvent(
            resource_type="sub_forum",
            resource_id=sub_forum.id,
            action="jit_refresh",
            duration=self._clock() - started,
            notes=f"new_topics={added}",
        ))
        if added:
            print(f"  [JIT] Added {added} topic(s) to sub-forum {sub_forum.id}")
            _flush()

    def _archive_topic(self, sub_forum: SubForum, topic: Topic) -> bool:
        """Archive every not-yet-archived page of a topic.

        Returns:
            False if a stop was requested part-way, True otherwise (including
            when the topic was skipped or some pages failed).
        """
        print(f"  [TOPIC] {topic.id}: {topic.title}")
        _flush()
        self.state.set_cursor(sub_forum.id, topic.id)

        started = self._clock()
        try:
            frontier = self.discoverer.discover(topic.seed_url, sub_forum.id)
        except (CanonicalizationError, FetchError) as e:
            print(f"  [ERROR] Cannot discover pages of topic {topic.id}: {e}. Skipping topic")
            _flush()
            self.metrics.record_error(PageEvent(
                resource_id=topic.id,
                action="discover_error",
                url=topic.seed_url,
                duration=self._clock() - started,
                notes=str(e),
            ))
            return True

        all_succeeded = True
        for page_number, url in frontier.numbered():
            if self.state.is_page_archived(topic.id, page_number, url):
                if self.config.verbose:
                    print(f"    [SKIP] Page {page_number} already archived")
                continue

            if self.stopped:
                print("[STOP] Stop requested before next page")
                return False

            self.state.set_cursor(sub_forum.id, topic.id, page_number)
            if not self._archive_page(sub_forum, topic, page_number, url):
                all_succeeded = False

        if not frontier.complete:
            print(f"  [WARN] Topic {topic.id}: {len(frontier.failed)} page(s) could not be "
                  f"expanded; topic left open for a later run")
        elif all_succeeded and self.state.mark_topic_archived(
            topic.id, range(1, len(frontier) + 1)
        ):
            self.metrics.record_topic_archived()
            print(f"  [DONE] Topic {topic.id} archived ({len(frontier)} page(s))")
        else:
            print(f"  [WARN] Topic {topic.id} has pages left for a later run")
        _flush()
        return True

    def _archive_page(self, sub_forum: SubForum, topic: Topic, page_number: int, url: str) -> bool:
        """Fetch and store one page; only a stored page is marked archived."""
        started = self._clock()

        try:
            content = self.downloader.fetch(url)
        except FetchError as e:
            print(f"    [ERROR] Fetch failed for page {page_number}: {e}")
            _flush()
            self.metrics.record_error(PageEvent(
                resource_id=topic.id,
                action="fetch_error",
                page_number=page_number,
                url=url,
                duration=self._clock() - started,
                notes=str(e),
            ))
            return False

        try:
            filepath = self.storer.save(sub_forum.id, topic.id, page_number, content)
        except StorageError as e:
            print(f"    [ERROR] Store failed for page {page_number}: {e}")
            _flush()
            self.metrics.record_error(PageEvent(
                resource_id=topic.id,
                action="store_error",
                page_number=page_number,
                url=url,
                duration=self._clock() - started,
                notes=str(e),
            ))
            return False

        self.state.mark_page_archived(topic.id, page_number, url)
        self.metrics.record_page(PageEvent(
            resource_id=topic.id,
            action="archived",
            page_number=page_number,
            url=url,
            size_bytes=len(content),
            duration=self._clock() - started,
        ))
        print(f"    [SAVED] {filepath}")
        _flush()

        self._maybe_checkpoint()
        return True

    def _maybe_checkpoint(self) -> None:
        interval = self.config.checkpoint_interval
        if interval <= 0 or self._clock() - self._last_checkpoint >= interval:
            self.checkpoint()

    def checkpoint(self) -> bool:
        """Persist progress and the buffered performance log.

        A failed save is reported and the run continues.
        """
        self._flush_metrics()
        try:
            self.state.save(self.config.state_file_path)
        except OSError as e:
            print(f"[ERROR] Could not save state to {self.config.state_file_path}: {e}")
            _flush()
            return False
        self._last_checkpoint = self._clock()
        return True

    def _flush_metrics(self) -> None:
        try:
            self.metrics.flush()
        except OSError as e:
            print(f"[ERROR] Could not write performance log: {e}")
            _flush()

    def _print_banner(self) -> None:
        self._topics_pending = sum(
            1
            for sf in self.sub_forums
            if not self.state.is_sub_forum_completed(sf.id)
            for topic in sf.topics
            if not self.state.is_topic_archived(topic.id)
        )
        cursor = self.state.resume_cursor

        print("=" * 70)
        print("  ForumGrabber - Starting archive run")
        print(f"  Sub-forums: {len(self.sub_forums)} | Topics pending: {self._topics_pending}")
        print(f"  Archive root: {self.config.effective_archive_root}")
        print(f"  State file:   {self.config.state_file_path}")
        print(f"  Delay: {self.config.politeness_delay}s | Timeout: {self.config.timeout}s")
        if self.config.jit_enabled:
            print(f"  JIT refresh: {self.config.jit_refresh_pages} page(s) "
                  f"every {self.config.jit_refresh_interval:.0f}s")
        if self.config.test_mode:
            print(f"  Test mode: sub-forums {', '.join(self.config.test_sub_forum_ids)}")
        if cursor.sub_forum_id:
            print(f"  Resuming near sub-forum {cursor.sub_forum_id}, topic {cursor.topic_id or '-'}, "
                  f"page {cursor.page_number or '-'}")
        print("=" * 70)
        print()
        _flush()

    def _print_summary(self, completed: bool) -> None:
        print()
        print("=" * 70)
        print("  Archive run complete" if completed else "  Archive run stopped")
        print(f"  Pages archived:  {self.metrics.pages_archived}")
        print(f"  Topics archived: {self.metrics.topics_archived}")
        print(f"  Topics skipped:  {self.metrics.topics_skipped}")
        print(f"  Errors:          {self.metrics.errors}")
        print(f"  Elapsed:         {self.metrics.elapsed():.0f}s")
        print("=" * 70)
        _flush()
