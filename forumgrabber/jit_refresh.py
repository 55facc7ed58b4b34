"""Just-in-time re-scan of a sub-forum's live listing for unindexed topics."""

import sys
from datetime import datetime, timezone
from typing import Optional

from .fetcher import FetchError, Fetcher
from .models import SubForum, Topic, sort_key
from .page_parser import PaginationParser, TopicExtractor
from .url_resolver import resolve_url


def _flush() -> None:
    sys.stdout.flush()


def should_refresh(
    sub_forum: SubForum,
    last_attempt: Optional[datetime],
    enabled: bool,
    min_interval: float,
    now: Optional[datetime] = None,
) -> bool:
    """Decide whether a sub-forum's listing is due for a re-scan.

    True iff refresh is enabled, the sub-forum has a listing URL, and it was
    never refreshed or at least ``min_interval`` seconds have passed.
    """
    if not enabled or not sub_forum.listing_url:
        return False
    if last_attempt is None:
        return True
    now = now or datetime.now(timezone.utc)
    return (now - last_attempt).total_seconds() >= min_interval


class JITRefresher:
    """Scans up to ``max_pages`` listing pages and reports topics not yet known."""

    def __init__(
        self,
        fetcher: Fetcher,
        parser: PaginationParser,
        extractor: TopicExtractor,
        max_pages: int = 1,
        base_url: str = "",
        verbose: bool = False,
    ):
        self.fetcher = fetcher
        self.parser = parser
        self.extractor = extractor
        self.max_pages = max_pages
        self.base_url = base_url
        self.verbose = verbose

    def refresh(
        self,
        sub_forum: SubForum,
        known_topic_ids: set[str],
        max_pages: Optional[int] = None,
    ) -> list[Topic]:
        """Return listed topics whose IDs are not in known_topic_ids.

        Args:
            sub_forum: Sub-forum whose listing is scanned.
            known_topic_ids: IDs already indexed for this sub-forum.
            max_pages: Page budget for this call (defaults to the instance's).

        Returns:
            New topics in listing order, each ID at most once.

        Raises:
            FetchError: If the first listing page cannot be fetched. Later
                pages that fail are skipped.
        """
        budget = self.max_pages if max_pages is None else max_pages
        listing_url = resolve_url(self.base_url, sub_forum.listing_url) or sub_forum.listing_url
        if budget <= 0 or not listing_url:
            return []

        first_html = self.fetcher.fetch_html(listing_url)
        scanned = 1

        live_topics = self._extract(first_html, listing_url, sub_forum.id)

        if scanned < budget:
            try:
                page_urls = self.parser.parse_pagination_links(first_html, listing_url)
            except Exception as e:
                print(f"  [JIT] Could not parse listing pagination for sub-forum {sub_forum.id}: {e}")
                _flush()
                page_urls = []

            for page_url in page_urls:
                if scanned >= budget:
                    break
                if page_url == listing_url:
                    continue

                scanned += 1
                try:
                    html = self.fetcher.fetch_html(page_url)
                except FetchError as e:
                    print(f"  [JIT] Skipping listing page {page_url}: {e}")
                    _flush()
                    continue

                live_topics.extend(self._extract(html, page_url, sub_forum.id))

        new_topics = []
        seen = set(known_topic_ids)
        for topic in live_topics:
            if topic.id in seen:
                continue
            seen.add(topic.id)
            new_topics.append(topic)
            if self.verbose:
                print(f"    [JIT] New topic {topic.id}: {topic.title}")

        print(f"  [JIT] Sub-forum {sub_forum.id}: {len(new_topics)} new topic(s) "
              f"from {scanned} listing page(s)")
        _flush()
        return new_topics

    def _extract(self, html: str, page_url: str, sub_forum_id: str) -> list[Topic]:
        try:
            return list(self.extractor.extract_topics(html, page_url, sub_forum_id))
        except Exception as e:
            print(f"  [JIT] Could not extract topics from {page_url}: {e}")
            _flush()
            return []


def merge_topics(sub_forum: SubForum, new_topics: list[Topic]) -> int:
    """Append topics with unseen IDs to the sub-forum, new ones in ID order.

    Returns:
        Number of topics added.
    """
    known = sub_forum.topic_ids()
    added = sorted(
        {t.id: t for t in new_topics if t.id not in known}.values(),
        key=lambda t: sort_key(t.id),
    )
    sub_forum.topics.extend(added)
    return len(added)
