"""Per-topic page discovery by breadth-first walk over pagination links."""

import sys
from collections import deque
from dataclasses import dataclass, field

from .fetcher import FetchError, Fetcher
from .page_parser import PaginationParser
from .url_resolver import (
    CanonicalizationError,
    canonicalize_topic_page_url,
    page_offset,
    query_param,
)


def _flush() -> None:
    sys.stdout.flush()


@dataclass
class Frontier:
    """Canonical page URLs of one topic, as discovered in this run."""

    pages: list[str]
    failed: list[str] = field(default_factory=list)  # Pages whose expansion failed

    @property
    def complete(self) -> bool:
        return not self.failed

    def numbered(self) -> list[tuple[int, str]]:
        """(page_number, url) pairs, page numbers starting at 1."""
        return list(enumerate(self.pages, start=1))

    def __len__(self) -> int:
        return len(self.pages)

    def __iter__(self):
        return iter(self.pages)


class FrontierDiscoverer:
    """Builds the ordered, de-duplicated list of page URLs for a topic.

    Every discovered link is canonicalized before it is compared, so two
    anchors that spell the same page differently (relative vs absolute,
    different parameter order, missing forum ID) count once.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        parser: PaginationParser,
        base_url: str = "",
        verbose: bool = False,
    ):
        self.fetcher = fetcher
        self.parser = parser
        self.base_url = base_url
        self.verbose = verbose

    def discover(self, seed_url: str, sub_forum_id: str) -> Frontier:
        """Walk pagination links from the seed and return the topic's pages.

        Failure to fetch or parse a page other than the seed is logged and
        skipped. The frontier is then marked incomplete for this run; pages
        missing from it are never marked archived, so a later run finds them.

        Args:
            seed_url: URL of the topic's first page (may be relative).
            sub_forum_id: Owning sub-forum, attached to every canonical URL.

        Returns:
            Frontier ordered by page offset with the seed first.

        Raises:
            CanonicalizationError: If the seed URL cannot be canonicalized.
            FetchError: If the seed page cannot be fetched.
        """
        seed = canonicalize_topic_page_url(seed_url, sub_forum_id, self.base_url)
        topic_id = query_param(seed, "topic")

        pages = [seed]
        seen = {seed}
        failed = []
        queue: deque[str] = deque([seed])

        while queue:
            url = queue.popleft()

            try:
                html = self.fetcher.fetch_html(url)
            except FetchError as e:
                if url == seed:
                    raise
                print(f"  [FRONTIER] Skipping page that failed to fetch: {url} ({e})")
                _flush()
                failed.append(url)
                continue

            try:
                links = self.parser.parse_pagination_links(html, url)
            except Exception as e:
                print(f"  [FRONTIER] Could not parse pagination on {url}: {e}")
                _flush()
                failed.append(url)
                continue

            for link in links:
                try:
                    canonical = canonicalize_topic_page_url(link, sub_forum_id, url)
                except CanonicalizationError as e:
                    if self.verbose:
                        print(f"    [FRONTIER] Ignoring link {link}: {e}")
                    continue

                # Pagination blocks can also link to neighbouring topics.
                if query_param(canonical, "topic") != topic_id:
                    continue

                if canonical in seen:
                    continue

                seen.add(canonical)
                pages.append(canonical)
                queue.append(canonical)
                if self.verbose:
                    print(f"    + {canonical}")

        return Frontier(pages=order_pages(pages, seed), failed=failed)


def order_pages(pages: list[str], seed: str) -> list[str]:
    """Order pages by ``start`` offset, keeping the seed first."""
    rest = [url for url in pages if url != seed]
    rest.sort(key=page_offset)
    return [seed] + rest
