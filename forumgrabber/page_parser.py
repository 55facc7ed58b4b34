"""Pagination and topic-listing extraction from forum HTML."""

from typing import Protocol

from bs4 import BeautifulSoup

from .models import Topic
from .url_resolver import resolve_url, query_param


PAGINATION_SELECTOR = (
    "div.pagination a[href], .pagmenu a[href], .page-nav a[href], .nav-links a[href]"
)

TOPIC_LINK_SELECTOR = (
    "td.normal.bgc2 > a.b[href*='viewtopic.php'], "
    "a.topic-title[href*='viewtopic.php'], "
    "a[href*='viewtopic.php'][title*='Topic:']"
)


class PaginationParser(Protocol):
    def parse_pagination_links(self, html: str, page_url: str) -> list[str]:
        ...


class TopicExtractor(Protocol):
    def extract_topics(self, html: str, page_url: str, sub_forum_id: str) -> list[Topic]:
        ...


def make_soup(html: str) -> BeautifulSoup:
    """Parse HTML with lxml, falling back to the stdlib parser."""
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


class HTMLPaginationParser:
    """Finds pagination anchors and resolves them to absolute URLs."""

    def __init__(self, selector: str = PAGINATION_SELECTOR):
        self.selector = selector

    def parse_pagination_links(self, html: str, page_url: str) -> list[str]:
        """Return unique absolute pagination URLs in document order.

        Args:
            html: Page HTML.
            page_url: URL the HTML came from, used to resolve relative hrefs.

        Returns:
            List of absolute URLs (may be empty for single-page content).
        """
        soup = make_soup(html)

        links = []
        seen = set()
        for anchor in soup.select(self.selector):
            href = (anchor.get("href") or "").strip()
            if not href or href == "#" or href.lower().startswith("javascript:"):
                continue

            resolved = resolve_url(page_url, href)
            if not resolved or resolved in seen:
                continue

            seen.add(resolved)
            links.append(resolved)

        return links


class HTMLTopicExtractor:
    """Extracts topic links from a sub-forum listing page."""

    def __init__(self, selector: str = TOPIC_LINK_SELECTOR, verbose: bool = False):
        self.selector = selector
        self.verbose = verbose

    def extract_topics(self, html: str, page_url: str, sub_forum_id: str) -> list[Topic]:
        """Return topics listed on the page, in document order.

        Anchors with no resolvable topic ID (``t`` or ``topic`` parameter)
        or no title are skipped.
        """
        soup = make_soup(html)

        topics = []
        for row in soup.select("table.normal tr"):
            for link in row.select(self.selector):
                href = link.get("href")
                if not href:
                    continue

                title = link.get_text(strip=True)
                if not title:
                    title = (link.get("title") or "").strip()
                    if title.startswith("Topic:"):
                        title = title[len("Topic:"):].strip()
                if not title:
                    continue

                topic_url = resolve_url(page_url, href)
                if not topic_url:
                    continue

                topic_id = query_param(topic_url, "t") or query_param(topic_url, "topic")
                if not topic_id:
                    if self.verbose:
                        print(f"  [WARN] No topic ID in listing link '{topic_url}' ({title})")
                    continue

                topics.append(Topic(
                    id=topic_id,
                    sub_forum_id=sub_forum_id,
                    title=title,
                    seed_url=topic_url,
                ))

        return topics
