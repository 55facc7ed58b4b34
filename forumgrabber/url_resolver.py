"""URL resolution and canonical forms for topic pages."""

from urllib.parse import urljoin, urlparse, urlunparse, parse_qs, urlencode


class CanonicalizationError(ValueError):
    """Raised when a URL cannot be reduced to a canonical topic-page URL."""


def resolve_url(base_url: str, href: str) -> str:
    """Resolve a potentially relative href against a base URL.

    Examples:
        base = "https://forum.example.com/viewforum.php?f=3"
        href = "viewtopic.php?t=12&start=20"
        result = "https://forum.example.com/viewtopic.php?t=12&start=20"

        base = ""
        href = "https://forum.example.com/viewtopic.php?t=12"
        result = "https://forum.example.com/viewtopic.php?t=12"

    Args:
        base_url: The page URL where the href was found (may be empty).
        href: The href value from an anchor tag.

    Returns:
        Absolute URL with the fragment removed, or "" for hrefs that do
        not point at a page (fragments, javascript:, mailto:, tel:).
    """
    if not href:
        return ""

    href = href.strip()
    if not href or href.startswith(("#", "javascript:", "mailto:", "tel:")):
        return ""

    if href.startswith(("http://", "https://")):
        return _normalize_url(href)

    if not base_url:
        return ""

    return _normalize_url(urljoin(base_url, href))


def _normalize_url(url: str) -> str:
    """Drop the fragment, collapse duplicate slashes and lower-case scheme/host."""
    parsed = urlparse(url)

    path = parsed.path
    while "//" in path:
        path = path.replace("//", "/")

    return urlunparse((
        parsed.scheme.lower(),
        parsed.netloc.lower(),
        path,
        parsed.params,
        parsed.query,
        "",
    ))


def canonicalize_topic_page_url(raw_url: str, sub_forum_id: str, base_url: str = "") -> str:
    """Reduce a topic page URL to the one string used to identify that page.

    Only the ``forum``, ``start`` and ``topic`` query parameters survive.
    ``forum`` is always set to the owning sub-forum because the site's
    relative pagination links often omit it. ``start`` is dropped for the
    first page. Keys are emitted in sorted order so that parameter order in
    the source HTML never produces two spellings of one page.

    Args:
        raw_url: Absolute or relative URL of a topic page.
        sub_forum_id: ID of the sub-forum that owns the topic.
        base_url: URL to resolve ``raw_url`` against when it is relative.

    Returns:
        Canonical absolute URL.

    Raises:
        CanonicalizationError: If the URL cannot be made absolute or has
            no ``topic`` (or legacy ``t``) parameter.
    """
    absolute = resolve_url(base_url, raw_url)
    if not absolute:
        raise CanonicalizationError(f"cannot resolve '{raw_url}' to an absolute URL")

    parsed = urlparse(absolute)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise CanonicalizationError(f"'{raw_url}' is not an http(s) URL")

    query = parse_qs(parsed.query, keep_blank_values=True)
    topic_id = _first(query, "topic") or _first(query, "t")
    if not topic_id:
        raise CanonicalizationError(f"'{raw_url}' is missing a 'topic' or 't' query parameter")

    params = {"forum": sub_forum_id, "topic": topic_id}
    start = _first(query, "start")
    if start and start != "0":
        params["start"] = start

    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"

    return urlunparse((
        parsed.scheme,
        netloc,
        parsed.path,
        "",
        urlencode(sorted(params.items())),
        "",
    ))


def page_offset(url: str) -> int:
    """Return the integer ``start`` offset of a topic page URL (0 for page one)."""
    value = _first(parse_qs(urlparse(url).query), "start")
    try:
        return int(value) if value else 0
    except ValueError:
        return 0


def query_param(url: str, name: str) -> str:
    """Return the first value of a query parameter, or ""."""
    return _first(parse_qs(urlparse(url).query), name)


def _first(query: dict[str, list[str]], key: str) -> str:
    values = query.get(key)
    if not values:
        return ""
    return values[0].strip()
