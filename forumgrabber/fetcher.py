"""HTTP downloader with a global politeness gate."""

import time
from typing import Callable, Optional, Protocol

import requests


class FetchError(Exception):
    """A page could not be downloaded."""

    def __init__(self, message: str, url: str = ""):
        super().__init__(message)
        self.url = url


class HTTPStatusError(FetchError):
    """The server answered with a non-success status code."""

    def __init__(self, status_code: int, url: str):
        super().__init__(f"HTTP {status_code} fetching {url}", url)
        self.status_code = status_code


class Fetcher(Protocol):
    def fetch_html(self, url: str) -> str:
        ...


class Downloader:
    """Fetches pages from the forum, one request at a time.

    Every request made through one Downloader passes the same politeness
    gate, so frontier discovery, JIT refresh and page archiving together
    never exceed one request per ``delay`` seconds against the origin.
    """

    def __init__(
        self,
        user_agent: str,
        delay: float = 3.0,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.delay = delay
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._last_request: Optional[float] = None

        self.session = session or requests.Session()
        self.session.headers.update({
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Encoding": "gzip, deflate",
        })

    def _wait_politely(self) -> None:
        """Sleep until at least ``delay`` seconds have passed since the last request."""
        if self.delay <= 0:
            return
        if self._last_request is None:
            self._sleep(self.delay)
            return
        remaining = self.delay - (self._clock() - self._last_request)
        if remaining > 0:
            self._sleep(remaining)

    def _get(self, url: str) -> requests.Response:
        self._wait_politely()
        try:
            response = self.session.get(url, timeout=self.timeout, allow_redirects=True)
        except requests.exceptions.Timeout as e:
            raise FetchError(f"timeout fetching {url}: {e}", url) from e
        except requests.exceptions.RequestException as e:
            raise FetchError(f"error fetching {url}: {e}", url) from e
        finally:
            self._last_request = self._clock()

        if response.status_code >= 400:
            raise HTTPStatusError(response.status_code, url)

        return response

    def fetch_html(self, url: str) -> str:
        """Download a page and return it as decoded text.

        The charset declared by the server is used when present; otherwise
        the detected encoding, falling back to UTF-8.

        Raises:
            HTTPStatusError: On a status code of 400 or above.
            FetchError: On connection errors and timeouts.
        """
        response = self._get(url)
        if not response.encoding or "charset" not in response.headers.get("Content-Type", "").lower():
            response.encoding = response.apparent_encoding or "utf-8"
        return response.text

    def fetch(self, url: str) -> bytes:
        """Download a page and return it re-encoded as UTF-8 bytes."""
        return self.fetch_html(url).encode("utf-8")

    def close(self) -> None:
        self.session.close()
