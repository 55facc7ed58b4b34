import os

import pytest

from forumgrabber.archiver import Archiver
from forumgrabber.config import ArchiveConfig
from forumgrabber.fetcher import FetchError, HTTPStatusError
from forumgrabber.file_saver import StorageError, Storer
from forumgrabber.frontier import FrontierDiscoverer
from forumgrabber.jit_refresh import JITRefresher
from forumgrabber.models import SubForum, Topic
from forumgrabber.page_parser import HTMLPaginationParser, HTMLTopicExtractor
from forumgrabber.state import load_state


ROOT = "https://forum.example.com/viewtopic.php"
LISTING = "https://forum.example.com/viewforum.php?f=sf1"


class _Killed(BaseException):
    """Simulates the process dying mid-run."""


def _url(sf, topic, start=0):
    if start:
        return f"{ROOT}?forum={sf}&start={start}&topic={topic}"
    return f"{ROOT}?forum={sf}&topic={topic}"


def _topic_page(topic, page_count, page_number):
    links = "".join(
        f'<a href="viewtopic.php?topic={topic}&amp;start={n * 20}">{n + 1}</a>'
        for n in range(page_count)
    )
    return (
        f'<html><body><div class="pagination">{links}</div>'
        f"<p>{topic} page {page_number}</p></body></html>"
    )


def _site(sf, topics):
    """Map canonical URL -> HTML for topics given as {topic_id: page_count}."""
    pages = {}
    for topic, count in topics.items():
        for n in range(count):
            pages[_url(sf, topic, n * 20)] = _topic_page(topic, count, n + 1)
    return pages


class _FakeDownloader:
    def __init__(self, pages, kill_on=None):
        self.pages = dict(pages)
        self.kill_on = kill_on
        self.html_calls = []
        self.page_calls = []

    def fetch_html(self, url):
        self.html_calls.append(url)
        content = self.pages.get(url)
        if isinstance(content, Exception):
            raise content
        if content is None:
            raise HTTPStatusError(404, url)
        return content

    def fetch(self, url):
        if url == self.kill_on:
            raise _Killed()
        self.page_calls.append(url)
        content = self.pages.get(url)
        if isinstance(content, Exception):
            raise content
        if content is None:
            raise HTTPStatusError(404, url)
        return content.encode("utf-8")


class _FailingStorer:
    def __init__(self, storer, fail_pages):
        self.storer = storer
        self.fail_pages = set(fail_pages)

    def save(self, sub_forum_id, topic_id, page_number, content):
        if (topic_id, page_number) in self.fail_pages:
            raise StorageError(f"disk full writing page {page_number}")
        return self.storer.save(sub_forum_id, topic_id, page_number, content)


def _config(tmp_path, **overrides):
    values = dict(
        archive_root=str(tmp_path / "archive"),
        state_file_path=str(tmp_path / "progress.json"),
        performance_log_path=str(tmp_path / "logs" / "performance_log.csv"),
        checkpoint_interval=0,
        jit_refresh_pages=0,
        politeness_delay=0,
    )
    values.update(overrides)
    return ArchiveConfig(**values)


def _sub_forum(sf, topic_ids, listing_url=""):
    return SubForum(
        id=sf,
        name=f"Forum {sf}",
        listing_url=listing_url,
        topics=[Topic(tid, sf, f"Topic {tid}", f"{ROOT}?t={tid}") for tid in topic_ids],
    )


def _archiver(config, sub_forums, downloader, storer=None, refresher=None):
    return Archiver(
        config=config,
        state=load_state(config.state_file_path),
        sub_forums=sub_forums,
        downloader=downloader,
        storer=storer or Storer(config.archive_root),
        discoverer=FrontierDiscoverer(downloader, HTMLPaginationParser()),
        refresher=refresher,
    )


def test_archives_every_page_and_completes(tmp_path):
    config = _config(tmp_path)
    downloader = _FakeDownloader(_site("sf1", {"t1": 3, "t2": 1}))
    archiver = _archiver(config, [_sub_forum("sf1", ["t1", "t2"])], downloader)

    assert archiver.run()

    for n in (1, 2, 3):
        path = tmp_path / "archive" / "sf1" / "t1" / f"page_{n}.html"
        assert f"t1 page {n}" in path.read_text(encoding="utf-8")
    assert (tmp_path / "archive" / "sf1" / "t2" / "page_1.html").exists()

    state = load_state(config.state_file_path)
    assert state.is_topic_archived("t1")
    assert state.is_topic_archived("t2")
    assert state.is_sub_forum_completed("sf1")
    assert archiver.metrics.pages_archived == 4
    assert os.path.exists(config.performance_log_path)


def test_store_failure_leaves_topic_open_then_retries_only_missing_page(tmp_path):
    config = _config(tmp_path)
    site = _site("sf1", {"t1": 3})
    storer = _FailingStorer(Storer(config.archive_root), {("t1", 2)})
    archiver = _archiver(config, [_sub_forum("sf1", ["t1"])], _FakeDownloader(site), storer)

    assert archiver.run()

    state = load_state(config.state_file_path)
    assert state.is_page_archived("t1", 1)
    assert not state.is_page_archived("t1", 2)
    assert state.is_page_archived("t1", 3)
    assert not state.is_topic_archived("t1")
    assert not state.is_sub_forum_completed("sf1")
    assert archiver.metrics.errors == 1

    downloader = _FakeDownloader(site)
    rerun = _archiver(config, [_sub_forum("sf1", ["t1"])], downloader)
    assert rerun.run()

    assert downloader.page_calls == [_url("sf1", "t1", 20)]
    state = load_state(config.state_file_path)
    assert state.is_topic_archived("t1")
    assert state.is_sub_forum_completed("sf1")


def test_fetch_failure_leaves_page_unarchived(tmp_path):
    config = _config(tmp_path)
    site = _site("sf1", {"t1": 2})
    downloader = _FakeDownloader(site)
    # Discovery sees page 2, archiving it fails.
    downloader.fetch = _fail_for(downloader.fetch, _url("sf1", "t1", 20))
    archiver = _archiver(config, [_sub_forum("sf1", ["t1"])], downloader)

    assert archiver.run()

    state = load_state(config.state_file_path)
    assert state.is_page_archived("t1", 1)
    assert not state.is_page_archived("t1", 2)
    assert not state.is_topic_archived("t1")
    assert not (tmp_path / "archive" / "sf1" / "t1" / "page_2.html").exists()


def _fail_for(fetch, bad_url):
    def wrapped(url):
        if url == bad_url:
            raise FetchError("connection reset", url)
        return fetch(url)
    return wrapped


def test_resume_after_kill(tmp_path):
    config = _config(tmp_path)
    site = _site("sf1", {"t1": 2, "t2": 1})

    first = _FakeDownloader(site, kill_on=_url("sf1", "t1", 20))
    with pytest.raises(_Killed):
        _archiver(config, [_sub_forum("sf1", ["t1", "t2"])], first).run()

    state = load_state(config.state_file_path)
    assert state.is_page_archived("t1", 1)
    assert not state.is_topic_archived("t1")

    second = _FakeDownloader(site)
    assert _archiver(config, [_sub_forum("sf1", ["t1", "t2"])], second).run()

    assert second.page_calls == [_url("sf1", "t1", 20), _url("sf1", "t2")]
    state = load_state(config.state_file_path)
    assert state.is_topic_archived("t1")
    assert state.is_topic_archived("t2")
    assert state.is_sub_forum_completed("sf1")


def test_completed_work_is_skipped(tmp_path):
    config = _config(tmp_path)
    site = _site("sf1", {"t1": 1})
    assert _archiver(config, [_sub_forum("sf1", ["t1"])], _FakeDownloader(site)).run()

    downloader = _FakeDownloader(site)
    assert _archiver(config, [_sub_forum("sf1", ["t1"])], downloader).run()

    assert downloader.html_calls == []
    assert downloader.page_calls == []


def test_stop_request_halts_before_next_page(tmp_path):
    config = _config(tmp_path)
    site = _site("sf1", {"t1": 3})
    downloader = _FakeDownloader(site)
    archiver = _archiver(config, [_sub_forum("sf1", ["t1"])], downloader)

    fetch = downloader.fetch

    def fetch_then_stop(url):
        content = fetch(url)
        archiver.request_stop()
        return content

    downloader.fetch = fetch_then_stop

    assert not archiver.run()

    assert downloader.page_calls == [_url("sf1", "t1")]
    state = load_state(config.state_file_path)
    assert state.is_page_archived("t1", 1)
    assert not state.is_page_archived("t1", 2)
    assert state.resume_cursor.topic_id == "t1"


def test_stop_before_start_does_nothing(tmp_path):
    config = _config(tmp_path)
    downloader = _FakeDownloader(_site("sf1", {"t1": 1}))
    archiver = _archiver(config, [_sub_forum("sf1", ["t1"])], downloader)
    archiver.request_stop()

    assert not archiver.run()
    assert downloader.html_calls == []


def test_seed_failure_skips_topic_and_continues(tmp_path):
    config = _config(tmp_path)
    site = _site("sf1", {"t2": 1})
    downloader = _FakeDownloader(site)
    archiver = _archiver(config, [_sub_forum("sf1", ["t1", "t2"])], downloader)

    assert archiver.run()

    state = load_state(config.state_file_path)
    assert not state.is_topic_archived("t1")
    assert state.is_topic_archived("t2")
    assert not state.is_sub_forum_completed("sf1")


def test_jit_refresh_adds_new_topics(tmp_path):
    config = _config(tmp_path, jit_refresh_pages=1)
    site = _site("sf1", {"t1": 1, "9": 1})
    site[LISTING] = (
        '<html><body><table class="normal">'
        '<tr><td class="normal bgc2"><a class="b" href="viewtopic.php?t=t1">One</a></td></tr>'
        '<tr><td class="normal bgc2"><a class="b" href="viewtopic.php?t=9">Nine</a></td></tr>'
        "</table></body></html>"
    )
    downloader = _FakeDownloader(site)
    refresher = JITRefresher(downloader, HTMLPaginationParser(), HTMLTopicExtractor())
    sub_forum = _sub_forum("sf1", ["t1"], listing_url=LISTING)
    archiver = _archiver(config, [sub_forum], downloader, refresher=refresher)

    assert archiver.run()

    assert [t.id for t in sub_forum.topics] == ["t1", "9"]
    state = load_state(config.state_file_path)
    assert state.is_topic_archived("9")
    assert state.is_sub_forum_completed("sf1")
    assert state.last_jit_attempt("sf1") is not None


def test_jit_failure_falls_back_to_indexed_topics(tmp_path):
    config = _config(tmp_path, jit_refresh_pages=1)
    downloader = _FakeDownloader(_site("sf1", {"t1": 1}))
    refresher = JITRefresher(downloader, HTMLPaginationParser(), HTMLTopicExtractor())
    sub_forum = _sub_forum("sf1", ["t1"], listing_url=LISTING)
    archiver = _archiver(config, [sub_forum], downloader, refresher=refresher)

    assert archiver.run()

    state = load_state(config.state_file_path)
    assert state.is_topic_archived("t1")
    assert state.last_jit_attempt("sf1") is None
    assert archiver.metrics.errors == 1


def _listing(*topic_ids):
    rows = "".join(
        f'<tr><td class="normal bgc2"><a class="b" href="viewtopic.php?t={tid}">Topic {tid}</a></td></tr>'
        for tid in topic_ids
    )
    return f'<html><body><table class="normal">{rows}</table></body></html>'


def _jit_archiver(config, downloader, topic_ids):
    refresher = JITRefresher(downloader, HTMLPaginationParser(), HTMLTopicExtractor())
    sub_forum = _sub_forum("sf1", topic_ids, listing_url=LISTING)
    return _archiver(config, [sub_forum], downloader, refresher=refresher), sub_forum


def test_jit_topics_survive_a_kill_before_they_are_archived(tmp_path):
    config = _config(tmp_path, jit_refresh_pages=1)
    site = _site("sf1", {"t1": 1, "9": 1})
    site[LISTING] = _listing("t1", "9")

    first = _FakeDownloader(site, kill_on=_url("sf1", "9"))
    archiver, _ = _jit_archiver(config, first, ["t1"])
    with pytest.raises(_Killed):
        archiver.run()

    state = load_state(config.state_file_path)
    assert state.last_jit_attempt("sf1") is not None
    assert [t.id for t in state.jit_topics_for("sf1")] == ["9"]
    assert not state.is_topic_archived("9")

    # The refresh is not due again, so topic 9 must come from the state file.
    second = _FakeDownloader(site)
    archiver, sub_forum = _jit_archiver(config, second, ["t1"])
    assert archiver.run()

    assert LISTING not in second.html_calls
    assert [t.id for t in sub_forum.topics] == ["t1", "9"]
    assert second.page_calls == [_url("sf1", "9")]
    state = load_state(config.state_file_path)
    assert state.is_topic_archived("9")
    assert state.is_sub_forum_completed("sf1")


def test_performance_log_written_at_checkpoints(tmp_path):
    config = _config(tmp_path)
    downloader = _FakeDownloader(_site("sf1", {"t1": 2}))
    archiver = _archiver(config, [_sub_forum("sf1", ["t1"])], downloader)
    log_lines_seen = []

    fetch = downloader.fetch

    def fetch_and_read_log(url):
        if os.path.exists(config.performance_log_path):
            with open(config.performance_log_path, encoding="utf-8") as f:
                log_lines_seen.append(len(f.read().splitlines()))
        else:
            log_lines_seen.append(0)
        return fetch(url)

    downloader.fetch = fetch_and_read_log

    assert archiver.run()

    # Header plus the row for page 1 are on disk before page 2 is fetched.
    assert log_lines_seen == [0, 2]


def test_empty_sub_forum_stays_open_until_listing_is_read(tmp_path):
    config = _config(tmp_path, jit_refresh_pages=1)
    site = _site("sf1", {"5": 1})

    first = _FakeDownloader(site)
    archiver, _ = _jit_archiver(config, first, [])
    assert archiver.run()

    state = load_state(config.state_file_path)
    assert not state.is_sub_forum_completed("sf1")

    site[LISTING] = _listing("5")
    second = _FakeDownloader(site)
    archiver, _ = _jit_archiver(config, second, [])
    assert archiver.run()

    state = load_state(config.state_file_path)
    assert state.is_topic_archived("5")
    assert state.is_sub_forum_completed("sf1")


def test_incomplete_frontier_is_finished_by_next_run(tmp_path):
    config = _config(tmp_path)
    seed, page2, page3 = _url("sf1", "t1"), _url("sf1", "t1", 20), _url("sf1", "t1", 40)

    def page(*offsets):
        links = "".join(f'<a href="viewtopic.php?topic=t1&amp;start={o}">p</a>' for o in offsets)
        return f'<html><body><div class="pagination">{links}</div></body></html>'

    # Page 3 is only linked from page 2.
    site = {seed: page(20), page2: page(0, 40), page3: page(20)}

    first = _FakeDownloader(site)
    fetch_html = first.fetch_html

    def fail_page2_discovery(url):
        if url == page2:
            raise FetchError("connection reset", url)
        return fetch_html(url)

    first.fetch_html = fail_page2_discovery
    assert _archiver(config, [_sub_forum("sf1", ["t1"])], first).run()

    assert first.page_calls == [seed, page2]
    state = load_state(config.state_file_path)
    assert state.is_page_archived("t1", 2)
    assert not state.is_topic_archived("t1")
    assert not state.is_sub_forum_completed("sf1")

    second = _FakeDownloader(site)
    assert _archiver(config, [_sub_forum("sf1", ["t1"])], second).run()

    assert second.page_calls == [page3]
    state = load_state(config.state_file_path)
    assert state.is_topic_archived("t1")
    assert state.is_sub_forum_completed("sf1")
