"""Persistent archive progress for crash-safe resume.

The state file is the single source of truth for what has been archived.
It is written with a temp-file-then-replace protocol so that a crash at
any moment leaves either the previous or the new complete snapshot on
disk, never a partial one.
"""

import json
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from .models import Topic


class StateLoadError(Exception):
    """The state file exists but cannot be parsed."""


@dataclass
class TopicProgress:
    archived_pages: set[int] = field(default_factory=set)
    page_urls: dict[int, str] = field(default_factory=dict)
    fully_archived: bool = False


@dataclass
class ResumeCursor:
    """Last unit of work in flight. Informational; never used to skip work."""

    sub_forum_id: str = ""
    topic_id: str = ""
    page_number: int = 0


class ProgressState:
    """Sub-forum / topic / page progress owned by the archive loop.

    All mutation goes through the methods below, which hold a single lock
    so that a checkpoint requested from a signal handler cannot serialize
    the state halfway through an update.
    """

    def __init__(self):
        self.archived_topics: dict[str, TopicProgress] = {}
        self.completed_sub_forums: set[str] = set()
        self.jit_refresh_attempts: dict[str, datetime] = {}
        self.jit_topics: dict[str, list[Topic]] = {}  # Topics learned by JIT refresh, per sub-forum
        self.resume_cursor = ResumeCursor()
        self._lock = threading.Lock()

    # -- queries ---------------------------------------------------------

    def is_topic_archived(self, topic_id: str) -> bool:
        with self._lock:
            progress = self.archived_topics.get(topic_id)
            return bool(progress and progress.fully_archived)

    def is_page_archived(self, topic_id: str, page_number: int, url: str = "") -> bool:
        """True if the page is archived.

        When url is given and a different URL was recorded for that page
        number, the page is reported as not archived so it gets fetched
        again under the current numbering.
        """
        with self._lock:
            progress = self.archived_topics.get(topic_id)
            if not (progress and page_number in progress.archived_pages):
                return False
            recorded = progress.page_urls.get(page_number)
            return not (url and recorded and recorded != url)

    def is_sub_forum_completed(self, sub_forum_id: str) -> bool:
        with self._lock:
            return sub_forum_id in self.completed_sub_forums

    def last_jit_attempt(self, sub_forum_id: str) -> Optional[datetime]:
        with self._lock:
            return self.jit_refresh_attempts.get(sub_forum_id)

    def jit_topics_for(self, sub_forum_id: str) -> list[Topic]:
        with self._lock:
            return list(self.jit_topics.get(sub_forum_id, []))

    def total_pages_archived(self) -> int:
        with self._lock:
            return sum(len(p.archived_pages) for p in self.archived_topics.values())

    # -- mutation --------------------------------------------------------

    def mark_page_archived(self, topic_id: str, page_number: int, url: str = "") -> None:
        """Record a page whose content was downloaded and stored."""
        with self._lock:
            progress = self.archived_topics.setdefault(topic_id, TopicProgress())
            progress.archived_pages.add(page_number)
            if url:
                progress.page_urls[page_number] = url

    def mark_topic_archived(self, topic_id: str, page_numbers: Iterable[int]) -> bool:
        """Flag a topic fully archived if every given page is archived.

        Args:
            topic_id: Topic to flag.
            page_numbers: Every page number the frontier produced this run.

        Returns:
            True if the topic is now flagged, False if pages are missing.
        """
        expected = set(page_numbers)
        with self._lock:
            progress = self.archived_topics.setdefault(topic_id, TopicProgress())
            if not expected.issubset(progress.archived_pages):
                return False
            progress.fully_archived = True
            return True

    def mark_sub_forum_completed(self, sub_forum_id: str, topic_ids: Iterable[str]) -> bool:
        """Mark a sub-forum completed if every given topic is fully archived."""
        with self._lock:
            for topic_id in topic_ids:
                progress = self.archived_topics.get(topic_id)
                if not (progress and progress.fully_archived):
                    return False
            self.completed_sub_forums.add(sub_forum_id)
            return True

    def record_jit_attempt(
        self,
        sub_forum_id: str,
        when: Optional[datetime] = None,
        topics: Iterable[Topic] = (),
    ) -> None:
        """Record a successful refresh and the topics it discovered.

        The topics are kept with the attempt time so that a run which
        stops before archiving them still knows them after a restart,
        even when the next refresh is not yet due.
        """
        with self._lock:
            self.jit_refresh_attempts[sub_forum_id] = when or datetime.now(timezone.utc)
            known = self.jit_topics.setdefault(sub_forum_id, [])
            known_ids = {topic.id for topic in known}
            for topic in topics:
                if topic.id not in known_ids:
                    known_ids.add(topic.id)
                    known.append(topic)

    def set_cursor(self, sub_forum_id: str, topic_id: str = "", page_number: int = 0) -> None:
        with self._lock:
            self.resume_cursor = ResumeCursor(sub_forum_id, topic_id, page_number)

    # -- persistence -----------------------------------------------------

    def _to_dict(self) -> dict:
        return {
            "archived_topics": {
                topic_id: {
                    "archived_page_numbers": sorted(p.archived_pages),
                    "page_urls": {str(n): u for n, u in sorted(p.page_urls.items())},
                    "fully_archived": p.fully_archived,
                }
                for topic_id, p in sorted(self.archived_topics.items())
            },
            "completed_sub_forums": sorted(self.completed_sub_forums),
            "jit_refresh_attempts": {
                sf_id: when.isoformat()
                for sf_id, when in sorted(self.jit_refresh_attempts.items())
            },
            "jit_topics": {
                sf_id: [
                    {"id": t.id, "title": t.title, "seed_url": t.seed_url}
                    for t in topics
                ]
                for sf_id, topics in sorted(self.jit_topics.items())
                if topics
            },
            "resume_cursor": {
                "sub_forum_id": self.resume_cursor.sub_forum_id,
                "topic_id": self.resume_cursor.topic_id,
                "page_number": self.resume_cursor.page_number,
            },
        }

    def to_dict(self) -> dict:
        """Snapshot the state as JSON-ready data."""
        with self._lock:
            return self._to_dict()

    @classmethod
    def from_dict(cls, data: dict) -> "ProgressState":
        """Rebuild state from parsed JSON.

        Raises:
            StateLoadError: If the data does not have the expected shape.
        """
        if not isinstance(data, dict):
            raise StateLoadError("state must be a JSON object")

        state = cls()
        try:
            for topic_id, entry in (data.get("archived_topics") or {}).items():
                pages = entry.get("archived_page_numbers") or []
                if not isinstance(pages, list):
                    raise TypeError(f"archived_page_numbers for topic {topic_id} must be a list")
                fully = entry.get("fully_archived", False)
                if not isinstance(fully, bool):
                    raise TypeError(f"fully_archived for topic {topic_id} must be a boolean")
                state.archived_topics[str(topic_id)] = TopicProgress(
                    archived_pages={int(n) for n in pages},
                    page_urls={int(n): str(u) for n, u in (entry.get("page_urls") or {}).items()},
                    fully_archived=fully,
                )

            completed = data.get("completed_sub_forums") or []
            if not isinstance(completed, list):
                raise TypeError("completed_sub_forums must be a list")
            state.completed_sub_forums = {str(sf_id) for sf_id in completed}

            for sf_id, stamp in (data.get("jit_refresh_attempts") or {}).items():
                when = datetime.fromisoformat(stamp)
                if when.tzinfo is None:
                    when = when.replace(tzinfo=timezone.utc)
                state.jit_refresh_attempts[str(sf_id)] = when

            for sf_id, entries in (data.get("jit_topics") or {}).items():
                if not isinstance(entries, list):
                    raise TypeError(f"jit_topics for sub-forum {sf_id} must be a list")
                state.jit_topics[str(sf_id)] = [
                    Topic(
                        id=str(entry["id"]),
                        sub_forum_id=str(sf_id),
                        title=str(entry.get("title", "")),
                        seed_url=str(entry.get("seed_url", "")),
                    )
                    for entry in entries
                ]

            cursor = data.get("resume_cursor") or {}
            state.resume_cursor = ResumeCursor(
                sub_forum_id=str(cursor.get("sub_forum_id", "")),
                topic_id=str(cursor.get("topic_id", "")),
                page_number=int(cursor.get("page_number", 0)),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise StateLoadError(f"state has an unexpected shape: {e}") from e

        return state

    def save(self, path: str) -> None:
        """Atomically write the state to path.

        Raises:
            OSError: If the snapshot cannot be written.
        """
        with self._lock:
            save_state(self._to_dict(), path)

    def try_save(self, path: str) -> bool:
        """Save unless another save or mutation holds the lock.

        Meant for signal handlers, which run on the loop's own thread and
        must never block on a lock that thread already holds.

        Returns:
            True if the state was written.
        """
        if not self._lock.acquire(blocking=False):
            return False
        try:
            save_state(self._to_dict(), path)
            return True
        finally:
            self._lock.release()


def save_state(data: dict, path: str) -> None:
    """Write JSON to a sibling temp file, fsync it, then replace path."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)

    temp_path = path + ".tmp"
    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError:
        if os.path.exists(temp_path):
            try:
                os.remove(temp_path)
            except OSError:
                pass
        raise


def load_state(path: str) -> ProgressState:
    """Load progress from path; a missing file is a fresh start.

    A leftover ``.tmp`` file from an interrupted save is ignored: only the
    last committed snapshot at path is read.

    Raises:
        StateLoadError: If the file exists but cannot be read or parsed.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return ProgressState()
    except json.JSONDecodeError as e:
        raise StateLoadError(f"state file {path} is not valid JSON: {e}") from e
    except OSError as e:
        raise StateLoadError(f"cannot read state file {path}: {e}") from e

    return ProgressState.from_dict(data)
