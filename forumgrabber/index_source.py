"""Loading the static sub-forum list and per-sub-forum topic indices."""

import csv
import json
import os

from .models import SubForum, Topic, sort_key


class IndexLoadError(Exception):
    """The static index is missing or malformed."""


def _read_rows(path: str) -> list[list[str]]:
    """Read CSV data rows, discarding the header."""
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            rows = list(csv.reader(f))
    except OSError as e:
        raise IndexLoadError(f"cannot read {path}: {e}") from e
    except csv.Error as e:
        raise IndexLoadError(f"malformed CSV in {path}: {e}") from e
    return rows[1:]


def _read_json_list(path: str) -> list:
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise IndexLoadError(f"cannot read {path}: {e}") from e

    if not text.strip():
        return []

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise IndexLoadError(f"malformed JSON in {path}: {e}") from e

    if not isinstance(data, list):
        raise IndexLoadError(f"{path} must contain a JSON array")
    return data


def _field(entry: dict, *names: str) -> str:
    for name in names:
        value = entry.get(name)
        if value not in (None, ""):
            return str(value).strip()
    return ""


def load_sub_forums(path: str) -> list[SubForum]:
    """Load the sub-forum list from CSV (ID,Name,URL) or a JSON array.

    Returns:
        Sub-forums ordered by ID (numeric IDs sort numerically), without topics.

    Raises:
        IndexLoadError: If the file cannot be read or parsed.
    """
    sub_forums: dict[str, SubForum] = {}

    if path.lower().endswith(".json"):
        for entry in _read_json_list(path):
            if not isinstance(entry, dict):
                raise IndexLoadError(f"{path}: sub-forum entries must be objects")
            sf_id = _field(entry, "id", "ID")
            if not sf_id:
                print(f"  [WARN] Sub-forum entry without an id in {path}; skipped")
                continue
            sub_forums[sf_id] = SubForum(
                id=sf_id,
                name=_field(entry, "name", "Name"),
                listing_url=_field(entry, "url", "URL", "listing_url"),
            )
    else:
        for line_number, row in enumerate(_read_rows(path), start=2):
            if len(row) < 3:
                print(f"  [WARN] {path}:{line_number}: expected 3 columns, got {len(row)}; skipped")
                continue
            sf_id = row[0].strip()
            sub_forums[sf_id] = SubForum(id=sf_id, name=row[1].strip(), listing_url=row[2].strip())

    return [sub_forums[sf_id] for sf_id in sorted(sub_forums, key=sort_key)]


def topic_index_path(index_dir: str, pattern: str, sub_forum_id: str) -> str:
    """Build the topic index path for a sub-forum from a ``{}`` pattern."""
    return os.path.join(index_dir, pattern.replace("{}", sub_forum_id))


def load_topics(path: str, sub_forum_id: str) -> list[Topic]:
    """Load one sub-forum's topic index from CSV (TopicID,Title,URL,...) or JSON.

    A missing file means the sub-forum has no indexed topics yet.

    Raises:
        IndexLoadError: If the file exists but cannot be parsed.
    """
    if not os.path.exists(path):
        print(f"  [INFO] No topic index at {path} for sub-forum {sub_forum_id}")
        return []

    topics: list[Topic] = []
    seen: set[str] = set()

    if path.lower().endswith(".json"):
        entries = []
        for entry in _read_json_list(path):
            if not isinstance(entry, dict):
                raise IndexLoadError(f"{path}: topic entries must be objects")
            entries.append((
                _field(entry, "id", "ID"),
                _field(entry, "title", "Title"),
                _field(entry, "url", "URL", "seed_url"),
            ))
    elif path.lower().endswith(".csv"):
        entries = []
        for line_number, row in enumerate(_read_rows(path), start=2):
            if len(row) < 3:
                print(f"  [WARN] {path}:{line_number}: expected at least 3 columns; skipped")
                continue
            entries.append((row[0].strip(), row[1].strip(), row[2].strip()))
    else:
        raise IndexLoadError(f"unrecognized topic index type: {path}")

    for topic_id, title, url in entries:
        if not topic_id or topic_id in seen:
            continue
        seen.add(topic_id)
        topics.append(Topic(id=topic_id, sub_forum_id=sub_forum_id, title=title, seed_url=url))

    return topics


def load_index(
    sub_forum_list_file: str,
    topic_index_dir: str,
    topic_index_file_pattern: str,
    only_ids: list[str] | None = None,
) -> list[SubForum]:
    """Load sub-forums with their topics attached.

    Args:
        only_ids: When given, keep only these sub-forums, in this order.

    Raises:
        IndexLoadError: On any unreadable or malformed index file, or when
            a requested sub-forum ID is not in the list.
    """
    sub_forums = load_sub_forums(sub_forum_list_file)

    if only_ids:
        by_id = {sf.id: sf for sf in sub_forums}
        missing = [sf_id for sf_id in only_ids if sf_id not in by_id]
        if missing:
            raise IndexLoadError(f"sub-forum IDs not in {sub_forum_list_file}: {', '.join(missing)}")
        sub_forums = [by_id[sf_id] for sf_id in only_ids]

    for sub_forum in sub_forums:
        path = topic_index_path(topic_index_dir, topic_index_file_pattern, sub_forum.id)
        sub_forum.topics = load_topics(path, sub_forum.id)

    return sub_forums
