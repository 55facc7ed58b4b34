"""Run counters, rates and the CSV performance log."""

import csv
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional


CSV_HEADER = [
    "timestamp", "resource_type", "resource_id", "action",
    "size_bytes", "duration_ms", "notes",
]


@dataclass
class PageEvent:
    """Outcome of one unit of work, as written to the performance log."""

    resource_id: str
    action: str  # archived, fetch_error, store_error, discover_error, jit_refresh, ...
    resource_type: str = "topic_page"
    page_number: int = 0
    url: str = ""
    size_bytes: int = 0
    duration: float = 0.0
    notes: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BatchMetrics:
    """Counters for the current run plus a buffered CSV performance log."""

    def __init__(self, log_path: str = "", clock: Callable[[], float] = time.monotonic):
        self.log_path = log_path
        self._clock = clock
        self.started = clock()

        self.pages_archived = 0
        self.topics_archived = 0
        self.topics_skipped = 0
        self.bytes_archived = 0
        self.errors = 0

        self._pending: list[PageEvent] = []

    def record_page(self, event: PageEvent) -> None:
        if event.action == "archived":
            self.pages_archived += 1
            self.bytes_archived += event.size_bytes
        self._pending.append(event)

    def record_error(self, event: PageEvent) -> None:
        self.errors += 1
        self._pending.append(event)

    def record_topic_archived(self) -> None:
        self.topics_archived += 1

    def record_topic_skipped(self) -> None:
        self.topics_skipped += 1

    def elapsed(self) -> float:
        return self._clock() - self.started

    def rates(self) -> dict:
        """Average pages/min, topics/hour and MB/min since the run started."""
        minutes = self.elapsed() / 60
        if minutes <= 0:
            return {"pages_per_min": 0.0, "topics_per_hour": 0.0, "mb_per_min": 0.0}
        return {
            "pages_per_min": self.pages_archived / minutes,
            "topics_per_hour": self.topics_archived / (minutes / 60),
            "mb_per_min": self.bytes_archived / (1024 * 1024) / minutes,
        }

    def eta(self, remaining_topics: int) -> Optional[float]:
        """Seconds until the remaining topics are done at the current rate."""
        per_hour = self.rates()["topics_per_hour"]
        if per_hour <= 0 or remaining_topics <= 0:
            return None
        return remaining_topics / per_hour * 3600

    def progress_line(self, remaining_topics: int = 0) -> str:
        rates = self.rates()
        line = (
            f"[PROGRESS] Elapsed: {_format_seconds(self.elapsed())} | "
            f"Pages: {self.pages_archived} ({rates['pages_per_min']:.1f}/min) | "
            f"Topics: {self.topics_archived} archived, {self.topics_skipped} skipped | "
            f"{self.bytes_archived / (1024 * 1024):.1f} MB"
        )
        eta = self.eta(remaining_topics)
        if eta is not None:
            line += f" | ETC: {_format_seconds(eta)}"
        if self.errors:
            line += f" | Errors: {self.errors}"
        return line

    def flush(self) -> int:
        """Append buffered events to the CSV log.

        Returns:
            Number of rows written (0 when no log path is configured).

        Raises:
            OSError: If the log cannot be written; buffered events are kept.
        """
        if not self.log_path or not self._pending:
            return 0

        directory = os.path.dirname(self.log_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        is_new = not os.path.exists(self.log_path) or os.path.getsize(self.log_path) == 0
        with open(self.log_path, "a", encoding="utf-8", newline="") as f:
            writer = csv.writer(f)
            if is_new:
                writer.writerow(CSV_HEADER)
            for event in self._pending:
                writer.writerow(_row(event))

        written = len(self._pending)
        self._pending = []
        return written


def _row(event: PageEvent) -> list:
    notes = event.notes
    if event.page_number:
        notes = f"page={event.page_number} {notes}".strip()
    if event.url:
        notes = f"{notes} url={event.url}".strip()
    return [
        event.timestamp.isoformat(),
        event.resource_type,
        event.resource_id,
        event.action,
        event.size_bytes,
        int(event.duration * 1000),
        notes,
    ]


def _format_seconds(seconds: float) -> str:
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes:02d}m{secs:02d}s"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"
