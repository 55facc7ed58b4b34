"""Topic-page to filesystem path mapping and file saving."""

import os
import re


class StorageError(Exception):
    """A page could not be written to the archive."""


def _sanitize_component(component: str) -> str:
    """Make an ID safe to use as a single directory name."""
    clean = re.sub(r'[<>:"/\\|?*]', "_", component).strip(". ")
    return clean or "_"


def page_filepath(
    archive_root: str,
    sub_forum_id: str,
    topic_id: str,
    page_number: int,
    extension: str = "html",
) -> str:
    """Map a topic page to its archive path.

    Example:
        archive_root = "archive_output", sub_forum_id = "3",
        topic_id = "1201", page_number = 2
        -> archive_output/3/1201/page_2.html
    """
    return os.path.join(
        archive_root,
        _sanitize_component(sub_forum_id),
        _sanitize_component(topic_id),
        f"page_{page_number}.{extension}",
    )


class Storer:
    """Writes archived pages below an archive root."""

    def __init__(self, archive_root: str, extension: str = "html"):
        self.archive_root = archive_root
        self.extension = extension

    def ensure_writable(self) -> None:
        """Create the archive root and prove it accepts writes.

        Raises:
            StorageError: If the directory cannot be created or written.
        """
        probe = os.path.join(self.archive_root, ".write_probe")
        try:
            os.makedirs(self.archive_root, exist_ok=True)
            with open(probe, "wb") as f:
                f.write(b"")
            os.remove(probe)
        except OSError as e:
            raise StorageError(f"archive root {self.archive_root} is not writable: {e}") from e

    def save(self, sub_forum_id: str, topic_id: str, page_number: int, content: bytes) -> str:
        """Save page content, creating directories and overwriting any existing file.

        Returns:
            Path of the written file.

        Raises:
            StorageError: On any filesystem error.
        """
        filepath = page_filepath(
            self.archive_root, sub_forum_id, topic_id, page_number, self.extension
        )
        try:
            os.makedirs(os.path.dirname(filepath), exist_ok=True)
            with open(filepath, "wb") as f:
                f.write(content)
        except OSError as e:
            raise StorageError(f"failed to save {filepath}: {e}") from e

        return filepath
