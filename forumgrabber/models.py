"""Forum entities loaded from the static index or discovered by JIT refresh."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Topic:
    """A single discussion thread. Identity is ``id`` within its sub-forum."""

    id: str
    sub_forum_id: str
    title: str
    seed_url: str


@dataclass
class SubForum:
    """A top-level forum section and the topics currently known for it."""

    id: str
    name: str
    listing_url: str = ""
    topics: list[Topic] = field(default_factory=list)

    def topic_ids(self) -> set[str]:
        return {topic.id for topic in self.topics}


def sort_key(identifier: str) -> tuple:
    """Order numeric IDs numerically, everything else lexically after them."""
    if identifier.isdigit():
        return (0, int(identifier), identifier)
    return (1, 0, identifier)
