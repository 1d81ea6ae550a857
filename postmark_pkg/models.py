"""Entities persisted by the store: posts, topics and publish status."""

import enum
from datetime import datetime
from typing import Iterable, List, Optional


class PublishStatus(enum.Enum):
    PUBLIC = 'public'
    DRAFT = 'draft'
    PRIVATE = 'private'

    @classmethod
    def from_value(cls, value) -> 'PublishStatus':
        """Parse a status name, falling back to PUBLIC for anything unrecognized."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.PUBLIC


class Topic:
    """A tag shared between posts. Topics compare equal by slug."""

    def __init__(self, slug: str, title: str):
        self.slug = slug
        self.title = title

    def __eq__(self, other):
        if not isinstance(other, Topic):
            return NotImplemented
        return self.slug == other.slug

    def __hash__(self):
        return hash(self.slug)

    def __repr__(self):
        return f"Topic(slug={self.slug!r}, title={self.title!r})"


class Post:
    """
    One post directory, as derived from the filesystem and its front matter.

    ``directory`` is the absolute path of the post directory on a Post built from
    disk. The store only keeps the directory's name, so Posts read back from the
    store carry that bare name, which stays meaningful after the folder is gone.
    """

    def __init__(self, slug: str, title: str = 'Untitled', topics: Optional[Iterable[Topic]] = None,
                 created_date: Optional[datetime] = None, updated_date: Optional[datetime] = None,
                 publish_status: PublishStatus = PublishStatus.PUBLIC,
                 preview_content: Optional[str] = None,
                 has_generated_content: Optional[bool] = None,
                 directory: Optional[str] = None):
        self.slug = slug
        self.title = title
        self.topics = unique_topics(topics or [])
        self.created_date = created_date
        self.updated_date = updated_date
        self.publish_status = publish_status
        self.preview_content = preview_content
        self.has_generated_content = has_generated_content
        self.directory = directory

    @property
    def topic_slugs(self):
        return {topic.slug for topic in self.topics}

    def __repr__(self):
        return f"Post(slug={self.slug!r}, title={self.title!r}, status={self.publish_status.value})"


def unique_topics(topics: Iterable[Topic]) -> List[Topic]:
    """Drop repeated topic slugs, keeping the first occurrence of each."""
    seen = set()
    result = []
    for topic in topics:
        if topic.slug in seen:
            continue
        seen.add(topic.slug)
        result.append(topic)
    return result
