"""
SQLite-backed store for posts, topics and their relations.

The store owns a single connection and runs each logical operation in its own
transaction. It never touches the filesystem apart from its database file.
"""

import os
import sqlite3
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .errors import StoreError
from .models import Post, PublishStatus, Topic

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS post (
        slug TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        directory TEXT,
        createdDate TEXT,
        updatedDate TEXT,
        publishStatus TEXT NOT NULL DEFAULT 'public',
        previewContent TEXT,
        hasGeneratedContent INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS topic (
        slug TEXT PRIMARY KEY,
        title TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS post_topic (
        postSlug TEXT NOT NULL REFERENCES post(slug) ON DELETE CASCADE,
        topicSlug TEXT NOT NULL REFERENCES topic(slug) ON DELETE CASCADE,
        PRIMARY KEY (postSlug, topicSlug)
    )
    """,
    "CREATE INDEX IF NOT EXISTS post_directory ON post (directory)",
    "CREATE INDEX IF NOT EXISTS post_topic_topic ON post_topic (topicSlug)",
]

UPSERT_POST = """
    INSERT INTO post (slug, title, directory, createdDate, updatedDate,
                      publishStatus, previewContent, hasGeneratedContent)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(slug) DO UPDATE SET
        title = excluded.title,
        directory = excluded.directory,
        createdDate = excluded.createdDate,
        updatedDate = excluded.updatedDate,
        publishStatus = excluded.publishStatus,
        previewContent = excluded.previewContent,
        hasGeneratedContent = excluded.hasGeneratedContent
"""

UPSERT_TOPIC = """
    INSERT INTO topic (slug, title) VALUES (?, ?)
    ON CONFLICT(slug) DO UPDATE SET title = excluded.title
"""


def _format_date(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _directory_name(directory) -> Optional[str]:
    if not directory:
        return None
    return os.path.basename(os.path.abspath(directory))


class DataStore:
    """Persists posts and topics in an SQLite database file."""

    def __init__(self, database_file, read_only: bool = False):
        self.database_file = str(database_file)
        self.read_only = read_only
        self.connection = None
        self.logger = logging.getLogger('Postmark.Store')

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def is_open(self):
        return self.connection is not None

    def open(self):
        self.logger.debug(f"Opening database connection to {self.database_file}")
        try:
            if self.read_only:
                # Read-only opens never create the file or its schema
                uri = Path(os.path.abspath(self.database_file)).as_uri() + '?mode=ro'
                self.connection = sqlite3.connect(uri, uri=True)
            else:
                self.connection = sqlite3.connect(self.database_file)
            self.connection.execute("PRAGMA foreign_keys = ON")
            if not self.read_only:
                self._initialize_schema()
        except sqlite3.Error as e:
            self.connection = None
            raise StoreError(f"Could not open database {self.database_file}: {e}")
        return self

    def close(self):
        if self.connection is not None:
            self.connection.close()
            self.connection = None

    def _initialize_schema(self):
        with self.connection:
            for statement in SCHEMA:
                self.connection.execute(statement)

    def _require_connection(self):
        if self.connection is None:
            raise StoreError(f"Database {self.database_file} is not open")
        return self.connection

    # Posts

    def upsert(self, post: Post):
        """Insert or update a post, its topics and its topic relations in one transaction."""
        connection = self._require_connection()
        self.logger.debug(f"Upserting post with slug: {post.slug}")
        try:
            with connection:
                self._write_post(connection, post)
        except sqlite3.Error as e:
            raise StoreError(f"Could not upsert post {post.slug}: {e}")

    def replace(self, old_slug: str, post: Post):
        """Delete the post stored under ``old_slug`` and upsert ``post`` as one transaction."""
        connection = self._require_connection()
        self.logger.debug(f"Replacing post {old_slug} with {post.slug}")
        try:
            with connection:
                connection.execute("DELETE FROM post WHERE slug = ?", (old_slug,))
                self._write_post(connection, post)
        except sqlite3.Error as e:
            raise StoreError(f"Could not replace post {old_slug} with {post.slug}: {e}")

    def _write_post(self, connection, post: Post):
        connection.execute(UPSERT_POST, (
            post.slug,
            post.title,
            _directory_name(post.directory),
            _format_date(post.created_date),
            _format_date(post.updated_date),
            post.publish_status.value,
            post.preview_content,
            None if post.has_generated_content is None else int(post.has_generated_content),
        ))
        connection.execute("DELETE FROM post_topic WHERE postSlug = ?", (post.slug,))
        for topic in post.topics:
            connection.execute(UPSERT_TOPIC, (topic.slug, topic.title))
            connection.execute(
                "INSERT OR IGNORE INTO post_topic (postSlug, topicSlug) VALUES (?, ?)",
                (post.slug, topic.slug),
            )

    def delete_all_posts(self):
        connection = self._require_connection()
        self.logger.debug("Deleting all posts.")
        try:
            with connection:
                connection.execute("DELETE FROM post_topic")
                connection.execute("DELETE FROM post")
        except sqlite3.Error as e:
            raise StoreError(f"Could not delete all posts: {e}")

    def delete(self, slug: str):
        """Delete a post and its topic relations. Deleting an absent slug is a no-op."""
        connection = self._require_connection()
        self.logger.debug(f"Deleting post: {slug}")
        try:
            with connection:
                connection.execute("DELETE FROM post WHERE slug = ?", (slug,))
        except sqlite3.Error as e:
            raise StoreError(f"Could not delete post {slug}: {e}")

    def count_posts(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM post")

    def get_post(self, slug: str) -> Optional[Post]:
        rows = self._query("SELECT * FROM post WHERE slug = ?", (slug,))
        if not rows:
            return None
        return self._post_from_row(rows[0])

    def all_posts(self) -> List[Post]:
        return [self._post_from_row(row) for row in self._query("SELECT * FROM post ORDER BY slug")]

    def slug_for_directory(self, directory) -> Optional[str]:
        """The slug last stored for a post directory, looked up by directory name."""
        rows = self._query("SELECT slug FROM post WHERE directory = ? ORDER BY slug",
                           (_directory_name(directory),))
        return rows[0]['slug'] if rows else None

    def directory_for_slug(self, slug: str) -> Optional[str]:
        rows = self._query("SELECT directory FROM post WHERE slug = ?", (slug,))
        return rows[0]['directory'] if rows else None

    # Topics

    def get_topic(self, slug: str) -> Optional[Topic]:
        rows = self._query("SELECT slug, title FROM topic WHERE slug = ?", (slug,))
        return Topic(rows[0]['slug'], rows[0]['title']) if rows else None

    def delete_topic(self, slug: str):
        """Delete a topic and every relation referencing it."""
        connection = self._require_connection()
        self.logger.debug(f"Deleting topic: {slug}")
        try:
            with connection:
                connection.execute("DELETE FROM topic WHERE slug = ?", (slug,))
        except sqlite3.Error as e:
            raise StoreError(f"Could not delete topic {slug}: {e}")

    def count_topics(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM topic")

    # Relationships

    def topics_for_post(self, slug: str) -> List[Topic]:
        rows = self._query(
            "SELECT topic.slug, topic.title FROM topic "
            "JOIN post_topic ON post_topic.topicSlug = topic.slug "
            "WHERE post_topic.postSlug = ? ORDER BY topic.slug",
            (slug,),
        )
        return [Topic(row['slug'], row['title']) for row in rows]

    def posts_for_topic(self, slug: str) -> List[Post]:
        rows = self._query(
            "SELECT post.* FROM post "
            "JOIN post_topic ON post_topic.postSlug = post.slug "
            "WHERE post_topic.topicSlug = ? ORDER BY post.slug",
            (slug,),
        )
        return [self._post_from_row(row) for row in rows]

    def count_relations(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM post_topic")

    def _query(self, sql, params=()):
        connection = self._require_connection()
        try:
            cursor = connection.execute(sql, params)
            columns = [description[0] for description in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise StoreError(f"Query failed: {e}")

    def _scalar(self, sql, params=()):
        connection = self._require_connection()
        try:
            return connection.execute(sql, params).fetchone()[0]
        except sqlite3.Error as e:
            raise StoreError(f"Query failed: {e}")

    def _post_from_row(self, row) -> Post:
        has_generated_content = row['hasGeneratedContent']
        return Post(
            slug=row['slug'],
            title=row['title'],
            topics=self.topics_for_post(row['slug']),
            created_date=_parse_date(row['createdDate']),
            updated_date=_parse_date(row['updatedDate']),
            publish_status=PublishStatus.from_value(row['publishStatus']),
            preview_content=row['previewContent'],
            has_generated_content=None if has_generated_content is None else bool(has_generated_content),
            directory=row['directory'],
        )
