"""
Path classification for a Postmark content directory.

A post is a non-hidden directory directly inside the content directory that holds
at least one Markdown file at its top level. Everything here is a pure decision
over paths, backed only by directory listings and file metadata.
"""

import os
import logging
from typing import List, Optional

from slugify import slugify

from .errors import ClassificationError, NoSuitableSlug
from .models import PublishStatus

MARKDOWN_EXTENSION = '.md'
OUTPUT_FILE_NAME = 'index.html'

# Pseudo-extensions on a post directory's name that set its publish status
STATUS_SUFFIXES = {
    '.draft': PublishStatus.DRAFT,
    '.private': PublishStatus.PRIVATE,
    '.hidden': PublishStatus.PRIVATE,
}


def is_hidden(path):
    return os.path.basename(path).startswith('.')


class PostPaths:
    """Classifies paths under a content directory and derives post identity from them."""

    def __init__(self, content_dir):
        self.content_dir = os.path.abspath(content_dir)
        self.logger = logging.getLogger('Postmark.Paths')

    def _normalize(self, path):
        return os.path.abspath(path)

    def is_direct_child(self, path):
        """Whether a path sits directly inside the content directory and is not hidden."""
        path = self._normalize(path)
        return os.path.dirname(path) == self.content_dir and not is_hidden(path)

    def is_post_directory(self, path) -> bool:
        """Whether a path is a directory that represents a post."""
        path = self._normalize(path)
        if not os.path.isdir(path):
            self.logger.debug(f"Not a directory: {path}")
            return False
        if not self.is_direct_child(path):
            self.logger.debug(f"Directory is not a direct child of {self.content_dir}: {path}")
            return False
        if self._first_markdown_file(path) is None:
            self.logger.debug(f"Directory does not contain a Markdown file: {path}")
            return False
        return True

    def is_post_source_file(self, path) -> bool:
        """Whether a path is the Markdown source file of a post."""
        path = self._normalize(path)
        if os.path.splitext(path)[1] != MARKDOWN_EXTENSION:
            return False
        parent = self.containing_directory(path)
        if parent is None:
            return False
        return self.is_post_directory(parent)

    def containing_directory(self, path) -> Optional[str]:
        """The parent of a path if it still exists as a directory."""
        parent = os.path.dirname(self._normalize(path))
        if not os.path.isdir(parent):
            return None
        return parent

    def slug_for(self, post_directory) -> str:
        """
        Derive a post's slug from its directory name.

        Publish status suffixes such as ``.draft`` are not part of the slug.
        Raises NoSuitableSlug when nothing survives transliteration.
        """
        name = os.path.basename(self._normalize(post_directory))
        stem, suffix = os.path.splitext(name)
        if suffix.lower() in STATUS_SUFFIXES:
            name = stem
        slug = slugify(name)
        if not slug:
            raise NoSuitableSlug(name)
        return slug

    def publish_status_for(self, post_directory) -> PublishStatus:
        suffix = os.path.splitext(os.path.basename(self._normalize(post_directory)))[1]
        return STATUS_SUFFIXES.get(suffix.lower(), PublishStatus.PUBLIC)

    def enumerate_post_directories(self, root=None) -> List[str]:
        """Every post directory directly inside the content directory, in listing order."""
        if root is not None and self._normalize(root) != self.content_dir:
            return PostPaths(root).enumerate_post_directories()

        entries = self._list(self.content_dir)
        self.logger.debug(f"Found {len(entries)} items in content directory {self.content_dir}")
        post_directories = []
        for name in entries:
            if name.startswith('.'):
                continue
            candidate = os.path.join(self.content_dir, name)
            if self.is_post_directory(candidate):
                post_directories.append(candidate)
        return post_directories

    def content_source_file(self, post_directory) -> Optional[str]:
        """The Markdown source of a post, or None when the directory is not a post."""
        post_directory = self._normalize(post_directory)
        if not self.is_post_directory(post_directory):
            self.logger.debug(f"Requested content source file from directory that is not a post: {post_directory}")
            return None
        return self._first_markdown_file(post_directory)

    def output_file(self, post_directory) -> str:
        return os.path.join(self._normalize(post_directory), OUTPUT_FILE_NAME)

    def _list(self, directory):
        try:
            return sorted(os.listdir(directory))
        except (FileNotFoundError, NotADirectoryError):
            return []
        except OSError as e:
            raise ClassificationError(directory, e)

    def _first_markdown_file(self, directory) -> Optional[str]:
        """The first readable, non-hidden Markdown file in a directory, or None."""
        for name in self._list(directory):
            if name.startswith('.') or os.path.splitext(name)[1] != MARKDOWN_EXTENSION:
                continue
            candidate = os.path.join(directory, name)
            if os.path.isfile(candidate) and os.access(candidate, os.R_OK):
                return candidate
        return None
