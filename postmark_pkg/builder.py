"""
Builds Post entities from a post directory and its parsed source document.

Field values come from three layers, applied in order so that later layers win:

1. the filesystem (directory name, source file timestamps),
2. the rendered document (first heading, first paragraph),
3. explicit front matter.

A layer only contains the fields it can actually supply, so a missing or
malformed front matter value leaves the earlier value in place.
"""

import os
import re
import uuid
import logging
from datetime import datetime
from typing import Dict, List, Optional

from slugify import slugify

from .document import ParsedDocument, leading_words
from .errors import NoContentSourceFile, NoCreationDate, NoSuitableSlug
from .models import Post, PublishStatus, Topic
from .paths import PostPaths

DEFAULT_TITLE = 'Untitled'
DEFAULT_PREVIEW_WORDS = 30
DATE_FORMATS = ['%Y-%m-%d', '%Y-%m-%dT%H:%M:%S', '%Y-%m-%d %H:%M:%S']
TOPIC_TOKEN = re.compile(r'\b[A-Za-z0-9\- ]+\b')


def parse_date(date_str) -> Optional[datetime]:
    """Parse a front matter date, returning None when it is not well-formed."""
    if not isinstance(date_str, str):
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(date_str.strip(), fmt)
        except ValueError:
            continue
    return None


def parse_topics(value) -> List[Topic]:
    """Split a front matter topics field into independently slugged topics."""
    topics = []
    seen = set()
    for match in TOPIC_TOKEN.finditer(value or ''):
        name = match.group(0).strip()
        slug = slugify(name)
        if not slug or slug in seen:
            continue
        seen.add(slug)
        topics.append(Topic(slug=slug, title=name))
    return topics


def merge_layers(*layers: Dict) -> Dict:
    merged = {}
    for layer in layers:
        merged.update(layer)
    return merged


class PostBuilder:
    """Derives a complete Post for a post directory without writing anything."""

    def __init__(self, paths: PostPaths, preview_words: int = DEFAULT_PREVIEW_WORDS):
        self.paths = paths
        self.preview_words = preview_words
        self.logger = logging.getLogger('Postmark.Builder')

    def build(self, post_directory, document: ParsedDocument) -> Post:
        post_directory = os.path.abspath(post_directory)
        source_file = self.paths.content_source_file(post_directory)
        if source_file is None:
            raise NoContentSourceFile(post_directory)

        created_date, updated_date = self.file_dates(source_file)
        fields = merge_layers(
            self.filesystem_layer(post_directory, created_date, updated_date),
            self.document_layer(document),
            self.front_matter_layer(document.metadata),
        )
        post = Post(**fields)
        self.logger.debug(f"Built post {post.slug} from {post_directory}")
        return post

    def file_dates(self, source_file):
        """Creation and modification times of a source file."""
        try:
            stat = os.stat(source_file)
        except OSError as e:
            raise NoCreationDate(source_file, e)

        created = getattr(stat, 'st_birthtime', None) or stat.st_ctime
        if not created:
            raise NoCreationDate(source_file)
        return datetime.fromtimestamp(created), datetime.fromtimestamp(stat.st_mtime)

    def fallback_slug(self):
        return f"post-{uuid.uuid4().hex[:12]}"

    def filesystem_layer(self, post_directory, created_date, updated_date) -> Dict:
        try:
            slug = self.paths.slug_for(post_directory)
        except NoSuitableSlug as e:
            slug = self.fallback_slug()
            self.logger.warning(f"{e}; using generated slug {slug}")

        return {
            'slug': slug,
            'title': DEFAULT_TITLE,
            'created_date': created_date,
            'updated_date': updated_date,
            'publish_status': self.paths.publish_status_for(post_directory),
            'directory': post_directory,
        }

    def document_layer(self, document: ParsedDocument) -> Dict:
        layer = {}
        if document.title:
            layer['title'] = document.title
        if document.first_paragraph:
            layer['preview_content'] = leading_words(document.first_paragraph, self.preview_words)
        return layer

    def front_matter_layer(self, metadata: Dict[str, str]) -> Dict:
        layer = {}

        title = (metadata.get('title') or '').strip()
        if title:
            layer['title'] = title

        slug = slugify(metadata.get('slug') or '')
        if slug:
            layer['slug'] = slug

        for key, field in (('created', 'created_date'), ('updated', 'updated_date')):
            if key not in metadata:
                continue
            parsed = parse_date(metadata[key])
            if parsed is None:
                self.logger.warning(f"Ignoring malformed {key} date: {metadata[key]!r}")
            else:
                layer[field] = parsed

        if 'status' in metadata:
            layer['publish_status'] = PublishStatus.from_value(metadata['status'])

        preview = (metadata.get('preview') or '').strip()
        if preview:
            layer['preview_content'] = preview

        if 'topics' in metadata:
            layer['topics'] = parse_topics(metadata['topics'])

        return layer
