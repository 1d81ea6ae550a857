"""
Markdown parsing and HTML post-processing.

A post's source is Markdown with an optional leading YAML front matter block.
Parsing yields the front matter as a flat string map, the rendered body HTML and
the text of the first top-level heading.
"""

import re
import logging
from datetime import date, datetime
from typing import Dict, Optional, Tuple

import mistune
import yaml
from bs4 import BeautifulSoup

from .errors import NoContentSourceFile

FRONT_MATTER_DELIMITER = '---'
FRONT_MATTER_BOUNDARY = re.compile(r'^---[ \t]*$', re.MULTILINE)
TIMESTAMP_TAG = 'tag:yaml.org,2002:timestamp'


class FrontMatterLoader(yaml.SafeLoader):
    """Safe YAML loader that leaves dates as plain strings."""


# Dates are validated by the builder, one field at a time
FrontMatterLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != TIMESTAMP_TAG]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


class ParsedDocument:
    """The result of parsing one Markdown source file."""

    def __init__(self, metadata: Dict[str, str], html: str, title: Optional[str] = None,
                 first_paragraph: Optional[str] = None, source_path: Optional[str] = None):
        self.metadata = metadata
        self.html = html
        self.title = title
        self.first_paragraph = first_paragraph
        self.source_path = source_path

    def __repr__(self):
        return f"ParsedDocument(title={self.title!r}, metadata={self.metadata!r})"


class MarkdownDocument:
    """Parses Markdown sources with YAML front matter into ParsedDocuments."""

    def __init__(self):
        self.logger = logging.getLogger('Postmark.Document')
        self.markdown_parser = self.create_markdown_parser()

    def create_markdown_parser(self):
        """Create a Mistune markdown parser with a custom renderer."""
        class CustomRenderer(mistune.HTMLRenderer):
            def __init__(self):
                super().__init__(escape=False)

            def block_code(self, code, info=None):
                escaped_code = mistune.escape(code)
                return '<pre style="white-space: pre-wrap;"><code>{}</code></pre>\n'.format(escaped_code)

        return mistune.create_markdown(
            renderer=CustomRenderer(),
            plugins=['table', 'task_lists', 'strikethrough']
        )

    def markdown_filter(self, text):
        """Convert markdown text to HTML."""
        return self.markdown_parser(text)

    def split_front_matter(self, text, source=None) -> Tuple[Dict[str, str], str]:
        """Separate a leading YAML front matter block from the Markdown body."""
        if not text.lstrip().startswith(FRONT_MATTER_DELIMITER):
            return {}, text

        # Delimiters count only on a line of their own
        parts = FRONT_MATTER_BOUNDARY.split(text.lstrip(), maxsplit=2)
        if len(parts) < 3 or parts[0].strip():
            return {}, text

        try:
            loaded = yaml.load(parts[1], Loader=FrontMatterLoader)
        except yaml.YAMLError as e:
            self.logger.error(f"Invalid YAML front matter in {source or 'document'}: {e}")
            loaded = {}
        if not isinstance(loaded, dict):
            loaded = {}

        metadata = {}
        for key, value in loaded.items():
            flattened = flatten_metadata_value(value)
            if flattened is not None:
                metadata[str(key)] = flattened
        return metadata, parts[2].strip()

    def parse(self, text, source_path=None) -> ParsedDocument:
        metadata, body = self.split_front_matter(text, source_path)
        html = self.markdown_filter(body)
        return ParsedDocument(
            metadata=metadata,
            html=html,
            title=first_heading_text(html),
            first_paragraph=first_paragraph_text(html),
            source_path=source_path,
        )

    def parse_file(self, path) -> ParsedDocument:
        """Read and parse a Markdown source file."""
        self.logger.debug(f"Reading Markdown file: {path}")
        try:
            with open(path, 'r', encoding='utf-8') as f:
                text = f.read()
        except (IOError, OSError, UnicodeDecodeError) as e:
            raise NoContentSourceFile(path, e)
        return self.parse(text, source_path=path)


def flatten_metadata_value(value) -> Optional[str]:
    """Render a YAML front matter value as the plain string the pipeline consumes."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return ', '.join(str(item) for item in value if item is not None)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def _soup(html):
    return BeautifulSoup(html, 'html.parser')


def _collapse_whitespace(text):
    return ' '.join(text.split())


def first_heading_text(html) -> Optional[str]:
    heading = _soup(html).find('h1')
    if heading is None:
        return None
    text = _collapse_whitespace(heading.get_text())
    return text or None


def first_paragraph_text(html) -> Optional[str]:
    paragraph = _soup(html).find('p')
    if paragraph is None:
        return None
    text = _collapse_whitespace(paragraph.get_text())
    return text or None


def strip_first_heading(html) -> str:
    """Remove the first top-level heading from a rendered body."""
    soup = _soup(html)
    heading = soup.find('h1')
    if heading is not None:
        heading.decompose()
    return str(soup).strip()


def leading_words(text, count=30) -> str:
    """Generate an excerpt of at most ``count`` words."""
    words = text.split()
    if len(words) > count:
        return ' '.join(words[:count]) + '...'
    return ' '.join(words)
