"""Writes each post's rendered HTML next to its Markdown source."""

import os
import enum
import logging

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, TemplateSyntaxError

from .document import ParsedDocument, strip_first_heading
from .errors import NoContentSourceFile, RenderIOError
from .models import Post
from .paths import PostPaths

DEFAULT_TEMPLATES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'templates')
DOCUMENT_TEMPLATE = 'document.html'


class OutputMode(enum.Enum):
    FRAGMENT = 'fragment'
    FULL_DOCUMENT = 'full'


class StaticContentRenderer:
    """Renders a post as an HTML fragment or a standalone document."""

    def __init__(self, paths: PostPaths, templates_dir=None):
        self.paths = paths
        self.logger = logging.getLogger('Postmark.Renderer')

        # Fall back to the packaged shell when a custom directory lacks one
        if not templates_dir or not os.path.exists(os.path.join(templates_dir, DOCUMENT_TEMPLATE)):
            if templates_dir:
                self.logger.warning(f"Template '{DOCUMENT_TEMPLATE}' not found in {templates_dir}. Using the packaged template.")
            templates_dir = DEFAULT_TEMPLATES_DIR
        self.templates_dir = templates_dir
        self.env = Environment(loader=FileSystemLoader(templates_dir))

    def markup_for(self, post: Post, document: ParsedDocument, output_mode: OutputMode) -> str:
        if output_mode == OutputMode.FRAGMENT:
            # The surrounding page shows the post title, so the heading is redundant
            return strip_first_heading(document.html) + '\n'

        try:
            template = self.env.get_template(DOCUMENT_TEMPLATE)
        except (TemplateNotFound, TemplateSyntaxError) as e:
            raise RenderIOError(os.path.join(self.templates_dir, DOCUMENT_TEMPLATE), e)
        return template.render(
            title=post.title,
            content=document.html.strip(),
            lang=document.metadata.get('lang', 'en'),
            post=post,
        ) + '\n'

    def render(self, post: Post, document: ParsedDocument,
               output_mode: OutputMode = OutputMode.FRAGMENT, overwrite: bool = True) -> bool:
        """
        Write a post's output file, replacing any previous one.

        Returns False only when an output already exists and overwrite is disabled.
        Sets ``post.has_generated_content`` to reflect whether the write succeeded.
        """
        self.logger.debug(f"Generating static content for post: {post.slug}")
        if not post.directory or self.paths.content_source_file(post.directory) is None:
            raise NoContentSourceFile(post.directory)

        output_path = self.paths.output_file(post.directory)
        markup = self.markup_for(post, document, output_mode)

        if os.path.exists(output_path):
            if not overwrite:
                self.logger.debug(f"Static content file already exists and overwrite is disabled: {output_path}")
                return False
            post.has_generated_content = False
            try:
                self.logger.debug(f"Deleting static content file: {output_path}")
                os.remove(output_path)
            except OSError as e:
                self.logger.error(f"Existing static content file could not be deleted: {output_path}: {e}")
                raise RenderIOError(output_path, e)

        post.has_generated_content = False
        try:
            with open(output_path, 'w', encoding='utf-8') as output_file:
                output_file.write(markup)
        except (IOError, OSError) as e:
            self.logger.error(f"Failed to write HTML file {output_path}: {e}")
            raise RenderIOError(output_path, e)

        post.has_generated_content = True
        self.logger.debug(f"Generated HTML: {output_path}")
        return True
