"""Test configuration and fixtures for Postmark tests."""

import pytest
import tempfile
import shutil
import os
import logging
from pathlib import Path

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from postmark_pkg.store import DataStore


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def content_dir(temp_dir):
    """Create an empty content directory."""
    content_dir = Path(temp_dir) / 'content'
    content_dir.mkdir()
    return str(content_dir)


@pytest.fixture
def make_post(content_dir):
    """Return a helper that creates a post directory with a single Markdown source."""
    def _make_post(name, body="# Hello\n\nFirst paragraph.\n", front_matter=None, file_name=None):
        post_dir = Path(content_dir) / name
        post_dir.mkdir(exist_ok=True)
        text = body
        if front_matter is not None:
            text = f"---\n{front_matter.strip()}\n---\n\n{body}"
        source = post_dir / (file_name or 'post.md')
        source.write_text(text, encoding='utf-8')
        return str(post_dir)
    return _make_post


@pytest.fixture
def db_path(temp_dir):
    """Path for a database file that does not exist yet."""
    return os.path.join(temp_dir, 'store.sqlite')


@pytest.fixture
def store(db_path):
    """An open DataStore on a fresh database file."""
    data_store = DataStore(db_path).open()
    yield data_store
    data_store.close()


@pytest.fixture(autouse=True)
def reset_postmark_logger():
    """Drop handlers added by setup_logging so each test configures logging afresh."""
    yield
    logger = logging.getLogger('Postmark')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
