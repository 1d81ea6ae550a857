"""Tests for the ReconciliationPipeline."""

import pytest
import os
import queue
import shutil
import sqlite3
import threading
from pathlib import Path
from unittest.mock import patch

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from postmark_pkg.errors import ClassificationError, RenderIOError, StoreError
from postmark_pkg.models import Post, PublishStatus
from postmark_pkg.pipeline import ReconciliationPipeline, TaskKind, TaskState
from postmark_pkg.renderer import OutputMode
from postmark_pkg.watcher import EventKind, FileEvent


@pytest.fixture
def pipeline(content_dir, store):
    return ReconciliationPipeline(content_dir, store=store)


def store_state(store):
    """Everything in the store that should be a pure function of the content directory."""
    return sorted(
        (p.slug, p.title, p.directory, p.publish_status.value, p.preview_content,
         p.has_generated_content, tuple(sorted(p.topic_slugs)))
        for p in store.all_posts()
    )


def created(path, is_directory=False):
    return FileEvent(EventKind.CREATED, path, is_directory)


def modified(path):
    return FileEvent(EventKind.MODIFIED, path, False)


def deleted(path, is_directory=False):
    return FileEvent(EventKind.DELETED, path, is_directory)


class TestConstruction:
    """Test pipeline construction."""

    def test_store_required_unless_dry_run(self, content_dir):
        with pytest.raises(ValueError, match='store is required'):
            ReconciliationPipeline(content_dir)

    def test_dry_run_without_store(self, content_dir):
        pipeline = ReconciliationPipeline(content_dir, dry_run=True)

        assert pipeline.store is None


class TestRegenerate:
    """Test full regeneration from the content directory."""

    def test_regenerate_builds_everything(self, pipeline, store, make_post):
        """Every post is rendered and stored with its topics."""
        first = make_post('first-post', body='# First\n\nOne.\n', front_matter='topics: Python, Web')
        second = make_post('second.draft', body='# Second\n\nTwo.\n')

        summary = pipeline.regenerate()

        assert summary.total == 2
        assert summary.succeeded == 2
        assert summary.failed == 0
        assert Path(first, 'index.html').exists()
        assert Path(second, 'index.html').exists()
        assert store.get_post('first-post').topic_slugs == {'python', 'web'}
        assert store.get_post('second').publish_status == PublishStatus.DRAFT
        assert store.get_post('second').has_generated_content is True

    def test_regenerate_is_idempotent(self, pipeline, store, make_post):
        """Running twice leaves the same store state and output."""
        post_dir = make_post('hello', front_matter='topics: A, B')
        make_post('other')

        pipeline.regenerate()
        first_state = store_state(store)
        first_output = Path(post_dir, 'index.html').read_text()
        pipeline.regenerate()

        assert store_state(store) == first_state
        assert Path(post_dir, 'index.html').read_text() == first_output
        assert store.count_relations() == 2

    def test_regenerate_drops_stale_records(self, pipeline, store, make_post):
        post_dir = make_post('hello')
        make_post('other')
        pipeline.regenerate()

        shutil.rmtree(post_dir)
        pipeline.regenerate()

        assert [p.slug for p in store.all_posts()] == ['other']

    def test_slug_is_stable(self, pipeline, store, make_post):
        """Rebuilding an unchanged post keeps its slug."""
        post_dir = make_post('My Post')
        pipeline.regenerate()

        pipeline.handle_events([modified(os.path.join(post_dir, 'post.md'))])

        assert [p.slug for p in store.all_posts()] == ['my-post']

    def test_slug_collision_suffixed(self, pipeline, store, make_post):
        """Two directories that slug the same get distinct slugs, deterministically."""
        make_post('hello-world')
        make_post('hello_world')

        pipeline.regenerate()
        first = {p.directory: p.slug for p in store.all_posts()}
        pipeline.regenerate()

        assert first == {'hello-world': 'hello-world', 'hello_world': 'hello-world-2'}
        assert {p.directory: p.slug for p in store.all_posts()} == first

    def test_fragment_and_full_output(self, content_dir, store, make_post):
        post_dir = make_post('hello', body='# Hello\n\nBody.\n')

        ReconciliationPipeline(content_dir, store=store, output_mode=OutputMode.FRAGMENT).regenerate()
        fragment = Path(post_dir, 'index.html').read_text()
        ReconciliationPipeline(content_dir, store=store, output_mode=OutputMode.FULL_DOCUMENT).regenerate()
        document = Path(post_dir, 'index.html').read_text()

        assert '<h1>' not in fragment
        assert '<title>Hello</title>' in document

    def test_database_only(self, content_dir, store, make_post):
        """Without rendering, records are stored but no output is written."""
        post_dir = make_post('hello')

        ReconciliationPipeline(content_dir, store=store, render_content=False).regenerate()

        assert not Path(post_dir, 'index.html').exists()
        assert store.get_post('hello').has_generated_content is None

    def test_dry_run_writes_nothing(self, content_dir, store, make_post, caplog):
        """A dry run logs its intentions and leaves disk and store alone."""
        post_dir = make_post('hello')
        store.upsert(Post(slug='hello', title='Kept', directory=post_dir))
        caplog.set_level('INFO', logger='Postmark')

        summary = ReconciliationPipeline(content_dir, store=store, dry_run=True).regenerate()

        assert summary.succeeded == 1
        assert not Path(post_dir, 'index.html').exists()
        assert store.count_posts() == 1
        assert 'Dry run: would clear all 1 stored posts.' in caplog.text
        assert 'Dry run: would render and persist post hello' in caplog.text

    def test_dry_run_without_store(self, content_dir, make_post, caplog):
        make_post('hello')
        caplog.set_level('INFO', logger='Postmark')

        summary = ReconciliationPipeline(content_dir, dry_run=True).regenerate()

        assert summary.succeeded == 1
        assert 'Dry run: would clear all 0 stored posts.' in caplog.text

    def test_summary_logged(self, pipeline, make_post, caplog):
        make_post('hello')
        caplog.set_level('INFO', logger='Postmark')

        pipeline.regenerate()

        assert 'Reconciliation completed in' in caplog.text
        assert 'Total tasks processed: 1' in caplog.text
        assert 'Tasks succeeded: 1' in caplog.text
        assert 'Tasks failed: 0' in caplog.text


class TestFailureIsolation:
    """Test that one failing post does not affect the others."""

    def test_render_failure_skips_persist(self, pipeline, store, make_post):
        make_post('good')
        bad = make_post('bad')
        original_render = pipeline.renderer.render

        def render(post, document, output_mode, overwrite=True):
            if post.directory == bad:
                raise RenderIOError(os.path.join(bad, 'index.html'), 'disk full')
            return original_render(post, document, output_mode, overwrite)

        with patch.object(pipeline.renderer, 'render', side_effect=render):
            summary = pipeline.regenerate()

        assert summary.succeeded == 1
        assert summary.failed == 1
        assert summary.failures[0][0] == bad
        assert summary.failures[0][1] == 'render'
        assert store.get_post('good') is not None
        assert store.get_post('bad') is None

    def test_unexpected_error_recorded(self, pipeline, store, make_post, caplog):
        make_post('hello')

        with patch.object(pipeline.builder, 'build', side_effect=RuntimeError('boom')):
            summary = pipeline.regenerate()

        assert summary.failed == 1
        assert summary.tasks[0].state == TaskState.FAILED
        assert summary.tasks[0].failed_stage == 'build'
        assert 'Unexpected error while trying to build' in caplog.text

    def test_classification_error_recorded(self, pipeline, make_post):
        post_dir = make_post('hello')

        with patch.object(pipeline.paths, 'is_post_directory',
                          side_effect=ClassificationError(post_dir, 'denied')):
            summary = pipeline.handle_events([created(post_dir, True)])

        assert summary.failed == 1
        assert summary.failures[0][1] == 'classify'


class TestEvents:
    """Test classification and handling of filesystem events."""

    def test_created_post_directory(self, pipeline, store, make_post):
        post_dir = make_post('hello')

        summary = pipeline.handle_events([created(post_dir, True)])

        assert summary.succeeded == 1
        assert store.get_post('hello') is not None
        assert Path(post_dir, 'index.html').exists()

    def test_events_for_one_post_coalesced(self, pipeline, make_post):
        """Adjacent events for the same post produce a single build."""
        post_dir = make_post('hello')

        summary = pipeline.handle_events([
            created(post_dir, True),
            created(os.path.join(post_dir, 'post.md')),
        ])

        assert summary.total == 1
        assert summary.coalesced == 1

    def test_irrelevant_events_ignored(self, pipeline, content_dir, make_post):
        post_dir = make_post('hello')
        output = Path(post_dir, 'index.html')
        output.write_text('<p>generated</p>')
        loose = Path(content_dir, 'notes.txt')
        loose.write_text('notes')

        summary = pipeline.handle_events([
            modified(str(output)),
            created(str(loose)),
            deleted(os.path.join(content_dir, 'never-stored.txt')),
        ])

        assert summary.total == 0
        assert summary.ignored == 3

    def test_modified_source_rebuilds(self, pipeline, store, make_post):
        post_dir = make_post('hello', front_matter='title: Before')
        pipeline.regenerate()
        Path(post_dir, 'post.md').write_text('---\ntitle: After\n---\nBody\n')

        pipeline.handle_events([modified(os.path.join(post_dir, 'post.md'))])

        assert store.get_post('hello').title == 'After'

    def test_front_matter_slug_change_replaces_record(self, pipeline, store, make_post):
        post_dir = make_post('hello')
        pipeline.regenerate()
        Path(post_dir, 'post.md').write_text('---\nslug: greetings\n---\nBody\n')

        pipeline.handle_events([modified(os.path.join(post_dir, 'post.md'))])

        assert [p.slug for p in store.all_posts()] == ['greetings']

    def test_failed_slug_change_keeps_old_record(self, pipeline, store, make_post):
        """If the renamed record cannot be written, the previous one is still stored."""
        post_dir = make_post('hello', front_matter='topics: Python')
        pipeline.regenerate()
        Path(post_dir, 'post.md').write_text('---\nslug: renamed\n---\nBody\n')

        with patch.object(store, '_write_post', side_effect=sqlite3.OperationalError('disk I/O error')):
            summary = pipeline.handle_events([modified(os.path.join(post_dir, 'post.md'))])

        assert summary.failed == 1
        assert summary.failures[0][1] == 'persist'
        assert store.count_posts() == 1
        assert store.get_post('hello').topic_slugs == {'python'}
        assert store.get_post('renamed') is None

    def test_deleted_post_directory(self, pipeline, store, make_post):
        """Deleting a post folder removes its record and relations."""
        post_dir = make_post('hello', front_matter='topics: Python')
        make_post('other', front_matter='topics: Python')
        pipeline.regenerate()
        shutil.rmtree(post_dir)

        summary = pipeline.handle_events([
            deleted(os.path.join(post_dir, 'post.md')),
            deleted(os.path.join(post_dir, 'index.html')),
            deleted(post_dir, True),
        ])

        assert summary.total == 1
        assert summary.tasks[0].kind == TaskKind.DELETE
        assert store.get_post('hello') is None
        assert [p.slug for p in store.posts_for_topic('python')] == ['other']

    def test_deleted_last_source_deletes_record(self, pipeline, store, make_post):
        post_dir = make_post('hello')
        pipeline.regenerate()
        os.remove(os.path.join(post_dir, 'post.md'))

        summary = pipeline.handle_events([deleted(os.path.join(post_dir, 'post.md'))])

        assert summary.tasks[0].kind == TaskKind.DELETE
        assert store.get_post('hello') is None

    def test_deleted_source_with_remaining_markdown_rebuilds(self, pipeline, store, make_post):
        """When another Markdown file remains, it becomes the source."""
        post_dir = make_post('hello', body='# Second\n', file_name='b.md')
        Path(post_dir, 'a.md').write_text('# First\n')
        pipeline.regenerate()
        assert store.get_post('hello').title == 'First'
        os.remove(os.path.join(post_dir, 'a.md'))

        summary = pipeline.handle_events([deleted(os.path.join(post_dir, 'a.md'))])

        assert summary.tasks[0].kind == TaskKind.BUILD
        assert store.get_post('hello').title == 'Second'

    def test_deleted_renamed_directory_keeps_other_owner(self, pipeline, store, make_post, content_dir):
        """Deleting a folder never removes a record owned by a different folder."""
        make_post('hello_world')
        pipeline.regenerate()
        gone = os.path.join(content_dir, 'hello-world')

        pipeline.handle_events([deleted(gone, True)])

        assert store.get_post('hello-world').directory == 'hello_world'

    def test_child_event_rebuilds(self, pipeline, store, make_post):
        post_dir = make_post('hello')

        pipeline.handle_events([FileEvent(EventKind.CHILD, post_dir, True)])

        assert store.get_post('hello') is not None


class TestRecovery:
    """Test the rescan after a failed delete."""

    def test_failed_delete_triggers_rescan(self, pipeline, store, make_post, caplog):
        """A store failure during delete falls back to a full regeneration."""
        make_post('keep')
        gone = make_post('gone')
        pipeline.regenerate()
        shutil.rmtree(gone)

        with patch.object(store, 'delete', side_effect=StoreError('database is locked')):
            summary = pipeline.handle_events([deleted(gone, True)])

        assert summary.rescans == 1
        assert summary.failures[0][1] == 'delete'
        assert [p.slug for p in store.all_posts()] == ['keep']
        assert 'regenerating from the content directory' in caplog.text


class TestDraining:
    """Test consuming events from a queue."""

    def test_drain_once_processes_batch(self, pipeline, store, make_post):
        first = make_post('first')
        second = make_post('second')
        events = queue.Queue()
        events.put(created(first, True))
        events.put(created(second, True))

        summary = pipeline.drain_once(events, timeout=0.1)

        assert summary.total == 2
        assert events.empty()
        assert store.count_posts() == 2

    def test_drain_once_empty_queue(self, pipeline):
        assert pipeline.drain_once(queue.Queue(), timeout=0.01) is None

    def test_drain_stops_when_signalled(self, pipeline):
        stop = threading.Event()
        stop.set()

        pipeline.drain(queue.Queue(), stop_event=stop)
