"""
Reconciliation pipeline.

Turns filesystem events (or a full scan of the content directory) into tasks, one
per affected post directory, and runs each task through build, render and persist
in the order it was queued. A failing task is recorded and skipped; it never stops
the rest of the batch.
"""

import os
import enum
import time
import queue
import logging
from typing import Iterable, List, Optional

from .builder import DEFAULT_PREVIEW_WORDS, PostBuilder
from .document import MarkdownDocument
from .errors import NoContentSourceFile, PostmarkError
from .models import Post
from .paths import MARKDOWN_EXTENSION, PostPaths
from .renderer import OutputMode, StaticContentRenderer
from .store import DataStore
from .watcher import EventKind, FileEvent


class TaskState(enum.Enum):
    RECEIVED = 'received'
    CLASSIFIED = 'classified'
    IGNORED = 'ignored'
    QUEUED = 'queued'
    BUILT = 'built'
    RENDERED = 'rendered'
    PERSISTED = 'persisted'
    DONE = 'done'
    FAILED = 'failed'


class TaskKind(enum.Enum):
    BUILD = 'build'
    DELETE = 'delete'


class ReconciliationTask:
    """One unit of work for a single post directory."""

    def __init__(self, kind: TaskKind, post_directory, event: Optional[FileEvent] = None):
        self.kind = kind
        self.post_directory = os.path.abspath(post_directory)
        self.event = event
        self.state = TaskState.QUEUED
        self.post: Optional[Post] = None
        self.error: Optional[Exception] = None
        self.failed_stage: Optional[str] = None

    def __repr__(self):
        return f"ReconciliationTask({self.kind.value} {self.post_directory}, {self.state.value})"


class BatchSummary:
    """Counts and failures for one processed batch."""

    def __init__(self):
        self.total = 0
        self.succeeded = 0
        self.failed = 0
        self.ignored = 0
        self.coalesced = 0
        self.rescans = 0
        self.elapsed = 0.0
        self.failures = []
        self.tasks: List[ReconciliationTask] = []

    def record(self, task: ReconciliationTask):
        self.total += 1
        self.tasks.append(task)
        if task.state == TaskState.FAILED:
            self.failed += 1
            self.failures.append((task.post_directory, task.failed_stage, task.error))
        else:
            self.succeeded += 1

    def record_failure(self, path, stage, error):
        self.total += 1
        self.failed += 1
        self.failures.append((path, stage, error))

    def absorb(self, other: 'BatchSummary'):
        self.total += other.total
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.ignored += other.ignored
        self.coalesced += other.coalesced
        self.rescans += other.rescans
        self.failures.extend(other.failures)
        self.tasks.extend(other.tasks)

    def __repr__(self):
        return (f"BatchSummary(total={self.total}, succeeded={self.succeeded}, "
                f"failed={self.failed}, elapsed={self.elapsed:.3f})")


class ReconciliationPipeline:
    """Keeps the store and rendered output in agreement with the content directory."""

    def __init__(self, content_dir, store: Optional[DataStore] = None,
                 output_mode: OutputMode = OutputMode.FRAGMENT, dry_run: bool = False,
                 render_content: bool = True, preview_words: int = DEFAULT_PREVIEW_WORDS,
                 templates_dir=None):
        if store is None and not dry_run:
            raise ValueError("A store is required unless running a dry run")
        self.content_dir = os.path.abspath(content_dir)
        self.store = store
        self.output_mode = output_mode
        self.dry_run = dry_run
        self.render_content = render_content
        self.paths = PostPaths(self.content_dir)
        self.documents = MarkdownDocument()
        self.builder = PostBuilder(self.paths, preview_words=preview_words)
        self.renderer = StaticContentRenderer(self.paths, templates_dir=templates_dir)
        self.logger = logging.getLogger('Postmark.Pipeline')

    # Classification

    def classify(self, event: FileEvent) -> Optional[ReconciliationTask]:
        """Map an event to the task it calls for, or None when it does not affect a post."""
        self.logger.debug(f"Classifying {event}")
        path = event.path

        if event.kind in (EventKind.CREATED, EventKind.MODIFIED):
            if self.paths.is_post_directory(path):
                return ReconciliationTask(TaskKind.BUILD, path, event)
            if self.paths.is_post_source_file(path):
                return ReconciliationTask(TaskKind.BUILD, self.paths.containing_directory(path), event)
            self.logger.debug(f"Not a post folder or post source file: {path}")
            return None

        if event.kind == EventKind.CHILD:
            if self.paths.is_post_directory(path):
                return ReconciliationTask(TaskKind.BUILD, path, event)
            self.logger.debug(f"Child event reported for {path}, but it is not a post folder.")
            return None

        if event.kind == EventKind.DELETED:
            return self._classify_deletion(event)

        return None

    def _classify_deletion(self, event: FileEvent) -> Optional[ReconciliationTask]:
        path = event.path
        is_markdown = os.path.splitext(path)[1] == MARKDOWN_EXTENSION

        if self.paths.is_direct_child(path):
            if not event.is_directory and not self._has_record_for(path):
                return None
            owner = path
        elif is_markdown and self.paths.is_direct_child(os.path.dirname(path)):
            if self.paths.containing_directory(path) is None:
                self.logger.debug(f"Source file {path} was deleted along with its post folder; "
                                  "the folder deletion will be handled instead.")
                return None
            owner = os.path.dirname(path)
        else:
            return None

        # Another Markdown file may have taken over as the post's source
        if self.paths.is_post_directory(owner):
            return ReconciliationTask(TaskKind.BUILD, owner, event)
        return ReconciliationTask(TaskKind.DELETE, owner, event)

    def _has_record_for(self, directory):
        if self.store is None:
            return False
        return self.store.slug_for_directory(directory) is not None

    # Batches

    def _enqueue(self, tasks: List[ReconciliationTask], task: ReconciliationTask, summary: BatchSummary):
        previous = tasks[-1] if tasks else None
        if (previous is not None and previous.kind == TaskKind.BUILD and task.kind == TaskKind.BUILD
                and previous.post_directory == task.post_directory):
            summary.coalesced += 1
            return
        tasks.append(task)

    def handle_events(self, events: Iterable[FileEvent]) -> BatchSummary:
        """Classify a batch of events and process the resulting tasks in order."""
        start_time = time.time()
        summary = BatchSummary()
        tasks = []

        for event in events:
            try:
                task = self.classify(event)
            except PostmarkError as e:
                self.logger.error(f"Could not classify {event}: {e}. Nothing will be done about this change.")
                summary.record_failure(event.path, 'classify', e)
                continue
            if task is None:
                summary.ignored += 1
                continue
            self._enqueue(tasks, task, summary)

        self._process(tasks, summary)
        summary.elapsed = time.time() - start_time
        self._log_summary(summary)
        return summary

    def process_directories(self, post_directories: Iterable) -> BatchSummary:
        """Build one task per directory in the given order and process them."""
        start_time = time.time()
        summary = BatchSummary()
        tasks = [ReconciliationTask(TaskKind.BUILD, directory) for directory in post_directories]
        self._process(tasks, summary)
        summary.elapsed = time.time() - start_time
        self._log_summary(summary)
        return summary

    def regenerate(self, post_directories: Optional[Iterable] = None) -> BatchSummary:
        """Discard every stored post and rebuild from the post directories on disk."""
        if post_directories is None:
            post_directories = self.paths.enumerate_post_directories()
        post_directories = list(post_directories)
        self.logger.debug(f"Found {len(post_directories)} post directories in {self.content_dir}")

        if self.dry_run:
            self.logger.info(f"Dry run: would clear all {self._stored_count()} stored posts.")
        else:
            self.store.delete_all_posts()
        return self.process_directories(post_directories)

    def _stored_count(self):
        return self.store.count_posts() if self.store is not None else 0

    def _process(self, tasks: List[ReconciliationTask], summary: BatchSummary):
        for task in tasks:
            self.run_task(task, summary)

    # Tasks

    def run_task(self, task: ReconciliationTask, summary: Optional[BatchSummary] = None):
        if task.kind == TaskKind.DELETE:
            self._run_delete(task, summary)
        else:
            self._run_build(task)
        if summary is not None:
            summary.record(task)
        return task

    def _fail(self, task: ReconciliationTask, stage, error):
        task.state = TaskState.FAILED
        task.failed_stage = stage
        task.error = error
        if isinstance(error, PostmarkError):
            self.logger.error(f"Failed to {stage} post in {task.post_directory}: {error}")
        else:
            self.logger.error(f"Unexpected error while trying to {stage} post in {task.post_directory}: {error}",
                              exc_info=error)

    def _run_build(self, task: ReconciliationTask):
        stage = 'build'
        try:
            source_file = self.paths.content_source_file(task.post_directory)
            if source_file is None:
                raise NoContentSourceFile(task.post_directory)
            document = self.documents.parse_file(source_file)
            post = self.builder.build(task.post_directory, document)
            if self.store is not None:
                post.slug = self._claim_slug(post)
            task.post = post
            task.state = TaskState.BUILT

            if self.dry_run:
                action = 'render and persist' if self.render_content else 'persist'
                self.logger.info(f"Dry run: would {action} post {post.slug} from {task.post_directory}")
                task.state = TaskState.DONE
                return

            if self.render_content:
                stage = 'render'
                self.renderer.render(post, document, self.output_mode, overwrite=True)
                task.state = TaskState.RENDERED

            stage = 'persist'
            self._persist(post)
            task.state = TaskState.PERSISTED
            task.state = TaskState.DONE
            self.logger.debug(f"Processed post {post.slug} from {task.post_directory}")
        except Exception as e:
            self._fail(task, stage, e)

    def _claim_slug(self, post: Post) -> str:
        """The post's slug, suffixed when another existing post directory already owns it."""
        directory_name = os.path.basename(post.directory)
        base = post.slug
        slug = base
        counter = 2
        while True:
            owner = self.store.directory_for_slug(slug)
            if owner is None or owner == directory_name:
                break
            if not self.paths.is_post_directory(os.path.join(self.content_dir, owner)):
                break
            slug = f"{base}-{counter}"
            counter += 1
        if slug != base:
            self.logger.warning(f"Slug {base} is already used by another post; using {slug} for {post.directory}")
        return slug

    def _persist(self, post: Post):
        previous = self.store.slug_for_directory(post.directory)
        if previous and previous != post.slug:
            self.logger.debug(f"Slug for {post.directory} changed from {previous} to {post.slug}")
            self.store.replace(previous, post)
        else:
            self.store.upsert(post)

    def _run_delete(self, task: ReconciliationTask, summary: Optional[BatchSummary]):
        if self.dry_run:
            self.logger.info(f"Dry run: would delete the stored post for {task.post_directory}")
            task.state = TaskState.DONE
            return

        try:
            slug = self._resolve_deleted_slug(task.post_directory)
            if slug is not None:
                self.store.delete(slug)
                self.logger.debug(f"Deleted post {slug} for removed directory {task.post_directory}")
            task.state = TaskState.DONE
        except PostmarkError as e:
            self._fail(task, 'delete', e)
            self.logger.error("Couldn't delete the database entry for a post. The store may be inconsistent; "
                              "regenerating from the content directory.")
            self._recover(summary)

    def _resolve_deleted_slug(self, post_directory) -> Optional[str]:
        slug = self.store.slug_for_directory(post_directory)
        if slug is not None:
            return slug
        slug = self.paths.slug_for(post_directory)
        owner = self.store.directory_for_slug(slug)
        if owner is not None and owner != os.path.basename(post_directory):
            return None
        return slug

    def _recover(self, summary: Optional[BatchSummary]):
        try:
            rescan = self.regenerate()
        except PostmarkError as e:
            self.logger.error(f"Regenerating after a failed delete also failed: {e}")
            return
        if summary is not None:
            summary.absorb(rescan)
            summary.rescans += 1

    # Watching

    def drain_once(self, event_queue: queue.Queue, timeout: float = 0.5) -> Optional[BatchSummary]:
        """Process everything currently queued as one batch, waiting up to ``timeout`` for the first event."""
        try:
            batch = [event_queue.get(timeout=timeout)]
        except queue.Empty:
            return None
        while True:
            try:
                batch.append(event_queue.get_nowait())
            except queue.Empty:
                break
        return self.handle_events(batch)

    def drain(self, event_queue: queue.Queue, stop_event=None, timeout: float = 0.5):
        """Consume events until ``stop_event`` is set, one batch at a time."""
        while stop_event is None or not stop_event.is_set():
            self.drain_once(event_queue, timeout=timeout)

    def _log_summary(self, summary: BatchSummary):
        if summary.total == 0:
            self.logger.debug(f"No post changes in batch ({summary.ignored} events ignored)")
            return
        self.logger.info(f"Reconciliation completed in {summary.elapsed:.6f} seconds.")
        self.logger.info(f"Total tasks processed: {summary.total}")
        self.logger.info(f"Tasks succeeded: {summary.succeeded}")
        self.logger.info(f"Tasks failed: {summary.failed}")
