"""
Polling filesystem watcher.

Snapshots the content directory at a fixed interval and turns the difference
between consecutive snapshots into FileEvents on a queue. Only the first two
levels are tracked: post directories and the files directly inside them.
"""

import os
import stat
import queue
import logging
import threading
import enum
from typing import Dict, List, Tuple

DEFAULT_POLL_INTERVAL = 1.0


class EventKind(enum.Enum):
    CREATED = 'created'
    MODIFIED = 'modified'
    DELETED = 'deleted'
    CHILD = 'child'


class FileEvent:
    """A single change notification for a path under the content directory."""

    def __init__(self, kind: EventKind, path, is_directory: bool = False):
        self.kind = kind
        self.path = os.path.abspath(path)
        self.is_directory = is_directory

    def __eq__(self, other):
        if not isinstance(other, FileEvent):
            return NotImplemented
        return (self.kind, self.path, self.is_directory) == (other.kind, other.path, other.is_directory)

    def __hash__(self):
        return hash((self.kind, self.path, self.is_directory))

    def __repr__(self):
        kind = 'directory' if self.is_directory else 'file'
        return f"FileEvent({self.kind.value} {kind} {self.path})"


# path -> (is_directory, mtime_ns, size)
Snapshot = Dict[str, Tuple[bool, int, int]]


def _depth(path):
    return path.count(os.sep)


def diff_snapshots(previous: Snapshot, current: Snapshot) -> List[FileEvent]:
    """Events that turn ``previous`` into ``current``, deletions deepest first."""
    replaced = {path for path in set(previous) & set(current) if previous[path][0] != current[path][0]}
    removed = (set(previous) - set(current)) | replaced
    created = (set(current) - set(previous)) | replaced

    events = []
    for path in sorted(removed, key=lambda p: (-_depth(p), p)):
        events.append(FileEvent(EventKind.DELETED, path, previous[path][0]))
    for path in sorted(created, key=lambda p: (_depth(p), p)):
        events.append(FileEvent(EventKind.CREATED, path, current[path][0]))
    for path in sorted(set(previous) & set(current) - replaced):
        is_directory = current[path][0]
        # Directory mtimes change whenever output is written inside them
        if not is_directory and previous[path] != current[path]:
            events.append(FileEvent(EventKind.MODIFIED, path, False))
    return events


class PollingWatcher:
    """Watches a content directory on a background thread and queues FileEvents."""

    def __init__(self, content_dir, event_queue: queue.Queue, interval: float = DEFAULT_POLL_INTERVAL):
        self.content_dir = os.path.abspath(content_dir)
        self.event_queue = event_queue
        self.interval = interval
        self.logger = logging.getLogger('Postmark.Watcher')
        self._previous: Snapshot = {}
        self._stop = threading.Event()
        self._thread = None

    def _stat_entry(self, path):
        try:
            st = os.stat(path)
        except OSError:
            return None
        return (stat.S_ISDIR(st.st_mode), st.st_mtime_ns, st.st_size)

    def _visible_children(self, directory):
        try:
            names = os.listdir(directory)
        except OSError as e:
            self.logger.debug(f"Could not list {directory}: {e}")
            return []
        return [os.path.join(directory, name) for name in names if not name.startswith('.')]

    def snapshot(self) -> Snapshot:
        entries = {}
        for path in self._visible_children(self.content_dir):
            entry = self._stat_entry(path)
            if entry is None:
                continue
            entries[path] = entry
            if entry[0]:
                for child in self._visible_children(path):
                    child_entry = self._stat_entry(child)
                    if child_entry is not None:
                        entries[child] = child_entry
        return entries

    def poll(self) -> List[FileEvent]:
        """Take a snapshot, queue the events since the previous one and return them."""
        current = self.snapshot()
        events = diff_snapshots(self._previous, current)
        self._previous = current
        for event in events:
            self.logger.debug(f"File event: {event}")
            self.event_queue.put(event)
        return events

    def start(self):
        """Record the baseline snapshot and begin polling in the background."""
        if not os.path.isdir(self.content_dir):
            raise FileNotFoundError(f"Content directory not found: {self.content_dir}")
        self._previous = self.snapshot()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='postmark-watcher', daemon=True)
        self._thread.start()
        self.logger.debug(f"Polling {self.content_dir} every {self.interval} seconds")

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.poll()
            except Exception as e:
                self.logger.error(f"Error polling {self.content_dir}: {e}")

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval * 2 + 1)
            self._thread = None

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()
