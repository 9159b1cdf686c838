import fnmatch
import logging
import os
import threading
import time
from dataclasses import dataclass

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

# Events that mean file contents or the tree itself changed. Access-only
# notifications (opened, closed) are not changes.
CHANGE_EVENT_TYPES = frozenset({"created", "modified", "deleted", "moved"})


@dataclass(frozen=True)
class ChangeEvent:
    path: str
    timestamp: float


def is_ignored(path, root_dir, patterns):
    """True if any segment of ``path`` below ``root_dir`` matches a pattern."""
    rel = os.path.relpath(path, root_dir)
    if rel == os.curdir:
        return False
    parts = rel.replace(os.sep, "/").split("/")
    return any(fnmatch.fnmatch(part, pattern) for part in parts for pattern in patterns)


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, watcher):
        self.watcher = watcher

    def on_any_event(self, event):
        if event.is_directory or event.event_type not in CHANGE_EVENT_TYPES:
            return
        paths = [event.src_path]
        if event.event_type == "moved":
            paths.append(event.dest_path)
        for path in paths:
            if isinstance(path, bytes):
                path = os.fsdecode(path)
            if not is_ignored(path, self.watcher.root_dir, self.watcher.ignore_patterns):
                self.watcher.emit(ChangeEvent(path=path, timestamp=time.time()))
                # One notification per filesystem event.
                return


class ChangeWatcher:
    """Watches a directory tree and calls ``callback`` with ChangeEvents.

    Only mutations after ``start()`` are reported. The callback runs on the
    observer's thread.
    """

    def __init__(self, root_dir, ignore_patterns=(), callback=None):
        self.root_dir = os.path.abspath(root_dir)
        self.ignore_patterns = tuple(ignore_patterns)
        self.callback = callback
        self._observer = None
        self._lock = threading.Lock()

    @property
    def running(self):
        return self._observer is not None

    def emit(self, event):
        logger.debug("Change detected: %s", event.path)
        if self.callback is not None:
            self.callback(event)

    def start(self):
        with self._lock:
            if self._observer is not None:
                return
            observer = Observer()
            observer.schedule(_ChangeHandler(self), self.root_dir, recursive=True)
            observer.daemon = True
            observer.start()
            self._observer = observer
        logger.info("Watching %s (ignoring %s)", self.root_dir, ", ".join(self.ignore_patterns) or "nothing")

    def stop(self):
        with self._lock:
            observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join()
        logger.debug("Stopped watching %s", self.root_dir)


def watch(root_dir, ignore_patterns, callback):
    """Start and return a ChangeWatcher delivering events to ``callback``."""
    watcher = ChangeWatcher(root_dir, ignore_patterns, callback)
    watcher.start()
    return watcher
