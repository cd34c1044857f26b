"""Filesystem watcher adapter.

Wraps a watchdog observer and turns relevant file events into FILE_CHANGE
notifications. Watchdog delivers events on its own thread, so every
notification is marshalled onto the asyncio loop that owns the machine.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
from typing import Callable, Iterable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

LOGGER = logging.getLogger(__name__)

# Read-only access shows up as events on some platforms; it is not a change.
IGNORED_EVENT_TYPES = frozenset({"opened", "closed_no_write"})

DEFAULT_DEBOUNCE_SECONDS = 0.2


def _relative_parts(path: str, root: str) -> list[str]:
    relative = os.path.relpath(os.path.abspath(path), os.path.abspath(root))
    return [part for part in relative.replace(os.sep, "/").split("/") if part and part != "."]


def is_ignored(path: str, root: str, patterns: Iterable[str]) -> bool:
    """Return True if ``path`` (or any directory above it) matches a pattern.

    Patterns are fnmatch globs relative to ``root``: ``node_modules`` hides the
    whole tree below it, ``*.pyc`` matches by file name anywhere.
    """

    parts = _relative_parts(path, root)
    if not parts:
        return False

    candidates = ["/".join(parts[: index + 1]) for index in range(len(parts))]
    candidates.append(parts[-1])
    for pattern in patterns:
        pattern = pattern.rstrip("/")
        for candidate in candidates:
            if fnmatch.fnmatch(candidate, pattern):
                return True
    return False


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, watcher: "FileChangeWatcher") -> None:
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._watcher.handle_event(event)


class FileChangeWatcher:
    """Recursive watchdog observer that reports changes through a callback.

    One save usually arrives as several events (created, modified, closed).
    Events are coalesced on the loop: ``on_change`` fires once, ``debounce``
    seconds after the last relevant event of a burst.
    """

    def __init__(
        self,
        root: str,
        ignore_patterns: Iterable[str],
        on_change: Callable[[], None],
        loop: Optional[asyncio.AbstractEventLoop] = None,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self._root = root
        self._ignore = list(ignore_patterns)
        self._on_change = on_change
        self._loop = loop
        self._debounce = debounce
        self._observer: Optional[Observer] = None
        self._pending: Optional[asyncio.TimerHandle] = None

    def start(self) -> None:
        """Start observing. Must be called from the thread running the loop."""

        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._observer = Observer()
        self._observer.schedule(_ChangeHandler(self), self._root, recursive=True)
        self._observer.start()
        LOGGER.info("Watching %s (ignoring %s)", self._root, ", ".join(self._ignore) or "nothing")

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        LOGGER.info("Stopped watching %s", self._root)

    def handle_event(self, event: FileSystemEvent) -> None:
        """Filter one watchdog event and schedule a notification if it is a real change."""

        if event.is_directory or event.event_type in IGNORED_EVENT_TYPES:
            return

        paths = [event.src_path]
        dest_path = getattr(event, "dest_path", "")
        if dest_path:
            paths.append(dest_path)
        paths = [os.fsdecode(path) for path in paths]
        if all(is_ignored(path, self._root, self._ignore) for path in paths):
            return

        LOGGER.debug("Change detected: %s %s", event.event_type, paths[0])
        try:
            self._loop.call_soon_threadsafe(self._schedule)
        except RuntimeError:
            # The loop is closing; the change no longer matters.
            LOGGER.debug("Dropped change after loop shutdown: %s", paths[0])

    def _schedule(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
        self._pending = self._loop.call_later(self._debounce, self._flush)

    def _flush(self) -> None:
        self._pending = None
        self._on_change()
