"""Filesystem watching on top of watchdog.

The synced tree is covered by one recursive watch on its root, which watchdog
extends to directories created or moved in later (on Linux, one inotify
instance for the whole tree). Events are converted into `WatchEvent` records and
handed to a sink (the daemon's command queue).
"""

import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


class ChangeKind(Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    MOVE = "move"


@dataclass(frozen=True)
class WatchEvent:
    """A single filesystem change.

    Attributes:
        path (str): The path that changed (the source path for moves).
        kind (ChangeKind): What happened to it.
        is_directory (bool): Whether the path is a directory.
        during_sync (bool): Whether a sync was running when the change was seen.
        dest_path (str | None): Where the path was moved to, for moves only.
    """

    path: str
    kind: ChangeKind
    is_directory: bool
    during_sync: bool = False
    dest_path: str | None = None


@dataclass(frozen=True)
class WatchError:
    """A problem reported by the watcher. Never fatal once running."""

    message: str
    path: str | None = None


class WatchSetupError(RuntimeError):
    """The initial watch coverage of the synced tree could not be established."""


def _decode(path: str | bytes) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", errors="replace")
    return path


class _ForwardingHandler(FileSystemEventHandler):
    """Turns watchdog callbacks into `WatchEvent` records.

    Events whose paths are all rejected by `accepts` (git's own metadata,
    normally) are dropped here so they never reach the queue.
    """

    def __init__(
        self, sink: Callable[[object], None], is_active: Callable[[], bool]
    ) -> None:
        super().__init__()
        self._sink = sink
        self._is_active = is_active
        self.accepts: Callable[[str], bool] = lambda _path: True

    def _forward(self, event: FileSystemEvent, kind: ChangeKind) -> None:
        src = _decode(event.src_path)
        dest = _decode(event.dest_path) if kind is ChangeKind.MOVE else None
        try:
            if not (self.accepts(src) or (dest and self.accepts(dest))):
                return
            self._sink(
                WatchEvent(
                    path=src,
                    kind=kind,
                    is_directory=event.is_directory,
                    during_sync=self._is_active(),
                    dest_path=dest or None,
                )
            )
        except Exception as e:
            self._sink(WatchError(f"Could not forward event: {e}", src))

    def on_created(self, event: FileSystemEvent) -> None:
        self._forward(event, ChangeKind.CREATE)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._forward(event, ChangeKind.MODIFY)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._forward(event, ChangeKind.DELETE)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._forward(event, ChangeKind.MOVE)


class FileWatcher:
    """Watches feeding a single sink.

    A tree is covered by one recursive watch on its root, which watchdog keeps
    extended to directories created or moved in later. `add_watch` covers a
    single directory without its children.

    Attributes:
        observer (BaseObserver): The watchdog observer hosting the watches.
    """

    def __init__(
        self,
        sink: Callable[[object], None],
        is_active: Callable[[], bool] = lambda: False,
        observer: BaseObserver | None = None,
    ):
        """Initializes the watcher.

        Args:
            sink (Callable[[object], None]): Receives `WatchEvent` and `WatchError`
                                             objects, from the observer thread.
            is_active (Callable[[], bool], optional): Reports whether a sync is running,
                                                      stamped onto every event.
            observer (BaseObserver | None, optional): The watchdog observer to use.
        """
        self.observer = observer or Observer()
        self._handler = _ForwardingHandler(sink, is_active)
        self._watches: dict[str, ObservedWatch] = {}
        self._trees: set[str] = set()
        self._lock = threading.Lock()

    @property
    def watched(self) -> list[str]:
        with self._lock:
            return sorted(self._watches)

    def covers(self, path: str | Path) -> bool:
        """Whether `path` lies inside a tree watched recursively."""
        key = os.path.abspath(path)
        with self._lock:
            return any(
                key == root or key.startswith(root.rstrip(os.sep) + os.sep)
                for root in self._trees
            )

    def add_watch(self, path: str | Path, recursive: bool = False) -> None:
        """Watches one directory, and with `recursive` everything below it.

        Raises:
            OSError: If the directory cannot be watched.
        """
        key = os.fspath(path)
        with self._lock:
            if key in self._watches:
                return
            self._watches[key] = self.observer.schedule(
                self._handler, key, recursive=recursive
            )
            if recursive:
                self._trees.add(os.path.abspath(key))
        logger.info(f"Watching {key}{' (recursive)' if recursive else ''}")

    def remove_watch(self, path: str | Path) -> None:
        """Drops the watch on a directory, if there is one."""
        key = os.fspath(path)
        with self._lock:
            watch = self._watches.pop(key, None)
            self._trees.discard(os.path.abspath(key))
        if watch is None:
            return
        try:
            self.observer.unschedule(watch)
        except KeyError:
            logger.debug(f"Watch on {key} was already gone")

    def add_tree(self, root: str | Path, should_watch: Callable[[str], bool]) -> int:
        """Covers `root` and every subdirectory accepted by `should_watch`.

        The tree is walked first so unreadable directories are reported, then a
        single recursive watch is placed on `root`. Events from rejected paths
        are dropped by the handler. A tree already inside a recursive watch
        needs no new registration.

        Returns:
            int: The number of directories newly covered (0 if already covered).

        Raises:
            WatchSetupError: If the walk or the registration fails.
        """

        def on_walk_error(error: OSError) -> None:
            raise WatchSetupError(f"Cannot walk {error.filename}: {error}") from error

        if self.covers(root):
            logger.debug(f"{root} already covered")
            return 0

        count = 0
        for dirpath, dirnames, _ in os.walk(root, onerror=on_walk_error):
            # Prune in place so os.walk never descends into skipped trees.
            dirnames[:] = [
                d for d in dirnames if should_watch(os.path.join(dirpath, d))
            ]
            if should_watch(dirpath):
                count += 1

        self._handler.accepts = should_watch
        try:
            self.add_watch(root, recursive=True)
        except OSError as e:
            raise WatchSetupError(f"Cannot watch {root}: {e}") from e
        return count

    def start(self) -> None:
        self.observer.start()

    def stop(self) -> None:
        self.observer.stop()
        self.observer.join()
