"""Tests for the watchdog-backed filesystem watcher."""

import os
import queue
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from watchdog.events import (
    DirCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from git_murmur.watcher import (
    ChangeKind,
    FileWatcher,
    WatchError,
    WatchEvent,
    WatchSetupError,
)


def _not_git(path: str) -> bool:
    return ".git" not in Path(path).parts


@pytest.fixture
def tree(tmp_path: Path) -> Path:
    (tmp_path / ".git" / "objects").mkdir(parents=True)
    (tmp_path / "docs" / "drafts").mkdir(parents=True)
    (tmp_path / "src").mkdir()
    return tmp_path


def test_add_tree_places_one_recursive_watch(tree: Path) -> None:
    """Verifies the whole tree costs a single registration, skipping .git in the count."""
    observer = MagicMock()
    watcher = FileWatcher(MagicMock(), observer=observer)

    count = watcher.add_tree(tree, _not_git)

    assert count == 4
    assert watcher.watched == [os.fspath(tree)]
    observer.schedule.assert_called_once_with(
        watcher._handler, os.fspath(tree), recursive=True
    )
    assert watcher.covers(tree / "docs" / "drafts")
    assert not watcher.covers(tree.parent)


def test_add_tree_inside_covered_tree_is_a_no_op(tree: Path) -> None:
    observer = MagicMock()
    watcher = FileWatcher(MagicMock(), observer=observer)
    watcher.add_tree(tree, _not_git)

    assert watcher.add_tree(tree / "docs", _not_git) == 0
    observer.schedule.assert_called_once()


def test_add_watch_is_idempotent(tree: Path) -> None:
    observer = MagicMock()
    watcher = FileWatcher(MagicMock(), observer=observer)

    watcher.add_watch(tree / "src")
    watcher.add_watch(tree / "src")

    observer.schedule.assert_called_once()


def test_add_tree_failure_is_setup_error(tree: Path) -> None:
    observer = MagicMock()
    observer.schedule.side_effect = PermissionError("denied")
    watcher = FileWatcher(MagicMock(), observer=observer)

    with pytest.raises(WatchSetupError, match="Cannot watch"):
        watcher.add_tree(tree, _not_git)


def test_add_tree_on_missing_directory_is_setup_error(tmp_path: Path) -> None:
    watcher = FileWatcher(MagicMock(), observer=MagicMock())

    with pytest.raises(WatchSetupError, match="Cannot walk"):
        watcher.add_tree(tmp_path / "vanished", _not_git)


def test_remove_watch_unschedules(tree: Path) -> None:
    observer = MagicMock()
    watcher = FileWatcher(MagicMock(), observer=observer)
    watcher.add_watch(tree / "src")

    watcher.remove_watch(tree / "src")
    watcher.remove_watch(tree / "src")

    observer.unschedule.assert_called_once_with(observer.schedule.return_value)
    assert watcher.watched == []


@pytest.mark.parametrize(
    ("event", "kind", "is_dir"),
    [
        (DirCreatedEvent("/repo/new"), ChangeKind.CREATE, True),
        (FileModifiedEvent("/repo/a.txt"), ChangeKind.MODIFY, False),
        (FileDeletedEvent("/repo/a.txt"), ChangeKind.DELETE, False),
        (FileMovedEvent("/repo/a.txt", "/repo/b.txt"), ChangeKind.MOVE, False),
    ],
)
def test_events_are_converted(event: object, kind: ChangeKind, is_dir: bool) -> None:
    sink = MagicMock()
    watcher = FileWatcher(sink, is_active=lambda: True, observer=MagicMock())

    watcher._handler.dispatch(event)

    sink.assert_called_once_with(
        WatchEvent(
            path=event.src_path,
            kind=kind,
            is_directory=is_dir,
            during_sync=True,
            dest_path="/repo/b.txt" if kind is ChangeKind.MOVE else None,
        )
    )


def test_conversion_failure_becomes_watch_error() -> None:
    sink = MagicMock()

    def broken() -> bool:
        raise RuntimeError("state unavailable")

    watcher = FileWatcher(sink, is_active=broken, observer=MagicMock())
    watcher._handler.dispatch(FileModifiedEvent("/repo/a.txt"))

    (error,), _ = sink.call_args
    assert isinstance(error, WatchError)
    assert error.path == "/repo/a.txt"
    assert "state unavailable" in error.message


def test_git_metadata_events_are_dropped(tree: Path) -> None:
    sink = MagicMock()
    watcher = FileWatcher(sink, observer=MagicMock())
    watcher.add_tree(tree, _not_git)

    watcher._handler.dispatch(FileModifiedEvent(os.fspath(tree / ".git" / "index")))
    sink.assert_not_called()

    # A move out of .git lands in the tree, so it is kept.
    watcher._handler.dispatch(
        FileMovedEvent(
            os.fspath(tree / ".git" / "tmp"), os.fspath(tree / "docs" / "a.md")
        )
    )
    sink.assert_called_once()


def _wait_for(events: "queue.Queue[object]", path: Path, timeout: float = 5) -> bool:
    """Drains `events` until one for `path` (as source or destination) shows up."""
    target = os.fspath(path)
    try:
        while True:
            event = events.get(timeout=timeout)
            if isinstance(event, WatchEvent) and target in (event.path, event.dest_path):
                return True
    except queue.Empty:
        return False


@pytest.fixture
def live_watcher() -> Iterator[tuple[FileWatcher, "queue.Queue[object]"]]:
    events: queue.Queue[object] = queue.Queue()
    watcher = FileWatcher(events.put)
    watcher.start()
    yield watcher, events
    watcher.stop()


def test_large_tree_is_covered(
    tmp_path: Path, live_watcher: tuple[FileWatcher, "queue.Queue[object]"]
) -> None:
    """Verifies a tree with more directories than inotify allows instances."""
    watcher, events = live_watcher
    for i in range(200):
        (tmp_path / f"d{i}").mkdir()

    assert watcher.add_tree(tmp_path, _not_git) == 201

    target = tmp_path / "d150" / "note.txt"
    target.write_text("hello")
    assert _wait_for(events, target)


def test_renamed_directory_keeps_reporting(
    tmp_path: Path, live_watcher: tuple[FileWatcher, "queue.Queue[object]"]
) -> None:
    """Verifies changes under a renamed directory, including a new subdirectory."""
    watcher, events = live_watcher
    (tmp_path / "x").mkdir()
    watcher.add_tree(tmp_path, _not_git)

    (tmp_path / "x").rename(tmp_path / "y")
    assert _wait_for(events, tmp_path / "y")

    (tmp_path / "y" / "z").mkdir()
    assert _wait_for(events, tmp_path / "y" / "z")

    target = tmp_path / "y" / "z" / "f.txt"
    target.write_text("hello")
    assert _wait_for(events, target)
