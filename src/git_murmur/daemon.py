import logging
import queue
import signal
import sys
import threading
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType

from .config import Config
from .constants import APP_NAME, CLIENT_LOG_FILE
from .coordinator import (
    OutcomeKind,
    SyncCoordinator,
    SyncInProgressError,
    SyncOutcome,
)
from .debounce import EventDebouncer
from .git_wrapper import GitRepo
from .peers import PeerNotifier
from .system import Notifier
from .watcher import ChangeKind, FileWatcher, WatchError, WatchEvent, WatchSetupError

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)


@dataclass(frozen=True)
class PeerTrigger:
    """A peer reported a push. Syncs immediately, bypassing the idle window."""

    source: str


@dataclass(frozen=True)
class SyncDue:
    """The idle window elapsed after a burst of local changes."""


@dataclass(frozen=True)
class TaskResult:
    """A background task (e.g. the push hook) finished."""

    name: str
    error: BaseException | None = None


@dataclass(frozen=True)
class Stop:
    """Asks the loop to exit after the current command."""


class EventLoop:
    """The single place where sync triggers are handled.

    Watch events, watch errors, peer signals, debounce deadlines and background
    task results are all put on one queue, and one thread takes them off in
    order. Only that thread runs `sync()`, so two pipelines can never overlap.

    Attributes:
        coordinator (SyncCoordinator): Runs the pipeline.
        root (Path): The synchronised directory.
        commands (queue.Queue): Every trigger source feeds this queue.
        debouncer (EventDebouncer): Turns local change bursts into `SyncDue`.
        watcher (FileWatcher): Watches `root` and its subdirectories.
        peers (PeerNotifier | None): Peer signalling, when enabled.
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        root: Path,
        idle_window: float,
        watcher: FileWatcher | None = None,
        peers: PeerNotifier | None = None,
    ):
        self.coordinator = coordinator
        self.root = root
        self.commands: queue.Queue = queue.Queue()
        self.debouncer = EventDebouncer(
            coordinator.state, lambda: self.commands.put(SyncDue()), idle_window
        )
        self.watcher = watcher or FileWatcher(
            self.commands.put, lambda: coordinator.is_active
        )
        self.peers = peers

        coordinator.task_reporter = self._report_task
        if peers is not None:
            coordinator.register_push_hook(peers.notify_peers)

    # --- Lifecycle ---

    def setup(self) -> SyncOutcome:
        """Establishes watch coverage, then brings the tree up to date.

        Returns:
            SyncOutcome: The outcome of the startup sync.

        Raises:
            WatchSetupError: If any directory under `root` cannot be watched.
        """
        # The observer must be running so that failed registrations raise here.
        self.watcher.start()
        count = self.watcher.add_tree(self.root, self.coordinator.should_watch)
        logger.info(f"Watching {count} directories under {self.root}")

        outcome = self._run_sync("startup")
        if outcome is not None and outcome.error is not None:
            self.coordinator.notifier.warn(str(outcome.error))

        if self.peers is not None:
            self.peers.start(self.peer_signal)
        return outcome

    def run(self) -> None:
        """Handles commands until a `Stop` arrives."""
        while self.run_once():
            pass

    def run_once(self, timeout: float | None = None) -> bool:
        """Handles exactly one command.

        Args:
            timeout (float | None, optional): Seconds to wait for a command.
                                              Defaults to waiting forever.

        Returns:
            bool: False once the loop has been asked to stop, True otherwise.

        Raises:
            queue.Empty: If `timeout` passes without a command.
        """
        command = self.commands.get(timeout=timeout)
        if isinstance(command, Stop):
            return False
        self.dispatch(command)
        return True

    def stop(self) -> None:
        self.commands.put(Stop())

    def shutdown(self) -> None:
        """Releases the watcher, the debounce timer and the peer listeners."""
        self.debouncer.cancel()
        if self.peers is not None:
            self.peers.stop()
        try:
            self.watcher.stop()
        except RuntimeError as e:
            # Observer was never started.
            logger.debug(f"Watcher stop: {e}")

    def peer_signal(self, source: str) -> None:
        """Entry point for the peer listeners, safe to call from any thread."""
        self.commands.put(PeerTrigger(source))

    # --- Dispatch ---

    def dispatch(self, command: object) -> None:
        if isinstance(command, WatchEvent):
            self._handle_watch_event(command)
        elif isinstance(command, WatchError):
            logger.error(f"Watch error: {command.message}")
        elif isinstance(command, PeerTrigger):
            self._run_sync(f"peer {command.source}")
        elif isinstance(command, SyncDue):
            self._run_sync("local changes")
        elif isinstance(command, TaskResult):
            if command.error is not None:
                logger.error(f"{command.name} failed: {command.error}")
            else:
                logger.debug(f"{command.name} finished")
        else:
            logger.warning(f"Unknown command ignored: {command!r}")

    def _handle_watch_event(self, event: WatchEvent) -> None:
        logger.debug(f"{event.kind.value} {event.path}")

        should_watch = self.coordinator.should_watch
        if event.is_directory:
            if event.kind is ChangeKind.CREATE and should_watch(event.path):
                self._watch_new_directory(event.path)
            elif event.kind is ChangeKind.DELETE:
                self.watcher.remove_watch(event.path)
            elif event.kind is ChangeKind.MOVE:
                self.watcher.remove_watch(event.path)
                if event.dest_path and should_watch(event.dest_path):
                    self._watch_new_directory(event.dest_path)

        paths = [event.path] + ([event.dest_path] if event.dest_path else [])
        if any(self.coordinator.is_qualifying(p, event.during_sync) for p in paths):
            self.debouncer.notify()

    def _watch_new_directory(self, path: str) -> None:
        logger.info(f"Adding watch {path}")
        try:
            self.watcher.add_tree(path, self.coordinator.should_watch)
        except (WatchSetupError, OSError) as e:
            # Not fatal once running; the directory may already be gone again.
            self.dispatch(WatchError(str(e), path))

    def _run_sync(self, reason: str) -> SyncOutcome | None:
        logger.info(f"Sync requested: {reason}")
        try:
            outcome = self.coordinator.sync()
        except SyncInProgressError:
            logger.warning(f"Sync already running; dropped request ({reason})")
            return None

        if outcome.kind is OutcomeKind.FAILURE and outcome.error is not None:
            logger.error(f"Sync failed ({reason}): {outcome.error}")
        return outcome

    def _report_task(self, name: str, error: BaseException | None) -> None:
        self.commands.put(TaskResult(name, error))


def setup_logging(
    interactive: bool, log_file: Path = CLIENT_LOG_FILE, max_bytes: int = 5 * 1024**2
) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to stderr and
                            a rotating log file.
        log_file (Path, optional): The rotating log file used in daemon mode.
        max_bytes (int, optional): Size at which the log file is rotated.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    # Always log to a stream (stderr is captured by systemd/launchd).
    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def build_loop(config: Config) -> EventLoop:
    """Wires the repository, coordinator, notifier and peers into a loop.

    Raises:
        ValueError: If the configured directory is not a git repository.
    """
    root = Path(config.core.sync_dir).expanduser().resolve()
    repo = GitRepo(root)
    coordinator = SyncCoordinator(repo, config.core, Notifier(config.notify))
    peers = PeerNotifier(config.peers) if config.peers.enabled else None
    return EventLoop(coordinator, root, config.daemon.idle_window, peers=peers)


def main(config: Config, interactive: bool = False) -> int:
    """Runs the watching daemon until SIGTERM or Ctrl-C.

    Args:
        config (Config): The loaded configuration.
        interactive (bool, optional): Log to stdout instead of the log file.

    Returns:
        int: The process exit status.
    """
    setup_logging(interactive, CLIENT_LOG_FILE, config.limits.max_log_size)
    logger.info(f"Synchronising: {config.core.sync_dir}")

    try:
        loop = build_loop(config)
    except ValueError as e:
        logger.critical(f"FATAL: {e}")
        return 1

    def on_sigterm(_signum: int, _frame: FrameType | None) -> None:
        # The handler may interrupt the loop while it holds the queue lock.
        threading.Thread(target=loop.stop, daemon=True).start()

    signal.signal(signal.SIGTERM, on_sigterm)

    try:
        loop.setup()
        loop.run()
    except WatchSetupError as e:
        logger.critical(f"FATAL: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    finally:
        loop.shutdown()

    logger.info("Daemon stopped.")
    return 0
