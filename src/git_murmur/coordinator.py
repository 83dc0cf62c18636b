"""The sync pipeline and the shared state that keeps runs from overlapping.

A sync is: fetch, merge the upstream branch, stage everything, commit with a
fixed message, push. Outcomes are classified from git's exit status alone.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .config import CoreConfig
from .constants import APP_NAME, GIT_DIR_NAME, NOTHING_TO_COMMIT_STATUS
from .git_wrapper import GitError, GitRepo
from .status import StatusSummary
from .system import Notifier

logger = logging.getLogger(APP_NAME)

PushHook = Callable[[], None]
TaskReporter = Callable[[str, BaseException | None], None]


class OutcomeKind(Enum):
    SUCCESS = "success"
    NOTHING_TO_COMMIT = "nothing to commit"
    FAILURE = "failure"


@dataclass(frozen=True)
class SyncOutcome:
    """Result of one pipeline run.

    Attributes:
        kind (OutcomeKind): How the run ended.
        error (GitError | None): The failing git invocation, for FAILURE only.
    """

    kind: OutcomeKind
    error: GitError | None = None

    @property
    def ok(self) -> bool:
        """True for SUCCESS and NOTHING_TO_COMMIT."""
        return self.kind is not OutcomeKind.FAILURE


class SyncInProgressError(RuntimeError):
    """Raised when a sync is requested while another one is running."""


class SyncState:
    """Pending/active flags and the time of the last qualifying event.

    Both flags live behind one lock, so a check-and-set on either is atomic.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active = False
        self._pending = False
        self._last_event_time = 0.0

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._active

    @property
    def is_pending(self) -> bool:
        with self._lock:
            return self._pending

    @property
    def last_event_time(self) -> float:
        with self._lock:
            return self._last_event_time

    def begin_sync(self) -> bool:
        """Marks a pipeline as running. Returns False if one already is."""
        with self._lock:
            if self._active:
                return False
            self._active = True
            return True

    def end_sync(self) -> None:
        with self._lock:
            self._active = False

    def record_event(self, now: float) -> bool:
        """Stamps a qualifying event and marks a debounce as pending.

        Returns:
            bool: True if this call moved the state from idle to pending.
        """
        with self._lock:
            self._last_event_time = now
            if self._pending:
                return False
            self._pending = True
            return True

    def clear_pending(self) -> None:
        with self._lock:
            self._pending = False


def _log_task_result(name: str, error: BaseException | None) -> None:
    if error is not None:
        logger.error(f"Background task '{name}' failed: {error}")


class SyncCoordinator:
    """Runs the sync pipeline against one repository.

    Attributes:
        repo (GitRepo): The repository being synchronised.
        core (CoreConfig): Remote, branch and commit message settings.
        notifier (Notifier): Receives human-readable change summaries.
        state (SyncState): Shared pending/active flags.
    """

    def __init__(
        self,
        repo: GitRepo,
        core: CoreConfig,
        notifier: Notifier,
        state: SyncState | None = None,
        task_reporter: TaskReporter | None = None,
    ):
        self.repo = repo
        self.core = core
        self.notifier = notifier
        self.state = state or SyncState()
        self.task_reporter = task_reporter or _log_task_result
        self._push_hook: PushHook | None = None

    @property
    def is_active(self) -> bool:
        return self.state.is_active

    def register_push_hook(self, hook: PushHook) -> None:
        """Sets the callback run after every successful push. Last one wins."""
        self._push_hook = hook

    def should_watch(self, path: str | Path) -> bool:
        """Whether a path is outside git's own metadata directory."""
        return GIT_DIR_NAME not in Path(path).parts

    def is_qualifying(self, path: str | Path, during_sync: bool = False) -> bool:
        """Whether a change at `path` should schedule a sync.

        Changes inside `.git`, and any change observed while a sync is running
        (which is most likely the sync's own merge or commit), are ignored.
        """
        if not self.should_watch(path):
            return False
        return not (during_sync or self.state.is_active)

    def sync(self) -> SyncOutcome:
        """Runs fetch, merge, add, commit and push, in that order.

        Returns:
            SyncOutcome: SUCCESS after a push, NOTHING_TO_COMMIT when the commit
            found no changes, FAILURE when any step exited non-zero.

        Raises:
            SyncInProgressError: If another sync has not finished yet.
        """
        if not self.state.begin_sync():
            raise SyncInProgressError("A sync is already running")

        logger.info("* Sync start")
        started = time.monotonic()
        try:
            outcome = self._run_pipeline()
        finally:
            self.state.end_sync()

        elapsed = time.monotonic() - started
        if outcome.error is not None:
            logger.error(f"* Sync failed after {elapsed:.1f}s: {outcome.error.command}")
        else:
            logger.info(f"* Sync end ({outcome.kind.value}, {elapsed:.1f}s)")
        return outcome

    def _run_pipeline(self) -> SyncOutcome:
        upstream = self.core.upstream

        # 1. Pull first so the push is a fast-forward.
        try:
            self.repo.fetch()
            self._display_status(lambda: self.repo.diff_name_status(upstream))
            self.repo.merge(upstream)
            self.repo.add_all()
        except GitError as e:
            return SyncOutcome(OutcomeKind.FAILURE, e)

        self._display_status(self.repo.status_porcelain)

        # 2. Commit. Exit status 1 means there was nothing to record.
        try:
            self.repo.commit_all(self.core.commit_message)
        except GitError as e:
            if e.status == NOTHING_TO_COMMIT_STATUS:
                return SyncOutcome(OutcomeKind.NOTHING_TO_COMMIT)
            return SyncOutcome(OutcomeKind.FAILURE, e)

        # 3. Push.
        try:
            self.repo.push()
        except GitError as e:
            return SyncOutcome(OutcomeKind.FAILURE, e)

        self._run_push_hook()
        return SyncOutcome(OutcomeKind.SUCCESS)

    def _display_status(self, query: Callable[[], list[str]]) -> None:
        """Summarises a status query and informs the user if anything changed."""
        try:
            lines = query()
        except GitError as e:
            logger.warning(f"Status query failed: {e}")
            return

        message = StatusSummary.from_lines(lines).render()
        if message:
            self.notifier.inform(message)

    def _run_push_hook(self) -> None:
        hook = self._push_hook
        if hook is None:
            return

        def run() -> None:
            error = None
            try:
                hook()
            except Exception as e:
                error = e
            self.task_reporter("push-hook", error)

        threading.Thread(target=run, name="push-hook", daemon=True).start()
