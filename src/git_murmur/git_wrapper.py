import logging
import shutil
import subprocess
from pathlib import Path

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


class GitError(RuntimeError):
    """A git invocation exited with a non-zero status.

    Attributes:
        command (str): The full command line that was run.
        output (str): Combined stdout and stderr of the command.
        status (int): The process exit status.
    """

    def __init__(self, command: str, output: str, status: int):
        self.command = command
        self.output = output
        self.status = status
        super().__init__(
            f"git error running: {command} (exit {status})\n\n{output}".rstrip()
        )


class GitRepo:
    """A wrapper around the Git command-line interface for a synchronised directory.

    Every invocation runs with the working directory fixed to the repository root
    and logs its argument list together with the combined output, whatever the
    outcome, so that failed syncs can be diagnosed from the log after the fact.

    Attributes:
        path (Path): The file system path to the repository root.
        git (str): The git executable used for every invocation.
    """

    def __init__(self, path: Path, git: str | None = None):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.
            git (str | None, optional): Path to the git executable. Defaults to
                                        the first `git` found on PATH.

        Raises:
            ValueError: If the path is not a git repository or git is not installed.
        """
        self.path = path
        if not (self.path / ".git").exists():
            raise ValueError(f"Not a git repository: {self.path}")
        self.git = git or shutil.which("git") or ""
        if not self.git:
            raise ValueError("Could not find 'git' on PATH")

    def _run(self, args: list[str]) -> str:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.

        Returns:
            str: The combined stdout and stderr of the command.

        Raises:
            GitError: If the git command returns a non-zero exit code.
        """
        cmd = [self.git, *args]
        command = " ".join(cmd)
        logger.info(command)

        res = subprocess.run(
            cmd,
            cwd=self.path,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        output = res.stdout or ""
        if output:
            logger.info(output.rstrip())

        if res.returncode != 0:
            raise GitError(command, output, res.returncode)
        return output

    def fetch(self) -> None:
        """Downloads objects and refs from the default remote."""
        self._run(["fetch"])

    def merge(self, upstream: str) -> None:
        """Merges a remote-tracking ref (e.g. 'origin/master') into HEAD.

        Conflicts are reported as a plain `GitError`; resolving them is left
        to the operator.
        """
        self._run(["merge", upstream])

    def add_all(self) -> None:
        """Stages all changes (modified, deleted, and untracked files)."""
        self._run(["add", "--all"])

    def commit_all(self, message: str) -> None:
        """Commits every tracked change with a fixed message.

        Raises:
            GitError: With status 1 when there was nothing to commit.
        """
        self._run(["commit", "--all", f"--message={message}"])

    def push(self) -> None:
        """Pushes the current branch to its upstream."""
        self._run(["push"])

    def status_porcelain(self) -> list[str]:
        """Returns the lines of `git status --porcelain`."""
        return self._run(["status", "--porcelain"]).splitlines()

    def diff_name_status(self, target: str) -> list[str]:
        """Returns the lines of `git diff <target> --name-status`.

        Args:
            target (str): The revision to compare the working tree against.
        """
        return self._run(["diff", target, "--name-status"]).splitlines()

    def remote_url(self, remote: str) -> str | None:
        """Resolves the URL of a remote, or None if it does not exist."""
        try:
            return self._run(["remote", "get-url", remote]).strip() or None
        except GitError as e:
            logger.debug(f"remote get-url failed for '{remote}': {e}")
            return None
