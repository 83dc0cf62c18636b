import argparse
import logging
import shutil
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from . import daemon, relay
from .config import Config
from .constants import APP_NAME, RELAY_LOG_FILE
from .coordinator import OutcomeKind, SyncCoordinator
from .git_wrapper import GitError, GitRepo
from .system import Notifier

logger = logging.getLogger(APP_NAME)
console = Console()
err_console = Console(stderr=True)


def run_check(config: Config) -> bool:
    """Verifies that the daemon can work against the configured directory.

    Checks that git is installed, the directory is a clone with the configured
    remote, and that fetching from it succeeds.

    Args:
        config (Config): The loaded configuration.

    Returns:
        bool: True if every check passed.
    """
    sync_dir = Path(config.core.sync_dir).expanduser()
    remote = config.core.remote_name
    results: list[tuple[str, bool, str]] = []

    git_path = shutil.which("git")
    results.append(("git installed", bool(git_path), git_path or "not found on PATH"))

    repo: GitRepo | None = None
    if not sync_dir.is_dir():
        results.append(("sync directory", False, f"{sync_dir} does not exist"))
    elif git_path:
        try:
            repo = GitRepo(sync_dir, git=git_path)
            results.append(("git repository", True, str(sync_dir)))
        except ValueError as e:
            results.append(("git repository", False, str(e)))

    if repo is not None:
        url = repo.remote_url(remote)
        results.append(
            (f"remote '{remote}'", url is not None, url or "not configured")
        )
        if url is not None:
            try:
                repo.fetch()
                results.append(("fetch", True, "ok"))
            except GitError as e:
                results.append(("fetch", False, e.output.strip() or str(e)))

    table = Table(title=f"{APP_NAME} check", show_header=False)
    table.add_column("Check", style="bold")
    table.add_column("Result")
    table.add_column("Detail", style="dim")
    for name, ok, detail in results:
        table.add_row(
            name,
            "[green]OK[/green]" if ok else "[bold red]FAIL[/bold red]",
            detail,
        )
    console.print(table)

    return all(ok for _, ok, _ in results)


def run_now(config: Config) -> bool:
    """Runs one sync in the foreground and prints the outcome.

    Returns:
        bool: True unless the sync failed.
    """
    try:
        repo = GitRepo(Path(config.core.sync_dir).expanduser().resolve())
    except ValueError as e:
        err_console.print(f"[bold red]ERROR:[/bold red] {e}")
        return False

    coordinator = SyncCoordinator(repo, config.core, Notifier(config.notify))
    with console.status(f"Syncing {repo.path.name}...", spinner="dots"):
        outcome = coordinator.sync()

    if outcome.kind is OutcomeKind.SUCCESS:
        console.print(f"[bold green]SUCCESS:[/bold green] {repo.path.name}: Pushed.")
    elif outcome.kind is OutcomeKind.NOTHING_TO_COMMIT:
        console.print(f"[green]{repo.path.name}: Up to date, nothing to commit.[/green]")
    else:
        err_console.print(f"[bold red]SYNC FAILED:[/bold red] {outcome.error}")
    return outcome.ok


def main() -> None:
    """Main entry point for the Git Murmur CLI."""
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Keep a git clone in sync with its remote as files change.",
    )

    # Global flags
    parser.add_argument(
        "--dir",
        type=Path,
        help="Synchronise this directory. Must already be a git clone "
        "with a remote (i.e. 'git pull' works)",
    )
    parser.add_argument(
        "--address", help="host:port of the relay (default from config)"
    )
    parser.add_argument(
        "--stdout",
        action="store_true",
        help="Log to stdout instead of the log file",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Watch the directory and sync (default)")
    subparsers.add_parser("relay", help="Relay update signals between daemons")
    subparsers.add_parser("check", help="Check we are set up correctly")
    subparsers.add_parser("now", help="Run one sync immediately")

    args = parser.parse_args()

    config = Config.load(sync_dir=args.dir.expanduser() if args.dir else None)
    if args.address:
        config.peers.address = args.address

    if args.command == "check":
        sys.exit(0 if run_check(config) else 1)
    elif args.command == "now":
        daemon.setup_logging(interactive=True)
        sys.exit(0 if run_now(config) else 1)
    elif args.command == "relay":
        daemon.setup_logging(args.stdout, RELAY_LOG_FILE, config.limits.max_log_size)
        relay.run_relay(config.peers.address)
        return

    # Default Action (if no subcommand is run)
    sys.exit(daemon.main(config, interactive=args.stdout))


if __name__ == "__main__":
    main()
