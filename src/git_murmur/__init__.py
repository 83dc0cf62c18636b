"""Git Murmur: keep a git clone in sync with its remote as files change.

This package provides the command-line interface, the watching daemon, the
sync pipeline, and the peer signalling that lets one machine's push prompt
the others to pull straight away.
"""

from . import (
    cli,
    config,
    constants,
    coordinator,
    daemon,
    debounce,
    git_wrapper,
    peers,
    relay,
    status,
    system,
    watcher,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "coordinator",
    "daemon",
    "debounce",
    "git_wrapper",
    "peers",
    "relay",
    "status",
    "system",
    "watcher",
]
