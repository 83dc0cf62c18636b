import os
from pathlib import Path

"""Global constants and path definitions for Git Murmur.

This module defines the filesystem layout (adhering to XDG standards where applicable),
application identifiers, the peer wire format, and the git exit-status contract used
across the application.
"""

# --- Identity ---
APP_NAME = "git-murmur"
"""str: The human-readable application name."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "git-murmur"
"""Path: The directory for runtime state data (logs)."""

CLIENT_LOG_FILE = STATE_DIR / "client.log"
"""Path: The log file written by the watching daemon."""

RELAY_LOG_FILE = STATE_DIR / "relay.log"
"""Path: The log file written by the relay server."""

# --- Configuration Paths ---
CONFIG_DIR: Path = Path.home() / ".config/git-murmur"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

LOCAL_CONFIG_NAME = "murmur.toml"
"""str: Per-directory configuration file, looked up in the synced root."""

DEFAULT_SYNC_DIR: Path = Path.home() / "murmur"
"""Path: The directory synchronised when none is configured."""

# --- Git Contract ---
GIT_DIR_NAME = ".git"
"""str: Path component marking git's own metadata directory."""

NOTHING_TO_COMMIT_STATUS = 1
"""int: Exit status of `git commit` when there was nothing to record."""

# --- Sync Timing ---
SYNC_IDLE_SECS = 5
"""int: Quiet period after the last change before a debounced sync fires."""

# --- Peer Protocol ---
PEER_MESSAGE = b"Updated\n"
"""bytes: The only payload peers exchange. Carries no identity or sequence."""

DEFAULT_PEER_ADDRESS = "127.0.0.1:8007"
"""str: host:port of the relay that stream connections are made to."""

DEFAULT_BROADCAST_PORT = 8007
"""int: UDP port used for broadcast notifications."""

RECONNECT_DELAY_SECS = 5
"""int: Wait between attempts to re-open the stream connection."""
