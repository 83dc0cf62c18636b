import logging
import re
import tomllib
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, ClassVar

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_BROADCAST_PORT,
    DEFAULT_PEER_ADDRESS,
    DEFAULT_SYNC_DIR,
    LOCAL_CONFIG_NAME,
    RECONNECT_DELAY_SECS,
    SYNC_IDLE_SECS,
)

logger = logging.getLogger(APP_NAME)

_SIZE_UNITS = {"k": 1024, "m": 1024**2, "g": 1024**3}
_TIME_UNITS = {
    "ms": 0.001,
    "s": 1,
    "sec": 1,
    "m": 60,
    "min": 60,
    "h": 3600,
    "hr": 3600,
}
_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([kmg])b?$")
_TIME_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(ms|sec|min|hr|s|m|h)s?$")


def parse_size(value: int | str) -> int:
    """Turns '100MB', '512k' or a plain byte count into bytes."""
    if isinstance(value, int):
        return value
    found = _SIZE_RE.match(str(value).strip().lower())
    if found is None:
        raise ValueError(f"Invalid size format '{value}'")
    return int(float(found.group(1)) * _SIZE_UNITS[found.group(2)])


def parse_time(value: int | float | str) -> float:
    """Turns '5s', '250ms', '2min' or a plain number of seconds into seconds."""
    if isinstance(value, (int, float)):
        return value
    found = _TIME_RE.match(str(value).strip().lower())
    if found is None:
        raise ValueError(f"Invalid time format '{value}'")
    return float(found.group(1)) * _TIME_UNITS[found.group(2)]


def parse_address(value: str) -> tuple[str, int]:
    """Splits a 'host:port' string into its parts.

    Raises:
        ValueError: If the port is missing or not a number.
    """
    host, sep, port = str(value).strip().rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"Invalid address '{value}' (expected host:port)")
    return host or "0.0.0.0", int(port)


def _checked_address(value: str) -> str:
    parse_address(value)
    return value


# Keys whose TOML value needs converting or validating before use.
_VALUE_PARSERS: dict[str, Callable[[Any], Any]] = {
    "max_log_size": parse_size,
    "idle_window": parse_time,
    "reconnect_delay": parse_time,
    "address": _checked_address,
}


@dataclass
class CoreConfig:
    """Repository settings.

    Attributes:
        sync_dir (str): The directory to synchronise. Must be a git clone.
        remote_name (str): The remote fetched from and pushed to.
        branch (str): The remote branch merged on every sync.
        commit_message (str): The fixed message used for every commit.
    """

    sync_dir: str = str(DEFAULT_SYNC_DIR)
    remote_name: str = "origin"
    branch: str = "master"
    commit_message: str = "murmur"

    @property
    def upstream(self) -> str:
        """The remote-tracking ref merged on every sync, e.g. 'origin/master'."""
        return f"{self.remote_name}/{self.branch}"


@dataclass
class DaemonConfig:
    """Watching daemon settings.

    Attributes:
        idle_window (float): Seconds of quiet required before a debounced sync.
    """

    idle_window: float = SYNC_IDLE_SECS


@dataclass
class PeersConfig:
    """Peer notification settings.

    Attributes:
        enabled (bool): Whether to send and listen for peer notifications.
        address (str): host:port of the relay used for the stream connection.
        broadcast_port (int): UDP port for broadcast notifications.
        reconnect_delay (float): Seconds between stream reconnection attempts.
    """

    enabled: bool = True
    address: str = DEFAULT_PEER_ADDRESS
    broadcast_port: int = DEFAULT_BROADCAST_PORT
    reconnect_delay: float = RECONNECT_DELAY_SECS


@dataclass
class LimitsConfig:
    """Log housekeeping.

    Attributes:
        max_log_size (int): Bytes a log file may reach before it is rotated.
    """

    max_log_size: int = 5 * 1024**2


@dataclass
class NotifyConfig:
    """User notification settings.

    Attributes:
        info_command (str | None): Program run with the change summary as its argument.
        warn_command (str | None): Program run with a warning message as its argument.
    """

    info_command: str | None = None
    warn_command: str | None = None


@dataclass
class Config:
    """All settings, one attribute per TOML table.

    Attributes:
        core (CoreConfig): Repository settings.
        daemon (DaemonConfig): Watching daemon settings.
        peers (PeersConfig): Peer notification settings.
        limits (LimitsConfig): Log housekeeping.
        notify (NotifyConfig): User notification settings.
    """

    core: CoreConfig = field(default_factory=CoreConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    peers: PeersConfig = field(default_factory=PeersConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)

    # Defaults merged with the global file, read once per process.
    _global_cache: ClassVar["Config | None"] = None

    @classmethod
    def load(cls, sync_dir: Path | None = None) -> "Config":
        """Builds the effective configuration.

        Layers are applied in order: built-in defaults, the global
        `config.toml`, then `murmur.toml` in the synced directory.

        Args:
            sync_dir (Path | None): The synced directory to search for local config.
                                    Defaults to the directory named by the global
                                    configuration.

        Returns:
            Config: A fresh object the caller is free to modify.
        """
        if cls._global_cache is None:
            defaults = cls()
            if CONFIG_FILE.exists():
                defaults._merge_from_file(CONFIG_FILE)
            cls._global_cache = defaults

        base = cls._global_cache
        merged = cls(
            **{f.name: replace(getattr(base, f.name)) for f in fields(base)}
        )

        root = sync_dir or Path(merged.core.sync_dir).expanduser()
        local_file = root / LOCAL_CONFIG_NAME
        if local_file.exists():
            merged._merge_from_file(local_file)

        if sync_dir is not None:
            merged.core.sync_dir = str(sync_dir)
        return merged

    def _merge_from_file(self, path: Path) -> None:
        """Applies every known table found in a TOML file."""
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
            return
        except OSError as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return

        for section in fields(self):
            table = data.get(section.name)
            if not isinstance(table, dict):
                continue
            current = getattr(self, section.name)
            setattr(self, section.name, self._update_dataclass(section.name, current, table))

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Returns a copy of `instance` with the valid entries of `updates` applied.

        Unknown keys and unparseable values are logged and skipped, leaving the
        previous value in place.
        """
        known = {f.name for f in fields(instance)}

        unknown = sorted(set(updates) - known)
        if unknown:
            logger.warning(
                f"Unknown config keys in [{section_name}]: "
                f"{', '.join(unknown)}. Ignoring."
            )

        accepted = {}
        for key, value in updates.items():
            if key not in known:
                continue
            parser = _VALUE_PARSERS.get(key)
            try:
                accepted[key] = parser(value) if parser else value
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{key}: {e}. Keeping previous value."
                )

        return replace(instance, **accepted)
