"""Tests for the configuration management subsystem."""

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from git_murmur.config import Config, parse_address, parse_size, parse_time


@pytest.fixture(autouse=True)
def clear_config_cache(mocker: MagicMock, tmp_path: Path) -> Any:
    """Ensures every test starts with a clean cache and no real global config."""
    Config._global_cache = None
    mocker.patch("git_murmur.config.CONFIG_FILE", tmp_path / "missing.toml")
    yield
    Config._global_cache = None


def test_config_defaults() -> None:
    """Verifies that the configuration initializes with sensible defaults."""
    conf = Config()
    assert conf.core.remote_name == "origin"
    assert conf.core.branch == "master"
    assert conf.core.upstream == "origin/master"
    assert conf.daemon.idle_window == 5
    assert conf.peers.enabled is True
    assert conf.peers.address == "127.0.0.1:8007"
    assert conf.notify.info_command is None


def test_config_load_merges_layers(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies the cascading merge logic (Defaults -> Global -> Local).

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    global_config_path = tmp_path / "global_config.toml"
    global_config_path.write_text(
        '[core]\nremote_name = "upstream"\nbranch = "main"\n'
        '[daemon]\nidle_window = "10s"\n'
        '[peers]\naddress = "relay.lan:9000"\n'
    )
    (tmp_path / "murmur.toml").write_text('[daemon]\nidle_window = "2s"\n')

    mocker.patch("git_murmur.config.CONFIG_FILE", global_config_path)

    conf = Config.load(sync_dir=tmp_path)

    assert conf.core.upstream == "upstream/main"  # From Global
    assert conf.peers.address == "relay.lan:9000"  # From Global
    assert conf.daemon.idle_window == 2  # Local overrides Global
    assert conf.core.sync_dir == str(tmp_path)


def test_config_load_returns_independent_copies(tmp_path: Path) -> None:
    """Verifies that mutating a loaded config does not leak into the next load."""
    first = Config.load(sync_dir=tmp_path)
    first.peers.address = "elsewhere:1"

    second = Config.load(sync_dir=tmp_path)
    assert second.peers.address == "127.0.0.1:8007"


def test_parse_size() -> None:
    """Verifies that human-readable sizes are correctly converted to bytes."""
    assert parse_size(100) == 100
    assert parse_size("100kb") == 102400
    assert parse_size("10 MB") == 10485760

    with pytest.raises(ValueError, match=r"Invalid size format '100 bits'"):
        parse_size("100 bits")


def test_parse_time() -> None:
    """Verifies that human-readable times are correctly converted to seconds."""
    assert parse_time(5) == 5
    assert parse_time("30s") == 30
    assert parse_time("2 min") == 120
    assert parse_time("250ms") == pytest.approx(0.25)

    with pytest.raises(ValueError, match=r"Invalid time format '10 lightyears'"):
        parse_time("10 lightyears")


def test_parse_address() -> None:
    """Verifies host:port splitting, including a bare ':port'."""
    assert parse_address("127.0.0.1:8007") == ("127.0.0.1", 8007)
    assert parse_address(":9000") == ("0.0.0.0", 9000)

    with pytest.raises(ValueError, match="expected host:port"):
        parse_address("localhost")


def test_config_invalid_keys_and_values(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies that unknown keys are ignored and invalid values fall back to defaults.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        caplog (pytest.LogCaptureFixture): Pytest fixture for capturing logs.
    """
    import logging

    caplog.set_level(logging.WARNING)

    (tmp_path / "murmur.toml").write_text(
        "[daemon]\n"
        'idle_window = "soon"\n'
        'fake_setting = "ignored"\n'
        "[peers]\n"
        'address = "no-port"\n'
    )

    conf = Config.load(sync_dir=tmp_path)

    assert conf.daemon.idle_window == 5
    assert conf.peers.address == "127.0.0.1:8007"

    assert "Unknown config keys in [daemon]: fake_setting" in caplog.text
    assert "Config error in [daemon].idle_window: Invalid time format" in caplog.text
    assert "Config error in [peers].address: Invalid address" in caplog.text
