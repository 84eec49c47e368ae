"""Tests for the in-memory collaborators and host factory loading."""

from __future__ import annotations

import json
import sys
import types
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock

import pytest
from watchdog.events import FileModifiedEvent

from pwr_watcher.config import Config, ConfigurationError
from pwr_watcher.contracts import (
    DEMO_ADDRESS,
    DEMO_USER,
    Host,
    MockAddressBook,
    MockNotifier,
    MockUserDirectory,
    User,
    load_host,
    mock_host,
)
from pwr_watcher.processor import ResetEventProcessor


@pytest.fixture
def config() -> Config:
    return Config(
        watch_directory=None,
        url_base=None,
        notifications_enabled=True,
        testing=False,
        host_factory=None,
        log_file=None,
        log_level="INFO",
    )


@pytest.fixture
def host_module(monkeypatch: pytest.MonkeyPatch) -> Generator[types.ModuleType, None, None]:
    module = types.ModuleType("fake_host_module")
    monkeypatch.setitem(sys.modules, "fake_host_module", module)
    yield module


def test_mock_user_directory() -> None:
    directory = MockUserDirectory([User(id="u1", name="alice")])
    assert directory.user_by_id("u1") == (User(id="u1", name="alice"), 200)
    assert directory.user_by_name("alice") == (User(id="u1", name="alice"), 200)
    assert directory.user_by_id("u2")[1] == 404
    assert directory.user_by_name("bob")[1] == 404


def test_mock_address_book() -> None:
    addresses = MockAddressBook({"u1": "alice@example.com"})
    assert addresses.get_address_or_name("u1") == "alice@example.com"
    assert addresses.get_address_or_name("u2") == ""


def test_mock_host_knows_demo_user() -> None:
    host = mock_host()
    assert isinstance(host.notifier, MockNotifier)
    assert host.directory.user_by_name("demo") == (DEMO_USER, 200)
    assert host.addresses.get_address_or_name(DEMO_USER.id) == DEMO_ADDRESS
    assert host.directory.user_by_name("anyone")[1] == 404
    assert host.context is None


def test_mock_host_delivers_demo_reset(temp_dir: Path) -> None:
    host = mock_host()
    processor = ResetEventProcessor(host.directory, host.notifier, host.addresses)
    path = temp_dir / "passwordreset-demo.json"
    expiry = (datetime.now(timezone.utc) + timedelta(minutes=30)).isoformat()
    path.write_text(json.dumps({"Pin": "demo-pin", "UserName": "demo", "ExpirationDate": expiry}))

    assert processor.process_event(FileModifiedEvent(str(path))) == "sent"
    assert host.notifier.sent[0]["user_id"] == "demo"  # type: ignore[attr-defined]


def test_load_host(host_module: types.ModuleType, config: Config) -> None:
    expected = mock_host()
    factory = MagicMock(return_value=expected)
    host_module.build_host = factory  # type: ignore[attr-defined]

    assert load_host("fake_host_module:build_host", config) is expected
    factory.assert_called_once_with(config)


@pytest.mark.parametrize(
    "path,fragment",
    [
        ("fake_host_module", "expected 'module:callable'"),
        (":build_host", "expected 'module:callable'"),
        ("no_such_module_xyz:build_host", "Cannot load host factory"),
        ("fake_host_module:missing", "Cannot load host factory"),
    ],
)
def test_load_host_bad_path(host_module: types.ModuleType, config: Config, path: str, fragment: str) -> None:
    with pytest.raises(ConfigurationError, match=fragment):
        load_host(path, config)


def test_load_host_wrong_type(host_module: types.ModuleType, config: Config) -> None:
    host_module.build_host = lambda cfg: object()  # type: ignore[attr-defined]
    with pytest.raises(ConfigurationError, match="expected Host"):
        load_host("fake_host_module:build_host", config)


def test_host_dataclass() -> None:
    host = Host(directory=MockUserDirectory(), notifier=MockNotifier(), addresses=MockAddressBook(), context="app")
    assert host.context == "app"
