from __future__ import annotations

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Generator, Optional

import pytest
from watchdog.events import FileModifiedEvent

from pwr_watcher.contracts import MockAddressBook, MockNotifier, MockUserDirectory, User
from pwr_watcher.processor import ResetEventProcessor

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def directory() -> MockUserDirectory:
    return MockUserDirectory([User(id="u1", name="alice"), User(id="u2", name="bob")])


@pytest.fixture
def notifier() -> MockNotifier:
    return MockNotifier()


@pytest.fixture
def addresses() -> MockAddressBook:
    return MockAddressBook({"u1": "alice@example.com", "u2": "bob@example.com"})


@pytest.fixture
def processor(
    directory: MockUserDirectory, notifier: MockNotifier, addresses: MockAddressBook
) -> ResetEventProcessor:
    return ResetEventProcessor(directory, notifier, addresses, clock=lambda: NOW)


@pytest.fixture
def write_reset_file(temp_dir: Path) -> Callable[..., Path]:
    """Write a reset file into temp_dir and return its path."""

    def _write(
        username: str = "alice",
        pin: str = "abc123",
        expiry: Optional[datetime] = None,
        name: str = "passwordreset-1.json",
        raw: Optional[str] = None,
    ) -> Path:
        path = temp_dir / name
        if raw is None:
            payload: dict[str, Any] = {
                "Pin": pin,
                "UserName": username,
                "ExpirationDate": (expiry or NOW + timedelta(minutes=30)).isoformat(),
            }
            raw = json.dumps(payload)
        path.write_text(raw, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def modified_event() -> Callable[[Path], FileModifiedEvent]:
    def _event(path: Path) -> FileModifiedEvent:
        return FileModifiedEvent(str(path))

    return _event
