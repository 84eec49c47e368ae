"""Contracts for the collaborators the relay depends on.

The user directory, notification delivery and address resolution live outside
this package. The host application supplies them as a :class:`Host`, either
directly or through a ``module:callable`` factory named in the configuration.
In-memory mocks are provided for testing mode.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pwr_watcher.config import Config, ConfigurationError
from pwr_watcher.records import ResetRecord

logger = logging.getLogger(__name__)

__all__ = [
    "User",
    "UserDirectory",
    "Notifier",
    "AddressBook",
    "Host",
    "MockUserDirectory",
    "MockNotifier",
    "MockAddressBook",
    "mock_host",
    "DEMO_USER",
    "DEMO_ADDRESS",
    "load_host",
]


@dataclass(frozen=True)
class User:
    id: str
    name: str


class UserDirectory(Protocol):
    """Resolve users against the identity service.

    Both lookups return the user and an HTTP-like status code. Transport
    failures are raised.
    """

    def user_by_id(self, user_id: str) -> Tuple[User, int]:
        ...

    def user_by_name(self, name: str) -> Tuple[User, int]:
        ...


class Notifier(Protocol):
    """Build and deliver reset notifications. Failures are raised."""

    def construct_reset(self, record: ResetRecord, host_context: Any, is_admin: bool) -> Any:
        ...

    def send_by_id(self, message: Any, user_id: str) -> None:
        ...


class AddressBook(Protocol):
    """Return a deliverable address or name for a user, or "" if there is none."""

    def get_address_or_name(self, user_id: str) -> str:
        ...


@dataclass
class Host:
    """The collaborators supplied by the host application."""

    directory: UserDirectory
    notifier: Notifier
    addresses: AddressBook
    context: Any = None


class MockUserDirectory:
    """In-memory user directory for testing without an identity service."""

    def __init__(self, users: Optional[List[User]] = None) -> None:
        self.users: Dict[str, User] = {u.id: u for u in users or []}

    def user_by_id(self, user_id: str) -> Tuple[User, int]:
        user = self.users.get(user_id)
        if user is None:
            return User(id="", name=""), 404
        return user, 200

    def user_by_name(self, name: str) -> Tuple[User, int]:
        for user in self.users.values():
            if user.name == name:
                return user, 200
        return User(id="", name=""), 404


class MockNotifier:
    """Record notifications instead of delivering them."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    def construct_reset(self, record: ResetRecord, host_context: Any, is_admin: bool) -> Any:
        return {"pin": record.pin, "username": record.username, "is_admin": is_admin}

    def send_by_id(self, message: Any, user_id: str) -> None:
        self.sent.append({"user_id": user_id, "message": message})
        logger.info("[MOCK] send_by_id: reset for %s", user_id)


class MockAddressBook:
    """Address book backed by a dict; unknown users have no address."""

    def __init__(self, addresses: Optional[Dict[str, str]] = None) -> None:
        self.addresses: Dict[str, str] = dict(addresses or {})

    def get_address_or_name(self, user_id: str) -> str:
        return self.addresses.get(user_id, "")


DEMO_USER = User(id="demo", name="demo")
DEMO_ADDRESS = "demo@example.com"


def mock_host() -> Host:
    """Return a host with in-memory collaborators that know a single user.

    Reset files for user ``demo`` are delivered to the :class:`MockNotifier`;
    any other user name ends in a failed lookup.
    """
    return Host(
        directory=MockUserDirectory([DEMO_USER]),
        notifier=MockNotifier(),
        addresses=MockAddressBook({DEMO_USER.id: DEMO_ADDRESS}),
    )


def load_host(factory_path: str, config: Config) -> Host:
    """Import and call a host factory.

    Args:
        factory_path (str): Dotted module path and attribute, e.g. ``"myapp.pwr:build_host"``.
        config (Config): Passed to the factory.

    Returns:
        Host: The collaborators built by the factory.

    Raises:
        ConfigurationError: If the path is malformed or cannot be imported, or the
            factory does not return a :class:`Host`.
    """
    module_name, sep, attr = factory_path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(
            f"Invalid host factory '{factory_path}': expected 'module:callable'"
        )
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load host factory '{factory_path}': {e}") from e

    host = factory(config)
    if not isinstance(host, Host):
        raise ConfigurationError(
            f"Host factory '{factory_path}' returned {type(host).__name__}, expected Host"
        )
    return host
