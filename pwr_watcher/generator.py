"""In-process password resets for the administrator path.

Nothing here touches the filesystem or runs in the background: errors are
raised to the caller, which decides what the administrator sees.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import quote

from pwr_watcher.config import CONFIG_SECTION, ConfigurationError
from pwr_watcher.contracts import Notifier, UserDirectory
from pwr_watcher.records import InternalReset

__all__ = [
    "INTERNAL_RESET_TTL",
    "UserLookupError",
    "gen_internal_reset",
    "gen_reset_link",
    "send_internal_reset",
]

INTERNAL_RESET_TTL = timedelta(minutes=30)


class UserLookupError(RuntimeError):
    """Raised when the user directory cannot resolve a user."""

    def __init__(self, user: str, status: Optional[int] = None, cause: Optional[BaseException] = None) -> None:
        self.user = user
        self.status = status
        detail = f"status {status}" if cause is None else str(cause)
        super().__init__(f"Failed to get user '{user}': {detail}")


def gen_internal_reset(
    directory: UserDirectory, user_id: str, now: Optional[datetime] = None
) -> InternalReset:
    """Generate a reset PIN for a known user.

    Args:
        directory (UserDirectory): Directory used to resolve the user.
        user_id (str): ID of the user to reset.
        now (Optional[datetime]): Creation time. Defaults to the current UTC time.

    Returns:
        InternalReset: A record expiring :data:`INTERNAL_RESET_TTL` after ``now``.

    Raises:
        UserLookupError: If the lookup raises or returns a status other than 200.
    """
    try:
        user, status = directory.user_by_id(user_id)
    except Exception as e:
        raise UserLookupError(user_id, cause=e) from e
    if status != 200:
        raise UserLookupError(user_id, status=status)

    now = now or datetime.now(timezone.utc)
    return InternalReset(
        pin=secrets.token_urlsafe(32),
        username=user.name,
        user_id=user_id,
        expiry=now + INTERNAL_RESET_TTL,
    )


def gen_reset_link(url_base: Optional[str], pin: str) -> str:
    """Build the user-facing link for a reset PIN.

    Raises:
        ConfigurationError: If no URL base is configured.

    Example:
        >>> gen_reset_link("https://host/app", "abc123")
        'https://host/app/reset?pin=abc123'
    """
    if not url_base:
        raise ConfigurationError(
            f"Reset links are disabled as no URL base is set. "
            f"Set url_base in the [{CONFIG_SECTION}] config section or PWR_URL_BASE."
        )
    if url_base.endswith("/"):
        url_base = url_base[:-1]
    return f"{url_base}/reset?pin={quote(pin, safe='')}"


def send_internal_reset(notifier: Notifier, record: InternalReset, host_context: Any = None) -> None:
    """Construct and deliver the notification for an internal reset.

    Uses the same notification contract as the file-driven path, flagged as the
    admin path. Construction and delivery errors propagate to the caller.
    """
    message = notifier.construct_reset(record, host_context, True)
    notifier.send_by_id(message, record.user_id)
