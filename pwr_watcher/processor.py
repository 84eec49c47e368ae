"""
Password reset event processing.

Responsibility:
    Turn raw filesystem events into delivered reset notifications. This is the
    only place business logic lives: the watcher merely forwards events.

Pipeline (per event):
    1. **Filter**: only ``modified`` (write) events on files whose name contains
       ``passwordreset`` are considered. Everything else is dropped silently.
    2. **Read**: the file is read (regular files only, at most 10 KB).
       A modified event whose (mtime, size) matches the last read of that path
       is an attribute change (chmod, chown, utime) and is dropped unread.
    3. **Decode**: the JSON is decoded into an :class:`ExternalReset`.
    4. **Validate**: expired records are dropped.
    5. **Resolve**: the user is looked up by name in the user directory.
    6. **Address**: users without a deliverable address are skipped quietly.
    7. **Dispatch**: the notification is constructed and sent.

Key Invariants:
    - Events are handled one at a time, in arrival order. A slow delivery delays
      the following events.
    - Every failure discards the current event only. The loop ends when the
      stream is closed.
    - Each failure class logs its own message.
    - Records are never modified, only read.
    - A file is delivered again only after its content changes.
"""

from __future__ import annotations

import logging
import os
import queue
import stat
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from watchdog.events import EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED, FileSystemEvent

from pwr_watcher.contracts import AddressBook, Notifier, UserDirectory
from pwr_watcher.records import ExternalReset, ResetDecodeError, decode_reset_file

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "ResetEventProcessor",
    "RESET_FILE_MARKER",
    "EVENT",
    "ERROR",
    "StreamItem",
]

RESET_FILE_MARKER = "passwordreset"
MAX_FILE_SIZE_BYTES = 10 * 1024  # 10 KB (Security: DoS prevention)

# Stream items are ("event", FileSystemEvent) or ("error", Exception); None closes the stream.
EVENT = "event"
ERROR = "error"
StreamItem = Optional[Tuple[str, Any]]

# Outcomes of process_event
IGNORED = "ignored"
UNCHANGED = "unchanged"
READ_FAILED = "read_failed"
DECODE_FAILED = "decode_failed"
EXPIRED = "expired"
LOOKUP_FAILED = "lookup_failed"
NO_ADDRESS = "no_address"
CONSTRUCT_FAILED = "construct_failed"
SEND_FAILED = "send_failed"
SENT = "sent"

OUTCOMES = (
    IGNORED,
    UNCHANGED,
    READ_FAILED,
    DECODE_FAILED,
    EXPIRED,
    LOOKUP_FAILED,
    NO_ADDRESS,
    CONSTRUCT_FAILED,
    SEND_FAILED,
    SENT,
)

# Log messages
MSG_DISABLED = "Password reset notifications are disabled, not processing reset files"
MSG_WATCH_ERROR = "Failed to start daemon PWR: %s"
MSG_FAILED_READING = "Failed reading reset file %s: %s"
MSG_FAILED_DECODING = "Failed decoding reset file %s: %s"
MSG_NEW_RESET = "New password reset for user \"%s\""
MSG_EXPIRED = "Password reset for user \"%s\" has already expired (%s), ignoring"
MSG_FAILED_GET_USER = "Failed to get user \"%s\" from the user directory: %s"
MSG_NO_ADDRESS = "User \"%s\" has no delivery address, skipping reset notification"
MSG_FAILED_CONSTRUCT = "Failed to construct password reset message for \"%s\": %s"
MSG_FAILED_SEND = "Failed to send password reset message to \"%s\" (%s): %s"
MSG_SENT = "Sent password reset message to \"%s\" (%s)"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResetEventProcessor:
    """Consume filesystem events and dispatch reset notifications.

    Attributes:
        directory (UserDirectory): Resolves usernames to user IDs.
        notifier (Notifier): Builds and delivers notifications.
        addresses (AddressBook): Resolves a user's delivery address.
        host_context (Any): Opaque host object handed to ``construct_reset``.
        enabled (bool): Feature gate. When False, :meth:`run` returns at once.
        logger (logging.Logger): Logger for every diagnostic.
    """

    def __init__(
        self,
        directory: UserDirectory,
        notifier: Notifier,
        addresses: AddressBook,
        host_context: Any = None,
        enabled: bool = True,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.directory = directory
        self.notifier = notifier
        self.addresses = addresses
        self.host_context = host_context
        self.enabled = enabled
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock or _utcnow
        # path -> (st_mtime_ns, st_size) of the last read
        self._signatures: Dict[str, Tuple[int, int]] = {}

        self._lock = threading.Lock()
        self._stats: Dict[str, int] = {outcome: 0 for outcome in OUTCOMES}
        self._stats["events_seen"] = 0
        self._stats["stream_errors"] = 0

    def run(self, stream: "queue.Queue[StreamItem]") -> None:
        """Process stream items until the stream is closed.

        Blocks on ``stream.get()`` between items; there is no polling.

        Args:
            stream (queue.Queue[StreamItem]): Events and errors from the watcher.
                A ``None`` item means the stream was closed.

        Returns:
            None
        """
        if not self.enabled:
            self.logger.info(MSG_DISABLED)
            return

        self.logger.debug("Password reset processor started")
        while True:
            item = stream.get()
            if item is None:
                self.logger.debug("Event stream closed, stopping password reset processor")
                return

            kind, payload = item
            if kind == ERROR:
                with self._lock:
                    self._stats["stream_errors"] += 1
                self.logger.error(MSG_WATCH_ERROR, payload)
                continue

            try:
                self.process_event(payload)
            except Exception as e:
                self.logger.error(f"Unexpected error processing event {payload!r}: {e}", exc_info=True)

    def process_event(self, event: FileSystemEvent) -> str:
        """Run one filesystem event through the pipeline.

        Args:
            event (FileSystemEvent): The watchdog event.

        Returns:
            str: The outcome label (e.g. ``"sent"``, ``"expired"``, ``"ignored"``).
        """
        if event.event_type in (EVENT_TYPE_DELETED, EVENT_TYPE_MOVED):
            self._forget(event)
        if not self.is_reset_write(event):
            return self._record(IGNORED)

        file_path = os.fsdecode(event.src_path)
        signature = self._signature(file_path)
        if signature is not None and self._signatures.get(file_path) == signature:
            self.logger.debug(f"Reset file {file_path} unchanged, ignoring attribute change")
            return self._record(UNCHANGED)

        with self._lock:
            self._stats["events_seen"] += 1

        data = self._read_file(file_path)
        if data is None:
            return self._record(READ_FAILED)
        if signature is not None:
            self._signatures[file_path] = signature

        try:
            record = decode_reset_file(data)
        except ResetDecodeError as e:
            self.logger.warning(MSG_FAILED_DECODING, file_path, e)
            return self._record(DECODE_FAILED)

        self.logger.info(MSG_NEW_RESET, record.username)
        if not record.is_actionable(self._clock()):
            self.logger.warning(MSG_EXPIRED, record.username, record.expiry.isoformat())
            return self._record(EXPIRED)

        return self._record(self.dispatch(record))

    @staticmethod
    def is_reset_write(event: FileSystemEvent) -> bool:
        """Return True for a write to a file whose name carries the reset marker."""
        if event.is_directory or event.event_type != EVENT_TYPE_MODIFIED:
            return False
        return RESET_FILE_MARKER in os.path.basename(os.fsdecode(event.src_path))

    def dispatch(self, record: ExternalReset) -> str:
        """Resolve the user behind a valid record and deliver its notification.

        Args:
            record (ExternalReset): An unexpired record.

        Returns:
            str: The outcome label.
        """
        try:
            user, status = self.directory.user_by_name(record.username)
        except Exception as e:
            self.logger.error(MSG_FAILED_GET_USER, record.username, e)
            return LOOKUP_FAILED
        if status not in (200, 204) or not user.id:
            self.logger.error(MSG_FAILED_GET_USER, record.username, f"status {status}")
            return LOOKUP_FAILED

        address = self.addresses.get_address_or_name(user.id)
        if not address:
            self.logger.debug(MSG_NO_ADDRESS, record.username)
            return NO_ADDRESS

        try:
            message = self.notifier.construct_reset(record, self.host_context, False)
        except Exception as e:
            self.logger.error(MSG_FAILED_CONSTRUCT, record.username, e)
            return CONSTRUCT_FAILED

        try:
            self.notifier.send_by_id(message, user.id)
        except Exception as e:
            self.logger.error(MSG_FAILED_SEND, record.username, address, e)
            return SEND_FAILED

        self.logger.info(MSG_SENT, record.username, address)
        return SENT

    @staticmethod
    def _signature(file_path: str) -> Optional[Tuple[int, int]]:
        try:
            file_stat = os.lstat(file_path)
        except OSError:
            return None
        return file_stat.st_mtime_ns, file_stat.st_size

    def _forget(self, event: FileSystemEvent) -> None:
        """Drop the remembered signature of a deleted or moved file."""
        self._signatures.pop(os.fsdecode(event.src_path), None)
        dest_path = getattr(event, "dest_path", "")
        if dest_path:
            self._signatures.pop(os.fsdecode(dest_path), None)

    def _read_file(self, file_path: str) -> Optional[bytes]:
        """Read a reset file, returning None (after logging) if it cannot be read.

        Symlinks and non-regular files are rejected without opening them.
        """
        path = Path(file_path)
        try:
            # lstat so that symlinks are seen as such and never followed
            file_stat = path.lstat()
            if not stat.S_ISREG(file_stat.st_mode):
                self.logger.warning(MSG_FAILED_READING, file_path, "not a regular file")
                return None
            with path.open("rb") as f:
                data = f.read(MAX_FILE_SIZE_BYTES + 1)
        except OSError as e:
            self.logger.warning(MSG_FAILED_READING, file_path, e)
            return None

        if len(data) > MAX_FILE_SIZE_BYTES:
            self.logger.warning(
                MSG_FAILED_READING, file_path, f"file is larger than {MAX_FILE_SIZE_BYTES} bytes"
            )
            return None
        return data

    def _record(self, outcome: str) -> str:
        with self._lock:
            self._stats[outcome] += 1
        return outcome

    def get_statistics(self) -> Dict[str, int]:
        """Return a copy of the per-outcome counters."""
        with self._lock:
            return dict(self._stats)

    def __repr__(self) -> str:
        return f"<ResetEventProcessor enabled={self.enabled}>"
