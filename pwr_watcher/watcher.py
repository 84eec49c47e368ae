"""
Directory watcher for password reset files, implemented with watchdog.

Responsibility:
    Bind a watchdog observer to exactly one directory and forward its events to
    a :class:`ResetEventProcessor` running on its own thread. No filtering or
    parsing happens here.

Design:
    - **Event-Driven**: The observer thread pushes every event onto a bounded
      queue; the processor thread blocks on that queue. No polling.
    - **Error Stream**: Deletion of the watched directory and death of the
      observer thread are pushed onto the same queue as errors.
    - **Lifecycle**: :meth:`PasswordResetWatcher.run` starts, blocks on a
      shutdown event, then releases the observer exactly once.

Key Invariants:
    - The watcher never modifies the watched directory (read-only).
    - A failed start is logged, not raised; the feature is disabled for this run.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from pwr_watcher.processor import ERROR, EVENT, ResetEventProcessor, StreamItem

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["ResetFileEventHandler", "PasswordResetWatcher", "MAX_QUEUED_EVENTS"]

MAX_QUEUED_EVENTS = 1000
HEALTH_CHECK_INTERVAL = 10.0
STOP_TIMEOUT = 5.0

MSG_FAILED_START = "Failed to start daemon PWR: %s"


class ResetFileEventHandler(FileSystemEventHandler):
    """Forward watchdog events onto the processor's stream.

    Attributes:
        watch_dir (Path): The directory being watched.
        dropped_events (int): Events discarded because the stream was full.
    """

    def __init__(
        self,
        watch_dir: Path,
        stream: "queue.Queue[StreamItem]",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.watch_dir = watch_dir
        self.logger = logger or logging.getLogger(__name__)
        self.dropped_events = 0
        self._stream = stream
        self._closed = False
        self._last_dropped_log_time = 0.0

    def on_any_event(self, event: FileSystemEvent) -> None:
        """Forward every event; the processor decides what is relevant."""
        self._push((EVENT, event))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory and self._is_watch_dir(event.src_path):
            self.logger.warning(f"Watch directory deleted: {self.watch_dir}")
            self.report_error(FileNotFoundError(f"Watch directory deleted: {self.watch_dir}"))

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory and self._is_watch_dir(event.src_path):
            self.logger.warning(f"Watch directory moved: {event.src_path} -> {event.dest_path}")
            self.report_error(FileNotFoundError(f"Watch directory moved away: {self.watch_dir}"))

    def report_error(self, error: Exception) -> None:
        """Push a subscription error onto the stream."""
        self._push((ERROR, error))

    def close(self) -> None:
        """Stop forwarding. Events arriving afterwards are discarded."""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def _is_watch_dir(self, src_path: Union[str, bytes]) -> bool:
        try:
            return Path(os.fsdecode(src_path)).absolute() == self.watch_dir
        except (OSError, RuntimeError):
            return False

    def _push(self, item: StreamItem) -> None:
        if self._closed:
            return
        try:
            self._stream.put_nowait(item)
        except queue.Full:
            self.dropped_events += 1
            now = time.monotonic()
            if now - self._last_dropped_log_time > 60.0:
                self.logger.warning(
                    f"Event queue full, dropping events for {self.watch_dir}. "
                    f"Total dropped: {self.dropped_events}"
                )
                self._last_dropped_log_time = now

    def __repr__(self) -> str:
        return f"<ResetFileEventHandler watch_dir={self.watch_dir}>"


class PasswordResetWatcher:
    """Own the observer and the processor thread for one directory.

    Attributes:
        path (Path): The absolute directory being watched.
        processor (ResetEventProcessor): Consumes the event stream.
        stream (queue.Queue[StreamItem]): Events and errors handed to the processor.
        handler (ResetFileEventHandler): The watchdog event handler.

    Example:
        >>> watcher = PasswordResetWatcher("/var/lib/identity/resets", processor)
        >>> stop_event = threading.Event()
        >>> watcher.run(stop_event)  # blocks until stop_event is set
    """

    def __init__(
        self,
        path: Union[str, Path],
        processor: ResetEventProcessor,
        observer_factory: Callable[[], Any] = Observer,
        logger: Optional[logging.Logger] = None,
        max_queued_events: int = MAX_QUEUED_EVENTS,
    ) -> None:
        # Security: Use absolute() instead of resolve() to avoid following symlinks
        self.path = Path(path).absolute()
        self.processor = processor
        self.logger = logger or logging.getLogger(__name__)
        self.stream: "queue.Queue[StreamItem]" = queue.Queue(maxsize=max_queued_events)
        self.handler = ResetFileEventHandler(self.path, self.stream, logger=self.logger)

        self._observer_factory = observer_factory
        self._observer: Optional[Any] = None
        self._processor_thread: Optional[threading.Thread] = None
        self._health_check_timer: Optional[threading.Timer] = None
        self._observer_death_reported = False
        self._lock = threading.Lock()
        self._stopping = False
        self._stopped = False

    @property
    def processor_running(self) -> bool:
        return self._processor_thread is not None and self._processor_thread.is_alive()

    def start(self) -> bool:
        """Start watching the directory.

        Startup sequence:
            1. Verify the directory exists.
            2. Create the observer.
            3. Launch the processor thread.
            4. Register the directory with the observer and start it. A failure
               here is logged; the processor thread idles until shutdown.

        Returns:
            bool: False if startup aborted in step 1 or 2 (no processor thread),
            True otherwise.
        """
        self.logger.info(f"Starting daemon PWR on {self.path}")
        try:
            exists = self.path.exists()
        except OSError:
            exists = False
        if not exists:
            self.logger.error(MSG_FAILED_START, f"path not found: {self.path}")
            return False

        try:
            observer = self._observer_factory()
        except Exception as e:
            self.logger.error(MSG_FAILED_START, e)
            return False
        self._observer = observer

        self._processor_thread = threading.Thread(
            target=self._run_processor, name="PasswordResetProcessor", daemon=True
        )
        self._processor_thread.start()

        try:
            # recursive=False: reset files live directly in the watched directory
            observer.schedule(self.handler, str(self.path), recursive=False)
            observer.start()
        except Exception as e:
            self.logger.error(MSG_FAILED_START, e)
            return True

        self.logger.info(f"Observer started ({type(observer).__name__}), watching {self.path}")
        self._schedule_health_check()
        return True

    def stop(self) -> None:
        """Release the observer and stop the processor thread.

        Safe to call more than once; only the first call has an effect.
        """
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            self._stopping = True

        if self._health_check_timer:
            self._health_check_timer.cancel()
            self._health_check_timer = None

        if self._observer is not None:
            try:
                if self._observer.is_alive():
                    self._observer.stop()
                    self._observer.join(timeout=STOP_TIMEOUT)
                    if self._observer.is_alive():
                        self.logger.warning("Observer thread did not terminate within timeout.")
            except Exception as e:
                self.logger.error(f"Error stopping observer: {e}")

        self.handler.close()
        if self.processor_running:
            try:
                self.stream.put(None, timeout=STOP_TIMEOUT)
            except queue.Full:
                self.logger.warning("Event stream full, could not close it; processor is stuck.")
            self._processor_thread.join(timeout=STOP_TIMEOUT)  # type: ignore[union-attr]
            if self.processor_running:
                self.logger.warning("Password reset processor did not terminate within timeout.")
        self.logger.info("Watcher stopped.")

    def run(self, stop_event: threading.Event) -> None:
        """Start, block until ``stop_event`` is set, then stop.

        Returns immediately if startup fails.

        Args:
            stop_event (threading.Event): The shutdown signal.
        """
        if not self.start():
            return
        try:
            stop_event.wait()
        finally:
            self.stop()

    def _run_processor(self) -> None:
        try:
            self.processor.run(self.stream)
        finally:
            # Nobody reads the stream any more
            self.handler.close()

    def check_health(self) -> None:
        """Report a dead observer onto the error stream (once)."""
        if self._stopping or self._observer is None or self._observer_death_reported:
            return
        try:
            alive = self._observer.is_alive()
        except Exception as e:
            self.logger.debug(f"Error checking observer state: {e}")
            return
        if not alive:
            self._observer_death_reported = True
            self.logger.critical("Watchdog observer found dead.")
            self.handler.report_error(RuntimeError(f"Observer for {self.path} stopped unexpectedly"))

    def _schedule_health_check(self) -> None:
        if self._stopping:
            return
        self._health_check_timer = threading.Timer(HEALTH_CHECK_INTERVAL, self._run_health_check)
        self._health_check_timer.daemon = True
        self._health_check_timer.start()

    def _run_health_check(self) -> None:
        if self._stopping:
            return
        try:
            self.check_health()
        except Exception as e:
            self.logger.error(f"Health check failed: {e}")
        finally:
            self._schedule_health_check()

    def __repr__(self) -> str:
        alive = self._observer is not None and self._observer.is_alive()
        return f"<PasswordResetWatcher path={self.path} observer_alive={alive}>"
