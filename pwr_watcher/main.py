"""Main entry point for pwr-watcher.

This module handles the command-line interface (CLI), configuration loading,
logging setup, and the blocking watcher lifecycle.

Key Responsibilities:
    - CLI Argument Parsing: Handles --watch-directory, --url-base, --testing, etc.
    - Signal Handling: Registers handlers for SIGINT/SIGTERM to ensure graceful shutdown.
    - Logging: Configures logging to stdout with optional rotating file output (10MB).
    - Host Wiring: Builds the collaborators (mock in testing mode, otherwise from
      the configured host factory) and hands them to the processor.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from types import FrameType
from typing import List, Optional

from pwr_watcher import __version__
from pwr_watcher.config import ConfigurationError, load_config
from pwr_watcher.contracts import Host, load_host, mock_host
from pwr_watcher.processor import ResetEventProcessor
from pwr_watcher.watcher import PasswordResetWatcher

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stdout) and optional file logging with rotation.

    Logging Practices:
        - ``INFO``: Normal operations (startup, new resets, sent notifications).
        - ``WARNING``: Discarded events (unreadable, malformed or expired files).
        - ``ERROR``: Failed lookups, failed deliveries, startup failures.
        - ``DEBUG``: Detailed diagnostics (skipped users, stream lifecycle).

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO").
        log_file (Optional[str]): Optional path to a log file.

    Raises:
        ValueError: If the provided log_level is not a valid logging level.
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers: List[logging.Handler] = []
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            # Rotate at 10MB, keep 5 backups
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except Exception as e:
            # Logging isn't set up yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Watch a directory for password reset files and notify users."
    )
    parser.add_argument(
        "--watch-directory", type=str, default=None,
        help="Directory the identity service writes password reset files into.",
    )
    parser.add_argument(
        "--url-base", type=str, default=None, help="Base URL used to build reset links."
    )
    parser.add_argument(
        "--disable-notifications", action="store_true",
        help="Do not send reset notifications.",
    )
    parser.add_argument(
        "--testing", action="store_const", const=True, default=None,
        help="Run with in-memory collaborators that only know user 'demo'.",
    )
    parser.add_argument(
        "--host-factory", type=str, default=None,
        help="'module:callable' returning the host collaborators.",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging (overrides --log-level)."
    )
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level", type=str, default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Execute the main application logic.

    Parse command-line arguments, load configuration, set up logging, and run
    the watcher until SIGINT/SIGTERM.

    Raises:
        SystemExit: If configuration is invalid or no collaborators can be built.

    Example:
        $ pwr-watcher --watch-directory /var/lib/identity/resets --testing
    """
    args = build_parser().parse_args(argv)

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stdout)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        handlers=[bootstrap_handler],
        force=True,
    )

    try:
        config = load_config(vars(args))
        logger.debug(f"Configuration loaded: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.exit(f"Configuration Error: {e}")

    logger.info(f"Starting pwr-watcher v{__version__} (PID: {os.getpid()})...")

    if not config.watch_directory:
        logger.warning("No watch directory configured, password reset watcher disabled.")
        return
    if not config.url_base:
        logger.info("No URL base configured, reset links are disabled.")

    host: Host
    if config.testing:
        logger.info("Testing mode: using in-memory collaborators.")
        host = mock_host()
    elif config.host_factory:
        try:
            host = load_host(config.host_factory, config)
        except ConfigurationError as e:
            sys.exit(f"Configuration Error: {e}")
    else:
        sys.exit("Configuration Error: no host factory configured (use --host-factory or --testing)")

    processor = ResetEventProcessor(
        host.directory,
        host.notifier,
        host.addresses,
        host_context=host.context,
        enabled=config.notifications_enabled,
    )
    watcher = PasswordResetWatcher(config.watch_directory, processor)

    stop_event = threading.Event()

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        sig_name = signal.Signals(sig).name
        logger.info(f"Received signal {sig_name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        watcher.run(stop_event)
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, stopping...")
        watcher.stop()
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        logger.info(f"Processor statistics: {processor.get_statistics()}")


if __name__ == "__main__":
    main()
