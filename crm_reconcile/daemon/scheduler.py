"""
Daemon scheduler for periodic reconciliation runs.

DaemonScheduler runs one reconciliation per interval in the foreground.
SIGTERM or SIGINT sets the same cancel event the running engine polls,
so a stop request ends the current run at its next batch boundary. A
PID file guards against a second scheduler on the same config.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from crm_reconcile.utils.paths import DEFAULT_CONFIG_DIR, DEFAULT_PID_FILENAME

logger = logging.getLogger(__name__)


DEFAULT_PID_FILE = DEFAULT_CONFIG_DIR / DEFAULT_PID_FILENAME

# Seconds between shutdown checks while waiting for the next run
WAKE_INTERVAL = 1.0

# Runs until the next run; receives the cancel event, returns success
RunCallback = Callable[[threading.Event], bool]


class DaemonError(Exception):
    """Base exception for daemon-related errors."""

    pass


class PIDFileError(DaemonError):
    """Raised when PID file operations fail."""

    pass


class DaemonAlreadyRunningError(DaemonError):
    """Raised when attempting to start a daemon that is already running."""

    pass


@dataclass
class DaemonStats:
    """Uptime and run counters of the daemon."""

    started_at: datetime = field(default_factory=datetime.now)
    run_count: int = 0
    run_success_count: int = 0
    run_error_count: int = 0
    last_run_at: datetime | None = None
    last_run_success: bool = False
    last_error: str | None = None


class PIDFileManager:
    """
    Manages the daemon's PID file.

    Prevents two daemons from reconciling the same store at once.
    """

    def __init__(self, pid_file: Path | None = None):
        self.pid_file = pid_file or DEFAULT_PID_FILE

    def create(self) -> None:
        """
        Claim the PID file for this process.

        The file is created with O_EXCL, so of two daemons started at the
        same moment exactly one wins. A file left by a dead process is
        replaced once.

        Raises:
            PIDFileError: If the PID file cannot be created.
            DaemonAlreadyRunningError: If a daemon is already running.
        """
        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PIDFileError(f"Failed to create PID directory: {e}") from e

        for _attempt in range(2):
            try:
                fd = os.open(self.pid_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                existing_pid = self.read()
                if existing_pid is not None and self.is_process_running(existing_pid):
                    raise DaemonAlreadyRunningError(
                        f"Daemon already running with PID {existing_pid}"
                    ) from None
                logger.warning(
                    f"Removing stale PID file (process {existing_pid} not running)"
                )
                self.remove()
                continue
            except OSError as e:
                raise PIDFileError(
                    f"Failed to create PID file {self.pid_file}: {e}"
                ) from e

            pid = os.getpid()
            with os.fdopen(fd, "w") as handle:
                handle.write(str(pid))
            logger.debug(f"Created PID file: {self.pid_file} (PID: {pid})")
            return

        raise PIDFileError(f"Could not claim PID file {self.pid_file}")

    def read(self) -> int | None:
        """
        Read the PID from the PID file.

        Returns:
            The stored PID, or None if the file doesn't exist.

        Raises:
            PIDFileError: If the file exists but cannot be read or parsed.
        """
        if not self.pid_file.exists():
            return None

        try:
            content = self.pid_file.read_text().strip()
        except OSError as e:
            raise PIDFileError(f"Failed to read PID file {self.pid_file}: {e}") from e
        try:
            return int(content)
        except ValueError as e:
            raise PIDFileError(f"Invalid PID in file {self.pid_file}: {content}") from e

    def remove(self) -> None:
        """Remove the PID file if present."""
        if not self.pid_file.exists():
            return

        try:
            self.pid_file.unlink()
            logger.debug(f"Removed PID file: {self.pid_file}")
        except OSError as e:
            raise PIDFileError(f"Failed to remove PID file {self.pid_file}: {e}") from e

    @staticmethod
    def is_process_running(pid: int) -> bool:
        try:
            # Signal 0 only checks that the process exists
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            return True


class DaemonScheduler:
    """
    Runs a reconciliation callback every ``interval`` seconds.

    A shutdown signal sets the cancel event handed to the callback, so an
    in-flight run stops cooperatively between pages or write batches
    instead of being killed mid-batch.

    Usage:
        scheduler = DaemonScheduler(interval=3600)
        scheduler.set_run_callback(lambda cancel: run_once(cancel))
        scheduler.run()  # blocks until SIGTERM/SIGINT

    Attributes:
        interval: Seconds between the start of consecutive waits
        stats: Daemon statistics
        cancel_event: Set once shutdown is requested
    """

    def __init__(
        self,
        interval: int = 3600,
        pid_file: Path | None = None,
        run_immediately: bool = True,
    ):
        """
        Initialize the daemon scheduler.

        Args:
            interval: Run interval in seconds (default: 3600 = 1 hour)
            pid_file: Path to PID file. Defaults to ~/.crm-reconcile/daemon.pid
            run_immediately: Run once on start before waiting for the interval
        """
        if interval < 1:
            raise ValueError("interval must be at least 1 second")
        self.interval = interval
        self.run_immediately = run_immediately
        self._pid_manager = PIDFileManager(pid_file)
        self._run_callback: RunCallback | None = None
        self._running = False
        self.cancel_event = threading.Event()
        self._original_handlers: dict[int, object] = {}
        self.stats = DaemonStats()

    @property
    def pid_file(self) -> Path:
        return self._pid_manager.pid_file

    @property
    def shutdown_requested(self) -> bool:
        return self.cancel_event.is_set()

    def set_run_callback(self, callback: RunCallback) -> None:
        """Set the function executed for each scheduled run."""
        self._run_callback = callback

    def _setup_signal_handlers(self) -> None:
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._original_handlers[signum] = signal.signal(
                signum, self._signal_handler
            )
        logger.debug("Signal handlers installed for SIGTERM and SIGINT")

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)  # type: ignore[arg-type]
        self._original_handlers.clear()
        logger.debug("Signal handlers restored")

    def _signal_handler(self, signum: int, frame: object) -> None:
        signal_name = signal.Signals(signum).name
        logger.info(f"Received {signal_name}, cancelling and shutting down...")
        self.cancel_event.set()

    def _run_once(self) -> bool:
        """
        Execute the run callback and update statistics.

        Exceptions from the callback are logged and counted, never
        propagated, so one failed run does not stop the daemon.
        """
        if self._run_callback is None:
            logger.warning("No run callback configured, skipping run")
            return False

        self.stats.run_count += 1
        self.stats.last_run_at = datetime.now()

        try:
            logger.info(f"Starting scheduled run (cycle #{self.stats.run_count})")
            success = self._run_callback(self.cancel_event)
        except Exception as e:
            self.stats.run_error_count += 1
            self.stats.last_run_success = False
            self.stats.last_error = str(e)
            logger.exception(f"Scheduled run failed with exception: {e}")
            return False

        if success:
            self.stats.run_success_count += 1
            self.stats.last_run_success = True
            self.stats.last_error = None
            logger.info("Scheduled run completed")
        else:
            self.stats.run_error_count += 1
            self.stats.last_run_success = False
            logger.warning("Scheduled run completed with errors")
        return success

    def _sleep_interruptible(self, seconds: float) -> bool:
        """
        Wait for ``seconds`` of wall-clock time or until shutdown.

        Wall-clock time keeps runs on schedule after a system suspend.

        Returns:
            True if the wait completed, False if shutdown was requested.
        """
        end_time = time.time() + seconds
        while not self.cancel_event.is_set():
            remaining = end_time - time.time()
            if remaining <= 0:
                break
            self.cancel_event.wait(min(WAKE_INTERVAL, remaining))
        return not self.cancel_event.is_set()

    def run(self) -> None:
        """
        Run the scheduler until a shutdown signal arrives.

        Raises:
            DaemonAlreadyRunningError: If another daemon is already running.
            PIDFileError: If the PID file cannot be written.
        """
        logger.info(f"Starting daemon scheduler (interval: {self.interval}s)")

        self._pid_manager.create()
        logger.info(f"Daemon started (PID: {os.getpid()}, PID file: {self.pid_file})")

        self._setup_signal_handlers()
        self._running = True
        self.cancel_event.clear()
        self.stats = DaemonStats()

        try:
            if self.run_immediately:
                self._run_once()

            while not self.shutdown_requested:
                logger.debug(f"Sleeping for {self.interval} seconds until next run")
                if not self._sleep_interruptible(self.interval):
                    break
                self._run_once()
        finally:
            self._running = False
            self._restore_signal_handlers()
            self._pid_manager.remove()
            logger.info("Daemon scheduler stopped")

    def stop(self) -> None:
        """Request shutdown; also cancels an in-flight run."""
        logger.info("Stop requested")
        self.cancel_event.set()

    def is_running(self) -> bool:
        return self._running

    @classmethod
    def get_running_pid(cls, pid_file: Path | None = None) -> int | None:
        """PID of the running daemon, or None."""
        manager = PIDFileManager(pid_file)
        pid = manager.read()
        if pid is None:
            return None
        if manager.is_process_running(pid):
            return pid
        return None

    @classmethod
    def stop_running_daemon(cls, pid_file: Path | None = None) -> bool:
        """
        Send SIGTERM to the running daemon.

        Returns:
            True if the signal was sent, False if no daemon is running.
        """
        pid = cls.get_running_pid(pid_file)

        if pid is None:
            logger.info("No running daemon found")
            return False

        try:
            os.kill(pid, signal.SIGTERM)
            logger.info(f"Sent SIGTERM to daemon (PID: {pid})")
            return True
        except ProcessLookupError:
            logger.warning(f"Daemon process {pid} not found")
            return False
        except PermissionError:
            logger.error(f"Permission denied sending signal to PID {pid}")
            return False


__all__ = [
    "DaemonScheduler",
    "DaemonStats",
    "DaemonError",
    "PIDFileError",
    "DaemonAlreadyRunningError",
    "PIDFileManager",
    "DEFAULT_PID_FILE",
]
