"""
Tests for the daemon module.

Tests interval parsing, PID file management, scheduler initialization,
signal-driven cancellation, and run execution.
"""

import os
import signal
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from crm_reconcile.daemon import (
    DEFAULT_PID_FILE,
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonScheduler,
    PIDFileError,
    PIDFileManager,
    parse_interval,
)
from crm_reconcile.utils.paths import DEFAULT_CONFIG_DIR


class TestParseInterval:
    """Tests for interval parsing functionality."""

    def test_parse_interval_units(self):
        assert parse_interval("30s") == 30
        assert parse_interval("15m") == 900
        assert parse_interval("1h") == 3600
        assert parse_interval("2d") == 172800

    def test_parse_interval_plain_numbers(self):
        assert parse_interval(3600) == 3600
        assert parse_interval("60") == 60

    def test_parse_interval_case_and_whitespace(self):
        assert parse_interval(" 1H ") == 3600
        assert parse_interval("5 m") == 300

    @pytest.mark.parametrize("value", ["", "abc", "1w", "h", "1.5h", "-5m"])
    def test_parse_interval_invalid_format_raises_error(self, value):
        with pytest.raises(ValueError, match="Invalid interval format"):
            parse_interval(value)

    def test_parse_interval_zero_rejected(self):
        """A zero interval would spin; it is rejected."""
        with pytest.raises(ValueError, match="must be positive"):
            parse_interval(0)
        with pytest.raises(ValueError, match="must be positive"):
            parse_interval("0s")

    def test_parse_interval_invalid_type_raises_error(self):
        with pytest.raises(ValueError, match="Invalid interval type"):
            parse_interval(True)
        with pytest.raises(ValueError, match="Invalid interval type"):
            parse_interval(1.5)


class TestPIDFileManager:
    """Tests for PID file management."""

    def test_pid_manager_default_path(self):
        assert PIDFileManager().pid_file == DEFAULT_PID_FILE
        assert DEFAULT_PID_FILE.parent == DEFAULT_CONFIG_DIR

    def test_pid_manager_create_and_read(self, tmp_path):
        manager = PIDFileManager(tmp_path / "nested" / "daemon.pid")

        manager.create()

        assert manager.read() == os.getpid()

    def test_pid_manager_read_nonexistent_returns_none(self, tmp_path):
        assert PIDFileManager(tmp_path / "daemon.pid").read() is None

    def test_pid_manager_read_invalid_pid_raises_error(self, tmp_path):
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text("not-a-pid")

        with pytest.raises(PIDFileError, match="Invalid PID"):
            PIDFileManager(pid_file).read()

    def test_pid_manager_remove(self, tmp_path):
        pid_file = tmp_path / "daemon.pid"
        manager = PIDFileManager(pid_file)
        manager.create()

        manager.remove()
        manager.remove()

        assert not pid_file.exists()

    def test_pid_manager_create_detects_already_running(self, tmp_path):
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text(str(os.getpid()))

        with pytest.raises(DaemonAlreadyRunningError):
            PIDFileManager(pid_file).create()

    def test_pid_manager_create_removes_stale_pid_file(self, tmp_path):
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text("999999")
        manager = PIDFileManager(pid_file)

        with patch.object(PIDFileManager, "is_process_running", return_value=False):
            manager.create()

        assert manager.read() == os.getpid()

    def test_is_process_running(self):
        assert PIDFileManager.is_process_running(os.getpid())
        with patch("os.kill", side_effect=ProcessLookupError):
            assert not PIDFileManager.is_process_running(12345)
        with patch("os.kill", side_effect=PermissionError):
            assert PIDFileManager.is_process_running(1)


class TestDaemonScheduler:
    """Tests for DaemonScheduler initialization and control."""

    def test_scheduler_defaults(self):
        scheduler = DaemonScheduler()

        assert scheduler.interval == 3600
        assert scheduler.run_immediately
        assert not scheduler.is_running()
        assert not scheduler.shutdown_requested

    def test_scheduler_rejects_zero_interval(self):
        with pytest.raises(ValueError):
            DaemonScheduler(interval=0)

    def test_scheduler_custom_pid_file(self, tmp_path):
        scheduler = DaemonScheduler(pid_file=tmp_path / "d.pid")
        assert scheduler.pid_file == tmp_path / "d.pid"

    def test_stop_sets_cancel_event(self):
        scheduler = DaemonScheduler()

        scheduler.stop()

        assert scheduler.cancel_event.is_set()
        assert scheduler.shutdown_requested


class TestDaemonSchedulerSignalHandling:
    """Tests for signal-driven cancellation."""

    @pytest.mark.parametrize("signum", [signal.SIGTERM, signal.SIGINT])
    def test_signal_handler_sets_cancel_event(self, signum):
        scheduler = DaemonScheduler()

        scheduler._signal_handler(signum, None)

        assert scheduler.cancel_event.is_set()

    def test_setup_and_restore_signal_handlers(self):
        original = signal.getsignal(signal.SIGTERM)
        scheduler = DaemonScheduler()

        scheduler._setup_signal_handlers()
        try:
            assert signal.getsignal(signal.SIGTERM) == scheduler._signal_handler
        finally:
            scheduler._restore_signal_handlers()

        assert signal.getsignal(signal.SIGTERM) == original

    def test_callback_receives_cancel_event(self):
        """An in-flight run sees the same event a signal sets."""
        scheduler = DaemonScheduler()
        seen = []

        def callback(cancel_event):
            scheduler._signal_handler(signal.SIGTERM, None)
            seen.append(cancel_event.is_set())
            return True

        scheduler.set_run_callback(callback)
        scheduler._run_once()

        assert seen == [True]


class TestDaemonSchedulerRunExecution:
    """Tests for _run_once() statistics."""

    def test_run_without_callback(self):
        scheduler = DaemonScheduler()

        assert scheduler._run_once() is False
        assert scheduler.stats.run_count == 0

    def test_run_with_successful_callback(self):
        scheduler = DaemonScheduler()
        callback = MagicMock(return_value=True)
        scheduler.set_run_callback(callback)

        assert scheduler._run_once() is True
        assert scheduler.stats.run_count == 1
        assert scheduler.stats.run_success_count == 1
        assert scheduler.stats.last_run_success
        callback.assert_called_once_with(scheduler.cancel_event)

    def test_run_with_failed_callback(self):
        scheduler = DaemonScheduler()
        scheduler.set_run_callback(MagicMock(return_value=False))

        assert scheduler._run_once() is False
        assert scheduler.stats.run_error_count == 1

    def test_run_with_exception_is_counted_not_raised(self):
        scheduler = DaemonScheduler()
        scheduler.set_run_callback(MagicMock(side_effect=RuntimeError("boom")))

        assert scheduler._run_once() is False
        assert scheduler.stats.run_error_count == 1
        assert scheduler.stats.last_error == "boom"


class TestDaemonSchedulerSleep:
    """Tests for interruptible sleeping."""

    def test_sleep_interruptible_completes(self):
        scheduler = DaemonScheduler()

        start = time.time()
        assert scheduler._sleep_interruptible(0.1) is True
        assert time.time() - start >= 0.1

    def test_sleep_interruptible_stops_on_shutdown(self):
        scheduler = DaemonScheduler()
        timer = threading.Timer(0.1, scheduler.stop)
        timer.start()

        start = time.time()
        try:
            assert scheduler._sleep_interruptible(30) is False
        finally:
            timer.cancel()

        assert time.time() - start < 5


class TestDaemonSchedulerRun:
    """Tests for the run loop."""

    def test_run_once_then_stop(self, tmp_path):
        pid_file = tmp_path / "daemon.pid"
        scheduler = DaemonScheduler(interval=60, pid_file=pid_file)

        def callback(cancel_event):
            assert pid_file.exists()
            scheduler.stop()
            return True

        scheduler.set_run_callback(callback)
        scheduler.run()

        assert scheduler.stats.run_count == 1
        assert not pid_file.exists()
        assert not scheduler.is_running()

    def test_run_refuses_second_daemon(self, tmp_path):
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text(str(os.getpid()))
        scheduler = DaemonScheduler(pid_file=pid_file)

        with pytest.raises(DaemonAlreadyRunningError):
            scheduler.run()


class TestDaemonSchedulerClassMethods:
    """Tests for PID lookups used by 'daemon status' and 'daemon stop'."""

    def test_get_running_pid_no_file(self, tmp_path):
        assert DaemonScheduler.get_running_pid(tmp_path / "daemon.pid") is None

    def test_get_running_pid_stale_file(self, tmp_path):
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text("999999")

        with patch.object(PIDFileManager, "is_process_running", return_value=False):
            assert DaemonScheduler.get_running_pid(pid_file) is None

    def test_stop_running_daemon_no_daemon(self, tmp_path):
        assert not DaemonScheduler.stop_running_daemon(tmp_path / "daemon.pid")

    def test_stop_running_daemon_sends_signal(self, tmp_path):
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text("4242")

        with patch.object(
            PIDFileManager, "is_process_running", return_value=True
        ), patch("os.kill") as mock_kill:
            assert DaemonScheduler.stop_running_daemon(pid_file)

        mock_kill.assert_called_once_with(4242, signal.SIGTERM)


class TestDaemonErrors:
    """Tests for the daemon exception hierarchy."""

    def test_error_hierarchy(self):
        assert issubclass(PIDFileError, DaemonError)
        assert issubclass(DaemonAlreadyRunningError, DaemonError)
        assert issubclass(DaemonError, Exception)
