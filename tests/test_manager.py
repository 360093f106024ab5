"""Tests for watchdog process management (spawn, stop, status)."""

import signal
import subprocess
import sys
from unittest.mock import MagicMock, patch

import pytest

from bwsr.daemon.manager import DaemonManager
from bwsr.errors import BootstrapError


@pytest.fixture
def manager(settings):
    return DaemonManager(settings)


class TestSpawn:

    def test_spawns_detached_watchdog(self, manager, settings):
        process = MagicMock(pid=4242)
        with patch("bwsr.daemon.manager.subprocess.Popen", return_value=process) as popen:
            pid = manager.spawn()

        assert pid == 4242
        cmd = popen.call_args.args[0]
        assert cmd[:3] == [sys.executable, "-m", "bwsr.daemon.server"]
        assert cmd[-2:] == ["--home", str(settings.paths.root)]
        kwargs = popen.call_args.kwargs
        assert kwargs["start_new_session"] is True
        assert kwargs["stdin"] is subprocess.DEVNULL
        assert settings.paths.pid_file.read_text() == "4242"

    def test_writes_log_banner(self, manager, settings):
        with patch("bwsr.daemon.manager.subprocess.Popen", return_value=MagicMock(pid=1)):
            manager.spawn()

        log = settings.paths.log_file.read_text()
        assert "Starting watchdog at" in log
        assert "bwsr.daemon.server" in log

    def test_spawn_failure(self, manager):
        with patch("bwsr.daemon.manager.subprocess.Popen", side_effect=OSError("no python")):
            with pytest.raises(BootstrapError, match="no python"):
                manager.spawn()

    def test_clears_stale_pid(self, manager, settings):
        settings.paths.root.mkdir(parents=True, exist_ok=True)
        settings.paths.pid_file.write_text("999999")

        with patch.object(manager, "_is_process_running", return_value=False), \
             patch("bwsr.daemon.manager.subprocess.Popen", return_value=MagicMock(pid=77)):
            manager.spawn()

        assert settings.paths.pid_file.read_text() == "77"


class TestStop:

    def test_no_pid_file(self, manager):
        result = manager.stop()
        assert result["success"] is False

    def test_stale_pid_file(self, manager, settings):
        settings.paths.pid_file.write_text("999999")

        with patch.object(manager, "_is_process_running", return_value=False):
            result = manager.stop()

        assert result["success"] is True
        assert "stale" in result["message"]
        assert not settings.paths.pid_file.exists()

    def test_graceful_stop(self, manager, settings):
        settings.paths.pid_file.write_text("4242")

        with patch.object(manager, "_is_process_running", side_effect=[True, True, False]), \
             patch("bwsr.daemon.manager.os.kill") as kill, \
             patch("bwsr.daemon.manager.time.sleep"):
            result = manager.stop()

        kill.assert_called_once_with(4242, signal.SIGTERM)
        assert result == {"success": True, "message": "Watchdog stopped gracefully"}
        assert not settings.paths.pid_file.exists()

    def test_force_kill(self, manager, settings):
        settings.paths.pid_file.write_text("4242")

        with patch.object(manager, "_is_process_running", return_value=True), \
             patch("bwsr.daemon.manager.os.kill") as kill, \
             patch("bwsr.daemon.manager.time.sleep"):
            result = manager.stop()

        assert kill.call_args_list[-1].args == (4242, signal.SIGKILL)
        assert "SIGKILL" in result["message"]
        assert result["success"] is True

    def test_force_kill_removes_leftover_socket(self, manager, settings):
        settings.paths.ensure_directories()
        settings.paths.pid_file.write_text("4242")
        settings.paths.watchdog_socket.touch()

        with patch.object(manager, "_is_process_running", return_value=True), \
             patch("bwsr.daemon.manager.os.kill"), \
             patch("bwsr.daemon.manager.time.sleep"):
            result = manager.stop()

        assert "leftover socket" in result["message"]
        assert not settings.paths.watchdog_socket.exists()
        assert not settings.paths.pid_file.exists()

    def test_exits_before_signal(self, manager, settings):
        settings.paths.pid_file.write_text("4242")

        with patch.object(manager, "_is_process_running", return_value=True), \
             patch("bwsr.daemon.manager.os.kill", side_effect=ProcessLookupError):
            result = manager.stop()

        assert result == {"success": True, "message": "Watchdog had already exited"}
        assert not settings.paths.pid_file.exists()

    def test_signal_not_permitted(self, manager, settings):
        settings.paths.pid_file.write_text("4242")

        with patch.object(manager, "_is_process_running", return_value=True), \
             patch("bwsr.daemon.manager.os.kill", side_effect=PermissionError("not permitted")):
            result = manager.stop()

        assert result["success"] is False
        assert "not permitted" in result["message"]


class TestStatus:

    def test_not_running(self, manager):
        status = manager.status()

        assert status["running"] is False
        assert status["pid"] is None

    def test_process_alive_but_not_answering(self, manager, settings):
        settings.paths.pid_file.write_text("4242")

        with patch.object(manager, "_is_process_running", return_value=True):
            status = manager.status()

        assert status["running"] is False
        assert status["pid"] == 4242
        assert "not responding" in status["message"]

    def test_corrupt_pid_file(self, manager, settings):
        settings.paths.pid_file.write_text("not a pid")
        assert manager._read_pid() is None
