"""
bwsr Daemon Manager - Process lifecycle management for the watchdog.

The watchdog runs as a detached background process started with
``python -m bwsr.daemon.server``. Its PID is written to ~/.bwsr/daemon.pid and
its output appended to ~/.bwsr/daemon.log.

Readiness is not decided here: the client polls the control socket after
spawning (see bwsr.daemon.client).
"""

import asyncio
import logging
import os
import signal
import subprocess
import sys
import time
from typing import Any, Dict, List, Optional

from bwsr.config import Settings, get_settings
from bwsr.errors import BootstrapError, BwsrError
from bwsr.ipc.protocol import WATCHDOG_RESPONSE, InstancesResponse, ListRequest
from bwsr.ipc.transport import request
from bwsr.paths import remove_socket_file

logger = logging.getLogger(__name__)

# Seconds the watchdog gets to exit after SIGTERM before it is killed
STOP_GRACE_PERIOD = 3.0
KILL_WAIT = 1.0
EXIT_POLL_INTERVAL = 0.1


class DaemonManager:
    """
    Manages the watchdog process lifecycle.

    - Spawning the watchdog detached from the calling terminal
    - Stopping it (SIGTERM, then SIGKILL after 3 seconds)
    - Reporting its status
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.paths = self.settings.paths
        self.pid_file = self.paths.pid_file
        self.log_file = self.paths.log_file

    def _read_pid(self) -> Optional[int]:
        """Read PID from file, returns None if not found or invalid."""
        if not self.pid_file.exists():
            return None

        try:
            pid_str = self.pid_file.read_text().strip()
            if pid_str:
                return int(pid_str)
        except (ValueError, OSError) as e:
            logger.debug(f"Error reading PID file: {e}")

        return None

    def _write_pid(self, pid: int) -> None:
        self.paths.root.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(pid))

    def _remove_pid(self) -> None:
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug(f"Error removing PID file: {e}")

    def _is_process_running(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
            return True
        except OSError:
            return False

    def command(self) -> List[str]:
        return [sys.executable, "-m", "bwsr.daemon.server", "--home", str(self.paths.root)]

    def spawn(self) -> int:
        """
        Start the watchdog as a detached background process.

        Returns:
            The PID of the new process.

        Raises:
            BootstrapError: If the process could not be started.
        """
        old_pid = self._read_pid()
        if old_pid and not self._is_process_running(old_pid):
            logger.info(f"Removing stale PID file (process {old_pid} not running)")
            self._remove_pid()

        self.paths.ensure_directories()
        cmd = self.command()

        with open(self.log_file, "a") as log:
            log.write(f"\n{'=' * 60}\n")
            log.write(f"Starting watchdog at {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
            log.write(f"Home: {self.paths.root}\n")
            log.write(f"Command: {' '.join(cmd)}\n")
            log.write(f"{'=' * 60}\n")
            log.flush()

            try:
                process = subprocess.Popen(
                    cmd,
                    stdout=log,
                    stderr=log,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,  # Detach from the terminal
                    cwd=str(self.paths.root),
                )
            except OSError as e:
                raise BootstrapError(f"Failed to start watchdog: {e}") from e

        self._write_pid(process.pid)
        logger.debug(f"Spawned watchdog (pid {process.pid})")
        return process.pid

    def stop(self) -> Dict[str, Any]:
        """
        Stop the watchdog process.

        Returns:
            Dict with success and message.
        """
        pid = self._read_pid()

        if not pid:
            return {
                "success": False,
                "message": "No PID file found - watchdog may not be running",
            }

        if not self._is_process_running(pid):
            self._remove_pid()
            return {
                "success": True,
                "message": "Watchdog was not running (cleaned up stale PID file)",
            }

        try:
            outcome = self._terminate(pid)
        except OSError as e:
            return {
                "success": False,
                "message": f"Failed to signal watchdog (pid {pid}): {e}",
            }

        self._remove_pid()
        if self.paths.watchdog_socket.exists():
            # A killed watchdog cannot remove its own socket
            remove_socket_file(self.paths.watchdog_socket)
            outcome += ", removed its leftover socket"
        return {"success": True, "message": f"Watchdog {outcome}"}

    def _terminate(self, pid: int) -> str:
        """SIGTERM, then SIGKILL once the grace period is over. Returns what happened."""
        try:
            # SIGTERM lets the watchdog stop its sessions and remove its socket
            os.kill(pid, signal.SIGTERM)
            if self._wait_for_exit(pid, STOP_GRACE_PERIOD):
                return "stopped gracefully"

            logger.warning(f"Watchdog (pid {pid}) ignored SIGTERM, sending SIGKILL")
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            return "had already exited"

        self._wait_for_exit(pid, KILL_WAIT)
        return "force killed (SIGKILL)"

    def _wait_for_exit(self, pid: int, timeout: float) -> bool:
        for _ in range(max(1, int(timeout / EXIT_POLL_INTERVAL))):
            if not self._is_process_running(pid):
                return True
            time.sleep(EXIT_POLL_INTERVAL)
        return not self._is_process_running(pid)

    async def _query_sessions(self) -> InstancesResponse:
        response = await request(
            self.paths.watchdog_socket,
            ListRequest(),
            WATCHDOG_RESPONSE,
            timeout=self.settings.request_timeout,
        )
        if not isinstance(response, InstancesResponse):
            raise BwsrError(f"Unexpected response to list: {response.type}")
        return response

    def status(self) -> Dict[str, Any]:
        """
        Get watchdog status.

        Returns:
            Dict with running state and details.
        """
        pid = self._read_pid()
        base = {
            "socket": str(self.paths.watchdog_socket),
            "log_file": str(self.log_file),
        }

        try:
            sessions = asyncio.run(self._query_sessions())
        except BwsrError as e:
            if pid and self._is_process_running(pid):
                return {
                    **base,
                    "running": False,
                    "pid": pid,
                    "message": "Process exists but not responding",
                    "error": str(e),
                }
            if pid:
                self._remove_pid()
            return {
                **base,
                "running": False,
                "pid": None,
                "message": "Watchdog not running",
            }

        return {
            **base,
            "running": True,
            "pid": pid,
            "sessions": len(sessions.instances),
        }
