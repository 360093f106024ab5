"""
Client for the watchdog control socket.

WatchdogClient sends one request per connection and turns error responses
back into the matching BwsrError subclass. ``ensure_watchdog`` starts the
watchdog on demand: if nothing answers on the socket it spawns a detached
watchdog and polls ``list`` until it responds or the retries run out.
"""

import asyncio
import logging
from typing import Optional

from bwsr.config import Settings, get_settings
from bwsr.daemon.manager import DaemonManager
from bwsr.errors import BootstrapError, BwsrError, ControlConnectionError, ControlTimeoutError
from bwsr.ipc.protocol import (
    WATCHDOG_RESPONSE,
    CdpRequest,
    EndpointResponse,
    ErrorResponse,
    InstancesResponse,
    ListRequest,
    Message,
    OkResponse,
    StartedResponse,
    StartRequest,
    StopAllRequest,
    StopRequest,
)
from bwsr.ipc.transport import request

logger = logging.getLogger(__name__)


class WatchdogClient:
    """Async client for the watchdog's control socket."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        manager: Optional[DaemonManager] = None,
    ):
        self.settings = settings or get_settings()
        self.socket_path = self.settings.paths.watchdog_socket
        self.manager = manager or DaemonManager(self.settings)

    async def send(self, message: Message, timeout: Optional[float] = None) -> Message:
        """
        Send one request to the watchdog.

        Raises:
            BwsrError: The error the watchdog reported, or a transport failure.
        """
        response = await request(
            self.socket_path,
            message,
            WATCHDOG_RESPONSE,
            timeout=timeout or self.settings.request_timeout,
        )
        if isinstance(response, ErrorResponse):
            raise response.to_exception()
        return response

    async def is_running(self) -> bool:
        """
        Whether a watchdog answers on the control socket.

        The watchdog answers ``list`` only after probing its sessions, which
        can take up to probe_timeout, so this waits the full request_timeout.
        """
        if not self.socket_path.exists():
            return False
        try:
            await self.send(ListRequest(), timeout=self.settings.request_timeout)
            return True
        except BwsrError:
            return False

    async def wait_until_ready(self) -> None:
        """
        Poll ``list`` until the watchdog answers.

        Raises:
            BootstrapError: If it never answers within bootstrap_attempts tries.
        """
        attempts = self.settings.bootstrap_attempts
        for attempt in range(1, attempts + 1):
            if await self.is_running():
                logger.debug(f"Watchdog ready after {attempt} attempt(s)")
                return
            await asyncio.sleep(self.settings.bootstrap_delay)

        raise BootstrapError(
            f"Watchdog did not become ready after {attempts} attempts. "
            f"Check {self.manager.log_file}"
        )

    async def ensure_watchdog(self) -> bool:
        """
        Make sure a watchdog is serving, spawning one if needed.

        Returns:
            True if a new watchdog was spawned, False if one was already running.
        """
        if await self.is_running():
            return False

        logger.info("Watchdog not running, starting it")
        pid = self.manager.spawn()
        await self.wait_until_ready()
        logger.info(f"Watchdog started (pid {pid})")
        return True

    # =========================================================================
    # Verbs
    # =========================================================================

    async def start(self, profile: str, session: Optional[str] = None) -> StartedResponse:
        await self.ensure_watchdog()
        response = await self.send(
            StartRequest(profile=profile, session=session),
            timeout=self.settings.start_timeout,
        )
        return self._expect(response, StartedResponse)

    async def stop(self, session: str) -> OkResponse:
        await self.ensure_watchdog()
        response = await self.send(StopRequest(session=session))
        return self._expect(response, OkResponse)

    async def stop_all(self) -> OkResponse:
        await self.ensure_watchdog()
        response = await self.send(StopAllRequest())
        return self._expect(response, OkResponse)

    async def list(self) -> InstancesResponse:
        """Running sessions; an unreachable watchdog means there are none."""
        try:
            response = await self.send(ListRequest())
        except (ControlConnectionError, ControlTimeoutError) as e:
            logger.debug(f"Watchdog unreachable, reporting no sessions: {e}")
            return InstancesResponse(instances=[])
        return self._expect(response, InstancesResponse)

    async def cdp(self, session: Optional[str] = None) -> EndpointResponse:
        await self.ensure_watchdog()
        response = await self.send(CdpRequest(session=session))
        return self._expect(response, EndpointResponse)

    @staticmethod
    def _expect(response: Message, expected: type):
        if not isinstance(response, expected):
            raise BwsrError(f"Unexpected response from watchdog: {response.type}")
        return response
