"""
Session wrapper - owns exactly one browser instance end to end.

A wrapper launches its browser with a remote-debugging port, opens one blank
page so CDP clients connecting straight away find something usable, and then
serves its own control socket (``sockets/<session>.sock``) answering:

- ping: debug port, healthy/unhealthy status, last-used time (refreshed by the ping)
- shutdown: stop everything and acknowledge

Wrappers run in-process inside the watchdog; they are separate objects, not
separate OS processes.
"""

import logging
import socket
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Collection, Optional

from playwright.async_api import async_playwright

from bwsr.browser.discovery import discover_browser
from bwsr.errors import LaunchError
from bwsr.ipc.protocol import (
    WRAPPER_REQUEST,
    Message,
    PingRequest,
    PongResponse,
    SessionStatus,
    ShutdownAckResponse,
    ShutdownRequest,
    utcnow,
)
from bwsr.ipc.transport import ControlServer
from bwsr.profile import Profile

logger = logging.getLogger(__name__)


def find_available_port(exclude: Collection[int] = ()) -> int:
    """Ask the OS for a free TCP port on localhost, skipping ``exclude``."""
    for _ in range(20):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        if port not in exclude:
            return port
    raise LaunchError("Could not allocate a free debug port")


class SessionWrapper:
    """Supervises one browser instance and its control endpoint."""

    def __init__(
        self,
        session: str,
        profile: Profile,
        socket_path: Path,
        profile_name: str = "default",
        playwright_factory: Callable[[], Any] = async_playwright,
        reserved_ports: Collection[int] = (),
    ):
        self.session = session
        self.profile = profile
        self.profile_name = profile_name
        self.socket_path = socket_path
        self.debug_port = 0
        self.last_used: datetime = utcnow()

        self._playwright_factory = playwright_factory
        self._reserved_ports = reserved_ports
        self._playwright = None
        self._browser = None
        self._context = None
        self._server: Optional[ControlServer] = None

    def _resolve_executable(self) -> str:
        executable = self.profile.executable or discover_browser(self.profile.browser)
        if not executable:
            raise LaunchError(
                f"Could not find {self.profile.browser} browser. "
                f"Install via: playwright install {self.profile.browser}"
            )
        return executable

    async def start(self) -> int:
        """
        Launch the browser and open the control endpoint.

        Returns:
            The remote-debugging port.

        Raises:
            LaunchError: If no executable can be resolved. Launcher failures
                propagate unchanged.
        """
        executable = self._resolve_executable()
        self.debug_port = find_available_port(exclude=self._reserved_ports)

        try:
            self._playwright = await self._playwright_factory().start()
            launcher = getattr(self._playwright, self.profile.browser)
            self._browser = await launcher.launch(
                **self.profile.launch_options(executable, self.debug_port)
            )
            self._context = await self._browser.new_context(**self.profile.context_options())
            await self._context.new_page()

            self._server = ControlServer(self.socket_path, self.handle_request, WRAPPER_REQUEST)
            await self._server.start()
        except BaseException:
            await self.stop()
            raise

        self.last_used = utcnow()
        logger.info(
            f"Session {self.session} started ({self.profile.browser}, debug port {self.debug_port})"
        )
        return self.debug_port

    async def handle_request(self, request: Message) -> Message:
        if isinstance(request, PingRequest):
            self.last_used = utcnow()
            return PongResponse(
                debug_port=self.debug_port,
                status=self.status,
                last_used=self.last_used,
            )

        if isinstance(request, ShutdownRequest):
            await self.stop()
            return ShutdownAckResponse()

        raise ValueError(f"Unsupported request type: {request.type}")

    async def stop(self) -> None:
        """
        Close the context, the browser, the Playwright driver and the control
        endpoint. Each step is attempted even if an earlier one fails; calling
        stop twice is harmless.
        """
        if self._context is not None:
            context, self._context = self._context, None
            try:
                await context.close()
            except Exception as e:
                logger.debug(f"Session {self.session}: closing context failed: {e}")

        if self._browser is not None:
            browser, self._browser = self._browser, None
            try:
                await browser.close()
            except Exception as e:
                logger.debug(f"Session {self.session}: closing browser failed: {e}")

        if self._playwright is not None:
            playwright, self._playwright = self._playwright, None
            try:
                await playwright.stop()
            except Exception as e:
                logger.debug(f"Session {self.session}: stopping Playwright failed: {e}")

        if self._server is not None:
            server, self._server = self._server, None
            server.close()
            logger.info(f"Session {self.session} stopped")

    def is_healthy(self) -> bool:
        """Whether the managed browser is still connected. Never raises."""
        try:
            return self._browser is not None and bool(self._browser.is_connected())
        except Exception:
            return False

    @property
    def status(self) -> SessionStatus:
        return "healthy" if self.is_healthy() else "unhealthy"

    @property
    def is_running(self) -> bool:
        return self._server is not None
