"""
bwsr Watchdog - the background daemon that owns every browser session.

The watchdog listens on ~/.bwsr/sockets/watchdog.sock and serves one request
per connection:

- start {profile, session?} - launch a new session, returns its name and debug port
- stop {session}            - stop one session
- stopAll                   - stop every session
- list                      - probe sessions, return the ones that answer
- cdp {session?}            - debug port of the named (or any) session

LIFECYCLE:
1. Bootstrap: if another watchdog answers on the control socket, exit.
   Otherwise remove the stale socket, then probe every leftover session
   socket. Sessions that answer are re-admitted; dead sockets are deleted.
2. Serving: accept control connections.
3. Health sweep: every poll_interval seconds, probe each session. Sessions that
   do not answer (or whose browser disconnected) are evicted.
4. Idle shutdown: when a sweep finds no sessions, a grace timer is armed. If the
   table is still empty when it fires, the watchdog stops and the process exits.
   A start during the grace period keeps the watchdog alive.
5. Shutdown: stop every session, close the socket, delete it.

The session table is only touched from the event loop. A start reserves its
name before the first await, so two concurrent starts of one name cannot both
succeed.
"""

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from bwsr.config import Settings, get_settings
from bwsr.errors import BwsrError, ConflictError, ControlConnectionError, LaunchError, NotFoundError
from bwsr.ipc.protocol import (
    WATCHDOG_REQUEST,
    WATCHDOG_RESPONSE,
    WRAPPER_RESPONSE,
    CdpRequest,
    EndpointResponse,
    InstanceInfo,
    InstancesResponse,
    ListRequest,
    Message,
    OkResponse,
    PingRequest,
    PongResponse,
    ShutdownRequest,
    StartedResponse,
    StartRequest,
    StopAllRequest,
    StopRequest,
    utcnow,
)
from bwsr.ipc.transport import ControlServer, request
from bwsr.names import generate_session_name, is_valid_session_name
from bwsr.paths import remove_socket_file
from bwsr.profile import ProfileManager
from bwsr.wrapper import SessionWrapper

logger = logging.getLogger(__name__)

# Profile reported for sessions re-admitted after a watchdog restart; a ping
# does not say which profile a session was launched with
RECOVERED_PROFILE = "unknown"


@dataclass
class TrackedSession:
    """One entry of the watchdog's session table."""
    name: str
    profile: str
    socket_path: Path
    debug_port: int = 0
    # None for sessions recovered from a previous watchdog process
    wrapper: Optional[SessionWrapper] = None
    started_at: datetime = field(default_factory=utcnow)


class Watchdog:
    """Owns the session table and the watchdog control endpoint."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        wrapper_factory: Callable[..., SessionWrapper] = SessionWrapper,
    ):
        self.settings = settings or get_settings()
        self.paths = self.settings.paths
        self.profile_manager = ProfileManager(self.paths.profiles)
        self.sessions: Dict[str, TrackedSession] = {}

        self._wrapper_factory = wrapper_factory
        self._reserved: Set[str] = set()
        self._server: Optional[ControlServer] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._idle_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._stopped = asyncio.Event()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Claim the control socket and start serving.

        Raises:
            ConflictError: If another watchdog already answers on the socket.
        """
        self.paths.ensure_directories()
        if await self._socket_answers():
            raise ConflictError(f"Another watchdog is already serving on {self.paths.watchdog_socket}")
        remove_socket_file(self.paths.watchdog_socket)

        await self.discover_existing_sessions()

        self._server = ControlServer(self.paths.watchdog_socket, self.handle_request, WATCHDOG_REQUEST)
        await self._server.start()

        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(
            f"Watchdog listening on {self.paths.watchdog_socket} "
            f"({len(self.sessions)} recovered session(s))"
        )

    async def _socket_answers(self) -> bool:
        if not self.paths.watchdog_socket.exists():
            return False
        try:
            await request(
                self.paths.watchdog_socket,
                ListRequest(),
                WATCHDOG_RESPONSE,
                timeout=self.settings.request_timeout,
            )
        except BwsrError as e:
            logger.info(f"Removing stale watchdog socket: {e}")
            return False
        return True

    async def serve_until_stopped(self) -> None:
        await self._stopped.wait()

    @property
    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    @property
    def is_idle(self) -> bool:
        return not self.sessions and not self._reserved

    def request_stop(self) -> None:
        """Schedule stop() from a signal handler."""
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self.stop())

    async def stop(self) -> None:
        """Stop every session, close the control socket and delete it. Idempotent."""
        if self._stopping:
            await self._stopped.wait()
            return
        self._stopping = True
        logger.info("Watchdog stopping")

        current = asyncio.current_task()
        for task in (self._poll_task, self._idle_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        sessions = list(self.sessions.values())
        self.sessions.clear()
        for tracked in sessions:
            await self._shutdown_session(tracked)

        if self._server is not None:
            self._server.close()
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=1.0)
            except asyncio.TimeoutError:
                logger.debug("Control connections still open at shutdown")

        self._stopped.set()
        logger.info("Watchdog stopped")

    async def discover_existing_sessions(self) -> None:
        """Re-admit sessions that outlived a previous watchdog; delete dead sockets."""
        for name, socket_path in self.paths.session_sockets():
            pong = await self.probe(socket_path) if is_valid_session_name(name) else None
            if pong is None:
                logger.info(f"Removing dead session socket: {socket_path.name}")
                remove_socket_file(socket_path)
                continue

            self.sessions[name] = TrackedSession(
                name=name,
                profile=RECOVERED_PROFILE,
                socket_path=socket_path,
                debug_port=pong.debug_port,
            )
            logger.info(f"Recovered session: {name} (debug port {pong.debug_port})")

    # =========================================================================
    # Health
    # =========================================================================

    async def probe(self, socket_path: Path) -> Optional[PongResponse]:
        """Ping a session socket. A timeout counts the same as an unreachable socket."""
        try:
            response = await request(
                socket_path,
                PingRequest(),
                WRAPPER_RESPONSE,
                timeout=self.settings.probe_timeout,
            )
        except BwsrError as e:
            logger.debug(f"Probe of {socket_path.name} failed: {e}")
            return None

        return response if isinstance(response, PongResponse) else None

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.poll_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Health sweep failed")

    async def sweep(self) -> None:
        """Probe every session, evict the dead ones, arm idle shutdown if empty."""
        for name, tracked in list(self.sessions.items()):
            pong = await self.probe(tracked.socket_path)

            # Stopped or replaced while we were waiting on the probe
            if self.sessions.get(name) is not tracked:
                continue

            if pong is None:
                logger.warning(f"Session {name} is not responding, removing")
                del self.sessions[name]
                if tracked.wrapper is not None:
                    await tracked.wrapper.stop()
                remove_socket_file(tracked.socket_path)
            elif pong.status != "healthy":
                logger.warning(f"Session {name} browser disconnected, removing")
                del self.sessions[name]
                await self._shutdown_session(tracked)

        if self.is_idle:
            self._arm_idle_shutdown()

    def _arm_idle_shutdown(self) -> None:
        if self._stopping or (self._idle_task is not None and not self._idle_task.done()):
            return
        logger.info(
            f"No sessions running, shutting down in {self.settings.idle_grace_period:g}s "
            "unless one is started"
        )
        self._idle_task = asyncio.create_task(self._idle_shutdown())

    async def _idle_shutdown(self) -> None:
        await asyncio.sleep(self.settings.idle_grace_period)
        if not self.is_idle:
            logger.info("Idle shutdown cancelled, a session was started")
            return
        logger.info("Idle grace period elapsed")
        await self.stop()

    # =========================================================================
    # Request handling
    # =========================================================================

    async def handle_request(self, message: Message) -> Message:
        if isinstance(message, StartRequest):
            return await self.handle_start(message.profile, message.session)
        if isinstance(message, StopRequest):
            return await self.handle_stop(message.session)
        if isinstance(message, StopAllRequest):
            return await self.handle_stop_all()
        if isinstance(message, ListRequest):
            return await self.handle_list()
        if isinstance(message, CdpRequest):
            return await self.handle_cdp(message.session)
        raise BwsrError(f"Unknown request type: {message.type}")

    def _generate_name(self) -> str:
        for _ in range(100):
            name = generate_session_name()
            if name not in self.sessions and name not in self._reserved:
                return name

        base = generate_session_name()
        suffix = 2
        while f"{base}-{suffix}" in self.sessions or f"{base}-{suffix}" in self._reserved:
            suffix += 1
        return f"{base}-{suffix}"

    def _ports_in_use(self) -> Set[int]:
        return {tracked.debug_port for tracked in self.sessions.values() if tracked.debug_port}

    async def handle_start(self, profile_name: str, session_name: Optional[str] = None) -> StartedResponse:
        if self._stopping:
            raise BwsrError("Watchdog is shutting down")
        profile = self.profile_manager.require(profile_name)

        if session_name:
            if not is_valid_session_name(session_name):
                raise BwsrError(
                    f"Invalid session name '{session_name}'. "
                    "Use lowercase letters, digits and single hyphens."
                )
            name = session_name
        else:
            name = self._generate_name()

        if name in self.sessions or name in self._reserved:
            raise ConflictError(f"Session '{name}' already exists")

        # Reserved until the wrapper is tracked or has failed
        self._reserved.add(name)
        try:
            wrapper = self._wrapper_factory(
                name,
                profile,
                self.paths.session_socket(name),
                profile_name=profile_name,
                reserved_ports=self._ports_in_use(),
            )
            try:
                debug_port = await wrapper.start()
            except BwsrError:
                raise
            except Exception as e:
                raise LaunchError(f"Failed to launch session '{name}': {e}") from e

            if self._stopping:
                # stop() already ran and will not see this session
                await wrapper.stop()
                raise BwsrError("Watchdog is shutting down")

            self.sessions[name] = TrackedSession(
                name=name,
                profile=profile_name,
                socket_path=wrapper.socket_path,
                debug_port=debug_port,
                wrapper=wrapper,
            )
        finally:
            self._reserved.discard(name)

        logger.info(f"Started session {name} with profile {profile_name} on port {debug_port}")
        return StartedResponse(session=name, debug_port=debug_port)

    async def handle_stop(self, session_name: str) -> OkResponse:
        tracked = self.sessions.pop(session_name, None)
        if tracked is None:
            raise NotFoundError(f"Session '{session_name}' not found")

        await self._shutdown_session(tracked)
        logger.info(f"Stopped session {session_name}")
        return OkResponse()

    async def handle_stop_all(self) -> OkResponse:
        sessions = list(self.sessions.values())
        self.sessions.clear()
        for tracked in sessions:
            await self._shutdown_session(tracked)

        if sessions:
            logger.info(f"Stopped {len(sessions)} session(s)")
        return OkResponse()

    async def handle_list(self) -> InstancesResponse:
        tracked_sessions = list(self.sessions.values())
        pongs = await asyncio.gather(*(self.probe(t.socket_path) for t in tracked_sessions))

        instances: List[InstanceInfo] = []
        for tracked, pong in zip(tracked_sessions, pongs):
            if pong is None:
                continue
            tracked.debug_port = pong.debug_port
            instances.append(
                InstanceInfo(
                    session=tracked.name,
                    profile=tracked.profile,
                    debug_port=pong.debug_port,
                    last_used=pong.last_used,
                    last_probe=utcnow(),
                    status=pong.status,
                )
            )
        return InstancesResponse(instances=instances)

    async def handle_cdp(self, session_name: Optional[str] = None) -> EndpointResponse:
        if session_name:
            tracked = self.sessions.get(session_name)
            if tracked is None:
                raise NotFoundError(f"Session '{session_name}' not found")
        else:
            tracked = next(iter(self.sessions.values()), None)
            if tracked is None:
                raise NotFoundError("No running sessions")

        pong = await self.probe(tracked.socket_path)
        if pong is None:
            raise ControlConnectionError(f"Session '{tracked.name}' not responding")
        return EndpointResponse(debug_port=pong.debug_port)

    async def _shutdown_session(self, tracked: TrackedSession) -> None:
        """Stop one session that has already been removed from the table."""
        if tracked.wrapper is not None:
            await tracked.wrapper.stop()
        else:
            try:
                await request(
                    tracked.socket_path,
                    ShutdownRequest(),
                    WRAPPER_RESPONSE,
                    timeout=self.settings.probe_timeout,
                )
            except BwsrError as e:
                logger.debug(f"Shutdown of recovered session {tracked.name} failed: {e}")
        remove_socket_file(tracked.socket_path)


# =============================================================================
# Entry Point
# =============================================================================

def _write_pid(pid_file: Path) -> None:
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(os.getpid()))


def _remove_pid(pid_file: Path) -> None:
    """Remove the PID file if it still names this process."""
    try:
        if pid_file.read_text().strip() == str(os.getpid()):
            pid_file.unlink()
    except (OSError, ValueError):
        pass


async def _serve(watchdog: Watchdog) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, watchdog.request_stop)

    await watchdog.start()
    await watchdog.serve_until_stopped()


def run_server(settings: Optional[Settings] = None) -> None:
    """
    Run the watchdog in the foreground until it stops.

    Returns when the watchdog shuts down (signal or idle timeout); the caller
    then lets the process exit.
    """
    settings = settings or get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    logger.info(f"Starting watchdog (pid {os.getpid()}, home {settings.paths.root})")
    _write_pid(settings.paths.pid_file)
    try:
        asyncio.run(_serve(Watchdog(settings)))
    except ConflictError as e:
        logger.warning(f"{e}, exiting")
    finally:
        _remove_pid(settings.paths.pid_file)
        logger.info("Watchdog exited")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="bwsr watchdog daemon")
    parser.add_argument(
        "--home",
        default=None,
        help="Config root (default: BWSR_HOME or ~/.bwsr)",
    )
    args = parser.parse_args()

    if args.home:
        os.environ["BWSR_HOME"] = args.home
    run_server(get_settings(force_reload=bool(args.home)))
    sys.exit(0)
