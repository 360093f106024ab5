"""
Unix socket transport for the control channel.

Both sides follow the same discipline: one connection carries exactly one
request and one response, then closes. ``request`` is the client half and
``ControlServer`` the serving half, shared by the watchdog and by every
session wrapper.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Optional

from pydantic import TypeAdapter

from bwsr.errors import BwsrError, ControlConnectionError, ControlTimeoutError, ProtocolError
from bwsr.ipc.protocol import (
    CONTROL_MESSAGE,
    MAX_FRAME_SIZE,
    ErrorResponse,
    Message,
    encode,
    read_message,
)
from bwsr.paths import remove_socket_file

logger = logging.getLogger(__name__)

Handler = Callable[[Message], Awaitable[Message]]


async def request(
    socket_path: Path,
    message: Message,
    adapter: TypeAdapter = CONTROL_MESSAGE,
    timeout: float = 10.0,
) -> Message:
    """
    Send one request and wait for its response.

    Raises:
        ControlTimeoutError: If the round trip takes longer than ``timeout``
        ControlConnectionError: If the socket is missing, refuses the
            connection, or closes before answering
        ProtocolError: If the response cannot be decoded
    """

    async def _round_trip() -> Message:
        reader, writer = await asyncio.open_unix_connection(str(socket_path), limit=MAX_FRAME_SIZE)
        try:
            writer.write(encode(message))
            await writer.drain()
            response = await read_message(reader, adapter)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

        if response is None:
            raise ControlConnectionError(f"{socket_path} closed the connection without responding")
        return response

    try:
        return await asyncio.wait_for(_round_trip(), timeout=timeout)
    except BwsrError:
        raise
    except asyncio.TimeoutError:
        raise ControlTimeoutError(f"No response from {socket_path} within {timeout:g}s")
    except OSError as e:
        raise ControlConnectionError(f"Cannot reach {socket_path}: {e.strerror or e}")


class ControlServer:
    """
    Control endpoint bound to a filesystem socket path.

    Each accepted connection is read for exactly one request, which is passed
    to ``handler``; the handler's response (or an ErrorResponse if it raised)
    is written back and the connection closed.
    """

    def __init__(
        self,
        socket_path: Path,
        handler: Handler,
        adapter: TypeAdapter = CONTROL_MESSAGE,
    ):
        self.socket_path = socket_path
        self.handler = handler
        self.adapter = adapter
        self._server: Optional[asyncio.AbstractServer] = None
        self._closed = False

    @property
    def is_serving(self) -> bool:
        return self._server is not None and not self._closed and self._server.is_serving()

    async def start(self) -> None:
        """Bind the socket, replacing any stale file left at its path."""
        self.socket_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        remove_socket_file(self.socket_path)

        self._server = await asyncio.start_unix_server(
            self._handle_connection,
            path=str(self.socket_path),
            limit=MAX_FRAME_SIZE,
        )
        os.chmod(self.socket_path, 0o600)
        self._closed = False
        logger.debug(f"Listening on {self.socket_path}")

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            try:
                message = await read_message(reader, self.adapter)
            except ProtocolError as e:
                logger.warning(f"Rejected malformed request on {self.socket_path}: {e}")
                response: Message = ErrorResponse.from_exception(e)
            else:
                if message is None:
                    return
                response = await self._dispatch(message)

            writer.write(encode(response))
            await writer.drain()
        except OSError as e:
            logger.debug(f"Client on {self.socket_path} went away: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def _dispatch(self, message: Message) -> Message:
        try:
            return await self.handler(message)
        except BwsrError as e:
            logger.info(f"Request {message.type!r} failed: {e}")
            return ErrorResponse.from_exception(e)
        except Exception as e:
            logger.exception(f"Request {message.type!r} raised an exception")
            return ErrorResponse.from_exception(e)

    def close(self) -> None:
        """Stop accepting connections and remove the socket file. Idempotent."""
        if self._server is not None and not self._closed:
            self._server.close()
            logger.debug(f"Closed {self.socket_path}")
        self._closed = True
        remove_socket_file(self.socket_path)

    async def wait_closed(self) -> None:
        if self._server is not None:
            await self._server.wait_closed()
