"""
Error types shared by the CLI, the watchdog daemon and the session wrappers.

Every error carries a short machine-readable ``code`` so it can travel over the
control socket inside an error response and be rebuilt on the client side:

- not_found: unknown profile or session
- conflict: session name already in use
- launch_error: no browser executable, or the launcher failed
- timeout: a control round trip exceeded its bound
- connection_error: control socket unreachable or reset
- protocol_error: malformed frame on the control socket
- bootstrap_error: the daemon never became reachable
- profile_error: invalid or unwritable profile document
"""

from typing import Dict, Type


class BwsrError(Exception):
    """Base class for all bwsr errors."""

    code = "error"


class NotFoundError(BwsrError):
    code = "not_found"


class ConflictError(BwsrError):
    code = "conflict"


class LaunchError(BwsrError):
    code = "launch_error"


class ControlTimeoutError(BwsrError, TimeoutError):
    code = "timeout"


class ControlConnectionError(BwsrError, ConnectionError):
    code = "connection_error"


class ProtocolError(BwsrError):
    code = "protocol_error"


class BootstrapError(BwsrError):
    code = "bootstrap_error"


class ProfileError(BwsrError):
    code = "profile_error"


_ERRORS_BY_CODE: Dict[str, Type[BwsrError]] = {
    cls.code: cls
    for cls in (
        NotFoundError,
        ConflictError,
        LaunchError,
        ControlTimeoutError,
        ControlConnectionError,
        ProtocolError,
        BootstrapError,
        ProfileError,
    )
}


def error_from_code(code: str, message: str) -> BwsrError:
    """Rebuild an error received over the wire. Unknown codes map to BwsrError."""
    return _ERRORS_BY_CODE.get(code, BwsrError)(message)
