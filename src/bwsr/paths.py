"""
Filesystem layout for bwsr.

    ~/.bwsr/
    ├── daemon.pid               # PID of the background watchdog
    ├── daemon.log               # Watchdog stdout/stderr
    ├── profiles/
    │   └── {profile}.toml       # One launch configuration per profile
    └── sockets/
        ├── watchdog.sock        # Watchdog control endpoint
        └── {session}.sock       # One control endpoint per session

The sockets directory is created with mode 0700: filesystem permissions are
the only access control on the control channel.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

WATCHDOG_SOCKET_NAME = "watchdog.sock"
SOCKET_SUFFIX = ".sock"
PROFILE_SUFFIX = ".toml"


@dataclass(frozen=True)
class Paths:
    root: Path

    @property
    def profiles(self) -> Path:
        return self.root / "profiles"

    @property
    def sockets(self) -> Path:
        return self.root / "sockets"

    @property
    def watchdog_socket(self) -> Path:
        return self.sockets / WATCHDOG_SOCKET_NAME

    @property
    def pid_file(self) -> Path:
        return self.root / "daemon.pid"

    @property
    def log_file(self) -> Path:
        return self.root / "daemon.log"

    def profile(self, name: str) -> Path:
        return self.profiles / f"{name}{PROFILE_SUFFIX}"

    def session_socket(self, session: str) -> Path:
        return self.sockets / f"{session}{SOCKET_SUFFIX}"

    def session_sockets(self) -> Iterator[tuple[str, Path]]:
        """Yield (session name, socket path) for every per-session socket file."""
        if not self.sockets.exists():
            return
        for item in sorted(self.sockets.iterdir()):
            if item.name == WATCHDOG_SOCKET_NAME or item.suffix != SOCKET_SUFFIX:
                continue
            yield item.stem, item

    def ensure_directories(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.profiles.mkdir(parents=True, exist_ok=True)
        self.sockets.mkdir(mode=0o700, parents=True, exist_ok=True)


def get_paths(root: Optional[Path] = None) -> Paths:
    """Paths rooted at ``root``, or at the configured home directory."""
    if root is None:
        from bwsr.config import get_settings

        root = get_settings().home
    return Paths(Path(root).expanduser())


def remove_socket_file(path: Path) -> None:
    """Remove a socket file, tolerating it being already gone."""
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.debug(f"Could not remove socket {path}: {e}")
