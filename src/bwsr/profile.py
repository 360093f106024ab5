"""
bwsr Profile Store - Named launch configurations for browser sessions.

Each profile is one TOML document under ~/.bwsr/profiles/:

    ~/.bwsr/profiles/
    ├── default.toml             # Created on first use (chromium, headless)
    └── {profile-name}.toml

A session's launch is fully determined by the profile snapshot taken when the
session starts; editing a profile afterwards does not affect running sessions.

Usage:
    manager = ProfileManager(paths.profiles)
    manager.create("work", Profile(browser="firefox", headless=False))
    profile = manager.get("work")
"""

import logging
import re
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import tomli_w
from pydantic import BaseModel, ConfigDict, ValidationError

from bwsr.errors import NotFoundError, ProfileError
from bwsr.paths import PROFILE_SUFFIX

logger = logging.getLogger(__name__)


# Valid profile name pattern: lowercase alphanumeric, hyphens, underscores
PROFILE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
MAX_PROFILE_NAME_LENGTH = 64

DEFAULT_PROFILE_NAME = "default"

BrowserName = Literal["chromium", "firefox", "webkit"]
ColorScheme = Literal["light", "dark", "no-preference"]


class Viewport(BaseModel):
    width: int
    height: int


class Profile(BaseModel):
    """Launch configuration for one browser session."""

    model_config = ConfigDict(extra="ignore")

    browser: BrowserName = "chromium"
    executable: Optional[str] = None
    headless: bool = True
    viewport: Optional[Viewport] = None
    args: List[str] = []
    locale: Optional[str] = None
    timezone: Optional[str] = None
    color_scheme: Optional[ColorScheme] = None
    user_agent: Optional[str] = None
    proxy: Optional[str] = None
    ignore_https_errors: Optional[bool] = None
    offline: Optional[bool] = None

    def launch_options(self, executable: str, debug_port: int) -> Dict[str, Any]:
        """Keyword arguments for ``BrowserType.launch``."""
        options: Dict[str, Any] = {
            "headless": self.headless,
            "executable_path": executable,
            "args": [*self.args, f"--remote-debugging-port={debug_port}"],
        }
        if self.proxy:
            options["proxy"] = {"server": self.proxy}
        return options

    def context_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``Browser.new_context``; unset fields are omitted."""
        options: Dict[str, Any] = {
            "viewport": self.viewport.model_dump() if self.viewport else None,
            "locale": self.locale,
            "timezone_id": self.timezone,
            "color_scheme": self.color_scheme,
            "user_agent": self.user_agent,
            "ignore_https_errors": self.ignore_https_errors,
            "offline": self.offline,
        }
        return {key: value for key, value in options.items() if value is not None}

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


def default_profile() -> Profile:
    return Profile(browser="chromium", headless=True)


def validate_profile_name(name: str) -> None:
    """
    Validate a profile name.

    Raises:
        ProfileError: If the name is invalid
    """
    if not name:
        raise ProfileError("Profile name cannot be empty")

    if len(name) > MAX_PROFILE_NAME_LENGTH:
        raise ProfileError(
            f"Profile name too long (max {MAX_PROFILE_NAME_LENGTH} characters)"
        )

    if not PROFILE_NAME_PATTERN.fullmatch(name):
        raise ProfileError(
            f"Invalid profile name '{name}'. "
            "Must start with lowercase letter or digit, "
            "and contain only lowercase letters, digits, hyphens, and underscores."
        )


class ProfileManager:
    """
    Flat key/value store of profile documents.

    Provides create, get, set (merge), append, unset, remove and list. The
    profiles directory is created on first write.
    """

    def __init__(self, profiles_dir: Path):
        self.profiles_dir = profiles_dir

    def _path(self, name: str) -> Path:
        validate_profile_name(name)
        return self.profiles_dir / f"{name}{PROFILE_SUFFIX}"

    def _read(self, path: Path) -> Profile:
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ProfileError(f"Profile file {path} is not valid TOML: {e}")

        try:
            return Profile.model_validate(data)
        except ValidationError as e:
            raise ProfileError(f"Profile file {path} is invalid: {e}")

    def _write(self, name: str, profile: Profile) -> None:
        path = self._path(name)
        self.profiles_dir.mkdir(parents=True, exist_ok=True)

        try:
            with open(path, "wb") as f:
                tomli_w.dump(profile.to_document(), f)
        except OSError as e:
            raise ProfileError(f"Failed to write profile '{name}': {e}")

    def exists(self, name: str) -> bool:
        try:
            return self._path(name).exists()
        except ProfileError:
            return False

    def create(self, name: str, profile: Optional[Profile] = None) -> Profile:
        """
        Create a new profile.

        Raises:
            ProfileError: If the profile already exists or the name is invalid
        """
        if self._path(name).exists():
            raise ProfileError(f"Profile '{name}' already exists")

        profile = profile or default_profile()
        self._write(name, profile)
        logger.info(f"Created profile: {name}")
        return profile

    def get(self, name: str) -> Optional[Profile]:
        """Return the profile, or None if it does not exist."""
        path = self._path(name)
        if not path.exists():
            return None
        return self._read(path)

    def require(self, name: str) -> Profile:
        profile = self.get(name)
        if profile is None:
            raise NotFoundError(f"Profile '{name}' not found")
        return profile

    def set(self, name: str, updates: Dict[str, Any]) -> Profile:
        """Merge ``updates`` into an existing profile."""
        existing = self.require(name)
        merged = {**existing.to_document(), **updates}
        try:
            profile = Profile.model_validate(merged)
        except ValidationError as e:
            raise ProfileError(f"Invalid profile settings: {e}")
        self._write(name, profile)
        return profile

    def append(self, name: str, values: List[str]) -> Profile:
        """Append extra launch arguments."""
        existing = self.require(name)
        existing.args = [*existing.args, *values]
        self._write(name, existing)
        return existing

    def unset(self, name: str, keys: List[str]) -> Profile:
        existing = self.require(name)
        unknown = [key for key in keys if key not in Profile.model_fields]
        if unknown:
            raise ProfileError(f"Unknown profile setting(s): {', '.join(unknown)}")

        document = existing.to_document()
        for key in keys:
            document.pop(key, None)
        profile = Profile.model_validate(document)
        self._write(name, profile)
        return profile

    def remove(self, name: str) -> bool:
        """Delete a profile. Returns False if it did not exist."""
        path = self._path(name)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Deleted profile: {name}")
        return True

    def list(self) -> List[str]:
        """List profile names, sorted alphabetically."""
        if not self.profiles_dir.exists():
            return []

        names = []
        for item in self.profiles_dir.iterdir():
            if item.suffix != PROFILE_SUFFIX:
                continue
            try:
                validate_profile_name(item.stem)
            except ProfileError:
                # Skip files that could never have been written by us
                continue
            names.append(item.stem)
        return sorted(names)

    def ensure_default(self) -> bool:
        """Create the default profile if missing. Returns True if it was created."""
        if self.exists(DEFAULT_PROFILE_NAME):
            return False
        self.create(DEFAULT_PROFILE_NAME, default_profile())
        return True

    def render(self, name: str) -> str:
        """The profile document as TOML text."""
        return tomli_w.dumps(self.require(name).to_document())
