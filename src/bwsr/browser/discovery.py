"""
Browser executable discovery.

Resolution order for a browser engine:
1. Playwright's browser cache (PLAYWRIGHT_BROWSERS_PATH or ~/.cache/ms-playwright),
   newest revision first - a known-good build for the installed driver
2. Well-known system install locations
3. Executables on PATH
"""

import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

BROWSERS = ("chromium", "firefox", "webkit")

SYSTEM_PATHS: Dict[str, List[str]] = {
    "chromium": [
        "/usr/bin/chromium",
        "/usr/bin/chromium-browser",
        "/usr/bin/google-chrome",
        "/usr/bin/google-chrome-stable",
        "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
        "/Applications/Chromium.app/Contents/MacOS/Chromium",
    ],
    "firefox": [
        "/usr/bin/firefox",
        "/Applications/Firefox.app/Contents/MacOS/firefox",
    ],
    # WebKit is only usable through Playwright's own build
    "webkit": [],
}

PATH_COMMANDS: Dict[str, List[str]] = {
    "chromium": ["chromium", "chromium-browser", "google-chrome", "google-chrome-stable"],
    "firefox": ["firefox"],
    "webkit": [],
}

if sys.platform == "darwin":
    PLAYWRIGHT_EXECUTABLES = {
        "chromium": "chrome-mac/Chromium.app/Contents/MacOS/Chromium",
        "firefox": "firefox/Nightly.app/Contents/MacOS/firefox",
        "webkit": "pw_run.sh",
    }
else:
    PLAYWRIGHT_EXECUTABLES = {
        "chromium": "chrome-linux/chrome",
        "firefox": "firefox/firefox",
        "webkit": "pw_run.sh",
    }


def playwright_cache_dir() -> Path:
    override = os.environ.get("PLAYWRIGHT_BROWSERS_PATH")
    if override and override != "0":
        return Path(override).expanduser()
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Caches" / "ms-playwright"
    return Path.home() / ".cache" / "ms-playwright"


def find_playwright_browser(browser: str, cache_dir: Optional[Path] = None) -> Optional[str]:
    cache_dir = cache_dir or playwright_cache_dir()
    if not cache_dir.is_dir():
        return None

    # Directories are named "<browser>-<revision>"; newest revision wins
    candidates = []
    for entry in cache_dir.iterdir():
        prefix, _, revision = entry.name.partition("-")
        if prefix == browser and revision.isdigit():
            candidates.append((int(revision), entry))

    for _, entry in sorted(candidates, reverse=True):
        executable = entry / PLAYWRIGHT_EXECUTABLES[browser]
        if executable.exists():
            return str(executable)
    return None


def find_system_browser(browser: str) -> Optional[str]:
    for path in SYSTEM_PATHS.get(browser, []):
        if Path(path).exists():
            return path

    for command in PATH_COMMANDS.get(browser, []):
        found = shutil.which(command)
        if found:
            return found
    return None


def discover_browser(browser: str) -> Optional[str]:
    """Return an executable path for ``browser``, or None if none can be found."""
    if browser not in BROWSERS:
        return None

    path = find_playwright_browser(browser) or find_system_browser(browser)
    if path:
        logger.debug(f"Discovered {browser} at {path}")
    return path
