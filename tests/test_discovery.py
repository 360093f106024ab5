"""Tests for browser executable discovery."""

from unittest.mock import patch

from bwsr.browser import discovery
from bwsr.browser.discovery import (
    PLAYWRIGHT_EXECUTABLES,
    discover_browser,
    find_playwright_browser,
    find_system_browser,
    playwright_cache_dir,
)


def make_install(cache_dir, browser, revision):
    executable = cache_dir / f"{browser}-{revision}" / PLAYWRIGHT_EXECUTABLES[browser]
    executable.parent.mkdir(parents=True, exist_ok=True)
    executable.touch()
    return executable


class TestPlaywrightCache:

    def test_newest_revision_wins(self, tmp_path):
        make_install(tmp_path, "chromium", 1090)
        newest = make_install(tmp_path, "chromium", 1124)
        make_install(tmp_path, "firefox", 1400)

        assert find_playwright_browser("chromium", tmp_path) == str(newest)

    def test_skips_incomplete_install(self, tmp_path):
        older = make_install(tmp_path, "chromium", 1090)
        (tmp_path / "chromium-1200").mkdir()

        assert find_playwright_browser("chromium", tmp_path) == str(older)

    def test_ignores_non_revision_directories(self, tmp_path):
        (tmp_path / "chromium_headless_shell-1124").mkdir()
        (tmp_path / "ffmpeg-1009").mkdir()

        assert find_playwright_browser("chromium", tmp_path) is None

    def test_missing_cache(self, tmp_path):
        assert find_playwright_browser("chromium", tmp_path / "nope") is None

    def test_cache_dir_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PLAYWRIGHT_BROWSERS_PATH", str(tmp_path))
        assert playwright_cache_dir() == tmp_path


class TestSystemBrowser:

    def test_known_location(self, tmp_path):
        chrome = tmp_path / "google-chrome"
        chrome.touch()

        with patch.dict(discovery.SYSTEM_PATHS, {"chromium": [str(tmp_path / "missing"), str(chrome)]}):
            assert find_system_browser("chromium") == str(chrome)

    def test_falls_back_to_path(self):
        with patch.dict(discovery.SYSTEM_PATHS, {"firefox": []}), \
             patch("bwsr.browser.discovery.shutil.which", return_value="/usr/local/bin/firefox"):
            assert find_system_browser("firefox") == "/usr/local/bin/firefox"

    def test_nothing_found(self):
        with patch.dict(discovery.SYSTEM_PATHS, {"firefox": []}), \
             patch("bwsr.browser.discovery.shutil.which", return_value=None):
            assert find_system_browser("firefox") is None


class TestDiscoverBrowser:

    def test_prefers_playwright_build(self):
        with patch("bwsr.browser.discovery.find_playwright_browser", return_value="/cache/chrome"), \
             patch("bwsr.browser.discovery.find_system_browser", return_value="/usr/bin/chromium"):
            assert discover_browser("chromium") == "/cache/chrome"

    def test_falls_back_to_system(self):
        with patch("bwsr.browser.discovery.find_playwright_browser", return_value=None), \
             patch("bwsr.browser.discovery.find_system_browser", return_value="/usr/bin/chromium"):
            assert discover_browser("chromium") == "/usr/bin/chromium"

    def test_unknown_browser(self):
        assert discover_browser("netscape") is None
