"""Shared fixtures: an isolated BWSR_HOME and an in-memory stand-in for Playwright."""

import shutil
import tempfile
from functools import partial
from pathlib import Path

import pytest

from bwsr.config import Settings, reload_settings
from bwsr.daemon.server import Watchdog
from bwsr.profile import Profile, ProfileManager
from bwsr.wrapper import SessionWrapper

FAKE_EXECUTABLE = "/opt/fake/chromium"


class MockPage:
    pass


class MockContext:
    def __init__(self, options: dict):
        self.options = options
        self.pages: list[MockPage] = []
        self.closed = False
        self.fail_close = False

    async def new_page(self) -> MockPage:
        page = MockPage()
        self.pages.append(page)
        return page

    async def close(self) -> None:
        if self.fail_close:
            raise RuntimeError("context already gone")
        self.closed = True


class MockBrowser:
    def __init__(self, options: dict):
        self.launch_options = options
        self.contexts: list[MockContext] = []
        self.connected = True

    def is_connected(self) -> bool:
        return self.connected

    async def new_context(self, **options) -> MockContext:
        context = MockContext(options)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.connected = False


class MockBrowserType:
    def __init__(self, name: str, fail: Exception = None):
        self.name = name
        self.fail = fail
        self.launched: list[MockBrowser] = []

    async def launch(self, **options) -> MockBrowser:
        if self.fail is not None:
            raise self.fail
        browser = MockBrowser(options)
        self.launched.append(browser)
        return browser


class MockPlaywright:
    def __init__(self, fail: Exception = None):
        self.chromium = MockBrowserType("chromium", fail)
        self.firefox = MockBrowserType("firefox", fail)
        self.webkit = MockBrowserType("webkit", fail)
        self.stopped = False

    async def stop(self) -> None:
        self.stopped = True


class MockPlaywrightFactory:
    """Replaces ``async_playwright``: ``factory().start()`` yields a MockPlaywright."""

    def __init__(self, fail: Exception = None):
        self.fail = fail
        self.instances: list[MockPlaywright] = []

    def __call__(self):
        return self

    async def start(self) -> MockPlaywright:
        playwright = MockPlaywright(self.fail)
        self.instances.append(playwright)
        return playwright

    @property
    def browsers(self) -> list[MockBrowser]:
        return [b for pw in self.instances for b in pw.chromium.launched]


@pytest.fixture
def bwsr_home(monkeypatch):
    # Unix socket paths are capped near 100 bytes, pytest's tmp_path can exceed that
    home = Path(tempfile.mkdtemp(prefix="bwsr-"))
    monkeypatch.setenv("BWSR_HOME", str(home))
    reload_settings()
    yield home
    shutil.rmtree(home, ignore_errors=True)


@pytest.fixture
def settings(bwsr_home) -> Settings:
    return Settings(
        home=bwsr_home,
        poll_interval=0.05,
        idle_grace_period=30.0,
        probe_timeout=0.5,
        request_timeout=2.0,
        start_timeout=5.0,
        bootstrap_attempts=5,
        bootstrap_delay=0.01,
    )


@pytest.fixture
def fake_playwright() -> MockPlaywrightFactory:
    return MockPlaywrightFactory()


@pytest.fixture
def profiles(settings) -> ProfileManager:
    manager = ProfileManager(settings.paths.profiles)
    manager.create("default", Profile(executable=FAKE_EXECUTABLE))
    return manager


@pytest.fixture
def make_watchdog(settings, profiles, fake_playwright):
    """Build a Watchdog whose sessions launch MockBrowsers."""

    def _make(playwright_factory=None, **overrides) -> Watchdog:
        factory = playwright_factory or fake_playwright
        return Watchdog(
            settings.model_copy(update=overrides) if overrides else settings,
            wrapper_factory=partial(SessionWrapper, playwright_factory=factory),
        )

    return _make
