"""
Shared fixtures: in-memory stand-ins for the Playwright page and browser
context, plus a fake clock so playbook timing runs instantly.
"""

import asyncio
from urllib.parse import urlsplit

import httpx
import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from hdmi_remote.config import load_settings
from hdmi_remote.playbooks import PlaybookRunner, Step
from hdmi_remote.session import SessionManager


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeMouse:
    def __init__(self, page):
        self.page = page

    async def move(self, x, y, steps=1):
        self.page.actions.append(("move", x, y))

    async def click(self, x, y, button="left"):
        self.page.actions.append(("click", x, y))


class FakeKeyboard:
    def __init__(self, page):
        self.page = page

    async def press(self, key):
        self.page.actions.append(("key", key))


class FakeHandle:
    def __init__(self, page, selector):
        self.page = page
        self.selector = selector

    async def click(self):
        self.page.actions.append(("click-selector", self.selector))

    async def is_visible(self):
        return True


class FakePage:
    """
    Records every input. `scripts` maps an in-page script to its result
    (a value, a callable taking the argument, or an exception to raise).
    """

    def __init__(self, scripts=None, selectors=(), fail_hosts=(), clock=None):
        self.clock = clock
        self.actions = []
        self.scripts = dict(scripts or {})
        self.selectors = set(selectors)
        self.fail_hosts = set(fail_hosts)
        self.closed = False
        self.url = "about:blank"
        self.mouse = FakeMouse(self)
        self.keyboard = FakeKeyboard(self)

    def is_closed(self):
        return self.closed

    async def bring_to_front(self):
        pass

    async def set_viewport_size(self, size):
        self.viewport = size

    async def goto(self, url, wait_until=None, timeout=None):
        if urlsplit(url).hostname in self.fail_hosts:
            raise PlaywrightError(f"net::ERR_NAME_NOT_RESOLVED at {url}")
        self.url = url
        self.actions.append(("goto", url))

    async def reload(self, wait_until=None, timeout=None):
        self.actions.append(("reload", self.url))

    async def evaluate(self, script, arg=None):
        self.actions.append(("evaluate", script))
        value = self.scripts.get(script)
        if isinstance(value, BaseException):
            raise value
        if callable(value):
            return value(arg)
        return value

    async def wait_for_selector(self, selector, timeout=None, state=None):
        for candidate in selector.split(", "):
            if candidate in self.selectors:
                return FakeHandle(self, candidate)
        if self.clock is not None and timeout:
            self.clock.now += timeout / 1000
        raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")

    async def query_selector(self, selector):
        if selector in self.selectors:
            return FakeHandle(self, selector)
        return None

    def keys(self):
        return [a[1] for a in self.actions if a[0] == "key"]

    def clicks(self):
        return [(a[1], a[2]) for a in self.actions if a[0] == "click"]


class FakeContext:
    def __init__(self, page_factory=FakePage):
        self.page_factory = page_factory
        self.pages = []
        self.handlers = {}
        self.closed = False

    def on(self, event, callback):
        self.handlers.setdefault(event, []).append(callback)

    def emit(self, event):
        for callback in self.handlers.get(event, []):
            callback(self)

    async def new_page(self):
        page = self.page_factory()
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True
        self.emit("close")


class FakeLauncher:
    def __init__(self, page_factory=FakePage, delay=0):
        self.page_factory = page_factory
        self.delay = delay
        self.started = 0
        self.contexts = []

    async def __call__(self):
        self.started += 1
        await asyncio.sleep(self.delay)
        context = FakeContext(self.page_factory)
        self.contexts.append(context)
        return context


class TrackingStream(httpx.AsyncByteStream):
    """Upstream body served chunk by chunk; records whether it was closed."""

    def __init__(self, chunks, error=None):
        self.chunks = list(chunks)
        self.error = error
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error:
            raise self.error

    async def aclose(self):
        self.closed = True


class Gate(Step):
    """Holds a playbook until released."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def run(self, page, runner):
        self.entered.set()
        await self.release.wait()
        return True


TEST_ENV = {
    "BLACKOUT_MS": "20",
    "WATCHDOG_INTERVAL_MS": "3600000",
    "NUDGE_COOLDOWN_MS": "3000",
    "WAIT_POLL_MS": "500",
    "VIDEO_READY_TIMEOUT_MS": "2000",
    "PLAYER_CONTROLS_TIMEOUT_MS": "1000",
    "SELECTOR_TIMEOUT_MS": "100",
    "TILE_TIMEOUT_MS": "1000",
    "PLAYBACK_TIMEOUT_MS": "1000",
    "CHAN_PHILO": "https://www.philo.com/player/player/channel/abc",
    "CHAN_E!": "https://www.usanetwork.com/live",
    "CHAN_GENERIC": "https://video.example.com/live",
    "TS_GENERIC": "http://encoder.local/0.ts",
    "TS_STREAMONLY": "http://encoder.local/1.ts",
}


@pytest.fixture
def settings():
    return load_settings(TEST_ENV)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runner(settings, clock):
    return PlaybookRunner(settings, sleep=clock.sleep, clock=clock)


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def sessions(settings, launcher):
    return SessionManager(settings, launcher=launcher)
