import asyncio
import logging
from typing import Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from .config import Settings, detect_chrome_executable
from .errors import SessionError

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Owns the one browser context and the one page the remote drives.

    Callers never keep the page across an await that could span a
    reconnect; they ask ensure_session() again. A context "close" event
    (crash, window closed, profile lock lost) clears both handles so the
    next call launches a fresh browser.
    """

    def __init__(self, settings: Settings, launcher=None):
        self.settings = settings
        self._launcher = launcher or self._launch_chromium
        self._playwright = None
        self._context = None
        self._page = None
        self._lock = asyncio.Lock()
        self._opening: Optional[asyncio.Task] = None
        self.generation = 0

    @property
    def has_session(self) -> bool:
        return self._context is not None

    @property
    def current_page(self):
        """The page as last created; may be None or already closed."""
        return self._page

    def chrome_args(self) -> list:
        s = self.settings
        return [
            f"--window-size={s.video_width},{s.video_height}",
            "--window-position=0,0",
            "--start-fullscreen",
            "--no-default-browser-check",
            "--no-first-run",
            "--disable-infobars",
            "--disable-session-crashed-bubble",
            "--autoplay-policy=no-user-gesture-required",
            "--force-webrtc-ip-handling-policy=default_public_interface_only",
            "--kiosk" if s.kiosk else "--start-maximized",
            "--disable-blink-features=AutomationControlled",
        ]

    async def _launch_chromium(self):
        if self._playwright is None:
            self._playwright = await async_playwright().start()

        executable = detect_chrome_executable(self.settings.chrome_bin)
        if executable:
            logger.info(f"Using browser executable: {executable}")
        else:
            logger.warning("No local Chrome found; using Playwright's bundled Chromium")

        return await self._playwright.chromium.launch_persistent_context(
            self.settings.profile_dir,
            executable_path=executable,
            headless=self.settings.headless,
            no_viewport=True,
            ignore_default_args=["--enable-automation"],
            args=self.chrome_args(),
        )

    def _on_disconnect(self, context):
        if context is not self._context:
            return
        logger.warning("[browser] disconnected")
        self._context = None
        self._page = None

    async def ensure_session(self):
        """
        Return a live page, launching the browser or opening a tab if needed.

        The launch runs in a task owned by the manager; callers wait on it
        through asyncio.shield, so a caller cancelled mid-launch (a
        superseded tune) never leaves a half-started browser behind.
        Concurrent callers all receive the same page. The page is open at
        return time; nothing more is promised.
        """
        page = self._page
        if page is not None and not page.is_closed():
            return page

        task = self._opening
        if task is None or task.done():
            task = asyncio.ensure_future(self._open())
            self._opening = task
        return await asyncio.shield(task)

    async def _open(self):
        async with self._lock:
            page = self._page
            if page is not None and not page.is_closed():
                return page

            if self._context is None:
                try:
                    context = await self._launcher()
                except Exception as e:
                    raise SessionError(f"failed to launch browser: {e}") from e
                context.on("close", lambda _ctx=None, c=context: self._on_disconnect(c))
                self._context = context
                self.generation += 1
                logger.info(f"[browser] session {self.generation} started")

            context = self._context
            try:
                pages = [p for p in context.pages if not p.is_closed()]
                page = pages[0] if pages else await context.new_page()
            except PlaywrightError as e:
                self._on_disconnect(context)
                raise SessionError(f"failed to open page: {e}") from e

            try:
                await page.set_viewport_size({
                    "width": self.settings.video_width,
                    "height": self.settings.video_height,
                })
            except PlaywrightError as e:
                logger.warning(f"failed to set viewport (probably fine): {e}")

            self._page = page
            return page

    async def close(self):
        """Shut the browser down (application shutdown only)."""
        opening = self._opening
        if opening is not None and not opening.done():
            await asyncio.wait([opening])
        async with self._lock:
            context, self._context, self._page = self._context, None, None
            if context is not None:
                try:
                    await context.close()
                except PlaywrightError as e:
                    logger.warning(f"[browser] error during close: {e}")
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
