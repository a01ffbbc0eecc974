import asyncio
import logging
import time
from typing import Dict, Optional

from .playbooks import PlaybookRegistry, PlaybookRunner
from .session import SessionManager
from .tuner import Tuner

logger = logging.getLogger(__name__)


class Watchdog:
    """
    Periodic supervisor for the shared browser session.

    Each tick either rebuilds a dead page or, for providers whose players
    pause themselves, applies the playbook's single recovery input. It
    never touches the page while a tune is running, and never nudges one
    provider more often than its cool-down.
    """

    def __init__(
        self,
        sessions: SessionManager,
        tuner: Tuner,
        registry: PlaybookRegistry,
        interval: float,
        runner: Optional[PlaybookRunner] = None,
        clock=time.monotonic,
    ):
        self.sessions = sessions
        self.tuner = tuner
        self.registry = registry
        self.interval = interval
        self.runner = (runner or tuner.runner).labelled("watchdog")
        self.clock = clock
        self._last_nudge: Dict[str, float] = {}
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> str:
        if not self.sessions.has_session:
            return "no-session"

        page = self.sessions.current_page
        if page is None or page.is_closed():
            logger.warning("[watchdog] page missing, recreating")
            await self.sessions.ensure_session()
            return "rebuilt"

        if self.tuner.busy:
            return "busy"

        url = self.tuner.status.current_url
        if not url:
            return "not-applicable"
        playbook = self.registry.select(url)
        if playbook.recovery is None:
            return "not-applicable"

        now = self.clock()
        last = self._last_nudge.get(playbook.name)
        if last is not None and now - last < playbook.recovery_cooldown:
            return "cooling-down"

        if not await self.runner.check(page, "video-stalled"):
            return "playing"

        # A tune may have started while we were evaluating
        if self.tuner.busy:
            return "busy"

        self._last_nudge[playbook.name] = now
        await page.bring_to_front()
        await playbook.recovery.run(page, self.runner.labelled(playbook.name))
        logger.info(f"[{playbook.name}] video appears stopped/paused; applied recovery nudge")
        return "nudged"

    async def run(self):
        logger.info(f"[watchdog] started, interval {self.interval}s")
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except Exception as e:
                logger.warning(f"[watchdog] error: {e}")

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self.run())

    async def stop(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.wait([task])
