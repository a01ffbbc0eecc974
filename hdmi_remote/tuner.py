import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from playwright.async_api import Error as PlaywrightError

from .config import Settings, canonicalize
from .errors import NavigationError, SessionError
from .playbooks import HookRegistry, PlaybookRegistry, PlaybookRunner
from .session import SessionManager

logger = logging.getLogger(__name__)


class TuneState(str, Enum):
    IDLE = "idle"
    NAVIGATING = "navigating"
    POST_NAVIGATE_HOOK = "post_navigate_hook"
    RUNNING_PLAYBOOK = "running_playbook"
    DONE = "done"
    FAILED = "failed"
    SUPERSEDED = "superseded"


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class TuningStatus:
    current_url: Optional[str] = None
    current_channel: Optional[str] = None
    last_tune_at: Optional[datetime] = None

    def _next_timestamp(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self.last_tune_at is not None and now <= self.last_tune_at:
            now = self.last_tune_at + timedelta(microseconds=1)
        return now

    def mark(self, url: str, channel: Optional[str]) -> datetime:
        """Record a completed tune; timestamps strictly increase."""
        self.current_url = url
        self.current_channel = channel
        self.last_tune_at = self._next_timestamp()
        return self.last_tune_at

    def touch(self) -> datetime:
        self.last_tune_at = self._next_timestamp()
        return self.last_tune_at


@dataclass
class TuneResult:
    state: TuneState
    url: str
    channel: Optional[str] = None
    playbook: Optional[str] = None
    failed_step: Optional[str] = None
    error: Optional[str] = None
    timed_out_steps: List[str] = field(default_factory=list)
    # Probe after the playbook; informational only, DONE does not depend on it
    confirmed_playback: Optional[bool] = None
    last_tune_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.state == TuneState.DONE

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "state": self.state.value,
            "url": self.url,
            "name": self.channel,
            "playbook": self.playbook,
            "failedStep": self.failed_step,
            "error": self.error,
            "timedOutSteps": list(self.timed_out_steps),
            "confirmedPlayback": self.confirmed_playback,
            "lastTuneAt": isoformat(self.last_tune_at),
        }


class Tuner:
    """
    Takes a URL (and optional channel name) to "video playing full-screen".

    Only one tune runs at a time. The latest request owns the single
    task slot: submitting a new tune cancels the one in flight, waits for
    it to unwind, then navigates. A cancelled tune reports SUPERSEDED and
    leaves TuningStatus alone.
    """

    def __init__(
        self,
        sessions: SessionManager,
        registry: PlaybookRegistry,
        hooks: HookRegistry,
        settings: Settings,
        runner: Optional[PlaybookRunner] = None,
    ):
        self.sessions = sessions
        self.registry = registry
        self.hooks = hooks
        self.settings = settings
        self.runner = runner or PlaybookRunner(settings)
        self.status = TuningStatus()
        self.state = TuneState.IDLE
        self._task: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, url: str, channel: Optional[str] = None) -> asyncio.Task:
        """Start a tune in the background, superseding any tune in flight."""
        if not url:
            raise ValueError("No URL provided and DEFAULT_URL is empty")
        previous = self._task
        task = asyncio.ensure_future(self._run(url, channel, previous))
        self._task = task
        return task

    async def tune_to(self, url: str, channel: Optional[str] = None) -> TuneResult:
        # Shielded: a caller going away must not cancel the browser work
        return await asyncio.shield(self.submit(url, channel))

    def _enter(self, state: TuneState):
        self.state = state

    async def _run(self, url, channel, previous) -> TuneResult:
        name = canonicalize(channel) if channel else None
        result = TuneResult(state=TuneState.NAVIGATING, url=url, channel=name)
        try:
            if previous is not None and not previous.done():
                logger.info(f"[tune] superseding in-flight tune for {url}")
                previous.cancel()
                await asyncio.wait([previous])
            return await self._tune(url, name, result)
        except asyncio.CancelledError:
            logger.info(f"[tune] {url} superseded by a newer tune request")
            result.state = TuneState.SUPERSEDED
            return result
        finally:
            if self._task is asyncio.current_task():
                self._enter(TuneState.IDLE)

    async def _tune(self, url: str, name: Optional[str], result: TuneResult) -> TuneResult:
        logger.info(f"tuning to {url}")

        self._enter(TuneState.NAVIGATING)
        try:
            page = await self.sessions.ensure_session()
            await page.bring_to_front()
            await page.goto(url, wait_until="load", timeout=self.settings.navigation_timeout_ms)
        except Exception as e:
            error = NavigationError(url, e)
            logger.error(f"[tune] FAILED(navigate): {error}")
            self._enter(TuneState.FAILED)
            result.state = TuneState.FAILED
            result.failed_step = "navigate"
            result.error = str(error)
            return result

        hook = self.hooks.find(url, name)
        if hook is not None:
            self._enter(TuneState.POST_NAVIGATE_HOOK)
            logger.info(f"[epg] post-navigate hook for {name} on {hook.host}")
            try:
                page = await self.sessions.ensure_session()
                report = await self.runner.labelled("epg").run(page, hook.steps)
                if report.aborted:
                    logger.warning(f"[epg] hook stopped at {report.failed_step}: {report.error}")
            except SessionError as e:
                logger.warning(f"[epg] post-navigate hook error: {e}")

        playbook = self.registry.select(url)
        result.playbook = playbook.name
        self._enter(TuneState.RUNNING_PLAYBOOK)
        logger.info(f"[tune] {url} -> playbook '{playbook.name}'")
        try:
            page = await self.sessions.ensure_session()
            report = await self.runner.labelled(playbook.name).run(page, playbook.steps)
            result.timed_out_steps = report.timed_out
            if report.aborted:
                result.failed_step = report.failed_step
                result.error = report.error
            result.confirmed_playback = await self._probe_playback(page)
        except SessionError as e:
            logger.warning(f"[tune] FAILED(playbook): {e}")
            result.failed_step = "session"
            result.error = str(e)

        result.last_tune_at = self.status.mark(url, name)
        result.state = TuneState.DONE
        self._enter(TuneState.DONE)
        logger.info(f"page is now at {url}")
        return result

    async def _probe_playback(self, page) -> Optional[bool]:
        try:
            return await self.runner.check(page, "video-playing")
        except PlaywrightError as e:
            logger.info(f"[tune] playback probe failed: {e}")
            return None

    async def reload(self) -> datetime:
        """Reload the current page in place."""
        page = self.sessions.current_page
        if page is None or page.is_closed():
            raise SessionError("No active page")
        await page.reload(wait_until="load", timeout=self.settings.navigation_timeout_ms)
        return self.status.touch()
