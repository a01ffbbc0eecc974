import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .config import Settings, canonicalize
from .errors import InteractionError

logger = logging.getLogger(__name__)

# ========== In-page scripts ==========

PREDICATES = {
    "video-ready": """() => Array.from(document.querySelectorAll('video'))
        .some((v) => v.readyState >= 2)""",
    "video-playing": """() => Array.from(document.querySelectorAll('video'))
        .some((v) => !v.paused && !v.ended && v.readyState >= 2)""",
    # Only "stalled" when there is a video and none of them advances.
    "video-stalled": """() => {
        const vids = Array.from(document.querySelectorAll('video'));
        if (!vids.length) return false;
        return !vids.some((v) => !v.paused && !v.ended && v.readyState >= 2);
    }""",
    "player-controls": """() => !!(
        document.querySelector('video') ||
        document.querySelector('.vjs-play-control') ||
        document.querySelector('.vjs-big-play-button'))""",
}

PLAYBACK_STATE = """() => {
    const vids = Array.from(document.querySelectorAll('video'));
    return {
        hasVideo: vids.length > 0,
        anyPlaying: vids.some((v) => !v.paused && !v.ended && v.readyState >= 2),
    };
}"""

UNMUTE_AND_PLAY = """() => {
    const vids = Array.from(document.querySelectorAll('video'));
    let anyMuted = false;
    for (const v of vids) {
        try {
            v.muted = false;
            v.volume = 1.0;
            if (v.readyState >= 2 && v.paused) v.play().catch(() => {});
            if (v.muted || v.volume === 0) anyMuted = true;
        } catch (e) {}
    }
    let clickedMute = false;
    let clickedPlay = false;
    const muteBtn = document.querySelector('.vjs-mute-control') ||
        document.querySelector('button[aria-label*="Mute"]');
    if (muteBtn instanceof HTMLElement) { muteBtn.click(); clickedMute = true; }
    const playBtn = document.querySelector('.vjs-play-control.vjs-paused') ||
        document.querySelector('.vjs-big-play-button');
    if (playBtn instanceof HTMLElement) { playBtn.click(); clickedPlay = true; }
    if (!vids.length) anyMuted = true;
    return {anyMuted, sawVideo: vids.length > 0, clickedMute, clickedPlay};
}"""

CLICK_TILE = """({selector, label}) => {
    const target = label.toUpperCase();
    for (const el of Array.from(document.querySelectorAll(selector))) {
        const aria = (el.getAttribute('aria-label') || '').toUpperCase();
        if (!aria.includes(target)) continue;
        const clickable = el.closest('button, a, [role="button"]') || el;
        clickable.scrollIntoView({block: 'center', inline: 'center'});
        clickable.click();
        return true;
    }
    return false;
}"""

REQUEST_FULLSCREEN = """() => {
    const vid = document.querySelector('video');
    if (vid && vid.requestFullscreen) { vid.requestFullscreen(); return true; }
    return false;
}"""

FULLSCREEN_SELECTORS = (
    ".vjs-fullscreen-control",
    "button.vjs-fullscreen-control",
    'button[title="Fullscreen"]',
    'button[aria-label*="Full screen" i]',
    'button[aria-label*="Fullscreen" i]',
    'button[aria-label*="Full Screen" i]',
)

# Fractions of the output resolution
CENTER = (0.5, 0.5)
TOP_RIGHT = (0.995, 0.01)
PHILO_JUMP = (0.9375, 0.5)  # 1800,540 at 1920x1080

# ========== Steps ==========


class Step:
    """
    One action of a playbook.

    run() returns True when the step did its job and False when it gave
    up on a timeout. Anything it raises that is not a timeout aborts the
    rest of the playbook.
    """

    def describe(self) -> str:
        return type(self).__name__

    async def run(self, page, runner: "PlaybookRunner") -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class WaitFor(Step):
    predicate: str
    timeout: float

    def describe(self) -> str:
        return f"WaitFor({self.predicate})"

    async def run(self, page, runner):
        return await runner.poll(page, self.predicate, self.timeout)


@dataclass(frozen=True)
class Delay(Step):
    seconds: float

    def describe(self) -> str:
        return f"Delay({self.seconds}s)"

    async def run(self, page, runner):
        await runner.sleep(self.seconds)
        return True


@dataclass(frozen=True)
class Click(Step):
    x: float
    y: float
    move_steps: int = 1

    def describe(self) -> str:
        return f"Click({self.x},{self.y})"

    async def run(self, page, runner):
        px, py = runner.point(self.x, self.y)
        await page.mouse.move(px, py, steps=self.move_steps)
        await page.mouse.click(px, py, button="left")
        logger.info(f"[{runner.label}] clicked at {px},{py}")
        return True


@dataclass(frozen=True)
class MovePointer(Step):
    x: float
    y: float
    move_steps: int = 1

    def describe(self) -> str:
        return f"MovePointer({self.x},{self.y})"

    async def run(self, page, runner):
        px, py = runner.point(self.x, self.y)
        await page.mouse.move(px, py, steps=self.move_steps)
        return True


@dataclass(frozen=True)
class KeyPress(Step):
    key: str

    def describe(self) -> str:
        return f"KeyPress({self.key})"

    async def run(self, page, runner):
        await page.keyboard.press(self.key)
        logger.info(f"[{runner.label}] sent \"{self.key}\" key")
        return True


@dataclass(frozen=True)
class SystemFullscreen(Step):
    """Browser-level fullscreen (F11), skipped when FULLSCREEN is off."""

    async def run(self, page, runner):
        if not runner.settings.fullscreen:
            return True
        await page.bring_to_front()
        await page.keyboard.press("F11")
        return True


@dataclass(frozen=True)
class RunScript(Step):
    script: str
    label: str = "script"

    def describe(self) -> str:
        return f"RunScript({self.label})"

    async def run(self, page, runner):
        result = await page.evaluate(self.script)
        logger.info(f"[{runner.label}] {self.label} -> {result}")
        return True


@dataclass(frozen=True)
class Unmute(Step):
    """In-page unmute + play, then the player's mute key if still muted."""

    key: str = "m"

    async def run(self, page, runner):
        state = await page.evaluate(UNMUTE_AND_PLAY) or {}
        logger.info(
            f"[{runner.label}] in-page unmute/play: sawVideo={state.get('sawVideo')}, "
            f"clickedMute={state.get('clickedMute')}, clickedPlay={state.get('clickedPlay')}, "
            f"anyMuted={state.get('anyMuted')}"
        )
        if state.get("anyMuted", True):
            await runner.sleep(0.15)
            await page.keyboard.press(self.key)
            logger.info(f"[{runner.label}] sent \"{self.key}\" key to toggle mute")
        return True


@dataclass(frozen=True)
class ClickSelector(Step):
    """
    Click the first candidate selector that is visible, else run the fallback.

    All candidates share one wait of `timeout` seconds (a CSS selector
    list); once any shows up the highest-priority visible one is clicked.
    """

    selectors: Tuple[str, ...]
    timeout: float
    fallback: Tuple[Step, ...] = ()

    def describe(self) -> str:
        return f"ClickSelector({len(self.selectors)} candidates)"

    async def _first_visible(self, page):
        for selector in self.selectors:
            handle = await page.query_selector(selector)
            if handle is not None and await handle.is_visible():
                return selector, handle
        return None, None

    async def run(self, page, runner):
        try:
            found = await page.wait_for_selector(
                ", ".join(self.selectors), timeout=self.timeout * 1000, state="visible"
            )
        except PlaywrightTimeoutError:
            found = None

        if found is not None:
            selector, handle = await self._first_visible(page)
            if handle is None:
                selector, handle = "selector list", found
            await handle.click()
            logger.info(f"[{runner.label}] clicked {selector}")
            return True

        for step in self.fallback:
            await step.run(page, runner)
        return True


@dataclass(frozen=True)
class ClickTile(Step):
    """Click a grid tile by aria-label (provider EPG pages)."""

    selector: str
    label: str
    timeout: float

    def describe(self) -> str:
        return f"ClickTile({self.label})"

    async def run(self, page, runner):
        await page.wait_for_selector(self.selector, timeout=self.timeout * 1000)
        clicked = await page.evaluate(CLICK_TILE, {"selector": self.selector, "label": self.label})
        if clicked:
            logger.info(f"[{runner.label}] clicked {self.label} tile")
        else:
            logger.warning(f"[{runner.label}] no matching {self.label} tile found")
        return True


@dataclass(frozen=True)
class Nudge(Step):
    """
    Repeated-nudge loop for autoplay-gated players.

    Polls whether any media element is advancing. While a <video> exists
    but nothing plays, clicks up to `attempts` times with a fixed backoff.
    Gives up after `timeout` seconds.
    """

    timeout: float
    click: Click = Click(*CENTER, move_steps=18)
    attempts: int = 1
    interval: float = 0.4

    def describe(self) -> str:
        return "Nudge(playback)"

    async def run(self, page, runner):
        deadline = runner.clock() + self.timeout
        clicks = 0
        while runner.clock() < deadline:
            state = await page.evaluate(PLAYBACK_STATE) or {}
            if state.get("hasVideo") and state.get("anyPlaying"):
                logger.info(f"[{runner.label}] video appears to be playing")
                return True
            if state.get("hasVideo") and clicks < self.attempts:
                await self.click.run(page, runner)
                clicks += 1
            await runner.sleep(self.interval)
        logger.warning(f"[{runner.label}] timeout waiting for video to start playing")
        return False


# ========== Playbooks & registries ==========


@dataclass(frozen=True)
class Playbook:
    name: str
    steps: Tuple[Step, ...]
    hosts: Tuple[str, ...] = ()
    # Single input the watchdog re-applies when the player stalls by itself
    recovery: Optional[Step] = None
    recovery_cooldown: float = 0.0

    def matches(self, host: str) -> bool:
        return any(pattern in host for pattern in self.hosts)


def hostname(url) -> str:
    try:
        return (urlsplit(str(url or "")).hostname or "").lower()
    except ValueError:
        return ""


class PlaybookRegistry:
    """Priority-ordered (host pattern, playbook) table with a fallback."""

    def __init__(self, playbooks: Iterable[Playbook], fallback: Playbook):
        self.playbooks = list(playbooks)
        self.fallback = fallback

    def select(self, url) -> Playbook:
        host = hostname(url)
        if host:
            for playbook in self.playbooks:
                if playbook.matches(host):
                    return playbook
        return self.fallback

    def names(self) -> List[str]:
        return [p.name for p in self.playbooks] + [self.fallback.name]


@dataclass(frozen=True)
class Hook:
    host: str
    channel: str
    steps: Tuple[Step, ...]


class HookRegistry:
    """Post-navigate hooks keyed by (host pattern, canonical channel name)."""

    def __init__(self, hooks: Iterable[Hook] = ()):
        self.hooks = list(hooks)

    def find(self, url, channel) -> Optional[Hook]:
        if not channel:
            return None
        host = hostname(url)
        name = canonicalize(channel)
        for hook in self.hooks:
            if hook.host in host and hook.channel == name:
                return hook
        return None


def default_registry(settings: Settings) -> PlaybookRegistry:
    """Built-in provider playbooks, timeouts taken from settings."""
    playback = Nudge(timeout=settings.playback_timeout_ms / 1000)

    philo = Playbook(
        name="philo",
        hosts=("philo.com",),
        steps=(
            WaitFor("video-ready", settings.video_ready_timeout_ms / 1000),
            SystemFullscreen(),
            Delay(0.5),
            Click(*PHILO_JUMP, move_steps=40),
        ),
        recovery=Click(*PHILO_JUMP, move_steps=15),
        recovery_cooldown=settings.nudge_cooldown_ms / 1000,
    )
    abc = Playbook(
        name="abc",
        hosts=("abc.com", "abc.go.com", "abc7ny.com"),
        steps=(
            SystemFullscreen(),
            Delay(1.5),
            Click(*CENTER, move_steps=30),
            WaitFor("player-controls", settings.player_controls_timeout_ms / 1000),
            Unmute(),
            Delay(0.25),
            KeyPress("f"),
            MovePointer(*TOP_RIGHT, move_steps=30),
            playback,
        ),
    )
    nbcu = Playbook(
        name="nbcu",
        hosts=("usanetwork.com", "syfy.com", "nbc.com"),
        steps=(
            SystemFullscreen(),
            Delay(0.5),
            Click(*CENTER, move_steps=25),
            Delay(0.25),
            KeyPress("f"),
            Delay(0.25),
            MovePointer(*TOP_RIGHT, move_steps=25),
            playback,
        ),
    )
    generic = Playbook(
        name="generic",
        steps=(
            SystemFullscreen(),
            ClickSelector(
                FULLSCREEN_SELECTORS,
                timeout=settings.selector_timeout_ms / 1000,
                fallback=(KeyPress("f"), RunScript(REQUEST_FULLSCREEN, "video.requestFullscreen()")),
            ),
            playback,
        ),
    )
    return PlaybookRegistry([philo, abc, nbcu], fallback=generic)


def default_hooks(settings: Settings) -> HookRegistry:
    tile_timeout = settings.tile_timeout_ms / 1000
    return HookRegistry([
        # USA Network live page shows SYFY / E! as tiles before any player
        Hook("usanetwork.com", "syfy", (
            Delay(3),
            ClickTile(".epg-tile-container.selectable .tile-info[aria-label]", "SYFY", tile_timeout),
            Delay(1),
        )),
        Hook("usanetwork.com", "e", (
            Delay(1),
            ClickTile("div.tile-info[aria-label]", "E!-EAST", tile_timeout),
            Delay(1),
        )),
    ])


# ========== Runner ==========


@dataclass
class RunReport:
    executed: List[str] = field(default_factory=list)
    timed_out: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self.failed_step is not None


class PlaybookRunner:
    """Executes steps in order against one page; sleep and clock are injectable."""

    def __init__(self, settings: Settings, sleep=asyncio.sleep, clock=time.monotonic, label: str = "playbook"):
        self.settings = settings
        self.sleep = sleep
        self.clock = clock
        self.label = label

    def point(self, x: float, y: float) -> Tuple[int, int]:
        return round(x * self.settings.video_width), round(y * self.settings.video_height)

    async def poll(self, page, predicate: str, timeout: float) -> bool:
        script = PREDICATES[predicate]
        deadline = self.clock() + timeout
        while True:
            if await page.evaluate(script):
                return True
            remaining = deadline - self.clock()
            if remaining <= 0:
                logger.info(f"[{self.label}] timeout waiting for {predicate}; continuing")
                return False
            await self.sleep(min(self.settings.poll_interval, remaining))

    async def check(self, page, predicate: str) -> bool:
        return bool(await page.evaluate(PREDICATES[predicate]))

    def labelled(self, label: str) -> "PlaybookRunner":
        return PlaybookRunner(self.settings, sleep=self.sleep, clock=self.clock, label=label)

    async def run(self, page, steps: Iterable[Step]) -> RunReport:
        report = RunReport()
        for step in steps:
            name = step.describe()
            try:
                completed = await step.run(page, self)
            except (PlaywrightTimeoutError, asyncio.TimeoutError) as e:
                logger.info(f"[{self.label}] {name} timed out ({e}); continuing")
                report.timed_out.append(name)
                continue
            except Exception as e:
                error = InteractionError(name, e)
                logger.warning(f"[{self.label}] FAILED({error}); skipping remaining steps")
                report.failed_step = name
                report.error = str(e)
                break
            report.executed.append(name)
            if not completed:
                report.timed_out.append(name)
        return report
