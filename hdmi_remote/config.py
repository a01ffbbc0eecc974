import logging
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Dict, Mapping

logger = logging.getLogger(__name__)

# --- Tunables (override via -e NAME=value) ---
DEFAULT_PORT = 5589
DEFAULT_PROFILE_DIR = os.path.join(os.path.expanduser("~"), ".chrome-hdmi-remote-profile")
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATEFMT = "%Y/%m/%d %H:%M:%S"
# ------------------------------------------------

CHROME_CANDIDATES = {
    "linux": [
        "/usr/bin/google-chrome",
        "/usr/bin/google-chrome-stable",
        "/usr/bin/chromium-browser",
        "/usr/bin/chromium",
    ],
    "darwin": [
        "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    ],
    "win32": [
        "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
        "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    ],
}

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def canonicalize(name) -> str:
    """Channel lookup key: lowercase, alphanumerics only ("E!" -> "e")."""
    return _NON_ALNUM.sub("", str(name or "").lower())


def env_bool(environ: Mapping[str, str], name: str, default: bool = False) -> bool:
    value = environ.get(name)
    if value is None:
        return default
    return str(value).lower() in ("1", "true", "yes", "on")


def env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {value!r}, using {default}")
        return default


@dataclass(frozen=True)
class ChannelPreset:
    name: str
    player_url: str | None = None
    ts_source_url: str | None = None


@dataclass(frozen=True)
class Settings:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    video_width: int = 1920
    video_height: int = 1080
    blackout_ms: int = 3000
    tune_delay_ms: int = 0
    fullscreen: bool = True
    kiosk: bool = True
    headless: bool = False
    default_url: str = ""
    profile_dir: str = DEFAULT_PROFILE_DIR
    chrome_bin: str | None = None
    navigation_timeout_ms: int = 90_000
    watchdog_interval_ms: int = 10_000
    nudge_cooldown_ms: int = 3000
    wait_poll_ms: int = 500
    video_ready_timeout_ms: int = 15_000
    player_controls_timeout_ms: int = 8000
    selector_timeout_ms: int = 5000
    tile_timeout_ms: int = 15_000
    playback_timeout_ms: int = 5000
    upstream_connect_timeout_ms: int = 10_000
    log_level: str = "INFO"
    presets: Dict[str, ChannelPreset] = field(default_factory=dict)

    @property
    def blackout(self) -> float:
        return self.blackout_ms / 1000

    @property
    def poll_interval(self) -> float:
        return self.wait_poll_ms / 1000

    def player_names(self) -> list:
        return [p.name for p in self.presets.values() if p.player_url]

    def ts_names(self) -> list:
        return [p.name for p in self.presets.values() if p.ts_source_url]


def load_presets(environ: Mapping[str, str]) -> Dict[str, ChannelPreset]:
    """
    Build channel presets from CHAN_<NAME> / TS_<NAME> entries.

    Both prefixes go through the same canonicalization, so CHAN_E! and
    TS_E describe one channel "e". Later keys overwrite earlier ones that
    canonicalize to the same name.
    """
    players: Dict[str, str] = {}
    sources: Dict[str, str] = {}
    for key, value in environ.items():
        if not value:
            continue
        if key.startswith("CHAN_"):
            name = canonicalize(key[len("CHAN_"):])
            if name:
                players[name] = value
        elif key.startswith("TS_"):
            name = canonicalize(key[len("TS_"):])
            if name:
                sources[name] = value

    presets = {}
    for name in list(players) + [n for n in sources if n not in players]:
        presets[name] = ChannelPreset(
            name=name,
            player_url=players.get(name),
            ts_source_url=sources.get(name),
        )
    return presets


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Read all tunables from the environment (or a plain mapping in tests)."""
    if environ is None:
        environ = os.environ

    port_raw = environ.get("HDMI_REMOTE_PORT") or environ.get("CC4C_PORT")
    port = DEFAULT_PORT
    if port_raw:
        try:
            port = int(port_raw)
        except ValueError:
            logger.warning(f"Invalid port {port_raw!r}, using {DEFAULT_PORT}")

    return Settings(
        host=environ.get("HDMI_REMOTE_HOST", "0.0.0.0"),
        port=port,
        video_width=env_int(environ, "VIDEO_WIDTH", 1920),
        video_height=env_int(environ, "VIDEO_HEIGHT", 1080),
        blackout_ms=env_int(environ, "BLACKOUT_MS", 3000),
        tune_delay_ms=env_int(environ, "TUNE_DELAY_MS", 0),
        fullscreen=env_bool(environ, "FULLSCREEN", True),
        kiosk=env_bool(environ, "KIOSK", True),
        headless=env_bool(environ, "HEADLESS", False),
        default_url=environ.get("DEFAULT_URL", ""),
        profile_dir=environ.get("PROFILE_DIR") or DEFAULT_PROFILE_DIR,
        chrome_bin=environ.get("CHROME_BIN") or None,
        navigation_timeout_ms=env_int(environ, "NAVIGATION_TIMEOUT_MS", 90_000),
        watchdog_interval_ms=env_int(environ, "WATCHDOG_INTERVAL_MS", 10_000),
        nudge_cooldown_ms=env_int(environ, "NUDGE_COOLDOWN_MS", 3000),
        wait_poll_ms=env_int(environ, "WAIT_POLL_MS", 500),
        video_ready_timeout_ms=env_int(environ, "VIDEO_READY_TIMEOUT_MS", 15_000),
        player_controls_timeout_ms=env_int(environ, "PLAYER_CONTROLS_TIMEOUT_MS", 8000),
        selector_timeout_ms=env_int(environ, "SELECTOR_TIMEOUT_MS", 5000),
        tile_timeout_ms=env_int(environ, "TILE_TIMEOUT_MS", 15_000),
        playback_timeout_ms=env_int(environ, "PLAYBACK_TIMEOUT_MS", 5000),
        upstream_connect_timeout_ms=env_int(environ, "UPSTREAM_CONNECT_TIMEOUT_MS", 10_000),
        log_level=environ.get("LOG_LEVEL", "INFO").upper(),
        presets=load_presets(environ),
    )


def detect_chrome_executable(override: str | None = None) -> str | None:
    """
    Find a local Chrome/Chromium binary.

    Returns:
        The override if it exists, else the first well-known install path
        for this platform, else None (Playwright's bundled Chromium).
    """
    if override and os.path.exists(override):
        return override
    if override:
        logger.warning(f"CHROME_BIN={override} does not exist, falling back to auto-detection")

    platform = "linux" if sys.platform.startswith("linux") else sys.platform
    for path in CHROME_CANDIDATES.get(platform, []):
        if os.path.exists(path):
            return path
    return None


def configure_logging(level: str = "INFO"):
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)


def log_settings(settings: Settings):
    """Print the selected settings at startup."""
    logger.info("=" * 60)
    logger.info("Selected settings")
    logger.info("=" * 60)
    logger.info(f"Port: {settings.port}")
    logger.info(f"Resolution: {settings.video_width}x{settings.video_height}")
    logger.info(f"Fullscreen(F11): {settings.fullscreen}")
    logger.info(f"Kiosk flag: {settings.kiosk}")
    logger.info(f"Blackout: {settings.blackout_ms}ms")
    logger.info(f"Default URL: {settings.default_url or '(none)'}")
    players = {p.name: p.player_url for p in settings.presets.values() if p.player_url}
    sources = {p.name: p.ts_source_url for p in settings.presets.values() if p.ts_source_url}
    logger.info(f"Presets: {players}")
    logger.info(f"TS sources: {sources}")
