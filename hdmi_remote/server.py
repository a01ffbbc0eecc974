import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from playwright.async_api import Error as PlaywrightError
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .config import Settings, canonicalize, configure_logging, load_settings, log_settings
from .errors import ConfigError, MissingPlayerUrl, SessionError, UnknownChannel
from .playbooks import HookRegistry, PlaybookRegistry, PlaybookRunner, default_hooks, default_registry
from .proxy import StreamProxy
from .session import SessionManager
from .tuner import TuneState, Tuner, isoformat
from .watchdog import Watchdog

logger = logging.getLogger(__name__)

TUNE_STATUS_CODES = {
    TuneState.DONE: 200,
    TuneState.FAILED: 500,
    TuneState.SUPERSEDED: 409,
}


# Pydantic models for API
class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthModel(ApiModel):
    ok: bool = True
    up_since: str
    current_url: Optional[str] = None
    last_tune_at: Optional[str] = None


class StatusModel(ApiModel):
    ok: bool = True
    current_url: Optional[str] = None
    last_tune_at: Optional[str] = None
    current_channel: Optional[str] = None
    state: str
    presets: List[str]
    ts_sources: List[str]


class ChannelModel(ApiModel):
    name: str
    player_url: Optional[str] = None
    ts_source_url: Optional[str] = None
    stream_path: Optional[str] = None


class ChannelListModel(ApiModel):
    ok: bool = True
    channels: List[ChannelModel]


class AccessLogMiddleware:
    """
    One log line per request, written when the response headers go out.

    Plain ASGI so that streamed TS bodies and client disconnects pass
    straight through to StreamingResponse.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.monotonic()

        async def send_with_log(message):
            if message["type"] == "http.response.start":
                elapsed = (time.monotonic() - started) * 1000
                logger.info(f"{scope['method']} {scope['path']} -> {message['status']} ({elapsed:.0f}ms)")
            await send(message)

        await self.app(scope, receive, send_with_log)


def create_app(
    settings: Optional[Settings] = None,
    sessions: Optional[SessionManager] = None,
    registry: Optional[PlaybookRegistry] = None,
    hooks: Optional[HookRegistry] = None,
    runner: Optional[PlaybookRunner] = None,
    transport=None,
) -> FastAPI:
    """
    Wire the remote together and return the FastAPI app.

    Every collaborator can be swapped for tests; by default everything is
    built from the environment.
    """
    settings = settings or load_settings()
    sessions = sessions or SessionManager(settings)
    registry = registry or default_registry(settings)
    hooks = hooks or default_hooks(settings)
    tuner = Tuner(sessions, registry, hooks, settings, runner=runner)
    watchdog = Watchdog(sessions, tuner, registry, interval=settings.watchdog_interval_ms / 1000)
    proxy = StreamProxy(settings, tuner, transport=transport)
    up_since = datetime.now(timezone.utc)

    app = FastAPI(title="HDMI Encoder Remote")
    app.state.settings = settings
    app.state.sessions = sessions
    app.state.tuner = tuner
    app.state.watchdog = watchdog
    app.state.proxy = proxy

    # CORS middleware for the playlist-authoring UI
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins (local network only)
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(AccessLogMiddleware)

    @app.exception_handler(ConfigError)
    async def config_error(request: Request, exc: ConfigError):
        return JSONResponse(exc.to_dict(), status_code=404)

    @app.on_event("startup")
    async def boot():
        configure_logging(settings.log_level)
        log_settings(settings)
        watchdog.start()

    @app.on_event("shutdown")
    async def shutdown():
        await watchdog.stop()
        await sessions.close()

    @app.get("/")
    async def home():
        return PlainTextResponse(
            "HDMI Encoder Remote is running.\n\n"
            "Tune with:\n"
            "  /tune?url=<url>\n"
            "  /tune/<name>          (CHAN_<NAME> preset)\n\n"
            "Stream URL (for the DVR):\n"
            "  /stream/<name>        (TS_<NAME> source)\n\n"
            "Status:\n"
            "  /health  /status  /channels\n"
        )

    @app.get("/health", response_model=HealthModel)
    async def health():
        return HealthModel(
            up_since=up_since.isoformat(),
            current_url=tuner.status.current_url,
            last_tune_at=isoformat(tuner.status.last_tune_at),
        )

    @app.get("/status", response_model=StatusModel)
    async def status():
        return StatusModel(
            current_url=tuner.status.current_url,
            last_tune_at=isoformat(tuner.status.last_tune_at),
            current_channel=tuner.status.current_channel,
            state=tuner.state.value,
            presets=settings.player_names(),
            ts_sources=settings.ts_names(),
        )

    @app.get("/channels", response_model=ChannelListModel)
    async def channels():
        """Channel list consumed by playlist tooling."""
        return ChannelListModel(channels=[
            ChannelModel(
                name=preset.name,
                player_url=preset.player_url,
                ts_source_url=preset.ts_source_url,
                stream_path=f"/stream/{preset.name}" if preset.ts_source_url else None,
            )
            for preset in settings.presets.values()
        ])

    async def run_tune(url: str, channel: Optional[str]):
        try:
            result = await tuner.tune_to(url, channel)
        except ValueError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
        if not result.ok:
            logger.error(f"failed to tune: {result.error or result.state.value}")
        return JSONResponse(result.to_dict(), status_code=TUNE_STATUS_CODES.get(result.state, 500))

    # Tune using ?url=...
    @app.get("/tune")
    async def tune(url: Optional[str] = None):
        target = url or settings.default_url
        if not target:
            return JSONResponse({"ok": False, "error": "Missing url parameter"}, status_code=400)
        return await run_tune(target, None)

    # Tune using preset: /tune/msnbc -> CHAN_MSNBC
    @app.get("/tune/{name}")
    async def tune_preset(name: str):
        preset = settings.presets.get(canonicalize(name))
        if preset is None:
            raise UnknownChannel(name)
        if not preset.player_url:
            raise MissingPlayerUrl(name)
        return await run_tune(preset.player_url, preset.name)

    @app.post("/reload")
    async def reload():
        try:
            last_tune_at = await tuner.reload()
        except SessionError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=409)
        except PlaywrightError as e:
            logger.error(f"failed to reload: {e}")
            return JSONResponse({"ok": False, "error": str(e)}, status_code=500)
        return {"ok": True, "currentUrl": tuner.status.current_url, "lastTuneAt": isoformat(last_tune_at)}

    @app.get("/stream/{name}")
    async def stream(name: str):
        """
        HDHomeRun-style MPEG-TS passthrough for one channel.
        Re-tunes the shared browser in the background on every request.
        """
        return await proxy.open(name)

    return app


app = create_app()
