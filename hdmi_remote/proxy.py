import asyncio
import logging
from typing import Optional, Set

import httpx
from fastapi.responses import PlainTextResponse, StreamingResponse

from .config import ChannelPreset, Settings, canonicalize
from .errors import MissingTsSource, UnknownChannel, UpstreamStreamError
from .tuner import Tuner

logger = logging.getLogger(__name__)

TS_MEDIA_TYPE = "video/mp2t"


class StreamProxy:
    """
    /stream/{name}: kick off a background tune, hold a blackout, then pipe
    the encoder's TS feed to the caller byte for byte.

    Each request gets its own upstream connection and its own blackout.
    The tune is never tied to the request: a caller hanging up stops the
    pipe, not the browser.
    """

    def __init__(self, settings: Settings, tuner: Tuner, transport: Optional[httpx.AsyncBaseTransport] = None, sleep=asyncio.sleep):
        self.settings = settings
        self.tuner = tuner
        self.transport = transport
        self.sleep = sleep
        self._background: Set[asyncio.Task] = set()

    def resolve(self, raw_name: str) -> ChannelPreset:
        preset = self.settings.presets.get(canonicalize(raw_name))
        if preset is None:
            raise UnknownChannel(raw_name)
        if not preset.ts_source_url:
            raise MissingTsSource(raw_name)
        return preset

    def _client(self) -> httpx.AsyncClient:
        connect = self.settings.upstream_connect_timeout_ms / 1000
        return httpx.AsyncClient(
            # Live feed: no read deadline, only a connect deadline
            timeout=httpx.Timeout(None, connect=connect),
            follow_redirects=True,
            transport=self.transport,
        )

    def _start_tune(self, preset: ChannelPreset, tag: str):
        logger.info(f"[{tag}] async tuning to {preset.player_url}")
        try:
            task = self.tuner.submit(preset.player_url, preset.name)
        except ValueError as e:
            logger.error(f"[{tag}] async tune failed: {e}")
            return
        watcher = asyncio.ensure_future(self._report_tune(task, tag))
        self._background.add(watcher)
        watcher.add_done_callback(self._background.discard)

    async def _report_tune(self, task: asyncio.Task, tag: str):
        try:
            result = await task
        except Exception as e:
            logger.error(f"[{tag}] async tune failed: {e}")
            return
        if not result.ok:
            logger.error(f"[{tag}] async tune {result.state.value}: {result.error or 'superseded'}")
            return
        if self.settings.tune_delay_ms > 0:
            logger.info(f"[{tag}] async waiting {self.settings.tune_delay_ms}ms for encoder to catch up")
            await self.sleep(self.settings.tune_delay_ms / 1000)
        logger.info(f"[{tag}] async tune complete")

    async def open(self, raw_name: str):
        tag = f"stream/{raw_name}"
        preset = self.resolve(raw_name)

        if preset.player_url:
            self._start_tune(preset, tag)
        else:
            logger.warning(f"[{tag}] no CHAN_{preset.name.upper()} set, skipping tune step")

        url = preset.ts_source_url
        logger.info(f"[{tag}] proxying TS from {url}")

        if self.settings.blackout_ms > 0:
            logger.info(f"[{tag}] initial blackout {self.settings.blackout_ms}ms")
            await self.sleep(self.settings.blackout)

        client = self._client()
        try:
            upstream = await client.send(client.build_request("GET", url), stream=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            await client.aclose()
            logger.error(f"[{tag}] upstream request error: {e}")
            return PlainTextResponse("upstream error", status_code=502)

        return StreamingResponse(
            self._pipe(client, upstream, url, tag),
            status_code=upstream.status_code,
            media_type=TS_MEDIA_TYPE,
            headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
        )

    async def _pipe(self, client: httpx.AsyncClient, upstream: httpx.Response, url: str, tag: str):
        sent = 0
        try:
            async for chunk in upstream.aiter_raw():
                sent += len(chunk)
                yield chunk
        except httpx.HTTPError as e:
            logger.error(f"[{tag}] upstream stream error: {e}")
            # Re-raised so the server drops the connection instead of ending it cleanly
            raise UpstreamStreamError(url, e) from e
        finally:
            await upstream.aclose()
            await client.aclose()
            logger.info(f"[{tag}] pipe closed after {sent} bytes")
