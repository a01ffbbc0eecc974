from datetime import datetime

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import TEST_ENV, FakeLauncher, FakePage, TrackingStream
from hdmi_remote.config import load_settings
from hdmi_remote.server import create_app
from hdmi_remote.session import SessionManager

TS_BYTES = b"\x47\x40\x00\x10" + b"\xff" * 184


def upstream(request):
    if request.url.host == "unreachable.local":
        raise httpx.ConnectError("connection refused", request=request)
    return httpx.Response(200, stream=TrackingStream([TS_BYTES] * 4))


@pytest.fixture
def app(runner):
    settings = load_settings({
        **TEST_ENV,
        "CHAN_TEST": "http://example.invalid/player",
        "TS_TEST": "http://encoder.local/test.ts",
        "TS_DOWN": "http://unreachable.local/0.ts",
    })
    sessions = SessionManager(settings, launcher=FakeLauncher(lambda: FakePage(fail_hosts={"example.invalid"})))
    return create_app(
        settings=settings,
        sessions=sessions,
        runner=runner,
        transport=httpx.MockTransport(upstream),
    )


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def test_home(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "/stream/<name>" in response.text


def test_health_before_any_tune(client):
    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["currentUrl"] is None
    assert body["lastTuneAt"] is None
    assert datetime.fromisoformat(body["upSince"])


def test_status_lists_presets_and_sources(client):
    body = client.get("/status").json()
    assert body["ok"] is True
    assert body["state"] == "idle"
    assert body["presets"] == ["philo", "e", "generic", "test"]
    assert body["tsSources"] == ["generic", "test", "streamonly", "down"]


def test_channels(client):
    channels = {c["name"]: c for c in client.get("/channels").json()["channels"]}
    assert channels["test"]["streamPath"] == "/stream/test"
    assert channels["philo"]["streamPath"] is None
    assert channels["streamonly"]["playerUrl"] is None


def test_tune_without_url_is_400(client):
    response = client.get("/tune")
    assert response.status_code == 400
    assert response.json()["ok"] is False


def test_tune_by_url(client):
    response = client.get("/tune", params={"url": "https://video.example.com/live"})

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["state"] == "done"
    assert body["playbook"] == "generic"

    health = client.get("/health").json()
    assert health["currentUrl"] == "https://video.example.com/live"
    assert health["lastTuneAt"] == body["lastTuneAt"]


def test_sequential_preset_tunes_order_timestamps(client):
    first = client.get("/tune/philo").json()
    second = client.get("/tune/Generic").json()

    assert first["ok"] and second["ok"]
    assert datetime.fromisoformat(first["lastTuneAt"]) < datetime.fromisoformat(second["lastTuneAt"])

    status = client.get("/status").json()
    assert status["currentUrl"] == "https://video.example.com/live"
    assert status["currentChannel"] == "generic"


@pytest.mark.parametrize("path,reason", [
    ("/tune/nope", "unknown_channel"),
    ("/tune/streamonly", "no_player_url"),
    ("/stream/nope", "unknown_channel"),
    ("/stream/philo", "no_ts_source"),
])
def test_unconfigured_channels_are_404(client, path, reason):
    response = client.get(path)
    assert response.status_code == 404
    assert response.json()["ok"] is False
    assert response.json()["reason"] == reason


def test_failed_navigation_is_500_and_keeps_status(client):
    response = client.get("/tune/test")

    assert response.status_code == 500
    body = response.json()
    assert body["state"] == "failed"
    assert body["failedStep"] == "navigate"
    assert client.get("/health").json()["currentUrl"] is None


def test_stream_pipes_upstream_bytes(client):
    response = client.get("/stream/test")

    assert response.status_code == 200
    assert response.headers["content-type"] == "video/mp2t"
    assert response.content == TS_BYTES * 4
    # The background tune to example.invalid fails without touching status
    assert client.get("/health").json()["currentUrl"] is None


def test_stream_upstream_unreachable_is_502(client):
    response = client.get("/stream/down")
    assert response.status_code == 502
    assert response.text == "upstream error"


def test_reload_without_page_is_409(client):
    response = client.post("/reload")
    assert response.status_code == 409
    assert response.json()["ok"] is False


def test_reload_after_tune(client):
    tuned = client.get("/tune/generic").json()

    response = client.post("/reload")

    assert response.status_code == 200
    body = response.json()
    assert body["currentUrl"] == "https://video.example.com/live"
    assert datetime.fromisoformat(body["lastTuneAt"]) > datetime.fromisoformat(tuned["lastTuneAt"])


def test_shutdown_closes_browser(app):
    with TestClient(app) as client:
        client.get("/tune/generic")
        sessions = app.state.sessions
        assert sessions.has_session
    assert not sessions.has_session


def test_one_access_line_per_request(client, caplog):
    with caplog.at_level("INFO", logger="hdmi_remote.server"):
        client.get("/health")

    lines = [r.getMessage() for r in caplog.records if r.name == "hdmi_remote.server"]
    assert len(lines) == 1
    assert lines[0].startswith("GET /health -> 200")
