import pytest

from hdmi_remote.config import canonicalize, env_bool, load_presets, load_settings


@pytest.mark.parametrize("raw,expected", [
    ("E!", "e"),
    ("MSNBC", "msnbc"),
    ("Fox-News 2", "foxnews2"),
    ("syfy", "syfy"),
    ("!!!", ""),
    (None, ""),
])
def test_canonicalize(raw, expected):
    assert canonicalize(raw) == expected


def test_canonicalize_is_idempotent():
    for raw in ("E!", "A&E East", "nbc_sports"):
        once = canonicalize(raw)
        assert canonicalize(once) == once


def test_presets_merge_player_and_ts_entries():
    presets = load_presets({
        "CHAN_E!": "https://www.usanetwork.com/live",
        "TS_E": "http://encoder.local/0.ts",
        "CHAN_PHILO": "https://www.philo.com/player",
        "TS_ONLY": "http://encoder.local/1.ts",
        "OTHER": "ignored",
    })

    assert set(presets) == {"e", "philo", "only"}
    assert presets["e"].player_url == "https://www.usanetwork.com/live"
    assert presets["e"].ts_source_url == "http://encoder.local/0.ts"
    assert presets["philo"].ts_source_url is None
    assert presets["only"].player_url is None


def test_colliding_names_last_one_wins():
    presets = load_presets({
        "CHAN_E!": "https://first.example/",
        "CHAN_E": "https://second.example/",
    })
    assert presets["e"].player_url == "https://second.example/"


def test_empty_names_and_values_are_skipped():
    presets = load_presets({"CHAN_!!": "https://x.example/", "TS_FOO": ""})
    assert presets == {}


def test_settings_defaults():
    settings = load_settings({})
    assert settings.port == 5589
    assert settings.blackout_ms == 3000
    assert settings.video_width == 1920
    assert settings.video_height == 1080
    assert settings.fullscreen is True
    assert settings.default_url == ""
    assert settings.presets == {}


def test_settings_overrides():
    settings = load_settings({
        "CC4C_PORT": "6000",
        "BLACKOUT_MS": "0",
        "FULLSCREEN": "false",
        "VIDEO_WIDTH": "1280",
        "NAVIGATION_TIMEOUT_MS": "not-a-number",
        "LOG_LEVEL": "debug",
    })
    assert settings.port == 6000
    assert settings.blackout_ms == 0
    assert settings.fullscreen is False
    assert settings.video_width == 1280
    assert settings.navigation_timeout_ms == 90_000
    assert settings.log_level == "DEBUG"


def test_own_port_variable_takes_precedence():
    settings = load_settings({"HDMI_REMOTE_PORT": "7000", "CC4C_PORT": "6000"})
    assert settings.port == 7000


def test_env_bool():
    env = {"A": "1", "B": "yes", "C": "off", "D": "TRUE"}
    assert env_bool(env, "A") is True
    assert env_bool(env, "B") is True
    assert env_bool(env, "C", True) is False
    assert env_bool(env, "D") is True
    assert env_bool(env, "MISSING", True) is True


def test_name_lists(settings):
    assert settings.player_names() == ["philo", "e", "generic"]
    assert settings.ts_names() == ["generic", "streamonly"]
