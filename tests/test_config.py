import json

from mediahub.agent.profiles import load_profiles, match_profile
from mediahub.lib import config


def _write(path, data) -> None:
    path.write_text(json.dumps(data))
    config.reload_config()


def test_cfg_reads_sections_and_defaults(isolated_config) -> None:
    _write(isolated_config, {"coordinator": {"port": 9999}, "logging": {"level": "DEBUG"}})
    assert config.cfg("coordinator", "port", default=8780) == 9999
    assert config.cfg("coordinator", "ack_timeout", default=2.0) == 2.0
    assert config.cfg("missing", "key", default="x") == "x"
    assert config.cfg("logging") == {"level": "DEBUG"}


def test_config_is_cached_until_reload(isolated_config) -> None:
    _write(isolated_config, {"agent": {"retry_count": 3}})
    isolated_config.write_text(json.dumps({"agent": {"retry_count": 7}}))
    assert config.cfg("agent", "retry_count") == 3
    config.reload_config()
    assert config.cfg("agent", "retry_count") == 7


def test_invalid_json_falls_through_to_next_file(isolated_config, monkeypatch) -> None:
    isolated_config.write_text("{not json")
    monkeypatch.setattr(config, "_SEARCH_PATHS", [])
    config.reload_config()
    assert config.load_config() == {}


def test_profile_overrides_replace_per_key(isolated_config) -> None:
    _write(isolated_config, {"automation": {"profiles": {
        "spotify": {"next": [".my-next"]},
        "radio": {"hosts": ["radio.test"], "play_pause": [".play"]},
    }}})
    profiles = {p.name: p for p in load_profiles()}
    assert profiles["spotify"].next == [".my-next"]
    assert profiles["spotify"].hosts == ["spotify.com"]
    assert profiles["radio"].play_pause == [".play"]
    assert match_profile("open.spotify.com", list(profiles.values())).name == "spotify"
    assert match_profile("www.radio.test", list(profiles.values())).name == "radio"
    assert match_profile("notspotify.com", list(profiles.values())) is None
