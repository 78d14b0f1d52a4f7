import json

import pytest

from mediahub.lib import config


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Every test starts from an empty config file of its own."""
    path = tmp_path / "config.json"
    path.write_text(json.dumps({}))
    monkeypatch.setenv("MEDIAHUB_CONFIG", str(path))
    config.reload_config()
    yield path
    monkeypatch.delenv("MEDIAHUB_CONFIG", raising=False)
    config._config = None
