"""
Shared configuration loader for MediaHub services.

Loads a single JSON config file.  Search order:
  1. $MEDIAHUB_CONFIG               (explicit override)
  2. /etc/mediahub/config.json      (system install)
  3. config.json                    (CWD — handy for local dev)
  4. ../../config/default.json      (repo fallback)

Usage:
    from mediahub.lib.config import cfg

    port        = cfg("coordinator", "port", default=8780)
    throttle_ms = cfg("coordinator", "broadcast_throttle_ms", default=300)
    profiles    = cfg("automation", "profiles", default={})
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/mediahub/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]


def _search_paths() -> list[str]:
    override = os.environ.get("MEDIAHUB_CONFIG")
    return ([override] if override else []) + _SEARCH_PATHS


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    coord = config.get("coordinator") or {}
    throttle = coord.get("broadcast_throttle_ms", 300)
    if not isinstance(throttle, (int, float)) or throttle < 0:
        logger.warning("Config %s: coordinator.broadcast_throttle_ms must be >= 0 (got %r)",
                       path, throttle)
    agent = config.get("agent") or {}
    if not agent.get("coordinator_url"):
        logger.warning("Config %s: missing agent.coordinator_url — agents will use the default", path)
    browser = agent.get("browser", "chrome")
    if browser not in ("chrome", "firefox"):
        logger.warning("Config %s: unknown agent.browser '%s'", path, browser)
    profiles = (config.get("automation") or {}).get("profiles") or {}
    for name, profile in profiles.items():
        if not isinstance(profile, dict) or not profile.get("hosts"):
            logger.warning("Config %s: automation profile '%s' has no hosts — it will never match",
                           path, name)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found — using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("coordinator")                    → config["coordinator"]
    cfg("coordinator", "port")            → config["coordinator"]["port"]
    cfg("agent", "retry_count", default=5) → config["agent"]["retry_count"] or 5
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()


def setup_logging(fmt: str = "[%(asctime)s] %(levelname)s %(message)s"):
    """Configure root logging for a service entry point."""
    level = str(cfg("logging", "level", default="INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=fmt,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
