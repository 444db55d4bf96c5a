import logging
import os

from .paths import get_db_path

logger = logging.getLogger("EForms")

DEFAULT_CONFIG = {
    "host": "0.0.0.0",
    "port": 5000,
    "db_path": "",
    "log_level": "INFO",
    "latest_limit": 5,
    "popular_limit": 5,
    "busy_timeout_ms": 5000,
}

_ENV_KEYS = {
    "EFORMS_HOST": "host",
    "EFORMS_PORT": "port",
    "EFORMS_DB_PATH": "db_path",
    "EFORMS_LOG_LEVEL": "log_level",
}


def normalize_config(config):
    merged = {**DEFAULT_CONFIG, **(config or {})}
    out = dict(merged)
    out["host"] = str(merged.get("host") or DEFAULT_CONFIG["host"]).strip()
    for key in ("port", "latest_limit", "popular_limit", "busy_timeout_ms"):
        try:
            value = int(merged.get(key))
        except (TypeError, ValueError):
            logger.warning("Invalid %s=%r, using %r", key, merged.get(key), DEFAULT_CONFIG[key])
            value = DEFAULT_CONFIG[key]
        out[key] = max(0, value)
    level = str(merged.get("log_level") or "").strip().upper()
    out["log_level"] = level if isinstance(logging.getLevelName(level), int) else DEFAULT_CONFIG["log_level"]
    out["db_path"] = str(merged.get("db_path") or "").strip() or get_db_path()
    return out


def load_config(env=None, overrides=None):
    env = os.environ if env is None else env
    config = {}
    for env_key, key in _ENV_KEYS.items():
        value = env.get(env_key)
        if value not in (None, ""):
            config[key] = value
    config.update(overrides or {})
    return normalize_config(config)
