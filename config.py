import logging
import os
from pathlib import Path

import json5

LOGGER = logging.getLogger(__name__)

CONFIG_PATH = Path(os.environ.get("CONFIG_PATH", "/app/config.jsonc"))

_FALSE_VALUES = ("false", "0", "no", "off")


def _load_config(path: Path):
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json5.load(fh)
    except (OSError, ValueError):
        LOGGER.exception("Failed to load configuration from %s", path)
        return {}
    if not isinstance(data, dict):
        LOGGER.warning("Ignoring configuration in %s: top level is not an object", path)
        return {}
    LOGGER.info("Loaded configuration from %s", path)
    return data


def _resolve_config():
    candidates = [CONFIG_PATH, Path.cwd() / "config.jsonc"]
    for candidate in candidates:
        cfg = _load_config(candidate)
        if cfg:
            return cfg
    LOGGER.info("No configuration file found; falling back to environment variables")
    return {}

CONFIG = _resolve_config()


def get_env(name: str, default=None):
    return os.environ.get(name, default)


def get_setting(env_key: str, json_key: str, default=None):
    return os.environ.get(env_key) or CONFIG.get(json_key, default)


def get_float_setting(key: str, default: float) -> float:
    raw = get_setting(key, key, default)
    try:
        return float(raw)
    except (TypeError, ValueError):
        LOGGER.warning("Invalid value %r for %s; using %s", raw, key, default)
        return float(default)


def get_bool_setting(key: str, default: bool) -> bool:
    raw = get_setting(key, key)
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() not in _FALSE_VALUES


def setup_logging():
    raw = get_env("LOG_LEVEL", "INFO").upper()
    if raw not in ("DEBUG", "INFO", "WARN", "WARNING", "ERROR"):
        raw = "INFO"
    if raw == "WARN":
        raw = "WARNING"
    logging.basicConfig(
        level=getattr(logging, raw),
        format="[%(asctime)s] [%(levelname)s] %(message)s"
    )


setup_logging()
