"""relive runtime configuration helpers."""

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import yaml

CONFIG_FILENAME = "relive.yaml"
_ENV_PREFIX = "RELIVE_"
MODES = ("auto", "sync", "async")

LOGGER = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip().lower()
    if raw in {"", "0", "false", "no"}:
        return False
    if raw in {"1", "true", "yes"}:
        return True
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("ignoring %s=%r: not a number", name, raw)
        return default


@dataclass
class ReliveConfig:
    poll_interval: float = 0.1
    watch: bool = True
    mode: str = "auto"
    project_root: Optional[str] = None
    log_level: str = "WARNING"

    def __post_init__(self):
        if self.mode not in MODES:
            raise ValueError(f"mode must be one of {', '.join(MODES)}, got {self.mode!r}")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")


def _read_file(directory: str) -> Dict[str, Any]:
    path = os.path.join(directory, CONFIG_FILENAME)
    if not os.path.isfile(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at top level")
    known = {f.name for f in fields(ReliveConfig)}
    unknown = set(data) - known
    if unknown:
        LOGGER.warning("%s: ignoring unknown keys %s", path, sorted(unknown))
    return {k: v for k, v in data.items() if k in known}


def load_config(directory: Optional[str] = None) -> ReliveConfig:
    """Defaults, then `relive.yaml` in `directory`, then RELIVE_* variables."""
    directory = os.path.abspath(directory or os.getcwd())
    values = _read_file(directory)
    values.setdefault("project_root", directory)

    values["poll_interval"] = _env_float(_ENV_PREFIX + "POLL_INTERVAL",
                                         float(values.get("poll_interval", 0.1)))
    values["watch"] = _env_bool(_ENV_PREFIX + "WATCH", bool(values.get("watch", True)))
    for key in ("mode", "project_root", "log_level"):
        raw = os.getenv(_ENV_PREFIX + key.upper())
        if raw:
            values[key] = raw.strip()
    values["mode"] = str(values.get("mode", "auto")).lower()
    values["log_level"] = str(values.get("log_level", "WARNING")).upper()

    config = ReliveConfig(**values)
    LOGGER.debug("load_config directory=%s config=%s", directory, config)
    return config


def configure_logging(config: ReliveConfig):
    logging.basicConfig(level=getattr(logging, config.log_level, logging.WARNING),
                        format="%(levelname)s %(name)s: %(message)s")
