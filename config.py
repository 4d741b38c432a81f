from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

"""Config loader and validator.

Provides `load_config` which accepts either a path to a YAML file,
a dictionary or None and returns a normalized configuration dict
using DEFAULTS for missing values.
"""


DEFAULTS: dict[str, Any] = {
    "clock_hz": 700,
    "tick_limit": 600,
    "seed": None,
    "stop_on_halt": True,
    "lenient_log": False,
}

TIMER_HZ = 60


class ConfigError(ValueError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def _convert_types(cfg: dict[str, Any]) -> None:
    """Normalize types for configuration values in-place.

    Raises ConfigError on conversion failure.
    """
    try:
        cfg["clock_hz"] = int(cfg.get("clock_hz", DEFAULTS["clock_hz"]))

        cfg["tick_limit"] = int(cfg.get("tick_limit", DEFAULTS["tick_limit"]))

        # seed: None means "seed from the OS"
        v = cfg.get("seed")
        if v is None:
            cfg["seed"] = None
        else:
            cfg["seed"] = int(v)

        cfg["stop_on_halt"] = bool(cfg.get("stop_on_halt", DEFAULTS["stop_on_halt"]))
        cfg["lenient_log"] = bool(cfg.get("lenient_log", DEFAULTS["lenient_log"]))
    except Exception as e:
        msg = f"Bad types in config: {e}"
        raise ConfigError(msg) from e


def _validate_cfg(cfg: dict[str, Any]) -> None:
    """Perform semantic validation on normalized config dict.

    Raises ConfigError on invalid values.
    """
    if cfg["clock_hz"] < TIMER_HZ:
        msg = f"clock_hz must be at least {TIMER_HZ} (one instruction per tick)"
        raise ConfigError(msg)

    if cfg["tick_limit"] < 0:
        msg = "tick_limit must be non-negative"
        raise ConfigError(msg)

    if cfg["seed"] is not None and cfg["seed"] < 0:
        msg = "seed must be non-negative or null"
        raise ConfigError(msg)


def load_config(path_or_dict: str | dict[str, Any] | None = None) -> dict[str, Any]:
    """Load and normalize configuration.

    Accepts:
      - None -> returns DEFAULTS copy
      - dict -> overlay DEFAULTS with provided dict
      - str (path) -> load YAML and overlay DEFAULTS

    Returns a normalized dict or raises ConfigError.
    """
    if path_or_dict is None:
        cfg: dict[str, Any] = dict(DEFAULTS)
    elif isinstance(path_or_dict, dict):
        cfg = dict(DEFAULTS)
        cfg.update(path_or_dict)
    elif isinstance(path_or_dict, str):
        p = Path(path_or_dict)
        if not p.exists():
            msg = f"Config file not found: {path_or_dict}"
            raise ConfigError(msg)
        try:
            with p.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except Exception as e:
            msg = f"Failed to load config file {path_or_dict}: {e}"
            raise ConfigError(msg) from e
        if not isinstance(data, dict):
            msg = f"Config file {path_or_dict} does not contain a mapping"
            raise ConfigError(msg)
        cfg = dict(DEFAULTS)
        cfg.update(data)
    else:
        msg = "Unsupported config input"
        raise ConfigError(msg)

    unknown = sorted(set(cfg) - set(DEFAULTS))
    if unknown:
        msg = f"Unknown config keys: {', '.join(unknown)}"
        raise ConfigError(msg)

    # convert types and validate semantics
    _convert_types(cfg)
    _validate_cfg(cfg)

    return cfg
